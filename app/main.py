from __future__ import annotations

import logging
import os

from fastapi import FastAPI

from app.config import get_chunking_settings, get_llm_settings, get_rate_limit_settings, load_env_files


def _validate_env() -> None:
    """
    Validate all required environment variables at startup.

    Raises RuntimeError listing every missing or invalid variable so the
    operator can fix all problems in one restart cycle.

    Rules:
    - LLM_ADAPTER and INSIGHT_RESPONSE_MODE must name a supported value.
    - An API key is required unless LLM_ADAPTER=mock.
    - The overlap must stay smaller than the chunk it belongs to.
    """

    load_env_files()

    errors: list[str] = []

    # --- LLM provider ---------------------------------------------------
    try:
        llm_settings = get_llm_settings()
    except RuntimeError as exc:
        errors.append(str(exc))
    else:
        if llm_settings.adapter != "mock" and not llm_settings.api_key:
            key_name = "OPENAI_API_KEY" if llm_settings.adapter == "openai" else "GEMINI_API_KEY"
            errors.append(
                f"LLM API key is not set. Provide LLM_API_KEY or {key_name}. "
                "Empty strings are not permitted."
            )

    # --- Chunk sizing ---------------------------------------------------
    chunking = get_chunking_settings()
    if chunking.overlap_size >= chunking.chunk_size:
        errors.append(
            f"INSIGHT_OVERLAP_RATIO yields an overlap of {chunking.overlap_size} rows, "
            f"which is not smaller than the chunk size of {chunking.chunk_size} rows."
        )

    if errors:
        raise RuntimeError(
            "Startup validation failed: missing or invalid environment variables:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )


def _configure_logging() -> None:
    """
    Configure root logging once for the API process.
    """

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.
    """

    _validate_env()
    _configure_logging()

    application = FastAPI(
        title="Forecast Insight API",
        version="1.0.0",
    )

    from app.api.routers import insight_runs_router

    application.include_router(insight_runs_router)

    @application.get("/health")
    def healthcheck() -> dict[str, object]:
        chunking = get_chunking_settings()
        rate_limits = get_rate_limit_settings()
        return {
            "status": "ok",
            "adapter": get_llm_settings().adapter,
            "chunk_size": chunking.chunk_size,
            "overlap_size": chunking.overlap_size,
            "max_attempts": rate_limits.max_attempts,
            "cooldown_seconds": rate_limits.cooldown_seconds,
        }

    return application


app = create_app()
