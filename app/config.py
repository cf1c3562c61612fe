"""
app/config.py

Application-level configuration helpers.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

_ALLOWED_ADAPTERS = {"gemini", "openai", "mock"}
_ALLOWED_RESPONSE_MODES = {"structured", "narrative"}


def load_env_files() -> None:
    """
    Load simple KEY=VALUE pairs from `.env` and `.env.local` (if present).
    Existing process environment variables are not overwritten.
    """

    project_root = Path(__file__).resolve().parents[1]
    for filename in (".env", ".env.local"):
        env_path = project_root / filename
        if not env_path.exists():
            continue

        for raw_line in env_path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue

            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            if key and key not in os.environ:
                os.environ[key] = value


@lru_cache(maxsize=1)
def _load_env_once() -> None:
    """
    Ensure project `.env` files are loaded once before reading app settings.
    """

    load_env_files()


def _get_int_env(name: str, default: int) -> int:
    """
    Read an integer from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """
    Read a float from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        return default


def _get_str_env(name: str, default: str) -> str:
    """
    Read a string from environment variables with fallback.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    return stripped if stripped else default


def _get_optional_str_env(name: str) -> str | None:
    """
    Read an optional string value from environment variables.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def _get_choice_env(name: str, default: str, allowed: set[str]) -> str:
    """
    Read a lower-cased string restricted to ``allowed``.
    """

    value = _get_str_env(name, default).lower()
    if value not in allowed:
        raise RuntimeError(
            f"{name}='{value}' is not valid. Allowed values: {sorted(allowed)}."
        )
    return value


@dataclass(frozen=True)
class ChunkingSettings:
    """
    Row-window sizing for chunked analysis.

    ``chunk_size`` is the number of rows that fit the token budget at the
    empirical average cost per row; ``overlap_size`` is a fixed fraction of it.
    """

    token_budget: int = 800_000
    tokens_per_row: int = 55
    overlap_ratio: float = 0.1

    @property
    def chunk_size(self) -> int:
        return max(1, self.token_budget // max(1, self.tokens_per_row))

    @property
    def overlap_size(self) -> int:
        return int(math.floor(self.chunk_size * self.overlap_ratio))


@dataclass(frozen=True)
class RateLimitSettings:
    """
    Throughput limits for the remote text-generation API.
    """

    max_attempts: int = 3
    cooldown_seconds: float = 90.0


@dataclass(frozen=True)
class LLMSettings:
    """
    Text-generation provider settings.
    """

    adapter: str = "gemini"
    model: str = "gemini-2.0-flash-exp"
    api_key: str | None = None
    base_url: str | None = None
    timeout_seconds: float = 120.0
    max_output_tokens: int = 8192
    response_mode: str = "structured"


@dataclass(frozen=True)
class ForecastBackendSettings:
    """
    Remote forecasting backend connection settings.
    """

    base_url: str = "http://localhost:8080"
    timeout_seconds: float = 30.0
    poll_interval_seconds: float = 300.0
    max_retries: int = 3
    backoff_initial_seconds: float = 0.5
    backoff_multiplier: float = 2.0


@dataclass(frozen=True)
class AccessSettings:
    """
    Static allow-list applied on top of the identity provider's session.
    An empty allow-list admits every authenticated user.
    """

    allowed_user_ids: frozenset[str] = frozenset()


@lru_cache(maxsize=1)
def get_chunking_settings() -> ChunkingSettings:
    """
    Return cached chunk sizing settings from environment variables.
    """

    ratio = _get_float_env("INSIGHT_OVERLAP_RATIO", 0.1)
    return ChunkingSettings(
        token_budget=max(1, _get_int_env("INSIGHT_TOKEN_BUDGET", 800_000)),
        tokens_per_row=max(1, _get_int_env("INSIGHT_TOKENS_PER_ROW", 55)),
        overlap_ratio=min(0.9, max(0.0, ratio)),
    )


@lru_cache(maxsize=1)
def get_rate_limit_settings() -> RateLimitSettings:
    """
    Return cached retry / cooldown settings from environment variables.
    """

    return RateLimitSettings(
        max_attempts=max(1, _get_int_env("INSIGHT_MAX_ATTEMPTS", 3)),
        cooldown_seconds=max(0.0, _get_float_env("INSIGHT_COOLDOWN_SECONDS", 90.0)),
    )


@lru_cache(maxsize=1)
def get_llm_settings() -> LLMSettings:
    """
    Return cached LLM provider settings from environment variables.

    The API key is resolved from LLM_API_KEY first, then the provider's own
    variable (GEMINI_API_KEY or OPENAI_API_KEY).
    """

    adapter = _get_choice_env("LLM_ADAPTER", "gemini", _ALLOWED_ADAPTERS)
    default_model = "gpt-4o" if adapter == "openai" else "gemini-2.0-flash-exp"
    provider_key_name = "OPENAI_API_KEY" if adapter == "openai" else "GEMINI_API_KEY"
    return LLMSettings(
        adapter=adapter,
        model=_get_str_env("LLM_MODEL", default_model),
        api_key=_get_optional_str_env("LLM_API_KEY") or _get_optional_str_env(provider_key_name),
        base_url=_get_optional_str_env("LLM_BASE_URL"),
        timeout_seconds=max(1.0, _get_float_env("LLM_TIMEOUT_SECONDS", 120.0)),
        max_output_tokens=max(256, _get_int_env("LLM_MAX_OUTPUT_TOKENS", 8192)),
        response_mode=_get_choice_env("INSIGHT_RESPONSE_MODE", "structured", _ALLOWED_RESPONSE_MODES),
    )


@lru_cache(maxsize=1)
def get_forecast_backend_settings() -> ForecastBackendSettings:
    """
    Return forecasting backend connector settings from environment variables.
    """

    return ForecastBackendSettings(
        base_url=_get_str_env("FORECAST_BACKEND_URL", "http://localhost:8080").rstrip("/"),
        timeout_seconds=max(1.0, _get_float_env("FORECAST_BACKEND_TIMEOUT_SECONDS", 30.0)),
        poll_interval_seconds=max(1.0, _get_float_env("FORECAST_POLL_INTERVAL_SECONDS", 300.0)),
        max_retries=max(0, _get_int_env("FORECAST_BACKEND_MAX_RETRIES", 3)),
        backoff_initial_seconds=max(0.1, _get_float_env("FORECAST_BACKEND_BACKOFF_INITIAL_SECONDS", 0.5)),
        backoff_multiplier=max(1.0, _get_float_env("FORECAST_BACKEND_BACKOFF_MULTIPLIER", 2.0)),
    )


@lru_cache(maxsize=1)
def get_access_settings() -> AccessSettings:
    """
    Return the user allow-list from environment variables.
    """

    raw = _get_optional_str_env("ALLOWED_USER_IDS") or ""
    return AccessSettings(
        allowed_user_ids=frozenset(part.strip() for part in raw.split(",") if part.strip()),
    )
