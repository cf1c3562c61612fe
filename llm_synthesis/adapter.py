"""LLM adapters for insight generation.

Provides a base interface and concrete adapters for the Gemini
generateContent API, OpenAI-compatible APIs and a deterministic mock
for testing. Adapters translate provider failures into the shared
error taxonomy so retry policy stays provider-agnostic.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from app.config import LLMSettings
from llm_synthesis.errors import DecodeError, ThrottledError, TransportError

logger = logging.getLogger(__name__)

_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class BaseLLMAdapter(ABC):
    """Abstract base for all LLM adapters."""

    @abstractmethod
    def generate(
        self,
        prompt: str,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Send a prompt to the LLM and return the raw response text.

        Args:
            prompt: The fully formatted prompt string.
            response_schema: When given, the model is asked for JSON
                constrained to this schema.

        Returns:
            Raw string response from the model.

        Raises:
            ThrottledError: The provider rejected the call for rate limiting.
            TransportError: Network failure, timeout or non-success status.
            DecodeError: The provider envelope carried no text.
        """

    def count_tokens(self, prompt: str) -> Optional[int]:
        """Return the provider's token count for ``prompt``.

        Adapters without a counting endpoint return ``None``.
        """
        return None


class GeminiLLMAdapter(BaseLLMAdapter):
    """Adapter for the Gemini ``generateContent`` REST endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash-exp",
        timeout_seconds: float = 120.0,
        max_output_tokens: int = 8192,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not api_key:
            raise ValueError("Gemini API key not found. Set LLM_API_KEY or GEMINI_API_KEY.")
        self._api_key = api_key
        self._model = model
        self._timeout_seconds = timeout_seconds
        self._max_output_tokens = max_output_tokens
        self._base_url = (base_url or _GEMINI_BASE_URL).rstrip("/")
        self._session = session or requests.Session()

    def generate(
        self,
        prompt: str,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> str:
        generation_config: Dict[str, Any] = {
            "temperature": 0,
            "maxOutputTokens": self._max_output_tokens,
        }
        if response_schema is not None:
            generation_config["responseMimeType"] = "application/json"
            generation_config["responseSchema"] = response_schema

        payload = self._post(
            "generateContent",
            {
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": generation_config,
            },
        )
        return self._extract_text(payload)

    def count_tokens(self, prompt: str) -> Optional[int]:
        """Return the provider's token count for ``prompt``.

        Diagnostic only: failures are logged and reported as ``None``.
        """
        try:
            payload = self._post("countTokens", {"contents": [{"parts": [{"text": prompt}]}]})
        except (ThrottledError, TransportError, DecodeError) as exc:
            logger.warning("Token count unavailable model=%s error=%s", self._model, exc)
            return None
        total = payload.get("totalTokens")
        return int(total) if isinstance(total, (int, float)) else None

    def _post(self, method: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._base_url}/models/{self._model}:{method}"
        try:
            response = self._session.post(
                url,
                params={"key": self._api_key},
                json=body,
                timeout=self._timeout_seconds,
            )
        except requests.Timeout as exc:
            raise TransportError(f"Gemini {method} timed out after {self._timeout_seconds}s.") from exc
        except requests.RequestException as exc:
            raise TransportError(f"Gemini {method} request failed: {exc}") from exc

        if response.status_code == 429:
            raise ThrottledError(
                f"Gemini {method} rate limited (429).",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if not response.ok:
            raise TransportError(
                f"Gemini {method} failed with status {response.status_code}.",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise DecodeError(
                stage="envelope",
                errors=["response body was not valid JSON"],
                raw_response=response.text,
            ) from exc
        if not isinstance(payload, dict):
            raise DecodeError(
                stage="envelope",
                errors=["response body must be a JSON object"],
                raw_response=response.text,
            )
        return payload

    @staticmethod
    def _extract_text(payload: Dict[str, Any]) -> str:
        try:
            parts = payload["candidates"][0]["content"]["parts"]
            text = "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise DecodeError(
                stage="envelope",
                errors=["No valid response received from AI service."],
                raw_response=json.dumps(payload, default=str),
            ) from exc
        if not text.strip():
            raise DecodeError(
                stage="envelope",
                errors=["response candidate contained no text"],
                raw_response=json.dumps(payload, default=str),
            )
        return text


class OpenAILLMAdapter(BaseLLMAdapter):
    """Adapter for OpenAI-compatible chat completion APIs.

    Configured for deterministic, non-streaming output with
    low temperature suitable for structured JSON generation.
    """

    def __init__(
        self,
        model: str = "gpt-4o",
        max_tokens: int = 4096,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: float = 120.0,
    ) -> None:
        """Initialise the OpenAI adapter.

        Args:
            model: Model identifier.
            max_tokens: Maximum tokens in the completion.
            api_key: OpenAI API key. Falls back to OPENAI_API_KEY env var.
            base_url: Optional base URL for OpenAI-compatible endpoints.
            timeout_seconds: Per-request timeout.
        """
        import openai

        client_kwargs: Dict[str, Any] = {"timeout": timeout_seconds, "max_retries": 0}
        if api_key:
            client_kwargs["api_key"] = api_key
        if base_url:
            client_kwargs["base_url"] = base_url

        self._openai = openai
        self._client = openai.OpenAI(**client_kwargs)
        self._model = model
        self._max_tokens = max_tokens

    def generate(
        self,
        prompt: str,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Call the OpenAI chat completion API.

        JSON mode is enabled when a schema is requested; the schema itself
        travels in the prompt.
        """
        request_kwargs: Dict[str, Any] = {}
        if response_schema is not None:
            request_kwargs["response_format"] = {"type": "json_object"}

        try:
            response = self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
                temperature=0,
                top_p=1,
                max_tokens=self._max_tokens,
                stream=False,
                seed=42,
                **request_kwargs,
            )
        except self._openai.RateLimitError as exc:
            raise ThrottledError(f"OpenAI rate limited: {exc}") from exc
        except self._openai.APIStatusError as exc:
            raise TransportError(
                f"OpenAI request failed with status {exc.status_code}.",
                status_code=exc.status_code,
            ) from exc
        except self._openai.APIConnectionError as exc:
            raise TransportError(f"OpenAI request failed: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise DecodeError(
                stage="envelope",
                errors=["completion contained no content"],
                raw_response="",
            )
        return content


# ---------------------------------------------------------------------------
# Fixed mock responses used for local testing.
# ---------------------------------------------------------------------------
_MOCK_REPORT = {
    "biggest_moves": [
        {
            "sku_channel": "SKU 1001 - Mock Store",
            "percent_change_mom": 42.0,
            "direction": "up",
            "likely_drivers": ["seasonality"],
            "explanation": "SKU 1001 - Mock Store forecast rises well above its historical value.",
            "planner_action": "Verify integration with upstream forecasts.",
        }
    ],
    "steady_trends": [],
    "historical_anomalies": [],
}

_MOCK_REPORT_JSON = json.dumps(_MOCK_REPORT, indent=2)

_MOCK_NARRATIVE = (
    "Biggest Moves: SKU 1001 - Mock Store forecast rises 42.0% above its "
    "historical value.\nPlanner Actions:\n- Verify integration with upstream forecasts."
)


class MockLLMAdapter(BaseLLMAdapter):
    """Deterministic adapter that returns a fixed response.

    Used for local testing and CI pipelines where no LLM API
    is available.
    """

    def generate(
        self,
        prompt: str,
        response_schema: Optional[Dict[str, Any]] = None,
    ) -> str:
        if response_schema is not None:
            return _MOCK_REPORT_JSON
        return _MOCK_NARRATIVE


def build_adapter(settings: LLMSettings) -> BaseLLMAdapter:
    """Instantiate the adapter named by ``settings.adapter``."""
    if settings.adapter == "mock":
        return MockLLMAdapter()
    if settings.adapter == "openai":
        return OpenAILLMAdapter(
            model=settings.model,
            max_tokens=settings.max_output_tokens,
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout_seconds=settings.timeout_seconds,
        )
    if settings.adapter == "gemini":
        return GeminiLLMAdapter(
            api_key=settings.api_key or "",
            model=settings.model,
            timeout_seconds=settings.timeout_seconds,
            max_output_tokens=settings.max_output_tokens,
            base_url=settings.base_url,
        )
    raise ValueError(f"Unknown LLM adapter '{settings.adapter}'.")


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
