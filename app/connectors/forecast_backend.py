"""
app/connectors/forecast_backend.py

Client for the external forecasting backend: archive upload, status
polling and result download. The forecast computation itself happens
entirely on the backend.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

import requests

from app.config import ForecastBackendSettings
from pipeline.cancellation import CancellationToken

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class ForecastBackendError(RuntimeError):
    """
    Raised when the forecasting backend cannot be reached or reports failure.
    """


class ForecastJobStatus(str, Enum):
    STARTED = "started"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: Any) -> "ForecastJobStatus":
        value = str(raw or "").strip().lower()
        for member in cls:
            if member.value == value:
                return member
        return cls.UNKNOWN

    @property
    def message(self) -> str:
        return _STATUS_MESSAGES[self]


_STATUS_MESSAGES = {
    ForecastJobStatus.STARTED: "Forecast is started",
    ForecastJobStatus.RUNNING: "Forecast is running...",
    ForecastJobStatus.COMPLETED: "Forecast completed!",
    ForecastJobStatus.ERROR: "Error in forecast. Please try again.",
    ForecastJobStatus.UNKNOWN: "Forecast status is unknown.",
}


class ForecastBackendClient:
    """
    Thin HTTP client over the forecasting backend's upload/status/download API.
    """

    def __init__(
        self,
        *,
        settings: ForecastBackendSettings,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._base_url = settings.base_url.rstrip("/")
        self._session = session or requests.Session()
        self._timeout_seconds = settings.timeout_seconds
        self._poll_interval_seconds = settings.poll_interval_seconds
        self._max_retries = settings.max_retries
        self._backoff_initial_seconds = settings.backoff_initial_seconds
        self._backoff_multiplier = settings.backoff_multiplier
        self._sleep = sleep

    def upload_archive(self, data: bytes, filename: str = "data.zip") -> None:
        """
        Upload the sales-data archive that starts a forecast on the backend.
        """

        self._request(
            method="POST",
            path="/upload",
            files={"file": (filename, data, "application/zip")},
        )
        logger.info("Forecast archive uploaded file=%s size=%d", filename, len(data))

    def get_status(self) -> ForecastJobStatus:
        response = self._request(method="GET", path="/status")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ForecastBackendError("Forecast status response was not valid JSON.") from exc
        raw_status = payload.get("status") if isinstance(payload, dict) else None
        return ForecastJobStatus.parse(raw_status)

    def wait_for_completion(
        self,
        *,
        cancel_token: CancellationToken | None = None,
        delay: Callable[[float], None] | None = None,
        on_status: Callable[[ForecastJobStatus], None] | None = None,
        max_polls: int | None = None,
    ) -> ForecastJobStatus:
        """
        Poll ``/status`` at the configured interval until a terminal status.

        The first check happens immediately. Each wait goes through ``delay``
        (default: the token's interruptible sleep).

        Raises:
            ForecastBackendError: The backend reported ``error`` or
                ``max_polls`` checks passed without completion.
            RunCancelledError: The token was cancelled while waiting.
        """

        token = cancel_token or CancellationToken()
        wait = delay or token.sleep
        polls = 0
        while True:
            token.raise_if_cancelled()
            status = self.get_status()
            polls += 1
            logger.info("Forecast status poll=%d status=%s", polls, status.value)
            if on_status is not None:
                on_status(status)
            if status is ForecastJobStatus.COMPLETED:
                return status
            if status is ForecastJobStatus.ERROR:
                raise ForecastBackendError(status.message)
            if max_polls is not None and polls >= max_polls:
                raise ForecastBackendError(f"Forecast did not complete after {polls} status check(s).")
            wait(self._poll_interval_seconds)
            token.raise_if_cancelled()

    def download_forecast(self) -> bytes:
        """
        Download the finished forecast workbook.
        """

        response = self._request(method="GET", path="/download-forecast")
        if not response.content:
            raise ForecastBackendError("Forecast download returned an empty file.")
        return response.content

    def _request(
        self,
        *,
        method: str,
        path: str,
        files: dict[str, Any] | None = None,
    ) -> requests.Response:
        """
        Execute an HTTP request with exponential backoff on retryable failures.
        """

        url = f"{self._base_url}{path}"
        last_error: Exception | None = None
        for attempt in range(self._max_retries + 1):
            try:
                response = self._session.request(
                    method=method,
                    url=url,
                    files=files,
                    timeout=self._timeout_seconds,
                )
                if response.status_code in RETRYABLE_STATUS_CODES:
                    raise requests.HTTPError(
                        f"Retryable HTTP status code: {response.status_code}",
                        response=response,
                    )
                response.raise_for_status()
                return response
            except requests.HTTPError as exc:
                last_error = exc
                status_code = exc.response.status_code if exc.response is not None else None
                if status_code not in RETRYABLE_STATUS_CODES:
                    logger.error(
                        "Forecast backend request failed status=%s url=%s error=%s",
                        status_code,
                        url,
                        exc,
                    )
                    raise ForecastBackendError(f"Forecast backend request failed: {status_code}") from exc
            except (requests.Timeout, requests.ConnectionError) as exc:
                last_error = exc

            if attempt >= self._max_retries:
                break

            backoff_seconds = self._backoff_initial_seconds * (self._backoff_multiplier**attempt)
            logger.warning(
                "Forecast backend retry attempt=%s/%s wait_seconds=%.2f url=%s",
                attempt + 1,
                self._max_retries,
                backoff_seconds,
                url,
            )
            self._sleep(backoff_seconds)

        logger.error("Forecast backend request exhausted retries url=%s error=%s", url, last_error)
        raise ForecastBackendError("Forecast backend request failed after retries.") from last_error
