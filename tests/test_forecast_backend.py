"""
tests/test_forecast_backend.py

Forecasting backend client: upload, polling and download over a fake session.
"""

from __future__ import annotations

from typing import Any

import pytest
import requests

from app.config import ForecastBackendSettings
from app.connectors.forecast_backend import ForecastBackendClient, ForecastBackendError, ForecastJobStatus
from pipeline.cancellation import CancellationToken, RunCancelledError


class _FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, content: bytes = b"") -> None:
        self.status_code = status_code
        self._payload = payload
        self.content = content

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}", response=self)  # type: ignore[arg-type]


class _FakeSession:
    def __init__(self, responses: list[Any]) -> None:
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    def request(self, **kwargs: Any) -> _FakeResponse:
        self.requests.append(kwargs)
        outcome = self.responses.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _client(responses: list[Any], sleeps: list[float] | None = None) -> tuple[ForecastBackendClient, _FakeSession]:
    session = _FakeSession(responses)
    recorded = sleeps if sleeps is not None else []
    client = ForecastBackendClient(
        settings=ForecastBackendSettings(base_url="http://backend:8080/", poll_interval_seconds=300.0),
        session=session,  # type: ignore[arg-type]
        sleep=recorded.append,
    )
    return client, session


class TestRequests:
    def test_upload_posts_archive_as_multipart_file(self) -> None:
        client, session = _client([_FakeResponse(200)])
        client.upload_archive(b"PK\x03\x04", "sales.zip")

        request = session.requests[0]
        assert request["method"] == "POST"
        assert request["url"] == "http://backend:8080/upload"
        assert request["files"]["file"][0] == "sales.zip"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("started", ForecastJobStatus.STARTED),
            ("RUNNING", ForecastJobStatus.RUNNING),
            ("completed", ForecastJobStatus.COMPLETED),
            ("error", ForecastJobStatus.ERROR),
            ("something else", ForecastJobStatus.UNKNOWN),
        ],
    )
    def test_status_parsing(self, raw: str, expected: ForecastJobStatus) -> None:
        client, _ = _client([_FakeResponse(200, {"status": raw})])
        assert client.get_status() is expected

    def test_download_returns_workbook_bytes(self) -> None:
        client, session = _client([_FakeResponse(200, content=b"xlsx-bytes")])
        assert client.download_forecast() == b"xlsx-bytes"
        assert session.requests[0]["url"] == "http://backend:8080/download-forecast"

    def test_retryable_status_is_retried_with_backoff(self) -> None:
        sleeps: list[float] = []
        client, session = _client([_FakeResponse(503), _FakeResponse(200, {"status": "running"})], sleeps)
        assert client.get_status() is ForecastJobStatus.RUNNING
        assert len(session.requests) == 2
        assert sleeps == [0.5]

    def test_client_error_is_not_retried(self) -> None:
        client, session = _client([_FakeResponse(404)])
        with pytest.raises(ForecastBackendError):
            client.get_status()
        assert len(session.requests) == 1

    def test_connection_errors_exhaust_retries(self) -> None:
        client, session = _client([requests.ConnectionError("down")] * 4)
        with pytest.raises(ForecastBackendError):
            client.download_forecast()
        assert len(session.requests) == 4


class TestPolling:
    def test_polls_until_completed(self) -> None:
        waits: list[float] = []
        client, _ = _client(
            [
                _FakeResponse(200, {"status": "started"}),
                _FakeResponse(200, {"status": "running"}),
                _FakeResponse(200, {"status": "completed"}),
            ]
        )
        statuses: list[ForecastJobStatus] = []
        result = client.wait_for_completion(delay=waits.append, on_status=statuses.append)

        assert result is ForecastJobStatus.COMPLETED
        assert waits == [300.0, 300.0]
        assert statuses[-1] is ForecastJobStatus.COMPLETED

    def test_error_status_raises(self) -> None:
        client, _ = _client([_FakeResponse(200, {"status": "error"})])
        with pytest.raises(ForecastBackendError):
            client.wait_for_completion(delay=lambda seconds: None)

    def test_max_polls(self) -> None:
        client, _ = _client([_FakeResponse(200, {"status": "running"})] * 2)
        with pytest.raises(ForecastBackendError):
            client.wait_for_completion(delay=lambda seconds: None, max_polls=2)

    def test_cancellation_stops_polling(self) -> None:
        token = CancellationToken()
        client, session = _client([_FakeResponse(200, {"status": "running"})] * 3)
        with pytest.raises(RunCancelledError):
            client.wait_for_completion(cancel_token=token, delay=lambda seconds: token.cancel())
        assert len(session.requests) == 1
