"""
Service for dispatching chunked insight runs and tracking their progress.

Runs live in an in-memory registry for the lifetime of the process. Each
run is executed by one background task and is the only writer of its own
record; readers receive copies taken under the registry lock.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Protocol, Sequence

from fastapi import BackgroundTasks

from app.config import (
    ChunkingSettings,
    RateLimitSettings,
    get_chunking_settings,
    get_llm_settings,
    get_rate_limit_settings,
)
from ingestion.loader import RowRecord, detect_format, load_rows
from llm_synthesis.adapter import BaseLLMAdapter, build_adapter
from llm_synthesis.retry import Delay
from llm_synthesis.schema import ResponseMode
from pipeline.cancellation import CancellationToken
from pipeline.orchestrator import InsightPipeline
from pipeline.state import RunPhase, RunProgress, RunResult

logger = logging.getLogger(__name__)


class InsightRunNotFoundError(LookupError):
    """
    Raised when a run id is not present in the registry.
    """


class InsightRunConflictError(RuntimeError):
    """
    Raised when an operation does not fit the run's current state.
    """


class InsightTaskExecutor(Protocol):
    def submit(self, task: Callable[..., None], *args: Any, **kwargs: Any) -> None:
        ...


class FastAPIBackgroundTaskExecutor:
    def __init__(self, background_tasks: BackgroundTasks) -> None:
        self._background_tasks = background_tasks

    def submit(self, task: Callable[..., None], *args: Any, **kwargs: Any) -> None:
        self._background_tasks.add_task(task, *args, **kwargs)


@dataclass
class InsightRunRecord:
    run_id: uuid.UUID
    file_name: str
    row_count: int
    created_at: datetime
    updated_at: datetime
    progress: RunProgress = field(default_factory=RunProgress)
    result: RunResult | None = None
    error_message: str | None = None
    retry_of: uuid.UUID | None = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken, repr=False)

    @property
    def phase(self) -> RunPhase:
        return self.progress.phase

    @property
    def is_active(self) -> bool:
        return not self.phase.is_terminal


class InsightRunService:
    """
    Coordinates run creation, background execution, and status lookup.
    """

    def __init__(
        self,
        *,
        adapter: BaseLLMAdapter,
        chunking_settings: ChunkingSettings,
        rate_limit_settings: RateLimitSettings,
        response_mode: ResponseMode = ResponseMode.STRUCTURED,
        delay: Delay | None = None,
    ) -> None:
        self._adapter = adapter
        self._chunking_settings = chunking_settings
        self._rate_limit_settings = rate_limit_settings
        self._response_mode = response_mode
        self._delay = delay
        self._runs: dict[uuid.UUID, InsightRunRecord] = {}
        self._lock = threading.Lock()

    def create_run(
        self,
        *,
        executor: InsightTaskExecutor,
        data: bytes,
        file_name: str | None,
        content_type: str | None = None,
    ) -> InsightRunRecord:
        """
        Parse the upload and schedule a fresh run over its rows.

        Raises:
            ParseError: The upload is not a usable CSV / forecast workbook.
        """

        rows = load_rows(data, detect_format(file_name, content_type))
        record = self._register(file_name=file_name or "upload", row_count=len(rows))
        self._schedule(executor, record, self._run_fresh, record.run_id, rows)
        return self._copy(record)

    def retry_failed(self, *, executor: InsightTaskExecutor, run_id: uuid.UUID) -> InsightRunRecord:
        """
        Schedule a new run that re-submits the chunks of ``run_id`` that produced
        no partial report.
        """

        with self._lock:
            previous = self._require(run_id)
            if previous.is_active or previous.result is None:
                raise InsightRunConflictError("Run is still in progress.")
            if not previous.result.pending_chunk_indices:
                raise InsightRunConflictError("Run has no failed or unsubmitted chunks to retry.")
            previous_result = previous.result
            file_name = previous.file_name
            row_count = previous.row_count

        record = self._register(file_name=file_name, row_count=row_count, retry_of=run_id)
        self._schedule(executor, record, self._run_retry, record.run_id, previous_result)
        return self._copy(record)

    def get_run(self, run_id: uuid.UUID) -> InsightRunRecord | None:
        with self._lock:
            record = self._runs.get(run_id)
            return self._copy(record) if record is not None else None

    def list_runs(self, limit: int = 100) -> list[InsightRunRecord]:
        with self._lock:
            records = sorted(self._runs.values(), key=lambda item: item.created_at, reverse=True)
            return [self._copy(record) for record in records[:limit]]

    def cancel_run(self, run_id: uuid.UUID) -> InsightRunRecord:
        with self._lock:
            record = self._require(run_id)
            if record.is_active:
                record.cancel_token.cancel()
                logger.info("Insight run cancellation requested id=%s", run_id)
            return self._copy(record)

    # ------------------------------------------------------------------
    # Background execution
    # ------------------------------------------------------------------

    def _run_fresh(self, run_id: uuid.UUID, rows: Sequence[RowRecord]) -> None:
        pipeline = self._build_pipeline(run_id)
        self._execute(run_id, lambda: pipeline.run(rows))

    def _run_retry(self, run_id: uuid.UUID, previous: RunResult) -> None:
        pipeline = self._build_pipeline(run_id)
        self._execute(run_id, lambda: pipeline.retry_failed(previous))

    def _execute(self, run_id: uuid.UUID, run: Callable[[], RunResult]) -> None:
        try:
            result = run()
        except Exception as exc:
            self._mark_failed(run_id, exc)
            return

        with self._lock:
            record = self._runs[run_id]
            record.result = result
            record.progress = result.progress
            record.error_message = result.error
            record.updated_at = _utcnow()

    def _build_pipeline(self, run_id: uuid.UUID) -> InsightPipeline:
        with self._lock:
            token = self._runs[run_id].cancel_token
        return InsightPipeline(
            adapter=self._adapter,
            chunking_settings=self._chunking_settings,
            rate_limit_settings=self._rate_limit_settings,
            response_mode=self._response_mode,
            cancel_token=token,
            delay=self._delay,
            on_progress=lambda progress: self._update_progress(run_id, progress),
        )

    def _update_progress(self, run_id: uuid.UUID, progress: RunProgress) -> None:
        with self._lock:
            record = self._runs[run_id]
            record.progress = progress
            record.updated_at = _utcnow()

    def _mark_failed(self, run_id: uuid.UUID, exc: Exception) -> None:
        error_message = f"{type(exc).__name__}: {exc}"
        logger.exception("Insight run failed id=%s error=%s", run_id, error_message)
        with self._lock:
            record = self._runs[run_id]
            record.progress = replace(record.progress, phase=RunPhase.FAILED, message=error_message[:2000])
            record.error_message = error_message[:2000]
            record.updated_at = _utcnow()

    # ------------------------------------------------------------------
    # Registry helpers
    # ------------------------------------------------------------------

    def _register(
        self,
        *,
        file_name: str,
        row_count: int,
        retry_of: uuid.UUID | None = None,
    ) -> InsightRunRecord:
        now = _utcnow()
        record = InsightRunRecord(
            run_id=uuid.uuid4(),
            file_name=file_name,
            row_count=row_count,
            created_at=now,
            updated_at=now,
            retry_of=retry_of,
        )
        with self._lock:
            self._runs[record.run_id] = record
        logger.info("Insight run registered id=%s file=%s rows=%d", record.run_id, file_name, row_count)
        return record

    def _schedule(
        self,
        executor: InsightTaskExecutor,
        record: InsightRunRecord,
        task: Callable[..., None],
        *args: Any,
    ) -> None:
        try:
            executor.submit(task, *args)
        except Exception as exc:
            self._mark_failed(record.run_id, exc)
            raise

    def _require(self, run_id: uuid.UUID) -> InsightRunRecord:
        record = self._runs.get(run_id)
        if record is None:
            raise InsightRunNotFoundError(f"Insight run not found: {run_id}")
        return record

    @staticmethod
    def _copy(record: InsightRunRecord) -> InsightRunRecord:
        return replace(record, progress=record.progress.snapshot())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def get_insight_run_service() -> InsightRunService:
    """
    Build and cache the run service with env-driven settings.
    """
    llm_settings = get_llm_settings()
    return InsightRunService(
        adapter=build_adapter(llm_settings),
        chunking_settings=get_chunking_settings(),
        rate_limit_settings=get_rate_limit_settings(),
        response_mode=ResponseMode(llm_settings.response_mode),
    )
