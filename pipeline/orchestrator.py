"""
pipeline/orchestrator.py

Explicit state machine driving one chunked insight run:

    idle -> partitioning -> submitting(i) -> cooling -> ... -> aggregating
         -> validating -> done | failed | cancelled

Each call to :meth:`InsightPipeline.step` performs the work of the current
phase and moves to the next one, so a caller (thread, task runner or test)
decides when the run advances. Chunks are submitted strictly one at a time
and a cooldown separates every pair of submissions. Waiting is delegated to
the injected delay through the :class:`RateGovernor`, never to a real timer
held here.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence

from app.config import ChunkingSettings, RateLimitSettings
from app.logging_utils import log_event, timed_event
from chunking.partitioner import Chunk, ChunkPartitioner, PartitionError
from ingestion.loader import RowRecord
from llm_synthesis.adapter import BaseLLMAdapter
from llm_synthesis.aggregator import Aggregator
from llm_synthesis.errors import AggregationError, DecodeError, RetryExhaustedError
from llm_synthesis.repair import repair_report
from llm_synthesis.retry import Delay, RateGovernor
from llm_synthesis.schema import FinalReport, PartialReport, ResponseMode
from llm_synthesis.submitter import AnalysisSubmitter
from pipeline.cancellation import CancellationToken, RunCancelledError
from pipeline.state import ChunkFailure, RunPhase, RunProgress, RunResult

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[RunProgress], None]

_SUBMISSION_PERCENT_CEILING = 85
_PRE_MERGE_PERCENT = 88
_AGGREGATING_PERCENT = 90
_VALIDATING_PERCENT = 95

_UNSET = object()


class PipelineStateError(RuntimeError):
    """
    Raised when an operation is not allowed in the current phase.
    """


class InsightPipeline:
    """
    One run of the chunk -> submit -> aggregate -> repair pipeline.

    Instances are single-use: construct, ``start`` (or ``start_retry``),
    then ``step`` until the phase is terminal, or call ``run`` to do all of
    that at once.
    """

    def __init__(
        self,
        *,
        adapter: BaseLLMAdapter,
        chunking_settings: ChunkingSettings,
        rate_limit_settings: RateLimitSettings,
        response_mode: ResponseMode = ResponseMode.STRUCTURED,
        cancel_token: CancellationToken | None = None,
        delay: Delay | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._cancel_token = cancel_token or CancellationToken()
        self._governor = RateGovernor(rate_limit_settings, cancel_token=self._cancel_token, delay=delay)
        self._partitioner = ChunkPartitioner(chunking_settings)
        self._submitter = AnalysisSubmitter(adapter, self._governor, response_mode)
        self._aggregator = Aggregator(adapter, self._governor)
        self._on_progress = on_progress

        self._progress = RunProgress()
        self._rows: Sequence[RowRecord] = ()
        self._chunks: list[Chunk] = []
        self._queue: list[int] = []
        self._cursor = 0
        self._after_cooling = RunPhase.SUBMITTING
        self._partials: list[PartialReport] = []
        self._failures: list[ChunkFailure] = []
        self._report: Optional[FinalReport] = None
        self._error: Optional[str] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def phase(self) -> RunPhase:
        return self._progress.phase

    @property
    def progress(self) -> RunProgress:
        return self._progress.snapshot()

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel_token

    def start(self, rows: Sequence[RowRecord]) -> None:
        """
        Begin a fresh run over ``rows``.
        """

        self._require_phase(RunPhase.IDLE)
        self._rows = rows
        self._transition(RunPhase.PARTITIONING, message="Parsing and chunking rows...", percent=0)

    def start_retry(self, previous: RunResult) -> None:
        """
        Begin a run that re-submits every chunk of ``previous`` without a
        partial report.

        That covers chunks that failed and, when ``previous`` was cancelled,
        chunks it never reached. Partial reports that ``previous`` already
        holds are kept and merged with whatever the re-submitted chunks
        produce.
        """

        self._require_phase(RunPhase.IDLE)
        if not previous.phase.is_terminal:
            raise PipelineStateError("Only a finished run can be retried.")
        pending = previous.pending_chunk_indices
        if not pending:
            raise PipelineStateError("Previous run has no failed or unsubmitted chunks to retry.")

        self._chunks = list(previous.chunks)
        self._partials = list(previous.partials)
        self._queue = list(pending)
        self._cursor = 0
        log_event(logger, logging.INFO, "insight_run_retry", chunks=self._queue, total_chunks=len(self._chunks))
        self._enter_submitting()

    def step(self) -> RunPhase:
        """
        Perform the current phase's work and advance to the next phase.
        """

        handlers = {
            RunPhase.PARTITIONING: self._partition,
            RunPhase.SUBMITTING: self._submit_next,
            RunPhase.COOLING: self._cool_down,
            RunPhase.AGGREGATING: self._aggregate,
            RunPhase.VALIDATING: self._validate,
        }
        handler = handlers.get(self.phase)
        if handler is None:
            raise PipelineStateError(f"Cannot step a run in phase '{self.phase.value}'.")

        try:
            handler()
        except RunCancelledError:
            log_event(logger, logging.INFO, "insight_run_cancelled", phase=self.phase.value)
            self._transition(RunPhase.CANCELLED, message="Run cancelled.")
        return self.phase

    def run(self, rows: Sequence[RowRecord]) -> RunResult:
        self.start(rows)
        return self.run_to_completion()

    def retry_failed(self, previous: RunResult) -> RunResult:
        self.start_retry(previous)
        return self.run_to_completion()

    def run_to_completion(self) -> RunResult:
        while not self.phase.is_terminal:
            self.step()
        return self.result()

    def cancel(self) -> None:
        self._cancel_token.cancel()

    def result(self) -> RunResult:
        if not self.phase.is_terminal:
            raise PipelineStateError("Run has not finished yet.")
        return RunResult(
            phase=self.phase,
            report=self._report if self.phase is RunPhase.DONE else None,
            failures=tuple(self._failures),
            partials=tuple(self._partials),
            chunks=tuple(self._chunks),
            error=self._error,
            progress=self._progress.snapshot(),
        )

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------

    def _partition(self) -> None:
        self._cancel_token.raise_if_cancelled()
        try:
            self._chunks = self._partitioner.partition(self._rows)
        except PartitionError as exc:
            self._fail(str(exc))
            return

        self._queue = list(range(len(self._chunks)))
        self._cursor = 0
        log_event(
            logger,
            logging.INFO,
            "insight_run_partitioned",
            rows=len(self._rows),
            chunks=len(self._chunks),
            chunk_size=self._partitioner.chunk_size,
            overlap_size=self._partitioner.overlap_size,
        )
        self._enter_submitting()

    def _submit_next(self) -> None:
        chunk = self._chunks[self._queue[self._cursor]]
        total = len(self._chunks)
        with timed_event(logger, "insight_chunk_submitted", chunk=chunk.index + 1, total_chunks=total) as outcome:
            try:
                partial = self._submitter.submit(chunk, total, on_status=self._set_message)
            except RetryExhaustedError as exc:
                outcome["outcome"] = "failed"
                self._record_failure(chunk, type(exc.last_error).__name__, str(exc), exc.attempts)
            except DecodeError as exc:
                outcome["outcome"] = "failed"
                self._record_failure(chunk, type(exc).__name__, str(exc), 1)
            else:
                outcome["outcome"] = "completed"
                self._partials.append(partial)

        self._cursor += 1
        if self._cursor < len(self._queue):
            self._after_cooling = RunPhase.SUBMITTING
            self._transition(
                RunPhase.COOLING,
                message=f"Waiting {self._governor.cooldown_seconds:.0f}s before next chunk...",
            )
        elif self._partials and self._aggregator.requires_model_call(self._partials):
            self._after_cooling = RunPhase.AGGREGATING
            self._transition(
                RunPhase.COOLING,
                message=f"Waiting {self._governor.cooldown_seconds:.0f}s before merging all chunk insights...",
                percent=_PRE_MERGE_PERCENT,
            )
        else:
            self._enter_aggregating()

    def _cool_down(self) -> None:
        self._governor.cooldown(self._progress.message)
        if self._after_cooling is RunPhase.AGGREGATING:
            self._enter_aggregating()
        else:
            self._enter_submitting()

    def _aggregate(self) -> None:
        try:
            report = self._aggregator.aggregate(self._partials, on_status=self._set_message)
        except AggregationError as exc:
            self._fail(self._with_failure_summary(str(exc)))
            return
        self._report = report
        self._transition(RunPhase.VALIDATING, message="Checking insights...", percent=_VALIDATING_PERCENT)

    def _validate(self) -> None:
        if self._report is None:
            self._fail("No report available to validate.")
            return
        self._report = repair_report(self._report)
        if self._failures:
            message = (
                f"Completed with {len(self._failures)} failed chunk(s) of {len(self._chunks)}."
            )
        else:
            message = "All chunks processed and merged."
        log_event(
            logger,
            logging.INFO,
            "insight_run_completed",
            insights=self._report.item_count,
            failed_chunks=len(self._failures),
        )
        self._transition(RunPhase.DONE, chunk_index=None, message=message, percent=100)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enter_submitting(self) -> None:
        index = self._queue[self._cursor]
        percent = int(self._cursor * _SUBMISSION_PERCENT_CEILING / len(self._queue))
        self._transition(
            RunPhase.SUBMITTING,
            chunk_index=index,
            total_chunks=len(self._chunks),
            message=f"Processing chunk {index + 1} of {len(self._chunks)}...",
            percent=percent,
        )

    def _enter_aggregating(self) -> None:
        if self._aggregator.requires_model_call(self._partials):
            message = "Merging all chunk insights..."
        else:
            message = "Combining chunk insights..."
        self._transition(RunPhase.AGGREGATING, chunk_index=None, message=message, percent=_AGGREGATING_PERCENT)

    def _record_failure(self, chunk: Chunk, error_type: str, message: str, attempts: int) -> None:
        self._failures.append(
            ChunkFailure(chunk_index=chunk.index, error_type=error_type, message=message, attempts=attempts)
        )
        log_event(
            logger,
            logging.ERROR,
            "insight_chunk_failed",
            chunk=chunk.index + 1,
            error_type=error_type,
            attempts=attempts,
            error=message,
        )

    def _with_failure_summary(self, message: str) -> str:
        if not self._failures:
            return message
        return f"{message} ({len(self._failures)} chunk(s) failed earlier.)"

    def _fail(self, message: str) -> None:
        self._error = message
        log_event(logger, logging.ERROR, "insight_run_failed", error=message)
        self._transition(RunPhase.FAILED, message=message)

    def _require_phase(self, phase: RunPhase) -> None:
        if self.phase is not phase:
            raise PipelineStateError(
                f"Expected phase '{phase.value}', run is in '{self.phase.value}'."
            )

    def _set_message(self, message: str) -> None:
        self._progress.message = message
        self._publish()

    def _transition(
        self,
        phase: RunPhase,
        *,
        chunk_index: object = _UNSET,
        total_chunks: int | None = None,
        message: str | None = None,
        percent: int | None = None,
    ) -> None:
        self._progress.phase = phase
        if chunk_index is not _UNSET:
            self._progress.chunk_index = chunk_index  # type: ignore[assignment]
        if total_chunks is not None:
            self._progress.total_chunks = total_chunks
        if message is not None:
            self._progress.message = message
        if percent is not None:
            self._progress.percent = max(self._progress.percent, percent)
        self._publish()

    def _publish(self) -> None:
        if self._on_progress is not None:
            self._on_progress(self._progress.snapshot())
