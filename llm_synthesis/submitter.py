"""Per-chunk analysis submission."""

import logging
from typing import Callable, Optional

from app.logging_utils import log_event
from chunking.partitioner import Chunk
from llm_synthesis.adapter import BaseLLMAdapter
from llm_synthesis.errors import LLMRequestError, ThrottledError
from llm_synthesis.prompt_builder import ChunkPromptBuilder
from llm_synthesis.retry import RateGovernor
from llm_synthesis.schema import NarrativeResult, PartialReport, ResponseMode, StructuredResult
from llm_synthesis.validator import decode_report

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]


class AnalysisSubmitter:
    """Turns one chunk into a ``PartialReport``.

    Transport and throttling failures are retried by the governor; a
    structured response that fails to decode raises ``DecodeError``
    immediately.
    """

    def __init__(
        self,
        adapter: BaseLLMAdapter,
        governor: RateGovernor,
        response_mode: ResponseMode = ResponseMode.STRUCTURED,
        prompt_builder: Optional[ChunkPromptBuilder] = None,
    ) -> None:
        self._adapter = adapter
        self._governor = governor
        self._response_mode = response_mode
        self._prompt_builder = prompt_builder or ChunkPromptBuilder()

    @property
    def response_mode(self) -> ResponseMode:
        return self._response_mode

    def submit(
        self,
        chunk: Chunk,
        total_chunks: int,
        on_status: Optional[StatusCallback] = None,
    ) -> PartialReport:
        request = self._prompt_builder.build(chunk, total_chunks, self._response_mode)
        tokens = self._adapter.count_tokens(request.prompt)
        if tokens is not None:
            log_event(
                logger,
                logging.INFO,
                "insight_chunk_tokens",
                chunk=chunk.index + 1,
                total_chunks=total_chunks,
                tokens=tokens,
            )

        def _announce_retry(attempt: int, max_attempts: int, error: LLMRequestError) -> None:
            if on_status is None:
                return
            reason = "Rate limited" if isinstance(error, ThrottledError) else "Request failed"
            on_status(
                f"{reason} on chunk {chunk.index + 1} of {total_chunks}. "
                f"Waiting {self._governor.cooldown_seconds:.0f}s before retrying "
                f"(attempt {attempt}/{max_attempts})..."
            )

        raw = self._governor.call(
            lambda: self._adapter.generate(request.prompt, request.response_schema),
            label=f"chunk {chunk.index + 1}/{total_chunks}",
            on_retry=_announce_retry,
        )

        if self._response_mode is ResponseMode.NARRATIVE:
            return NarrativeResult(chunk_index=chunk.index, text=raw)

        report = decode_report(raw)
        logger.info(
            "Chunk %d/%d decoded with %d insight(s)",
            chunk.index + 1,
            total_chunks,
            report.item_count,
        )
        return StructuredResult(chunk_index=chunk.index, report=report)
