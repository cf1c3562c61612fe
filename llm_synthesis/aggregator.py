"""Merges per-chunk partial reports into one final report."""

import logging
from typing import Callable, List, Optional, Sequence

from llm_synthesis.adapter import BaseLLMAdapter
from llm_synthesis.errors import AggregationError, DecodeError, RetryExhaustedError
from llm_synthesis.prompt_builder import MergePromptBuilder
from llm_synthesis.retry import RateGovernor
from llm_synthesis.schema import FinalReport, InsightReport, PartialReport, StructuredResult
from llm_synthesis.validator import decode_report

logger = logging.getLogger(__name__)


class Aggregator:
    """Combines partial reports.

    When every partial is already structured, collections are concatenated
    locally. Otherwise all partials are joined into one merge request that
    asks the model for the structured report shape.
    """

    def __init__(
        self,
        adapter: BaseLLMAdapter,
        governor: RateGovernor,
        prompt_builder: Optional[MergePromptBuilder] = None,
    ) -> None:
        self._adapter = adapter
        self._governor = governor
        self._prompt_builder = prompt_builder or MergePromptBuilder()

    @staticmethod
    def requires_model_call(partials: Sequence[PartialReport]) -> bool:
        return any(not isinstance(partial, StructuredResult) for partial in partials)

    def aggregate(
        self,
        partials: Sequence[PartialReport],
        on_status: Optional[Callable[[str], None]] = None,
    ) -> FinalReport:
        """Produce the final report from ``partials``.

        Raises:
            AggregationError: No partials were given, or the merge call
                could not be completed and decoded.
        """
        if not partials:
            raise AggregationError("No chunk produced a report; nothing to merge.")

        ordered = sorted(partials, key=lambda partial: partial.chunk_index)
        if not self.requires_model_call(ordered):
            reports: List[InsightReport] = [partial.report for partial in ordered]  # type: ignore[union-attr]
            merged = InsightReport.concatenate(reports)
            logger.info("Concatenated %d structured report(s) into %d insight(s)", len(reports), merged.item_count)
            return merged

        return self._merge_with_model(ordered, on_status)

    def _merge_with_model(
        self,
        partials: Sequence[PartialReport],
        on_status: Optional[Callable[[str], None]],
    ) -> FinalReport:
        request = self._prompt_builder.build(partials)

        def _announce_retry(attempt: int, max_attempts: int, error: Exception) -> None:
            if on_status is not None:
                on_status(
                    f"Merge request failed ({type(error).__name__}). Waiting "
                    f"{self._governor.cooldown_seconds:.0f}s before retrying "
                    f"(attempt {attempt}/{max_attempts})..."
                )

        try:
            raw = self._governor.call(
                lambda: self._adapter.generate(request.prompt, request.response_schema),
                label="merge",
                on_retry=_announce_retry,
            )
            report = decode_report(raw)
        except RetryExhaustedError as exc:
            raise AggregationError(
                f"Failed to merge insights after {exc.attempts} attempt(s): {exc.last_error}"
            ) from exc
        except DecodeError as exc:
            raise AggregationError(f"Received invalid merge response: {exc}") from exc

        logger.info("Merged %d partial report(s) into %d insight(s)", len(partials), report.item_count)
        return report
