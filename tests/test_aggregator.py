"""
tests/test_aggregator.py

Local concatenation of structured partials and the model merge pass over
narrative partials.
"""

from __future__ import annotations

import pytest

from app.config import RateLimitSettings
from conftest import ScriptedAdapter, report_json
from llm_synthesis.aggregator import Aggregator
from llm_synthesis.errors import AggregationError, TransportError
from llm_synthesis.prompt_builder import REPORT_SEPARATOR
from llm_synthesis.retry import RateGovernor
from llm_synthesis.schema import NarrativeResult, StructuredResult
from llm_synthesis.validator import decode_report


def _aggregator(adapter, recording_delay) -> Aggregator:
    governor = RateGovernor(RateLimitSettings(max_attempts=3, cooldown_seconds=90.0), delay=recording_delay)
    return Aggregator(adapter, governor)


def _structured(index: int, *keys: str) -> StructuredResult:
    return StructuredResult(chunk_index=index, report=decode_report(report_json(*keys)))


class TestConcatenation:
    def test_concatenates_in_chunk_order_without_model_call(self, recording_delay) -> None:
        adapter = ScriptedAdapter()
        partials = [_structured(1, "SKU 2 - Target"), _structured(0, "SKU 1 - Amazon")]

        report = _aggregator(adapter, recording_delay).aggregate(partials)

        assert [item.sku_channel for item in report.biggest_moves] == ["SKU 1 - Amazon", "SKU 2 - Target"]
        assert adapter.calls == []

    def test_exact_duplicates_from_overlap_are_kept_once(self, recording_delay) -> None:
        partials = [_structured(0, "SKU 1 - Amazon"), _structured(1, "SKU 1 - Amazon", "SKU 2 - Target")]
        report = _aggregator(ScriptedAdapter(), recording_delay).aggregate(partials)
        assert [item.sku_channel for item in report.biggest_moves] == ["SKU 1 - Amazon", "SKU 2 - Target"]

    def test_no_partials_raises(self, recording_delay) -> None:
        with pytest.raises(AggregationError):
            _aggregator(ScriptedAdapter(), recording_delay).aggregate([])


class TestModelMerge:
    def test_narratives_are_joined_with_separator_in_one_request(self, recording_delay) -> None:
        adapter = ScriptedAdapter([report_json("SKU 9 - Walmart", collection="steady_trends")])
        partials = [
            NarrativeResult(chunk_index=1, text="second report"),
            NarrativeResult(chunk_index=0, text="first report"),
        ]

        report = _aggregator(adapter, recording_delay).aggregate(partials)

        assert len(adapter.calls) == 1
        prompt, schema = adapter.calls[0]
        assert f"first report{REPORT_SEPARATOR}second report" in prompt
        assert schema is not None
        assert report.steady_trends[0].sku_channel == "SKU 9 - Walmart"

    def test_requires_model_call_only_with_narratives(self) -> None:
        assert Aggregator.requires_model_call([_structured(0, "SKU 1 - Amazon")]) is False
        assert Aggregator.requires_model_call(
            [_structured(0, "SKU 1 - Amazon"), NarrativeResult(chunk_index=1, text="x")]
        ) is True

    def test_merge_retry_exhaustion_is_aggregation_error(self, recording_delay) -> None:
        adapter = ScriptedAdapter(default=TransportError("503", status_code=503))
        with pytest.raises(AggregationError):
            _aggregator(adapter, recording_delay).aggregate([NarrativeResult(chunk_index=0, text="x")])
        assert len(adapter.calls) == 3

    def test_undecodable_merge_response_is_aggregation_error(self, recording_delay) -> None:
        adapter = ScriptedAdapter(["Here is your summary!"])
        with pytest.raises(AggregationError):
            _aggregator(adapter, recording_delay).aggregate([NarrativeResult(chunk_index=0, text="x")])
        assert len(adapter.calls) == 1
