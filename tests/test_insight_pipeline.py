"""
tests/test_insight_pipeline.py

End-to-end behaviour of the run state machine with a scripted adapter and
recorded delays.

Coverage
--------
- Happy path over five chunks, cooldown between every pair
- One undecodable chunk is skipped and reported; the rest still merge
- Narrative mode: merge pass after a pre-merge cooldown
- Total failure and partition failure end in FAILED
- Cancellation during a cooldown
- Re-submitting failed chunks and chunks a cancelled run never reached
- Progress never decreases
"""

from __future__ import annotations

import re

import pytest

from app.config import ChunkingSettings, RateLimitSettings
from conftest import RecordingDelay, ScriptedAdapter, report_json
from llm_synthesis.errors import ThrottledError
from llm_synthesis.schema import ResponseMode
from pipeline.cancellation import CancellationToken
from pipeline.orchestrator import InsightPipeline, PipelineStateError
from pipeline.state import RunPhase, RunProgress

# 20-row chunks with a 2-row overlap; 90 rows give exactly five chunks.
_CHUNKING = ChunkingSettings(token_budget=1100, tokens_per_row=55, overlap_ratio=0.1)
_RATE_LIMITS = RateLimitSettings(max_attempts=3, cooldown_seconds=90.0)
_CHUNK_RE = re.compile(r"chunk (\d+) of (\d+)")


def _chunk_number(prompt: str) -> int:
    match = _CHUNK_RE.search(prompt)
    assert match is not None, "prompt does not name its chunk"
    return int(match.group(1))


def _per_chunk(failing: dict | None = None):
    """Respond with one finding per chunk, or the configured failure."""
    failing = failing or {}

    def respond(prompt: str):
        number = _chunk_number(prompt)
        if number in failing:
            return failing[number]
        return report_json(f"SKU {number} - Amazon")

    return respond


def _pipeline(adapter, delay, **kwargs) -> InsightPipeline:
    return InsightPipeline(
        adapter=adapter,
        chunking_settings=_CHUNKING,
        rate_limit_settings=_RATE_LIMITS,
        delay=delay,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Successful runs
# ---------------------------------------------------------------------------


class TestHappyPath:
    def test_five_chunks_are_submitted_in_order_with_cooldowns(self, rows, recording_delay) -> None:
        adapter = ScriptedAdapter(default=_per_chunk())
        result = _pipeline(adapter, recording_delay).run(rows(90))

        assert result.phase is RunPhase.DONE
        assert result.succeeded
        assert [_chunk_number(prompt) for prompt, _ in adapter.calls] == [1, 2, 3, 4, 5]
        assert recording_delay.waits == [90.0] * 4
        assert [item.sku_channel for item in result.report.biggest_moves] == [
            f"SKU {number} - Amazon" for number in range(1, 6)
        ]
        assert result.failures == ()
        assert result.progress.percent == 100
        assert result.progress.message == "All chunks processed and merged."

    def test_single_chunk_needs_no_cooldown(self, rows, recording_delay) -> None:
        adapter = ScriptedAdapter(default=_per_chunk())
        result = _pipeline(adapter, recording_delay).run(rows(5))
        assert result.phase is RunPhase.DONE
        assert recording_delay.waits == []

    def test_phases_follow_the_state_machine(self, rows, recording_delay) -> None:
        seen: list[RunProgress] = []
        adapter = ScriptedAdapter(default=_per_chunk())
        _pipeline(adapter, recording_delay, on_progress=seen.append).run(rows(40))

        phases = [progress.phase for progress in seen]
        compressed = [phase for index, phase in enumerate(phases) if index == 0 or phases[index - 1] is not phase]
        assert compressed == [
            RunPhase.PARTITIONING,
            RunPhase.SUBMITTING,
            RunPhase.COOLING,
            RunPhase.SUBMITTING,
            RunPhase.COOLING,
            RunPhase.SUBMITTING,
            RunPhase.AGGREGATING,
            RunPhase.VALIDATING,
            RunPhase.DONE,
        ]

    def test_progress_never_decreases(self, rows, recording_delay) -> None:
        percents: list[int] = []
        adapter = ScriptedAdapter(default=_per_chunk({2: ThrottledError("429")}))
        _pipeline(
            adapter,
            recording_delay,
            on_progress=lambda progress: percents.append(progress.percent),
        ).run(rows(90))

        assert percents == sorted(percents)
        assert percents[-1] == 100

    def test_multi_entity_findings_are_repaired(self, rows, recording_delay) -> None:
        adapter = ScriptedAdapter(
            default=lambda prompt: report_json("Multiple SKUs on Amazon")
        )
        result = _pipeline(adapter, recording_delay).run(rows(5))
        assert result.report.biggest_moves[0].needs_followup is True


class TestNarrativeMode:
    def test_merge_pass_after_pre_merge_cooldown(self, rows, recording_delay) -> None:
        def respond(prompt: str) -> str:
            if "Combine and summarize" in prompt:
                return report_json("SKU 1 - Amazon", "SKU 2 - Amazon")
            return f"Chunk {_chunk_number(prompt)}: SKU {_chunk_number(prompt)} - Amazon rose."

        adapter = ScriptedAdapter(default=respond)
        result = _pipeline(adapter, recording_delay, response_mode=ResponseMode.NARRATIVE).run(rows(40))

        assert result.phase is RunPhase.DONE
        assert len(adapter.calls) == 4
        assert adapter.calls[-1][1] is not None
        assert "Chunk 1: SKU 1" in adapter.calls[-1][0]
        assert recording_delay.waits == [90.0] * 3
        assert len(result.report.biggest_moves) == 2


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestChunkFailures:
    def test_undecodable_second_chunk_is_skipped_and_reported(self, rows, recording_delay) -> None:
        adapter = ScriptedAdapter(default=_per_chunk({2: "this is not json"}))
        result = _pipeline(adapter, recording_delay).run(rows(90))

        assert result.phase is RunPhase.DONE
        assert result.failed_chunk_indices == (1,)
        assert result.failures[0].error_type == "DecodeError"
        assert result.failures[0].attempts == 1
        assert len(result.partials) == 4
        assert [item.sku_channel for item in result.report.biggest_moves] == [
            "SKU 1 - Amazon",
            "SKU 3 - Amazon",
            "SKU 4 - Amazon",
            "SKU 5 - Amazon",
        ]
        assert result.progress.message == "Completed with 1 failed chunk(s) of 5."
        # Five submissions, no retry of the decode failure.
        assert len(adapter.calls) == 5

    def test_throttled_chunk_is_attempted_three_times_then_skipped(self, rows, recording_delay) -> None:
        adapter = ScriptedAdapter(default=_per_chunk({3: ThrottledError("429")}))
        result = _pipeline(adapter, recording_delay).run(rows(90))

        assert result.phase is RunPhase.DONE
        assert result.failures[0].chunk_index == 2
        assert result.failures[0].error_type == "ThrottledError"
        assert result.failures[0].attempts == 3
        assert [_chunk_number(prompt) for prompt, _ in adapter.calls].count(3) == 3
        # Four between-chunk cooldowns plus two retry cooldowns.
        assert recording_delay.waits == [90.0] * 6

    def test_every_chunk_failing_ends_in_failed(self, rows, recording_delay) -> None:
        adapter = ScriptedAdapter(default="garbage")
        result = _pipeline(adapter, recording_delay).run(rows(40))

        assert result.phase is RunPhase.FAILED
        assert result.report is None
        assert len(result.failures) == 3
        assert result.error

    def test_empty_input_fails_during_partitioning(self, recording_delay) -> None:
        adapter = ScriptedAdapter()
        result = _pipeline(adapter, recording_delay).run([])

        assert result.phase is RunPhase.FAILED
        assert adapter.calls == []

    def test_overlap_not_smaller_than_chunk_fails_fast(self, rows, recording_delay) -> None:
        adapter = ScriptedAdapter()
        pipeline = InsightPipeline(
            adapter=adapter,
            chunking_settings=ChunkingSettings(token_budget=1, tokens_per_row=1, overlap_ratio=1.0),
            rate_limit_settings=_RATE_LIMITS,
            delay=recording_delay,
        )
        result = pipeline.run(rows(10))

        assert result.phase is RunPhase.FAILED
        assert adapter.calls == []


# ---------------------------------------------------------------------------
# Cancellation and retry
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_cancel_during_cooldown_stops_the_run(self, rows) -> None:
        token = CancellationToken()
        adapter = ScriptedAdapter(default=_per_chunk())
        delay = RecordingDelay(on_wait=lambda seconds: token.cancel())
        result = _pipeline(adapter, delay, cancel_token=token).run(rows(90))

        assert result.phase is RunPhase.CANCELLED
        assert result.report is None
        assert len(adapter.calls) == 1
        assert result.progress.message == "Run cancelled."

    def test_cancel_before_start(self, rows, recording_delay) -> None:
        adapter = ScriptedAdapter(default=_per_chunk())
        pipeline = _pipeline(adapter, recording_delay)
        pipeline.cancel()
        result = pipeline.run(rows(10))

        assert result.phase is RunPhase.CANCELLED
        assert adapter.calls == []


class TestRetryFailed:
    def test_only_failed_chunks_are_resubmitted(self, rows, recording_delay) -> None:
        first = _pipeline(
            ScriptedAdapter(default=_per_chunk({2: "not json"})),
            recording_delay,
        ).run(rows(90))
        assert first.failed_chunk_indices == (1,)

        adapter = ScriptedAdapter(default=_per_chunk())
        second = _pipeline(adapter, RecordingDelay()).retry_failed(first)

        assert second.phase is RunPhase.DONE
        assert second.failures == ()
        assert [_chunk_number(prompt) for prompt, _ in adapter.calls] == [2]
        assert [item.sku_channel for item in second.report.biggest_moves] == [
            f"SKU {number} - Amazon" for number in range(1, 6)
        ]

    def test_cancelled_run_resubmits_failed_and_unsubmitted_chunks(self, rows) -> None:
        token = CancellationToken()
        delay = RecordingDelay(on_wait=lambda seconds: token.cancel() if len(delay.waits) == 2 else None)
        first = _pipeline(
            ScriptedAdapter(default=_per_chunk({1: "not json"})),
            delay,
            cancel_token=token,
        ).run(rows(90))
        assert first.phase is RunPhase.CANCELLED
        assert first.failed_chunk_indices == (0,)
        assert first.pending_chunk_indices == (0, 2, 3, 4)

        adapter = ScriptedAdapter(default=_per_chunk())
        second = _pipeline(adapter, RecordingDelay()).retry_failed(first)

        assert second.phase is RunPhase.DONE
        assert second.failures == ()
        assert [_chunk_number(prompt) for prompt, _ in adapter.calls] == [1, 3, 4, 5]
        assert sorted(item.sku_channel for item in second.report.biggest_moves) == [
            f"SKU {number} - Amazon" for number in range(1, 6)
        ]

    def test_retry_requires_failures(self, rows, recording_delay) -> None:
        first = _pipeline(ScriptedAdapter(default=_per_chunk()), recording_delay).run(rows(10))
        with pytest.raises(PipelineStateError):
            _pipeline(ScriptedAdapter(), recording_delay).retry_failed(first)

    def test_step_after_terminal_phase_raises(self, rows, recording_delay) -> None:
        pipeline = _pipeline(ScriptedAdapter(default=_per_chunk()), recording_delay)
        pipeline.run(rows(10))
        with pytest.raises(PipelineStateError):
            pipeline.step()
