"""
pipeline/state.py

Run state for the chunked insight pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from chunking.partitioner import Chunk
from llm_synthesis.schema import FinalReport, PartialReport


class RunPhase(str, Enum):
    IDLE = "idle"
    PARTITIONING = "partitioning"
    SUBMITTING = "submitting"
    COOLING = "cooling"
    AGGREGATING = "aggregating"
    VALIDATING = "validating"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_PHASES


_TERMINAL_PHASES = frozenset({RunPhase.DONE, RunPhase.FAILED, RunPhase.CANCELLED})


@dataclass
class RunProgress:
    """
    Mutable progress snapshot owned by one run's orchestrator.
    """

    phase: RunPhase = RunPhase.IDLE
    chunk_index: Optional[int] = None
    total_chunks: int = 0
    message: str = ""
    percent: int = 0

    def snapshot(self) -> "RunProgress":
        return replace(self)


@dataclass(frozen=True)
class ChunkFailure:
    """
    A chunk that produced no partial report.
    """

    chunk_index: int
    error_type: str
    message: str
    attempts: int


@dataclass(frozen=True)
class RunResult:
    """
    Terminal outcome of one run.

    ``chunks`` and ``partials`` are kept so that a later run can re-submit
    every chunk that produced no partial: the ones listed in ``failures``
    and, for a cancelled run, the ones never submitted.
    """

    phase: RunPhase
    report: Optional[FinalReport]
    failures: tuple[ChunkFailure, ...] = ()
    partials: tuple[PartialReport, ...] = ()
    chunks: tuple[Chunk, ...] = ()
    error: Optional[str] = None
    progress: RunProgress = field(default_factory=RunProgress)

    @property
    def succeeded(self) -> bool:
        return self.phase is RunPhase.DONE

    @property
    def failed_chunk_indices(self) -> tuple[int, ...]:
        return tuple(failure.chunk_index for failure in self.failures)

    @property
    def pending_chunk_indices(self) -> tuple[int, ...]:
        done = {partial.chunk_index for partial in self.partials}
        return tuple(index for index in range(len(self.chunks)) if index not in done)
