"""
chunking/partitioner.py

Splits parsed rows into overlapping windows sized to an LLM token budget.

Adjacent windows share ``overlap_size`` rows so that period-over-period
comparisons spanning a boundary are visible to at least one request.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from app.config import ChunkingSettings
from ingestion.loader import RowRecord


class PartitionError(ValueError):
    """
    Raised when partition preconditions are not met.
    """


@dataclass(frozen=True)
class Chunk:
    """
    One window of rows: ``rows == all_rows[start:end]``.
    """

    index: int
    start: int
    end: int
    rows: tuple[RowRecord, ...]

    def __len__(self) -> int:
        return len(self.rows)


def partition_rows(
    rows: Sequence[RowRecord],
    chunk_size: int,
    overlap_size: int,
) -> list[Chunk]:
    """
    Split ``rows`` into windows of at most ``chunk_size`` rows.

    Each window after the first starts ``overlap_size`` rows before the end
    of the previous one. The last window always ends at the last row.

    Raises:
        PartitionError: no rows, ``chunk_size < 1``, or an overlap that would
            stop the window from advancing.
    """

    if chunk_size < 1:
        raise PartitionError(f"chunk_size must be at least 1, got {chunk_size}.")
    if overlap_size < 0:
        raise PartitionError(f"overlap_size must not be negative, got {overlap_size}.")
    if overlap_size >= chunk_size:
        raise PartitionError(
            f"overlap_size ({overlap_size}) must be smaller than chunk_size ({chunk_size})."
        )

    total = len(rows)
    if total == 0:
        raise PartitionError("Cannot partition an empty row sequence.")

    chunks: list[Chunk] = []
    start = 0
    while start < total:
        end = min(start + chunk_size, total)
        chunks.append(
            Chunk(index=len(chunks), start=start, end=end, rows=tuple(rows[start:end]))
        )
        if end == total:
            break
        start = max(0, end - overlap_size)
    return chunks


class ChunkPartitioner:
    """
    Partitioner bound to one set of chunk sizing settings.
    """

    def __init__(self, settings: ChunkingSettings) -> None:
        self._chunk_size = settings.chunk_size
        self._overlap_size = settings.overlap_size

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    @property
    def overlap_size(self) -> int:
        return self._overlap_size

    def partition(self, rows: Sequence[RowRecord]) -> list[Chunk]:
        return partition_rows(rows, self._chunk_size, self._overlap_size)
