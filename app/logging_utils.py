"""
Structured logging helpers for insight runs.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    **fields: Any,
) -> None:
    """
    Emit one structured log line as compact JSON.
    """

    if not logger.isEnabledFor(level):
        return
    payload = {"event": event, **fields}
    logger.log(level, json.dumps(payload, default=str, sort_keys=True))


@contextmanager
def timed_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **fields: Any,
) -> Iterator[dict[str, Any]]:
    """
    Log ``event`` with its wall-clock duration when the block exits.

    The yielded dict is merged into the log line, so the block can attach
    its outcome. An exception escaping the block is recorded as ``error``.
    """

    started = time.perf_counter()
    outcome: dict[str, Any] = {}
    try:
        yield outcome
    except BaseException as exc:
        outcome.setdefault("error", type(exc).__name__)
        raise
    finally:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 1)
        log_event(logger, level, event, elapsed_ms=elapsed_ms, **fields, **outcome)
