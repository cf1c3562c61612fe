"""
pipeline/cancellation.py

Cooperative cancellation for insight runs.
"""

from __future__ import annotations

import threading


class RunCancelledError(RuntimeError):
    """
    Raised at a suspension point once the run's token has been cancelled.
    """


class CancellationToken:
    """
    Thread-safe cancellation flag checked at every wait of a run.

    ``sleep`` returns early as soon as ``cancel`` is called from another
    thread, so a cancelled run never sits out the rest of a cooldown.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError("Insight run was cancelled.")

    def sleep(self, seconds: float) -> None:
        """
        Wait up to ``seconds``; raise ``RunCancelledError`` if cancelled.
        """

        if seconds > 0:
            self._event.wait(seconds)
        self.raise_if_cancelled()
