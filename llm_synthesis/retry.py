"""Rate governor for calls to the text-generation API.

Retries only on throttling and transport failures, with a fixed cooldown
between attempts. Does NOT retry on decode errors. Also owns the mandated
pause between consecutive chunk submissions.
"""

import logging
from typing import Callable, List, Optional, TypeVar

from app.config import RateLimitSettings
from llm_synthesis.errors import LLMRequestError, RetryExhaustedError, ThrottledError, TransportError
from pipeline.cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

Delay = Callable[[float], None]
RetryCallback = Callable[[int, int, LLMRequestError], None]

_RETRYABLE_ERRORS = (ThrottledError, TransportError)


class RateGovernor:
    """Enforces bounded attempts and fixed cooldowns for one run.

    Every wait goes through ``delay`` and is followed by a cancellation
    check. Without an explicit ``delay`` the token's own interruptible
    sleep is used.

    Args:
        settings: Attempt cap and cooldown length.
        cancel_token: Token checked before each attempt and after each wait.
        delay: Callable that blocks for the given number of seconds.
    """

    def __init__(
        self,
        settings: RateLimitSettings,
        cancel_token: Optional[CancellationToken] = None,
        delay: Optional[Delay] = None,
    ) -> None:
        self._max_attempts = max(1, settings.max_attempts)
        self._cooldown_seconds = max(0.0, settings.cooldown_seconds)
        self._cancel_token = cancel_token or CancellationToken()
        self._delay = delay or self._cancel_token.sleep

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown_seconds

    def cooldown(self, reason: str) -> None:
        """Wait one full cooldown period."""
        logger.info("Cooling down %.0fs: %s", self._cooldown_seconds, reason)
        self._wait(self._cooldown_seconds)

    def call(
        self,
        operation: Callable[[], T],
        label: str = "request",
        on_retry: Optional[RetryCallback] = None,
    ) -> T:
        """Run ``operation`` with retry on throttling and transport errors.

        Args:
            operation: Zero-argument callable performing one request.
            label: Name used in log lines.
            on_retry: Called as ``on_retry(attempt, max_attempts, error)``
                before each cooldown that precedes a retry.

        Returns:
            Whatever ``operation`` returns on its first successful attempt.

        Raises:
            RetryExhaustedError: If all attempts fail with retryable errors.
            RunCancelledError: If the run is cancelled while waiting.
            Exception: Any non-retryable error raised by ``operation``.
        """
        errors: List[LLMRequestError] = []

        for attempt in range(1, self._max_attempts + 1):
            self._cancel_token.raise_if_cancelled()
            try:
                result = operation()
            except _RETRYABLE_ERRORS as exc:
                errors.append(exc)
                logger.warning(
                    "%s attempt %d/%d failed (%s): %s",
                    label,
                    attempt,
                    self._max_attempts,
                    type(exc).__name__,
                    exc,
                )
                if attempt >= self._max_attempts:
                    break
                if on_retry is not None:
                    on_retry(attempt, self._max_attempts, exc)
                self._wait(self._cooldown_seconds)
                continue

            if attempt > 1:
                logger.info("%s succeeded on attempt %d/%d", label, attempt, self._max_attempts)
            return result

        logger.error("%s exhausted %d attempt(s)", label, self._max_attempts)
        raise RetryExhaustedError(
            attempts=len(errors),
            last_error=errors[-1],
            history=errors,
        )

    def _wait(self, seconds: float) -> None:
        self._cancel_token.raise_if_cancelled()
        self._delay(seconds)
        self._cancel_token.raise_if_cancelled()
