"""Error taxonomy for requests to the text-generation API.

Transport-level failures (``ThrottledError``, ``TransportError``) are
retryable; ``DecodeError`` is not, since re-asking for a malformed response
rarely produces a well-formed one.
"""

from typing import List, Optional


class LLMRequestError(RuntimeError):
    """Base class for failures talking to the text-generation API."""


class ThrottledError(LLMRequestError):
    """The remote API signalled rate limiting (HTTP 429).

    Attributes:
        retry_after: Server-suggested wait in seconds, when provided.
    """

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class TransportError(LLMRequestError):
    """Network failure, timeout, or non-success HTTP status.

    Attributes:
        status_code: HTTP status when a response was received.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RetryExhaustedError(LLMRequestError):
    """Raised when every allowed attempt failed with a retryable error.

    Attributes:
        attempts: Total number of attempts made.
        last_error: The error from the final attempt.
        history: Errors from every failed attempt, oldest first.
    """

    def __init__(
        self,
        attempts: int,
        last_error: LLMRequestError,
        history: List[LLMRequestError],
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        self.history = history
        super().__init__(
            f"Request failed after {attempts} attempt(s). Last error: {last_error}"
        )


class DecodeError(ValueError):
    """Raised when a response does not match the expected report shape.

    Attributes:
        stage: Which decoding step failed ("envelope", "json_parse" or "schema").
        errors: List of human-readable error descriptions.
        raw_response: The original payload that failed decoding.
    """

    def __init__(
        self,
        stage: str,
        errors: List[str],
        raw_response: str,
    ) -> None:
        self.stage = stage
        self.errors = errors
        self.raw_response = raw_response
        message = (
            f"LLM output decoding failed at stage '{stage}': "
            + "; ".join(errors)
        )
        super().__init__(message)


class AggregationError(RuntimeError):
    """Raised when partial reports cannot be merged into a final report."""
