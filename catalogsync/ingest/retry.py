"""Retry with exponential backoff for datastore calls."""

import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Message fragments of failures worth retrying
TRANSIENT_ERROR_PATTERNS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "deadlock",
    "temporary",
    "temporarily",
    "unavailable",
    "econnrefused",
    "enotfound",
    "could not serialize",
)


class RetryError(Exception):
    """An operation failed for good.

    Attributes:
        last_error: Exception raised by the final attempt
        attempts: Number of attempts made
        exhausted: True when every attempt failed with a retryable error,
            False when a non-retryable error stopped the loop
    """

    def __init__(self, last_error: BaseException, attempts: int, exhausted: bool):
        super().__init__(str(last_error))
        self.last_error = last_error
        self.attempts = attempts
        self.exhausted = exhausted


def is_transient_error(error: BaseException) -> bool:
    """Default retryability predicate.

    Errors that carry a boolean ``retryable`` attribute decide for themselves;
    anything else is judged by its message.
    """
    retryable = getattr(error, "retryable", None)
    if isinstance(retryable, bool):
        return retryable
    message = str(error).lower()
    return any(pattern in message for pattern in TRANSIENT_ERROR_PATTERNS)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay after a failed attempt (1-based): base * 2^(attempt-1), capped."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


def retry_with_backoff(
    operation: Callable[[], T],
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
    description: Optional[str] = None,
) -> T:
    """Run an operation, retrying retryable failures with exponential backoff.

    The operation must be safe to repeat: every retry resubmits exactly the
    same work.

    Args:
        operation: Zero-argument callable to run
        is_retryable: Decides whether a raised exception is worth retrying
        max_attempts: Total attempts including the first
        base_delay: Seconds to wait after the first failure
        max_delay: Upper bound for any single wait
        sleep: Wait function (replaced in tests)
        description: Name used in log messages

    Returns:
        The operation's return value

    Raises:
        RetryError: When a non-retryable error occurs or attempts run out
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    name = description or getattr(operation, "__name__", "operation")

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except Exception as e:
            retryable = is_retryable(e)
            if not retryable:
                logger.error(f"{name} failed with a non-retryable error: {e}")
                raise RetryError(e, attempt, exhausted=False) from e
            if attempt == max_attempts:
                logger.error(f"{name} failed after {attempt} attempts: {e}")
                raise RetryError(e, attempt, exhausted=True) from e

            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{name} failed (attempt {attempt}/{max_attempts}), "
                f"retrying in {delay:.1f}s: {e}"
            )
            sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"{name}: retry loop exited without a result")
