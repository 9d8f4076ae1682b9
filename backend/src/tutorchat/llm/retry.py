"""Retry policy for model provider calls."""

import logging
import random
import time
from typing import Callable, Optional, TypeVar

from tutorchat.config import settings
from tutorchat.exceptions import NonRetryableError, RetryableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429})


def is_retryable_status(status_code: Optional[int]) -> bool:
    """HTTP 408, 429 and 5xx are transient; every other 4xx is permanent."""
    if status_code is None:
        return True
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def status_error(
    dependency: str, status_code: Optional[int], message: str
) -> RetryableError | NonRetryableError:
    """Build the error kind matching an HTTP status."""
    if is_retryable_status(status_code):
        return RetryableError(dependency, message, status_code=status_code)
    return NonRetryableError(dependency, message, status_code=status_code)


def backoff_delay(attempt: int, base: float = 1.0, cap: Optional[float] = None) -> float:
    """
    Jittered exponential backoff.

    Args:
        attempt: Zero-based retry attempt
        base: Delay of the first retry in seconds
        cap: Maximum delay (defaults to llm_backoff_cap_seconds)

    Returns:
        Sleep duration in seconds, in [delay/2, delay]
    """
    cap = settings.llm_backoff_cap_seconds if cap is None else cap
    delay = min(cap, base * (2**attempt))
    return delay / 2 + random.uniform(0, delay / 2)


def retry_call(
    fn: Callable[[], T],
    operation: str = "llm",
    max_retries: Optional[int] = None,
    deadline: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn, retrying RetryableError with jittered exponential backoff.

    NonRetryableError and any other exception propagate immediately.

    Args:
        fn: Zero-argument callable
        operation: Name used in log messages
        max_retries: Retries after the first attempt (defaults to llm_max_retries)
        deadline: Monotonic time after which no further attempt is started
        sleep: Sleep function (injectable for tests)

    Returns:
        Result of fn

    Raises:
        RetryableError: When retries are exhausted
    """
    retries = settings.llm_max_retries if max_retries is None else max_retries
    attempt = 0
    while True:
        try:
            return fn()
        except RetryableError as e:
            if attempt >= retries:
                raise
            delay = backoff_delay(attempt)
            if deadline is not None and time.monotonic() + delay >= deadline:
                raise
            logger.warning(
                f"{operation} failed (attempt {attempt + 1}/{retries + 1}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            sleep(delay)
            attempt += 1
