"""Retry policy for offline-sync.

Pure backoff computation plus a retry loop that reports its outcome as a
RetryResult instead of raising, so callers decide what exhaustion means.
"""

from __future__ import annotations

import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests

from .errors import RemoteError, RetryExhaustedError

logger = logging.getLogger(__name__)

__all__ = [
    "RetryOptions",
    "RetryResult",
    "calculate_delay",
    "is_retryable_error",
    "should_retry_status_code",
    "execute_with_retry",
    "execute_with_exponential_backoff",
]

_RETRYABLE_MESSAGE = re.compile(
    r"network|timeout|timed out|connection|temporary|unavailable|"
    r"rate limit|too many requests|\b50[234]\b",
    re.IGNORECASE,
)


@dataclass
class RetryOptions:
    """Backoff configuration. Delays are in milliseconds."""

    max_attempts: int = 5
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter: bool = True


@dataclass
class RetryResult:
    """Outcome of execute_with_retry."""

    success: bool
    result: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    total_time_ms: float = 0.0


def calculate_delay(
    attempt: int,
    options: Optional[RetryOptions] = None,
    rng: Callable[[], float] = random.random,
) -> int:
    """Calculate the delay before the next attempt.

    Args:
        attempt: 0-based index of the attempt that just failed
        options: Backoff configuration (defaults if None)
        rng: Source of uniform [0, 1) values, used when jitter is on

    Returns:
        Delay in whole milliseconds, never above options.max_delay_ms
    """
    options = options or RetryOptions()
    delay = min(
        options.initial_delay_ms * (options.backoff_multiplier ** max(attempt, 0)),
        options.max_delay_ms,
    )
    if options.jitter:
        delay = delay * (0.5 + rng() * 0.5)
    return int(delay)


def should_retry_status_code(status_code: int) -> bool:
    """Check whether an HTTP status code denotes a transient failure."""
    return status_code >= 500 or status_code == 429


def is_retryable_error(error: BaseException) -> bool:
    """Classify an error as transient (True) or permanent (False)."""
    if isinstance(error, RemoteError):
        return error.retryable
    if isinstance(error, (requests.Timeout, requests.ConnectionError)):
        return True
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    return bool(_RETRYABLE_MESSAGE.search(str(error)))


def execute_with_retry(
    operation: Callable[[], Any],
    options: Optional[RetryOptions] = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    retry_if: Optional[Callable[[BaseException], bool]] = None,
) -> RetryResult:
    """Run an operation until it succeeds or attempts run out.

    Sleeps the computed backoff between attempts, never after the last one.
    Exceptions raised by the operation are captured in the result.

    Args:
        operation: Zero-argument callable to run
        options: Backoff configuration (defaults if None)
        sleep: Sleep function taking seconds
        retry_if: Optional classifier; returning False stops retrying

    Returns:
        RetryResult describing the final outcome
    """
    options = options or RetryOptions()
    started = time.monotonic()
    last_error: Optional[BaseException] = None
    attempts = 0

    for attempt in range(options.max_attempts):
        attempts = attempt + 1
        try:
            result = operation()
            return RetryResult(
                success=True,
                result=result,
                attempts=attempts,
                total_time_ms=(time.monotonic() - started) * 1000.0,
            )
        except Exception as e:
            last_error = e
            logger.debug(f"Attempt {attempts}/{options.max_attempts} failed: {e}")
            if retry_if is not None and not retry_if(e):
                break
            if attempts < options.max_attempts:
                sleep(calculate_delay(attempt, options) / 1000.0)

    return RetryResult(
        success=False,
        error=last_error,
        attempts=attempts,
        total_time_ms=(time.monotonic() - started) * 1000.0,
    )


def execute_with_exponential_backoff(
    operation: Callable[[], Any],
    max_attempts: int = 5,
    initial_delay_ms: int = 1000,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Run an operation with backoff, raising the last error on exhaustion."""
    result = execute_with_retry(
        operation,
        RetryOptions(max_attempts=max_attempts, initial_delay_ms=initial_delay_ms),
        sleep=sleep,
    )
    if result.success:
        return result.result
    if result.error is not None:
        raise result.error
    raise RetryExhaustedError(f"Operation failed after {result.attempts} attempts")
