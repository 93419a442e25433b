"""Retry utilities with exponential backoff for step execution."""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from ..exceptions import RetryableStepError

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior.

    Attributes:
        initial_delay: Delay in seconds before the second attempt
        backoff_coefficient: Multiplier applied to the delay after each retry
        max_attempts: Maximum number of attempts (including the initial one)
        max_delay: Ceiling for any single delay
        jitter: Whether to add random jitter to delays
        retriable_exceptions: Exception types treated as transient
    """

    initial_delay: float = 10.0
    backoff_coefficient: float = 2.0
    max_attempts: int = 3
    max_delay: float = 300.0
    jitter: bool = False
    retriable_exceptions: Tuple[Type[BaseException], ...] = field(
        default_factory=lambda: (
            RetryableStepError,
            ConnectionError,
            TimeoutError,
            asyncio.TimeoutError,
            OSError,  # Includes network errors
        )
    )

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be non-negative")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.backoff_coefficient < 1:
            raise ValueError("backoff_coefficient must be >= 1")
        if self.max_attempts > 20:
            raise ValueError("max_attempts should not exceed 20 for practical purposes")

    def delay_before(self, attempt: int) -> float:
        """Delay to wait before ``attempt`` (1-based; the first attempt never waits)."""
        return calculate_delay(
            attempt - 1, self.initial_delay, self.max_delay, self.backoff_coefficient, self.jitter
        )


@dataclass
class RetryStats:
    """Bookkeeping filled in by :func:`call_with_retry`."""

    attempts: int = 0
    total_delay: float = 0.0
    last_exception: Optional[BaseException] = None


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        attempts: Number of attempts made
        last_exception: The final exception that caused the retry to fail
        total_delay: Total time spent in delays
    """

    def __init__(self, attempts: int, last_exception: BaseException, total_delay: float) -> None:
        self.attempts = attempts
        self.last_exception = last_exception
        self.total_delay = total_delay
        super().__init__(f"retries exhausted after {attempts} attempts: {last_exception}")


def calculate_delay(
    retry: int, base_delay: float, max_delay: float, exponential_base: float, jitter: bool = False
) -> float:
    """Calculate delay for a given retry with exponential backoff and optional jitter.

    Args:
        retry: Number of retries so far (0 means the initial attempt)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds
        exponential_base: Base for exponential calculation
        jitter: Whether to add random jitter

    Returns:
        Calculated delay in seconds, always between 0 and max_delay
    """
    if retry <= 0:
        return 0.0

    backoff = min(base_delay * (exponential_base ** (retry - 1)), max_delay)

    if jitter:
        # Add ±25% random jitter
        jitter_range = backoff * 0.25
        backoff += random.uniform(-jitter_range, jitter_range)

    return max(0.0, min(backoff, max_delay))


def is_retriable_exception(
    exception: BaseException, retriable_exceptions: Tuple[Type[BaseException], ...]
) -> bool:
    """Check if an exception should trigger a retry.

    Args:
        exception: The exception to check
        retriable_exceptions: Tuple of exception types that are retriable

    Returns:
        True if exception should trigger retry, False otherwise
    """
    # Check for specific HTTP status codes if available
    if hasattr(exception, "response") and hasattr(exception.response, "status_code"):
        status_code = exception.response.status_code
        # Retry on 5xx server errors and specific 4xx errors
        retriable_status_codes = {408, 429, 500, 502, 503, 504}
        if status_code in retriable_status_codes:
            return True
        # Don't retry on other 4xx client errors
        if 400 <= status_code < 500:
            return False

    return isinstance(exception, retriable_exceptions)


async def call_with_retry(
    func: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    name: str,
    stats: Optional[RetryStats] = None,
    sleep: SleepFn = asyncio.sleep,
) -> Any:
    """Await ``func()`` until it succeeds, fails permanently, or attempts run out.

    Args:
        func: Zero-argument coroutine factory; called once per attempt
        policy: Retry policy
        name: Label used in log messages
        stats: Optional RetryStats updated in place
        sleep: Coroutine used for backoff delays

    Returns:
        Whatever the successful attempt returned

    Raises:
        RetryExhaustedError: If every attempt failed with a retriable error
        Exception: The first non-retriable exception, unchanged
    """
    stats = stats if stats is not None else RetryStats()

    for attempt in range(1, policy.max_attempts + 1):
        if attempt > 1:
            delay = policy.delay_before(attempt)
            logger.warning(
                f"Attempt {attempt - 1}/{policy.max_attempts} failed for {name}: "
                f"{stats.last_exception}. Retrying in {delay:.2f}s..."
            )
            await sleep(delay)
            stats.total_delay += delay

        stats.attempts = attempt
        try:
            return await func()
        except Exception as e:
            stats.last_exception = e
            if not is_retriable_exception(e, policy.retriable_exceptions):
                logger.error(f"Non-retriable exception in {name}: {e}")
                raise

    logger.error(f"All retry attempts exhausted for {name}: {stats.last_exception}")
    raise RetryExhaustedError(stats.attempts, stats.last_exception, stats.total_delay)
