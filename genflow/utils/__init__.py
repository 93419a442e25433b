"""Utility modules for genflow."""

from .logging_factory import LoggingFactory, get_logger
from .retry import (
    RetryExhaustedError,
    RetryPolicy,
    RetryStats,
    calculate_delay,
    call_with_retry,
    is_retriable_exception,
)

__all__ = [
    "LoggingFactory",
    "RetryExhaustedError",
    "RetryPolicy",
    "RetryStats",
    "calculate_delay",
    "call_with_retry",
    "get_logger",
    "is_retriable_exception",
]
