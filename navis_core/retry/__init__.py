"""
Retry Logic with Exponential Backoff
=====================================
Retry policy, backoff calculation and the async retry driver.
"""

from .policy import (
    RetryPolicy,
    RetryClassifier,
    calculate_backoff,
    default_retryable,
    should_retry_status,
)
from .backoff import retry_with_backoff, with_retry

__all__ = [
    # Policy
    "RetryPolicy",
    "RetryClassifier",
    "calculate_backoff",
    "default_retryable",
    "should_retry_status",
    # Driver
    "retry_with_backoff",
    "with_retry",
]
