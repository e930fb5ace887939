"""
Retry Policy
============
Immutable retry configuration and the default retry classifier.
"""

import random
from dataclasses import dataclass
from typing import Callable

from navis_core.exceptions import (
    CircuitOpenError,
    ConfigurationError,
    RequestCancelledError,
)

RetryClassifier = Callable[[BaseException, int], bool]


def should_retry_status(status_code: int) -> bool:
    """Retry on 5xx errors and 429 (Too Many Requests)."""
    return status_code >= 500 or status_code == 429


def default_retryable(error: BaseException, attempt: int) -> bool:
    """
    Decide whether a failed attempt may be retried.

    Errors without a status code (network, timeout, generic) are retried.
    Errors carrying a status code are retried only for 429 and 5xx, so a
    decode failure on a 2xx response is terminal.
    """
    if not isinstance(error, Exception):
        return False
    if isinstance(error, (CircuitOpenError, RequestCancelledError)):
        return False

    status_code = getattr(error, "status_code", None)
    if status_code is None:
        return True
    return should_retry_status(status_code)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: float = 0.1,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Calculate the exponential backoff delay in seconds.

    Args:
        attempt: Attempt that just failed (0-indexed)
        base_delay: Delay after the first failure
        max_delay: Cap for the exponential part
        jitter: Fraction of the nominal delay added as random jitter

    Returns:
        Nominal delay plus a uniform jitter in [0, nominal * jitter]
    """
    nominal = min(base_delay * (2 ** attempt), max_delay)
    return nominal + nominal * jitter * rand()


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for a ServiceClient."""
    enabled: bool = True
    max_retries: int = 3              # Retries after the first attempt
    base_delay: float = 1.0           # Seconds
    max_delay: float = 30.0           # Seconds
    jitter: float = 0.1               # Fraction of nominal delay
    retryable: RetryClassifier = default_retryable

    def __post_init__(self):
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0")
        if self.base_delay <= 0:
            raise ConfigurationError("base_delay must be > 0")
        if self.max_delay < self.base_delay:
            raise ConfigurationError("max_delay must be >= base_delay")
        if not 0.0 <= self.jitter <= 1.0:
            raise ConfigurationError("jitter must be within [0, 1]")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def compute_delay(self, attempt: int) -> float:
        return calculate_backoff(attempt, self.base_delay, self.max_delay, self.jitter)
