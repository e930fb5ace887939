"""
Retry Backoff
=============
Retry driver with exponential backoff, built on tenacity.
"""

import asyncio
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt
from tenacity.retry import retry_base
from tenacity.wait import wait_base

from navis_core.exceptions import CircuitOpenError, RequestCancelledError
from .policy import RetryPolicy

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class _PolicyRetry(retry_base):
    """Consult the policy classifier with the 0-indexed attempt."""

    def __init__(self, policy: RetryPolicy, cancel_event: Optional[asyncio.Event]):
        self.policy = policy
        self.cancel_event = cancel_event

    def __call__(self, retry_state: RetryCallState) -> bool:
        if not retry_state.outcome.failed:
            return False
        if self.cancel_event is not None and self.cancel_event.is_set():
            return False

        error = retry_state.outcome.exception()
        if not isinstance(error, Exception):
            return False
        if isinstance(error, (CircuitOpenError, RequestCancelledError)):
            return False
        return self.policy.retryable(error, retry_state.attempt_number - 1)


class _PolicyWait(wait_base):
    """Backoff delay for the attempt that just failed."""

    def __init__(self, policy: RetryPolicy):
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.policy.compute_delay(retry_state.attempt_number - 1)


class _CancellableSleep:
    """
    Backoff sleep that wakes up when the cancel event is set.

    On cancellation the last observed error is raised instead of starting
    another attempt.
    """

    def __init__(self, name: str, cancel_event: Optional[asyncio.Event]):
        self.name = name
        self.cancel_event = cancel_event
        self.last_error: Optional[BaseException] = None

    def before_sleep(self, retry_state: RetryCallState) -> None:
        self.last_error = retry_state.outcome.exception()
        logger.warning(
            "retry_scheduled",
            operation=self.name,
            attempt=retry_state.attempt_number,
            delay=round(retry_state.next_action.sleep, 3),
            error=str(self.last_error),
        )

    async def __call__(self, seconds: float) -> None:
        if self.cancel_event is None:
            await asyncio.sleep(seconds)
            return

        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return

        logger.info("retry_cancelled", operation=self.name)
        raise self.last_error


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    cancel_event: Optional[asyncio.Event] = None,
    name: Optional[str] = None,
) -> T:
    """
    Execute an async callable under a retry policy.

    The callable runs at most ``policy.max_retries + 1`` times. The first
    success is returned; a non-retryable error propagates immediately and,
    after exhaustion, the last observed error is raised unchanged.

    Args:
        func: Zero-argument async callable performing one attempt
        policy: Retry policy (defaults to RetryPolicy())
        cancel_event: Optional event that interrupts backoff sleeps
        name: Operation name used in log events

    Returns:
        Result of func
    """
    policy = policy or RetryPolicy()
    name = name or getattr(func, "__name__", "operation")

    if cancel_event is not None and cancel_event.is_set():
        raise RequestCancelledError(service=name)

    if not policy.enabled:
        return await func()

    sleeper = _CancellableSleep(name, cancel_event)
    attempts = 0

    async def attempt() -> T:
        nonlocal attempts
        attempts += 1
        return await func()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_PolicyWait(policy),
        retry=_PolicyRetry(policy, cancel_event),
        sleep=sleeper,
        before_sleep=sleeper.before_sleep,
        reraise=True,
    )

    try:
        return await retrying(attempt)
    except Exception as e:
        if attempts >= policy.max_attempts and policy.max_retries > 0:
            logger.error(
                "retry_exhausted",
                operation=name,
                attempts=attempts,
                error=str(e),
            )
        raise


def with_retry(policy: Optional[RetryPolicy] = None):
    """
    Decorator for retry with exponential backoff.

    Usage:
        @with_retry(RetryPolicy(max_retries=5))
        async def fetch_data():
            ...
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_with_backoff(
                lambda: func(*args, **kwargs),
                policy,
                name=func.__name__,
            )
        return wrapper
    return decorator
