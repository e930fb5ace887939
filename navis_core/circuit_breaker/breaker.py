"""
Circuit Breaker Core
====================
Thread-safe circuit breaker guarding a single service target.
"""

import threading
import time
from typing import Callable, Optional

import structlog

from .models import (
    CircuitState,
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitBreakerSnapshot,
)

logger = structlog.get_logger(__name__)


class CircuitBreaker:
    """
    Circuit breaker state machine.

    The breaker only counts outcomes; it does not track in-flight calls, so
    concurrent callers may all be admitted while CLOSED or HALF_OPEN.

    Example:
        breaker = CircuitBreaker("identity-service")

        if not breaker.can_attempt():
            raise CircuitOpenError(...)
        try:
            result = await call()
        except Exception:
            breaker.record_failure()
            raise
        breaker.record_success()
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitBreakerState()
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Current circuit state."""
        with self._lock:
            return self._state.state

    def snapshot(self) -> CircuitBreakerSnapshot:
        with self._lock:
            return CircuitBreakerSnapshot(
                state=self._state.state,
                failure_count=self._state.failure_count,
                success_count=self._state.success_count,
                last_failure_at=self._state.last_failure_at,
                next_attempt_at=self._state.next_attempt_at,
            )

    def retry_after(self) -> float:
        """Seconds until an OPEN breaker admits the next attempt."""
        with self._lock:
            if self._state.state != CircuitState.OPEN or self._state.next_attempt_at is None:
                return 0.0
            return max(0.0, self._state.next_attempt_at - self._clock())

    def can_attempt(self) -> bool:
        """Check and possibly transition state. Returns True if allowed."""
        with self._lock:
            if self._state.state == CircuitState.OPEN:
                if self._clock() < self._state.next_attempt_at:
                    return False
                self._state.state = CircuitState.HALF_OPEN
                self._state.success_count = 0
                logger.info("circuit_half_open", service=self.name)
            return True

    def record_success(self) -> None:
        """Record a successful attempt."""
        with self._lock:
            if self._state.state == CircuitState.HALF_OPEN:
                self._state.success_count += 1
                if self._state.success_count >= self.config.success_threshold:
                    self._state.state = CircuitState.CLOSED
                    self._state.failure_count = 0
                    self._state.success_count = 0
                    self._state.next_attempt_at = None
                    logger.info("circuit_closed", service=self.name)

            elif self._state.state == CircuitState.CLOSED:
                self._state.failure_count = 0

    def record_failure(self) -> None:
        """Record a failed attempt."""
        with self._lock:
            now = self._clock()
            self._state.failure_count += 1
            self._state.last_failure_at = now

            if self._state.state == CircuitState.HALF_OPEN:
                self._state.state = CircuitState.OPEN
                self._state.next_attempt_at = now + self.config.reset_timeout
                self._state.success_count = 0
                logger.warning("circuit_reopened", service=self.name)

            elif self._state.state == CircuitState.CLOSED:
                if self._state.failure_count >= self.config.failure_threshold:
                    self._state.state = CircuitState.OPEN
                    self._state.next_attempt_at = now + self.config.reset_timeout
                    logger.warning(
                        "circuit_opened",
                        service=self.name,
                        failures=self._state.failure_count,
                    )

    def reset(self) -> None:
        """Return to CLOSED with all counters cleared."""
        with self._lock:
            self._state = CircuitBreakerState()
        logger.info("circuit_reset", service=self.name)
