"""
Circuit Breaker Models
======================
Data models and enums for the circuit breaker pattern.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

from navis_core.exceptions import ConfigurationError


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for a circuit breaker."""
    enabled: bool = True
    failure_threshold: int = 5        # Consecutive failures before opening
    reset_timeout: float = 60.0       # Seconds to stay open before half-open
    success_threshold: int = 2        # Successes to close from half-open

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be >= 1")
        if self.reset_timeout <= 0:
            raise ConfigurationError("reset_timeout must be > 0")
        if self.success_threshold < 1:
            raise ConfigurationError("success_threshold must be >= 1")


@dataclass
class CircuitBreakerState:
    """Runtime state of a circuit breaker."""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_at: Optional[float] = None
    next_attempt_at: Optional[float] = None


@dataclass(frozen=True)
class CircuitBreakerSnapshot:
    """Point-in-time copy of a breaker's state."""
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_at: Optional[float]
    next_attempt_at: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data
