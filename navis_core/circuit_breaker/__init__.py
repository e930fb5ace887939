"""
Navis Core - Circuit Breaker
============================
Circuit breaker for outbound service calls.

Circuit breaker pattern prevents cascade failures when downstream services
are unavailable. States:

1. CLOSED: Normal operation, requests flow through
2. OPEN: Service is failing, requests are immediately rejected
3. HALF-OPEN: Testing if service has recovered
"""

from .models import (
    CircuitState,
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitBreakerSnapshot,
)

from .breaker import CircuitBreaker

__all__ = [
    # Models
    "CircuitState",
    "CircuitBreakerConfig",
    "CircuitBreakerState",
    "CircuitBreakerSnapshot",
    # Breaker
    "CircuitBreaker",
]
