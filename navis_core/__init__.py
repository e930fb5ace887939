"""
Navis Core Library
==================
Resilient service-to-service HTTP calls for Navis microservices.
"""

__version__ = "0.1.0"

# Errors
from navis_core.exceptions import (
    ErrorKind,
    ConfigurationError,
    ServiceClientError,
    ServiceTransportError,
    ServiceTimeoutError,
    ServiceHTTPError,
    ResponseDecodeError,
    CircuitOpenError,
    RequestCancelledError,
    DiscoveryError,
    ServiceNotFoundError,
    NoHealthyEndpointError,
)

# Configuration
from navis_core.config import (
    ServiceClientConfig,
    DiscoveryConfig,
    ServiceConfigRegistry,
    ServiceEntry,
)

# Retry
from navis_core.retry import (
    RetryPolicy,
    calculate_backoff,
    default_retryable,
    should_retry_status,
    retry_with_backoff,
    with_retry,
)

# Circuit Breaker
from navis_core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerSnapshot,
    CircuitState,
)

# Service Discovery
from navis_core.discovery import ServiceDiscovery, HealthProber

# HTTP
from navis_core.http import (
    ServiceClient,
    ServiceResponse,
    ServiceClientPool,
    get_pool,
    reset_pool,
)

__all__ = [
    # Errors
    "ErrorKind",
    "ConfigurationError",
    "ServiceClientError",
    "ServiceTransportError",
    "ServiceTimeoutError",
    "ServiceHTTPError",
    "ResponseDecodeError",
    "CircuitOpenError",
    "RequestCancelledError",
    "DiscoveryError",
    "ServiceNotFoundError",
    "NoHealthyEndpointError",
    # Configuration
    "ServiceClientConfig",
    "DiscoveryConfig",
    "ServiceConfigRegistry",
    "ServiceEntry",
    # Retry
    "RetryPolicy",
    "calculate_backoff",
    "default_retryable",
    "should_retry_status",
    "retry_with_backoff",
    "with_retry",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerSnapshot",
    "CircuitState",
    # Service Discovery
    "ServiceDiscovery",
    "HealthProber",
    # HTTP
    "ServiceClient",
    "ServiceResponse",
    "ServiceClientPool",
    "get_pool",
    "reset_pool",
]
