"""
Navis Core Exceptions
=====================
Error taxonomy for outbound service calls.

Every error raised by a ServiceClient call belongs to exactly one kind:

- TRANSPORT: connection refused, DNS failure, I/O error, per-attempt timeout
- HTTP: the peer answered with status >= 400
- DECODE: non-error status but the body was not the expected JSON
- CIRCUIT_OPEN: the breaker refused admission
- CANCELLED: the caller cancelled the call
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Kinds of service call failures."""
    TRANSPORT = "transport"
    HTTP = "http"
    DECODE = "decode"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"


class ConfigurationError(ValueError):
    """Raised for invalid or unknown configuration options."""
    pass


class ServiceClientError(Exception):
    """Base exception for all service call errors."""

    kind: Optional[ErrorKind] = None

    def __init__(
        self,
        message: str,
        service: str = "unknown",
        status_code: Optional[int] = None,
        details: Any = None,
    ):
        self.message = message
        self.service = service
        self.status_code = status_code
        self.details = details
        super().__init__(f"[{service}] {message} (Status: {status_code})")


class ServiceTransportError(ServiceClientError):
    """Raised when the request never produced an HTTP response."""

    kind = ErrorKind.TRANSPORT

    def __init__(self, message: str, service: str = "unknown", cause: Optional[BaseException] = None):
        super().__init__(message, service=service)
        self.cause = cause


class ServiceTimeoutError(ServiceTransportError):
    """Raised when a single attempt exceeds its timeout."""

    def __init__(self, message: str, service: str = "unknown", timeout: Optional[float] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, service=service, cause=cause)
        self.timeout = timeout


class ServiceHTTPError(ServiceClientError):
    """Raised when the service returned a status >= 400."""

    kind = ErrorKind.HTTP

    def __init__(
        self,
        message: str,
        service: str = "unknown",
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
        raw_body: bytes = b"",
    ):
        super().__init__(message, service=service, status_code=status_code, details=raw_body)
        self.headers = headers or {}
        self.raw_body = raw_body


class ResponseDecodeError(ServiceClientError):
    """Raised when a successful response body could not be decoded."""

    kind = ErrorKind.DECODE

    def __init__(
        self,
        message: str,
        service: str = "unknown",
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
        raw_body: bytes = b"",
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, service=service, status_code=status_code, details=raw_body)
        self.headers = headers or {}
        self.raw_body = raw_body
        self.cause = cause


class CircuitOpenError(ServiceClientError):
    """Raised when the circuit breaker rejects an attempt."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, service: str, snapshot: Any, retry_after: float = 0.0):
        self.snapshot = snapshot
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker is {snapshot.state.value}, retry after {retry_after:.1f}s",
            service=service,
        )


class RequestCancelledError(ServiceClientError):
    """Raised when the caller cancelled an in-flight call."""

    kind = ErrorKind.CANCELLED

    def __init__(self, service: str = "unknown", last_error: Optional[BaseException] = None):
        super().__init__("Request cancelled", service=service)
        self.last_error = last_error


class DiscoveryError(Exception):
    """Base exception for service registry lookups."""

    def __init__(self, message: str, service: str):
        self.service = service
        super().__init__(f"[{service}] {message}")


class ServiceNotFoundError(DiscoveryError):
    """Raised when a logical service is not registered."""
    pass


class NoHealthyEndpointError(DiscoveryError):
    """Raised when every endpoint of a service is unhealthy."""
    pass
