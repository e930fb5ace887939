import asyncio
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Type, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from navis_core.circuit_breaker import CircuitBreaker, CircuitBreakerSnapshot
from navis_core.config import ServiceClientConfig
from navis_core.discovery import ServiceDiscovery
from navis_core.exceptions import (
    CircuitOpenError,
    ConfigurationError,
    RequestCancelledError,
    ResponseDecodeError,
    ServiceClientError,
    ServiceHTTPError,
    ServiceTimeoutError,
    ServiceTransportError,
)
from navis_core.retry import retry_with_backoff
from navis_core.retry.policy import RetryClassifier
from .models import ServiceResponse

# Generic type for Pydantic models
T = TypeVar("T", bound=BaseModel)

logger = structlog.get_logger(__name__)


def _service_errors_only(classifier: RetryClassifier) -> RetryClassifier:
    """Wrap a classifier so only service call errors are ever retried."""
    def retryable(error: BaseException, attempt: int) -> bool:
        if not isinstance(error, ServiceClientError):
            return False
        return classifier(error, attempt)
    return retryable


class ServiceClient:
    """
    Resilient async HTTP client for service-to-service calls.

    Features:
    - Retries with exponential backoff on transport errors, 429 and 5xx.
    - Circuit breaker admission and outcome recording per attempt.
    - Connection reuse (via httpx.AsyncClient keep-alive), one pool per event
      loop so a pooled client survives repeated asyncio.run() invocations.
    - Errors outside the service error taxonomy (bad request bodies, invalid
      URLs) propagate after a single attempt.
    - Optional Pydantic validation of response bodies.
    - Endpoint health feedback when bound to a ServiceDiscovery.

    Example:
        client = ServiceClient("http://users:8000", ServiceClientConfig(timeout=3.0))
        response = await client.get("/v1/users/42")
        print(response.status_code, response.body)
    """

    def __init__(
        self,
        base_url: str,
        config: Optional[ServiceClientConfig] = None,
        *,
        service_name: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        discovery: Optional[ServiceDiscovery] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if discovery is not None and service_name is None:
            raise ConfigurationError("service_name is required when discovery is used")

        self.endpoint_url = base_url
        self.base_url = base_url.rstrip("/")
        self.config = config or ServiceClientConfig()
        self.service_name = service_name or self.base_url
        self.discovery = discovery

        self._breaker: Optional[CircuitBreaker] = None
        if self.config.circuit_breaker.enabled:
            self._breaker = CircuitBreaker(
                self.service_name,
                self.config.circuit_breaker,
                clock=clock,
            )

        self._headers = dict(headers or {})
        self._transport = transport
        self._retry_policy = replace(
            self.config.retry,
            retryable=_service_errors_only(self.config.retry.retryable),
        )

        # One httpx client per event loop; connections are bound to the loop
        self._client: Optional[httpx.AsyncClient] = None
        self._client_loop: Optional[asyncio.AbstractEventLoop] = None
        self._client_lock = threading.Lock()

    @property
    def breaker(self) -> Optional[CircuitBreaker]:
        return self._breaker

    def _http(self) -> httpx.AsyncClient:
        """HTTP client for the running event loop, rebuilt when the loop changes."""
        loop = asyncio.get_running_loop()
        with self._client_lock:
            client = self._client
            if client is not None and self._client_loop is loop and not client.is_closed:
                return client

            if client is not None:
                # Connections of a finished loop cannot be closed from this one
                logger.debug("http_client_rebuilt", service=self.service_name)
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.config.timeout,
                headers=self._headers,
                transport=self._transport,
            )
            self._client_loop = loop
            return self._client

    async def aclose(self):
        """Close the HTTP client of the running event loop."""
        with self._client_lock:
            client, loop = self._client, self._client_loop
            self._client = None
            self._client_loop = None

        if client is not None and loop is asyncio.get_running_loop():
            await client.aclose()

    async def __aenter__(self) -> "ServiceClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    def breaker_state(self) -> Optional[CircuitBreakerSnapshot]:
        """Snapshot of the circuit breaker, or None when it is disabled."""
        if self._breaker is None:
            return None
        return self._breaker.snapshot()

    def reset_breaker(self) -> None:
        if self._breaker is not None:
            self._breaker.reset()

    def _map_exception(self, exc: httpx.RequestError, timeout: float) -> ServiceTransportError:
        """Map httpx exceptions to transport errors."""
        if isinstance(exc, httpx.TimeoutException):
            return ServiceTimeoutError(
                "Request timed out",
                service=self.service_name,
                timeout=timeout,
                cause=exc,
            )
        if isinstance(exc, httpx.ConnectError):
            return ServiceTransportError(
                f"Failed to connect: {exc}",
                service=self.service_name,
                cause=exc,
            )
        return ServiceTransportError(
            f"{type(exc).__name__}: {exc}",
            service=self.service_name,
            cause=exc,
        )

    def _build_response(
        self,
        response: httpx.Response,
        response_model: Optional[Type[T]],
    ) -> ServiceResponse:
        """Classify an HTTP response and decode its body."""
        status = response.status_code
        headers = dict(response.headers)
        raw_body = response.content

        if status >= 400:
            raise ServiceHTTPError(
                f"HTTP {status}: {response.reason_phrase or 'Request failed'}",
                service=self.service_name,
                status_code=status,
                headers=headers,
                raw_body=raw_body,
            )

        body: Any = {}
        if raw_body:
            try:
                body = response.json()
            except ValueError as e:
                raise ResponseDecodeError(
                    f"Failed to parse JSON response: {e}",
                    service=self.service_name,
                    status_code=status,
                    headers=headers,
                    raw_body=raw_body,
                    cause=e,
                )

        if response_model is not None:
            try:
                body = response_model.model_validate(body)
            except ValidationError as e:
                raise ResponseDecodeError(
                    f"Response does not match {response_model.__name__}",
                    service=self.service_name,
                    status_code=status,
                    headers=headers,
                    raw_body=raw_body,
                    cause=e,
                )

        return ServiceResponse(status_code=status, headers=headers, body=body)

    async def _wait_or_cancel(self, request, timeout: float, cancel_event: asyncio.Event):
        """Run one request, abandoning it if the cancel event fires first."""
        request_task = asyncio.ensure_future(asyncio.wait_for(request, timeout))
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {request_task, cancel_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            request_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if request_task in done:
            return request_task.result()

        # Drop the connection; the abandoned attempt is not recorded
        request_task.cancel()
        await asyncio.wait({request_task})
        raise RequestCancelledError(service=self.service_name)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        response_model: Optional[Type[T]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ServiceResponse:
        """Issue a single HTTP attempt and classify its outcome."""
        attempt_timeout = timeout if timeout is not None else self.config.timeout

        request_headers: Dict[str, str] = {}
        if body is not None:
            request_headers["Content-Type"] = "application/json"
        if headers:
            request_headers.update(headers)

        request = self._http().request(
            method,
            path,
            json=body,
            headers=request_headers,
            params=params,
            timeout=attempt_timeout,
        )

        try:
            if cancel_event is None:
                response = await asyncio.wait_for(request, attempt_timeout)
            else:
                response = await self._wait_or_cancel(request, attempt_timeout, cancel_event)
        except httpx.RequestError as e:
            raise self._map_exception(e, attempt_timeout) from e
        except asyncio.TimeoutError as e:
            raise ServiceTimeoutError(
                f"Request timed out after {attempt_timeout}s",
                service=self.service_name,
                timeout=attempt_timeout,
                cause=e,
            ) from e

        return self._build_response(response, response_model)

    def _record_success(self) -> None:
        if self._breaker is not None:
            self._breaker.record_success()
        if self.discovery is not None:
            self.discovery.mark_healthy(self.service_name, self.endpoint_url)

    def _record_failure(self, error: ServiceClientError) -> None:
        if self._breaker is not None:
            self._breaker.record_failure()
        if self.discovery is None:
            return
        if isinstance(error, ServiceTransportError) or (
            isinstance(error, ServiceHTTPError) and error.status_code >= 500
        ):
            self.discovery.mark_unhealthy(self.service_name, self.endpoint_url)
        else:
            self.discovery.mark_healthy(self.service_name, self.endpoint_url)

    async def _attempt(self, method: str, path: str, **options: Any) -> ServiceResponse:
        """Admit, send and record a single attempt."""
        if self._breaker is not None and not self._breaker.can_attempt():
            logger.warning(
                "circuit_rejected",
                service=self.service_name,
                method=method,
                path=path,
            )
            raise CircuitOpenError(
                self.service_name,
                self._breaker.snapshot(),
                self._breaker.retry_after(),
            )

        try:
            response = await self._send(method, path, **options)
        except RequestCancelledError:
            raise
        except ServiceClientError as e:
            self._record_failure(e)
            logger.warning(
                "service_request_failed",
                service=self.service_name,
                method=method,
                path=path,
                kind=e.kind.value,
                status_code=e.status_code,
                error=e.message,
            )
            raise

        self._record_success()
        return response

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        response_model: Optional[Type[T]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ServiceResponse:
        """
        Execute one logical call with circuit breaking and retries.

        Args:
            method: HTTP method
            path: Path joined onto the client's base URL
            body: JSON-serialisable request body
            headers: Extra request headers
            params: Query string parameters
            timeout: Per-attempt timeout in seconds (defaults to config.timeout)
            response_model: Pydantic model to validate the decoded body into
            cancel_event: Event that cancels the call when set

        Raises:
            ServiceTransportError, ServiceHTTPError, ResponseDecodeError,
            CircuitOpenError, RequestCancelledError
        """
        method = method.upper()
        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelledError(service=self.service_name)

        async def attempt() -> ServiceResponse:
            return await self._attempt(
                method,
                path,
                body=body,
                headers=headers,
                params=params,
                timeout=timeout,
                response_model=response_model,
                cancel_event=cancel_event,
            )

        return await retry_with_backoff(
            attempt,
            self._retry_policy,
            cancel_event=cancel_event,
            name=f"{method} {self.service_name}{path}",
        )

    do = request

    async def get(self, path: str, **kwargs: Any) -> ServiceResponse:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, body: Any = None, **kwargs: Any) -> ServiceResponse:
        return await self.request("POST", path, body, **kwargs)

    async def put(self, path: str, body: Any = None, **kwargs: Any) -> ServiceResponse:
        return await self.request("PUT", path, body, **kwargs)

    async def patch(self, path: str, body: Any = None, **kwargs: Any) -> ServiceResponse:
        return await self.request("PATCH", path, body, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> ServiceResponse:
        return await self.request("DELETE", path, **kwargs)
