"""
Tests for ServiceClient request execution.
"""

import asyncio
import json

import httpx
import pytest
from pydantic import BaseModel

from navis_core.circuit_breaker import CircuitBreakerConfig, CircuitState
from navis_core.config import DiscoveryConfig, ServiceClientConfig
from navis_core.discovery import ServiceDiscovery
from navis_core.exceptions import (
    CircuitOpenError,
    ConfigurationError,
    ErrorKind,
    RequestCancelledError,
    ResponseDecodeError,
    ServiceHTTPError,
    ServiceTimeoutError,
    ServiceTransportError,
)
from navis_core.http import ServiceClient, get_pool
from navis_core.retry import RetryPolicy

from conftest import ScriptedTransport

BASE_URL = "http://users:8000/api"


def make_config(max_retries=3, retry=True, breaker=True, threshold=5, reset_timeout=60.0, timeout=5.0):
    return ServiceClientConfig(
        timeout=timeout,
        retry=RetryPolicy(
            enabled=retry,
            max_retries=max_retries,
            base_delay=0.001,
            max_delay=0.01,
            jitter=0.0,
        ),
        circuit_breaker=CircuitBreakerConfig(
            enabled=breaker,
            failure_threshold=threshold,
            reset_timeout=reset_timeout,
        ),
    )


def make_client(script, config=None, **kwargs):
    return ServiceClient(BASE_URL, config or make_config(), transport=script.transport, **kwargs)


class User(BaseModel):
    id: int
    name: str


class TestRequests:
    """Tests for request building and response decoding."""

    @pytest.mark.asyncio
    async def test_get_decodes_json(self):
        script = ScriptedTransport({"id": 1, "name": "Ada"})
        client = make_client(script)

        response = await client.get("/users/1", params={"expand": "roles"})

        assert response.status_code == 200
        assert response.body == {"id": 1, "name": "Ada"}
        request = script.requests[0]
        assert request.method == "GET"
        assert str(request.url) == "http://users:8000/api/users/1?expand=roles"
        assert "content-type" not in request.headers
        await client.aclose()

    @pytest.mark.asyncio
    async def test_post_sends_json_body(self):
        script = ScriptedTransport(lambda request: httpx.Response(201, json={"created": True}))
        client = make_client(script, headers={"X-Request-Source": "orders"})

        response = await client.post("/users", {"name": "Ada"}, headers={"X-Trace": "abc"})

        request = script.requests[0]
        assert response.status_code == 201
        assert json.loads(request.content) == {"name": "Ada"}
        assert request.headers["content-type"] == "application/json"
        assert request.headers["x-trace"] == "abc"
        assert request.headers["x-request-source"] == "orders"
        await client.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["put", "patch"])
    async def test_body_methods(self, method):
        script = ScriptedTransport({"ok": True})
        client = make_client(script)

        await getattr(client, method)("/users/1", {"name": "Grace"})

        assert script.requests[0].method == method.upper()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_empty_body_is_empty_object(self):
        script = ScriptedTransport(lambda request: httpx.Response(204))
        client = make_client(script)

        response = await client.delete("/users/1")

        assert response.status_code == 204
        assert response.body == {}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_do_is_request(self):
        script = ScriptedTransport({"ok": True})
        client = make_client(script)

        response = await client.do("get", "/ping")

        assert response.body == {"ok": True}
        assert script.requests[0].method == "GET"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_response_model_validation(self):
        script = ScriptedTransport({"id": 7, "name": "Linus"})
        client = make_client(script)

        response = await client.get("/users/7", response_model=User)

        assert response.body == User(id=7, name="Linus")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_response_model_mismatch_is_decode_error(self):
        script = ScriptedTransport({"id": "not-a-number"})
        client = make_client(script)

        with pytest.raises(ResponseDecodeError):
            await client.get("/users/7", response_model=User)

        assert script.calls == 1
        await client.aclose()

    def test_discovery_requires_service_name(self):
        discovery = ServiceDiscovery(DiscoveryConfig(enabled=False))

        with pytest.raises(ConfigurationError):
            ServiceClient(BASE_URL, discovery=discovery)


class TestErrorClassification:
    """Tests for error kinds and retry decisions."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 422])
    async def test_client_errors_are_not_retried(self, status):
        script = ScriptedTransport(status)
        client = make_client(script)

        with pytest.raises(ServiceHTTPError) as exc_info:
            await client.get("/users/1")

        assert script.calls == 1
        assert exc_info.value.status_code == status
        assert exc_info.value.kind == ErrorKind.HTTP
        assert exc_info.value.raw_body == b"upstream error"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_too_many_requests_is_retried(self):
        script = ScriptedTransport(429, {"ok": True})
        client = make_client(script)

        response = await client.get("/users/1")

        assert response.body == {"ok": True}
        assert script.calls == 2
        await client.aclose()

    @pytest.mark.asyncio
    async def test_invalid_json_is_decode_error_and_terminal(self):
        script = ScriptedTransport(lambda request: httpx.Response(200, text="<html>oops</html>"))
        client = make_client(script)

        with pytest.raises(ResponseDecodeError) as exc_info:
            await client.get("/users/1")

        error = exc_info.value
        assert script.calls == 1
        assert error.kind == ErrorKind.DECODE
        assert error.status_code == 200
        assert error.raw_body == b"<html>oops</html>"
        assert isinstance(error.cause, ValueError)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate_after_one_attempt(self):
        def broken(request):
            raise KeyError("missing route table")

        script = ScriptedTransport(broken)
        client = make_client(script, make_config(max_retries=3))

        with pytest.raises(KeyError):
            await client.get("/users/1")

        assert script.calls == 1
        assert client.breaker_state().failure_count == 0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_unserialisable_body_is_not_retried(self, monkeypatch):
        script = ScriptedTransport({"ok": True})
        client = make_client(script, make_config(max_retries=3))
        attempts = []
        http = client._http

        def counting_http():
            attempts.append(1)
            return http()

        monkeypatch.setattr(client, "_http", counting_http)

        with pytest.raises(TypeError):
            await client.post("/users", {"value": object()})

        assert len(attempts) == 1
        assert script.calls == 0
        assert client.breaker_state().failure_count == 0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_is_mapped(self):
        script = ScriptedTransport(httpx.ConnectError)
        client = make_client(script, make_config(retry=False))

        with pytest.raises(ServiceTransportError) as exc_info:
            await client.get("/users/1")

        assert exc_info.value.kind == ErrorKind.TRANSPORT
        assert isinstance(exc_info.value.cause, httpx.ConnectError)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_attempt_timeout(self):
        async def slow(request):
            await asyncio.sleep(1.0)
            return httpx.Response(200, json={})

        script = ScriptedTransport(slow)
        client = make_client(script, make_config(retry=False, timeout=0.05))

        with pytest.raises(ServiceTimeoutError):
            await client.get("/slow")

        assert client.breaker_state().failure_count == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_per_call_timeout_overrides_config(self):
        async def slow(request):
            await asyncio.sleep(0.2)
            return httpx.Response(200, json={"late": True})

        script = ScriptedTransport(slow)
        client = make_client(script, make_config(retry=False, timeout=0.05))

        response = await client.get("/slow", timeout=1.0)

        assert response.body == {"late": True}
        await client.aclose()


class TestRetryAndBreaker:
    """Tests for retry and circuit breaker coordination."""

    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        script = ScriptedTransport(httpx.ConnectError, httpx.ReadError, {"ok": True})
        client = make_client(script)

        response = await client.get("/users/1")

        assert script.calls == 3
        assert response.body == {"ok": True}
        # The final success resets the closed-state failure count
        assert client.breaker_state().failure_count == 0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_retry_exhaustion_surfaces_last_error(self):
        script = ScriptedTransport(503)
        client = make_client(script, make_config(max_retries=2))

        with pytest.raises(ServiceHTTPError) as exc_info:
            await client.get("/users/1")

        assert script.calls == 3
        assert exc_info.value.status_code == 503
        assert client.breaker_state().failure_count == 3
        await client.aclose()

    @pytest.mark.asyncio
    async def test_breaker_opens_rejects_then_recovers(self, clock):
        script = ScriptedTransport(
            httpx.ConnectError, httpx.ConnectError, httpx.ConnectError,
            {"ok": True}, {"ok": True},
        )
        config = make_config(retry=False, threshold=3, reset_timeout=0.1)
        client = make_client(script, config, clock=clock)

        for _ in range(3):
            with pytest.raises(ServiceTransportError):
                await client.get("/users/1")
        assert client.breaker_state().state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError) as exc_info:
            await client.get("/users/1")
        assert script.calls == 3
        assert exc_info.value.kind == ErrorKind.CIRCUIT_OPEN
        assert exc_info.value.snapshot.state == CircuitState.OPEN

        clock.advance(0.1)
        await client.get("/users/1")
        assert client.breaker_state().state == CircuitState.HALF_OPEN

        await client.get("/users/1")
        state = client.breaker_state()
        assert state.state == CircuitState.CLOSED
        assert state.failure_count == 0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, clock):
        script = ScriptedTransport(
            httpx.ConnectError, httpx.ConnectError, httpx.ConnectError, httpx.ConnectError,
        )
        config = make_config(retry=False, threshold=3, reset_timeout=0.1)
        client = make_client(script, config, clock=clock)

        for _ in range(3):
            with pytest.raises(ServiceTransportError):
                await client.get("/users/1")
        opened_until = client.breaker_state().next_attempt_at

        clock.advance(0.15)
        with pytest.raises(ServiceTransportError):
            await client.get("/users/1")

        state = client.breaker_state()
        assert state.state == CircuitState.OPEN
        assert state.next_attempt_at > opened_until
        await client.aclose()

    @pytest.mark.asyncio
    async def test_open_circuit_stops_retry_loop(self):
        script = ScriptedTransport(503)
        client = make_client(script, make_config(max_retries=5, threshold=2))

        with pytest.raises(CircuitOpenError):
            await client.get("/users/1")

        # Two failures open the breaker; the third attempt is rejected
        assert script.calls == 2
        await client.aclose()

    @pytest.mark.asyncio
    async def test_breaker_disabled(self):
        script = ScriptedTransport(503)
        client = make_client(script, make_config(retry=False, breaker=False))

        for _ in range(10):
            with pytest.raises(ServiceHTTPError):
                await client.get("/users/1")

        assert client.breaker_state() is None
        assert script.calls == 10
        client.reset_breaker()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_reset_breaker(self):
        script = ScriptedTransport(500)
        client = make_client(script, make_config(retry=False, threshold=1))

        with pytest.raises(ServiceHTTPError):
            await client.get("/users/1")
        assert client.breaker_state().state == CircuitState.OPEN

        client.reset_breaker()

        assert client.breaker_state().state == CircuitState.CLOSED
        await client.aclose()


class TestCancellation:
    """Tests for caller cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_in_flight_attempt(self):
        async def slow(request):
            await asyncio.sleep(1.0)
            return httpx.Response(200, json={})

        script = ScriptedTransport(slow)
        client = make_client(script)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        with pytest.raises(RequestCancelledError) as exc_info:
            await client.get("/slow", cancel_event=cancel)

        assert exc_info.value.kind == ErrorKind.CANCELLED
        assert script.calls == 1
        assert client.breaker_state().failure_count == 0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_returns_last_error(self):
        script = ScriptedTransport(503)
        config = ServiceClientConfig(
            retry=RetryPolicy(max_retries=3, base_delay=5.0, max_delay=5.0, jitter=0.0),
        )
        client = make_client(script, config)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        with pytest.raises(ServiceHTTPError) as exc_info:
            await client.get("/users/1", cancel_event=cancel)

        assert exc_info.value.status_code == 503
        assert script.calls == 1
        assert client.breaker_state().failure_count == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_task_cancellation_is_not_recorded(self):
        async def slow(request):
            await asyncio.sleep(1.0)
            return httpx.Response(200, json={})

        script = ScriptedTransport(slow)
        client = make_client(script)

        task = asyncio.ensure_future(client.get("/slow"))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert client.breaker_state().failure_count == 0
        await client.aclose()


class TestDiscoveryFeedback:
    """Tests for endpoint health reporting."""

    @pytest.mark.asyncio
    async def test_transport_failure_marks_endpoint_unhealthy(self):
        discovery = ServiceDiscovery(DiscoveryConfig(enabled=False))
        discovery.register("users", ["http://users-a:8000", "http://users-b:8000"])
        script = ScriptedTransport(httpx.ConnectError)
        client = ServiceClient(
            "http://users-a:8000",
            make_config(retry=False),
            service_name="users",
            discovery=discovery,
            transport=script.transport,
        )

        with pytest.raises(ServiceTransportError):
            await client.get("/users/1")

        assert discovery.get_healthy("users") == ["http://users-b:8000"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_success_marks_endpoint_healthy(self):
        discovery = ServiceDiscovery(DiscoveryConfig(enabled=False))
        discovery.register("users", ["http://users-a:8000"])
        discovery.mark_unhealthy("users", "http://users-a:8000")
        script = ScriptedTransport({"ok": True})
        client = ServiceClient(
            "http://users-a:8000",
            make_config(),
            service_name="users",
            discovery=discovery,
            transport=script.transport,
        )

        await client.get("/users/1")

        assert discovery.get_healthy("users") == ["http://users-a:8000"]
        await client.aclose()


class TestEventLoopReuse:
    """Tests for pooled clients reused across event loops."""

    def test_pooled_client_survives_repeated_asyncio_run(self, local_service):
        async def invoke():
            client = get_pool().get(local_service, {"max_retries": 0})
            return await client.get("/users/1")

        first = asyncio.run(invoke())
        second = asyncio.run(invoke())

        assert first.body == {"ok": True}
        assert second.body == {"ok": True}
        assert len(get_pool()) == 1

    def test_breaker_state_survives_across_event_loops(self, local_service):
        async def invoke_failing():
            client = get_pool().get(local_service, {"max_retries": 0})
            with pytest.raises(ServiceHTTPError):
                await client.get("/fail")
            return client

        first = asyncio.run(invoke_failing())
        second = asyncio.run(invoke_failing())

        assert first is second
        assert second.breaker_state().failure_count == 2

    def test_aclose_after_loop_change(self):
        script = ScriptedTransport({"ok": True})
        client = make_client(script)

        async def invoke():
            return await client.get("/users/1")

        asyncio.run(invoke())

        async def invoke_and_close():
            response = await client.get("/users/1")
            await client.aclose()
            return response

        assert asyncio.run(invoke_and_close()).body == {"ok": True}
        assert script.calls == 2
