"""
Shared fixtures for navis-core tests.
"""

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, List

import httpx
import pytest

from navis_core.http import reset_pool


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedTransport:
    """
    Mock transport replaying a script of outcomes, one per request.

    Outcomes:
        int             -> empty-JSON response with that status (text body for >= 400)
        dict / list     -> 200 response with the JSON body
        Exception class -> raised with the request attached
        callable        -> called with the request, returns an httpx.Response

    The last outcome repeats once the script is exhausted.
    """

    def __init__(self, *outcomes: Any):
        self.outcomes = list(outcomes)
        self.requests: List[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handler)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def handler(self, request: httpx.Request) -> httpx.Response:
        index = min(len(self.requests), len(self.outcomes) - 1)
        self.requests.append(request)
        outcome = self.outcomes[index]

        if isinstance(outcome, type) and issubclass(outcome, Exception):
            raise outcome("scripted failure", request=request)
        if isinstance(outcome, int):
            if outcome >= 400:
                return httpx.Response(outcome, text="upstream error")
            return httpx.Response(outcome, json={})
        if isinstance(outcome, (dict, list)):
            return httpx.Response(200, json=outcome)
        return outcome(request)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def fresh_pool():
    """Reset the singleton pool between tests."""
    reset_pool()
    yield
    reset_pool()


class _JSONHandler(BaseHTTPRequestHandler):
    """Keep-alive JSON responder: ``/fail...`` answers 500, everything else 200."""

    protocol_version = "HTTP/1.1"

    def do_GET(self):
        status = 500 if self.path.startswith("/fail") else 200
        payload = json.dumps({"ok": status == 200}).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def local_service(monkeypatch):
    """Base URL of a real HTTP server on localhost."""
    for name in ("HTTP_PROXY", "http_proxy", "HTTPS_PROXY", "https_proxy", "ALL_PROXY", "all_proxy"):
        monkeypatch.delenv(name, raising=False)

    server = ThreadingHTTPServer(("127.0.0.1", 0), _JSONHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()
