"""
Service Registry
================
Named logical services mapped to endpoint URLs, with round-robin selection
and background health probing.
"""

import asyncio
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Union

import httpx
import structlog

from navis_core.config import DiscoveryConfig
from .models import Endpoint, Service
from .prober import HealthProber

logger = structlog.get_logger(__name__)


class ServiceDiscovery:
    """
    In-process service registry.

    Example:
        discovery = ServiceDiscovery()
        discovery.register("users", ["http://users-1:8000", "http://users-2:8000"])

        url = discovery.get_next("users")        # round-robin, ignores health
        healthy = discovery.get_healthy("users")  # health-filtered list

    Health probes start when a service is registered from inside a running
    event loop. Services registered earlier are picked up by ``start()``.
    """

    def __init__(
        self,
        config: Optional[DiscoveryConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or DiscoveryConfig()
        self._clock = clock
        self._transport = transport
        self._services: Dict[str, Service] = {}
        self._probers: Dict[str, HealthProber] = {}
        self._lock = threading.Lock()
        self._http: Optional[httpx.AsyncClient] = None

    @property
    def _stale_after(self) -> float:
        return 2 * self.config.health_check_interval

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, name: str, urls: Union[str, Iterable[str]]) -> None:
        """Register (or replace) a service with one or more endpoint URLs."""
        if isinstance(urls, str):
            urls = [urls]
        unique = list(dict.fromkeys(urls))

        now = self._clock()
        service = Service(
            name=name,
            endpoints=[Endpoint(url=url, healthy=True, last_checked_at=now) for url in unique],
        )

        with self._lock:
            self._services[name] = service
            previous = self._probers.pop(name, None)

        if previous is not None:
            previous.stop()

        logger.info("service_registered", service=name, endpoints=len(unique))

        if self.config.enabled:
            self._start_prober(name)

    def unregister(self, name: str) -> None:
        """Remove a service and stop probing it."""
        with self._lock:
            self._services.pop(name, None)
            prober = self._probers.pop(name, None)

        if prober is not None:
            prober.stop()
        logger.info("service_unregistered", service=name)

    def list(self) -> List[str]:
        """Names of all registered services."""
        with self._lock:
            return list(self._services)

    def is_registered(self, name: str) -> bool:
        with self._lock:
            return name in self._services

    def endpoints(self, name: str) -> List[str]:
        """All endpoint URLs of a service, regardless of health."""
        with self._lock:
            service = self._services.get(name)
            if service is None:
                return []
            return [endpoint.url for endpoint in service.endpoints]

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def get_next(self, name: str) -> Optional[str]:
        """Next endpoint URL in round-robin order. Not health-filtered."""
        with self._lock:
            service = self._services.get(name)
            if service is None or not service.endpoints:
                return None
            return service.advance().url

    def get_healthy(self, name: str) -> List[str]:
        """
        Endpoint URLs considered usable.

        An endpoint qualifies when it is healthy, or when its last check is
        older than twice the health check interval (unknown health is
        admitted to avoid starving the service).
        """
        now = self._clock()
        with self._lock:
            service = self._services.get(name)
            if service is None:
                return []
            return [
                endpoint.url
                for endpoint in service.endpoints
                if endpoint.is_admissible(now, self._stale_after)
            ]

    def get_next_healthy(self, name: str) -> Optional[str]:
        """Next usable endpoint URL in round-robin order, or None."""
        now = self._clock()
        with self._lock:
            service = self._services.get(name)
            if service is None:
                return None
            for _ in range(len(service.endpoints)):
                endpoint = service.advance()
                if endpoint.is_admissible(now, self._stale_after):
                    return endpoint.url
            return None

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    def mark_healthy(self, name: str, url: str) -> None:
        self._mark(name, url, healthy=True)

    def mark_unhealthy(self, name: str, url: str) -> None:
        self._mark(name, url, healthy=False)

    def _mark(self, name: str, url: str, healthy: bool) -> None:
        now = self._clock()
        with self._lock:
            service = self._services.get(name)
            endpoint = service.find(url) if service is not None else None
            if endpoint is None:
                return
            changed = endpoint.healthy != healthy
            endpoint.healthy = healthy
            endpoint.last_checked_at = now

        if changed:
            logger.info(
                "endpoint_health_changed",
                service=name,
                url=url,
                healthy=healthy,
            )

    # -------------------------------------------------------------------------
    # Probing lifecycle
    # -------------------------------------------------------------------------

    def probe_client(self) -> httpx.AsyncClient:
        """HTTP client shared by all probers of this registry."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self.config.health_check_timeout,
                transport=self._transport,
            )
        return self._http

    def _start_prober(self, name: str) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("health_probe_deferred", service=name)
            return

        prober = HealthProber(self, name)
        with self._lock:
            if name not in self._services or name in self._probers:
                return
            self._probers[name] = prober
        prober.start()

    def start(self) -> None:
        """Start probers for registered services that have none yet."""
        if not self.config.enabled:
            return
        for name in self.list():
            self._start_prober(name)

    async def probe(self, name: str) -> None:
        """Run one probe cycle for a service immediately."""
        await HealthProber(self, name).probe_once()

    async def close(self) -> None:
        """Stop all probers and release the probe HTTP client."""
        with self._lock:
            probers = list(self._probers.values())
            self._probers.clear()

        for prober in probers:
            await prober.aclose()

        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> "ServiceDiscovery":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
