"""
Health Prober
=============
Background task that keeps endpoint health flags current.
"""

import asyncio
from typing import TYPE_CHECKING, Optional

import structlog

if TYPE_CHECKING:
    from .registry import ServiceDiscovery

logger = structlog.get_logger(__name__)


class HealthProber:
    """
    Periodically probes every endpoint of one service.

    Each cycle issues ``GET <url><health_check_path>`` to all endpoints
    concurrently, each capped at ``health_check_timeout`` seconds of wall
    clock. A 200 marks the endpoint healthy; any other status, any error or
    a timeout marks it unhealthy. Probe failures are logged, never raised.
    """

    def __init__(self, discovery: "ServiceDiscovery", service_name: str):
        self.discovery = discovery
        self.service_name = service_name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the probe loop on the running event loop."""
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(
            self._run(), name=f"health-probe:{self.service_name}"
        )

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()

    async def aclose(self) -> None:
        """Cancel the probe loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        interval = self.discovery.config.health_check_interval
        logger.debug("health_probe_started", service=self.service_name, interval=interval)
        while True:
            await self.probe_once()
            await asyncio.sleep(interval)

    async def probe_once(self) -> None:
        """Run a single probe cycle over all current endpoints."""
        urls = self.discovery.endpoints(self.service_name)
        if not urls:
            return
        await asyncio.gather(*(self._check(url) for url in urls))

    async def _check(self, url: str) -> None:
        config = self.discovery.config
        health_url = url.rstrip("/") + config.health_check_path

        try:
            client = self.discovery.probe_client()
            response = await asyncio.wait_for(
                client.get(health_url, timeout=config.health_check_timeout),
                config.health_check_timeout,
            )
        except Exception as e:
            logger.warning(
                "health_probe_failed",
                service=self.service_name,
                url=url,
                error=str(e) or type(e).__name__,
            )
            self.discovery.mark_unhealthy(self.service_name, url)
            return

        if response.status_code == 200:
            self.discovery.mark_healthy(self.service_name, url)
        else:
            logger.warning(
                "health_probe_unhealthy",
                service=self.service_name,
                url=url,
                status_code=response.status_code,
            )
            self.discovery.mark_unhealthy(self.service_name, url)
