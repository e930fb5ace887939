"""
Service Client Pool
===================
Process-wide cache of configured ServiceClient instances.

Reusing clients keeps breaker state and keep-alive connections across warm
re-invocations of short-lived handlers (e.g. serverless functions).
"""

import threading
from collections import OrderedDict
from typing import Any, Callable, List, Mapping, NamedTuple, Optional, Union

import structlog

from navis_core.config import ServiceClientConfig, ServiceConfigRegistry
from navis_core.discovery import ServiceDiscovery
from navis_core.exceptions import NoHealthyEndpointError, ServiceNotFoundError
from .client import ServiceClient

logger = structlog.get_logger(__name__)

ClientOptions = Union[ServiceClientConfig, Mapping[str, Any], None]


class ClientKey(NamedTuple):
    """Pool key; equal keys always map to the same client."""
    base_url: str
    config: ServiceClientConfig
    service_name: Optional[str] = None


def _normalize(config: ClientOptions) -> ServiceClientConfig:
    if config is None:
        return ServiceClientConfig()
    if isinstance(config, ServiceClientConfig):
        return config
    return ServiceClientConfig.from_dict(config)


class ServiceClientPool:
    """
    Bounded cache of ServiceClients with FIFO eviction.

    Evicted clients are only dropped from the pool, never closed, so
    requests already running on them complete normally.

    Example:
        pool = get_pool()
        client = pool.get("http://users:8000", {"timeout": 3.0})
        response = await client.get("/v1/users/42")
    """

    def __init__(
        self,
        max_size: int = 10,
        client_factory: Callable[..., ServiceClient] = ServiceClient,
    ):
        self.max_size = max_size
        self._client_factory = client_factory
        self._clients: "OrderedDict[ClientKey, ServiceClient]" = OrderedDict()
        self._lock = threading.Lock()

    def _get_or_create(
        self,
        key: ClientKey,
        discovery: Optional[ServiceDiscovery] = None,
    ) -> ServiceClient:
        with self._lock:
            client = self._clients.get(key)
            if client is not None:
                return client

            client = self._client_factory(
                key.base_url,
                key.config,
                service_name=key.service_name,
                discovery=discovery,
            )
            self._clients[key] = client
            logger.debug("client_created", base_url=key.base_url, pool_size=len(self._clients))

            while len(self._clients) > self.max_size:
                evicted, _ = self._clients.popitem(last=False)
                logger.debug("client_evicted", base_url=evicted.base_url)

            return client

    def get(self, base_url: str, config: ClientOptions = None) -> ServiceClient:
        """Get a cached client for base_url and config, creating it on a miss."""
        return self._get_or_create(ClientKey(base_url, _normalize(config)))

    def get_for_service(
        self,
        name: str,
        discovery: ServiceDiscovery,
        config: ClientOptions = None,
    ) -> ServiceClient:
        """
        Get a client bound to the next healthy endpoint of a logical service.

        Raises:
            ServiceNotFoundError: If the service is not registered
            NoHealthyEndpointError: If no endpoint is currently usable
        """
        if not discovery.is_registered(name):
            raise ServiceNotFoundError("Service is not registered", service=name)

        url = discovery.get_next_healthy(name)
        if url is None:
            raise NoHealthyEndpointError("No healthy endpoint available", service=name)

        key = ClientKey(url, _normalize(config), service_name=name)
        return self._get_or_create(key, discovery=discovery)

    def get_registered(self, name: str, services: ServiceConfigRegistry) -> ServiceClient:
        """
        Get the client for a service registered in a ServiceConfigRegistry.

        Raises:
            ServiceNotFoundError: If the service is not registered
        """
        entry = services.get(name)
        if entry is None:
            raise ServiceNotFoundError("Service has no registered configuration", service=name)
        return self._get_or_create(ClientKey(entry.base_url, entry.config, service_name=name))

    def has(self, base_url: str, config: ClientOptions = None) -> bool:
        key = ClientKey(base_url, _normalize(config))
        with self._lock:
            return key in self._clients

    def delete(self, base_url: str, config: ClientOptions = None) -> bool:
        """Remove a client from the pool. Returns True if it was cached."""
        key = ClientKey(base_url, _normalize(config))
        with self._lock:
            return self._clients.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._clients.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._clients)

    __len__ = size

    def cached_urls(self) -> List[str]:
        """Base URLs of all cached clients, oldest first."""
        with self._lock:
            return [key.base_url for key in self._clients]


# Process-wide pool, survives across warm invocations
_pool: Optional[ServiceClientPool] = None
_pool_lock = threading.Lock()


def get_pool() -> ServiceClientPool:
    """Get the singleton ServiceClientPool, creating it on first access."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                _pool = ServiceClientPool()
    return _pool


def reset_pool() -> None:
    """Drop the singleton pool (for testing)."""
    global _pool
    with _pool_lock:
        _pool = None
