from .client import ServiceClient
from .models import ServiceResponse
from .pool import ClientKey, ServiceClientPool, get_pool, reset_pool

__all__ = [
    "ServiceClient",
    "ServiceResponse",
    "ClientKey",
    "ServiceClientPool",
    "get_pool",
    "reset_pool",
]
