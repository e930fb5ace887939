"""
Navis Core - Service Discovery
==============================
Round-robin service registry with background health probing.
"""

from .models import Endpoint, Service
from .prober import HealthProber
from .registry import ServiceDiscovery

__all__ = [
    "Endpoint",
    "Service",
    "HealthProber",
    "ServiceDiscovery",
]
