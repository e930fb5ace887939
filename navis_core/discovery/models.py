"""
Discovery Models
================
Registered services and their endpoints.
"""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class Endpoint:
    """One URL backing a logical service."""
    url: str
    healthy: bool = True
    last_checked_at: Optional[float] = None

    def is_admissible(self, now: float, stale_after: float) -> bool:
        """Healthy, or not checked recently enough to be trusted as unhealthy."""
        if self.healthy or self.last_checked_at is None:
            return True
        return now - self.last_checked_at > stale_after


@dataclass
class Service:
    """Named endpoint set with a round-robin cursor."""
    name: str
    endpoints: List[Endpoint] = field(default_factory=list)
    cursor: int = 0

    def find(self, url: str) -> Optional[Endpoint]:
        for endpoint in self.endpoints:
            if endpoint.url == url:
                return endpoint
        return None

    def advance(self) -> Endpoint:
        """Return the endpoint under the cursor and move the cursor on."""
        endpoint = self.endpoints[self.cursor]
        self.cursor = (self.cursor + 1) % len(self.endpoints)
        return endpoint
