from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(frozen=True)
class ServiceResponse:
    """Successful outcome of a service call."""
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
