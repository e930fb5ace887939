"""
Navis Core Configuration
========================
Configuration records for service clients and service discovery, and a
registry of per-service client settings.

Options can be given as dataclasses, as plain mappings (``from_dict``) or
read from the environment (``from_env``).
"""

import copy
import os
import threading
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional

import structlog

from navis_core.circuit_breaker.models import CircuitBreakerConfig
from navis_core.exceptions import ConfigurationError
from navis_core.retry.policy import RetryPolicy

logger = structlog.get_logger(__name__)

# Flat option names mapped to (section, field)
_FLAT_OPTIONS = {
    "max_retries": ("retry", "max_retries"),
    "retry_base_delay": ("retry", "base_delay"),
    "retry_max_delay": ("retry", "max_delay"),
    "retry_jitter": ("retry", "jitter"),
    "circuit_breaker_threshold": ("circuit_breaker", "failure_threshold"),
    "circuit_breaker_reset_timeout": ("circuit_breaker", "reset_timeout"),
    "circuit_breaker_success_threshold": ("circuit_breaker", "success_threshold"),
}

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _build_section(cls, base, options: Mapping[str, Any], section: str):
    known = {f.name for f in fields(cls)}
    unknown = set(options) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown {section} option(s): {', '.join(sorted(unknown))}"
        )
    return replace(base, **options)


@dataclass(frozen=True)
class ServiceClientConfig:
    """Configuration for a ServiceClient. Hashable, so usable as a pool key."""
    timeout: float = 5.0              # Per-attempt wall-clock cap in seconds
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)

    def __post_init__(self):
        if self.timeout <= 0:
            raise ConfigurationError("timeout must be > 0")

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "ServiceClientConfig":
        """
        Build a config from an option mapping.

        Accepts flat keys (``max_retries``, ``retry_base_delay``,
        ``circuit_breaker_threshold``...), booleans for ``retry`` and
        ``circuit_breaker`` to toggle them, or nested mappings for either
        section. Unknown keys raise ConfigurationError.
        """
        sections: Dict[str, Dict[str, Any]] = {"retry": {}, "circuit_breaker": {}}
        top: Dict[str, Any] = {}

        for key, value in options.items():
            if key == "timeout":
                top["timeout"] = value
            elif key in sections:
                if isinstance(value, bool):
                    sections[key]["enabled"] = value
                elif isinstance(value, Mapping):
                    sections[key].update(value)
                else:
                    raise ConfigurationError(f"{key} must be a bool or a mapping")
            elif key in _FLAT_OPTIONS:
                section, name = _FLAT_OPTIONS[key]
                sections[section][name] = value
            else:
                raise ConfigurationError(f"Unknown service client option: {key}")

        return cls(
            retry=_build_section(RetryPolicy, RetryPolicy(), sections["retry"], "retry"),
            circuit_breaker=_build_section(
                CircuitBreakerConfig,
                CircuitBreakerConfig(),
                sections["circuit_breaker"],
                "circuit_breaker",
            ),
            **top,
        )

    @classmethod
    def from_env(cls, prefix: str = "NAVIS_") -> "ServiceClientConfig":
        """Read client configuration from environment variables."""
        retry = RetryPolicy(
            enabled=_env_bool(f"{prefix}RETRY_ENABLED", True),
            max_retries=_env_int(f"{prefix}MAX_RETRIES", 3),
            base_delay=_env_float(f"{prefix}RETRY_BASE_DELAY", 1.0),
            max_delay=_env_float(f"{prefix}RETRY_MAX_DELAY", 30.0),
            jitter=_env_float(f"{prefix}RETRY_JITTER", 0.1),
        )
        breaker = CircuitBreakerConfig(
            enabled=_env_bool(f"{prefix}CIRCUIT_BREAKER_ENABLED", True),
            failure_threshold=_env_int(f"{prefix}CIRCUIT_BREAKER_THRESHOLD", 5),
            reset_timeout=_env_float(f"{prefix}CIRCUIT_BREAKER_RESET_TIMEOUT", 60.0),
        )
        return cls(
            timeout=_env_float(f"{prefix}TIMEOUT", 5.0),
            retry=retry,
            circuit_breaker=breaker,
        )


@dataclass(frozen=True)
class DiscoveryConfig:
    """Configuration for service discovery and health probing."""
    enabled: bool = True                  # Run background health probes
    health_check_interval: float = 30.0   # Seconds between probe cycles
    health_check_timeout: float = 5.0     # Seconds per probe request
    health_check_path: str = "/health"

    def __post_init__(self):
        if self.health_check_interval <= 0:
            raise ConfigurationError("health_check_interval must be > 0")
        if self.health_check_timeout <= 0:
            raise ConfigurationError("health_check_timeout must be > 0")

    @classmethod
    def from_env(cls, prefix: str = "NAVIS_") -> "DiscoveryConfig":
        """Read discovery configuration from environment variables."""
        return cls(
            enabled=_env_bool(f"{prefix}DISCOVERY_ENABLED", True),
            health_check_interval=_env_float(f"{prefix}HEALTH_CHECK_INTERVAL", 30.0),
            health_check_timeout=_env_float(f"{prefix}HEALTH_CHECK_TIMEOUT", 5.0),
            health_check_path=os.getenv(f"{prefix}HEALTH_CHECK_PATH", "/health"),
        )


def _merge_options(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Overlay option mappings; nested retry/circuit_breaker mappings merge per key."""
    merged = {key: dict(value) if isinstance(value, Mapping) else value for key, value in base.items()}
    for key, value in override.items():
        current = merged.get(key)
        if key in ("retry", "circuit_breaker") and isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = {**current, **value}
        else:
            merged[key] = dict(value) if isinstance(value, Mapping) else value
    return merged


@dataclass(frozen=True)
class ServiceEntry:
    """A named service: where it lives and how to call it."""
    name: str
    base_url: str
    options: Mapping[str, Any]
    config: ServiceClientConfig


class ServiceConfigRegistry:
    """
    Per-service client settings keyed by logical service name.

    Each service gets its base URL plus its own options laid over the
    registry's default options. Options use the ``ServiceClientConfig.from_dict``
    format and are validated at registration.

    Example:
        services = ServiceConfigRegistry(default_options={"timeout": 3.0})
        services.register("users", "http://users:8000", {"max_retries": 1})

        client = get_pool().get_registered("users", services)
    """

    def __init__(
        self,
        services: Optional[Mapping[str, Mapping[str, Any]]] = None,
        default_options: Optional[Mapping[str, Any]] = None,
    ):
        self._default_options: Dict[str, Any] = dict(default_options or {})
        ServiceClientConfig.from_dict(self._default_options)
        self._services: Dict[str, ServiceEntry] = {}
        self._lock = threading.Lock()
        if services:
            self._register_all(services)

    @property
    def default_options(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._default_options)

    def register(
        self,
        name: str,
        base_url: str,
        options: Optional[Mapping[str, Any]] = None,
    ) -> ServiceEntry:
        """Register (or replace) a service. Raises ConfigurationError on bad options."""
        with self._lock:
            merged = _merge_options(self._default_options, options or {})
            entry = ServiceEntry(
                name=name,
                base_url=base_url,
                options=merged,
                config=ServiceClientConfig.from_dict(merged),
            )
            self._services[name] = entry
        logger.debug("service_config_registered", service=name, base_url=base_url)
        return entry

    def get(self, name: str) -> Optional[ServiceEntry]:
        with self._lock:
            return self._services.get(name)

    def get_all(self) -> Dict[str, ServiceEntry]:
        with self._lock:
            return dict(self._services)

    def unregister(self, name: str) -> None:
        with self._lock:
            self._services.pop(name, None)

    def _register_all(self, services: Mapping[str, Mapping[str, Any]]) -> None:
        for name, service_options in services.items():
            options = dict(service_options)
            base_url = options.pop("base_url", None)
            if not base_url:
                raise ConfigurationError(f"Service {name!r} has no base_url")
            self.register(name, base_url, options)

    def load(self, data: Mapping[str, Any]) -> None:
        """
        Merge a configuration document into the registry.

        ``data`` may hold ``default_options`` (merged over the current
        defaults) and ``services`` (name -> ``{"base_url": ..., **options}``).
        Defaults are applied first, so loaded services pick them up; services
        registered earlier keep the options they were built with.
        """
        unknown = set(data) - {"services", "default_options"}
        if unknown:
            raise ConfigurationError(f"Unknown configuration section(s): {', '.join(sorted(unknown))}")

        if data.get("default_options"):
            with self._lock:
                defaults = _merge_options(self._default_options, data["default_options"])
            ServiceClientConfig.from_dict(defaults)
            with self._lock:
                self._default_options = defaults

        if data.get("services"):
            self._register_all(data["services"])

    def export(self) -> Dict[str, Any]:
        """Configuration document that ``load`` accepts."""
        with self._lock:
            return copy.deepcopy({
                "services": {
                    name: {"base_url": entry.base_url, **entry.options}
                    for name, entry in self._services.items()
                },
                "default_options": self._default_options,
            })
