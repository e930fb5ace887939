"""
Navis Structured Logging
========================
structlog configuration for services using navis-core.

Usage:
    from navis_core.logging import setup_logging, get_logger

    # Setup at startup
    setup_logging(service_name="orders-api")

    logger = get_logger(__name__)
    logger.info("order.created", order_id="ord_123")

Library modules log through ``structlog.get_logger(__name__)`` and emit
event names with keyword context (``circuit_opened``, ``retry_scheduled``,
``health_probe_failed`` ...). Without ``setup_logging`` structlog's defaults
apply.
"""

import logging
import sys
from typing import Any

import structlog


def setup_logging(
    service_name: str,
    level: str = "INFO",
    json_output: bool = True,
) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog on top of stdlib logging.

    Args:
        service_name: Name bound into every log event
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Whether to output JSON (for production)

    Returns:
        Logger bound to the service
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(processor=renderer))

    # Remove existing handlers
    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    bind_context(service=service_name)
    return get_logger(service_name)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables for structured logging."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear context variables."""
    structlog.contextvars.clear_contextvars()
