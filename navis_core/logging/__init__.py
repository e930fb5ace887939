"""
Navis Logging Module

Structured logging setup for services built on navis-core.
"""

from .structured import (
    setup_logging,
    get_logger,
    bind_context,
    clear_context,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "bind_context",
    "clear_context",
]
