"""
Bulwark core primitives: failure taxonomy, logging, and settings.
"""

from bulwark.core.errors import (
    AbortedExecutionError,
    BulwarkError,
    CircuitOpenError,
    ExecutionCancelledError,
    ExecutionError,
    FallbackExecutionError,
    InvalidArgumentError,
    matches_failure,
)
from bulwark.core.logging import configure_logging, get_logger
from bulwark.core.settings import BulwarkSettings, clear_settings_cache, get_settings

__all__ = [
    # errors
    "BulwarkError",
    "InvalidArgumentError",
    "ExecutionError",
    "CircuitOpenError",
    "AbortedExecutionError",
    "FallbackExecutionError",
    "ExecutionCancelledError",
    "matches_failure",
    # logging
    "configure_logging",
    "get_logger",
    # settings
    "BulwarkSettings",
    "get_settings",
    "clear_settings_cache",
]
