"""
Environment-driven defaults for bulwark.

:class:`BulwarkSettings` holds the defaults used when a retry policy or
circuit breaker is built from configuration instead of code.  Values come
from ``BULWARK_*`` environment variables or a ``.env`` file and are
validated once, at load time.

Examples:
    >>> import os
    >>> os.environ["BULWARK_RETRY_MAX_RETRIES"] = "5"
    >>> get_settings(_force_reload=True).retry_max_retries
    5
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from bulwark.execution.retry import BackoffStrategy


class BulwarkSettings(BaseSettings):
    """Bulwark configuration.

    Fields
    ──────
    log_level                  : structlog log level
    log_json                   : JSON log output (None = auto-detect tty)
    retry_max_retries          : retries after the first attempt
    retry_base_delay           : seconds before the first retry
    retry_backoff              : simple | exponential
    retry_multiplier           : exponential growth factor (>= 1.0)
    retry_max_delay            : optional cap on any single delay
    breaker_failure_threshold  : consecutive failures that open the circuit
    breaker_reset_timeout      : seconds the circuit stays open
    """

    model_config = SettingsConfigDict(
        env_prefix="BULWARK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Retry ────────────────────────────────────────────────────
    retry_max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=0.5, ge=0.0)
    retry_backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    retry_multiplier: float = Field(default=2.0, ge=1.0)
    retry_max_delay: float | None = Field(default=None, ge=0.0)

    # ── Circuit breaker ──────────────────────────────────────────
    breaker_failure_threshold: int = Field(default=5, gt=0)
    breaker_reset_timeout: float = Field(default=30.0, gt=0.0)


_settings_cache: dict[str, BulwarkSettings] = {}


def get_settings(*, _force_reload: bool = False) -> BulwarkSettings:
    """Load, validate, and cache a :class:`BulwarkSettings` instance."""
    if _force_reload or "default" not in _settings_cache:
        _settings_cache["default"] = BulwarkSettings()
    return _settings_cache["default"]


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()


__all__ = [
    "BulwarkSettings",
    "get_settings",
    "clear_settings_cache",
]
