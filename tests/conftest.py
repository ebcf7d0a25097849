"""
Shared pytest fixtures for bulwark tests.

This module provides:
- A controllable monotonic clock for circuit breaker timing
- Settings cache isolation
- A clean default circuit breaker registry per test
"""

from __future__ import annotations

from collections.abc import Generator

import pytest

from bulwark.core.settings import clear_settings_cache
from bulwark.execution.circuit_breaker import get_default_registry


class FakeClock:
    """Manually advanced stand-in for ``time.monotonic``."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """A fake monotonic clock starting at t=1000s."""
    return FakeClock()


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Drop cached settings and BULWARK_* variables around every test."""
    import os

    for key in list(os.environ):
        if key.startswith("BULWARK_"):
            monkeypatch.delenv(key)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture(autouse=True)
def _clear_default_registry() -> Generator[None, None, None]:
    """Keep named breakers from leaking between tests."""
    get_default_registry().clear()
    yield
    get_default_registry().clear()
