"""Circuit breaker pattern for fault tolerance.

Prevents cascading failures by failing fast when a downstream dependency
keeps failing.  A breaker is shared by every caller guarding the same
dependency, so all state changes happen under one lock.

States:
    CLOSED: Normal operation, calls pass through
    OPEN: Failing fast, calls rejected until ``reset_timeout`` elapses
    HALF_OPEN: One trial call admitted; success closes, failure reopens

Transitions::

    CLOSED ──(failure_count >= failure_threshold)──▶ OPEN
    OPEN ──(before_call after reset_timeout)──▶ HALF_OPEN
    HALF_OPEN ──(success)──▶ CLOSED
    HALF_OPEN ──(failure)──▶ OPEN

Example:
    >>> from bulwark.execution.circuit_breaker import CircuitBreaker
    >>>
    >>> breaker = CircuitBreaker(
    ...     failure_threshold=5,
    ...     reset_timeout=30.0,
    ...     handled_failures={ConnectionError},
    ... ).on_open(lambda event: alert(event.breaker.name))
    >>>
    >>> breaker.before_call()          # raises CircuitOpenError when open
    >>> try:
    ...     result = call_external_service()
    ... except Exception as e:
    ...     breaker.after_call_failure(e)
    ...     raise
    ... else:
    ...     breaker.after_call_success()
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from bulwark.core.errors import (
    CircuitOpenError,
    InvalidArgumentError,
    matches_failure,
    validate_failure_kinds,
)
from bulwark.core.logging import get_logger

if TYPE_CHECKING:
    from bulwark.core.settings import BulwarkSettings

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Rejecting calls
    HALF_OPEN = "half_open"  # Trial call in flight


@dataclass(frozen=True)
class CircuitBreakerEvent:
    """Passed to state-change listeners."""

    breaker: CircuitBreaker
    previous_state: CircuitState
    state: CircuitState


BreakerListener = Callable[[CircuitBreakerEvent], None]


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    admitted_calls: int = 0
    rejected_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    ignored_failures: int = 0
    state_changes: int = 0

    @property
    def failure_rate(self) -> float:
        """Counted failures as a percentage of reported outcomes."""
        total = self.successful_calls + self.failed_calls
        if total == 0:
            return 0.0
        return (self.failed_calls / total) * 100


class CircuitBreaker:
    """Thread-safe three-state circuit breaker.

    Args:
        failure_threshold: Consecutive counted failures that open the circuit
        reset_timeout: Seconds after the last counted failure before a
            trial call is admitted
        name: Identifier used in logs and errors
        handled_failures: Exception classes that count as failures (empty = all)
        clock: Monotonic time source in seconds

    Raises:
        InvalidArgumentError: If ``failure_threshold <= 0`` or ``reset_timeout <= 0``
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        *,
        name: str = "default",
        handled_failures: Iterable[type[BaseException]] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        if isinstance(failure_threshold, bool) or not isinstance(failure_threshold, int):
            raise InvalidArgumentError(f"failure_threshold must be an integer, got {failure_threshold!r}")
        if failure_threshold <= 0:
            raise InvalidArgumentError("failure_threshold must be greater than zero.")
        if reset_timeout is None or reset_timeout <= 0:
            raise InvalidArgumentError("reset_timeout must be greater than zero.")

        self._name = name
        self._failure_threshold = failure_threshold
        self._reset_timeout = float(reset_timeout)
        self._handled_failures = validate_failure_kinds(handled_failures, "handled_failures")
        self._clock = clock

        # Shared with clones by reference, together with the lock guarding them
        self._listener_lock = threading.Lock()
        self._open_listeners: list[BreakerListener] = []
        self._close_listeners: list[BreakerListener] = []
        self._half_open_listeners: list[BreakerListener] = []

        # Internal state
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._lock = threading.RLock()
        self._stats = CircuitStats()

    # ── Configuration ────────────────────────────────────────────────

    @classmethod
    def from_settings(
        cls,
        settings: BulwarkSettings | None = None,
        *,
        name: str = "default",
        handled_failures: Iterable[type[BaseException]] = (),
    ) -> CircuitBreaker:
        """Build a breaker from :class:`~bulwark.core.settings.BulwarkSettings`."""
        if settings is None:
            from bulwark.core.settings import get_settings

            settings = get_settings()

        return cls(
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout=settings.breaker_reset_timeout,
            name=name,
            handled_failures=handled_failures,
        )

    def on_open(self, listener: BreakerListener) -> CircuitBreaker:
        """Register a listener fired on every transition to OPEN."""
        self._register(self._open_listeners, listener)
        return self

    def on_close(self, listener: BreakerListener) -> CircuitBreaker:
        """Register a listener fired on every transition to CLOSED."""
        self._register(self._close_listeners, listener)
        return self

    def on_half_open(self, listener: BreakerListener) -> CircuitBreaker:
        """Register a listener fired on every transition to HALF_OPEN."""
        self._register(self._half_open_listeners, listener)
        return self

    def _register(self, listeners: list[BreakerListener], listener: BreakerListener) -> None:
        if not callable(listener):
            raise InvalidArgumentError(f"Listener must be callable, got {listener!r}")
        with self._listener_lock:
            listeners.append(listener)

    def clone_with_fresh_state(self, name: str | None = None) -> CircuitBreaker:
        """Return a CLOSED breaker sharing this one's configuration and listeners."""
        clone = CircuitBreaker(
            failure_threshold=self._failure_threshold,
            reset_timeout=self._reset_timeout,
            name=name or self._name,
            handled_failures=self._handled_failures,
            clock=self._clock,
        )
        clone._listener_lock = self._listener_lock
        clone._open_listeners = self._open_listeners
        clone._close_listeners = self._close_listeners
        clone._half_open_listeners = self._half_open_listeners
        return clone

    # ── Read accessors ───────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self._name

    @property
    def failure_threshold(self) -> int:
        return self._failure_threshold

    @property
    def reset_timeout(self) -> float:
        return self._reset_timeout

    @property
    def handled_failures(self) -> frozenset[type[BaseException]]:
        return self._handled_failures

    @property
    def state(self) -> CircuitState:
        """Current state.  Reading never triggers a transition."""
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def last_failure_time(self) -> float:
        """Clock reading of the last counted failure (0.0 if none)."""
        with self._lock:
            return self._last_failure_time

    @property
    def stats(self) -> CircuitStats:
        """Get circuit statistics."""
        return self._stats

    @property
    def listener_counts(self) -> dict[str, int]:
        """Registered listeners per event, for diagnostics."""
        with self._listener_lock:
            return {
                "open": len(self._open_listeners),
                "close": len(self._close_listeners),
                "half_open": len(self._half_open_listeners),
            }

    # ── Call protocol ────────────────────────────────────────────────

    def before_call(self) -> None:
        """Admit or reject a call.

        In OPEN, admits a trial call (moving to HALF_OPEN) once more than
        ``reset_timeout`` seconds have passed since the last counted failure.

        Raises:
            CircuitOpenError: If OPEN and the timeout has not elapsed
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - self._last_failure_time
                if elapsed > self._reset_timeout:
                    self._transition_to(CircuitState.HALF_OPEN)
                else:
                    self._stats.rejected_calls += 1
                    remaining = self._reset_timeout - elapsed
                    logger.debug(
                        "circuit_breaker.rejected",
                        breaker=self._name,
                        retry_after=remaining,
                    )
                    raise CircuitOpenError(self._name, retry_after=remaining)
            self._stats.admitted_calls += 1

    def after_call_success(self) -> None:
        """Report a successful call."""
        with self._lock:
            self._stats.successful_calls += 1
            if self._state == CircuitState.HALF_OPEN:
                self.reset()
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def after_call_failure(self, failure: BaseException) -> None:
        """Report a failed call.

        Failures outside ``handled_failures`` (when set) are ignored
        entirely: no count change and no state change.
        """
        with self._lock:
            if self._handled_failures and not matches_failure(failure, self._handled_failures):
                self._stats.ignored_failures += 1
                return

            self._stats.failed_calls += 1
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._failure_count >= self._failure_threshold and self._state != CircuitState.OPEN:
                self._transition_to(CircuitState.OPEN)

    def reset(self) -> None:
        """Force the circuit CLOSED and clear the failure count."""
        with self._lock:
            self._failure_count = 0
            if self._state != CircuitState.CLOSED:
                self._transition_to(CircuitState.CLOSED)

    # ── Internals ────────────────────────────────────────────────────

    def _transition_to(self, new_state: CircuitState) -> None:
        """Change state and fire listeners.  Caller holds the lock."""
        old_state = self._state
        self._state = new_state
        self._stats.state_changes += 1

        if new_state == CircuitState.OPEN:
            listeners = self._open_listeners
            logger.warning(
                "circuit_breaker.opened",
                breaker=self._name,
                failure_count=self._failure_count,
                previous_state=old_state.value,
            )
        elif new_state == CircuitState.HALF_OPEN:
            listeners = self._half_open_listeners
            logger.info("circuit_breaker.half_opened", breaker=self._name)
        else:
            listeners = self._close_listeners
            logger.info("circuit_breaker.closed", breaker=self._name)

        with self._listener_lock:
            snapshot = list(listeners)
        event = CircuitBreakerEvent(breaker=self, previous_state=old_state, state=new_state)
        for listener in snapshot:
            listener(event)

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self._name!r}, state={self._state.value}, "
            f"failure_count={self._failure_count}, failure_threshold={self._failure_threshold}, "
            f"reset_timeout={self._reset_timeout})"
        )


class CircuitBreakerRegistry:
    """Process-local breakers keyed by dependency name.

    Every call site guarding one downstream asks for the same name and
    receives the same :class:`CircuitBreaker`, so failures seen by one
    caller open the circuit for all of them.
    """

    def __init__(self) -> None:
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker | None:
        """Breaker registered under ``name``, or None."""
        with self._lock:
            return self._breakers.get(name)

    def get_or_create(
        self,
        name: str,
        *,
        template: CircuitBreaker | None = None,
        **kwargs: Any,
    ) -> CircuitBreaker:
        """Return the breaker for ``name``, registering one on first use.

        The first caller decides the configuration: a fresh-state clone of
        ``template`` when given, otherwise ``CircuitBreaker(name=name, **kwargs)``.
        Later calls ignore both and return the registered instance.
        """
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                if template is not None:
                    breaker = template.clone_with_fresh_state(name=name)
                else:
                    breaker = CircuitBreaker(name=name, **kwargs)
                self._breakers[name] = breaker
            return breaker

    def clear(self) -> None:
        """Forget every registered breaker."""
        with self._lock:
            self._breakers.clear()


_default_registry = CircuitBreakerRegistry()


def get_circuit_breaker(name: str, **kwargs: Any) -> CircuitBreaker:
    """Get a circuit breaker from the default registry."""
    return _default_registry.get_or_create(name, **kwargs)


def get_default_registry() -> CircuitBreakerRegistry:
    """Return the process-wide registry used by :func:`get_circuit_breaker`."""
    return _default_registry


__all__ = [
    "BreakerListener",
    "CircuitBreaker",
    "CircuitBreakerEvent",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CircuitStats",
    "get_circuit_breaker",
    "get_default_registry",
]
