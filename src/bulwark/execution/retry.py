"""Retry policy: attempt limits, failure filtering, and backoff delays.

A :class:`RetryPolicy` answers two questions after every failed attempt:
may the operation run again, and how long to wait first.  It carries no
per-call state, so one policy can guard any number of concurrent calls.

Example:
    >>> from bulwark.execution.retry import RetryPolicy, BackoffStrategy
    >>>
    >>> policy = RetryPolicy(max_retries=5, base_delay=0.5).with_backoff(
    ...     BackoffStrategy.EXPONENTIAL, multiplier=2.0
    ... )
    >>> [policy.compute_delay(n) for n in (1, 2, 3)]
    [0.5, 1.0, 2.0]
"""

from __future__ import annotations

import math
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

from bulwark.core.errors import InvalidArgumentError, matches_failure, validate_failure_kinds

if TYPE_CHECKING:
    from bulwark.core.settings import BulwarkSettings

# Longest wait time.sleep / Event.wait will accept.
MAX_DELAY_SECONDS = threading.TIMEOUT_MAX


class BackoffStrategy(str, Enum):
    """How the delay grows between retries."""

    SIMPLE = "simple"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryAttemptContext:
    """Snapshot handed to attempt observers after each failure.

    Attributes:
        attempt_number: 1 for the first failure, 2 for the second, ...
        last_failure: Exception raised by the attempt
        delay: Seconds the executor will wait before retrying
    """

    attempt_number: int
    last_failure: BaseException
    delay: float


AttemptListener = Callable[[RetryAttemptContext], None]


def _validate_listener(listener: object) -> None:
    if not callable(listener):
        raise InvalidArgumentError(f"Listener must be callable, got {listener!r}")


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration.

    Delay for retry ``n`` (``n`` starts at 1):

    - SIMPLE:      ``base_delay``
    - EXPONENTIAL: ``base_delay * multiplier ** (n - 1)``

    Delays are truncated toward zero at millisecond resolution and capped
    at ``max_delay`` when one is set.

    Attributes:
        max_retries: Retries allowed after the initial attempt
        base_delay: Seconds before the first retry
        retryable_errors: Exception classes worth retrying (empty = all)
        backoff: Delay growth strategy
        multiplier: Exponential growth factor, at least 1.0
        max_delay: Optional cap on any single delay, in seconds
        failed_attempt_listeners: Called after every failed attempt
        retry_listeners: Called just before sleeping for a retry
    """

    max_retries: int = 3
    base_delay: float = 0.0
    retryable_errors: frozenset[type[BaseException]] = frozenset()
    backoff: BackoffStrategy = BackoffStrategy.SIMPLE
    multiplier: float = 1.0
    max_delay: float | None = None
    failed_attempt_listeners: tuple[AttemptListener, ...] = ()
    retry_listeners: tuple[AttemptListener, ...] = ()

    def __post_init__(self) -> None:
        if isinstance(self.max_retries, bool) or not isinstance(self.max_retries, int):
            raise InvalidArgumentError(f"max_retries must be an integer, got {self.max_retries!r}")
        if self.max_retries < 0:
            raise InvalidArgumentError("max_retries must be non-negative.")
        if self.base_delay is None or self.base_delay < 0:
            raise InvalidArgumentError("base_delay must be non-negative.")
        if self.max_delay is not None and self.max_delay < 0:
            raise InvalidArgumentError("max_delay must be non-negative.")

        object.__setattr__(self, "backoff", _coerce_backoff(self.backoff, self.multiplier))
        object.__setattr__(self, "multiplier", float(self.multiplier))
        object.__setattr__(
            self,
            "retryable_errors",
            validate_failure_kinds(self.retryable_errors, "retryable_errors"),
        )

        for name in ("failed_attempt_listeners", "retry_listeners"):
            listeners = tuple(getattr(self, name))
            for listener in listeners:
                _validate_listener(listener)
            object.__setattr__(self, name, listeners)

    # ── Builder-style copies ─────────────────────────────────────────

    def with_backoff(self, strategy: BackoffStrategy | str, multiplier: float = 2.0) -> RetryPolicy:
        """Return a copy using ``strategy`` with the given multiplier.

        Raises:
            InvalidArgumentError: If strategy is None or multiplier < 1.0
        """
        return replace(self, backoff=_coerce_backoff(strategy, multiplier), multiplier=multiplier)

    def on_failed_attempt(self, listener: AttemptListener) -> RetryPolicy:
        """Return a copy that also calls ``listener`` after each failed attempt."""
        _validate_listener(listener)
        return replace(self, failed_attempt_listeners=self.failed_attempt_listeners + (listener,))

    def on_retry(self, listener: AttemptListener) -> RetryPolicy:
        """Return a copy that also calls ``listener`` before each retry."""
        _validate_listener(listener)
        return replace(self, retry_listeners=self.retry_listeners + (listener,))

    @classmethod
    def from_settings(
        cls,
        settings: BulwarkSettings | None = None,
        *,
        retryable_errors: Iterable[type[BaseException]] = (),
    ) -> RetryPolicy:
        """Build a policy from :class:`~bulwark.core.settings.BulwarkSettings`."""
        if settings is None:
            from bulwark.core.settings import get_settings

            settings = get_settings()

        return cls(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay,
            retryable_errors=frozenset(retryable_errors),
            backoff=settings.retry_backoff,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay,
        )

    # ── Decisions ────────────────────────────────────────────────────

    def should_retry(self, attempt_number: int, last_failure: BaseException) -> bool:
        """Decide whether failed attempt ``attempt_number`` may be retried.

        Args:
            attempt_number: Failed attempts so far (1 after the first failure)
            last_failure: The exception that caused the failure

        Returns:
            False once ``attempt_number`` exceeds ``max_retries``, or when
            ``retryable_errors`` is set and the failure matches none of it.
        """
        if attempt_number > self.max_retries:
            return False
        if self.retryable_errors:
            return matches_failure(last_failure, self.retryable_errors)
        return True

    def compute_delay(self, attempt_number: int) -> float:
        """Seconds to wait before retry ``attempt_number`` (1-based)."""
        if attempt_number < 1:
            raise InvalidArgumentError(f"attempt_number starts at 1, got {attempt_number}")

        # Whole microseconds first: 0.57 * 1000 is 569.99...
        base_us = round(self.base_delay * 1_000_000)
        if base_us == 0:
            return 0.0

        if self.backoff == BackoffStrategy.EXPONENTIAL:
            try:
                factor = self.multiplier ** (attempt_number - 1)
            except OverflowError:
                factor = math.inf
        else:
            factor = 1.0

        cap = MAX_DELAY_SECONDS if self.max_delay is None else min(self.max_delay, MAX_DELAY_SECONDS)
        delay_ms = min(base_us * factor / 1000, cap * 1000)
        return min(math.trunc(delay_ms) / 1000, cap)

    # ── Observers ────────────────────────────────────────────────────

    def notify_failed_attempt(self, context: RetryAttemptContext) -> None:
        """Invoke failed-attempt listeners in registration order."""
        for listener in self.failed_attempt_listeners:
            listener(context)

    def notify_retry(self, context: RetryAttemptContext) -> None:
        """Invoke retry listeners in registration order."""
        for listener in self.retry_listeners:
            listener(context)


def _coerce_backoff(strategy: BackoffStrategy | str | None, multiplier: float) -> BackoffStrategy:
    if strategy is None:
        raise InvalidArgumentError("Backoff strategy cannot be None.")
    if multiplier is None or multiplier < 1.0:
        raise InvalidArgumentError("Multiplier must be at least 1.0.")
    try:
        return BackoffStrategy(strategy)
    except ValueError as e:
        raise InvalidArgumentError(f"Unknown backoff strategy: {strategy!r}", cause=e) from e


__all__ = [
    "AttemptListener",
    "BackoffStrategy",
    "MAX_DELAY_SECONDS",
    "RetryAttemptContext",
    "RetryPolicy",
]
