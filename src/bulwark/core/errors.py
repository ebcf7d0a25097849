"""
Failure taxonomy for guarded execution.

Every failure surfaced by the execution layer is a :class:`BulwarkError`.
Callers can catch the whole family with one ``except`` clause, or narrow
to the exact outcome they care about.

Architecture:
    ::

        BulwarkError
        ├── InvalidArgumentError (also ValueError)   configuration time only
        └── ExecutionError          retries exhausted, no fallback configured
            ├── CircuitOpenError        breaker rejected the call
            ├── AbortedExecutionError   abort condition fired, never retried
            ├── FallbackExecutionError  fallback itself raised
            └── ExecutionCancelledError cancel signal during a retry delay

Failure kinds:
    Retry policies, circuit breakers, and abort rules all select failures
    by exception class. A failure matches a kind when it is an instance of
    that class or one of its subclasses; see :func:`matches_failure`.

Examples:
    >>> try:
    ...     execute(fetch, policy)
    ... except AbortedExecutionError:
    ...     ...  # caller-declared hard stop
    ... except ExecutionError as e:
    ...     log.error("gave up", attempts=e.attempts, error=str(e.last_error))
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any


class BulwarkError(Exception):
    """Base class for every error raised by bulwark.

    Attributes:
        message: Human readable description
        cause: Underlying exception, also chained as ``__cause__``
    """

    def __init__(self, message: str, *, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
        }
        if self.cause is not None:
            result["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause),
            }
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class InvalidArgumentError(BulwarkError, ValueError):
    """Raised at configuration time for out-of-range or missing values."""


class ExecutionError(BulwarkError):
    """The guarded operation did not produce a result.

    Raised when retries are exhausted (or none were configured) and no
    fallback exists.  Subclasses cover the other terminal outcomes.

    Attributes:
        attempts: Number of times the operation was invoked
        last_error: Last failure raised by the operation, if any
    """

    def __init__(
        self,
        message: str,
        *,
        attempts: int = 0,
        last_error: BaseException | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message, cause=cause if cause is not None else last_error)
        self.attempts = attempts
        self.last_error = last_error

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["attempts"] = self.attempts
        return result


class CircuitOpenError(ExecutionError):
    """Raised when an open circuit breaker rejects a call."""

    def __init__(
        self,
        breaker_name: str = "default",
        *,
        retry_after: float = 0.0,
        attempts: int = 0,
    ):
        super().__init__(
            f"Circuit '{breaker_name}' is open, rejecting call",
            attempts=attempts,
        )
        self.breaker_name = breaker_name
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["breaker_name"] = self.breaker_name
        result["retry_after"] = self.retry_after
        return result


class AbortedExecutionError(ExecutionError):
    """An abort condition fired.

    Never retried and never routed to a fallback.  Propagates unchanged
    through nested guarded calls.
    """


class FallbackExecutionError(ExecutionError):
    """The fallback raised after the primary operation gave up.

    Attributes:
        fallback_error: Exception raised by the fallback
        original_error: Last failure of the primary operation
    """

    def __init__(
        self,
        message: str,
        *,
        fallback_error: BaseException,
        original_error: BaseException,
        attempts: int = 0,
    ):
        super().__init__(
            message,
            attempts=attempts,
            last_error=original_error,
            cause=fallback_error,
        )
        self.fallback_error = fallback_error
        self.original_error = original_error

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["original_error"] = {
            "type": type(self.original_error).__name__,
            "message": str(self.original_error),
        }
        return result


class ExecutionCancelledError(ExecutionError):
    """A cancellation signal arrived while waiting between attempts."""


def validate_failure_kinds(kinds: Iterable[Any] | None, field_name: str) -> frozenset[type[BaseException]]:
    """Normalize a collection of exception classes into a frozenset.

    Raises:
        InvalidArgumentError: If any member is not an exception class
    """
    if kinds is None:
        return frozenset()
    if isinstance(kinds, type):
        kinds = (kinds,)
    result = frozenset(kinds)
    for kind in result:
        if not (isinstance(kind, type) and issubclass(kind, BaseException)):
            raise InvalidArgumentError(f"{field_name} must contain exception classes, got {kind!r}")
    return result


def matches_failure(error: BaseException, kinds: Iterable[type[BaseException]]) -> bool:
    """Return True if ``error`` is an instance of any of ``kinds``.

    An empty ``kinds`` matches nothing; callers decide what an empty set
    means for them.
    """
    kinds = tuple(kinds)
    return bool(kinds) and isinstance(error, kinds)


__all__ = [
    "BulwarkError",
    "InvalidArgumentError",
    "ExecutionError",
    "CircuitOpenError",
    "AbortedExecutionError",
    "FallbackExecutionError",
    "ExecutionCancelledError",
    "validate_failure_kinds",
    "matches_failure",
]
