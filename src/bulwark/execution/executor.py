"""Resilient execution: retry, circuit breaker, fallback, and abort rules.

:class:`ResilientExecutor` runs one operation under an
:class:`ExecutionPolicy`.  Every attempt follows the same protocol:

1. Ask the circuit breaker for admission.  A rejection ends the call with
   :class:`~bulwark.core.errors.CircuitOpenError`; the fallback is not used.
2. Invoke the operation.
3. On a result, check ``abort_when`` then ``abort_if``.  A match raises
   :class:`~bulwark.core.errors.AbortedExecutionError`.  Otherwise report
   success to the breaker and return the result.
4. On an exception, re-raise nested aborts unchanged and turn ``abort_on``
   matches into an abort.  Anything else is reported to the breaker,
   counted, and shown to the failed-attempt observers with its delay.
5. If the retry policy allows it, notify retry observers, wait, and loop.
6. Otherwise run the fallback, or raise
   :class:`~bulwark.core.errors.ExecutionError`.

Example:
    >>> policy = ExecutionPolicy(
    ...     retry=RetryPolicy(max_retries=3, base_delay=0.5).with_backoff("exponential"),
    ...     circuit_breaker=get_circuit_breaker("pricing-api"),
    ...     fallback=lambda: cached_prices(),
    ...     abort_on={PermissionError},
    ... )
    >>> prices = execute(fetch_prices, policy)
    >>>
    >>> @with_resilience(policy)
    ... async def fetch_quote(symbol):
    ...     return await client.get(symbol)
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import threading
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

from bulwark.core.errors import (
    AbortedExecutionError,
    CircuitOpenError,
    ExecutionCancelledError,
    ExecutionError,
    FallbackExecutionError,
    InvalidArgumentError,
    matches_failure,
    validate_failure_kinds,
)
from bulwark.core.logging import get_logger
from bulwark.execution.circuit_breaker import CircuitBreaker
from bulwark.execution.retry import RetryAttemptContext, RetryPolicy

T = TypeVar("T")

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExecutionPolicy:
    """Immutable per-call configuration.

    Attributes:
        retry: Retry policy (None = single attempt)
        circuit_breaker: Shared breaker guarding the dependency
        fallback: Zero-argument callable used when the operation gives up
        abort_on: Exception classes that abort instead of failing
        abort_if: Predicate over the result; True aborts
        abort_when: Abort when the result is a bool equal to this value
    """

    retry: RetryPolicy | None = None
    circuit_breaker: CircuitBreaker | None = None
    fallback: Callable[[], Any] | None = None
    abort_on: frozenset[type[BaseException]] = frozenset()
    abort_if: Callable[[Any], bool] | None = None
    abort_when: bool | None = None

    def __post_init__(self) -> None:
        if self.retry is not None and not isinstance(self.retry, RetryPolicy):
            raise InvalidArgumentError(f"retry must be a RetryPolicy, got {self.retry!r}")
        if self.circuit_breaker is not None and not isinstance(self.circuit_breaker, CircuitBreaker):
            raise InvalidArgumentError(
                f"circuit_breaker must be a CircuitBreaker, got {self.circuit_breaker!r}"
            )
        if self.fallback is not None and not callable(self.fallback):
            raise InvalidArgumentError(f"fallback must be callable, got {self.fallback!r}")
        if self.abort_if is not None and not callable(self.abort_if):
            raise InvalidArgumentError(f"abort_if must be callable, got {self.abort_if!r}")
        if self.abort_when is not None and not isinstance(self.abort_when, bool):
            raise InvalidArgumentError(f"abort_when must be a bool, got {self.abort_when!r}")
        object.__setattr__(self, "abort_on", validate_failure_kinds(self.abort_on, "abort_on"))


@dataclass
class _Outcome:
    """Decision for one failed attempt."""

    context: RetryAttemptContext
    retry: bool


class ResilientExecutor:
    """Runs operations under an :class:`ExecutionPolicy`.

    The executor holds no per-call state and may be shared across threads;
    the breaker it references does its own locking.
    """

    def __init__(self, policy: ExecutionPolicy | None = None, *, name: str | None = None):
        self.policy = policy or ExecutionPolicy()
        self.name = name

    # ── Sync ─────────────────────────────────────────────────────────

    def run(
        self,
        func: Callable[..., T],
        /,
        *args: Any,
        cancel_event: threading.Event | None = None,
        **kwargs: Any,
    ) -> T:
        """Execute ``func(*args, **kwargs)`` with the configured protocol.

        Args:
            func: Operation to execute
            cancel_event: Set from another thread to abandon the call
                while it waits between attempts

        Raises:
            CircuitOpenError: The breaker rejected an attempt
            AbortedExecutionError: An abort condition fired
            FallbackExecutionError: The fallback raised
            ExecutionCancelledError: ``cancel_event`` was set during a wait
            ExecutionError: Retries exhausted with no fallback
        """
        operation = self._label(func)
        attempt = 0
        last_error: Exception | None = None

        while True:
            self._admit(attempt, last_error)
            try:
                result = func(*args, **kwargs)
                self._check_result(result, operation, attempt + 1)
            except AbortedExecutionError:
                raise
            except Exception as e:
                attempt += 1
                last_error = e
                outcome = self._record_failure(e, attempt, operation)
                if not outcome.retry:
                    return self._fallback_or_raise(e, attempt, operation)
                self._sleep(outcome.context, cancel_event, operation)
            else:
                self._record_success()
                return result

    # ── Async ────────────────────────────────────────────────────────

    async def run_async(self, func: Callable[..., Awaitable[T]], /, *args: Any, **kwargs: Any) -> T:
        """Execute ``func(*args, **kwargs)``, awaiting its result, with the configured protocol.

        Waits use :func:`asyncio.sleep`.  Cancelling the task propagates
        :class:`asyncio.CancelledError` without running the fallback.
        """
        operation = self._label(func)
        attempt = 0
        last_error: Exception | None = None

        while True:
            self._admit(attempt, last_error)
            try:
                result = func(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
                self._check_result(result, operation, attempt + 1)
            except AbortedExecutionError:
                raise
            except Exception as e:
                attempt += 1
                last_error = e
                outcome = self._record_failure(e, attempt, operation)
                if not outcome.retry:
                    return await self._fallback_or_raise_async(e, attempt, operation)
                if outcome.context.delay > 0:
                    await asyncio.sleep(outcome.context.delay)
            else:
                self._record_success()
                return result

    # ── Protocol steps ───────────────────────────────────────────────

    def _admit(self, attempt: int, last_error: Exception | None) -> None:
        breaker = self.policy.circuit_breaker
        if breaker is None:
            return
        try:
            breaker.before_call()
        except CircuitOpenError as e:
            e.attempts = attempt
            e.last_error = last_error
            if last_error is None:
                raise
            e.cause = last_error
            raise e from last_error

    def _check_result(self, result: Any, operation: str, invocations: int) -> None:
        policy = self.policy
        if policy.abort_when is not None and isinstance(result, bool) and result == policy.abort_when:
            logger.info("execution.aborted", operation=operation, reason="abort_when", result=result)
            raise AbortedExecutionError(
                f"Aborted due to abort_when condition with result: {result!r}",
                attempts=invocations,
            )
        if policy.abort_if is not None and policy.abort_if(result):
            logger.info("execution.aborted", operation=operation, reason="abort_if")
            raise AbortedExecutionError(
                f"Aborted due to abort_if condition met with result: {result!r}",
                attempts=invocations,
            )

    def _record_success(self) -> None:
        if self.policy.circuit_breaker is not None:
            self.policy.circuit_breaker.after_call_success()

    def _record_failure(self, error: Exception, attempt: int, operation: str) -> _Outcome:
        policy = self.policy

        if matches_failure(error, policy.abort_on):
            logger.info(
                "execution.aborted",
                operation=operation,
                reason="abort_on",
                error_type=type(error).__name__,
            )
            raise AbortedExecutionError(
                f"Aborted due to abort_on exception: {type(error).__qualname__}",
                attempts=attempt,
                last_error=error,
            ) from error

        if policy.circuit_breaker is not None:
            policy.circuit_breaker.after_call_failure(error)

        retry = policy.retry
        can_retry = retry is not None and retry.should_retry(attempt, error)
        delay = retry.compute_delay(attempt) if retry is not None else 0.0
        context = RetryAttemptContext(attempt_number=attempt, last_failure=error, delay=delay)

        logger.warning(
            "execution.attempt_failed",
            operation=operation,
            attempt=attempt,
            error_type=type(error).__name__,
            error=str(error),
            will_retry=can_retry,
        )

        if retry is not None:
            retry.notify_failed_attempt(context)
            if can_retry:
                retry.notify_retry(context)
                logger.info("execution.retrying", operation=operation, attempt=attempt, delay=delay)

        return _Outcome(context=context, retry=can_retry)

    def _sleep(
        self,
        context: RetryAttemptContext,
        cancel_event: threading.Event | None,
        operation: str,
    ) -> None:
        if cancel_event is None:
            if context.delay > 0:
                time.sleep(context.delay)
            return

        if cancel_event.wait(context.delay if context.delay > 0 else 0):
            logger.info("execution.cancelled", operation=operation, attempt=context.attempt_number)
            raise ExecutionCancelledError(
                f"Execution cancelled after {context.attempt_number} attempt(s)",
                attempts=context.attempt_number,
                last_error=context.last_failure,
            )

    def _fallback_or_raise(self, error: Exception, attempt: int, operation: str) -> Any:
        fallback = self.policy.fallback
        if fallback is None:
            self._exhausted(error, attempt, operation)

        logger.info("execution.fallback", operation=operation, attempts=attempt)
        try:
            return fallback()
        except Exception as fallback_error:
            raise self._fallback_failed(fallback_error, error, attempt) from fallback_error

    async def _fallback_or_raise_async(self, error: Exception, attempt: int, operation: str) -> Any:
        fallback = self.policy.fallback
        if fallback is None:
            self._exhausted(error, attempt, operation)

        logger.info("execution.fallback", operation=operation, attempts=attempt)
        try:
            result = fallback()
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as fallback_error:
            raise self._fallback_failed(fallback_error, error, attempt) from fallback_error

    def _exhausted(self, error: Exception, attempt: int, operation: str) -> None:
        logger.error(
            "execution.exhausted",
            operation=operation,
            attempts=attempt,
            error_type=type(error).__name__,
        )
        raise ExecutionError(
            f"Operation failed after {attempt} attempt(s). Last exception: {error}",
            attempts=attempt,
            last_error=error,
        ) from error

    @staticmethod
    def _fallback_failed(fallback_error: Exception, error: Exception, attempt: int) -> FallbackExecutionError:
        return FallbackExecutionError(
            f"Fallback execution failed after operation failure. Last exception: {error}",
            fallback_error=fallback_error,
            original_error=error,
            attempts=attempt,
        )

    def _label(self, func: Callable[..., Any]) -> str:
        if self.name:
            return self.name
        return getattr(func, "__qualname__", None) or repr(func)


def execute(
    operation: Callable[[], T],
    policy: ExecutionPolicy | None = None,
    *,
    cancel_event: threading.Event | None = None,
) -> T:
    """Run a zero-argument ``operation`` under ``policy``."""
    return ResilientExecutor(policy).run(operation, cancel_event=cancel_event)


async def execute_async(
    operation: Callable[[], Awaitable[T]],
    policy: ExecutionPolicy | None = None,
) -> T:
    """Run a zero-argument async ``operation`` under ``policy``."""
    return await ResilientExecutor(policy).run_async(operation)


def with_resilience(
    policy: ExecutionPolicy | None = None,
    *,
    retry: RetryPolicy | None = None,
    circuit_breaker: CircuitBreaker | None = None,
    fallback: Callable[[], Any] | None = None,
    abort_on: Iterable[type[BaseException]] = (),
    abort_if: Callable[[Any], bool] | None = None,
    abort_when: bool | None = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator factory running every call of a function under a policy.

    Pass a ready :class:`ExecutionPolicy`, or the individual fields.

    Example:
        >>> @with_resilience(retry=RetryPolicy(max_retries=3, base_delay=1.0))
        ... def flaky_operation():
        ...     return call_api()
    """
    if policy is None:
        policy = ExecutionPolicy(
            retry=retry,
            circuit_breaker=circuit_breaker,
            fallback=fallback,
            abort_on=frozenset(abort_on),
            abort_if=abort_if,
            abort_when=abort_when,
        )

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        executor = ResilientExecutor(policy, name=func.__qualname__)

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> T:
                return await executor.run_async(functools.partial(func, *args, **kwargs))
            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> T:
            return executor.run(functools.partial(func, *args, **kwargs))
        return sync_wrapper

    return decorator


__all__ = [
    "ExecutionPolicy",
    "ResilientExecutor",
    "execute",
    "execute_async",
    "with_resilience",
]
