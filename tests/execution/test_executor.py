"""Tests for ResilientExecutor (sync path)."""

import threading
from unittest.mock import MagicMock

import pytest

from bulwark.core.errors import (
    AbortedExecutionError,
    CircuitOpenError,
    ExecutionCancelledError,
    ExecutionError,
    FallbackExecutionError,
    InvalidArgumentError,
)
from bulwark.execution import executor as executor_module
from bulwark.execution.circuit_breaker import CircuitBreaker, CircuitState
from bulwark.execution.executor import (
    ExecutionPolicy,
    ResilientExecutor,
    execute,
    with_resilience,
)
from bulwark.execution.retry import BackoffStrategy, RetryPolicy


class Flaky:
    """Callable that raises ``error`` for the first ``failures`` calls."""

    def __init__(self, failures: int, error: Exception | None = None, result: object = "ok"):
        self.failures = failures
        self.error = error or ConnectionError("Simulated I/O failure.")
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


@pytest.fixture
def sleeps(monkeypatch):
    """Record retry waits instead of sleeping."""
    recorded = []
    monkeypatch.setattr(executor_module.time, "sleep", recorded.append)
    return recorded


class TestExecutionPolicy:
    """Tests for ExecutionPolicy validation."""

    def test_defaults(self):
        policy = ExecutionPolicy()
        assert policy.retry is None
        assert policy.circuit_breaker is None
        assert policy.fallback is None
        assert policy.abort_on == frozenset()
        assert policy.abort_if is None
        assert policy.abort_when is None

    def test_non_callable_fallback_rejected(self):
        with pytest.raises(InvalidArgumentError, match="fallback"):
            ExecutionPolicy(fallback="cached")

    def test_non_bool_abort_when_rejected(self):
        with pytest.raises(InvalidArgumentError, match="abort_when"):
            ExecutionPolicy(abort_when=0)

    def test_abort_on_must_be_exceptions(self):
        with pytest.raises(InvalidArgumentError, match="abort_on"):
            ExecutionPolicy(abort_on={"PermissionError"})

    def test_wrong_retry_type_rejected(self):
        with pytest.raises(InvalidArgumentError, match="retry"):
            ExecutionPolicy(retry=3)


class TestRetry:
    """Tests for retry behavior."""

    def test_success_first_attempt(self):
        op = Flaky(0)
        assert execute(op, ExecutionPolicy(retry=RetryPolicy(max_retries=3))) == "ok"
        assert op.calls == 1

    def test_no_policy_is_single_attempt(self):
        op = Flaky(1)
        with pytest.raises(ExecutionError) as exc_info:
            execute(op)
        assert op.calls == 1
        assert exc_info.value.attempts == 1

    def test_exhaustion_invokes_n_plus_one_times(self, sleeps):
        """Test a permanently failing op runs max_retries + 1 times."""
        op = Flaky(100)
        policy = ExecutionPolicy(retry=RetryPolicy(max_retries=3, base_delay=0.01))

        with pytest.raises(ExecutionError) as exc_info:
            execute(op, policy)

        assert op.calls == 4
        assert exc_info.value.attempts == 4
        assert exc_info.value.last_error is op.error
        assert exc_info.value.__cause__ is op.error
        assert "Operation failed after 4 attempt(s)" in str(exc_info.value)
        assert "Simulated I/O failure." in str(exc_info.value)
        assert sleeps == [0.01, 0.01, 0.01]

    def test_exponential_backoff_recovers(self, sleeps):
        """Fails twice then succeeds: two failed attempts seen, delays 0.5 then 1.0."""
        seen = []
        op = Flaky(2)
        retry = (
            RetryPolicy(max_retries=5, base_delay=0.5)
            .with_backoff(BackoffStrategy.EXPONENTIAL, 2.0)
            .on_failed_attempt(lambda ctx: seen.append((ctx.attempt_number, ctx.delay)))
        )

        assert execute(op, ExecutionPolicy(retry=retry)) == "ok"
        assert op.calls == 3
        assert seen == [(1, 0.5), (2, 1.0)]
        assert sleeps == [0.5, 1.0]

    def test_retry_listener_sees_delay_before_wait(self, sleeps):
        events = []
        retry = (
            RetryPolicy(max_retries=1, base_delay=0.2)
            .on_failed_attempt(lambda ctx: events.append(("failed", ctx.attempt_number)))
            .on_retry(lambda ctx: events.append(("retry", ctx.delay, list(sleeps))))
        )

        execute(Flaky(1), ExecutionPolicy(retry=retry))

        assert events == [("failed", 1), ("retry", 0.2, [])]

    def test_failed_attempt_observed_on_final_failure(self):
        """Test the last failure is observed even though no retry follows."""
        seen = []
        retry = RetryPolicy(max_retries=0, base_delay=0.3).on_failed_attempt(seen.append)

        with pytest.raises(ExecutionError):
            execute(Flaky(1), ExecutionPolicy(retry=retry))

        assert [(c.attempt_number, c.delay) for c in seen] == [(1, 0.3)]

    def test_non_retryable_failure_not_retried(self):
        op = Flaky(5, error=KeyError("missing"))
        policy = ExecutionPolicy(retry=RetryPolicy(max_retries=3, retryable_errors={ConnectionError}))

        with pytest.raises(ExecutionError) as exc_info:
            execute(op, policy)

        assert op.calls == 1
        assert isinstance(exc_info.value.last_error, KeyError)

    def test_arguments_forwarded(self):
        executor = ResilientExecutor(ExecutionPolicy(retry=RetryPolicy(max_retries=1)))
        assert executor.run(lambda a, b=0: a + b, 2, b=3) == 5

    def test_observer_errors_propagate(self):
        def broken(ctx):
            raise RuntimeError("observer bug")

        op = Flaky(1)
        retry = RetryPolicy(max_retries=3).on_failed_attempt(broken)

        with pytest.raises(RuntimeError, match="observer bug"):
            execute(op, ExecutionPolicy(retry=retry, fallback=lambda: "fb"))
        assert op.calls == 1


class TestFallback:
    """Tests for fallback behavior."""

    def test_fallback_after_exhaustion(self):
        op = Flaky(100)
        fallback = MagicMock(return_value="Fallback result")
        policy = ExecutionPolicy(retry=RetryPolicy(max_retries=2), fallback=fallback)

        assert execute(op, policy) == "Fallback result"
        assert op.calls == 3
        fallback.assert_called_once_with()

    def test_fallback_not_used_on_success(self):
        fallback = MagicMock()
        assert execute(Flaky(1), ExecutionPolicy(retry=RetryPolicy(max_retries=1), fallback=fallback)) == "ok"
        fallback.assert_not_called()

    def test_fallback_failure_wrapped(self):
        op = Flaky(100)
        fallback_error = LookupError("cache empty")

        def fallback():
            raise fallback_error

        with pytest.raises(FallbackExecutionError) as exc_info:
            execute(op, ExecutionPolicy(retry=RetryPolicy(max_retries=1), fallback=fallback))

        err = exc_info.value
        assert err.fallback_error is fallback_error
        assert err.original_error is op.error
        assert err.last_error is op.error
        assert err.__cause__ is fallback_error
        assert err.attempts == 2
        assert isinstance(err, ExecutionError)


class TestAbort:
    """Tests for abort conditions."""

    def test_abort_when_matches_bool_result(self):
        op = Flaky(0, result=False)
        fallback = MagicMock()
        policy = ExecutionPolicy(retry=RetryPolicy(max_retries=3), abort_when=False, fallback=fallback)

        with pytest.raises(AbortedExecutionError, match="abort_when"):
            execute(op, policy)

        assert op.calls == 1
        fallback.assert_not_called()

    def test_abort_when_ignores_non_bool_results(self):
        """Test falsy non-bool results do not trigger abort_when=False."""
        assert execute(lambda: 0, ExecutionPolicy(abort_when=False)) == 0
        assert execute(lambda: None, ExecutionPolicy(abort_when=False)) is None

    def test_abort_when_non_matching_bool_returns(self):
        assert execute(lambda: True, ExecutionPolicy(abort_when=False)) is True

    def test_abort_if_predicate(self):
        op = Flaky(0, result={"status": "revoked"})
        fallback = MagicMock()
        policy = ExecutionPolicy(
            retry=RetryPolicy(max_retries=3),
            abort_if=lambda r: r["status"] == "revoked",
            fallback=fallback,
        )

        with pytest.raises(AbortedExecutionError, match="abort_if"):
            execute(op, policy)

        assert op.calls == 1
        fallback.assert_not_called()

    def test_abort_when_after_retries_counts_invocations(self):
        """Test a result abort reports every invocation, including failed ones."""
        op = Flaky(2, result=False)
        policy = ExecutionPolicy(retry=RetryPolicy(max_retries=5), abort_when=False)

        with pytest.raises(AbortedExecutionError) as exc_info:
            execute(op, policy)

        assert op.calls == 3
        assert exc_info.value.attempts == 3

    def test_abort_if_after_retries_counts_invocations(self):
        op = Flaky(1, result="revoked")
        policy = ExecutionPolicy(retry=RetryPolicy(max_retries=5), abort_if=lambda r: r == "revoked")

        with pytest.raises(AbortedExecutionError) as exc_info:
            execute(op, policy)

        assert op.calls == 2
        assert exc_info.value.attempts == 2

    def test_first_attempt_result_abort_counts_one(self):
        with pytest.raises(AbortedExecutionError) as exc_info:
            execute(lambda: True, ExecutionPolicy(abort_when=True))
        assert exc_info.value.attempts == 1

    def test_abort_when_checked_before_abort_if(self):
        predicate = MagicMock(return_value=True)
        with pytest.raises(AbortedExecutionError, match="abort_when"):
            execute(lambda: True, ExecutionPolicy(abort_when=True, abort_if=predicate))
        predicate.assert_not_called()

    def test_abort_if_error_counts_as_failure(self):
        """Test a raising predicate is treated like an operation failure."""
        op = Flaky(0)

        def predicate(result):
            raise TypeError("bad predicate")

        with pytest.raises(ExecutionError) as exc_info:
            execute(op, ExecutionPolicy(retry=RetryPolicy(max_retries=1), abort_if=predicate))

        assert not isinstance(exc_info.value, AbortedExecutionError)
        assert isinstance(exc_info.value.last_error, TypeError)
        assert op.calls == 2

    def test_abort_on_exception(self):
        op = Flaky(5, error=PermissionError("denied"))
        fallback = MagicMock()
        policy = ExecutionPolicy(
            retry=RetryPolicy(max_retries=3),
            abort_on={PermissionError},
            fallback=fallback,
        )

        with pytest.raises(AbortedExecutionError) as exc_info:
            execute(op, policy)

        assert op.calls == 1
        assert exc_info.value.last_error is op.error
        assert exc_info.value.__cause__ is op.error
        fallback.assert_not_called()

    def test_abort_on_matches_subclasses(self):
        with pytest.raises(AbortedExecutionError):
            execute(Flaky(1, error=ConnectionRefusedError()), ExecutionPolicy(abort_on={OSError}))

    def test_abort_not_reported_to_breaker(self):
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=60.0)
        policy = ExecutionPolicy(circuit_breaker=breaker, abort_on={PermissionError})

        with pytest.raises(AbortedExecutionError):
            execute(Flaky(1, error=PermissionError()), policy)
        with pytest.raises(AbortedExecutionError):
            execute(lambda: False, ExecutionPolicy(circuit_breaker=breaker, abort_when=False))

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_nested_abort_propagates_unchanged(self):
        """Test an inner abort passes through the outer retry and fallback."""
        outer_fallback = MagicMock()
        inner_policy = ExecutionPolicy(abort_on={PermissionError})
        outer_calls = 0

        def outer_operation():
            nonlocal outer_calls
            outer_calls += 1
            return execute(Flaky(1, error=PermissionError("nope")), inner_policy)

        with pytest.raises(AbortedExecutionError) as exc_info:
            execute(
                outer_operation,
                ExecutionPolicy(retry=RetryPolicy(max_retries=3), fallback=outer_fallback),
            )

        assert outer_calls == 1
        assert isinstance(exc_info.value.last_error, PermissionError)
        outer_fallback.assert_not_called()


class TestCircuitBreakerIntegration:
    """Tests for executor and breaker working together."""

    def test_open_circuit_is_terminal(self):
        """Test a rejection ends the call without fallback or further retries."""
        breaker = CircuitBreaker(failure_threshold=2, reset_timeout=60.0, name="payments")
        fallback = MagicMock()
        op = Flaky(100)
        policy = ExecutionPolicy(
            retry=RetryPolicy(max_retries=5),
            circuit_breaker=breaker,
            fallback=fallback,
        )

        with pytest.raises(CircuitOpenError) as exc_info:
            execute(op, policy)

        assert op.calls == 2
        assert exc_info.value.breaker_name == "payments"
        assert exc_info.value.attempts == 2
        assert exc_info.value.last_error is op.error
        assert exc_info.value.__cause__ is op.error
        assert exc_info.value.to_dict()["cause"]["type"] == "ConnectionError"
        fallback.assert_not_called()

    def test_rejects_before_invoking(self):
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=60.0)
        breaker.after_call_failure(OSError())
        op = Flaky(0)

        with pytest.raises(CircuitOpenError) as exc_info:
            execute(op, ExecutionPolicy(circuit_breaker=breaker))

        assert op.calls == 0
        assert exc_info.value.attempts == 0
        assert exc_info.value.last_error is None
        assert exc_info.value.__cause__ is None

    def test_non_retryable_failures_still_reported(self):
        """Test breaker reporting does not depend on the retry filter."""
        breaker = CircuitBreaker(failure_threshold=2, reset_timeout=60.0)
        policy = ExecutionPolicy(
            retry=RetryPolicy(max_retries=3, retryable_errors={TimeoutError}),
            circuit_breaker=breaker,
        )

        for _ in range(2):
            with pytest.raises(ExecutionError):
                execute(Flaky(1, error=ValueError("bad")), policy)

        assert breaker.state == CircuitState.OPEN

    def test_unhandled_failures_do_not_count(self):
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=60.0, handled_failures={ConnectionError})

        with pytest.raises(ExecutionError):
            execute(Flaky(1, error=ValueError()), ExecutionPolicy(circuit_breaker=breaker))

        assert breaker.state == CircuitState.CLOSED

    def test_success_resets_failure_count(self):
        breaker = CircuitBreaker(failure_threshold=3, reset_timeout=60.0)
        execute(Flaky(2), ExecutionPolicy(retry=RetryPolicy(max_retries=2), circuit_breaker=breaker))

        assert breaker.failure_count == 0
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_trial_through_executor(self, clock):
        breaker = CircuitBreaker(failure_threshold=2, reset_timeout=0.1, clock=clock)
        policy = ExecutionPolicy(circuit_breaker=breaker)

        for _ in range(2):
            with pytest.raises(ExecutionError):
                execute(Flaky(1), policy)
        with pytest.raises(CircuitOpenError):
            execute(Flaky(0), policy)

        clock.advance(0.15)
        assert execute(Flaky(0), policy) == "ok"
        assert breaker.state == CircuitState.CLOSED


class TestCancellation:
    """Tests for cancel_event."""

    def test_cancel_during_wait(self):
        cancel = threading.Event()
        cancel.set()
        fallback = MagicMock()
        op = Flaky(100)

        with pytest.raises(ExecutionCancelledError) as exc_info:
            execute(
                op,
                ExecutionPolicy(retry=RetryPolicy(max_retries=5, base_delay=10.0), fallback=fallback),
                cancel_event=cancel,
            )

        assert op.calls == 1
        assert exc_info.value.attempts == 1
        assert exc_info.value.last_error is op.error
        fallback.assert_not_called()

    def test_cancel_from_another_thread(self):
        cancel = threading.Event()
        op = Flaky(100)
        timer = threading.Timer(0.05, cancel.set)
        timer.start()
        try:
            with pytest.raises(ExecutionCancelledError):
                execute(op, ExecutionPolicy(retry=RetryPolicy(max_retries=5, base_delay=30.0)), cancel_event=cancel)
        finally:
            timer.cancel()

        assert op.calls == 1

    def test_unset_event_waits_normally(self):
        cancel = threading.Event()
        op = Flaky(2)
        result = execute(op, ExecutionPolicy(retry=RetryPolicy(max_retries=2, base_delay=0.001)), cancel_event=cancel)
        assert result == "ok"
        assert op.calls == 3


class TestWithResilience:
    """Tests for the decorator."""

    def test_decorates_sync_function(self, sleeps):
        calls = []

        @with_resilience(retry=RetryPolicy(max_retries=2, base_delay=0.1))
        def fetch(key, *, default=None):
            calls.append(key)
            if len(calls) < 2:
                raise TimeoutError("slow")
            return f"value-{key}"

        assert fetch("a") == "value-a"
        assert calls == ["a", "a"]
        assert fetch.__name__ == "fetch"
        assert sleeps == [0.1]

    def test_accepts_prebuilt_policy(self):
        @with_resilience(ExecutionPolicy(fallback=lambda: "cached"))
        def always_fails():
            raise OSError("down")

        assert always_fails() == "cached"

    def test_decorator_abort_on(self):
        @with_resilience(retry=RetryPolicy(max_retries=3), abort_on=[PermissionError])
        def forbidden():
            raise PermissionError("no")

        with pytest.raises(AbortedExecutionError):
            forbidden()

    def test_cancel_event_kwarg_reaches_function(self):
        """Test a parameter named cancel_event belongs to the decorated function."""
        event = threading.Event()

        @with_resilience(retry=RetryPolicy(max_retries=1))
        def wait_for(cancel_event=None):
            return cancel_event

        assert wait_for(cancel_event=event) is event

    def test_func_kwarg_reaches_function(self):
        @with_resilience(retry=RetryPolicy(max_retries=1))
        def apply(value, func=None):
            return func(value)

        assert apply(3, func=lambda v: v * 10) == 30


class TestRunArguments:
    """Tests for argument forwarding through ResilientExecutor.run."""

    def test_func_keyword_forwarded(self):
        executor = ResilientExecutor(ExecutionPolicy())
        assert executor.run(lambda func: func(), func=lambda: "inner") == "inner"
