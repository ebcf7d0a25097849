"""
CLI ``bulwark demo``: run a simulated flaky call under a full policy.

The operation raises ``ConnectionError`` for the first ``--failures``
attempts and then succeeds.  Every failed attempt, retry delay, and
breaker transition is printed as it happens.
"""

from __future__ import annotations

import typer

from bulwark.cli.utils import console, err_console
from bulwark.core.errors import ExecutionError
from bulwark.core.settings import get_settings
from bulwark.execution.circuit_breaker import CircuitBreaker, CircuitBreakerEvent
from bulwark.execution.executor import ExecutionPolicy, execute
from bulwark.execution.retry import BackoffStrategy, RetryAttemptContext, RetryPolicy


def demo(
    failures: int = typer.Option(2, "--failures", min=0, help="Attempts that fail before success."),
    max_retries: int | None = typer.Option(None, "--max-retries", min=0, help="Retries after the first attempt."),
    base_delay: float | None = typer.Option(None, "--base-delay", min=0.0, help="Seconds before the first retry."),
    multiplier: float | None = typer.Option(None, "--multiplier", min=1.0, help="Exponential backoff factor."),
    threshold: int | None = typer.Option(None, "--threshold", min=1, help="Failures that open the circuit."),
    use_fallback: bool = typer.Option(True, "--fallback/--no-fallback", help="Return a fallback when retries run out."),
) -> None:
    """Run a simulated flaky operation through retry, breaker, and fallback."""
    settings = get_settings()

    retry = (
        RetryPolicy(
            max_retries=settings.retry_max_retries if max_retries is None else max_retries,
            base_delay=settings.retry_base_delay if base_delay is None else base_delay,
            retryable_errors={ConnectionError},
        )
        .with_backoff(
            BackoffStrategy.EXPONENTIAL,
            settings.retry_multiplier if multiplier is None else multiplier,
        )
        .on_failed_attempt(_print_failed_attempt)
        .on_retry(_print_retry)
    )

    breaker = (
        CircuitBreaker(
            failure_threshold=settings.breaker_failure_threshold if threshold is None else threshold,
            reset_timeout=settings.breaker_reset_timeout,
            name="demo",
            handled_failures={ConnectionError},
        )
        .on_open(_print_transition)
        .on_half_open(_print_transition)
        .on_close(_print_transition)
    )

    policy = ExecutionPolicy(
        retry=retry,
        circuit_breaker=breaker,
        fallback=_fallback if use_fallback else None,
    )

    calls = 0

    def flaky_operation() -> str:
        nonlocal calls
        calls += 1
        console.print(f"Attempt {calls}: executing risky operation...")
        if calls <= failures:
            raise ConnectionError("Simulated I/O failure.")
        return f"Successful result on attempt {calls}"

    try:
        output = execute(flaky_operation, policy)
    except ExecutionError as e:
        err_console.print(f"[bold red]Failed[/bold red] after {e.attempts} attempt(s): {e.message}")
        raise typer.Exit(code=1) from e

    console.print(f"[bold green]Operation output:[/bold green] {output}")
    console.print(f"Circuit '{breaker.name}' is {breaker.state.value}")


def _fallback() -> str:
    console.print("Executing fallback...")
    return "Fallback result"


def _print_failed_attempt(ctx: RetryAttemptContext) -> None:
    console.print(f"[yellow]Failed attempt #{ctx.attempt_number}[/yellow]: {ctx.last_failure}")


def _print_retry(ctx: RetryAttemptContext) -> None:
    console.print(f"Retrying after {ctx.delay:.3f}s")


def _print_transition(event: CircuitBreakerEvent) -> None:
    console.print(
        f"[magenta]Circuit '{event.breaker.name}'[/magenta] "
        f"{event.previous_state.value} -> {event.state.value}"
    )
