"""Bulwark Execution: retry, circuit breaking, fallback, and abort rules.

ARCHITECTURE
────────────
::

    ExecutionPolicy (what protects the call)
      ├── RetryPolicy       ─ attempt limit, failure filter, backoff delays
      ├── CircuitBreaker    ─ shared CLOSED / OPEN / HALF_OPEN gatekeeper
      ├── fallback          ─ result of last resort
      └── abort rules       ─ abort_on / abort_if / abort_when
      │
      ▼
    ResilientExecutor (how the call runs)
      ├── run()        ─ blocking, time.sleep between attempts
      ├── run_async()  ─ asyncio.sleep between attempts
      └── with_resilience / execute / execute_async helpers

MODULE MAP
──────────
  1. retry.py            ─ RetryPolicy, BackoffStrategy, RetryAttemptContext
  2. circuit_breaker.py  ─ CircuitBreaker + registry
  3. executor.py         ─ ExecutionPolicy, ResilientExecutor

Example::

    from bulwark.execution import ExecutionPolicy, RetryPolicy, execute

    policy = ExecutionPolicy(retry=RetryPolicy(max_retries=3, base_delay=0.2))
    body = execute(lambda: http_get(url), policy)
"""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerEvent,
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStats,
    get_circuit_breaker,
    get_default_registry,
)
from .executor import (
    ExecutionPolicy,
    ResilientExecutor,
    execute,
    execute_async,
    with_resilience,
)
from .retry import (
    BackoffStrategy,
    RetryAttemptContext,
    RetryPolicy,
)

__all__ = [
    # retry
    "BackoffStrategy",
    "RetryAttemptContext",
    "RetryPolicy",
    # circuit breaker
    "CircuitBreaker",
    "CircuitBreakerEvent",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CircuitStats",
    "get_circuit_breaker",
    "get_default_registry",
    # executor
    "ExecutionPolicy",
    "ResilientExecutor",
    "execute",
    "execute_async",
    "with_resilience",
]
