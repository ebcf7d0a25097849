"""
Bulwark - declarative fault tolerance for unreliable calls.

Wrap any fallible operation with retry-with-backoff, a shared circuit
breaker, a fallback, and early-abort rules:

- bulwark.core: failure taxonomy, logging, settings
- bulwark.execution: RetryPolicy, CircuitBreaker, ResilientExecutor
"""

__version__ = "0.1.0"

from bulwark.core import *  # noqa
from bulwark.execution import *  # noqa
