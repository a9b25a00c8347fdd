# src/tabula/resilience/__init__.py
"""Remote-call resilience: retry policy, circuit breaker and the backoff client."""

from tabula.resilience.circuit import CircuitBreaker, CircuitState
from tabula.resilience.client import BackoffClient
from tabula.resilience.retry import MaxRetriesExceeded, RetryPolicy, execute_with_policy
from tabula.resilience.status import RATE_LIMIT_STATUS_CODES, is_rate_limited

__all__ = [
    "RATE_LIMIT_STATUS_CODES",
    "BackoffClient",
    "CircuitBreaker",
    "CircuitState",
    "MaxRetriesExceeded",
    "RetryPolicy",
    "execute_with_policy",
    "is_rate_limited",
]
