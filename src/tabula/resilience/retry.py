# src/tabula/resilience/retry.py
"""Retry policy and a generic execute-with-policy helper, built on tenacity.

The policy object says how many attempts are allowed and how long to wait
between them; execute_with_policy() applies it to any zero-argument
operation. Neither knows anything about tables, HTTP or circuit breakers:
callers decide what is retryable.

Two backoff strategies:
- linear: delay(i) = min(base + i * base, max_delay), for quota-style limits
  that recover on a fixed window
- exponential: delay(i) = min(base * 2**i, max_delay)

where i is the 0-based retry index (0 = wait before the second attempt).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_incrementing,
)
from tenacity.wait import wait_base

from tabula.core.config import BackoffSettings

T = TypeVar("T")


class MaxRetriesExceeded(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Max retries ({attempts}) exceeded: {last_error}")


@dataclass(frozen=True)
class RetryPolicy:
    """How many attempts, and how long to wait between them.

    max_attempts is the TOTAL number of tries: max_attempts=3 means
    try, retry, retry. Delays are in seconds.
    """

    max_attempts: int = 3
    base_delay: float = 15.0
    max_delay: float = 60.0
    strategy: Literal["linear", "exponential"] = "linear"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """Single attempt."""
        return cls(max_attempts=1, base_delay=0.0, max_delay=0.0)

    @classmethod
    def from_settings(cls, settings: BackoffSettings) -> RetryPolicy:
        """Linear policy from validated backoff settings (milliseconds)."""
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_ms / 1000,
            max_delay=settings.max_delay_ms / 1000,
            strategy="linear",
        )

    def delay_for(self, retry_index: int) -> float:
        """Seconds to wait before retry ``retry_index`` (0-based)."""
        if self.strategy == "linear":
            delay = self.base_delay + retry_index * self.base_delay
        else:
            delay = self.base_delay * (2**retry_index)
        return min(delay, self.max_delay)

    def wait_strategy(self) -> wait_base:
        """Equivalent tenacity wait strategy."""
        if self.strategy == "linear":
            return wait_incrementing(start=self.base_delay, increment=self.base_delay, max=self.max_delay)
        return wait_exponential(multiplier=self.base_delay, min=0, max=self.max_delay, exp_base=2)


def execute_with_policy(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    is_retryable: Callable[[BaseException], bool],
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Run operation, retrying retryable failures according to policy.

    Args:
        operation: Zero-argument callable to run
        policy: Attempts and backoff
        is_retryable: Decides whether an exception is worth another attempt
        on_retry: Called as (retry_index, error, delay_seconds) before each
            wait. Never called after the final attempt.
        sleep: Sleep function (injected by tests)

    Returns:
        Result of the first successful attempt

    Raises:
        MaxRetriesExceeded: If every attempt failed with a retryable error
        Exception: The first non-retryable error, unchanged
    """

    def _before_sleep(retry_state: RetryCallState) -> None:
        if on_retry is None or retry_state.outcome is None:
            return
        error = retry_state.outcome.exception()
        if error is not None:
            retry_index = retry_state.attempt_number - 1
            on_retry(retry_index, error, policy.delay_for(retry_index))

    options: dict[str, Any] = {
        "stop": stop_after_attempt(policy.max_attempts),
        "wait": policy.wait_strategy(),
        "retry": retry_if_exception(is_retryable),
        "before_sleep": _before_sleep,
        "reraise": False,
    }
    if sleep is not None:
        options["sleep"] = sleep

    try:
        return Retrying(**options)(operation)
    except RetryError as e:
        last = e.last_attempt
        error = last.exception()
        if error is None:  # pragma: no cover - tenacity only retries on exceptions here
            raise
        raise MaxRetriesExceeded(last.attempt_number, error) from error
