# tests/unit/resilience/test_retry.py
"""Tests for RetryPolicy and execute_with_policy."""

import pytest

from tabula.core.config import BackoffSettings
from tabula.resilience.retry import MaxRetriesExceeded, RetryPolicy, execute_with_policy


class Flaky(Exception):
    pass


class Fatal(Exception):
    pass


class TestRetryPolicy:
    def test_linear_schedule(self) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay=15.0, max_delay=60.0)
        assert [policy.delay_for(i) for i in range(5)] == [15.0, 30.0, 45.0, 60.0, 60.0]

    def test_exponential_schedule(self) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=5.0, strategy="exponential")
        assert [policy.delay_for(i) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_from_settings_converts_milliseconds(self) -> None:
        policy = RetryPolicy.from_settings(BackoffSettings(base_delay_ms=250, max_delay_ms=1000, max_attempts=4))
        assert policy == RetryPolicy(max_attempts=4, base_delay=0.25, max_delay=1.0, strategy="linear")

    def test_no_retry(self) -> None:
        assert RetryPolicy.no_retry().max_attempts == 1

    def test_invalid_attempts(self) -> None:
        with pytest.raises(ValueError, match="max_attempts"):
            RetryPolicy(max_attempts=0)

    def test_invalid_delays(self) -> None:
        with pytest.raises(ValueError, match="delays"):
            RetryPolicy(base_delay=-1.0)


class TestExecuteWithPolicy:
    def test_success_first_try(self) -> None:
        sleeps: list[float] = []
        result = execute_with_policy(lambda: "ok", RetryPolicy(), is_retryable=lambda e: True, sleep=sleeps.append)
        assert result == "ok"
        assert sleeps == []

    def test_retries_then_succeeds(self) -> None:
        outcomes: list[Exception | str] = [Flaky("one"), Flaky("two"), "done"]

        def operation() -> str:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        sleeps: list[float] = []
        retries: list[tuple[int, str, float]] = []
        result = execute_with_policy(
            operation,
            RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0),
            is_retryable=lambda e: isinstance(e, Flaky),
            on_retry=lambda index, error, delay: retries.append((index, str(error), delay)),
            sleep=sleeps.append,
        )
        assert result == "done"
        assert sleeps == [1.0, 2.0]
        assert retries == [(0, "one", 1.0), (1, "two", 2.0)]

    def test_exhaustion_raises_max_retries(self) -> None:
        calls = 0

        def operation() -> None:
            nonlocal calls
            calls += 1
            raise Flaky(f"attempt {calls}")

        with pytest.raises(MaxRetriesExceeded) as exc_info:
            execute_with_policy(
                operation,
                RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0),
                is_retryable=lambda e: isinstance(e, Flaky),
                sleep=lambda _: None,
            )
        assert calls == 3
        assert exc_info.value.attempts == 3
        assert str(exc_info.value.last_error) == "attempt 3"

    def test_non_retryable_propagates_unchanged(self) -> None:
        calls = 0

        def operation() -> None:
            nonlocal calls
            calls += 1
            raise Fatal("stop")

        with pytest.raises(Fatal, match="stop"):
            execute_with_policy(operation, RetryPolicy(), is_retryable=lambda e: isinstance(e, Flaky), sleep=lambda _: None)
        assert calls == 1

    def test_on_retry_not_called_after_final_attempt(self) -> None:
        retries: list[int] = []

        def operation() -> None:
            raise Flaky("always")

        with pytest.raises(MaxRetriesExceeded):
            execute_with_policy(
                operation,
                RetryPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0),
                is_retryable=lambda e: True,
                on_retry=lambda index, error, delay: retries.append(index),
                sleep=lambda _: None,
            )
        assert retries == [0]
