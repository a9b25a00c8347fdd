# src/tabula/core/clock.py
"""Wall-clock abstraction for TTLs, circuit cool-downs and timestamps.

Circuit state and cache entries are compared across processes, so this is
wall time (time.time()), not a monotonic clock. Production code uses
SystemClock; tests inject MockClock to move time without sleeping.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Source of the current wall-clock time."""

    def time(self) -> float:
        """Seconds since the epoch."""
        ...


class SystemClock:
    """Production clock."""

    def time(self) -> float:
        return time.time()


class MockClock:
    """Controllable clock for deterministic tests.

    Example:
        clock = MockClock(start=1_000.0)
        breaker = CircuitBreaker(backend, properties, clock=clock)
        clock.advance(61)
    """

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._current = start

    def time(self) -> float:
        return self._current

    def advance(self, seconds: float) -> None:
        """Move time forward.

        Raises:
            ValueError: If seconds is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        self._current += seconds

    def set(self, value: float) -> None:
        self._current = value


def now_ms(clock: Clock) -> int:
    """Current time in integer milliseconds."""
    return int(clock.time() * 1000)


def utc_now(clock: Clock) -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.fromtimestamp(clock.time(), tz=UTC)


DEFAULT_CLOCK: Clock = SystemClock()
