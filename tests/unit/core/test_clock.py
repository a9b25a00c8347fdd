# tests/unit/core/test_clock.py
"""Tests for the Clock abstraction."""

import time
from datetime import UTC

import pytest

from tabula.core.clock import DEFAULT_CLOCK, MockClock, SystemClock, now_ms, utc_now


class TestSystemClock:
    def test_tracks_wall_time(self) -> None:
        before = time.time()
        observed = SystemClock().time()
        assert before <= observed <= time.time()

    def test_default_clock_is_system_clock(self) -> None:
        assert isinstance(DEFAULT_CLOCK, SystemClock)


class TestMockClock:
    def test_starts_at_given_time(self) -> None:
        assert MockClock(start=42.0).time() == 42.0

    def test_advance(self) -> None:
        clock = MockClock(start=10.0)
        clock.advance(2.5)
        assert clock.time() == 12.5

    def test_negative_advance_rejected(self) -> None:
        with pytest.raises(ValueError, match="negative"):
            MockClock().advance(-1)

    def test_set(self) -> None:
        clock = MockClock()
        clock.set(5.0)
        assert clock.time() == 5.0


class TestHelpers:
    def test_now_ms(self) -> None:
        assert now_ms(MockClock(start=1.2345)) == 1234

    def test_utc_now_is_aware(self) -> None:
        value = utc_now(MockClock(start=0.0))
        assert value.tzinfo is UTC
        assert value.year == 1970
