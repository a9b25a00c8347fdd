# tests/unit/core/test_rate_limit.py
"""Tests for client-side request pacing."""

from pathlib import Path

import pytest

from tabula.core.config import RateLimitSettings
from tabula.core.rate_limit import NoOpPacer, RequestPacer, build_pacer


class TestRequestPacer:
    def test_acquire_under_limit_does_not_block(self) -> None:
        with RequestPacer("table", requests_per_second=10) as pacer:
            for _ in range(5):
                pacer.acquire()
            assert pacer.acquired == 5
            assert pacer.waited_seconds < 0.5

    @pytest.mark.parametrize("name", ["", "1table", "table-name", "table name"])
    def test_invalid_name_rejected(self, name: str) -> None:
        with pytest.raises(ValueError, match="Invalid pacer name"):
            RequestPacer(name, requests_per_second=1)

    def test_rates_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="requests_per_second"):
            RequestPacer("table", requests_per_second=0)
        with pytest.raises(ValueError, match="requests_per_minute"):
            RequestPacer("table", requests_per_second=1, requests_per_minute=0)

    def test_persistent_buckets(self, tmp_path: Path) -> None:
        path = str(tmp_path / "pacing.db")
        with RequestPacer("table", requests_per_second=10, requests_per_minute=100, persistence_path=path) as pacer:
            pacer.acquire()
        assert (tmp_path / "pacing.db").exists()


class TestBuildPacer:
    def test_disabled_gives_noop(self) -> None:
        pacer = build_pacer(RateLimitSettings(enabled=False))
        assert isinstance(pacer, NoOpPacer)
        pacer.acquire()
        pacer.close()

    def test_enabled_gives_pacer(self) -> None:
        pacer = build_pacer(RateLimitSettings(requests_per_second=3, requests_per_minute=None))
        try:
            assert isinstance(pacer, RequestPacer)
            assert pacer.name == "table"
        finally:
            pacer.close()
