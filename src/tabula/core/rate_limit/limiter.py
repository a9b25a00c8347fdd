# src/tabula/core/rate_limit/limiter.py
"""Client-side request pacing around pyrate-limiter.

Pacing keeps the caller under the remote table's published quota so that
429 responses (and the circuit breaker) stay the exception rather than the
steady state. It complements, and never replaces, BackoffClient's reaction
to actual rate-limit responses.
"""

from __future__ import annotations

import re
import sqlite3
import time
from types import TracebackType

import structlog
from pyrate_limiter import (  # type: ignore[attr-defined]
    Duration,
    InMemoryBucket,
    Limiter,
    Rate,
    SQLiteBucket,
    SQLiteQueries,
)

from tabula.core.config import RateLimitSettings

logger = structlog.get_logger(__name__)

# Waits shorter than this are routine and not logged
_SLOW_ACQUIRE_SECONDS = 0.5

# Used in SQL table names when persistence is enabled
_VALID_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*$")


class RequestPacer:
    """Blocks callers until a request slot is available.

    One limiter per interval: pyrate-limiter can skip checking a longer
    interval while a shorter one is under its limit, so per-second and
    per-minute rates are tracked by separate buckets.

    Example:
        with RequestPacer("sheets", requests_per_second=5, requests_per_minute=60) as pacer:
            pacer.acquire()
            transport.send(request)
    """

    def __init__(
        self,
        name: str,
        requests_per_second: int,
        requests_per_minute: int | None = None,
        persistence_path: str | None = None,
    ) -> None:
        """Initialize pacer.

        Args:
            name: Bucket key; letters, digits and underscores, starting with a letter
            requests_per_second: Maximum calls per second (> 0)
            requests_per_minute: Optional maximum calls per minute (> 0)
            persistence_path: Optional SQLite file shared by every process pacing
                against the same quota

        Raises:
            ValueError: If name or rates are invalid
        """
        if not _VALID_NAME_PATTERN.match(name):
            raise ValueError(f"Invalid pacer name: {name!r}. Use letters, digits and underscores, starting with a letter.")
        if requests_per_second <= 0:
            raise ValueError(f"requests_per_second must be positive, got {requests_per_second}")
        if requests_per_minute is not None and requests_per_minute <= 0:
            raise ValueError(f"requests_per_minute must be positive, got {requests_per_minute}")

        self.name = name
        self.acquired = 0
        self.waited_seconds = 0.0
        self._conn: sqlite3.Connection | None = None
        if persistence_path:
            self._conn = sqlite3.connect(persistence_path, check_same_thread=False)

        intervals: list[tuple[str, Rate]] = [("second", Rate(requests_per_second, Duration.SECOND))]
        if requests_per_minute is not None:
            intervals.append(("minute", Rate(requests_per_minute, Duration.MINUTE)))

        self._limiters: list[Limiter] = []
        self._buckets: list[InMemoryBucket | SQLiteBucket] = []
        for suffix, rate in intervals:
            bucket = self._make_bucket(f"pacer_{name}_{suffix}", rate)
            self._buckets.append(bucket)
            self._limiters.append(Limiter(bucket, max_delay=Duration.MINUTE, raise_when_fail=True))

    def _make_bucket(self, table: str, rate: Rate) -> InMemoryBucket | SQLiteBucket:
        if self._conn is None:
            return InMemoryBucket(rates=[rate])
        self._conn.execute(SQLiteQueries.CREATE_BUCKET_TABLE.format(table=table))
        self._conn.commit()
        return SQLiteBucket(rates=[rate], conn=self._conn, table=table)

    def acquire(self) -> None:
        """Wait for a slot in every interval."""
        started = time.monotonic()
        for limiter in self._limiters:
            limiter.try_acquire(self.name)
        waited = time.monotonic() - started
        self.acquired += 1
        self.waited_seconds += waited
        if waited >= _SLOW_ACQUIRE_SECONDS:
            logger.info("Request paced", pacer=self.name, delay_ms=round(waited * 1000))

    def close(self) -> None:
        """Dispose buckets and release the SQLite connection."""
        for limiter, bucket in zip(self._limiters, self._buckets, strict=True):
            limiter.dispose(bucket)
        self._limiters.clear()
        self._buckets.clear()
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> RequestPacer:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


class NoOpPacer:
    """Pacer used when pacing is disabled."""

    def acquire(self) -> None:
        """Return immediately."""

    def close(self) -> None:
        """Nothing to release."""


def build_pacer(settings: RateLimitSettings, name: str = "table") -> RequestPacer | NoOpPacer:
    """Create the pacer described by settings."""
    if not settings.enabled:
        logger.debug("Request pacing disabled")
        return NoOpPacer()
    return RequestPacer(
        name,
        requests_per_second=settings.requests_per_second,
        requests_per_minute=settings.requests_per_minute,
        persistence_path=settings.persistence_path,
    )
