# src/tabula/substrate/sql.py
"""Shared substrate on a SQL database.

Every process pointing at the same database shares one cache tier 2, one
set of namespace version counters and one set of named locks. Statements are
plain SQLAlchemy Core and run on SQLite and PostgreSQL alike.

SQLAlchemy errors are wrapped into the substrate error types so callers can
apply their fall-through or logging policy without importing SQLAlchemy.
"""

from __future__ import annotations

import itertools
import os
import socket
import threading
import time

import structlog
from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tabula.contracts.errors import CacheBackendError, LockServiceError, PropertyStoreError
from tabula.core.clock import DEFAULT_CLOCK, Clock
from tabula.substrate.database import SubstrateDB
from tabula.substrate.schema import cache_entries_table, locks_table, properties_table

logger = structlog.get_logger(__name__)

# Concurrent first-writers of the same key race on the primary key; the loser retries.
_INSERT_RACE_RETRIES = 5

_instance_counter = itertools.count(1)


class SqlPropertyStore:
    """PropertyStore on the ``properties`` table."""

    def __init__(self, db: SubstrateDB, *, clock: Clock | None = None) -> None:
        self._db = db
        self._clock = clock or DEFAULT_CLOCK

    def get(self, key: str) -> str | None:
        try:
            with self._db.engine.connect() as conn:
                row = conn.execute(select(properties_table.c.value).where(properties_table.c.key == key)).first()
        except SQLAlchemyError as e:
            raise PropertyStoreError(f"get {key!r} failed: {e}") from e
        return None if row is None else str(row.value)

    def set(self, key: str, value: str) -> None:
        for _ in range(_INSERT_RACE_RETRIES):
            try:
                with self._db.engine.begin() as conn:
                    conn.execute(delete(properties_table).where(properties_table.c.key == key))
                    conn.execute(insert(properties_table).values(key=key, value=value, updated_at=self._clock.time()))
                return
            except IntegrityError:
                continue
            except SQLAlchemyError as e:
                raise PropertyStoreError(f"set {key!r} failed: {e}") from e
        raise PropertyStoreError(f"set {key!r} lost {_INSERT_RACE_RETRIES} insert races")

    def increment(self, key: str) -> int:
        """Atomically add one and return the new value (missing key counts as 0).

        The first statement is a write on the key's row, so the row (SQLite:
        the database) stays locked until the new value is written.
        """
        claim = update(properties_table).where(properties_table.c.key == key).values(updated_at=self._clock.time())
        for _ in range(_INSERT_RACE_RETRIES):
            try:
                with self._db.engine.begin() as conn:
                    if conn.execute(claim).rowcount == 0:
                        conn.execute(insert(properties_table).values(key=key, value="1", updated_at=self._clock.time()))
                        return 1
                    raw = conn.execute(select(properties_table.c.value).where(properties_table.c.key == key)).scalar_one()
                    try:
                        value = int(raw) + 1
                    except ValueError as e:
                        raise PropertyStoreError(f"increment {key!r}: stored value {raw!r} is not an integer") from e
                    conn.execute(update(properties_table).where(properties_table.c.key == key).values(value=str(value)))
                    return value
            except IntegrityError:
                continue
            except SQLAlchemyError as e:
                raise PropertyStoreError(f"increment {key!r} failed: {e}") from e
        raise PropertyStoreError(f"increment {key!r} lost {_INSERT_RACE_RETRIES} insert races")

    def delete(self, key: str) -> None:
        try:
            with self._db.engine.begin() as conn:
                conn.execute(delete(properties_table).where(properties_table.c.key == key))
        except SQLAlchemyError as e:
            raise PropertyStoreError(f"delete {key!r} failed: {e}") from e


class SqlCacheBackend:
    """CacheBackend on the ``cache_entries`` table.

    Expired rows are invisible to get() and overwritten by put(). Rows keyed
    by a superseded namespace version are never touched again, so put()
    runs purge_expired() once per sweep_interval_seconds (per instance).
    """

    def __init__(self, db: SubstrateDB, *, clock: Clock | None = None, sweep_interval_seconds: float = 300.0) -> None:
        self._db = db
        self._clock = clock or DEFAULT_CLOCK
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = self._clock.time() + sweep_interval_seconds
        self._sweep_lock = threading.Lock()

    def get(self, key: str) -> bytes | None:
        try:
            with self._db.engine.connect() as conn:
                row = conn.execute(
                    select(cache_entries_table.c.value, cache_entries_table.c.expires_at).where(cache_entries_table.c.key == key)
                ).first()
        except SQLAlchemyError as e:
            raise CacheBackendError(f"get {key!r} failed: {e}") from e
        if row is None or row.expires_at <= self._clock.time():
            return None
        return bytes(row.value)

    def put(self, key: str, value: bytes, ttl_seconds: int) -> None:
        expires_at = self._clock.time() + ttl_seconds
        for _ in range(_INSERT_RACE_RETRIES):
            try:
                with self._db.engine.begin() as conn:
                    conn.execute(delete(cache_entries_table).where(cache_entries_table.c.key == key))
                    conn.execute(insert(cache_entries_table).values(key=key, value=value, expires_at=expires_at))
                break
            except IntegrityError:
                continue
            except SQLAlchemyError as e:
                raise CacheBackendError(f"put {key!r} failed: {e}") from e
        else:
            raise CacheBackendError(f"put {key!r} lost {_INSERT_RACE_RETRIES} insert races")
        self._maybe_sweep()

    def _maybe_sweep(self) -> None:
        now = self._clock.time()
        with self._sweep_lock:
            if now < self._next_sweep:
                return
            self._next_sweep = now + self._sweep_interval
        try:
            removed = self.purge_expired()
        except CacheBackendError as e:
            # The put itself succeeded; the next interval tries again
            logger.warning("Expired cache sweep failed", error=str(e))
            return
        if removed:
            logger.debug("Expired cache entries swept", removed=removed)

    def remove(self, key: str) -> None:
        try:
            with self._db.engine.begin() as conn:
                conn.execute(delete(cache_entries_table).where(cache_entries_table.c.key == key))
        except SQLAlchemyError as e:
            raise CacheBackendError(f"remove {key!r} failed: {e}") from e

    def purge_expired(self) -> int:
        """Delete expired rows. Returns the number removed."""
        try:
            with self._db.engine.begin() as conn:
                result = conn.execute(delete(cache_entries_table).where(cache_entries_table.c.expires_at <= self._clock.time()))
        except SQLAlchemyError as e:
            raise CacheBackendError(f"purge failed: {e}") from e
        return int(result.rowcount)


class SqlLockService:
    """LockService on the ``locks`` table.

    A lock is a row keyed by name. Acquire inserts the row (the primary key
    makes this exclusive); release deletes it if this owner still holds it.
    Each row carries a lease: a holder that crashes stops pinning the lock
    once lease_seconds have passed. A live holder calls renew() before it
    writes, which both restarts the lease and tells it whether the lease
    was taken over in the meantime.

    Ownership is per thread: the owner string includes the thread ident,
    so two threads sharing one service instance exclude each other.
    """

    def __init__(
        self,
        db: SubstrateDB,
        *,
        lease_seconds: float = 180.0,
        poll_interval_ms: int = 50,
        clock: Clock | None = None,
    ) -> None:
        self._db = db
        self._lease_seconds = lease_seconds
        self._poll_interval = poll_interval_ms / 1000
        self._clock = clock or DEFAULT_CLOCK
        self._instance = f"{socket.gethostname()}:{os.getpid()}:{next(_instance_counter)}"

    def _owner(self) -> str:
        return f"{self._instance}:{threading.get_ident()}"

    def _try_insert(self, name: str, owner: str) -> bool:
        now = self._clock.time()
        try:
            with self._db.engine.begin() as conn:
                conn.execute(delete(locks_table).where(and_(locks_table.c.name == name, locks_table.c.expires_at <= now)))
                conn.execute(insert(locks_table).values(name=name, owner=owner, expires_at=now + self._lease_seconds))
            return True
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            raise LockServiceError(f"acquire {name!r} failed: {e}") from e

    def try_acquire(self, name: str, timeout_ms: int) -> bool:
        owner = self._owner()
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            if self._try_insert(name, owner):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(self._poll_interval, remaining))

    def renew(self, name: str) -> bool:
        """Restart this owner's lease on ``name``.

        Returns False when the row is gone or belongs to someone else, i.e.
        the lease lapsed and another holder took the lock. A lapsed lease
        that nobody took over is still ours and is renewed.
        """
        owner = self._owner()
        try:
            with self._db.engine.begin() as conn:
                result = conn.execute(
                    update(locks_table)
                    .where(and_(locks_table.c.name == name, locks_table.c.owner == owner))
                    .values(expires_at=self._clock.time() + self._lease_seconds)
                )
        except SQLAlchemyError as e:
            raise LockServiceError(f"renew {name!r} failed: {e}") from e
        return bool(result.rowcount == 1)

    def release(self, name: str) -> None:
        owner = self._owner()
        try:
            with self._db.engine.begin() as conn:
                result = conn.execute(delete(locks_table).where(and_(locks_table.c.name == name, locks_table.c.owner == owner)))
        except SQLAlchemyError as e:
            raise LockServiceError(f"release {name!r} failed: {e}") from e
        if result.rowcount == 0:
            raise LockServiceError(f"lock {name!r} is not held by {owner} (lease expired?)")
