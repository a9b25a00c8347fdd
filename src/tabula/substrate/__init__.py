# src/tabula/substrate/__init__.py
"""Shared-state substrate: cache tier 2, property store and lock service.

Two implementations of the collaborator protocols:
- memory: process-local, for tests and single-process use
- sql: SQLAlchemy Core tables shared by every process on the same database
"""

from __future__ import annotations

from dataclasses import dataclass

from tabula.contracts.protocols import CacheBackend, LockService, PropertyStore
from tabula.core.clock import Clock
from tabula.core.config import LockSettings, SubstrateSettings
from tabula.substrate.database import SubstrateDB
from tabula.substrate.memory import InMemoryCacheBackend, InMemoryLockService, InMemoryPropertyStore
from tabula.substrate.sql import SqlCacheBackend, SqlLockService, SqlPropertyStore


@dataclass(frozen=True)
class Substrate:
    """The three shared collaborators, plus the database that backs them (if any)."""

    cache: CacheBackend
    properties: PropertyStore
    locks: LockService
    db: SubstrateDB | None = None

    def close(self) -> None:
        if self.db is not None:
            self.db.close()


def in_memory_substrate(*, clock: Clock | None = None, sweep_interval_seconds: float = 300.0) -> Substrate:
    return Substrate(
        cache=InMemoryCacheBackend(clock=clock, sweep_interval_seconds=sweep_interval_seconds),
        properties=InMemoryPropertyStore(),
        locks=InMemoryLockService(),
    )


def sql_substrate(
    db: SubstrateDB,
    locks: LockSettings | None = None,
    *,
    clock: Clock | None = None,
    sweep_interval_seconds: float = 300.0,
) -> Substrate:
    lock_settings = locks or LockSettings()
    return Substrate(
        cache=SqlCacheBackend(db, clock=clock, sweep_interval_seconds=sweep_interval_seconds),
        properties=SqlPropertyStore(db, clock=clock),
        locks=SqlLockService(
            db,
            lease_seconds=lock_settings.lease_seconds,
            poll_interval_ms=lock_settings.poll_interval_ms,
            clock=clock,
        ),
        db=db,
    )


def build_substrate(settings: SubstrateSettings, locks: LockSettings, *, clock: Clock | None = None) -> Substrate:
    """Create the substrate described by settings."""
    if settings.backend == "memory":
        return in_memory_substrate(clock=clock, sweep_interval_seconds=settings.cache_sweep_interval_seconds)
    return sql_substrate(
        SubstrateDB.from_settings(settings),
        locks,
        clock=clock,
        sweep_interval_seconds=settings.cache_sweep_interval_seconds,
    )


__all__ = [
    "InMemoryCacheBackend",
    "InMemoryLockService",
    "InMemoryPropertyStore",
    "SqlCacheBackend",
    "SqlLockService",
    "SqlPropertyStore",
    "Substrate",
    "SubstrateDB",
    "build_substrate",
    "in_memory_substrate",
    "sql_substrate",
]
