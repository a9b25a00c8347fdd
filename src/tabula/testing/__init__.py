# src/tabula/testing/__init__.py
"""Test infrastructure for Tabula.

Factories for constructing production types with sensible defaults, plus
InMemoryTable (fake remote table with scripted failures). When a
constructor changes, update the factory here; tests that use factories need
no changes.

Usage:
    from tabula.testing import InMemoryTable, make_access, make_record

    table = InMemoryTable()
    access = make_access(table)
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from tabula.contracts.payload import RecordPayload
from tabula.contracts.records import Record
from tabula.core.clock import Clock
from tabula.core.config import BackoffSettings, RateLimitSettings, TabulaSettings
from tabula.engine.access import DataAccess
from tabula.substrate import Substrate, in_memory_substrate
from tabula.testing.fake_table import TRANSPORT_FAILURE, InMemoryTable


def make_record(
    owner_key: str = "owner@example.com",
    *,
    record_id: str | None = None,
    is_active: bool = True,
    payload: dict[str, Any] | None = None,
    last_modified: datetime | None = None,
) -> Record:
    """Record with defaults; last_modified defaults to a fixed millisecond timestamp."""
    return Record(
        id=record_id or str(uuid.uuid4()),
        owner_key=owner_key,
        is_active=is_active,
        payload=payload if payload is not None else {"schema_version": 1},
        last_modified=last_modified or datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=UTC),
    )


def make_settings(**sections: Any) -> TabulaSettings:
    """Settings for tests: pacing off, short backoff, memory substrate.

    Keyword arguments replace whole sections, e.g. make_settings(circuit=CircuitSettings(...)).
    """
    defaults: dict[str, Any] = {
        "rate_limit": RateLimitSettings(enabled=False),
        "backoff": BackoffSettings(base_delay_ms=10, max_delay_ms=40, max_attempts=3),
    }
    defaults.update(sections)
    return TabulaSettings(**defaults)


def _no_sleep(_seconds: float) -> None:
    return None


def make_access(
    table: InMemoryTable | None = None,
    *,
    substrate: Substrate | None = None,
    settings: TabulaSettings | None = None,
    clock: Clock | None = None,
    payload_model: type[RecordPayload] = RecordPayload,
) -> DataAccess:
    """DataAccess over an InMemoryTable. Backoff sleeps are skipped.

    Pass the same substrate to several calls to simulate processes that
    share a deployment (tier-2 cache, versions, circuit and locks).
    """
    return DataAccess.assemble(
        settings or make_settings(),
        table if table is not None else InMemoryTable(),
        substrate or in_memory_substrate(clock=clock),
        payload_model=payload_model,
        clock=clock,
        sleep=_no_sleep,
    )


__all__ = [
    "TRANSPORT_FAILURE",
    "InMemoryTable",
    "make_access",
    "make_record",
    "make_settings",
]
