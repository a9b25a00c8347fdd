# src/tabula/engine/context.py
"""ExecutionContext: one record's pseudo-transaction.

Business logic reads a snapshot, mutates an in-memory working copy as often
as it likes, then commits once. The commit is exactly one physical write,
however many fields changed, and no write at all when nothing did.

Lifecycle:
    CREATED -> ACCUMULATING -> COMMITTED
                            -> DISCARDED

A failed commit (conflict, quota, upstream error) leaves the context in
ACCUMULATING with every pending change intact, so the caller may retry,
rebase() or discard(). The context holds no resource; the lock around it
belongs to the caller.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal

import structlog

from tabula.contracts.errors import ContextStateError, RecordNotFound, StaleCommitConflict
from tabula.contracts.records import Record, RecordColumn, StoredRecord
from tabula.store.records import RecordStore

logger = structlog.get_logger(__name__)

VerifyMode = Literal["cached", "fresh", "none"]


class ContextState(StrEnum):
    CREATED = "created"
    ACCUMULATING = "accumulating"
    COMMITTED = "committed"
    DISCARDED = "discarded"

    @property
    def is_closed(self) -> bool:
        return self in (ContextState.COMMITTED, ContextState.DISCARDED)


@dataclass
class ContextStats:
    snapshot_reads: int = 0
    mutations: int = 0
    physical_writes: int = 0
    skipped_writes: int = 0


@dataclass(frozen=True)
class CommitResult:
    """Outcome of a commit.

    Attributes:
        stored: The record as it now stands (post-write, or the unchanged snapshot)
        wrote: Whether a physical write happened
        columns: Columns written (lastModified excluded)
    """

    stored: StoredRecord
    wrote: bool
    columns: tuple[RecordColumn, ...] = field(default_factory=tuple)

    @property
    def record(self) -> Record:
        return self.stored.record


class ExecutionContext:
    """Accumulates changes to one record and commits them in one write.

    Example:
        ctx = ExecutionContext.open(store, record_id)
        ctx.set_payload_value("theme", "dark")
        ctx.set_active(False)
        ctx.commit()   # one batch_update
    """

    def __init__(self, store: RecordStore, snapshot: StoredRecord, *, guard: Callable[[], None] | None = None) -> None:
        self._store = store
        self._base = snapshot
        # Runs right before the physical write; raising aborts the commit
        self._guard = guard
        self._pending: dict[RecordColumn, Any] = {}
        # Payload patch, replayed by rebase()
        self._payload_set: dict[str, Any] = {}
        self._payload_removed: set[str] = set()
        self._payload_replacement: dict[str, Any] | None = None
        self._state = ContextState.CREATED
        self.stats = ContextStats()

    @classmethod
    def open(
        cls,
        store: RecordStore,
        record_id: str,
        *,
        fresh: bool = False,
        guard: Callable[[], None] | None = None,
    ) -> ExecutionContext:
        """Snapshot a record.

        Raises:
            RecordNotFound: If the record does not exist
        """
        stored = store.get(record_id, fresh=fresh)
        if stored is None:
            raise RecordNotFound(record_id)
        ctx = cls(store, stored, guard=guard)
        ctx.stats.snapshot_reads += 1
        return ctx

    # === Views (read-your-own-writes) ===

    @property
    def state(self) -> ContextState:
        return self._state

    @property
    def record_id(self) -> str:
        return self._base.id

    @property
    def snapshot(self) -> StoredRecord:
        return self._base

    @property
    def record(self) -> Record:
        """The snapshot with pending changes applied."""
        return self._base.record.with_values(self._pending)

    @property
    def payload(self) -> dict[str, Any]:
        return copy.deepcopy(self._working_payload())

    def get(self, key: str, default: Any = None) -> Any:
        """One payload value, pending changes included."""
        payload = self._working_payload()
        return copy.deepcopy(payload[key]) if key in payload else default

    @property
    def is_dirty(self) -> bool:
        return bool(self._pending)

    @property
    def pending_columns(self) -> tuple[RecordColumn, ...]:
        return tuple(self._pending)

    # === Mutators ===

    def _ensure_open(self) -> None:
        if self._state.is_closed:
            raise ContextStateError(f"Context for record {self.record_id} is {self._state.value}")

    def _working_payload(self) -> dict[str, Any]:
        if RecordColumn.PAYLOAD in self._pending:
            payload: dict[str, Any] = self._pending[RecordColumn.PAYLOAD]
            return payload
        return self._base.record.payload

    def _set_column(self, column: RecordColumn, value: Any) -> None:
        if value == self._base.record.value_of(column):
            self._pending.pop(column, None)
            if column is RecordColumn.PAYLOAD:
                self._clear_payload_patch()
        else:
            self._pending[column] = value
        self.stats.mutations += 1
        if self._state is ContextState.CREATED:
            self._state = ContextState.ACCUMULATING

    def _clear_payload_patch(self) -> None:
        self._payload_set.clear()
        self._payload_removed.clear()
        self._payload_replacement = None

    def set_active(self, active: bool) -> None:
        self._ensure_open()
        self._set_column(RecordColumn.IS_ACTIVE, bool(active))

    def set_owner_key(self, owner_key: str) -> None:
        """Change the owner key (admin). Uniqueness is the caller's concern."""
        self._ensure_open()
        if not owner_key:
            raise ValueError("owner_key must not be empty")
        self._set_column(RecordColumn.OWNER_KEY, owner_key)

    def set_payload_value(self, key: str, value: Any) -> None:
        self._ensure_open()
        payload = copy.deepcopy(self._working_payload())
        payload[key] = copy.deepcopy(value)
        self._payload_set[key] = copy.deepcopy(value)
        self._payload_removed.discard(key)
        self._set_column(RecordColumn.PAYLOAD, payload)

    def update_payload(self, values: Mapping[str, Any]) -> None:
        self._ensure_open()
        payload = copy.deepcopy(self._working_payload())
        for key, value in values.items():
            payload[key] = copy.deepcopy(value)
            self._payload_set[key] = copy.deepcopy(value)
            self._payload_removed.discard(key)
        self._set_column(RecordColumn.PAYLOAD, payload)

    def remove_payload_key(self, key: str) -> None:
        self._ensure_open()
        payload = copy.deepcopy(self._working_payload())
        if key not in payload:
            return
        del payload[key]
        self._payload_set.pop(key, None)
        self._payload_removed.add(key)
        self._set_column(RecordColumn.PAYLOAD, payload)

    def replace_payload(self, payload: Mapping[str, Any]) -> None:
        self._ensure_open()
        replacement = copy.deepcopy(dict(payload))
        self._clear_payload_patch()
        self._payload_replacement = copy.deepcopy(replacement)
        self._set_column(RecordColumn.PAYLOAD, replacement)

    # === Commit pipeline ===

    def _check_current(self, verify: VerifyMode) -> None:
        if verify == "none":
            return
        latest = self._store.get(self.record_id, fresh=verify == "fresh")
        self.stats.snapshot_reads += 1
        if latest is None:
            raise RecordNotFound(self.record_id)
        expected = self._base.record.last_modified
        actual = latest.record.last_modified
        if actual != expected:
            logger.info("Stale commit detected", record_id=self.record_id, expected=str(expected), actual=str(actual))
            raise StaleCommitConflict(self.record_id, expected, actual)

    def commit(self, *, verify: VerifyMode = "cached") -> CommitResult:
        """Write every pending change in one physical write.

        Args:
            verify: How to check that nobody else wrote since the snapshot:
                "cached" re-reads through the cache, "fresh" reads the row
                from the table, "none" skips the check

        Raises:
            ContextStateError: If the context is already closed
            StaleCommitConflict: If lastModified moved since the snapshot
            LockLost: If the guard finds the record lock was taken over
            RecordNotFound: If the record disappeared
            QuotaExceeded, CircuitOpen, UpstreamError: From the write
        """
        self._ensure_open()
        if not self._pending:
            self._state = ContextState.COMMITTED
            self.stats.skipped_writes += 1
            logger.debug("Commit skipped, nothing pending", record_id=self.record_id)
            return CommitResult(stored=self._base, wrote=False)

        self._check_current(verify)
        if self._guard is not None:
            self._guard()
        columns = tuple(self._pending)
        stored = self._store.batch_update(self.record_id, dict(self._pending), base=self._base)

        self.stats.physical_writes += 1
        self._base = stored
        self._pending.clear()
        self._clear_payload_patch()
        self._state = ContextState.COMMITTED
        return CommitResult(stored=stored, wrote=True, columns=columns)

    def discard(self) -> None:
        """Drop pending changes; nothing is written."""
        self._ensure_open()
        self._pending.clear()
        self._clear_payload_patch()
        self._state = ContextState.DISCARDED

    def rebase(self, latest: StoredRecord | None = None) -> ExecutionContext:
        """Re-snapshot and replay pending changes on top of the latest record.

        Column changes are re-applied as values; payload changes are re-applied
        key by key (or as a whole when replace_payload() was used), so keys
        changed by someone else and untouched here survive.

        Raises:
            RecordNotFound: If the record disappeared
        """
        self._ensure_open()
        if latest is None:
            latest = self._store.get(self.record_id, fresh=True)
            self.stats.snapshot_reads += 1
            if latest is None:
                raise RecordNotFound(self.record_id)
        elif latest.id != self.record_id:
            raise ValueError(f"Cannot rebase {self.record_id} onto {latest.id}")

        replay = {column: value for column, value in self._pending.items() if column is not RecordColumn.PAYLOAD}
        payload_touched = RecordColumn.PAYLOAD in self._pending
        if self._payload_replacement is not None:
            payload: dict[str, Any] = copy.deepcopy(self._payload_replacement)
        else:
            payload = copy.deepcopy(latest.record.payload)
            payload.update(copy.deepcopy(self._payload_set))
            for key in self._payload_removed:
                payload.pop(key, None)

        self._base = latest
        self._pending = {}
        for column, value in replay.items():
            if value != latest.record.value_of(column):
                self._pending[column] = value
        if payload_touched and payload != latest.record.payload:
            self._pending[RecordColumn.PAYLOAD] = payload
        if RecordColumn.PAYLOAD not in self._pending:
            self._clear_payload_patch()
        logger.debug("Context rebased", record_id=self.record_id, pending=[column.value for column in self._pending])
        return self
