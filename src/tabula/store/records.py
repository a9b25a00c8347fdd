# src/tabula/store/records.py
"""RecordStore: the record table behind the cache.

Reads go through VersionedCache (namespace "records"):

    id:<id>               one StoredRecord (or a negative entry)
    owner:<owner_key>     one StoredRecord (or a negative entry)
    payload:<hash>        lookup by a payload field value
    index                 every non-blank row (listing TTL)

A miss on a single-record key is resolved from the index, so the remote
table sees at most one whole-table read per index TTL.

Every write is one remote call. After it succeeds the namespace is bumped
(every process drops its cached view) and the written record is warmed
under its id and owner keys, so the writer reads its own write.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any

import structlog

from tabula.cache import VersionedCache
from tabula.contracts.errors import PropertyStoreError, RecordNotFound, SchemaMismatch, UpstreamError
from tabula.contracts.payload import RecordPayload, default_payload
from tabula.contracts.records import HEADER, Record, RecordColumn, StoredRecord
from tabula.contracts.table import TableRequest, TableResponse
from tabula.core.canonical import stable_hash
from tabula.core.clock import DEFAULT_CLOCK, Clock, utc_now
from tabula.resilience import BackoffClient
from tabula.store.codec import blank_row, decode_row, encode_cell, encode_record
from tabula.store.ranges import FIRST_DATA_ROW, ColumnSpan, TableLayout, parse_start_row

logger = structlog.get_logger(__name__)

RECORDS_NAMESPACE = "records"


def _rows_of(value_range: Mapping[str, Any]) -> list[list[Any]]:
    values = value_range.get("values") or []
    return [list(row) for row in values]


def _new_id() -> str:
    return str(uuid.uuid4())


class RecordStore:
    """Reads and writes records of one sheet.

    Example:
        store = RecordStore(client, cache)
        stored, created = store.append("a@example.com", {"theme": "dark"})
        store.batch_update(stored.id, {RecordColumn.IS_ACTIVE: False})
    """

    namespace = RECORDS_NAMESPACE

    def __init__(
        self,
        client: BackoffClient,
        cache: VersionedCache,
        *,
        layout: TableLayout | None = None,
        listing_ttl: int = 1200,
        payload_model: type[RecordPayload] = RecordPayload,
        clock: Clock | None = None,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self._client = client
        self._cache = cache
        self.layout = layout or TableLayout()
        self._listing_ttl = listing_ttl
        self._payload_model = payload_model
        self._clock = clock or DEFAULT_CLOCK
        self._id_factory = id_factory

    @property
    def cache(self) -> VersionedCache:
        return self._cache

    @property
    def client(self) -> BackoffClient:
        return self._client

    # === Remote reads ===

    def _decode_rows(self, rows: Sequence[Sequence[Any]], first_row: int) -> list[StoredRecord]:
        records = []
        for offset, cells in enumerate(rows):
            stored = decode_row(cells, first_row + offset, payload_model=self._payload_model)
            if stored is not None:
                records.append(stored)
        return records

    def _read_table(self) -> list[StoredRecord]:
        response = self._client.call(TableRequest.get(self.layout.data_range))
        records = self._decode_rows(_rows_of(response.body), FIRST_DATA_ROW)
        logger.debug("Record table read", rows=len(records))
        return records

    def _read_row(self, row: int) -> StoredRecord | None:
        response = self._client.call(TableRequest.get(self.layout.row_range(row)))
        rows = _rows_of(response.body)
        return decode_row(rows[0], row, payload_model=self._payload_model) if rows else None

    # === Cached lookups ===

    def _index(self) -> list[StoredRecord]:
        cached = self._cache.get_or_fetch(
            self.namespace,
            "index",
            lambda: [stored.to_dict() for stored in self._read_table()],
            ttl=self._listing_ttl,
        )
        return [StoredRecord.from_dict(item) for item in cached or []]

    def _lookup(self, key: str, match: Callable[[StoredRecord], bool]) -> StoredRecord | None:
        def fetch() -> dict[str, Any] | None:
            for stored in self._index():
                if match(stored):
                    return stored.to_dict()
            return None

        cached = self._cache.get_or_fetch(self.namespace, key, fetch)
        return StoredRecord.from_dict(cached) if cached is not None else None

    def get(self, record_id: str, *, fresh: bool = False) -> StoredRecord | None:
        """Look up one record.

        Args:
            record_id: Record id
            fresh: Bypass the cache and read the row from the table

        Returns:
            The record with its row, or None if no such record exists
        """
        if not fresh:
            return self._lookup(f"id:{record_id}", lambda stored: stored.id == record_id)

        known = self._lookup(f"id:{record_id}", lambda stored: stored.id == record_id)
        if known is not None:
            current = self._read_row(known.row)
            if current is not None and current.id == record_id:
                self._cache.put(self.namespace, f"id:{record_id}", current.to_dict())
                return current
        # Unknown or moved: consult the table itself
        for stored in self._read_table():
            if stored.id == record_id:
                self._cache.put(self.namespace, f"id:{record_id}", stored.to_dict())
                return stored
        return None

    def batch_get(self, record_ids: Iterable[str], *, fresh: bool = False) -> dict[str, StoredRecord]:
        """Look up several records. Missing ids are absent from the result.

        With fresh=True every known row is re-read in one remote batch_get.
        """
        ids = list(dict.fromkeys(record_ids))
        known: dict[str, StoredRecord] = {}
        for record_id in ids:
            stored = self.get(record_id)
            if stored is not None:
                known[record_id] = stored
        if not fresh or not known:
            return known

        targets = list(known.values())
        response = self._client.call(TableRequest.batch_get([self.layout.row_range(stored.row) for stored in targets]))
        value_ranges = response.body.get("valueRanges") or []
        result: dict[str, StoredRecord] = {}
        for stored, value_range in zip(targets, value_ranges, strict=False):
            rows = _rows_of(value_range)
            current = decode_row(rows[0], stored.row, payload_model=self._payload_model) if rows else None
            if current is not None and current.id == stored.id:
                result[stored.id] = current
                self._cache.put(self.namespace, f"id:{stored.id}", current.to_dict())
        return result

    def find_by_owner_key(self, owner_key: str) -> StoredRecord | None:
        return self._lookup(f"owner:{owner_key}", lambda stored: stored.record.owner_key == owner_key)

    def find_by_payload_field(self, field: str, value: Any) -> StoredRecord | None:
        """First record whose payload holds ``value`` under ``field``."""
        key = f"payload:{stable_hash([field, value])}"
        return self._lookup(key, lambda stored: field in stored.record.payload and stored.record.payload[field] == value)

    def list_records(self, *, active_only: bool = False) -> list[StoredRecord]:
        records = self._index()
        if active_only:
            return [stored for stored in records if stored.record.is_active]
        return records

    # === Writes ===

    def _stamp(self) -> datetime:
        # Millisecond precision: the stored timestamp must round-trip exactly
        now = utc_now(self._clock)
        return now.replace(microsecond=now.microsecond // 1000 * 1000)

    def _after_write(self, stored: StoredRecord, *, previous_owner_key: str | None = None) -> None:
        try:
            self._cache.bump(self.namespace)
        except PropertyStoreError as e:
            logger.warning("Cache version bump failed after write", record_id=stored.id, error=str(e))
            # The bump did not land: stale keys of this record must go explicitly
            self._cache.remove(self.namespace, "index")
            if previous_owner_key is not None and previous_owner_key != stored.record.owner_key:
                self._cache.remove(self.namespace, f"owner:{previous_owner_key}")
        self._cache.put(self.namespace, f"id:{stored.id}", stored.to_dict())
        self._cache.put(self.namespace, f"owner:{stored.record.owner_key}", stored.to_dict())

    def append(self, owner_key: str, payload: Mapping[str, Any] | None = None) -> tuple[StoredRecord, bool]:
        """Create a record unless one already exists for owner_key.

        Returns:
            (record, created). created is False when an existing record was
            returned unchanged.

        Raises:
            UpstreamError: If the append response does not say where the row landed
        """
        existing = self.find_by_owner_key(owner_key)
        if existing is not None:
            logger.debug("Record already exists for owner key", record_id=existing.id)
            return existing, False

        record = Record(
            id=self._id_factory(),
            owner_key=owner_key,
            is_active=True,
            payload={**default_payload(self._payload_model), **(payload or {})},
            last_modified=self._stamp(),
        )
        response = self._client.call(TableRequest.append(self.layout.append_range, [encode_record(record)]))
        stored = StoredRecord(record=record, row=self._appended_row(response))
        logger.info("Record created", record_id=record.id, row=stored.row)
        self._after_write(stored)
        return stored, True

    def _appended_row(self, response: TableResponse) -> int:
        updates = response.body.get("updates")
        updated_range = updates.get("updatedRange") if isinstance(updates, Mapping) else None
        if not updated_range:
            raise UpstreamError("append", response.status_code, "append response has no updates.updatedRange")
        try:
            return parse_start_row(str(updated_range))
        except ValueError as e:
            raise UpstreamError("append", response.status_code, str(e)) from e

    def batch_update(
        self,
        record_id: str,
        deltas: Mapping[RecordColumn, Any],
        *,
        base: StoredRecord | None = None,
    ) -> StoredRecord:
        """Write changed columns of one record in a single remote call.

        The written range is the smallest contiguous run of columns covering
        the deltas and lastModified (always restamped). Cells inside the run
        that are not in deltas are rewritten with their values from base.

        Args:
            record_id: Record to update
            deltas: New column values; id may appear only unchanged
            base: The record the deltas apply to (read through the cache if omitted)

        Raises:
            RecordNotFound: If the record does not exist
            ValueError: If deltas try to change the id
        """
        if RecordColumn.ID in deltas and deltas[RecordColumn.ID] != record_id:
            raise ValueError(f"Record id is immutable ({record_id!r})")
        if base is None:
            base = self.get(record_id)
            if base is None:
                raise RecordNotFound(record_id)
        elif base.id != record_id:
            raise ValueError(f"base record {base.id!r} does not match {record_id!r}")

        changes = {column: value for column, value in deltas.items() if column not in (RecordColumn.ID, RecordColumn.LAST_MODIFIED)}
        updated = base.record.with_values({**changes, RecordColumn.LAST_MODIFIED: self._stamp()})
        span = ColumnSpan.covering([*changes, RecordColumn.LAST_MODIFIED])
        cells = [encode_cell(column, updated.value_of(column)) for column in span.columns]

        self._client.call(TableRequest.batch_update([(self.layout.span_range(base.row, span), [cells])]))
        stored = StoredRecord(record=updated, row=base.row)
        logger.info(
            "Record updated",
            record_id=record_id,
            row=base.row,
            columns=[column.value for column in changes],
        )
        self._after_write(stored, previous_owner_key=base.record.owner_key)
        return stored

    def delete(self, record_id: str) -> bool:
        """Blank the record's row. Returns False if the record does not exist.

        The row stays in place (empty), so no other record's row number moves.
        """
        current = self.get(record_id)
        if current is None:
            return False
        self._client.call(TableRequest.batch_update([(self.layout.row_range(current.row), [blank_row()])]))
        logger.info("Record deleted", record_id=record_id, row=current.row)
        try:
            self._cache.bump(self.namespace)
        except PropertyStoreError as e:
            logger.warning("Cache version bump failed after delete", record_id=record_id, error=str(e))
            self._cache.remove(self.namespace, "index")
            self._cache.remove(self.namespace, f"id:{record_id}")
            self._cache.remove(self.namespace, f"owner:{current.record.owner_key}")
        return True

    def invalidate(self) -> int:
        """Bump the records namespace. Returns the new version."""
        return self._cache.bump(self.namespace)

    # === Header ===

    def _read_header(self) -> list[str]:
        response = self._client.call(TableRequest.get(self.layout.header_range))
        rows = _rows_of(response.body)
        return [str(cell) for cell in rows[0]] if rows else []

    def verify_header(self) -> None:
        """Raises SchemaMismatch if the header row differs from the record schema."""
        actual = self._read_header()
        if actual != list(HEADER):
            raise SchemaMismatch(list(HEADER), actual)

    def ensure_header(self) -> bool:
        """Write the header row on an empty table, otherwise verify it.

        Returns:
            True if the header was written

        Raises:
            SchemaMismatch: If an existing header differs from the schema
        """
        actual = self._read_header()
        if not actual:
            self._client.call(TableRequest.batch_update([(self.layout.header_range, [list(HEADER)])]))
            logger.info("Header row written", sheet=self.layout.sheet_name)
            return True
        if actual != list(HEADER):
            raise SchemaMismatch(list(HEADER), actual)
        return False
