# src/tabula/store/codec.py
"""Conversion between Record values and table cells.

The table returns formatted strings ("TRUE", ISO timestamps, JSON text) and
drops trailing empty cells, so decoding pads and coerces; encoding writes
plain values the RAW input option stores verbatim.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import structlog

from tabula.contracts.payload import RecordPayload, encode_payload, parse_payload
from tabula.contracts.records import COLUMNS, Record, RecordColumn, StoredRecord

logger = structlog.get_logger(__name__)

_TRUE_STRINGS = frozenset({"true", "1", "yes"})


def encode_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def decode_timestamp(raw: Any, *, record_id: str | None = None) -> datetime | None:
    if raw in (None, ""):
        return None
    try:
        parsed = datetime.fromisoformat(str(raw))
    except ValueError:
        logger.warning("Unparseable lastModified, treating as unset", record_id=record_id, value=str(raw)[:64])
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def decode_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in _TRUE_STRINGS


def encode_cell(column: RecordColumn, value: Any) -> Any:
    """Cell value for one column."""
    match column:
        case RecordColumn.ID | RecordColumn.OWNER_KEY:
            return str(value)
        case RecordColumn.IS_ACTIVE:
            return bool(value)
        case RecordColumn.PAYLOAD:
            return encode_payload(value or {})
        case RecordColumn.LAST_MODIFIED:
            return encode_timestamp(value) if value is not None else ""


def encode_record(record: Record) -> list[Any]:
    """Full A..E row for a record."""
    return [encode_cell(column, record.value_of(column)) for column in COLUMNS]


def blank_row() -> list[str]:
    return [""] * len(COLUMNS)


def is_blank(cells: Sequence[Any]) -> bool:
    return all(cell in (None, "") for cell in cells)


def decode_row(
    cells: Sequence[Any],
    row: int,
    *,
    payload_model: type[RecordPayload] = RecordPayload,
) -> StoredRecord | None:
    """Decode one table row. Blank rows (and rows without an id) give None."""
    padded = list(cells[: len(COLUMNS)]) + [""] * (len(COLUMNS) - len(cells))
    record_id = str(padded[RecordColumn.ID.index] or "").strip()
    if not record_id:
        return None
    record = Record(
        id=record_id,
        owner_key=str(padded[RecordColumn.OWNER_KEY.index] or ""),
        is_active=decode_bool(padded[RecordColumn.IS_ACTIVE.index]),
        payload=parse_payload(padded[RecordColumn.PAYLOAD.index] or None, model=payload_model, record_id=record_id),
        last_modified=decode_timestamp(padded[RecordColumn.LAST_MODIFIED.index], record_id=record_id),
    )
    return StoredRecord(record=record, row=row)
