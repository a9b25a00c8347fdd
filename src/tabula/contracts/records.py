# src/tabula/contracts/records.py
"""Record schema: the fixed 5-column row stored in the remote table."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any


class RecordColumn(StrEnum):
    """Record columns, in physical (left-to-right) order.

    Values are the header names written to the table's first row.
    """

    ID = "id"
    OWNER_KEY = "ownerKey"
    IS_ACTIVE = "isActive"
    PAYLOAD = "payload"
    LAST_MODIFIED = "lastModified"

    @property
    def index(self) -> int:
        """Zero-based column position."""
        return COLUMNS.index(self)


COLUMNS: tuple[RecordColumn, ...] = tuple(RecordColumn)
HEADER: tuple[str, ...] = tuple(column.value for column in COLUMNS)

# Columns a commit may change. id is immutable, lastModified is stamped by the store.
MUTABLE_COLUMNS: frozenset[RecordColumn] = frozenset({RecordColumn.OWNER_KEY, RecordColumn.IS_ACTIVE, RecordColumn.PAYLOAD})


@dataclass(frozen=True)
class Record:
    """One row of the remote table.

    payload is the only extensible field; every business attribute nests
    inside it. Treat it as read-only: mutate through an ExecutionContext.
    """

    id: str
    owner_key: str
    is_active: bool = True
    payload: dict[str, Any] = field(default_factory=dict)
    last_modified: datetime | None = None

    def value_of(self, column: RecordColumn) -> Any:
        """Get the logical value held in a column."""
        match column:
            case RecordColumn.ID:
                return self.id
            case RecordColumn.OWNER_KEY:
                return self.owner_key
            case RecordColumn.IS_ACTIVE:
                return self.is_active
            case RecordColumn.PAYLOAD:
                return self.payload
            case RecordColumn.LAST_MODIFIED:
                return self.last_modified

    def with_values(self, values: dict[RecordColumn, Any]) -> Record:
        """Return a copy with the given column values applied."""
        if RecordColumn.ID in values and values[RecordColumn.ID] != self.id:
            raise ValueError(f"Record id is immutable (attempted {self.id!r} -> {values[RecordColumn.ID]!r})")
        changes: dict[str, Any] = {}
        for column, value in values.items():
            match column:
                case RecordColumn.OWNER_KEY:
                    changes["owner_key"] = value
                case RecordColumn.IS_ACTIVE:
                    changes["is_active"] = bool(value)
                case RecordColumn.PAYLOAD:
                    changes["payload"] = copy.deepcopy(value)
                case RecordColumn.LAST_MODIFIED:
                    changes["last_modified"] = value
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe representation (header names as keys)."""
        return {
            RecordColumn.ID.value: self.id,
            RecordColumn.OWNER_KEY.value: self.owner_key,
            RecordColumn.IS_ACTIVE.value: self.is_active,
            RecordColumn.PAYLOAD.value: copy.deepcopy(self.payload),
            RecordColumn.LAST_MODIFIED.value: self.last_modified.isoformat() if self.last_modified else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Record:
        last_modified = data.get(RecordColumn.LAST_MODIFIED.value)
        return cls(
            id=data[RecordColumn.ID.value],
            owner_key=data[RecordColumn.OWNER_KEY.value],
            is_active=bool(data[RecordColumn.IS_ACTIVE.value]),
            payload=dict(data.get(RecordColumn.PAYLOAD.value) or {}),
            last_modified=datetime.fromisoformat(last_modified) if last_modified else None,
        )


@dataclass(frozen=True)
class StoredRecord:
    """A record together with its 1-based sheet row.

    Rows never move (deletes blank the row in place), so a row number cached
    alongside the record stays valid.
    """

    record: Record
    row: int

    @property
    def id(self) -> str:
        return self.record.id

    def to_dict(self) -> dict[str, Any]:
        return {"row": self.row, "record": self.record.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoredRecord:
        return cls(record=Record.from_dict(data["record"]), row=int(data["row"]))
