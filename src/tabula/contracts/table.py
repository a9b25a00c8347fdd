# src/tabula/contracts/table.py
"""Request/response types for the remote tabular API.

Four operations mirror the values API of the remote table:

- get: read one A1 range
- batch_get: read several ranges in one call
- append: append rows after the last data row
- batch_update: overwrite one or more ranges in one call

Values are nested tuples (ranges -> rows -> cells) so requests stay hashable
and immutable once built.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

# Rows of cells for a single range
Rows = tuple[tuple[Any, ...], ...]


class TableOperation(StrEnum):
    """Remote table operations."""

    GET = "get"
    BATCH_GET = "batch_get"
    APPEND = "append"
    BATCH_UPDATE = "batch_update"

    @property
    def is_write(self) -> bool:
        return self in (TableOperation.APPEND, TableOperation.BATCH_UPDATE)


def _freeze_rows(rows: Sequence[Sequence[Any]]) -> Rows:
    return tuple(tuple(row) for row in rows)


@dataclass(frozen=True, slots=True)
class TableRequest:
    """One logical call against the remote table.

    For APPEND, values holds a single entry (the rows to append).
    For BATCH_UPDATE, values[i] holds the rows written to ranges[i].
    """

    operation: TableOperation
    ranges: tuple[str, ...]
    values: tuple[Rows, ...] = ()

    def __post_init__(self) -> None:
        if not self.ranges:
            raise ValueError(f"{self.operation} request needs at least one range")
        if self.operation is TableOperation.GET and len(self.ranges) != 1:
            raise ValueError("get request takes exactly one range")
        if self.operation is TableOperation.APPEND and (len(self.ranges) != 1 or len(self.values) != 1):
            raise ValueError("append request takes exactly one range and one block of rows")
        if self.operation is TableOperation.BATCH_UPDATE and len(self.values) != len(self.ranges):
            raise ValueError(f"batch_update needs one block of rows per range ({len(self.ranges)} ranges, {len(self.values)} blocks)")

    @classmethod
    def get(cls, range_: str) -> TableRequest:
        return cls(TableOperation.GET, (range_,))

    @classmethod
    def batch_get(cls, ranges: Sequence[str]) -> TableRequest:
        return cls(TableOperation.BATCH_GET, tuple(ranges))

    @classmethod
    def append(cls, range_: str, rows: Sequence[Sequence[Any]]) -> TableRequest:
        return cls(TableOperation.APPEND, (range_,), (_freeze_rows(rows),))

    @classmethod
    def batch_update(cls, updates: Sequence[tuple[str, Sequence[Sequence[Any]]]]) -> TableRequest:
        return cls(
            TableOperation.BATCH_UPDATE,
            tuple(range_ for range_, _ in updates),
            tuple(_freeze_rows(rows) for _, rows in updates),
        )

    def describe(self) -> str:
        """Short label for logs, e.g. ``batch_update(records!C5:E5)``."""
        return f"{self.operation.value}({', '.join(self.ranges)})"


@dataclass(frozen=True, slots=True)
class TableResponse:
    """HTTP-style response from the remote table.

    Attributes:
        status_code: HTTP status code
        body: Parsed JSON body (empty dict when the body was not JSON)
        text: Raw body text, kept for diagnostics on failures
    """

    status_code: int
    body: Mapping[str, Any] = field(default_factory=dict)
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def error_detail(self) -> str:
        """Best-effort upstream error message for diagnostics."""
        error = self.body.get("error") if isinstance(self.body, Mapping) else None
        if isinstance(error, Mapping) and "message" in error:
            return str(error["message"])
        if error is not None:
            return str(error)
        return self.text[:500]
