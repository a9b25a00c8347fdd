# src/tabula/store/ranges.py
"""A1 notation and the physical layout of the record table.

Row 1 holds the header; records start at row 2. Columns A..E follow
RecordColumn order.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from tabula.contracts.records import COLUMNS, RecordColumn

HEADER_ROW = 1
FIRST_DATA_ROW = 2

_PLAIN_SHEET_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
# Optional sheet prefix ("name!" or "'quoted name'!"), then the first cell's column letters and row
_A1_START = re.compile(r"^(?:(?:'(?:[^']|'')+'|[^!]+)!)?\$?([A-Z]+)\$?(\d+)")


def column_letter(index: int) -> str:
    """Zero-based column index to letters (0 -> A, 25 -> Z, 26 -> AA)."""
    if index < 0:
        raise ValueError(f"Column index must be >= 0, got {index}")
    letters = ""
    n = index + 1
    while n:
        n, remainder = divmod(n - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def column_index(letters: str) -> int:
    """Column letters to zero-based index (A -> 0, AA -> 26)."""
    if not letters or not letters.isalpha():
        raise ValueError(f"Invalid column letters: {letters!r}")
    index = 0
    for char in letters.upper():
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index - 1


def quote_sheet_name(name: str) -> str:
    if _PLAIN_SHEET_NAME.match(name):
        return name
    return "'" + name.replace("'", "''") + "'"


def parse_start_row(a1_range: str) -> int:
    """First row number of an A1 range such as ``records!A7:E7``.

    Raises:
        ValueError: If the range has no cell reference
    """
    match = _A1_START.match(a1_range)
    if match is None:
        raise ValueError(f"Cannot parse A1 range: {a1_range!r}")
    return int(match.group(2))


@dataclass(frozen=True, slots=True)
class ColumnSpan:
    """Contiguous run of record columns, inclusive on both ends."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if not 0 <= self.start <= self.end < len(COLUMNS):
            raise ValueError(f"Invalid column span {self.start}..{self.end}")

    @classmethod
    def covering(cls, columns: Iterable[RecordColumn]) -> ColumnSpan:
        """Smallest span containing every given column.

        Raises:
            ValueError: If columns is empty
        """
        indexes = [column.index for column in columns]
        if not indexes:
            raise ValueError("Cannot build a span over no columns")
        return cls(min(indexes), max(indexes))

    @property
    def columns(self) -> tuple[RecordColumn, ...]:
        return COLUMNS[self.start : self.end + 1]

    @property
    def width(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True, slots=True)
class TableLayout:
    """A1 ranges for one sheet holding the record table."""

    sheet_name: str = "records"

    @property
    def _prefix(self) -> str:
        return f"{quote_sheet_name(self.sheet_name)}!"

    @property
    def last_column(self) -> str:
        return column_letter(len(COLUMNS) - 1)

    @property
    def header_range(self) -> str:
        return f"{self._prefix}A{HEADER_ROW}:{self.last_column}{HEADER_ROW}"

    @property
    def data_range(self) -> str:
        """Every record row (open-ended)."""
        return f"{self._prefix}A{FIRST_DATA_ROW}:{self.last_column}"

    @property
    def append_range(self) -> str:
        return f"{self._prefix}A:{self.last_column}"

    def row_range(self, row: int) -> str:
        return self.span_range(row, ColumnSpan(0, len(COLUMNS) - 1))

    def span_range(self, row: int, span: ColumnSpan) -> str:
        if row < FIRST_DATA_ROW:
            raise ValueError(f"Row {row} is not a data row")
        return f"{self._prefix}{column_letter(span.start)}{row}:{column_letter(span.end)}{row}"
