# src/tabula/store/__init__.py
"""Record table access: layout, cell codec, HTTP transport and RecordStore."""

from tabula.store.codec import decode_row, encode_cell, encode_record
from tabula.store.http import HttpTableTransport
from tabula.store.ranges import ColumnSpan, TableLayout, column_index, column_letter, parse_start_row
from tabula.store.records import RECORDS_NAMESPACE, RecordStore

__all__ = [
    "RECORDS_NAMESPACE",
    "ColumnSpan",
    "HttpTableTransport",
    "RecordStore",
    "TableLayout",
    "column_index",
    "column_letter",
    "decode_row",
    "encode_cell",
    "encode_record",
    "parse_start_row",
]
