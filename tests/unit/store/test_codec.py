# tests/unit/store/test_codec.py
"""Tests for record/cell conversion."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from tabula.contracts.records import RecordColumn
from tabula.store.codec import (
    blank_row,
    decode_bool,
    decode_row,
    decode_timestamp,
    encode_cell,
    encode_record,
    encode_timestamp,
    is_blank,
)
from tabula.testing import make_record


class TestTimestamps:
    def test_encode_is_utc_milliseconds(self) -> None:
        value = datetime(2024, 1, 2, 5, 4, 5, 678901, tzinfo=timezone(timedelta(hours=2)))
        assert encode_timestamp(value) == "2024-01-02T03:04:05.678Z"

    def test_decode_z_suffix(self) -> None:
        assert decode_timestamp("2024-01-02T03:04:05.678Z") == datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=UTC)

    def test_naive_is_utc(self) -> None:
        assert decode_timestamp("2024-01-02T03:04:05").tzinfo is UTC

    @pytest.mark.parametrize("raw", [None, "", "yesterday"])
    def test_missing_or_invalid_is_none(self, raw: object) -> None:
        assert decode_timestamp(raw) is None

    def test_millisecond_value_round_trips(self) -> None:
        value = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=UTC)
        assert decode_timestamp(encode_timestamp(value)) == value


class TestBooleans:
    @pytest.mark.parametrize(("raw", "expected"), [(True, True), ("TRUE", True), ("true", True), ("1", True), (False, False), ("FALSE", False), ("", False)])
    def test_decode(self, raw: object, expected: bool) -> None:
        assert decode_bool(raw) is expected


class TestEncode:
    def test_full_row(self) -> None:
        record = make_record("a@example.com", record_id="r1", payload={"b": 2, "a": 1})
        assert encode_record(record) == ["r1", "a@example.com", True, '{"a":1,"b":2}', "2024-01-02T03:04:05.678Z"]

    def test_unset_timestamp_is_blank(self) -> None:
        assert encode_cell(RecordColumn.LAST_MODIFIED, None) == ""

    def test_blank_row(self) -> None:
        assert blank_row() == ["", "", "", "", ""]
        assert is_blank(blank_row())
        assert not is_blank(["", "x"])


class TestDecodeRow:
    def test_decodes_formatted_cells(self) -> None:
        stored = decode_row(["r1", "a@example.com", "TRUE", '{"schema_version":1,"n":3}', "2024-01-02T03:04:05.678Z"], 4)
        assert stored is not None
        assert stored.row == 4
        assert stored.record == make_record("a@example.com", record_id="r1", payload={"schema_version": 1, "n": 3})

    def test_trailing_cells_may_be_missing(self) -> None:
        stored = decode_row(["r1", "a@example.com"], 2)
        assert stored is not None
        assert stored.record.is_active is False
        assert stored.record.payload == {"schema_version": 1}
        assert stored.record.last_modified is None

    @pytest.mark.parametrize("cells", [[], ["", "", "", "", ""], ["  ", "owner"]])
    def test_rows_without_id_are_skipped(self, cells: list[str]) -> None:
        assert decode_row(cells, 3) is None

    def test_round_trip(self) -> None:
        record = make_record("b@example.com", record_id="r2", is_active=False, payload={"schema_version": 1, "tags": ["x"]})
        stored = decode_row(encode_record(record), 9)
        assert stored is not None
        assert stored.record == record
