# tests/property/test_range_properties.py
"""Property-based tests for A1 column arithmetic and write spans.

- column_letter and column_index are inverses
- ColumnSpan.covering is the minimal contiguous span over the written columns
"""

from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from tabula.contracts.records import COLUMNS, RecordColumn
from tabula.store.ranges import ColumnSpan, TableLayout, column_index, column_letter, parse_start_row

column_sets = st.sets(st.sampled_from(COLUMNS), min_size=1)


class TestColumnLetters:
    @given(index=st.integers(min_value=0, max_value=100_000))
    def test_letter_index_inverse(self, index: int) -> None:
        assert column_index(column_letter(index)) == index

    @given(index=st.integers(min_value=0, max_value=100_000))
    def test_letters_are_uppercase_alpha(self, index: int) -> None:
        letters = column_letter(index)
        assert letters.isalpha()
        assert letters.isupper()

    @given(index=st.integers(min_value=0, max_value=100_000))
    def test_lowercase_letters_accepted(self, index: int) -> None:
        assert column_index(column_letter(index).lower()) == index


class TestColumnSpanCovering:
    @given(columns=column_sets)
    def test_contains_every_written_column(self, columns: set[RecordColumn]) -> None:
        span = ColumnSpan.covering(columns)
        assert columns <= set(span.columns)

    @given(columns=column_sets)
    def test_ends_are_written_columns(self, columns: set[RecordColumn]) -> None:
        """Minimal: neither end of the span can be dropped."""
        span = ColumnSpan.covering(columns)
        assert span.columns[0] in columns
        assert span.columns[-1] in columns

    @given(columns=column_sets)
    def test_span_is_contiguous(self, columns: set[RecordColumn]) -> None:
        span = ColumnSpan.covering(columns)
        assert [column.index for column in span.columns] == list(range(span.start, span.end + 1))
        assert span.width == len(span.columns)

    @given(columns=column_sets, row=st.integers(min_value=2, max_value=1_000_000))
    def test_span_range_targets_the_row(self, columns: set[RecordColumn], row: int) -> None:
        span_range = TableLayout("records").span_range(row, ColumnSpan.covering(columns))
        assert parse_start_row(span_range) == row
        assert span_range.endswith(f"{row}")
