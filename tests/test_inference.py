"""Tests for column type inference."""

import pytest

from dump_ingest.errors import EmptySourceError
from dump_ingest.inference import (
    classify_value,
    infer_column_type,
    infer_schema,
    parse_timestamp,
)
from dump_ingest.models import InferredType


class TestClassifyValue:
    """Ordered per-value classification rules."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2147483647", InferredType.INT32),
            ("2147483648", InferredType.INT64),
            ("0", InferredType.INT32),
            ("3.14", InferredType.FLOAT64),
            ("2024-01-01", InferredType.TIMESTAMP),
            ("2024-01-01T10:30:00Z", InferredType.TIMESTAMP),
            ("03/15/2021", InferredType.TIMESTAMP),
            ("abc123", InferredType.STRING),
            ("-5", InferredType.STRING),
            ("3.", InferredType.STRING),
            ("", InferredType.STRING),
        ],
    )
    def test_rules(self, value, expected):
        assert classify_value(value) is expected

    def test_digits_win_over_dates(self):
        """A compact date like 20240101 is all digits, so it is an integer."""
        assert classify_value("20240101") is InferredType.INT32

    def test_parse_timestamp_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_timestamp("not a date")


class TestInferColumnType:
    """First distinct classification in row order, never a majority vote."""

    def test_uniform_column(self):
        assert infer_column_type(["1", "2", "3"]) is InferredType.INT32

    def test_first_value_decides(self):
        # One text id followed by numeric ids still yields string
        assert infer_column_type(["A-17", "2", "3", "4"]) is InferredType.STRING

    def test_first_value_decides_even_against_majority(self):
        assert infer_column_type(["1", "x", "y", "z"]) is InferredType.INT32

    def test_empty_sample_rejected(self):
        with pytest.raises(ValueError):
            infer_column_type([])


class TestInferSchema:
    def test_customers_file(self, customers_csv):
        schema = infer_schema(customers_csv)

        assert schema == {
            "id": InferredType.INT32,
            "name": InferredType.STRING,
            "signup_date": InferredType.TIMESTAMP,
        }
        assert schema.columns == ["id", "name", "signup_date"]

    def test_is_deterministic(self, customers_csv):
        assert infer_schema(customers_csv) == infer_schema(customers_csv)

    def test_only_sample_rows_are_considered(self, write_csv):
        # Row 3 would classify as string, but the sample stops at 2 rows
        path = write_csv("ids.csv", ["id"], [["1"], ["2"], ["oops"]])

        schema = infer_schema(path, sample_size=2)

        assert schema["id"] is InferredType.INT32

    def test_big_integers(self, write_csv):
        path = write_csv("big.csv", ["n"], [["9000000000"], ["1"]])
        assert infer_schema(path)["n"] is InferredType.INT64

    def test_empty_cells_are_strings(self, write_csv):
        path = write_csv("gaps.csv", ["a", "b"], [["", "1"], ["2", "2"]])

        schema = infer_schema(path)

        assert schema["a"] is InferredType.STRING
        assert schema["b"] is InferredType.INT32

    def test_header_only_file(self, write_csv):
        path = write_csv("empty.csv", ["id", "name"], [])

        with pytest.raises(EmptySourceError) as exc_info:
            infer_schema(path)

        assert exc_info.value.path == path
        assert path in str(exc_info.value)

    def test_zero_byte_file(self, tmp_path):
        path = tmp_path / "nothing.csv"
        path.write_text("")

        with pytest.raises(EmptySourceError):
            infer_schema(str(path))

    def test_schema_is_read_only(self, customers_csv):
        schema = infer_schema(customers_csv)

        with pytest.raises(TypeError):
            schema["id"] = InferredType.STRING
