"""
Column type inference for source files.

Reads the header and the first N data rows of a csv file and derives one
type per column. Each sampled value is classified on its own by ordered
rules:

1. all digits      -> int32, or int64 when above the 32-bit signed range
2. digits.digits   -> float64
3. a date/time     -> timestamp
4. anything else   -> string

A column's type is the first distinct classification met while scanning
the sample in row order. There is no majority vote: a column whose first
sampled value is atypical (an id stored as "A-17" in row 1 and as plain
numbers afterwards) is typed from that first value alone. Later values that
do not fit the inferred type make the load fail rather than being coerced.
"""

import re
from datetime import datetime

import polars as pl
import structlog

from dump_ingest.errors import EmptySourceError
from dump_ingest.models import InferredSchema, InferredType

log = structlog.get_logger()

INT32_MAX = 2**31 - 1

_DIGITS = re.compile(r"[0-9]+")
_DECIMAL = re.compile(r"[0-9]+\.[0-9]+")

# Tried in order after ISO-8601
TIMESTAMP_FORMATS = (
    "%Y/%m/%d",
    "%Y/%m/%d %H:%M:%S",
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M:%S",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%a, %d %b %Y %H:%M:%S",
)


def parse_timestamp(value: str) -> datetime:
    """
    Parse a calendar date or date/time.

    ISO-8601 is tried first, then the fixed TIMESTAMP_FORMATS list.

    Raises:
        ValueError: If no format matches
    """
    text = value.strip()
    if not text:
        raise ValueError("Cannot parse timestamp from empty value")
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    for fmt in TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise ValueError(f"Cannot parse timestamp: {value}")


def classify_value(value: str) -> InferredType:
    """Classify a single raw value."""
    if _DIGITS.fullmatch(value):
        if int(value) <= INT32_MAX:
            return InferredType.INT32
        return InferredType.INT64
    if _DECIMAL.fullmatch(value):
        return InferredType.FLOAT64
    try:
        parse_timestamp(value)
    except ValueError:
        return InferredType.STRING
    return InferredType.TIMESTAMP


def infer_column_type(values: list[str]) -> InferredType:
    """
    Infer a column's type from its sampled values.

    Returns the first distinct classification in row order.
    """
    if not values:
        raise ValueError("Cannot infer a type from an empty sample")
    distinct = list(dict.fromkeys(classify_value(v) for v in values))
    return distinct[0]


def read_sample(path: str, sample_size: int) -> dict[str, list[str]]:
    """
    Read the header and up to sample_size data rows.

    Every column is read as text; empty cells come back as "".

    Returns:
        Column name to its sampled values, in header order

    Raises:
        EmptySourceError: If the file has no data rows
    """
    try:
        # infer_schema_length=0 keeps every column as a string
        frame = pl.read_csv(path, n_rows=sample_size, infer_schema_length=0)
    except pl.exceptions.NoDataError as e:
        raise EmptySourceError(path) from e

    if frame.height == 0:
        raise EmptySourceError(path)

    return {
        name: ["" if v is None else v for v in frame.get_column(name).to_list()]
        for name in frame.columns
    }


def infer_schema(path: str, sample_size: int = 10) -> InferredSchema:
    """
    Infer an InferredSchema for a csv file.

    Args:
        path: Path to the csv file (header row first)
        sample_size: Number of data rows to sample

    Returns:
        Column name to inferred type, in header order

    Raises:
        EmptySourceError: If the file has no data rows
    """
    sample = read_sample(path, sample_size)

    columns = {}
    for name, values in sample.items():
        columns[name] = infer_column_type(values)
        kinds = {classify_value(v) for v in values}
        if len(kinds) > 1:
            # Defined behaviour, but worth seeing when a load later fails
            log.warning(
                "mixed_column_sample",
                path=path,
                column=name,
                inferred=columns[name].value,
                observed=sorted(k.value for k in kinds),
            )

    log.info(
        "schema_inferred",
        path=path,
        rows_sampled=len(next(iter(sample.values()))),
        columns={name: kind.value for name, kind in columns.items()},
    )
    return InferredSchema(columns)
