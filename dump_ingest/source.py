"""Streaming access to extracted csv source files.

The loader and the idempotency guard both read sources through this module,
so a row counted by the guard is exactly a row the loader would insert.
"""

import csv
from collections.abc import Iterator
from contextlib import contextmanager

ENCODING = "utf-8-sig"


@contextmanager
def open_rows(path: str) -> Iterator[tuple[list[str], Iterator[dict[str, str | None]]]]:
    """
    Open a csv file for streaming.

    Yields:
        Tuple of (header, row iterator). Rows are dicts keyed by header
        name; short lines leave the missing columns as None. Blank lines
        are skipped.
    """
    with open(path, newline="", encoding=ENCODING) as f:
        reader = csv.DictReader(f)
        header = list(reader.fieldnames or [])
        yield header, iter(reader)


def count_rows(path: str) -> int:
    """Count data rows with a full scan (header excluded)."""
    with open_rows(path) as (_, rows):
        return sum(1 for _ in rows)
