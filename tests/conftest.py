"""Shared pytest fixtures."""

import tarfile
from pathlib import Path

import pytest

from dump_ingest.models import Dataset
from dump_ingest.store import DuckDBStore


@pytest.fixture
def write_csv(tmp_path):
    """Write a csv file from a header and rows, returning its path."""

    def _write(name: str, header: list[str], rows: list[list[str]]) -> str:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [",".join(header)] + [",".join(row) for row in rows]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def customers_csv(write_csv):
    """25 customers with numeric ids, string names and ISO dates."""
    rows = [
        [str(i), f"Customer {i}", f"2024-01-{i:02d}"]
        for i in range(1, 26)
    ]
    return write_csv("customers.csv", ["id", "name", "signup_date"], rows)


@pytest.fixture
def customers_dataset(customers_csv):
    return Dataset(name="customers", source_path=customers_csv, table="customers")


@pytest.fixture
def store(tmp_path):
    """A DuckDB store backed by a file in tmp_path."""
    db = DuckDBStore(str(tmp_path / "test.duckdb"))
    yield db
    db.close()


@pytest.fixture
async def session(store):
    """A private store session, closed after the test."""
    s = store.session("test")
    yield s
    await s.close()


def count_table(store: DuckDBStore, table: str) -> int:
    return store.conn.execute(f'SELECT count(*) FROM "{table}"').fetchone()[0]


def make_dump(tmp_path: Path, files: dict[str, str], name: str = "dump.tar.gz") -> Path:
    """Build a .tar.gz holding dump/<file> entries with the given contents."""
    src = tmp_path / "dump_src"
    (src / "dump").mkdir(parents=True, exist_ok=True)
    for filename, content in files.items():
        (src / "dump" / filename).write_text(content, encoding="utf-8")

    archive = tmp_path / name
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(src / "dump", arcname="dump")
    return archive
