"""
Destination store for the ingestion pipeline.

Provides the store interface the pipeline consumes and its DuckDB
implementation. A single DuckDBStore owns the database connection; each
dataset task opens its own DuckDBSession (a separate DuckDB connection to the
same database) so that transactions never cross datasets.

DuckDB calls block, so every session runs them on its own single-worker
thread pool. Calls on one session are therefore serialised: a rollback issued
while an insert is still executing waits for that insert to return rather
than racing it on the same connection.

The store also keeps a load_metadata table recording every committed load.
"""

import asyncio
import functools
from concurrent.futures import ThreadPoolExecutor
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Protocol, Sequence

import duckdb
import structlog

from dump_ingest.errors import TableAlreadyExistsError
from dump_ingest.models import ROW_ID_COLUMN, LoadResult

log = structlog.get_logger()

METADATA_TABLE = "load_metadata"


def quote_identifier(name: str) -> str:
    """Quote a table or column name for use in SQL."""
    return '"' + name.replace('"', '""') + '"'


def sequence_name(table: str) -> str:
    """Name of the sequence backing a table's synthetic key."""
    return f"{table}_{ROW_ID_COLUMN}_seq"


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class StoreSession(Protocol):
    """
    Protocol defining one task's view of the destination store.

    Any store backend must implement these methods:
    - table_exists / count_rows: inspection used by the idempotency guard
    - create_table: committed DDL for a new table with a synthetic key
    - drop_table: committed DDL removing a table this run provisioned
    - transaction: unit of work wrapping an entire load
    - insert_batch: insert a group of rows inside the current transaction
    - record_load: write a LoadResult to the metadata table
    """

    async def table_exists(self, table: str) -> bool:
        ...

    async def count_rows(self, table: str) -> int:
        ...

    async def create_table(self, table: str, columns: dict[str, str]) -> None:
        ...

    async def drop_table(self, table: str) -> None:
        ...

    def transaction(self) -> AbstractAsyncContextManager[None]:
        ...

    async def insert_batch(
        self, table: str, columns: Sequence[str], rows: Sequence[tuple[Any, ...]]
    ) -> None:
        ...

    async def record_load(self, result: LoadResult) -> None:
        ...

    async def close(self) -> None:
        ...


class DuckDBStore:
    """
    DuckDB destination store.

    Owns the root connection. Sessions are cursors on that connection,
    which DuckDB treats as independent connections with their own
    transactions.
    """

    def __init__(self, db_path: str):
        """
        Open (or create) the database.

        Args:
            db_path: Path to the DuckDB database file, or ":memory:"
        """
        self.db_path = db_path
        self.conn = duckdb.connect(db_path)
        self._ensure_metadata_table()

    def _ensure_metadata_table(self) -> None:
        """Create the load_metadata table if it doesn't exist."""
        self.conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {METADATA_TABLE} (
                load_id VARCHAR PRIMARY KEY,
                dataset VARCHAR NOT NULL,
                table_name VARCHAR NOT NULL,
                row_count BIGINT NOT NULL,
                batch_count INTEGER NOT NULL,
                started_at TIMESTAMP NOT NULL,
                completed_at TIMESTAMP NOT NULL
            )
        """)

    def session(self, name: str) -> "DuckDBSession":
        """Open a private session for one dataset task."""
        return DuckDBSession(self.conn.cursor(), name)

    def close(self) -> None:
        self.conn.close()


class DuckDBSession:
    """One dataset task's connection, driven from asyncio."""

    def __init__(self, conn: duckdb.DuckDBPyConnection, name: str):
        self.conn = conn
        self.name = name
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"store-{name}"
        )

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    # Blocking implementations, always executed on the session thread

    def _table_exists(self, table: str) -> bool:
        row = self.conn.execute(
            """
            SELECT count(*) FROM information_schema.tables
            WHERE table_schema = current_schema() AND lower(table_name) = lower(?)
            """,
            [table],
        ).fetchone()
        return row[0] > 0

    def _count_rows(self, table: str) -> int:
        row = self.conn.execute(f"SELECT count(*) FROM {quote_identifier(table)}").fetchone()
        return int(row[0])

    def _rollback(self) -> None:
        try:
            self.conn.rollback()
        except duckdb.TransactionException as e:
            # A failed COMMIT already aborted the transaction
            log.debug("rollback_without_transaction", session=self.name, error=str(e))

    def _create_table(self, table: str, columns: dict[str, str]) -> None:
        seq = sequence_name(table)
        column_defs = [
            f"{quote_identifier(ROW_ID_COLUMN)} BIGINT PRIMARY KEY DEFAULT nextval('{seq}')"
        ]
        column_defs += [
            f"{quote_identifier(name)} {storage_type}" for name, storage_type in columns.items()
        ]

        self.conn.begin()
        try:
            if self._table_exists(table):
                raise TableAlreadyExistsError(table)
            self.conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {quote_identifier(seq)}")
            self.conn.execute(
                f"CREATE TABLE {quote_identifier(table)} ({', '.join(column_defs)})"
            )
            self.conn.commit()
        except TableAlreadyExistsError:
            self._rollback()
            raise
        except duckdb.Error as e:
            self._rollback()
            # A concurrent creator won the race
            if self._table_exists(table):
                raise TableAlreadyExistsError(table) from e
            raise

    def _drop_table(self, table: str) -> None:
        self.conn.begin()
        try:
            self.conn.execute(f"DROP TABLE IF EXISTS {quote_identifier(table)}")
            self.conn.execute(f"DROP SEQUENCE IF EXISTS {quote_identifier(sequence_name(table))}")
            self.conn.commit()
        except duckdb.Error:
            self._rollback()
            raise

    def _insert_batch(
        self, table: str, columns: Sequence[str], rows: Sequence[tuple[Any, ...]]
    ) -> None:
        column_list = ", ".join(quote_identifier(c) for c in columns)
        placeholders = ", ".join("?" for _ in columns)
        self.conn.executemany(
            f"INSERT INTO {quote_identifier(table)} ({column_list}) VALUES ({placeholders})",
            [list(row) for row in rows],
        )

    def _record_load(self, result: LoadResult) -> None:
        self.conn.execute(
            f"""
            INSERT INTO {METADATA_TABLE}
                (load_id, dataset, table_name, row_count, batch_count, started_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                result.load_id,
                result.dataset,
                result.table,
                result.row_count,
                result.batch_count,
                _naive_utc(result.started_at),
                _naive_utc(result.completed_at),
            ],
        )

    # Async interface

    async def table_exists(self, table: str) -> bool:
        return await self._run(self._table_exists, table)

    async def count_rows(self, table: str) -> int:
        return await self._run(self._count_rows, table)

    async def create_table(self, table: str, columns: dict[str, str]) -> None:
        """
        Create a table with a synthetic key plus the given columns.

        Runs in its own committed transaction, separate from any load.

        Raises:
            TableAlreadyExistsError: If the table is already present
        """
        await self._run(self._create_table, table, columns)

    async def drop_table(self, table: str) -> None:
        """Drop a table and its key sequence in their own committed transaction."""
        await self._run(self._drop_table, table)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Unit of work: commit on clean exit, roll back on any exception or cancellation."""
        await self._run(self.conn.begin)
        try:
            yield
        except BaseException:
            await self._run(self._rollback)
            log.info("transaction_rolled_back", session=self.name)
            raise
        await self._run(self.conn.commit)

    async def insert_batch(
        self, table: str, columns: Sequence[str], rows: Sequence[tuple[Any, ...]]
    ) -> None:
        await self._run(self._insert_batch, table, columns, rows)

    async def record_load(self, result: LoadResult) -> None:
        await self._run(self._record_load, result)

    async def close(self) -> None:
        await self._run(self.conn.close)
        self._executor.shutdown(wait=False)
