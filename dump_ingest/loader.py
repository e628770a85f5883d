"""
Batched, transactional loading of a source file into its destination table.

The whole file is one unit of work: either every row lands in the table or
none does. Batches only bound memory, they are not commit points.

The row parser and the inserter are joined by a bounded channel
(asyncio.Queue of size 1). The producer parses one batch, hands it over and
then waits until the consumer has finished inserting it before reading any
further, so the parser can never outrun the database and memory stays
O(batch_size) regardless of file size.
"""

import asyncio
import itertools
from datetime import datetime, timezone
from typing import Any, Iterator
from uuid import uuid4

import structlog

from dump_ingest import source
from dump_ingest.errors import LoadError
from dump_ingest.inference import parse_timestamp
from dump_ingest.models import Dataset, InferredSchema, InferredType, LoadResult
from dump_ingest.store import StoreSession

log = structlog.get_logger()

# Marks the end of the source on the channel
_EOF = object()


def coerce_value(raw: str | None, kind: InferredType) -> Any:
    """
    Convert a raw csv value to the Python type for its column.

    Empty cells in non-string columns become NULL.

    Raises:
        ValueError: If the value does not fit the column type
    """
    if kind is InferredType.STRING:
        return raw
    if raw is None or raw.strip() == "":
        return None
    if kind in (InferredType.INT32, InferredType.INT64):
        return int(raw)
    if kind is InferredType.FLOAT64:
        return float(raw)
    if kind is InferredType.TIMESTAMP:
        value = parse_timestamp(raw)
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    raise ValueError(f"Unknown column type: {kind}")


def coerce_row(row: dict[str, str | None], schema: InferredSchema, row_number: int) -> tuple:
    """Convert one csv row to a tuple in schema column order."""
    values = []
    for column, kind in schema.items():
        try:
            values.append(coerce_value(row.get(column), kind))
        except ValueError as e:
            raise ValueError(f"Row {row_number}, column '{column}' ({kind.value}): {e}") from e
    return tuple(values)


class BatchLoader:
    """Streams a csv file into a table in bounded batches inside one transaction."""

    def __init__(self, batch_size: int = 50):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.batch_size = batch_size

    def _next_batch(
        self,
        rows: Iterator[dict[str, str | None]],
        schema: InferredSchema,
        rows_read: int,
    ) -> list[tuple]:
        """Read and convert up to batch_size rows (runs in a worker thread)."""
        batch = []
        for row in itertools.islice(rows, self.batch_size):
            batch.append(coerce_row(row, schema, rows_read + len(batch) + 1))
        return batch

    async def _produce(
        self,
        path: str,
        schema: InferredSchema,
        channel: asyncio.Queue,
    ) -> None:
        """
        Parse the source into batches and feed them to the channel.

        Errors are sent down the channel so the consumer can raise them.
        The queue is always empty when this happens: every put is followed
        by a join, and reading resumes only after the consumer is done.
        """
        try:
            with source.open_rows(path) as (header, rows):
                missing = [c for c in schema.columns if c not in header]
                if missing:
                    raise ValueError(f"Source header no longer has columns {missing}")

                rows_read = 0
                while True:
                    batch = await asyncio.to_thread(self._next_batch, rows, schema, rows_read)
                    if not batch:
                        break
                    rows_read += len(batch)
                    await channel.put(batch)
                    # Backpressure: wait for the insert before reading on
                    await channel.join()
        except Exception as e:
            channel.put_nowait(e)
        else:
            channel.put_nowait(_EOF)

    async def load(
        self,
        session: StoreSession,
        dataset: Dataset,
        schema: InferredSchema,
    ) -> LoadResult:
        """
        Load a dataset's source file into its (already provisioned) table.

        Args:
            session: The dataset's own store session
            dataset: Source path and destination table
            schema: Inferred schema the table was provisioned from

        Returns:
            LoadResult describing the committed load

        Raises:
            LoadError: If any batch fails; nothing from this load persists
        """
        load_id = str(uuid4())
        started_at = datetime.now(timezone.utc)
        columns = schema.columns
        rows_inserted = 0
        batches = 0

        log.info(
            "load_started",
            dataset=dataset.name,
            table=dataset.table,
            load_id=load_id,
            batch_size=self.batch_size,
        )

        try:
            async with session.transaction():
                channel: asyncio.Queue = asyncio.Queue(maxsize=1)
                producer = asyncio.create_task(
                    self._produce(dataset.source_path, schema, channel)
                )
                try:
                    while True:
                        item = await channel.get()
                        if item is _EOF:
                            break
                        if isinstance(item, Exception):
                            raise item
                        try:
                            await session.insert_batch(dataset.table, columns, item)
                        finally:
                            channel.task_done()
                        rows_inserted += len(item)
                        batches += 1
                        log.debug(
                            "batch_inserted",
                            dataset=dataset.name,
                            batch=batches,
                            size=len(item),
                            rows=rows_inserted,
                        )
                    await producer
                finally:
                    if not producer.done():
                        producer.cancel()
                        await asyncio.gather(producer, return_exceptions=True)

                result = LoadResult(
                    load_id=load_id,
                    dataset=dataset.name,
                    table=dataset.table,
                    row_count=rows_inserted,
                    batch_count=batches,
                    started_at=started_at,
                    completed_at=datetime.now(timezone.utc),
                )
                await session.record_load(result)

        except LoadError:
            raise
        except Exception as e:
            log.error(
                "load_rolled_back",
                dataset=dataset.name,
                table=dataset.table,
                load_id=load_id,
                rows_before_failure=rows_inserted,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise LoadError(
                f"Loading {dataset.source_path} into '{dataset.table}' failed: {e}"
            ) from e

        log.info(
            "load_committed",
            dataset=dataset.name,
            table=dataset.table,
            load_id=load_id,
            rows=rows_inserted,
            batches=batches,
            duration_seconds=(result.completed_at - started_at).total_seconds(),
        )
        return result
