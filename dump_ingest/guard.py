"""
Idempotency guard.

Decides whether a dataset can be skipped because an earlier run already
loaded it. Row count equality between the destination table and the source
file is the only integrity signal: it catches count drift, not content
drift.

Outcomes:
- table absent: proceed with provisioning and load
- table present, counts equal: skip
- table present, counts differ: InconsistentStateError. The pipeline never
  appends to or overwrites a table it did not fully load.
"""

import asyncio
from dataclasses import dataclass

import structlog

from dump_ingest import source
from dump_ingest.errors import InconsistentStateError
from dump_ingest.models import Dataset
from dump_ingest.store import StoreSession

log = structlog.get_logger()


@dataclass
class GuardDecision:
    """Result of an idempotency check."""
    skip: bool                      # True when the dataset is already loaded
    table_exists: bool              # Whether the destination table was found
    table_rows: int | None = None   # Destination row count, if the table exists
    source_rows: int | None = None  # Source row count, if it was needed


async def check(session: StoreSession, dataset: Dataset) -> GuardDecision:
    """
    Check whether ingestion for a dataset may be skipped.

    Raises:
        InconsistentStateError: If the table exists with a different row count
    """
    if not await session.table_exists(dataset.table):
        log.info("guard_table_absent", dataset=dataset.name, table=dataset.table)
        return GuardDecision(skip=False, table_exists=False)

    table_rows, source_rows = await asyncio.gather(
        session.count_rows(dataset.table),
        asyncio.to_thread(source.count_rows, dataset.source_path),
    )

    if table_rows != source_rows:
        raise InconsistentStateError(dataset.table, table_rows, source_rows)

    log.info(
        "guard_already_loaded",
        dataset=dataset.name,
        table=dataset.table,
        rows=table_rows,
    )
    return GuardDecision(
        skip=True,
        table_exists=True,
        table_rows=table_rows,
        source_rows=source_rows,
    )
