"""Destination table provisioning from an inferred schema."""

import structlog

from dump_ingest.models import ROW_ID_COLUMN, InferredSchema
from dump_ingest.store import StoreSession

log = structlog.get_logger()


async def provision_table(session: StoreSession, table: str, schema: InferredSchema) -> None:
    """
    Create the destination table for a dataset.

    The table gets the synthetic key column plus one column per schema
    entry, typed through the fixed storage mapping. No secondary indexes,
    foreign keys or nullability constraints are added. The DDL commits on
    its own and is not part of the load transaction.

    Callers must consult the idempotency guard first.

    Raises:
        TableAlreadyExistsError: If the table already exists
    """
    columns = schema.storage_columns()
    if ROW_ID_COLUMN in columns:
        raise ValueError(f"Source column collides with synthetic key: {ROW_ID_COLUMN}")

    await session.create_table(table, columns)
    log.info(
        "table_provisioned",
        table=table,
        key=ROW_ID_COLUMN,
        columns=columns,
    )


async def discard_table(session: StoreSession, table: str) -> None:
    """
    Drop a table provisioned by a load that then failed.

    Leaves the store as it was before provisioning, so the idempotency
    guard sees an absent table on the next run instead of an empty one.
    """
    await session.drop_table(table)
    log.info("table_discarded", table=table)
