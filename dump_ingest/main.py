"""
Main orchestration module for the ingestion pipeline.

This module ties everything together:
1. Ensures the staging, extraction and database directories exist
2. Downloads the dump archive
3. Extracts it
4. Runs every dataset concurrently: infer -> guard -> (skip | provision -> load)
5. Re-raises the first dataset failure, annotated with dataset and stage

Key principles:
1. Fetch and extract are prerequisites: if either fails, no table is touched
2. Each dataset uses its own store session, so a rollback in one dataset
   never affects another
3. There are no retries. Rerunning is the retry mechanism, and the
   idempotency guard makes a rerun safe for datasets that already completed
"""

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path

import structlog

from dump_ingest import guard
from dump_ingest.config import IngestConfig
from dump_ingest.errors import (
    ConfigError,
    ExtractionError,
    FetchError,
    IngestionError,
    StageError,
)
from dump_ingest.fetch import Extractor, Fetcher, HttpFetcher, TarExtractor
from dump_ingest.inference import infer_schema
from dump_ingest.loader import BatchLoader
from dump_ingest.models import Dataset, IngestionRun, RunState, RunSummary
from dump_ingest.schema import discard_table, provision_table
from dump_ingest.store import DuckDBStore, StoreSession

log = structlog.get_logger()


def configure_logging(json_output: bool = True, level: str = "INFO") -> None:
    """Install the structlog processor chain used by the CLI."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )


def ensure_directories(config: IngestConfig) -> None:
    """Create the directories the run writes into."""
    Path(config.staging_path).parent.mkdir(parents=True, exist_ok=True)
    Path(config.extract_dir).mkdir(parents=True, exist_ok=True)
    if config.db_path != ":memory:":
        Path(config.db_path).parent.mkdir(parents=True, exist_ok=True)


async def ingest_dataset(
    session: StoreSession,
    dataset: Dataset,
    config: IngestConfig,
    loader: BatchLoader,
) -> IngestionRun:
    """
    Run one dataset through inference, guard check, provisioning and load.

    Never raises for pipeline failures: the returned IngestionRun ends in
    FAILED with the annotated error attached. A failed load also drops the
    table this run provisioned. Cancellation propagates after the same cleanup.
    """
    run = IngestionRun(dataset=dataset)
    stage = "infer"

    try:
        run.schema = await asyncio.to_thread(
            infer_schema, dataset.source_path, config.sample_size
        )
        run.advance(RunState.INFERRED)

        stage = "guard"
        decision = await guard.check(session, dataset)
        if decision.skip:
            run.advance(RunState.SKIPPED)
            log.info(
                "dataset_skipped",
                dataset=dataset.name,
                table=dataset.table,
                rows=decision.table_rows,
            )
            return run

        stage = "provision"
        run.advance(RunState.PROVISIONING)
        await provision_table(session, dataset.table, run.schema)

        stage = "load"
        run.advance(RunState.LOADING)
        try:
            run.load = await loader.load(session, dataset, run.schema)
        except BaseException:
            # This run created the table, so a failed or cancelled load removes it
            await _discard_provisioned(session, dataset)
            raise
        run.advance(RunState.COMMITTED)

    except IngestionError as e:
        run.fail(e.annotate(dataset.name, stage))
    except Exception as e:
        error = StageError(
            f"{type(e).__name__}: {e}", dataset=dataset.name, stage=stage
        )
        error.__cause__ = e
        run.fail(error)

    return run


async def _discard_provisioned(session: StoreSession, dataset: Dataset) -> None:
    try:
        await discard_table(session, dataset.table)
    except Exception as e:
        log.error(
            "table_discard_failed",
            dataset=dataset.name,
            table=dataset.table,
            error=str(e),
        )


async def _run_dataset(
    store: DuckDBStore,
    dataset: Dataset,
    config: IngestConfig,
    loader: BatchLoader,
) -> IngestionRun:
    session = store.session(dataset.name)
    try:
        return await ingest_dataset(session, dataset, config, loader)
    finally:
        await session.close()


async def run_ingestion(
    config: IngestConfig,
    *,
    fetcher: Fetcher | None = None,
    extractor: Extractor | None = None,
    store: DuckDBStore | None = None,
) -> RunSummary:
    """
    Run the full pipeline for every configured dataset.

    Args:
        config: Run configuration
        fetcher: Downloads the archive (default: HttpFetcher)
        extractor: Unpacks the archive (default: TarExtractor)
        store: Destination store; opened from config.db_path and closed
            afterwards when not given

    Returns:
        RunSummary with one terminal IngestionRun per dataset

    Raises:
        FetchError / ExtractionError: Before any dataset work starts
        IngestionError: The first dataset failure, with dataset and stage set
    """
    started = time.monotonic()
    fetcher = fetcher or HttpFetcher(timeout=config.fetch_timeout)
    extractor = extractor or TarExtractor()

    log.info("step_started", step="prepare", db_path=config.db_path)
    ensure_directories(config)

    log.info("step_started", step="fetch", url=config.archive_url)
    try:
        await fetcher.fetch(config.archive_url, config.staging_path)
    except FetchError:
        raise
    except Exception as e:
        raise FetchError(f"Failed to download {config.archive_url}: {e}", stage="fetch") from e

    log.info("step_started", step="extract", archive=config.staging_path)
    try:
        await extractor.extract(config.staging_path, config.extract_dir)
    except ExtractionError:
        raise
    except Exception as e:
        raise ExtractionError(f"Failed to extract {config.staging_path}: {e}", stage="extract") from e

    log.info("step_started", step="datasets", datasets=[d.name for d in config.datasets])
    owns_store = store is None
    if store is None:
        store = DuckDBStore(config.db_path)
    loader = BatchLoader(config.batch_size)

    try:
        runs = await asyncio.gather(
            *(_run_dataset(store, d, config, loader) for d in config.datasets)
        )
    finally:
        if owns_store:
            store.close()

    failures = [r for r in runs if r.state is RunState.FAILED]
    for run in failures:
        log.error(
            "dataset_failed",
            dataset=run.dataset.name,
            stage=run.error.stage,
            error=run.error.message,
            error_type=type(run.error).__name__,
        )
    if failures:
        raise failures[0].error

    summary = RunSummary(runs=list(runs), duration_seconds=time.monotonic() - started)
    log.info(
        "pipeline_complete",
        committed=summary.committed,
        skipped=summary.skipped,
        total_rows=summary.total_rows,
        duration_seconds=summary.duration_seconds,
    )
    return summary


def main(argv: list[str] | None = None) -> int:
    """CLI entry point. Returns the process exit code."""
    parser = argparse.ArgumentParser(
        description="Download a csv dump and load it into DuckDB."
    )
    parser.add_argument(
        "--datasets",
        help="YAML dataset mapping (default: customers and organizations)",
    )
    parser.add_argument("--batch-size", type=int, help="Rows per insert")
    parser.add_argument("--sample-size", type=int, help="Rows sampled for type inference")
    parser.add_argument(
        "--console",
        action="store_true",
        help="Human-readable logs instead of JSON",
    )
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    configure_logging(json_output=not args.console, level=args.log_level)

    try:
        config = IngestConfig.from_env(args.datasets)
        overrides = {
            name: value
            for name, value in (
                ("batch_size", args.batch_size),
                ("sample_size", args.sample_size),
            )
            if value is not None
        }
        if overrides:
            config = config.with_overrides(**overrides)
    except ConfigError as e:
        log.error("config_invalid", error=str(e))
        return 2

    try:
        asyncio.run(run_ingestion(config))
    except IngestionError as e:
        log.error(
            "pipeline_failed",
            error=e.message,
            error_type=type(e).__name__,
            dataset=e.dataset,
            stage=e.stage,
        )
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
