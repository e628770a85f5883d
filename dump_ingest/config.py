"""
Configuration management for the ingestion pipeline.

This module handles:
- Loading environment variables into a typed IngestConfig dataclass
- Loading dataset mappings (source file -> destination table) from YAML
- Validating sample and batch sizes before a run starts

The config is an explicit value handed to run_ingestion(); nothing in the
pipeline reads environment variables on its own.
"""

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path

import yaml

from dump_ingest.errors import ConfigError
from dump_ingest.models import Dataset
from dump_ingest.store import METADATA_TABLE

DEFAULT_SAMPLE_SIZE = 10
DEFAULT_BATCH_SIZE = 50
MAX_BATCH_SIZE = 10_000

# Table names also name their key sequence, so keep them plain identifiers
TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Layout of the published dump once extracted
DEFAULT_DATASETS = {
    "customers": {"source": "dump/customers.csv", "table": "customers"},
    "organizations": {"source": "dump/organizations.csv", "table": "organizations"},
}


@dataclass(frozen=True)
class IngestConfig:
    """
    Everything a single ingestion run needs.

    Dataset source paths are relative to extract_dir unless absolute.
    """
    archive_url: str                    # Remote .tar.gz dump
    staging_path: str                   # Where the downloaded archive is written
    extract_dir: str                    # Where the archive is unpacked
    db_path: str                        # DuckDB database file
    datasets: tuple[Dataset, ...] = field(default_factory=tuple)

    sample_size: int = DEFAULT_SAMPLE_SIZE  # Rows sampled for type inference
    batch_size: int = DEFAULT_BATCH_SIZE    # Rows per insert
    fetch_timeout: float = 60.0             # Seconds per network operation

    def __post_init__(self) -> None:
        if not self.archive_url:
            raise ConfigError("archive_url is required")
        if self.sample_size < 1:
            raise ConfigError(f"sample_size must be positive, got {self.sample_size}")
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise ConfigError(
                f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {self.batch_size}"
            )
        names = [d.name for d in self.datasets]
        tables = [d.table for d in self.datasets]
        for table in tables:
            if not TABLE_NAME_PATTERN.match(table):
                raise ConfigError(f"Invalid table name: {table!r}")
            if table.lower() == METADATA_TABLE:
                raise ConfigError(f"Table name is reserved: {table!r}")
        if len(set(names)) != len(names):
            raise ConfigError(f"Duplicate dataset names: {names}")
        # DuckDB identifiers are case-insensitive
        if len({t.lower() for t in tables}) != len(tables):
            raise ConfigError(f"Datasets must load into distinct tables: {tables}")

    @classmethod
    def from_env(cls, dataset_config_path: str | None = None) -> "IngestConfig":
        """
        Load configuration from environment variables.

        Required:
            DUMP_DOWNLOAD_URL: URL of the .tar.gz dump

        Optional:
            STAGING_PATH: Download destination (default: /tmp/dump.tar.gz)
            EXTRACT_DIR: Extraction directory (default: ./tmp/extracted)
            DUCKDB_PATH: Database file (default: ./out/database.duckdb)
            SAMPLE_SIZE: Rows sampled for inference (default: 10)
            BATCH_SIZE: Rows per insert (default: 50)
            FETCH_TIMEOUT: Network timeout in seconds (default: 60)
            DATASET_CONFIG_PATH: YAML dataset mapping (default: customers + organizations)
        """
        try:
            archive_url = os.environ["DUMP_DOWNLOAD_URL"]
        except KeyError:
            raise ConfigError("DUMP_DOWNLOAD_URL environment variable is required") from None

        extract_dir = os.environ.get("EXTRACT_DIR", "./tmp/extracted")
        mapping_path = dataset_config_path or os.environ.get("DATASET_CONFIG_PATH")
        if mapping_path:
            datasets = load_datasets(mapping_path, extract_dir)
        else:
            datasets = parse_datasets(DEFAULT_DATASETS, extract_dir)

        return cls(
            archive_url=archive_url,
            staging_path=os.environ.get("STAGING_PATH", "/tmp/dump.tar.gz"),
            extract_dir=extract_dir,
            db_path=os.environ.get("DUCKDB_PATH", "./out/database.duckdb"),
            datasets=datasets,
            sample_size=_int_env("SAMPLE_SIZE", DEFAULT_SAMPLE_SIZE),
            batch_size=_int_env("BATCH_SIZE", DEFAULT_BATCH_SIZE),
            fetch_timeout=float(os.environ.get("FETCH_TIMEOUT", "60")),
        )

    def with_overrides(self, **changes) -> "IngestConfig":
        """Return a copy with some fields replaced (re-validated)."""
        return replace(self, **changes)


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def parse_datasets(raw: dict, extract_dir: str) -> tuple[Dataset, ...]:
    """
    Build Dataset objects from a name -> config mapping.

    Two formats are accepted per entry:

        # Simple format - source path only, table named after the dataset
        customers: dump/customers.csv

        # Full format
        organizations:
          source: dump/organizations.csv
          table: raw_organizations
    """
    datasets = []
    for name, cfg in raw.items():
        if isinstance(cfg, str):
            source, table = cfg, name
        elif isinstance(cfg, dict) and "source" in cfg:
            source, table = cfg["source"], cfg.get("table", name)
        else:
            raise ConfigError(f"Invalid dataset entry for '{name}': {cfg!r}")

        source_path = Path(source)
        if not source_path.is_absolute():
            source_path = Path(extract_dir) / source_path
        datasets.append(Dataset(name=name, source_path=str(source_path), table=table))
    return tuple(datasets)


def load_datasets(path: str, extract_dir: str) -> tuple[Dataset, ...]:
    """
    Load the dataset mapping from a YAML file.

    The file holds a top-level ``datasets`` key (or is the mapping itself):

        datasets:
          customers: dump/customers.csv
          organizations:
            source: dump/organizations.csv
            table: organizations
    """
    try:
        raw = yaml.safe_load(Path(path).read_text())
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read dataset config {path}: {e}") from e

    if not raw:
        raise ConfigError(f"Dataset config is empty: {path}")
    if isinstance(raw, dict) and "datasets" in raw:
        raw = raw["datasets"]
    if not isinstance(raw, dict):
        raise ConfigError(f"Dataset config must be a mapping: {path}")

    return parse_datasets(raw, extract_dir)
