"""Tests for configuration loading and validation."""

import os

import pytest

from dump_ingest.config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_SAMPLE_SIZE,
    IngestConfig,
    load_datasets,
    parse_datasets,
)
from dump_ingest.errors import ConfigError
from dump_ingest.models import Dataset

ENV_VARS = [
    "DUMP_DOWNLOAD_URL",
    "STAGING_PATH",
    "EXTRACT_DIR",
    "DUCKDB_PATH",
    "SAMPLE_SIZE",
    "BATCH_SIZE",
    "FETCH_TIMEOUT",
    "DATASET_CONFIG_PATH",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def make_config(**kwargs):
    defaults = dict(
        archive_url="https://example.com/dump.tar.gz",
        staging_path="/tmp/dump.tar.gz",
        extract_dir="/tmp/extracted",
        db_path=":memory:",
    )
    defaults.update(kwargs)
    return IngestConfig(**defaults)


class TestFromEnv:
    def test_requires_download_url(self):
        with pytest.raises(ConfigError, match="DUMP_DOWNLOAD_URL"):
            IngestConfig.from_env()

    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("DUMP_DOWNLOAD_URL", "https://example.com/dump.tar.gz")

        config = IngestConfig.from_env()

        assert config.sample_size == DEFAULT_SAMPLE_SIZE
        assert config.batch_size == DEFAULT_BATCH_SIZE
        assert config.db_path == "./out/database.duckdb"
        assert [d.name for d in config.datasets] == ["customers", "organizations"]
        assert config.datasets[0].source_path == os.path.join(
            "tmp", "extracted", "dump", "customers.csv"
        )

    def test_overrides_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DUMP_DOWNLOAD_URL", "https://example.com/dump.tar.gz")
        monkeypatch.setenv("EXTRACT_DIR", str(tmp_path))
        monkeypatch.setenv("BATCH_SIZE", "10")
        monkeypatch.setenv("SAMPLE_SIZE", "5")
        monkeypatch.setenv("FETCH_TIMEOUT", "2.5")

        config = IngestConfig.from_env()

        assert config.batch_size == 10
        assert config.sample_size == 5
        assert config.fetch_timeout == 2.5
        assert config.datasets[1].source_path == str(tmp_path / "dump" / "organizations.csv")

    def test_non_integer_batch_size(self, monkeypatch):
        monkeypatch.setenv("DUMP_DOWNLOAD_URL", "https://example.com/dump.tar.gz")
        monkeypatch.setenv("BATCH_SIZE", "ten")

        with pytest.raises(ConfigError, match="BATCH_SIZE"):
            IngestConfig.from_env()

    def test_dataset_mapping_from_env(self, monkeypatch, tmp_path):
        mapping = tmp_path / "datasets.yaml"
        mapping.write_text("datasets:\n  people: people.csv\n")
        monkeypatch.setenv("DUMP_DOWNLOAD_URL", "https://example.com/dump.tar.gz")
        monkeypatch.setenv("DATASET_CONFIG_PATH", str(mapping))

        config = IngestConfig.from_env()

        assert [d.table for d in config.datasets] == ["people"]


class TestValidation:
    @pytest.mark.parametrize("batch_size", [0, -1, 10_001])
    def test_batch_size_bounds(self, batch_size):
        with pytest.raises(ConfigError, match="batch_size"):
            make_config(batch_size=batch_size)

    def test_sample_size_must_be_positive(self):
        with pytest.raises(ConfigError, match="sample_size"):
            make_config(sample_size=0)

    def test_empty_url(self):
        with pytest.raises(ConfigError):
            make_config(archive_url="")

    @pytest.mark.parametrize("table", ["bad-name", "1st", "drop table x", ""])
    def test_invalid_table_names(self, table):
        with pytest.raises(ConfigError, match="Invalid table name"):
            make_config(datasets=(Dataset("x", "x.csv", table),))

    def test_metadata_table_is_reserved(self):
        with pytest.raises(ConfigError, match="reserved"):
            make_config(datasets=(Dataset("meta", "m.csv", "load_metadata"),))

    def test_tables_must_be_distinct(self):
        datasets = (Dataset("a", "a.csv", "same"), Dataset("b", "b.csv", "same"))

        with pytest.raises(ConfigError, match="distinct"):
            make_config(datasets=datasets)

    def test_tables_differing_only_in_case_collide(self):
        datasets = (Dataset("a", "a.csv", "Customers"), Dataset("b", "b.csv", "customers"))

        with pytest.raises(ConfigError, match="distinct"):
            make_config(datasets=datasets)

    def test_with_overrides_revalidates(self):
        config = make_config()

        assert config.with_overrides(batch_size=10).batch_size == 10
        with pytest.raises(ConfigError):
            config.with_overrides(batch_size=0)


class TestDatasetMapping:
    def test_simple_and_full_formats(self, tmp_path):
        datasets = parse_datasets(
            {
                "customers": "dump/customers.csv",
                "organizations": {"source": "/data/orgs.csv", "table": "raw_orgs"},
            },
            str(tmp_path),
        )

        assert datasets == (
            Dataset("customers", str(tmp_path / "dump" / "customers.csv"), "customers"),
            Dataset("organizations", "/data/orgs.csv", "raw_orgs"),
        )

    def test_invalid_entry(self):
        with pytest.raises(ConfigError, match="Invalid dataset entry"):
            parse_datasets({"customers": {"table": "customers"}}, "/tmp")

    def test_yaml_without_top_level_key(self, tmp_path):
        path = tmp_path / "datasets.yaml"
        path.write_text("customers:\n  source: c.csv\n  table: people\n")

        datasets = load_datasets(str(path), "/x")

        assert datasets == (Dataset("customers", "/x/c.csv", "people"),)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Failed to read"):
            load_datasets(str(tmp_path / "missing.yaml"), "/x")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        with pytest.raises(ConfigError, match="empty"):
            load_datasets(str(path), "/x")
