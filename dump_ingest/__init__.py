"""
dump_ingest - Load a compressed csv dump into DuckDB.

Downloads a .tar.gz dump, infers a column schema for each csv file,
creates matching tables and loads every file in a single transaction,
skipping datasets an earlier run already loaded.

Usage:
    python -m dump_ingest.main

Environment Variables:
    DUMP_DOWNLOAD_URL: URL of the dump archive (required)
    STAGING_PATH: Where the archive is downloaded
    EXTRACT_DIR: Where the archive is unpacked
    DUCKDB_PATH: Destination database file
    SAMPLE_SIZE: Rows sampled for type inference (default: 10)
    BATCH_SIZE: Rows per insert (default: 50)
    FETCH_TIMEOUT: Download timeout in seconds (default: 60)
    DATASET_CONFIG_PATH: YAML dataset mapping
"""

__version__ = "0.1.0"
