"""Typed errors raised by the ingestion pipeline.

Every error carries optional ``dataset`` and ``stage`` attributes. The
orchestrator fills them in as an error passes through a dataset task, so the
caller can tell which dataset failed and where without the exception type
being changed.
"""


class IngestionError(Exception):
    """Base class for all pipeline errors."""

    def __init__(
        self,
        message: str,
        *,
        dataset: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.dataset = dataset
        self.stage = stage

    def annotate(self, dataset: str, stage: str) -> "IngestionError":
        """Attach run context unless an inner stage already did."""
        if self.dataset is None:
            self.dataset = dataset
        if self.stage is None:
            self.stage = stage
        return self

    def __str__(self) -> str:
        context = []
        if self.dataset:
            context.append(f"dataset={self.dataset}")
        if self.stage:
            context.append(f"stage={self.stage}")
        if not context:
            return self.message
        return f"{self.message} [{', '.join(context)}]"


class ConfigError(IngestionError):
    """Configuration is missing or invalid."""


class FetchError(IngestionError):
    """The remote archive could not be downloaded."""


class ExtractionError(IngestionError):
    """The staging archive could not be unpacked."""


class EmptySourceError(IngestionError):
    """A source file has no data rows to sample."""

    def __init__(self, path: str, **kwargs) -> None:
        super().__init__(f"Source file has no data rows: {path}", **kwargs)
        self.path = path


class InconsistentStateError(IngestionError):
    """A destination table exists but holds a different row count than its source."""

    def __init__(self, table: str, table_rows: int, source_rows: int, **kwargs) -> None:
        super().__init__(
            f"Table '{table}' has {table_rows} rows but source has {source_rows}",
            **kwargs,
        )
        self.table = table
        self.table_rows = table_rows
        self.source_rows = source_rows


class TableAlreadyExistsError(IngestionError):
    """Provisioning was attempted for a table that already exists."""

    def __init__(self, table: str, **kwargs) -> None:
        super().__init__(f"Table already exists: {table}", **kwargs)
        self.table = table


class LoadError(IngestionError):
    """A batched load failed; its transaction was rolled back."""


class StageError(IngestionError):
    """An unexpected failure inside a pipeline stage."""
