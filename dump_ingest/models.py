"""Data model for the ingestion pipeline."""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from dump_ingest.errors import IngestionError


class InferredType(str, Enum):
    """Column type derived from a sample of raw values."""
    INT32 = "int32"
    INT64 = "int64"
    FLOAT64 = "float64"
    TIMESTAMP = "timestamp"
    STRING = "string"


# Destination storage type for each inferred type
STORAGE_TYPES: dict[InferredType, str] = {
    InferredType.INT32: "INTEGER",
    InferredType.INT64: "BIGINT",
    InferredType.FLOAT64: "DOUBLE",
    InferredType.TIMESTAMP: "TIMESTAMP",
    InferredType.STRING: "VARCHAR",
}

# Synthetic auto-incrementing key added to every destination table.
# Underscore-prefixed like other internal columns, so it never clashes
# with a source header such as "id".
ROW_ID_COLUMN = "_row_id"


@dataclass(frozen=True)
class Dataset:
    """One source file bound to one destination table."""
    name: str           # Logical name, e.g. "customers"
    source_path: str    # Path to the extracted csv file
    table: str          # Destination table name


class InferredSchema(Mapping[str, InferredType]):
    """
    Read-only, ordered mapping of column name to inferred type.

    Column order follows the header row of the source file. Once built the
    mapping cannot be changed.
    """

    def __init__(self, columns: Mapping[str, InferredType]) -> None:
        self._columns = {name: InferredType(kind) for name, kind in columns.items()}

    def __getitem__(self, name: str) -> InferredType:
        return self._columns[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._columns)

    def __len__(self) -> int:
        return len(self._columns)

    def __repr__(self) -> str:
        body = ", ".join(f"{name}: {kind.value}" for name, kind in self._columns.items())
        return f"InferredSchema({{{body}}})"

    @property
    def columns(self) -> list[str]:
        return list(self._columns)

    def storage_columns(self) -> dict[str, str]:
        """Column name to destination storage type, in header order."""
        return {name: STORAGE_TYPES[kind] for name, kind in self._columns.items()}


class RunState(str, Enum):
    """Lifecycle states of a single dataset's ingestion."""
    PENDING = "pending"
    INFERRED = "inferred"
    SKIPPED = "skipped"
    PROVISIONING = "provisioning"
    LOADING = "loading"
    COMMITTED = "committed"
    FAILED = "failed"


_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.PENDING: {RunState.INFERRED, RunState.FAILED},
    RunState.INFERRED: {RunState.SKIPPED, RunState.PROVISIONING, RunState.FAILED},
    RunState.PROVISIONING: {RunState.LOADING, RunState.FAILED},
    RunState.LOADING: {RunState.COMMITTED, RunState.FAILED},
    RunState.SKIPPED: set(),
    RunState.COMMITTED: set(),
    RunState.FAILED: set(),
}

TERMINAL_STATES = frozenset({RunState.SKIPPED, RunState.COMMITTED, RunState.FAILED})


@dataclass
class LoadResult:
    """
    Metadata captured for each committed load.

    Stored in the load_metadata table in the same transaction as the rows,
    so a metadata row exists exactly when the load committed.
    """
    load_id: str            # UUID identifying this specific load
    dataset: str            # Dataset name
    table: str              # Target table name
    row_count: int          # Number of rows inserted
    batch_count: int        # Number of batch inserts issued
    started_at: datetime    # When the load began
    completed_at: datetime  # When the last batch was inserted


@dataclass
class IngestionRun:
    """Per-dataset run state, owned by the orchestrator."""
    dataset: Dataset
    state: RunState = RunState.PENDING
    schema: InferredSchema | None = None
    load: LoadResult | None = None
    error: IngestionError | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    def advance(self, state: RunState) -> None:
        """Move to the next state, rejecting transitions the lifecycle forbids."""
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(
                f"Illegal run transition for {self.dataset.name}: "
                f"{self.state.value} -> {state.value}"
            )
        self.state = state
        if state in TERMINAL_STATES:
            self.finished_at = datetime.now(timezone.utc)

    def fail(self, error: IngestionError) -> None:
        self.error = error
        self.advance(RunState.FAILED)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass
class RunSummary:
    """Outcome of a successful pipeline run."""
    runs: list[IngestionRun]
    duration_seconds: float

    @property
    def committed(self) -> list[str]:
        return [r.dataset.name for r in self.runs if r.state is RunState.COMMITTED]

    @property
    def skipped(self) -> list[str]:
        return [r.dataset.name for r in self.runs if r.state is RunState.SKIPPED]

    @property
    def total_rows(self) -> int:
        return sum(r.load.row_count for r in self.runs if r.load is not None)
