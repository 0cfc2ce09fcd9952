"""
Data models for the livepartition migration engine.

Enums:
    - SyncPhase: Migration lifecycle phases
    - ConflictPolicy: What a copy does when the identity key already exists
    - MirroredOperation: Write operations the dual-write link mirrors
    - VerificationLevel: Count-only or deep (row sampling) verification

Configuration:
    - MigrationConfig: Tunables for one migration

Core Models:
    - PartitionBound: One range partition [lower, upper)
    - MigrationPlan: Everything needed to build and fill the target table
    - BatchCursor: Backfill high-water mark
    - DualWriteLink: The installed mirroring rule
    - SyncState: The persisted per-migration state record
    - TableStats: Row count and identity-key checksum of one table
    - VerificationReport: Result of a consistency check
    - BatchResult / BackfillProgress / ReconcileResult: Backfill outcomes
    - RestoreResult: Constraint restorer outcome
    - CutoverResult: Cutover outcome
    - MigrationStatus: Operator-facing status snapshot
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from livepartition.exceptions import InvalidPhaseTransitionError, RetryConfig
from livepartition.schema import ConstraintSpec, IndexSpec, SequenceSpec, TableSchema
from livepartition.serialization import decode_value, encode_value

# An identity key value is always a tuple, one element per identity column.
KeyValue = tuple[Any, ...]


def _now() -> datetime:
    return datetime.now(UTC)


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class SyncPhase(Enum):
    """
    Migration lifecycle phases.

    State machine transitions:
        PLANNED -> DUAL_WRITE_ACTIVE -> BACKFILLING -> VERIFYING
            -> CONSTRAINTS_RESTORING -> READY_FOR_CUTOVER -> CUT_OVER
        Any non-terminal phase -> ROLLED_BACK

    Attributes:
        PLANNED: Plan accepted; nothing created in the database yet.
        DUAL_WRITE_ACTIVE: Target exists and new inserts are mirrored into it.
        BACKFILLING: Historical rows are being copied in key order.
        VERIFYING: Counts and checksums are being compared.
        CONSTRAINTS_RESTORING: Indexes and constraints are being rebuilt.
        READY_FOR_CUTOVER: Target verified; waiting for the swap.
        CUT_OVER: Target has taken over the source's name.
        ROLLED_BACK: Migration abandoned; source remains authoritative.
    """

    PLANNED = "planned"
    DUAL_WRITE_ACTIVE = "dual_write_active"
    BACKFILLING = "backfilling"
    VERIFYING = "verifying"
    CONSTRAINTS_RESTORING = "constraints_restoring"
    READY_FOR_CUTOVER = "ready_for_cutover"
    CUT_OVER = "cut_over"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        """CUT_OVER and ROLLED_BACK are final."""
        return self in (SyncPhase.CUT_OVER, SyncPhase.ROLLED_BACK)

    @property
    def has_dual_write(self) -> bool:
        """Whether the dual-write link is expected to exist in this phase."""
        return self in (
            SyncPhase.DUAL_WRITE_ACTIVE,
            SyncPhase.BACKFILLING,
            SyncPhase.VERIFYING,
            SyncPhase.CONSTRAINTS_RESTORING,
            SyncPhase.READY_FOR_CUTOVER,
        )

    def can_transition_to(self, target: SyncPhase) -> bool:
        """
        Check if transition to target phase is valid.

        Args:
            target: The target phase to transition to.

        Returns:
            True if the transition is valid.
        """
        if self.is_terminal:
            return False
        if target == SyncPhase.ROLLED_BACK:
            return True
        return target in VALID_TRANSITIONS.get(self, ())


VALID_TRANSITIONS: dict[SyncPhase, tuple[SyncPhase, ...]] = {
    SyncPhase.PLANNED: (SyncPhase.DUAL_WRITE_ACTIVE,),
    SyncPhase.DUAL_WRITE_ACTIVE: (SyncPhase.BACKFILLING,),
    SyncPhase.BACKFILLING: (SyncPhase.VERIFYING,),
    SyncPhase.VERIFYING: (SyncPhase.CONSTRAINTS_RESTORING,),
    SyncPhase.CONSTRAINTS_RESTORING: (SyncPhase.READY_FOR_CUTOVER,),
    SyncPhase.READY_FOR_CUTOVER: (SyncPhase.CUT_OVER,),
}


class ConflictPolicy(Enum):
    """
    What a copy into the target does when the identity key is already there.

    Attributes:
        IGNORE_ON_DUPLICATE_IDENTITY: Skip the row (INSERT ... ON CONFLICT DO NOTHING).
        RAISE_ON_DUPLICATE_IDENTITY: Fail the statement.
    """

    IGNORE_ON_DUPLICATE_IDENTITY = "ignore_on_duplicate_identity"
    RAISE_ON_DUPLICATE_IDENTITY = "raise_on_duplicate_identity"


class MirroredOperation(Enum):
    """Write operations on the source that a dual-write link can mirror."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class VerificationLevel(Enum):
    """How thorough a verification pass was."""

    COUNT = "count"
    DEEP = "deep"


@dataclass(frozen=True)
class MigrationConfig:
    """
    Configuration for one partition migration.

    Attributes:
        batch_size: Rows per backfill batch (default 5000).
        max_rows_per_second: Backfill rate limit; 0 disables limiting.
        reconcile_retries: Extra reconciliation passes after the first (default 1).
        deep_check_sample_size: Keys sampled by deep verification (default 1000).
        lock_timeout_ms: Lock wait bound for the cutover unit (default 2000).
        statement_timeout_ms: Statement timeout for backfill batches; 0 disables.
        max_report_age_seconds: Oldest verification report cutover will accept.
        archive_suffix: Suffix for the renamed source table.
        parallel_workers: Concurrent backfill workers; 1 runs a single loop.
        deep_verify: Whether gates run deep verification instead of counts only.
        batch_retry: Retry policy for transient batch failures.

    Example:
        >>> config = MigrationConfig(batch_size=500, lock_timeout_ms=1000)
        >>> config.batch_size
        500
    """

    batch_size: int = 5000
    max_rows_per_second: int = 0
    reconcile_retries: int = 1
    deep_check_sample_size: int = 1000
    lock_timeout_ms: int = 2000
    statement_timeout_ms: int = 0
    max_report_age_seconds: int = 300
    archive_suffix: str = "_archived"
    parallel_workers: int = 1
    deep_verify: bool = False
    batch_retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_rows_per_second < 0:
            raise ValueError(f"max_rows_per_second must be >= 0, got {self.max_rows_per_second}")
        if self.reconcile_retries < 0:
            raise ValueError(f"reconcile_retries must be >= 0, got {self.reconcile_retries}")
        if self.deep_check_sample_size < 1:
            raise ValueError(
                f"deep_check_sample_size must be >= 1, got {self.deep_check_sample_size}"
            )
        if self.lock_timeout_ms < 1:
            raise ValueError(f"lock_timeout_ms must be >= 1, got {self.lock_timeout_ms}")
        if self.statement_timeout_ms < 0:
            raise ValueError(
                f"statement_timeout_ms must be >= 0, got {self.statement_timeout_ms}"
            )
        if self.max_report_age_seconds < 1:
            raise ValueError(
                f"max_report_age_seconds must be >= 1, got {self.max_report_age_seconds}"
            )
        if not self.archive_suffix:
            raise ValueError("archive_suffix must not be empty")
        if self.parallel_workers < 1:
            raise ValueError(f"parallel_workers must be >= 1, got {self.parallel_workers}")

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON storage.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "batch_size": self.batch_size,
            "max_rows_per_second": self.max_rows_per_second,
            "reconcile_retries": self.reconcile_retries,
            "deep_check_sample_size": self.deep_check_sample_size,
            "lock_timeout_ms": self.lock_timeout_ms,
            "statement_timeout_ms": self.statement_timeout_ms,
            "max_report_age_seconds": self.max_report_age_seconds,
            "archive_suffix": self.archive_suffix,
            "parallel_workers": self.parallel_workers,
            "deep_verify": self.deep_verify,
            "batch_retry": self.batch_retry.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationConfig:
        """
        Create from dictionary. Missing keys take their defaults.

        Args:
            data: Dictionary containing configuration values.

        Returns:
            MigrationConfig instance.
        """
        values = dict(data)
        if "batch_retry" in values:
            values["batch_retry"] = RetryConfig.from_dict(values["batch_retry"])
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in values.items() if k in known})


@dataclass(frozen=True)
class PartitionBound:
    """
    One range partition holding rows with `lower <= key < upper`.

    Attributes:
        name: Partition table name.
        lower: Inclusive lower bound.
        upper: Exclusive upper bound.
    """

    name: str
    lower: Any
    upper: Any

    def contains(self, value: Any) -> bool:
        return value is not None and self.lower <= value < self.upper

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "lower": encode_value(self.lower),
            "upper": encode_value(self.upper),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PartitionBound:
        return cls(
            name=data["name"],
            lower=decode_value(data["lower"]),
            upper=decode_value(data["upper"]),
        )


@dataclass(frozen=True)
class MigrationPlan:
    """
    The immutable description of one partition migration.

    Produced by SchemaPlanner.plan(); never modified once backfill starts.

    Attributes:
        migration_id: Unique migration identifier.
        source: Schema of the table being migrated.
        target_table: Name of the partitioned table to build.
        archive_table: Name the source is renamed to at cutover.
        partition_key: Partitioning column.
        bounds: Ordered, non-overlapping range partitions.
        default_partition: Name of the DEFAULT partition, or None.
        identity_key: Columns uniquely identifying a row; includes partition_key.
        indexes: Indexes to rebuild on the target.
        constraints: Constraints to re-apply on the target.
        sequences: Sequences whose ownership moves to the target at cutover.
        config: Migration tunables.
        created_at: When the plan was made.
    """

    migration_id: UUID
    source: TableSchema
    target_table: str
    archive_table: str
    partition_key: str
    bounds: tuple[PartitionBound, ...]
    identity_key: tuple[str, ...]
    default_partition: str | None = None
    indexes: tuple[IndexSpec, ...] = ()
    constraints: tuple[ConstraintSpec, ...] = ()
    sequences: tuple[SequenceSpec, ...] = ()
    config: MigrationConfig = field(default_factory=MigrationConfig)
    created_at: datetime = field(default_factory=_now)

    @property
    def source_table(self) -> str:
        return self.source.name

    @property
    def columns(self) -> tuple[str, ...]:
        return self.source.column_names

    @property
    def partition_names(self) -> tuple[str, ...]:
        names = tuple(b.name for b in self.bounds)
        if self.default_partition:
            names += (self.default_partition,)
        return names

    def route(self, value: Any) -> str | None:
        """
        Name of the partition a partition-key value lands in.

        Returns:
            The partition name, the default partition for values outside
            every range, or None when no partition accepts the value.
        """
        for bound in self.bounds:
            if bound.contains(value):
                return bound.name
        return self.default_partition

    def key_of(self, row: dict[str, Any]) -> KeyValue:
        """Identity key tuple for a row dict."""
        return tuple(row[c] for c in self.identity_key)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON storage.

        Returns:
            Dictionary representation suitable for json_dumps.
        """
        return {
            "migration_id": str(self.migration_id),
            "source": self.source.to_dict(),
            "target_table": self.target_table,
            "archive_table": self.archive_table,
            "partition_key": self.partition_key,
            "bounds": [b.to_dict() for b in self.bounds],
            "identity_key": list(self.identity_key),
            "default_partition": self.default_partition,
            "indexes": [i.model_dump(mode="json") for i in self.indexes],
            "constraints": [c.model_dump(mode="json") for c in self.constraints],
            "sequences": [s.model_dump(mode="json") for s in self.sequences],
            "config": self.config.to_dict(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationPlan:
        """
        Create from dictionary.

        Args:
            data: Dictionary produced by to_dict().

        Returns:
            MigrationPlan instance.
        """
        return cls(
            migration_id=UUID(data["migration_id"]),
            source=TableSchema.from_dict(data["source"]),
            target_table=data["target_table"],
            archive_table=data["archive_table"],
            partition_key=data["partition_key"],
            bounds=tuple(PartitionBound.from_dict(b) for b in data["bounds"]),
            identity_key=tuple(data["identity_key"]),
            default_partition=data.get("default_partition"),
            indexes=tuple(IndexSpec.model_validate(i) for i in data.get("indexes", [])),
            constraints=tuple(
                ConstraintSpec.model_validate(c) for c in data.get("constraints", [])
            ),
            sequences=tuple(SequenceSpec.model_validate(s) for s in data.get("sequences", [])),
            config=MigrationConfig.from_dict(data.get("config", {})),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(frozen=True)
class BatchCursor:
    """
    Backfill high-water mark.

    The cursor only moves forward. `advance()` refuses to move it backwards;
    `reset()` is the single explicit way to start over.

    Attributes:
        last_key: Greatest identity key migrated so far (None before the first batch).
        rows_copied: Rows inserted into target by the backfill so far.
        batches_completed: Batches committed so far.
        reconciliation_passes: Reconciliation passes run so far.
        updated_at: When the cursor last moved.
    """

    last_key: KeyValue | None = None
    rows_copied: int = 0
    batches_completed: int = 0
    reconciliation_passes: int = 0
    updated_at: datetime | None = None

    def advance(self, last_key: KeyValue | None, rows_copied: int) -> BatchCursor:
        """
        Return a cursor moved past one committed batch.

        Args:
            last_key: Greatest key seen by the batch, or None if it read nothing.
            rows_copied: Rows the batch inserted.

        Raises:
            ValueError: If last_key is behind the current position.
        """
        if last_key is None:
            last_key = self.last_key
        elif self.last_key is not None and tuple(last_key) < tuple(self.last_key):
            raise ValueError(f"Cursor cannot move backwards from {self.last_key!r} to {last_key!r}")
        return replace(
            self,
            last_key=tuple(last_key) if last_key is not None else None,
            rows_copied=self.rows_copied + rows_copied,
            batches_completed=self.batches_completed + 1,
            updated_at=_now(),
        )

    def with_reconciliation_pass(self, rows_copied: int) -> BatchCursor:
        return replace(
            self,
            rows_copied=self.rows_copied + rows_copied,
            reconciliation_passes=self.reconciliation_passes + 1,
            updated_at=_now(),
        )

    def reset(self) -> BatchCursor:
        """Explicit retry-from-scratch."""
        return BatchCursor(updated_at=_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_key": encode_value(self.last_key),
            "rows_copied": self.rows_copied,
            "batches_completed": self.batches_completed,
            "reconciliation_passes": self.reconciliation_passes,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BatchCursor:
        last_key = decode_value(data.get("last_key"))
        return cls(
            last_key=tuple(last_key) if last_key is not None else None,
            rows_copied=data.get("rows_copied", 0),
            batches_completed=data.get("batches_completed", 0),
            reconciliation_passes=data.get("reconciliation_passes", 0),
            updated_at=_dt(data.get("updated_at")),
        )


@dataclass(frozen=True)
class DualWriteLink:
    """
    The installed mirroring rule from source to target.

    Attributes:
        trigger_name: Trigger on the source table.
        function_name: Trigger function.
        column_mapping: (source column, target column) pairs.
        conflict_policy: Always IGNORE_ON_DUPLICATE_IDENTITY for mirroring.
        mirrored_operations: Source operations applied to target.
        installed_at: When mirroring was installed.
    """

    trigger_name: str
    function_name: str
    column_mapping: tuple[tuple[str, str], ...]
    conflict_policy: ConflictPolicy = ConflictPolicy.IGNORE_ON_DUPLICATE_IDENTITY
    mirrored_operations: frozenset[MirroredOperation] = frozenset({MirroredOperation.INSERT})
    installed_at: datetime | None = None

    @property
    def source_columns(self) -> tuple[str, ...]:
        return tuple(s for s, _ in self.column_mapping)

    @property
    def target_columns(self) -> tuple[str, ...]:
        return tuple(t for _, t in self.column_mapping)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger_name": self.trigger_name,
            "function_name": self.function_name,
            "column_mapping": [list(pair) for pair in self.column_mapping],
            "conflict_policy": self.conflict_policy.value,
            "mirrored_operations": sorted(op.value for op in self.mirrored_operations),
            "installed_at": _iso(self.installed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DualWriteLink:
        return cls(
            trigger_name=data["trigger_name"],
            function_name=data["function_name"],
            column_mapping=tuple((s, t) for s, t in data["column_mapping"]),
            conflict_policy=ConflictPolicy(data["conflict_policy"]),
            mirrored_operations=frozenset(
                MirroredOperation(op) for op in data["mirrored_operations"]
            ),
            installed_at=_dt(data.get("installed_at")),
        )


@dataclass(frozen=True)
class TableStats:
    """
    Row count and identity-key checksum of one table.

    The checksum is an order-independent sum of per-key hashes, so two
    tables holding the same set of keys agree regardless of physical order.
    """

    row_count: int
    key_checksum: int


@dataclass(frozen=True)
class VerificationReport:
    """
    Result of one consistency check between source and target.

    Attributes:
        migration_id: Migration this report belongs to.
        level: COUNT or DEEP.
        source: Stats for the source table.
        target: Stats for the target table.
        partition_counts: Target row count per partition.
        sample_size: Keys sampled (DEEP only).
        mismatched_keys: Sampled keys missing from target or with differing rows.
        verified_at: When the snapshot was taken.
    """

    migration_id: UUID
    level: VerificationLevel
    source: TableStats
    target: TableStats
    partition_counts: dict[str, int] = field(default_factory=dict)
    sample_size: int = 0
    mismatched_keys: tuple[KeyValue, ...] = ()
    verified_at: datetime = field(default_factory=_now)

    @property
    def row_count_delta(self) -> int:
        return self.source.row_count - self.target.row_count

    @property
    def checksum_delta(self) -> int:
        return self.source.key_checksum - self.target.key_checksum

    @property
    def checksum_matches(self) -> bool:
        return self.checksum_delta == 0

    @property
    def is_consistent(self) -> bool:
        """True when counts, checksums and every sampled row agree."""
        return self.row_count_delta == 0 and self.checksum_matches and not self.mismatched_keys

    def age_seconds(self, now: datetime | None = None) -> float:
        return ((now or _now()) - self.verified_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": str(self.migration_id),
            "level": self.level.value,
            "source_rows": self.source.row_count,
            "target_rows": self.target.row_count,
            "source_checksum": self.source.key_checksum,
            "target_checksum": self.target.key_checksum,
            "row_count_delta": self.row_count_delta,
            "checksum_delta": self.checksum_delta,
            "partition_counts": dict(self.partition_counts),
            "sample_size": self.sample_size,
            "mismatched_keys": encode_value(list(self.mismatched_keys)),
            "is_consistent": self.is_consistent,
            "verified_at": self.verified_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerificationReport:
        return cls(
            migration_id=UUID(data["migration_id"]),
            level=VerificationLevel(data["level"]),
            source=TableStats(data["source_rows"], int(data["source_checksum"])),
            target=TableStats(data["target_rows"], int(data["target_checksum"])),
            partition_counts=dict(data.get("partition_counts", {})),
            sample_size=data.get("sample_size", 0),
            mismatched_keys=tuple(
                tuple(k) for k in decode_value(data.get("mismatched_keys", []))
            ),
            verified_at=datetime.fromisoformat(data["verified_at"]),
        )


@dataclass(frozen=True)
class PhaseChange:
    """One entry of a SyncState's phase history."""

    phase: SyncPhase
    at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase.value, "at": self.at.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseChange:
        return cls(phase=SyncPhase(data["phase"]), at=datetime.fromisoformat(data["at"]))


@dataclass
class SyncState:
    """
    The persisted state record of one migration.

    Exactly one exists per migration. It is passed explicitly to every
    phase operation and saved after every change so an engine restart can
    resume from the last committed phase.

    This is a mutable dataclass because it changes throughout the lifecycle;
    only `transition_to()` may change `phase`.

    Attributes:
        plan: The migration plan.
        phase: Current lifecycle phase.
        cursor: Backfill high-water mark.
        low_water_mark: Parallel backfill resume point.
        dual_write_link: Installed mirroring rule, if any.
        last_report: Most recent verification report.
        error_count: Errors recorded against this migration.
        last_error: Most recent error message.
        last_error_at: When the most recent error was recorded.
        history: Phase changes in order.
        created_at: When the state was created.
        updated_at: When the state was last changed.
    """

    plan: MigrationPlan
    phase: SyncPhase = SyncPhase.PLANNED
    cursor: BatchCursor = field(default_factory=BatchCursor)
    low_water_mark: KeyValue | None = None
    dual_write_link: DualWriteLink | None = None
    last_report: VerificationReport | None = None
    error_count: int = 0
    last_error: str | None = None
    last_error_at: datetime | None = None
    history: list[PhaseChange] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def migration_id(self) -> UUID:
        return self.plan.migration_id

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def transition_to(self, target: SyncPhase) -> None:
        """
        Move to the next phase.

        Raises:
            InvalidPhaseTransitionError: If the lifecycle does not allow it.
        """
        if not self.phase.can_transition_to(target):
            raise InvalidPhaseTransitionError(self.migration_id, self.phase, target)
        self.phase = target
        self.updated_at = _now()
        self.history.append(PhaseChange(target, self.updated_at))

    def record_error(self, error: Exception) -> None:
        self.error_count += 1
        self.last_error = str(error)
        self.last_error_at = _now()
        self.updated_at = self.last_error_at

    def touch(self) -> None:
        self.updated_at = _now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": str(self.migration_id),
            "plan": self.plan.to_dict(),
            "phase": self.phase.value,
            "cursor": self.cursor.to_dict(),
            "low_water_mark": encode_value(self.low_water_mark),
            "dual_write_link": self.dual_write_link.to_dict() if self.dual_write_link else None,
            "last_report": self.last_report.to_dict() if self.last_report else None,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "last_error_at": _iso(self.last_error_at),
            "history": [h.to_dict() for h in self.history],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncState:
        low = decode_value(data.get("low_water_mark"))
        link = data.get("dual_write_link")
        report = data.get("last_report")
        return cls(
            plan=MigrationPlan.from_dict(data["plan"]),
            phase=SyncPhase(data["phase"]),
            cursor=BatchCursor.from_dict(data.get("cursor", {})),
            low_water_mark=tuple(low) if low is not None else None,
            dual_write_link=DualWriteLink.from_dict(link) if link else None,
            last_report=VerificationReport.from_dict(report) if report else None,
            error_count=data.get("error_count", 0),
            last_error=data.get("last_error"),
            last_error_at=_dt(data.get("last_error_at")),
            history=[PhaseChange.from_dict(h) for h in data.get("history", [])],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass(frozen=True)
class CopyResult:
    """
    Outcome of one backend copy statement.

    Attributes:
        rows_read: Source rows selected.
        rows_inserted: Rows actually inserted (conflicts skipped).
        max_key: Greatest identity key among the rows read.
    """

    rows_read: int
    rows_inserted: int
    max_key: KeyValue | None


@dataclass(frozen=True)
class BatchResult:
    """
    Outcome of one backfill batch.

    Attributes:
        cursor: Cursor after the batch (unchanged if the batch read nothing).
        rows_read: Source rows selected by the batch.
        rows_inserted: Rows inserted; rows already present are skipped.
        is_last: True when the batch was short, meaning the key space is exhausted.
        duration_ms: Batch wall time.
    """

    cursor: BatchCursor
    rows_read: int
    rows_inserted: int
    is_last: bool
    duration_ms: float = 0.0


@dataclass(frozen=True)
class BackfillProgress:
    """
    Progress snapshot yielded after each backfill batch.

    Attributes:
        rows_copied: Rows inserted into target so far.
        batches_completed: Batches committed so far.
        last_key: Current high-water mark.
        estimated_total: Source row count estimate at start.
        is_complete: True on the final yield.
    """

    rows_copied: int
    batches_completed: int
    last_key: KeyValue | None
    estimated_total: int
    is_complete: bool = False

    @property
    def progress_percent(self) -> float:
        if self.estimated_total <= 0:
            return 100.0 if self.is_complete else 0.0
        return min(100.0, self.rows_copied / self.estimated_total * 100)


@dataclass(frozen=True)
class ReconcileResult:
    """
    Outcome of reconciliation.

    Attributes:
        passes: Reconciliation passes run.
        rows_copied: Rows inserted across all passes.
        missing_after: Source keys absent from target after the last pass.
    """

    passes: int
    rows_copied: int
    missing_after: int = 0


@dataclass(frozen=True)
class RestoreResult:
    """
    Outcome of the constraint restorer.

    Attributes:
        indexes_built: Indexes created by this run.
        indexes_skipped: Indexes that were already valid.
        constraints_added: Constraints added NOT VALID by this run.
        constraints_validated: Constraints validated by this run.
        constraints_skipped: Constraints that were already validated.
        constraints_attached: Constraints added to the partitioned parent by this run.
    """

    indexes_built: tuple[str, ...] = ()
    indexes_skipped: tuple[str, ...] = ()
    constraints_added: tuple[str, ...] = ()
    constraints_validated: tuple[str, ...] = ()
    constraints_skipped: tuple[str, ...] = ()
    constraints_attached: tuple[str, ...] = ()


@dataclass(frozen=True)
class CutoverResult:
    """
    Outcome of a successful cutover.

    Attributes:
        migration_id: Migration that was cut over.
        primary_table: Name now served by the partitioned table.
        archive_table: Name the old source now lives under.
        duration_ms: Time spent inside the atomic unit.
        completed_at: When the unit committed.
    """

    migration_id: UUID
    primary_table: str
    archive_table: str
    duration_ms: float
    completed_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class MigrationStatus:
    """
    Operator-facing status snapshot.

    Attributes:
        migration_id: Migration identifier.
        source_table: Table being migrated.
        target_table: Partitioned table being built.
        phase: Current phase.
        rows_migrated: Rows copied by backfill and reconciliation.
        rows_remaining: Estimated rows still to copy.
        last_report: Most recent verification report.
        error_count: Errors recorded.
        last_error: Most recent error message.
        updated_at: When the state last changed.
    """

    migration_id: UUID
    source_table: str
    target_table: str
    phase: SyncPhase
    rows_migrated: int
    rows_remaining: int
    last_report: VerificationReport | None = None
    error_count: int = 0
    last_error: str | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": str(self.migration_id),
            "source_table": self.source_table,
            "target_table": self.target_table,
            "phase": self.phase.value,
            "rows_migrated": self.rows_migrated,
            "rows_remaining": self.rows_remaining,
            "last_report": self.last_report.to_dict() if self.last_report else None,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "updated_at": _iso(self.updated_at),
        }


__all__ = [
    "KeyValue",
    "SyncPhase",
    "VALID_TRANSITIONS",
    "ConflictPolicy",
    "MirroredOperation",
    "VerificationLevel",
    "MigrationConfig",
    "PartitionBound",
    "MigrationPlan",
    "BatchCursor",
    "DualWriteLink",
    "TableStats",
    "VerificationReport",
    "PhaseChange",
    "SyncState",
    "CopyResult",
    "BatchResult",
    "BackfillProgress",
    "ReconcileResult",
    "RestoreResult",
    "CutoverResult",
    "MigrationStatus",
]
