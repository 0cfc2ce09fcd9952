"""
Partition backend interface.

The backend is the database command interface of the migration engine: the
components above it decide *what* to do and in which order, the backend
knows *how* to express each step against a particular database.

This module provides:
- PartitionBackend: Abstract base class for backend implementations
- CutoverUnit: The steps available inside the atomic cutover transaction
- TransientBackendError: A failure the same call may survive on retry
- ConstraintValidationFailed: VALIDATE found rows violating a constraint

Concrete implementations:
- PostgreSQLBackend: SQLAlchemy async engine over asyncpg
- InMemoryBackend: In-process simulation for tests and development
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any

from livepartition.models import (
    ConflictPolicy,
    CopyResult,
    DualWriteLink,
    KeyValue,
    MigrationPlan,
    TableStats,
)
from livepartition.schema import ConstraintSpec, IndexSpec, TableSchema


class TransientBackendError(Exception):
    """
    A backend failure that may succeed if the same call is repeated.

    Raised for serialization failures, deadlocks, lock and statement
    timeouts, and dropped connections. The failed statement's
    transaction has been rolled back.
    """


class ConstraintValidationFailed(Exception):
    """
    Raised by validate_constraint when existing rows violate the constraint.

    Attributes:
        constraint_name: The constraint being validated.
        partition: The partition in which validation failed.
    """

    def __init__(self, constraint_name: str, partition: str, detail: str = "") -> None:
        self.constraint_name = constraint_name
        self.partition = partition
        self.detail = detail
        super().__init__(
            f"Constraint {constraint_name} failed validation on {partition}"
            + (f": {detail}" if detail else "")
        )


class CutoverUnit(ABC):
    """
    Steps executed inside the single atomic cutover transaction.

    Obtained from `PartitionBackend.cutover_unit()`. If the `async with`
    block exits with an exception, every step already taken is reverted.
    """

    @abstractmethod
    async def lock_tables(self) -> None:
        """Take exclusive locks on source and target, bounded by the lock timeout."""

    @abstractmethod
    async def retarget_sequences(self) -> None:
        """Move ownership of every planned sequence to the target's column."""

    @abstractmethod
    async def remove_dual_write(self) -> None:
        """Drop the mirroring trigger and its function."""

    @abstractmethod
    async def rename_source(self) -> None:
        """Rename the source table, and the planned indexes it holds, out of the way."""

    @abstractmethod
    async def rename_target(self) -> None:
        """Give the target table, and its planned indexes, the source's original names."""


class PartitionBackend(ABC):
    """
    Abstract base class for partition migration backends.

    Every method either completes fully or leaves the database unchanged;
    each data-moving call runs in its own transaction.
    """

    name: str = "unknown"
    """Database system identifier used in span attributes."""

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @abstractmethod
    async def describe_table(self, table: str) -> TableSchema:
        """
        Read the structure of an existing table.

        Raises:
            LookupError: If the table does not exist.
        """

    @abstractmethod
    async def table_exists(self, table: str) -> bool:
        pass

    @abstractmethod
    async def value_range(self, table: str, column: str) -> tuple[Any, Any] | None:
        """Smallest and largest value of a column, or None for an empty table."""

    @abstractmethod
    async def estimate_rows(self, table: str) -> int:
        """Cheap row count estimate (exact where counting is cheap)."""

    # -------------------------------------------------------------------------
    # Target and dual-write
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create_target(self, plan: MigrationPlan) -> None:
        """Create the partitioned target table and its partitions. Idempotent."""

    @abstractmethod
    async def install_dual_write(self, plan: MigrationPlan, link: DualWriteLink) -> None:
        """Install the mirroring trigger on the source. Idempotent."""

    @abstractmethod
    async def remove_dual_write(self, plan: MigrationPlan, link: DualWriteLink) -> None:
        """Remove the mirroring trigger. Removing an absent trigger is a no-op."""

    @abstractmethod
    async def dual_write_installed(self, plan: MigrationPlan, link: DualWriteLink) -> bool:
        pass

    # -------------------------------------------------------------------------
    # Copying
    # -------------------------------------------------------------------------

    @abstractmethod
    async def copy_batch(
        self,
        plan: MigrationPlan,
        after_key: KeyValue | None,
        limit: int,
        policy: ConflictPolicy,
        *,
        upper_key: KeyValue | None = None,
        statement_timeout_ms: int = 0,
    ) -> CopyResult:
        """
        Copy the next `limit` source rows with identity key above `after_key`
        (and at most `upper_key`) into the target, in key order, in one
        transaction.

        Raises:
            TransientBackendError: If the batch may succeed on retry.
        """

    @abstractmethod
    async def missing_keys(self, plan: MigrationPlan, limit: int) -> list[KeyValue]:
        """Source identity keys absent from the target, in key order."""

    @abstractmethod
    async def count_missing(self, plan: MigrationPlan) -> int:
        pass

    @abstractmethod
    async def copy_keys(
        self,
        plan: MigrationPlan,
        keys: Sequence[KeyValue],
        policy: ConflictPolicy,
    ) -> int:
        """Copy specific source rows into the target. Returns rows inserted."""

    @abstractmethod
    async def split_points(self, plan: MigrationPlan, after_key: KeyValue | None, parts: int) -> list[KeyValue]:
        """
        Up to `parts - 1` identity keys splitting the source rows above
        `after_key` into ranges of roughly equal size, ascending.
        """

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    @abstractmethod
    async def snapshot_stats(self, plan: MigrationPlan) -> tuple[TableStats, TableStats]:
        """Stats for (source, target), both read from one consistent snapshot."""

    @abstractmethod
    async def partition_counts(self, plan: MigrationPlan) -> dict[str, int]:
        pass

    @abstractmethod
    async def sample_keys(self, plan: MigrationPlan, sample_size: int) -> list[KeyValue]:
        """A random sample of source identity keys."""

    @abstractmethod
    async def fetch_rows(
        self,
        plan: MigrationPlan,
        table: str,
        keys: Sequence[KeyValue],
    ) -> dict[KeyValue, dict[str, Any]]:
        """Rows of `table` keyed by identity key; absent keys are omitted."""

    # -------------------------------------------------------------------------
    # Indexes and constraints
    # -------------------------------------------------------------------------

    @abstractmethod
    async def valid_indexes(self, plan: MigrationPlan) -> set[str]:
        """Names of the planned indexes that exist and are valid on the target."""

    @abstractmethod
    async def build_index(self, plan: MigrationPlan, index: IndexSpec) -> None:
        """Build an index on the target without blocking writes for its duration."""

    @abstractmethod
    async def constraint_states(self, plan: MigrationPlan, constraint: ConstraintSpec) -> dict[str, bool]:
        """Per partition: whether the constraint exists there and is validated."""

    @abstractmethod
    async def add_constraint_not_valid(
        self,
        plan: MigrationPlan,
        constraint: ConstraintSpec,
        partition: str,
    ) -> None:
        pass

    @abstractmethod
    async def validate_constraint(
        self,
        plan: MigrationPlan,
        constraint: ConstraintSpec,
        partition: str,
    ) -> None:
        """
        Raises:
            ConstraintValidationFailed: If existing rows violate the constraint.
        """

    @abstractmethod
    async def find_violation(
        self,
        plan: MigrationPlan,
        constraint: ConstraintSpec,
        partition: str,
    ) -> dict[str, Any] | None:
        """First row of a partition that violates the constraint."""

    @abstractmethod
    async def parent_constraints(self, plan: MigrationPlan) -> set[str]:
        """Names of the planned constraints already declared on the partitioned parent."""

    @abstractmethod
    async def attach_constraint(
        self,
        plan: MigrationPlan,
        constraint: ConstraintSpec,
        lock_timeout_ms: int,
    ) -> None:
        """
        Declare a constraint on the partitioned parent.

        Every partition already carries the same constraint under the same
        name, validated, so the parent adopts those instead of scanning rows
        again. The brief parent lock is bounded by `lock_timeout_ms`.

        Raises:
            TransientBackendError: If the lock could not be taken in time.
        """

    # -------------------------------------------------------------------------
    # Cutover
    # -------------------------------------------------------------------------

    @abstractmethod
    async def cutover_applied(self, plan: MigrationPlan) -> bool:
        """
        Whether the cutover renames have already committed: the target name
        is gone, the archive exists and the source's name is partitioned.
        """

    @abstractmethod
    def cutover_unit(
        self,
        plan: MigrationPlan,
        link: DualWriteLink | None,
        lock_timeout_ms: int,
    ) -> AbstractAsyncContextManager[CutoverUnit]:
        """
        Open the atomic cutover transaction.

        Commits when the block exits normally; reverts everything when it
        exits with an exception.
        """

    async def close(self) -> None:  # noqa: B027 - optional hook
        """Release backend resources."""


__all__ = [
    "PartitionBackend",
    "CutoverUnit",
    "TransientBackendError",
    "ConstraintValidationFailed",
]
