"""
livepartition - Online migration of large PostgreSQL tables to range partitioning.

This library provides:
- Schema planning with partition bound and identity key validation
- Trigger-based dual-write from the live table into the partitioned copy
- Resumable, rate-limited backfill with reconciliation
- Count, checksum and row-sample verification
- Non-blocking index and constraint restoration
- Atomic cutover and rollback
- Persisted, lock-protected orchestration that resumes after a crash
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("livepartition-py")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from livepartition.backends import (
    ConstraintValidationFailed,
    CutoverUnit,
    InMemoryBackend,
    PartitionBackend,
    PostgreSQLBackend,
    TransientBackendError,
)
from livepartition.backfill import BackfillEngine, RateLimiter
from livepartition.consistency import ConsistencyVerifier
from livepartition.constraints import ConstraintRestorer
from livepartition.coordinator import MigrationCoordinator
from livepartition.cutover import CutoverController
from livepartition.dual_write import DualWriteCoordinator
from livepartition.exceptions import (
    BackfillBatchError,
    ConstraintViolationError,
    CutoverAbortedError,
    DualWriteError,
    ErrorHandler,
    IncompleteBackfillError,
    InvalidBoundaryError,
    InvalidPhaseTransitionError,
    MigrationAlreadyExistsError,
    MigrationError,
    MigrationNotFoundError,
    MigrationStateError,
    MissingKeyInIdentityError,
    PlanningError,
    RetryConfig,
    VerificationFailedError,
)
from livepartition.locks import (
    InMemoryLockManager,
    LockAcquisitionError,
    PostgreSQLLockManager,
    migration_lock_key,
)
from livepartition.models import (
    BackfillProgress,
    BatchCursor,
    BatchResult,
    ConflictPolicy,
    CutoverResult,
    DualWriteLink,
    MigrationConfig,
    MigrationPlan,
    MigrationStatus,
    MirroredOperation,
    PartitionBound,
    ReconcileResult,
    RestoreResult,
    SyncPhase,
    SyncState,
    TableStats,
    VerificationLevel,
    VerificationReport,
)
from livepartition.planner import SchemaPlanner
from livepartition.repositories import (
    InMemoryMigrationStateRepository,
    MigrationStateRepository,
    PostgreSQLMigrationStateRepository,
    SQLiteMigrationStateRepository,
)
from livepartition.schema import (
    ColumnSpec,
    ConstraintKind,
    ConstraintSpec,
    IndexSpec,
    SequenceSpec,
    TableSchema,
)

__all__ = [
    "__version__",
    # Components
    "SchemaPlanner",
    "DualWriteCoordinator",
    "BackfillEngine",
    "RateLimiter",
    "ConsistencyVerifier",
    "ConstraintRestorer",
    "CutoverController",
    "MigrationCoordinator",
    # Backends
    "PartitionBackend",
    "CutoverUnit",
    "InMemoryBackend",
    "PostgreSQLBackend",
    "TransientBackendError",
    "ConstraintValidationFailed",
    # Schema
    "ColumnSpec",
    "IndexSpec",
    "ConstraintKind",
    "ConstraintSpec",
    "SequenceSpec",
    "TableSchema",
    # Models
    "SyncPhase",
    "SyncState",
    "ConflictPolicy",
    "MirroredOperation",
    "VerificationLevel",
    "MigrationConfig",
    "PartitionBound",
    "MigrationPlan",
    "BatchCursor",
    "BatchResult",
    "BackfillProgress",
    "ReconcileResult",
    "DualWriteLink",
    "TableStats",
    "VerificationReport",
    "RestoreResult",
    "CutoverResult",
    "MigrationStatus",
    # Persistence and locks
    "MigrationStateRepository",
    "InMemoryMigrationStateRepository",
    "PostgreSQLMigrationStateRepository",
    "SQLiteMigrationStateRepository",
    "InMemoryLockManager",
    "PostgreSQLLockManager",
    "LockAcquisitionError",
    "migration_lock_key",
    # Exceptions
    "MigrationError",
    "MigrationNotFoundError",
    "MigrationAlreadyExistsError",
    "MigrationStateError",
    "InvalidPhaseTransitionError",
    "PlanningError",
    "InvalidBoundaryError",
    "MissingKeyInIdentityError",
    "DualWriteError",
    "BackfillBatchError",
    "IncompleteBackfillError",
    "VerificationFailedError",
    "ConstraintViolationError",
    "CutoverAbortedError",
    "ErrorHandler",
    "RetryConfig",
]
