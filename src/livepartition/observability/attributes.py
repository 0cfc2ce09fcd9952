"""
Standard span attributes for livepartition.

Attribute constants used across all components so that spans from the
planner, backfill, verifier and cutover can be correlated in a trace
backend. They follow OpenTelemetry semantic conventions where applicable.

Example:
    >>> from livepartition.observability.attributes import (
    ...     ATTR_MIGRATION_ID,
    ...     ATTR_SOURCE_TABLE,
    ... )
    >>>
    >>> with tracer.span(
    ...     "livepartition.backfill.run_batch",
    ...     {
    ...         ATTR_MIGRATION_ID: str(plan.migration_id),
    ...         ATTR_SOURCE_TABLE: plan.source_table,
    ...     },
    ... ):
    ...     pass
"""

# =============================================================================
# Migration Attributes
# =============================================================================

ATTR_MIGRATION_ID = "livepartition.migration.id"
"""Unique identifier for the migration (UUID string)."""

ATTR_MIGRATION_PHASE = "livepartition.migration.phase"
"""Current SyncState phase value."""

ATTR_SOURCE_TABLE = "livepartition.migration.source_table"
"""Name of the table being migrated."""

ATTR_TARGET_TABLE = "livepartition.migration.target_table"
"""Name of the partitioned table being built."""

ATTR_PARTITION_KEY = "livepartition.migration.partition_key"
"""Partitioning column."""

ATTR_PARTITION_COUNT = "livepartition.migration.partition_count"
"""Number of range partitions in the plan (integer)."""

# =============================================================================
# Backfill Attributes
# =============================================================================

ATTR_BATCH_SIZE = "livepartition.backfill.batch_size"
"""Requested batch size (integer)."""

ATTR_ROWS_READ = "livepartition.backfill.rows_read"
"""Rows read from source in a batch (integer)."""

ATTR_ROWS_INSERTED = "livepartition.backfill.rows_inserted"
"""Rows actually inserted into target in a batch (integer)."""

ATTR_RECONCILE_ATTEMPT = "livepartition.backfill.reconcile_attempt"
"""Reconciliation pass number (integer, 0-based)."""

ATTR_WORKERS = "livepartition.backfill.workers"
"""Parallel backfill worker count (integer)."""

# =============================================================================
# Verification Attributes
# =============================================================================

ATTR_VERIFICATION_LEVEL = "livepartition.verify.level"
"""Verification level ('count' or 'deep')."""

ATTR_SAMPLE_SIZE = "livepartition.verify.sample_size"
"""Number of keys sampled for deep verification (integer)."""

ATTR_ROW_COUNT_DELTA = "livepartition.verify.row_count_delta"
"""Source minus target row count (integer)."""

# =============================================================================
# Constraint / Cutover Attributes
# =============================================================================

ATTR_OBJECT_NAME = "livepartition.restore.object_name"
"""Index or constraint name being restored."""

ATTR_LOCK_TIMEOUT_MS = "livepartition.cutover.lock_timeout_ms"
"""Lock timeout applied to the cutover unit (integer milliseconds)."""

ATTR_CUTOVER_DURATION_MS = "livepartition.cutover.duration_ms"
"""Duration of the cutover unit (float milliseconds)."""

# =============================================================================
# Database Attributes (OTEL semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql', 'sqlite', 'memory')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (e.g., 'INSERT', 'ALTER')."""

# =============================================================================
# Lock Attributes
# =============================================================================

ATTR_LOCK_KEY = "livepartition.lock.key"
"""Advisory lock key."""

ATTR_LOCK_ID = "livepartition.lock.id"
"""Numeric advisory lock id."""


__all__ = [
    "ATTR_MIGRATION_ID",
    "ATTR_MIGRATION_PHASE",
    "ATTR_SOURCE_TABLE",
    "ATTR_TARGET_TABLE",
    "ATTR_PARTITION_KEY",
    "ATTR_PARTITION_COUNT",
    "ATTR_BATCH_SIZE",
    "ATTR_ROWS_READ",
    "ATTR_ROWS_INSERTED",
    "ATTR_RECONCILE_ATTEMPT",
    "ATTR_WORKERS",
    "ATTR_VERIFICATION_LEVEL",
    "ATTR_SAMPLE_SIZE",
    "ATTR_ROW_COUNT_DELTA",
    "ATTR_OBJECT_NAME",
    "ATTR_LOCK_TIMEOUT_MS",
    "ATTR_CUTOVER_DURATION_MS",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_LOCK_KEY",
    "ATTR_LOCK_ID",
]
