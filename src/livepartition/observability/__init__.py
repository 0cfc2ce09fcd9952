"""
Observability utilities for livepartition.

Tracing for every migration component goes through the composition-based
`Tracer` protocol defined here. Components accept `tracer=` and
`enable_tracing=` keyword arguments and create their own tracer with
`create_tracer(__name__, enable_tracing)` when none is injected.

Example:
    >>> from livepartition.observability import create_tracer, ATTR_MIGRATION_ID
    >>>
    >>> tracer = create_tracer(__name__)
    >>> with tracer.span("livepartition.example", {ATTR_MIGRATION_ID: "..."}):
    ...     pass
"""

from livepartition.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_CUTOVER_DURATION_MS,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_LOCK_ID,
    ATTR_LOCK_KEY,
    ATTR_LOCK_TIMEOUT_MS,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_PHASE,
    ATTR_OBJECT_NAME,
    ATTR_PARTITION_COUNT,
    ATTR_PARTITION_KEY,
    ATTR_RECONCILE_ATTEMPT,
    ATTR_ROW_COUNT_DELTA,
    ATTR_ROWS_INSERTED,
    ATTR_ROWS_READ,
    ATTR_SAMPLE_SIZE,
    ATTR_SOURCE_TABLE,
    ATTR_TARGET_TABLE,
    ATTR_VERIFICATION_LEVEL,
    ATTR_WORKERS,
)
from livepartition.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracers
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
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
