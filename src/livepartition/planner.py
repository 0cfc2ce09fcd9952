"""
SchemaPlanner - Turns a table description and partition bounds into a plan.

The planner is pure computation: it never touches the database. Every
structural rule that would otherwise surface halfway through a migration
(a unique key PostgreSQL cannot enforce per partition, ranges that overlap
or leave holes) is caught here, before anything is created.

Responsibilities:
    - Normalize bounds (explicit ranges or a list of boundary values)
    - Validate ordering, overlap and gaps
    - Choose and validate the identity key
    - Select the indexes, constraints and sequences to carry over
    - Render target DDL and check that existing data fits the bounds

Usage:
    >>> from datetime import date
    >>> from livepartition import SchemaPlanner
    >>>
    >>> planner = SchemaPlanner()
    >>> plan = planner.plan(
    ...     orders_schema,
    ...     "created_on",
    ...     [date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)],
    ... )
    >>> [b.name for b in plan.bounds]
    ['orders_partitioned_p20240101', 'orders_partitioned_p20240201']

See Also:
    - livepartition.ddl for the rendered statements
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date, datetime
from typing import Any
from uuid import UUID, uuid4

from livepartition.ddl import TargetDDL, child_name, render_target_ddl
from livepartition.exceptions import (
    InvalidBoundaryError,
    MissingKeyInIdentityError,
    PlanningError,
)
from livepartition.models import MigrationConfig, MigrationPlan, PartitionBound
from livepartition.observability import (
    ATTR_PARTITION_COUNT,
    ATTR_PARTITION_KEY,
    ATTR_SOURCE_TABLE,
    Tracer,
    create_tracer,
)
from livepartition.schema import ConstraintSpec, IndexSpec, TableSchema, validate_identifier

logger = logging.getLogger(__name__)

TARGET_SUFFIX = "partitioned"
DEFAULT_PARTITION_SUFFIX = "default"


class SchemaPlanner:
    """
    Builds MigrationPlans.

    Example:
        >>> planner = SchemaPlanner(MigrationConfig(batch_size=1000))
        >>> plan = planner.plan(schema, "created_on", bounds, default_partition=True)
        >>> ddl = planner.render_ddl(plan)
    """

    def __init__(
        self,
        config: MigrationConfig | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the planner.

        Args:
            config: Default configuration attached to plans.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
                          Ignored if tracer is explicitly provided.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._config = config or MigrationConfig()

    def plan(
        self,
        source: TableSchema,
        partition_key: str,
        bounds: Sequence[PartitionBound] | Sequence[Any],
        *,
        identity_key: Sequence[str] | None = None,
        default_partition: bool = False,
        target_table: str | None = None,
        archive_table: str | None = None,
        indexes: Sequence[IndexSpec] | None = None,
        constraints: Sequence[ConstraintSpec] | None = None,
        migration_id: UUID | None = None,
        config: MigrationConfig | None = None,
    ) -> MigrationPlan:
        """
        Validate the request and produce a MigrationPlan.

        Args:
            source: Schema of the table to migrate.
            partition_key: Column to partition by.
            bounds: Either PartitionBound ranges, or ordered boundary values
                [b0, b1, ..., bn] producing n contiguous ranges.
            identity_key: Row identity columns (default: the primary key).
            default_partition: Add a DEFAULT partition catching everything
                outside the ranges. Gaps between ranges are then allowed.
            target_table: Name of the partitioned table
                (default: "<source>_partitioned").
            archive_table: Name the source gets at cutover
                (default: "<source><archive_suffix>").
            indexes: Indexes to rebuild (default: the source's indexes).
            constraints: Constraints to re-apply (default: the source's).
            migration_id: Explicit id (default: a new UUID).
            config: Overrides the planner's default configuration.

        Returns:
            The validated MigrationPlan.

        Raises:
            InvalidBoundaryError: Bad ranges, or the partition key does not exist.
            MissingKeyInIdentityError: A unique key excludes the partition key.
        """
        with self._tracer.span(
            "livepartition.planner.plan",
            {
                ATTR_SOURCE_TABLE: source.name,
                ATTR_PARTITION_KEY: partition_key,
            },
        ) as span:
            config = config or self._config
            if not source.has_column(partition_key):
                raise InvalidBoundaryError(
                    f"Partition key column {partition_key!r} does not exist in {source.name}"
                )

            target = self._name(target_table or child_name(source.name, TARGET_SUFFIX))
            archive = self._name(archive_table or f"{source.name}{config.archive_suffix}")
            if len({source.name, target, archive}) != 3:
                raise PlanningError(
                    "Source, target and archive table names must all differ",
                )

            normalized = self._normalize_bounds(target, bounds)
            self._validate_bounds(normalized, default_partition)
            default_name = child_name(target, DEFAULT_PARTITION_SUFFIX) if default_partition else None
            names = [b.name for b in normalized] + ([default_name] if default_name else [])
            if len(set(names)) != len(names) or target in names:
                raise InvalidBoundaryError("Partition names must be unique")

            identity = self._identity_key(source, partition_key, identity_key)
            kept_indexes = self._indexes(source, partition_key, identity, indexes)
            kept_constraints = tuple(source.constraints if constraints is None else constraints)
            for constraint in kept_constraints:
                unknown = [c for c in constraint.columns if not source.has_column(c)]
                if unknown:
                    raise PlanningError(
                        f"Constraint {constraint.name} references unknown column(s): "
                        f"{', '.join(unknown)}"
                    )

            plan = MigrationPlan(
                migration_id=migration_id or uuid4(),
                source=source,
                target_table=target,
                archive_table=archive,
                partition_key=partition_key,
                bounds=tuple(normalized),
                identity_key=identity,
                default_partition=default_name,
                indexes=kept_indexes,
                constraints=kept_constraints,
                sequences=tuple(source.sequences),
                config=config,
            )
            if span is not None and self._enable_tracing:
                span.set_attribute(ATTR_PARTITION_COUNT, len(plan.partition_names))

            logger.info(
                "Planned migration %s: %s -> %s partitioned by %s into %d partition(s)",
                plan.migration_id,
                source.name,
                target,
                partition_key,
                len(plan.partition_names),
            )
            return plan

    def render_ddl(self, plan: MigrationPlan) -> TargetDDL:
        """Target table DDL for a plan."""
        return render_target_ddl(plan)

    def check_coverage(self, plan: MigrationPlan, min_value: Any, max_value: Any) -> None:
        """
        Check that existing data fits inside the planned partitions.

        Only rows present now are checked. Without a DEFAULT partition, rows
        inserted later outside the bounds are rejected by the mirror trigger,
        which fails the application's INSERT.

        Args:
            plan: The migration plan.
            min_value: Smallest partition-key value in the source (None if empty).
            max_value: Largest partition-key value in the source (None if empty).

        Raises:
            InvalidBoundaryError: If some existing row would have no partition.
        """
        if plan.default_partition or min_value is None or max_value is None:
            return
        for value in (min_value, max_value):
            try:
                routed = plan.route(value)
            except TypeError as e:
                raise InvalidBoundaryError(
                    f"Partition key value {value!r} is not comparable with the bounds",
                    bound=value,
                ) from e
            if routed is None:
                raise InvalidBoundaryError(
                    f"Existing {plan.partition_key} value {value!r} falls outside every "
                    f"partition of {plan.target_table}",
                    bound=value,
                )

    @staticmethod
    def _name(name: str) -> str:
        try:
            return validate_identifier(name)
        except ValueError as e:
            raise PlanningError(str(e)) from e

    def _normalize_bounds(
        self,
        target: str,
        bounds: Sequence[PartitionBound] | Sequence[Any],
    ) -> list[PartitionBound]:
        items = list(bounds)
        if not items:
            raise InvalidBoundaryError("At least one partition range is required")

        explicit = [isinstance(b, PartitionBound) for b in items]
        if all(explicit):
            result = list(items)
        elif any(explicit):
            raise InvalidBoundaryError(
                "Bounds must be all PartitionBound ranges or all boundary values"
            )
        else:
            if len(items) < 2:
                raise InvalidBoundaryError(
                    "At least two boundary values are required to form a range",
                    bound=items[0],
                )
            result = [
                PartitionBound(
                    name=child_name(target, _suffix(index, lower)),
                    lower=lower,
                    upper=upper,
                )
                for index, (lower, upper) in enumerate(zip(items, items[1:]))
            ]

        for bound in result:
            try:
                validate_identifier(bound.name)
            except ValueError as e:
                raise InvalidBoundaryError(str(e), bound=bound.name) from e
        return result

    @staticmethod
    def _validate_bounds(bounds: list[PartitionBound], default_partition: bool) -> None:
        previous: PartitionBound | None = None
        for bound in bounds:
            if bound.lower is None or bound.upper is None:
                raise InvalidBoundaryError(
                    f"Partition {bound.name} has an open bound", bound=bound.name
                )
            try:
                if not bound.lower < bound.upper:
                    raise InvalidBoundaryError(
                        f"Partition {bound.name}: lower bound {bound.lower!r} must be "
                        f"below upper bound {bound.upper!r}",
                        bound=bound.name,
                    )
                if previous is not None:
                    if bound.lower < previous.lower:
                        raise InvalidBoundaryError(
                            f"Partition {bound.name} is out of order after {previous.name}",
                            bound=bound.name,
                        )
                    if bound.lower < previous.upper:
                        raise InvalidBoundaryError(
                            f"Partition {bound.name} overlaps {previous.name}",
                            bound=bound.name,
                        )
                    if bound.lower > previous.upper and not default_partition:
                        raise InvalidBoundaryError(
                            f"Gap between {previous.name} and {bound.name} "
                            f"({previous.upper!r} to {bound.lower!r}) with no default partition",
                            bound=bound.name,
                        )
            except TypeError as e:
                raise InvalidBoundaryError(
                    f"Partition {bound.name} has bounds that cannot be compared",
                    bound=bound.name,
                ) from e
            previous = bound

    @staticmethod
    def _identity_key(
        source: TableSchema,
        partition_key: str,
        identity_key: Sequence[str] | None,
    ) -> tuple[str, ...]:
        identity = tuple(identity_key) if identity_key is not None else source.primary_key
        if not identity:
            raise MissingKeyInIdentityError(
                f"Table {source.name} has no primary key; pass identity_key explicitly",
                partition_key=partition_key,
            )
        if len(set(identity)) != len(identity):
            raise MissingKeyInIdentityError(
                "Identity key columns must be distinct",
                identity_key=identity,
                partition_key=partition_key,
            )
        unknown = [c for c in identity if not source.has_column(c)]
        if unknown:
            raise MissingKeyInIdentityError(
                f"Identity key column(s) not in {source.name}: {', '.join(unknown)}",
                identity_key=identity,
                partition_key=partition_key,
            )
        if partition_key not in identity:
            raise MissingKeyInIdentityError(
                f"Identity key ({', '.join(identity)}) must include partition key "
                f"{partition_key!r}; uniqueness is only enforced per partition",
                identity_key=identity,
                partition_key=partition_key,
            )
        return identity

    @staticmethod
    def _indexes(
        source: TableSchema,
        partition_key: str,
        identity: tuple[str, ...],
        indexes: Sequence[IndexSpec] | None,
    ) -> tuple[IndexSpec, ...]:
        kept = []
        for index in source.indexes if indexes is None else indexes:
            unknown = [c for c in index.columns if not source.has_column(c)]
            if unknown:
                raise PlanningError(
                    f"Index {index.name} references unknown column(s): {', '.join(unknown)}"
                )
            if index.unique and partition_key not in index.columns:
                raise MissingKeyInIdentityError(
                    f"Unique index {index.name} must include partition key {partition_key!r}",
                    identity_key=index.columns,
                    partition_key=partition_key,
                    index_name=index.name,
                )
            if index.unique and tuple(index.columns) == identity:
                # already the target's primary key
                continue
            kept.append(index)
        return tuple(kept)


def _suffix(index: int, lower: Any) -> str:
    if isinstance(lower, datetime):
        return "p" + lower.strftime("%Y%m%d%H%M%S" if lower.time() != datetime.min.time() else "%Y%m%d")
    if isinstance(lower, date):
        return "p" + lower.strftime("%Y%m%d")
    return f"p{index}"


__all__ = ["SchemaPlanner", "TARGET_SUFFIX", "DEFAULT_PARTITION_SUFFIX"]
