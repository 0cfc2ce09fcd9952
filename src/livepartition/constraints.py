"""
ConstraintRestorer - Rebuilds indexes and constraints on the target.

The target is created bare so the backfill does not pay for index
maintenance. Before cutover, every index and constraint of the source is
rebuilt on it without ever holding a write-blocking lock for longer than a
single catalog step:

    - Indexes: invalid parent index ON ONLY the partitioned table, then
      CREATE INDEX CONCURRENTLY on each partition, then ATTACH
    - Constraints: ADD ... NOT VALID on each partition (instant), then
      VALIDATE CONSTRAINT in a second pass (SHARE UPDATE EXCLUSIVE only),
      then ADD CONSTRAINT on the parent, which adopts the validated
      partition constraints without a rescan

Re-running is safe: finished indexes and constraints are skipped, and
half-built objects left by a crash are rebuilt.

Usage:
    >>> restorer = ConstraintRestorer(backend)
    >>> result = await restorer.restore(plan)
    >>> result.indexes_built
    ('orders_customer_idx',)
"""

from __future__ import annotations

import logging

from livepartition.backends.interface import ConstraintValidationFailed, PartitionBackend
from livepartition.exceptions import ConstraintViolationError
from livepartition.models import MigrationPlan, RestoreResult, SyncState
from livepartition.observability import Tracer, create_tracer
from livepartition.observability.attributes import ATTR_MIGRATION_ID, ATTR_OBJECT_NAME

logger = logging.getLogger(__name__)


class ConstraintRestorer:
    """
    Restores the planned indexes and constraints on the partitioned target.

    Example:
        >>> restorer = ConstraintRestorer(backend)
        >>> try:
        ...     await restorer.restore(plan, state)
        ... except ConstraintViolationError as e:
        ...     print(e.constraint_name, e.offending_row)
    """

    def __init__(
        self,
        backend: PartitionBackend,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._backend = backend

    async def restore(self, plan: MigrationPlan, state: SyncState | None = None) -> RestoreResult:
        """
        Build missing indexes, then add, validate and attach missing constraints.

        Args:
            plan: The migration plan.
            state: Optional state record, used for error context only.

        Returns:
            RestoreResult listing what was built and what was skipped.

        Raises:
            ConstraintViolationError: If a constraint fails validation. The
                constraint stays NOT VALID; indexes already built are kept.
        """
        built: list[str] = []
        skipped_indexes: list[str] = []
        added: list[str] = []
        validated: list[str] = []
        skipped_constraints: list[str] = []

        valid = await self._backend.valid_indexes(plan)
        for index in plan.indexes:
            if index.name in valid:
                skipped_indexes.append(index.name)
                continue
            with self._tracer.span(
                "livepartition.restorer.build_index",
                {ATTR_MIGRATION_ID: str(plan.migration_id), ATTR_OBJECT_NAME: index.name},
            ):
                await self._backend.build_index(plan, index)
            built.append(index.name)
            logger.info("Built index %s on %s", index.name, plan.target_table)

        # First pass: every missing constraint goes in NOT VALID.
        pending: list[tuple[str, list[str]]] = []
        for constraint in plan.constraints:
            states = await self._backend.constraint_states(plan, constraint)
            missing = [p for p in plan.partition_names if p not in states]
            for partition in missing:
                await self._backend.add_constraint_not_valid(plan, constraint, partition)
            if missing:
                added.append(constraint.name)
            unvalidated = [p for p in plan.partition_names if not states.get(p, False)]
            if unvalidated:
                pending.append((constraint.name, unvalidated))
            else:
                skipped_constraints.append(constraint.name)

        # Second pass: validate.
        by_name = {c.name: c for c in plan.constraints}
        for name, partitions in pending:
            constraint = by_name[name]
            with self._tracer.span(
                "livepartition.restorer.validate_constraint",
                {ATTR_MIGRATION_ID: str(plan.migration_id), ATTR_OBJECT_NAME: name},
            ):
                for partition in partitions:
                    try:
                        await self._backend.validate_constraint(plan, constraint, partition)
                    except ConstraintValidationFailed as e:
                        row = await self._backend.find_violation(plan, constraint, partition)
                        logger.error(
                            "Constraint %s failed validation on %s: %r",
                            name,
                            partition,
                            row,
                        )
                        raise ConstraintViolationError(
                            constraint_name=name,
                            offending_row=row,
                            migration_id=plan.migration_id,
                            phase=state.phase if state is not None else None,
                            detail=e.detail or f"partition {partition}",
                        ) from e
            validated.append(name)
            logger.info("Validated constraint %s on %s", name, plan.target_table)

        # Third pass: declare on the parent, adopting the validated copies.
        attached: list[str] = []
        on_parent = await self._backend.parent_constraints(plan)
        for constraint in plan.constraints:
            if constraint.name in on_parent:
                continue
            with self._tracer.span(
                "livepartition.restorer.attach_constraint",
                {ATTR_MIGRATION_ID: str(plan.migration_id), ATTR_OBJECT_NAME: constraint.name},
            ):
                await self._backend.attach_constraint(plan, constraint, plan.config.lock_timeout_ms)
            attached.append(constraint.name)
            logger.info("Attached constraint %s to %s", constraint.name, plan.target_table)

        return RestoreResult(
            indexes_built=tuple(built),
            indexes_skipped=tuple(skipped_indexes),
            constraints_added=tuple(added),
            constraints_validated=tuple(validated),
            constraints_skipped=tuple(skipped_constraints),
            constraints_attached=tuple(attached),
        )


__all__ = ["ConstraintRestorer"]
