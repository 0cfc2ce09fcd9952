"""
DualWriteCoordinator - Mirrors new source inserts into the target.

While a migration is in flight, application writes keep going to the
source table. The dual-write link (a trigger on PostgreSQL) applies every
insert to the partitioned target as well, inside the writer's own
transaction, so rows written after the backfill passed their key are
never lost.

Responsibilities:
    - Create the partitioned target table
    - Install and remove the mirroring link
    - Keep the link in SyncState so cutover and rollback can remove it

Consistency Guarantees:
    - The mirrored insert commits or rolls back with the source insert
    - Mirroring skips identities already present in the target, so it never
      conflicts with the backfill copying the same row
    - Only INSERT is mirrored; updates and deletes are not

Usage:
    >>> dual_write = DualWriteCoordinator(backend)
    >>> link = await dual_write.enable(plan, state)
    >>> state.phase
    <SyncPhase.DUAL_WRITE_ACTIVE: 'dual_write_active'>
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import UTC, datetime

from livepartition.backends.interface import PartitionBackend, TransientBackendError
from livepartition.exceptions import DualWriteError, MigrationStateError
from livepartition.models import (
    ConflictPolicy,
    DualWriteLink,
    MigrationPlan,
    MirroredOperation,
    SyncPhase,
    SyncState,
)
from livepartition.observability import Tracer, create_tracer
from livepartition.observability.attributes import (
    ATTR_MIGRATION_ID,
    ATTR_SOURCE_TABLE,
    ATTR_TARGET_TABLE,
)

logger = logging.getLogger(__name__)

ENABLE_PHASES = (SyncPhase.PLANNED, SyncPhase.DUAL_WRITE_ACTIVE)
DISABLE_PHASES = (SyncPhase.READY_FOR_CUTOVER, SyncPhase.ROLLED_BACK)


def build_link(
    plan: MigrationPlan,
    operations: Iterable[MirroredOperation] = (MirroredOperation.INSERT,),
) -> DualWriteLink:
    """
    The mirroring rule for a plan: same-named columns, skip known identities.

    Trigger and function names are derived from the migration ID, so
    installing twice replaces rather than duplicates.
    """
    prefix = f"lp_mirror_{plan.migration_id.hex[:8]}"
    return DualWriteLink(
        trigger_name=prefix,
        function_name=f"{prefix}_fn",
        column_mapping=tuple((c, c) for c in plan.columns),
        conflict_policy=ConflictPolicy.IGNORE_ON_DUPLICATE_IDENTITY,
        mirrored_operations=frozenset(operations),
    )


class DualWriteCoordinator:
    """
    Installs and removes the dual-write link.

    Example:
        >>> coordinator = DualWriteCoordinator(backend)
        >>> await coordinator.enable(plan, state)
        >>> await coordinator.is_enabled(plan, state)
        True
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

    async def enable(
        self,
        plan: MigrationPlan,
        state: SyncState,
        *,
        operations: Iterable[MirroredOperation] = (MirroredOperation.INSERT,),
    ) -> DualWriteLink:
        """
        Create the target table and start mirroring inserts into it.

        Idempotent: enabling an already-active link reinstalls it in place.
        Moves the state from PLANNED to DUAL_WRITE_ACTIVE.

        Without a DEFAULT partition, an application INSERT whose partition
        key falls outside every bound fails in the mirror trigger, and the
        INSERT itself is rolled back. A warning is logged when enabling such
        a plan.

        Args:
            plan: The migration plan.
            state: The migration's state record; updated in place.
            operations: Source operations to mirror. Only INSERT is supported.

        Returns:
            The installed link.

        Raises:
            MigrationStateError: If the migration is past DUAL_WRITE_ACTIVE.
            DualWriteError: If a non-INSERT operation is requested, or the
                trigger could not be installed.
        """
        if state.phase not in ENABLE_PHASES:
            raise MigrationStateError(
                f"Cannot enable dual-write in phase {state.phase.value}",
                state.migration_id,
                state.phase,
                ENABLE_PHASES,
                operation="enable_dual_write",
            )
        requested = frozenset(operations)
        if requested != {MirroredOperation.INSERT}:
            unsupported = sorted(op.value for op in requested - {MirroredOperation.INSERT})
            raise DualWriteError(
                "Only INSERT mirroring is supported; rows updated or deleted after "
                f"they were copied would diverge (requested: {', '.join(unsupported) or 'none'})",
                migration_id=state.migration_id,
                phase=state.phase,
            )

        link = state.dual_write_link or build_link(plan, requested)
        with self._tracer.span(
            "livepartition.dual_write.enable",
            {
                ATTR_MIGRATION_ID: str(plan.migration_id),
                ATTR_SOURCE_TABLE: plan.source_table,
                ATTR_TARGET_TABLE: plan.target_table,
            },
        ):
            try:
                await self._backend.create_target(plan)
                await self._backend.install_dual_write(plan, link)
            except TransientBackendError as e:
                raise DualWriteError(
                    f"Could not install dual-write on {plan.source_table}: {e}",
                    migration_id=state.migration_id,
                    phase=state.phase,
                ) from e

        if link.installed_at is None:
            link = replace(link, installed_at=datetime.now(UTC))
        state.dual_write_link = link
        if state.phase is SyncPhase.PLANNED:
            state.transition_to(SyncPhase.DUAL_WRITE_ACTIVE)
        else:
            state.touch()

        logger.info(
            "Dual-write active: %s -> %s (trigger %s)",
            plan.source_table,
            plan.target_table,
            link.trigger_name,
        )
        if plan.default_partition is None and plan.bounds:
            logger.warning(
                "%s has no DEFAULT partition: inserts into %s with %s outside "
                "[%r, %r) will fail in the mirror trigger and abort the application's INSERT",
                plan.target_table,
                plan.source_table,
                plan.partition_key,
                plan.bounds[0].lower,
                plan.bounds[-1].upper,
            )
        return link

    async def disable(self, plan: MigrationPlan, state: SyncState) -> None:
        """
        Stop mirroring. Removing an absent link is a no-op.

        Only permitted once the target is ready for cutover, or after a
        rollback; earlier, removing the link would silently lose writes.

        Raises:
            MigrationStateError: From any other phase.
        """
        if state.phase not in DISABLE_PHASES:
            raise MigrationStateError(
                f"Cannot disable dual-write in phase {state.phase.value}",
                state.migration_id,
                state.phase,
                DISABLE_PHASES,
                operation="disable_dual_write",
            )
        link = state.dual_write_link
        if link is None:
            return

        with self._tracer.span(
            "livepartition.dual_write.disable",
            {ATTR_MIGRATION_ID: str(plan.migration_id), ATTR_SOURCE_TABLE: plan.source_table},
        ):
            await self._backend.remove_dual_write(plan, link)
        state.dual_write_link = None
        state.touch()
        logger.info("Dual-write removed from %s", plan.source_table)

    async def is_enabled(self, plan: MigrationPlan, state: SyncState) -> bool:
        """Whether the recorded link is actually installed in the database."""
        if state.dual_write_link is None:
            return False
        return await self._backend.dual_write_installed(plan, state.dual_write_link)


__all__ = ["DualWriteCoordinator", "build_link"]
