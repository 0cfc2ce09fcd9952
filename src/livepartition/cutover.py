"""
CutoverController - Makes the partitioned table authoritative, or abandons it.

Cutover is the only step of a migration that takes blocking locks, and it
is all-or-nothing: either both renames, the sequence handover and the
trigger removal commit together, or none of them happen.

Cutover Sequence (one transaction, bounded lock wait):
    1. Lock source and target ACCESS EXCLUSIVE
    2. Move sequence ownership to the target
    3. Drop the dual-write trigger
    4. Rename source -> archive name
    5. Rename target -> source's name

Usage:
    >>> controller = CutoverController(backend, dual_write)
    >>> result = await controller.cutover(plan, state, report)
    >>> result.archive_table
    'orders_archived'
"""

from __future__ import annotations

import logging
import time

from livepartition.backends.interface import PartitionBackend
from livepartition.consistency import ConsistencyVerifier
from livepartition.dual_write import DualWriteCoordinator
from livepartition.exceptions import (
    CutoverAbortedError,
    MigrationStateError,
    VerificationFailedError,
)
from livepartition.models import (
    CutoverResult,
    MigrationPlan,
    SyncPhase,
    SyncState,
    VerificationReport,
)
from livepartition.observability import Tracer, create_tracer
from livepartition.observability.attributes import (
    ATTR_CUTOVER_DURATION_MS,
    ATTR_LOCK_TIMEOUT_MS,
    ATTR_MIGRATION_ID,
    ATTR_SOURCE_TABLE,
    ATTR_TARGET_TABLE,
)

logger = logging.getLogger(__name__)


class CutoverController:
    """
    Performs the atomic cutover and rollback.

    Example:
        >>> controller = CutoverController(backend, DualWriteCoordinator(backend))
        >>> try:
        ...     await controller.cutover(plan, state, report)
        ... except CutoverAbortedError:
        ...     ...  # nothing changed; retry later
    """

    def __init__(
        self,
        backend: PartitionBackend,
        dual_write: DualWriteCoordinator | None = None,
        verifier: ConsistencyVerifier | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._backend = backend
        self._dual_write = dual_write or DualWriteCoordinator(backend, tracer=self._tracer)
        self._verifier = verifier or ConsistencyVerifier(backend, tracer=self._tracer)

    async def cutover(
        self,
        plan: MigrationPlan,
        state: SyncState,
        report: VerificationReport | None = None,
    ) -> CutoverResult:
        """
        Swap the partitioned target in under the source's name.

        Args:
            plan: The migration plan.
            state: The migration's state record; updated in place on success.
            report: Verification report to gate on (defaults to state.last_report).
                It must belong to this migration, be younger than
                config.max_report_age_seconds and show no delta.

        If the swap already committed but the state record still reads
        READY_FOR_CUTOVER (a crash before the save), the cutover is recorded
        without running the unit again and without a report.

        Returns:
            CutoverResult with the time spent inside the atomic unit.

        Raises:
            MigrationStateError: If the migration is not READY_FOR_CUTOVER.
            VerificationFailedError: If the report is missing, stale or shows a delta.
            CutoverAbortedError: If the atomic unit failed. Everything was
                reverted and the migration is still READY_FOR_CUTOVER.
        """
        if state.phase is not SyncPhase.READY_FOR_CUTOVER:
            raise MigrationStateError(
                f"Cannot cut over in phase {state.phase.value}",
                state.migration_id,
                state.phase,
                [SyncPhase.READY_FOR_CUTOVER],
                operation="cutover",
            )
        if await self._backend.cutover_applied(plan):
            # committed earlier, but the state record was never saved
            logger.warning(
                "Cutover of %s already committed; recording it for migration %s",
                plan.source_table,
                plan.migration_id,
            )
            return self._complete(plan, state, 0.0)
        report = report or state.last_report
        self._check_report(plan, state, report)
        assert report is not None

        config = plan.config
        with self._tracer.span(
            "livepartition.cutover.cutover",
            {
                ATTR_MIGRATION_ID: str(plan.migration_id),
                ATTR_SOURCE_TABLE: plan.source_table,
                ATTR_TARGET_TABLE: plan.target_table,
                ATTR_LOCK_TIMEOUT_MS: config.lock_timeout_ms,
            },
        ) as span:
            start = time.monotonic()
            try:
                async with self._backend.cutover_unit(
                    plan, state.dual_write_link, config.lock_timeout_ms
                ) as unit:
                    await unit.lock_tables()
                    await unit.retarget_sequences()
                    await unit.remove_dual_write()
                    await unit.rename_source()
                    await unit.rename_target()
            except Exception as e:
                logger.warning("Cutover of %s aborted and reverted: %s", plan.source_table, e)
                raise CutoverAbortedError(
                    str(e) or type(e).__name__,
                    migration_id=plan.migration_id,
                    phase=state.phase,
                ) from e
            duration_ms = (time.monotonic() - start) * 1000
            if span is not None:
                span.set_attribute(ATTR_CUTOVER_DURATION_MS, duration_ms)

        return self._complete(plan, state, duration_ms)

    def _complete(self, plan: MigrationPlan, state: SyncState, duration_ms: float) -> CutoverResult:
        state.dual_write_link = None
        state.transition_to(SyncPhase.CUT_OVER)
        logger.info(
            "Cut over %s: partitioned table is live, old table archived as %s (%.1fms)",
            plan.source_table,
            plan.archive_table,
            duration_ms,
        )
        return CutoverResult(
            migration_id=plan.migration_id,
            primary_table=plan.source_table,
            archive_table=plan.archive_table,
            duration_ms=duration_ms,
        )

    def _check_report(
        self,
        plan: MigrationPlan,
        state: SyncState,
        report: VerificationReport | None,
    ) -> None:
        if report is None:
            raise VerificationFailedError(
                "Cutover requires a verification report",
                migration_id=state.migration_id,
                phase=state.phase,
            )
        if report.migration_id != plan.migration_id:
            raise VerificationFailedError(
                f"Verification report belongs to migration {report.migration_id}",
                migration_id=state.migration_id,
                phase=state.phase,
            )
        age = report.age_seconds()
        if age > plan.config.max_report_age_seconds:
            raise VerificationFailedError(
                f"Verification report is {age:.0f}s old "
                f"(limit {plan.config.max_report_age_seconds}s); verify again",
                migration_id=state.migration_id,
                phase=state.phase,
                row_count_delta=report.row_count_delta,
                checksum_matches=report.checksum_matches,
            )
        self._verifier.require_consistent(report, state)

    async def rollback(self, plan: MigrationPlan, state: SyncState) -> None:
        """
        Abandon the migration. The source stays authoritative.

        The dual-write link is removed; the target table is left in place
        for inspection. Calling rollback again on a ROLLED_BACK migration
        retries a link removal that failed the first time.

        Raises:
            MigrationStateError: After cutover (including a committed swap whose
                state was never saved), or if nothing is left to undo.
        """
        if state.phase is SyncPhase.ROLLED_BACK:
            if state.dual_write_link is None:
                raise MigrationStateError(
                    "Migration is already rolled back",
                    state.migration_id,
                    state.phase,
                    operation="rollback",
                )
        elif state.phase.is_terminal:
            raise MigrationStateError(
                f"Cannot roll back in phase {state.phase.value}",
                state.migration_id,
                state.phase,
                [p for p in SyncPhase if not p.is_terminal],
                operation="rollback",
            )
        elif state.phase is SyncPhase.READY_FOR_CUTOVER and await self._backend.cutover_applied(plan):
            raise MigrationStateError(
                f"{plan.target_table} is already live as {plan.source_table}; "
                "run cutover to record it",
                state.migration_id,
                state.phase,
                operation="rollback",
            )
        else:
            state.transition_to(SyncPhase.ROLLED_BACK)

        with self._tracer.span(
            "livepartition.cutover.rollback",
            {ATTR_MIGRATION_ID: str(plan.migration_id), ATTR_SOURCE_TABLE: plan.source_table},
        ):
            await self._dual_write.disable(plan, state)
        logger.info(
            "Rolled back migration %s; %s remains authoritative, %s kept for inspection",
            plan.migration_id,
            plan.source_table,
            plan.target_table,
        )


__all__ = ["CutoverController"]
