"""
MigrationCoordinator - Orchestrates the partition migration lifecycle.

The MigrationCoordinator is the primary entry point for running a live
partition migration. It loads the persisted SyncState, runs one phase
through the matching component (DualWriteCoordinator, BackfillEngine,
ConsistencyVerifier, ConstraintRestorer, CutoverController) and saves the
state again, so a crashed engine can be restarted and pick up at the last
committed phase.

Responsibilities:
    - Migration lifecycle management (create, run, pause, resume, roll back)
    - Phase gates: verification before constraints and before cutover
    - One engine per migration: every phase runs under an advisory lock
    - Recording errors on the persisted state
    - Status reporting

Usage:
    >>> coordinator = MigrationCoordinator(backend, state_repo, lock_manager)
    >>> plan = await coordinator.plan_migration("orders", "created_on", bounds)
    >>> state = await coordinator.create_migration(plan)
    >>> status = await coordinator.run(state.migration_id)
    >>> status.phase
    <SyncPhase.CUT_OVER: 'cut_over'>

See Also:
    - livepartition.models.SyncPhase for the state machine
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

from livepartition.backends.interface import PartitionBackend
from livepartition.backfill import BackfillEngine
from livepartition.consistency import ConsistencyVerifier
from livepartition.constraints import ConstraintRestorer
from livepartition.cutover import CutoverController
from livepartition.dual_write import DualWriteCoordinator
from livepartition.exceptions import (
    CUTOVER_RETRY_CONFIG,
    ErrorHandler,
    MigrationError,
    MigrationNotFoundError,
    MigrationStateError,
    PlanningError,
    RetryConfig,
)
from livepartition.locks import InMemoryLockManager, LockManager, migration_lock_key
from livepartition.models import (
    CutoverResult,
    DualWriteLink,
    MigrationConfig,
    MigrationPlan,
    MigrationStatus,
    PartitionBound,
    PhaseChange,
    ReconcileResult,
    RestoreResult,
    SyncPhase,
    SyncState,
    VerificationReport,
)
from livepartition.observability import Tracer, create_tracer
from livepartition.observability.attributes import (
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_PHASE,
    ATTR_SOURCE_TABLE,
)
from livepartition.planner import SchemaPlanner
from livepartition.repositories.state import MigrationStateRepository

logger = logging.getLogger(__name__)

VERIFY_PHASES = (
    SyncPhase.BACKFILLING,
    SyncPhase.VERIFYING,
    SyncPhase.CONSTRAINTS_RESTORING,
    SyncPhase.READY_FOR_CUTOVER,
)
RESTORE_PHASES = (SyncPhase.VERIFYING, SyncPhase.CONSTRAINTS_RESTORING)


class MigrationCoordinator:
    """
    Drives migrations phase by phase against persisted state.

    Each public phase method is safe to call again after a failure: it
    reloads the state, takes the migration's lock, and either resumes or
    raises MigrationStateError if the migration is in the wrong phase.

    Example:
        >>> coordinator = MigrationCoordinator(
        ...     backend=PostgreSQLBackend(engine),
        ...     state_repo=PostgreSQLMigrationStateRepository(engine),
        ...     lock_manager=PostgreSQLLockManager(engine),
        ... )
        >>> await coordinator.enable_dual_write(migration_id)
        >>> await coordinator.backfill(migration_id)
        >>> await coordinator.verify(migration_id)
        >>> await coordinator.restore_constraints(migration_id)
        >>> await coordinator.cutover(migration_id)
    """

    def __init__(
        self,
        backend: PartitionBackend,
        state_repo: MigrationStateRepository,
        lock_manager: LockManager | None = None,
        *,
        planner: SchemaPlanner | None = None,
        config: MigrationConfig | None = None,
        lock_timeout: float | None = 30.0,
        error_handler: ErrorHandler | None = None,
        cutover_retry: RetryConfig = CUTOVER_RETRY_CONFIG,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            backend: Database holding the source and target tables.
            state_repo: Repository for migration state.
            lock_manager: Advisory lock manager (default: in-process locks,
                which only coordinate engines inside this process).
            planner: Planner used by plan_migration().
            config: Default configuration for plan_migration().
            lock_timeout: Seconds to wait for a migration's lock.
            error_handler: Retry driver shared by backfill and cutover.
            cutover_retry: Retry policy for aborted cutovers.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._backend = backend
        self._state_repo = state_repo
        self._lock_manager: LockManager = lock_manager or InMemoryLockManager()
        self._planner = planner or SchemaPlanner(config, tracer=self._tracer)
        self._lock_timeout = lock_timeout
        self._error_handler = error_handler or ErrorHandler()
        self._cutover_retry = cutover_retry

        self._dual_write = DualWriteCoordinator(backend, tracer=self._tracer)
        self._verifier = ConsistencyVerifier(backend, tracer=self._tracer)
        self._restorer = ConstraintRestorer(backend, tracer=self._tracer)
        self._cutover = CutoverController(
            backend, self._dual_write, self._verifier, tracer=self._tracer
        )

        # Running backfills by migration_id, for pause/resume/cancel
        self._active_engines: dict[UUID, BackfillEngine] = {}

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def plan_migration(
        self,
        source_table: str,
        partition_key: str,
        bounds: Sequence[PartitionBound] | Sequence[Any],
        **options: Any,
    ) -> MigrationPlan:
        """
        Describe the live source table and plan its migration.

        Keyword options are passed to SchemaPlanner.plan().

        Raises:
            PlanningError: If the source table does not exist.
            InvalidBoundaryError: If the bounds are invalid.
            MissingKeyInIdentityError: If a unique key omits the partition key.
        """
        if not await self._backend.table_exists(source_table):
            raise PlanningError(f"Source table {source_table} does not exist")
        schema = await self._backend.describe_table(source_table)
        return self._planner.plan(schema, partition_key, bounds, **options)

    async def create_migration(self, plan: MigrationPlan) -> SyncState:
        """
        Persist a new migration in phase PLANNED.

        Checks that the rows already in the source fit the planned
        partitions before anything is created.

        Raises:
            InvalidBoundaryError: If existing rows fall outside every partition.
            MigrationAlreadyExistsError: If the source table already has an
                active migration.
        """
        with self._tracer.span(
            "livepartition.coordinator.create_migration",
            {ATTR_MIGRATION_ID: str(plan.migration_id), ATTR_SOURCE_TABLE: plan.source_table},
        ):
            value_range = await self._backend.value_range(plan.source_table, plan.partition_key)
            if value_range is not None:
                self._planner.check_coverage(plan, *value_range)

            state = SyncState(plan=plan)
            state.history.append(PhaseChange(SyncPhase.PLANNED, state.created_at))
            await self._state_repo.create(state)

            logger.info(
                "Created migration %s for %s -> %s",
                plan.migration_id,
                plan.source_table,
                plan.target_table,
            )
            return state

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def enable_dual_write(self, migration_id: UUID) -> DualWriteLink:
        """Create the target and start mirroring: PLANNED -> DUAL_WRITE_ACTIVE."""
        async with self._phase(migration_id, "enable_dual_write") as state:
            return await self._dual_write.enable(state.plan, state)

    async def backfill(self, migration_id: UUID) -> ReconcileResult:
        """
        Copy every historical row, then reconcile.

        Resumes from the persisted cursor (or low-water mark for parallel
        runs). Leaves the migration in BACKFILLING.

        Raises:
            IncompleteBackfillError: If rows are still missing after reconciliation.
        """
        async with self._phase(migration_id, "backfill") as state:
            plan = state.plan
            engine = BackfillEngine(
                self._backend,
                self._state_repo,
                error_handler=self._error_handler,
                tracer=self._tracer,
            )
            self._active_engines[migration_id] = engine
            try:
                if plan.config.parallel_workers > 1:
                    progress = await engine.run_parallel(plan, state)
                    complete = progress.is_complete
                else:
                    complete = False
                    async for progress in engine.run(plan, state):
                        complete = progress.is_complete
                if not complete:
                    raise MigrationStateError(
                        "Backfill was cancelled before it completed",
                        migration_id,
                        state.phase,
                        operation="backfill",
                    )
                return await engine.reconcile(plan, state)
            finally:
                self._active_engines.pop(migration_id, None)

    async def verify(self, migration_id: UUID) -> VerificationReport:
        """
        Compare source and target and record the report.

        From BACKFILLING this moves the migration to VERIFYING; from later
        phases it only refreshes the report. Uses a deep check when
        config.deep_verify is set.

        Raises:
            VerificationFailedError: If the report shows any delta. The
                report is still recorded and verification can be re-run.
        """
        async with self._phase(migration_id, "verify", VERIFY_PHASES) as state:
            if state.phase is SyncPhase.BACKFILLING:
                state.transition_to(SyncPhase.VERIFYING)
                await self._state_repo.save(state)
            report = await self._check(state)
            await self._state_repo.save(state)
            self._verifier.require_consistent(report, state)
            logger.info(
                "Verified %s: %d rows, checksums match",
                state.plan.source_table,
                report.source.row_count,
            )
            return report

    async def restore_constraints(self, migration_id: UUID) -> RestoreResult:
        """
        Rebuild indexes and constraints: VERIFYING -> CONSTRAINTS_RESTORING
        -> READY_FOR_CUTOVER.

        Raises:
            VerificationFailedError: If the last report is missing or inconsistent.
            ConstraintViolationError: If target rows violate a constraint.
                The migration stays CONSTRAINTS_RESTORING.
        """
        async with self._phase(migration_id, "restore_constraints", RESTORE_PHASES) as state:
            if state.phase is SyncPhase.VERIFYING:
                report = state.last_report or await self._check(state)
                self._verifier.require_consistent(report, state)
                state.transition_to(SyncPhase.CONSTRAINTS_RESTORING)
                await self._state_repo.save(state)

            result = await self._restorer.restore(state.plan, state)
            state.transition_to(SyncPhase.READY_FOR_CUTOVER)
            return result

    async def cutover(self, migration_id: UUID) -> CutoverResult:
        """
        Verify once more and swap the tables atomically.

        Aborted cutovers are retried with backoff; each attempt leaves
        everything as it was. If an earlier attempt committed the swap but
        crashed before saving, the swap is recorded without verifying again.

        Raises:
            VerificationFailedError: If the fresh report shows a delta.
            CutoverAbortedError: If every attempt failed. The migration
                stays READY_FOR_CUTOVER.
        """
        async with self._phase(
            migration_id, "cutover", [SyncPhase.READY_FOR_CUTOVER]
        ) as state:
            report: VerificationReport | None = None
            if not await self._backend.cutover_applied(state.plan):
                report = await self._check(state)
                await self._state_repo.save(state)

            return await self._error_handler.execute_with_retry(
                lambda: self._cutover.cutover(state.plan, state, report),
                "cutover",
                migration_id=migration_id,
                retry_config=self._cutover_retry,
            )

    async def rollback(self, migration_id: UUID) -> None:
        """
        Abandon the migration; the source stays authoritative.

        Cancels a running backfill first.
        """
        engine = self._active_engines.get(migration_id)
        if engine is not None:
            engine.cancel()
            engine.resume()
        async with self._phase(migration_id, "rollback") as state:
            await self._cutover.rollback(state.plan, state)

    async def run(self, migration_id: UUID) -> MigrationStatus:
        """
        Drive the migration through every remaining phase to CUT_OVER.

        Safe to call after a crash: each step starts from the persisted phase.
        """
        with self._tracer.span(
            "livepartition.coordinator.run",
            {ATTR_MIGRATION_ID: str(migration_id)},
        ):
            state = await self._load(migration_id)
            logger.info("Running migration %s from phase %s", migration_id, state.phase.value)

            if state.phase is SyncPhase.PLANNED:
                await self.enable_dual_write(migration_id)
                state = await self._load(migration_id)
            if state.phase in (SyncPhase.DUAL_WRITE_ACTIVE, SyncPhase.BACKFILLING):
                await self.backfill(migration_id)
                await self.verify(migration_id)
            elif state.phase is SyncPhase.VERIFYING:
                await self.verify(migration_id)
            state = await self._load(migration_id)
            if state.phase in RESTORE_PHASES:
                await self.restore_constraints(migration_id)
                state = await self._load(migration_id)
            if state.phase is SyncPhase.READY_FOR_CUTOVER:
                await self.cutover(migration_id)

            return await self.get_status(migration_id)

    # -------------------------------------------------------------------------
    # Backfill control
    # -------------------------------------------------------------------------

    def pause_backfill(self, migration_id: UUID) -> bool:
        """Pause a running backfill before its next batch. Returns False if none runs."""
        engine = self._active_engines.get(migration_id)
        if engine is None:
            return False
        engine.pause()
        return True

    def resume_backfill(self, migration_id: UUID) -> bool:
        engine = self._active_engines.get(migration_id)
        if engine is None:
            return False
        engine.resume()
        return True

    def cancel_backfill(self, migration_id: UUID) -> bool:
        """
        Stop a running backfill after its current batch.

        The cursor is saved; backfill() raises MigrationStateError and can
        be called again to resume.
        """
        engine = self._active_engines.get(migration_id)
        if engine is None:
            return False
        engine.cancel()
        engine.resume()
        return True

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def get_status(self, migration_id: UUID) -> MigrationStatus:
        """
        Get current migration status.

        Raises:
            MigrationNotFoundError: If migration not found
        """
        with self._tracer.span(
            "livepartition.coordinator.get_status",
            {ATTR_MIGRATION_ID: str(migration_id)},
        ):
            state = await self._load(migration_id)
            return await self._build_status(state)

    async def list_active_migrations(self) -> list[MigrationStatus]:
        """Status of every migration that is neither cut over nor rolled back."""
        return [await self._build_status(s) for s in await self._state_repo.list_active()]

    async def wait_for_phase(
        self,
        migration_id: UUID,
        phase: SyncPhase,
        *,
        timeout: float | None = None,
        poll_interval: float = 1.0,
    ) -> SyncState:
        """
        Poll until the migration reaches `phase` or a terminal phase.

        Raises:
            MigrationNotFoundError: If migration not found
            TimeoutError: If timeout exceeded
        """
        loop = asyncio.get_running_loop()
        start = loop.time()
        while True:
            state = await self._load(migration_id)
            if state.phase == phase or state.phase.is_terminal:
                return state
            if timeout is not None and loop.time() - start >= timeout:
                raise TimeoutError(f"Timeout waiting for phase {phase.value}")
            await asyncio.sleep(poll_interval)

    async def _build_status(self, state: SyncState) -> MigrationStatus:
        remaining = 0
        if state.phase in (SyncPhase.PLANNED, SyncPhase.DUAL_WRITE_ACTIVE, SyncPhase.BACKFILLING):
            estimate = await self._backend.estimate_rows(state.plan.source_table)
            remaining = max(0, estimate - state.cursor.rows_copied)
        return MigrationStatus(
            migration_id=state.migration_id,
            source_table=state.plan.source_table,
            target_table=state.plan.target_table,
            phase=state.phase,
            rows_migrated=state.cursor.rows_copied,
            rows_remaining=remaining,
            last_report=state.last_report,
            error_count=state.error_count,
            last_error=state.last_error,
            updated_at=state.updated_at,
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _load(self, migration_id: UUID) -> SyncState:
        state = await self._state_repo.get(migration_id)
        if state is None:
            raise MigrationNotFoundError(migration_id)
        return state

    async def _check(self, state: SyncState) -> VerificationReport:
        if state.plan.config.deep_verify:
            report = await self._verifier.deep_check(state.plan)
        else:
            report = await self._verifier.check(state.plan)
        state.last_report = report
        state.touch()
        return report

    @asynccontextmanager
    async def _phase(
        self,
        migration_id: UUID,
        operation: str,
        allowed: Sequence[SyncPhase] | None = None,
    ) -> AsyncIterator[SyncState]:
        """
        Run one phase: lock, load, yield the state, then save it.

        Errors are recorded on the state before it is saved and re-raised.
        """
        key = migration_lock_key(migration_id)
        with self._tracer.span(
            f"livepartition.coordinator.{operation}",
            {ATTR_MIGRATION_ID: str(migration_id)},
        ) as span:
            async with self._lock_manager.acquire(key, timeout=self._lock_timeout):
                state = await self._load(migration_id)
                if span is not None:
                    span.set_attribute(ATTR_MIGRATION_PHASE, state.phase.value)
                if allowed is not None and state.phase not in allowed:
                    raise MigrationStateError(
                        f"Cannot {operation.replace('_', ' ')} in phase {state.phase.value}",
                        migration_id,
                        state.phase,
                        allowed,
                        operation=operation,
                    )
                try:
                    yield state
                except MigrationError as e:
                    logger.log(
                        e.severity.log_level,
                        "%s failed for migration %s: %s [code=%s]",
                        operation,
                        migration_id,
                        e.message,
                        e.error_code,
                    )
                    if state.last_error != str(e):
                        state.record_error(e)
                    await self._state_repo.save(state)
                    raise
                except Exception as e:
                    logger.exception("%s failed for migration %s", operation, migration_id)
                    state.record_error(e)
                    await self._state_repo.save(state)
                    raise
                await self._state_repo.save(state)


__all__ = ["MigrationCoordinator"]
