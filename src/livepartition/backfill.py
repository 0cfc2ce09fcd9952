"""
BackfillEngine - Copies historical rows from the source into the target.

The backfill walks the source table in identity-key order, one bounded
batch per transaction, while the dual-write link mirrors new inserts. Every
batch uses INSERT ... ON CONFLICT DO NOTHING, so replaying a batch after a
crash, or copying a row the trigger already mirrored, is harmless.

Responsibilities:
    - Copy rows batch by batch from a persisted high-water mark
    - Persist the cursor after every committed batch for crash recovery
    - Rate limiting, pause/resume and cancellation
    - Reconciliation: a full re-scan from the start of the key space plus
      a bounded number of retry passes for rows the forward scan missed
    - Optional parallel backfill over disjoint key ranges

Performance Characteristics:
    - Batch size configurable (default 5000 rows)
    - Each batch holds row locks only for its own short transaction
    - Read-only on the source apart from the batch SELECT

Usage:
    >>> engine = BackfillEngine(backend, state_repo)
    >>> async for progress in engine.run(plan, state):
    ...     print(f"{progress.rows_copied} rows copied")
    >>> await engine.reconcile(plan, state)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING

from livepartition.backends.interface import PartitionBackend, TransientBackendError
from livepartition.exceptions import (
    BackfillBatchError,
    ErrorHandler,
    IncompleteBackfillError,
    MigrationError,
    MigrationStateError,
)
from livepartition.models import (
    BackfillProgress,
    BatchCursor,
    BatchResult,
    ConflictPolicy,
    KeyValue,
    MigrationPlan,
    ReconcileResult,
    SyncPhase,
    SyncState,
)
from livepartition.observability import Tracer, create_tracer
from livepartition.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_MIGRATION_ID,
    ATTR_RECONCILE_ATTEMPT,
    ATTR_ROWS_INSERTED,
    ATTR_ROWS_READ,
    ATTR_SOURCE_TABLE,
    ATTR_WORKERS,
)

if TYPE_CHECKING:
    from livepartition.repositories.state import MigrationStateRepository

logger = logging.getLogger(__name__)

BACKFILL_PHASES = (SyncPhase.DUAL_WRITE_ACTIVE, SyncPhase.BACKFILLING)

# Keys reported in IncompleteBackfillError.
STRAGGLER_SAMPLE_SIZE = 10


class RateLimiter:
    """
    Simple token bucket rate limiter for controlling row throughput.

    Tokens are refilled based on elapsed time. A rate of zero or less
    disables limiting.
    """

    def __init__(self, max_rate: int) -> None:
        self._max_rate = max_rate
        self._tokens = float(max_rate)
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def wait(self, count: int) -> None:
        """
        Wait for capacity to process `count` rows.

        If insufficient tokens are available, sleeps until enough
        tokens have been accumulated.
        """
        if self._max_rate <= 0:
            return

        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_update
            self._last_update = now

            self._tokens = min(
                self._max_rate,
                self._tokens + elapsed * self._max_rate,
            )

            if count > self._tokens:
                wait_time = (count - self._tokens) / self._max_rate
                await asyncio.sleep(wait_time)
                self._tokens = 0
            else:
                self._tokens -= count


class BackfillEngine:
    """
    Copies existing source rows into the partitioned target.

    Example:
        >>> engine = BackfillEngine(backend, state_repo)
        >>> async for progress in engine.run(plan, state):
        ...     print(f"Progress: {progress.progress_percent:.1f}%")
        >>> result = await engine.reconcile(plan, state)

    Attributes:
        _backend: Database backend holding both tables.
        _state_repo: Repository the cursor is persisted to after each batch.
        _error_handler: Retries transient batch failures.
        _is_cancelled: Flag indicating cancellation requested.
        _is_paused: Flag indicating operation is paused.
        _pause_event: Event for pause/resume synchronization.
    """

    def __init__(
        self,
        backend: PartitionBackend,
        state_repo: MigrationStateRepository | None = None,
        *,
        error_handler: ErrorHandler | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the backfill engine.

        Args:
            backend: Backend holding the source and target tables.
            state_repo: Where to persist the cursor. Without one, the caller
                is responsible for saving the state.
            error_handler: Retry driver for transient batch failures.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._backend = backend
        self._state_repo = state_repo
        self._error_handler = error_handler or ErrorHandler()

        self._is_cancelled = False
        self._is_paused = False
        self._pause_event = asyncio.Event()
        self._pause_event.set()

    async def run_batch(
        self,
        plan: MigrationPlan,
        cursor: BatchCursor,
        batch_size: int,
        *,
        upper_key: KeyValue | None = None,
    ) -> BatchResult:
        """
        Copy the next batch after `cursor` in one transaction.

        Idempotent: running the same batch twice inserts nothing the second
        time, because rows whose identity key is already in the target are
        skipped.

        Args:
            plan: The migration plan.
            cursor: Position to continue after.
            batch_size: Maximum rows to read.
            upper_key: Inclusive upper key bound (parallel workers only).

        Returns:
            BatchResult with the advanced cursor. A batch that reads nothing
            leaves the cursor unchanged.

        Raises:
            BackfillBatchError: If the batch failed; nothing was committed.
        """
        start = time.monotonic()
        with self._tracer.span(
            "livepartition.backfill.run_batch",
            {
                ATTR_MIGRATION_ID: str(plan.migration_id),
                ATTR_BATCH_SIZE: batch_size,
            },
        ) as span:
            try:
                copied = await self._backend.copy_batch(
                    plan,
                    cursor.last_key,
                    batch_size,
                    ConflictPolicy.IGNORE_ON_DUPLICATE_IDENTITY,
                    upper_key=upper_key,
                    statement_timeout_ms=plan.config.statement_timeout_ms,
                )
            except TransientBackendError as e:
                raise BackfillBatchError(
                    f"Backfill batch after key {cursor.last_key!r} failed: {e}",
                    migration_id=plan.migration_id,
                    cursor_key=cursor.last_key,
                ) from e
            if span is not None:
                span.set_attribute(ATTR_ROWS_READ, copied.rows_read)
                span.set_attribute(ATTR_ROWS_INSERTED, copied.rows_inserted)

        next_cursor = cursor
        if copied.rows_read:
            next_cursor = cursor.advance(copied.max_key, copied.rows_inserted)
        return BatchResult(
            cursor=next_cursor,
            rows_read=copied.rows_read,
            rows_inserted=copied.rows_inserted,
            is_last=copied.rows_read < batch_size,
            duration_ms=(time.monotonic() - start) * 1000,
        )

    async def run(
        self,
        plan: MigrationPlan,
        state: SyncState,
        progress_callback: Callable[[BackfillProgress], None] | None = None,
    ) -> AsyncIterator[BackfillProgress]:
        """
        Run the backfill from the persisted cursor to the end of the key space.

        Moves the migration from DUAL_WRITE_ACTIVE to BACKFILLING and saves
        the state after every batch, so an interrupted run resumes where it
        stopped.

        Args:
            plan: The migration plan.
            state: The migration's state record; updated in place.
            progress_callback: Optional callback for progress updates.

        Yields:
            BackfillProgress after every batch; the last one has is_complete set.

        Raises:
            MigrationStateError: If dual-write is not active.
            BackfillBatchError: If a batch keeps failing after retries.
        """
        await self._begin(plan, state)
        config = plan.config

        with self._tracer.span(
            "livepartition.backfill.run",
            {
                ATTR_MIGRATION_ID: str(plan.migration_id),
                ATTR_SOURCE_TABLE: plan.source_table,
                ATTR_BATCH_SIZE: config.batch_size,
            },
        ):
            self._is_cancelled = False
            start_time = time.monotonic()
            estimated_total = await self._backend.estimate_rows(plan.source_table)
            rate_limiter = RateLimiter(config.max_rows_per_second)

            logger.info(
                "Starting backfill of %s (~%d rows) after key %r",
                plan.source_table,
                estimated_total,
                state.cursor.last_key,
            )

            try:
                while True:
                    await self._wait_if_paused()
                    if self._is_cancelled:
                        break

                    cursor = state.cursor
                    result = await self._error_handler.execute_with_retry(
                        lambda: self.run_batch(plan, cursor, config.batch_size),
                        "backfill.run_batch",
                        migration_id=plan.migration_id,
                        retry_config=config.batch_retry,
                    )
                    state.cursor = result.cursor
                    state.touch()
                    await self._save(state)

                    await rate_limiter.wait(result.rows_read)

                    progress = BackfillProgress(
                        rows_copied=state.cursor.rows_copied,
                        batches_completed=state.cursor.batches_completed,
                        last_key=state.cursor.last_key,
                        estimated_total=estimated_total,
                        is_complete=result.is_last,
                    )
                    if progress_callback:
                        progress_callback(progress)
                    yield progress

                    if result.is_last:
                        break

            except Exception as e:
                logger.error("Backfill of %s failed: %s", plan.source_table, e)
                state.record_error(e)
                await self._save(state)
                if isinstance(e, MigrationError):
                    raise
                raise BackfillBatchError(
                    f"Backfill failed: {e}",
                    migration_id=plan.migration_id,
                    phase=state.phase,
                    cursor_key=state.cursor.last_key,
                ) from e

            logger.info(
                "Backfill of %s %s: %d rows in %.1fs",
                plan.source_table,
                "cancelled" if self._is_cancelled else "completed",
                state.cursor.rows_copied,
                time.monotonic() - start_time,
            )

    async def run_parallel(
        self,
        plan: MigrationPlan,
        state: SyncState,
        workers: int | None = None,
    ) -> BackfillProgress:
        """
        Backfill with several workers, each owning a disjoint key range.

        Ranges are split above the persisted low-water mark. The low-water
        mark is the greatest key below which every row has been copied; it
        only moves forward and is saved as workers make progress, so a
        restart repeats at most the work above it.

        Args:
            plan: The migration plan.
            state: The migration's state record; updated in place.
            workers: Worker count (defaults to config.parallel_workers).

        Returns:
            Final progress; is_complete is False if cancelled.
        """
        await self._begin(plan, state)
        workers = workers or plan.config.parallel_workers
        self._is_cancelled = False

        with self._tracer.span(
            "livepartition.backfill.run_parallel",
            {ATTR_MIGRATION_ID: str(plan.migration_id), ATTR_WORKERS: workers},
        ):
            start = state.low_water_mark
            splits = await self._backend.split_points(plan, start, workers)
            lowers: list[KeyValue | None] = [start, *splits]
            uppers: list[KeyValue | None] = [*splits, None]
            positions: list[KeyValue | None] = list(lowers)
            finished = [False] * len(lowers)
            inserted = [0]
            rate_limiter = RateLimiter(plan.config.max_rows_per_second)
            save_lock = asyncio.Lock()

            logger.info(
                "Starting parallel backfill of %s: %d range(s) after key %r",
                plan.source_table,
                len(lowers),
                start,
            )

            async def advance_low_water_mark() -> None:
                mark = state.low_water_mark
                for i in range(len(lowers)):
                    if positions[i] is not None:
                        mark = positions[i]
                    if not finished[i]:
                        break
                    if uppers[i] is not None:
                        mark = uppers[i]
                async with save_lock:
                    if mark is not None and (
                        state.low_water_mark is None or mark > state.low_water_mark
                    ):
                        state.low_water_mark = mark
                    state.touch()
                    await self._save(state)

            async def worker(index: int) -> None:
                cursor = BatchCursor(last_key=lowers[index])
                while True:
                    await self._wait_if_paused()
                    if self._is_cancelled:
                        return
                    current = cursor
                    result = await self._error_handler.execute_with_retry(
                        lambda: self.run_batch(
                            plan, current, plan.config.batch_size, upper_key=uppers[index]
                        ),
                        "backfill.run_batch",
                        migration_id=plan.migration_id,
                        retry_config=plan.config.batch_retry,
                    )
                    cursor = result.cursor
                    positions[index] = cursor.last_key
                    inserted[0] += result.rows_inserted
                    finished[index] = result.is_last
                    await advance_low_water_mark()
                    await rate_limiter.wait(result.rows_read)
                    if result.is_last:
                        return

            tasks = [asyncio.create_task(worker(i)) for i in range(len(lowers))]
            try:
                await asyncio.gather(*tasks)
            except Exception as e:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                logger.error("Parallel backfill of %s failed: %s", plan.source_table, e)
                state.record_error(e)
                await self._save(state)
                raise

            complete = all(finished)
            mark = state.low_water_mark
            if mark is not None and (state.cursor.last_key is None or mark >= state.cursor.last_key):
                state.cursor = state.cursor.advance(mark, inserted[0])
            state.touch()
            await self._save(state)

            logger.info(
                "Parallel backfill of %s %s: %d rows inserted",
                plan.source_table,
                "completed" if complete else "stopped",
                inserted[0],
            )
            return BackfillProgress(
                rows_copied=state.cursor.rows_copied,
                batches_completed=state.cursor.batches_completed,
                last_key=state.low_water_mark,
                estimated_total=await self._backend.estimate_rows(plan.source_table),
                is_complete=complete,
            )

    async def reconcile(self, plan: MigrationPlan, state: SyncState) -> ReconcileResult:
        """
        Catch rows the forward scan missed.

        A row inserted by a transaction that began before dual-write was
        installed can commit with a key behind the cursor after the cursor
        has passed it. The first pass re-scans the whole key space from the
        start; each further pass (up to config.reconcile_retries) copies
        exactly the keys still absent from the target.

        Returns:
            ReconcileResult with the rows recovered.

        Raises:
            MigrationStateError: If the migration is not BACKFILLING.
            IncompleteBackfillError: If rows are still missing after the
                last pass. The migration stays BACKFILLING.
        """
        if state.phase is not SyncPhase.BACKFILLING:
            raise MigrationStateError(
                f"Cannot reconcile in phase {state.phase.value}",
                state.migration_id,
                state.phase,
                [SyncPhase.BACKFILLING],
                operation="reconcile",
            )

        config = plan.config
        total_copied = 0
        passes = 0
        with self._tracer.span(
            "livepartition.backfill.reconcile",
            {ATTR_MIGRATION_ID: str(plan.migration_id), ATTR_SOURCE_TABLE: plan.source_table},
        ) as span:
            copied = await self._rescan(plan)
            passes += 1
            total_copied += copied
            state.cursor = state.cursor.with_reconciliation_pass(copied)
            await self._save(state)
            missing = await self._backend.count_missing(plan)
            logger.debug("Reconcile pass %d copied %d rows, %d missing", passes, copied, missing)

            while missing and passes <= config.reconcile_retries:
                copied = await self._copy_missing(plan)
                passes += 1
                total_copied += copied
                state.cursor = state.cursor.with_reconciliation_pass(copied)
                await self._save(state)
                missing = await self._backend.count_missing(plan)
                logger.debug(
                    "Reconcile pass %d copied %d rows, %d missing", passes, copied, missing
                )

            if span is not None:
                span.set_attribute(ATTR_RECONCILE_ATTEMPT, passes)
                span.set_attribute(ATTR_ROWS_INSERTED, total_copied)

            if missing:
                sample = await self._backend.missing_keys(plan, STRAGGLER_SAMPLE_SIZE)
                error = IncompleteBackfillError(
                    migration_id=plan.migration_id,
                    missing_count=missing,
                    sample_keys=sample,
                    attempts=passes,
                    phase=state.phase,
                )
                logger.error("%s", error)
                state.record_error(error)
                await self._save(state)
                raise error

        logger.info(
            "Reconciled %s: %d rows recovered in %d pass(es)",
            plan.source_table,
            total_copied,
            passes,
        )
        return ReconcileResult(passes=passes, rows_copied=total_copied)

    async def _rescan(self, plan: MigrationPlan) -> int:
        cursor = BatchCursor()
        copied = 0
        while True:
            current = cursor
            result = await self._error_handler.execute_with_retry(
                lambda: self.run_batch(plan, current, plan.config.batch_size),
                "backfill.reconcile",
                migration_id=plan.migration_id,
                retry_config=plan.config.batch_retry,
            )
            copied += result.rows_inserted
            cursor = result.cursor
            if result.is_last:
                return copied

    async def _copy_missing(self, plan: MigrationPlan) -> int:
        limit = plan.config.batch_size
        copied = 0
        while True:
            keys = await self._backend.missing_keys(plan, limit)
            if not keys:
                return copied
            inserted = await self._backend.copy_keys(
                plan, keys, ConflictPolicy.IGNORE_ON_DUPLICATE_IDENTITY
            )
            copied += inserted
            if len(keys) < limit or inserted == 0:
                return copied

    async def _begin(self, plan: MigrationPlan, state: SyncState) -> None:
        if state.phase not in BACKFILL_PHASES:
            raise MigrationStateError(
                f"Cannot backfill in phase {state.phase.value}",
                state.migration_id,
                state.phase,
                BACKFILL_PHASES,
                operation="backfill",
            )
        if state.dual_write_link is None:
            raise MigrationStateError(
                "Cannot backfill before dual-write is enabled",
                state.migration_id,
                state.phase,
                BACKFILL_PHASES,
                operation="backfill",
            )
        if state.phase is SyncPhase.DUAL_WRITE_ACTIVE:
            state.transition_to(SyncPhase.BACKFILLING)
            await self._save(state)

    async def _save(self, state: SyncState) -> None:
        if self._state_repo is not None:
            await self._state_repo.save(state)

    def cancel(self) -> None:
        """
        Cancel the backfill.

        The run stops after the current batch completes. The cursor is
        saved and the backfill can be resumed.
        """
        self._is_cancelled = True
        logger.info("Backfill cancellation requested")

    def pause(self) -> None:
        """Pause the backfill before its next batch."""
        self._is_paused = True
        self._pause_event.clear()
        logger.info("Backfill paused")

    def resume(self) -> None:
        self._is_paused = False
        self._pause_event.set()
        logger.info("Backfill resumed")

    @property
    def is_cancelled(self) -> bool:
        return self._is_cancelled

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    async def _wait_if_paused(self) -> None:
        if self._is_paused:
            await self._pause_event.wait()


__all__ = ["BackfillEngine", "RateLimiter"]
