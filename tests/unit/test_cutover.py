"""
Unit tests for CutoverController.

Tests cover:
- Atomic cutover: renames, sequence handover, trigger removal
- Forced failures inside the unit leave both tables unchanged
- Verification report gating (missing, stale, foreign, inconsistent)
- Rollback
- Recording a swap that committed before its state was saved
"""

from dataclasses import replace
from datetime import date, timedelta
from uuid import uuid4

import pytest
import pytest_asyncio

from livepartition.backends.interface import TransientBackendError
from livepartition.consistency import ConsistencyVerifier
from livepartition.cutover import CutoverController
from livepartition.exceptions import (
    CutoverAbortedError,
    ErrorRecoverability,
    MigrationStateError,
    VerificationFailedError,
)
from livepartition.models import SyncPhase, SyncState
from livepartition.observability import MockTracer

JAN_PARTITION = "orders_partitioned_p20240101"
FEB_PARTITION = "orders_partitioned_p20240201"


@pytest.fixture
def controller(populated_backend):
    return CutoverController(populated_backend, enable_tracing=False)


class TestCutover:
    """Tests for a successful CutoverController.cutover()."""

    @pytest.mark.asyncio
    async def test_partitioned_table_takes_source_name(
        self, controller, populated_backend, plan, ready_state
    ) -> None:
        result = await controller.cutover(plan, ready_state)

        assert result.migration_id == plan.migration_id
        assert result.primary_table == "orders"
        assert result.archive_table == "orders_archived"
        assert result.duration_ms >= 0

        assert ready_state.phase is SyncPhase.CUT_OVER
        assert ready_state.dual_write_link is None
        assert not populated_backend.has_table("orders_partitioned")
        assert len(populated_backend.rows("orders")) == 4
        assert len(populated_backend.rows(JAN_PARTITION)) == 2
        assert len(populated_backend.rows(FEB_PARTITION)) == 2
        assert len(populated_backend.rows("orders_archived")) == 4

    @pytest.mark.asyncio
    async def test_sequence_continues_on_new_table(
        self, controller, populated_backend, plan, ready_state, order_row
    ) -> None:
        """New ids come from the same sequence, now owned by the partitioned table."""
        await controller.cutover(plan, ready_state)

        row = await populated_backend.insert("orders", order_row(created_on=date(2024, 2, 29)))

        assert row["id"] == 5
        assert row in populated_backend.rows(FEB_PARTITION)
        assert populated_backend.sequence_owner("orders_id_seq") == ("orders", "id")

    @pytest.mark.asyncio
    async def test_mirroring_stops(
        self, controller, populated_backend, plan, ready_state, order_row
    ) -> None:
        """The archived table gets no writes after cutover."""
        await controller.cutover(plan, ready_state)
        await populated_backend.insert("orders", order_row())
        assert len(populated_backend.rows("orders_archived")) == 4
        assert len(populated_backend.rows("orders")) == 5

    @pytest.mark.asyncio
    async def test_cutover_traced(self, populated_backend, plan, ready_state) -> None:
        tracer = MockTracer()
        await CutoverController(populated_backend, tracer=tracer).cutover(plan, ready_state)
        assert "livepartition.cutover.cutover" in tracer.span_names


class TestCutoverAtomicity:
    """A failure at any step of the unit changes nothing."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "step",
        [
            "cutover.lock_tables",
            "cutover.retarget_sequences",
            "cutover.remove_dual_write",
            "cutover.rename_source",
            "cutover.rename_target",
        ],
    )
    async def test_forced_failure_leaves_tables_unchanged(
        self, controller, populated_backend, plan, ready_state, step
    ) -> None:
        source_before = populated_backend.rows("orders")
        target_before = populated_backend.rows("orders_partitioned")

        def fail(**context):
            raise RuntimeError(f"injected failure at {step}")

        populated_backend.on(step, fail)

        with pytest.raises(CutoverAbortedError) as exc_info:
            await controller.cutover(plan, ready_state)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert ready_state.phase is SyncPhase.READY_FOR_CUTOVER
        assert ready_state.dual_write_link is not None
        assert populated_backend.rows("orders") == source_before
        assert populated_backend.rows("orders_partitioned") == target_before
        assert not populated_backend.has_table("orders_archived")
        assert populated_backend.sequence_owner("orders_id_seq") == ("orders", "id")
        assert await populated_backend.dual_write_installed(plan, ready_state.dual_write_link)

    @pytest.mark.asyncio
    async def test_mirroring_continues_after_abort(
        self, controller, populated_backend, plan, ready_state, order_row
    ) -> None:
        def fail(**context):
            raise RuntimeError("rename failed")

        populated_backend.on("cutover.rename_target", fail)
        with pytest.raises(CutoverAbortedError):
            await controller.cutover(plan, ready_state)

        row = await populated_backend.insert("orders", order_row(created_on=date(2024, 1, 30)))
        assert row in populated_backend.rows(JAN_PARTITION)

    @pytest.mark.asyncio
    async def test_retry_after_abort_succeeds(
        self, controller, populated_backend, plan, ready_state
    ) -> None:
        failures = []

        def fail_once(**context):
            if not failures:
                failures.append(1)
                raise RuntimeError("rename failed")

        populated_backend.on("cutover.rename_source", fail_once)
        with pytest.raises(CutoverAbortedError) as exc_info:
            await controller.cutover(plan, ready_state)
        assert exc_info.value.recoverability is ErrorRecoverability.TRANSIENT

        result = await controller.cutover(plan, ready_state)
        assert result.archive_table == "orders_archived"
        assert ready_state.phase is SyncPhase.CUT_OVER

    @pytest.mark.asyncio
    async def test_lock_timeout_aborts(self, controller, populated_backend, plan, ready_state) -> None:
        """A long-running writer holding the table lock makes cutover give up."""
        quick = replace(plan, config=replace(plan.config, lock_timeout_ms=50))

        async with populated_backend._locks["orders"]:
            with pytest.raises(CutoverAbortedError) as exc_info:
                await controller.cutover(quick, ready_state)

        assert "lock timeout" in exc_info.value.reason
        assert isinstance(exc_info.value.__cause__, TransientBackendError)
        assert ready_state.phase is SyncPhase.READY_FOR_CUTOVER
        assert populated_backend.has_table("orders_partitioned")


class TestCutoverGate:
    """Tests for the preconditions checked before the unit runs."""

    @pytest.mark.asyncio
    async def test_wrong_phase_rejected(self, controller, plan, backfilled_state) -> None:
        with pytest.raises(MigrationStateError):
            await controller.cutover(plan, backfilled_state)

    @pytest.mark.asyncio
    async def test_missing_report_rejected(self, controller, plan, ready_state) -> None:
        ready_state.last_report = None
        with pytest.raises(VerificationFailedError):
            await controller.cutover(plan, ready_state)
        assert ready_state.phase is SyncPhase.READY_FOR_CUTOVER

    @pytest.mark.asyncio
    async def test_stale_report_rejected(self, controller, plan, ready_state) -> None:
        report = ready_state.last_report
        stale = replace(report, verified_at=report.verified_at - timedelta(hours=1))

        with pytest.raises(VerificationFailedError) as exc_info:
            await controller.cutover(plan, ready_state, stale)

        assert "verify again" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_foreign_report_rejected(self, controller, plan, ready_state) -> None:
        foreign = replace(ready_state.last_report, migration_id=uuid4())
        with pytest.raises(VerificationFailedError):
            await controller.cutover(plan, ready_state, foreign)

    @pytest.mark.asyncio
    async def test_inconsistent_report_rejected(
        self, controller, populated_backend, plan, ready_state, order_row
    ) -> None:
        await populated_backend.insert(
            "orders", order_row(id=99, created_on=date(2024, 1, 3)), fire_triggers=False
        )
        report = await ConsistencyVerifier(populated_backend, enable_tracing=False).check(plan)

        with pytest.raises(VerificationFailedError) as exc_info:
            await controller.cutover(plan, ready_state, report)

        assert exc_info.value.row_count_delta == 1
        assert populated_backend.has_table("orders_partitioned")
        assert not populated_backend.has_table("orders_archived")


class TestRollback:
    """Tests for CutoverController.rollback()."""

    @pytest.mark.asyncio
    async def test_rollback_keeps_source_authoritative(
        self, controller, populated_backend, plan, ready_state, order_row
    ) -> None:
        await controller.rollback(plan, ready_state)

        assert ready_state.phase is SyncPhase.ROLLED_BACK
        assert ready_state.dual_write_link is None
        assert populated_backend.has_table("orders_partitioned")

        await populated_backend.insert("orders", order_row())
        assert len(populated_backend.rows("orders")) == 5
        assert len(populated_backend.rows("orders_partitioned")) == 4

    @pytest.mark.asyncio
    async def test_rollback_during_backfill(self, controller, plan, backfilled_state) -> None:
        await controller.rollback(plan, backfilled_state)
        assert backfilled_state.phase is SyncPhase.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_second_rollback_rejected(self, controller, plan, ready_state) -> None:
        await controller.rollback(plan, ready_state)
        with pytest.raises(MigrationStateError):
            await controller.rollback(plan, ready_state)

    @pytest.mark.asyncio
    async def test_rollback_retries_failed_link_removal(
        self, controller, populated_backend, plan, ready_state, monkeypatch
    ) -> None:
        """A link left behind by a failed removal is removed on the next call."""

        async def unavailable(*args, **kwargs):
            raise TransientBackendError("connection refused")

        with monkeypatch.context() as patch:
            patch.setattr(populated_backend, "remove_dual_write", unavailable)
            with pytest.raises(TransientBackendError):
                await controller.rollback(plan, ready_state)

        assert ready_state.phase is SyncPhase.ROLLED_BACK
        assert ready_state.dual_write_link is not None

        await controller.rollback(plan, ready_state)
        assert ready_state.dual_write_link is None

    @pytest.mark.asyncio
    async def test_rollback_after_cutover_rejected(self, controller, plan, ready_state) -> None:
        await controller.cutover(plan, ready_state)
        with pytest.raises(MigrationStateError):
            await controller.rollback(plan, ready_state)
        assert ready_state.phase is SyncPhase.CUT_OVER


class TestCommittedButUnrecorded:
    """The swap committed, then the process died before the new phase was saved."""

    @pytest_asyncio.fixture
    async def unrecorded(self, controller, plan, ready_state):
        # the record as it was persisted before the swap
        saved = SyncState.from_dict(ready_state.to_dict())
        await controller.cutover(plan, ready_state)
        return saved

    @pytest.mark.asyncio
    async def test_cutover_records_swap_without_rerunning(
        self, controller, populated_backend, plan, unrecorded
    ) -> None:
        assert unrecorded.phase is SyncPhase.READY_FOR_CUTOVER
        assert await populated_backend.cutover_applied(plan)

        result = await controller.cutover(plan, unrecorded, report=None)

        assert result.archive_table == "orders_archived"
        assert result.duration_ms == 0.0
        assert unrecorded.phase is SyncPhase.CUT_OVER
        assert unrecorded.dual_write_link is None
        assert len(populated_backend.rows("orders")) == 4
        assert len(populated_backend.rows("orders_archived")) == 4

    @pytest.mark.asyncio
    async def test_rollback_refused(self, controller, populated_backend, plan, unrecorded) -> None:
        """Removing the link now would strand writes in the archive."""
        with pytest.raises(MigrationStateError) as exc_info:
            await controller.rollback(plan, unrecorded)

        assert "run cutover to record it" in str(exc_info.value)
        assert unrecorded.phase is SyncPhase.READY_FOR_CUTOVER
        assert unrecorded.dual_write_link is not None
        assert populated_backend.has_table("orders_archived")

    @pytest.mark.asyncio
    async def test_not_applied_before_swap(self, populated_backend, plan, ready_state) -> None:
        assert not await populated_backend.cutover_applied(plan)
