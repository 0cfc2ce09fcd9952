"""
Unit tests for livepartition models.

Tests cover:
- SyncPhase transitions and properties
- MigrationConfig validation and dict conversion
- BatchCursor movement
- VerificationReport deltas and age
- SyncState transitions, error recording and persistence form
"""

from dataclasses import FrozenInstanceError
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from livepartition.exceptions import InvalidPhaseTransitionError, RetryConfig
from livepartition.models import (
    BackfillProgress,
    BatchCursor,
    DualWriteLink,
    MigrationConfig,
    MigrationPlan,
    PartitionBound,
    SyncPhase,
    SyncState,
    TableStats,
    VerificationLevel,
    VerificationReport,
)


class TestSyncPhase:
    """Tests for the phase state machine."""

    def test_forward_path(self) -> None:
        """Each phase leads to exactly the next one."""
        path = [
            SyncPhase.PLANNED,
            SyncPhase.DUAL_WRITE_ACTIVE,
            SyncPhase.BACKFILLING,
            SyncPhase.VERIFYING,
            SyncPhase.CONSTRAINTS_RESTORING,
            SyncPhase.READY_FOR_CUTOVER,
            SyncPhase.CUT_OVER,
        ]
        for current, following in zip(path, path[1:]):
            assert current.can_transition_to(following)

    def test_no_skipping_phases(self) -> None:
        assert not SyncPhase.PLANNED.can_transition_to(SyncPhase.BACKFILLING)
        assert not SyncPhase.BACKFILLING.can_transition_to(SyncPhase.READY_FOR_CUTOVER)
        assert not SyncPhase.VERIFYING.can_transition_to(SyncPhase.CUT_OVER)

    def test_no_going_back(self) -> None:
        assert not SyncPhase.VERIFYING.can_transition_to(SyncPhase.BACKFILLING)

    def test_rollback_from_any_non_terminal_phase(self) -> None:
        for phase in SyncPhase:
            assert phase.can_transition_to(SyncPhase.ROLLED_BACK) is not phase.is_terminal

    def test_terminal_phases(self) -> None:
        """Nothing leaves CUT_OVER or ROLLED_BACK."""
        assert SyncPhase.CUT_OVER.is_terminal
        assert SyncPhase.ROLLED_BACK.is_terminal
        for phase in SyncPhase:
            assert not SyncPhase.CUT_OVER.can_transition_to(phase)
            assert not SyncPhase.ROLLED_BACK.can_transition_to(phase)

    def test_has_dual_write(self) -> None:
        assert not SyncPhase.PLANNED.has_dual_write
        assert SyncPhase.BACKFILLING.has_dual_write
        assert SyncPhase.READY_FOR_CUTOVER.has_dual_write
        assert not SyncPhase.CUT_OVER.has_dual_write


class TestMigrationConfig:
    """Tests for MigrationConfig."""

    def test_defaults(self) -> None:
        config = MigrationConfig()
        assert config.batch_size == 5000
        assert config.max_rows_per_second == 0
        assert config.reconcile_retries == 1
        assert config.lock_timeout_ms == 2000
        assert config.archive_suffix == "_archived"
        assert config.parallel_workers == 1
        assert config.deep_verify is False

    @pytest.mark.parametrize(
        "overrides",
        [
            {"batch_size": 0},
            {"max_rows_per_second": -1},
            {"reconcile_retries": -1},
            {"deep_check_sample_size": 0},
            {"lock_timeout_ms": 0},
            {"statement_timeout_ms": -5},
            {"max_report_age_seconds": 0},
            {"archive_suffix": ""},
            {"parallel_workers": 0},
        ],
    )
    def test_invalid_values_rejected(self, overrides) -> None:
        with pytest.raises(ValueError):
            MigrationConfig(**overrides)

    def test_dict_conversion_keeps_retry_policy(self) -> None:
        """The nested retry policy survives a dict conversion."""
        config = MigrationConfig(batch_size=100, batch_retry=RetryConfig(max_attempts=7))
        restored = MigrationConfig.from_dict(config.to_dict())
        assert restored == config
        assert restored.batch_retry.max_attempts == 7

    def test_from_dict_ignores_unknown_keys(self) -> None:
        config = MigrationConfig.from_dict({"batch_size": 10, "unknown_option": True})
        assert config.batch_size == 10


class TestPartitionBound:
    """Tests for PartitionBound."""

    def test_lower_inclusive_upper_exclusive(self) -> None:
        bound = PartitionBound("p", date(2024, 1, 1), date(2024, 2, 1))
        assert bound.contains(date(2024, 1, 1))
        assert bound.contains(date(2024, 1, 31))
        assert not bound.contains(date(2024, 2, 1))
        assert not bound.contains(None)


class TestBatchCursor:
    """Tests for BatchCursor."""

    def test_advance(self) -> None:
        cursor = BatchCursor().advance((5, date(2024, 1, 3)), 5)
        assert cursor.last_key == (5, date(2024, 1, 3))
        assert cursor.rows_copied == 5
        assert cursor.batches_completed == 1
        assert cursor.updated_at is not None

    def test_advance_without_key_keeps_position(self) -> None:
        cursor = BatchCursor(last_key=(5,)).advance(None, 0)
        assert cursor.last_key == (5,)
        assert cursor.batches_completed == 1

    def test_cannot_move_backwards(self) -> None:
        """The high-water mark only moves forward."""
        cursor = BatchCursor(last_key=(10,))
        with pytest.raises(ValueError):
            cursor.advance((3,), 1)

    def test_is_immutable(self) -> None:
        cursor = BatchCursor()
        with pytest.raises(FrozenInstanceError):
            cursor.last_key = (1,)  # type: ignore[misc]

    def test_reconciliation_pass_keeps_position(self) -> None:
        cursor = BatchCursor(last_key=(9,), rows_copied=9).with_reconciliation_pass(2)
        assert cursor.last_key == (9,)
        assert cursor.rows_copied == 11
        assert cursor.reconciliation_passes == 1

    def test_reset(self) -> None:
        cursor = BatchCursor(last_key=(9,), rows_copied=9, batches_completed=3).reset()
        assert cursor.last_key is None
        assert cursor.rows_copied == 0
        assert cursor.batches_completed == 0


class TestBackfillProgress:
    """Tests for BackfillProgress."""

    def test_progress_percent(self) -> None:
        progress = BackfillProgress(
            rows_copied=50, batches_completed=5, last_key=(50,), estimated_total=200
        )
        assert progress.progress_percent == 25.0

    def test_progress_percent_capped(self) -> None:
        """Rows inserted after the estimate can push the count past it."""
        progress = BackfillProgress(
            rows_copied=250, batches_completed=5, last_key=(250,), estimated_total=200
        )
        assert progress.progress_percent == 100.0

    def test_empty_table(self) -> None:
        progress = BackfillProgress(
            rows_copied=0, batches_completed=1, last_key=None, estimated_total=0, is_complete=True
        )
        assert progress.progress_percent == 100.0


class TestVerificationReport:
    """Tests for VerificationReport."""

    def _report(self, source: TableStats, target: TableStats, **kwargs) -> VerificationReport:
        return VerificationReport(
            migration_id=uuid4(),
            level=VerificationLevel.COUNT,
            source=source,
            target=target,
            **kwargs,
        )

    def test_consistent(self) -> None:
        report = self._report(TableStats(4, 123), TableStats(4, 123))
        assert report.row_count_delta == 0
        assert report.checksum_matches
        assert report.is_consistent

    def test_row_count_delta(self) -> None:
        report = self._report(TableStats(5, 123), TableStats(4, 100))
        assert report.row_count_delta == 1
        assert not report.is_consistent

    def test_same_count_different_keys(self) -> None:
        """Equal counts with different identities are caught by the checksum."""
        report = self._report(TableStats(4, 123), TableStats(4, 321))
        assert report.row_count_delta == 0
        assert not report.checksum_matches
        assert not report.is_consistent

    def test_mismatched_sample(self) -> None:
        report = self._report(
            TableStats(4, 123), TableStats(4, 123), mismatched_keys=((3, date(2024, 1, 2)),)
        )
        assert not report.is_consistent

    def test_age(self) -> None:
        verified_at = datetime(2024, 1, 1, tzinfo=UTC)
        report = self._report(TableStats(0, 0), TableStats(0, 0), verified_at=verified_at)
        assert report.age_seconds(verified_at + timedelta(seconds=90)) == 90.0

    def test_dict_conversion(self) -> None:
        report = self._report(
            TableStats(4, -17),
            TableStats(3, 12),
            partition_counts={"p1": 3},
            mismatched_keys=((3, date(2024, 1, 2)),),
        )
        data = report.to_dict()
        assert data["row_count_delta"] == 1
        assert data["is_consistent"] is False
        restored = VerificationReport.from_dict(data)
        assert restored == report


class TestSyncState:
    """Tests for SyncState."""

    def test_transition_records_history(self, plan: MigrationPlan) -> None:
        state = SyncState(plan=plan)
        state.transition_to(SyncPhase.DUAL_WRITE_ACTIVE)
        assert state.phase is SyncPhase.DUAL_WRITE_ACTIVE
        assert [h.phase for h in state.history] == [SyncPhase.DUAL_WRITE_ACTIVE]

    def test_invalid_transition_rejected(self, plan: MigrationPlan) -> None:
        state = SyncState(plan=plan)
        with pytest.raises(InvalidPhaseTransitionError) as exc_info:
            state.transition_to(SyncPhase.CUT_OVER)
        assert exc_info.value.current_phase is SyncPhase.PLANNED
        assert exc_info.value.target_phase is SyncPhase.CUT_OVER
        assert state.phase is SyncPhase.PLANNED

    def test_record_error(self, plan: MigrationPlan) -> None:
        state = SyncState(plan=plan)
        state.record_error(RuntimeError("boom"))
        state.record_error(RuntimeError("again"))
        assert state.error_count == 2
        assert state.last_error == "again"
        assert state.last_error_at is not None

    def test_migration_id_comes_from_plan(self, plan: MigrationPlan) -> None:
        assert SyncState(plan=plan).migration_id == plan.migration_id

    def test_persisted_form_restores_typed_keys(self, plan: MigrationPlan) -> None:
        """Dates in keys and bounds come back as dates, not strings."""
        state = SyncState(plan=plan)
        state.transition_to(SyncPhase.DUAL_WRITE_ACTIVE)
        state.dual_write_link = DualWriteLink(
            trigger_name="lp_mirror_x",
            function_name="lp_mirror_x_fn",
            column_mapping=(("id", "id"), ("created_on", "created_on")),
        )
        state.cursor = state.cursor.advance((2, date(2024, 1, 20)), 2)
        state.low_water_mark = (2, date(2024, 1, 20))

        restored = SyncState.from_dict(state.to_dict())

        assert restored.phase is SyncPhase.DUAL_WRITE_ACTIVE
        assert restored.cursor.last_key == (2, date(2024, 1, 20))
        assert restored.low_water_mark == (2, date(2024, 1, 20))
        assert restored.plan.bounds == plan.bounds
        assert restored.plan.source == plan.source
        assert restored.dual_write_link == state.dual_write_link
        assert restored.history == state.history

    def test_plan_dict_keeps_config(self, plan: MigrationPlan) -> None:
        restored = MigrationPlan.from_dict(plan.to_dict())
        assert restored.config == plan.config
        assert restored.identity_key == ("id", "created_on")
        assert restored.route(date(2024, 2, 10)) == "orders_partitioned_p20240201"

    def test_decimal_bounds_survive(self, planner, orders_schema) -> None:
        schema = orders_schema.model_copy(update={"primary_key": ("id", "amount")})
        plan = planner.plan(schema, "amount", [Decimal("0"), Decimal("100"), Decimal("1000")])
        restored = MigrationPlan.from_dict(plan.to_dict())
        assert restored.bounds[1].lower == Decimal("100")
