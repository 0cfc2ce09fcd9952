"""
Unit tests for ConstraintRestorer.

Tests cover:
- Index builds on every partition
- Two-phase constraint restore (NOT VALID, then VALIDATE), then attach to the parent
- Skipping objects that are already in place on re-run
- Violations reported with the offending row
- Application writes running while the restore is in progress
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from livepartition.backends.in_memory import IntegrityViolation
from livepartition.backends.interface import TransientBackendError
from livepartition.constraints import ConstraintRestorer
from livepartition.exceptions import ConstraintViolationError
from livepartition.models import SyncPhase
from livepartition.observability import MockTracer

JAN_PARTITION = "orders_partitioned_p20240101"
FEB_PARTITION = "orders_partitioned_p20240201"


@pytest.fixture
def restorer(populated_backend):
    return ConstraintRestorer(populated_backend, enable_tracing=False)


@pytest.fixture
def restoring_state(backfilled_state):
    backfilled_state.transition_to(SyncPhase.VERIFYING)
    backfilled_state.transition_to(SyncPhase.CONSTRAINTS_RESTORING)
    return backfilled_state


class TestRestore:
    """Tests for ConstraintRestorer.restore()."""

    @pytest.mark.asyncio
    async def test_builds_indexes_and_validates_constraints(
        self, restorer, populated_backend, plan, restoring_state
    ) -> None:
        result = await restorer.restore(plan, restoring_state)

        assert result.indexes_built == ("orders_customer_idx",)
        assert result.constraints_added == ("orders_amount_positive",)
        assert result.constraints_validated == ("orders_amount_positive",)
        assert result.indexes_skipped == ()
        assert result.constraints_skipped == ()
        assert result.constraints_attached == ("orders_amount_positive",)

        assert await populated_backend.valid_indexes(plan) == {"orders_customer_idx"}
        states = await populated_backend.constraint_states(plan, plan.constraints[0])
        assert states == {JAN_PARTITION: True, FEB_PARTITION: True}
        assert await populated_backend.parent_constraints(plan) == {"orders_amount_positive"}

        target = await populated_backend.describe_table("orders_partitioned")
        assert [c.name for c in target.constraints] == ["orders_amount_positive"]
        assert [i.name for i in target.indexes] == ["orders_customer_idx"]

    @pytest.mark.asyncio
    async def test_rerun_skips_finished_objects(self, restorer, plan, restoring_state) -> None:
        await restorer.restore(plan, restoring_state)

        again = await restorer.restore(plan, restoring_state)

        assert again.indexes_built == ()
        assert again.indexes_skipped == ("orders_customer_idx",)
        assert again.constraints_added == ()
        assert again.constraints_validated == ()
        assert again.constraints_skipped == ("orders_amount_positive",)
        assert again.constraints_attached == ()

    @pytest.mark.asyncio
    async def test_resume_after_interrupted_validation(
        self, restorer, populated_backend, plan, restoring_state
    ) -> None:
        """Constraints left NOT VALID by a crash are validated, not re-added."""
        interrupted = []

        def crash_once(**context):
            if not interrupted:
                interrupted.append(context["partition"])
                raise ConnectionError("server closed the connection unexpectedly")

        populated_backend.on("validate_constraint", crash_once)

        with pytest.raises(ConnectionError):
            await restorer.restore(plan, restoring_state)
        states = await populated_backend.constraint_states(plan, plan.constraints[0])
        assert states == {JAN_PARTITION: False, FEB_PARTITION: False}

        result = await restorer.restore(plan, restoring_state)

        assert result.indexes_skipped == ("orders_customer_idx",)
        assert result.constraints_added == ()
        assert result.constraints_validated == ("orders_amount_positive",)

    @pytest.mark.asyncio
    async def test_violation_reports_offending_row(
        self, restorer, populated_backend, plan, restoring_state, order_row
    ) -> None:
        """A bad row stops validation; the constraint stays NOT VALID."""
        bad = await populated_backend.insert(
            "orders_partitioned",
            order_row(id=77, created_on=date(2024, 1, 9), amount=Decimal("-5.00")),
        )

        with pytest.raises(ConstraintViolationError) as exc_info:
            await restorer.restore(plan, restoring_state)

        error = exc_info.value
        assert error.constraint_name == "orders_amount_positive"
        assert error.offending_row == bad
        assert error.phase is SyncPhase.CONSTRAINTS_RESTORING
        assert f"partition {JAN_PARTITION}" in str(error)

        assert await populated_backend.valid_indexes(plan) == {"orders_customer_idx"}
        states = await populated_backend.constraint_states(plan, plan.constraints[0])
        assert states[JAN_PARTITION] is False

    @pytest.mark.asyncio
    async def test_not_valid_constraint_checks_new_rows(
        self, restorer, populated_backend, plan, restoring_state, order_row
    ) -> None:
        """Once added, the constraint rejects new writes even before validation."""
        await populated_backend.insert(
            "orders_partitioned",
            order_row(id=78, created_on=date(2024, 2, 9), amount=Decimal("-1.00")),
        )
        with pytest.raises(ConstraintViolationError):
            await restorer.restore(plan, restoring_state)

        with pytest.raises(IntegrityViolation):
            await populated_backend.insert(
                "orders", order_row(created_on=date(2024, 1, 10), amount=Decimal("-2.00"))
            )

    @pytest.mark.asyncio
    async def test_nothing_to_restore(
        self, populated_backend, planner, orders_schema, jan_feb_bounds
    ) -> None:
        plan = planner.plan(
            orders_schema, "created_on", jan_feb_bounds, indexes=(), constraints=()
        )
        await populated_backend.create_target(plan)

        result = await ConstraintRestorer(populated_backend, enable_tracing=False).restore(plan)

        assert result.indexes_built == ()
        assert result.constraints_validated == ()

    @pytest.mark.asyncio
    async def test_restore_traced(self, populated_backend, plan, restoring_state) -> None:
        tracer = MockTracer()
        await ConstraintRestorer(populated_backend, tracer=tracer).restore(plan, restoring_state)
        assert tracer.span_names == [
            "livepartition.restorer.build_index",
            "livepartition.restorer.validate_constraint",
            "livepartition.restorer.attach_constraint",
        ]

    @pytest.mark.asyncio
    async def test_attach_retried_on_rerun(
        self, restorer, populated_backend, plan, restoring_state
    ) -> None:
        """A lock timeout on the parent leaves the validated partitions for the next run."""
        attempts = []

        def lock_timeout_once(**context):
            attempts.append(context["constraint"].name)
            if len(attempts) == 1:
                raise TransientBackendError("canceling statement due to lock timeout")

        populated_backend.on("attach_constraint", lock_timeout_once)

        with pytest.raises(TransientBackendError):
            await restorer.restore(plan, restoring_state)
        assert await populated_backend.parent_constraints(plan) == set()

        result = await restorer.restore(plan, restoring_state)

        assert result.constraints_validated == ()
        assert result.constraints_attached == ("orders_amount_positive",)
        assert attempts == ["orders_amount_positive", "orders_amount_positive"]


class TestWritesDuringRestore:
    """Application writes keep flowing while indexes and constraints are restored."""

    @pytest.mark.asyncio
    async def test_insert_during_index_build_is_mirrored(
        self, restorer, populated_backend, plan, restoring_state, order_row
    ) -> None:
        written = []

        async def writer():
            # restore runs first and yields inside the partition index build
            written.append(await populated_backend.valid_indexes(plan))
            for day in (6, 7, 8):
                await populated_backend.insert("orders", order_row(created_on=date(2024, 2, day)))
                await asyncio.sleep(0)

        result, _ = await asyncio.gather(restorer.restore(plan, restoring_state), writer())

        assert written == [set()]
        assert result.indexes_built == ("orders_customer_idx",)
        source_ids = sorted(r["id"] for r in populated_backend.rows("orders"))
        target_ids = sorted(r["id"] for r in populated_backend.rows("orders_partitioned"))
        assert source_ids == target_ids == [1, 2, 3, 4, 5, 6, 7]

    @pytest.mark.asyncio
    async def test_writes_between_add_and_validate(
        self, restorer, populated_backend, plan, restoring_state, order_row
    ) -> None:
        """Valid rows go through; rows breaking a NOT VALID constraint are refused."""
        outcomes = []

        async def write_before_validate(**context):
            if outcomes:
                return
            row = await populated_backend.insert("orders", order_row(created_on=date(2024, 1, 25)))
            outcomes.append(row["id"])
            try:
                await populated_backend.insert(
                    "orders", order_row(created_on=date(2024, 1, 26), amount=Decimal("-3.00"))
                )
            except IntegrityViolation:
                outcomes.append("rejected")

        populated_backend.on("validate_constraint", write_before_validate)

        result = await restorer.restore(plan, restoring_state)

        assert outcomes == [5, "rejected"]
        assert result.constraints_validated == ("orders_amount_positive",)
        assert result.constraints_attached == ("orders_amount_positive",)
        assert [r["id"] for r in populated_backend.rows(JAN_PARTITION)] == [1, 2, 5]
        assert all(r["amount"] >= 0 for r in populated_backend.rows("orders"))
