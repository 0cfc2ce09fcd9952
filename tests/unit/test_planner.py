"""
Unit tests for SchemaPlanner.

Tests cover:
- Partition naming from boundary values
- Bound validation (order, overlap, gaps, open and mixed bounds)
- Identity key and unique index checks
- Default partition handling
- Coverage checks against existing data
"""

from datetime import date, datetime
from uuid import uuid4

import pytest

from livepartition.exceptions import (
    InvalidBoundaryError,
    MissingKeyInIdentityError,
    PlanningError,
)
from livepartition.models import MigrationConfig, PartitionBound
from livepartition.planner import SchemaPlanner
from livepartition.schema import ColumnSpec, IndexSpec, TableSchema


class TestPlanNaming:
    """Tests for names derived by the planner."""

    def test_monthly_partitions_named_after_lower_bound(self, plan) -> None:
        """Date bounds produce one partition per range named by its lower date."""
        assert plan.partition_names == (
            "orders_partitioned_p20240101",
            "orders_partitioned_p20240201",
        )
        assert plan.bounds[0].lower == date(2024, 1, 1)
        assert plan.bounds[0].upper == date(2024, 2, 1)
        assert plan.bounds[1].upper == date(2024, 3, 1)

    def test_default_table_names(self, plan) -> None:
        """Target and archive names derive from the source name."""
        assert plan.source_table == "orders"
        assert plan.target_table == "orders_partitioned"
        assert plan.archive_table == "orders_archived"

    def test_integer_bounds_use_ordinal_suffix(self, planner, orders_schema) -> None:
        """Non-temporal bounds are numbered."""
        schema = orders_schema.model_copy(update={"primary_key": ("id",)})
        plan = planner.plan(schema, "id", [0, 1000, 2000])
        assert plan.partition_names == ("orders_partitioned_p0", "orders_partitioned_p1")

    def test_datetime_bounds_with_time_keep_the_time(self, planner) -> None:
        """Sub-day datetime bounds include the time in the partition name."""
        schema = TableSchema(
            name="events",
            columns=(
                ColumnSpec(name="id", sql_type="bigint", nullable=False),
                ColumnSpec(name="at", sql_type="timestamptz", nullable=False),
            ),
            primary_key=("id", "at"),
        )
        plan = planner.plan(
            schema,
            "at",
            [datetime(2024, 1, 1), datetime(2024, 1, 1, 12), datetime(2024, 1, 2)],
        )
        assert plan.partition_names == ("events_partitioned_p20240101", "events_partitioned_p20240101120000")

    def test_explicit_names_and_archive(self, planner, orders_schema, jan_feb_bounds) -> None:
        """Explicit target and archive names are used as given."""
        plan = planner.plan(
            orders_schema,
            "created_on",
            jan_feb_bounds,
            target_table="orders_v2",
            archive_table="orders_old",
        )
        assert plan.target_table == "orders_v2"
        assert plan.archive_table == "orders_old"
        assert plan.partition_names[0] == "orders_v2_p20240101"

    def test_archive_suffix_from_config(self, orders_schema, jan_feb_bounds) -> None:
        """The archive name uses the configured suffix."""
        planner = SchemaPlanner(MigrationConfig(archive_suffix="_legacy"), enable_tracing=False)
        plan = planner.plan(orders_schema, "created_on", jan_feb_bounds)
        assert plan.archive_table == "orders_legacy"

    def test_explicit_migration_id(self, planner, orders_schema, jan_feb_bounds) -> None:
        """A supplied migration ID is kept."""
        migration_id = uuid4()
        plan = planner.plan(
            orders_schema, "created_on", jan_feb_bounds, migration_id=migration_id
        )
        assert plan.migration_id == migration_id

    def test_same_name_for_target_and_source_rejected(
        self, planner, orders_schema, jan_feb_bounds
    ) -> None:
        """Source, target and archive must be distinct tables."""
        with pytest.raises(PlanningError):
            planner.plan(orders_schema, "created_on", jan_feb_bounds, target_table="orders")

    def test_invalid_identifier_rejected(self, planner, orders_schema, jan_feb_bounds) -> None:
        """Names that are not plain identifiers are rejected."""
        with pytest.raises(PlanningError):
            planner.plan(
                orders_schema, "created_on", jan_feb_bounds, target_table="orders; DROP TABLE x"
            )


class TestPlanCarriesSchema:
    """Tests for what the plan takes over from the source schema."""

    def test_identity_defaults_to_primary_key(self, plan) -> None:
        """The primary key is the identity key."""
        assert plan.identity_key == ("id", "created_on")
        assert plan.key_of({"id": 3, "created_on": date(2024, 1, 2)}) == (3, date(2024, 1, 2))

    def test_indexes_constraints_and_sequences_kept(self, plan) -> None:
        """Indexes, constraints and sequences are carried into the plan."""
        assert [i.name for i in plan.indexes] == ["orders_customer_idx"]
        assert [c.name for c in plan.constraints] == ["orders_amount_positive"]
        assert [s.name for s in plan.sequences] == ["orders_id_seq"]

    def test_unique_index_equal_to_identity_dropped(self, planner, orders_schema, jan_feb_bounds) -> None:
        """A unique index duplicating the identity key becomes the primary key."""
        schema = orders_schema.model_copy(
            update={
                "indexes": (
                    IndexSpec(name="orders_pk_idx", columns=("id", "created_on"), unique=True),
                    IndexSpec(name="orders_customer_idx", columns=("customer_id",)),
                )
            }
        )
        plan = planner.plan(schema, "created_on", jan_feb_bounds)
        assert [i.name for i in plan.indexes] == ["orders_customer_idx"]

    def test_columns_in_source_order(self, plan) -> None:
        assert plan.columns == ("id", "created_on", "customer_id", "amount", "status")

    def test_config_attached(self, plan, config) -> None:
        """The planner's default configuration is attached to the plan."""
        assert plan.config == config


class TestBoundValidation:
    """Tests for partition bound validation."""

    def test_single_boundary_value_rejected(self, planner, orders_schema) -> None:
        """One value cannot form a range."""
        with pytest.raises(InvalidBoundaryError):
            planner.plan(orders_schema, "created_on", [date(2024, 1, 1)])

    def test_empty_bounds_rejected(self, planner, orders_schema) -> None:
        with pytest.raises(InvalidBoundaryError):
            planner.plan(orders_schema, "created_on", [])

    def test_descending_values_rejected(self, planner, orders_schema) -> None:
        """lower >= upper is rejected."""
        with pytest.raises(InvalidBoundaryError):
            planner.plan(orders_schema, "created_on", [date(2024, 2, 1), date(2024, 1, 1)])

    def test_equal_values_rejected(self, planner, orders_schema) -> None:
        with pytest.raises(InvalidBoundaryError):
            planner.plan(orders_schema, "created_on", [date(2024, 1, 1), date(2024, 1, 1)])

    def test_overlapping_ranges_rejected(self, planner, orders_schema) -> None:
        """Ranges that share values are rejected."""
        bounds = [
            PartitionBound("orders_jan", date(2024, 1, 1), date(2024, 2, 1)),
            PartitionBound("orders_mid", date(2024, 1, 15), date(2024, 3, 1)),
        ]
        with pytest.raises(InvalidBoundaryError) as exc_info:
            planner.plan(orders_schema, "created_on", bounds)
        assert exc_info.value.bound == "orders_mid"

    def test_out_of_order_ranges_rejected(self, planner, orders_schema) -> None:
        bounds = [
            PartitionBound("orders_feb", date(2024, 2, 1), date(2024, 3, 1)),
            PartitionBound("orders_jan", date(2024, 1, 1), date(2024, 2, 1)),
        ]
        with pytest.raises(InvalidBoundaryError):
            planner.plan(orders_schema, "created_on", bounds)

    def test_gap_without_default_rejected(self, planner, orders_schema) -> None:
        """A hole between ranges needs a default partition."""
        bounds = [
            PartitionBound("orders_jan", date(2024, 1, 1), date(2024, 2, 1)),
            PartitionBound("orders_mar", date(2024, 3, 1), date(2024, 4, 1)),
        ]
        with pytest.raises(InvalidBoundaryError):
            planner.plan(orders_schema, "created_on", bounds)

    def test_gap_with_default_allowed(self, planner, orders_schema) -> None:
        """With a default partition, gaps are fine."""
        bounds = [
            PartitionBound("orders_jan", date(2024, 1, 1), date(2024, 2, 1)),
            PartitionBound("orders_mar", date(2024, 3, 1), date(2024, 4, 1)),
        ]
        plan = planner.plan(orders_schema, "created_on", bounds, default_partition=True)
        assert plan.default_partition == "orders_partitioned_default"
        assert plan.partition_names == ("orders_jan", "orders_mar", "orders_partitioned_default")
        assert plan.route(date(2024, 2, 10)) == "orders_partitioned_default"

    def test_open_bound_rejected(self, planner, orders_schema) -> None:
        bounds = [PartitionBound("orders_all", None, date(2024, 2, 1))]
        with pytest.raises(InvalidBoundaryError):
            planner.plan(orders_schema, "created_on", bounds)

    def test_mixed_bound_forms_rejected(self, planner, orders_schema) -> None:
        """PartitionBound ranges and raw values cannot be mixed."""
        bounds = [PartitionBound("orders_jan", date(2024, 1, 1), date(2024, 2, 1)), date(2024, 3, 1)]
        with pytest.raises(InvalidBoundaryError):
            planner.plan(orders_schema, "created_on", bounds)

    def test_incomparable_values_rejected(self, planner, orders_schema) -> None:
        """Values of different types cannot be ordered."""
        with pytest.raises(InvalidBoundaryError):
            planner.plan(orders_schema, "created_on", [date(2024, 1, 1), 5])

    def test_duplicate_partition_names_rejected(self, planner, orders_schema) -> None:
        bounds = [
            PartitionBound("orders_p", date(2024, 1, 1), date(2024, 2, 1)),
            PartitionBound("orders_p", date(2024, 2, 1), date(2024, 3, 1)),
        ]
        with pytest.raises(InvalidBoundaryError):
            planner.plan(orders_schema, "created_on", bounds)

    def test_unknown_partition_key_rejected(self, planner, orders_schema, jan_feb_bounds) -> None:
        with pytest.raises(InvalidBoundaryError):
            planner.plan(orders_schema, "shipped_on", jan_feb_bounds)


class TestIdentityValidation:
    """Tests for identity key and unique index rules."""

    def test_identity_without_partition_key_rejected(
        self, planner, orders_schema, jan_feb_bounds
    ) -> None:
        """Uniqueness is per partition, so the identity must contain the partition key."""
        schema = orders_schema.model_copy(update={"primary_key": ("id",)})
        with pytest.raises(MissingKeyInIdentityError) as exc_info:
            planner.plan(schema, "created_on", jan_feb_bounds)
        assert exc_info.value.identity_key == ("id",)
        assert exc_info.value.partition_key == "created_on"

    def test_no_primary_key_rejected(self, planner, orders_schema, jan_feb_bounds) -> None:
        schema = orders_schema.model_copy(update={"primary_key": ()})
        with pytest.raises(MissingKeyInIdentityError):
            planner.plan(schema, "created_on", jan_feb_bounds)

    def test_explicit_identity_key(self, planner, orders_schema, jan_feb_bounds) -> None:
        """An explicit identity key replaces a missing primary key."""
        schema = orders_schema.model_copy(update={"primary_key": ()})
        plan = planner.plan(
            schema, "created_on", jan_feb_bounds, identity_key=["created_on", "id"]
        )
        assert plan.identity_key == ("created_on", "id")

    def test_unique_index_without_partition_key_rejected(
        self, planner, orders_schema, jan_feb_bounds
    ) -> None:
        schema = orders_schema.model_copy(
            update={
                "indexes": (
                    IndexSpec(name="orders_customer_uq", columns=("customer_id",), unique=True),
                )
            }
        )
        with pytest.raises(MissingKeyInIdentityError) as exc_info:
            planner.plan(schema, "created_on", jan_feb_bounds)
        assert exc_info.value.index_name == "orders_customer_uq"


class TestCheckCoverage:
    """Tests for SchemaPlanner.check_coverage()."""

    def test_data_inside_ranges_passes(self, planner, plan) -> None:
        planner.check_coverage(plan, date(2024, 1, 5), date(2024, 2, 27))

    def test_data_outside_ranges_rejected(self, planner, plan) -> None:
        """A row that no partition accepts would fail the backfill."""
        with pytest.raises(InvalidBoundaryError) as exc_info:
            planner.check_coverage(plan, date(2024, 1, 5), date(2024, 3, 1))
        assert exc_info.value.bound == date(2024, 3, 1)

    def test_empty_table_passes(self, planner, plan) -> None:
        planner.check_coverage(plan, None, None)

    def test_default_partition_accepts_everything(
        self, planner, orders_schema, jan_feb_bounds
    ) -> None:
        plan = planner.plan(orders_schema, "created_on", jan_feb_bounds, default_partition=True)
        planner.check_coverage(plan, date(2000, 1, 1), date(2099, 1, 1))
