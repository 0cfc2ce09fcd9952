"""
Shared pytest fixtures for the livepartition tests.

This module provides:
- Schema fixtures (orders_schema: a serial-keyed table partitioned by date)
- Backend fixtures (backend: an InMemoryBackend holding the orders table)
- Row factory fixtures (order_row, populated_backend)
- Planning fixtures (planner, jan_feb_bounds, plan)
- Lifecycle fixtures (backfilled_state, ready_state)
- State fixtures (state_repo, lock_manager, coordinator)
- SQLite fixtures (sqlite_connection, sqlite_state_repo)

Every test gets fresh instances; nothing is shared across tests.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import date
from decimal import Decimal
from typing import Any

import aiosqlite
import pytest
import pytest_asyncio

from livepartition.backends.in_memory import InMemoryBackend
from livepartition.backfill import BackfillEngine
from livepartition.consistency import ConsistencyVerifier
from livepartition.constraints import ConstraintRestorer
from livepartition.coordinator import MigrationCoordinator
from livepartition.dual_write import DualWriteCoordinator
from livepartition.exceptions import RetryConfig
from livepartition.locks import InMemoryLockManager
from livepartition.migrations import get_schema, split_statements
from livepartition.models import MigrationConfig, MigrationPlan, SyncPhase, SyncState
from livepartition.planner import SchemaPlanner
from livepartition.repositories.state import (
    InMemoryMigrationStateRepository,
    SQLiteMigrationStateRepository,
)
from livepartition.schema import (
    ColumnSpec,
    ConstraintKind,
    ConstraintSpec,
    IndexSpec,
    SequenceSpec,
    TableSchema,
)

AMOUNT_CHECK = "amount >= 0"

# Retry quickly in tests; the production cutover policy backs off for seconds.
FAST_RETRY = RetryConfig(max_attempts=1, base_delay_ms=0, max_delay_ms=0, jitter_factor=0.0)


# ============================================================================
# Schema Fixtures
# ============================================================================


@pytest.fixture
def orders_schema() -> TableSchema:
    """
    The orders table: serial id, date partition key, one index, one CHECK.

    The primary key already includes the partition key, as PostgreSQL
    requires of a partitioned table's unique keys.
    """
    return TableSchema(
        name="orders",
        columns=(
            ColumnSpec(
                name="id",
                sql_type="bigint",
                nullable=False,
                default="nextval('orders_id_seq'::regclass)",
            ),
            ColumnSpec(name="created_on", sql_type="date", nullable=False),
            ColumnSpec(name="customer_id", sql_type="bigint"),
            ColumnSpec(name="amount", sql_type="numeric(12,2)", nullable=False),
            ColumnSpec(name="status", sql_type="text"),
        ),
        primary_key=("id", "created_on"),
        indexes=(IndexSpec(name="orders_customer_idx", columns=("customer_id",)),),
        constraints=(
            ConstraintSpec(
                name="orders_amount_positive",
                kind=ConstraintKind.CHECK,
                expression=AMOUNT_CHECK,
            ),
        ),
        sequences=(SequenceSpec(name="orders_id_seq", column="id"),),
    )


@pytest.fixture
def jan_feb_bounds() -> list[date]:
    """Boundary values for two monthly partitions: January and February 2024."""
    return [date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)]


# ============================================================================
# Backend Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def backend(orders_schema: TableSchema) -> InMemoryBackend:
    """An in-memory database holding an empty orders table."""
    db = InMemoryBackend()
    await db.create_table(orders_schema)
    db.register_check(AMOUNT_CHECK, lambda row: row["amount"] >= 0)
    return db


@pytest.fixture
def order_row() -> Callable[..., dict[str, Any]]:
    """
    Factory for order rows with sensible defaults.

    The id is left out so the orders_id_seq sequence assigns it.

    Example:
        def test_something(order_row):
            row = order_row(created_on=date(2024, 1, 5), amount=Decimal("10.00"))
    """

    def _create(**overrides: Any) -> dict[str, Any]:
        row: dict[str, Any] = {
            "created_on": date(2024, 1, 15),
            "customer_id": 7,
            "amount": Decimal("25.00"),
            "status": "new",
        }
        row.update(overrides)
        return row

    return _create


@pytest_asyncio.fixture
async def populated_backend(
    backend: InMemoryBackend,
    order_row: Callable[..., dict[str, Any]],
) -> InMemoryBackend:
    """Orders with two rows in January and two in February (ids 1 to 4)."""
    await backend.insert_many(
        "orders",
        [
            order_row(created_on=date(2024, 1, 5), customer_id=1),
            order_row(created_on=date(2024, 1, 20), customer_id=2),
            order_row(created_on=date(2024, 2, 3), customer_id=1),
            order_row(created_on=date(2024, 2, 27), customer_id=3),
        ],
    )
    return backend


# ============================================================================
# Planning Fixtures
# ============================================================================


@pytest.fixture
def config() -> MigrationConfig:
    """Small batches so multi-batch paths run with a handful of rows."""
    return MigrationConfig(batch_size=2, batch_retry=FAST_RETRY)


@pytest.fixture
def planner(config: MigrationConfig) -> SchemaPlanner:
    return SchemaPlanner(config, enable_tracing=False)


@pytest.fixture
def plan(
    planner: SchemaPlanner,
    orders_schema: TableSchema,
    jan_feb_bounds: list[date],
) -> MigrationPlan:
    """Plan for partitioning orders by created_on into January and February."""
    return planner.plan(orders_schema, "created_on", jan_feb_bounds)


@pytest.fixture
def state(plan: MigrationPlan) -> SyncState:
    """A fresh PLANNED state for the plan fixture."""
    return SyncState(plan=plan)


@pytest_asyncio.fixture
async def backfilled_state(
    populated_backend: InMemoryBackend,
    plan: MigrationPlan,
) -> SyncState:
    """
    A BACKFILLING state whose target holds every source row.

    Dual-write is installed, the backfill has run to the end and
    reconciliation found nothing missing.
    """
    state = SyncState(plan=plan)
    await DualWriteCoordinator(populated_backend, enable_tracing=False).enable(plan, state)
    engine = BackfillEngine(populated_backend, enable_tracing=False)
    async for _ in engine.run(plan, state):
        pass
    await engine.reconcile(plan, state)
    return state


@pytest_asyncio.fixture
async def ready_state(
    populated_backend: InMemoryBackend,
    plan: MigrationPlan,
    backfilled_state: SyncState,
) -> SyncState:
    """A READY_FOR_CUTOVER state with a fresh, consistent verification report."""
    state = backfilled_state
    verifier = ConsistencyVerifier(populated_backend, enable_tracing=False)
    state.transition_to(SyncPhase.VERIFYING)
    state.last_report = await verifier.check(plan)
    state.transition_to(SyncPhase.CONSTRAINTS_RESTORING)
    await ConstraintRestorer(populated_backend, enable_tracing=False).restore(plan, state)
    state.transition_to(SyncPhase.READY_FOR_CUTOVER)
    state.last_report = await verifier.check(plan)
    return state


# ============================================================================
# Repository and Lock Fixtures
# ============================================================================


@pytest.fixture
def state_repo() -> InMemoryMigrationStateRepository:
    return InMemoryMigrationStateRepository(enable_tracing=False)


@pytest.fixture
def lock_manager() -> InMemoryLockManager:
    return InMemoryLockManager(holder_id="test-engine")


@pytest.fixture
def coordinator(
    populated_backend: InMemoryBackend,
    state_repo: InMemoryMigrationStateRepository,
    lock_manager: InMemoryLockManager,
    config: MigrationConfig,
) -> MigrationCoordinator:
    """A coordinator over the populated orders table, with fast retries."""
    return MigrationCoordinator(
        populated_backend,
        state_repo,
        lock_manager,
        config=config,
        lock_timeout=1.0,
        cutover_retry=FAST_RETRY,
        enable_tracing=False,
    )


# ============================================================================
# SQLite Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_connection() -> AsyncGenerator[aiosqlite.Connection, None]:
    """An in-memory SQLite database with the livepartition schema applied."""
    async with aiosqlite.connect(":memory:") as db:
        for statement in split_statements(get_schema(backend="sqlite")):
            await db.execute(statement)
        await db.commit()
        yield db


@pytest.fixture
def sqlite_state_repo(sqlite_connection: aiosqlite.Connection) -> SQLiteMigrationStateRepository:
    return SQLiteMigrationStateRepository(sqlite_connection, enable_tracing=False)
