"""
Shared pytest fixtures for integration tests.

This module provides PostgreSQL test infrastructure using testcontainers
for automatic container management, plus an orders table holding two
rows in January and two in February.

If testcontainers or Docker is not available, tests are automatically skipped.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from typing import TYPE_CHECKING, Any

import pytest
import pytest_asyncio

from livepartition.backends import PostgreSQLBackend
from livepartition.migrations import get_schema, split_statements

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for integration tests."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (may require docker)"
    )
    config.addinivalue_line("markers", "postgres: marks tests that require PostgreSQL")


# ============================================================================
# Testcontainers Detection
# ============================================================================

TESTCONTAINERS_AVAILABLE = False

try:
    from testcontainers.postgres import PostgresContainer

    TESTCONTAINERS_AVAILABLE = True
except ImportError:
    PostgresContainer = None  # type: ignore[assignment, misc]


def is_docker_available() -> bool:
    """Check if Docker is available for running containers."""
    import subprocess

    try:
        result = subprocess.run(
            ["docker", "info"],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError):
        return False


DOCKER_AVAILABLE = is_docker_available()


# ============================================================================
# Skip Conditions
# ============================================================================

skip_if_no_postgres_infra = pytest.mark.skipif(
    not (TESTCONTAINERS_AVAILABLE and DOCKER_AVAILABLE),
    reason="PostgreSQL test infrastructure not available",
)


# ============================================================================
# Orders Table
# ============================================================================

ORDERS_TABLES = ("orders", "orders_partitioned", "orders_archived")

ORDERS_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE orders (
        id BIGSERIAL NOT NULL,
        created_on DATE NOT NULL,
        customer_id BIGINT,
        amount NUMERIC(12,2) NOT NULL,
        status TEXT,
        PRIMARY KEY (id, created_on),
        CONSTRAINT orders_amount_positive CHECK (amount >= 0)
    )
    """,
    "CREATE INDEX orders_customer_idx ON orders (customer_id)",
    """
    INSERT INTO orders (created_on, customer_id, amount, status) VALUES
        ('2024-01-05', 1, 25.00, 'new'),
        ('2024-01-20', 2, 25.00, 'new'),
        ('2024-02-03', 1, 25.00, 'new'),
        ('2024-02-27', 3, 25.00, 'new')
    """,
]


async def drop_orders_tables(engine: AsyncEngine) -> None:
    """Drop every table an orders migration may leave behind."""
    from sqlalchemy import text

    async with engine.begin() as conn:
        for table in ORDERS_TABLES:
            await conn.execute(text(f"DROP TABLE IF EXISTS {table} CASCADE"))


# ============================================================================
# PostgreSQL Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def postgres_container() -> Generator[Any, None, None]:
    """
    Provide PostgreSQL container for integration tests.

    Uses testcontainers to automatically start and stop a PostgreSQL container.
    Container is shared across all tests in the session for efficiency.
    """
    if not TESTCONTAINERS_AVAILABLE or not DOCKER_AVAILABLE:
        pytest.skip("PostgreSQL testcontainer not available")

    container = PostgresContainer("postgres:15")
    container.start()

    yield container

    container.stop()


@pytest.fixture(scope="session")
def postgres_connection_url(postgres_container: Any) -> str:
    """Get PostgreSQL connection URL from container."""
    # testcontainers returns psycopg2 URL, convert to asyncpg
    url = postgres_container.get_connection_url()
    return url.replace("postgresql://", "postgresql+asyncpg://").replace("psycopg2", "asyncpg")


@pytest_asyncio.fixture
async def postgres_engine(
    postgres_connection_url: str,
) -> AsyncGenerator[AsyncEngine, None]:
    """
    Provide SQLAlchemy async engine connected to PostgreSQL container.

    Creates the state table on startup and empties it afterwards.
    """
    from sqlalchemy import text
    from sqlalchemy.ext.asyncio import create_async_engine

    engine = create_async_engine(
        postgres_connection_url,
        echo=False,
        pool_size=5,
        max_overflow=10,
    )

    # Create schema - execute each statement individually for asyncpg compatibility
    async with engine.begin() as conn:
        for statement in split_statements(get_schema()):
            await conn.execute(text(statement))

    yield engine

    async with engine.begin() as conn:
        await conn.execute(text("TRUNCATE TABLE livepartition_migrations"))
    await engine.dispose()


@pytest_asyncio.fixture
async def orders_table(postgres_engine: AsyncEngine) -> AsyncGenerator[None, None]:
    """Create the orders table with ids 1 to 4; drop everything afterwards."""
    from sqlalchemy import text

    await drop_orders_tables(postgres_engine)
    async with postgres_engine.begin() as conn:
        for statement in ORDERS_SCHEMA_STATEMENTS:
            await conn.execute(text(statement))

    yield

    await drop_orders_tables(postgres_engine)


@pytest.fixture
def pg_backend(postgres_engine: AsyncEngine, orders_table: None) -> PostgreSQLBackend:
    return PostgreSQLBackend(postgres_engine, enable_tracing=False)
