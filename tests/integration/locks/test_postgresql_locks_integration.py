"""
Integration tests for PostgreSQL advisory locks.

These tests require a real PostgreSQL database and verify:
- Lock acquisition and release
- Lock exclusion between engines
- Timeout behavior
- Context manager cleanup
- Explicit try_acquire()/release()
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest

from livepartition.locks import (
    LockAcquisitionError,
    LockNotHeldError,
    PostgreSQLLockManager,
    migration_lock_key,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

# Mark all tests in this module as integration tests requiring PostgreSQL
pytestmark = [pytest.mark.integration, pytest.mark.postgres]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def lock_manager(postgres_engine: AsyncEngine) -> PostgreSQLLockManager:
    return PostgreSQLLockManager(postgres_engine, holder_id="engine-1", enable_tracing=False)


@pytest.fixture
def second_lock_manager(postgres_engine: AsyncEngine) -> PostgreSQLLockManager:
    """A second engine process competing for the same migrations."""
    return PostgreSQLLockManager(postgres_engine, holder_id="engine-2", enable_tracing=False)


@pytest.fixture
def key() -> str:
    return migration_lock_key(uuid4())


# =============================================================================
# Tests
# =============================================================================


class TestBasicLockAcquisition:
    """Tests for basic lock acquisition and release."""

    async def test_acquire_and_release_via_context_manager(
        self, lock_manager: PostgreSQLLockManager, key: str
    ) -> None:
        async with lock_manager.acquire(key) as lock_info:
            assert lock_info.key == key
            assert lock_info.lock_id == PostgreSQLLockManager.key_to_lock_id(key)
            assert lock_info.holder_id == "engine-1"
            assert await lock_manager.is_held(key)
            assert lock_manager.held_lock_count == 1

        assert not await lock_manager.is_held(key)
        assert lock_manager.held_lock_count == 0

    async def test_acquire_same_lock_twice_sequentially(
        self, lock_manager: PostgreSQLLockManager, key: str
    ) -> None:
        async with lock_manager.acquire(key, timeout=1.0):
            pass
        async with lock_manager.acquire(key, timeout=1.0):
            pass

    async def test_try_acquire_and_release(
        self, lock_manager: PostgreSQLLockManager, key: str
    ) -> None:
        lock_info = await lock_manager.try_acquire(key)

        assert lock_info is not None
        assert await lock_manager.is_held(key)

        await lock_manager.release(key)
        assert not await lock_manager.is_held(key)


class TestLockExclusion:
    """Tests for exclusion between two lock managers."""

    async def test_second_manager_blocked_on_same_lock(
        self,
        lock_manager: PostgreSQLLockManager,
        second_lock_manager: PostgreSQLLockManager,
        key: str,
    ) -> None:
        async with lock_manager.acquire(key):
            assert await second_lock_manager.try_acquire(key) is None

    async def test_second_manager_acquires_after_release(
        self,
        lock_manager: PostgreSQLLockManager,
        second_lock_manager: PostgreSQLLockManager,
        key: str,
    ) -> None:
        async with lock_manager.acquire(key):
            pass

        lock_info = await second_lock_manager.try_acquire(key)
        assert lock_info is not None
        await second_lock_manager.release(key)

    async def test_different_migrations_do_not_block(
        self,
        lock_manager: PostgreSQLLockManager,
        second_lock_manager: PostgreSQLLockManager,
    ) -> None:
        async with lock_manager.acquire(migration_lock_key(uuid4())):
            async with second_lock_manager.acquire(migration_lock_key(uuid4()), timeout=0.5):
                pass

    async def test_waiting_engine_proceeds_after_release(
        self,
        lock_manager: PostgreSQLLockManager,
        second_lock_manager: PostgreSQLLockManager,
        key: str,
    ) -> None:
        order = []

        async def first() -> None:
            async with lock_manager.acquire(key):
                order.append("first")
                await asyncio.sleep(0.2)

        async def second() -> None:
            await asyncio.sleep(0.05)
            async with second_lock_manager.acquire(key, timeout=5.0, retry_interval=0.05):
                order.append("second")

        await asyncio.gather(first(), second())

        assert order == ["first", "second"]


class TestLockTimeout:
    """Tests for timeout behavior."""

    async def test_timeout_raises_error_when_lock_held(
        self,
        lock_manager: PostgreSQLLockManager,
        second_lock_manager: PostgreSQLLockManager,
        key: str,
    ) -> None:
        async with lock_manager.acquire(key):
            with pytest.raises(LockAcquisitionError) as exc_info:
                async with second_lock_manager.acquire(key, timeout=0.2, retry_interval=0.05):
                    pytest.fail("lock must not be granted twice")

        assert exc_info.value.key == key
        assert exc_info.value.timeout == 0.2
        assert second_lock_manager.held_lock_count == 0


class TestCleanup:
    """Tests for release on errors and release_all()."""

    async def test_lock_released_on_exception(
        self,
        lock_manager: PostgreSQLLockManager,
        second_lock_manager: PostgreSQLLockManager,
        key: str,
    ) -> None:
        with pytest.raises(RuntimeError):
            async with lock_manager.acquire(key):
                raise RuntimeError("phase failed")

        assert not await lock_manager.is_held(key)
        assert await second_lock_manager.try_acquire(key) is not None
        await second_lock_manager.release(key)

    async def test_release_all(self, lock_manager: PostgreSQLLockManager) -> None:
        keys = [migration_lock_key(uuid4()) for _ in range(3)]
        for key in keys:
            assert await lock_manager.try_acquire(key) is not None

        assert await lock_manager.release_all() == 3
        assert lock_manager.held_lock_count == 0

    async def test_release_all_on_empty_manager(
        self, lock_manager: PostgreSQLLockManager
    ) -> None:
        assert await lock_manager.release_all() == 0

    async def test_release_unheld_lock_raises_error(
        self, lock_manager: PostgreSQLLockManager, key: str
    ) -> None:
        with pytest.raises(LockNotHeldError):
            await lock_manager.release(key)
