"""
PostgreSQL advisory locks for coordinating migration engines.

Advisory locks are application-level locks that:
- Are independent of table and row locks, so holding one never blocks
  application traffic on the migrated table
- Persist for the session (until released or disconnected)
- Support non-blocking acquisition attempts
- Are released automatically if the engine process dies

Usage:
    >>> lock_manager = PostgreSQLLockManager(engine, holder_id="engine-1")
    >>> async with lock_manager.acquire(migration_lock_key(migration_id), timeout=5.0):
    ...     await coordinator.backfill(migration_id)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from livepartition.locks.base import LockAcquisitionError, LockInfo, LockNotHeldError
from livepartition.observability import Tracer, create_tracer
from livepartition.observability.attributes import ATTR_LOCK_ID, ATTR_LOCK_KEY

logger = logging.getLogger(__name__)


class PostgreSQLLockManager:
    """
    Manages PostgreSQL advisory locks.

    Each held lock owns a dedicated AUTOCOMMIT connection: advisory locks
    are session-level, and autocommit keeps that connection from sitting
    idle in an open transaction for the length of a migration phase.

    Example:
        >>> lock_manager = PostgreSQLLockManager(engine)
        >>> try:
        ...     async with lock_manager.acquire("livepartition:migration:...", timeout=5.0):
        ...         await run_phase()
        ... except LockAcquisitionError:
        ...     print("Another engine is working on this migration")

    Note:
        Every held lock occupies one pooled connection; size the pool for
        the number of migrations driven concurrently.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        holder_id: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the lock manager.

        Args:
            engine: SQLAlchemy async engine
            holder_id: Optional identifier for this lock holder (for debugging)
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._engine = engine
        self._holder_id = holder_id
        self._held_locks: dict[str, tuple[AsyncConnection, int]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def key_to_lock_id(key: str) -> int:
        """
        Convert a string key to an advisory lock number.

        SHA-256 truncated to 63 bits, so the value fits a signed bigint.
        """
        digest = hashlib.sha256(key.encode()).digest()
        return int.from_bytes(digest[:8], byteorder="big") & 0x7FFFFFFFFFFFFFFF

    @asynccontextmanager
    async def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
        retry_interval: float = 0.1,
    ) -> AsyncIterator[LockInfo]:
        """
        Acquire an advisory lock for the duration of the block.

        Args:
            key: String key identifying the lock
            timeout: Maximum seconds to wait (None waits forever)
            retry_interval: Seconds between attempts when a timeout is set

        Yields:
            LockInfo with lock details

        Raises:
            LockAcquisitionError: If the lock cannot be acquired within timeout
        """
        lock_id = self.key_to_lock_id(key)

        with self._tracer.span(
            "livepartition.lock.acquire",
            {ATTR_LOCK_KEY: key, ATTR_LOCK_ID: lock_id},
        ):
            conn = await self._acquire_lock(key, lock_id, timeout, retry_interval)

        async with self._lock:
            self._held_locks[key] = (conn, lock_id)
        logger.debug("Acquired advisory lock: key=%s, lock_id=%d", key, lock_id)
        try:
            yield LockInfo(
                key=key,
                lock_id=lock_id,
                acquired_at=datetime.now(UTC),
                holder_id=self._holder_id,
            )
        finally:
            await self._release_lock(key, conn, lock_id)

    async def _acquire_lock(
        self,
        key: str,
        lock_id: int,
        timeout: float | None,
        retry_interval: float,
    ) -> AsyncConnection:
        conn = await self._engine.connect()
        try:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            if timeout is None:
                await conn.execute(text("SELECT pg_advisory_lock(:lock_id)"), {"lock_id": lock_id})
                return conn

            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            while True:
                result = await conn.execute(
                    text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": lock_id}
                )
                if result.scalar():
                    return conn
                if loop.time() >= deadline:
                    raise LockAcquisitionError(key, f"Timeout after {timeout}s", timeout)
                await asyncio.sleep(retry_interval)
        except LockAcquisitionError:
            await conn.close()
            raise
        except Exception as e:
            await conn.close()
            raise LockAcquisitionError(key, f"Database error: {e}") from e

    async def _release_lock(self, key: str, conn: AsyncConnection, lock_id: int) -> None:
        with self._tracer.span(
            "livepartition.lock.release",
            {ATTR_LOCK_KEY: key, ATTR_LOCK_ID: lock_id},
        ):
            try:
                await conn.execute(
                    text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": lock_id}
                )
                logger.debug("Released advisory lock: key=%s, lock_id=%d", key, lock_id)
            except Exception as e:
                # closing the connection below releases the lock anyway
                logger.warning("Error releasing advisory lock: key=%s, error=%s", key, e)
            finally:
                async with self._lock:
                    self._held_locks.pop(key, None)
                await conn.close()

    async def try_acquire(self, key: str) -> LockInfo | None:
        """
        Acquire a lock without waiting.

        Returns:
            LockInfo if acquired, None if another session holds it.
            The caller must call release() when done.
        """
        lock_id = self.key_to_lock_id(key)
        conn = await self._engine.connect()
        try:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            result = await conn.execute(
                text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": lock_id}
            )
            if not result.scalar():
                await conn.close()
                return None
        except Exception:
            await conn.close()
            raise

        async with self._lock:
            self._held_locks[key] = (conn, lock_id)
        return LockInfo(
            key=key,
            lock_id=lock_id,
            acquired_at=datetime.now(UTC),
            holder_id=self._holder_id,
        )

    async def release(self, key: str) -> None:
        """
        Release a lock obtained with try_acquire().

        Raises:
            LockNotHeldError: If this manager does not hold the lock
        """
        async with self._lock:
            if key not in self._held_locks:
                raise LockNotHeldError(key)
            conn, lock_id = self._held_locks[key]
        await self._release_lock(key, conn, lock_id)

    async def is_held(self, key: str) -> bool:
        async with self._lock:
            return key in self._held_locks

    async def release_all(self) -> int:
        """Release every lock held by this manager. Returns the number released."""
        async with self._lock:
            keys = list(self._held_locks)
        released = 0
        for key in keys:
            try:
                await self.release(key)
                released += 1
            except LockNotHeldError:
                pass
        return released

    @property
    def held_lock_count(self) -> int:
        return len(self._held_locks)


__all__ = ["PostgreSQLLockManager"]
