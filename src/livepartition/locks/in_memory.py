"""
In-process lock manager.

Same contract as PostgreSQLLockManager, backed by one asyncio.Lock per key.
Coordinates engines running in a single process only; used in tests and
together with InMemoryBackend.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from zlib import crc32

from livepartition.locks.base import LockAcquisitionError, LockInfo

logger = logging.getLogger(__name__)


class InMemoryLockManager:
    """
    Lock manager backed by asyncio locks.

    Example:
        >>> locks = InMemoryLockManager()
        >>> async with locks.acquire("livepartition:migration:...", timeout=1.0):
        ...     ...
    """

    def __init__(self, *, holder_id: str | None = None) -> None:
        self._holder_id = holder_id
        self._locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
        retry_interval: float = 0.1,
    ) -> AsyncIterator[LockInfo]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except TimeoutError:
            raise LockAcquisitionError(key, f"Timeout after {timeout}s", timeout) from None
        logger.debug("Acquired lock: key=%s", key)
        try:
            yield LockInfo(
                key=key,
                lock_id=crc32(key.encode()),
                acquired_at=datetime.now(UTC),
                holder_id=self._holder_id,
            )
        finally:
            lock.release()

    async def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


__all__ = ["InMemoryLockManager"]
