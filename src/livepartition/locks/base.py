"""
Lock manager contract shared by the PostgreSQL and in-memory lock managers.

The migration coordinator runs every phase under a lock keyed by the
migration ID, so two engine processes never act on the same migration at
the same time.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable
from uuid import UUID


@dataclass(frozen=True)
class LockInfo:
    """
    Information about an acquired lock.

    Attributes:
        key: The string key identifying the lock
        lock_id: Numeric lock ID (the advisory lock number for PostgreSQL)
        acquired_at: When the lock was acquired
        holder_id: Optional identifier of the holding engine, for debugging
    """

    key: str
    lock_id: int
    acquired_at: datetime
    holder_id: str | None = None


class LockAcquisitionError(Exception):
    """
    Raised when a lock cannot be acquired.

    Attributes:
        key: The lock key that could not be acquired
        reason: Description of why acquisition failed
        timeout: The timeout value if timeout was the cause
    """

    def __init__(self, key: str, reason: str, timeout: float | None = None) -> None:
        self.key = key
        self.reason = reason
        self.timeout = timeout
        super().__init__(f"Failed to acquire lock '{key}': {reason}")


class LockNotHeldError(Exception):
    """Raised when releasing a lock this manager does not hold."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Lock '{key}' is not held by this manager")


@runtime_checkable
class LockManager(Protocol):
    """Protocol for the lock managers the coordinator accepts."""

    def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
        retry_interval: float = 0.1,
    ) -> AbstractAsyncContextManager[LockInfo]:
        """
        Hold the lock for the duration of an `async with` block.

        Raises:
            LockAcquisitionError: If the lock cannot be acquired within timeout.
        """
        ...

    async def is_held(self, key: str) -> bool: ...


def migration_lock_key(migration_id: UUID, operation: str = "migration") -> str:
    """
    Lock key for an operation on one migration.

    Example:
        >>> key = migration_lock_key(migration_id)
        >>> async with lock_manager.acquire(key, timeout=5.0):
        ...     await coordinator.backfill(migration_id)
    """
    return f"livepartition:{operation}:{migration_id}"


__all__ = [
    "LockInfo",
    "LockAcquisitionError",
    "LockNotHeldError",
    "LockManager",
    "migration_lock_key",
]
