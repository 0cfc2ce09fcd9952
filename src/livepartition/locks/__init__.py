"""
Lock managers for coordinating migration engines.

The coordinator runs each migration phase under a lock keyed by the
migration ID, so only one engine process acts on a migration at a time.

Example:
    >>> from livepartition.locks import PostgreSQLLockManager, migration_lock_key
    >>>
    >>> lock_manager = PostgreSQLLockManager(engine)
    >>> async with lock_manager.acquire(migration_lock_key(migration_id), timeout=5.0):
    ...     await coordinator.verify(migration_id)
"""

from livepartition.locks.base import (
    LockAcquisitionError,
    LockInfo,
    LockManager,
    LockNotHeldError,
    migration_lock_key,
)
from livepartition.locks.in_memory import InMemoryLockManager
from livepartition.locks.postgresql import PostgreSQLLockManager

__all__ = [
    "LockInfo",
    "LockAcquisitionError",
    "LockNotHeldError",
    "LockManager",
    "InMemoryLockManager",
    "PostgreSQLLockManager",
    "migration_lock_key",
]
