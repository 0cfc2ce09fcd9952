"""
Partition backends.

A backend executes migration steps against one kind of database:

- PostgreSQLBackend: production backend over a SQLAlchemy AsyncEngine
- InMemoryBackend: in-process simulation for tests and development
"""

from livepartition.backends.in_memory import InMemoryBackend, IntegrityViolation
from livepartition.backends.interface import (
    ConstraintValidationFailed,
    CutoverUnit,
    PartitionBackend,
    TransientBackendError,
)
from livepartition.backends.postgresql import PostgreSQLBackend

__all__ = [
    "PartitionBackend",
    "CutoverUnit",
    "TransientBackendError",
    "ConstraintValidationFailed",
    "InMemoryBackend",
    "IntegrityViolation",
    "PostgreSQLBackend",
]
