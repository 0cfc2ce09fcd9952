"""
Repositories for livepartition's persisted migration state.
"""

from livepartition.repositories._connection import execute_with_connection
from livepartition.repositories.state import (
    InMemoryMigrationStateRepository,
    MigrationStateRepository,
    PostgreSQLMigrationStateRepository,
    SQLiteMigrationStateRepository,
)

__all__ = [
    "execute_with_connection",
    "MigrationStateRepository",
    "InMemoryMigrationStateRepository",
    "PostgreSQLMigrationStateRepository",
    "SQLiteMigrationStateRepository",
]
