"""
Database schema templates for livepartition's own bookkeeping.

The migration engine persists one state record per partition migration in
the `livepartition_migrations` table. This module ships the DDL for that
table.

Supported backends:
    - postgresql (default): used by PostgreSQLMigrationStateRepository
    - sqlite: used by SQLiteMigrationStateRepository

Usage:
    from livepartition.migrations import get_schema

    # PostgreSQL (default)
    async with engine.begin() as conn:
        for statement in split_statements(get_schema("livepartition_migrations")):
            await conn.execute(text(statement))

    # SQLite
    async with aiosqlite.connect(":memory:") as db:
        await db.executescript(get_schema("livepartition_migrations", backend="sqlite"))
"""

from pathlib import Path
from typing import Literal

SchemaName = Literal["livepartition_migrations"]

BackendName = Literal["postgresql", "sqlite"]

_PACKAGE_DIR = Path(__file__).parent
_TEMPLATES_DIR = _PACKAGE_DIR / "templates"

STATE_SCHEMA = "livepartition_migrations"


def get_template_path(name: SchemaName, backend: BackendName = "postgresql") -> Path:
    """
    Get the path to a SQL template file.

    Raises:
        ValueError: If the schema is not available for the backend.
    """
    path = _TEMPLATES_DIR / backend / f"{name}.sql"
    if not path.exists():
        raise ValueError(
            f"Schema '{name}' is not available for backend '{backend}'. "
            f"Available schemas: {list_schemas(backend)}"
        )
    return path


def get_schema(name: SchemaName = STATE_SCHEMA, backend: BackendName = "postgresql") -> str:
    """
    Load a SQL schema template by name and backend.

    Args:
        name: The schema name.
        backend: The database backend, "postgresql" (default) or "sqlite".

    Returns:
        SQL schema definition as a string

    Example:
        >>> from livepartition.migrations import get_schema
        >>> sql = get_schema("livepartition_migrations", backend="sqlite")
    """
    return get_template_path(name, backend).read_text()


def split_statements(sql: str) -> list[str]:
    """
    Split a schema template into single statements.

    asyncpg executes one statement per call. Templates contain no
    semicolons inside statements, so splitting on them is safe.
    """
    lines = [line for line in sql.splitlines() if not line.lstrip().startswith("--")]
    return [s.strip() for s in "\n".join(lines).split(";") if s.strip()]


def list_schemas(backend: BackendName = "postgresql") -> list[str]:
    """List the schema templates available for a backend."""
    templates_dir = _TEMPLATES_DIR / backend
    if not templates_dir.exists():
        return []
    return sorted(p.stem for p in templates_dir.glob("*.sql"))


def list_backends() -> list[str]:
    """List the backends that have schema templates."""
    return sorted(
        d.name for d in _TEMPLATES_DIR.iterdir() if d.is_dir() and list(d.glob("*.sql"))
    )


__all__ = [
    "STATE_SCHEMA",
    "SchemaName",
    "BackendName",
    "get_template_path",
    "get_schema",
    "split_statements",
    "list_schemas",
    "list_backends",
]
