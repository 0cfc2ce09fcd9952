"""
MigrationStateRepository - Durable storage for SyncState records.

Every phase operation of the migration engine ends by saving the
migration's SyncState, and the backfill saves it after every batch. A
restarted engine process reads the record back and resumes from the last
committed phase and cursor.

Responsibilities:
    - Create state records, refusing a second active migration per table
    - Save the full state after every change
    - Look migrations up by ID or by source table
    - List active (non-terminal) migrations

Implementations:
    - InMemoryMigrationStateRepository: process memory, for tests
    - PostgreSQLMigrationStateRepository: `livepartition_migrations` table
    - SQLiteMigrationStateRepository: same table in SQLite via aiosqlite

Usage:
    >>> from livepartition.repositories import PostgreSQLMigrationStateRepository
    >>>
    >>> repo = PostgreSQLMigrationStateRepository(engine)
    >>> await repo.create(state)
    >>> state.transition_to(SyncPhase.DUAL_WRITE_ACTIVE)
    >>> await repo.save(state)

See Also:
    - Schema: livepartition.migrations.get_schema("livepartition_migrations")
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

import aiosqlite
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from livepartition.exceptions import MigrationAlreadyExistsError, MigrationNotFoundError
from livepartition.models import SyncPhase, SyncState
from livepartition.observability import Tracer, create_tracer
from livepartition.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_PHASE,
    ATTR_SOURCE_TABLE,
)
from livepartition.repositories._connection import execute_with_connection

TERMINAL_PHASES = tuple(p.value for p in SyncPhase if p.is_terminal)

_COLUMNS = """
    id, source_table, target_table, phase, plan, cursor, low_water_mark,
    dual_write_link, last_report, error_count, last_error, last_error_at,
    history, created_at, updated_at
"""


@runtime_checkable
class MigrationStateRepository(Protocol):
    """
    Protocol for SyncState persistence.

    Implementations must return independent copies: mutating a state
    object never changes what is stored until save() is called.
    """

    async def create(self, state: SyncState) -> UUID:
        """
        Persist a new state record.

        Raises:
            MigrationAlreadyExistsError: If the source table already has an
                active migration.
        """
        ...

    async def get(self, migration_id: UUID) -> SyncState | None:
        """Load a state record, or None if it does not exist."""
        ...

    async def save(self, state: SyncState) -> None:
        """
        Overwrite a stored state record.

        Raises:
            MigrationNotFoundError: If the record was never created.
        """
        ...

    async def get_active_for_table(self, source_table: str) -> SyncState | None:
        """The non-terminal migration of a source table, if any."""
        ...

    async def list_active(self) -> list[SyncState]:
        """All non-terminal migrations, oldest first."""
        ...


def _document(state: SyncState) -> dict[str, Any]:
    """Column values for a state record, JSON columns as text."""
    data = state.to_dict()
    return {
        "id": state.migration_id,
        "source_table": state.plan.source_table,
        "target_table": state.plan.target_table,
        "phase": state.phase.value,
        "plan": json.dumps(data["plan"]),
        "cursor": json.dumps(data["cursor"]),
        "low_water_mark": (
            json.dumps(data["low_water_mark"]) if data["low_water_mark"] is not None else None
        ),
        "dual_write_link": (
            json.dumps(data["dual_write_link"]) if data["dual_write_link"] is not None else None
        ),
        "last_report": (
            json.dumps(data["last_report"]) if data["last_report"] is not None else None
        ),
        "error_count": state.error_count,
        "last_error": state.last_error,
        "last_error_at": state.last_error_at,
        "history": json.dumps(data["history"]),
        "created_at": state.created_at,
        "updated_at": state.updated_at,
    }


def _json(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def _iso(value: datetime | str | None) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return value.isoformat()


def _state_from_row(row: Any) -> SyncState:
    """
    Convert a database row (mapping) to a SyncState.

    Handles JSON columns arriving either as text or already decoded, and
    timestamps arriving either as datetimes (PostgreSQL) or ISO text (SQLite).
    """
    return SyncState.from_dict(
        {
            "plan": _json(row["plan"]),
            "phase": row["phase"],
            "cursor": _json(row["cursor"]),
            "low_water_mark": _json(row["low_water_mark"]),
            "dual_write_link": _json(row["dual_write_link"]),
            "last_report": _json(row["last_report"]),
            "error_count": row["error_count"],
            "last_error": row["last_error"],
            "last_error_at": _iso(row["last_error_at"]),
            "history": _json(row["history"]) or [],
            "created_at": _iso(row["created_at"]),
            "updated_at": _iso(row["updated_at"]),
        }
    )


class InMemoryMigrationStateRepository:
    """
    In-memory implementation of MigrationStateRepository for testing.

    Records are stored in their serialized form, so a loaded state never
    aliases a stored one, exactly as with a database.

    Example:
        >>> repo = InMemoryMigrationStateRepository()
        >>> await repo.create(state)
        >>> loaded = await repo.get(state.migration_id)
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._records: dict[UUID, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def create(self, state: SyncState) -> UUID:
        with self._tracer.span(
            "livepartition.state_repo.create",
            {ATTR_MIGRATION_ID: str(state.migration_id), ATTR_DB_SYSTEM: "memory"},
        ):
            async with self._lock:
                for record in self._records.values():
                    if (
                        record["plan"]["source"]["name"] == state.plan.source_table
                        and record["phase"] not in TERMINAL_PHASES
                    ):
                        raise MigrationAlreadyExistsError(
                            state.plan.source_table, UUID(record["migration_id"])
                        )
                self._records[state.migration_id] = state.to_dict()
                return state.migration_id

    async def get(self, migration_id: UUID) -> SyncState | None:
        async with self._lock:
            record = self._records.get(migration_id)
            return SyncState.from_dict(record) if record else None

    async def save(self, state: SyncState) -> None:
        with self._tracer.span(
            "livepartition.state_repo.save",
            {
                ATTR_MIGRATION_ID: str(state.migration_id),
                ATTR_MIGRATION_PHASE: state.phase.value,
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            async with self._lock:
                if state.migration_id not in self._records:
                    raise MigrationNotFoundError(state.migration_id)
                self._records[state.migration_id] = state.to_dict()

    async def get_active_for_table(self, source_table: str) -> SyncState | None:
        for state in await self.list_active():
            if state.plan.source_table == source_table:
                return state
        return None

    async def list_active(self) -> list[SyncState]:
        async with self._lock:
            states = [
                SyncState.from_dict(r)
                for r in self._records.values()
                if r["phase"] not in TERMINAL_PHASES
            ]
        return sorted(states, key=lambda s: s.created_at)

    async def clear(self) -> None:
        async with self._lock:
            self._records.clear()


class PostgreSQLMigrationStateRepository:
    """
    PostgreSQL implementation of MigrationStateRepository.

    Persists state to the `livepartition_migrations` table. A partial
    unique index on source_table guards against two active migrations of
    the same table even when two engines race.

    Example:
        >>> repo = PostgreSQLMigrationStateRepository(engine)
        >>> state = await repo.get(migration_id)
        >>> print(f"Phase: {state.phase.value}")
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the repository.

        Args:
            conn: Database connection or engine
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._conn = conn

    async def create(self, state: SyncState) -> UUID:
        with self._tracer.span(
            "livepartition.state_repo.create",
            {
                ATTR_MIGRATION_ID: str(state.migration_id),
                ATTR_SOURCE_TABLE: state.plan.source_table,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            existing = await self.get_active_for_table(state.plan.source_table)
            if existing is not None:
                raise MigrationAlreadyExistsError(state.plan.source_table, existing.migration_id)

            query = text(f"""
                INSERT INTO livepartition_migrations ({_COLUMNS})
                VALUES (
                    :id, :source_table, :target_table, :phase,
                    CAST(:plan AS JSONB), CAST(:cursor AS JSONB),
                    CAST(:low_water_mark AS JSONB), CAST(:dual_write_link AS JSONB),
                    CAST(:last_report AS JSONB), :error_count, :last_error,
                    :last_error_at, CAST(:history AS JSONB), :created_at, :updated_at
                )
            """)  # nosec B608 - column list is a constant
            try:
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    await conn.execute(query, _document(state))
            except IntegrityError:
                # lost a race against another engine creating the same migration
                existing = await self.get_active_for_table(state.plan.source_table)
                if existing is None:
                    raise
                raise MigrationAlreadyExistsError(
                    state.plan.source_table, existing.migration_id
                ) from None
            return state.migration_id

    async def get(self, migration_id: UUID) -> SyncState | None:
        with self._tracer.span(
            "livepartition.state_repo.get",
            {ATTR_MIGRATION_ID: str(migration_id), ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text(f"""
                SELECT {_COLUMNS} FROM livepartition_migrations WHERE id = :id
            """)  # nosec B608
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"id": migration_id})
                row = result.mappings().first()
                return _state_from_row(row) if row else None

    async def save(self, state: SyncState) -> None:
        with self._tracer.span(
            "livepartition.state_repo.save",
            {
                ATTR_MIGRATION_ID: str(state.migration_id),
                ATTR_MIGRATION_PHASE: state.phase.value,
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            query = text("""
                UPDATE livepartition_migrations SET
                    phase = :phase,
                    cursor = CAST(:cursor AS JSONB),
                    low_water_mark = CAST(:low_water_mark AS JSONB),
                    dual_write_link = CAST(:dual_write_link AS JSONB),
                    last_report = CAST(:last_report AS JSONB),
                    error_count = :error_count,
                    last_error = :last_error,
                    last_error_at = :last_error_at,
                    history = CAST(:history AS JSONB),
                    updated_at = :updated_at
                WHERE id = :id
            """)
            params = _document(state)
            for unused in ("source_table", "target_table", "plan", "created_at"):
                params.pop(unused)
            async with execute_with_connection(self._conn, transactional=True) as conn:
                result = await conn.execute(query, params)
                if result.rowcount == 0:
                    raise MigrationNotFoundError(state.migration_id)

    async def get_active_for_table(self, source_table: str) -> SyncState | None:
        query = text(f"""
            SELECT {_COLUMNS} FROM livepartition_migrations
            WHERE source_table = :source_table AND NOT (phase = ANY(:terminal))
            ORDER BY created_at DESC
            LIMIT 1
        """)  # nosec B608
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(
                query, {"source_table": source_table, "terminal": list(TERMINAL_PHASES)}
            )
            row = result.mappings().first()
            return _state_from_row(row) if row else None

    async def list_active(self) -> list[SyncState]:
        query = text(f"""
            SELECT {_COLUMNS} FROM livepartition_migrations
            WHERE NOT (phase = ANY(:terminal))
            ORDER BY created_at
        """)  # nosec B608
        async with execute_with_connection(self._conn, transactional=False) as conn:
            result = await conn.execute(query, {"terminal": list(TERMINAL_PHASES)})
            return [_state_from_row(row) for row in result.mappings()]


class SQLiteMigrationStateRepository:
    """
    SQLite implementation of MigrationStateRepository.

    SQLite-specific adaptations:
    - UUIDs stored as TEXT (36 characters, hyphenated format)
    - Timestamps stored as TEXT in ISO 8601 format
    - JSON documents stored as TEXT

    Example:
        >>> async with aiosqlite.connect("livepartition.db") as db:
        ...     await db.executescript(get_schema(backend="sqlite"))
        ...     repo = SQLiteMigrationStateRepository(db)
        ...     await repo.create(state)
    """

    def __init__(
        self,
        connection: aiosqlite.Connection,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the repository.

        Args:
            connection: aiosqlite database connection
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._connection = connection

    @staticmethod
    def _params(state: SyncState) -> dict[str, Any]:
        params = _document(state)
        params["id"] = str(state.migration_id)
        params["last_error_at"] = _iso(state.last_error_at)
        params["created_at"] = state.created_at.isoformat()
        params["updated_at"] = state.updated_at.isoformat()
        return params

    async def _fetch(self, sql: str, params: tuple[Any, ...]) -> list[SyncState]:
        self._connection.row_factory = aiosqlite.Row
        cursor = await self._connection.execute(sql, params)
        rows = await cursor.fetchall()
        return [_state_from_row(row) for row in rows]

    async def create(self, state: SyncState) -> UUID:
        with self._tracer.span(
            "livepartition.state_repo.create",
            {
                ATTR_MIGRATION_ID: str(state.migration_id),
                ATTR_SOURCE_TABLE: state.plan.source_table,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            existing = await self.get_active_for_table(state.plan.source_table)
            if existing is not None:
                raise MigrationAlreadyExistsError(state.plan.source_table, existing.migration_id)
            try:
                await self._connection.execute(
                    f"""
                    INSERT INTO livepartition_migrations ({_COLUMNS})
                    VALUES (
                        :id, :source_table, :target_table, :phase, :plan, :cursor,
                        :low_water_mark, :dual_write_link, :last_report, :error_count,
                        :last_error, :last_error_at, :history, :created_at, :updated_at
                    )
                    """,  # nosec B608
                    self._params(state),
                )
                await self._connection.commit()
            except aiosqlite.IntegrityError:
                await self._connection.rollback()
                raise
            return state.migration_id

    async def get(self, migration_id: UUID) -> SyncState | None:
        states = await self._fetch(
            f"SELECT {_COLUMNS} FROM livepartition_migrations WHERE id = ?",  # nosec B608
            (str(migration_id),),
        )
        return states[0] if states else None

    async def save(self, state: SyncState) -> None:
        with self._tracer.span(
            "livepartition.state_repo.save",
            {
                ATTR_MIGRATION_ID: str(state.migration_id),
                ATTR_MIGRATION_PHASE: state.phase.value,
                ATTR_DB_SYSTEM: "sqlite",
            },
        ):
            params = self._params(state)
            for unused in ("source_table", "target_table", "plan", "created_at"):
                params.pop(unused)
            cursor = await self._connection.execute(
                """
                UPDATE livepartition_migrations SET
                    phase = :phase,
                    cursor = :cursor,
                    low_water_mark = :low_water_mark,
                    dual_write_link = :dual_write_link,
                    last_report = :last_report,
                    error_count = :error_count,
                    last_error = :last_error,
                    last_error_at = :last_error_at,
                    history = :history,
                    updated_at = :updated_at
                WHERE id = :id
                """,
                params,
            )
            await self._connection.commit()
            if cursor.rowcount == 0:
                raise MigrationNotFoundError(state.migration_id)

    async def get_active_for_table(self, source_table: str) -> SyncState | None:
        placeholders = ", ".join("?" for _ in TERMINAL_PHASES)
        states = await self._fetch(
            f"""
            SELECT {_COLUMNS} FROM livepartition_migrations
            WHERE source_table = ? AND phase NOT IN ({placeholders})
            ORDER BY created_at DESC
            LIMIT 1
            """,  # nosec B608
            (source_table, *TERMINAL_PHASES),
        )
        return states[0] if states else None

    async def list_active(self) -> list[SyncState]:
        placeholders = ", ".join("?" for _ in TERMINAL_PHASES)
        return await self._fetch(
            f"""
            SELECT {_COLUMNS} FROM livepartition_migrations
            WHERE phase NOT IN ({placeholders})
            ORDER BY created_at
            """,  # nosec B608
            TERMINAL_PHASES,
        )


__all__ = [
    "MigrationStateRepository",
    "InMemoryMigrationStateRepository",
    "PostgreSQLMigrationStateRepository",
    "SQLiteMigrationStateRepository",
]
