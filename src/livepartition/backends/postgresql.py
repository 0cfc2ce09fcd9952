"""
PostgreSQL partition backend.

Executes the statements rendered by `livepartition.ddl` through a
SQLAlchemy AsyncEngine (asyncpg driver).

Transaction scoping:
    - Every copy statement runs in its own short transaction, so a
      failed batch leaves the target unchanged.
    - Verification stats for source and target are read inside one
      REPEATABLE READ transaction, so both counts come from the same
      snapshot.
    - Partition indexes are built with CREATE INDEX CONCURRENTLY on an
      AUTOCOMMIT connection, which cannot run inside a transaction.
    - The cutover unit is a single transaction with a local lock_timeout.

Error translation:
    Serialization failures, deadlocks, lock and statement timeouts and
    dropped connections are raised as TransientBackendError. Failed
    VALIDATE CONSTRAINT statements are raised as ConstraintValidationFailed.
    Everything else propagates unchanged.

Example:
    >>> from sqlalchemy.ext.asyncio import create_async_engine
    >>> from livepartition.backends import PostgreSQLBackend
    >>>
    >>> engine = create_async_engine("postgresql+asyncpg://localhost/app")
    >>> backend = PostgreSQLBackend(engine)
    >>> schema = await backend.describe_table("orders")
"""

import logging
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from livepartition.backends.interface import (
    ConstraintValidationFailed,
    CutoverUnit,
    PartitionBackend,
    TransientBackendError,
)
from livepartition.ddl import (
    child_name,
    key_in_params,
    key_params,
    render_add_constraint,
    render_anti_join,
    render_attach_constraint,
    render_attach_index,
    render_copy_batch,
    render_copy_keys,
    render_count_after,
    render_drop_mirror,
    render_drop_partition_index,
    render_fetch_rows,
    render_find_violation,
    render_key_at_offset,
    render_lock_tables,
    render_lock_timeout,
    render_mirror_function,
    render_mirror_trigger,
    render_parent_index,
    render_partition_index,
    render_rename,
    render_rename_index,
    render_sample_keys,
    render_sequence_owner,
    render_table_stats,
    render_target_ddl,
    render_validate_constraint,
    target_index_name,
)
from livepartition.models import (
    ConflictPolicy,
    CopyResult,
    DualWriteLink,
    KeyValue,
    MigrationPlan,
    TableStats,
)
from livepartition.observability import Tracer, create_tracer
from livepartition.observability.attributes import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_OBJECT_NAME,
    ATTR_ROWS_INSERTED,
    ATTR_ROWS_READ,
    ATTR_SOURCE_TABLE,
)
from livepartition.schema import (
    ColumnSpec,
    ConstraintKind,
    ConstraintSpec,
    IndexSpec,
    SequenceSpec,
    TableSchema,
    quote_ident,
)

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected, lock_not_available, query_canceled
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03", "57014"})

# check_violation, foreign_key_violation
VIOLATION_SQLSTATES = frozenset({"23514", "23503"})

# Keys per IN (...) list; keeps bind parameters well under asyncpg's 32767 limit.
KEY_CHUNK_SIZE = 500

# Above this many rows per sampled key, sample with TABLESAMPLE instead of sorting.
TABLESAMPLE_THRESHOLD = 10


def _sqlstate(error: DBAPIError) -> str | None:
    orig = error.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _is_transient(error: DBAPIError) -> bool:
    code = _sqlstate(error)
    if code in TRANSIENT_SQLSTATES:
        return True
    if error.connection_invalidated:
        return True
    return isinstance(error, OperationalError) and code is None


@contextmanager
def _translated_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except DBAPIError as e:
        if _is_transient(e):
            logger.warning(
                "Transient database error during %s: %s",
                operation,
                e.orig,
                extra={"operation": operation, "sqlstate": _sqlstate(e)},
            )
            raise TransientBackendError(f"{operation}: {e.orig}") from e
        raise


def _chunks(keys: Sequence[KeyValue], size: int = KEY_CHUNK_SIZE) -> Iterator[Sequence[KeyValue]]:
    for start in range(0, len(keys), size):
        yield keys[start : start + size]


class PostgreSQLBackend(PartitionBackend):
    """
    PostgreSQL implementation of PartitionBackend.

    Tables are resolved through the connection's search_path; the source,
    target and archive tables live in the same schema.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://localhost/app")
        >>> backend = PostgreSQLBackend(engine)
        >>> coordinator = MigrationCoordinator(backend, state_repo, lock_manager)
    """

    name = "postgresql"

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the backend.

        Args:
            engine: SQLAlchemy async engine using the asyncpg driver
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._engine = engine

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    async def describe_table(self, table: str) -> TableSchema:
        rel = quote_ident(table)
        async with self._engine.connect() as conn:
            if not await self._exists(conn, rel):
                raise LookupError(f'relation "{table}" does not exist')

            columns = await conn.execute(
                text("""
                    SELECT a.attname AS name,
                           format_type(a.atttypid, a.atttypmod) AS sql_type,
                           NOT a.attnotnull AS nullable,
                           pg_get_expr(d.adbin, d.adrelid) AS default_expr
                    FROM pg_attribute a
                    LEFT JOIN pg_attrdef d ON d.adrelid = a.attrelid AND d.adnum = a.attnum
                    WHERE a.attrelid = to_regclass(:rel) AND a.attnum > 0 AND NOT a.attisdropped
                    ORDER BY a.attnum
                """),
                {"rel": rel},
            )
            primary_key = await conn.execute(
                text("""
                    SELECT a.attname
                    FROM pg_index i
                    JOIN LATERAL unnest(i.indkey::int2[]) WITH ORDINALITY AS k(attnum, ord) ON TRUE
                    JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = k.attnum
                    WHERE i.indrelid = to_regclass(:rel) AND i.indisprimary
                    ORDER BY k.ord
                """),
                {"rel": rel},
            )
            indexes = await conn.execute(
                text("""
                    SELECT c.relname AS name, i.indisunique AS is_unique, am.amname AS method,
                           array_agg(a.attname ORDER BY k.ord) AS columns
                    FROM pg_index i
                    JOIN pg_class c ON c.oid = i.indexrelid
                    JOIN pg_am am ON am.oid = c.relam
                    JOIN LATERAL unnest(i.indkey::int2[]) WITH ORDINALITY AS k(attnum, ord) ON TRUE
                    JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = k.attnum
                    WHERE i.indrelid = to_regclass(:rel)
                      AND NOT i.indisprimary
                      AND i.indexprs IS NULL
                      AND i.indpred IS NULL
                    GROUP BY c.relname, i.indisunique, am.amname
                    ORDER BY c.relname
                """),
                {"rel": rel},
            )
            constraints = await conn.execute(
                text("""
                    SELECT con.conname AS name,
                           con.contype AS kind,
                           pg_get_expr(con.conbin, con.conrelid) AS expression,
                           ARRAY(
                               SELECT a.attname
                               FROM unnest(con.conkey) WITH ORDINALITY AS k(n, ord)
                               JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = k.n
                               ORDER BY k.ord
                           ) AS columns,
                           rc.relname AS references_table,
                           ARRAY(
                               SELECT a.attname
                               FROM unnest(con.confkey) WITH ORDINALITY AS k(n, ord)
                               JOIN pg_attribute a ON a.attrelid = con.confrelid AND a.attnum = k.n
                               ORDER BY k.ord
                           ) AS references_columns
                    FROM pg_constraint con
                    LEFT JOIN pg_class rc ON rc.oid = con.confrelid
                    WHERE con.conrelid = to_regclass(:rel) AND con.contype IN ('c', 'f')
                    ORDER BY con.conname
                """),
                {"rel": rel},
            )
            sequences = await conn.execute(
                text("""
                    SELECT s.relname AS name, a.attname AS column_name
                    FROM pg_depend d
                    JOIN pg_class s ON s.oid = d.objid AND s.relkind = 'S'
                    JOIN pg_attribute a ON a.attrelid = d.refobjid AND a.attnum = d.refobjsubid
                    WHERE d.refobjid = to_regclass(:rel)
                      AND d.classid = 'pg_class'::regclass
                      AND d.deptype = 'a'
                    ORDER BY s.relname
                """),
                {"rel": rel},
            )

            return TableSchema(
                name=table,
                columns=tuple(
                    ColumnSpec(
                        name=r.name,
                        sql_type=r.sql_type,
                        nullable=r.nullable,
                        default=r.default_expr,
                    )
                    for r in columns
                ),
                primary_key=tuple(r[0] for r in primary_key),
                indexes=tuple(
                    IndexSpec(
                        name=r.name,
                        columns=tuple(r.columns),
                        unique=r.is_unique,
                        method=r.method,
                    )
                    for r in indexes
                ),
                constraints=tuple(
                    ConstraintSpec(
                        name=r.name,
                        kind=ConstraintKind.CHECK if r.kind == "c" else ConstraintKind.FOREIGN_KEY,
                        expression=r.expression if r.kind == "c" else None,
                        columns=tuple(r.columns) if r.kind == "f" else (),
                        references_table=r.references_table,
                        references_columns=tuple(r.references_columns) if r.kind == "f" else (),
                    )
                    for r in constraints
                ),
                sequences=tuple(
                    SequenceSpec(name=r.name, column=r.column_name) for r in sequences
                ),
            )

    async def table_exists(self, table: str) -> bool:
        async with self._engine.connect() as conn:
            return await self._exists(conn, quote_ident(table))

    @staticmethod
    async def _exists(conn: AsyncConnection, rel: str) -> bool:
        result = await conn.execute(text("SELECT to_regclass(:rel) IS NOT NULL"), {"rel": rel})
        return bool(result.scalar())

    async def value_range(self, table: str, column: str) -> tuple[Any, Any] | None:
        col = quote_ident(column)
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text(f"SELECT min({col}), max({col}) FROM {quote_ident(table)}")  # nosec B608
            )
            low, high = result.one()
        if low is None:
            return None
        return low, high

    async def estimate_rows(self, table: str) -> int:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text("SELECT reltuples::bigint FROM pg_class WHERE oid = to_regclass(:rel)"),
                {"rel": quote_ident(table)},
            )
            estimate = result.scalar()
            if estimate is not None and estimate >= 0:
                return int(estimate)
            # never analyzed (or partitioned parent): count instead
            result = await conn.execute(
                text(f"SELECT count(*) FROM {quote_ident(table)}")  # nosec B608
            )
            return int(result.scalar() or 0)

    # -------------------------------------------------------------------------
    # Target and dual-write
    # -------------------------------------------------------------------------

    async def create_target(self, plan: MigrationPlan) -> None:
        ddl = render_target_ddl(plan)
        with self._tracer.span(
            "livepartition.backend.create_target",
            {ATTR_DB_SYSTEM: "postgresql", ATTR_OBJECT_NAME: plan.target_table},
        ):
            with _translated_errors("create_target"):
                async with self._engine.begin() as conn:
                    for statement in ddl.statements:
                        await conn.execute(text(statement))
        logger.debug("Created partitioned table %s", plan.target_table)

    async def install_dual_write(self, plan: MigrationPlan, link: DualWriteLink) -> None:
        drop_trigger, _ = render_drop_mirror(plan.source_table, link)
        with _translated_errors("install_dual_write"):
            async with self._engine.begin() as conn:
                await conn.execute(text(render_lock_timeout(plan.config.lock_timeout_ms)))
                await conn.execute(text(render_mirror_function(plan, link)))
                await conn.execute(text(drop_trigger))
                await conn.execute(text(render_mirror_trigger(plan, link)))

    async def remove_dual_write(self, plan: MigrationPlan, link: DualWriteLink) -> None:
        with _translated_errors("remove_dual_write"):
            async with self._engine.begin() as conn:
                if not await self._exists(conn, quote_ident(plan.source_table)):
                    return
                await conn.execute(text(render_lock_timeout(plan.config.lock_timeout_ms)))
                for statement in render_drop_mirror(plan.source_table, link):
                    await conn.execute(text(statement))

    async def dual_write_installed(self, plan: MigrationPlan, link: DualWriteLink) -> bool:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text("""
                    SELECT EXISTS (
                        SELECT 1 FROM pg_trigger
                        WHERE tgrelid = to_regclass(:rel)
                          AND tgname = :name
                          AND NOT tgisinternal
                    )
                """),
                {"rel": quote_ident(plan.source_table), "name": link.trigger_name},
            )
            return bool(result.scalar())

    # -------------------------------------------------------------------------
    # Copying
    # -------------------------------------------------------------------------

    async def copy_batch(
        self,
        plan: MigrationPlan,
        after_key: KeyValue | None,
        limit: int,
        policy: ConflictPolicy,
        *,
        upper_key: KeyValue | None = None,
        statement_timeout_ms: int = 0,
    ) -> CopyResult:
        query = render_copy_batch(
            plan,
            has_lower=after_key is not None,
            has_upper=upper_key is not None,
            ignore_conflicts=policy is ConflictPolicy.IGNORE_ON_DUPLICATE_IDENTITY,
        )
        params: dict[str, Any] = {"limit": limit}
        if after_key is not None:
            params.update(key_params("lo", after_key))
        if upper_key is not None:
            params.update(key_params("hi", upper_key))

        with self._tracer.span(
            "livepartition.backend.copy_batch",
            {ATTR_DB_SYSTEM: "postgresql", ATTR_DB_OPERATION: "INSERT", ATTR_SOURCE_TABLE: plan.source_table},
        ) as span:
            with _translated_errors("copy_batch"):
                async with self._engine.begin() as conn:
                    if statement_timeout_ms:
                        await conn.execute(
                            text(f"SET LOCAL statement_timeout = '{int(statement_timeout_ms)}ms'")
                        )
                    row = (await conn.execute(text(query), params)).mappings().one()

            rows_read = int(row["rows_read"])
            rows_inserted = int(row["rows_inserted"])
            if span is not None and self._enable_tracing:
                span.set_attribute(ATTR_ROWS_READ, rows_read)
                span.set_attribute(ATTR_ROWS_INSERTED, rows_inserted)

        max_key = None
        if rows_read:
            max_key = tuple(row[f"max_{i}"] for i in range(len(plan.identity_key)))
        return CopyResult(rows_read=rows_read, rows_inserted=rows_inserted, max_key=max_key)

    async def missing_keys(self, plan: MigrationPlan, limit: int) -> list[KeyValue]:
        with _translated_errors("missing_keys"):
            async with self._engine.connect() as conn:
                result = await conn.execute(
                    text(render_anti_join(plan, count_only=False)), {"limit": limit}
                )
                return [tuple(r) for r in result]

    async def count_missing(self, plan: MigrationPlan) -> int:
        with _translated_errors("count_missing"):
            async with self._engine.connect() as conn:
                result = await conn.execute(text(render_anti_join(plan, count_only=True)))
                return int(result.scalar() or 0)

    async def copy_keys(
        self,
        plan: MigrationPlan,
        keys: Sequence[KeyValue],
        policy: ConflictPolicy,
    ) -> int:
        ignore = policy is ConflictPolicy.IGNORE_ON_DUPLICATE_IDENTITY
        inserted = 0
        with self._tracer.span(
            "livepartition.backend.copy_keys",
            {ATTR_DB_SYSTEM: "postgresql", ATTR_DB_OPERATION: "INSERT", ATTR_SOURCE_TABLE: plan.source_table},
        ):
            with _translated_errors("copy_keys"):
                async with self._engine.begin() as conn:
                    for chunk in _chunks(keys):
                        result = await conn.execute(
                            text(render_copy_keys(plan, len(chunk), ignore_conflicts=ignore)),
                            key_in_params(chunk),
                        )
                        inserted += result.rowcount or 0
        return inserted

    async def split_points(
        self,
        plan: MigrationPlan,
        after_key: KeyValue | None,
        parts: int,
    ) -> list[KeyValue]:
        if parts < 2:
            return []
        has_lower = after_key is not None
        base = key_params("lo", after_key) if after_key is not None else {}
        async with self._engine.connect() as conn:
            total = (
                await conn.execute(text(render_count_after(plan, has_lower=has_lower)), base)
            ).scalar() or 0
            if total < parts:
                return []
            points: list[KeyValue] = []
            query = text(render_key_at_offset(plan, has_lower=has_lower))
            for i in range(1, parts):
                row = (
                    await conn.execute(query, {**base, "offset": total * i // parts - 1})
                ).first()
                if row is not None and (not points or tuple(row) > points[-1]):
                    points.append(tuple(row))
            return points

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    async def snapshot_stats(self, plan: MigrationPlan) -> tuple[TableStats, TableStats]:
        with self._tracer.span(
            "livepartition.backend.snapshot_stats",
            {ATTR_DB_SYSTEM: "postgresql", ATTR_SOURCE_TABLE: plan.source_table},
        ):
            with _translated_errors("snapshot_stats"):
                async with self._snapshot() as conn:
                    stats = []
                    for table in (plan.source_table, plan.target_table):
                        row = (
                            await conn.execute(text(render_table_stats(plan, table)))
                        ).mappings().one()
                        stats.append(TableStats(int(row["row_count"]), int(row["key_checksum"])))
        return stats[0], stats[1]

    async def partition_counts(self, plan: MigrationPlan) -> dict[str, int]:
        counts: dict[str, int] = {}
        with _translated_errors("partition_counts"):
            async with self._snapshot() as conn:
                for name in plan.partition_names:
                    result = await conn.execute(
                        text(f"SELECT count(*) FROM {quote_ident(name)}")  # nosec B608
                    )
                    counts[name] = int(result.scalar() or 0)
        return counts

    async def sample_keys(self, plan: MigrationPlan, sample_size: int) -> list[KeyValue]:
        estimate = await self.estimate_rows(plan.source_table)
        use_tablesample = estimate > sample_size * TABLESAMPLE_THRESHOLD
        params: dict[str, Any] = {"limit": sample_size}
        if use_tablesample:
            # oversample so LIMIT usually has enough rows to choose from
            params["percent"] = min(100.0, sample_size * 2 / estimate * 100)
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text(render_sample_keys(plan, tablesample=use_tablesample)), params
            )
            return sorted(tuple(r) for r in result)

    async def fetch_rows(
        self,
        plan: MigrationPlan,
        table: str,
        keys: Sequence[KeyValue],
    ) -> dict[KeyValue, dict[str, Any]]:
        rows: dict[KeyValue, dict[str, Any]] = {}
        async with self._engine.connect() as conn:
            for chunk in _chunks(keys):
                result = await conn.execute(
                    text(render_fetch_rows(plan, table, len(chunk))), key_in_params(chunk)
                )
                for row in result.mappings():
                    data = dict(row)
                    rows[plan.key_of(data)] = data
        return rows

    @asynccontextmanager
    async def _snapshot(self) -> AsyncIterator[AsyncConnection]:
        async with self._engine.connect() as conn:
            conn = await conn.execution_options(isolation_level="REPEATABLE READ")
            async with conn.begin():
                yield conn

    # -------------------------------------------------------------------------
    # Indexes and constraints
    # -------------------------------------------------------------------------

    async def valid_indexes(self, plan: MigrationPlan) -> set[str]:
        names = {target_index_name(plan, index): index.name for index in plan.indexes}
        if not names:
            return set()
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text("""
                    SELECT c.relname
                    FROM pg_index i
                    JOIN pg_class c ON c.oid = i.indexrelid
                    WHERE i.indrelid = to_regclass(:rel)
                      AND i.indisvalid
                      AND c.relname = ANY(:names)
                """),
                {"rel": quote_ident(plan.target_table), "names": list(names)},
            )
            return {names[r[0]] for r in result}

    async def build_index(self, plan: MigrationPlan, index: IndexSpec) -> None:
        """
        Build one index across all partitions without blocking writers.

        The parent index is created ON ONLY the partitioned table, which is
        instant and leaves it invalid. Each partition's index is then built
        CONCURRENTLY and attached; the parent becomes valid once the last
        partition is attached. A partition index left invalid by an earlier
        interrupted build is dropped and rebuilt.
        """
        with self._tracer.span(
            "livepartition.backend.build_index",
            {ATTR_DB_SYSTEM: "postgresql", ATTR_OBJECT_NAME: index.name},
        ):
            with _translated_errors("build_index"):
                async with self._engine.begin() as conn:
                    await conn.execute(text(render_lock_timeout(plan.config.lock_timeout_ms)))
                    await conn.execute(text(render_parent_index(plan, index)))

                async with self._engine.connect() as conn:
                    conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
                    for partition in plan.partition_names:
                        child = quote_ident(child_name(partition, index.name))
                        valid = (
                            await conn.execute(
                                text(
                                    "SELECT indisvalid FROM pg_index "
                                    "WHERE indexrelid = to_regclass(:idx)"
                                ),
                                {"idx": child},
                            )
                        ).scalar()
                        if valid is False:
                            logger.info("Rebuilding invalid index %s", child)
                            await conn.execute(text(render_drop_partition_index(index, partition)))
                        await conn.execute(text(render_partition_index(index, partition)))
                        await conn.execute(text(render_attach_index(plan, index, partition)))

    async def constraint_states(
        self,
        plan: MigrationPlan,
        constraint: ConstraintSpec,
    ) -> dict[str, bool]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text("""
                    SELECT c.relname AS partition, con.convalidated
                    FROM pg_constraint con
                    JOIN pg_class c ON c.oid = con.conrelid
                    JOIN pg_inherits inh ON inh.inhrelid = c.oid
                    WHERE inh.inhparent = to_regclass(:parent)
                      AND con.conname = :name
                      AND c.relname = ANY(:partitions)
                """),
                {
                    "parent": quote_ident(plan.target_table),
                    "name": constraint.name,
                    "partitions": list(plan.partition_names),
                },
            )
            return {r.partition: bool(r.convalidated) for r in result}

    async def add_constraint_not_valid(
        self,
        plan: MigrationPlan,
        constraint: ConstraintSpec,
        partition: str,
    ) -> None:
        states = await self.constraint_states(plan, constraint)
        if partition in states:
            return
        with _translated_errors("add_constraint"):
            async with self._engine.begin() as conn:
                await conn.execute(text(render_lock_timeout(plan.config.lock_timeout_ms)))
                await conn.execute(text(render_add_constraint(constraint, partition)))

    async def validate_constraint(
        self,
        plan: MigrationPlan,
        constraint: ConstraintSpec,
        partition: str,
    ) -> None:
        with self._tracer.span(
            "livepartition.backend.validate_constraint",
            {ATTR_DB_SYSTEM: "postgresql", ATTR_OBJECT_NAME: constraint.name},
        ):
            try:
                with _translated_errors("validate_constraint"):
                    async with self._engine.begin() as conn:
                        await conn.execute(text(render_validate_constraint(constraint, partition)))
            except DBAPIError as e:
                if _sqlstate(e) in VIOLATION_SQLSTATES:
                    raise ConstraintValidationFailed(constraint.name, partition, str(e.orig)) from e
                raise

    async def find_violation(
        self,
        plan: MigrationPlan,
        constraint: ConstraintSpec,
        partition: str,
    ) -> dict[str, Any] | None:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text(render_find_violation(constraint, partition, plan.columns))
            )
            row = result.mappings().first()
            return dict(row) if row is not None else None

    async def parent_constraints(self, plan: MigrationPlan) -> set[str]:
        names = [c.name for c in plan.constraints]
        if not names:
            return set()
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text("""
                    SELECT conname FROM pg_constraint
                    WHERE conrelid = to_regclass(:rel) AND conname = ANY(:names)
                """),
                {"rel": quote_ident(plan.target_table), "names": names},
            )
            return {r[0] for r in result}

    async def attach_constraint(
        self,
        plan: MigrationPlan,
        constraint: ConstraintSpec,
        lock_timeout_ms: int,
    ) -> None:
        """
        Add the constraint to the partitioned parent.

        PostgreSQL merges a parent CHECK with each partition's validated
        CHECK of the same name and expression, and adopts matching
        validated foreign keys, so no rows are scanned under the lock.
        """
        with self._tracer.span(
            "livepartition.backend.attach_constraint",
            {ATTR_DB_SYSTEM: "postgresql", ATTR_OBJECT_NAME: constraint.name},
        ):
            with _translated_errors("attach_constraint"):
                async with self._engine.begin() as conn:
                    await conn.execute(text(render_lock_timeout(lock_timeout_ms)))
                    await conn.execute(text(render_attach_constraint(plan, constraint)))

    # -------------------------------------------------------------------------
    # Cutover
    # -------------------------------------------------------------------------

    async def cutover_applied(self, plan: MigrationPlan) -> bool:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text("""
                    SELECT to_regclass(:target) IS NULL
                       AND to_regclass(:archive) IS NOT NULL
                       AND EXISTS (
                           SELECT 1 FROM pg_class
                           WHERE oid = to_regclass(:primary) AND relkind = 'p'
                       )
                """),
                {
                    "target": quote_ident(plan.target_table),
                    "archive": quote_ident(plan.archive_table),
                    "primary": quote_ident(plan.source_table),
                },
            )
            return bool(result.scalar())

    @asynccontextmanager
    async def cutover_unit(
        self,
        plan: MigrationPlan,
        link: DualWriteLink | None,
        lock_timeout_ms: int,
    ) -> AsyncIterator[CutoverUnit]:
        with _translated_errors("cutover"):
            async with self._engine.connect() as conn:
                async with conn.begin():
                    await conn.execute(text(render_lock_timeout(lock_timeout_ms)))
                    yield _PostgreSQLCutoverUnit(conn, plan, link)


class _PostgreSQLCutoverUnit(CutoverUnit):
    def __init__(self, conn: AsyncConnection, plan: MigrationPlan, link: DualWriteLink | None) -> None:
        self._conn = conn
        self._plan = plan
        self._link = link

    async def lock_tables(self) -> None:
        await self._conn.execute(text(render_lock_tables(self._plan)))

    async def retarget_sequences(self) -> None:
        for sequence in self._plan.sequences:
            await self._conn.execute(
                text(render_sequence_owner(sequence.name, self._plan.target_table, sequence.column))
            )

    async def remove_dual_write(self) -> None:
        if self._link is None:
            return
        for statement in render_drop_mirror(self._plan.source_table, self._link):
            await self._conn.execute(text(statement))

    async def rename_source(self) -> None:
        await self._conn.execute(
            text(render_rename(self._plan.source_table, self._plan.archive_table))
        )
        for index in self._plan.indexes:
            await self._conn.execute(
                text(render_rename_index(index.name, child_name(self._plan.archive_table, index.name)))
            )

    async def rename_target(self) -> None:
        await self._conn.execute(
            text(render_rename(self._plan.target_table, self._plan.source_table))
        )
        for index in self._plan.indexes:
            await self._conn.execute(
                text(render_rename_index(target_index_name(self._plan, index), index.name))
            )


__all__ = ["PostgreSQLBackend", "TRANSIENT_SQLSTATES"]
