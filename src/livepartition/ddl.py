"""
SQL rendering for PostgreSQL.

Pure functions turning a MigrationPlan into the statements the PostgreSQL
backend executes. Nothing here touches a database, which keeps the text of
every statement unit-testable.

Identifiers are validated by the schema models and always double-quoted.
Partition bounds are rendered as SQL literals because PostgreSQL does not
accept bind parameters in DDL.

Example:
    >>> from livepartition.ddl import render_target_ddl
    >>> ddl = render_target_ddl(plan)
    >>> for statement in ddl.statements:
    ...     print(statement)
    CREATE TABLE IF NOT EXISTS "orders_partitioned" (...) PARTITION BY RANGE ("created_on")
    CREATE TABLE IF NOT EXISTS "orders_p20240101" PARTITION OF "orders_partitioned" FOR VALUES ...
"""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from livepartition.models import ConflictPolicy
from livepartition.schema import (
    MAX_IDENTIFIER_LENGTH,
    ConstraintKind,
    ConstraintSpec,
    IndexSpec,
    quote_ident,
)

if TYPE_CHECKING:
    from livepartition.models import DualWriteLink, MigrationPlan, PartitionBound


@dataclass(frozen=True)
class TargetDDL:
    """
    Statements creating the partitioned target table.

    Attributes:
        create_table: CREATE TABLE ... PARTITION BY RANGE statement.
        partitions: One CREATE TABLE ... PARTITION OF statement per range.
        default_partition: DEFAULT partition statement, if the plan has one.
    """

    create_table: str
    partitions: tuple[str, ...]
    default_partition: str | None = None

    @property
    def statements(self) -> tuple[str, ...]:
        result = (self.create_table, *self.partitions)
        if self.default_partition:
            result += (self.default_partition,)
        return result


def sql_literal(value: Any) -> str:
    """
    Render a Python value as a PostgreSQL literal.

    Raises:
        TypeError: For values with no literal form.
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, (datetime, date, time)):
        return "'" + value.isoformat() + "'"
    if isinstance(value, UUID):
        return "'" + str(value) + "'"
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    raise TypeError(f"Cannot render {type(value).__name__} as a SQL literal")


def child_name(parent: str, suffix: str) -> str:
    """
    Derive an identifier from two others, staying within 63 bytes.

    Long names are shortened and given a stable hash suffix so two
    different inputs never collapse to the same truncated name.
    """
    name = f"{parent}_{suffix}"
    if len(name.encode()) <= MAX_IDENTIFIER_LENGTH:
        return name
    digest = hashlib.sha1(name.encode()).hexdigest()[:8]  # nosec B324 - naming only
    return f"{name[: MAX_IDENTIFIER_LENGTH - 9]}_{digest}"


def column_list(columns: Sequence[str], prefix: str | None = None) -> str:
    if prefix:
        return ", ".join(f"{prefix}.{quote_ident(c)}" for c in columns)
    return ", ".join(quote_ident(c) for c in columns)


def render_target_ddl(plan: MigrationPlan) -> TargetDDL:
    """
    Render the CREATE statements for the partitioned target table.

    The identity key becomes the target's primary key up front, while the
    table is still empty, because every copy into the target relies on it
    for ON CONFLICT. Other indexes are built later by the restorer.
    """
    lines = []
    for column in plan.source.columns:
        line = f"    {quote_ident(column.name)} {column.sql_type}"
        if not column.nullable:
            line += " NOT NULL"
        if column.default is not None:
            line += f" DEFAULT {column.default}"
        lines.append(line)
    lines.append(f"    PRIMARY KEY ({column_list(plan.identity_key)})")

    create_table = (
        f"CREATE TABLE IF NOT EXISTS {quote_ident(plan.target_table)} (\n"
        + ",\n".join(lines)
        + f"\n) PARTITION BY RANGE ({quote_ident(plan.partition_key)})"
    )
    partitions = tuple(render_partition(plan, bound) for bound in plan.bounds)
    default = None
    if plan.default_partition:
        default = (
            f"CREATE TABLE IF NOT EXISTS {quote_ident(plan.default_partition)} "
            f"PARTITION OF {quote_ident(plan.target_table)} DEFAULT"
        )
    return TargetDDL(create_table=create_table, partitions=partitions, default_partition=default)


def render_partition(plan: MigrationPlan, bound: PartitionBound) -> str:
    return (
        f"CREATE TABLE IF NOT EXISTS {quote_ident(bound.name)} "
        f"PARTITION OF {quote_ident(plan.target_table)} "
        f"FOR VALUES FROM ({sql_literal(bound.lower)}) TO ({sql_literal(bound.upper)})"
    )


# =============================================================================
# Dual-write
# =============================================================================


def render_mirror_function(plan: MigrationPlan, link: DualWriteLink) -> str:
    """Trigger function inserting NEW into the target, skipping known identities."""
    values = ", ".join(f"NEW.{quote_ident(c)}" for c in link.source_columns)
    conflict = ""
    if link.conflict_policy is ConflictPolicy.IGNORE_ON_DUPLICATE_IDENTITY:
        conflict = f"\n    ON CONFLICT ({column_list(plan.identity_key)}) DO NOTHING"
    return (
        f"CREATE OR REPLACE FUNCTION {quote_ident(link.function_name)}() "
        "RETURNS trigger LANGUAGE plpgsql AS $lp$\n"
        "BEGIN\n"
        f"    INSERT INTO {quote_ident(plan.target_table)} "
        f"({column_list(link.target_columns)})\n"
        f"    VALUES ({values}){conflict};\n"
        "    RETURN NEW;\n"
        "END;\n"
        "$lp$"
    )


def render_mirror_trigger(plan: MigrationPlan, link: DualWriteLink) -> str:
    return (
        f"CREATE TRIGGER {quote_ident(link.trigger_name)} "
        f"AFTER INSERT ON {quote_ident(plan.source_table)} "
        f"FOR EACH ROW EXECUTE FUNCTION {quote_ident(link.function_name)}()"
    )


def render_drop_mirror(table: str, link: DualWriteLink) -> tuple[str, str]:
    return (
        f"DROP TRIGGER IF EXISTS {quote_ident(link.trigger_name)} ON {quote_ident(table)}",
        f"DROP FUNCTION IF EXISTS {quote_ident(link.function_name)}()",
    )


# =============================================================================
# Copy statements
# =============================================================================


def key_predicate(
    plan: MigrationPlan,
    op: str,
    param_prefix: str,
    alias: str | None = None,
) -> str:
    """
    Row comparison of the identity key against bind parameters.

    Parameters are named `{param_prefix}0`, `{param_prefix}1`, ... and cast to
    the column types so asyncpg can infer them.
    """
    cols = column_list(plan.identity_key, alias)
    params = ", ".join(
        f"CAST(:{param_prefix}{i} AS {plan.source.column(c).sql_type})"
        for i, c in enumerate(plan.identity_key)
    )
    return f"({cols}) {op} ({params})"


def key_params(prefix: str, key: Sequence[Any]) -> dict[str, Any]:
    return {f"{prefix}{i}": v for i, v in enumerate(key)}


def render_copy_batch(
    plan: MigrationPlan,
    *,
    has_lower: bool,
    has_upper: bool,
    ignore_conflicts: bool,
) -> str:
    """
    One backfill batch: select the next `:limit` source rows after the
    cursor in key order and insert them into the target.

    Returns rows read, rows inserted and the greatest key read
    (as `max_0`, `max_1`, ...).
    """
    where = []
    if has_lower:
        where.append(key_predicate(plan, ">", "lo"))
    if has_upper:
        where.append(key_predicate(plan, "<=", "hi"))
    where_sql = f"\n    WHERE {' AND '.join(where)}" if where else ""
    order = column_list(plan.identity_key)
    desc = ", ".join(f"{quote_ident(c)} DESC" for c in plan.identity_key)
    max_cols = ", ".join(f"{quote_ident(c)} AS max_{i}" for i, c in enumerate(plan.identity_key))
    conflict = (
        f"\n    ON CONFLICT ({column_list(plan.identity_key)}) DO NOTHING"
        if ignore_conflicts
        else ""
    )
    cols = column_list(plan.columns)
    return (
        "WITH batch AS (\n"
        f"    SELECT {cols} FROM {quote_ident(plan.source_table)}{where_sql}\n"
        f"    ORDER BY {order}\n"
        "    LIMIT :limit\n"
        "), ins AS (\n"
        f"    INSERT INTO {quote_ident(plan.target_table)} ({cols})\n"
        f"    SELECT {cols} FROM batch{conflict}\n"
        "    RETURNING 1\n"
        ")\n"
        "SELECT (SELECT count(*) FROM batch) AS rows_read,\n"
        "       (SELECT count(*) FROM ins) AS rows_inserted,\n"
        "       last.*\n"
        "FROM (SELECT 1) AS one\n"
        f"LEFT JOIN (SELECT {max_cols} FROM batch ORDER BY {desc} LIMIT 1) AS last ON TRUE"
    )


def render_key_in(plan: MigrationPlan, count: int, alias: str | None = None) -> str:
    """`(k1, k2) IN ((:k0_0, :k0_1), ...)` for `count` keys."""
    cols = column_list(plan.identity_key, alias)
    tuples = []
    for n in range(count):
        params = ", ".join(
            f"CAST(:k{n}_{i} AS {plan.source.column(c).sql_type})"
            for i, c in enumerate(plan.identity_key)
        )
        tuples.append(f"({params})")
    return f"({cols}) IN ({', '.join(tuples)})"


def key_in_params(keys: Sequence[Sequence[Any]]) -> dict[str, Any]:
    return {f"k{n}_{i}": v for n, key in enumerate(keys) for i, v in enumerate(key)}


def render_anti_join(plan: MigrationPlan, *, count_only: bool) -> str:
    """Source keys with no matching identity in the target."""
    match = " AND ".join(f"t.{quote_ident(c)} = s.{quote_ident(c)}" for c in plan.identity_key)
    keys = column_list(plan.identity_key, "s")
    select = "count(*)" if count_only else keys
    sql = (
        f"SELECT {select} FROM {quote_ident(plan.source_table)} AS s\n"
        f"WHERE NOT EXISTS (SELECT 1 FROM {quote_ident(plan.target_table)} AS t WHERE {match})"
    )
    if not count_only:
        sql += f"\nORDER BY {keys}\nLIMIT :limit"
    return sql


def render_copy_keys(plan: MigrationPlan, count: int, *, ignore_conflicts: bool) -> str:
    cols = column_list(plan.columns)
    conflict = (
        f"\nON CONFLICT ({column_list(plan.identity_key)}) DO NOTHING" if ignore_conflicts else ""
    )
    return (
        f"INSERT INTO {quote_ident(plan.target_table)} ({cols})\n"
        f"SELECT {cols} FROM {quote_ident(plan.source_table)}\n"
        f"WHERE {render_key_in(plan, count)}{conflict}"
    )


def render_fetch_rows(plan: MigrationPlan, table: str, count: int) -> str:
    return (
        f"SELECT {column_list(plan.columns)} FROM {quote_ident(table)}\n"
        f"WHERE {render_key_in(plan, count)}"
    )


def render_count_after(plan: MigrationPlan, *, has_lower: bool) -> str:
    where = f" WHERE {key_predicate(plan, '>', 'lo')}" if has_lower else ""
    return f"SELECT count(*) FROM {quote_ident(plan.source_table)}{where}"


def render_key_at_offset(plan: MigrationPlan, *, has_lower: bool) -> str:
    """The identity key `:offset` rows past the cursor, in key order."""
    keys = column_list(plan.identity_key)
    where = f" WHERE {key_predicate(plan, '>', 'lo')}" if has_lower else ""
    return (
        f"SELECT {keys} FROM {quote_ident(plan.source_table)}{where}\n"
        f"ORDER BY {keys} OFFSET :offset LIMIT 1"
    )


def render_sample_keys(plan: MigrationPlan, *, tablesample: bool) -> str:
    """
    Random identity keys from the source.

    Large tables are sampled with TABLESAMPLE BERNOULLI(:percent) so the
    query does not sort the whole table; small ones use ORDER BY random().
    """
    keys = column_list(plan.identity_key)
    source = quote_ident(plan.source_table)
    if tablesample:
        return (
            f"SELECT {keys} FROM {source} TABLESAMPLE BERNOULLI (CAST(:percent AS real))\n"
            "LIMIT :limit"
        )
    return f"SELECT {keys} FROM {source} ORDER BY random() LIMIT :limit"


def render_table_stats(plan: MigrationPlan, table: str) -> str:
    """Row count and order-independent identity-key checksum."""
    row = ", ".join(quote_ident(c) for c in plan.identity_key)
    return (
        "SELECT count(*) AS row_count, "
        f"COALESCE(sum(hashtextextended(ROW({row})::text, 0)), 0) AS key_checksum "
        f"FROM {quote_ident(table)}"
    )


# =============================================================================
# Indexes and constraints
# =============================================================================


def target_index_name(plan: MigrationPlan, index: IndexSpec) -> str:
    """
    Name of an index on the partitioned parent before cutover.

    Index names share one namespace per schema and the source still holds
    the original, which the cutover hands over.
    """
    return child_name(plan.target_table, index.name)


def render_parent_index(plan: MigrationPlan, index: IndexSpec) -> str:
    """Invalid index on the partitioned parent only; becomes valid once all children attach."""
    unique = "UNIQUE " if index.unique else ""
    return (
        f"CREATE {unique}INDEX IF NOT EXISTS {quote_ident(target_index_name(plan, index))} "
        f"ON ONLY {quote_ident(plan.target_table)} "
        f"USING {index.method} ({column_list(index.columns)})"
    )


def render_partition_index(index: IndexSpec, partition: str) -> str:
    unique = "UNIQUE " if index.unique else ""
    return (
        f"CREATE {unique}INDEX CONCURRENTLY IF NOT EXISTS "
        f"{quote_ident(child_name(partition, index.name))} "
        f"ON {quote_ident(partition)} USING {index.method} ({column_list(index.columns)})"
    )


def render_drop_partition_index(index: IndexSpec, partition: str) -> str:
    """Drop a partition index left invalid by an interrupted concurrent build."""
    return f"DROP INDEX CONCURRENTLY IF EXISTS {quote_ident(child_name(partition, index.name))}"


def render_attach_index(plan: MigrationPlan, index: IndexSpec, partition: str) -> str:
    return (
        f"ALTER INDEX {quote_ident(target_index_name(plan, index))} "
        f"ATTACH PARTITION {quote_ident(child_name(partition, index.name))}"
    )


def constraint_body(constraint: ConstraintSpec) -> str:
    if constraint.kind is ConstraintKind.CHECK:
        return f"CHECK ({constraint.expression})"
    assert constraint.references_table is not None
    return (
        f"FOREIGN KEY ({column_list(constraint.columns)}) "
        f"REFERENCES {quote_ident(constraint.references_table)} "
        f"({column_list(constraint.references_columns)})"
    )


def render_add_constraint(constraint: ConstraintSpec, partition: str) -> str:
    """Add a constraint to one partition without scanning existing rows."""
    return (
        f"ALTER TABLE {quote_ident(partition)} "
        f"ADD CONSTRAINT {quote_ident(constraint.name)} "
        f"{constraint_body(constraint)} NOT VALID"
    )


def render_validate_constraint(constraint: ConstraintSpec, partition: str) -> str:
    return (
        f"ALTER TABLE {quote_ident(partition)} "
        f"VALIDATE CONSTRAINT {quote_ident(constraint.name)}"
    )


def render_attach_constraint(plan: MigrationPlan, constraint: ConstraintSpec) -> str:
    """
    Declare a constraint on the partitioned parent.

    Partitions already holding a validated constraint of the same name and
    definition are adopted without a scan.
    """
    return (
        f"ALTER TABLE {quote_ident(plan.target_table)} "
        f"ADD CONSTRAINT {quote_ident(constraint.name)} {constraint_body(constraint)}"
    )


def render_find_violation(
    constraint: ConstraintSpec,
    partition: str,
    columns: Sequence[str],
) -> str:
    """First row of a partition violating the constraint."""
    cols = column_list(columns, "c")
    if constraint.kind is ConstraintKind.CHECK:
        condition = f"NOT ({constraint.expression})"
    else:
        assert constraint.references_table is not None
        not_null = " AND ".join(f"c.{quote_ident(col)} IS NOT NULL" for col in constraint.columns)
        match = " AND ".join(
            f"r.{quote_ident(ref)} = c.{quote_ident(col)}"
            for col, ref in zip(constraint.columns, constraint.references_columns, strict=True)
        )
        condition = (
            f"{not_null} AND NOT EXISTS "
            f"(SELECT 1 FROM {quote_ident(constraint.references_table)} AS r WHERE {match})"
        )
    return f"SELECT {cols} FROM {quote_ident(partition)} AS c WHERE {condition} LIMIT 1"


# =============================================================================
# Cutover
# =============================================================================


def render_lock_timeout(lock_timeout_ms: int) -> str:
    return f"SET LOCAL lock_timeout = '{int(lock_timeout_ms)}ms'"


def render_lock_tables(plan: MigrationPlan) -> str:
    return (
        f"LOCK TABLE {quote_ident(plan.source_table)}, {quote_ident(plan.target_table)} "
        "IN ACCESS EXCLUSIVE MODE"
    )


def render_sequence_owner(sequence: str, table: str, column: str) -> str:
    return f"ALTER SEQUENCE {quote_ident(sequence)} OWNED BY {quote_ident(table)}.{quote_ident(column)}"


def render_rename(old: str, new: str) -> str:
    return f"ALTER TABLE {quote_ident(old)} RENAME TO {quote_ident(new)}"


def render_rename_index(old: str, new: str) -> str:
    return f"ALTER INDEX IF EXISTS {quote_ident(old)} RENAME TO {quote_ident(new)}"


__all__ = [
    "TargetDDL",
    "sql_literal",
    "child_name",
    "column_list",
    "render_target_ddl",
    "render_partition",
    "render_mirror_function",
    "render_mirror_trigger",
    "render_drop_mirror",
    "key_predicate",
    "key_params",
    "render_copy_batch",
    "render_key_in",
    "key_in_params",
    "render_anti_join",
    "render_copy_keys",
    "render_fetch_rows",
    "render_count_after",
    "render_key_at_offset",
    "render_sample_keys",
    "render_table_stats",
    "target_index_name",
    "render_parent_index",
    "render_partition_index",
    "render_drop_partition_index",
    "render_attach_index",
    "constraint_body",
    "render_add_constraint",
    "render_validate_constraint",
    "render_attach_constraint",
    "render_find_violation",
    "render_lock_timeout",
    "render_lock_tables",
    "render_sequence_owner",
    "render_rename",
    "render_rename_index",
]
