"""
In-memory partition backend.

Simulates the parts of PostgreSQL the migration engine relies on, so the
whole lifecycle can be exercised without a database:

- range partition routing, including the DEFAULT partition
- primary-key conflicts and ON CONFLICT DO NOTHING
- AFTER INSERT triggers executed inside the writer's statement
- NOT VALID constraints that are enforced for new rows but not yet checked
  against existing ones
- table locks with a lock timeout, and an all-or-nothing cutover unit

CHECK constraint expressions are SQL text, which this backend cannot
evaluate; register a Python predicate for each expression with
`register_check()`.

Not suitable for production: all data lives in process memory.

Example:
    >>> backend = InMemoryBackend()
    >>> await backend.create_table(orders_schema)
    >>> await backend.insert("orders", {"id": 1, "created_on": date(2024, 1, 5)})
    >>> backend.on("cutover.rename_target", fail_once)  # fault injection
"""

import asyncio
import copy
import hashlib
import inspect
import logging
import random
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from livepartition.backends.interface import (
    ConstraintValidationFailed,
    CutoverUnit,
    PartitionBackend,
    TransientBackendError,
)
from livepartition.ddl import child_name
from livepartition.models import (
    ConflictPolicy,
    CopyResult,
    DualWriteLink,
    KeyValue,
    MigrationPlan,
    PartitionBound,
    TableStats,
)
from livepartition.schema import ConstraintKind, ConstraintSpec, IndexSpec, SequenceSpec, TableSchema
from livepartition.serialization import json_dumps

logger = logging.getLogger(__name__)

Hook = Callable[..., Any]


class IntegrityViolation(Exception):
    """A write was rejected: duplicate key, no partition for the row, or a failed constraint."""


@dataclass
class _Constraint:
    spec: ConstraintSpec
    validated: bool = False


@dataclass
class _Table:
    name: str
    schema: TableSchema
    key: tuple[str, ...]
    rows: dict[Any, dict[str, Any]] = field(default_factory=dict)
    partition_key: str | None = None
    bounds: list[PartitionBound] = field(default_factory=list)
    default_partition: str | None = None
    partitions: dict[str, "_Table"] = field(default_factory=dict)
    triggers: dict[str, str] = field(default_factory=dict)
    indexes: dict[str, bool] = field(default_factory=dict)
    constraints: dict[str, _Constraint] = field(default_factory=dict)
    row_counter: int = 0

    @property
    def is_partitioned(self) -> bool:
        return self.partition_key is not None

    def all_rows(self) -> Iterable[dict[str, Any]]:
        if self.is_partitioned:
            for partition in self.partitions.values():
                yield from partition.rows.values()
        else:
            yield from self.rows.values()


class InMemoryBackend(PartitionBackend):
    """
    In-process implementation of PartitionBackend.

    Thread-safety:
        Operations are atomic with respect to other coroutines because no
        method awaits while data is half-written. Table locks exist only to
        model the cutover's exclusive lock against concurrent writers.

    Attributes:
        _tables: Top-level tables by name (partitions live inside their parent)
        _functions: Trigger functions by name
        _sequences: Sequence name -> (owning table, owning column)
        _sequence_values: Last value handed out by each sequence
        _checks: Python predicates standing in for CHECK expressions
        _hooks: Fault-injection callbacks by operation name
    """

    name = "memory"

    def __init__(self) -> None:
        self._tables: dict[str, _Table] = {}
        self._functions: dict[str, Callable[[dict[str, Any]], None]] = {}
        self._sequences: dict[str, tuple[str, str]] = {}
        self._sequence_values: dict[str, int] = {}
        self._checks: dict[str, Callable[[dict[str, Any]], bool]] = {}
        self._hooks: dict[str, list[Hook]] = defaultdict(list)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # -------------------------------------------------------------------------
    # Test and development helpers
    # -------------------------------------------------------------------------

    async def create_table(self, schema: TableSchema) -> None:
        """Create a plain table, and the sequences its columns own."""
        if schema.name in self._tables:
            raise IntegrityViolation(f'relation "{schema.name}" already exists')
        self._tables[schema.name] = _Table(
            name=schema.name,
            schema=schema,
            key=schema.primary_key,
        )
        for sequence in schema.sequences:
            self._sequences[sequence.name] = (schema.name, sequence.column)
            self._sequence_values.setdefault(sequence.name, 0)

    async def insert(
        self,
        table: str,
        row: dict[str, Any],
        *,
        fire_triggers: bool = True,
    ) -> dict[str, Any]:
        """
        Insert one row as an application would.

        Columns fed by an owned sequence are filled in when missing. With
        `fire_triggers=False` the row bypasses triggers, like a write
        committed by a transaction that started before the trigger existed.

        Returns:
            The stored row.

        Raises:
            IntegrityViolation: Duplicate key, no partition, or failed constraint.
        """
        async with self._locks[table]:
            t = self._table(table)
            full = self._complete_row(t, row)
            written = self._write_row(t, full, ConflictPolicy.RAISE_ON_DUPLICATE_IDENTITY)
            if fire_triggers:
                try:
                    for function_name in list(t.triggers.values()):
                        self._functions[function_name](full)
                except Exception:
                    self._delete_row(t, written)
                    raise
            return full

    async def insert_many(
        self,
        table: str,
        rows: Iterable[dict[str, Any]],
        *,
        fire_triggers: bool = True,
    ) -> None:
        for row in rows:
            await self.insert(table, row, fire_triggers=fire_triggers)

    def rows(self, table: str) -> list[dict[str, Any]]:
        """All rows of a table (or of a single partition)."""
        return [dict(r) for r in self._table_or_partition(table).all_rows()]

    def has_table(self, table: str) -> bool:
        return table in self._tables

    def sequence_owner(self, sequence: str) -> tuple[str, str]:
        return self._sequences[sequence]

    def register_check(self, expression: str, predicate: Callable[[dict[str, Any]], bool]) -> None:
        """Supply the Python equivalent of a CHECK constraint expression."""
        self._checks[expression] = predicate

    def on(self, operation: str, hook: Hook) -> None:
        """
        Run `hook(**context)` at the start of an operation.

        Hooks may be coroutines. An exception raised by a hook fails the
        operation as if the database had raised it.

        Operations: copy_batch, copy_keys, missing_keys, build_index,
        validate_constraint, attach_constraint, cutover.lock_tables,
        cutover.retarget_sequences, cutover.remove_dual_write,
        cutover.rename_source, cutover.rename_target.
        """
        self._hooks[operation].append(hook)

    def clear_hooks(self) -> None:
        self._hooks.clear()

    async def _fire(self, operation: str, **context: Any) -> None:
        for hook in list(self._hooks.get(operation, ())):
            result = hook(**context)
            if inspect.isawaitable(result):
                await result

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    async def describe_table(self, table: str) -> TableSchema:
        if table not in self._tables:
            raise LookupError(f'relation "{table}" does not exist')
        t = self._tables[table]
        owned = tuple(
            SequenceSpec(name=sequence, column=column)
            for sequence, (owner, column) in sorted(self._sequences.items())
            if owner == table
        )
        return t.schema.model_copy(update={"name": table, "sequences": owned})

    async def table_exists(self, table: str) -> bool:
        return table in self._tables

    async def value_range(self, table: str, column: str) -> tuple[Any, Any] | None:
        values = [r[column] for r in self._table(table).all_rows() if r.get(column) is not None]
        if not values:
            return None
        return min(values), max(values)

    async def estimate_rows(self, table: str) -> int:
        return sum(1 for _ in self._table(table).all_rows())

    # -------------------------------------------------------------------------
    # Target and dual-write
    # -------------------------------------------------------------------------

    async def create_target(self, plan: MigrationPlan) -> None:
        if plan.target_table in self._tables:
            return
        schema = plan.source.model_copy(
            update={
                "name": plan.target_table,
                "primary_key": plan.identity_key,
                "indexes": (),
                "constraints": (),
                "sequences": (),
            }
        )
        parent = _Table(
            name=plan.target_table,
            schema=schema,
            key=plan.identity_key,
            partition_key=plan.partition_key,
            bounds=list(plan.bounds),
            default_partition=plan.default_partition,
        )
        for name in plan.partition_names:
            parent.partitions[name] = _Table(
                name=name,
                schema=schema.model_copy(update={"name": name}),
                key=plan.identity_key,
            )
        self._tables[plan.target_table] = parent
        logger.debug("Created partitioned table %s", plan.target_table)

    async def install_dual_write(self, plan: MigrationPlan, link: DualWriteLink) -> None:
        target_name = plan.target_table

        def mirror(row: dict[str, Any]) -> None:
            target = self._tables.get(target_name)
            if target is None:
                raise IntegrityViolation(f'relation "{target_name}" does not exist')
            mapped = {t: row[s] for s, t in link.column_mapping}
            self._write_row(target, mapped, link.conflict_policy)

        self._functions[link.function_name] = mirror
        self._table(plan.source_table).triggers[link.trigger_name] = link.function_name

    async def remove_dual_write(self, plan: MigrationPlan, link: DualWriteLink) -> None:
        source = self._tables.get(plan.source_table)
        if source is not None:
            source.triggers.pop(link.trigger_name, None)
        self._functions.pop(link.function_name, None)

    async def dual_write_installed(self, plan: MigrationPlan, link: DualWriteLink) -> bool:
        source = self._tables.get(plan.source_table)
        return (
            source is not None
            and source.triggers.get(link.trigger_name) == link.function_name
            and link.function_name in self._functions
        )

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
        await self._fire("copy_batch", plan=plan, after_key=after_key, limit=limit)
        selected = []
        for key, row in self._sorted_source(plan):
            if after_key is not None and key <= tuple(after_key):
                continue
            if upper_key is not None and key > tuple(upper_key):
                break
            selected.append((key, row))
            if len(selected) >= limit:
                break

        inserted = self._copy_rows(plan, [row for _, row in selected], policy)
        return CopyResult(
            rows_read=len(selected),
            rows_inserted=inserted,
            max_key=selected[-1][0] if selected else None,
        )

    async def missing_keys(self, plan: MigrationPlan, limit: int) -> list[KeyValue]:
        await self._fire("missing_keys", plan=plan, limit=limit)
        present = self._target_keys(plan)
        missing = []
        for key, _ in self._sorted_source(plan):
            if key not in present:
                missing.append(key)
                if len(missing) >= limit:
                    break
        return missing

    async def count_missing(self, plan: MigrationPlan) -> int:
        present = self._target_keys(plan)
        source = self._table(plan.source_table)
        return sum(1 for row in source.all_rows() if plan.key_of(row) not in present)

    async def copy_keys(
        self,
        plan: MigrationPlan,
        keys: Sequence[KeyValue],
        policy: ConflictPolicy,
    ) -> int:
        await self._fire("copy_keys", plan=plan, keys=list(keys))
        wanted = {tuple(k) for k in keys}
        source = self._table(plan.source_table)
        rows = [row for row in source.all_rows() if plan.key_of(row) in wanted]
        return self._copy_rows(plan, rows, policy)

    async def split_points(
        self,
        plan: MigrationPlan,
        after_key: KeyValue | None,
        parts: int,
    ) -> list[KeyValue]:
        keys = [
            key
            for key, _ in self._sorted_source(plan)
            if after_key is None or key > tuple(after_key)
        ]
        if parts < 2 or len(keys) < parts:
            return []
        return [keys[len(keys) * i // parts - 1] for i in range(1, parts)]

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    async def snapshot_stats(self, plan: MigrationPlan) -> tuple[TableStats, TableStats]:
        return (
            self._stats(plan, self._table(plan.source_table)),
            self._stats(plan, self._table(plan.target_table)),
        )

    async def partition_counts(self, plan: MigrationPlan) -> dict[str, int]:
        target = self._table(plan.target_table)
        return {name: len(p.rows) for name, p in target.partitions.items()}

    async def sample_keys(self, plan: MigrationPlan, sample_size: int) -> list[KeyValue]:
        keys = [plan.key_of(row) for row in self._table(plan.source_table).all_rows()]
        if len(keys) <= sample_size:
            return sorted(keys)
        return sorted(random.sample(keys, sample_size))  # nosec B311 - verification sampling

    async def fetch_rows(
        self,
        plan: MigrationPlan,
        table: str,
        keys: Sequence[KeyValue],
    ) -> dict[KeyValue, dict[str, Any]]:
        wanted = {tuple(k) for k in keys}
        return {
            plan.key_of(row): dict(row)
            for row in self._table(table).all_rows()
            if plan.key_of(row) in wanted
        }

    # -------------------------------------------------------------------------
    # Indexes and constraints
    # -------------------------------------------------------------------------

    async def valid_indexes(self, plan: MigrationPlan) -> set[str]:
        target = self._table(plan.target_table)
        return {name for name, valid in target.indexes.items() if valid}

    async def build_index(self, plan: MigrationPlan, index: IndexSpec) -> None:
        await self._fire("build_index", plan=plan, index=index)
        target = self._table(plan.target_table)
        target.indexes.setdefault(index.name, False)
        for name, partition in target.partitions.items():
            partition.indexes[child_name(name, index.name)] = True
            # other writers may run between partitions
            await asyncio.sleep(0)
        target.indexes[index.name] = True
        if index.name not in {i.name for i in target.schema.indexes}:
            target.schema = target.schema.model_copy(
                update={"indexes": (*target.schema.indexes, index)}
            )

    async def constraint_states(
        self,
        plan: MigrationPlan,
        constraint: ConstraintSpec,
    ) -> dict[str, bool]:
        target = self._table(plan.target_table)
        states = {}
        for name, partition in target.partitions.items():
            state = partition.constraints.get(constraint.name)
            if state is not None:
                states[name] = state.validated
        return states

    async def add_constraint_not_valid(
        self,
        plan: MigrationPlan,
        constraint: ConstraintSpec,
        partition: str,
    ) -> None:
        p = self._partition(plan, partition)
        p.constraints.setdefault(constraint.name, _Constraint(constraint))

    async def validate_constraint(
        self,
        plan: MigrationPlan,
        constraint: ConstraintSpec,
        partition: str,
    ) -> None:
        await self._fire("validate_constraint", plan=plan, constraint=constraint, partition=partition)
        p = self._partition(plan, partition)
        state = p.constraints[constraint.name]
        if await self.find_violation(plan, constraint, partition) is not None:
            raise ConstraintValidationFailed(constraint.name, partition)
        state.validated = True

    async def find_violation(
        self,
        plan: MigrationPlan,
        constraint: ConstraintSpec,
        partition: str,
    ) -> dict[str, Any] | None:
        p = self._partition(plan, partition)
        for key in sorted(p.rows):
            row = p.rows[key]
            if not self._satisfies(constraint, row):
                return dict(row)
        return None

    async def parent_constraints(self, plan: MigrationPlan) -> set[str]:
        target = self._table(plan.target_table)
        planned = {c.name for c in plan.constraints}
        return {name for name in target.constraints if name in planned}

    async def attach_constraint(
        self,
        plan: MigrationPlan,
        constraint: ConstraintSpec,
        lock_timeout_ms: int,
    ) -> None:
        await self._fire("attach_constraint", plan=plan, constraint=constraint)
        target = self._table(plan.target_table)
        if constraint.name in target.constraints:
            return
        # partitions without a validated copy are scanned, as PostgreSQL would
        for name, partition in target.partitions.items():
            state = partition.constraints.get(constraint.name)
            if state is None or not state.validated:
                if await self.find_violation(plan, constraint, name) is not None:
                    raise IntegrityViolation(
                        f'check constraint "{constraint.name}" of relation "{name}" '
                        "is violated by some row"
                    )
                partition.constraints[constraint.name] = _Constraint(constraint, validated=True)
        target.constraints[constraint.name] = _Constraint(constraint, validated=True)
        target.schema = target.schema.model_copy(
            update={"constraints": (*target.schema.constraints, constraint)}
        )

    # -------------------------------------------------------------------------
    # Cutover
    # -------------------------------------------------------------------------

    async def cutover_applied(self, plan: MigrationPlan) -> bool:
        primary = self._tables.get(plan.source_table)
        return (
            plan.target_table not in self._tables
            and plan.archive_table in self._tables
            and primary is not None
            and primary.is_partitioned
        )

    @asynccontextmanager
    async def cutover_unit(
        self,
        plan: MigrationPlan,
        link: DualWriteLink | None,
        lock_timeout_ms: int,
    ) -> AsyncIterator[CutoverUnit]:
        snapshot = self._snapshot()
        unit = _InMemoryCutoverUnit(self, plan, link, lock_timeout_ms)
        try:
            yield unit
        except BaseException:
            self._restore(snapshot)
            logger.debug("Cutover unit for %s reverted", plan.source_table)
            raise
        finally:
            unit.release()

    def _snapshot(self) -> tuple[Any, ...]:
        return (
            copy.deepcopy(self._tables),
            dict(self._functions),
            dict(self._sequences),
        )

    def _restore(self, snapshot: tuple[Any, ...]) -> None:
        self._tables, self._functions, self._sequences = snapshot

    def _rename(self, old: str, new: str) -> None:
        if new in self._tables:
            raise IntegrityViolation(f'relation "{new}" already exists')
        table = self._tables.pop(old)
        table.name = new
        self._tables[new] = table
        for sequence, (owner, column) in list(self._sequences.items()):
            if owner == old:
                self._sequences[sequence] = (new, column)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _table(self, name: str) -> _Table:
        try:
            return self._tables[name]
        except KeyError:
            raise LookupError(f'relation "{name}" does not exist') from None

    def _table_or_partition(self, name: str) -> _Table:
        if name in self._tables:
            return self._tables[name]
        for table in self._tables.values():
            if name in table.partitions:
                return table.partitions[name]
        raise LookupError(f'relation "{name}" does not exist')

    def _partition(self, plan: MigrationPlan, partition: str) -> _Table:
        target = self._table(plan.target_table)
        try:
            return target.partitions[partition]
        except KeyError:
            raise LookupError(f'relation "{partition}" does not exist') from None

    def _complete_row(self, table: _Table, row: dict[str, Any]) -> dict[str, Any]:
        full = {c: row.get(c) for c in table.schema.column_names}
        unknown = set(row) - set(full)
        if unknown:
            raise IntegrityViolation(
                f'column(s) {", ".join(sorted(unknown))} of relation "{table.name}" do not exist'
            )
        for sequence, (owner, column) in self._sequences.items():
            if full.get(column) is None and (owner == table.name or self._feeds(table, column, sequence)):
                self._sequence_values[sequence] = self._sequence_values.get(sequence, 0) + 1
                full[column] = self._sequence_values[sequence]
        for spec in table.schema.columns:
            if not spec.nullable and full[spec.name] is None:
                raise IntegrityViolation(
                    f'null value in column "{spec.name}" of relation "{table.name}"'
                )
        return full

    @staticmethod
    def _feeds(table: _Table, column: str, sequence: str) -> bool:
        if not table.schema.has_column(column):
            return False
        default = table.schema.column(column).default or ""
        return f"'{sequence}'" in default

    def _write_row(self, table: _Table, row: dict[str, Any], policy: ConflictPolicy) -> tuple[_Table, Any] | None:
        if table.is_partitioned:
            value = row.get(table.partition_key) if table.partition_key else None
            name = next((b.name for b in table.bounds if b.contains(value)), table.default_partition)
            if name is None:
                raise IntegrityViolation(
                    f'no partition of relation "{table.name}" found for row '
                    f"({table.partition_key})=({value!r})"
                )
            table = table.partitions[name]

        if table.key:
            key: Any = tuple(row[c] for c in table.key)
        else:
            table.row_counter += 1
            key = table.row_counter
        if key in table.rows:
            if policy is ConflictPolicy.IGNORE_ON_DUPLICATE_IDENTITY:
                return None
            raise IntegrityViolation(
                f'duplicate key value violates unique constraint on "{table.name}": {key!r}'
            )
        for name, state in table.constraints.items():
            if not self._satisfies(state.spec, row):
                raise IntegrityViolation(
                    f'new row for relation "{table.name}" violates constraint "{name}"'
                )
        table.rows[key] = dict(row)
        return table, key

    @staticmethod
    def _delete_row(table: _Table, written: tuple[_Table, Any] | None) -> None:
        if written is not None:
            holder, key = written
            holder.rows.pop(key, None)

    def _copy_rows(
        self,
        plan: MigrationPlan,
        rows: list[dict[str, Any]],
        policy: ConflictPolicy,
    ) -> int:
        target = self._table(plan.target_table)
        written: list[tuple[_Table, Any]] = []
        try:
            for row in rows:
                result = self._write_row(target, {c: row.get(c) for c in plan.columns}, policy)
                if result is not None:
                    written.append(result)
        except Exception:
            for item in written:
                self._delete_row(target, item)
            raise
        return len(written)

    def _sorted_source(self, plan: MigrationPlan) -> list[tuple[KeyValue, dict[str, Any]]]:
        source = self._table(plan.source_table)
        return sorted(
            ((plan.key_of(row), row) for row in source.all_rows()),
            key=lambda item: item[0],
        )

    def _target_keys(self, plan: MigrationPlan) -> set[KeyValue]:
        return {plan.key_of(row) for row in self._table(plan.target_table).all_rows()}

    def _stats(self, plan: MigrationPlan, table: _Table) -> TableStats:
        count = 0
        checksum = 0
        for row in table.all_rows():
            count += 1
            checksum += _key_hash(plan.key_of(row))
        return TableStats(row_count=count, key_checksum=checksum)

    def _satisfies(self, constraint: ConstraintSpec, row: dict[str, Any]) -> bool:
        if constraint.kind is ConstraintKind.CHECK:
            assert constraint.expression is not None
            try:
                predicate = self._checks[constraint.expression]
            except KeyError:
                raise LookupError(
                    f"No predicate registered for CHECK ({constraint.expression})"
                ) from None
            return bool(predicate(row))

        values = tuple(row.get(c) for c in constraint.columns)
        if any(v is None for v in values):
            return True
        assert constraint.references_table is not None
        referenced = self._table(constraint.references_table)
        return any(
            tuple(ref.get(c) for c in constraint.references_columns) == values
            for ref in referenced.all_rows()
        )


class _InMemoryCutoverUnit(CutoverUnit):
    def __init__(
        self,
        backend: InMemoryBackend,
        plan: MigrationPlan,
        link: DualWriteLink | None,
        lock_timeout_ms: int,
    ) -> None:
        self._backend = backend
        self._plan = plan
        self._link = link
        self._lock_timeout = lock_timeout_ms / 1000.0
        self._held: list[asyncio.Lock] = []

    async def lock_tables(self) -> None:
        await self._backend._fire("cutover.lock_tables", plan=self._plan)
        for name in (self._plan.source_table, self._plan.target_table):
            lock = self._backend._locks[name]
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._lock_timeout)
            except TimeoutError:
                raise TransientBackendError(
                    f'canceling statement due to lock timeout on "{name}"'
                ) from None
            self._held.append(lock)

    async def retarget_sequences(self) -> None:
        await self._backend._fire("cutover.retarget_sequences", plan=self._plan)
        self._backend._table(self._plan.target_table)
        for sequence in self._plan.sequences:
            self._backend._sequences[sequence.name] = (self._plan.target_table, sequence.column)

    async def remove_dual_write(self) -> None:
        await self._backend._fire("cutover.remove_dual_write", plan=self._plan)
        if self._link is not None:
            await self._backend.remove_dual_write(self._plan, self._link)

    async def rename_source(self) -> None:
        await self._backend._fire("cutover.rename_source", plan=self._plan)
        self._backend._rename(self._plan.source_table, self._plan.archive_table)

    async def rename_target(self) -> None:
        await self._backend._fire("cutover.rename_target", plan=self._plan)
        self._backend._rename(self._plan.target_table, self._plan.source_table)

    def release(self) -> None:
        while self._held:
            self._held.pop().release()


def _key_hash(key: KeyValue) -> int:
    digest = hashlib.sha256(json_dumps(list(key)).encode()).digest()
    return int.from_bytes(digest[:8], byteorder="big", signed=True)


__all__ = ["InMemoryBackend", "IntegrityViolation"]
