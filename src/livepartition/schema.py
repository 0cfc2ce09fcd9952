"""
Table schema descriptions.

The planner works from a structural description of the source table:
its columns, primary key, indexes, constraints and owned sequences. These
are pydantic models so that names are validated as SQL identifiers once,
at the boundary, and everything downstream can quote them without further
checks.

A TableSchema is usually obtained from `PartitionBackend.describe_table()`,
but can also be written by hand:

Example:
    >>> from livepartition.schema import ColumnSpec, TableSchema
    >>>
    >>> orders = TableSchema(
    ...     name="orders",
    ...     columns=[
    ...         ColumnSpec(name="id", sql_type="bigint", nullable=False),
    ...         ColumnSpec(name="created_on", sql_type="date", nullable=False),
    ...         ColumnSpec(name="total", sql_type="numeric(12,2)"),
    ...     ],
    ...     primary_key=["id", "created_on"],
    ... )
    >>> orders.column_names
    ('id', 'created_on', 'total')
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")
TYPE_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_ ,()\[\]".]*$')
MAX_IDENTIFIER_LENGTH = 63


def validate_identifier(value: str) -> str:
    """
    Check that a name is a plain SQL identifier PostgreSQL will not truncate.

    Raises:
        ValueError: If the name contains anything but letters, digits,
            underscores and dollar signs, or is longer than 63 bytes.
    """
    if not IDENTIFIER_PATTERN.match(value):
        raise ValueError(f"Invalid SQL identifier: {value!r}")
    if len(value.encode()) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(f"SQL identifier longer than {MAX_IDENTIFIER_LENGTH} bytes: {value!r}")
    return value


def quote_ident(name: str) -> str:
    """Double-quote a validated identifier for use in SQL text."""
    return '"' + validate_identifier(name) + '"'


class ColumnSpec(BaseModel):
    """A single table column."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Column name")
    sql_type: str = Field(..., description="Column type as PostgreSQL spells it")
    nullable: bool = Field(default=True)
    default: str | None = Field(
        default=None,
        description="Default expression, e.g. nextval('orders_id_seq'::regclass)",
    )

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        return validate_identifier(v)

    @field_validator("sql_type")
    @classmethod
    def _check_type(cls, v: str) -> str:
        if not TYPE_PATTERN.match(v):
            raise ValueError(f"Invalid SQL type: {v!r}")
        return v


class IndexSpec(BaseModel):
    """
    An index to rebuild on the partitioned table.

    Unique indexes on a partitioned table must contain the partitioning
    column; the planner enforces this.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    columns: tuple[str, ...] = Field(..., min_length=1)
    unique: bool = False
    method: str = Field(default="btree", pattern=r"^[a-z]+$")

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        return validate_identifier(v)

    @field_validator("columns")
    @classmethod
    def _check_columns(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(validate_identifier(c) for c in v)


class ConstraintKind(Enum):
    """Kinds of constraint the restorer knows how to stage."""

    CHECK = "check"
    FOREIGN_KEY = "foreign_key"


class ConstraintSpec(BaseModel):
    """
    A constraint to re-apply on the partitioned table.

    CHECK constraints carry their boolean SQL `expression`. FOREIGN_KEY
    constraints carry the local `columns` and the referenced table and
    columns.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    kind: ConstraintKind
    expression: str | None = None
    columns: tuple[str, ...] = ()
    references_table: str | None = None
    references_columns: tuple[str, ...] = ()

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        return validate_identifier(v)

    @model_validator(mode="after")
    def _check_shape(self) -> ConstraintSpec:
        if self.kind is ConstraintKind.CHECK:
            if not self.expression:
                raise ValueError(f"CHECK constraint {self.name} requires an expression")
        else:
            if not self.columns or not self.references_table:
                raise ValueError(
                    f"FOREIGN KEY constraint {self.name} requires columns and references_table"
                )
            if len(self.columns) != len(self.references_columns):
                raise ValueError(
                    f"FOREIGN KEY constraint {self.name} must reference as many columns "
                    f"as it declares"
                )
            validate_identifier(self.references_table)
            for c in (*self.columns, *self.references_columns):
                validate_identifier(c)
        return self


class SequenceSpec(BaseModel):
    """A sequence owned by one of the table's columns (serial / identity)."""

    model_config = ConfigDict(frozen=True)

    name: str
    column: str

    @field_validator("name", "column")
    @classmethod
    def _check_names(cls, v: str) -> str:
        return validate_identifier(v)


class TableSchema(BaseModel):
    """Structural description of a table."""

    model_config = ConfigDict(frozen=True)

    name: str
    columns: tuple[ColumnSpec, ...] = Field(..., min_length=1)
    primary_key: tuple[str, ...] = ()
    indexes: tuple[IndexSpec, ...] = ()
    constraints: tuple[ConstraintSpec, ...] = ()
    sequences: tuple[SequenceSpec, ...] = ()

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        return validate_identifier(v)

    @model_validator(mode="after")
    def _check_references(self) -> TableSchema:
        names = set(self.column_names)
        if len(names) != len(self.columns):
            raise ValueError(f"Duplicate column names in table {self.name}")
        referenced = [*self.primary_key]
        for index in self.indexes:
            referenced.extend(index.columns)
        for constraint in self.constraints:
            referenced.extend(constraint.columns)
        for sequence in self.sequences:
            referenced.append(sequence.column)
        unknown = sorted({c for c in referenced if c not in names})
        if unknown:
            raise ValueError(f"Unknown column(s) in table {self.name}: {', '.join(unknown)}")
        return self

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    def has_column(self, name: str) -> bool:
        return name in self.column_names

    def column(self, name: str) -> ColumnSpec:
        for c in self.columns:
            if c.name == name:
                return c
        raise KeyError(name)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TableSchema:
        return cls.model_validate(data)


__all__ = [
    "validate_identifier",
    "quote_ident",
    "ColumnSpec",
    "IndexSpec",
    "ConstraintKind",
    "ConstraintSpec",
    "SequenceSpec",
    "TableSchema",
]
