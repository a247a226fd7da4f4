# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Schema descriptors: column, index, foreign key and table definitions.

Definitions are engine-neutral. They are rendered to DDL by the schema
manager through the adapter, which maps logical types (Integer, String, ...)
to engine types and quotes identifiers.

Example:
    table = TableDefinition("entities")
    table.columns.column("id", Integer, autoincrement=True)
    table.columns.column("saga_id", Integer, nullable=False)
    table.columns.column("name", String, length=200, nullable=False)
    table.columns.column("importance", Integer, default=50)
    table.index("idx_saga", ["saga_id"])
    table.foreign_key("fk_entity_saga", "saga_id", "sagas", "id")
    table.check("chk_importance", "importance BETWEEN 0 AND 100")

    await conn.schema().create_table("entities", table)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .exceptions import SchemaError
from .query import RawExpression

if TYPE_CHECKING:
    from .adapters.base import DbAdapter

# Logical column types
Integer = "INTEGER"
BigInteger = "BIGINT"
String = "STRING"
Text = "TEXT"
Boolean = "BOOLEAN"
Float = "FLOAT"
Decimal = "DECIMAL"
Timestamp = "TIMESTAMP"
Json = "JSON"

INDEX_TYPES = frozenset({"INDEX", "UNIQUE", "FULLTEXT", "SPATIAL"})
REFERENTIAL_ACTIONS = frozenset({"CASCADE", "SET NULL", "RESTRICT", "NO ACTION", "SET DEFAULT"})

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_identifier(name: str) -> str:
    """Return name if it is a plain SQL identifier, raise SchemaError otherwise."""
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise SchemaError.invalid_identifier(name)
    return name


def referential_action(action: str) -> str:
    normalized = " ".join(action.upper().split())
    if normalized not in REFERENTIAL_ACTIONS:
        raise SchemaError(f"Invalid referential action: {action!r}")
    return normalized


def render_default(value: Any) -> str:
    """Render a DEFAULT literal. RawExpression passes through verbatim."""
    if isinstance(value, RawExpression):
        return value.sql
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return repr(value)
    return "'" + str(value).replace("'", "''") + "'"


# -----------------------------------------------------------------------------
# Definitions (what the caller wants)
# -----------------------------------------------------------------------------


@dataclass
class Column:
    """A column definition.

    Attributes:
        name: Column name.
        type_: Logical type (Integer, String, ...) or a raw engine type.
        length: Length for String columns.
        nullable: False adds NOT NULL.
        default: DEFAULT value (RawExpression for expressions).
        unique: Adds UNIQUE.
        autoincrement: Autoincrement primary key (adapter-specific DDL).
    """

    name: str
    type_: str = Text
    length: int | None = None
    nullable: bool = True
    default: Any = None
    unique: bool = False
    autoincrement: bool = False

    def __post_init__(self) -> None:
        validate_identifier(self.name)

    def to_sql(self, adapter: DbAdapter, primary_key: bool = False) -> str:
        if self.autoincrement:
            return adapter.pk_column(self.name)
        parts = [adapter.quote_identifier(self.name), adapter.column_type(self.type_, self.length)]
        if primary_key:
            parts.append("PRIMARY KEY")
        if not self.nullable:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {render_default(self.default)}")
        if self.unique:
            parts.append("UNIQUE")
        return " ".join(parts)


class Columns(dict[str, Column]):
    """Ordered collection of column definitions with a fluent builder."""

    def column(self, name: str, type_: str = Text, **kwargs: Any) -> Columns:
        self[name] = Column(name, type_, **kwargs)
        return self

    def to_sql(self, adapter: DbAdapter) -> list[str]:
        return [col.to_sql(adapter) for col in self.values()]


@dataclass
class Index:
    name: str
    columns: list[str]
    type: str = "INDEX"

    def __post_init__(self) -> None:
        validate_identifier(self.name)
        for col in self.columns:
            validate_identifier(col)
        self.type = self.type.upper()
        if self.type not in INDEX_TYPES:
            raise SchemaError(f"Invalid index type: {self.type!r}", constraint=self.name)


@dataclass
class ForeignKey:
    name: str
    column: str
    ref_table: str
    ref_column: str
    on_delete: str = "CASCADE"
    on_update: str = "CASCADE"

    def __post_init__(self) -> None:
        for ident in (self.name, self.column, self.ref_table, self.ref_column):
            validate_identifier(ident)
        self.on_delete = referential_action(self.on_delete)
        self.on_update = referential_action(self.on_update)


@dataclass
class TableDefinition:
    """Complete table definition: columns, primary key, indexes, constraints."""

    name: str
    columns: Columns = field(default_factory=Columns)
    primary_key: list[str] = field(default_factory=list)
    indexes: list[Index] = field(default_factory=list)
    foreign_keys: list[ForeignKey] = field(default_factory=list)
    checks: dict[str, str] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        validate_identifier(self.name)

    def index(self, name: str, columns: list[str], type: str = "INDEX") -> TableDefinition:
        self.indexes.append(Index(name, list(columns), type))
        return self

    def foreign_key(
        self,
        name: str,
        column: str,
        ref_table: str,
        ref_column: str,
        on_delete: str = "CASCADE",
        on_update: str = "CASCADE",
    ) -> TableDefinition:
        self.foreign_keys.append(ForeignKey(name, column, ref_table, ref_column, on_delete, on_update))
        return self

    def check(self, name: str, condition: str) -> TableDefinition:
        self.checks[validate_identifier(name)] = condition
        return self


# -----------------------------------------------------------------------------
# Catalog descriptors (what the engine reports)
# -----------------------------------------------------------------------------


@dataclass
class ColumnInfo:
    name: str
    type: str
    nullable: bool
    default: Any = None
    key: str = ""
    extra: str = ""


@dataclass
class IndexInfo:
    name: str
    columns: list[str]
    unique: bool
    type: str = "BTREE"


__all__ = [
    "Column",
    "Columns",
    "Index",
    "ForeignKey",
    "TableDefinition",
    "ColumnInfo",
    "IndexInfo",
    "validate_identifier",
    "Integer",
    "BigInteger",
    "String",
    "Text",
    "Boolean",
    "Float",
    "Decimal",
    "Timestamp",
    "Json",
]
