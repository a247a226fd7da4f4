# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Schema manager: idempotent DDL, catalog introspection and version ledger.

Existence checks always query the engine catalog through the adapter; they
never rely on catching "already exists" errors. Genuine engine failures are
raised as SchemaError carrying the table/column/constraint and the engine
message. CHECK constraints are the one advisory operation: a failure is
logged and reported as False, because support varies across engines.

Example:
    schema = conn.schema()

    columns = Columns()
    columns.column("id", Integer, autoincrement=True)
    columns.column("name", String, length=200, nullable=False)
    await schema.create_table("sagas", columns)          # True
    await schema.create_table("sagas", columns)          # False (already there)

    await schema.add_column("sagas", "universe", "VARCHAR(100)", after="name")
    await schema.add_index("sagas", "idx_sagas_name", ["name"], "UNIQUE")
    await schema.set_schema_version("1.2.0")
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .column import (
    Column,
    Columns,
    ColumnInfo,
    ForeignKey,
    Index,
    IndexInfo,
    TableDefinition,
    validate_identifier,
)
from .exceptions import QueryError, SchemaError
from .migration import MigrationRunner

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from .connection import Connection
    from .migration import Migration

logger = logging.getLogger(__name__)

SCHEMA_VERSION_KEY = "schema_version"


class SchemaManager:
    """DDL and introspection for the tables of one Connection.

    Table arguments are logical names; the connection prefix is applied
    internally. The version table is never prefixed.
    """

    def __init__(self, connection: Connection):
        self.connection = connection
        self.adapter = connection.adapter
        self.version_table = connection.version_table
        self._migrations: list[Migration] = []

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _table(self, name: str) -> str:
        validate_identifier(name)
        return self.connection.full_table_name(name)

    def _ident(self, name: str) -> str:
        return self.adapter.quote_identifier(validate_identifier(name))

    async def _count(self, query: tuple[str, list[Any]]) -> int:
        sql, bindings = query
        result = await self.connection.execute(sql, bindings)
        return int(result.value("cnt", 0) or 0)

    async def _set_foreign_key_checks(self, enabled: bool) -> None:
        sql = self.adapter.foreign_key_checks_sql(enabled)
        if sql:
            await self.connection.execute(sql)

    def _table_body(self, definition: TableDefinition) -> str:
        parts = definition.columns.to_sql(self.adapter)
        has_autoincrement = any(col.autoincrement for col in definition.columns.values())
        if definition.primary_key and not has_autoincrement:
            keys = ", ".join(self._ident(col) for col in definition.primary_key)
            parts.append(f"PRIMARY KEY ({keys})")
        for fk in definition.foreign_keys:
            parts.append(
                f"CONSTRAINT {self._ident(fk.name)} FOREIGN KEY ({self._ident(fk.column)}) "
                f"REFERENCES {self._table(fk.ref_table)} ({self._ident(fk.ref_column)}) "
                f"ON DELETE {fk.on_delete} ON UPDATE {fk.on_update}"
            )
        for name, condition in definition.checks.items():
            parts.append(f"CONSTRAINT {self._ident(name)} CHECK ({condition})")
        return ", ".join(parts)

    # -------------------------------------------------------------------------
    # Existence checks (catalog)
    # -------------------------------------------------------------------------

    async def table_exists(self, table: str) -> bool:
        validate_identifier(table)
        return await self._count(self.adapter.table_exists_query(self.connection.table_name(table))) > 0

    async def column_exists(self, table: str, column: str) -> bool:
        validate_identifier(table)
        validate_identifier(column)
        query = self.adapter.column_exists_query(self.connection.table_name(table), column)
        return await self._count(query) > 0

    async def index_exists(self, table: str, index: str) -> bool:
        validate_identifier(table)
        validate_identifier(index)
        query = self.adapter.index_exists_query(self.connection.table_name(table), index)
        return await self._count(query) > 0

    async def foreign_key_exists(self, table: str, name: str) -> bool:
        validate_identifier(table)
        validate_identifier(name)
        query = self.adapter.constraint_exists_query(
            self.connection.table_name(table), name, "FOREIGN KEY"
        )
        return await self._count(query) > 0

    async def check_exists(self, table: str, name: str) -> bool:
        validate_identifier(table)
        validate_identifier(name)
        query = self.adapter.constraint_exists_query(self.connection.table_name(table), name, "CHECK")
        return await self._count(query) > 0

    # -------------------------------------------------------------------------
    # Tables
    # -------------------------------------------------------------------------

    async def create_table(
        self,
        name: str,
        definition: str | Columns | TableDefinition,
        options: dict[str, Any] | None = None,
    ) -> bool:
        """Create a table unless it exists.

        Args:
            name: Logical table name.
            definition: Raw column-definition SQL, a Columns collection or a
                TableDefinition (columns, keys, constraints and indexes).
            options: Engine options (``engine``, ``row_format``) where supported.

        Returns:
            True if the table was created, False if it already existed.

        Raises:
            SchemaError: The engine rejected the statement.
        """
        table = self._table(name)
        if await self.table_exists(name):
            logger.debug("Table %s already exists", name)
            return False

        options = dict(options or {})
        indexes: list[Index] = []
        if isinstance(definition, TableDefinition):
            body = self._table_body(definition)
            indexes = list(definition.indexes)
            options = {**definition.options, **options}
        elif isinstance(definition, Columns):
            body = ", ".join(definition.to_sql(self.adapter))
        else:
            body = str(definition).strip()
        if not body:
            raise SchemaError.table_failed(name, "no column definitions")

        sql = f"CREATE TABLE {table} ({body}){self.adapter.table_options_sql(options)}"
        try:
            await self.connection.execute(sql)
        except QueryError as exc:
            raise SchemaError.table_failed(name, str(exc)) from exc

        for index in indexes:
            await self.add_index(name, index.name, index.columns, index.type)
        logger.info("Created table %s", self.connection.table_name(name))
        return True

    async def rename_table(self, old: str, new: str) -> bool:
        """Rename a table. Returns False when it was already renamed."""
        old_table, new_table = self._table(old), self._table(new)
        if not await self.table_exists(old):
            if await self.table_exists(new):
                return False
            raise SchemaError.table_failed(old, "table does not exist")
        try:
            await self.connection.execute(self.adapter.rename_table_sql(old_table, new_table))
        except QueryError as exc:
            raise SchemaError.table_failed(old, str(exc)) from exc
        return True

    async def drop_table(self, name: str) -> bool:
        """Drop a table (if present) with foreign key checks suspended."""
        table = self._table(name)
        await self._set_foreign_key_checks(False)
        try:
            await self.connection.execute(self.adapter.drop_table_sql(table))
        except QueryError as exc:
            raise SchemaError.drop_failed(name, str(exc)) from exc
        finally:
            await self._set_foreign_key_checks(True)
        logger.info("Dropped table %s", self.connection.table_name(name))
        return True

    async def drop_tables(self, names: Iterable[str] | None = None) -> list[str]:
        """Drop the given tables (default: all managed tables) in any order.

        The schema version table is never dropped.
        """
        targets = list(names) if names is not None else await self.get_tables()
        targets = [name for name in targets if self.connection.table_name(name) != self.version_table]
        await self._set_foreign_key_checks(False)
        try:
            for name in targets:
                try:
                    await self.connection.execute(self.adapter.drop_table_sql(self._table(name)))
                except QueryError as exc:
                    raise SchemaError.drop_failed(name, str(exc)) from exc
        finally:
            await self._set_foreign_key_checks(True)
        if targets:
            logger.info("Dropped %d tables", len(targets))
        return targets

    # -------------------------------------------------------------------------
    # Columns
    # -------------------------------------------------------------------------

    async def add_column(
        self,
        table: str,
        column: str | Column,
        definition: str | None = None,
        after: str | None = None,
    ) -> bool:
        """Add a column unless it exists. Returns True if added.

        ``column`` is either a name (with ``definition`` holding the type and
        modifiers) or a Column descriptor.
        """
        if isinstance(column, Column):
            name, column_def = column.name, column.to_sql(self.adapter)
        else:
            if not definition:
                raise SchemaError.column_failed(table, column, "add", "missing definition")
            name, column_def = column, f"{self._ident(column)} {definition}"
        full = self._table(table)
        if await self.column_exists(table, name):
            logger.debug("Column %s.%s already exists", table, name)
            return False
        sql = self.adapter.add_column_sql(full, column_def, self._ident(after) if after else None)
        try:
            await self.connection.execute(sql)
        except QueryError as exc:
            raise SchemaError.column_failed(table, name, "add", str(exc)) from exc
        return True

    async def modify_column(self, table: str, column: str, definition: str) -> None:
        """Change a column definition.

        Raises:
            SchemaError: The column does not exist, the engine cannot modify
                columns in place, or the statement failed.
        """
        full = self._table(table)
        if not await self.column_exists(table, column):
            raise SchemaError.column_not_found(table, column)
        sql = self.adapter.modify_column_sql(full, self._ident(column), definition)
        if sql is None:
            raise SchemaError.column_failed(
                table, column, "modify", f"not supported by {self.adapter.name}"
            )
        try:
            await self.connection.execute(sql)
        except QueryError as exc:
            raise SchemaError.column_failed(table, column, "modify", str(exc)) from exc

    async def drop_column(self, table: str, column: str) -> bool:
        full = self._table(table)
        if not await self.column_exists(table, column):
            return False
        try:
            await self.connection.execute(self.adapter.drop_column_sql(full, self._ident(column)))
        except QueryError as exc:
            raise SchemaError.column_failed(table, column, "drop", str(exc)) from exc
        return True

    async def rename_column(
        self, table: str, old: str, new: str, definition: str | None = None
    ) -> bool:
        """Rename a column. Returns False when it was already renamed."""
        full = self._table(table)
        validate_identifier(new)
        if not await self.column_exists(table, old):
            if await self.column_exists(table, new):
                return False
            raise SchemaError.column_not_found(table, old)
        sql = self.adapter.rename_column_sql(full, self._ident(old), self._ident(new), definition)
        try:
            await self.connection.execute(sql)
        except QueryError as exc:
            raise SchemaError.column_failed(table, old, "rename", str(exc)) from exc
        return True

    # -------------------------------------------------------------------------
    # Indexes and constraints
    # -------------------------------------------------------------------------

    async def add_index(
        self, table: str, name: str, columns: Sequence[str], index_type: str = "INDEX"
    ) -> bool:
        """Add an index (INDEX, UNIQUE, FULLTEXT, SPATIAL) unless it exists."""
        index = Index(name, list(columns), index_type)
        full = self._table(table)
        if await self.index_exists(table, name):
            return False
        sql = self.adapter.add_index_sql(
            full, self._ident(name), [self._ident(col) for col in index.columns], index.type
        )
        try:
            await self.connection.execute(sql)
        except QueryError as exc:
            raise SchemaError.index_failed(table, name, str(exc)) from exc
        return True

    async def drop_index(self, table: str, name: str) -> bool:
        full = self._table(table)
        if not await self.index_exists(table, name):
            return False
        try:
            await self.connection.execute(self.adapter.drop_index_sql(full, self._ident(name)))
        except QueryError as exc:
            raise SchemaError.index_failed(table, name, str(exc)) from exc
        return True

    async def add_foreign_key(
        self,
        table: str,
        name: str,
        column: str,
        ref_table: str,
        ref_column: str,
        on_delete: str = "CASCADE",
        on_update: str = "CASCADE",
    ) -> bool:
        """Add a foreign key unless a constraint with that name exists.

        Raises:
            SchemaError: The engine cannot add constraints to an existing
                table, or rejected the statement.
        """
        fk = ForeignKey(name, column, ref_table, ref_column, on_delete, on_update)
        full = self._table(table)
        if await self.foreign_key_exists(table, name):
            return False
        sql = self.adapter.add_foreign_key_sql(
            full,
            self._ident(fk.name),
            self._ident(fk.column),
            self._table(fk.ref_table),
            self._ident(fk.ref_column),
            fk.on_delete,
            fk.on_update,
        )
        if sql is None:
            raise SchemaError.foreign_key_failed(
                table, name, f"adding constraints to existing tables is not supported by {self.adapter.name}"
            )
        try:
            await self.connection.execute(sql)
        except QueryError as exc:
            raise SchemaError.foreign_key_failed(table, name, str(exc)) from exc
        return True

    async def drop_foreign_key(self, table: str, name: str) -> bool:
        full = self._table(table)
        if not await self.foreign_key_exists(table, name):
            return False
        sql = self.adapter.drop_foreign_key_sql(full, self._ident(name))
        if sql is None:
            raise SchemaError.foreign_key_failed(
                table, name, f"dropping constraints is not supported by {self.adapter.name}"
            )
        try:
            await self.connection.execute(sql)
        except QueryError as exc:
            raise SchemaError.foreign_key_failed(table, name, str(exc)) from exc
        return True

    async def add_check_constraint(self, table: str, name: str, condition: str) -> bool:
        """Add a CHECK constraint, best effort: failures are logged, not raised."""
        full = self._table(table)
        if await self.check_exists(table, name):
            return False
        sql = self.adapter.add_check_sql(full, self._ident(name), condition)
        if sql is None:
            logger.warning(
                "CHECK constraint %s on %s skipped: not supported by %s",
                name,
                table,
                self.adapter.name,
            )
            return False
        try:
            await self.connection.execute(sql)
        except QueryError as exc:
            logger.warning("CHECK constraint %s on %s failed: %s", name, table, exc)
            return False
        return True

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    async def get_tables(self) -> list[str]:
        """Logical names of the managed (prefixed) tables, version table excluded."""
        prefix = self.connection.prefix
        sql, bindings = self.adapter.list_tables_query(prefix)
        result = await self.connection.execute(sql, bindings)
        tables = []
        for name in result.pluck("name"):
            if name == self.version_table:
                continue
            tables.append(name[len(prefix):])
        return tables

    async def get_columns(self, table: str) -> list[ColumnInfo]:
        validate_identifier(table)
        sql, bindings = self.adapter.columns_query(self.connection.table_name(table))
        result = await self.connection.execute(sql, bindings)
        return [self.adapter.column_info(row) for row in result]

    async def get_indexes(self, table: str) -> list[IndexInfo]:
        validate_identifier(table)
        sql, bindings = self.adapter.indexes_query(self.connection.table_name(table))
        result = await self.connection.execute(sql, bindings)
        return self.adapter.index_infos(result.all())

    # -------------------------------------------------------------------------
    # Version ledger (unprefixed key/value table)
    # -------------------------------------------------------------------------

    async def _ensure_version_table(self) -> None:
        table = self._ident(self.version_table)
        key = self._ident("option_name")
        value = self._ident("option_value")
        await self.connection.execute(
            f"CREATE TABLE IF NOT EXISTS {table} ({key} VARCHAR(191) PRIMARY KEY, {value} TEXT)"
        )

    async def get_schema_version(self) -> str | None:
        exists = await self._count(self.adapter.table_exists_query(self.version_table))
        if not exists:
            return None
        table = self._ident(self.version_table)
        result = await self.connection.execute(
            f"SELECT {self._ident('option_value')} AS version FROM {table} "
            f"WHERE {self._ident('option_name')} = ?",
            [SCHEMA_VERSION_KEY],
        )
        return result.value("version")

    async def set_schema_version(self, version: str) -> None:
        await self._ensure_version_table()
        table = self._ident(self.version_table)
        key = self._ident("option_name")
        value = self._ident("option_value")
        sql = f"INSERT INTO {table} ({key}, {value}) VALUES (?, ?)" + self.adapter.upsert_clause(
            [key], [f"{value} = {self.adapter.inserted_value(value)}"]
        )
        await self.connection.execute(sql, [SCHEMA_VERSION_KEY, str(version)])
        logger.info("Schema version set to %s", version)

    # -------------------------------------------------------------------------
    # Migrations
    # -------------------------------------------------------------------------

    def register_migration(self, migration: Migration | type[Migration]) -> None:
        self._migrations.append(migration)

    def migration_runner(self) -> MigrationRunner:
        return MigrationRunner(self.connection, self._migrations)

    async def migrate(self, pretend: bool = False) -> list[str]:
        """Run pending registered migrations; returns their names."""
        return await self.migration_runner().migrate(pretend=pretend)

    async def rollback_migration(self, steps: int = 1) -> list[str]:
        """Reverse the most recent migration batch(es); returns the names rolled back."""
        return await self.migration_runner().rollback(steps)
