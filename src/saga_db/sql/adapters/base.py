# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Base adapter class for async database backends with SQL dialect hooks."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from ..column import ColumnInfo, IndexInfo

if TYPE_CHECKING:
    from collections.abc import Sequence

    from ..result import ResultSet


class DbAdapter(ABC):
    """Abstract base class for async database adapters.

    An adapter owns two concerns:

    - Driver access: acquire/release/shutdown of driver connections and
      execution of a parameterized statement into a ResultSet.
    - SQL dialect: identifier quoting, transaction statements, upsert syntax,
      catalog queries and DDL variants used by the query builder, schema
      manager and transaction manager.

    Callers always write ``?`` placeholders; convert_placeholders() rewrites
    them for drivers using another paramstyle.

    The defaults follow the MySQL/MariaDB dialect. Subclasses override the
    hooks their engine spells differently.
    """

    name: str = "generic"
    quote_char: str = "`"
    supports_returning: bool = False
    default_isolation: str = "REPEATABLE READ"

    begin_sql: str = "BEGIN"
    commit_sql: str = "COMMIT"
    rollback_sql: str = "ROLLBACK"

    # Logical column types -> engine types
    type_map: dict[str, str] = {
        "INTEGER": "INT",
        "BIGINT": "BIGINT",
        "STRING": "VARCHAR({length})",
        "TEXT": "TEXT",
        "BOOLEAN": "TINYINT(1)",
        "FLOAT": "DOUBLE",
        "DECIMAL": "DECIMAL(18,6)",
        "TIMESTAMP": "DATETIME",
        "JSON": "JSON",
    }

    def __init__(self, charset: str = "utf8mb4", collate: str = "utf8mb4_unicode_ci"):
        self.charset = charset
        self.collate = collate

    # -------------------------------------------------------------------------
    # Driver access
    # -------------------------------------------------------------------------

    @abstractmethod
    async def acquire(self) -> Any:
        """Acquire a driver connection in autocommit mode.

        Transactions are controlled explicitly with begin_sql/commit_sql and
        savepoint statements, so the driver must not open implicit ones.
        """
        ...

    @abstractmethod
    async def release(self, conn: Any) -> None:
        """Return the driver connection to its pool, or close it."""
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        """Close pools (application shutdown)."""
        ...

    @abstractmethod
    async def execute(
        self, conn: Any, sql: str, bindings: Sequence[Any] | None = None
    ) -> ResultSet:
        """Execute one statement with positional bindings.

        Raises:
            QueryError: The engine rejected the statement.
        """
        ...

    async def ping(self, conn: Any) -> bool:
        """Return True if the connection answers a trivial query."""
        result = await self.execute(conn, "SELECT 1 AS ok")
        return result.value("ok") == 1

    # -------------------------------------------------------------------------
    # Placeholders and identifiers
    # -------------------------------------------------------------------------

    def convert_placeholders(self, sql: str) -> str:
        """Rewrite ``?`` placeholders for the driver paramstyle."""
        return sql

    def quote_identifier(self, name: str) -> str:
        """Quote a single identifier segment, doubling embedded quotes."""
        q = self.quote_char
        return q + name.replace(q, q + q) + q

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def savepoint_sql(self, name: str) -> str:
        return f"SAVEPOINT {name}"

    def release_savepoint_sql(self, name: str) -> str:
        return f"RELEASE SAVEPOINT {name}"

    def rollback_to_sql(self, name: str) -> str:
        return f"ROLLBACK TO SAVEPOINT {name}"

    def isolation_sql(self, level: str) -> str | None:
        """Statement that sets the session isolation level, None if unsupported."""
        return f"SET SESSION TRANSACTION ISOLATION LEVEL {level}"

    # -------------------------------------------------------------------------
    # DML variants
    # -------------------------------------------------------------------------

    def upsert_clause(self, conflict: Sequence[str] | None, assignments: Sequence[str]) -> str:
        """Conflict clause appended to an INSERT for upserts."""
        return " ON DUPLICATE KEY UPDATE " + ", ".join(assignments)

    def inserted_value(self, quoted_column: str) -> str:
        """Expression referencing the value proposed for insertion."""
        return f"VALUES({quoted_column})"

    def truncate_sql(self, table: str) -> str:
        return f"TRUNCATE TABLE {table}"

    # -------------------------------------------------------------------------
    # Table creation
    # -------------------------------------------------------------------------

    def column_type(self, logical_type: str, length: int | None = None) -> str:
        """Map a logical column type to the engine type."""
        template = self.type_map.get(logical_type.upper())
        if template is None:
            return logical_type
        return template.format(length=length or 255)

    def pk_column(self, name: str) -> str:
        """Return SQL definition for autoincrement primary key column."""
        return f"{self.quote_identifier(name)} BIGINT UNSIGNED AUTO_INCREMENT PRIMARY KEY"

    def charset_collate(self) -> str:
        parts = []
        if self.charset:
            parts.append(f"DEFAULT CHARACTER SET {self.charset}")
        if self.collate:
            parts.append(f"COLLATE {self.collate}")
        return " ".join(parts)

    def table_options_sql(self, options: dict[str, Any]) -> str:
        """Engine options appended after the column list of CREATE TABLE."""
        parts = [f"ENGINE={options.get('engine', 'InnoDB')}"]
        if options.get("row_format"):
            parts.append(f"ROW_FORMAT={options['row_format']}")
        charset = self.charset_collate()
        if charset:
            parts.append(charset)
        return " " + " ".join(parts)

    def drop_table_sql(self, table: str) -> str:
        return f"DROP TABLE IF EXISTS {table}"

    def rename_table_sql(self, old: str, new: str) -> str:
        return f"RENAME TABLE {old} TO {new}"

    def foreign_key_checks_sql(self, enabled: bool) -> str | None:
        """Statement toggling foreign key enforcement, None if not needed."""
        return f"SET FOREIGN_KEY_CHECKS = {1 if enabled else 0}"

    # -------------------------------------------------------------------------
    # Column / index / constraint DDL
    #
    # Hooks returning None mark operations the engine cannot perform with a
    # single ALTER statement.
    # -------------------------------------------------------------------------

    def add_column_sql(self, table: str, column_def: str, after: str | None = None) -> str:
        sql = f"ALTER TABLE {table} ADD COLUMN {column_def}"
        if after:
            sql += f" AFTER {after}"
        return sql

    def modify_column_sql(self, table: str, column: str, definition: str) -> str | None:
        return f"ALTER TABLE {table} MODIFY COLUMN {column} {definition}"

    def rename_column_sql(self, table: str, old: str, new: str, definition: str | None) -> str:
        if definition:
            return f"ALTER TABLE {table} CHANGE {old} {new} {definition}"
        return f"ALTER TABLE {table} RENAME COLUMN {old} TO {new}"

    def drop_column_sql(self, table: str, column: str) -> str:
        return f"ALTER TABLE {table} DROP COLUMN {column}"

    def add_index_sql(self, table: str, name: str, columns: Sequence[str], index_type: str) -> str:
        keyword = {
            "UNIQUE": "UNIQUE INDEX",
            "FULLTEXT": "FULLTEXT INDEX",
            "SPATIAL": "SPATIAL INDEX",
        }.get(index_type, "INDEX")
        return f"ALTER TABLE {table} ADD {keyword} {name} ({', '.join(columns)})"

    def drop_index_sql(self, table: str, name: str) -> str:
        return f"ALTER TABLE {table} DROP INDEX {name}"

    def add_foreign_key_sql(
        self,
        table: str,
        name: str,
        column: str,
        ref_table: str,
        ref_column: str,
        on_delete: str,
        on_update: str,
    ) -> str | None:
        return (
            f"ALTER TABLE {table} ADD CONSTRAINT {name} FOREIGN KEY ({column}) "
            f"REFERENCES {ref_table} ({ref_column}) ON DELETE {on_delete} ON UPDATE {on_update}"
        )

    def drop_foreign_key_sql(self, table: str, name: str) -> str | None:
        return f"ALTER TABLE {table} DROP FOREIGN KEY {name}"

    def add_check_sql(self, table: str, name: str, condition: str) -> str | None:
        return f"ALTER TABLE {table} ADD CONSTRAINT {name} CHECK ({condition})"

    # -------------------------------------------------------------------------
    # Catalog introspection (information_schema)
    #
    # Existence queries return one row with a "cnt" column. Table names are
    # the prefixed, unquoted engine names.
    # -------------------------------------------------------------------------

    def table_exists_query(self, table: str) -> tuple[str, list[Any]]:
        return (
            "SELECT COUNT(*) AS cnt FROM information_schema.TABLES "
            "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = ?",
            [table],
        )

    def column_exists_query(self, table: str, column: str) -> tuple[str, list[Any]]:
        return (
            "SELECT COUNT(*) AS cnt FROM information_schema.COLUMNS "
            "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = ? AND COLUMN_NAME = ?",
            [table, column],
        )

    def index_exists_query(self, table: str, index: str) -> tuple[str, list[Any]]:
        return (
            "SELECT COUNT(*) AS cnt FROM information_schema.STATISTICS "
            "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = ? AND INDEX_NAME = ?",
            [table, index],
        )

    def constraint_exists_query(self, table: str, name: str, kind: str) -> tuple[str, list[Any]]:
        """kind is 'FOREIGN KEY' or 'CHECK'."""
        return (
            "SELECT COUNT(*) AS cnt FROM information_schema.TABLE_CONSTRAINTS "
            "WHERE CONSTRAINT_SCHEMA = DATABASE() AND TABLE_NAME = ? "
            "AND CONSTRAINT_NAME = ? AND CONSTRAINT_TYPE = ?",
            [table, name, kind],
        )

    def list_tables_query(self, prefix: str) -> tuple[str, list[Any]]:
        """Rows with a "name" column for every base table starting with prefix."""
        return (
            "SELECT TABLE_NAME AS name FROM information_schema.TABLES "
            "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_TYPE = 'BASE TABLE' "
            "AND TABLE_NAME LIKE ? ORDER BY TABLE_NAME",
            [_like_prefix(prefix)],
        )

    def columns_query(self, table: str) -> tuple[str, list[Any]]:
        return (
            "SELECT COLUMN_NAME AS name, COLUMN_TYPE AS type, IS_NULLABLE AS nullable, "
            "COLUMN_DEFAULT AS dflt, COLUMN_KEY AS col_key, EXTRA AS extra "
            "FROM information_schema.COLUMNS "
            "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = ? ORDER BY ORDINAL_POSITION",
            [table],
        )

    def column_info(self, row: dict[str, Any]) -> ColumnInfo:
        return ColumnInfo(
            name=row["name"],
            type=row["type"],
            nullable=str(row["nullable"]).upper() == "YES",
            default=row.get("dflt"),
            key=row.get("col_key") or "",
            extra=row.get("extra") or "",
        )

    def indexes_query(self, table: str) -> tuple[str, list[Any]]:
        return (
            "SELECT INDEX_NAME AS name, COLUMN_NAME AS column_name, "
            "NON_UNIQUE AS non_unique, INDEX_TYPE AS index_type "
            "FROM information_schema.STATISTICS "
            "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = ? "
            "ORDER BY INDEX_NAME, SEQ_IN_INDEX",
            [table],
        )

    def index_infos(self, rows: Sequence[dict[str, Any]]) -> list[IndexInfo]:
        """Fold one-row-per-column catalog output into IndexInfo descriptors."""
        indexes: dict[str, IndexInfo] = {}
        for row in rows:
            name = row["name"]
            info = indexes.get(name)
            if info is None:
                info = IndexInfo(
                    name=name,
                    columns=[],
                    unique=str(row["non_unique"]) == "0",
                    type=row.get("index_type") or "BTREE",
                )
                indexes[name] = info
            info.columns.append(row["column_name"])
        return list(indexes.values())


def _like_prefix(prefix: str) -> str:
    """LIKE pattern matching names that start with prefix (escaping wildcards)."""
    return re.sub(r"([\\%_])", r"\\\1", prefix) + "%"
