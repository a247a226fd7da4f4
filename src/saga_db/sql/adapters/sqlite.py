# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite async adapter using aiosqlite with per-request connections."""

from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import aiosqlite

from ..exceptions import QueryError
from ..result import ResultSet
from .base import DbAdapter

if TYPE_CHECKING:
    from collections.abc import Sequence


class SqliteAdapter(DbAdapter):
    """SQLite async adapter with per-request connections.

    Uses ``?`` placeholders natively. Each acquire() opens a new connection
    in autocommit mode with foreign keys enforced, release() closes it.

    Bindings are adapted before execution so that values the sqlite3 module
    does not handle natively behave like on the other backends:
    - datetime/date → ISO strings
    - dict/list → JSON text
    - Decimal → string
    """

    name = "sqlite"
    quote_char = '"'
    supports_returning = True
    default_isolation = "SERIALIZABLE"

    type_map = {
        "INTEGER": "INTEGER",
        "BIGINT": "INTEGER",
        "STRING": "VARCHAR({length})",
        "TEXT": "TEXT",
        "BOOLEAN": "INTEGER",
        "FLOAT": "REAL",
        "DECIMAL": "NUMERIC",
        "TIMESTAMP": "TIMESTAMP",
        "JSON": "TEXT",
    }

    def __init__(self, db_path: str, connect_timeout: float = 5.0):
        super().__init__(charset="", collate="")
        self.db_path = db_path or ":memory:"
        self.connect_timeout = connect_timeout

    @staticmethod
    def _adapt(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat(sep=" ")
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        if isinstance(value, Decimal):
            return str(value)
        return value

    async def acquire(self) -> aiosqlite.Connection:
        """Open new connection for request."""
        conn = await aiosqlite.connect(
            self.db_path, timeout=self.connect_timeout, isolation_level=None
        )
        await conn.execute("PRAGMA foreign_keys = ON")
        return conn

    async def release(self, conn: aiosqlite.Connection) -> None:
        """Close connection."""
        await conn.close()

    async def shutdown(self) -> None:
        """No-op for SQLite (no pool to close)."""
        pass

    async def execute(
        self, conn: aiosqlite.Connection, sql: str, bindings: Sequence[Any] | None = None
    ) -> ResultSet:
        """Execute one statement, return rows and write metadata."""
        params = [self._adapt(value) for value in bindings or ()]
        try:
            async with conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall() if cursor.description else []
                affected = cursor.rowcount if cursor.rowcount > 0 else 0
                last_id = cursor.lastrowid if _is_insert(sql) else 0
                return ResultSet.from_cursor(cursor.description, rows, affected, last_id)
        except aiosqlite.Error as exc:
            raise QueryError.from_driver(exc, sql, params) from exc

    # -------------------------------------------------------------------------
    # Dialect
    # -------------------------------------------------------------------------

    def isolation_sql(self, level: str) -> str | None:
        # SQLite transactions are serializable; only dirty reads can be toggled
        enabled = 1 if level == "READ UNCOMMITTED" else 0
        return f"PRAGMA read_uncommitted = {enabled}"

    def upsert_clause(self, conflict: Sequence[str] | None, assignments: Sequence[str]) -> str:
        target = f" ({', '.join(conflict)})" if conflict else ""
        return f" ON CONFLICT{target} DO UPDATE SET " + ", ".join(assignments)

    def inserted_value(self, quoted_column: str) -> str:
        return f"excluded.{quoted_column}"

    def truncate_sql(self, table: str) -> str:
        return f"DELETE FROM {table}"

    def pk_column(self, name: str) -> str:
        """Return SQL definition for autoincrement primary key column (SQLite)."""
        return f"{self.quote_identifier(name)} INTEGER PRIMARY KEY AUTOINCREMENT"

    def charset_collate(self) -> str:
        return ""

    def table_options_sql(self, options: dict[str, Any]) -> str:
        return ""

    def rename_table_sql(self, old: str, new: str) -> str:
        return f"ALTER TABLE {old} RENAME TO {new}"

    def foreign_key_checks_sql(self, enabled: bool) -> str | None:
        return f"PRAGMA foreign_keys = {'ON' if enabled else 'OFF'}"

    def add_column_sql(self, table: str, column_def: str, after: str | None = None) -> str:
        # SQLite always appends new columns
        return f"ALTER TABLE {table} ADD COLUMN {column_def}"

    def modify_column_sql(self, table: str, column: str, definition: str) -> str | None:
        return None

    def rename_column_sql(self, table: str, old: str, new: str, definition: str | None) -> str:
        return f"ALTER TABLE {table} RENAME COLUMN {old} TO {new}"

    def add_index_sql(self, table: str, name: str, columns: Sequence[str], index_type: str) -> str:
        unique = "UNIQUE " if index_type == "UNIQUE" else ""
        return f"CREATE {unique}INDEX {name} ON {table} ({', '.join(columns)})"

    def drop_index_sql(self, table: str, name: str) -> str:
        return f"DROP INDEX IF EXISTS {name}"

    def add_foreign_key_sql(self, *args: Any, **kwargs: Any) -> str | None:
        # Constraints can only be declared in CREATE TABLE
        return None

    def drop_foreign_key_sql(self, table: str, name: str) -> str | None:
        return None

    def add_check_sql(self, table: str, name: str, condition: str) -> str | None:
        return None

    # -------------------------------------------------------------------------
    # Catalog (sqlite_master and table-valued pragmas)
    # -------------------------------------------------------------------------

    def table_exists_query(self, table: str) -> tuple[str, list[Any]]:
        return (
            "SELECT COUNT(*) AS cnt FROM sqlite_master WHERE type = 'table' AND name = ?",
            [table],
        )

    def column_exists_query(self, table: str, column: str) -> tuple[str, list[Any]]:
        return ("SELECT COUNT(*) AS cnt FROM pragma_table_info(?) WHERE name = ?", [table, column])

    def index_exists_query(self, table: str, index: str) -> tuple[str, list[Any]]:
        return (
            "SELECT COUNT(*) AS cnt FROM sqlite_master "
            "WHERE type = 'index' AND tbl_name = ? AND name = ?",
            [table, index],
        )

    def constraint_exists_query(self, table: str, name: str, kind: str) -> tuple[str, list[Any]]:
        # Named constraints only live in the CREATE TABLE text
        return (
            "SELECT COUNT(*) AS cnt FROM sqlite_master "
            "WHERE type = 'table' AND name = ? AND instr(sql, ?) > 0",
            [table, f"CONSTRAINT {self.quote_identifier(name)} {kind}"],
        )

    def list_tables_query(self, prefix: str) -> tuple[str, list[Any]]:
        return (
            "SELECT name FROM sqlite_master WHERE type = 'table' "
            "AND name NOT LIKE 'sqlite_%' AND substr(name, 1, ?) = ? ORDER BY name",
            [len(prefix), prefix],
        )

    def columns_query(self, table: str) -> tuple[str, list[Any]]:
        return (
            "SELECT name, type, "
            "CASE WHEN \"notnull\" = 0 THEN 'YES' ELSE 'NO' END AS nullable, "
            "dflt_value AS dflt, "
            "CASE WHEN pk > 0 THEN 'PRI' ELSE '' END AS col_key, "
            "'' AS extra "
            "FROM pragma_table_info(?) ORDER BY cid",
            [table],
        )

    def indexes_query(self, table: str) -> tuple[str, list[Any]]:
        return (
            "SELECT il.name AS name, ii.name AS column_name, "
            "CASE WHEN il.\"unique\" = 1 THEN 0 ELSE 1 END AS non_unique, "
            "'BTREE' AS index_type "
            "FROM pragma_index_list(?) AS il, pragma_index_info(il.name) AS ii "
            "ORDER BY il.name, ii.seqno",
            [table],
        )


def _is_insert(sql: str) -> bool:
    head = sql.lstrip()[:7].upper()
    return head.startswith("INSERT") or head.startswith("REPLACE")
