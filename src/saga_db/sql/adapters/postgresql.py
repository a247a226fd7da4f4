# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""PostgreSQL async adapter using psycopg3 with connection pooling.

Uses connection-per-request model: acquire() gets from pool,
release() returns to pool. Pooled connections run in autocommit mode;
transactions are driven explicitly by the transaction manager.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from ..exceptions import QueryError
from ..result import ResultSet
from .base import DbAdapter, _like_prefix

if TYPE_CHECKING:
    from collections.abc import Sequence

# Single-quoted literals, double-quoted identifiers, ? placeholders and bare percent signs
_TOKEN_RE = re.compile(r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\"|\?|%")


class PostgresAdapter(DbAdapter):
    """PostgreSQL async adapter with connection pooling.

    Uses ``?`` placeholders converted to ``%s``. acquire() gets connection
    from pool, release() returns it. Each connection is isolated.

    Pool is initialized lazily on first acquire().
    """

    name = "postgresql"
    quote_char = '"'
    supports_returning = True
    default_isolation = "READ COMMITTED"

    type_map = {
        "INTEGER": "INTEGER",
        "BIGINT": "BIGINT",
        "STRING": "VARCHAR({length})",
        "TEXT": "TEXT",
        "BOOLEAN": "BOOLEAN",
        "FLOAT": "DOUBLE PRECISION",
        "DECIMAL": "NUMERIC(18,6)",
        "TIMESTAMP": "TIMESTAMP",
        "JSON": "JSONB",
    }

    def __init__(self, dsn: str, pool_size: int = 10, connect_timeout: float = 10.0):
        super().__init__(charset="", collate="")
        self.dsn = dsn
        self.pool_size = pool_size
        self.connect_timeout = connect_timeout
        self._pool: Any = None

        # Verify psycopg is available at init time
        try:
            import psycopg  # noqa: F401
        except ImportError as e:
            raise ImportError(
                "PostgreSQL support requires psycopg. "
                "Install with: pip install saga-db[postgresql]"
            ) from e

    def convert_placeholders(self, sql: str) -> str:
        """Convert ``?`` placeholders to ``%s``, escaping literal percent signs."""

        def replace(match: re.Match[str]) -> str:
            token = match.group(0)
            if token == "?":
                return "%s"
            if token == "%":
                return "%%"
            return token.replace("%", "%%")

        return _TOKEN_RE.sub(replace, sql)

    @staticmethod
    def _adapt(value: Any) -> Any:
        if isinstance(value, (dict, list)):
            from psycopg.types.json import Jsonb

            return Jsonb(value)
        return value

    async def _ensure_pool(self) -> None:
        """Initialize connection pool if not already open."""
        if self._pool is not None:
            return

        import asyncio

        from psycopg_pool import AsyncConnectionPool

        self._pool = AsyncConnectionPool(
            self.dsn,
            min_size=1,
            max_size=self.pool_size,
            open=False,
            kwargs={"autocommit": True},
        )
        try:
            await asyncio.wait_for(
                self._pool.open(wait=True, timeout=self.connect_timeout),
                timeout=self.connect_timeout + 1,
            )
        except asyncio.TimeoutError:
            await self._pool.close()
            self._pool = None
            raise TimeoutError(
                f"PostgreSQL connection timed out after {self.connect_timeout}s. "
                "Check credentials and server availability."
            ) from None
        except Exception as e:
            await self._pool.close()
            self._pool = None
            raise ConnectionError(f"PostgreSQL connection failed: {e}") from e

    async def acquire(self) -> Any:
        """Acquire connection from pool."""
        await self._ensure_pool()
        return await self._pool.getconn()

    async def release(self, conn: Any) -> None:
        """Return connection to pool."""
        if self._pool:
            await self._pool.putconn(conn)

    async def shutdown(self) -> None:
        """Close connection pool (application shutdown)."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    async def execute(
        self, conn: Any, sql: str, bindings: Sequence[Any] | None = None
    ) -> ResultSet:
        """Execute one statement, return rows and write metadata."""
        import psycopg
        from psycopg.rows import dict_row

        params = [self._adapt(value) for value in bindings or ()]
        # Without parameters psycopg sends the text untouched
        query = self.convert_placeholders(sql) if params else sql
        try:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, params or None)
                rows = await cur.fetchall() if cur.description else []
                affected = cur.rowcount if cur.rowcount > 0 else 0
                return ResultSet(rows, affected_rows=affected)
        except psycopg.Error as exc:
            raise QueryError.from_driver(exc, sql, bindings) from exc

    # -------------------------------------------------------------------------
    # Dialect
    # -------------------------------------------------------------------------

    def isolation_sql(self, level: str) -> str | None:
        return f"SET SESSION CHARACTERISTICS AS TRANSACTION ISOLATION LEVEL {level}"

    def upsert_clause(self, conflict: Sequence[str] | None, assignments: Sequence[str]) -> str:
        if not conflict:
            raise QueryError("PostgreSQL upsert requires the conflict target columns")
        return f" ON CONFLICT ({', '.join(conflict)}) DO UPDATE SET " + ", ".join(assignments)

    def inserted_value(self, quoted_column: str) -> str:
        return f"excluded.{quoted_column}"

    def pk_column(self, name: str) -> str:
        """Return SQL definition for autoincrement primary key column (PostgreSQL)."""
        return f"{self.quote_identifier(name)} BIGSERIAL PRIMARY KEY"

    def charset_collate(self) -> str:
        return ""

    def table_options_sql(self, options: dict[str, Any]) -> str:
        return ""

    def drop_table_sql(self, table: str) -> str:
        return f"DROP TABLE IF EXISTS {table} CASCADE"

    def rename_table_sql(self, old: str, new: str) -> str:
        return f"ALTER TABLE {old} RENAME TO {new}"

    def foreign_key_checks_sql(self, enabled: bool) -> str | None:
        # DROP ... CASCADE already removes dependent constraints
        return None

    def add_column_sql(self, table: str, column_def: str, after: str | None = None) -> str:
        return f"ALTER TABLE {table} ADD COLUMN {column_def}"

    def modify_column_sql(self, table: str, column: str, definition: str) -> str:
        return f"ALTER TABLE {table} ALTER COLUMN {column} TYPE {definition}"

    def rename_column_sql(self, table: str, old: str, new: str, definition: str | None) -> str:
        return f"ALTER TABLE {table} RENAME COLUMN {old} TO {new}"

    def add_index_sql(self, table: str, name: str, columns: Sequence[str], index_type: str) -> str:
        unique = "UNIQUE " if index_type == "UNIQUE" else ""
        return f"CREATE {unique}INDEX {name} ON {table} ({', '.join(columns)})"

    def drop_index_sql(self, table: str, name: str) -> str:
        return f"DROP INDEX IF EXISTS {name}"

    def drop_foreign_key_sql(self, table: str, name: str) -> str:
        return f"ALTER TABLE {table} DROP CONSTRAINT {name}"

    # -------------------------------------------------------------------------
    # Catalog (information_schema and pg_catalog, current schema only)
    # -------------------------------------------------------------------------

    def table_exists_query(self, table: str) -> tuple[str, list[Any]]:
        return (
            "SELECT COUNT(*) AS cnt FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_name = ?",
            [table],
        )

    def column_exists_query(self, table: str, column: str) -> tuple[str, list[Any]]:
        return (
            "SELECT COUNT(*) AS cnt FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = ? AND column_name = ?",
            [table, column],
        )

    def index_exists_query(self, table: str, index: str) -> tuple[str, list[Any]]:
        return (
            "SELECT COUNT(*) AS cnt FROM pg_indexes "
            "WHERE schemaname = current_schema() AND tablename = ? AND indexname = ?",
            [table, index],
        )

    def constraint_exists_query(self, table: str, name: str, kind: str) -> tuple[str, list[Any]]:
        return (
            "SELECT COUNT(*) AS cnt FROM information_schema.table_constraints "
            "WHERE constraint_schema = current_schema() AND table_name = ? "
            "AND constraint_name = ? AND constraint_type = ?",
            [table, name, kind],
        )

    def list_tables_query(self, prefix: str) -> tuple[str, list[Any]]:
        return (
            "SELECT table_name AS name FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_type = 'BASE TABLE' "
            "AND table_name LIKE ? ORDER BY table_name",
            [_like_prefix(prefix)],
        )

    def columns_query(self, table: str) -> tuple[str, list[Any]]:
        return (
            "SELECT column_name AS name, data_type AS type, is_nullable AS nullable, "
            "column_default AS dflt, '' AS col_key, '' AS extra "
            "FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = ? "
            "ORDER BY ordinal_position",
            [table],
        )

    def indexes_query(self, table: str) -> tuple[str, list[Any]]:
        return (
            "SELECT i.relname AS name, a.attname AS column_name, "
            "CASE WHEN ix.indisunique THEN 0 ELSE 1 END AS non_unique, "
            "upper(am.amname) AS index_type "
            "FROM pg_class t "
            "JOIN pg_index ix ON t.oid = ix.indrelid "
            "JOIN pg_class i ON i.oid = ix.indexrelid "
            "JOIN pg_am am ON am.oid = i.relam "
            "JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(ix.indkey) "
            "WHERE t.relname = ? AND t.relnamespace = current_schema()::regnamespace "
            "ORDER BY i.relname, array_position(ix.indkey::int2[], a.attnum)",
            [table],
        )
