# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Connection: explicit handle to one driver connection plus its dialect.

A Connection is created by ``SqlDb.connection()`` and passed to every
component that touches the database. It owns table-name qualification,
identifier quoting, statement execution with timing/logging, and hands
out the per-connection schema and transaction managers.

Example:
    async with db.connection() as conn:
        result = await conn.execute("SELECT * FROM entities WHERE id = ?", [7])
        await conn.statement("UPDATE entities SET importance = ? WHERE id = ?", [90, 7])
        rows = await conn.table("entities").where("saga_id", "=", 1).get()
"""

from __future__ import annotations

import logging
import re
import time
from typing import TYPE_CHECKING, Any

from .query import QueryBuilder, RawExpression
from .schema import SchemaManager
from .transaction import TransactionManager

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .adapters.base import DbAdapter
    from .result import ResultSet

logger = logging.getLogger(__name__)

_ALIAS_RE = re.compile(r"^(.+?)\s+as\s+(\S+)$", re.IGNORECASE)


class Connection:
    """One acquired driver connection bound to its adapter.

    Attributes:
        adapter: Adapter that executes statements and renders the dialect.
        handle: Driver connection returned by adapter.acquire().
        prefix: Table prefix applied by table_name().
        last_insert_id: Identifier generated by the most recent INSERT.
        affected_rows: Rows changed by the most recent write.
    """

    def __init__(
        self,
        adapter: DbAdapter,
        handle: Any,
        prefix: str = "",
        slow_query_ms: float | None = None,
        log_queries: bool = False,
        version_table: str = "schema_options",
    ):
        self.adapter = adapter
        self.handle = handle
        self.prefix = prefix
        self.slow_query_ms = slow_query_ms
        self.version_table = version_table
        self.last_insert_id: Any = 0
        self.affected_rows = 0
        self._log_enabled = log_queries
        self._query_log: list[dict[str, Any]] = []
        self._schema: SchemaManager | None = None
        self._transaction: TransactionManager | None = None

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(self, sql: str, bindings: Sequence[Any] | None = None) -> ResultSet:
        """Execute a parameterized statement (``?`` placeholders).

        Raises:
            QueryError: The engine rejected the statement.
        """
        params = list(bindings or [])
        started = time.perf_counter()
        result = await self.adapter.execute(self.handle, sql, params)
        elapsed_ms = (time.perf_counter() - started) * 1000

        self.affected_rows = result.affected_rows
        if result.last_insert_id:
            self.last_insert_id = result.last_insert_id

        if self._log_enabled:
            self._query_log.append({"sql": sql, "bindings": params, "time_ms": elapsed_ms})
            logger.debug("SQL (%.2f ms): %s %r", elapsed_ms, sql, params)
        if self.slow_query_ms is not None and elapsed_ms >= self.slow_query_ms:
            logger.warning("Slow query (%.2f ms): %s", elapsed_ms, sql)
        return result

    async def statement(self, sql: str, bindings: Sequence[Any] | None = None) -> int:
        """Execute a write statement, return the affected row count."""
        result = await self.execute(sql, bindings)
        return result.affected_rows

    async def ping(self) -> bool:
        return await self.adapter.ping(self.handle)

    # -------------------------------------------------------------------------
    # Names
    # -------------------------------------------------------------------------

    def table_name(self, name: str) -> str:
        """Engine table name for a logical name (prefix applied)."""
        return f"{self.prefix}{name}"

    def full_table_name(self, name: str) -> str:
        """Prefixed and quoted table name, ready to interpolate."""
        return self.quote_identifier(self.table_name(name))

    def quote_identifier(self, identifier: str | RawExpression) -> str:
        """Quote an identifier, handling ``a.b`` qualification and ``x AS y`` aliases.

        Embedded quote characters are doubled; ``*`` is left bare.
        """
        if isinstance(identifier, RawExpression):
            return identifier.sql
        identifier = str(identifier).strip()
        match = _ALIAS_RE.match(identifier)
        if match:
            expr, alias = match.groups()
            return f"{self.quote_identifier(expr)} AS {self.quote_identifier(alias)}"
        return ".".join(
            part if part == "*" else self.adapter.quote_identifier(part)
            for part in identifier.split(".")
        )

    @property
    def charset_collate(self) -> str:
        return self.adapter.charset_collate()

    # -------------------------------------------------------------------------
    # Component factories
    # -------------------------------------------------------------------------

    def query(self) -> QueryBuilder:
        return QueryBuilder(self)

    def table(self, name: str, alias: str | None = None) -> QueryBuilder:
        return QueryBuilder(self).from_(name, alias)

    def schema(self) -> SchemaManager:
        if self._schema is None:
            self._schema = SchemaManager(self)
        return self._schema

    def transaction(self) -> TransactionManager:
        if self._transaction is None:
            self._transaction = TransactionManager(self)
        return self._transaction

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None and self._transaction.is_active

    # -------------------------------------------------------------------------
    # Query log
    # -------------------------------------------------------------------------

    def enable_query_log(self) -> None:
        self._log_enabled = True

    def disable_query_log(self) -> None:
        self._log_enabled = False

    @property
    def query_log(self) -> list[dict[str, Any]]:
        return list(self._query_log)

    def clear_query_log(self) -> None:
        self._query_log.clear()

    def __repr__(self) -> str:
        return f"<Connection adapter={self.adapter.name} prefix={self.prefix!r}>"
