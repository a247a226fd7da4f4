# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for Connection: execution, naming, logging and component factories."""

from __future__ import annotations

import logging

import pytest

from saga_db.sql import (
    Connection,
    MemoryAdapter,
    QueryBuilder,
    QueryError,
    RawExpression,
    SchemaManager,
    SqlDb,
    TransactionManager,
)


class TestExecution:
    """Raw parameterized execution."""

    async def test_execute_records_bindings(self, mem_conn: Connection, spy: MemoryAdapter):
        await mem_conn.execute("SELECT * FROM t WHERE a = ? AND b = ?", [1, "x"])
        assert spy.statements == [("SELECT * FROM t WHERE a = ? AND b = ?", [1, "x"])]

    async def test_statement_returns_affected(self, mem_conn: Connection, spy: MemoryAdapter):
        spy.on(r"^UPDATE", affected=4)
        assert await mem_conn.statement("UPDATE t SET a = ?", [1]) == 4
        assert mem_conn.affected_rows == 4

    async def test_last_insert_id_kept_across_reads(self, mem_conn: Connection, spy: MemoryAdapter):
        spy.on(r"^INSERT", last_insert_id=9)
        await mem_conn.execute("INSERT INTO t (a) VALUES (?)", [1])
        await mem_conn.execute("SELECT 1")
        assert mem_conn.last_insert_id == 9

    async def test_driver_error_is_query_error(self, conn: Connection):
        with pytest.raises(QueryError) as exc_info:
            await conn.execute("SELECT * FROM missing_table WHERE id = ?", [1])
        err = exc_info.value
        assert "missing_table" in str(err)
        assert err.sql == "SELECT * FROM missing_table WHERE id = ?"
        assert err.bindings == [1]
        assert err.__cause__ is not None

    async def test_ping(self, conn: Connection):
        assert await conn.ping() is True


class TestNames:
    """Table qualification and identifier quoting."""

    async def test_table_name_applies_prefix(self):
        db = SqlDb("memory:", table_prefix="saga_")
        async with db.connection() as conn:
            assert conn.table_name("entities") == "saga_entities"
            assert conn.full_table_name("entities") == "`saga_entities`"

    def test_quote_identifier(self, mem_conn: Connection):
        assert mem_conn.quote_identifier("name") == "`name`"
        assert mem_conn.quote_identifier("e.name") == "`e`.`name`"
        assert mem_conn.quote_identifier("e.name as label") == "`e`.`name` AS `label`"
        assert mem_conn.quote_identifier("e.*") == "`e`.*"
        assert mem_conn.quote_identifier("a`b") == "`a``b`"
        assert mem_conn.quote_identifier(RawExpression("COUNT(*)")) == "COUNT(*)"

    def test_sqlite_quotes_with_double_quotes(self, conn: Connection):
        assert conn.quote_identifier('e.we"ird') == '"e"."we""ird"'

    def test_charset_collate(self, mem_conn: Connection, conn: Connection):
        assert mem_conn.charset_collate == "DEFAULT CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
        assert conn.charset_collate == ""


class TestFactories:
    """Component factories and per-connection caching."""

    def test_query_and_table(self, mem_conn: Connection):
        assert isinstance(mem_conn.query(), QueryBuilder)
        assert mem_conn.table("entities", "e").to_sql() == "SELECT * FROM `entities` AS `e`"

    def test_schema_and_transaction_are_cached(self, mem_conn: Connection):
        assert isinstance(mem_conn.schema(), SchemaManager)
        assert mem_conn.schema() is mem_conn.schema()
        assert isinstance(mem_conn.transaction(), TransactionManager)
        assert mem_conn.transaction() is mem_conn.transaction()

    async def test_in_transaction(self, mem_conn: Connection):
        assert mem_conn.in_transaction is False
        await mem_conn.transaction().begin()
        assert mem_conn.in_transaction is True
        await mem_conn.transaction().rollback()
        assert mem_conn.in_transaction is False


class TestQueryLog:
    """Opt-in query log and slow-query warnings."""

    async def test_log_disabled_by_default(self, mem_conn: Connection):
        await mem_conn.execute("SELECT 1")
        assert mem_conn.query_log == []

    async def test_enable_disable_clear(self, mem_conn: Connection):
        mem_conn.enable_query_log()
        await mem_conn.execute("SELECT ?", [1])
        mem_conn.disable_query_log()
        await mem_conn.execute("SELECT 2")
        log = mem_conn.query_log
        assert [entry["sql"] for entry in log] == ["SELECT ?"]
        assert log[0]["bindings"] == [1]
        assert log[0]["time_ms"] >= 0
        mem_conn.clear_query_log()
        assert mem_conn.query_log == []

    async def test_log_queries_option(self, caplog):
        db = SqlDb("memory:", log_queries=True)
        with caplog.at_level(logging.DEBUG, logger="saga_db.sql.connection"):
            async with db.connection() as conn:
                await conn.execute("SELECT 1")
                assert len(conn.query_log) == 1
        assert any("SELECT 1" in record.getMessage() for record in caplog.records)

    async def test_slow_query_warning(self, caplog):
        db = SqlDb("memory:", slow_query_ms=0)
        with caplog.at_level(logging.WARNING, logger="saga_db.sql.connection"):
            async with db.connection() as conn:
                await conn.execute("SELECT 1")
        assert any("Slow query" in record.getMessage() for record in caplog.records)
