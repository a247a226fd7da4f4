# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for SchemaManager: idempotent DDL, introspection and schema version."""

from __future__ import annotations

import logging

import pytest
import pytest_asyncio

from saga_db.sql import (
    Column,
    Columns,
    Connection,
    Integer,
    MemoryAdapter,
    QueryError,
    SchemaError,
    SqlDb,
    String,
    TableDefinition,
    Text,
)


def saga_columns() -> Columns:
    return (
        Columns()
        .column("id", Integer, autoincrement=True)
        .column("title", String, length=200, nullable=False)
    )


def entity_definition() -> TableDefinition:
    table = TableDefinition("entities")
    table.columns.column("id", Integer, autoincrement=True)
    table.columns.column("saga_id", Integer, nullable=False)
    table.columns.column("name", String, length=200, nullable=False)
    table.columns.column("importance", Integer, default=50)
    table.index("idx_entities_saga", ["saga_id"])
    table.foreign_key("fk_entity_saga", "saga_id", "sagas", "id")
    table.check("chk_importance", "importance BETWEEN 0 AND 100")
    return table


@pytest_asyncio.fixture
async def sagas(conn: Connection) -> Connection:
    await conn.schema().create_table("sagas", saga_columns())
    return conn


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------


class TestTables:
    """create/rename/drop table lifecycle."""

    async def test_create_table_idempotent(self, conn: Connection):
        schema = conn.schema()
        assert await schema.table_exists("sagas") is False
        assert await schema.create_table("sagas", saga_columns()) is True
        assert await schema.create_table("sagas", saga_columns()) is False
        assert await schema.table_exists("sagas") is True

    async def test_create_table_from_raw_definition(self, conn: Connection):
        assert await conn.schema().create_table("notes", '"id" INTEGER PRIMARY KEY, "body" TEXT') is True
        await conn.table("notes").insert({"id": 1, "body": "x"})
        assert await conn.table("notes").count() == 1

    async def test_create_table_with_definition(self, sagas: Connection):
        schema = sagas.schema()
        assert await schema.create_table("entities", entity_definition()) is True
        assert await schema.index_exists("entities", "idx_entities_saga") is True
        assert await schema.foreign_key_exists("entities", "fk_entity_saga") is True
        assert await schema.check_exists("entities", "chk_importance") is True
        assert await schema.check_exists("entities", "chk_other") is False

    async def test_declared_constraints_enforced(self, sagas: Connection):
        await sagas.schema().create_table("entities", entity_definition())
        saga = await sagas.table("sagas").insert({"title": "The Lord of the Rings"})
        await sagas.table("entities").insert({"saga_id": saga.last_insert_id, "name": "Frodo"})
        with pytest.raises(QueryError) as exc_info:
            await sagas.table("entities").insert({"saga_id": 99, "name": "Nobody"})
        assert exc_info.value.is_foreign_key_violation
        with pytest.raises(QueryError, match="CHECK"):
            await sagas.table("entities").insert(
                {"saga_id": saga.last_insert_id, "name": "X", "importance": 500}
            )

    async def test_create_table_failure_is_schema_error(self, conn: Connection):
        with pytest.raises(SchemaError) as exc_info:
            await conn.schema().create_table("broken", '"id" INTEGER PRIMARY KEY, PRIMARY KEY')
        assert exc_info.value.table == "broken"
        assert exc_info.value.engine_message

    async def test_create_table_without_columns(self, conn: Connection):
        with pytest.raises(SchemaError):
            await conn.schema().create_table("empty", "")

    async def test_invalid_identifier(self, conn: Connection):
        with pytest.raises(SchemaError, match="Invalid SQL identifier"):
            await conn.schema().create_table("bad-name", saga_columns())
        with pytest.raises(SchemaError):
            Column("drop table x")

    async def test_rename_table(self, sagas: Connection):
        schema = sagas.schema()
        assert await schema.rename_table("sagas", "series") is True
        assert await schema.rename_table("sagas", "series") is False
        assert await schema.table_exists("series") is True
        with pytest.raises(SchemaError):
            await schema.rename_table("missing", "other")

    async def test_drop_table(self, sagas: Connection):
        schema = sagas.schema()
        assert await schema.drop_table("sagas") is True
        assert await schema.table_exists("sagas") is False
        # DROP TABLE IF EXISTS
        assert await schema.drop_table("sagas") is True

    async def test_drop_tables_keeps_version_table(self, sagas: Connection):
        schema = sagas.schema()
        await schema.create_table("entities", entity_definition())
        await schema.set_schema_version("1.0.0")
        dropped = await schema.drop_tables()
        assert sorted(dropped) == ["entities", "sagas"]
        assert await schema.get_tables() == []
        assert await schema.get_schema_version() == "1.0.0"

    async def test_drop_tables_explicit_names(self, sagas: Connection):
        schema = sagas.schema()
        await schema.create_table("notes", '"id" INTEGER PRIMARY KEY')
        assert await schema.drop_tables(["notes", "schema_options"]) == ["notes"]
        assert await schema.get_tables() == ["sagas"]


class TestColumns:
    """Column add/modify/rename/drop."""

    async def test_add_column_idempotent(self, sagas: Connection):
        schema = sagas.schema()
        assert await schema.add_column("sagas", "universe", "VARCHAR(100)", after="title") is True
        assert await schema.add_column("sagas", "universe", "VARCHAR(100)") is False
        assert await schema.column_exists("sagas", "universe") is True

    async def test_add_column_descriptor(self, sagas: Connection):
        schema = sagas.schema()
        assert await schema.add_column("sagas", Column("rating", Integer, default=3)) is True
        await sagas.table("sagas").insert({"title": "Dune"})
        assert await sagas.table("sagas").value("rating") == 3

    async def test_add_column_requires_definition(self, sagas: Connection):
        with pytest.raises(SchemaError):
            await sagas.schema().add_column("sagas", "universe")

    async def test_drop_column(self, sagas: Connection):
        schema = sagas.schema()
        await schema.add_column("sagas", "universe", "TEXT")
        assert await schema.drop_column("sagas", "universe") is True
        assert await schema.drop_column("sagas", "universe") is False
        assert await schema.column_exists("sagas", "universe") is False

    async def test_rename_column(self, sagas: Connection):
        schema = sagas.schema()
        assert await schema.rename_column("sagas", "title", "name") is True
        assert await schema.rename_column("sagas", "title", "name") is False
        assert await schema.column_exists("sagas", "name") is True
        with pytest.raises(SchemaError):
            await schema.rename_column("sagas", "missing", "other")

    async def test_modify_missing_column(self, sagas: Connection):
        with pytest.raises(SchemaError, match="does not exist"):
            await sagas.schema().modify_column("sagas", "missing", "TEXT")

    async def test_modify_column_unsupported_on_sqlite(self, sagas: Connection):
        with pytest.raises(SchemaError, match="not supported") as exc_info:
            await sagas.schema().modify_column("sagas", "title", "TEXT")
        assert exc_info.value.column == "title"


class TestIndexesAndConstraints:
    """Index and constraint helpers."""

    async def test_add_and_drop_index(self, sagas: Connection):
        schema = sagas.schema()
        assert await schema.add_index("sagas", "uq_sagas_title", ["title"], "UNIQUE") is True
        assert await schema.add_index("sagas", "uq_sagas_title", ["title"], "UNIQUE") is False
        assert await schema.index_exists("sagas", "uq_sagas_title") is True
        assert await schema.drop_index("sagas", "uq_sagas_title") is True
        assert await schema.drop_index("sagas", "uq_sagas_title") is False

    async def test_invalid_index_type(self, sagas: Connection):
        with pytest.raises(SchemaError, match="Invalid index type"):
            await sagas.schema().add_index("sagas", "ix_title", ["title"], "HASHED")

    async def test_add_foreign_key_unsupported_on_sqlite(self, sagas: Connection):
        schema = sagas.schema()
        await schema.create_table("entities", '"id" INTEGER PRIMARY KEY, "saga_id" INTEGER')
        with pytest.raises(SchemaError) as exc_info:
            await schema.add_foreign_key("entities", "fk_entity_saga", "saga_id", "sagas", "id")
        assert exc_info.value.constraint == "fk_entity_saga"

    async def test_drop_foreign_key_absent_is_noop(self, sagas: Connection):
        assert await sagas.schema().drop_foreign_key("sagas", "fk_missing") is False

    async def test_check_constraint_soft_failure(self, sagas: Connection, caplog):
        with caplog.at_level(logging.WARNING, logger="saga_db.sql.schema"):
            added = await sagas.schema().add_check_constraint("sagas", "chk_title", "length(title) > 0")
        assert added is False
        assert any("chk_title" in record.getMessage() for record in caplog.records)

    async def test_invalid_referential_action(self):
        with pytest.raises(SchemaError):
            TableDefinition("entities").foreign_key("fk", "saga_id", "sagas", "id", on_delete="EXPLODE")


class TestIntrospection:
    """get_tables/get_columns/get_indexes."""

    async def test_get_columns(self, sagas: Connection):
        columns = {col.name: col for col in await sagas.schema().get_columns("sagas")}
        assert list(columns) == ["id", "title"]
        assert columns["id"].key == "PRI"
        assert columns["title"].nullable is False
        assert columns["title"].type == "VARCHAR(200)"

    async def test_get_columns_missing_table(self, conn: Connection):
        assert await conn.schema().get_columns("missing") == []

    async def test_get_indexes(self, sagas: Connection):
        schema = sagas.schema()
        await schema.add_index("sagas", "uq_sagas_title", ["title"], "UNIQUE")
        await schema.add_column("sagas", "universe", "TEXT")
        await schema.add_index("sagas", "ix_universe_title", ["universe", "title"])
        indexes = {index.name: index for index in await schema.get_indexes("sagas")}
        assert indexes["uq_sagas_title"].unique is True
        assert indexes["uq_sagas_title"].columns == ["title"]
        assert indexes["ix_universe_title"].unique is False
        assert indexes["ix_universe_title"].columns == ["universe", "title"]

    async def test_get_tables_with_prefix(self, tmp_path):
        db = SqlDb(str(tmp_path / "prefixed.db"), table_prefix="saga_")
        async with db.connection() as conn:
            schema = conn.schema()
            await schema.create_table("entities", saga_columns())
            await conn.execute('CREATE TABLE "other" ("id" INTEGER)')
            await schema.set_schema_version("2")
            assert await schema.get_tables() == ["entities"]
            assert await schema.table_exists("entities") is True
            assert await schema.table_exists("saga_entities") is False
        await db.shutdown()


class TestSchemaVersion:
    """Key/value version ledger."""

    async def test_version_absent(self, conn: Connection):
        assert await conn.schema().get_schema_version() is None

    async def test_set_and_overwrite(self, conn: Connection):
        schema = conn.schema()
        await schema.set_schema_version("1.0.0")
        await schema.set_schema_version("1.1.0")
        assert await schema.get_schema_version() == "1.1.0"
        rows = await conn.execute('SELECT COUNT(*) AS cnt FROM "schema_options"')
        assert rows.value("cnt") == 1

    async def test_version_not_listed(self, conn: Connection):
        await conn.schema().set_schema_version("1")
        assert "schema_options" not in await conn.schema().get_tables()


# ---------------------------------------------------------------------------
# MySQL dialect through the spy adapter
# ---------------------------------------------------------------------------


class TestMysqlDialectDdl:
    """DDL statements emitted with the base (MySQL) dialect."""

    async def test_create_table_statement(self, mem_conn: Connection, spy: MemoryAdapter):
        table = TableDefinition("entities")
        table.columns.column("id", Integer, autoincrement=True)
        table.columns.column("saga_id", Integer, nullable=False)
        table.columns.column("notes", Text)
        table.foreign_key("fk_entity_saga", "saga_id", "sagas", "id", on_delete="set null")
        table.check("chk_saga", "saga_id > 0")
        table.index("idx_saga", ["saga_id"])
        assert await mem_conn.schema().create_table("entities", table) is True
        create = next(sql for sql in spy.sql_log if sql.startswith("CREATE TABLE"))
        assert create == (
            "CREATE TABLE `entities` (`id` BIGINT UNSIGNED AUTO_INCREMENT PRIMARY KEY, "
            "`saga_id` INT NOT NULL, `notes` TEXT, "
            "CONSTRAINT `fk_entity_saga` FOREIGN KEY (`saga_id`) REFERENCES `sagas` (`id`) "
            "ON DELETE SET NULL ON UPDATE CASCADE, "
            "CONSTRAINT `chk_saga` CHECK (saga_id > 0)) "
            "ENGINE=InnoDB DEFAULT CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
        )
        assert spy.sql_log[-1] == "ALTER TABLE `entities` ADD INDEX `idx_saga` (`saga_id`)"

    async def test_composite_primary_key(self, mem_conn: Connection, spy: MemoryAdapter):
        table = TableDefinition("attributes", primary_key=["entity_id", "name"])
        table.columns.column("entity_id", Integer, nullable=False)
        table.columns.column("name", String, length=100, nullable=False)
        await mem_conn.schema().create_table("attributes", table, {"engine": "MyISAM"})
        create = next(sql for sql in spy.sql_log if sql.startswith("CREATE TABLE"))
        assert "PRIMARY KEY (`entity_id`, `name`)) ENGINE=MyISAM" in create

    async def test_existing_table_not_recreated(self, mem_conn: Connection, spy: MemoryAdapter):
        spy.on(r"information_schema\.TABLES", rows=[{"cnt": 1}])
        assert await mem_conn.schema().create_table("entities", saga_columns()) is False
        assert not any(sql.startswith("CREATE") for sql in spy.sql_log)

    async def test_add_column_after(self, mem_conn: Connection, spy: MemoryAdapter):
        await mem_conn.schema().add_column("sagas", "universe", "VARCHAR(100)", after="title")
        assert spy.sql_log[-1] == "ALTER TABLE `sagas` ADD COLUMN `universe` VARCHAR(100) AFTER `title`"

    async def test_modify_column(self, mem_conn: Connection, spy: MemoryAdapter):
        spy.on(r"information_schema\.COLUMNS", rows=[{"cnt": 1}])
        await mem_conn.schema().modify_column("sagas", "title", "VARCHAR(300) NOT NULL")
        assert spy.sql_log[-1] == "ALTER TABLE `sagas` MODIFY COLUMN `title` VARCHAR(300) NOT NULL"

    async def test_add_foreign_key(self, mem_conn: Connection, spy: MemoryAdapter):
        assert await mem_conn.schema().add_foreign_key(
            "entities", "fk_entity_saga", "saga_id", "sagas", "id", on_delete="RESTRICT"
        ) is True
        assert spy.sql_log[-1] == (
            "ALTER TABLE `entities` ADD CONSTRAINT `fk_entity_saga` FOREIGN KEY (`saga_id`) "
            "REFERENCES `sagas` (`id`) ON DELETE RESTRICT ON UPDATE CASCADE"
        )

    async def test_add_foreign_key_existing(self, mem_conn: Connection, spy: MemoryAdapter):
        spy.on(r"TABLE_CONSTRAINTS", rows=[{"cnt": 1}])
        assert await mem_conn.schema().add_foreign_key(
            "entities", "fk_entity_saga", "saga_id", "sagas", "id"
        ) is False
        assert not any(sql.startswith("ALTER") for sql in spy.sql_log)

    async def test_add_foreign_key_engine_failure(self, mem_conn: Connection, spy: MemoryAdapter):
        spy.on(r"^ALTER TABLE .* FOREIGN KEY", error="Cannot add foreign key constraint")
        with pytest.raises(SchemaError) as exc_info:
            await mem_conn.schema().add_foreign_key("entities", "fk_x", "saga_id", "sagas", "id")
        assert exc_info.value.engine_message == "Cannot add foreign key constraint"
        assert exc_info.value.table == "entities"

    async def test_check_constraint_engine_failure(self, mem_conn: Connection, spy: MemoryAdapter):
        spy.on(r"^ALTER TABLE .* CHECK", error="Check constraints are not supported")
        assert await mem_conn.schema().add_check_constraint("sagas", "chk_x", "x > 0") is False

    async def test_check_constraint_added(self, mem_conn: Connection, spy: MemoryAdapter):
        assert await mem_conn.schema().add_check_constraint("sagas", "chk_x", "x > 0") is True
        assert spy.sql_log[-1] == "ALTER TABLE `sagas` ADD CONSTRAINT `chk_x` CHECK (x > 0)"

    async def test_drop_table_toggles_foreign_key_checks(self, mem_conn: Connection, spy: MemoryAdapter):
        await mem_conn.schema().drop_table("sagas")
        assert spy.sql_log == [
            "SET FOREIGN_KEY_CHECKS = 0",
            "DROP TABLE IF EXISTS `sagas`",
            "SET FOREIGN_KEY_CHECKS = 1",
        ]

    async def test_drop_table_failure_restores_checks(self, mem_conn: Connection, spy: MemoryAdapter):
        spy.on(r"^DROP", error="table is locked")
        with pytest.raises(SchemaError):
            await mem_conn.schema().drop_table("sagas")
        assert spy.sql_log[-1] == "SET FOREIGN_KEY_CHECKS = 1"

    async def test_set_schema_version_upsert(self, mem_conn: Connection, spy: MemoryAdapter):
        await mem_conn.schema().set_schema_version("3.1")
        assert spy.statements[-1] == (
            "INSERT INTO `schema_options` (`option_name`, `option_value`) VALUES (?, ?) "
            "ON DUPLICATE KEY UPDATE `option_value` = VALUES(`option_value`)",
            ["schema_version", "3.1"],
        )

    async def test_rename_table_statement(self, mem_conn: Connection, spy: MemoryAdapter):
        spy.on(r"information_schema\.TABLES", rows=[{"cnt": 1}], times=1)
        assert await mem_conn.schema().rename_table("sagas", "series") is True
        assert spy.sql_log[-1] == "RENAME TABLE `sagas` TO `series`"
