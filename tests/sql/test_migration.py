# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for MigrationRunner on SQLite: batches, rollback, failures, discovery."""

from __future__ import annotations

import textwrap

import pytest

from saga_db.sql import (
    Columns,
    Connection,
    Integer,
    Migration,
    MigrationError,
    MigrationRunner,
    String,
)


class CreateSagas(Migration):
    version = "2025_01_01_000001"
    description = "sagas table"

    async def up(self, schema):
        columns = Columns().column("id", Integer, autoincrement=True).column("name", String, length=200)
        await schema.create_table("sagas", columns)

    async def down(self, schema):
        await schema.drop_table("sagas")


class CreateEntities(Migration):
    version = "2025_01_02_000001"
    description = "entities table"

    async def up(self, schema):
        columns = (
            Columns()
            .column("id", Integer, autoincrement=True)
            .column("saga_id", Integer, nullable=False)
            .column("name", String, length=200)
        )
        await schema.create_table("entities", columns)

    async def down(self, schema):
        await schema.drop_table("entities")


class AddEntityImportance(Migration):
    version = "2025_01_10_000001"

    async def up(self, schema):
        await schema.add_column("entities", "importance", "INTEGER DEFAULT 0")

    async def down(self, schema):
        await schema.drop_column("entities", "importance")


class BrokenMigration(Migration):
    version = "2025_02_01_000001"

    async def up(self, schema):
        await schema.create_table("half_done", "id INTEGER PRIMARY KEY")
        raise RuntimeError("disk on fire")


class TestOrdering:
    def test_numeric_version_order(self, conn: Connection):
        class V2(Migration):
            version = "2"

        class V10(Migration):
            version = "10"

        runner = MigrationRunner(conn, [V10, V2, CreateSagas])
        assert [m.version for m in runner.ordered()] == ["2", "10", "2025_01_01_000001"]
        assert runner.latest_version() == "2025_01_01_000001"

    def test_name_defaults_to_class_name(self):
        assert CreateSagas().name == "CreateSagas"
        assert "CreateSagas" in repr(CreateSagas())


class TestMigrate:
    """Applying pending migrations as a batch."""

    async def test_migrate_runs_pending_in_order(self, conn: Connection):
        runner = MigrationRunner(conn, [CreateEntities, CreateSagas])
        assert await runner.migrate() == ["CreateSagas", "CreateEntities"]
        schema = conn.schema()
        assert await schema.table_exists("sagas")
        assert await schema.table_exists("entities")
        assert await runner.completed() == ["CreateSagas", "CreateEntities"]
        assert await runner.has_pending() is False

    async def test_migrate_is_idempotent(self, conn: Connection):
        runner = MigrationRunner(conn, [CreateSagas])
        await runner.migrate()
        assert await runner.migrate() == []

    async def test_pretend_changes_nothing(self, conn: Connection):
        runner = MigrationRunner(conn, [CreateSagas])
        assert await runner.migrate(pretend=True) == ["CreateSagas"]
        assert not await conn.schema().table_exists("sagas")
        assert await runner.completed() == []

    async def test_batches(self, conn: Connection):
        runner = MigrationRunner(conn, [CreateSagas, CreateEntities])
        await runner.migrate()
        runner.register(AddEntityImportance)
        await runner.migrate()
        status = {row["migration"]: row["batch"] for row in await runner.status()}
        assert status == {"CreateSagas": 1, "CreateEntities": 1, "AddEntityImportance": 2}
        assert await runner.next_batch_number() == 3

    async def test_status(self, conn: Connection):
        runner = MigrationRunner(conn, [CreateSagas, CreateEntities])
        await runner.run(runner.migrations["CreateSagas"])
        status = await runner.status()
        assert status == [
            {
                "migration": "CreateSagas",
                "version": "2025_01_01_000001",
                "description": "sagas table",
                "ran": True,
                "batch": 1,
            },
            {
                "migration": "CreateEntities",
                "version": "2025_01_02_000001",
                "description": "entities table",
                "ran": False,
                "batch": None,
            },
        ]
        assert await runner.current_version() == "2025_01_01_000001"

    async def test_already_ran(self, conn: Connection):
        runner = MigrationRunner(conn, [CreateSagas])
        await runner.migrate()
        with pytest.raises(MigrationError, match="already been executed"):
            await runner.run(runner.migrations["CreateSagas"])

    async def test_failure_leaves_no_trace(self, conn: Connection):
        runner = MigrationRunner(conn, [CreateSagas, BrokenMigration])
        with pytest.raises(MigrationError) as exc_info:
            await runner.migrate()
        err = exc_info.value
        assert err.migration == "BrokenMigration"
        assert "disk on fire" in str(err)
        assert isinstance(err.__cause__, RuntimeError)

        assert await runner.completed() == ["CreateSagas"]
        assert not await conn.schema().table_exists("half_done")
        assert not conn.in_transaction


class TestRollback:
    """Reversing batches newest first."""

    async def test_rollback_last_batch(self, conn: Connection):
        runner = MigrationRunner(conn, [CreateSagas, CreateEntities])
        await runner.migrate()
        runner.register(AddEntityImportance)
        await runner.migrate()

        assert await runner.rollback() == ["AddEntityImportance"]
        assert not await conn.schema().column_exists("entities", "importance")
        assert await runner.rollback() == ["CreateEntities", "CreateSagas"]
        assert not await conn.schema().table_exists("sagas")
        assert await runner.rollback() == []

    async def test_rollback_steps(self, conn: Connection):
        runner = MigrationRunner(conn, [CreateSagas])
        await runner.migrate()
        runner.register(CreateEntities)
        await runner.migrate()
        assert await runner.rollback(steps=2) == ["CreateEntities", "CreateSagas"]
        assert await runner.completed() == []

    async def test_rollback_unknown_migration(self, conn: Connection):
        await MigrationRunner(conn, [CreateSagas]).migrate()
        with pytest.raises(MigrationError, match="not found"):
            await MigrationRunner(conn).rollback()

    async def test_reset_and_refresh(self, conn: Connection):
        runner = MigrationRunner(conn, [CreateSagas])
        await runner.migrate()
        runner.register(CreateEntities)
        await runner.migrate()

        assert await runner.refresh() == ["CreateSagas", "CreateEntities"]
        status = {row["migration"]: row["batch"] for row in await runner.status()}
        assert status == {"CreateSagas": 1, "CreateEntities": 1}

        assert await runner.reset() == ["CreateEntities", "CreateSagas"]
        assert await runner.reset() == []


class TestDiscovery:
    async def test_discover_package(self, conn: Connection, tmp_path, monkeypatch):
        package = tmp_path / "saga_sample_migrations"
        package.mkdir()
        (package / "__init__.py").write_text("")
        (package / "m001_places.py").write_text(
            textwrap.dedent(
                """
                from saga_db.sql import Migration


                class CreatePlaces(Migration):
                    version = "1"

                    async def up(self, schema):
                        await schema.create_table("places", "id INTEGER PRIMARY KEY, name TEXT")

                    async def down(self, schema):
                        await schema.drop_table("places")
                """
            )
        )
        monkeypatch.syspath_prepend(str(tmp_path))

        runner = MigrationRunner(conn)
        found = runner.discover("saga_sample_migrations")
        assert [m.name for m in found] == ["CreatePlaces"]
        assert await runner.migrate() == ["CreatePlaces"]
        assert await conn.schema().table_exists("places")

    def test_discover_missing_package(self, conn: Connection):
        with pytest.raises(MigrationError, match="Cannot import"):
            MigrationRunner(conn).discover("no_such_migrations_package")


class TestSchemaManagerMigrations:
    async def test_migrate_and_rollback_through_schema(self, conn: Connection):
        schema = conn.schema()
        schema.register_migration(CreateSagas)
        schema.register_migration(CreateEntities())
        assert await schema.migrate() == ["CreateSagas", "CreateEntities"]
        assert await schema.rollback_migration() == ["CreateEntities", "CreateSagas"]
        assert not await schema.table_exists("entities")
