# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Ordered, batched schema migrations with a bookkeeping table.

A migration is a Migration subclass with an ordering ``version`` and async
``up``/``down`` methods receiving the SchemaManager. The runner records
each applied migration in the ``migrations`` table together with the batch
number, so a rollback reverses whole batches in reverse order.

Each migration runs inside ``TransactionManager.run`` together with its
bookkeeping row: a failing migration leaves no trace on engines with
transactional DDL.

Example:
    class CreateSagas(Migration):
        version = "2025_01_01_000001"
        description = "sagas table"

        async def up(self, schema):
            await schema.create_table("sagas", "id INTEGER PRIMARY KEY, name VARCHAR(200)")

        async def down(self, schema):
            await schema.drop_table("sagas")

    runner = MigrationRunner(conn)
    runner.discover("myapp.migrations")
    await runner.migrate()
"""

from __future__ import annotations

import importlib
import inspect
import logging
import pkgutil
import re
from datetime import datetime
from typing import TYPE_CHECKING, Any

from .column import Columns, Integer, String, Timestamp
from .exceptions import MigrationError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .connection import Connection
    from .schema import SchemaManager

logger = logging.getLogger(__name__)

MIGRATIONS_TABLE = "migrations"


class Migration:
    """Base class for schema migrations.

    Attributes:
        name: Unique name recorded in the bookkeeping table (default: class name).
        version: Ordering key; numeric runs compare numerically.
        description: Free text shown by status().
    """

    name: str = ""
    version: str = ""
    description: str = ""

    def __init__(self) -> None:
        if not self.name:
            self.name = type(self).__name__

    async def up(self, schema: SchemaManager) -> None:
        raise NotImplementedError

    async def down(self, schema: SchemaManager) -> None:
        """Reverse up(); the default does nothing."""

    def sort_key(self) -> tuple[Any, ...]:
        numbers = tuple(int(part) for part in re.findall(r"\d+", self.version))
        return (numbers, self.version, self.name)

    def __repr__(self) -> str:
        return f"<Migration {self.name} version={self.version!r}>"


class MigrationRunner:
    """Applies and reverses registered migrations on one Connection."""

    def __init__(
        self,
        connection: Connection,
        migrations: Iterable[Migration | type[Migration]] | None = None,
        table: str = MIGRATIONS_TABLE,
    ):
        self.connection = connection
        self.table = table
        self.migrations: dict[str, Migration] = {}
        self.register_all(migrations or [])

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, migration: Migration | type[Migration]) -> Migration:
        if isinstance(migration, type):
            migration = migration()
        self.migrations[migration.name] = migration
        return migration

    def register_all(self, migrations: Iterable[Migration | type[Migration]]) -> list[Migration]:
        return [self.register(migration) for migration in migrations]

    def discover(self, *packages: str) -> list[Migration]:
        """Import every module under the packages and register Migration subclasses.

        Args:
            *packages: Dotted package paths (e.g. "myapp.migrations").

        Returns:
            Registered migrations in version order.
        """
        found: list[type[Migration]] = []
        for package_path in packages:
            found.extend(self._find_migration_classes(package_path))
        registered = [self.register(cls) for cls in found]
        return sorted(registered, key=Migration.sort_key)

    def _find_migration_classes(self, package_path: str) -> list[type[Migration]]:
        try:
            package = importlib.import_module(package_path)
        except ImportError as exc:
            raise MigrationError(f"Cannot import migrations package {package_path!r}: {exc}") from exc

        modules = [package]
        for info in pkgutil.walk_packages(getattr(package, "__path__", []), prefix=f"{package_path}."):
            modules.append(importlib.import_module(info.name))

        classes: list[type[Migration]] = []
        for module in modules:
            for _, obj in inspect.getmembers(module, inspect.isclass):
                if (
                    issubclass(obj, Migration)
                    and obj is not Migration
                    and obj.__module__ == module.__name__
                    and not inspect.isabstract(obj)
                ):
                    classes.append(obj)
        return classes

    def ordered(self) -> list[Migration]:
        return sorted(self.migrations.values(), key=Migration.sort_key)

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    async def ensure_table(self) -> None:
        columns = Columns()
        columns.column("id", Integer, autoincrement=True)
        columns.column("migration", String, length=191, nullable=False, unique=True)
        columns.column("batch", Integer, nullable=False)
        columns.column("created_at", Timestamp)
        await self.connection.schema().create_table(self.table, columns)

    async def completed(self) -> list[str]:
        """Names of applied migrations in application order."""
        await self.ensure_table()
        return await self.connection.table(self.table).order_by("id").pluck("migration")

    async def pending(self) -> list[Migration]:
        done = set(await self.completed())
        return [migration for migration in self.ordered() if migration.name not in done]

    async def has_pending(self) -> bool:
        return bool(await self.pending())

    async def next_batch_number(self) -> int:
        await self.ensure_table()
        last = await self.connection.table(self.table).max("batch")
        return int(last or 0) + 1

    async def current_version(self) -> str | None:
        """Version of the most recent applied migration known to this runner."""
        done = set(await self.completed())
        applied = [migration for migration in self.ordered() if migration.name in done]
        return applied[-1].version if applied else None

    def latest_version(self) -> str | None:
        ordered = self.ordered()
        return ordered[-1].version if ordered else None

    async def status(self) -> list[dict[str, Any]]:
        await self.ensure_table()
        rows = await self.connection.table(self.table).select(["migration", "batch"]).get()
        batches = rows.pluck_keyed("batch", "migration")
        return [
            {
                "migration": migration.name,
                "version": migration.version,
                "description": migration.description,
                "ran": migration.name in batches,
                "batch": batches.get(migration.name),
            }
            for migration in self.ordered()
        ]

    # -------------------------------------------------------------------------
    # Apply / reverse
    # -------------------------------------------------------------------------

    async def migrate(self, pretend: bool = False) -> list[str]:
        """Run pending migrations as one batch; pretend only lists them."""
        pending = await self.pending()
        names = [migration.name for migration in pending]
        if not pending:
            logger.info("Nothing to migrate")
            return names
        if pretend:
            for name in names:
                logger.info("Would migrate %s", name)
            return names

        batch = await self.next_batch_number()
        for migration in pending:
            await self.run(migration, batch)
        return names

    async def run(self, migration: Migration, batch: int | None = None) -> None:
        """Apply one migration and record it.

        Raises:
            MigrationError: Already applied, or up() failed (cause chained).
        """
        if migration.name in await self.completed():
            raise MigrationError.already_ran(migration.name)
        if batch is None:
            batch = await self.next_batch_number()
        schema = self.connection.schema()

        async def apply(tx: Any) -> None:
            await migration.up(schema)
            await self.connection.table(self.table).insert(
                {"migration": migration.name, "batch": batch, "created_at": datetime.now()}
            )

        try:
            await self.connection.transaction().run(apply)
        except MigrationError:
            raise
        except Exception as exc:
            raise MigrationError.failed(migration.name, str(exc)) from exc
        logger.info("Migrated %s (batch %d)", migration.name, batch)

    async def rollback(self, steps: int = 1) -> list[str]:
        """Reverse the last ``steps`` batches, newest migration first."""
        await self.ensure_table()
        if steps < 1:
            return []
        batches = await (
            self.connection.table(self.table)
            .distinct()
            .select(["batch"])
            .order_by("batch", "DESC")
            .limit(steps)
            .pluck("batch")
        )
        if not batches:
            logger.info("Nothing to roll back")
            return []

        rows = await (
            self.connection.table(self.table)
            .where_in("batch", batches)
            .order_by("id", "DESC")
            .pluck("migration")
        )
        schema = self.connection.schema()
        reverted: list[str] = []
        for name in rows:
            migration = self.migrations.get(name)
            if migration is None:
                raise MigrationError.not_found(name)

            async def revert(tx: Any, migration: Migration = migration) -> None:
                await migration.down(schema)
                await self.connection.table(self.table).where("migration", "=", migration.name).delete()

            try:
                await self.connection.transaction().run(revert)
            except MigrationError:
                raise
            except Exception as exc:
                raise MigrationError.rollback_failed(name, str(exc)) from exc
            logger.info("Rolled back %s", name)
            reverted.append(name)
        return reverted

    async def reset(self) -> list[str]:
        """Reverse every applied batch."""
        batches = await self.next_batch_number() - 1
        return await self.rollback(batches) if batches else []

    async def refresh(self) -> list[str]:
        """reset() followed by migrate(); returns the names migrated."""
        await self.reset()
        return await self.migrate()
