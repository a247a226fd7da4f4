# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""CLI entry point for saga-db (saga-db command).

Operator commands to inspect the schema and drive migrations. The
database comes from SAGA_DB_* environment variables unless overridden
with --db/--prefix/--package.

Commands:
    tables: List managed tables
    columns: Show the columns of a table
    indexes: Show the indexes of a table
    status: Show migration status
    migrate: Run pending migrations
    rollback: Reverse the last migration batch(es)
    schema-version: Show or set the schema version
    version: Show version info
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Awaitable, Callable
from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import DbConfig, config_from_env
from .sql import Connection, DatabaseError, MigrationRunner, SqlDb

console = Console()


def run_with_connection(config: DbConfig, work: Callable[[Connection], Awaitable[Any]]) -> Any:
    """Open the configured database, run work(conn), close the pool."""

    async def runner() -> Any:
        db = SqlDb.from_config(config)
        try:
            async with db.connection() as conn:
                return await work(conn)
        finally:
            await db.shutdown()

    try:
        return asyncio.run(runner())
    except DatabaseError as exc:
        console.print(f"[red]error:[/red] {escape(str(exc))}")
        raise SystemExit(1) from exc


def make_runner(conn: Connection, config: DbConfig) -> MigrationRunner:
    runner = MigrationRunner(conn)
    if config.migrations_package:
        runner.discover(config.migrations_package)
    return runner


# ============================================================================
# CLI Commands
# ============================================================================


@click.group()
@click.version_option(package_name="saga-db")
@click.option("--db", "db_url", default=None, help="Database path or DSN (overrides SAGA_DB_URL).")
@click.option("--prefix", default=None, help="Table prefix (overrides SAGA_DB_PREFIX).")
@click.option("--package", default=None, help="Migrations package (overrides SAGA_DB_MIGRATIONS).")
@click.pass_context
def main(ctx: click.Context, db_url: str | None, prefix: str | None, package: str | None) -> None:
    """saga-db - Schema and migration tools for the saga database."""
    config = config_from_env()
    overrides: dict[str, Any] = {}
    if db_url is not None:
        overrides["url"] = db_url
    if prefix is not None:
        overrides["table_prefix"] = prefix
    if package is not None:
        overrides["migrations_package"] = package
    ctx.obj = dataclasses.replace(config, **overrides)


@main.command("tables")
@click.pass_obj
def tables_cmd(config: DbConfig) -> None:
    """List managed tables."""
    tables = run_with_connection(config, lambda conn: conn.schema().get_tables())
    if not tables:
        console.print("[dim]No tables found.[/dim]")
        return
    for name in tables:
        console.print(name)


@main.command("columns")
@click.argument("table_name")
@click.pass_obj
def columns_cmd(config: DbConfig, table_name: str) -> None:
    """Show the columns of TABLE_NAME."""
    columns = run_with_connection(config, lambda conn: conn.schema().get_columns(table_name))
    if not columns:
        console.print(f"[dim]Table '{table_name}' not found or has no columns.[/dim]")
        return

    table = Table(title=f"Columns of {table_name}")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Null")
    table.add_column("Default")
    table.add_column("Key")
    for col in columns:
        table.add_row(
            col.name,
            col.type,
            "yes" if col.nullable else "no",
            "" if col.default is None else str(col.default),
            col.key,
        )
    console.print(table)


@main.command("indexes")
@click.argument("table_name")
@click.pass_obj
def indexes_cmd(config: DbConfig, table_name: str) -> None:
    """Show the indexes of TABLE_NAME."""
    indexes = run_with_connection(config, lambda conn: conn.schema().get_indexes(table_name))
    if not indexes:
        console.print(f"[dim]No indexes on '{table_name}'.[/dim]")
        return

    table = Table(title=f"Indexes of {table_name}")
    table.add_column("Name", style="cyan")
    table.add_column("Columns")
    table.add_column("Unique")
    table.add_column("Type")
    for index in indexes:
        table.add_row(index.name, ", ".join(index.columns), "yes" if index.unique else "no", index.type)
    console.print(table)


@main.command("status")
@click.pass_obj
def status_cmd(config: DbConfig) -> None:
    """Show migration status."""
    rows = run_with_connection(config, lambda conn: make_runner(conn, config).status())
    if not rows:
        console.print("[dim]No migrations registered.[/dim]")
        return

    table = Table(title="Migrations")
    table.add_column("Migration", style="cyan")
    table.add_column("Version")
    table.add_column("Status")
    table.add_column("Batch", justify="right")
    for row in rows:
        status = "[green]ran[/green]" if row["ran"] else "[yellow]pending[/yellow]"
        batch = "" if row["batch"] is None else str(row["batch"])
        table.add_row(row["migration"], row["version"] or "", status, batch)
    console.print(table)


@main.command("migrate")
@click.option("--pretend", is_flag=True, help="List pending migrations without running them.")
@click.pass_obj
def migrate_cmd(config: DbConfig, pretend: bool) -> None:
    """Run pending migrations."""
    names = run_with_connection(
        config, lambda conn: make_runner(conn, config).migrate(pretend=pretend)
    )
    if not names:
        console.print("[dim]Nothing to migrate.[/dim]")
        return
    verb = "Would migrate" if pretend else "Migrated"
    for name in names:
        console.print(f"{verb} [cyan]{name}[/cyan]")


@main.command("rollback")
@click.option("--steps", default=1, show_default=True, help="Number of batches to reverse.")
@click.pass_obj
def rollback_cmd(config: DbConfig, steps: int) -> None:
    """Reverse the most recent migration batch(es)."""
    names = run_with_connection(config, lambda conn: make_runner(conn, config).rollback(steps))
    if not names:
        console.print("[dim]Nothing to roll back.[/dim]")
        return
    for name in names:
        console.print(f"Rolled back [cyan]{name}[/cyan]")


@main.command("schema-version")
@click.argument("version", required=False)
@click.pass_obj
def schema_version_cmd(config: DbConfig, version: str | None) -> None:
    """Show the schema version, or set it to VERSION."""
    if version is not None:
        run_with_connection(config, lambda conn: conn.schema().set_schema_version(version))
        console.print(f"Schema version set to [green]{version}[/green]")
        return
    current = run_with_connection(config, lambda conn: conn.schema().get_schema_version())
    if current is None:
        console.print("[dim]No schema version recorded.[/dim]")
    else:
        console.print(current)


@main.command("version")
def version_cmd() -> None:
    """Show version information."""
    from saga_db import __version__

    console.print(f"saga-db {__version__}")


if __name__ == "__main__":
    main()
