# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration dataclass for saga-db.

DbConfig holds everything SqlDb needs to reach the database and how to
behave once connected. config_from_env() builds it from SAGA_DB_*
environment variables, which is what the CLI uses.

Usage:
    config = DbConfig(url="/data/saga.db", table_prefix="saga_")
    db = SqlDb.from_config(config)
"""

from __future__ import annotations

import os
from dataclasses import dataclass

_TRUE = ("1", "true", "yes")


@dataclass
class DbConfig:
    """Database layer configuration.

    Attributes:
        url: SQLite path or PostgreSQL DSN.
        table_prefix: Prefix applied to every managed table.
        pool_size: Maximum pooled connections (PostgreSQL).
        connect_timeout: Seconds to wait for a connection.
        slow_query_ms: Statements at least this slow are logged as warnings.
        log_queries: Keep a per-connection query log and log statements at DEBUG.
        migrations_package: Dotted package scanned for Migration classes.
        version_table: Unprefixed table holding the schema version.
    """

    url: str = "/data/saga.db"
    """SQLite path or PostgreSQL DSN."""

    table_prefix: str = ""
    """Prefix applied to every managed table."""

    pool_size: int = 10
    """Maximum pooled connections (PostgreSQL)."""

    connect_timeout: float = 10.0
    """Seconds to wait for a connection."""

    slow_query_ms: float | None = None
    """Slow-query warning threshold in milliseconds. None disables it."""

    log_queries: bool = False
    """Record executed statements."""

    migrations_package: str | None = None
    """Dotted package scanned for Migration classes."""

    version_table: str = "schema_options"
    """Unprefixed table holding the schema version."""


def config_from_env() -> DbConfig:
    """Build DbConfig from SAGA_DB_* environment variables.

    Environment variables:
        SAGA_DB_URL: Database path or DSN (default: /data/saga.db)
        SAGA_DB_PREFIX: Table prefix (default: "")
        SAGA_DB_POOL_SIZE: Pool size (default: 10)
        SAGA_DB_CONNECT_TIMEOUT: Connect timeout in seconds (default: 10)
        SAGA_DB_SLOW_QUERY_MS: Slow-query threshold (default: unset)
        SAGA_DB_LOG_QUERIES: Record statements (default: false)
        SAGA_DB_MIGRATIONS: Migrations package (default: unset)
        SAGA_DB_VERSION_TABLE: Version table (default: schema_options)

    Returns:
        DbConfig instance populated from environment.
    """
    slow = os.environ.get("SAGA_DB_SLOW_QUERY_MS")
    return DbConfig(
        url=os.environ.get("SAGA_DB_URL", "/data/saga.db"),
        table_prefix=os.environ.get("SAGA_DB_PREFIX", ""),
        pool_size=int(os.environ.get("SAGA_DB_POOL_SIZE", "10")),
        connect_timeout=float(os.environ.get("SAGA_DB_CONNECT_TIMEOUT", "10")),
        slow_query_ms=float(slow) if slow else None,
        log_queries=os.environ.get("SAGA_DB_LOG_QUERIES", "").lower() in _TRUE,
        migrations_package=os.environ.get("SAGA_DB_MIGRATIONS") or None,
        version_table=os.environ.get("SAGA_DB_VERSION_TABLE", "schema_options"),
    )


__all__ = ["DbConfig", "config_from_env"]
