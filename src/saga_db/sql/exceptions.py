# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy for the database layer.

All errors raised by the layer derive from DatabaseError so that callers
can catch a single base class. Driver exceptions are never leaked: adapters
translate them into QueryError and chain the original with ``raise ... from``.

Hierarchy:
    DatabaseError
        QueryError: statement could not be built or the engine rejected it
        SchemaError: DDL failure (table/column/constraint + engine message)
        TransactionError: begin/commit/savepoint failures, no active transaction
        MigrationError: a migration script failed or is unknown
        RecordNotFoundError: a single row was required and none was found
"""

from __future__ import annotations

from typing import Any

# SQLSTATE classes and MySQL/MariaDB driver codes used for classification
_DEADLOCK_STATES = frozenset({"40001", "40P01"})
_LOCK_STATES = frozenset({"55P03", "HYT00"})
_DEADLOCK_CODES = frozenset({1213})
_LOCK_CODES = frozenset({1205})
_DUPLICATE_CODES = frozenset({1062})
_FOREIGN_KEY_CODES = frozenset({1451, 1452})

_TRANSIENT_MARKERS = (
    "deadlock",
    "lock wait timeout",
    "database is locked",
    "database table is locked",
    "could not obtain lock",
    "could not serialize access",
)


class DatabaseError(Exception):
    """Base class for all database layer errors."""


class QueryError(DatabaseError):
    """Raised when a statement is malformed or rejected by the engine.

    Attributes:
        sql: Statement text (empty when the error happened while building).
        bindings: Values bound to the statement placeholders.
        sqlstate: SQLSTATE reported by the driver, if any.
        code: Driver-specific numeric error code, if any.
    """

    def __init__(
        self,
        message: str,
        sql: str = "",
        bindings: list[Any] | tuple[Any, ...] | None = None,
        sqlstate: str | None = None,
        code: int | None = None,
    ):
        super().__init__(message)
        self.sql = sql
        self.bindings = list(bindings or [])
        self.sqlstate = sqlstate
        self.code = code

    @property
    def is_duplicate_key(self) -> bool:
        if self.code in _DUPLICATE_CODES:
            return True
        if self.sqlstate is not None and self.sqlstate.startswith("23"):
            return "foreign key" not in str(self).lower()
        return "unique constraint" in str(self).lower()

    @property
    def is_foreign_key_violation(self) -> bool:
        if self.code in _FOREIGN_KEY_CODES or self.sqlstate == "23503":
            return True
        return "foreign key constraint" in str(self).lower()

    @property
    def is_deadlock(self) -> bool:
        if self.code in _DEADLOCK_CODES or self.sqlstate in _DEADLOCK_STATES:
            return True
        return "deadlock" in str(self).lower()

    @property
    def is_lock_timeout(self) -> bool:
        if self.code in _LOCK_CODES or self.sqlstate in _LOCK_STATES:
            return True
        message = str(self).lower()
        return "lock wait timeout" in message or "database is locked" in message

    @property
    def is_retryable(self) -> bool:
        """True for transient conditions that a retry may resolve."""
        return self.is_deadlock or self.is_lock_timeout

    @classmethod
    def no_table(cls) -> QueryError:
        return cls("No table specified for query")

    @classmethod
    def empty_payload(cls, operation: str) -> QueryError:
        return cls(f"No data provided for {operation}")

    @classmethod
    def from_driver(
        cls,
        exc: BaseException,
        sql: str,
        bindings: list[Any] | tuple[Any, ...] | None = None,
    ) -> QueryError:
        """Translate a driver exception, keeping SQLSTATE and error code."""
        sqlstate = getattr(exc, "sqlstate", None)
        code = getattr(exc, "sqlite_errorcode", None)
        if code is None:
            args = getattr(exc, "args", ())
            if args and isinstance(args[0], int):
                code = args[0]
        message = str(exc) or type(exc).__name__
        return cls(message, sql=sql, bindings=bindings, sqlstate=sqlstate, code=code)


class SchemaError(DatabaseError):
    """Raised when a DDL operation fails.

    Attributes:
        table: Logical table name involved.
        column: Column name involved, if any.
        constraint: Index or constraint name involved, if any.
        engine_message: Message reported by the engine, if any.
    """

    def __init__(
        self,
        message: str,
        table: str | None = None,
        column: str | None = None,
        constraint: str | None = None,
        engine_message: str | None = None,
    ):
        super().__init__(message)
        self.table = table
        self.column = column
        self.constraint = constraint
        self.engine_message = engine_message

    @classmethod
    def table_failed(cls, table: str, reason: str) -> SchemaError:
        return cls(
            f'Failed to create or alter table "{table}": {reason}',
            table=table,
            engine_message=reason,
        )

    @classmethod
    def drop_failed(cls, table: str, reason: str) -> SchemaError:
        return cls(f'Failed to drop table "{table}": {reason}', table=table, engine_message=reason)

    @classmethod
    def column_failed(cls, table: str, column: str, operation: str, reason: str) -> SchemaError:
        return cls(
            f'Failed to {operation} column "{column}" on table "{table}": {reason}',
            table=table,
            column=column,
            engine_message=reason,
        )

    @classmethod
    def column_not_found(cls, table: str, column: str) -> SchemaError:
        return cls(f'Column "{column}" does not exist in table "{table}"', table=table, column=column)

    @classmethod
    def index_failed(cls, table: str, index: str, reason: str) -> SchemaError:
        return cls(
            f'Failed to change index "{index}" on table "{table}": {reason}',
            table=table,
            constraint=index,
            engine_message=reason,
        )

    @classmethod
    def foreign_key_failed(cls, table: str, constraint: str, reason: str) -> SchemaError:
        return cls(
            f'Failed to change foreign key "{constraint}" on table "{table}": {reason}',
            table=table,
            constraint=constraint,
            engine_message=reason,
        )

    @classmethod
    def invalid_identifier(cls, identifier: str) -> SchemaError:
        return cls(f"Invalid SQL identifier: {identifier!r}")


class TransactionError(DatabaseError):
    """Raised when a transaction operation fails.

    Attributes:
        level: Nesting level at the time of the failure.
        savepoint: Savepoint name involved, if any.
    """

    def __init__(self, message: str, level: int = 0, savepoint: str | None = None):
        super().__init__(message)
        self.level = level
        self.savepoint = savepoint

    @classmethod
    def no_active_transaction(cls, operation: str) -> TransactionError:
        return cls(f"Cannot {operation}: no active transaction")

    @classmethod
    def begin_failed(cls, reason: str, level: int = 0) -> TransactionError:
        return cls(f"Failed to begin transaction: {reason}", level=level)

    @classmethod
    def commit_failed(cls, reason: str, level: int = 0) -> TransactionError:
        return cls(f"Failed to commit transaction: {reason}", level=level)

    @classmethod
    def savepoint_failed(cls, name: str, operation: str, reason: str, level: int = 0) -> TransactionError:
        return cls(f'Savepoint "{name}" {operation} failed: {reason}', level=level, savepoint=name)


class MigrationError(DatabaseError):
    """Raised when a migration fails, is unknown, or was already applied."""

    def __init__(self, message: str, migration: str | None = None):
        super().__init__(message)
        self.migration = migration

    @classmethod
    def failed(cls, name: str, reason: str) -> MigrationError:
        return cls(f"Migration [{name}] failed: {reason}", migration=name)

    @classmethod
    def rollback_failed(cls, name: str, reason: str) -> MigrationError:
        return cls(f"Rollback of migration [{name}] failed: {reason}", migration=name)

    @classmethod
    def not_found(cls, name: str) -> MigrationError:
        return cls(f"Migration [{name}] not found", migration=name)

    @classmethod
    def already_ran(cls, name: str) -> MigrationError:
        return cls(f"Migration [{name}] has already been executed", migration=name)


class RecordNotFoundError(DatabaseError):
    """Raised when a single row was required and the result set is empty."""

    def __init__(self, table: str | None = None):
        self.table = table
        msg = f"No rows found in '{table}'" if table else "No rows in result set"
        super().__init__(msg)


def is_transient_error(exc: BaseException) -> bool:
    """Return True when exc signals a deadlock or lock-wait condition."""
    if isinstance(exc, QueryError) and exc.is_retryable:
        return True
    cause = exc.__cause__
    if isinstance(cause, QueryError) and cause.is_retryable:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


__all__ = [
    "DatabaseError",
    "QueryError",
    "SchemaError",
    "TransactionError",
    "MigrationError",
    "RecordNotFoundError",
    "is_transient_error",
]
