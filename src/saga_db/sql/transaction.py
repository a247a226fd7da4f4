# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Transaction manager with savepoint-based nesting and retry on conflict.

Nesting model:
    level 0 → begin()    → BEGIN                       → level 1
    level N → begin()    → SAVEPOINT levelN+1_...       → level N+1
    level N → commit()   → RELEASE SAVEPOINT (N > 1)    → level N-1
    level 1 → commit()   → COMMIT, after-commit callbacks → level 0
    level N → rollback() → ROLLBACK TO SAVEPOINT (N > 1) → level N-1
    level 1 → rollback() → ROLLBACK, after-rollback callbacks → level 0
    level 0 → rollback() → nothing

Example:
    tx = conn.transaction()

    async def create_entity(tx):
        result = await conn.table("entities").insert({"saga_id": 1, "name": "Aragorn"})
        await conn.table("attributes").insert({"entity_id": result.last_insert_id, "name": "race"})
        return result.last_insert_id

    entity_id = await tx.run_with_retry(create_entity, max_attempts=3)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import secrets
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from .exceptions import QueryError, TransactionError, is_transient_error

if TYPE_CHECKING:
    from .connection import Connection

logger = logging.getLogger(__name__)

Callback = Callable[[], Any] | Callable[[], Awaitable[Any]]


class IsolationLevel(str, Enum):
    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


def sanitize_savepoint_name(name: str) -> str:
    """Reduce name to [A-Za-z0-9_] so it can be interpolated into SQL."""
    safe = re.sub(r"[^A-Za-z0-9_]", "", name)
    if not safe or safe[0].isdigit():
        safe = f"sp_{safe}"
    return safe


class TransactionManager:
    """Per-connection transaction state machine.

    Attributes:
        connection: Connection the statements are issued on.
    """

    def __init__(self, connection: Connection):
        self.connection = connection
        self._level = 0
        self._savepoints: list[str] = []
        self._counter = 0
        self._after_commit: list[Callback] = []
        self._after_rollback: list[Callback] = []
        self._isolation = IsolationLevel(connection.adapter.default_isolation)

    @property
    def level(self) -> int:
        return self._level

    @property
    def is_active(self) -> bool:
        return self._level > 0

    @property
    def isolation_level(self) -> IsolationLevel:
        return self._isolation

    @property
    def savepoints(self) -> list[str]:
        return list(self._savepoints)

    def _next_savepoint_name(self) -> str:
        self._counter += 1
        return sanitize_savepoint_name(
            f"level{self._level + 1}_{self._counter}_{secrets.token_hex(4)}"
        )

    async def _issue(self, sql: str) -> None:
        await self.connection.execute(sql)

    # -------------------------------------------------------------------------
    # begin / commit / rollback
    # -------------------------------------------------------------------------

    async def begin(self) -> None:
        """Start a transaction, or a savepoint when one is already active."""
        adapter = self.connection.adapter
        if self._level == 0:
            try:
                await self._issue(adapter.begin_sql)
            except QueryError as exc:
                raise TransactionError.begin_failed(str(exc)) from exc
            self._level = 1
            logger.debug("Transaction started")
            return

        name = self._next_savepoint_name()
        try:
            await self._issue(adapter.savepoint_sql(name))
        except QueryError as exc:
            raise TransactionError.savepoint_failed(name, "create", str(exc), self._level) from exc
        self._savepoints.append(name)
        self._level += 1
        logger.debug("Savepoint %s created (level %d)", name, self._level)

    async def commit(self) -> None:
        """Commit the innermost level.

        Raises:
            TransactionError: No active transaction, or the engine refused.
        """
        if self._level == 0:
            raise TransactionError.no_active_transaction("commit")
        adapter = self.connection.adapter

        if self._level > 1:
            name = self._savepoints[-1]
            try:
                await self._issue(adapter.release_savepoint_sql(name))
            except QueryError as exc:
                raise TransactionError.savepoint_failed(name, "release", str(exc), self._level) from exc
            self._savepoints.pop()
            self._level -= 1
            logger.debug("Savepoint %s released (level %d)", name, self._level)
            return

        try:
            await self._issue(adapter.commit_sql)
        except QueryError as exc:
            raise TransactionError.commit_failed(str(exc), self._level) from exc
        self._level = 0
        self._savepoints.clear()
        callbacks = self._after_commit
        self._after_commit = []
        self._after_rollback = []
        logger.debug("Transaction committed")
        await self._fire(callbacks, "after-commit")

    async def rollback(self) -> None:
        """Roll back the innermost level. Never raises; no-op without a transaction."""
        if self._level == 0:
            return
        adapter = self.connection.adapter

        if self._level > 1:
            name = self._savepoints.pop()
            self._level -= 1
            try:
                await self._issue(adapter.rollback_to_sql(name))
            except Exception:
                logger.exception("Rollback to savepoint %s failed", name)
            logger.debug("Rolled back to savepoint %s (level %d)", name, self._level)
            return

        self._level = 0
        self._savepoints.clear()
        try:
            await self._issue(adapter.rollback_sql)
        except Exception:
            logger.exception("ROLLBACK failed")
        callbacks = self._after_rollback
        self._after_commit = []
        self._after_rollback = []
        logger.debug("Transaction rolled back")
        await self._fire(callbacks, "after-rollback")

    async def _fire(self, callbacks: list[Callback], kind: str) -> None:
        for callback in callbacks:
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("%s callback %r failed", kind, callback)

    # -------------------------------------------------------------------------
    # Unit of work
    # -------------------------------------------------------------------------

    async def run(self, callback: Callable[[TransactionManager], Any]) -> Any:
        """Run callback(self) inside begin/commit; roll back and re-raise on error."""
        entry_level = self._level
        await self.begin()
        try:
            result = callback(self)
            if inspect.isawaitable(result):
                result = await result
            await self.commit()
        except Exception:
            if entry_level == 0:
                logger.error("Transaction failed, rolling back", exc_info=True)
            if self._level > entry_level:
                await self.rollback()
            raise
        return result

    async def run_with_retry(
        self,
        callback: Callable[[TransactionManager], Any],
        max_attempts: int = 3,
        retry_delay: float = 0.1,
    ) -> Any:
        """run() retried on deadlocks and lock-wait timeouts.

        Non-transient errors are raised on the first attempt; transient ones
        after max_attempts.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.run(callback)
            except Exception as exc:
                if attempt >= max_attempts or not is_transient_error(exc):
                    raise
                logger.warning(
                    "Transient error on attempt %d/%d, retrying in %.2fs: %s",
                    attempt,
                    max_attempts,
                    retry_delay,
                    exc,
                )
            await asyncio.sleep(retry_delay)

    # -------------------------------------------------------------------------
    # Explicit savepoints
    # -------------------------------------------------------------------------

    async def savepoint(self, name: str) -> str:
        """Create a named savepoint; returns the sanitized name."""
        if self._level == 0:
            raise TransactionError.no_active_transaction("create savepoint")
        safe = sanitize_savepoint_name(name)
        try:
            await self._issue(self.connection.adapter.savepoint_sql(safe))
        except QueryError as exc:
            raise TransactionError.savepoint_failed(safe, "create", str(exc), self._level) from exc
        return safe

    async def rollback_to(self, name: str) -> None:
        if self._level == 0:
            raise TransactionError.no_active_transaction("rollback to savepoint")
        safe = sanitize_savepoint_name(name)
        try:
            await self._issue(self.connection.adapter.rollback_to_sql(safe))
        except QueryError as exc:
            raise TransactionError.savepoint_failed(safe, "rollback", str(exc), self._level) from exc

    async def release_savepoint(self, name: str) -> None:
        if self._level == 0:
            raise TransactionError.no_active_transaction("release savepoint")
        safe = sanitize_savepoint_name(name)
        try:
            await self._issue(self.connection.adapter.release_savepoint_sql(safe))
        except QueryError as exc:
            raise TransactionError.savepoint_failed(safe, "release", str(exc), self._level) from exc

    # -------------------------------------------------------------------------
    # Isolation and callbacks
    # -------------------------------------------------------------------------

    async def set_isolation_level(self, level: IsolationLevel | str) -> None:
        """Set the session isolation level. Rejected inside a transaction."""
        if self._level > 0:
            raise TransactionError(
                "Cannot change isolation level during an active transaction", level=self._level
            )
        try:
            isolation = IsolationLevel(level)
        except ValueError:
            raise TransactionError(f"Invalid isolation level: {level!r}") from None
        sql = self.connection.adapter.isolation_sql(isolation.value)
        if sql:
            await self._issue(sql)
        self._isolation = isolation

    def after_commit(self, callback: Callback) -> None:
        """Queue a one-shot callback for the next real COMMIT."""
        self._after_commit.append(callback)

    def after_rollback(self, callback: Callback) -> None:
        """Queue a one-shot callback for the next real ROLLBACK."""
        self._after_rollback.append(callback)

    def __repr__(self) -> str:
        return f"<TransactionManager level={self._level}>"
