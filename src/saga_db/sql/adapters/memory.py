# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""In-memory spy adapter for tests.

MemoryAdapter executes nothing. It records every statement with its
bindings and answers from scripted responses, so components can be tested
for the exact SQL they emit without a database engine.

Example:
    db = SqlDb("memory:")
    db.adapter.on(r"^SELECT COUNT", rows=[{"cnt": 1}])
    db.adapter.on(r"^INSERT", error=QueryError("Deadlock found", code=1213), times=2)

    async with db.connection() as conn:
        await conn.transaction().run(work)

    assert db.adapter.sql_log[:2] == ["BEGIN", "ROLLBACK"]
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..exceptions import QueryError
from ..result import ResultSet
from .base import DbAdapter

if TYPE_CHECKING:
    from collections.abc import Sequence


@dataclass
class MemoryHandle:
    """Driver handle returned by MemoryAdapter.acquire()."""

    number: int
    closed: bool = False


@dataclass
class ScriptedResponse:
    pattern: re.Pattern[str]
    rows: list[dict[str, Any]] = field(default_factory=list)
    affected: int = 0
    last_insert_id: Any = 0
    error: BaseException | str | None = None
    times: int | None = None

    def matches(self, sql: str) -> bool:
        if self.times is not None and self.times <= 0:
            return False
        return self.pattern.search(sql) is not None


class MemoryAdapter(DbAdapter):
    """Spy adapter: records statements, replays scripted responses.

    Unscripted statements succeed with an empty ResultSet. Responses are
    matched in registration order; a response with ``times`` is used at most
    that many times.

    No rows are stored: a SELECT after an INSERT returns only what was
    scripted. Tests that need data round trips use ``sqlite::memory:``.

    Attributes:
        statements: Executed (sql, bindings) pairs in order.
        handles: Handles currently acquired and not yet released.
    """

    name = "memory"

    def __init__(self) -> None:
        super().__init__()
        self.statements: list[tuple[str, list[Any]]] = []
        self.responses: list[ScriptedResponse] = []
        self.handles: list[MemoryHandle] = []
        self._counter = 0

    def on(
        self,
        pattern: str,
        rows: list[dict[str, Any]] | None = None,
        affected: int = 0,
        last_insert_id: Any = 0,
        error: BaseException | str | None = None,
        times: int | None = None,
    ) -> MemoryAdapter:
        """Script the response for statements matching pattern (regex, case-insensitive)."""
        self.responses.append(
            ScriptedResponse(
                pattern=re.compile(pattern, re.IGNORECASE),
                rows=list(rows or []),
                affected=affected,
                last_insert_id=last_insert_id,
                error=error,
                times=times,
            )
        )
        return self

    @property
    def sql_log(self) -> list[str]:
        return [sql for sql, _ in self.statements]

    def clear(self) -> None:
        """Forget recorded statements and scripted responses."""
        self.statements.clear()
        self.responses.clear()

    async def acquire(self) -> MemoryHandle:
        self._counter += 1
        handle = MemoryHandle(self._counter)
        self.handles.append(handle)
        return handle

    async def release(self, conn: MemoryHandle) -> None:
        conn.closed = True
        if conn in self.handles:
            self.handles.remove(conn)

    async def shutdown(self) -> None:
        self.handles.clear()

    async def execute(
        self, conn: MemoryHandle, sql: str, bindings: Sequence[Any] | None = None
    ) -> ResultSet:
        params = list(bindings or ())
        self.statements.append((sql, params))
        for response in self.responses:
            if not response.matches(sql):
                continue
            if response.times is not None:
                response.times -= 1
            if isinstance(response.error, QueryError):
                raise response.error
            if isinstance(response.error, BaseException):
                raise QueryError.from_driver(response.error, sql, params) from response.error
            if response.error is not None:
                raise QueryError(response.error, sql=sql, bindings=params)
            return ResultSet(
                response.rows,
                affected_rows=response.affected,
                last_insert_id=response.last_insert_id,
            )
        return ResultSet.empty()
