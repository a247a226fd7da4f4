# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Async query builder with fluent API and guaranteed parameter binding.

QueryBuilder accumulates a statement through chained clause
methods and emits ``(sql, bindings)`` on demand. Every value becomes one
``?`` placeholder with one binding, in emission order, including values
pulled in from grouped conditions and nested subqueries. Only None (emitted
as ``NULL``) and RawExpression values bypass binding.

Usage:
    entities = await (
        conn.query()
        .select(["e.id", "e.name", "a.value AS role"])
        .from_("entities", "e")
        .left_join("attributes", "e.id", "=", "a.entity_id", "a")
        .where("e.saga_id", "=", saga_id)
        .where_group(lambda q: q.where("e.type", "=", "character").or_where("e.importance", ">", 80))
        .order_by("e.name")
        .paginate(2, 20)
        .get()
    )

    await conn.table("entities").where("id", "=", 7).increment("importance", 5)

    await conn.table("attributes").upsert(
        {"entity_id": 7, "name": "role", "value": "mentor"},
        {"value": conn.query().inserted("value")},
        conflict=["entity_id", "name"],
    )
"""

from __future__ import annotations

import copy
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .exceptions import QueryError
from .result import ResultSet

if TYPE_CHECKING:
    from .connection import Connection

OPERATORS = frozenset({
    '=', '!=', '<>', '<', '>', '<=', '>=',
    'LIKE', 'NOT LIKE', 'ILIKE', 'NOT ILIKE',
})

SUBQUERY_OPERATORS = OPERATORS | {'IN', 'NOT IN'}

# OFFSET without LIMIT: largest limit accepted by every supported engine
_UNBOUNDED_LIMIT = 9223372036854775807

# Plain or dotted column names; any other HAVING operand is an expression
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*$")


@dataclass(frozen=True)
class RawExpression:
    """SQL text emitted verbatim: never quoted, never bound."""

    sql: str

    def __str__(self) -> str:
        return self.sql


def _normalize_operator(operator: str, allowed: frozenset[str] = OPERATORS) -> str:
    normalized = " ".join(str(operator).upper().split())
    if normalized not in allowed:
        raise QueryError(f"Invalid operator: {operator!r}")
    return normalized


class QueryBuilder:
    """Fluent SELECT/INSERT/UPDATE/DELETE/UPSERT builder bound to a Connection.

    Clause methods mutate the builder and return it. Terminal methods are
    coroutines that build the statement, execute it through the connection
    and return a ResultSet (or a scalar for value/aggregate terminals).
    """

    def __init__(self, connection: Connection):
        self.connection = connection
        self.reset()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def reset(self) -> QueryBuilder:
        """Clear all clauses, payloads and bindings."""
        self._type = "select"
        self._columns: list[Any] = []
        self._distinct = False
        self._table: str | None = None
        self._alias: str | None = None
        self._joins: list[tuple[str, str, str | None, Any, str, Any]] = []
        self._wheres: list[dict[str, Any]] = []
        self._groups: list[Any] = []
        self._havings: list[dict[str, Any]] = []
        self._orders: list[Any] = []
        self._limit: int | None = None
        self._offset: int | None = None
        self._payload: Any = None
        self._update_values: dict[str, Any] = {}
        self._conflict: list[str] | None = None
        self._returning: list[str] | None = None
        self._bindings: list[Any] = []
        return self

    def clone(self) -> QueryBuilder:
        """Independent copy; nested group and subquery builders are shared."""
        other = copy.copy(self)
        for attr in ("_columns", "_joins", "_wheres", "_groups", "_havings", "_orders", "_bindings"):
            setattr(other, attr, list(getattr(self, attr)))
        other._update_values = dict(self._update_values)
        return other

    def raw(self, expression: str) -> RawExpression:
        return RawExpression(expression)

    def inserted(self, column: str) -> RawExpression:
        """Reference the value proposed for insertion (upsert update clauses)."""
        quoted = self.connection.quote_identifier(column)
        return RawExpression(self.connection.adapter.inserted_value(quoted))

    # -------------------------------------------------------------------------
    # SELECT list
    # -------------------------------------------------------------------------

    def select(self, columns: str | Sequence[Any] = "*") -> QueryBuilder:
        if isinstance(columns, (str, RawExpression)):
            columns = [columns]
        self._columns = list(columns)
        return self

    def add_select(self, columns: str | Sequence[Any]) -> QueryBuilder:
        if isinstance(columns, (str, RawExpression)):
            columns = [columns]
        self._columns.extend(columns)
        return self

    def distinct(self, value: bool = True) -> QueryBuilder:
        self._distinct = value
        return self

    def select_raw(self, expression: str, alias: str | None = None) -> QueryBuilder:
        if alias:
            expression = f"{expression} AS {self.connection.quote_identifier(alias)}"
        self._columns.append(RawExpression(expression))
        return self

    def select_subquery(self, builder: QueryBuilder, alias: str) -> QueryBuilder:
        self._columns.append(("subquery", builder, alias))
        return self

    # -------------------------------------------------------------------------
    # FROM / JOIN
    # -------------------------------------------------------------------------

    def from_(self, table: str, alias: str | None = None) -> QueryBuilder:
        self._table = table
        self._alias = alias
        return self

    def table(self, name: str) -> QueryBuilder:
        return self.from_(name)

    def join(
        self,
        table: str,
        left: str,
        operator: str,
        right: str,
        alias: str | None = None,
        join_type: str = "INNER",
    ) -> QueryBuilder:
        operator = _normalize_operator(operator)
        self._joins.append((join_type, table, alias, left, operator, right))
        return self

    def left_join(
        self, table: str, left: str, operator: str, right: str, alias: str | None = None
    ) -> QueryBuilder:
        return self.join(table, left, operator, right, alias, "LEFT")

    def right_join(
        self, table: str, left: str, operator: str, right: str, alias: str | None = None
    ) -> QueryBuilder:
        return self.join(table, left, operator, right, alias, "RIGHT")

    # -------------------------------------------------------------------------
    # WHERE
    # -------------------------------------------------------------------------

    def where(
        self, column: Any, operator: str = "=", value: Any = None, boolean: str = "AND"
    ) -> QueryBuilder:
        """Compare column with a bound value. None is emitted as literal NULL."""
        operator = _normalize_operator(operator)
        self._wheres.append(
            {"type": "basic", "column": column, "operator": operator, "value": value, "boolean": boolean}
        )
        return self

    def or_where(self, column: Any, operator: str = "=", value: Any = None) -> QueryBuilder:
        return self.where(column, operator, value, "OR")

    def where_in(
        self, column: Any, values: Sequence[Any], boolean: str = "AND", not_: bool = False
    ) -> QueryBuilder:
        self._wheres.append(
            {"type": "in", "column": column, "values": list(values), "not": not_, "boolean": boolean}
        )
        return self

    def where_not_in(self, column: Any, values: Sequence[Any], boolean: str = "AND") -> QueryBuilder:
        return self.where_in(column, values, boolean, not_=True)

    def where_null(self, column: Any, boolean: str = "AND", not_: bool = False) -> QueryBuilder:
        self._wheres.append({"type": "null", "column": column, "not": not_, "boolean": boolean})
        return self

    def where_not_null(self, column: Any, boolean: str = "AND") -> QueryBuilder:
        return self.where_null(column, boolean, not_=True)

    def where_between(
        self, column: Any, low: Any, high: Any, boolean: str = "AND", not_: bool = False
    ) -> QueryBuilder:
        self._wheres.append(
            {"type": "between", "column": column, "low": low, "high": high, "not": not_, "boolean": boolean}
        )
        return self

    def where_like(self, column: Any, pattern: str, boolean: str = "AND", not_: bool = False) -> QueryBuilder:
        operator = "NOT LIKE" if not_ else "LIKE"
        return self.where(column, operator, pattern, boolean)

    def where_raw(self, sql: str, bindings: Sequence[Any] | None = None, boolean: str = "AND") -> QueryBuilder:
        """Unescaped SQL condition; its ``?`` placeholders are still bound."""
        self._wheres.append({"type": "raw", "sql": sql, "bindings": list(bindings or []), "boolean": boolean})
        return self

    def where_group(self, callback: Callable[[QueryBuilder], Any], boolean: str = "AND") -> QueryBuilder:
        """Parenthesized group of conditions built by callback on a nested builder."""
        nested = QueryBuilder(self.connection)
        callback(nested)
        if nested._wheres:
            self._wheres.append({"type": "group", "query": nested, "boolean": boolean})
        return self

    def or_where_group(self, callback: Callable[[QueryBuilder], Any]) -> QueryBuilder:
        return self.where_group(callback, "OR")

    def where_subquery(
        self, column: Any, operator: str, builder: QueryBuilder, boolean: str = "AND"
    ) -> QueryBuilder:
        operator = _normalize_operator(operator, SUBQUERY_OPERATORS)
        self._wheres.append(
            {"type": "subquery", "column": column, "operator": operator, "query": builder, "boolean": boolean}
        )
        return self

    def where_exists(self, builder: QueryBuilder, boolean: str = "AND", not_: bool = False) -> QueryBuilder:
        self._wheres.append({"type": "exists", "query": builder, "not": not_, "boolean": boolean})
        return self

    def where_not_exists(self, builder: QueryBuilder, boolean: str = "AND") -> QueryBuilder:
        return self.where_exists(builder, boolean, not_=True)

    # -------------------------------------------------------------------------
    # GROUP BY / HAVING / ORDER BY / LIMIT
    # -------------------------------------------------------------------------

    def group_by(self, *columns: Any) -> QueryBuilder:
        for column in columns:
            if isinstance(column, (list, tuple)):
                self._groups.extend(column)
            else:
                self._groups.append(column)
        return self

    def having(self, column: Any, operator: str, value: Any, boolean: str = "AND") -> QueryBuilder:
        """HAVING condition; an aggregate such as ``COUNT(*)`` is emitted as written."""
        operator = _normalize_operator(operator)
        if isinstance(column, str) and not _IDENTIFIER_RE.match(column.strip()):
            column = RawExpression(column.strip())
        self._havings.append(
            {"type": "basic", "column": column, "operator": operator, "value": value, "boolean": boolean}
        )
        return self

    def having_raw(self, sql: str, bindings: Sequence[Any] | None = None, boolean: str = "AND") -> QueryBuilder:
        self._havings.append({"type": "raw", "sql": sql, "bindings": list(bindings or []), "boolean": boolean})
        return self

    def order_by(self, column: Any, direction: str = "ASC") -> QueryBuilder:
        direction = str(direction).upper()
        if direction not in ("ASC", "DESC"):
            raise QueryError(f"Invalid order direction: {direction!r}")
        self._orders.append((column, direction))
        return self

    def order_by_raw(self, sql: str) -> QueryBuilder:
        self._orders.append(RawExpression(sql))
        return self

    def limit(self, count: int | None) -> QueryBuilder:
        self._limit = None if count is None else max(0, int(count))
        return self

    def offset(self, count: int | None) -> QueryBuilder:
        self._offset = None if count is None else max(0, int(count))
        return self

    def paginate(self, page: int, per_page: int = 20) -> QueryBuilder:
        """LIMIT per_page OFFSET (page - 1) * per_page, page and per_page floored at 1."""
        page = max(1, int(page))
        per_page = max(1, int(per_page))
        self._limit = per_page
        self._offset = (page - 1) * per_page
        return self

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def to_sql(self) -> str:
        """Build the statement; bindings are collected afresh on every call."""
        bindings: list[Any] = []
        sql = getattr(self, f"_compile_{self._type}")(bindings)
        self._bindings = bindings
        return sql

    def get_bindings(self) -> list[Any]:
        self.to_sql()
        return list(self._bindings)

    # -------------------------------------------------------------------------
    # Compilation
    # -------------------------------------------------------------------------

    def _quote(self, identifier: Any) -> str:
        return self.connection.quote_identifier(identifier)

    def _value(self, value: Any, bindings: list[Any]) -> str:
        if value is None:
            return "NULL"
        if isinstance(value, RawExpression):
            return value.sql
        bindings.append(value)
        return "?"

    def _subquery(self, builder: QueryBuilder, bindings: list[Any]) -> str:
        sql = builder.to_sql()
        bindings.extend(builder._bindings)
        return f"({sql})"

    def _from_sql(self) -> str:
        if not self._table:
            raise QueryError.no_table()
        sql = self.connection.full_table_name(self._table)
        if self._alias:
            sql += f" AS {self._quote(self._alias)}"
        return sql

    def _compile_columns(self, bindings: list[Any]) -> str:
        if not self._columns:
            return "*"
        parts = []
        for column in self._columns:
            if isinstance(column, tuple):
                _, builder, alias = column
                parts.append(f"{self._subquery(builder, bindings)} AS {self._quote(alias)}")
            else:
                parts.append(self._quote(column))
        return ", ".join(parts)

    def _compile_conditions(self, conditions: list[dict[str, Any]], bindings: list[Any]) -> str:
        parts: list[str] = []
        for cond in conditions:
            kind = cond["type"]
            if kind == "basic":
                column = self._quote(cond["column"])
                sql = f"{column} {cond['operator']} {self._value(cond['value'], bindings)}"
            elif kind == "in":
                values = cond["values"]
                if not values:
                    # IN () is always false, NOT IN () is always true
                    sql = "1 = 1" if cond["not"] else "1 = 0"
                else:
                    placeholders = ", ".join(self._value(v, bindings) for v in values)
                    op = "NOT IN" if cond["not"] else "IN"
                    sql = f"{self._quote(cond['column'])} {op} ({placeholders})"
            elif kind == "null":
                op = "IS NOT NULL" if cond["not"] else "IS NULL"
                sql = f"{self._quote(cond['column'])} {op}"
            elif kind == "between":
                op = "NOT BETWEEN" if cond["not"] else "BETWEEN"
                low = self._value(cond["low"], bindings)
                high = self._value(cond["high"], bindings)
                sql = f"{self._quote(cond['column'])} {op} {low} AND {high}"
            elif kind == "raw":
                bindings.extend(cond["bindings"])
                sql = cond["sql"]
            elif kind == "group":
                nested = cond["query"]
                sql = f"({self._compile_conditions(nested._wheres, bindings)})"
            elif kind == "subquery":
                column = self._quote(cond["column"])
                sql = f"{column} {cond['operator']} {self._subquery(cond['query'], bindings)}"
            elif kind == "exists":
                op = "NOT EXISTS" if cond["not"] else "EXISTS"
                sql = f"{op} {self._subquery(cond['query'], bindings)}"
            else:
                raise QueryError(f"Unknown condition type: {kind}")
            if parts:
                parts.append(cond["boolean"].upper())
            parts.append(sql)
        return " ".join(parts)

    def _compile_where(self, bindings: list[Any]) -> str:
        if not self._wheres:
            return ""
        return " WHERE " + self._compile_conditions(self._wheres, bindings)

    def _compile_select(self, bindings: list[Any]) -> str:
        sql = "SELECT "
        if self._distinct:
            sql += "DISTINCT "
        sql += self._compile_columns(bindings)
        sql += " FROM " + self._from_sql()

        for join_type, table, alias, left, operator, right in self._joins:
            target = self.connection.full_table_name(table)
            if alias:
                target += f" AS {self._quote(alias)}"
            sql += f" {join_type} JOIN {target} ON {self._quote(left)} {operator} {self._quote(right)}"

        sql += self._compile_where(bindings)

        if self._groups:
            sql += " GROUP BY " + ", ".join(self._quote(col) for col in self._groups)
        if self._havings:
            sql += " HAVING " + self._compile_conditions(self._havings, bindings)
        if self._orders:
            orders = []
            for order in self._orders:
                if isinstance(order, RawExpression):
                    orders.append(order.sql)
                else:
                    column, direction = order
                    orders.append(f"{self._quote(column)} {direction}")
            sql += " ORDER BY " + ", ".join(orders)

        if self._limit is not None:
            sql += f" LIMIT {self._limit}"
        elif self._offset:
            sql += f" LIMIT {_UNBOUNDED_LIMIT}"
        if self._offset:
            sql += f" OFFSET {self._offset}"
        return sql

    def _insert_rows(self, rows: list[dict[str, Any]], bindings: list[Any]) -> str:
        columns = list(rows[0].keys())
        column_sql = ", ".join(self._quote(col) for col in columns)
        value_sets = []
        for row in rows:
            values = ", ".join(self._value(row.get(col), bindings) for col in columns)
            value_sets.append(f"({values})")
        return f"INSERT INTO {self._from_sql()} ({column_sql}) VALUES {', '.join(value_sets)}"

    def _returning_sql(self) -> str:
        if not self._returning or not self.connection.adapter.supports_returning:
            return ""
        return " RETURNING " + ", ".join(self._quote(col) for col in self._returning)

    def _compile_insert(self, bindings: list[Any]) -> str:
        return self._insert_rows([self._payload], bindings) + self._returning_sql()

    def _compile_insert_batch(self, bindings: list[Any]) -> str:
        return self._insert_rows(self._payload, bindings)

    def _compile_upsert(self, bindings: list[Any]) -> str:
        sql = self._insert_rows([self._payload], bindings)
        assignments = [
            f"{self._quote(col)} = {self._value(value, bindings)}"
            for col, value in self._update_values.items()
        ]
        conflict = [self._quote(col) for col in self._conflict] if self._conflict else None
        return sql + self.connection.adapter.upsert_clause(conflict, assignments)

    def _compile_update(self, bindings: list[Any]) -> str:
        table = self._from_sql()
        assignments = ", ".join(
            f"{self._quote(col)} = {self._value(value, bindings)}"
            for col, value in self._payload.items()
        )
        return f"UPDATE {table} SET {assignments}" + self._compile_where(bindings)

    def _compile_delete(self, bindings: list[Any]) -> str:
        return f"DELETE FROM {self._from_sql()}" + self._compile_where(bindings)

    def _compile_truncate(self, bindings: list[Any]) -> str:
        return self.connection.adapter.truncate_sql(self._from_sql())

    # -------------------------------------------------------------------------
    # Write terminals
    # -------------------------------------------------------------------------

    async def insert(self, values: dict[str, Any], returning: Sequence[str] | None = None) -> ResultSet:
        """INSERT one row. With returning, the first returned column is last_insert_id."""
        if not values:
            raise QueryError.empty_payload("insert")
        self._type = "insert"
        self._payload = dict(values)
        self._returning = list(returning) if returning else None
        result = await self.execute()
        if self._returning and result.is_not_empty:
            result.last_insert_id = next(iter(result.first().values()))
            self.connection.last_insert_id = result.last_insert_id
        return result

    async def insert_batch(self, rows: Sequence[dict[str, Any]]) -> ResultSet:
        """Multi-row INSERT; columns come from the first row. Empty input is a no-op."""
        if not rows:
            return ResultSet.empty()
        if not rows[0]:
            raise QueryError.empty_payload("insert_batch")
        self._type = "insert_batch"
        self._payload = [dict(row) for row in rows]
        return await self.execute()

    async def upsert(
        self,
        values: dict[str, Any],
        update_on_duplicate: dict[str, Any],
        conflict: Sequence[str] | None = None,
    ) -> ResultSet:
        """INSERT or, on a uniqueness conflict, UPDATE with update_on_duplicate."""
        if not values:
            raise QueryError.empty_payload("upsert")
        if not update_on_duplicate:
            raise QueryError.empty_payload("upsert update")
        self._type = "upsert"
        self._payload = dict(values)
        self._update_values = dict(update_on_duplicate)
        self._conflict = list(conflict) if conflict else None
        return await self.execute()

    async def update(self, values: dict[str, Any]) -> ResultSet:
        if not values:
            raise QueryError.empty_payload("update")
        self._type = "update"
        self._payload = dict(values)
        return await self.execute()

    async def increment(
        self, column: str, amount: int | float = 1, extra: dict[str, Any] | None = None
    ) -> ResultSet:
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise QueryError(f"Increment amount must be numeric, got {type(amount).__name__}")
        quoted = self._quote(column)
        sign = "-" if amount < 0 else "+"
        values = {column: RawExpression(f"{quoted} {sign} {abs(amount)!r}")}
        values.update(extra or {})
        return await self.update(values)

    async def decrement(
        self, column: str, amount: int | float = 1, extra: dict[str, Any] | None = None
    ) -> ResultSet:
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise QueryError(f"Decrement amount must be numeric, got {type(amount).__name__}")
        return await self.increment(column, -amount, extra)

    async def delete(self) -> ResultSet:
        self._type = "delete"
        return await self.execute()

    async def truncate(self) -> ResultSet:
        self._type = "truncate"
        return await self.execute()

    # -------------------------------------------------------------------------
    # Read terminals
    # -------------------------------------------------------------------------

    async def execute(self) -> ResultSet:
        """Execute the current statement."""
        sql = self.to_sql()
        return await self.connection.execute(sql, self._bindings)

    async def get(self) -> ResultSet:
        self._type = "select"
        return await self.execute()

    async def first(self) -> dict[str, Any] | None:
        result = await self.clone().limit(1).get()
        return result.first()

    async def value(self, column: str) -> Any:
        row = await self.clone().select([column]).first()
        if row is None:
            return None
        return next(iter(row.values()), None)

    async def pluck(self, column: str) -> list[Any]:
        result = await self.clone().select([column]).get()
        return result.fetch_column_all(0)

    async def _aggregate(self, function: str, column: str) -> Any:
        """Aggregate over the joined and filtered rows.

        Pagination, grouping and ordering are set aside for the call and
        restored afterwards, so ``count()`` on a page yields the full total.
        """
        saved = (
            self._type, self._columns, self._orders, self._distinct,
            self._groups, self._havings, self._limit, self._offset,
        )
        target = "*" if column == "*" else self._quote(column)
        if self._distinct and column != "*":
            target = f"DISTINCT {target}"
        self._columns = [RawExpression(f"{function}({target}) AS aggregate")]
        self._orders = []
        self._distinct = False
        self._groups = []
        self._havings = []
        self._limit = None
        self._offset = None
        try:
            result = await self.get()
        finally:
            (
                self._type, self._columns, self._orders, self._distinct,
                self._groups, self._havings, self._limit, self._offset,
            ) = saved
        return result.value("aggregate")

    async def count(self, column: str = "*") -> int:
        return int(await self._aggregate("COUNT", column) or 0)

    async def sum(self, column: str) -> Any:
        return await self._aggregate("SUM", column) or 0

    async def avg(self, column: str) -> float | None:
        value = await self._aggregate("AVG", column)
        return None if value is None else float(value)

    async def min(self, column: str) -> Any:
        return await self._aggregate("MIN", column)

    async def max(self, column: str) -> Any:
        return await self._aggregate("MAX", column)

    async def exists(self) -> bool:
        return await self.count() > 0

    def __repr__(self) -> str:
        return f"<QueryBuilder {self._type} table={self._table!r}>"


__all__ = ["QueryBuilder", "RawExpression", "OPERATORS"]
