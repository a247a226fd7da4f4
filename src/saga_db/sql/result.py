# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Backend-agnostic result set: row snapshot plus write outcome metadata.

Adapters hand raw driver rows to ResultSet, which normalizes them once at
construction into dicts keyed by column name (in the column order returned
by the engine). Every execution produces a ResultSet, including writes and
failures, so callers never receive None.

Example:
    result = await conn.query().from_("entities").where("type", "=", "character").execute()
    for row in result:
        print(row["name"])

    names = result.pluck("name")
    by_type = result.group_by("type")
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator, Mapping, Sequence
from typing import Any

from .exceptions import RecordNotFoundError

Row = dict[str, Any]


def _normalize_row(raw: Any, columns: Sequence[str] | None = None) -> Row:
    """Convert a driver row (mapping, record, namedtuple, tuple) into a dict."""
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, Mapping):
        return {key: raw[key] for key in raw}
    if hasattr(raw, "keys") and callable(raw.keys):
        # sqlite3.Row and similar record types
        return {key: raw[key] for key in raw.keys()}
    if hasattr(raw, "_asdict"):
        return dict(raw._asdict())
    if isinstance(raw, (tuple, list)):
        if columns is None:
            raise TypeError("Positional rows require column names")
        return dict(zip(columns, raw, strict=True))
    if hasattr(raw, "__dict__"):
        return {key: value for key, value in vars(raw).items() if not key.startswith("_")}
    raise TypeError(f"Unsupported row type: {type(raw).__name__}")


class ResultSet:
    """Immutable snapshot of rows with a resettable read cursor.

    Attributes:
        affected_rows: Rows changed by a write statement.
        last_insert_id: Identifier generated by the last INSERT (0 if none).
        error: Error string recorded for a failed execution, None on success.
    """

    def __init__(
        self,
        rows: Sequence[Any] | None = None,
        affected_rows: int = 0,
        last_insert_id: Any = 0,
        error: str | None = None,
        columns: Sequence[str] | None = None,
    ):
        normalized = [_normalize_row(row, columns) for row in rows or ()]
        self._rows: tuple[Row, ...] = tuple(normalized)
        self._position = 0
        self.affected_rows = max(0, affected_rows or 0)
        self.last_insert_id = last_insert_id or 0
        self.error = error
        if self._rows:
            self._columns: tuple[str, ...] = tuple(self._rows[0].keys())
        else:
            self._columns = tuple(columns or ())

    # -------------------------------------------------------------------------
    # Factories
    # -------------------------------------------------------------------------

    @classmethod
    def empty(cls) -> ResultSet:
        return cls()

    @classmethod
    def from_rows(cls, rows: Sequence[Any]) -> ResultSet:
        return cls(rows)

    @classmethod
    def from_write(cls, affected_rows: int, last_insert_id: Any = 0) -> ResultSet:
        return cls(affected_rows=affected_rows, last_insert_id=last_insert_id)

    @classmethod
    def failed(cls, error: str) -> ResultSet:
        return cls(error=error)

    @classmethod
    def from_cursor(
        cls,
        description: Sequence[Sequence[Any]] | None,
        rows: Sequence[Sequence[Any]] | None,
        affected_rows: int = 0,
        last_insert_id: Any = 0,
    ) -> ResultSet:
        """Build from a DB-API cursor description and positional rows."""
        columns = [col[0] for col in description] if description else None
        return cls(rows or (), affected_rows, last_insert_id, columns=columns)

    # -------------------------------------------------------------------------
    # Sequential access
    # -------------------------------------------------------------------------

    def fetch(self) -> Row | None:
        """Return the row at the cursor and advance, or None at the end."""
        if self._position >= len(self._rows):
            return None
        row = self._rows[self._position]
        self._position += 1
        return row

    def fetch_all(self) -> list[Row]:
        """Return the rows remaining after the cursor and exhaust it."""
        remaining = list(self._rows[self._position:])
        self._position = len(self._rows)
        return remaining

    def fetch_column(self, index: int = 0) -> Any:
        """Return one positional column of the next row."""
        row = self.fetch()
        if row is None:
            return None
        values = list(row.values())
        return values[index] if index < len(values) else None

    def fetch_column_all(self, index: int = 0) -> list[Any]:
        result = []
        for row in self.fetch_all():
            values = list(row.values())
            result.append(values[index] if index < len(values) else None)
        return result

    def all(self) -> list[Row]:
        """Return every row regardless of the cursor position."""
        return list(self._rows)

    def reset(self) -> None:
        self._position = 0

    # -------------------------------------------------------------------------
    # Single value / column access
    # -------------------------------------------------------------------------

    def first(self) -> Row | None:
        return self._rows[0] if self._rows else None

    def first_or_fail(self) -> Row:
        if not self._rows:
            raise RecordNotFoundError()
        return self._rows[0]

    def last(self) -> Row | None:
        return self._rows[-1] if self._rows else None

    def row(self, index: int) -> Row | None:
        if 0 <= index < len(self._rows):
            return self._rows[index]
        return None

    def value(self, column: str, default: Any = None) -> Any:
        """Return a column of the first row, or default."""
        first = self.first()
        if first is None:
            return default
        value = first.get(column)
        return default if value is None else value

    def pluck(self, column: str) -> list[Any]:
        return [row.get(column) for row in self._rows]

    def pluck_keyed(self, value_column: str, key_column: str) -> dict[Any, Any]:
        """Map key_column -> value_column; rows with a NULL key are skipped."""
        result: dict[Any, Any] = {}
        for row in self._rows:
            key = row.get(key_column)
            if key is not None:
                result[key] = row.get(value_column)
        return result

    # -------------------------------------------------------------------------
    # Functional transforms (always over the full snapshot)
    # -------------------------------------------------------------------------

    def map(self, callback: Callable[[Row], Any]) -> list[Any]:
        return [callback(row) for row in self._rows]

    def filter(self, callback: Callable[[Row], bool]) -> list[Row]:
        return [row for row in self._rows if callback(row)]

    def reduce(self, callback: Callable[[Any, Row], Any], initial: Any = None) -> Any:
        accumulator = initial
        for row in self._rows:
            accumulator = callback(accumulator, row)
        return accumulator

    def group_by(self, column: str) -> dict[Any, list[Row]]:
        grouped: dict[Any, list[Row]] = {}
        for row in self._rows:
            key = row.get(column)
            grouped.setdefault("" if key is None else key, []).append(row)
        return grouped

    def each(self, callback: Callable[[Row], Any]) -> None:
        for row in self._rows:
            callback(row)

    def chunk(self, size: int) -> Iterator[list[Row]]:
        """Yield batches of at most size rows; call again to restart."""
        if size < 1:
            raise ValueError("Chunk size must be at least 1")
        for start in range(0, len(self._rows), size):
            yield list(self._rows[start:start + size])

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    @property
    def row_count(self) -> int:
        return len(self._rows)

    @property
    def column_count(self) -> int:
        return len(self.column_names)

    @property
    def column_names(self) -> list[str]:
        """Column names from the first row (empty when there are no rows)."""
        if not self._rows:
            return []
        return list(self._columns)

    @property
    def is_empty(self) -> bool:
        return not self._rows

    @property
    def is_not_empty(self) -> bool:
        return bool(self._rows)

    @property
    def is_success(self) -> bool:
        return self.error is None

    # -------------------------------------------------------------------------
    # Conversion
    # -------------------------------------------------------------------------

    def to_list(self) -> list[Row]:
        return [dict(row) for row in self._rows]

    def to_json(self, **kwargs: Any) -> str:
        kwargs.setdefault("default", str)
        return json.dumps(self.to_list(), **kwargs)

    def __iter__(self) -> Iterator[Row]:
        return iter(self._rows)

    def __len__(self) -> int:
        return len(self._rows)

    def __getitem__(self, index: int) -> Row:
        return self._rows[index]

    def __repr__(self) -> str:
        if self.error is not None:
            return f"<ResultSet error={self.error!r}>"
        return f"<ResultSet rows={len(self._rows)} affected={self.affected_rows}>"


__all__ = ["ResultSet", "Row"]
