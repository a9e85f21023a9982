"""SQLite-backed table shared by the in-memory and CSV executors.

Rows are loaded into a single-table SQLite database so the engine can run the
same parameterized statements it would send to the production warehouse.
Placeholders use the ``@name`` form; parameters are passed as a mapping keyed
by the name without the ``@`` prefix.
"""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

RowLoader = Callable[[], tuple[list[str], list[dict[str, Any]]]]


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


@dataclass(slots=True)
class SQLiteTable:
    """Owns one SQLite connection holding a single table of rows."""

    table_name: str
    loader: RowLoader
    database: str = ":memory:"
    _conn: sqlite3.Connection | None = field(init=False, default=None)
    _columns: list[str] = field(init=False, default_factory=list)
    _lock: threading.RLock = field(init=False, default_factory=threading.RLock)

    def __post_init__(self) -> None:
        self.reset()

    @property
    def columns(self) -> list[str]:
        return list(self._columns)

    def run(self, statement: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        bound = {key.lstrip("@:"): value for key, value in (params or {}).items()}
        with self._lock:
            if self._conn is None:
                raise sqlite3.OperationalError("connection lost")
            cursor = self._conn.execute(statement, bound)
            if cursor.description is None:
                return []
            names = [column[0] for column in cursor.description]
            return [dict(zip(names, row)) for row in cursor.fetchall()]

    def reset(self) -> None:
        """Drop the current connection and rebuild the table from the loader."""

        with self._lock:
            self.close()
            columns, rows = self.loader()
            conn = sqlite3.connect(self.database, check_same_thread=False)
            if columns:
                column_sql = ", ".join(_quote(column) for column in columns)
                conn.execute(f"CREATE TABLE IF NOT EXISTS {_quote(self.table_name)} ({column_sql})")
                placeholders = ", ".join("?" for _ in columns)
                conn.executemany(
                    f"INSERT INTO {_quote(self.table_name)} VALUES ({placeholders})",
                    [tuple(row.get(column) for column in columns) for row in rows],
                )
                conn.commit()
            self._conn = conn
            self._columns = list(columns)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


def collect_columns(rows: list[dict[str, Any]]) -> list[str]:
    """Return the union of row keys, preserving first-seen order."""

    ordered: list[str] = []
    seen: set[str] = set()
    for row in rows:
        for key in row:
            if key not in seen:
                seen.add(key)
                ordered.append(key)
    return ordered
