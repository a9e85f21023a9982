"""In-memory SQL executor seeded from row dictionaries.

Use it inside tests or local prototypes where the warehouse is not reachable.
The rows live in a private SQLite database, so LIKE/IN/COUNT statements built
by the engine behave as they would against the real table.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from nlquery.integrations.sqlite_table import SQLiteTable, collect_columns


@dataclass(slots=True)
class InMemorySQLExecutor:
    """Mapping-based executor that satisfies the `SQLExecutor` protocol."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    table_name: str = "projects"
    columns: list[str] | None = None
    _table: SQLiteTable = field(init=False)

    def __post_init__(self) -> None:
        self._table = SQLiteTable(table_name=self.table_name, loader=self._load)

    def run(self, statement: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        """Execute *statement* against the seeded rows."""

        return self._table.run(statement, params)

    def reset(self) -> None:
        """Recreate the connection and reload the seeded rows."""

        self._table.reset()

    def _load(self) -> tuple[list[str], list[dict[str, Any]]]:
        columns = list(self.columns) if self.columns else collect_columns(self.rows)
        return columns, [dict(row) for row in self.rows]
