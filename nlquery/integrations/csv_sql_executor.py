"""CSV-backed SQL executor.

The CSV export of the projects table is loaded into a private SQLite database
so the engine can run its parameterized statements unchanged:

    SELECT COUNT(*) AS cnt FROM "projects" WHERE "Client" LIKE @p1

Values keep the text representation of the export (fees stay strings, empty
cells stay empty strings); numeric comparisons therefore go through
``CAST(... AS REAL)`` in the generated SQL.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from nlquery.integrations.sqlite_table import SQLiteTable


@dataclass(slots=True)
class CsvSQLExecutor:
    """Execute SQL statements against an in-memory copy of a CSV export."""

    csv_path: str | Path
    table_name: str = "projects"
    _path: Path = field(init=False)
    _table: SQLiteTable = field(init=False)

    def __post_init__(self) -> None:
        self._path = Path(self.csv_path).expanduser()
        self._table = SQLiteTable(table_name=self.table_name, loader=self._read_csv)

    def run(self, statement: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        return self._table.run(statement, params)

    @property
    def columns(self) -> list[str]:
        """Return the original CSV column names."""

        return self._table.columns

    def reset(self) -> None:
        """Reload the CSV contents from disk into a fresh connection."""

        self._table.reset()

    def _read_csv(self) -> tuple[list[str], list[dict[str, Any]]]:
        path = self._path
        if not path.exists():
            raise FileNotFoundError(f"CSV file not found: {path}")

        with path.open("r", encoding="utf-8", newline="") as handle:
            reader = csv.DictReader(handle)
            if reader.fieldnames is None:
                raise ValueError("CSV file must include a header row")
            raw_names = list(reader.fieldnames)
            fieldnames = [name.strip() for name in raw_names]
            rows = [
                {name: (row.get(raw) or "").strip() for name, raw in zip(fieldnames, raw_names)}
                for row in reader
            ]
        return fieldnames, rows
