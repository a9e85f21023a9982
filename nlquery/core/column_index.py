"""In-memory index of distinct values per searchable column.

The index answers "what are the known values of column X" and "which value
does this free-text term point at" without hitting the data source on every
request. Each column is held as an immutable :class:`ColumnSnapshot`; a refresh
builds new snapshots and swaps them in one column at a time, so readers always
see either the previous or the next snapshot of a column.

Search terms are lossy: two values sharing a short word (``"Port Authority"``
and ``"Port of Seattle"``) both want the term ``"port"`` and the first value
seen keeps it. Callers must verify any cache hit against the data source.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Protocol, Sequence

from nlquery.core.synonyms import PROJECT_TYPE_COLUMN, derive_project_type_synonyms

LOGGER = logging.getLogger(__name__)

TERM_MIN_LENGTH = 3
_WORD_SPLIT_RE = re.compile(r"[\s/\-(),]+")
_ABBREVIATION_RE = re.compile(r"\(([^)]+)\)")

_EMPTY: Mapping[str, str] = MappingProxyType({})


class DistinctValueSource(Protocol):
    def distinct_values(self, column: str) -> list[str]:  # pragma: no cover - interface
        ...


@dataclass(frozen=True, slots=True)
class ColumnSnapshot:
    column: str
    values: tuple[str, ...]
    terms: Mapping[str, str]
    refreshed_at: float


def build_search_terms(values: Sequence[str]) -> dict[str, str]:
    """Map normalized terms to canonical values.

    Full values and parenthetical abbreviations always claim their term; split
    words only claim terms nobody has claimed yet.
    """

    terms: dict[str, str] = {}
    for value in values:
        lowered = value.lower()
        terms[lowered] = value

        for word in _WORD_SPLIT_RE.split(lowered):
            if len(word) >= TERM_MIN_LENGTH and word not in terms:
                terms[word] = value

        match = _ABBREVIATION_RE.search(value)
        if match and match.group(1).strip():
            terms[match.group(1).strip().lower()] = value
    return terms


@dataclass
class ColumnValueIndex:
    """Explicitly constructed, refreshable index over the searchable columns."""

    source: DistinctValueSource
    columns: list[str]
    refresh_interval_s: float = 3600.0
    max_workers: int = 4
    clock: Callable[[], float] = field(default=time.time)

    def __post_init__(self) -> None:
        self._snapshots: Mapping[str, ColumnSnapshot] = MappingProxyType({})
        self._project_type_synonyms: Mapping[str, str] = _EMPTY
        self._initialized = False
        self._refresh_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def refresh(self) -> dict[str, int]:
        """Reload every configured column; return value counts per column.

        Columns load concurrently. A column whose query fails keeps its prior
        snapshot and is left out of the returned counts.
        """

        with self._refresh_lock:
            return self._reload()

    def needs_refresh(self) -> bool:
        if not self._initialized:
            return True
        snapshots = list(self._snapshots.values())
        if not snapshots:
            return True
        oldest = min(snapshot.refreshed_at for snapshot in snapshots)
        return self.clock() - oldest > self.refresh_interval_s

    def ensure_fresh(self) -> bool:
        """Refresh when stale; return True when this call ran the refresh.

        Callers that waited on a refresh already in progress see the fresh
        snapshots once the lock is released and return False.
        """

        if not self.needs_refresh():
            return False
        with self._refresh_lock:
            if not self.needs_refresh():
                return False
            self._reload()
            return True

    def is_ready(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self, column: str) -> ColumnSnapshot | None:
        return self._snapshots.get(column)

    def values(self, column: str) -> list[str]:
        snapshot = self._snapshots.get(column)
        return list(snapshot.values) if snapshot else []

    def search_terms(self, column: str) -> Mapping[str, str]:
        snapshot = self._snapshots.get(column)
        return snapshot.terms if snapshot else _EMPTY

    @property
    def project_type_synonyms(self) -> Mapping[str, str]:
        return self._project_type_synonyms

    def find_matching_column(
        self, term: str, priority: Sequence[str]
    ) -> tuple[str, str] | None:
        """Return ``(column, value)`` for the first column in *priority* that knows *term*.

        Each column is checked for an exact search-term hit, then for a
        substring hit in either direction.
        """

        needle = " ".join(term.lower().split())
        if not needle:
            return None
        snapshots = self._snapshots
        for column in priority:
            snapshot = snapshots.get(column)
            if snapshot is None:
                continue
            exact = snapshot.terms.get(needle)
            if exact is not None:
                return column, exact
            for cached, value in snapshot.terms.items():
                if needle in cached or cached in needle:
                    return column, value
        return None

    def status(self) -> dict[str, Any]:
        snapshots = self._snapshots
        return {
            "ready": self._initialized,
            "needs_refresh": self.needs_refresh(),
            "columns": {
                name: {"values": len(snapshot.values), "refreshed_at": snapshot.refreshed_at}
                for name, snapshot in snapshots.items()
            },
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _reload(self) -> dict[str, int]:
        LOGGER.info("Refreshing column value index (%s columns)", len(self.columns))
        loaded: dict[str, int] = {}
        workers = max(1, min(self.max_workers, len(self.columns)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="column-index") as pool:
            futures = {pool.submit(self._load_column, column): column for column in self.columns}
            for future in as_completed(futures):
                column = futures[future]
                try:
                    snapshot = future.result()
                except Exception as exc:
                    LOGGER.error("Error loading column %s; keeping previous snapshot: %s", column, exc)
                    continue
                self._swap(snapshot)
                loaded[column] = len(snapshot.values)
                LOGGER.info("  %s: %s unique values", column, len(snapshot.values))

        project_types = self._snapshots.get(PROJECT_TYPE_COLUMN)
        if project_types is not None:
            self._project_type_synonyms = MappingProxyType(
                derive_project_type_synonyms(project_types.terms)
            )
        self._initialized = True
        LOGGER.info(
            "Column value index ready with %s project type synonyms",
            len(self._project_type_synonyms),
        )
        return loaded

    def _load_column(self, column: str) -> ColumnSnapshot:
        values = self.source.distinct_values(column)
        unique = tuple(dict.fromkeys(values))
        return ColumnSnapshot(
            column=column,
            values=unique,
            terms=MappingProxyType(build_search_terms(unique)),
            refreshed_at=self.clock(),
        )

    def _swap(self, snapshot: ColumnSnapshot) -> None:
        updated = dict(self._snapshots)
        updated[snapshot.column] = snapshot
        self._snapshots = MappingProxyType(updated)
