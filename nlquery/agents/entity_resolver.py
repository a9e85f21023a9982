"""Resolve free-text entity mentions to verified ``(column, value)`` pairs.

The cascade is an explicit list of strategies tried in order:

1. :class:`CacheMatchStrategy` looks the term up in the column value index
   following a fixed column priority, then confirms the hit with a count.
2. :class:`DirectCountStrategy` counts the raw term against a subset of
   columns in parallel and keeps the column with the most rows.

When both miss the resolver returns ``None``; callers must fall back to
suggestions rather than guess. A verification that fails is a tier miss.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from nlquery.core.column_index import ColumnValueIndex
from nlquery.core.errors import DataSourceError
from nlquery.core.query_builder import IN, LIKE, Filter, QueryBuilder
from nlquery.core.synonyms import (
    PROJECT_TYPE_COLUMN,
    REGION_COLUMN,
    STATUS_COLUMN,
    SynonymTables,
    normalize_term,
)

LOGGER = logging.getLogger(__name__)

CACHE_TIER = "cache"
DIRECT_TIER = "direct"
COLUMN_TIER = "column"
SYNONYM_TIER = "synonym"


class CountingDataSource(Protocol):
    def count(self, column: str, value: str) -> int:  # pragma: no cover - interface
        ...

    def count_statement(self, statement: str, params: Mapping[str, Any]) -> int:  # pragma: no cover
        ...


@dataclass(frozen=True, slots=True)
class ResolvedEntity:
    column: str
    value: str | tuple[str, ...]
    match_count: int
    tier: str

    @property
    def is_list(self) -> bool:
        return isinstance(self.value, tuple)

    def values(self) -> list[str]:
        return list(self.value) if isinstance(self.value, tuple) else [self.value]

    def to_filter(self, argument: str = "") -> Filter:
        if isinstance(self.value, tuple):
            return Filter(self.column, IN, self.value, argument)
        return Filter(self.column, LIKE, self.value, argument)


class ResolutionStrategy(Protocol):
    name: str

    def resolve(self, term: str) -> ResolvedEntity | None:  # pragma: no cover - interface
        ...


@dataclass(slots=True)
class CacheMatchStrategy:
    resolver: "EntityResolver"
    name: str = CACHE_TIER

    def resolve(self, term: str) -> ResolvedEntity | None:
        hit = self.resolver.index.find_matching_column(term, self.resolver.cascade_priority)
        if hit is None:
            return None
        column, value = hit
        count = self.resolver.verify(column, value)
        if count <= 0:
            LOGGER.info("Cache hit %s=%r for %r did not verify", column, value, term)
            return None
        return ResolvedEntity(column, value, count, self.name)


@dataclass(slots=True)
class DirectCountStrategy:
    resolver: "EntityResolver"
    name: str = DIRECT_TIER

    def resolve(self, term: str) -> ResolvedEntity | None:
        columns = self.resolver.direct_columns
        counts = self.resolver.count_columns(term, columns)
        if not counts:
            return None
        # max() keeps the first maximum, so ties go to the earlier priority column.
        column = max(columns, key=lambda name: counts.get(name, 0))
        return ResolvedEntity(column, term.strip(), counts[column], self.name)


@dataclass
class EntityResolver:
    index: ColumnValueIndex
    data_source: CountingDataSource
    synonyms: SynonymTables
    cascade_priority: list[str]
    direct_columns: list[str]
    builder: QueryBuilder = field(default_factory=QueryBuilder)
    max_workers: int = 5

    def __post_init__(self) -> None:
        self.strategies: list[ResolutionStrategy] = [
            CacheMatchStrategy(self),
            DirectCountStrategy(self),
        ]

    def resolve(self, term: str) -> ResolvedEntity | None:
        if not term or not term.strip():
            return None
        for strategy in self.strategies:
            hit = strategy.resolve(term)
            if hit is not None:
                LOGGER.info(
                    "Resolved %r via %s to %s=%r (%s rows)",
                    term,
                    strategy.name,
                    hit.column,
                    hit.value,
                    hit.match_count,
                )
                return hit
        LOGGER.info("No match for %r in any tier", term)
        return None

    def resolve_in_column(self, term: str, column: str) -> ResolvedEntity | None:
        """Resolve *term* within one column: cached terms first, then the raw text."""

        key = normalize_term(term)
        if not key:
            return None
        terms = self.index.search_terms(column)
        candidates: list[str] = []
        exact = terms.get(key)
        if exact is not None:
            candidates.append(exact)
        for cached, value in terms.items():
            if value not in candidates and (key in cached or cached in key):
                candidates.append(value)
                break
        for value in candidates:
            count = self.verify(column, value)
            if count > 0:
                return ResolvedEntity(column, value, count, COLUMN_TIER)

        count = self.verify(column, term.strip())
        if count > 0:
            return ResolvedEntity(column, term.strip(), count, COLUMN_TIER)
        return None

    def resolve_status(self, term: str) -> ResolvedEntity | None:
        return self._resolve_alias_group(
            term, STATUS_COLUMN, self.synonyms.is_status_alias(term), self.synonyms.resolve_status
        )

    def resolve_region(self, term: str) -> ResolvedEntity | None:
        return self._resolve_alias_group(
            term, REGION_COLUMN, self.synonyms.is_region_alias(term), self.synonyms.resolve_region
        )

    def resolve_project_type(self, term: str) -> ResolvedEntity | None:
        value = self.synonyms.resolve_project_type(term)
        if value is not None:
            count = self.verify(PROJECT_TYPE_COLUMN, value)
            if count > 0:
                return ResolvedEntity(PROJECT_TYPE_COLUMN, value, count, SYNONYM_TIER)
        return self.resolve_in_column(term, PROJECT_TYPE_COLUMN)

    def verify(self, column: str, value: str) -> int:
        try:
            return self.data_source.count(column, value)
        except DataSourceError as exc:
            LOGGER.warning("Verification of %s=%r failed: %s", column, value, exc)
            return 0

    def verify_values(self, column: str, values: Sequence[str]) -> int:
        built = self.builder.build_count([Filter(column, IN, tuple(values))])
        try:
            return self.data_source.count_statement(built.sql, built.params)
        except DataSourceError as exc:
            LOGGER.warning("Verification of %s IN %r failed: %s", column, list(values), exc)
            return 0

    def count_columns(self, term: str, columns: Sequence[str]) -> dict[str, int]:
        """Count *term* against each column concurrently; keep columns with rows."""

        value = term.strip()
        if not value or not columns:
            return {}
        workers = max(1, min(self.max_workers, len(columns)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="entity-count") as pool:
            counts = list(pool.map(lambda column: self.verify(column, value), columns))
        return {column: count for column, count in zip(columns, counts) if count > 0}

    def _resolve_alias_group(
        self, term: str, column: str, is_alias: bool, expand: Any
    ) -> ResolvedEntity | None:
        if is_alias:
            values = tuple(expand(term))
            count = self.verify_values(column, values)
            if count <= 0:
                LOGGER.info("Alias %r expanded to %s but matched no rows", term, list(values))
                return None
            return ResolvedEntity(column, values, count, SYNONYM_TIER)

        values = tuple(expand(term))
        if len(values) == 1:
            count = self.verify_values(column, values)
            if count > 0:
                return ResolvedEntity(column, values, count, COLUMN_TIER)
        return self.resolve_in_column(term, column)
