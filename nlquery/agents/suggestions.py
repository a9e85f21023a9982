"""Alternative questions offered when a query cannot produce rows."""

from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass
from typing import Sequence

from nlquery.agents.entity_resolver import CountingDataSource
from nlquery.core.column_index import ColumnValueIndex
from nlquery.core.errors import DataSourceError
from nlquery.core.query_builder import Filter, QueryBuilder, ResolvedArguments, humanize_column
from nlquery.core.responses import Suggestions

LOGGER = logging.getLogger(__name__)

NO_RESULTS = "no_results"
NO_MATCH = "no_match"

GENERIC_SUGGESTIONS = (
    "Show the largest projects",
    "Show the status breakdown",
    "Show the top clients",
)


def describe_filters(filters: Sequence[Filter]) -> str:
    if not filters:
        return "Show all projects"
    return "Show projects with " + " and ".join(item.describe() for item in filters)


@dataclass
class SuggestionBuilder:
    data_source: CountingDataSource
    builder: QueryBuilder
    index: ColumnValueIndex
    columns: list[str]
    max_suggestions: int = 3
    cutoff: float = 0.6

    def for_zero_rows(self, resolved: ResolvedArguments) -> Suggestions:
        """Drop one filter at a time and keep the combinations that still have rows."""

        alternatives: list[str] = []
        for position in range(len(resolved.filters)):
            relaxed = resolved.without(position)
            if self._count(relaxed.filters) > 0:
                phrase = describe_filters(relaxed.filters)
                if phrase not in alternatives:
                    alternatives.append(phrase)
            if len(alternatives) >= self.max_suggestions:
                break
        if not alternatives:
            alternatives = list(GENERIC_SUGGESTIONS)
        return Suggestions(reason=NO_RESULTS, alternatives=tuple(alternatives[: self.max_suggestions]))

    def for_no_match(self, term: str) -> Suggestions:
        """Offer indexed values that look like *term*."""

        needle = " ".join(term.lower().split())
        candidates: dict[str, tuple[str, str]] = {}
        for column in self.columns:
            for cached, value in self.index.search_terms(column).items():
                candidates.setdefault(cached, (column, value))

        alternatives: list[str] = []
        for match in difflib.get_close_matches(needle, list(candidates), n=10, cutoff=self.cutoff):
            column, value = candidates[match]
            phrase = f"Show projects for {humanize_column(column).lower()} {value}"
            if phrase not in alternatives:
                alternatives.append(phrase)
            if len(alternatives) >= self.max_suggestions:
                break
        if not alternatives:
            alternatives = list(GENERIC_SUGGESTIONS)
        return Suggestions(reason=NO_MATCH, alternatives=tuple(alternatives))

    def _count(self, filters: Sequence[Filter]) -> int:
        built = self.builder.build_count(filters)
        try:
            return self.data_source.count_statement(built.sql, built.params)
        except DataSourceError as exc:
            LOGGER.warning("Suggestion count failed: %s", exc)
            return 0
