"""Tests for suggested alternative questions."""

from __future__ import annotations

from typing import Any, Mapping

from nlquery.agents.suggestions import (
    GENERIC_SUGGESTIONS,
    NO_MATCH,
    NO_RESULTS,
    SuggestionBuilder,
    describe_filters,
)
from nlquery.core.column_index import ColumnValueIndex
from nlquery.core.errors import DataSourceError
from nlquery.core.query_builder import GTE, IN, LIKE, Filter, QueryBuilder, ResolvedArguments
from nlquery.integrations.datasource import RetryingDataSource
from nlquery.integrations.in_memory_sql_executor import InMemorySQLExecutor

COLUMNS = ["Client", "Region", "StatusChoice"]

ROWS = [
    {"Title": "Dubai Metro", "Client": "RTA Dubai", "Region": "MENA", "StatusChoice": "Submitted", "Fee": "9000000"},
    {"Title": "Water Plant", "Client": "ADWEA", "Region": "MENA", "StatusChoice": "In Review", "Fee": "4200000"},
    {"Title": "Library", "Client": "City of Springfield", "Region": "NA - Central", "StatusChoice": "Won", "Fee": "1200000"},
]


class _FailingSource:
    def count(self, column: str, value: str) -> int:
        raise DataSourceError("connection refused")

    def count_statement(self, statement: str, params: Mapping[str, Any]) -> int:
        raise DataSourceError("connection refused")


def _builder(source: Any | None = None) -> SuggestionBuilder:
    data_source = RetryingDataSource(executor=InMemorySQLExecutor(rows=ROWS))
    index = ColumnValueIndex(source=data_source, columns=COLUMNS)
    index.refresh()
    return SuggestionBuilder(
        data_source=source or data_source,
        builder=QueryBuilder(),
        index=index,
        columns=COLUMNS,
    )


def test_zero_rows_relaxes_one_filter_at_a_time() -> None:
    resolved = ResolvedArguments(
        filters=(
            Filter("StatusChoice", IN, ("Won", "Awarded"), "status"),
            Filter("Region", IN, ("MENA",), "region"),
        )
    )

    suggestions = _builder().for_zero_rows(resolved)

    assert suggestions.reason == NO_RESULTS
    assert suggestions.alternatives == (
        "Show projects with region MENA",
        "Show projects with status Won or Awarded",
    )


def test_zero_rows_single_filter_suggests_everything() -> None:
    resolved = ResolvedArguments(filters=(Filter("Client", LIKE, "Nobody", "client"),))

    assert _builder().for_zero_rows(resolved).alternatives == ("Show all projects",)


def test_failed_counts_fall_back_to_generic_questions() -> None:
    resolved = ResolvedArguments(filters=(Filter("Fee", GTE, 5_000_000.0, "min_fee"),))

    suggestions = _builder(_FailingSource()).for_zero_rows(resolved)

    assert suggestions.alternatives == GENERIC_SUGGESTIONS


def test_no_match_offers_close_indexed_values() -> None:
    suggestions = _builder().for_no_match("Springfeld")

    assert suggestions.reason == NO_MATCH
    assert suggestions.alternatives[0] == "Show projects for client City of Springfield"


def test_no_match_without_close_values_is_generic() -> None:
    assert _builder().for_no_match("qqqq").alternatives == GENERIC_SUGGESTIONS


def test_describe_filters() -> None:
    assert describe_filters([]) == "Show all projects"
    assert (
        describe_filters([Filter("Fee", GTE, 5_000_000.0), Filter("ConstStartDate", GTE, "2024-01-01")])
        == "Show projects with fee at least 5,000,000 and start date from 2024-01-01"
    )
