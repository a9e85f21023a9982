"""Tests for the retrying data source."""

# ruff: noqa: PLR2004

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any, Mapping

import pytest

from nlquery.core.errors import DataSourceError, TransientDataSourceError
from nlquery.integrations.datasource import RetryingDataSource, is_transient_error
from nlquery.integrations.in_memory_sql_executor import InMemorySQLExecutor


@dataclass
class _FlakyExecutor:
    failures: list[Exception]
    rows: list[dict[str, Any]] = field(default_factory=lambda: [{"cnt": 3}])
    resets: int = 0
    calls: int = 0

    def run(self, statement: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.rows

    def reset(self) -> None:
        self.resets += 1


class _CodedError(Exception):
    def __init__(self, code: str) -> None:
        super().__init__("driver failure")
        self.code = code


def _source(executor: Any, sleeps: list[float], **kwargs: Any) -> RetryingDataSource:
    return RetryingDataSource(executor=executor, sleep=sleeps.append, **kwargs)


def test_transient_failure_is_retried_after_reset() -> None:
    sleeps: list[float] = []
    executor = _FlakyExecutor(failures=[ConnectionResetError("connection reset by peer")])

    rows = _source(executor, sleeps).execute("SELECT 1")

    assert rows == [{"cnt": 3}]
    assert executor.calls == 2
    assert executor.resets == 1
    assert sleeps == [1.0]


def test_exhausted_retries_raise_transient_error() -> None:
    sleeps: list[float] = []
    executor = _FlakyExecutor(failures=[sqlite3.OperationalError("database is locked")] * 5)

    with pytest.raises(TransientDataSourceError) as excinfo:
        _source(executor, sleeps, max_retries=2, backoff_s=2.0, max_backoff_s=3.0).execute("SELECT 1")

    assert excinfo.value.attempts == 3
    assert executor.calls == 3
    assert sleeps == [2.0, 3.0]


def test_non_transient_failure_is_not_retried() -> None:
    sleeps: list[float] = []
    executor = _FlakyExecutor(failures=[sqlite3.OperationalError("no such column: Colour")])

    with pytest.raises(DataSourceError) as excinfo:
        _source(executor, sleeps).execute("SELECT 1")

    assert not isinstance(excinfo.value, TransientDataSourceError)
    assert executor.calls == 1
    assert sleeps == []


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (TimeoutError(), True),
        (_CodedError("ECONNRESET"), True),
        (_CodedError("esocket"), True),
        (RuntimeError("Connection lost during query"), True),
        (sqlite3.OperationalError("near 'FORM': syntax error"), False),
        (ValueError("bad value"), False),
    ],
)
def test_is_transient_error(error: Exception, expected: bool) -> None:
    assert is_transient_error(error) is expected


def test_count_and_distinct_values_against_table() -> None:
    source = RetryingDataSource(
        executor=InMemorySQLExecutor(
            rows=[
                {"Client": "RTA Dubai", "Region": "MENA"},
                {"Client": "ADWEA", "Region": "MENA"},
                {"Client": " Port Authority ", "Region": ""},
            ]
        )
    )

    assert source.count("Client", "dubai") == 1
    assert source.count("Region", "MENA") == 2
    assert source.count("Client", "_") == 0
    assert source.count("Client", "%") == 0
    assert source.distinct_values("Region") == ["MENA"]
    assert sorted(source.distinct_values("Client")) == ["ADWEA", "Port Authority", "RTA Dubai"]
    assert source.count_statement('SELECT COUNT(*) FROM "projects"', {}) == 3
