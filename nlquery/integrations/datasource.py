"""Data source access with retry on transient connection failures."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from nlquery.core.errors import DataSourceError, TransientDataSourceError
from nlquery.core.query_builder import like_condition, like_pattern, quote_identifier

LOGGER = logging.getLogger(__name__)

_TRANSIENT_CODES = {"ESOCKET", "ETIMEOUT", "ECONNRESET", "ECONNREFUSED", "ECONNABORTED", "EPIPE"}
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection lost",
    "connection reset",
    "connection refused",
    "server closed the connection",
    "database is locked",
)


class SQLExecutor(Protocol):
    """Abstracts a SQL execution engine accepting ``@name`` placeholders."""

    def run(
        self, statement: str, params: Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:  # pragma: no cover - interface
        """Execute a SQL statement and return row dictionaries."""

    def reset(self) -> None:  # pragma: no cover - interface
        """Drop pooled connections so the next call reconnects."""


def is_transient_error(exc: BaseException) -> bool:
    """Return True for socket resets, timeouts and lost connections."""

    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code.upper() in _TRANSIENT_CODES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


@dataclass(slots=True)
class RetryingDataSource:
    """Runs statements through an executor, retrying transient failures.

    Between attempts the executor is reset so a dropped connection leads to a
    fresh pool instead of repeated failures on a dead handle. Backoff grows
    linearly with the attempt number and is capped at ``max_backoff_s``.
    """

    executor: SQLExecutor
    table_name: str = "projects"
    max_retries: int = 2
    backoff_s: float = 1.0
    max_backoff_s: float = 3.0
    sleep: Callable[[float], None] = field(default=time.sleep)

    def execute(self, statement: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        bound = dict(params or {})
        retrying = Retrying(
            retry=retry_if_exception(is_transient_error),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_incrementing(start=self.backoff_s, increment=self.backoff_s, max=self.max_backoff_s),
            sleep=self.sleep,
            before_sleep=self._before_retry,
            reraise=True,
        )
        attempts = 0

        def run_once() -> list[dict[str, Any]]:
            nonlocal attempts
            attempts += 1
            return self.executor.run(statement, bound)

        try:
            return retrying(run_once)
        except Exception as exc:
            if not is_transient_error(exc):
                LOGGER.error("Query failed with non-transient error: %s", exc)
                raise DataSourceError(str(exc)) from exc
            LOGGER.error("Query failed after %s attempt(s): %s", attempts, exc)
            raise TransientDataSourceError(str(exc), attempts=attempts) from exc

    def count(self, column: str, value: str) -> int:
        """Return how many rows have *value* as a substring of *column*."""

        statement = (
            f"SELECT COUNT(*) AS cnt FROM {quote_identifier(self.table_name)} "
            f"WHERE {like_condition(quote_identifier(column), '@p1')}"
        )
        rows = self.execute(statement, {"p1": like_pattern(value)})
        return _first_count(rows)

    def count_statement(self, statement: str, params: Mapping[str, Any]) -> int:
        return _first_count(self.execute(statement, params))

    def distinct_values(self, column: str) -> list[str]:
        col = quote_identifier(column)
        statement = (
            f"SELECT DISTINCT {col} AS val FROM {quote_identifier(self.table_name)} "
            f"WHERE {col} IS NOT NULL AND {col} != ''"
        )
        values: list[str] = []
        for row in self.execute(statement):
            value = row.get("val")
            if value is None:
                continue
            text = str(value).strip()
            if text:
                values.append(text)
        return values

    def _before_retry(self, retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        LOGGER.warning(
            "Transient data source error on attempt %s, retrying in %.1fs: %s",
            retry_state.attempt_number,
            delay,
            exc,
        )
        self._reset_executor()

    def _reset_executor(self) -> None:
        try:
            self.executor.reset()
        except Exception as exc:  # pragma: no cover - reset is best effort
            LOGGER.warning("Error resetting data source connection: %s", exc)


def _first_count(rows: list[dict[str, Any]]) -> int:
    if not rows:
        return 0
    first = rows[0]
    value = first.get("cnt")
    if value is None and first:
        value = next(iter(first.values()))
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0
