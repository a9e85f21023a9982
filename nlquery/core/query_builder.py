"""Build parameterized SQL from a template and fully resolved arguments.

Identifiers are always double-quoted and every value is a bound ``@pN``
parameter; nothing the user typed is interpolated into the statement text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Sequence

from nlquery.core.templates import (
    BREAKDOWN,
    DATE_COLUMN,
    FEE_COLUMN,
    MAX_LIMIT,
    SIZE_CLASSES,
    SIZE_GROUP,
    TITLE_COLUMN,
    WIN_COLUMN,
    QueryTemplate,
)

LIKE = "like"
LIKE_ANY = "like_any"
IN = "in"
GTE = ">="
LTE = "<="
LT = "<"

NUMERIC_COLUMNS = frozenset({FEE_COLUMN, WIN_COLUMN})

ORDER_ALIASES = {
    "fee": FEE_COLUMN,
    "fees": FEE_COLUMN,
    "value": FEE_COLUMN,
    "size": FEE_COLUMN,
    "win": WIN_COLUMN,
    "win_rate": WIN_COLUMN,
    "probability": WIN_COLUMN,
    "date": DATE_COLUMN,
    "start_date": DATE_COLUMN,
    "start": DATE_COLUMN,
    "title": TITLE_COLUMN,
    "name": TITLE_COLUMN,
}


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def like_pattern(value: Any) -> str:
    """Substring pattern for ``LIKE ... ESCAPE '\\'`` with wildcards in *value* taken literally."""

    text = str(value).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{text}%"


def like_condition(column: str, placeholder: str) -> str:
    return f"{column} LIKE {placeholder} ESCAPE '\\'"


def _numeric_expr(column: str) -> str:
    return f"CAST(NULLIF({quote_identifier(column)}, '') AS REAL)"


@dataclass(frozen=True, slots=True)
class Filter:
    column: str
    operator: str
    value: Any
    argument: str = ""

    def describe(self) -> str:
        label = humanize_column(self.column).lower()
        if self.operator in (IN, LIKE_ANY):
            values = list(self.value)
            if len(values) == 1:
                return f"{label} {values[0]}"
            return f"{label} {', '.join(values[:-1])} or {values[-1]}"
        if self.operator == LIKE:
            return f"{label} {self.value}"
        bound = {GTE: "at least", LTE: "at most", LT: "below"}[self.operator]
        if self.column == DATE_COLUMN:
            bound = "from" if self.operator == GTE else "until"
        return f"{label} {bound} {_format_value(self.value)}"


@dataclass(frozen=True, slots=True)
class ResolvedArguments:
    filters: tuple[Filter, ...] = ()
    limit: int | None = None
    order_by: tuple[str, bool] | None = None

    def without(self, index: int) -> "ResolvedArguments":
        remaining = self.filters[:index] + self.filters[index + 1 :]
        return replace(self, filters=remaining)


@dataclass(frozen=True, slots=True)
class BuiltQuery:
    sql: str
    params: dict[str, Any] = field(default_factory=dict)


class _Params:
    __slots__ = ("values",)

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}

    def add(self, value: Any) -> str:
        name = f"p{len(self.values) + 1}"
        self.values[name] = value
        return f"@{name}"


def humanize_column(column: str) -> str:
    """``"RequestCategory"`` -> ``"Request Category"``; known columns get friendlier labels."""

    labels = {
        "StatusChoice": "Status",
        "PointOfContact": "Point of Contact",
        "ConstStartDate": "Start Date",
        "PercentWin": "Win %",
        "State": "State",
    }
    if column in labels:
        return labels[column]
    return re.sub(r"(?<=[a-z])(?=[A-Z])", " ", column)


def _format_value(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return f"{int(value):,}"
    return str(value)


def clamp_limit(value: int) -> int:
    return max(1, min(MAX_LIMIT, int(value)))


def parse_order_directive(text: Any) -> tuple[str, bool] | None:
    """Parse ``"fee desc"`` / ``"date asc"`` into ``(column, descending)``."""

    if not isinstance(text, str) or not text.strip():
        return None
    tokens = re.split(r"[\s,]+", text.strip().lower())
    column = ORDER_ALIASES.get(tokens[0])
    if column is None:
        return None
    descending = not (len(tokens) > 1 and tokens[1] in {"asc", "ascending", "lowest", "oldest"})
    return column, descending


@dataclass(slots=True)
class QueryBuilder:
    table_name: str = "projects"

    def build(
        self,
        template: QueryTemplate,
        resolved: ResolvedArguments,
        size_thresholds: Sequence[float] | None = None,
    ) -> BuiltQuery:
        params = _Params()
        conditions = self._conditions(resolved.filters, params)
        table = quote_identifier(self.table_name)

        if template.group_by == SIZE_GROUP:
            return self._build_size_distribution(resolved, conditions, params, size_thresholds)
        if template.group_by:
            return self._build_grouped(template, resolved, conditions, params)

        sql = f"SELECT * FROM {table}"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sort_column, descending = resolved.order_by or (
            template.sort_column,
            template.sort_descending,
        )
        sql += f" ORDER BY {self._sort_expr(sort_column)} {'DESC' if descending else 'ASC'}"
        limit = resolved.limit or template.default_limit
        if limit:
            sql += f" LIMIT {params.add(clamp_limit(limit))}"
        return BuiltQuery(sql=sql, params=params.values)

    def build_count(self, filters: Sequence[Filter]) -> BuiltQuery:
        params = _Params()
        conditions = self._conditions(filters, params)
        sql = f"SELECT COUNT(*) AS cnt FROM {quote_identifier(self.table_name)}"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        return BuiltQuery(sql=sql, params=params.values)

    def build_sample(self, limit: int = 5) -> BuiltQuery:
        params = _Params()
        sql = (
            f"SELECT * FROM {quote_identifier(self.table_name)} "
            f"ORDER BY {_numeric_expr(FEE_COLUMN)} DESC LIMIT {params.add(clamp_limit(limit))}"
        )
        return BuiltQuery(sql=sql, params=params.values)

    def build_fee_values(self, min_fee: float) -> BuiltQuery:
        """Fees above *min_fee* in ascending order, for percentile calculation."""

        params = _Params()
        fee = _numeric_expr(FEE_COLUMN)
        sql = (
            f"SELECT {fee} AS fee FROM {quote_identifier(self.table_name)} "
            f"WHERE {fee} > {params.add(min_fee)} ORDER BY fee"
        )
        return BuiltQuery(sql=sql, params=params.values)

    def _build_size_distribution(
        self,
        resolved: ResolvedArguments,
        conditions: list[str],
        params: _Params,
        thresholds: Sequence[float] | None,
    ) -> BuiltQuery:
        if thresholds is None or len(thresholds) != len(SIZE_CLASSES) - 1:
            raise ValueError("Size distribution requires one threshold between each size class")
        fee = _numeric_expr(FEE_COLUMN)
        branches = " ".join(
            f"WHEN {fee} < {params.add(float(threshold))} THEN {params.add(size)}"
            for size, threshold in zip(SIZE_CLASSES, thresholds)
        )
        case = f"CASE {branches} ELSE {params.add(SIZE_CLASSES[-1])} END"
        where = [f"{fee} IS NOT NULL", *conditions]
        sql = (
            f"SELECT {case} AS {SIZE_GROUP}, COUNT(*) AS project_count, "
            f"COALESCE(SUM({fee}), 0) AS total_fee "
            f"FROM {quote_identifier(self.table_name)} "
            f"WHERE {' AND '.join(where)} "
            f"GROUP BY {SIZE_GROUP} ORDER BY MIN({fee})"
        )
        if resolved.limit:
            sql += f" LIMIT {params.add(clamp_limit(resolved.limit))}"
        return BuiltQuery(sql=sql, params=params.values)

    def _build_grouped(
        self,
        template: QueryTemplate,
        resolved: ResolvedArguments,
        conditions: list[str],
        params: _Params,
    ) -> BuiltQuery:
        group = quote_identifier(template.group_by or "")
        where = [f"{group} IS NOT NULL", f"{group} != ''", *conditions]
        order = "project_count DESC" if template.kind == BREAKDOWN else "total_fee DESC"
        sql = (
            f"SELECT {group}, COUNT(*) AS project_count, "
            f"COALESCE(SUM({_numeric_expr(FEE_COLUMN)}), 0) AS total_fee "
            f"FROM {quote_identifier(self.table_name)} "
            f"WHERE {' AND '.join(where)} "
            f"GROUP BY {group} ORDER BY {order}"
        )
        limit = resolved.limit or template.default_limit
        if limit:
            sql += f" LIMIT {params.add(clamp_limit(limit))}"
        return BuiltQuery(sql=sql, params=params.values)

    def _conditions(self, filters: Sequence[Filter], params: _Params) -> list[str]:
        conditions: list[str] = []
        for item in filters:
            column = quote_identifier(item.column)
            if item.operator == IN:
                values = list(item.value)
                if not values:
                    raise ValueError(f"IN filter on {item.column} requires at least one value")
                placeholders = ", ".join(params.add(value) for value in values)
                conditions.append(f"{column} IN ({placeholders})")
            elif item.operator == LIKE:
                conditions.append(like_condition(column, params.add(like_pattern(item.value))))
            elif item.operator == LIKE_ANY:
                options = " OR ".join(
                    like_condition(column, params.add(like_pattern(value))) for value in item.value
                )
                conditions.append(f"({options})")
            elif item.operator in (GTE, LTE, LT):
                target = _numeric_expr(item.column) if item.column in NUMERIC_COLUMNS else column
                conditions.append(f"{target} {item.operator} {params.add(item.value)}")
            else:
                raise ValueError(f"Unsupported filter operator '{item.operator}'")
        return conditions

    @staticmethod
    def _sort_expr(column: str) -> str:
        if column in NUMERIC_COLUMNS:
            return _numeric_expr(column)
        return quote_identifier(column)
