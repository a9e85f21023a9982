"""Tagged response variants returned by the query engine.

Every answer is exactly one of :class:`Tabular`, :class:`Disambiguation`,
:class:`Suggestions`, :class:`NarrativeFallback` or :class:`ErrorResult`.
Consumers branch on ``tag``; :func:`to_payload` renders the boundary shape.
"""

from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence, Union

from nlquery.core.context import QueryContext
from nlquery.core.errors import public_error_kind
from nlquery.core.query_builder import humanize_column
from nlquery.core.templates import BREAKDOWN, FEE_COLUMN, RANKING, TITLE_COLUMN, QueryTemplate


@dataclass(frozen=True, slots=True)
class Tabular:
    rows: tuple[Mapping[str, Any], ...]
    summary: Mapping[str, Any]
    template_name: str
    arguments: Mapping[str, Any]
    sql: str
    params: Mapping[str, Any]
    chart_config: Mapping[str, Any] | None = None
    context: QueryContext | None = None
    tag: str = field(default="tabular", init=False)


@dataclass(frozen=True, slots=True)
class DisambiguationOption:
    column: str
    display_name: str
    count: int
    question: str = ""


@dataclass(frozen=True, slots=True)
class Disambiguation:
    term: str
    options: tuple[DisambiguationOption, ...]
    argument: str | None = None
    tag: str = field(default="disambiguation", init=False)


@dataclass(frozen=True, slots=True)
class Suggestions:
    reason: str
    alternatives: tuple[str, ...]
    tag: str = field(default="suggestions", init=False)


@dataclass(frozen=True, slots=True)
class NarrativeFallback:
    text: str
    samples: tuple[Mapping[str, Any], ...] = ()
    tag: str = field(default="narrative", init=False)


@dataclass(frozen=True, slots=True)
class ErrorResult:
    kind: str
    message: str
    tag: str = field(default="error", init=False)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorResult":
        message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        return cls(kind=public_error_kind(exc), message=message)


QueryResponse = Union[Tabular, Disambiguation, Suggestions, NarrativeFallback, ErrorResult]


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(str(value).replace(",", "").replace("$", ""))
    except ValueError:
        return None


def summarize_rows(rows: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
    """Summary statistics over the fee column of a result set."""

    if rows and "total_fee" in rows[0]:
        fees = [fee for fee in (_to_float(row.get("total_fee")) for row in rows) if fee is not None]
        total_records = sum(int(_to_float(row.get("project_count")) or 0) for row in rows)
    else:
        fees = [fee for fee in (_to_float(row.get(FEE_COLUMN)) for row in rows) if fee is not None]
        total_records = len(rows)

    summary: dict[str, Any] = {
        "total_records": total_records,
        "total_value": round(sum(fees), 2),
    }
    if fees:
        summary.update(
            avg_fee=round(statistics.fmean(fees), 2),
            median_fee=round(statistics.median(fees), 2),
            min_fee=min(fees),
            max_fee=max(fees),
        )
    return summary


def chart_config_for(template: QueryTemplate, rows: Sequence[Mapping[str, Any]]) -> dict[str, Any] | None:
    if not rows:
        return None
    if template.group_by:
        label_column = template.group_by
        value_key = "project_count" if template.kind == BREAKDOWN else "total_fee"
        chart_type = "pie" if template.kind == BREAKDOWN and len(rows) <= 8 else "bar"
    elif template.kind == RANKING:
        label_column = TITLE_COLUMN
        value_key = FEE_COLUMN
        chart_type = "bar"
    else:
        return None

    labels = [str(row.get(label_column, "")) for row in rows]
    values = [_to_float(row.get(value_key)) or 0 for row in rows]
    return {
        "type": chart_type,
        "title": f"{template.name.replace('_', ' ').title()}",
        "labels": labels,
        "values": values,
        "label_field": humanize_column(label_column),
        "value_field": value_key,
    }


def to_payload(response: QueryResponse) -> dict[str, Any]:
    """Render *response* in the wire shape for its variant."""

    if isinstance(response, Tabular):
        payload: dict[str, Any] = {
            "success": True,
            "function_name": response.template_name,
            "arguments": dict(response.arguments),
            "data": [dict(row) for row in response.rows],
            "summary": dict(response.summary),
            "sql_query": response.sql,
            "sql_params": dict(response.params),
        }
        if response.chart_config:
            payload["chart_config"] = dict(response.chart_config)
        return payload
    if isinstance(response, Disambiguation):
        return {
            "success": True,
            "data": [
                {
                    "type": "disambiguation",
                    "term": response.term,
                    "options": [
                        {
                            "column": option.column,
                            "displayName": option.display_name,
                            "count": option.count,
                            "question": option.question,
                        }
                        for option in response.options
                    ],
                }
            ],
        }
    if isinstance(response, Suggestions):
        return {
            "success": True,
            "data": [
                {
                    "type": "suggested_queries",
                    "reason": response.reason,
                    "suggestions": list(response.alternatives),
                }
            ],
        }
    if isinstance(response, NarrativeFallback):
        entry: dict[str, Any] = {"type": "ai_analysis", "narrative": response.text}
        if response.samples:
            entry["samples"] = [dict(row) for row in response.samples]
        return {"success": True, "data": [entry]}
    if isinstance(response, ErrorResult):
        return {"success": False, "error": response.kind, "message": response.message}
    raise TypeError(f"Unknown response variant: {type(response).__name__}")
