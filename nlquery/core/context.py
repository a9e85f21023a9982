"""Immutable multi-turn context for follow-up questions.

A chain starts at a root question. The root's tabular result becomes the
``original`` context and stays untouched for every follow-up under it; the
``previous`` context moves forward one turn at a time. Each turn produces a
new :class:`ContextChain` instead of mutating the old one, and a turn that
fails is never committed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Sequence

from nlquery.core.errors import FollowUpLimitError, InvalidRequestError

ROOT = "root"
FOLLOWING = "following"
EXHAUSTED = "exhausted"

DIRECTIVE_ARGUMENTS = frozenset({"limit", "order_by"})

ANAPHORA_PATTERNS = [
    re.compile(
        r"\b(in|of|from|among|within|for|with)\s+(these|those|them|the above|that list|"
        r"these results|those results)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\bfrom above\b", re.IGNORECASE),
    re.compile(r"\b(the )?above (results|list|projects|table)\b", re.IGNORECASE),
    re.compile(r"\btop\s+\d+\s+(of|from)\s+(these|those|them)\b", re.IGNORECASE),
    re.compile(
        r"\b(these|those)\s+(projects|results|ones|clients|companies|proposals|rows)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\bthe same\s+\w+", re.IGNORECASE),
    re.compile(r"^\s*(only|just|and|but|now|also|excluding|except)\b", re.IGNORECASE),
    re.compile(r"^\s*(what|how)\s+about\b", re.IGNORECASE),
]

_SAME_ENTITY_RE = re.compile(
    r"\b(?:same|these|those|their)\s+(clients?|compan(?:y|ies)|regions?|states?|"
    r"categor(?:y|ies)|project\s+types?|cities)\b",
    re.IGNORECASE,
)

_ENTITY_COLUMNS = {
    "client": "Client",
    "clients": "Client",
    "company": "Company",
    "companies": "Company",
    "region": "Region",
    "regions": "Region",
    "state": "State",
    "states": "State",
    "category": "RequestCategory",
    "categories": "RequestCategory",
    "project type": "ProjectType",
    "project types": "ProjectType",
    "cities": "City",
}


def has_anaphora(question: str) -> bool:
    return any(pattern.search(question) for pattern in ANAPHORA_PATTERNS)


@dataclass(frozen=True, slots=True)
class QueryContext:
    question: str
    template_name: str
    arguments: Mapping[str, Any]
    result_rows: tuple[Mapping[str, Any], ...] = ()

    @classmethod
    def create(
        cls,
        question: str,
        template_name: str,
        arguments: Mapping[str, Any],
        rows: Sequence[Mapping[str, Any]] = (),
        max_rows: int | None = None,
    ) -> "QueryContext":
        kept = list(rows if max_rows is None else rows[:max_rows])
        return cls(
            question=question,
            template_name=template_name,
            arguments=MappingProxyType(dict(arguments)),
            result_rows=tuple(MappingProxyType(dict(row)) for row in kept),
        )

    @classmethod
    def from_payload(cls, payload: Any) -> "QueryContext | None":
        """Accept wire keys (``function_name``, ``result_data``) or camelCase variants."""

        if payload is None:
            return None
        if not isinstance(payload, Mapping):
            raise InvalidRequestError("Context must be an object")
        question = payload.get("question")
        template_name = payload.get("function_name") or payload.get("templateName")
        arguments = payload.get("arguments") or {}
        rows = payload.get("result_data") or payload.get("resultRows") or []
        if not isinstance(question, str) or not isinstance(template_name, str):
            raise InvalidRequestError("Context requires 'question' and 'function_name'")
        if not isinstance(arguments, Mapping):
            raise InvalidRequestError("Context 'arguments' must be an object")
        if not isinstance(rows, list) or not all(isinstance(row, Mapping) for row in rows):
            raise InvalidRequestError("Context 'result_data' must be a list of rows")
        return cls.create(question, template_name, arguments, rows)

    def to_payload(self) -> dict[str, Any]:
        return {
            "question": self.question,
            "function_name": self.template_name,
            "arguments": dict(self.arguments),
            "result_data": [dict(row) for row in self.result_rows],
        }


@dataclass(frozen=True, slots=True)
class AssembledContext:
    """Context to send to the classifier for one turn."""

    question: str
    previous: QueryContext | None
    original: QueryContext | None
    is_follow_up: bool
    depth: int


@dataclass(frozen=True, slots=True)
class ContextChain:
    original: QueryContext | None = None
    previous: QueryContext | None = None
    depth: int = 0
    max_follow_ups: int = 3

    @property
    def state(self) -> str:
        if self.original is None:
            return ROOT
        if self.depth >= self.max_follow_ups:
            return EXHAUSTED
        return FOLLOWING

    def is_follow_up(self, question: str, explicit: bool = False) -> bool:
        if self.original is None:
            return False
        return explicit or has_anaphora(question)

    def assemble(self, question: str, explicit_follow_up: bool = False) -> AssembledContext:
        """Decide whether *question* continues this chain.

        Raises ``FollowUpLimitError`` when the chain already carries the
        maximum number of follow-ups; the caller must not classify the turn.
        """

        if not self.is_follow_up(question, explicit_follow_up):
            return AssembledContext(question, None, None, is_follow_up=False, depth=0)
        if self.state == EXHAUSTED:
            raise FollowUpLimitError(self.depth, self.max_follow_ups)
        return AssembledContext(
            question,
            previous=self.previous or self.original,
            original=self.original,
            is_follow_up=True,
            depth=self.depth + 1,
        )

    def commit(self, turn: QueryContext, follow_up: bool) -> "ContextChain":
        """Return the chain after a turn that produced tabular rows."""

        if not follow_up:
            return ContextChain(turn, turn, 0, self.max_follow_ups)
        return ContextChain(self.original, turn, self.depth + 1, self.max_follow_ups)

    def commit_fallback(self, follow_up: bool) -> "ContextChain":
        """Return the chain after a narrative or suggestion turn."""

        if not follow_up:
            return ContextChain(max_follow_ups=self.max_follow_ups)
        return ContextChain(self.original, self.original, self.depth + 1, self.max_follow_ups)

    def advance(self, response: Any, follow_up: bool) -> "ContextChain":
        """Return the chain a caller should hold after *response*.

        Disambiguation prompts and errors leave the chain unchanged.
        """

        tag = getattr(response, "tag", None)
        turn = getattr(response, "context", None)
        if tag == "tabular" and turn is not None:
            return self.commit(turn, follow_up)
        if tag in {"narrative", "suggestions"}:
            return self.commit_fallback(follow_up)
        return self

    def to_payload(self) -> dict[str, Any]:
        return {
            "originalContext": self.original.to_payload() if self.original else None,
            "previousContext": self.previous.to_payload() if self.previous else None,
            "followUpDepth": self.depth,
        }


def merge_arguments(
    original: Mapping[str, Any] | None,
    previous: Mapping[str, Any] | None,
    current: Mapping[str, Any],
) -> dict[str, Any]:
    """Merge arguments with precedence original < previous < current.

    Directives such as ``limit`` and ``order_by`` only apply to the turn that
    asked for them and are never inherited.
    """

    merged: dict[str, Any] = {}
    for inherited in (original, previous):
        if not inherited:
            continue
        for key, value in inherited.items():
            if key in DIRECTIVE_ARGUMENTS or value in (None, "", [], {}):
                continue
            merged[key] = value
    for key, value in current.items():
        if value is None:
            continue
        merged[key] = value
    return merged


def referenced_entity_values(
    question: str, previous: QueryContext | None
) -> tuple[str, tuple[str, ...]] | None:
    """Turn "the same clients" into ``("Client", (...values from previous rows))``."""

    if previous is None or not previous.result_rows:
        return None
    match = _SAME_ENTITY_RE.search(question)
    if not match:
        return None
    key = " ".join(match.group(1).lower().split())
    column = _ENTITY_COLUMNS.get(key)
    if column is None:
        return None
    values: list[str] = []
    for row in previous.result_rows:
        value = row.get(column)
        if value is None:
            continue
        text = str(value).strip()
        if text and text not in values:
            values.append(text)
    if not values:
        return None
    return column, tuple(values)
