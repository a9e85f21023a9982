"""Turn untrusted classifier arguments into verified query filters."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Mapping

from nlquery.agents.disambiguation import DisambiguationDetector
from nlquery.agents.entity_resolver import EntityResolver, ResolvedEntity
from nlquery.core.errors import (
    AmbiguousEntityError,
    ClassifierMalformedOutputError,
    NoMatchError,
)
from nlquery.core.query_builder import (
    GTE,
    IN,
    LIKE_ANY,
    LT,
    LTE,
    Filter,
    ResolvedArguments,
    clamp_limit,
    parse_order_directive,
)
from nlquery.core.project_size import FALLBACK_PERCENTILES, ProjectSizeCalculator, normalize_size
from nlquery.core.synonyms import SynonymTables, normalize_term
from nlquery.core.templates import (
    ARGUMENTS_BY_NAME,
    COLUMN,
    DATE,
    ENTITY,
    LIMIT,
    NUMBER,
    ORDER,
    PROJECT_TYPE,
    REGION,
    STATUS,
    SIZE,
    SIZE_CLASSES,
    TIME,
    ArgumentSpec,
    QueryTemplate,
)
from nlquery.core.time_parser import parse_time_reference

LOGGER = logging.getLogger(__name__)

KEYWORD_TIER = "keyword"
MARKER_TIER = "marker"

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_AMOUNT_RE = re.compile(
    r"^\$?\s*(-?\d+(?:\.\d+)?)\s*(k|m|b|thousand|million|mil|mm|billion|bn)?\s*%?$",
    re.IGNORECASE,
)
_MULTIPLIERS = {
    "k": 1e3,
    "thousand": 1e3,
    "m": 1e6,
    "mm": 1e6,
    "mil": 1e6,
    "million": 1e6,
    "b": 1e9,
    "bn": 1e9,
    "billion": 1e9,
}


def coerce_number(value: Any) -> float | None:
    """Parse ``5000000``, ``"$5,000,000"``, ``"5M"`` or ``"80%"``; ``None`` if not numeric."""

    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    match = _AMOUNT_RE.match(value.strip().replace(",", ""))
    if not match:
        return None
    number = float(match.group(1))
    suffix = (match.group(2) or "").lower()
    return number * _MULTIPLIERS.get(suffix, 1.0)


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _text_terms(name: str, value: Any) -> list[str]:
    if isinstance(value, str):
        terms = [value]
    elif isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
        terms = list(value)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        terms = [str(value)]
    else:
        raise ClassifierMalformedOutputError(
            f"Argument '{name}' must be text or a list of text, got {type(value).__name__}"
        )
    cleaned = [term.strip() for term in terms if term.strip()]
    if not cleaned:
        raise ClassifierMalformedOutputError(f"Argument '{name}' is empty")
    return cleaned


@dataclass(slots=True)
class ResolutionResult:
    arguments: ResolvedArguments
    entities: dict[str, list[ResolvedEntity]] = field(default_factory=dict)


@dataclass
class ArgumentResolver:
    """Resolve every argument of a classification or fail closed.

    Entity-shaped arguments go through synonyms, disambiguation and the
    cascade; numeric, date and directive arguments are validated. Unknown or
    unparseable arguments raise ``ClassifierMalformedOutputError`` so no
    filter is ever dropped silently.
    """

    resolver: EntityResolver
    detector: DisambiguationDetector
    synonyms: SynonymTables
    today: Callable[[], date] = date.today
    sizes: ProjectSizeCalculator | None = None

    def resolve(
        self,
        template: QueryTemplate,
        arguments: Mapping[str, Any],
        *,
        question: str = "",
        markers: Mapping[str, str] | None = None,
    ) -> ResolutionResult:
        self._check_required(template, arguments)
        markers = markers or {}
        filters: list[Filter] = []
        entities: dict[str, list[ResolvedEntity]] = {}
        limit: int | None = None
        order_by: tuple[str, bool] | None = None

        for name, value in arguments.items():
            spec = ARGUMENTS_BY_NAME.get(name)
            if spec is None:
                raise ClassifierMalformedOutputError(f"Unknown argument '{name}' for {template.name}")
            if _is_blank(value):
                continue

            if spec.kind == LIMIT:
                limit = self._limit(name, value)
            elif spec.kind == ORDER:
                order_by = parse_order_directive(value)
                if order_by is None:
                    LOGGER.info("Ignoring unrecognised order directive %r", value)
            elif spec.kind == NUMBER:
                filters.append(self._number_filter(spec, value))
            elif spec.kind == DATE:
                filters.append(self._date_filter(spec, value))
            elif spec.kind == TIME:
                filters.extend(self._time_filters(spec, value))
            elif spec.kind == SIZE:
                filters.extend(self._size_filters(spec, value))
            else:
                resolved = [
                    self._resolve_term(spec, term, question, markers)
                    for term in _text_terms(name, value)
                ]
                entities[name] = resolved
                filters.extend(_combine(name, resolved))

        return ResolutionResult(ResolvedArguments(tuple(filters), limit, order_by), entities)

    # ------------------------------------------------------------------
    # Entity-shaped arguments
    # ------------------------------------------------------------------

    def _resolve_term(
        self, spec: ArgumentSpec, term: str, question: str, markers: Mapping[str, str]
    ) -> ResolvedEntity:
        pinned = markers.get(normalize_term(term))
        if pinned:
            chosen = self.resolver.resolve_in_column(term, pinned)
            if chosen is None:
                raise NoMatchError(term, spec.name)
            return ResolvedEntity(chosen.column, chosen.value, chosen.match_count, MARKER_TIER)

        hit: ResolvedEntity | None = None
        if spec.kind == STATUS:
            hit = self.resolver.resolve_status(term)
        elif spec.kind == REGION:
            hit = self.resolver.resolve_region(term)
        elif spec.kind == PROJECT_TYPE:
            hit = self.resolver.resolve_project_type(term)
        elif spec.kind == COLUMN and spec.column:
            hit = self.resolver.resolve_in_column(term, spec.column)
        elif spec.kind == ENTITY:
            if self.synonyms.is_status_alias(term):
                hit = self.resolver.resolve_status(term)
            elif self.synonyms.is_region_alias(term):
                hit = self.resolver.resolve_region(term)
        if hit is not None:
            return hit

        if spec.kind in (ENTITY, COLUMN):
            disambiguation = self.detector.detect(term, question, spec.name)
            if disambiguation is not None:
                raise AmbiguousEntityError(term, disambiguation.options, spec.name)
            hit = self.resolver.resolve(term)
            if hit is not None:
                return hit
            if spec.fallback_column:
                count = self.resolver.verify(spec.fallback_column, term)
                if count > 0:
                    return ResolvedEntity(spec.fallback_column, term, count, KEYWORD_TIER)
        raise NoMatchError(term, spec.name)

    # ------------------------------------------------------------------
    # Scalar arguments
    # ------------------------------------------------------------------

    @staticmethod
    def _limit(name: str, value: Any) -> int:
        number = coerce_number(value)
        if number is None or number < 1:
            raise ClassifierMalformedOutputError(f"Argument '{name}' must be a positive integer")
        return clamp_limit(int(number))

    @staticmethod
    def _number_filter(spec: ArgumentSpec, value: Any) -> Filter:
        number = coerce_number(value)
        if number is None:
            raise ClassifierMalformedOutputError(f"Argument '{spec.name}' must be numeric, got {value!r}")
        return Filter(spec.column or "", spec.operator or GTE, number, spec.name)

    def _date_filter(self, spec: ArgumentSpec, value: Any) -> Filter:
        if not isinstance(value, str) or not value.strip():
            raise ClassifierMalformedOutputError(f"Argument '{spec.name}' must be a date string")
        text = value.strip()
        if not _ISO_DATE_RE.match(text):
            parsed = parse_time_reference(text, self.today())
            if parsed is None:
                raise ClassifierMalformedOutputError(f"Argument '{spec.name}' is not a date: {text!r}")
            start, end = parsed
            text = (start or end) if spec.operator == GTE else (end or start)
        return Filter(spec.column or "", spec.operator or GTE, text, spec.name)

    def _time_filters(self, spec: ArgumentSpec, value: Any) -> list[Filter]:
        if not isinstance(value, str):
            raise ClassifierMalformedOutputError(f"Argument '{spec.name}' must be text")
        parsed = parse_time_reference(value, self.today())
        if parsed is None:
            raise ClassifierMalformedOutputError(f"Could not interpret time reference {value!r}")
        start, end = parsed
        filters: list[Filter] = []
        if start:
            filters.append(Filter(spec.column or "", GTE, start, spec.name))
        if end:
            filters.append(Filter(spec.column or "", LTE, end, spec.name))
        return filters

    def _size_filters(self, spec: ArgumentSpec, value: Any) -> list[Filter]:
        size = normalize_size(value)
        if size is None:
            raise ClassifierMalformedOutputError(
                f"Argument '{spec.name}' must be one of {', '.join(SIZE_CLASSES)}, got {value!r}"
            )
        percentiles = self.sizes.percentiles() if self.sizes is not None else FALLBACK_PERCENTILES
        lower, upper = percentiles.bounds(size)
        filters: list[Filter] = []
        if lower is not None:
            filters.append(Filter(spec.column or "", GTE, lower, spec.name))
        if upper is not None:
            filters.append(Filter(spec.column or "", LT, upper, spec.name))
        return filters

    @staticmethod
    def _check_required(template: QueryTemplate, arguments: Mapping[str, Any]) -> None:
        missing = [name for name in template.required if _is_blank(arguments.get(name))]
        if missing:
            raise ClassifierMalformedOutputError(
                f"{template.name} requires argument(s): {', '.join(missing)}"
            )
        if template.required_any and all(
            _is_blank(arguments.get(name)) for name in template.required_any
        ):
            raise ClassifierMalformedOutputError(
                f"{template.name} requires one of: {', '.join(template.required_any)}"
            )


def _combine(argument: str, entities: list[ResolvedEntity]) -> list[Filter]:
    """One filter per column; several terms on one column are OR-ed together."""

    by_column: dict[str, list[ResolvedEntity]] = {}
    for entity in entities:
        by_column.setdefault(entity.column, []).append(entity)

    filters: list[Filter] = []
    for column, group in by_column.items():
        if len(group) == 1:
            filters.append(group[0].to_filter(argument))
            continue
        values: list[str] = []
        for entity in group:
            values.extend(value for value in entity.values() if value not in values)
        if all(entity.is_list for entity in group):
            filters.append(Filter(column, IN, tuple(values), argument))
        else:
            filters.append(Filter(column, LIKE_ANY, tuple(values), argument))
    return filters

