"""Detect terms that plausibly belong to more than one column.

The engine keeps no pending state for a disambiguation prompt. Each option
carries the original question annotated with a marker such as
``[filter by City: "Springfield"]``; resubmitting that question pins the term
to the chosen column.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable

from nlquery.agents.entity_resolver import EntityResolver
from nlquery.core.query_builder import humanize_column
from nlquery.core.responses import Disambiguation, DisambiguationOption
from nlquery.core.synonyms import normalize_term

LOGGER = logging.getLogger(__name__)

_MARKER_RE = re.compile(r'\s*\[filter by\s+([^:\]]+?)\s*:\s*"([^"]*)"\]', re.IGNORECASE)


def annotate_question(question: str, term: str, column: str) -> str:
    """Append a column marker for *term*, replacing any earlier marker for it."""

    wanted = normalize_term(term)

    def _drop_same_term(match: re.Match[str]) -> str:
        return "" if normalize_term(match.group(2)) == wanted else match.group(0)

    stripped = _MARKER_RE.sub(_drop_same_term, question).rstrip()
    return f'{stripped} [filter by {column}: "{term.strip()}"]'


def extract_markers(question: str) -> tuple[str, dict[str, str]]:
    """Return the question without markers and a ``term -> column`` mapping."""

    markers: dict[str, str] = {}
    for match in _MARKER_RE.finditer(question):
        markers[normalize_term(match.group(2))] = match.group(1).strip()
    cleaned = " ".join(_MARKER_RE.sub(" ", question).split())
    return cleaned, markers


@dataclass(frozen=True, slots=True)
class DisambiguationPolicy:
    """When are direct column counts ambiguous?

    With ``dominance_ratio`` unset any two columns with rows are ambiguous.
    With a ratio, the top column wins outright once its count is at least
    ``dominance_ratio`` times the runner-up.
    """

    dominance_ratio: float | None = None

    def is_ambiguous(self, counts: Iterable[int]) -> bool:
        ranked = sorted((count for count in counts if count > 0), reverse=True)
        if len(ranked) < 2:
            return False
        if self.dominance_ratio is None:
            return True
        return ranked[0] < ranked[1] * self.dominance_ratio


@dataclass
class DisambiguationDetector:
    resolver: EntityResolver
    columns: list[str]
    policy: DisambiguationPolicy = DisambiguationPolicy()

    def detect(
        self, term: str, question: str = "", argument: str | None = None
    ) -> Disambiguation | None:
        counts = self.resolver.count_columns(term, self.columns)
        if not self.policy.is_ambiguous(counts.values()):
            return None

        priority = {column: position for position, column in enumerate(self.columns)}
        ranked = sorted(counts.items(), key=lambda item: (-item[1], priority[item[0]]))
        LOGGER.info("Term %r is ambiguous across %s", term, [column for column, _ in ranked])
        options = tuple(
            DisambiguationOption(
                column=column,
                display_name=humanize_column(column),
                count=count,
                question=annotate_question(question, term, column) if question else "",
            )
            for column, count in ranked
        )
        return Disambiguation(term=term.strip(), options=options, argument=argument)
