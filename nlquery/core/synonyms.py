"""Synonym tables mapping colloquial terms to canonical column values."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Protocol

STATUS_COLUMN = "StatusChoice"
REGION_COLUMN = "Region"
PROJECT_TYPE_COLUMN = "ProjectType"

STATUS_GROUPS: dict[str, list[str]] = {
    "open": ["Submitted", "Pending", "In Review", "Under Consideration", "Active", "In Progress"],
    "won": ["Won", "Awarded", "Accepted"],
    "lost": ["Lost", "No Go", "Declined", "Rejected", "Closed - Lost"],
    "closed": ["Won", "Awarded", "Lost", "No Go", "Declined", "Closed", "Completed"],
    "pending": ["Pending", "In Review", "Under Consideration", "Submitted", "Lead", "Qualified Lead"],
    "active": ["Active", "In Progress", "Open", "Submitted", "Pending", "Lead", "Qualified Lead", "Won"],
}

REGION_ALIASES: dict[str, str | list[str]] = {
    "uae": "MENA",
    "united arab emirates": "MENA",
    "middle east": "MENA",
    "gulf": "MENA",
    "west coast": "West",
    "east coast": ["East", "NA - East", "NA - Northeast"],
    "northeast": ["NA - Northeast", "Northeast"],
    "midwest": ["Central", "Midwest"],
    "pacific": "West",
    "europe": "Europe",
    "asia": ["Central Asia", "Southeast Asia", "Asia"],
}


class SearchTermSource(Protocol):
    """Read access to the per-column search terms of the column index."""

    def search_terms(self, column: str) -> Mapping[str, str]:  # pragma: no cover - interface
        ...

    @property
    def project_type_synonyms(self) -> Mapping[str, str]:  # pragma: no cover - interface
        ...


def normalize_term(term: str) -> str:
    return " ".join(str(term).lower().split())


def derive_project_type_synonyms(terms: Mapping[str, str]) -> dict[str, str]:
    """Keep the search terms whose text differs from their canonical value."""

    return {term: value for term, value in terms.items() if term != value.lower()}


def _as_list(value: str | list[str]) -> list[str]:
    return list(value) if isinstance(value, list) else [value]


@dataclass(slots=True)
class SynonymTables:
    """Resolves status, region and project-type synonyms.

    Static groups win over the column index; the index is consulted next and
    the raw term is returned last so callers can still verify it.
    """

    index: SearchTermSource

    @staticmethod
    def is_status_alias(term: str) -> bool:
        return normalize_term(term) in STATUS_GROUPS

    @staticmethod
    def is_region_alias(term: str) -> bool:
        return normalize_term(term) in REGION_ALIASES

    def resolve_status(self, term: str) -> list[str]:
        key = normalize_term(term)
        if key in STATUS_GROUPS:
            return list(STATUS_GROUPS[key])
        for cached, value in self.index.search_terms(STATUS_COLUMN).items():
            if cached == key or key in cached:
                return [value]
        return [str(term).strip()]

    def resolve_region(self, term: str) -> list[str]:
        key = normalize_term(term)
        if key in REGION_ALIASES:
            return _as_list(REGION_ALIASES[key])
        for cached, value in self.index.search_terms(REGION_COLUMN).items():
            if cached == key or key in cached or cached in key:
                return [value]
        return [str(term).strip()]

    def resolve_project_type(self, term: str) -> str | None:
        key = normalize_term(term)
        synonyms = self.index.project_type_synonyms
        if key in synonyms:
            return synonyms[key]
        for cached, value in self.index.search_terms(PROJECT_TYPE_COLUMN).items():
            if cached == key or key in cached or cached in key:
                return value
        return None
