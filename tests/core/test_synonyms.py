"""Tests for the status, region and project-type synonym tables."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

import pytest

from nlquery.core.synonyms import (
    REGION_ALIASES,
    STATUS_GROUPS,
    SynonymTables,
    derive_project_type_synonyms,
)


@dataclass
class _IndexStub:
    terms: dict[str, dict[str, str]] = field(default_factory=dict)
    project_type_synonyms: Mapping[str, str] = field(default_factory=dict)

    def search_terms(self, column: str) -> Mapping[str, str]:
        return self.terms.get(column, {})


@pytest.mark.parametrize("alias", sorted(STATUS_GROUPS))
def test_every_status_alias_expands_to_literal_values(alias: str) -> None:
    tables = SynonymTables(_IndexStub())

    values = tables.resolve_status(alias)

    assert values
    # Values are used verbatim; a value that is itself an alias is not expanded again.
    assert values == STATUS_GROUPS[alias]
    assert all(isinstance(value, str) and value.strip() for value in values)


def test_open_status_group() -> None:
    tables = SynonymTables(_IndexStub())

    assert tables.resolve_status(" Open ") == [
        "Submitted",
        "Pending",
        "In Review",
        "Under Consideration",
        "Active",
        "In Progress",
    ]


def test_status_falls_back_to_cache_then_raw_term() -> None:
    tables = SynonymTables(_IndexStub(terms={"StatusChoice": {"on hold": "On Hold"}}))

    assert tables.resolve_status("on hold") == ["On Hold"]
    assert tables.resolve_status("Shelved") == ["Shelved"]


def test_region_aliases() -> None:
    tables = SynonymTables(_IndexStub())

    for alias in ("UAE", "united arab emirates", "Middle East", "gulf"):
        assert tables.resolve_region(alias) == ["MENA"]
    assert tables.resolve_region("east coast") == REGION_ALIASES["east coast"]
    assert tables.is_region_alias("UAE")
    assert not tables.is_region_alias("Texas")


def test_project_type_prefers_derived_synonyms() -> None:
    index = _IndexStub(
        terms={"ProjectType": {"bridge": "Bridge", "rehab": "Bridge Rehab"}},
        project_type_synonyms={"wtp": "Water Treatment (WTP)"},
    )
    tables = SynonymTables(index)

    assert tables.resolve_project_type("WTP") == "Water Treatment (WTP)"
    assert tables.resolve_project_type("bridge") == "Bridge"
    assert tables.resolve_project_type("tunnel") is None


def test_derive_project_type_synonyms_skips_full_values() -> None:
    derived = derive_project_type_synonyms({"bridge": "Bridge", "wtp": "Water Treatment (WTP)"})

    assert derived == {"wtp": "Water Treatment (WTP)"}
