"""Tests for parameterized SQL generation."""

# ruff: noqa: PLR2004

from __future__ import annotations

import pytest

from nlquery.core.query_builder import (
    GTE,
    IN,
    LIKE,
    LIKE_ANY,
    LT,
    LTE,
    Filter,
    QueryBuilder,
    ResolvedArguments,
    clamp_limit,
    humanize_column,
    like_pattern,
    parse_order_directive,
)
from nlquery.core.templates import get_template
from nlquery.integrations.in_memory_sql_executor import InMemorySQLExecutor

FEE = "CAST(NULLIF(\"Fee\", '') AS REAL)"

ROWS = [
    {"Title": "Bridge", "Client": "LiRo Group", "StatusChoice": "Active", "Fee": "2500000", "ConstStartDate": "2025-03-01"},
    {"Title": "Metro", "Client": "RTA Dubai", "StatusChoice": "Submitted", "Fee": "9000000", "ConstStartDate": "2025-06-15"},
    {"Title": "Plant", "Client": "ADWEA", "StatusChoice": "Won", "Fee": "", "ConstStartDate": "2026-01-10"},
    {"Title": "Depot", "Client": "LiRo Group", "StatusChoice": "Lost", "Fee": "800000", "ConstStartDate": "2024-09-01"},
]


def test_list_query_binds_every_value() -> None:
    builder = QueryBuilder()
    template = get_template("get_projects_by_combined_filters")
    assert template is not None
    resolved = ResolvedArguments(
        filters=(
            Filter("StatusChoice", IN, ("Submitted", "Active"), "status"),
            Filter("Fee", GTE, 1000000.0, "min_fee"),
        )
    )

    built = builder.build(template, resolved)

    assert built.sql == (
        'SELECT * FROM "projects" WHERE "StatusChoice" IN (@p1, @p2) '
        f"AND {FEE} >= @p3 ORDER BY {FEE} DESC LIMIT @p4"
    )
    assert built.params == {"p1": "Submitted", "p2": "Active", "p3": 1000000.0, "p4": 100}


def test_user_text_never_reaches_statement() -> None:
    builder = QueryBuilder()
    template = get_template("get_projects_by_client")
    assert template is not None
    hostile = "x'; DROP TABLE projects; --"

    built = builder.build(template, ResolvedArguments((Filter("Client", LIKE, hostile, "client"),)))

    assert hostile not in built.sql
    assert built.params["p1"] == f"%{hostile}%"


def test_like_any_groups_alternatives() -> None:
    built = QueryBuilder().build_count([Filter("Client", LIKE_ANY, ("LiRo", "RTA"), "client")])

    assert built.sql == (
        r"""SELECT COUNT(*) AS cnt FROM "projects" WHERE ("Client" LIKE @p1 ESCAPE '\' OR "Client" LIKE @p2 ESCAPE '\')"""
    )
    assert built.params == {"p1": "%LiRo%", "p2": "%RTA%"}


def test_like_wildcards_in_values_match_literally() -> None:
    assert like_pattern("I_95") == r"%I\_95%"
    assert like_pattern("100%") == r"%100\%%"
    assert like_pattern("A\\B") == r"%A\\B%"

    executor = InMemorySQLExecutor(rows=[{"Title": "I_95 Widening"}, {"Title": "I-95 Bridge"}, {"Title": "IX95"}])
    built = QueryBuilder().build_count([Filter("Title", LIKE, "I_95", "keyword")])

    assert executor.run(built.sql, built.params) == [{"cnt": 1}]


def test_limit_is_clamped_and_order_overrides_default() -> None:
    template = get_template("get_projects_by_combined_filters")
    assert template is not None

    built = QueryBuilder(table_name="pipeline").build(
        template, ResolvedArguments(limit=5000, order_by=("ConstStartDate", False))
    )

    assert built.sql == 'SELECT * FROM "pipeline" ORDER BY "ConstStartDate" ASC LIMIT @p1'
    assert built.params == {"p1": 1000}
    assert clamp_limit(0) == 1


def test_grouped_query_ranks_clients_by_fee() -> None:
    template = get_template("get_top_clients")
    assert template is not None

    built = QueryBuilder().build(template, ResolvedArguments())

    assert built.sql == (
        'SELECT "Client", COUNT(*) AS project_count, '
        f"COALESCE(SUM({FEE}), 0) AS total_fee FROM \"projects\" "
        "WHERE \"Client\" IS NOT NULL AND \"Client\" != '' "
        'GROUP BY "Client" ORDER BY total_fee DESC LIMIT @p1'
    )
    assert built.params == {"p1": 5}


def test_generated_sql_runs_against_sqlite() -> None:
    executor = InMemorySQLExecutor(rows=ROWS)
    builder = QueryBuilder()

    ranked = builder.build(get_template("get_top_clients"), ResolvedArguments())  # type: ignore[arg-type]
    rows = executor.run(ranked.sql, ranked.params)
    assert rows[0] == {"Client": "RTA Dubai", "project_count": 1, "total_fee": 9000000.0}
    assert rows[1]["Client"] == "LiRo Group"
    assert rows[1]["project_count"] == 2

    ranged = builder.build(
        get_template("get_projects_by_fee_range"),  # type: ignore[arg-type]
        ResolvedArguments(
            (
                Filter("Fee", GTE, 1000000.0, "min_fee"),
                Filter("ConstStartDate", LTE, "2025-12-31", "end_date"),
            )
        ),
    )
    assert [row["Title"] for row in executor.run(ranged.sql, ranged.params)] == ["Metro", "Bridge"]


def test_order_directives() -> None:
    assert parse_order_directive("fee asc") == ("Fee", False)
    assert parse_order_directive("win") == ("PercentWin", True)
    assert parse_order_directive("bogus") is None
    assert parse_order_directive(None) is None


def test_filter_descriptions() -> None:
    assert Filter("StatusChoice", IN, ("Won", "Awarded")).describe() == "status Won or Awarded"
    assert Filter("Fee", GTE, 5000000.0).describe() == "fee at least 5,000,000"
    assert Filter("ConstStartDate", GTE, "2025-01-01").describe() == "start date from 2025-01-01"
    assert humanize_column("RequestCategory") == "Request Category"


def test_size_distribution_groups_by_fee_thresholds() -> None:
    builder = QueryBuilder()
    template = get_template("get_size_distribution")
    assert template is not None
    executor = InMemorySQLExecutor(rows=[dict(row) for row in ROWS])

    built = builder.build(template, ResolvedArguments(), size_thresholds=(1e6, 3e6, 5e6, 8e6))
    rows = executor.run(built.sql, built.params)

    assert built.sql.startswith(f"SELECT CASE WHEN {FEE} < @p1 THEN @p2 ")
    assert built.params["p1"] == 1e6 and built.params["p2"] == "Micro"
    assert [(row["project_size"], row["project_count"]) for row in rows] == [
        ("Micro", 1),
        ("Small", 1),
        ("Mega", 1),
    ]
    assert rows[-1]["total_fee"] == 9000000.0


def test_size_distribution_requires_thresholds() -> None:
    template = get_template("get_size_distribution")
    assert template is not None

    with pytest.raises(ValueError, match="threshold"):
        QueryBuilder().build(template, ResolvedArguments())


def test_upper_bound_is_exclusive() -> None:
    builder = QueryBuilder()
    template = get_template("get_projects_by_combined_filters")
    assert template is not None
    executor = InMemorySQLExecutor(rows=[dict(row) for row in ROWS])

    built = builder.build(
        template,
        ResolvedArguments((Filter("Fee", GTE, 800000.0, "size"), Filter("Fee", LT, 2500000.0, "size"))),
    )

    assert f"{FEE} < @p2" in built.sql
    assert [row["Title"] for row in executor.run(built.sql, built.params)] == ["Depot"]
    assert Filter("Fee", LT, 2500000.0).describe() == "fee below 2,500,000"


def test_fee_values_for_percentiles() -> None:
    built = QueryBuilder().build_fee_values(1_000_000)
    rows = InMemorySQLExecutor(rows=[dict(row) for row in ROWS]).run(built.sql, built.params)

    assert [row["fee"] for row in rows] == [2500000.0, 9000000.0]
