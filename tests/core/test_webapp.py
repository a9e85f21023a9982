"""Tests for the FastAPI frontend."""

# ruff: noqa: PLR2004

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from nlquery.core.config import load_settings
from nlquery.core.dependencies import build_dependencies
from nlquery.core.errors import RateLimitError
from nlquery.core.observability import MemoryQueryLogger
from nlquery.core.webapp import create_app
from nlquery.integrations.openai_classifier import Classification, StaticClassifier

CSV_CONTENT = """Title,Client,Company,PointOfContact,ProjectType,Division,Department,RequestCategory,Region,State,StatusChoice,City,ServiceType,Fee,PercentWin,ConstStartDate
Harbor Bridge Rehab,Port Authority,LiRo Group,Jane Doe,Bridge Design,Transportation,Bridges,Infrastructure,NA - East,NY,Won,New York,Design,3500000,100,2023-03-01
Dubai Metro Extension,RTA Dubai,LiRo Group,Omar Haddad,Transit,Transportation,Rail,Transportation,MENA,,Submitted,Dubai,Construction Management,9000000,40,2024-05-01
Abu Dhabi Water Plant,ADWEA,Aqua Partners,Sara Lee,Water Treatment,Water,Treatment,Utilities,MENA,,In Review,Abu Dhabi,Design,4200000,60,2024-08-01
Springfield Library,City of Springfield,Civic Builders,Tom Reed,Library,Buildings,Civic,Public Buildings,NA - Central,IL,Won,Springfield,Design,1200000,100,2022-09-01
Chicago Transit Hub,Springfield Transit Co,Metro Partners,Tom Reed,Transit,Transportation,Rail,Transportation,NA - Central,IL,Lost,Chicago,Construction Management,2500000,0,2023-11-01
"""


class _RateLimitedClassifier:
    def classify(self, question: str, previous: Any = None, original: Any = None, candidates: Any = None) -> Classification:
        raise RateLimitError("The analysis service is busy; please retry shortly.", retry_after=3)


def _write_config(tmp_path: Path, timeout_s: float = 10) -> Path:
    config = tmp_path / "config.yaml"
    config.write_text(
        f"""
model_id: ""
request_timeout_s: {timeout_s}
data_sources:
  csv:
    path_env: PROJECTS_CSV_PATH
    table_name: projects
classifier:
  min_interval_s: 0
paths:
  query_logs_dir: {tmp_path / 'logs' / 'query'}
""",
        encoding="utf-8",
    )
    return config


@pytest.fixture()
def sample_dataset(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    csv_path = tmp_path / "projects.csv"
    csv_path.write_text(CSV_CONTENT, encoding="utf-8")
    monkeypatch.setenv("PROJECTS_CSV_PATH", str(csv_path))
    return csv_path


def _client(
    tmp_path: Path,
    classifier: Any,
    *,
    query_logger: MemoryQueryLogger | None = None,
    timeout_s: float = 10,
) -> TestClient:
    config_path = _write_config(tmp_path, timeout_s)
    dependencies = build_dependencies(
        load_settings(config_path),
        classifier=classifier,
        query_logger=query_logger or MemoryQueryLogger(),
    )
    return TestClient(create_app(config_path=str(config_path), dependencies=dependencies))


def _scripted() -> StaticClassifier:
    return StaticClassifier(
        answers={
            "open projects in the uae": Classification(
                "get_projects_by_combined_filters", {"status": "open", "region": "UAE"}
            ),
            "which of these are over 5m?": Classification(
                "get_projects_by_fee_range", {"min_fee": 5000000}
            ),
            "projects for springfield": Classification(
                "search_projects_by_keyword", {"keyword": "Springfield"}
            ),
        }
    )


def test_index_endpoints(tmp_path: Path, sample_dataset: Path) -> None:
    with _client(tmp_path, _scripted()) as client:
        assert client.get("/api/health").json() == {"status": "ok"}

        status = client.get("/api/index/status").json()
        assert status["ready"] is True
        assert status["columns"]["Region"]["values"] == 3
        assert status["queue"]["max_concurrent"] == 3

        values = client.get("/api/columns/Region/values").json()
        assert values["column"] == "Region"
        assert sorted(values["values"]) == ["MENA", "NA - Central", "NA - East"]
        assert client.get("/api/columns/Colour/values").status_code == 404

        refreshed = client.post("/api/index/refresh").json()
        assert refreshed["refreshed"]["Client"] == 5


def test_tabular_answer_then_follow_up(tmp_path: Path, sample_dataset: Path) -> None:
    with _client(tmp_path, _scripted()) as client:
        first = client.post("/api/query", json={"question": "Open projects in the UAE"})
        assert first.status_code == 200
        payload = first.json()
        assert payload["success"] is True
        assert payload["function_name"] == "get_projects_by_combined_filters"
        assert [row["Title"] for row in payload["data"]] == ["Dubai Metro Extension", "Abu Dhabi Water Plant"]
        assert payload["summary"]["total_records"] == 2
        assert payload["sql_params"]["p7"] == "MENA"
        assert payload["followUpDepth"] == 0
        assert payload["originalContext"]["function_name"] == "get_projects_by_combined_filters"

        second = client.post(
            "/api/query",
            json={
                "question": "Which of these are over 5M?",
                "previousContext": payload["previousContext"],
                "originalContext": payload["originalContext"],
                "followUpDepth": payload["followUpDepth"],
            },
        )
        assert second.status_code == 200
        follow_up = second.json()
        assert [row["Title"] for row in follow_up["data"]] == ["Dubai Metro Extension"]
        assert follow_up["arguments"] == {"status": "open", "region": "UAE", "min_fee": 5000000}
        assert follow_up["followUpDepth"] == 1
        assert follow_up["originalContext"] == payload["originalContext"]


def test_disambiguation_payload(tmp_path: Path, sample_dataset: Path) -> None:
    with _client(tmp_path, _scripted()) as client:
        response = client.post("/api/query", json={"question": "Projects for Springfield"})

    assert response.status_code == 200
    entry = response.json()["data"][0]
    assert entry["type"] == "disambiguation"
    assert [option["column"] for option in entry["options"]] == ["Client", "City"]
    assert entry["options"][1]["question"].endswith('[filter by City: "Springfield"]')
    assert response.json()["originalContext"] is None


@pytest.mark.parametrize(
    ("body", "status", "kind"),
    [
        ({"followUpDepth": 1}, 400, "invalid_request"),
        ({"question": "   "}, 400, "invalid_request"),
        ({"question": "Open projects", "followUpDepth": -1}, 400, "invalid_request"),
        ({"question": "Open projects", "previousContext": {"question": "x"}}, 400, "invalid_request"),
        ({"question": "What's the weather tomorrow?"}, 400, "off_topic"),
        ({"question": "Delete all lost projects"}, 403, "restricted_operation"),
    ],
)
def test_rejected_requests(
    tmp_path: Path, sample_dataset: Path, body: dict[str, Any], status: int, kind: str
) -> None:
    with _client(tmp_path, _scripted()) as client:
        response = client.post("/api/query", json=body)

    assert response.status_code == status
    assert response.json()["success"] is False
    assert response.json()["error"] == kind


def test_follow_up_limit_is_a_client_error(tmp_path: Path, sample_dataset: Path) -> None:
    context = {
        "question": "Open projects in the UAE",
        "function_name": "get_projects_by_combined_filters",
        "arguments": {"status": "open", "region": "UAE"},
        "result_data": [{"Title": "Dubai Metro Extension"}],
    }
    with _client(tmp_path, _scripted()) as client:
        response = client.post(
            "/api/query",
            json={
                "question": "Which of these are over 5M?",
                "previousContext": context,
                "originalContext": context,
                "followUpDepth": 3,
            },
        )

    assert response.status_code == 400
    assert "Follow-up limit" in response.json()["message"]


def test_rate_limit_maps_to_429(tmp_path: Path, sample_dataset: Path) -> None:
    with _client(tmp_path, _RateLimitedClassifier()) as client:
        response = client.post("/api/query", json={"question": "Open projects"})

    assert response.status_code == 429
    assert response.json()["error"] == "rate_limit"


@dataclass
class _SlowClassifier:
    delay_s: float

    def classify(self, question: str, previous: Any = None, original: Any = None, candidates: Any = None) -> Classification:
        time.sleep(self.delay_s)
        return Classification("get_projects_by_combined_filters", {"status": "open"})


def test_timed_out_request_stops_at_next_deadline_check(tmp_path: Path, sample_dataset: Path) -> None:
    events = MemoryQueryLogger()
    with _client(tmp_path, _SlowClassifier(delay_s=0.5), query_logger=events, timeout_s=0.2) as client:
        response = client.post("/api/query", json={"question": "Open projects"})

        assert response.status_code == 500
        assert response.json()["error"] == "internal_error"
        waited = 0.0
        while "query_failed" not in events.names() and waited < 3:
            time.sleep(0.05)
            waited += 0.05

    assert "query_failed" in events.names()
    assert "sql_executed" not in events.names()


def test_missing_classifier_answers_with_narrative(tmp_path: Path, sample_dataset: Path) -> None:
    config_path = _write_config(tmp_path)
    app = create_app(config_path=str(config_path))

    with TestClient(app) as client:
        response = client.post("/api/query", json={"question": "How is the pipeline doing?"})

    assert response.status_code == 200
    assert response.json()["data"][0]["type"] == "ai_analysis"
    assert (tmp_path / "logs" / "query").exists()
