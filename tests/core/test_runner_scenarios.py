"""Tests for scenario replay and conversations."""

from __future__ import annotations

from pathlib import Path

import pytest

from nlquery.core.config import DEFAULT_SEARCHABLE_COLUMNS, load_settings
from nlquery.core.dependencies import build_dependencies
from nlquery.core.observability import MemoryQueryLogger
from nlquery.core.responses import Disambiguation, ErrorResult, Tabular
from nlquery.core.runner import Conversation, Runner, YamlScenarioLoader, scripted_classifier
from nlquery.integrations.in_memory_sql_executor import InMemorySQLExecutor
from nlquery.integrations.openai_classifier import Classification, StaticClassifier

SCENARIO_DIR = Path(__file__).resolve().parents[2] / "assets" / "scenarios"


def _write_config(tmp_path: Path) -> Path:
    config = tmp_path / "offline.yaml"
    config.write_text(
        f"""
model_id: ""
classifier:
  min_interval_s: 0
paths:
  query_logs_dir: {tmp_path / 'logs'}
""",
        encoding="utf-8",
    )
    return config


def test_loader_reads_rows_and_scenarios(tmp_path: Path) -> None:
    (tmp_path / "demo.yaml").write_text(
        """
rows:
  - {Title: A, Client: Acme}
scenarios:
  - name: first
    turns:
      - question: projects for Acme
""",
        encoding="utf-8",
    )

    loaded = YamlScenarioLoader(base_dir=tmp_path).load("demo")

    assert loaded.rows == [{"Title": "A", "Client": "Acme"}]
    assert loaded.scenarios[0]["name"] == "first"


def test_loader_accepts_plain_list_and_missing_profile(tmp_path: Path) -> None:
    (tmp_path / "plain.yaml").write_text("- name: only\n  turns: []\n", encoding="utf-8")
    loader = YamlScenarioLoader(base_dir=tmp_path)

    plain = loader.load("plain")

    assert plain.rows is None
    assert plain.scenarios == [{"name": "only", "turns": []}]
    assert loader.load("absent").scenarios == []


@pytest.mark.parametrize("content", ["- just a string\n", "scenarios: {name: x}\n", "rows: nope\nscenarios: []\n"])
def test_loader_rejects_malformed_files(tmp_path: Path, content: str) -> None:
    (tmp_path / "bad.yaml").write_text(content, encoding="utf-8")

    with pytest.raises(ValueError):
        YamlScenarioLoader(base_dir=tmp_path).load("bad")


def test_scripted_classifier_collects_turns() -> None:
    classifier = scripted_classifier(
        [
            {
                "turns": [
                    {"question": " Top Clients ", "classification": {"function_name": "get_top_clients"}},
                    {"choose": 1},
                    "not a turn",
                ]
            }
        ]
    )

    assert classifier.answers == {"top clients": Classification("get_top_clients", {})}
    assert classifier.corrections == {}


def test_scripted_classifier_collects_corrections() -> None:
    classifier = scripted_classifier(
        [
            {
                "turns": [
                    {
                        "question": "Won transit projects",
                        "classification": {"function_name": "get_projects_by_combined_filters"},
                        "correction": {"function_name": "get_projects_by_status", "arguments": {"status": "won"}},
                    }
                ]
            }
        ]
    )

    assert classifier.corrections == {
        "won transit projects": Classification("get_projects_by_status", {"status": "won"})
    }


def test_shipped_dev_scenarios_replay(tmp_path: Path) -> None:
    runner = Runner(scenario_loader=YamlScenarioLoader(base_dir=SCENARIO_DIR), config_path=str(_write_config(tmp_path)))

    results = {result["name"]: result["turns"] for result in runner.execute("dev")}

    open_uae = results["open-uae"]
    assert [row["Title"] for row in open_uae[0]["response"]["data"]] == [
        "Dubai Metro Extension",
        "Abu Dhabi Water Plant",
    ]
    assert [row["Title"] for row in open_uae[1]["response"]["data"]] == ["Dubai Metro Extension"]
    assert [turn["follow_up_depth"] for turn in open_uae] == [0, 1]

    springfield = results["springfield"]
    prompt = springfield[0]["response"]["data"][0]
    assert prompt["type"] == "disambiguation"
    assert prompt["options"][0]["column"] == "City"
    assert springfield[1]["question"] == "/choose 1"
    assert [row["Title"] for row in springfield[1]["response"]["data"]] == [
        "Chicago Transit Hub",
        "Springfield Library",
    ]

    assert [row["Title"] for row in results["project-sizes"][0]["response"]["data"]] == [
        "Dubai Metro Extension"
    ]
    distribution = results["size-distribution"][0]["response"]["data"]
    assert [row["project_size"] for row in distribution] == ["Micro", "Small", "Medium", "Large", "Mega"]
    assert {row["project_count"] for row in distribution} == {1}

    corrected = results["self-correction"][0]["response"]
    assert corrected["function_name"] == "get_projects_by_status"
    assert [row["Title"] for row in corrected["data"]] == ["Springfield Library"]


def test_shipped_rows_ask_which_column_liro_means(tmp_path: Path) -> None:
    rows = YamlScenarioLoader(base_dir=SCENARIO_DIR).load("dev").rows
    assert rows is not None
    classifier = StaticClassifier(default=Classification("search_projects_by_keyword", {"keyword": "LiRo"}))
    dependencies = build_dependencies(
        load_settings(_write_config(tmp_path)),
        executor=InMemorySQLExecutor(rows=rows),
        classifier=classifier,
        query_logger=MemoryQueryLogger(),
    )

    response = dependencies.agent.answer_question(request_id="R1", question="Projects for LiRo")

    assert isinstance(response, Disambiguation)
    assert [option.column for option in response.options] == ["Client", "Company"]


def _row(title: str, fee: str, **values: str) -> dict[str, str]:
    row = {column: "" for column in DEFAULT_SEARCHABLE_COLUMNS}
    row.update({"Title": title, "Fee": fee, "PercentWin": "", "ConstStartDate": ""})
    row.update(values)
    return row


def _conversation(tmp_path: Path) -> Conversation:
    rows = [
        _row("Library", "800000", Client="Springfield", City="Springfield"),
        _row("Hub", "6100000", Client="CTA", City="Springfield"),
    ]
    classifier = StaticClassifier(default=Classification("search_projects_by_keyword", {"keyword": "Springfield"}))
    dependencies = build_dependencies(
        load_settings(_write_config(tmp_path)),
        executor=InMemorySQLExecutor(rows=rows),
        classifier=classifier,
        query_logger=MemoryQueryLogger(),
    )
    return Conversation(agent=dependencies.agent, request_prefix="test")


def test_conversation_choose_resubmits_option(tmp_path: Path) -> None:
    conversation = _conversation(tmp_path)

    prompt = conversation.ask("Projects for Springfield")
    assert isinstance(prompt, Disambiguation)
    with pytest.raises(ValueError):
        conversation.choose(3)

    chosen = conversation.choose(1)

    assert isinstance(chosen, Tabular)
    assert [row["Title"] for row in chosen.rows] == ["Hub", "Library"]
    assert conversation.chain.original is chosen.context
    assert conversation.counter == 2


def test_conversation_rejects_choose_without_prompt(tmp_path: Path) -> None:
    conversation = _conversation(tmp_path)

    with pytest.raises(ValueError):
        conversation.choose(1)


def test_conversation_guards_questions(tmp_path: Path) -> None:
    conversation = _conversation(tmp_path)

    response = conversation.ask("Delete all lost projects")

    assert isinstance(response, ErrorResult)
    assert response.kind == "restricted_operation"
    assert conversation.chain.original is None
