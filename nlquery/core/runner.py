"""Command-line entry point for replaying conversation scenarios."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml

from nlquery.agents.query_agent import QueryAgent
from nlquery.core.config import load_settings
from nlquery.core.context import ContextChain
from nlquery.core.dependencies import build_dependencies
from nlquery.core.errors import QueryEngineError
from nlquery.core.guards import check_question
from nlquery.core.responses import Disambiguation, ErrorResult, QueryResponse, to_payload
from nlquery.integrations.in_memory_sql_executor import InMemorySQLExecutor
from nlquery.integrations.openai_classifier import Classification, StaticClassifier


@dataclass(slots=True)
class ScenarioFile:
    scenarios: list[dict[str, Any]]
    rows: list[dict[str, Any]] | None = None


class ScenarioLoader(Protocol):
    """Provides conversation scenarios for a named profile."""

    def load(self, profile: str) -> ScenarioFile:  # pragma: no cover - interface
        """Return scenario definitions for the requested profile."""


@dataclass(slots=True)
class YamlScenarioLoader(ScenarioLoader):
    """Loads scenarios from ``<base_dir>/<profile>.yaml``.

    The file is either a list of scenarios or a mapping with ``scenarios`` and
    optional seed ``rows`` for an in-memory table.
    """

    base_dir: Path

    def load(self, profile: str) -> ScenarioFile:
        target = self.base_dir / f"{profile}.yaml"
        if not target.exists():
            return ScenarioFile(scenarios=[])
        with target.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle) or []
        rows = None
        if isinstance(payload, dict):
            rows = payload.get("rows")
            payload = payload.get("scenarios") or []
            if rows is not None and not isinstance(rows, list):
                raise ValueError("Scenario 'rows' must be a list of mappings")
        if not isinstance(payload, list):
            raise ValueError("Scenario file must contain a list of scenarios")
        scenarios: list[dict[str, Any]] = []
        for entry in payload:
            if not isinstance(entry, dict):
                raise ValueError("Scenario entries must be mappings")
            scenarios.append({str(key): value for key, value in entry.items()})
        return ScenarioFile(scenarios=scenarios, rows=rows)


@dataclass
class Conversation:
    """Carries the context chain across the turns of one conversation."""

    agent: QueryAgent
    request_prefix: str = "turn"
    counter: int = 0
    last_response: QueryResponse | None = None
    chain: ContextChain = field(init=False)

    def __post_init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.chain = ContextChain(max_follow_ups=self.agent.max_follow_ups)
        self.last_response = None

    def ask(self, question: str, *, explicit_follow_up: bool = False) -> QueryResponse:
        self.counter += 1
        request_id = f"{self.request_prefix}-Q{self.counter:03d}"
        try:
            text = check_question(question)
        except QueryEngineError as exc:
            self.last_response = ErrorResult.from_exception(exc)
            return self.last_response

        chain = self.chain
        response = self.agent.answer_question(
            request_id=request_id,
            question=text,
            previous_context=chain.previous,
            original_context=chain.original,
            follow_up_depth=chain.depth,
            explicit_follow_up=explicit_follow_up,
        )
        self.chain = self.agent.next_chain(
            response,
            question=text,
            previous_context=chain.previous,
            original_context=chain.original,
            follow_up_depth=chain.depth,
            explicit_follow_up=explicit_follow_up,
        )
        self.last_response = response
        return response

    def choose(self, number: int) -> QueryResponse:
        """Resubmit the question of option *number* (1-based) of the last prompt."""

        prompt = self.last_response
        if not isinstance(prompt, Disambiguation):
            raise ValueError("There is no disambiguation prompt to answer")
        if not 1 <= number <= len(prompt.options):
            raise ValueError(f"Choose a number between 1 and {len(prompt.options)}")
        return self.ask(prompt.options[number - 1].question)


def scripted_classifier(scenarios: list[dict[str, Any]]) -> StaticClassifier:
    """Collect per-turn ``classification`` and ``correction`` entries into a scripted classifier."""

    classifier = StaticClassifier()
    for scenario in scenarios:
        for turn in scenario.get("turns") or []:
            if not isinstance(turn, dict):
                continue
            question = turn.get("question")
            if not isinstance(question, str):
                continue
            key = question.strip().lower()
            scripted = turn.get("classification")
            if isinstance(scripted, dict):
                classifier.answers[key] = _classification(scripted)
            correction = turn.get("correction")
            if isinstance(correction, dict):
                classifier.corrections[key] = _classification(correction)
    return classifier


def _classification(scripted: dict[str, Any]) -> Classification:
    return Classification(
        template_name=str(scripted.get("function_name", "")),
        raw_arguments=dict(scripted.get("arguments") or {}),
    )


def run_scenario(agent: QueryAgent, scenario: dict[str, Any]) -> dict[str, Any]:
    """Replay the turns of *scenario* and return their boundary payloads."""

    name = str(scenario.get("name", "scenario"))
    conversation = Conversation(agent=agent, request_prefix=name.replace(" ", "-"))
    turns: list[dict[str, Any]] = []
    for turn in scenario.get("turns") or []:
        if not isinstance(turn, dict):
            raise ValueError("Scenario turns must be mappings")
        if "choose" in turn:
            response = conversation.choose(int(turn["choose"]))
            asked = f"/choose {turn['choose']}"
        else:
            asked = str(turn.get("question", ""))
            response = conversation.ask(asked, explicit_follow_up=bool(turn.get("follow_up")))
        turns.append(
            {
                "question": asked,
                "follow_up_depth": conversation.chain.depth,
                "response": to_payload(response),
            }
        )
    return {"name": name, "turns": turns}


@dataclass
class Runner:
    """Replays every scenario of a profile against one engine."""

    scenario_loader: ScenarioLoader
    config_path: str = "configs/dev.yaml"

    def execute(self, profile: str) -> list[dict[str, Any]]:
        loaded = self.scenario_loader.load(profile)
        settings = load_settings(self.config_path)
        executor = None
        if loaded.rows is not None:
            executor = InMemorySQLExecutor(rows=loaded.rows, table_name=settings.table_name)
        classifier = scripted_classifier(loaded.scenarios)
        dependencies = build_dependencies(
            settings,
            executor=executor,
            classifier=classifier if classifier.answers else None,
        )
        return [run_scenario(dependencies.agent, scenario) for scenario in loaded.scenarios]


def main() -> None:
    """CLI entry point for replaying conversation scenarios."""

    parser = argparse.ArgumentParser(description="Replay query engine scenarios")
    parser.add_argument("--config", default="configs/dev.yaml", help="Path to the YAML config file")
    parser.add_argument("--profile", default="dev", help="Scenario profile to execute")
    parser.add_argument(
        "--scenarios",
        default="assets/scenarios",
        help="Directory containing scenario YAML files",
    )
    args = parser.parse_args()

    loader = YamlScenarioLoader(base_dir=Path(args.scenarios))
    runner = Runner(scenario_loader=loader, config_path=args.config)
    results = runner.execute(profile=args.profile)
    print(json.dumps(results, indent=2, ensure_ascii=False, default=str))


if __name__ == "__main__":
    main()
