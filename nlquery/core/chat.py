"""Interactive chat interface for asking questions with follow-ups."""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from typing import Any, Callable

from nlquery.agents.query_agent import QueryAgent
from nlquery.core.config import load_settings
from nlquery.core.dependencies import build_dependencies
from nlquery.core.observability import QueryObservationSink
from nlquery.core.responses import (
    Disambiguation,
    ErrorResult,
    NarrativeFallback,
    QueryResponse,
    Suggestions,
    Tabular,
)
from nlquery.core.runner import Conversation

_exit_commands = {"/exit", "exit", "quit", ":q"}
MAX_RENDERED_ROWS = 10


@dataclass
class ChatCLI:
    """Terminal chat that keeps the follow-up context between questions."""

    agent: QueryAgent
    input_func: Callable[[str], str] = field(default=input)
    output_func: Callable[[str], None] = field(default=print)
    show_events: bool = True
    _conversation: Conversation = field(init=False)

    def __post_init__(self) -> None:
        if self.show_events:
            self.agent.logger = ChatQueryLogger(downstream=self.agent.logger, emit=self.output_func)
        self._conversation = Conversation(agent=self.agent, request_prefix="chat")

    def start(self) -> None:
        """Launch an interactive chat session."""

        self.output_func(
            "Ask questions about the projects data. Use '/follow <question>' to force a "
            "follow-up, '/choose <n>' to answer a clarification, '/new' to start over "
            "and '/exit' to leave."
        )
        while True:
            try:
                raw = self.input_func(self._prompt())
            except EOFError:
                self.output_func("\nSession ended.")
                break

            line = raw.strip()
            if not line:
                continue
            if line.lower() in _exit_commands:
                self.output_func("Session ended.")
                break
            self.handle(line)

    def handle(self, line: str) -> QueryResponse | None:
        """Process one input line; return the response when a question ran."""

        if line == "/new":
            self._conversation.reset()
            self.output_func("Started a new conversation.")
            return None
        if line.startswith("/choose"):
            parts = line.split(maxsplit=1)
            if len(parts) != 2 or not parts[1].strip().isdigit():
                self.output_func("Usage: /choose <number>")
                return None
            try:
                response = self._conversation.choose(int(parts[1]))
            except ValueError as exc:
                self.output_func(str(exc))
                return None
        elif line.startswith("/follow"):
            parts = line.split(maxsplit=1)
            if len(parts) != 2:
                self.output_func("Usage: /follow <question>")
                return None
            response = self._conversation.ask(parts[1], explicit_follow_up=True)
        else:
            response = self._conversation.ask(line)
        self.render(response)
        return response

    def render(self, response: QueryResponse) -> None:
        if isinstance(response, Tabular):
            summary = response.summary
            self.output_func(
                f"{summary.get('total_records', len(response.rows))} row(s) from {response.template_name}"
            )
            for row in response.rows[:MAX_RENDERED_ROWS]:
                self.output_func("  - " + ", ".join(f"{key}: {value}" for key, value in row.items()))
            if len(response.rows) > MAX_RENDERED_ROWS:
                self.output_func(f"  ... {len(response.rows) - MAX_RENDERED_ROWS} more")
            total_value = summary.get("total_value")
            if total_value:
                self.output_func(f"Total fee: {total_value:,.0f}")
        elif isinstance(response, Disambiguation):
            self.output_func(f'"{response.term}" matches more than one field:')
            for number, option in enumerate(response.options, start=1):
                self.output_func(f"  {number}. {option.display_name} ({option.count} projects)")
            self.output_func("Reply with /choose <number>.")
        elif isinstance(response, Suggestions):
            self.output_func("No results. You could try:")
            for alternative in response.alternatives:
                self.output_func(f"  - {alternative}")
        elif isinstance(response, NarrativeFallback):
            self.output_func(response.text)
        elif isinstance(response, ErrorResult):
            self.output_func(f"Error ({response.kind}): {response.message}")
        self.output_func("")

    def _prompt(self) -> str:
        depth = self._conversation.chain.depth
        if self._conversation.chain.original is None:
            return "> "
        return f"[follow-up {depth}]> "


@dataclass(slots=True)
class ChatQueryLogger(QueryObservationSink):
    downstream: QueryObservationSink | None
    emit: Callable[[str], None]

    def log_event(self, request_id: str, event: str, payload: dict[str, Any]) -> None:  # type: ignore[override]
        if self.downstream is not None:
            self.downstream.log_event(request_id, event, payload)
        message = describe_query_event(event, payload)
        if message:
            self.emit(f"  ↳ {message}")


def describe_query_event(event: str, payload: dict[str, Any]) -> str:
    if event == "question_received":
        return ""
    if event == "context_assembled":
        if payload.get("follow_up"):
            return f"Treating this as follow-up {payload.get('depth')}."
        return ""
    if event == "follow_up_rejected":
        return f"Follow-up limit of {payload.get('limit')} reached; start a new question."
    if event == "column_index_refreshed":
        return f"Refreshed cached values for {len(payload.get('columns', {}))} column(s)."
    if event == "classification_ready":
        return f"Using the {payload.get('function_name')} query."
    if event == "classifier_error":
        return "Could not map the question to a supported query."
    if event == "entity_resolved":
        return (
            f"Matched '{payload.get('argument')}' to {payload.get('column')} "
            f"({payload.get('match_count')} projects)."
        )
    if event == "entity_ambiguous":
        columns = payload.get("columns") or []
        return f"'{payload.get('term')}' appears in " + ", ".join(str(c) for c in columns) + "."
    if event == "entity_unresolved":
        return f"Found no projects matching '{payload.get('term')}'."
    if event == "context_reference_applied":
        return f"Limited to the {payload.get('column')} values from the previous answer."
    if event == "sql_executed":
        return f"Query returned {payload.get('row_count', 0)} row(s)."
    if event == "narrative_fallback":
        return "Answering from sample data instead of a structured query."
    if event == "narrator_error":
        return "Narrative service failed; using a standard reply."
    if event == "query_failed":
        return f"Request failed ({payload.get('kind')})."
    if event == "query_resolved":
        return ""
    return f"Query event: {event}"


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat-based interface for the query engine")
    parser.add_argument("--config", default="configs/dev.yaml", help="Path to the YAML config file")
    parser.add_argument("--quiet", action="store_true", help="Hide engine progress events")
    args = parser.parse_args()

    settings = load_settings(args.config)
    dependencies = build_dependencies(settings)
    cli = ChatCLI(agent=dependencies.agent, show_events=not args.quiet)
    cli.start()


if __name__ == "__main__":
    main()
