"""Question classification and narrative answers backed by OpenAI models.

The classifier maps a question, plus optional follow-up context, to one named
template and raw arguments. Its output is untrusted: the engine resolves and
verifies every argument before any query runs.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Mapping, Protocol, Sequence, runtime_checkable

from nlquery.core.context import QueryContext
from nlquery.core.errors import (
    ClassifierMalformedOutputError,
    ClassifierUnavailableError,
    RateLimitError,
)
from nlquery.core.templates import TEMPLATES, QueryTemplate, describe_catalogue
from nlquery.integrations.openai_models import (
    GPTResponseClient,
    iter_json_payloads,
    response_text_blocks,
    retry_after_of,
    status_code_of,
)

LOGGER = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")

ALWAYS_OFFERED = ("get_projects_by_combined_filters", "search_projects_by_keyword")


@dataclass(frozen=True, slots=True)
class Classification:
    template_name: str
    raw_arguments: Mapping[str, Any]


class QueryClassifier(Protocol):
    def classify(
        self,
        question: str,
        previous: QueryContext | None = None,
        original: QueryContext | None = None,
        candidates: Sequence[QueryTemplate] | None = None,
    ) -> Classification:  # pragma: no cover - interface
        ...


@dataclass(frozen=True, slots=True)
class Correction:
    """Why a classification failed, sent back to the classifier for one more try."""

    template_name: str
    arguments: Mapping[str, Any]
    error_type: str
    error_message: str
    hints: Mapping[str, Sequence[str]] = field(default_factory=dict)

    def describe(self) -> str:
        lines = [
            "Previous attempt failed.",
            f"- Template used: {self.template_name}",
            f"- Arguments: {json.dumps(dict(self.arguments), ensure_ascii=False, default=str)}",
            f"- Error type: {self.error_type}",
            f"- Error message: {self.error_message}",
        ]
        if self.hints:
            lines.append("Valid database values (use these exact values):")
            for column, values in self.hints.items():
                lines.append(f"- {column}: {', '.join(values)}")
        return "\n".join(lines)


@runtime_checkable
class SelfCorrectingClassifier(Protocol):
    def reclassify(
        self,
        question: str,
        correction: Correction,
        candidates: Sequence[QueryTemplate] | None = None,
    ) -> Classification:  # pragma: no cover - interface
        ...


class Narrator(Protocol):
    def narrate(
        self, question: str, samples: Sequence[Mapping[str, Any]]
    ) -> str:  # pragma: no cover - interface
        ...


class TemplateRetriever(Protocol):
    def shortlist(self, question: str, limit: int | None = None) -> list[QueryTemplate]:  # pragma: no cover
        ...


@dataclass(slots=True)
class KeywordTemplateRetriever:
    """Shortlist templates by overlap between question words and template signals."""

    templates: Sequence[QueryTemplate] = TEMPLATES
    limit: int = 6

    def shortlist(self, question: str, limit: int | None = None) -> list[QueryTemplate]:
        words = set(_TOKEN_RE.findall(question.lower()))
        scored: list[tuple[int, int, QueryTemplate]] = []
        for position, template in enumerate(self.templates):
            vocabulary = set(template.signals) | set(template.name.split("_"))
            score = len(words & vocabulary)
            if score or template.name in ALWAYS_OFFERED:
                scored.append((score, position, template))
        scored.sort(key=lambda item: (-item[0], item[1]))
        chosen = [template for _, _, template in scored[: limit or self.limit]]
        for name in ALWAYS_OFFERED:
            if all(template.name != name for template in chosen):
                chosen.extend(template for template in self.templates if template.name == name)
        return chosen


def _context_snapshot(context: QueryContext | None, max_rows: int) -> dict[str, Any] | None:
    if context is None:
        return None
    return {
        "question": context.question,
        "function_name": context.template_name,
        "arguments": dict(context.arguments),
        "sample_rows": [dict(row) for row in context.result_rows[:max_rows]],
    }


def parse_classification(response: Any) -> Classification:
    """Pull the first ``{function_name, arguments}`` object out of a model reply."""

    for payload in iter_json_payloads(response):
        name = payload.get("function_name") or payload.get("template_name")
        arguments = payload.get("arguments", {})
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError:
                continue
        if isinstance(name, str) and name.strip() and isinstance(arguments, dict):
            return Classification(template_name=name.strip(), raw_arguments=arguments)
    raise ClassifierMalformedOutputError("Classifier reply did not contain a usable template choice")


def _call_model(client: GPTResponseClient, **kwargs: Any) -> Any:
    try:
        return client.generate(**kwargs)
    except Exception as exc:
        if status_code_of(exc) == 429:
            raise RateLimitError(
                "The analysis service is rate limited; please retry shortly.",
                retry_after=retry_after_of(exc),
            ) from exc
        raise ClassifierUnavailableError(f"Model call failed: {exc}") from exc


@dataclass
class OpenAIQueryClassifier:
    client: GPTResponseClient
    max_output_tokens: int | None = None
    max_context_rows: int = 5
    today: Callable[[], date] = date.today

    def classify(
        self,
        question: str,
        previous: QueryContext | None = None,
        original: QueryContext | None = None,
        candidates: Sequence[QueryTemplate] | None = None,
    ) -> Classification:
        messages = self.build_messages(question, previous, original, candidates)
        response = _call_model(
            self.client,
            messages=messages,
            max_output_tokens=self.max_output_tokens,
            json_output=True,
        )
        classification = parse_classification(response)
        LOGGER.info("Classifier chose %s", classification.template_name)
        return classification

    def reclassify(
        self,
        question: str,
        correction: Correction,
        candidates: Sequence[QueryTemplate] | None = None,
    ) -> Classification:
        """Ask once more with the failed attempt and valid database values attached."""

        LOGGER.info(
            "Re-classifying after %s with %s", correction.error_type, correction.template_name
        )
        messages = self.build_messages(question, candidates=candidates)
        messages[0]["content"] += (
            "\n\nCorrecting strategy: after no results keep most filters and relax only one, "
            "preferring to drop category or status before people and dates; replace values "
            "that do not match with the closest valid value; after a query error choose a "
            "simpler template. Never change a time period the user stated explicitly."
        )
        messages[1]["content"] += "\n" + correction.describe()
        response = _call_model(
            self.client,
            messages=messages,
            max_output_tokens=self.max_output_tokens,
            json_output=True,
        )
        classification = parse_classification(response)
        LOGGER.info("Corrected classification chose %s", classification.template_name)
        return classification

    def build_messages(
        self,
        question: str,
        previous: QueryContext | None = None,
        original: QueryContext | None = None,
        candidates: Sequence[QueryTemplate] | None = None,
    ) -> list[dict[str, str]]:
        catalogue = describe_catalogue(list(candidates) if candidates else TEMPLATES)
        instructions = (
            "You map questions about a projects table to exactly one query template. "
            "Respond with a JSON object {\"function_name\": <template>, \"arguments\": {...}}. "
            "Argument values are the user's own words for entities (client names, statuses "
            "such as 'open', regions such as 'UAE', keywords such as 'highway'); never "
            "translate them into column names or database values. Numbers are plain numbers. "
            "Time phrases go into 'time_reference' verbatim, explicit dates into "
            f"'start_date'/'end_date' as YYYY-MM-DD. Today is {self.today().isoformat()}.\n\n"
            f"{catalogue}"
        )
        user_content = f"Question: {question}"
        if original is not None or previous is not None:
            context = {
                "original": _context_snapshot(original, self.max_context_rows),
                "previous": _context_snapshot(previous, self.max_context_rows),
            }
            user_content += (
                "\nThis is a follow-up. Keep the filters of the earlier turns unless the "
                "question changes them.\nContext: "
                + json.dumps(context, ensure_ascii=False, default=str)
            )
        return [
            {"role": "system", "content": instructions},
            {"role": "user", "content": user_content},
        ]


@dataclass
class OpenAINarrator:
    """Writes a short analyst-style answer when no template fits."""

    client: GPTResponseClient
    max_output_tokens: int | None = 600
    max_samples: int = 10

    def narrate(self, question: str, samples: Sequence[Mapping[str, Any]]) -> str:
        snapshot = json.dumps(
            [dict(row) for row in samples[: self.max_samples]], ensure_ascii=False, default=str
        )
        messages = [
            {
                "role": "system",
                "content": (
                    "You are a business analyst for a project pipeline. Answer in plain "
                    "language using only the sample rows provided. If they do not answer "
                    "the question, say so and suggest a more specific question."
                ),
            },
            {"role": "user", "content": f"Question: {question}\nSample rows: {snapshot}"},
        ]
        response = _call_model(self.client, messages=messages, max_output_tokens=self.max_output_tokens)
        texts = response_text_blocks(response)
        if not texts:
            raise ClassifierMalformedOutputError("Narrative reply was empty")
        return texts[0]


@dataclass
class StaticClassifier:
    """Classifier returning scripted answers; used by scenarios and tests."""

    answers: dict[str, Classification] = field(default_factory=dict)
    default: Classification | None = None
    corrections: dict[str, Classification] = field(default_factory=dict)
    calls: list[dict[str, Any]] = field(default_factory=list)
    correction_calls: list[Correction] = field(default_factory=list)

    def classify(
        self,
        question: str,
        previous: QueryContext | None = None,
        original: QueryContext | None = None,
        candidates: Sequence[QueryTemplate] | None = None,
    ) -> Classification:
        self.calls.append({"question": question, "previous": previous, "original": original})
        answer = self.answers.get(question.strip().lower(), self.default)
        if answer is None:
            raise ClassifierMalformedOutputError(f"No scripted classification for {question!r}")
        return answer

    def reclassify(
        self,
        question: str,
        correction: Correction,
        candidates: Sequence[QueryTemplate] | None = None,
    ) -> Classification:
        self.correction_calls.append(correction)
        answer = self.corrections.get(question.strip().lower())
        if answer is None:
            raise ClassifierMalformedOutputError(f"No scripted correction for {question!r}")
        return answer
