"""Entry point for answering free-text questions about the projects table.

This module exposes the `QueryAgent`, responsible for:
- Assembling follow-up context and enforcing the follow-up cap.
- Asking the classifier for a template and raw arguments.
- Resolving and verifying every argument before building the query.
- Asking the classifier once more, with the failure attached, when a query
  fails or returns no rows.
- Returning exactly one tagged response variant per question.

Collaborators (data source, classifier, narrator, retriever) are small adapter
objects so the orchestration stays thin and testable.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Any, Callable, Mapping, Protocol, TypeVar

from nlquery.agents.argument_resolver import ArgumentResolver
from nlquery.agents.disambiguation import extract_markers
from nlquery.agents.suggestions import SuggestionBuilder
from nlquery.core.column_index import ColumnValueIndex
from nlquery.core.context import (
    AssembledContext,
    ContextChain,
    QueryContext,
    merge_arguments,
    referenced_entity_values,
)
from nlquery.core.errors import (
    AmbiguousEntityError,
    ClassifierMalformedOutputError,
    ClassifierUnavailableError,
    CorrectionFailedError,
    DataSourceError,
    FollowUpLimitError,
    NoMatchError,
    QueryEngineError,
    RequestTimeoutError,
    TransientDataSourceError,
)
from nlquery.core.observability import QueryObservationSink
from nlquery.core.project_size import FALLBACK_PERCENTILES, ProjectSizeCalculator
from nlquery.core.query_builder import IN, Filter, QueryBuilder
from nlquery.core.request_queue import Deadline, RequestQueue
from nlquery.core.responses import (
    Disambiguation,
    ErrorResult,
    NarrativeFallback,
    QueryResponse,
    Tabular,
    chart_config_for,
    summarize_rows,
)
from nlquery.core.templates import SIZE_GROUP, QueryTemplate, get_template
from nlquery.integrations.openai_classifier import (
    Classification,
    Correction,
    Narrator,
    QueryClassifier,
    SelfCorrectingClassifier,
    TemplateRetriever,
)

FALLBACK_NARRATIVE = (
    "I could not turn this question into a supported query. Try naming a client, "
    "status, region, category or fee range, for example \"open projects in the UAE\"."
)
NARRATIVE_SAMPLE_ROWS = 5

NO_RESULTS = "no_results"
SQL_ERROR = "sql_error"
CLASSIFICATION_ERROR = "classification_error"

# Valid values offered to the classifier when it corrects itself.
CORRECTION_HINT_COLUMNS = (
    ("StatusChoice", 20),
    ("RequestCategory", 20),
    ("ProjectType", 20),
    ("Client", 10),
    ("State", 15),
)

T = TypeVar("T")


class ProjectDataSource(Protocol):
    """Read access the engine needs from the data source."""

    def execute(
        self, statement: str, params: Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:  # pragma: no cover - interface
        ...

    def count(self, column: str, value: str) -> int:  # pragma: no cover - interface
        ...

    def count_statement(self, statement: str, params: Mapping[str, Any]) -> int:  # pragma: no cover
        ...


@dataclass(frozen=True, slots=True)
class Failure:
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Turn:
    request_id: str
    question: str
    cleaned: str
    assembled: AssembledContext
    markers: dict[str, str]
    deadline: Deadline


@dataclass
class QueryAgent:
    """Coordinates classification, resolution and execution for one question."""

    data_source: ProjectDataSource
    index: ColumnValueIndex
    argument_resolver: ArgumentResolver
    suggestions: SuggestionBuilder
    builder: QueryBuilder
    classifier: QueryClassifier | None = None
    narrator: Narrator | None = None
    retriever: TemplateRetriever | None = None
    request_queue: RequestQueue | None = None
    sizes: ProjectSizeCalculator | None = None
    logger: QueryObservationSink | None = None
    max_follow_ups: int = 3
    max_context_rows: int = 20
    queue_timeout_s: float | None = 20.0

    def answer_question(
        self,
        *,
        request_id: str,
        question: str,
        previous_context: QueryContext | None = None,
        original_context: QueryContext | None = None,
        follow_up_depth: int = 0,
        explicit_follow_up: bool = False,
        deadline: Deadline | None = None,
    ) -> QueryResponse:
        """Return one tagged response for *question*.

        Engine errors become an ``ErrorResult``; anything else propagates to the
        boundary layer.
        """

        try:
            response = self._answer(
                request_id,
                question,
                ContextChain(original_context, previous_context, follow_up_depth, self.max_follow_ups),
                explicit_follow_up,
                deadline or Deadline(None),
            )
        except QueryEngineError as exc:
            self._log_event(
                request_id,
                "query_failed",
                {"kind": exc.kind, "error": exc.message},
            )
            return ErrorResult.from_exception(exc)
        self._log_event(request_id, "query_resolved", {"variant": response.tag})
        return response

    def next_chain(
        self,
        response: QueryResponse,
        *,
        question: str,
        previous_context: QueryContext | None = None,
        original_context: QueryContext | None = None,
        follow_up_depth: int = 0,
        explicit_follow_up: bool = False,
    ) -> ContextChain:
        """Return the context chain a caller should carry after *response*."""

        chain = ContextChain(original_context, previous_context, follow_up_depth, self.max_follow_ups)
        cleaned, _ = extract_markers(question)
        return chain.advance(response, chain.is_follow_up(cleaned, explicit_follow_up))

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _answer(
        self,
        request_id: str,
        question: str,
        chain: ContextChain,
        explicit_follow_up: bool,
        deadline: Deadline,
    ) -> QueryResponse:
        self._log_event(
            request_id,
            "question_received",
            {"question": question, "follow_up_depth": chain.depth},
        )
        cleaned, markers = extract_markers(question)

        try:
            assembled = chain.assemble(cleaned, explicit_follow_up)
        except FollowUpLimitError as exc:
            self._log_event(
                request_id,
                "follow_up_rejected",
                {"depth": exc.depth, "limit": exc.limit},
            )
            raise
        markers = self._collect_markers(assembled, markers)
        self._log_event(
            request_id,
            "context_assembled",
            {
                "follow_up": assembled.is_follow_up,
                "depth": assembled.depth,
                "markers": markers,
            },
        )

        self._ensure_index(request_id)
        deadline.check("classification")
        if self.classifier is None:
            return self._narrative(request_id, cleaned, assembled, deadline, "classifier_unavailable")

        try:
            classification = self._classify(cleaned, assembled, deadline)
        except ClassifierMalformedOutputError as exc:
            self._log_event(request_id, "classifier_error", {"error": exc.message})
            return self._narrative(request_id, cleaned, assembled, deadline, "classifier_malformed_output")

        turn = _Turn(request_id, question, cleaned, assembled, markers, deadline)
        return self._execute(turn, classification)

    def _execute(
        self, turn: _Turn, classification: Classification, corrected: bool = False
    ) -> QueryResponse:
        """Resolve, build and run *classification*.

        The first attempt inherits follow-up filters and may be corrected once;
        a corrected attempt uses its arguments as given and raises instead of
        falling back.
        """

        request_id = turn.request_id
        template = get_template(classification.template_name)
        if template is None:
            error = f"unknown template {classification.template_name!r}"
            self._log_event(request_id, "classifier_error", {"error": error})
            return self._recover(
                turn,
                classification,
                dict(classification.raw_arguments),
                Failure(CLASSIFICATION_ERROR, error),
                corrected,
                lambda: self._narrative_for(turn, "unknown_template"),
            )

        arguments = dict(classification.raw_arguments)
        if turn.assembled.is_follow_up and not corrected:
            assembled = turn.assembled
            arguments = merge_arguments(
                assembled.original.arguments if assembled.original else None,
                assembled.previous.arguments if assembled.previous else None,
                classification.raw_arguments,
            )
        self._log_event(
            request_id,
            "classification_ready",
            {"function_name": template.name, "arguments": arguments, "corrected": corrected},
        )

        turn.deadline.check("argument resolution")
        try:
            result = self.argument_resolver.resolve(
                template, arguments, question=turn.question, markers=turn.markers
            )
        except AmbiguousEntityError as exc:
            self._log_event(
                request_id,
                "entity_ambiguous",
                {"term": exc.term, "columns": [option.column for option in exc.options]},
            )
            return Disambiguation(term=exc.term, options=tuple(exc.options), argument=exc.argument)
        except NoMatchError as exc:
            self._log_event(
                request_id,
                "entity_unresolved",
                {"term": exc.term, "argument": exc.argument},
            )
            return self.suggestions.for_no_match(exc.term)
        except ClassifierMalformedOutputError as exc:
            self._log_event(request_id, "classifier_error", {"error": exc.message})
            return self._recover(
                turn,
                classification,
                arguments,
                Failure(CLASSIFICATION_ERROR, exc.message),
                corrected,
                lambda: self._narrative_for(turn, "classifier_malformed_output"),
            )

        for name, entities in result.entities.items():
            for entity in entities:
                self._log_event(
                    request_id,
                    "entity_resolved",
                    {
                        "argument": name,
                        "column": entity.column,
                        "value": entity.values(),
                        "match_count": entity.match_count,
                        "tier": entity.tier,
                    },
                )

        resolved = result.arguments
        if turn.assembled.is_follow_up:
            reference = referenced_entity_values(turn.cleaned, turn.assembled.previous)
            if reference is not None:
                column, values = reference
                resolved = replace(
                    resolved, filters=resolved.filters + (Filter(column, IN, values, "context"),)
                )
                self._log_event(
                    request_id,
                    "context_reference_applied",
                    {"column": column, "values": list(values)},
                )

        turn.deadline.check("query execution")
        built = self.builder.build(template, resolved, self._size_thresholds(template))
        try:
            rows = self.data_source.execute(built.sql, built.params)
        except TransientDataSourceError:
            raise
        except DataSourceError as exc:
            error = exc
            self._log_event(
                request_id,
                "sql_failed",
                {"statement": built.sql, "params": built.params, "error": error.message},
            )

            def reraise() -> QueryResponse:
                raise error

            return self._recover(
                turn, classification, arguments, Failure(SQL_ERROR, error.message), corrected, reraise
            )
        self._log_event(
            request_id,
            "sql_executed",
            {"statement": built.sql, "params": built.params, "row_count": len(rows)},
        )
        if not rows:
            return self._recover(
                turn,
                classification,
                arguments,
                Failure(NO_RESULTS, "The query returned no rows"),
                corrected,
                lambda: self.suggestions.for_zero_rows(resolved),
            )

        context = QueryContext.create(
            turn.question, template.name, arguments, rows, max_rows=self.max_context_rows
        )
        return Tabular(
            rows=tuple(rows),
            summary=summarize_rows(rows),
            template_name=template.name,
            arguments=MappingProxyType(arguments),
            sql=built.sql,
            params=MappingProxyType(dict(built.params)),
            chart_config=chart_config_for(template, rows),
            context=context,
        )

    # ------------------------------------------------------------------
    # Self-correction
    # ------------------------------------------------------------------

    def _recover(
        self,
        turn: _Turn,
        classification: Classification,
        arguments: Mapping[str, Any],
        failure: Failure,
        corrected: bool,
        fallback: Callable[[], QueryResponse],
    ) -> QueryResponse:
        if corrected:
            raise CorrectionFailedError(failure.message)
        response = self._correct(turn, classification, arguments, failure)
        if response is not None:
            return response
        return fallback()

    def _correct(
        self,
        turn: _Turn,
        classification: Classification,
        arguments: Mapping[str, Any],
        failure: Failure,
    ) -> Tabular | None:
        """Ask the classifier once more; return its answer only when it produced rows."""

        classifier = self.classifier
        if not isinstance(classifier, SelfCorrectingClassifier) or turn.deadline.expired():
            return None
        correction = Correction(
            template_name=classification.template_name,
            arguments=dict(arguments),
            error_type=failure.error_type,
            error_message=failure.message,
            hints=self._correction_hints(),
        )
        self._log_event(
            turn.request_id,
            "correction_requested",
            {"error_type": failure.error_type, "function_name": classification.template_name},
        )
        candidates = self.retriever.shortlist(turn.cleaned) if self.retriever is not None else None
        try:
            retry = self._submit(
                lambda: classifier.reclassify(turn.cleaned, correction, candidates=candidates),
                turn.deadline,
            )
            if retry == classification:
                raise CorrectionFailedError("classifier repeated the failed attempt")
            response = self._execute(turn, retry, corrected=True)
        except RequestTimeoutError:
            raise
        except QueryEngineError as exc:
            self._log_event(turn.request_id, "correction_failed", {"error": exc.message})
            return None
        if not isinstance(response, Tabular):
            self._log_event(
                turn.request_id,
                "correction_failed",
                {"error": f"corrected attempt answered with {response.tag}"},
            )
            return None
        self._log_event(
            turn.request_id,
            "correction_applied",
            {"function_name": retry.template_name, "arguments": dict(retry.raw_arguments)},
        )
        return response

    def _correction_hints(self) -> dict[str, list[str]]:
        hints: dict[str, list[str]] = {}
        for column, limit in CORRECTION_HINT_COLUMNS:
            values = self.index.values(column)
            if values:
                hints[column] = values[:limit]
        return hints

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def _classify(
        self, question: str, assembled: AssembledContext, deadline: Deadline
    ) -> Classification:
        candidates = self.retriever.shortlist(question) if self.retriever is not None else None
        classifier = self.classifier
        assert classifier is not None
        return self._submit(
            lambda: classifier.classify(
                question,
                previous=assembled.previous,
                original=assembled.original,
                candidates=candidates,
            ),
            deadline,
        )

    def _submit(self, call: Callable[[], T], deadline: Deadline) -> T:
        if self.request_queue is None:
            return call()
        return self.request_queue.submit(call, timeout=self._queue_timeout(deadline))

    def _size_thresholds(self, template: QueryTemplate) -> tuple[float, ...] | None:
        if template.group_by != SIZE_GROUP:
            return None
        percentiles = self.sizes.percentiles() if self.sizes is not None else FALLBACK_PERCENTILES
        return percentiles.thresholds

    def _narrative_for(self, turn: _Turn, reason: str) -> NarrativeFallback:
        return self._narrative(turn.request_id, turn.cleaned, turn.assembled, turn.deadline, reason)

    def _narrative(
        self,
        request_id: str,
        question: str,
        assembled: AssembledContext,
        deadline: Deadline,
        reason: str,
    ) -> NarrativeFallback:
        samples = self._narrative_samples(assembled)
        text = None
        narrator = self.narrator
        if narrator is not None and not deadline.expired():
            try:
                text = self._submit(lambda: narrator.narrate(question, samples), deadline)
            except (ClassifierMalformedOutputError, ClassifierUnavailableError) as exc:
                self._log_event(request_id, "narrator_error", {"error": exc.message})
        self._log_event(
            request_id,
            "narrative_fallback",
            {"reason": reason, "sample_count": len(samples)},
        )
        return NarrativeFallback(text=text or FALLBACK_NARRATIVE, samples=tuple(samples))

    def _narrative_samples(self, assembled: AssembledContext) -> list[dict[str, Any]]:
        if assembled.previous is not None and assembled.previous.result_rows:
            return [dict(row) for row in assembled.previous.result_rows[:NARRATIVE_SAMPLE_ROWS]]
        built = self.builder.build_sample(NARRATIVE_SAMPLE_ROWS)
        try:
            return self.data_source.execute(built.sql, built.params)
        except DataSourceError:
            return []

    def _ensure_index(self, request_id: str) -> None:
        if self.index.ensure_fresh():
            self._log_event(request_id, "column_index_refreshed", self.index.status())

    def _queue_timeout(self, deadline: Deadline) -> float | None:
        remaining = deadline.remaining()
        if remaining is None:
            return self.queue_timeout_s
        if self.queue_timeout_s is None:
            return remaining
        return min(remaining, self.queue_timeout_s)

    @staticmethod
    def _collect_markers(assembled: AssembledContext, current: dict[str, str]) -> dict[str, str]:
        if not assembled.is_follow_up:
            return current
        combined: dict[str, str] = {}
        for context in (assembled.original, assembled.previous):
            if context is not None:
                combined.update(extract_markers(context.question)[1])
        combined.update(current)
        return combined

    def _log_event(self, request_id: str, event: str, payload: dict[str, Any]) -> None:
        if self.logger is None:
            return
        try:
            self.logger.log_event(request_id, event, payload)
        except Exception:
            # Observability failures must not impact question handling.
            pass
