"""Factory helpers for constructing engine dependencies from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from nlquery.agents.argument_resolver import ArgumentResolver
from nlquery.agents.disambiguation import DisambiguationDetector, DisambiguationPolicy
from nlquery.agents.entity_resolver import EntityResolver
from nlquery.agents.query_agent import QueryAgent
from nlquery.agents.suggestions import SuggestionBuilder
from nlquery.core.column_index import ColumnValueIndex
from nlquery.core.config import Settings
from nlquery.core.observability import JSONLQueryLogger, QueryObservationSink
from nlquery.core.project_size import ProjectSizeCalculator
from nlquery.core.query_builder import QueryBuilder
from nlquery.core.request_queue import RequestQueue
from nlquery.core.synonyms import SynonymTables
from nlquery.core.templates import DATE_COLUMN, FEE_COLUMN, TITLE_COLUMN, WIN_COLUMN
from nlquery.integrations.csv_sql_executor import CsvSQLExecutor
from nlquery.integrations.datasource import RetryingDataSource, SQLExecutor
from nlquery.integrations.in_memory_sql_executor import InMemorySQLExecutor
from nlquery.integrations.openai_classifier import (
    KeywordTemplateRetriever,
    Narrator,
    OpenAINarrator,
    OpenAIQueryClassifier,
    QueryClassifier,
)
from nlquery.integrations.openai_models import GPTResponseClient, OpenAIClientFactory

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class EngineDependencies:
    """Collection of wired components shared by the web app, CLI and runner."""

    agent: QueryAgent
    data_source: RetryingDataSource
    index: ColumnValueIndex
    request_queue: RequestQueue
    query_logger: QueryObservationSink | None = None
    sizes: ProjectSizeCalculator | None = None


def build_dependencies(
    settings: Settings,
    *,
    executor: SQLExecutor | None = None,
    classifier: QueryClassifier | None = None,
    narrator: Narrator | None = None,
    query_logger: QueryObservationSink | None = None,
) -> EngineDependencies:
    """Create dependency instances based on *settings*.

    Explicit collaborators override the ones derived from configuration, which
    lets scenarios and tests run against seeded rows and scripted classifiers.
    """

    if executor is None:
        executor = _build_executor(settings)
    data_source = RetryingDataSource(
        executor=executor,
        table_name=settings.table_name,
        max_retries=settings.retry.max_retries,
        backoff_s=settings.retry.backoff_s,
        max_backoff_s=settings.retry.max_backoff_s,
    )

    index_settings = settings.column_index
    index = ColumnValueIndex(
        source=data_source,
        columns=list(index_settings.columns),
        refresh_interval_s=index_settings.refresh_interval_s,
    )
    synonyms = SynonymTables(index)
    builder = QueryBuilder(table_name=settings.table_name)
    resolver = EntityResolver(
        index=index,
        data_source=data_source,
        synonyms=synonyms,
        cascade_priority=list(index_settings.cascade_priority),
        direct_columns=list(index_settings.direct_columns),
        builder=builder,
    )
    detector = DisambiguationDetector(
        resolver=resolver,
        columns=list(index_settings.disambiguation_columns),
        policy=DisambiguationPolicy(settings.disambiguation.dominance_ratio),
    )
    size_settings = settings.size_classes
    sizes = ProjectSizeCalculator(
        data_source=data_source,
        builder=builder,
        min_fee=size_settings.min_fee,
        ttl_s=size_settings.cache_ttl_s,
    )
    suggestions = SuggestionBuilder(
        data_source=data_source,
        builder=builder,
        index=index,
        columns=list(index_settings.columns),
    )

    classifier_settings = settings.classifier
    request_queue = RequestQueue(
        max_concurrent=classifier_settings.max_concurrent,
        min_interval_s=classifier_settings.min_interval_s,
    )
    if classifier is None and narrator is None:
        classifier, narrator = _build_model_clients(settings)

    if query_logger is None:
        query_logger = JSONLQueryLogger(base_dir=_resolve_query_logs_dir(settings))

    agent = QueryAgent(
        data_source=data_source,
        index=index,
        argument_resolver=ArgumentResolver(
            resolver=resolver, detector=detector, synonyms=synonyms, sizes=sizes
        ),
        suggestions=suggestions,
        builder=builder,
        classifier=classifier,
        narrator=narrator,
        retriever=KeywordTemplateRetriever(),
        request_queue=request_queue,
        sizes=sizes,
        logger=query_logger,
        max_follow_ups=settings.context.max_follow_ups,
        max_context_rows=settings.context.max_context_rows,
        queue_timeout_s=classifier_settings.queue_timeout_s,
    )
    return EngineDependencies(
        agent=agent,
        data_source=data_source,
        index=index,
        request_queue=request_queue,
        query_logger=query_logger,
        sizes=sizes,
    )


def _build_executor(settings: Settings) -> SQLExecutor:
    if settings.csv_source is not None:
        path = settings.csv_source.resolve_path()
        return CsvSQLExecutor(csv_path=path, table_name=settings.csv_source.table_name)
    LOGGER.warning("No data source configured; using an empty in-memory table")
    columns = [TITLE_COLUMN, FEE_COLUMN, WIN_COLUMN, DATE_COLUMN]
    columns.extend(column for column in settings.column_index.columns if column not in columns)
    return InMemorySQLExecutor(table_name=settings.table_name, columns=columns)


def _build_model_clients(
    settings: Settings,
) -> tuple[QueryClassifier | None, Narrator | None]:
    factory = OpenAIClientFactory(api_key_env=settings.classifier.api_key_env)
    if not settings.model_id or not factory.is_configured():
        LOGGER.warning(
            "Classifier disabled: set model_id and %s to enable template classification",
            settings.classifier.api_key_env,
        )
        return None, None
    classifier = OpenAIQueryClassifier(
        client=GPTResponseClient(model=settings.model_id, client_factory=factory),
        max_output_tokens=settings.classifier.max_output_tokens,
        max_context_rows=min(5, settings.context.max_context_rows),
    )
    narrator = OpenAINarrator(
        client=GPTResponseClient(model=settings.narrative_model_id, client_factory=factory),
    )
    return classifier, narrator


def _resolve_query_logs_dir(settings: Settings) -> Path:
    base = (
        settings.paths.query_logs_dir
        if settings.paths and settings.paths.query_logs_dir
        else "logs/query"
    )
    path = Path(base).expanduser()
    path.mkdir(parents=True, exist_ok=True)
    return path
