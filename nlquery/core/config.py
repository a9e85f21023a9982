"""Utilities for loading application settings from YAML configuration files."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_SEARCHABLE_COLUMNS = [
    "Client",
    "Company",
    "PointOfContact",
    "ProjectType",
    "Division",
    "Department",
    "RequestCategory",
    "Region",
    "State",
    "StatusChoice",
    "City",
    "ServiceType",
]

DEFAULT_CASCADE_PRIORITY = [
    "Client",
    "Company",
    "Region",
    "State",
    "ProjectType",
    "Division",
    "Department",
    "RequestCategory",
]

DEFAULT_DIRECT_COLUMNS = ["Client", "Company", "Region", "ProjectType", "Division"]

DEFAULT_DISAMBIGUATION_COLUMNS = DEFAULT_DIRECT_COLUMNS + ["City", "State"]


@dataclass(slots=True)
class CSVSourceSettings:
    path_env: str
    table_name: str

    def resolve_path(self) -> Path:
        value = os.getenv(self.path_env)
        if not value:
            raise OSError(f"Environment variable '{self.path_env}' is required for CSV data source")
        path = Path(value).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"CSV data source not found at '{path}'")
        return path


@dataclass(slots=True)
class RetrySettings:
    max_retries: int = 2
    backoff_s: float = 1.0
    max_backoff_s: float = 3.0


@dataclass(slots=True)
class ColumnIndexSettings:
    refresh_interval_s: float = 3600.0
    columns: list[str] = field(default_factory=lambda: list(DEFAULT_SEARCHABLE_COLUMNS))
    cascade_priority: list[str] = field(default_factory=lambda: list(DEFAULT_CASCADE_PRIORITY))
    direct_columns: list[str] = field(default_factory=lambda: list(DEFAULT_DIRECT_COLUMNS))
    disambiguation_columns: list[str] = field(
        default_factory=lambda: list(DEFAULT_DISAMBIGUATION_COLUMNS)
    )


@dataclass(slots=True)
class ClassifierSettings:
    api_key_env: str = "OPENAI_API_KEY"
    max_concurrent: int = 3
    min_interval_s: float = 0.3
    queue_timeout_s: float = 20.0
    max_output_tokens: int | None = None


@dataclass(slots=True)
class DisambiguationSettings:
    dominance_ratio: float | None = None


@dataclass(slots=True)
class ContextSettings:
    max_follow_ups: int = 3
    max_context_rows: int = 20


@dataclass(slots=True)
class SizeClassSettings:
    cache_ttl_s: float = 86400.0
    min_fee: float = 10000.0


@dataclass(slots=True)
class PathsSettings:
    query_logs_dir: str | None = None


@dataclass(slots=True)
class Settings:
    model_id: str
    narrative_model_id: str
    csv_source: CSVSourceSettings | None
    retry: RetrySettings
    column_index: ColumnIndexSettings
    classifier: ClassifierSettings
    disambiguation: DisambiguationSettings
    context: ContextSettings
    paths: PathsSettings | None
    request_timeout_s: float = 60.0
    table_name: str = "projects"
    size_classes: SizeClassSettings = field(default_factory=SizeClassSettings)


def _load_yaml(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _str_list(values: Any, default: list[str]) -> list[str]:
    if not isinstance(values, list) or not values:
        return list(default)
    return [str(value) for value in values if str(value).strip()]


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def load_settings(path: str | Path) -> Settings:
    """Read configuration from *path* and return structured settings."""

    config_path = Path(path)
    raw = _load_yaml(config_path)

    data_sources = raw.get("data_sources", {}) or {}
    csv_source_raw = data_sources.get("csv")
    csv_source = None
    if csv_source_raw:
        csv_source = CSVSourceSettings(
            path_env=str(csv_source_raw.get("path_env")),
            table_name=str(csv_source_raw.get("table_name", "projects")),
        )

    retry_raw = data_sources.get("retry", {}) or {}
    retry = RetrySettings(
        max_retries=int(retry_raw.get("max_retries", 2)),
        backoff_s=float(retry_raw.get("backoff_s", 1.0)),
        max_backoff_s=float(retry_raw.get("max_backoff_s", 3.0)),
    )

    index_raw = raw.get("column_index", {}) or {}
    column_index = ColumnIndexSettings(
        refresh_interval_s=float(index_raw.get("refresh_interval_s", 3600)),
        columns=_str_list(index_raw.get("columns"), DEFAULT_SEARCHABLE_COLUMNS),
        cascade_priority=_str_list(index_raw.get("cascade_priority"), DEFAULT_CASCADE_PRIORITY),
        direct_columns=_str_list(index_raw.get("direct_columns"), DEFAULT_DIRECT_COLUMNS),
        disambiguation_columns=_str_list(
            index_raw.get("disambiguation_columns"), DEFAULT_DISAMBIGUATION_COLUMNS
        ),
    )

    classifier_raw = raw.get("classifier", {}) or {}
    max_tokens = classifier_raw.get("max_output_tokens")
    classifier = ClassifierSettings(
        api_key_env=str(classifier_raw.get("api_key_env", "OPENAI_API_KEY")),
        max_concurrent=int(classifier_raw.get("max_concurrent", 3)),
        min_interval_s=float(classifier_raw.get("min_interval_s", 0.3)),
        queue_timeout_s=float(classifier_raw.get("queue_timeout_s", 20)),
        max_output_tokens=int(max_tokens) if max_tokens else None,
    )

    disambiguation_raw = raw.get("disambiguation", {}) or {}
    disambiguation = DisambiguationSettings(
        dominance_ratio=_optional_float(disambiguation_raw.get("dominance_ratio")),
    )

    context_raw = raw.get("context", {}) or {}
    context = ContextSettings(
        max_follow_ups=int(context_raw.get("max_follow_ups", 3)),
        max_context_rows=int(context_raw.get("max_context_rows", 20)),
    )

    sizes_raw = raw.get("size_classes", {}) or {}
    size_classes = SizeClassSettings(
        cache_ttl_s=float(sizes_raw.get("cache_ttl_s", 86400)),
        min_fee=float(sizes_raw.get("min_fee", 10000)),
    )

    paths_raw: dict[str, Any] | None = raw.get("paths")
    paths = None
    if paths_raw:
        query_logs_dir = paths_raw.get("query_logs_dir")
        paths = PathsSettings(query_logs_dir=str(query_logs_dir) if query_logs_dir else None)

    model_id = str(raw.get("model_id", ""))
    return Settings(
        model_id=model_id,
        narrative_model_id=str(raw.get("narrative_model_id") or model_id),
        csv_source=csv_source,
        retry=retry,
        column_index=column_index,
        classifier=classifier,
        disambiguation=disambiguation,
        context=context,
        paths=paths,
        request_timeout_s=float(raw.get("request_timeout_s", 60)),
        table_name=csv_source.table_name if csv_source else str(raw.get("table_name", "projects")),
        size_classes=size_classes,
    )
