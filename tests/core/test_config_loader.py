"""Tests for loading application settings from YAML."""

# ruff: noqa: PLR2004

from __future__ import annotations

from pathlib import Path

import pytest

from nlquery.core.config import DEFAULT_CASCADE_PRIORITY, load_settings


def test_load_settings_parses_sections(tmp_path: Path) -> None:
    config_path = tmp_path / "dev.yaml"
    config_path.write_text(
        """
model_id: foo
request_timeout_s: 45
column_index:
  refresh_interval_s: 120
  direct_columns: [Client, Region]
classifier:
  max_concurrent: 2
  min_interval_s: 0.5
  max_output_tokens: 300
disambiguation:
  dominance_ratio: 3
context:
  max_follow_ups: 2
size_classes:
  cache_ttl_s: 600
        """,
        encoding="utf-8",
    )

    settings = load_settings(config_path)

    assert settings.model_id == "foo"
    assert settings.narrative_model_id == "foo"
    assert settings.request_timeout_s == 45
    assert settings.column_index.refresh_interval_s == 120
    assert settings.column_index.direct_columns == ["Client", "Region"]
    assert settings.column_index.cascade_priority == DEFAULT_CASCADE_PRIORITY
    assert settings.classifier.max_concurrent == 2
    assert settings.classifier.max_output_tokens == 300
    assert settings.disambiguation.dominance_ratio == 3.0
    assert settings.context.max_follow_ups == 2
    assert settings.context.max_context_rows == 20
    assert settings.size_classes.cache_ttl_s == 600
    assert settings.size_classes.min_fee == 10000


def test_load_settings_defaults_when_sections_missing(tmp_path: Path) -> None:
    config_path = tmp_path / "empty.yaml"
    config_path.write_text("model_id: bar\n", encoding="utf-8")

    settings = load_settings(config_path)

    assert settings.csv_source is None
    assert settings.paths is None
    assert settings.table_name == "projects"
    assert settings.retry.max_retries == 2
    assert settings.disambiguation.dominance_ratio is None
    assert settings.context.max_follow_ups == 3
    assert "City" in settings.column_index.disambiguation_columns
    assert settings.size_classes.cache_ttl_s == 86400


def test_load_settings_handles_csv_source(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    csv_file = tmp_path / "projects.csv"
    csv_file.write_text("Title\nBridge\n", encoding="utf-8")
    config_path = tmp_path / "dev.yaml"
    config_path.write_text(
        """
model_id: foo
data_sources:
  csv:
    path_env: PROJECTS_CSV_PATH
    table_name: pipeline
        """,
        encoding="utf-8",
    )
    monkeypatch.setenv("PROJECTS_CSV_PATH", str(csv_file))

    settings = load_settings(config_path)

    assert settings.csv_source is not None
    assert settings.csv_source.resolve_path() == csv_file
    assert settings.table_name == "pipeline"


def test_csv_source_requires_environment_variable(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config_path = tmp_path / "dev.yaml"
    config_path.write_text(
        "data_sources:\n  csv:\n    path_env: MISSING_CSV_PATH\n    table_name: projects\n",
        encoding="utf-8",
    )
    monkeypatch.delenv("MISSING_CSV_PATH", raising=False)

    settings = load_settings(config_path)

    assert settings.csv_source is not None
    with pytest.raises(OSError):
        settings.csv_source.resolve_path()
