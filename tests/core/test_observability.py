"""Tests for JSONL observability sinks."""

from __future__ import annotations

import json
from pathlib import Path

from nlquery.core.observability import JSONLQueryLogger, MemoryQueryLogger, sanitize_request_id


def _load_events(path: Path) -> list[dict[str, str]]:
    with path.open("r", encoding="utf-8") as handle:
        return [json.loads(line) for line in handle]


def test_jsonl_query_logger_appends_events(tmp_path: Path) -> None:
    logger = JSONLQueryLogger(base_dir=tmp_path)

    logger.log_event("T-1", "question_received", {"question": "open projects", "skipped": None})
    logger.log_event("T-1", "sql_executed", {"row_count": 3})

    files = sorted(tmp_path.glob("*/*.jsonl"))
    assert len(files) == 1
    target = files[0]
    assert target.name.endswith("-T-1.jsonl")
    events = _load_events(target)
    assert [event["event"] for event in events] == ["question_received", "sql_executed"]
    assert events[0]["question"] == "open projects"
    assert "skipped" not in events[0]
    assert events[1]["row_count"] == 3
    assert "timestamp" in events[0]


def test_request_ids_are_sanitised_for_file_names() -> None:
    assert sanitize_request_id("../etc/passwd") == "-etc-passwd"
    assert sanitize_request_id("   ") == "request"


def test_memory_logger_records_event_names() -> None:
    logger = MemoryQueryLogger()

    logger.log_event("R-1", "question_received", {})
    logger.log_event("R-1", "query_resolved", {"variant": "tabular"})

    assert logger.names() == ["question_received", "query_resolved"]


def test_finished_requests_release_their_log_path(tmp_path: Path) -> None:
    logger = JSONLQueryLogger(base_dir=tmp_path)

    for number in range(500):
        request_id = f"R-{number}"
        logger.log_event(request_id, "question_received", {})
        logger.log_event(request_id, "query_resolved" if number % 2 else "query_failed", {})

    assert len(logger._paths) == 0
    assert len(list(tmp_path.glob("*/*.jsonl"))) == 500


def test_unfinished_requests_are_bounded(tmp_path: Path) -> None:
    logger = JSONLQueryLogger(base_dir=tmp_path, max_open_requests=4)

    for number in range(20):
        logger.log_event(f"R-{number}", "question_received", {})

    assert list(logger._paths) == ["R-16", "R-17", "R-18", "R-19"]
