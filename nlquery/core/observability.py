"""JSONL-backed observability helpers for the query engine.

Each request gets its own file under a per-day directory:

    <base_dir>/<YYYYMMDD>/<HHMMSSmmm>-<request_id>.jsonl
"""

from __future__ import annotations

import json
import re
import threading
from collections import OrderedDict
from datetime import UTC, datetime
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

TERMINAL_EVENTS = frozenset({"query_resolved", "query_failed"})


class QueryObservationSink(Protocol):
    """Records lifecycle events emitted while answering a question."""

    def log_event(self, request_id: str, event: str, payload: dict[str, Any]) -> None:  # pragma: no cover - interface
        ...


def utc_now_iso() -> str:
    """Return the current UTC time in ISO-8601 with millisecond precision."""

    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def sanitize_request_id(request_id: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_-]+", "-", request_id.strip())
    return cleaned or "request"


@dataclass(slots=True)
class JSONLQueryLogger(QueryObservationSink):
    """Persists engine events under a dedicated logs directory.

    A request's file is remembered until its terminal event is written. At
    most ``max_open_requests`` files are remembered; older ones are forgotten
    first, so a request that never finishes cannot pin memory.
    """

    base_dir: Path
    max_open_requests: int = 256
    _paths: OrderedDict[str, Path] = field(init=False, default_factory=OrderedDict)
    _lock: threading.Lock = field(init=False, default_factory=threading.Lock)

    def log_event(self, request_id: str, event: str, payload: dict[str, Any]) -> None:  # type: ignore[override]
        record = {key: value for key, value in payload.items() if value is not None}
        record.setdefault("event", event)
        record.setdefault("request_id", request_id)
        record.setdefault("timestamp", utc_now_iso())
        with self._lock:
            target = self.path_for(request_id)
            with target.open("a", encoding="utf-8") as handle:
                json.dump(record, handle, ensure_ascii=False, default=str)
                handle.write("\n")
            if event in TERMINAL_EVENTS:
                self._paths.pop(request_id, None)

    def path_for(self, request_id: str) -> Path:
        """Return the log file for *request_id*, creating its directory on first use."""

        cached = self._paths.get(request_id)
        if cached is not None:
            self._paths.move_to_end(request_id)
            return cached
        now = datetime.now(UTC)
        day_dir = self.base_dir.expanduser() / now.strftime("%Y%m%d")
        day_dir.mkdir(parents=True, exist_ok=True)
        stamp = now.strftime("%H%M%S%f")[:-3]
        target = day_dir / f"{stamp}-{sanitize_request_id(request_id)}.jsonl"
        self._paths[request_id] = target
        while len(self._paths) > max(1, self.max_open_requests):
            self._paths.popitem(last=False)
        return target


@dataclass(slots=True)
class MemoryQueryLogger(QueryObservationSink):
    """Keeps events in memory; used by the chat CLI and tests."""

    events: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)

    def log_event(self, request_id: str, event: str, payload: dict[str, Any]) -> None:  # type: ignore[override]
        self.events.append((request_id, event, dict(payload)))

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]
