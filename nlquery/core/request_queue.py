"""Bounded concurrency for classifier calls plus a per-request deadline."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from nlquery.core.errors import RateLimitError, RequestTimeoutError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

AVERAGE_CALL_S = 3.0


class RequestQueue:
    """Funnels calls to the external model through a small worker limit.

    ``submit`` blocks until a slot is free and the minimum spacing since the
    previous call start has elapsed. Waiting longer than ``timeout`` raises
    ``RateLimitError`` without running the call, so nothing is left half done.
    """

    def __init__(
        self,
        max_concurrent: int = 3,
        min_interval_s: float = 0.3,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.min_interval_s = max(0.0, min_interval_s)
        self._clock = clock
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._lock = threading.Lock()
        self._waiting = 0
        self._active = 0
        self._last_start: float | None = None

    def submit(self, fn: Callable[[], T], timeout: float | None = None) -> T:
        deadline = None if timeout is None else self._clock() + max(0.0, timeout)
        with self._lock:
            self._waiting += 1
            if self._waiting > 2:
                LOGGER.info(
                    "Request queue size: %s, active: %s/%s",
                    self._waiting,
                    self._active,
                    self.max_concurrent,
                )
        try:
            acquired = self._slots.acquire(timeout=timeout) if timeout is not None else self._slots.acquire()
            if not acquired:
                raise RateLimitError(
                    "The analysis service is busy; please retry shortly.",
                    retry_after=self.estimated_wait_s(),
                )
        finally:
            with self._lock:
                self._waiting -= 1

        try:
            self._respect_spacing(deadline)
            with self._lock:
                self._active += 1
            try:
                return fn()
            finally:
                with self._lock:
                    self._active -= 1
        finally:
            self._slots.release()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "queue_length": self._waiting,
                "active_count": self._active,
                "max_concurrent": self.max_concurrent,
            }

    def is_busy(self) -> bool:
        stats = self.stats()
        return stats["queue_length"] > 0 or stats["active_count"] >= self.max_concurrent

    def estimated_wait_s(self) -> int:
        stats = self.stats()
        pending = stats["queue_length"] + stats["active_count"]
        return math.ceil(pending / self.max_concurrent * AVERAGE_CALL_S)

    def _respect_spacing(self, deadline: float | None) -> None:
        while True:
            with self._lock:
                now = self._clock()
                wait = 0.0
                if self._last_start is not None:
                    wait = self._last_start + self.min_interval_s - now
                if wait <= 0:
                    self._last_start = now
                    return
            if deadline is not None and now + wait > deadline:
                raise RateLimitError(
                    "The analysis service is busy; please retry shortly.",
                    retry_after=self.estimated_wait_s(),
                )
            self._sleep(wait)


@dataclass(slots=True)
class Deadline:
    """Overall time budget for one request, checked between pipeline stages."""

    timeout_s: float | None
    clock: Callable[[], float] = field(default=time.monotonic)
    _started: float = field(init=False)

    def __post_init__(self) -> None:
        self._started = self.clock()

    def remaining(self) -> float | None:
        if self.timeout_s is None:
            return None
        return max(0.0, self.timeout_s - (self.clock() - self._started))

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, stage: str) -> None:
        if self.expired():
            raise RequestTimeoutError(f"Request exceeded {self.timeout_s}s before {stage}")
