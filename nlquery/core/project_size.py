"""Relative project size classes derived from the fee distribution.

Projects are bucketed into five classes by where their fee falls among the
20th, 40th, 60th and 80th fee percentiles. Percentiles come from fees above a
small floor, are computed once and cached; while they are unavailable fixed
thresholds apply instead.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol, Sequence

from nlquery.core.errors import DataSourceError
from nlquery.core.query_builder import QueryBuilder
from nlquery.core.templates import SIZE_CLASSES

LOGGER = logging.getLogger(__name__)


class FeeSource(Protocol):
    def execute(
        self, statement: str, params: Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:  # pragma: no cover - interface
        ...


@dataclass(frozen=True, slots=True)
class PercentileData:
    p20: float
    p40: float
    p60: float
    p80: float
    min: float | None = None
    max: float | None = None
    total_projects: int = 0
    calculated_at: str | None = None

    @property
    def thresholds(self) -> tuple[float, float, float, float]:
        return (self.p20, self.p40, self.p60, self.p80)

    def bounds(self, size: str) -> tuple[float | None, float | None]:
        """``(lower, upper)`` fee bounds of *size*; lower inclusive, upper exclusive."""

        position = SIZE_CLASSES.index(size)
        edges = (None, *self.thresholds, None)
        return edges[position], edges[position + 1]

    def classify(self, fee: float) -> str:
        for size, threshold in zip(SIZE_CLASSES, self.thresholds):
            if fee < threshold:
                return size
        return SIZE_CLASSES[-1]


FALLBACK_PERCENTILES = PercentileData(p20=100_000, p40=1_000_000, p60=10_000_000, p80=50_000_000)


def normalize_size(value: Any) -> str | None:
    """Canonical size class for *value* (``"mega"`` -> ``"Mega"``), else ``None``."""

    if not isinstance(value, str):
        return None
    text = value.strip().lower()
    for size in SIZE_CLASSES:
        if size.lower() == text:
            return size
    return None


def percentile(ordered: Sequence[float], fraction: float) -> float:
    """Continuous percentile of an ascending sequence, interpolating between ranks."""

    if not ordered:
        raise ValueError("percentile of an empty sequence")
    rank = fraction * (len(ordered) - 1)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (rank - lower)


@dataclass
class ProjectSizeCalculator:
    """Caches fee percentiles read from the data source."""

    data_source: FeeSource
    builder: QueryBuilder = field(default_factory=QueryBuilder)
    min_fee: float = 10_000.0
    ttl_s: float = 86_400.0
    clock: Callable[[], float] = field(default=time.time)

    def __post_init__(self) -> None:
        self._cached: PercentileData | None = None
        self._calculated_at: float | None = None
        self._lock = threading.Lock()

    def percentiles(self, force_refresh: bool = False) -> PercentileData:
        """Cached percentiles, recomputed when older than ``ttl_s``.

        A failed or empty computation is not cached; the fixed thresholds are
        returned and the next call tries again.
        """

        with self._lock:
            if not force_refresh and self._is_fresh():
                return self._cached  # type: ignore[return-value]
            calculated = self._calculate()
            if calculated is None:
                LOGGER.warning("Fee percentiles unavailable; using fixed size thresholds")
                return FALLBACK_PERCENTILES
            self._cached = calculated
            self._calculated_at = self.clock()
            return calculated

    def bounds(self, size: str) -> tuple[float | None, float | None]:
        return self.percentiles().bounds(size)

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
            self._calculated_at = None

    def _is_fresh(self) -> bool:
        if self._cached is None or self._calculated_at is None:
            return False
        return self.clock() - self._calculated_at < self.ttl_s

    def _calculate(self) -> PercentileData | None:
        built = self.builder.build_fee_values(self.min_fee)
        try:
            rows = self.data_source.execute(built.sql, built.params)
        except DataSourceError as exc:
            LOGGER.error("Error calculating fee percentiles: %s", exc)
            return None

        fees = [float(row["fee"]) for row in rows if row.get("fee") is not None]
        if not fees:
            return None
        fees.sort()
        data = PercentileData(
            p20=percentile(fees, 0.2),
            p40=percentile(fees, 0.4),
            p60=percentile(fees, 0.6),
            p80=percentile(fees, 0.8),
            min=fees[0],
            max=fees[-1],
            total_projects=len(fees),
            calculated_at=datetime.now(timezone.utc).isoformat(),
        )
        LOGGER.info(
            "Fee percentiles over %s project(s): p20=%.0f p40=%.0f p60=%.0f p80=%.0f",
            data.total_projects,
            data.p20,
            data.p40,
            data.p60,
            data.p80,
        )
        return data
