"""
Backend Metrics Log
====================

Append-only log of backend attempt outcomes with derived views.

Design:
  - Bounded ring (``deque(maxlen=...)``): the oldest entry is dropped first
  - Entries are immutable; every aggregate (success rate, latency
    percentiles, error breakdown, timeline) is computed at read time over a
    snapshot, never stored
  - ``since`` filters accept a timezone-aware or naive ``datetime``
"""

from __future__ import annotations

import json
import threading
import time
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from zodforge.infra.telemetry import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ENTRIES = 10_000
UNKNOWN_ERROR = "unknown_error"

@dataclass(frozen=True, slots=True)
class MetricEntry:
    timestamp: float  # epoch seconds
    backend_id: str
    success: bool
    latency_ms: float
    error_tag: str | None = None

@dataclass(frozen=True, slots=True)
class BackendMetrics:
    """Aggregate view over one backend's entries."""

    backend_id: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    success_rate: float = 0.0
    total_latency_ms: float = 0.0
    avg_latency_ms: float = 0.0
    min_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    p50_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    last_request_time: float | None = None
    last_success_time: float | None = None
    last_failure_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

@dataclass(frozen=True, slots=True)
class ErrorShare:
    count: int
    percentage: float

@dataclass(frozen=True, slots=True)
class TimelineBucket:
    timestamp: float  # bucket start, epoch seconds
    requests: int
    successful: int
    failed: int
    avg_latency_ms: float

def to_epoch(since: datetime | None) -> float:
    """Epoch seconds for ``since``; naive datetimes are taken as local time."""
    if since is None:
        return 0.0
    return since.timestamp()

def percentile(sorted_values: list[float], p: float) -> float:
    """Nearest-rank percentile (0-100) over pre-sorted values."""
    if not sorted_values:
        return 0.0
    idx = int(len(sorted_values) * p / 100)
    return sorted_values[min(idx, len(sorted_values) - 1)]

class MetricsLog:
    """Bounded, thread-safe log of backend attempt outcomes."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._entries: deque[MetricEntry] = deque(maxlen=max_entries)
        self._clock = clock
        self._lock = threading.Lock()

    def record(
        self,
        backend_id: str,
        success: bool,
        latency_ms: float,
        error_tag: str | None = None,
    ) -> MetricEntry:
        entry = MetricEntry(
            timestamp=self._clock(),
            backend_id=backend_id,
            success=success,
            latency_ms=float(latency_ms),
            error_tag=None if success else (error_tag or UNKNOWN_ERROR),
        )
        with self._lock:
            self._entries.append(entry)
        logger.debug(
            "metric_recorded",
            backend=backend_id,
            success=success,
            latency_ms=round(entry.latency_ms, 1),
            error_tag=entry.error_tag,
        )
        return entry

    def _select(self, backend_id: str | None, since: datetime | None) -> list[MetricEntry]:
        cutoff = to_epoch(since)
        with self._lock:
            snapshot = list(self._entries)
        return [
            e
            for e in snapshot
            if e.timestamp >= cutoff and (backend_id is None or e.backend_id == backend_id)
        ]

    # ── Derived Views ──────────────────────────────────────────────

    def get_metrics(self, backend_id: str, since: datetime | None = None) -> BackendMetrics:
        return _aggregate(backend_id, self._select(backend_id, since))

    def get_all_metrics(self, since: datetime | None = None) -> dict[str, BackendMetrics]:
        grouped: dict[str, list[MetricEntry]] = {}
        for entry in self._select(None, since):
            grouped.setdefault(entry.backend_id, []).append(entry)
        return {backend_id: _aggregate(backend_id, entries) for backend_id, entries in grouped.items()}

    def get_top_by_success_rate(
        self, limit: int = 5, since: datetime | None = None
    ) -> list[BackendMetrics]:
        ranked = sorted(
            self.get_all_metrics(since).values(), key=lambda m: m.success_rate, reverse=True
        )
        return ranked[:limit]

    def get_fastest(self, limit: int = 5, since: datetime | None = None) -> list[BackendMetrics]:
        active = [m for m in self.get_all_metrics(since).values() if m.total_requests > 0]
        return sorted(active, key=lambda m: m.avg_latency_ms)[:limit]

    def get_slowest(self, limit: int = 5, since: datetime | None = None) -> list[BackendMetrics]:
        active = [m for m in self.get_all_metrics(since).values() if m.total_requests > 0]
        return sorted(active, key=lambda m: m.avg_latency_ms, reverse=True)[:limit]

    def average_latencies(self, since: datetime | None = None) -> dict[str, float]:
        """Average latency per backend with at least one recorded attempt."""
        return {
            backend_id: m.avg_latency_ms
            for backend_id, m in self.get_all_metrics(since).items()
            if m.total_requests > 0
        }

    def get_error_breakdown(
        self, backend_id: str, since: datetime | None = None
    ) -> dict[str, ErrorShare]:
        failures = [e for e in self._select(backend_id, since) if not e.success]
        counts = Counter(e.error_tag or UNKNOWN_ERROR for e in failures)
        total = len(failures)
        return {
            tag: ErrorShare(count=count, percentage=count / total * 100 if total else 0.0)
            for tag, count in counts.items()
        }

    def get_timeline(
        self,
        backend_id: str,
        interval_ms: int = 60_000,
        since: datetime | None = None,
    ) -> list[TimelineBucket]:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        buckets: dict[int, list[MetricEntry]] = {}
        for entry in self._select(backend_id, since):
            bucket = int(entry.timestamp * 1000) // interval_ms * interval_ms
            buckets.setdefault(bucket, []).append(entry)

        timeline = []
        for bucket_ms in sorted(buckets):
            entries = buckets[bucket_ms]
            successful = sum(1 for e in entries if e.success)
            timeline.append(
                TimelineBucket(
                    timestamp=bucket_ms / 1000,
                    requests=len(entries),
                    successful=successful,
                    failed=len(entries) - successful,
                    avg_latency_ms=sum(e.latency_ms for e in entries) / len(entries),
                )
            )
        return timeline

    # ── Maintenance ────────────────────────────────────────────────

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("metrics_cleared")

    @property
    def entry_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def export_json(self) -> str:
        return json.dumps(
            {
                "timestamp": datetime.now(UTC).isoformat(),
                "total_entries": self.entry_count,
                "metrics": {k: v.to_dict() for k, v in self.get_all_metrics().items()},
            },
            indent=2,
        )

def _aggregate(backend_id: str, entries: list[MetricEntry]) -> BackendMetrics:
    if not entries:
        return BackendMetrics(backend_id=backend_id)

    latencies = [e.latency_ms for e in entries]
    ordered = sorted(latencies)
    successes = [e for e in entries if e.success]
    failures = [e for e in entries if not e.success]
    total_latency = sum(latencies)

    return BackendMetrics(
        backend_id=backend_id,
        total_requests=len(entries),
        successful_requests=len(successes),
        failed_requests=len(failures),
        success_rate=len(successes) / len(entries),
        total_latency_ms=total_latency,
        avg_latency_ms=total_latency / len(entries),
        min_latency_ms=ordered[0],
        max_latency_ms=ordered[-1],
        p50_latency_ms=percentile(ordered, 50),
        p95_latency_ms=percentile(ordered, 95),
        p99_latency_ms=percentile(ordered, 99),
        last_request_time=entries[-1].timestamp,
        last_success_time=successes[-1].timestamp if successes else None,
        last_failure_time=failures[-1].timestamp if failures else None,
    )
