"""
Cost Tracker
=============

Append-only record of estimated spend per backend.

Costs are priced per 1K work units (token-like). Summaries and budget checks
are derived from the bounded entry log at read time; ``check_budget`` only
reports, the orchestrator decides what to do with the answer.
"""

from __future__ import annotations

import csv
import io
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from zodforge.infra.telemetry import get_logger
from zodforge.providers.metrics import to_epoch
from zodforge.providers.registry import BackendMetadata

logger = get_logger(__name__)

DEFAULT_MAX_ENTRIES = 10_000

@dataclass(frozen=True, slots=True)
class CostEntry:
    timestamp: float  # epoch seconds
    backend_id: str
    input_units: int
    output_units: int
    cost: float
    model: str | None = None
    request_id: str | None = None

@dataclass(slots=True)
class BackendCostTotals:
    cost: float = 0.0
    requests: int = 0
    input_units: int = 0
    output_units: int = 0

@dataclass(frozen=True, slots=True)
class CostSummary:
    total_cost: float
    total_requests: int
    total_input_units: int
    total_output_units: int
    average_cost_per_request: float
    by_backend: dict[str, BackendCostTotals] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_cost": round(self.total_cost, 6),
            "total_requests": self.total_requests,
            "total_input_units": self.total_input_units,
            "total_output_units": self.total_output_units,
            "average_cost_per_request": round(self.average_cost_per_request, 6),
            "by_backend": {
                backend_id: {
                    "cost": round(t.cost, 6),
                    "requests": t.requests,
                    "input_units": t.input_units,
                    "output_units": t.output_units,
                }
                for backend_id, t in self.by_backend.items()
            },
        }

class CostTracker:
    """Bounded, thread-safe spend log."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._entries: deque[CostEntry] = deque(maxlen=max_entries)
        self._clock = clock
        self._lock = threading.Lock()

    @staticmethod
    def calculate_cost(
        input_units: int,
        output_units: int,
        cost_per_input_unit: float,
        cost_per_output_unit: float,
    ) -> float:
        return (input_units / 1000) * cost_per_input_unit + (
            output_units / 1000
        ) * cost_per_output_unit

    def track(
        self,
        backend_id: str,
        *,
        input_units: int,
        output_units: int,
        cost: float,
        model: str | None = None,
        request_id: str | None = None,
    ) -> CostEntry:
        entry = CostEntry(
            timestamp=self._clock(),
            backend_id=backend_id,
            input_units=input_units,
            output_units=output_units,
            cost=cost,
            model=model,
            request_id=request_id,
        )
        with self._lock:
            self._entries.append(entry)
        logger.debug(
            "cost_tracked",
            backend=backend_id,
            cost=round(cost, 6),
            input_units=input_units,
            output_units=output_units,
        )
        return entry

    def _snapshot(self) -> list[CostEntry]:
        with self._lock:
            return list(self._entries)

    def get_summary(self, since: datetime | None = None) -> CostSummary:
        cutoff = to_epoch(since)
        relevant = [e for e in self._snapshot() if e.timestamp >= cutoff]

        by_backend: dict[str, BackendCostTotals] = {}
        for entry in relevant:
            totals = by_backend.setdefault(entry.backend_id, BackendCostTotals())
            totals.cost += entry.cost
            totals.requests += 1
            totals.input_units += entry.input_units
            totals.output_units += entry.output_units

        total_cost = sum(e.cost for e in relevant)
        return CostSummary(
            total_cost=total_cost,
            total_requests=len(relevant),
            total_input_units=sum(e.input_units for e in relevant),
            total_output_units=sum(e.output_units for e in relevant),
            average_cost_per_request=total_cost / len(relevant) if relevant else 0.0,
            by_backend=by_backend,
        )

    def check_budget(self, limit: float, since: datetime | None = None) -> bool:
        """True if spend since ``since`` exceeds ``limit``."""
        summary = self.get_summary(since)
        exceeded = summary.total_cost > limit
        if exceeded:
            logger.warning(
                "budget_exceeded",
                spent=round(summary.total_cost, 4),
                limit=limit,
            )
        return exceeded

    def get_most_cost_effective(
        self,
        candidates: Iterable[BackendMetadata],
        input_units: int,
        output_units: int,
    ) -> tuple[str, float] | None:
        """Cheapest backend for the workload as ``(backend_id, estimated_cost)``."""
        best: tuple[str, float] | None = None
        for meta in candidates:
            cost = self.calculate_cost(
                input_units, output_units, meta.cost_per_input_unit, meta.cost_per_output_unit
            )
            if best is None or cost < best[1]:
                best = (meta.id, cost)
        return best

    def entries_for_backend(self, backend_id: str, limit: int | None = None) -> list[CostEntry]:
        entries = [e for e in self._snapshot() if e.backend_id == backend_id]
        return entries[-limit:] if limit else entries

    def entries_between(self, start: datetime, end: datetime) -> list[CostEntry]:
        lo, hi = start.timestamp(), end.timestamp()
        return [e for e in self._snapshot() if lo <= e.timestamp <= hi]

    def export_csv(self) -> str:
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(
            ["timestamp", "backend", "model", "input_units", "output_units", "cost", "request_id"]
        )
        for e in self._snapshot():
            writer.writerow([
                datetime.fromtimestamp(e.timestamp, tz=UTC).isoformat(),
                e.backend_id,
                e.model or "",
                e.input_units,
                e.output_units,
                f"{e.cost:.6f}",
                e.request_id or "",
            ])
        return buf.getvalue()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("cost_tracker_cleared")

    @property
    def entry_count(self) -> int:
        with self._lock:
            return len(self._entries)
