"""
Backend Registry
=================

Holds the registered backend adapters together with their metadata
(pricing, admission ceiling, capability flags, priority, weight) and
runtime health.

The registry never calls a backend; health is written by the orchestrator
from health-check results and live invocation outcomes.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from zodforge.core.types import FeatureFlag
from zodforge.infra.telemetry import get_logger
from zodforge.providers.base import BackendAdapter

logger = get_logger(__name__)

def clamp_priority(priority: int) -> int:
    return max(0, min(100, int(priority)))

def clamp_weight(weight: float) -> float:
    return max(0.0, min(1.0, float(weight)))

@dataclass(slots=True)
class BackendMetadata:
    """Static and administratively mutable description of a backend."""

    id: str
    cost_per_input_unit: float = 0.0  # per 1K input units
    cost_per_output_unit: float = 0.0  # per 1K output units
    max_requests_per_minute: int = 60
    max_units_per_request: int = 4096
    feature_flags: frozenset[FeatureFlag] = field(default_factory=frozenset)
    priority: int = 50  # 0-100, higher preferred
    weight: float = 0.5  # 0-1, share under weighted selection
    enabled: bool = True
    display_name: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("backend id must be non-empty")
        if self.cost_per_input_unit < 0 or self.cost_per_output_unit < 0:
            raise ValueError("backend costs must be non-negative")
        if self.max_requests_per_minute <= 0 or self.max_units_per_request <= 0:
            raise ValueError("backend limits must be positive")
        self.feature_flags = frozenset(FeatureFlag(f) for f in self.feature_flags)
        self.priority = clamp_priority(self.priority)
        self.weight = clamp_weight(self.weight)
        if not self.display_name:
            self.display_name = self.id

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "id" and hasattr(self, "id"):
            raise AttributeError("backend id cannot change after creation")
        object.__setattr__(self, name, value)

    def supports(self, flag: FeatureFlag) -> bool:
        return flag in self.feature_flags

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "description": self.description,
            "cost_per_input_unit": self.cost_per_input_unit,
            "cost_per_output_unit": self.cost_per_output_unit,
            "max_requests_per_minute": self.max_requests_per_minute,
            "max_units_per_request": self.max_units_per_request,
            "feature_flags": sorted(f.value for f in self.feature_flags),
            "priority": self.priority,
            "weight": self.weight,
            "enabled": self.enabled,
        }

@dataclass(slots=True)
class BackendEntry:
    """Runtime wrapper owned by the registry."""

    metadata: BackendMetadata
    adapter: BackendAdapter
    last_health_check: datetime | None = None
    is_healthy: bool | None = None

    @property
    def id(self) -> str:
        return self.metadata.id

class BackendRegistry:
    """
    Registry of backend adapters and their metadata.

    Thread-safe; every operation is an in-memory update under one lock.
    Entries returned by ``list_*`` are live objects; callers must go through
    the ``set_*`` methods to mutate them.
    """

    def __init__(self) -> None:
        self._entries: dict[str, BackendEntry] = {}
        self._lock = threading.Lock()

    def register(self, adapter: BackendAdapter, metadata: BackendMetadata) -> None:
        """Register a backend. Re-registering an id overwrites its entry."""
        with self._lock:
            if metadata.id in self._entries:
                logger.warning("backend_reregistered", backend=metadata.id)
            self._entries[metadata.id] = BackendEntry(metadata=metadata, adapter=adapter)
        logger.info(
            "backend_registered",
            backend=metadata.id,
            priority=metadata.priority,
            weight=metadata.weight,
            enabled=metadata.enabled,
        )

    def unregister(self, backend_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(backend_id, None) is not None
        if removed:
            logger.info("backend_unregistered", backend=backend_id)
        return removed

    def get(self, backend_id: str) -> BackendEntry | None:
        with self._lock:
            return self._entries.get(backend_id)

    def list_all(self) -> list[BackendEntry]:
        with self._lock:
            return list(self._entries.values())

    def list_enabled(self) -> list[BackendEntry]:
        """Enabled backends, priority descending (registration order on ties)."""
        with self._lock:
            enabled = [e for e in self._entries.values() if e.metadata.enabled]
        return sorted(enabled, key=lambda e: e.metadata.priority, reverse=True)

    def list_by_feature(self, flag: FeatureFlag | str) -> list[str]:
        """Ids of enabled backends advertising ``flag``."""
        flag = FeatureFlag(flag)
        with self._lock:
            return [
                backend_id
                for backend_id, entry in self._entries.items()
                if entry.metadata.enabled and entry.metadata.supports(flag)
            ]

    def filter_enabled(self, backend_ids: Iterable[str]) -> list[BackendEntry]:
        """Enabled entries among ``backend_ids``, priority descending."""
        wanted = set(backend_ids)
        return [e for e in self.list_enabled() if e.id in wanted]

    # ── Administrative Mutation ────────────────────────────────────

    def set_enabled(self, backend_id: str, enabled: bool) -> bool:
        with self._lock:
            entry = self._entries.get(backend_id)
            if entry is None:
                return False
            entry.metadata.enabled = bool(enabled)
        logger.info("backend_enabled_changed", backend=backend_id, enabled=bool(enabled))
        return True

    def set_priority(self, backend_id: str, priority: int) -> bool:
        with self._lock:
            entry = self._entries.get(backend_id)
            if entry is None:
                return False
            entry.metadata.priority = clamp_priority(priority)
        return True

    def set_weight(self, backend_id: str, weight: float) -> bool:
        with self._lock:
            entry = self._entries.get(backend_id)
            if entry is None:
                return False
            entry.metadata.weight = clamp_weight(weight)
        return True

    # ── Health ─────────────────────────────────────────────────────

    def record_health(self, backend_id: str, healthy: bool) -> None:
        with self._lock:
            entry = self._entries.get(backend_id)
            if entry is not None:
                entry.is_healthy = healthy
                entry.last_health_check = datetime.now(UTC)

    def health_status(self, backend_id: str) -> dict[str, Any]:
        with self._lock:
            entry = self._entries.get(backend_id)
            if entry is None:
                return {"is_healthy": None, "last_check": None}
            return {"is_healthy": entry.is_healthy, "last_check": entry.last_health_check}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("registry_cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, backend_id: object) -> bool:
        with self._lock:
            return backend_id in self._entries
