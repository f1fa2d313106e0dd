"""
Response Cache — Content-Addressed LRU with TTL
=================================================

Memoizes successful refinements keyed by the semantic content of the request.

Design:
  - Key = SHA-256 of canonical JSON over schema, samples and backend-agnostic
    options; mappings become key-sorted pairs and non-JSON values carry their
    type, so ``{1: "x"}`` and ``{"1": "x"}`` stay distinct
  - Routing hints never reach the key, so a hit is served no matter which
    backend would have been selected
  - ``OrderedDict`` in recency order: hits ``move_to_end``, eviction pops the
    front, both O(1)
  - TTL checked lazily on lookup and eagerly by ``prune`` (driven by the
    orchestrator's background task, not by the cache itself)
  - ``prune`` snapshots under the lock, filters outside it, then deletes the
    still-identical expired entries under the lock again
"""

from __future__ import annotations

import hashlib
import json
import sys
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from zodforge.infra.telemetry import get_logger
from zodforge.providers.base import RefinementRequest, RefinementResult

logger = get_logger(__name__)

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_TTL_S = 3600.0

_JSON_SCALARS = (str, int, float, bool, type(None))

def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)

def _canonical(value: Any) -> Any:
    """JSON-ready form of ``value`` that keeps values of different types apart."""
    if type(value) in _JSON_SCALARS:
        return value
    if isinstance(value, Mapping):
        pairs = [[_canonical(k), _canonical(v)] for k, v in value.items()]
        pairs.sort(key=lambda pair: _dumps(pair[0]))
        return {"map": pairs}
    if isinstance(value, list):
        return [_canonical(v) for v in value]
    if isinstance(value, tuple):
        return {"tuple": [_canonical(v) for v in value]}
    if isinstance(value, (set, frozenset)):
        return {"set": sorted((_canonical(v) for v in value), key=_dumps)}
    kind = type(value)
    return {"type": f"{kind.__module__}.{kind.__qualname__}", "value": str(value)}

def cache_key(request: RefinementRequest) -> str:
    """Deterministic key over the semantically relevant request fields."""
    options = request.options
    payload = {
        "schema": {
            "code": request.schema.code,
            "type_name": request.schema.type_name,
            "fields": request.schema.fields,
        },
        "samples": request.samples,
        "options": {
            "model": options.model,
            "temperature": options.temperature,
            "extra": options.extra,
        },
    }
    canonical = _dumps(_canonical(payload))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

@dataclass(slots=True)
class CacheEntry:
    key: str
    value: RefinementResult
    created_at: float
    ttl_s: float
    origin_backend: str
    hit_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl_s

@dataclass(frozen=True, slots=True)
class CacheStats:
    total_entries: int
    total_hits: int
    total_misses: int
    hit_rate: float
    approximate_memory_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_entries": self.total_entries,
            "total_hits": self.total_hits,
            "total_misses": self.total_misses,
            "hit_rate": round(self.hit_rate, 4),
            "approximate_memory_bytes": self.approximate_memory_bytes,
        }

class ResponseCache:
    """Thread-safe LRU response cache with per-entry TTL."""

    def __init__(
        self,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl_s: float = DEFAULT_TTL_S,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if default_ttl_s <= 0:
            raise ValueError("default_ttl_s must be positive")
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._max_entries = max_entries
        self._default_ttl_s = default_ttl_s
        self._enabled = enabled
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def default_ttl_s(self) -> float:
        return self._default_ttl_s

    def get(self, request: RefinementRequest) -> RefinementResult | None:
        """Return the cached result for ``request`` or None on a miss."""
        if not self._enabled:
            return None

        key = cache_key(request)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._misses += 1
                expired = True
            else:
                entry.hit_count += 1
                self._hits += 1
                self._entries.move_to_end(key)
                expired = False

        if expired:
            logger.debug("cache_expired", type_name=request.schema.type_name)
            return None
        logger.info(
            "cache_hit",
            type_name=request.schema.type_name,
            origin_backend=entry.origin_backend,
            hit_count=entry.hit_count,
        )
        return entry.value

    def set(
        self,
        request: RefinementRequest,
        value: RefinementResult,
        *,
        ttl_s: float | None = None,
    ) -> None:
        if not self._enabled:
            return

        key = cache_key(request)
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=self._clock(),
            ttl_s=ttl_s if ttl_s is not None else self._default_ttl_s,
            origin_backend=value.backend_id,
        )
        evicted: str | None = None
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            else:
                while len(self._entries) >= self._max_entries:
                    evicted, _ = self._entries.popitem(last=False)
            self._entries[key] = entry

        if evicted is not None:
            logger.debug("cache_evicted", key=evicted[:12])
        logger.info("cache_set", type_name=request.schema.type_name, ttl_s=entry.ttl_s)

    def invalidate(self, request: RefinementRequest) -> bool:
        key = cache_key(request)
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.info("cache_invalidated", type_name=request.schema.type_name)
        return removed

    def clear(self) -> None:
        """Drop all entries and reset hit/miss counters."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
        logger.info("cache_cleared")

    def prune(self) -> int:
        """Remove expired entries; returns how many were removed."""
        with self._lock:
            snapshot = list(self._entries.items())
        now = self._clock()
        expired = [(key, entry) for key, entry in snapshot if entry.is_expired(now)]
        if not expired:
            return 0

        removed = 0
        with self._lock:
            for key, entry in expired:
                if self._entries.get(key) is entry:
                    del self._entries[key]
                    removed += 1
        if removed:
            logger.info("cache_pruned", removed=removed)
        return removed

    def get_stats(self) -> CacheStats:
        with self._lock:
            hits, misses = self._hits, self._misses
            entries = list(self._entries.values())
        total = hits + misses
        return CacheStats(
            total_entries=len(entries),
            total_hits=hits,
            total_misses=misses,
            hit_rate=hits / total if total > 0 else 0.0,
            approximate_memory_bytes=sum(_approximate_size(e) for e in entries),
        )

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        logger.info("cache_enabled_changed", enabled=enabled)

    def update_settings(
        self, *, max_entries: int | None = None, default_ttl_s: float | None = None
    ) -> None:
        """Change capacity/default TTL; shrinking capacity evicts LRU entries."""
        with self._lock:
            if default_ttl_s is not None:
                if default_ttl_s <= 0:
                    raise ValueError("default_ttl_s must be positive")
                self._default_ttl_s = default_ttl_s
            if max_entries is not None:
                if max_entries <= 0:
                    raise ValueError("max_entries must be positive")
                self._max_entries = max_entries
                while len(self._entries) > self._max_entries:
                    self._entries.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, request: object) -> bool:
        if not isinstance(request, RefinementRequest):
            return False
        key = cache_key(request)
        with self._lock:
            return key in self._entries

def _approximate_size(entry: CacheEntry) -> int:
    response = entry.value.response
    size = sys.getsizeof(entry.key) + sys.getsizeof(response.output_schema)
    size += sum(sys.getsizeof(s) for s in response.suggestions)
    for imp in response.improvements:
        size += sum(sys.getsizeof(part) for part in (imp.field, imp.before, imp.after, imp.reason))
    return size
