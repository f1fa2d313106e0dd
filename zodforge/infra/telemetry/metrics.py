"""
Prometheus Metrics — Orchestration Counters
=============================================

Typed Prometheus metrics for the provider orchestration layer.

Design:
  - One ``CollectorRegistry`` per ``OrchestrationMetrics`` instance, so several
    orchestrators (and tests) can coexist without duplicate-series errors
  - Counters/histograms only; derived views (success rate, percentiles,
    cost summaries) live in ``zodforge.providers.metrics`` and
    ``zodforge.providers.cost``

Metric Naming Convention:
  - zodforge_{component}_{metric}_{unit}
  - e.g., zodforge_backend_latency_seconds
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

class OrchestrationMetrics:
    """Prometheus series recorded by the Orchestrator."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()

        # ── Backend Metrics ──
        self.backend_requests = Counter(
            "zodforge_backend_requests_total",
            "Backend invocation attempts",
            labelnames=["backend", "outcome"],  # outcome: success/error/timeout
            registry=self.registry,
        )

        self.backend_latency = Histogram(
            "zodforge_backend_latency_seconds",
            "Backend invocation latency",
            labelnames=["backend"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self.registry,
        )

        self.backend_cost = Counter(
            "zodforge_backend_cost_usd_total",
            "Estimated spend per backend",
            labelnames=["backend"],
            registry=self.registry,
        )

        # ── Orchestration Metrics ──
        self.admission_denied = Counter(
            "zodforge_admission_denied_total",
            "Attempts skipped because the backend's rate limit was reached",
            labelnames=["backend"],
            registry=self.registry,
        )

        self.fallbacks = Counter(
            "zodforge_fallback_transitions_total",
            "Transitions from a failed or skipped backend to the next candidate",
            labelnames=["from_backend"],
            registry=self.registry,
        )

        self.refine_requests = Counter(
            "zodforge_refine_requests_total",
            "Terminal outcomes of refine calls",
            labelnames=["result"],  # result: success/cached/error code
            registry=self.registry,
        )

        # ── Cache Metrics ──
        self.cache_lookups = Counter(
            "zodforge_cache_lookups_total",
            "Response cache lookups",
            labelnames=["result"],  # result: hit/miss
            registry=self.registry,
        )

        self.cache_pruned = Counter(
            "zodforge_cache_pruned_total",
            "Cache entries removed by periodic pruning",
            registry=self.registry,
        )

    # ── Recording Methods ──────────────────────────────────────────

    def record_attempt(self, *, backend: str, outcome: str, latency_s: float) -> None:
        self.backend_requests.labels(backend=backend, outcome=outcome).inc()
        self.backend_latency.labels(backend=backend).observe(latency_s)

    def record_cost(self, *, backend: str, cost: float) -> None:
        if cost > 0:
            self.backend_cost.labels(backend=backend).inc(cost)

    def record_admission_denied(self, backend: str) -> None:
        self.admission_denied.labels(backend=backend).inc()

    def record_fallback(self, from_backend: str) -> None:
        self.fallbacks.labels(from_backend=from_backend).inc()

    def record_result(self, result: str) -> None:
        self.refine_requests.labels(result=result).inc()

    def record_cache_lookup(self, *, hit: bool) -> None:
        self.cache_lookups.labels(result="hit" if hit else "miss").inc()

    def record_pruned(self, count: int) -> None:
        if count > 0:
            self.cache_pruned.inc(count)

    def export_prometheus(self) -> bytes:
        """Export metrics in Prometheus text format."""
        return generate_latest(self.registry)
