"""
Orchestrator — Cache, Select, Admit, Invoke, Fall Back
========================================================

Single entry point for schema refinement across registered AI backends.

Request flow (strictly sequential within one ``refine`` call):
  1. CacheCheck — a hit returns immediately, marked ``cached``
  2. Selecting — a pinned backend is the sole primary; otherwise the
     configured strategy orders the enabled candidates
  3. Admitting — a rate-limited backend is skipped without an attempt
  4. Invoking — the adapter call runs under ``request_timeout_s``; success
     is accounted and written through to the cache, failure advances to
     the next candidate

Terminal errors:
  - ``NoBackendsAvailableError``: nothing enabled, or the pinned backend is
    unknown, disabled or outside the caller's candidates
  - ``RateLimitedError``: every candidate denied admission and none was
    invoked
  - ``AllBackendsExhaustedError``: at least one invocation failed and the
    chain is used up; carries every attempt (skips included) in order

Concurrency:
  Each ``refine`` runs independently; the shared components guard their own
  state. Adapter calls are the only suspension points. Cache pruning runs as
  a background task between ``start()`` and ``stop()``.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import random
import time
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from zodforge.core.exceptions import (
    AllBackendsExhaustedError,
    AttemptFailure,
    BackendError,
    BackendInvocationError,
    NoBackendsAvailableError,
    RateLimitedError,
    ZodForgeError,
)
from zodforge.core.types import AttemptKind, HealthStatus, SelectionStrategy
from zodforge.infra.telemetry import (
    OrchestrationMetrics,
    get_logger,
    get_request_id,
    request_context,
)
from zodforge.providers.base import (
    BackendAdapter,
    BackendResponse,
    RefinementRequest,
    RefinementResult,
)
from zodforge.providers.cache import CacheStats, ResponseCache
from zodforge.providers.config import ConfigListener, ConfigManager, OrchestratorConfig
from zodforge.providers.cost import CostSummary, CostTracker
from zodforge.providers.metrics import BackendMetrics, MetricsLog
from zodforge.providers.rate_limiter import RateLimitConfig, RateLimiter, RateLimitStatus
from zodforge.providers.registry import BackendEntry, BackendMetadata, BackendRegistry
from zodforge.providers.selection import DEFAULT_OUTPUT_UNITS, estimate_units, select

logger = get_logger(__name__)

DEFAULT_PRUNE_INTERVAL_S = 300.0

@dataclass(frozen=True, slots=True)
class BackendHealth:
    backend_id: str
    enabled: bool
    is_healthy: bool | None
    last_check: datetime | None

@dataclass(frozen=True, slots=True)
class HealthSummary:
    status: HealthStatus
    backends: tuple[BackendHealth, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "backends": {
                b.backend_id: {
                    "enabled": b.enabled,
                    "is_healthy": b.is_healthy,
                    "last_check": b.last_check.isoformat() if b.last_check else None,
                }
                for b in self.backends
            },
        }

class Orchestrator:
    """
    Routes refinement requests across the registered backends.

    Every collaborator is injectable; anything not passed in is created with
    defaults derived from the configuration. One instance owns one set of
    components, so several orchestrators can coexist in a process.

    Usage:
        orchestrator = Orchestrator(config=OrchestratorConfig(strategy="cost"))
        orchestrator.register_backend(adapter, BackendMetadata(id="openai", ...))

        async with orchestrator:
            result = await orchestrator.refine(request)
    """

    def __init__(
        self,
        *,
        config: OrchestratorConfig | None = None,
        config_manager: ConfigManager | None = None,
        registry: BackendRegistry | None = None,
        rate_limiter: RateLimiter | None = None,
        cache: ResponseCache | None = None,
        metrics_log: MetricsLog | None = None,
        cost_tracker: CostTracker | None = None,
        telemetry: OrchestrationMetrics | None = None,
        prune_interval_s: float = DEFAULT_PRUNE_INTERVAL_S,
        rng: Callable[[], float] = random.random,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        if prune_interval_s <= 0:
            raise ValueError("prune_interval_s must be positive")
        self.config_manager = config_manager or ConfigManager(config)
        current = self.config_manager.get_config()

        self.registry = registry if registry is not None else BackendRegistry()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.cache = (
            cache
            if cache is not None
            else ResponseCache(default_ttl_s=current.cache_ttl_s, enabled=current.cache_enabled)
        )
        self.metrics_log = metrics_log or MetricsLog()
        self.cost_tracker = cost_tracker or CostTracker()
        self.telemetry = telemetry or OrchestrationMetrics()

        self._prune_interval_s = prune_interval_s
        self._prune_task: asyncio.Task[None] | None = None
        self._rng = rng
        self._timer = timer
        self._round_robin = itertools.count()
        self._performance_degraded_logged = False

        self._apply_config(current)
        self.config_manager.add_listener(self._apply_config)

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the periodic cache prune task."""
        if self._prune_task and not self._prune_task.done():
            return
        self._prune_task = asyncio.create_task(self._prune_loop())
        logger.info("orchestrator_started", prune_interval_s=self._prune_interval_s)

    async def stop(self) -> None:
        if self._prune_task and not self._prune_task.done():
            self._prune_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._prune_task
        self._prune_task = None
        logger.info("orchestrator_stopped")

    async def __aenter__(self) -> Orchestrator:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _prune_loop(self) -> None:
        while True:
            await asyncio.sleep(self._prune_interval_s)
            try:
                self.prune_cache()
            except Exception as e:
                logger.error("cache_prune_failed", exc=e)

    # ── Refinement ─────────────────────────────────────────────────

    async def refine(
        self,
        request: RefinementRequest,
        candidates: Iterable[str] | None = None,
    ) -> RefinementResult:
        """
        Refine ``request.schema`` on the best available backend.

        Args:
            request: Schema, samples and options
            candidates: Optional pre-filtered backend ids; when given, only
                enabled backends among them are considered

        Raises:
            NoBackendsAvailableError, RateLimitedError, AllBackendsExhaustedError
        """
        request_id = get_request_id() or uuid.uuid4().hex[:12]
        try:
            with request_context(request_id=request_id):
                result = await self._refine(request, candidates)
        except ZodForgeError as e:
            self.telemetry.record_result(e.error_code.lower())
            raise
        self.telemetry.record_result("cached" if result.cached else "success")
        return result

    async def _refine(
        self, request: RefinementRequest, candidates: Iterable[str] | None
    ) -> RefinementResult:
        started = self._timer()
        config = self.config_manager.get_config()

        if config.cache_enabled:
            cached = self.cache.get(request)
            self.telemetry.record_cache_lookup(hit=cached is not None)
            if cached is not None:
                return cached.as_cached(self._elapsed_ms(started))

        chain = self._plan(request, config, candidates)
        input_units = estimate_units(request.schema.code)
        failures: list[AttemptFailure] = []
        invoked: list[str] = []

        for index, entry in enumerate(chain):
            backend_id = entry.id
            if index > 0:
                self.telemetry.record_fallback(chain[index - 1].id)
                logger.info("fallback_next", backend=backend_id, position=index)

            with request_context(backend_id=backend_id):
                if config.rate_limiting_enabled:
                    decision = self.rate_limiter.check_and_record(backend_id)
                    if not decision.allowed:
                        self.telemetry.record_admission_denied(backend_id)
                        failures.append(
                            AttemptFailure(
                                backend_id=backend_id,
                                reason=f"rate limited, retry after {decision.retry_after_s}s",
                                kind=AttemptKind.RATE_LIMITED,
                                retry_after_s=decision.retry_after_s,
                            )
                        )
                        continue

                invoked.append(backend_id)
                try:
                    response = await self._invoke(entry, request, config)
                except BackendInvocationError as e:
                    failures.append(
                        AttemptFailure(backend_id=backend_id, reason=e.reason, kind=e.kind)
                    )
                    continue

                self._account_success(entry, response, input_units, config)
                result = RefinementResult(
                    response=response,
                    backend_id=backend_id,
                    processing_time_ms=self._elapsed_ms(started),
                    attempts=tuple(invoked),
                )
                if config.cache_enabled:
                    self.cache.set(request, result, ttl_s=config.cache_ttl_s)
                logger.info(
                    "refine_succeeded",
                    backend=backend_id,
                    attempts=len(invoked),
                    skipped=len(failures),
                    processing_time_ms=round(result.processing_time_ms, 1),
                )
                return result

        if not invoked:
            retry_after = min(f.retry_after_s or 1 for f in failures)
            logger.warning("refine_rate_limited", retry_after_s=retry_after)
            raise RateLimitedError(retry_after, [f.backend_id for f in failures])

        error = AllBackendsExhaustedError(failures)
        logger.error("refine_exhausted", attempted=",".join(error.attempted_backends))
        raise error

    def _plan(
        self,
        request: RefinementRequest,
        config: OrchestratorConfig,
        candidates: Iterable[str] | None,
    ) -> list[BackendEntry]:
        """Primary backend followed by its fallbacks."""
        pool = (
            self.registry.list_enabled()
            if candidates is None
            else self.registry.filter_enabled(candidates)
        )
        max_fallbacks = config.max_fallback_attempts if config.fallback_enabled else 0

        pinned = request.options.pinned_backend
        if pinned is not None:
            entry = next((e for e in pool if e.id == pinned), None)
            if entry is None:
                raise NoBackendsAvailableError(
                    f"Requested backend '{pinned}' is not registered, disabled "
                    "or outside the candidate list"
                )
            peers = [e for e in pool if e.id != pinned]
            return [entry, *peers[:max_fallbacks]]

        if not pool:
            raise NoBackendsAvailableError()

        by_id = {e.id: e for e in pool}
        ordered_ids = select(
            [e.metadata for e in pool],
            config.strategy,
            estimate_units(request.schema.code),
            DEFAULT_OUTPUT_UNITS,
            preferred_ids=request.options.preferred_backends or config.preferred_backend_ids,
            round_robin_cursor=(
                next(self._round_robin)
                if config.strategy == SelectionStrategy.ROUND_ROBIN
                else 0
            ),
            max_fallback_attempts=max_fallbacks,
            latency_ms_by_backend=self._latencies(config, by_id),
            rng=self._rng,
        )
        return [by_id[backend_id] for backend_id in ordered_ids]

    def _latencies(
        self, config: OrchestratorConfig, pool: Mapping[str, BackendEntry]
    ) -> dict[str, float] | None:
        if config.strategy != SelectionStrategy.PERFORMANCE:
            return None
        latencies = {
            backend_id: ms
            for backend_id, ms in self.metrics_log.average_latencies().items()
            if backend_id in pool
        }
        if not latencies and not self._performance_degraded_logged:
            self._performance_degraded_logged = True
            logger.warning("performance_strategy_degraded", fallback="priority")
        return latencies

    async def _invoke(
        self, entry: BackendEntry, request: RefinementRequest, config: OrchestratorConfig
    ) -> BackendResponse:
        backend_id = entry.id
        started = self._timer()
        try:
            response = await asyncio.wait_for(
                entry.adapter.invoke(request), timeout=config.request_timeout_s
            )
        except TimeoutError as e:
            self._account_failure(backend_id, self._elapsed_ms(started), "timeout", config)
            raise BackendInvocationError(
                backend_id,
                f"timed out after {config.request_timeout_s}s",
                original_error=e,
                timed_out=True,
            ) from e
        except Exception as e:
            tag = "backend_error" if isinstance(e, BackendError) else type(e).__name__
            self._account_failure(backend_id, self._elapsed_ms(started), tag, config)
            raise BackendInvocationError(
                backend_id, str(e) or type(e).__name__, original_error=e
            ) from e

        latency_ms = self._elapsed_ms(started)
        if config.metrics_enabled:
            self.metrics_log.record(backend_id, True, latency_ms)
        self.telemetry.record_attempt(
            backend=backend_id, outcome="success", latency_s=latency_ms / 1000
        )
        return response

    def _account_success(
        self,
        entry: BackendEntry,
        response: BackendResponse,
        input_units: int,
        config: OrchestratorConfig,
    ) -> None:
        self.registry.record_health(entry.id, True)
        if not config.cost_tracking_enabled:
            return

        meta = entry.metadata
        output_units = response.estimated_output_units or estimate_units(response.output_schema)
        cost = CostTracker.calculate_cost(
            input_units, output_units, meta.cost_per_input_unit, meta.cost_per_output_unit
        )
        self.cost_tracker.track(
            entry.id, input_units=input_units, output_units=output_units, cost=cost
        )
        self.telemetry.record_cost(backend=entry.id, cost=cost)

        if config.daily_budget_limit is not None:
            midnight = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
            self.cost_tracker.check_budget(config.daily_budget_limit, since=midnight)

    def _account_failure(
        self, backend_id: str, latency_ms: float, tag: str, config: OrchestratorConfig
    ) -> None:
        if config.metrics_enabled:
            self.metrics_log.record(backend_id, False, latency_ms, tag)
        self.telemetry.record_attempt(
            backend=backend_id,
            outcome="timeout" if tag == "timeout" else "error",
            latency_s=latency_ms / 1000,
        )
        self.registry.record_health(backend_id, False)
        logger.warning("backend_attempt_failed", backend=backend_id, error_tag=tag)

    def _elapsed_ms(self, started: float) -> float:
        return (self._timer() - started) * 1000

    # ── Backend Administration ─────────────────────────────────────

    def register_backend(self, adapter: BackendAdapter, metadata: BackendMetadata) -> None:
        self.registry.register(adapter, metadata)
        self.rate_limiter.set_limit(
            metadata.id, RateLimitConfig(max_requests=metadata.max_requests_per_minute)
        )

    def unregister_backend(self, backend_id: str) -> bool:
        removed = self.registry.unregister(backend_id)
        self.rate_limiter.remove_limit(backend_id)
        return removed

    def set_backend_enabled(self, backend_id: str, enabled: bool) -> bool:
        return self.registry.set_enabled(backend_id, enabled)

    def set_backend_priority(self, backend_id: str, priority: int) -> bool:
        return self.registry.set_priority(backend_id, priority)

    def set_backend_weight(self, backend_id: str, weight: float) -> bool:
        return self.registry.set_weight(backend_id, weight)

    # ── Configuration ──────────────────────────────────────────────

    def set_strategy(self, strategy: SelectionStrategy | str) -> OrchestratorConfig:
        return self.config_manager.set_strategy(strategy)

    def update_config(
        self, changes: Mapping[str, Any] | None = None, **kwargs: Any
    ) -> OrchestratorConfig:
        return self.config_manager.update({**(changes or {}), **kwargs})

    def get_config(self) -> OrchestratorConfig:
        return self.config_manager.get_config()

    def export_config(self) -> str:
        return self.config_manager.export_json()

    def import_config(self, payload: str) -> OrchestratorConfig:
        return self.config_manager.import_json(payload)

    def reset_config(self) -> OrchestratorConfig:
        return self.config_manager.reset()

    def add_config_listener(self, listener: ConfigListener) -> None:
        self.config_manager.add_listener(listener)

    def remove_config_listener(self, listener: ConfigListener) -> bool:
        return self.config_manager.remove_listener(listener)

    def _apply_config(self, config: OrchestratorConfig) -> None:
        if self.cache.enabled != config.cache_enabled:
            self.cache.set_enabled(config.cache_enabled)
        if self.cache.default_ttl_s != config.cache_ttl_s:
            self.cache.update_settings(default_ttl_s=config.cache_ttl_s)

    # ── Cache & Admission ──────────────────────────────────────────

    def get_cache_stats(self) -> CacheStats:
        return self.cache.get_stats()

    def clear_cache(self) -> None:
        self.cache.clear()

    def prune_cache(self) -> int:
        removed = self.cache.prune()
        self.telemetry.record_pruned(removed)
        return removed

    def get_rate_limit_statuses(self) -> dict[str, RateLimitStatus]:
        return self.rate_limiter.status_all()

    def reset_rate_limits(self) -> None:
        self.rate_limiter.reset_all()

    # ── Accounting ─────────────────────────────────────────────────

    def get_cost_summary(self, since: datetime | None = None) -> CostSummary:
        return self.cost_tracker.get_summary(since)

    def get_provider_metrics(
        self, backend_id: str, since: datetime | None = None
    ) -> BackendMetrics:
        return self.metrics_log.get_metrics(backend_id, since)

    def get_all_metrics(self, since: datetime | None = None) -> dict[str, BackendMetrics]:
        return self.metrics_log.get_all_metrics(since)

    # ── Health ─────────────────────────────────────────────────────

    async def check_all_backends_health(self) -> dict[str, bool]:
        """
        Probe every registered backend concurrently and record the results.

        A probe that outlasts ``request_timeout_s`` counts as unhealthy.
        """
        entries = self.registry.list_all()
        timeout_s = self.get_config().request_timeout_s
        results = await asyncio.gather(*(self._probe(entry, timeout_s) for entry in entries))
        return dict(zip((e.id for e in entries), results, strict=True))

    async def _probe(self, entry: BackendEntry, timeout_s: float) -> bool:
        try:
            healthy = bool(await asyncio.wait_for(entry.adapter.health_check(), timeout_s))
        except TimeoutError:
            logger.warning("health_check_timed_out", backend=entry.id, timeout_s=timeout_s)
            healthy = False
        except Exception as e:
            logger.warning("health_check_failed", backend=entry.id, error=str(e))
            healthy = False
        self.registry.record_health(entry.id, healthy)
        return healthy

    def get_health_summary(self) -> HealthSummary:
        """
        Aggregate health of the enabled backends.

        DOWN when nothing is enabled or every enabled backend last reported
        unhealthy; DEGRADED when at least one did; otherwise HEALTHY.
        Backends that were never checked count as healthy.
        """
        entries = self.registry.list_all()
        backends = tuple(
            BackendHealth(
                backend_id=e.id,
                enabled=e.metadata.enabled,
                is_healthy=e.is_healthy,
                last_check=e.last_health_check,
            )
            for e in entries
        )
        enabled = [b for b in backends if b.enabled]
        unhealthy = [b for b in enabled if b.is_healthy is False]
        if not enabled or len(unhealthy) == len(enabled):
            status = HealthStatus.DOWN
        elif unhealthy:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        return HealthSummary(status=status, backends=backends)

    # ── Introspection ──────────────────────────────────────────────

    def get_stats(self) -> dict[str, Any]:
        config = self.get_config()
        return {
            "backends": {
                "registered": len(self.registry),
                "enabled": [e.id for e in self.registry.list_enabled()],
            },
            "strategy": config.strategy.value,
            "health": self.get_health_summary().status.value,
            "cache": self.get_cache_stats().to_dict(),
            "cost": self.get_cost_summary().to_dict(),
            "metrics_entries": self.metrics_log.entry_count,
            "rate_limits": {k: v.to_dict() for k, v in self.get_rate_limit_statuses().items()},
        }

    def export_prometheus(self) -> bytes:
        return self.telemetry.export_prometheus()
