"""
Orchestrator — Unit Tests
==========================

Covers the per-request state machine end to end with in-process backends:
  1. Cache check and write-through
  2. Selection (strategies, pinning, pre-filtered candidates)
  3. Admission (rate-limited skips)
  4. Invocation (timeouts, fallback, exhaustion)
  + Administration, health and introspection
"""

import asyncio

import pytest

from zodforge.core.exceptions import (
    AllBackendsExhaustedError,
    InvalidConfigurationError,
    NoBackendsAvailableError,
    RateLimitedError,
)
from zodforge.core.types import AttemptKind, HealthStatus, SelectionStrategy
from zodforge.infra.telemetry import (
    clear_request_context,
    get_request_context,
    get_request_id,
    set_request_context,
)
from zodforge.providers.base import BackendAdapter, BackendResponse
from zodforge.providers.bootstrap import build_orchestrator, default_metadata
from zodforge.providers.cache import ResponseCache
from zodforge.providers.config import OrchestratorConfig
from zodforge.providers.orchestrator import Orchestrator
from zodforge.providers.rate_limiter import RateLimitConfig
from zodforge.providers.registry import BackendMetadata


class BrokenHealthBackend(BackendAdapter):
    async def invoke(self, request):
        raise RuntimeError("unreachable")

    async def health_check(self):
        raise ConnectionError("no route to host")


class HangingHealthBackend(BackendAdapter):
    async def invoke(self, request):
        raise RuntimeError("unreachable")

    async def health_check(self):
        await asyncio.sleep(60)
        return True


class ContextRecordingBackend(BackendAdapter):
    def __init__(self):
        self.seen = []

    async def invoke(self, request):
        self.seen.append(get_request_context())
        return BackendResponse(output_schema="z.object({})", confidence=0.9)

    async def health_check(self):
        return True


def _orchestrator(**config):
    return Orchestrator(config=OrchestratorConfig(**config))


class TestRefineHappyPath:

    @pytest.fixture(autouse=True)
    def _setup(self, make_backend, make_request):
        self.make_request = make_request
        self.orch = _orchestrator()
        self.primary = make_backend("primary")
        self.secondary = make_backend("secondary")
        self.orch.register_backend(self.primary, BackendMetadata(id="primary", priority=90))
        self.orch.register_backend(self.secondary, BackendMetadata(id="secondary", priority=50))

    @pytest.mark.asyncio
    async def test_uses_highest_priority(self):
        result = await self.orch.refine(self.make_request())
        assert result.backend_id == "primary"
        assert result.cached is False
        assert result.attempts == ("primary",)
        assert len(result.response.improvements) == 2
        assert self.secondary.request_count == 0

    @pytest.mark.asyncio
    async def test_second_call_served_from_cache(self):
        request = self.make_request()
        await self.orch.refine(request)
        result = await self.orch.refine(request)
        assert result.cached is True
        assert result.backend_id == "primary"
        assert self.primary.request_count == 1
        assert self.orch.get_cache_stats().total_hits == 1

    @pytest.mark.asyncio
    async def test_cache_hit_ignores_pinned_backend(self):
        await self.orch.refine(self.make_request())
        result = await self.orch.refine(self.make_request(backend="secondary"))
        assert result.cached is True
        assert self.secondary.request_count == 0

    @pytest.mark.asyncio
    async def test_cache_disabled(self):
        self.orch.update_config(cache_enabled=False)
        request = self.make_request()
        await self.orch.refine(request)
        await self.orch.refine(request)
        assert self.primary.request_count == 2
        assert self.orch.cache.enabled is False

    @pytest.mark.asyncio
    async def test_success_is_accounted(self):
        await self.orch.refine(self.make_request())
        metrics = self.orch.get_provider_metrics("primary")
        assert metrics.total_requests == 1
        assert metrics.successful_requests == 1
        assert self.orch.get_cost_summary().total_requests == 1
        assert self.orch.registry.get("primary").is_healthy is True

    @pytest.mark.asyncio
    async def test_cost_uses_backend_rates(self):
        self.orch.unregister_backend("primary")
        self.orch.unregister_backend("secondary")
        self.orch.register_backend(
            self.primary,
            BackendMetadata(id="primary", cost_per_input_unit=1.0, cost_per_output_unit=2.0),
        )
        await self.orch.refine(self.make_request())
        entry = self.orch.cost_tracker.entries_for_backend("primary")[0]
        expected = entry.input_units / 1000 * 1.0 + entry.output_units / 1000 * 2.0
        assert entry.cost == pytest.approx(expected)
        assert entry.cost > 0

    @pytest.mark.asyncio
    async def test_cost_tracking_disabled(self):
        self.orch.update_config(cost_tracking_enabled=False, metrics_enabled=False)
        await self.orch.refine(self.make_request())
        assert self.orch.cost_tracker.entry_count == 0
        assert self.orch.metrics_log.entry_count == 0

    @pytest.mark.asyncio
    async def test_daily_budget_is_log_only(self):
        self.orch.update_config(daily_budget_limit=0.0)
        self.orch.registry.get("primary").metadata.cost_per_input_unit = 10.0
        await self.orch.refine(self.make_request(samples=[1]))
        result = await self.orch.refine(self.make_request(samples=[2]))
        assert result.backend_id == "primary"

    @pytest.mark.asyncio
    async def test_preferred_backends(self):
        result = await self.orch.refine(self.make_request(preferred_backends=("secondary",)))
        assert result.backend_id == "secondary"

    @pytest.mark.asyncio
    async def test_candidates_prefiltered_by_caller(self):
        result = await self.orch.refine(self.make_request(), candidates=["secondary"])
        assert result.backend_id == "secondary"

    @pytest.mark.asyncio
    async def test_empty_candidates(self):
        with pytest.raises(NoBackendsAvailableError):
            await self.orch.refine(self.make_request(), candidates=[])


class TestStrategies:

    @pytest.fixture(autouse=True)
    def _setup(self, make_backend, make_request):
        self.make_request = make_request
        self.orch = _orchestrator(cache_enabled=False)
        self.orch.register_backend(
            make_backend("fast"),
            BackendMetadata(id="fast", priority=90, cost_per_input_unit=0.01, cost_per_output_unit=0.03),
        )
        self.orch.register_backend(
            make_backend("cheap"),
            BackendMetadata(id="cheap", priority=50, cost_per_input_unit=0.001),
        )

    @pytest.mark.asyncio
    async def test_cost_then_priority(self):
        self.orch.set_strategy(SelectionStrategy.COST)
        assert (await self.orch.refine(self.make_request())).backend_id == "cheap"

        self.orch.set_strategy("priority")
        assert (await self.orch.refine(self.make_request())).backend_id == "fast"

    @pytest.mark.asyncio
    async def test_round_robin_rotates(self):
        self.orch.set_strategy(SelectionStrategy.ROUND_ROBIN)
        picks = [(await self.orch.refine(self.make_request())).backend_id for _ in range(4)]
        assert picks == ["fast", "cheap", "fast", "cheap"]

    @pytest.mark.asyncio
    async def test_weighted_uses_injected_rng(self, make_backend):
        orch = Orchestrator(
            config=OrchestratorConfig(strategy="weighted", cache_enabled=False),
            rng=lambda: 0.99,
        )
        orch.register_backend(make_backend("a"), BackendMetadata(id="a", priority=90, weight=0.5))
        orch.register_backend(make_backend("b"), BackendMetadata(id="b", priority=10, weight=0.5))
        assert (await orch.refine(self.make_request())).backend_id == "b"

    @pytest.mark.asyncio
    async def test_performance_prefers_measured_latency(self):
        self.orch.set_strategy(SelectionStrategy.PERFORMANCE)
        assert (await self.orch.refine(self.make_request())).backend_id == "fast"

        self.orch.metrics_log.clear()
        self.orch.metrics_log.record("fast", True, 800)
        self.orch.metrics_log.record("cheap", True, 40)
        assert (await self.orch.refine(self.make_request())).backend_id == "cheap"

    @pytest.mark.asyncio
    async def test_unknown_strategy_rejected(self):
        with pytest.raises(InvalidConfigurationError):
            self.orch.set_strategy("fastest")


class TestFallback:

    @pytest.fixture(autouse=True)
    def _setup(self, make_backend, make_request):
        self.make_backend = make_backend
        self.make_request = make_request

    def _three_backends(self, **config):
        orch = _orchestrator(cache_enabled=False, **config)
        orch.register_backend(self.make_backend("a", fail=True), BackendMetadata(id="a", priority=90))
        orch.register_backend(self.make_backend("b", fail=True), BackendMetadata(id="b", priority=70))
        orch.register_backend(self.make_backend("c"), BackendMetadata(id="c", priority=50))
        return orch

    @pytest.mark.asyncio
    async def test_falls_back_to_healthy_backend(self):
        orch = self._three_backends()
        result = await orch.refine(self.make_request())
        assert result.backend_id == "c"
        assert result.attempts == ("a", "b", "c")
        assert orch.registry.get("a").is_healthy is False
        assert orch.registry.get("c").is_healthy is True
        assert orch.get_provider_metrics("a").failed_requests == 1
        assert orch.metrics_log.get_error_breakdown("a")["backend_error"].count == 1

    @pytest.mark.asyncio
    async def test_zero_fallback_attempts_exhausts(self):
        orch = self._three_backends(max_fallback_attempts=0)
        with pytest.raises(AllBackendsExhaustedError) as exc_info:
            await orch.refine(self.make_request())
        err = exc_info.value
        assert err.primary == "a"
        assert err.attempted_backends == ["a"]
        assert err.attempts[0].reason == "a is down"

    @pytest.mark.asyncio
    async def test_fallback_disabled_exhausts(self):
        orch = self._three_backends(fallback_enabled=False)
        with pytest.raises(AllBackendsExhaustedError):
            await orch.refine(self.make_request())

    @pytest.mark.asyncio
    async def test_exhaustion_lists_every_attempt(self):
        orch = _orchestrator(cache_enabled=False)
        for backend_id, priority in (("x", 90), ("y", 50)):
            orch.register_backend(
                self.make_backend(backend_id, fail=True),
                BackendMetadata(id=backend_id, priority=priority),
            )
        with pytest.raises(AllBackendsExhaustedError) as exc_info:
            await orch.refine(self.make_request())
        payload = exc_info.value.to_dict()
        assert [a["backend_id"] for a in payload["attempts"]] == ["x", "y"]
        assert payload["status_code"] == 502

    @pytest.mark.asyncio
    async def test_timeout_triggers_fallback(self):
        orch = _orchestrator(cache_enabled=False, request_timeout_s=0.05)
        orch.register_backend(
            self.make_backend("slow", delay_s=5), BackendMetadata(id="slow", priority=90)
        )
        orch.register_backend(self.make_backend("ok"), BackendMetadata(id="ok", priority=10))
        result = await orch.refine(self.make_request())
        assert result.backend_id == "ok"
        assert orch.metrics_log.get_error_breakdown("slow")["timeout"].count == 1

    @pytest.mark.asyncio
    async def test_timeout_reported_in_attempts(self):
        orch = _orchestrator(cache_enabled=False, request_timeout_s=0.05)
        orch.register_backend(
            self.make_backend("slow", delay_s=5), BackendMetadata(id="slow", priority=90)
        )
        with pytest.raises(AllBackendsExhaustedError) as exc_info:
            await orch.refine(self.make_request())
        assert exc_info.value.attempts[0].kind == AttemptKind.TIMEOUT


class TestAdmission:

    @pytest.fixture(autouse=True)
    def _setup(self, make_backend, make_request):
        self.make_request = make_request
        self.orch = _orchestrator(cache_enabled=False)
        self.a = make_backend("a")
        self.b = make_backend("b")
        self.orch.register_backend(self.a, BackendMetadata(id="a", priority=90, max_requests_per_minute=1))
        self.orch.register_backend(self.b, BackendMetadata(id="b", priority=50, max_requests_per_minute=1))

    @pytest.mark.asyncio
    async def test_rate_limited_backend_is_skipped(self):
        await self.orch.refine(self.make_request())
        result = await self.orch.refine(self.make_request())
        assert result.backend_id == "b"
        assert result.attempts == ("b",)
        assert self.a.request_count == 1

    @pytest.mark.asyncio
    async def test_all_rate_limited(self):
        await self.orch.refine(self.make_request())
        await self.orch.refine(self.make_request())
        with pytest.raises(RateLimitedError) as exc_info:
            await self.orch.refine(self.make_request())
        err = exc_info.value
        assert err.retry_after_s > 0
        assert err.status_code == 429
        assert set(err.backend_ids) == {"a", "b"}

    @pytest.mark.asyncio
    async def test_rate_limited_skip_recorded_in_exhaustion(self, make_backend):
        orch = _orchestrator(cache_enabled=False)
        orch.register_backend(make_backend("a"), BackendMetadata(id="a", priority=90))
        orch.register_backend(make_backend("b", fail=True), BackendMetadata(id="b", priority=50))
        orch.rate_limiter.set_limit("a", RateLimitConfig(max_requests=1))
        orch.rate_limiter.check_and_record("a")

        with pytest.raises(AllBackendsExhaustedError) as exc_info:
            await orch.refine(self.make_request())
        kinds = [a.kind for a in exc_info.value.attempts]
        assert kinds == [AttemptKind.RATE_LIMITED, AttemptKind.ERROR]

    @pytest.mark.asyncio
    async def test_rate_limiting_disabled(self):
        self.orch.update_config(rate_limiting_enabled=False)
        for _ in range(3):
            assert (await self.orch.refine(self.make_request())).backend_id == "a"

    @pytest.mark.asyncio
    async def test_reset_rate_limits(self):
        await self.orch.refine(self.make_request())
        self.orch.reset_rate_limits()
        assert (await self.orch.refine(self.make_request())).backend_id == "a"
        assert self.orch.get_rate_limit_statuses()["a"].request_count == 1


class TestPinnedBackend:

    @pytest.fixture(autouse=True)
    def _setup(self, make_backend, make_request):
        self.make_request = make_request
        self.orch = _orchestrator(cache_enabled=False)
        self.orch.register_backend(make_backend("a"), BackendMetadata(id="a", priority=90))
        self.orch.register_backend(
            make_backend("b", fail=True), BackendMetadata(id="b", priority=50)
        )
        self.orch.register_backend(make_backend("off"), BackendMetadata(id="off", enabled=False))

    @pytest.mark.asyncio
    async def test_pinned_backend_is_primary(self):
        result = await self.orch.refine(self.make_request(backend="b"))
        assert result.attempts == ("b", "a")
        assert result.backend_id == "a"

    @pytest.mark.asyncio
    async def test_auto_means_strategy(self):
        result = await self.orch.refine(self.make_request(backend="auto"))
        assert result.backend_id == "a"

    @pytest.mark.asyncio
    async def test_unknown_pinned_backend(self):
        with pytest.raises(NoBackendsAvailableError):
            await self.orch.refine(self.make_request(backend="missing"))

    @pytest.mark.asyncio
    async def test_disabled_pinned_backend(self):
        with pytest.raises(NoBackendsAvailableError):
            await self.orch.refine(self.make_request(backend="off"))

    @pytest.mark.asyncio
    async def test_pinned_backend_outside_candidates(self):
        with pytest.raises(NoBackendsAvailableError):
            await self.orch.refine(self.make_request(backend="a"), candidates=["b"])
        assert self.orch.get_all_metrics() == {}

    @pytest.mark.asyncio
    async def test_pinned_backend_within_candidates(self):
        result = await self.orch.refine(self.make_request(backend="a"), candidates=["a"])
        assert result.attempts == ("a",)


class TestAdministration:

    @pytest.fixture(autouse=True)
    def _setup(self, make_backend, make_request):
        self.make_backend = make_backend
        self.make_request = make_request
        self.orch = _orchestrator()

    @pytest.mark.asyncio
    async def test_no_backends(self):
        with pytest.raises(NoBackendsAvailableError) as exc_info:
            await self.orch.refine(self.make_request())
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_all_disabled(self):
        self.orch.register_backend(self.make_backend("a"), BackendMetadata(id="a"))
        assert self.orch.set_backend_enabled("a", False) is True
        with pytest.raises(NoBackendsAvailableError):
            await self.orch.refine(self.make_request())

    def test_register_sets_rate_limit(self):
        self.orch.register_backend(
            self.make_backend("a"), BackendMetadata(id="a", max_requests_per_minute=7)
        )
        limit = self.orch.rate_limiter.get_limit("a")
        assert limit.max_requests == 7
        assert limit.window_ms == 60_000

        assert self.orch.unregister_backend("a") is True
        assert self.orch.rate_limiter.get_limit("a") is None
        assert self.orch.unregister_backend("a") is False

    def test_priority_and_weight(self):
        self.orch.register_backend(self.make_backend("a"), BackendMetadata(id="a"))
        assert self.orch.set_backend_priority("a", 120) is True
        assert self.orch.set_backend_weight("a", 0.25) is True
        meta = self.orch.registry.get("a").metadata
        assert meta.priority == 100
        assert meta.weight == 0.25
        assert self.orch.set_backend_priority("missing", 1) is False

    def test_config_changes_reach_cache(self):
        self.orch.update_config({"cache_ttl_s": 5}, cache_enabled=False)
        assert self.orch.cache.default_ttl_s == 5
        assert self.orch.cache.enabled is False

        self.orch.reset_config()
        assert self.orch.cache.enabled is True
        assert self.orch.cache.default_ttl_s == 3600

    def test_config_round_trip(self):
        self.orch.update_config(strategy="cost", max_fallback_attempts=1)
        before = self.orch.get_config()
        self.orch.import_config(self.orch.export_config())
        assert self.orch.get_config() == before

        with pytest.raises(InvalidConfigurationError):
            self.orch.import_config("not json")
        assert self.orch.get_config() == before

    def test_config_listeners(self):
        seen = []
        self.orch.add_config_listener(seen.append)
        self.orch.set_strategy("manual")
        assert self.orch.remove_config_listener(seen.append) is True
        self.orch.set_strategy("cost")
        assert [c.strategy for c in seen] == [SelectionStrategy.MANUAL]

    def test_isolated_instances(self):
        other = _orchestrator()
        self.orch.register_backend(self.make_backend("a"), BackendMetadata(id="a"))
        assert len(other.registry) == 0
        assert other.export_prometheus() != b""


class TestHealth:

    @pytest.fixture(autouse=True)
    def _setup(self, make_backend):
        self.orch = _orchestrator()
        self.orch.register_backend(make_backend("up"), BackendMetadata(id="up"))
        self.orch.register_backend(make_backend("down", fail=True), BackendMetadata(id="down"))
        self.orch.register_backend(BrokenHealthBackend(), BackendMetadata(id="broken"))

    @pytest.mark.asyncio
    async def test_check_all_backends_health(self):
        results = await self.orch.check_all_backends_health()
        assert results == {"up": True, "down": False, "broken": False}
        assert self.orch.registry.get("broken").is_healthy is False
        assert self.orch.registry.get("up").last_health_check is not None

    @pytest.mark.asyncio
    async def test_health_summary(self):
        assert self.orch.get_health_summary().status == HealthStatus.HEALTHY

        await self.orch.check_all_backends_health()
        summary = self.orch.get_health_summary()
        assert summary.status == HealthStatus.DEGRADED
        assert summary.to_dict()["backends"]["up"]["is_healthy"] is True

        self.orch.set_backend_enabled("up", False)
        assert self.orch.get_health_summary().status == HealthStatus.DOWN

    @pytest.mark.asyncio
    async def test_hung_health_check_times_out(self, make_backend):
        orch = _orchestrator(request_timeout_s=0.05)
        orch.register_backend(HangingHealthBackend(), BackendMetadata(id="hung"))
        orch.register_backend(make_backend("up"), BackendMetadata(id="up"))

        results = await asyncio.wait_for(orch.check_all_backends_health(), timeout=5)
        assert results == {"hung": False, "up": True}
        assert orch.registry.get("hung").is_healthy is False


class TestRequestContext:

    @pytest.fixture(autouse=True)
    def _setup(self, make_request):
        self.make_request = make_request
        self.backend = ContextRecordingBackend()
        self.orch = _orchestrator(cache_enabled=False)
        self.orch.register_backend(self.backend, BackendMetadata(id="rec"))
        yield
        clear_request_context()

    @pytest.mark.asyncio
    async def test_context_scoped_to_call_and_attempt(self):
        await self.orch.refine(self.make_request())
        context = self.backend.seen[0]
        assert context["backend_id"] == "rec"
        assert len(context["request_id"]) == 12
        assert get_request_context() == {}

    @pytest.mark.asyncio
    async def test_caller_request_id_survives_refine(self):
        set_request_context(request_id="http-req-42")
        await self.orch.refine(self.make_request())
        assert self.backend.seen[0]["request_id"] == "http-req-42"
        assert get_request_id() == "http-req-42"
        assert get_request_context() == {"request_id": "http-req-42"}

    @pytest.mark.asyncio
    async def test_context_restored_after_failure(self):
        set_request_context(request_id="http-req-7")
        with pytest.raises(NoBackendsAvailableError):
            await self.orch.refine(self.make_request(backend="missing"))
        assert get_request_context() == {"request_id": "http-req-7"}


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_background_prune(self, clock, make_backend, make_request):
        cache = ResponseCache(default_ttl_s=1, clock=clock)
        orch = Orchestrator(
            config=OrchestratorConfig(cache_ttl_s=1), cache=cache, prune_interval_s=0.01
        )
        orch.register_backend(make_backend("a"), BackendMetadata(id="a"))

        async with orch:
            await orch.refine(make_request())
            assert len(cache) == 1
            clock.advance(2)
            for _ in range(100):
                if len(cache) == 0:
                    break
                await asyncio.sleep(0.01)
        assert len(cache) == 0
        assert orch._prune_task is None

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await _orchestrator().stop()

    def test_rejects_bad_prune_interval(self):
        with pytest.raises(ValueError):
            Orchestrator(prune_interval_s=0)


class TestIntrospection:

    @pytest.mark.asyncio
    async def test_stats_and_prometheus(self, make_backend, make_request):
        orch = _orchestrator()
        orch.register_backend(make_backend("a"), BackendMetadata(id="a"))
        await orch.refine(make_request())
        await orch.refine(make_request())

        stats = orch.get_stats()
        assert stats["backends"]["registered"] == 1
        assert stats["strategy"] == "priority"
        assert stats["cache"]["total_hits"] == 1
        assert stats["cost"]["total_requests"] == 1
        assert set(orch.get_all_metrics()) == {"a"}

        exported = orch.export_prometheus().decode()
        assert 'zodforge_backend_requests_total{backend="a",outcome="success"} 1.0' in exported
        assert 'zodforge_refine_requests_total{result="cached"} 1.0' in exported

    def test_clear_and_prune_cache(self):
        orch = _orchestrator()
        orch.clear_cache()
        assert orch.prune_cache() == 0
        assert orch.get_cache_stats().total_entries == 0


class TestBootstrap:

    def test_default_metadata(self):
        meta = default_metadata()
        assert meta["openai"].priority == 90
        assert meta["anthropic"].cost_per_input_unit == 0.003
        assert meta["mock"].enabled is False

    @pytest.mark.asyncio
    async def test_build_orchestrator(self, make_backend, make_request):
        orch = build_orchestrator(
            {"openai": make_backend("openai"), "custom": make_backend("custom")},
            OrchestratorConfig(),
        )
        assert len(orch.registry) == 3
        assert orch.rate_limiter.get_limit("openai").max_requests == 500
        assert orch.registry.get("mock").metadata.enabled is False
        assert (await orch.refine(make_request())).backend_id == "openai"
