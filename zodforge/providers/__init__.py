"""
Provider Orchestration Layer
=============================

Registry, admission control, response cache, accounting, selection policy
and the orchestrator that ties them together.

Usage:
    from zodforge.providers import Orchestrator, BackendMetadata

    orchestrator = Orchestrator()
    orchestrator.register_backend(adapter, BackendMetadata(id="openai", priority=90))
    result = await orchestrator.refine(request)
"""

from zodforge.providers.base import (
    BackendAdapter,
    BackendResponse,
    Improvement,
    RefinementOptions,
    RefinementRequest,
    RefinementResult,
    SchemaDefinition,
)
from zodforge.providers.bootstrap import build_orchestrator, default_metadata
from zodforge.providers.cache import ResponseCache, cache_key
from zodforge.providers.config import ConfigManager, OrchestratorConfig
from zodforge.providers.cost import CostTracker
from zodforge.providers.metrics import MetricsLog
from zodforge.providers.mock import MockBackend, MockBackendConfig
from zodforge.providers.orchestrator import HealthSummary, Orchestrator
from zodforge.providers.rate_limiter import RateLimitConfig, RateLimiter
from zodforge.providers.registry import BackendMetadata, BackendRegistry

__all__ = [
    "BackendAdapter",
    "BackendMetadata",
    "BackendRegistry",
    "BackendResponse",
    "ConfigManager",
    "CostTracker",
    "HealthSummary",
    "Improvement",
    "MetricsLog",
    "MockBackend",
    "MockBackendConfig",
    "Orchestrator",
    "OrchestratorConfig",
    "RateLimitConfig",
    "RateLimiter",
    "RefinementOptions",
    "RefinementRequest",
    "RefinementResult",
    "ResponseCache",
    "SchemaDefinition",
    "build_orchestrator",
    "cache_key",
    "default_metadata",
]
