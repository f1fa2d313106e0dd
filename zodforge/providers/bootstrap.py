"""
Default backend metadata and orchestrator assembly.

Pricing is per 1K work units. Adapters for the hosted backends live outside
this package; ``build_orchestrator`` registers whichever ones the host
passes in, plus the disabled mock backend.
"""

from __future__ import annotations

from collections.abc import Mapping

from zodforge.core.types import FeatureFlag
from zodforge.infra.telemetry import get_logger
from zodforge.providers.base import BackendAdapter
from zodforge.providers.config import OrchestratorConfig
from zodforge.providers.mock import MockBackend
from zodforge.providers.orchestrator import Orchestrator
from zodforge.providers.registry import BackendMetadata

logger = get_logger(__name__)

def default_metadata() -> dict[str, BackendMetadata]:
    """Fresh metadata for the known backends; callers may mutate the result."""
    return {
        "openai": BackendMetadata(
            id="openai",
            display_name="OpenAI GPT-4",
            description="OpenAI GPT-4 Turbo with JSON mode support",
            cost_per_input_unit=0.01,
            cost_per_output_unit=0.03,
            max_requests_per_minute=500,
            max_units_per_request=4096,
            feature_flags=frozenset({
                FeatureFlag.STREAMING,
                FeatureFlag.STRUCTURED_OUTPUT,
                FeatureFlag.FUNCTION_CALLING,
            }),
            priority=90,
            weight=0.7,
        ),
        "anthropic": BackendMetadata(
            id="anthropic",
            display_name="Anthropic Claude 3.5",
            description="Anthropic Claude 3.5 Sonnet with vision support",
            cost_per_input_unit=0.003,
            cost_per_output_unit=0.015,
            max_requests_per_minute=1000,
            max_units_per_request=4096,
            feature_flags=frozenset({
                FeatureFlag.STREAMING,
                FeatureFlag.FUNCTION_CALLING,
                FeatureFlag.VISION,
            }),
            priority=80,
            weight=0.3,
        ),
        "mock": BackendMetadata(
            id="mock",
            display_name="Mock Backend",
            description="In-process backend for testing and development",
            max_requests_per_minute=10_000,
            max_units_per_request=100_000,
            feature_flags=frozenset({FeatureFlag.STRUCTURED_OUTPUT}),
            priority=0,
            weight=0.0,
            enabled=False,
        ),
    }

def build_orchestrator(
    adapters: Mapping[str, BackendAdapter] | None = None,
    config: OrchestratorConfig | None = None,
    *,
    include_mock: bool = True,
) -> Orchestrator:
    """
    Create an orchestrator with the given adapters registered.

    Adapters are keyed by backend id; known ids get their default metadata,
    unknown ids get ``BackendMetadata`` defaults.
    """
    orchestrator = Orchestrator(config=config or OrchestratorConfig.from_env())
    known = default_metadata()

    for backend_id, adapter in (adapters or {}).items():
        metadata = known.get(backend_id) or BackendMetadata(id=backend_id)
        orchestrator.register_backend(adapter, metadata)

    if include_mock and "mock" not in (adapters or {}):
        orchestrator.register_backend(MockBackend("mock"), known["mock"])

    logger.info("backends_bootstrapped", registered=len(orchestrator.registry))
    return orchestrator
