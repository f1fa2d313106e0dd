"""
Canonical Type Definitions
===========================

Shared enums used across the orchestration layer.

This module defines:
- SelectionStrategy: Policy that orders backends for a request
- FeatureFlag: Capability tags advertised by a backend
- AttemptKind: Why a backend attempt did not produce a result
- HealthStatus: Aggregate health of the registered backends
"""

from enum import StrEnum

__all__ = [
    "AttemptKind",
    "FeatureFlag",
    "HealthStatus",
    "SelectionStrategy",
]

class SelectionStrategy(StrEnum):
    """Backend selection strategies.

    The value is the wire name used in exported configuration.
    """

    PRIORITY = "priority"  # Highest priority first
    COST = "cost"  # Cheapest estimated cost first
    PERFORMANCE = "performance"  # Lowest average latency first
    ROUND_ROBIN = "round-robin"
    WEIGHTED = "weighted"  # Weighted random primary
    MANUAL = "manual"  # Caller orders the candidates

class FeatureFlag(StrEnum):
    """Capability tags a backend may advertise."""

    STREAMING = "supports-streaming"
    STRUCTURED_OUTPUT = "supports-structured-output"
    FUNCTION_CALLING = "supports-function-calling"
    VISION = "supports-vision"

class AttemptKind(StrEnum):
    """Outcome of a failed or skipped backend attempt."""

    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    ERROR = "error"

class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"
