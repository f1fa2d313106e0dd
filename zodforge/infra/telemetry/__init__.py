"""
Telemetry Layer — Observability for the Orchestration Layer
=============================================================

Provides:
  - Structured logging with request correlation IDs
  - Prometheus counters/histograms for backend attempts, cache and admission

Usage:
    from zodforge.infra.telemetry import get_logger

    logger = get_logger(__name__)
    logger.info("backend_registered", backend="openai", priority=90)
"""

from zodforge.infra.telemetry.logger import (
    StructuredFormatter,
    StructuredLogger,
    clear_request_context,
    get_logger,
    get_request_context,
    get_request_id,
    request_context,
    reset_request_context,
    set_request_context,
    setup_logging,
)
from zodforge.infra.telemetry.metrics import OrchestrationMetrics

__all__ = [
    "OrchestrationMetrics",
    "StructuredFormatter",
    "StructuredLogger",
    "clear_request_context",
    "get_logger",
    "get_request_context",
    "get_request_id",
    "request_context",
    "reset_request_context",
    "set_request_context",
    "setup_logging",
]
