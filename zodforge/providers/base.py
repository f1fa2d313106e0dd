"""
Backend Adapter Contract
=========================

Defines the request/response values that flow through the orchestration
layer and the contract every AI backend adapter implements.

Adapters own prompt construction and response parsing; the orchestration
layer only sees ``invoke(request) -> BackendResponse`` and ``health_check()``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any

@dataclass(frozen=True, slots=True)
class SchemaDefinition:
    """Schema under refinement."""

    code: str  # Generated schema source
    type_name: str  # e.g. "User"
    fields: dict[str, str] = field(default_factory=dict)  # field name → type expression

@dataclass(frozen=True, slots=True)
class RefinementOptions:
    """Per-request options.

    ``backend`` and ``preferred_backends`` steer routing only; the remaining
    fields are forwarded to the backend and take part in cache keying.
    """

    backend: str | None = None  # None or "auto" = let the strategy decide
    preferred_backends: tuple[str, ...] = ()
    model: str | None = None
    temperature: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def pinned_backend(self) -> str | None:
        if self.backend and self.backend != "auto":
            return self.backend
        return None

@dataclass(frozen=True, slots=True)
class RefinementRequest:
    """A request to improve ``schema`` using ``samples``."""

    schema: SchemaDefinition
    samples: list[Any] = field(default_factory=list)
    options: RefinementOptions = field(default_factory=RefinementOptions)

@dataclass(frozen=True, slots=True)
class Improvement:
    """One field-level change proposed by a backend."""

    field: str
    before: str
    after: str
    reason: str
    confidence: float = 0.0

@dataclass(frozen=True, slots=True)
class BackendResponse:
    """Structured output of a successful adapter invocation."""

    output_schema: str
    improvements: tuple[Improvement, ...] = ()
    suggestions: tuple[str, ...] = ()
    confidence: float = 0.0
    estimated_output_units: int = 0

@dataclass(frozen=True, slots=True)
class RefinementResult:
    """Terminal success of ``Orchestrator.refine``."""

    response: BackendResponse
    backend_id: str  # Backend credited with the result
    cached: bool = False
    processing_time_ms: float = 0.0
    attempts: tuple[str, ...] = ()  # Backends invoked, in order

    def as_cached(self, processing_time_ms: float) -> RefinementResult:
        return replace(self, cached=True, processing_time_ms=processing_time_ms, attempts=())

    def to_dict(self) -> dict[str, Any]:
        return {
            "refined_schema": {
                "code": self.response.output_schema,
                "improvements": [
                    {
                        "field": imp.field,
                        "before": imp.before,
                        "after": imp.after,
                        "reason": imp.reason,
                        "confidence": imp.confidence,
                    }
                    for imp in self.response.improvements
                ],
                "confidence": self.response.confidence,
            },
            "suggestions": list(self.response.suggestions),
            "ai_provider": self.backend_id,
            "cached": self.cached,
            "processing_time_ms": round(self.processing_time_ms, 2),
        }

class BackendAdapter(ABC):
    """
    Contract implemented by every AI backend.

    Implementations raise ``zodforge.core.exceptions.BackendError`` (or any
    other exception) on failure; the orchestrator treats every exception as a
    failed attempt.
    """

    @abstractmethod
    async def invoke(self, request: RefinementRequest) -> BackendResponse:
        """Refine ``request.schema`` and return the structured result."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the backend is operational."""
        ...
