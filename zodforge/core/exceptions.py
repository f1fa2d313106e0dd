"""Exception classes for the zodforge orchestration layer.

Includes:
- Base exception carrying an API-friendly error payload
- Backend-side errors raised by adapters
- Terminal errors surfaced by ``Orchestrator.refine``
- Configuration errors raised at mutation/import time
"""

from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from zodforge.core.types import AttemptKind


class ZodForgeError(Exception):
    """Base exception for all zodforge errors."""

    def __init__(
        self, detail: str, status_code: int = 500, error_code: str = "INTERNAL_ERROR"
    ):
        self.detail = detail
        self.status_code = status_code
        self.error_code = error_code
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": self.error_code,
            "detail": self.detail,
            "status_code": self.status_code,
            "timestamp": self.timestamp,
        }


# =============================================================================
# BACKEND ERRORS
# =============================================================================


class BackendError(ZodForgeError):
    """Raised by a backend adapter when it cannot produce a refinement."""

    def __init__(self, backend_id: str, detail: str, original_error: Exception | None = None):
        super().__init__(detail=detail, status_code=502, error_code="BACKEND_ERROR")
        self.backend_id = backend_id
        self.original_error = original_error


class BackendInvocationError(ZodForgeError):
    """A single attempt against one backend failed or timed out."""

    def __init__(
        self,
        backend_id: str,
        reason: str,
        original_error: BaseException | None = None,
        timed_out: bool = False,
    ):
        super().__init__(
            detail=f"Backend '{backend_id}' failed: {reason}",
            status_code=504 if timed_out else 502,
            error_code="BACKEND_INVOCATION_FAILED",
        )
        self.backend_id = backend_id
        self.reason = reason
        self.original_error = original_error
        self.timed_out = timed_out

    @property
    def kind(self) -> AttemptKind:
        return AttemptKind.TIMEOUT if self.timed_out else AttemptKind.ERROR

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base.update({"backend_id": self.backend_id, "timed_out": self.timed_out})
        return base


# =============================================================================
# TERMINAL ERRORS
# =============================================================================


class NoBackendsAvailableError(ZodForgeError):
    """Raised when no enabled backend can serve the request."""

    def __init__(self, detail: str = "No backends available"):
        super().__init__(
            detail=detail, status_code=503, error_code="NO_BACKENDS_AVAILABLE"
        )


class RateLimitedError(ZodForgeError):
    """Raised when every candidate backend denied admission."""

    def __init__(self, retry_after_s: int, backend_ids: list[str] | None = None):
        self.retry_after_s = retry_after_s
        self.backend_ids = list(backend_ids or [])
        super().__init__(
            detail=f"Rate limit exceeded. Retry after {retry_after_s}s",
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
        )

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base.update({"retry_after_s": self.retry_after_s, "backend_ids": self.backend_ids})
        return base


@dataclass(frozen=True, slots=True)
class AttemptFailure:
    """Why one backend in the fallback chain did not produce a result."""

    backend_id: str
    reason: str
    kind: AttemptKind
    retry_after_s: int | None = None


class AllBackendsExhaustedError(ZodForgeError):
    """Raised when the primary and every fallback have failed."""

    def __init__(self, attempts: list[AttemptFailure]):
        self.attempts = list(attempts)
        summary = "; ".join(f"{a.backend_id}: {a.reason}" for a in self.attempts)
        super().__init__(
            detail=f"All backends exhausted ({summary})",
            status_code=502,
            error_code="ALL_BACKENDS_EXHAUSTED",
        )

    @property
    def primary(self) -> str | None:
        return self.attempts[0].backend_id if self.attempts else None

    @property
    def attempted_backends(self) -> list[str]:
        return [a.backend_id for a in self.attempts]

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base["attempts"] = [asdict(a) for a in self.attempts]
        return base


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class InvalidConfigurationError(ZodForgeError):
    """Raised when a config update or import is malformed."""

    def __init__(self, detail: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(
            detail=f"Invalid configuration: {detail}",
            status_code=400,
            error_code="INVALID_CONFIGURATION",
        )
        self.errors = errors or []
