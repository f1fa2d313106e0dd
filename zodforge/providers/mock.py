"""
Mock Backend
=============

In-process ``BackendAdapter`` for development and tests. Simulates latency
and failures without any network access and derives a plausible refinement
from the schema's fields.
"""

from __future__ import annotations

import asyncio
import random
import re
from collections.abc import Callable
from dataclasses import dataclass, replace

from zodforge.core.exceptions import BackendError
from zodforge.providers.base import (
    BackendAdapter,
    BackendResponse,
    Improvement,
    RefinementRequest,
)
from zodforge.providers.selection import estimate_units

DEFAULT_ERROR_MESSAGE = "Simulated mock backend failure"

@dataclass(frozen=True, slots=True)
class MockBackendConfig:
    response_time_s: float = 0.1
    success_rate: float = 1.0  # 0-1; 0 fails every call
    error_message: str = DEFAULT_ERROR_MESSAGE
    fixed_response: BackendResponse | None = None

class MockBackend(BackendAdapter):
    """Configurable fake backend; counts the invocations it receives."""

    def __init__(
        self,
        backend_id: str = "mock",
        config: MockBackendConfig | None = None,
        *,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.backend_id = backend_id
        self.config = config or MockBackendConfig()
        self.request_count = 0
        self._rng = rng

    async def invoke(self, request: RefinementRequest) -> BackendResponse:
        self.request_count += 1
        if self.config.response_time_s > 0:
            await asyncio.sleep(self.config.response_time_s)

        if self._rng() >= self.config.success_rate:
            raise BackendError(self.backend_id, self.config.error_message)

        if self.config.fixed_response is not None:
            return self.config.fixed_response
        return _generate_response(request)

    async def health_check(self) -> bool:
        return self.config.success_rate > 0

    def update_config(self, **changes) -> None:
        self.config = replace(self.config, **changes)

    def reset_request_count(self) -> None:
        self.request_count = 0

def _generate_response(request: RefinementRequest) -> BackendResponse:
    fields = request.schema.fields
    improvements = tuple(
        Improvement(
            field=name,
            before=expr,
            after=f"{expr}.optional()",
            reason="Mock improvement - made field optional",
            confidence=0.85,
        )
        for name, expr in fields.items()
    )
    output = re.sub(r"z\.", "z.optional().", request.schema.code)
    return BackendResponse(
        output_schema=output,
        improvements=improvements,
        suggestions=(
            "Mock suggestion: Consider adding validation",
            "Mock suggestion: Add defaults",
        ),
        confidence=0.85,
        estimated_output_units=estimate_units(output),
    )
