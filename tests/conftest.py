"""Shared fixtures for the orchestration layer tests."""

import pytest

from zodforge.providers.base import (
    RefinementOptions,
    RefinementRequest,
    SchemaDefinition,
)
from zodforge.providers.mock import MockBackend, MockBackendConfig


class FakeClock:
    """Manually advanced clock, usable wherever a ``clock`` callable is accepted."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_request(
    type_name="User",
    fields=None,
    samples=None,
    **options,
) -> RefinementRequest:
    fields = fields if fields is not None else {"name": "z.string()", "age": "z.number()"}
    code = "z.object({ " + ", ".join(f"{k}: {v}" for k, v in fields.items()) + " })"
    return RefinementRequest(
        schema=SchemaDefinition(code=code, type_name=type_name, fields=fields),
        samples=samples if samples is not None else [{"name": "Ada", "age": 36}],
        options=RefinementOptions(**options),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_request():
    return build_request


@pytest.fixture
def make_backend():
    def factory(backend_id, *, fail=False, delay_s=0.0, **config):
        return MockBackend(
            backend_id,
            MockBackendConfig(
                response_time_s=delay_s,
                success_rate=0.0 if fail else 1.0,
                error_message=f"{backend_id} is down",
                **config,
            ),
        )

    return factory
