"""
Orchestrator Configuration
===========================

Validated runtime configuration plus the manager that owns mutation.

Design:
  - ``OrchestratorConfig`` is a frozen pydantic model: every snapshot handed
    out is immutable, so readers never observe a half-applied update
  - All mutation goes through ``ConfigManager``; a change is validated as a
    whole candidate config and either replaces the current one or raises
    ``InvalidConfigurationError`` leaving it untouched
  - Listeners are notified after each successful change; a failing listener
    is logged and the rest are still notified
"""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from zodforge.core.exceptions import InvalidConfigurationError
from zodforge.core.types import SelectionStrategy
from zodforge.infra.telemetry import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "ZODFORGE_"

ConfigListener = Callable[["OrchestratorConfig"], None]

class OrchestratorConfig(BaseModel):
    """Runtime knobs of one ``Orchestrator``."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    strategy: SelectionStrategy = SelectionStrategy.PRIORITY
    fallback_enabled: bool = True
    max_fallback_attempts: int = 2
    cache_enabled: bool = True
    cache_ttl_s: float = Field(default=3600.0, gt=0)
    rate_limiting_enabled: bool = True
    cost_tracking_enabled: bool = True
    metrics_enabled: bool = True
    request_timeout_s: float = Field(default=30.0, gt=0)
    daily_budget_limit: float | None = Field(default=None, ge=0)
    preferred_backend_ids: tuple[str, ...] | None = None

    @field_validator("max_fallback_attempts")
    @classmethod
    def clamp_fallback_attempts(cls, v: int) -> int:
        return max(0, v)

    @field_validator("preferred_backend_ids")
    @classmethod
    def drop_empty_ids(cls, v: tuple[str, ...] | None) -> tuple[str, ...] | None:
        if v is None:
            return None
        return tuple(backend_id for backend_id in v if backend_id)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> OrchestratorConfig:
        """
        Build a config from ``ZODFORGE_*`` variables; unset ones keep defaults.

        ``ZODFORGE_PREFERRED_BACKENDS`` is a comma-separated list of ids.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            if name == "preferred_backend_ids":
                continue
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw

        preferred = env.get(f"{ENV_PREFIX}PREFERRED_BACKENDS")
        if preferred:
            values["preferred_backend_ids"] = tuple(
                part.strip() for part in preferred.split(",") if part.strip()
            )
        return validate_config(values)

def validate_config(values: Mapping[str, Any]) -> OrchestratorConfig:
    try:
        return OrchestratorConfig.model_validate(dict(values))
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False)
        summary = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in errors
        )
        raise InvalidConfigurationError(summary, errors=errors) from e

class ConfigManager:
    """Owner of the current ``OrchestratorConfig`` and its listeners."""

    def __init__(self, config: OrchestratorConfig | None = None) -> None:
        self._config = config or OrchestratorConfig()
        self._listeners: list[ConfigListener] = []
        self._lock = threading.Lock()

    def get_config(self) -> OrchestratorConfig:
        with self._lock:
            return self._config

    def update(self, changes: Mapping[str, Any]) -> OrchestratorConfig:
        """Apply a partial update; all-or-nothing."""
        with self._lock:
            merged = {**self._config.model_dump(), **dict(changes)}
            config = validate_config(merged)
            self._config = config
        logger.info("config_updated", fields=",".join(sorted(changes)))
        self._notify(config)
        return config

    def set_strategy(self, strategy: SelectionStrategy | str) -> OrchestratorConfig:
        try:
            strategy = SelectionStrategy(strategy)
        except ValueError as e:
            raise InvalidConfigurationError(f"unknown strategy {strategy!r}") from e
        return self.update({"strategy": strategy})

    def reset(self) -> OrchestratorConfig:
        config = OrchestratorConfig()
        with self._lock:
            self._config = config
        logger.info("config_reset")
        self._notify(config)
        return config

    def export_json(self) -> str:
        return self.get_config().model_dump_json(indent=2)

    def import_json(self, payload: str) -> OrchestratorConfig:
        """Merge a JSON object onto the current config."""
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise InvalidConfigurationError(f"not valid JSON ({e})") from e
        if not isinstance(data, dict):
            raise InvalidConfigurationError("expected a JSON object")
        return self.update(data)

    # ── Listeners ──────────────────────────────────────────────────

    def add_listener(self, listener: ConfigListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ConfigListener) -> bool:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return False
        return True

    def _notify(self, config: OrchestratorConfig) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(config)
            except Exception as e:
                logger.error(
                    "config_listener_failed",
                    exc=e,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                )
