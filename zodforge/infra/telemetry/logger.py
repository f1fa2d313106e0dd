"""
Structured Logger
==================

Structured logging for the orchestration layer with request-scoped context.

Design:
  - Event-style messages with keyword fields: ``log.info("cache_hit", key=...)``
  - JSON output for machine parsing, a single-line format for development
  - ``request_id`` / ``backend_id`` injected from ContextVars: ``refine`` scopes
    the request id to the call and the backend id to each attempt, then
    restores whatever the caller had set
  - Thin wrapper over stdlib ``logging``; host applications keep control of
    handlers through ``setup_logging``
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Any

# ── Context Variables ──────────────────────────────────────────────

_request_id: ContextVar[str | None] = ContextVar("zodforge_request_id", default=None)
_backend_id: ContextVar[str | None] = ContextVar("zodforge_backend_id", default=None)

def set_request_context(
    *,
    request_id: str | None = None,
    backend_id: str | None = None,
) -> list[Token[str | None]]:
    """
    Set request-scoped context for log enrichment.

    Returns the tokens to hand to ``reset_request_context`` to restore
    whatever context was active before.
    """
    tokens: list[Token[str | None]] = []
    if request_id is not None:
        tokens.append(_request_id.set(request_id))
    if backend_id is not None:
        tokens.append(_backend_id.set(backend_id))
    return tokens

def reset_request_context(tokens: list[Token[str | None]]) -> None:
    for token in reversed(tokens):
        token.var.reset(token)

@contextmanager
def request_context(
    *,
    request_id: str | None = None,
    backend_id: str | None = None,
) -> Iterator[None]:
    """Scope context values to a block; the previous values come back on exit."""
    tokens = set_request_context(request_id=request_id, backend_id=backend_id)
    try:
        yield
    finally:
        reset_request_context(tokens)

def clear_request_context() -> None:
    _request_id.set(None)
    _backend_id.set(None)

def get_request_id() -> str | None:
    return _request_id.get()

def get_request_context() -> dict[str, str]:
    """The context values currently set, e.g. ``{"request_id": ..., "backend_id": ...}``."""
    context = {
        "request_id": _request_id.get(),
        "backend_id": _backend_id.get(),
    }
    return {k: v for k, v in context.items() if v is not None}

# ── Structured Formatter ──────────────────────────────────────────

_RESERVED = frozenset({
    "name", "msg", "args", "created", "relativeCreated",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "pathname", "filename", "module", "levelno", "levelname",
    "thread", "threadName", "process", "processName", "msecs",
    "taskName", "message",
})

_JSON_SAFE = (str, int, float, bool, type(None))

class StructuredFormatter(logging.Formatter):
    """Log formatter that renders records with their structured fields."""

    def __init__(self, *, json_output: bool = True, include_traceback: bool = True):
        super().__init__()
        self._json = json_output
        self._include_tb = include_traceback

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        entry["context"] = get_request_context()

        data: dict[str, Any] = {}
        for key, val in record.__dict__.items():
            if key.startswith("_") or key in _RESERVED:
                continue
            data[key] = val if isinstance(val, _JSON_SAFE) else str(val)
        if data:
            entry["data"] = data

        if record.exc_info and self._include_tb:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb)
                if exc_tb
                else None,
            }

        if self._json:
            return json.dumps(entry, default=str, ensure_ascii=False)

        req_id = entry["context"].get("request_id", "-")[:8]
        fields = " ".join(f"{k}={v}" for k, v in data.items())
        line = (
            f"{entry['timestamp']} | {entry['level']:8s} | {req_id:8s} | "
            f"{entry['logger']} | {entry['message']}"
        )
        return f"{line} {fields}" if fields else line

# ── Structured Logger ─────────────────────────────────────────────

class StructuredLogger:
    """
    Wrapper around a stdlib logger taking event names and keyword fields.

    Usage:
        log = get_logger("zodforge.providers.cache")
        log.info("cache_set", type_name="User", ttl_s=3600)
        log.warning("rate_limit_exceeded", backend="openai", retry_after_s=12)
    """

    __slots__ = ("_logger", "_name")

    def __init__(self, name: str):
        self._name = name
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._name

    def _log(self, level: int, event: str, **kwargs: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(level, event, extra=kwargs, stacklevel=3)

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log(logging.INFO, event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, event, **kwargs)

    def error(self, event: str, exc: BaseException | None = None, **kwargs: Any) -> None:
        if exc:
            self._logger.error(event, extra=kwargs, exc_info=exc, stacklevel=2)
        else:
            self._log(logging.ERROR, event, **kwargs)

# ── Setup ──────────────────────────────────────────────────────────

_initialized = False

def setup_logging(*, level: str = "INFO", json_output: bool | None = None) -> None:
    """
    Initialize logging for the ``zodforge`` logger tree. Call once at startup.

    Args:
        level: Log level for the ``zodforge`` logger
        json_output: Force JSON output. Auto-detects if None (JSON outside development)
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    if json_output is None:
        json_output = os.getenv("ENVIRONMENT", "development") != "development"

    root = logging.getLogger("zodforge")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(StructuredFormatter(json_output=json_output))
    root.addHandler(console)
    root.propagate = False

def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)
