"""
Admission Controller — Per-Backend Rate Limiting
==================================================

Sliding-window request admission keyed by backend id.

Design:
  - One ``RateLimitConfig`` per backend; no config or a disabled config
    means every request is admitted
  - Per-backend window state is created lazily on first check
  - When the window is full the backend is blocked until the oldest recorded
    request leaves the window; once that moment passes the window is cleared
    (``reset_on_unblock=True``) or just trimmed (``reset_on_unblock=False``)
  - ``status``/``status_all`` are read-only snapshots
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from zodforge.infra.telemetry import get_logger

logger = get_logger(__name__)

@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    """Admission ceiling for one backend."""

    max_requests: int
    window_ms: int = 60_000
    enabled: bool = True
    reset_on_unblock: bool = True

    def __post_init__(self) -> None:
        if self.max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")

    @property
    def window_s(self) -> float:
        return self.window_ms / 1000.0

@dataclass(frozen=True, slots=True)
class AdmissionDecision:
    allowed: bool
    retry_after_s: int | None = None

@dataclass(slots=True)
class RateWindowState:
    """Timestamps of admitted requests inside the trailing window."""

    requests: deque[float] = field(default_factory=deque)
    blocked_until: float | None = None

@dataclass(frozen=True, slots=True)
class RateLimitStatus:
    backend_id: str
    request_count: int
    max_requests: int
    window_ms: int
    blocked: bool
    retry_after_s: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_count": self.request_count,
            "max_requests": self.max_requests,
            "window_ms": self.window_ms,
            "blocked": self.blocked,
            "retry_after_s": self.retry_after_s,
        }

_ALLOWED = AdmissionDecision(allowed=True)

class RateLimiter:
    """Per-backend sliding-window admission controller."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._configs: dict[str, RateLimitConfig] = {}
        self._windows: dict[str, RateWindowState] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def set_limit(self, backend_id: str, config: RateLimitConfig) -> None:
        with self._lock:
            self._configs[backend_id] = config
        logger.info(
            "rate_limit_set",
            backend=backend_id,
            max_requests=config.max_requests,
            window_ms=config.window_ms,
            enabled=config.enabled,
        )

    def remove_limit(self, backend_id: str) -> None:
        with self._lock:
            self._configs.pop(backend_id, None)
            self._windows.pop(backend_id, None)

    def get_limit(self, backend_id: str) -> RateLimitConfig | None:
        with self._lock:
            return self._configs.get(backend_id)

    def check_and_record(self, backend_id: str) -> AdmissionDecision:
        """Admit and record one request for ``backend_id``, or deny it."""
        with self._lock:
            config = self._configs.get(backend_id)
            if config is None or not config.enabled:
                return _ALLOWED

            now = self._clock()
            window = config.window_s
            state = self._windows.get(backend_id)
            if state is None:
                state = self._windows[backend_id] = RateWindowState()

            if state.blocked_until is not None:
                if now < state.blocked_until:
                    return AdmissionDecision(
                        allowed=False,
                        retry_after_s=_ceil_seconds(state.blocked_until - now),
                    )
                state.blocked_until = None
                if config.reset_on_unblock:
                    state.requests.clear()

            requests = state.requests
            while requests and now - requests[0] >= window:
                requests.popleft()

            if len(requests) < config.max_requests:
                requests.append(now)
                return _ALLOWED

            state.blocked_until = requests[0] + window
            retry_after = _ceil_seconds(state.blocked_until - now)
            count = len(requests)

        logger.warning(
            "rate_limit_exceeded",
            backend=backend_id,
            request_count=count,
            max_requests=config.max_requests,
            retry_after_s=retry_after,
        )
        return AdmissionDecision(allowed=False, retry_after_s=retry_after)

    def reset(self, backend_id: str) -> None:
        with self._lock:
            self._windows.pop(backend_id, None)
        logger.info("rate_limit_reset", backend=backend_id)

    def reset_all(self) -> None:
        with self._lock:
            self._windows.clear()
        logger.info("rate_limits_reset")

    def status(self, backend_id: str) -> RateLimitStatus | None:
        """Snapshot of one backend's window; None if it has no limit."""
        with self._lock:
            return self._status_locked(backend_id, self._clock())

    def status_all(self) -> dict[str, RateLimitStatus]:
        with self._lock:
            now = self._clock()
            return {
                backend_id: self._status_locked(backend_id, now)
                for backend_id in self._configs
            }

    def _status_locked(self, backend_id: str, now: float) -> RateLimitStatus | None:
        config = self._configs.get(backend_id)
        if config is None:
            return None
        state = self._windows.get(backend_id)
        if state is None:
            return RateLimitStatus(
                backend_id=backend_id,
                request_count=0,
                max_requests=config.max_requests,
                window_ms=config.window_ms,
                blocked=False,
            )

        count = sum(1 for t in state.requests if now - t < config.window_s)
        blocked = state.blocked_until is not None and now < state.blocked_until
        return RateLimitStatus(
            backend_id=backend_id,
            request_count=count,
            max_requests=config.max_requests,
            window_ms=config.window_ms,
            blocked=blocked,
            retry_after_s=_ceil_seconds(state.blocked_until - now) if blocked else None,
        )

def _ceil_seconds(seconds: float) -> int:
    return max(1, math.ceil(seconds))
