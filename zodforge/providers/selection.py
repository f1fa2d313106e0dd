"""
Selection Policy — Backend Ordering per Strategy
==================================================

Pure functions that turn a candidate list into an ordered backend chain:
primary first, then fallbacks.

Inputs are expected pre-filtered to enabled backends and sorted by priority
descending (``BackendRegistry.list_enabled``). Nothing here reads shared
state; round-robin position, latency history and randomness are passed in:

  - priority     → candidates as given
  - cost         → ascending estimated cost, stable on ties
  - performance  → ascending average latency; unmeasured backends follow in
                   priority order
  - round-robin  → ``cursor mod count``
  - weighted     → one uniform draw in [0, total_weight)
  - manual       → candidates as given

Fallbacks are independent of the strategy: every other candidate, priority
descending, truncated to ``max_fallback_attempts``.
"""

from __future__ import annotations

import math
import random
from collections.abc import Callable, Mapping, Sequence

from zodforge.core.types import SelectionStrategy
from zodforge.providers.registry import BackendMetadata

CHARS_PER_UNIT = 4
DEFAULT_OUTPUT_UNITS = 500

def estimate_units(text: str) -> int:
    """Rough work-unit estimate for ``text`` (~4 characters per unit)."""
    return math.ceil(len(text) / CHARS_PER_UNIT)

def estimate_cost(meta: BackendMetadata, input_units: int, output_units: int) -> float:
    return (input_units / 1000) * meta.cost_per_input_unit + (
        output_units / 1000
    ) * meta.cost_per_output_unit

def apply_preferences(
    candidates: Sequence[BackendMetadata], preferred_ids: Sequence[str] | None
) -> list[BackendMetadata]:
    """Restrict to preferred backends when at least one of them is a candidate."""
    if preferred_ids:
        wanted = set(preferred_ids)
        preferred = [c for c in candidates if c.id in wanted]
        if preferred:
            return preferred
    return list(candidates)

def rank(
    candidates: Sequence[BackendMetadata],
    strategy: SelectionStrategy,
    input_units: int,
    output_units: int,
    *,
    round_robin_cursor: int = 0,
    latency_ms_by_backend: Mapping[str, float] | None = None,
    rng: Callable[[], float] = random.random,
) -> list[BackendMetadata]:
    """Order ``candidates`` under ``strategy``; element 0 is the primary."""
    if not candidates:
        return []
    ordered = list(candidates)

    match SelectionStrategy(strategy):
        case SelectionStrategy.PRIORITY | SelectionStrategy.MANUAL:
            return ordered

        case SelectionStrategy.COST:
            return sorted(ordered, key=lambda c: estimate_cost(c, input_units, output_units))

        case SelectionStrategy.PERFORMANCE:
            latencies = latency_ms_by_backend or {}
            measured = sorted(
                (c for c in ordered if c.id in latencies), key=lambda c: latencies[c.id]
            )
            return measured + [c for c in ordered if c.id not in latencies]

        case SelectionStrategy.ROUND_ROBIN:
            index = round_robin_cursor % len(ordered)
            return ordered[index:] + ordered[:index]

        case SelectionStrategy.WEIGHTED:
            primary = _weighted_pick(ordered, rng)
            return [primary] + [c for c in ordered if c is not primary]

    raise ValueError(f"unknown selection strategy: {strategy!r}")

def _weighted_pick(
    candidates: Sequence[BackendMetadata], rng: Callable[[], float]
) -> BackendMetadata:
    total = sum(c.weight for c in candidates)
    if total <= 0:
        return candidates[0]
    remainder = rng() * total
    for candidate in candidates:
        remainder -= candidate.weight
        if remainder <= 0:
            return candidate
    return candidates[0]

def choose_primary(
    candidates: Sequence[BackendMetadata],
    strategy: SelectionStrategy,
    input_units: int,
    output_units: int,
    *,
    preferred_ids: Sequence[str] | None = None,
    round_robin_cursor: int = 0,
    latency_ms_by_backend: Mapping[str, float] | None = None,
    rng: Callable[[], float] = random.random,
) -> str | None:
    pool = apply_preferences(candidates, preferred_ids)
    ranked = rank(
        pool,
        strategy,
        input_units,
        output_units,
        round_robin_cursor=round_robin_cursor,
        latency_ms_by_backend=latency_ms_by_backend,
        rng=rng,
    )
    return ranked[0].id if ranked else None

def fallback_chain(
    primary: str,
    candidates: Sequence[BackendMetadata],
    max_fallback_attempts: int,
) -> list[str]:
    """Other candidates by priority descending, at most ``max_fallback_attempts``."""
    if max_fallback_attempts <= 0:
        return []
    others = sorted(
        (c for c in candidates if c.id != primary), key=lambda c: c.priority, reverse=True
    )
    return [c.id for c in others[:max_fallback_attempts]]

def select(
    candidates: Sequence[BackendMetadata],
    strategy: SelectionStrategy,
    input_units: int,
    output_units: int = DEFAULT_OUTPUT_UNITS,
    *,
    preferred_ids: Sequence[str] | None = None,
    round_robin_cursor: int = 0,
    max_fallback_attempts: int = 0,
    latency_ms_by_backend: Mapping[str, float] | None = None,
    rng: Callable[[], float] = random.random,
) -> list[str]:
    """Primary backend id followed by its fallback chain."""
    primary = choose_primary(
        candidates,
        strategy,
        input_units,
        output_units,
        preferred_ids=preferred_ids,
        round_robin_cursor=round_robin_cursor,
        latency_ms_by_backend=latency_ms_by_backend,
        rng=rng,
    )
    if primary is None:
        return []
    return [primary, *fallback_chain(primary, candidates, max_fallback_attempts)]
