"""Simple in-process metrics registry for scheduler and resolver instrumentation."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field


@dataclass
class MetricsRegistry:
    """Holds counters exposed by the scheduler and the content resolver."""

    tier_hits: Counter = field(default_factory=Counter)
    network_calls: int = 0
    network_failures: int = 0
    network_stitches_requested: int = 0
    network_stitches_fetched: int = 0
    synthetic_fallbacks: int = 0
    prefetch_failures: int = 0
    cache_invalidations: int = 0
    completion_outcomes: Counter = field(default_factory=Counter)
    skip_transitions: Counter = field(default_factory=Counter)
    structural_repairs: Counter = field(default_factory=Counter)

    def record_tier_hit(self, tier: str) -> None:
        self.tier_hits[tier] += 1

    def record_network_call(self, requested: int) -> None:
        self.network_calls += 1
        self.network_stitches_requested += requested

    def record_network_success(self, fetched: int) -> None:
        self.network_stitches_fetched += fetched

    def record_network_failure(self) -> None:
        self.network_failures += 1

    def record_synthetic_fallback(self) -> None:
        self.synthetic_fallbacks += 1

    def record_prefetch_failure(self) -> None:
        self.prefetch_failures += 1

    def record_invalidation(self) -> None:
        self.cache_invalidations += 1

    def record_completion(self, perfect: bool, previous_skip: int, new_skip: int) -> None:
        self.completion_outcomes["perfect" if perfect else "imperfect"] += 1
        self.skip_transitions[(previous_skip, new_skip)] += 1

    def record_repair(self, tube_index: int) -> None:
        self.structural_repairs[tube_index] += 1

    @property
    def network_success_rate(self) -> float:
        if self.network_calls == 0:
            return 0.0
        return (self.network_calls - self.network_failures) / self.network_calls


__all__ = ["MetricsRegistry"]
