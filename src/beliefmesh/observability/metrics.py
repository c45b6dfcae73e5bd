"""Prometheus metrics for epoch processing.

Provides ``EpochMetrics``, a facade over a private ``CollectorRegistry``
so several orchestrators (and test runs) never collide on metric names.
"""

from __future__ import annotations

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class EpochMetrics:
    """Metrics exposed:

    * ``epochs_processed_total`` counter by ``outcome`` (success, skipped, failed)
    * ``fallback_aggregations_total`` counter by failure ``reason``
    * ``stake_moved_micro_total`` counter of micro-units moved by slashing
    * ``epoch_duration_seconds`` histogram of full pipeline runs
    * ``belief_aggregate`` gauge per ``belief_id``

    Args:
        prefix: Metric name prefix. Defaults to ``beliefmesh``.
        registry: Registry to register on. A fresh one by default.
    """

    def __init__(self, prefix: str = "beliefmesh", registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.epochs_processed_total = Counter(
            f"{prefix}_epochs_processed_total",
            "Epoch runs by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.fallback_aggregations_total = Counter(
            f"{prefix}_fallback_aggregations_total",
            "Epoch runs that fell back to the weighted average",
            ["reason"],
            registry=self.registry,
        )
        self.stake_moved_micro_total = Counter(
            f"{prefix}_stake_moved_micro_total",
            "Stake moved from losers to winners, in micro-units",
            registry=self.registry,
        )
        self.epoch_duration_seconds = Histogram(
            f"{prefix}_epoch_duration_seconds",
            "Duration of one belief's epoch run in seconds",
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self.registry,
        )
        self.belief_aggregate = Gauge(
            f"{prefix}_belief_aggregate",
            "Last persisted aggregate per belief",
            ["belief_id"],
            registry=self.registry,
        )

    def record_outcome(self, outcome: str) -> None:
        self.epochs_processed_total.labels(outcome=outcome).inc()

    def record_fallback(self, reason: str) -> None:
        self.fallback_aggregations_total.labels(reason=reason).inc()

    def record_stake_moved(self, amount: int) -> None:
        if amount > 0:
            self.stake_moved_micro_total.inc(amount)

    def observe_duration(self, seconds: float) -> None:
        self.epoch_duration_seconds.observe(seconds)

    def set_aggregate(self, belief_id: str, aggregate: float) -> None:
        self.belief_aggregate.labels(belief_id=belief_id).set(aggregate)

    def sample(self, name: str, labels: Optional[dict[str, str]] = None) -> Optional[float]:
        """Current value of sample *name*, or None if it was never recorded."""
        return self.registry.get_sample_value(name, labels or {})

    def export(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)
