"""Tests for epoch processing metrics."""

from prometheus_client import CollectorRegistry

from beliefmesh.observability import EpochMetrics


class TestEpochMetrics:
    def test_unrecorded_sample_is_none(self):
        metrics = EpochMetrics()
        assert metrics.sample("beliefmesh_epochs_processed_total", {"outcome": "success"}) is None

    def test_outcomes(self):
        metrics = EpochMetrics()
        metrics.record_outcome("success")
        metrics.record_outcome("success")
        metrics.record_outcome("skipped")
        assert metrics.sample("beliefmesh_epochs_processed_total", {"outcome": "success"}) == 2.0
        assert metrics.sample("beliefmesh_epochs_processed_total", {"outcome": "skipped"}) == 1.0

    def test_fallback_by_reason(self):
        metrics = EpochMetrics()
        metrics.record_fallback("DegenerateSupportError")
        assert metrics.sample(
            "beliefmesh_fallback_aggregations_total", {"reason": "DegenerateSupportError"}
        ) == 1.0

    def test_stake_moved_ignores_zero(self):
        metrics = EpochMetrics()
        metrics.record_stake_moved(0)
        metrics.record_stake_moved(1500)
        assert metrics.sample("beliefmesh_stake_moved_micro_total") == 1500.0

    def test_duration_histogram(self):
        metrics = EpochMetrics()
        metrics.observe_duration(0.02)
        assert metrics.sample("beliefmesh_epoch_duration_seconds_count") == 1.0
        assert metrics.sample("beliefmesh_epoch_duration_seconds_bucket", {"le": "0.05"}) == 1.0
        assert metrics.sample("beliefmesh_epoch_duration_seconds_bucket", {"le": "0.01"}) == 0.0

    def test_aggregate_gauge(self):
        metrics = EpochMetrics()
        metrics.set_aggregate("b1", 0.7)
        metrics.set_aggregate("b1", 0.65)
        assert metrics.sample("beliefmesh_belief_aggregate", {"belief_id": "b1"}) == 0.65

    def test_custom_prefix_and_registry(self):
        registry = CollectorRegistry()
        metrics = EpochMetrics(prefix="market", registry=registry)
        metrics.record_outcome("failed")
        assert registry.get_sample_value("market_epochs_processed_total", {"outcome": "failed"}) == 1.0

    def test_instances_do_not_collide(self):
        EpochMetrics().record_outcome("success")
        assert EpochMetrics().sample("beliefmesh_epochs_processed_total", {"outcome": "success"}) is None

    def test_export(self):
        metrics = EpochMetrics()
        metrics.record_outcome("success")
        text = metrics.export().decode()
        assert 'beliefmesh_epochs_processed_total{outcome="success"} 1.0' in text
