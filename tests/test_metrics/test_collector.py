"""Tests for the engine metrics collector."""

from __future__ import annotations

import pytest
from prometheus_client import CollectorRegistry

from tapchannel.metrics.collector import EngineMetrics, MetricsCollector


@pytest.fixture
def metrics() -> EngineMetrics:
    return EngineMetrics()


class TestMetricsCollector:
    def test_own_registry_by_default(self) -> None:
        assert MetricsCollector().registry is not MetricsCollector().registry

    def test_uses_given_registry(self) -> None:
        registry = CollectorRegistry()
        collector = MetricsCollector(registry)
        collector.counter("example_events", "Example events").inc()
        assert registry.get_sample_value("example_events_total") == 1.0

    def test_engines_do_not_collide(self) -> None:
        # Two engines in one process must not share series.
        first, second = EngineMetrics(), EngineMetrics()
        first.record_commitment()
        assert second.registry.get_sample_value("tapchannel_commitments_created_total") == 0.0


class TestEngineMetrics:
    def test_set_stat(self, metrics: EngineMetrics) -> None:
        metrics.set_stat("wallets", 3)
        metrics.set_stat("wallets", 5)
        assert metrics.registry.get_sample_value("tapchannel_stats_total", {"entity": "wallets"}) == 5.0

    def test_record_settlement(self, metrics: EngineMetrics) -> None:
        metrics.record_settlement("confirmed")
        metrics.record_settlement("confirmed")
        metrics.record_settlement("timed_out")
        sample = metrics.registry.get_sample_value
        assert sample("tapchannel_settlements_total", {"outcome": "confirmed"}) == 2.0
        assert sample("tapchannel_settlements_total", {"outcome": "timed_out"}) == 1.0
        assert sample("tapchannel_settlements_total", {"outcome": "failed"}) is None

    def test_settlement_duration(self, metrics: EngineMetrics) -> None:
        metrics.observe_settlement_duration(45.0)
        sample = metrics.registry.get_sample_value
        assert sample("tapchannel_settlement_duration_seconds_count") == 1.0
        assert sample("tapchannel_settlement_duration_seconds_sum") == 45.0
        assert sample("tapchannel_settlement_duration_seconds_bucket", {"le": "30.0"}) == 0.0
        assert sample("tapchannel_settlement_duration_seconds_bucket", {"le": "60.0"}) == 1.0

    def test_commitments_and_deposits(self, metrics: EngineMetrics) -> None:
        metrics.record_commitment()
        metrics.record_deposits(3)
        metrics.record_deposits()
        sample = metrics.registry.get_sample_value
        assert sample("tapchannel_commitments_created_total") == 1.0
        assert sample("tapchannel_deposits_detected_total") == 4.0

    def test_track_cron(self, metrics: EngineMetrics) -> None:
        with metrics.track_cron("calculate_metrics"):
            pass
        labels = {"job_name": "calculate_metrics"}
        sample = metrics.registry.get_sample_value
        assert sample("tapchannel_cron_histogram_count", labels) == 1.0
        assert sample("tapchannel_cron_last_execution_gauge", labels) > 0

    def test_track_cron_records_on_error(self, metrics: EngineMetrics) -> None:
        with pytest.raises(ValueError, match="boom"), metrics.track_cron("settlement_reconcile"):
            msg = "boom"
            raise ValueError(msg)
        count = metrics.registry.get_sample_value(
            "tapchannel_cron_histogram_count", {"job_name": "settlement_reconcile"}
        )
        assert count == 1.0
