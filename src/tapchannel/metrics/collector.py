"""Metrics collector: Prometheus counters, gauges, histograms.

Exposed series:
- ``tapchannel_stats_total`` gauge-vec (wallets, deposits, unsettled_commitments, settlements_in_flight)
- ``tapchannel_settlements_total`` counter by outcome
- ``tapchannel_settlement_duration_seconds``
- ``tapchannel_commitments_created_total`` / ``tapchannel_deposits_detected_total``
- ``tapchannel_cron_histogram`` / ``tapchannel_cron_last_execution_gauge``
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import TYPE_CHECKING

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

if TYPE_CHECKING:
    from collections.abc import Iterator


_PREFIX = "tapchannel"

_STAT_LABELS = ("entity",)

# Settlements wait for a block; buckets span seconds to hours.
_SETTLEMENT_BUCKETS = (1.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0)


class MetricsCollector:
    """Low-level Prometheus collector that owns the registry.

    Use :class:`EngineMetrics` for the high-level tracking interface.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def gauge(self, name: str, doc: str, labels: tuple[str, ...] = ()) -> Gauge:
        return Gauge(name, doc, labels, registry=self._registry)

    def histogram(
        self,
        name: str,
        doc: str,
        labels: tuple[str, ...] = (),
        buckets: tuple[float, ...] = Histogram.DEFAULT_BUCKETS,
    ) -> Histogram:
        return Histogram(name, doc, labels, registry=self._registry, buckets=buckets)

    def counter(self, name: str, doc: str, labels: tuple[str, ...] = ()) -> Counter:
        return Counter(name, doc, labels, registry=self._registry)


class EngineMetrics:
    """High-level channel engine metrics."""

    def __init__(self, collector: MetricsCollector | None = None) -> None:
        self._collector = collector or MetricsCollector()

        self._stats = self._collector.gauge(
            f"{_PREFIX}_stats_total",
            "Entity counts in the channel ledger",
            _STAT_LABELS,
        )
        self._settlements = self._collector.counter(
            f"{_PREFIX}_settlements",
            "Settlement outcomes",
            ("outcome",),
        )
        self._settlement_duration = self._collector.histogram(
            f"{_PREFIX}_settlement_duration_seconds",
            "Time from settlement lock to confirmation or timeout",
            buckets=_SETTLEMENT_BUCKETS,
        )
        self._commitments = self._collector.counter(
            f"{_PREFIX}_commitments_created",
            "Commitments recorded",
        )
        self._deposits = self._collector.counter(
            f"{_PREFIX}_deposits_detected",
            "Deposits first seen by the monitor",
        )

        self._cron_histogram = self._collector.histogram(
            f"{_PREFIX}_cron_histogram",
            "Duration of cron job executions",
            ("job_name",),
        )
        self._cron_last = self._collector.gauge(
            f"{_PREFIX}_cron_last_execution_gauge",
            "Timestamp of last cron execution",
            ("job_name",),
        )

    @property
    def registry(self) -> CollectorRegistry:
        """Return the underlying Prometheus registry."""
        return self._collector.registry

    # -- Stat setters --

    def set_stat(self, entity: str, count: int) -> None:
        """Set the current count of *entity* (``wallets``, ``deposits``, ...)."""
        self._stats.labels(entity=entity).set(count)

    # -- Events --

    def record_settlement(self, outcome: str) -> None:
        """Count a settlement ending in *outcome* (``confirmed``, ``timed_out``, ``failed``)."""
        self._settlements.labels(outcome=outcome).inc()

    def observe_settlement_duration(self, seconds: float) -> None:
        self._settlement_duration.observe(seconds)

    def record_commitment(self) -> None:
        self._commitments.inc()

    def record_deposits(self, count: int = 1) -> None:
        self._deposits.inc(count)

    # -- Cron --

    @contextmanager
    def track_cron(self, job_name: str) -> Iterator[None]:
        """Track the duration of a cron job and record last execution time."""
        start = time.monotonic()
        try:
            yield
        finally:
            self._cron_histogram.labels(job_name=job_name).observe(time.monotonic() - start)
            self._cron_last.labels(job_name=job_name).set(time.time())
