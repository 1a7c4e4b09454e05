"""Prometheus collector rendering the metric registry.

Bridges the exporter's own :class:`MetricRegistry` to prometheus_client: each
scrape reads one consistent registry snapshot, groups it into metric
families and appends metrics describing the exporter itself.
"""

import itertools
from collections.abc import Iterator

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

from .loop import ExporterStats
from .registry import MetricRegistry
from .translator import MetricSample, MetricType


def _family(name: str, samples: list[MetricSample]) -> Metric:
    """Build one metric family from samples sharing a name."""
    first = samples[0]
    documentation = first.documentation or name
    if first.metric_type is MetricType.COUNTER:
        family = CounterMetricFamily(name, documentation)
        # CounterMetricFamily strips a trailing _total from its name
        sample_name = f"{family.name}_total"
    else:
        family = GaugeMetricFamily(name, documentation)
        sample_name = family.name
    for sample in samples:
        family.add_sample(sample_name, sample.label_dict, sample.value)
    return family


class RegistryCollector(Collector):
    """Prometheus collector over a :class:`MetricRegistry`.

    Never triggers collection itself: a scrape only reads what the last
    successful cycle published, so it returns immediately even while a cycle
    is in progress or before the first one completed.
    """

    def __init__(
        self,
        registry: MetricRegistry,
        stats: ExporterStats,
        metric_prefix: str = "beegfs",
    ):
        """Initialize the collector.

        Args:
            registry: Registry holding the cluster samples.
            stats: Exporter statistics rendered as self-metrics.
            metric_prefix: Prefix for the self-metric names.
        """
        self._registry = registry
        self._stats = stats
        self._metric_prefix = metric_prefix

    def collect(self) -> Iterator[Metric]:
        """Collect metrics for a Prometheus scrape.

        Yields:
            Cluster metric families followed by exporter self-metrics.
        """
        samples = self._registry.snapshot_for_export()
        # Samples are sorted by name, so each family is one contiguous run
        for name, group in itertools.groupby(samples, key=lambda s: s.name):
            yield _family(name, list(group))

        yield from self._self_metrics()

    def _self_metrics(self) -> Iterator[Metric]:
        prefix = f"{self._metric_prefix}_exporter"
        stats = self._stats

        up = GaugeMetricFamily(
            f"{prefix}_up",
            "1 if the last collection cycle read the cluster successfully",
        )
        up.add_metric([], 1.0 if stats.up else 0.0)
        yield up

        cycle_duration = GaugeMetricFamily(
            f"{prefix}_cycle_duration_seconds",
            "Duration of the last collection cycle in seconds",
        )
        cycle_duration.add_metric([], stats.last_cycle_duration)
        yield cycle_duration

        last_success = GaugeMetricFamily(
            f"{prefix}_last_success_timestamp_seconds",
            "Unix time of the last successful collection cycle, 0 if none",
        )
        last_success.add_metric([], stats.last_success_timestamp)
        yield last_success

        cycles = CounterMetricFamily(
            f"{prefix}_cycles",
            "Collection cycles started",
        )
        cycles.add_metric([], stats.cycles)
        yield cycles

        source_errors = CounterMetricFamily(
            f"{prefix}_source_errors",
            "Collection cycles skipped because the status source failed",
        )
        source_errors.add_metric([], stats.source_errors)
        yield source_errors

        skipped = CounterMetricFamily(
            f"{prefix}_skipped_counters",
            "Cluster counter values skipped because they were not numeric",
        )
        skipped.add_metric([], stats.skipped_counters)
        yield skipped

        restarts = CounterMetricFamily(
            f"{prefix}_restarts",
            "Collector loop restarts after internal faults",
        )
        restarts.add_metric([], stats.restarts)
        yield restarts

        registry_series = GaugeMetricFamily(
            f"{prefix}_series",
            "Cluster series currently exported",
        )
        registry_series.add_metric([], len(self._registry))
        yield registry_series
