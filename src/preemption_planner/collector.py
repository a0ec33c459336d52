"""Prometheus collector for preemption planner statistics.

Separates reading the counters (fetcher) from turning them into metric
families (generator) so that each side can be swapped out in tests.
"""

from collections.abc import Callable, Iterator
from typing import TypeAlias

import structlog
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.metrics_core import Metric
from prometheus_client.registry import Collector

from .stats import StatsSnapshot

logger = structlog.get_logger(__name__)

METRIC_PREFIX = "preemption"

Fetcher: TypeAlias = Callable[[], StatsSnapshot]
MetricsGenerator: TypeAlias = Callable[[StatsSnapshot], Iterator[Metric]]


def generate_metrics(snapshot: StatsSnapshot) -> Iterator[Metric]:
    """Generate Prometheus metrics from a stats snapshot.

    Args:
        snapshot: Planner counters.

    Yields:
        Prometheus Metric objects.
    """
    plans = CounterMetricFamily(
        f"{METRIC_PREFIX}_plans",
        "Preemption plans computed, by outcome",
        labels=["outcome"],
    )
    plans.add_metric(["feasible"], snapshot.feasible_plans)
    plans.add_metric(["infeasible"], snapshot.infeasible_plans)
    yield plans

    considered = CounterMetricFamily(
        f"{METRIC_PREFIX}_allocations_considered",
        "Running allocations offered to the planner",
    )
    considered.add_metric([], snapshot.allocations_considered)
    yield considered

    ineligible = CounterMetricFamily(
        f"{METRIC_PREFIX}_allocations_ineligible",
        "Allocations excluded by the priority band",
    )
    ineligible.add_metric([], snapshot.allocations_ineligible)
    yield ineligible

    preempted = CounterMetricFamily(
        f"{METRIC_PREFIX}_allocations_preempted",
        "Allocations selected for preemption by feasible plans",
    )
    preempted.add_metric([], snapshot.allocations_preempted)
    yield preempted

    # -1 until the first plan has been computed
    last_duration = GaugeMetricFamily(
        f"{METRIC_PREFIX}_last_plan_duration_seconds",
        "Wall time of the most recent planning run, -1 if none yet",
    )
    duration = snapshot.last_plan_duration
    last_duration.add_metric([], duration if duration is not None else -1.0)
    yield last_duration


class PlannerCollector(Collector):
    """Prometheus collector exposing planner counters.

    Configured with a fetcher returning the current counters and a generator
    turning them into metric families. A failing fetcher is logged and
    counted, never propagated to the scrape.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        generator: MetricsGenerator = generate_metrics,
    ):
        """Initialize the collector.

        Args:
            fetcher: Function returning a snapshot of the planner counters.
            generator: Function that generates Prometheus metrics from it.
        """
        self._fetcher = fetcher
        self._generator = generator
        self._error_count = 0

    def collect(self) -> Iterator[Metric]:
        """Collect metrics for a Prometheus scrape.

        Yields:
            Scrape error counter followed by the planner metrics.
        """
        snapshot: StatsSnapshot | None = None
        try:
            snapshot = self._fetcher()
        except Exception:
            logger.exception("Failed to read planner statistics")
            self._error_count += 1

        error_counter = CounterMetricFamily(
            f"{METRIC_PREFIX}_scrape_error",
            "preemption planner statistics scrape errors",
        )
        error_counter.add_metric([], self._error_count)
        yield error_counter

        if snapshot is not None:
            yield from self._generator(snapshot)
