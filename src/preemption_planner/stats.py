"""Thread-safe running totals of preemption planning outcomes."""

from dataclasses import dataclass
from threading import Lock

import structlog

from .preemption import PreemptionPlan

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StatsSnapshot:
    """Point-in-time copy of the planner counters."""

    feasible_plans: int = 0
    infeasible_plans: int = 0
    allocations_considered: int = 0
    allocations_ineligible: int = 0
    allocations_preempted: int = 0
    last_plan_duration: float | None = None


class PreemptionStats:
    """Accumulates counters across planning runs.

    Safe to share between request handlers and the metrics collector.
    """

    def __init__(self):
        self._lock = Lock()
        self._feasible = 0
        self._infeasible = 0
        self._considered = 0
        self._ineligible = 0
        self._preempted = 0
        self._last_duration: float | None = None

    def record(self, plan: PreemptionPlan) -> None:
        """Add the outcome of one planning run to the totals."""
        with self._lock:
            if plan.feasible:
                self._feasible += 1
                self._preempted += len(plan.allocs or [])
            else:
                self._infeasible += 1
            self._considered += plan.considered
            self._ineligible += plan.ineligible
            self._last_duration = plan.duration
        logger.debug(
            "Recorded plan",
            feasible=plan.feasible,
            duration_seconds=round(plan.duration, 6),
        )

    def snapshot(self) -> StatsSnapshot:
        """Return a consistent copy of the current totals."""
        with self._lock:
            return StatsSnapshot(
                feasible_plans=self._feasible,
                infeasible_plans=self._infeasible,
                allocations_considered=self._considered,
                allocations_ineligible=self._ineligible,
                allocations_preempted=self._preempted,
                last_plan_duration=self._last_duration,
            )
