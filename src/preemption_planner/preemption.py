"""Selection of running allocations to preempt for a higher-priority job.

Given the allocations on a single node and the resources a pending job asks
for, picks a small set of lower-priority allocations whose combined
resources cover the ask. Planning runs in two passes:

1. A greedy pass walks priority groups from least to most important and
   repeatedly takes the allocation whose resource shape is closest to the
   ask, until the accumulated resources meet it.
2. A minimization pass re-orders the greedy picks by descending distance and
   keeps only the shortest prefix that still meets the ask.

The result is feasible and locally minimal, not globally minimal. Static
port asks are not taken into account.
"""

import math
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

import structlog

from .structs import Allocation, Resources

logger = structlog.get_logger(__name__)

# Allocations whose job priority is within this band of the requesting job
# (or above it) are never preempted.
PRIORITY_BAND = 10


@dataclass
class PriorityGroup:
    """Eligible allocations sharing one job priority."""

    priority: int
    allocs: list[Allocation] = field(default_factory=list)


@dataclass
class PreemptionPlan:
    """Outcome of a preemption planning run.

    ``allocs`` is None when no feasible set exists. The counters describe how
    the candidate pool was narrowed down.
    """

    allocs: list[Allocation] | None
    considered: int = 0
    eligible: int = 0
    greedy_selected: int = 0
    duration: float = 0.0

    @property
    def feasible(self) -> bool:
        """Whether the plan frees enough resources for the ask."""
        return self.allocs is not None

    @property
    def ineligible(self) -> int:
        """Number of allocations excluded by the priority band."""
        return self.considered - self.eligible


def _coord(ask: float, have: float) -> float:
    if ask <= 0:
        return 0.0
    try:
        return (ask - have) / ask
    except OverflowError:
        # Shortfall beyond float range ranks as infinitely far.
        return math.inf


def resource_distance(resource: Resources, ask: Resources) -> float:
    """Compute how closely a resource vector matches the ask.

    Each dimension contributes the relative shortfall ``(ask - have) / ask``,
    or 0 when the ask is zero in that dimension. Network bandwidth uses the
    first descriptor on each side and only when both sides have one. The
    distance is the Euclidean norm of these coordinates, so lower values
    mean a closer fit. Over-provisioning is penalized like under-provisioning.
    Coordinates too large for a float make the distance infinite, and such
    allocations are never picked.

    Args:
        resource: Resources occupied by a candidate allocation.
        ask: Resources asked for by the pending job.

    Returns:
        Non-negative distance, 0 for an exact match.
    """
    mbits_coord = 0.0
    if ask.networks and resource.networks:
        mbits_coord = _coord(ask.networks[0].mbits, resource.networks[0].mbits)

    return math.hypot(
        _coord(ask.memory_mb, resource.memory_mb),
        _coord(ask.cpu, resource.cpu),
        _coord(ask.iops, resource.iops),
        mbits_coord,
        _coord(ask.disk_mb, resource.disk_mb),
    )


def meets_requirements(have: Resources, want: Resources) -> bool:
    """Check whether ``have`` meets or exceeds the requirements of ``want``.

    CPU, memory, disk and IOPS must each be at least as large. Network
    bandwidth is only compared when both vectors carry a network, so a want
    with a network requirement passes against a have without one.
    """
    return have.superset(want)


def filter_and_group(
    job_priority: int,
    allocs: Iterable[Allocation],
) -> list[PriorityGroup]:
    """Group preemptible allocations by job priority.

    Allocations with a job priority of ``job_priority + PRIORITY_BAND`` or
    higher are dropped. The remaining allocations are bucketed by exact
    priority, and buckets are returned lowest priority first. Input order is
    kept within a bucket.

    Args:
        job_priority: Priority of the job asking for resources.
        allocs: Allocations currently running on the node.

    Returns:
        Priority groups in ascending priority order.
    """
    by_priority: dict[int, list[Allocation]] = {}
    for alloc in allocs:
        if alloc.job_priority >= job_priority + PRIORITY_BAND:
            continue
        by_priority.setdefault(alloc.job_priority, []).append(alloc)

    return [
        PriorityGroup(priority=priority, allocs=by_priority[priority])
        for priority in sorted(by_priority)
    ]


def _accumulate(total: Resources | None, delta: Resources) -> Resources:
    # Seed with a copy so that an allocation's own resources are never
    # used as the running total.
    if total is None:
        return delta.clone()
    total.add(delta)
    return total


def _closest_index(allocs: list[Allocation], ask: Resources) -> int:
    best_index = -1
    best_distance = math.inf
    for index, alloc in enumerate(allocs):
        distance = resource_distance(alloc.resources, ask)
        logger.debug(
            "Computed resource distance",
            alloc_id=alloc.id,
            job_priority=alloc.job_priority,
            cpu=alloc.resources.cpu,
            memory_mb=alloc.resources.memory_mb,
            disk_mb=alloc.resources.disk_mb,
            iops=alloc.resources.iops,
            distance=round(distance, 3),
        )
        if distance < best_distance:
            best_distance = distance
            best_index = index
    return best_index


def select_candidates(
    groups: list[PriorityGroup],
    ask: Resources,
) -> tuple[list[Allocation], bool]:
    """Greedily pick allocations until their resources cover the ask.

    Groups are consumed in the order given, which should be ascending
    priority. Within a group the remaining allocation closest to the ask is
    picked first; on equal distance the earlier one wins. Picked allocations
    are removed from their group.

    Args:
        groups: Eligible allocations grouped by priority. Consumed in place.
        ask: Resources asked for by the pending job.

    Returns:
        Tuple of (candidates, requirements_met) where candidates are the picked
        allocations in pick order.
    """
    candidates: list[Allocation] = []
    freed: Resources | None = None

    for group in groups:
        while group.allocs:
            index = _closest_index(group.allocs, ask)
            if index == -1:
                # Nothing left that can be ranked, the pool is exhausted.
                return candidates, False

            closest = group.allocs.pop(index)
            freed = _accumulate(freed, closest.resources)
            candidates.append(closest)
            if meets_requirements(freed, ask):
                return candidates, True

    return candidates, False


def minimize_candidates(
    candidates: list[Allocation],
    ask: Resources,
) -> list[Allocation]:
    """Drop preemptions made redundant by other selected allocations.

    Candidates are ordered by descending distance to the ask so that broad
    allocations, which are most likely to cover the others, come first. The
    shortest prefix of that order whose combined resources meet the ask is
    returned.

    Args:
        candidates: Allocations picked by the greedy pass.
        ask: Resources asked for by the pending job.

    Returns:
        Subset of ``candidates`` to preempt.
    """
    ordered = sorted(
        candidates,
        key=lambda alloc: resource_distance(alloc.resources, ask),
        reverse=True,
    )

    selected: list[Allocation] = []
    freed: Resources | None = None
    for alloc in ordered:
        freed = _accumulate(freed, alloc.resources)
        selected.append(alloc)
        if meets_requirements(freed, ask):
            break
    return selected


def plan_preemption(
    job_priority: int,
    allocs: list[Allocation],
    ask: Resources,
) -> PreemptionPlan:
    """Plan which allocations to preempt so that ``ask`` can be placed.

    Args:
        job_priority: Priority of the job asking for resources.
        allocs: Allocations currently running on the node.
        ask: Resources asked for by the pending job.

    Returns:
        PreemptionPlan whose ``allocs`` is None if the eligible allocations
        cannot free enough resources.
    """
    start = time.perf_counter()
    groups = filter_and_group(job_priority, allocs)
    eligible = sum(len(group.allocs) for group in groups)

    candidates, requirements_met = select_candidates(groups, ask)
    selected = minimize_candidates(candidates, ask) if requirements_met else None

    plan = PreemptionPlan(
        allocs=selected,
        considered=len(allocs),
        eligible=eligible,
        greedy_selected=len(candidates),
        duration=time.perf_counter() - start,
    )

    if selected is None:
        logger.info(
            "No feasible preemption set",
            job_priority=job_priority,
            considered=plan.considered,
            eligible=plan.eligible,
        )
    else:
        logger.info(
            "Planned preemption",
            job_priority=job_priority,
            considered=plan.considered,
            eligible=plan.eligible,
            greedy_selected=plan.greedy_selected,
            preempted=[alloc.id for alloc in selected],
        )
    return plan


def get_preemptible_allocs(
    job_priority: int,
    allocs: list[Allocation],
    ask: Resources,
) -> list[Allocation] | None:
    """Return the allocations to preempt, or None if no feasible set exists."""
    return plan_preemption(job_priority, allocs, ask).allocs
