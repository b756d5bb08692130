from __future__ import annotations

import bisect
import logging
from typing import Mapping, Sequence

from .models import GroupEdit, PlanTable

LOGGER = logging.getLogger("nodescale.distributor")


def distribute(
    groups_by_size: Mapping[int, Sequence[str]],
    desired_count: int,
) -> tuple[PlanTable, int]:
    """Spread ``desired_count`` new machines evenly across MachineSets.

    Size buckets are walked smallest first. Every group in the current bucket
    grows by one and moves into the next bucket, so the smallest groups are
    levelled up before any group grows past its peers. Returns the plan and the
    number of machines that could not be placed.
    """
    plan: PlanTable = {}
    if desired_count <= 0:
        return plan, desired_count

    buckets = {size: list(names) for size, names in groups_by_size.items() if names}
    sizes = sorted(buckets)

    while desired_count > 0 and sizes:
        size = sizes.pop(0)
        names = buckets.pop(size)
        promoted: list[str] = []
        for name in names:
            if desired_count <= 0:
                break
            edit = plan.get(name)
            if edit is None:
                edit = GroupEdit(name=name, previous_size=size, target_size=size)
                plan[name] = edit
            edit.target_size = size + 1
            promoted.append(name)
            desired_count -= 1

        leftover = names[len(promoted):]
        if leftover:
            buckets[size] = leftover
            bisect.insort(sizes, size)
        if promoted:
            if size + 1 not in buckets:
                buckets[size + 1] = []
                bisect.insort(sizes, size + 1)
            buckets[size + 1].extend(promoted)

    for edit in plan.values():
        LOGGER.debug("%s: %d -> %d", edit.name, edit.previous_size, edit.target_size)
    return plan, desired_count


def resized_groups(
    groups_by_size: Mapping[int, Sequence[str]],
    plan: PlanTable,
) -> dict[int, list[str]]:
    """Return the size map the cluster would report once ``plan`` converges."""
    resized: dict[int, list[str]] = {}
    for size in sorted(groups_by_size):
        for name in groups_by_size[size]:
            edit = plan.get(name)
            new_size = edit.target_size if edit is not None else size
            resized.setdefault(new_size, []).append(name)
    return resized
