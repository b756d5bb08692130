from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .config import MAX_WAIT_TIMEOUT_SECONDS, POLL_INTERVAL_SECONDS
from .errors import ReadinessError
from .models import PlanTable

LOGGER = logging.getLogger("nodescale.waiter")

CONVERGED = "converged"
TIMED_OUT = "timed_out"
FAILED = "failed"


@dataclass(frozen=True)
class GroupOutcome:
    name: str
    status: str
    ready_replicas: int | None = None
    error: BaseException | None = None


@dataclass
class ConvergenceReport:
    outcomes: list[GroupOutcome] = field(default_factory=list)
    nodes_ready: bool = False

    @property
    def converged(self) -> list[str]:
        return self._names(CONVERGED)

    @property
    def timed_out(self) -> list[str]:
        return self._names(TIMED_OUT)

    @property
    def failed(self) -> list[str]:
        return self._names(FAILED)

    def _names(self, status: str) -> list[str]:
        return sorted(outcome.name for outcome in self.outcomes if outcome.status == status)


def poll_until(
    probe: Callable[[], int],
    expected: int,
    timeout_s: float,
    check_interval: float = POLL_INTERVAL_SECONDS,
) -> tuple[bool, int]:
    """Call ``probe`` until it reports at least ``expected`` or the deadline passes.

    Errors raised by ``probe`` propagate to the caller.
    """
    deadline = time.time() + timeout_s
    while True:
        observed = probe()
        if observed >= expected:
            return True, observed
        now = time.time()
        if now >= deadline:
            return False, observed
        sleep_for = min(check_interval, max(0.0, deadline - now))
        time.sleep(sleep_for)


def await_convergence(
    plan: PlanTable,
    group_status: Callable[[str], int],
    node_readiness: Callable[[], int],
    trigger_time: datetime,
    expected_nodes: int,
    timeout_s: float = MAX_WAIT_TIMEOUT_SECONDS,
    poll_interval: float = POLL_INTERVAL_SECONDS,
) -> ConvergenceReport:
    """Wait for every planned MachineSet, then for cluster-wide node readiness.

    Each MachineSet is polled on its own worker thread. A group that times out
    or errors is recorded in the report without affecting the others. The node
    readiness wait only starts once every group has finished and raises
    :class:`ReadinessError` when it fails.
    """
    for edit in plan.values():
        edit.trigger_timestamp = trigger_time

    report = ConvergenceReport()
    if plan:
        with ThreadPoolExecutor(
            max_workers=len(plan), thread_name_prefix="machineset-wait"
        ) as executor:
            futures = [
                executor.submit(
                    _wait_for_group,
                    edit.name,
                    edit.target_size,
                    group_status,
                    timeout_s,
                    poll_interval,
                )
                for edit in plan.values()
            ]
            wait(futures)
        report.outcomes = [future.result() for future in futures]
    LOGGER.info(
        "MachineSets finished waiting: %d converged, %d timed out, %d failed",
        len(report.converged),
        len(report.timed_out),
        len(report.failed),
    )

    try:
        ready, observed = poll_until(node_readiness, expected_nodes, timeout_s, poll_interval)
    except Exception as exc:
        raise ReadinessError(f"failed querying node readiness: {exc}", report) from exc
    if not ready:
        raise ReadinessError(
            f"only {observed}/{expected_nodes} nodes ready after {timeout_s:.0f}s",
            report,
        )
    report.nodes_ready = True
    LOGGER.info("All %d nodes are ready", expected_nodes)
    return report


def _wait_for_group(
    name: str,
    target: int,
    group_status: Callable[[str], int],
    timeout_s: float,
    poll_interval: float,
) -> GroupOutcome:
    try:
        ready, observed = poll_until(lambda: group_status(name), target, timeout_s, poll_interval)
    except Exception as exc:  # noqa: BLE001
        LOGGER.error("Failed waiting for MachineSet %s: %s", name, exc)
        return GroupOutcome(name=name, status=FAILED, error=exc)
    if not ready:
        LOGGER.error(
            "Timed out waiting for MachineSet %s: %d/%d replicas ready", name, observed, target
        )
        return GroupOutcome(name=name, status=TIMED_OUT, ready_replicas=observed)
    LOGGER.info("MachineSet %s has %d ready replicas", name, observed)
    return GroupOutcome(name=name, status=CONVERGED, ready_replicas=observed)
