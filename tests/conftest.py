"""Shared fixtures and in-memory stand-ins for the cluster and metrics sink."""

from __future__ import annotations

import contextlib
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from nodescale.errors import ApplyError, MeasurementError
from nodescale.models import MachineRecord, NodeRecord

EPOCH = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return EPOCH + timedelta(seconds=seconds)


def machine(name: str, created: float, ready: float | None, node_uid: str | None = None) -> MachineRecord:
    return MachineRecord(
        id=name,
        node_uid=node_uid if node_uid is not None else f"uid-{name}",
        creation_timestamp=at(created),
        ready_timestamp=at(ready) if ready is not None else None,
        boot_image_id="ami-0abc",
    )


def node(uid: str, observed: float, ready: float | None, labels: dict[str, str] | None = None) -> NodeRecord:
    return NodeRecord(
        uid=uid,
        name=f"node-{uid}",
        labels=labels or {},
        observed_timestamp=at(observed),
        ready_timestamp=at(ready) if ready is not None else None,
    )


class MemorySink:
    def __init__(self) -> None:
        self.batches: dict[str, list[dict[str, Any]]] = {}
        self.closed = False

    def index(self, metric_name: str, documents: list[dict[str, Any]]) -> None:
        self.batches.setdefault(metric_name, []).extend(documents)

    def close(self) -> None:
        self.closed = True


class FakeInventory:
    """Returns ``before`` on the first machine listing and ``after`` afterwards."""

    def __init__(self, groups, before, after, image_id: str = "ami-0abc") -> None:
        self.groups = groups
        self._listings = [list(before), list(after)]
        self.image_id = image_id
        self.epochs: list[int] = []

    def machinesets_by_size(self):
        return {size: list(names) for size, names in self.groups.items()}

    def machines(self, created_after_epoch: int = 0):
        self.epochs.append(created_after_epoch)
        listing = self._listings.pop(0) if len(self._listings) > 1 else self._listings[0]
        return list(listing), self.image_id


class FakeControl:
    def __init__(self, nodes: int = 3) -> None:
        self.calls: list[tuple] = []
        self.replicas: dict[str, int] = {}
        self.nodes = nodes
        self.ready_nodes = nodes
        self.fail_scale = False
        self.fail_restore = False
        self.fail_autoscaler = False

    def node_count(self) -> int:
        return self.nodes

    def ready_node_count(self) -> int:
        return self.ready_nodes

    def ready_replicas(self, name: str) -> int:
        return self.replicas.get(name, 0)

    def scale_machinesets(self, plan, restore: bool = False) -> None:
        self.calls.append(("scale", restore))
        if restore and self.fail_restore:
            raise ApplyError("restore rejected")
        if not restore and self.fail_scale:
            raise ApplyError("scale rejected")
        for edit in plan.values():
            self.replicas[edit.name] = edit.previous_size if restore else edit.target_size
        if not restore:
            self.ready_nodes = self.nodes + sum(edit.growth for edit in plan.values())

    @contextlib.contextmanager
    def autoscaling(self, plan, max_nodes_total, load_job):
        self.calls.append(("autoscaling", max_nodes_total))
        if self.fail_autoscaler:
            raise ApplyError("autoscaler rejected")
        for edit in plan.values():
            self.replicas[edit.name] = edit.target_size
        self.ready_nodes = self.nodes + sum(edit.growth for edit in plan.values())
        try:
            yield at(0)
        finally:
            self.calls.append(("teardown",))


class FakeCollector:
    def __init__(self, records: dict[str, NodeRecord] | None = None, fail_stop: bool = False) -> None:
        self._records = records or {}
        self.fail_stop = fail_stop
        self.started = False
        self.stopped = 0

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped += 1
        if self.fail_stop:
            raise MeasurementError("node latency collection failed: watch closed")

    def records(self) -> dict[str, NodeRecord]:
        return dict(self._records)


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def control() -> FakeControl:
    return FakeControl()
