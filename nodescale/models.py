from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict

STAGES: tuple[str, ...] = ("MachineCreation", "MachineReady", "NodeCreation", "NodeReady")
QUANTILES: tuple[str, ...] = ("P99", "P95", "P50", "Min", "Max", "Avg")


@dataclass
class GroupEdit:
    """Planned growth for a single MachineSet."""

    name: str
    previous_size: int
    target_size: int
    trigger_timestamp: datetime | None = None

    @property
    def growth(self) -> int:
        return self.target_size - self.previous_size


# Owned by a single run and passed explicitly through each stage.
PlanTable = Dict[str, GroupEdit]


@dataclass(frozen=True)
class MachineRecord:
    id: str
    node_uid: str | None
    creation_timestamp: datetime
    ready_timestamp: datetime | None
    boot_image_id: str = ""

    @property
    def owner_group(self) -> str:
        return self.id.rpartition("-")[0]


@dataclass(frozen=True)
class NodeRecord:
    uid: str
    name: str
    labels: dict[str, str]
    observed_timestamp: datetime
    ready_timestamp: datetime | None


@dataclass(frozen=True)
class LatencySample:
    machine_id: str
    owner_group: str
    node_name: str
    scale_event_timestamp: datetime
    machine_creation_timestamp: datetime
    machine_creation_latency: int
    machine_ready_timestamp: datetime | None
    machine_ready_latency: int | None
    node_creation_timestamp: datetime
    node_creation_latency: int
    node_ready_timestamp: datetime | None
    node_ready_latency: int | None
    labels: dict[str, str] = field(default_factory=dict)

    def latency(self, stage: str) -> int | None:
        return {
            "MachineCreation": self.machine_creation_latency,
            "MachineReady": self.machine_ready_latency,
            "NodeCreation": self.node_creation_latency,
            "NodeReady": self.node_ready_latency,
        }[stage]


@dataclass(frozen=True)
class StageQuantiles:
    stage_name: str
    p50: int
    p95: int
    p99: int
    min: int
    max: int
    avg: int

    def value(self, quantile: str) -> int:
        return {
            "P99": self.p99,
            "P95": self.p95,
            "P50": self.p50,
            "Min": self.min,
            "Max": self.max,
            "Avg": self.avg,
        }[quantile]


@dataclass(frozen=True)
class StackedSummary:
    """All stage quantiles flattened into ``<stage>_<quantile>`` fields."""

    uuid: str
    job_name: str
    boot_image_id: str
    timestamp: datetime
    values: dict[str, int]
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_quantiles(
        cls,
        quantiles: list[StageQuantiles],
        uuid: str,
        job_name: str,
        boot_image_id: str,
        timestamp: datetime,
        metadata: dict[str, Any],
    ) -> StackedSummary:
        values = {
            f"{summary.stage_name}_{quantile}": summary.value(quantile)
            for summary in quantiles
            for quantile in QUANTILES
        }
        return cls(
            uuid=uuid,
            job_name=job_name,
            boot_image_id=boot_image_id,
            timestamp=timestamp,
            values=values,
            metadata=dict(metadata),
        )


@dataclass
class LatencyReport:
    samples: list[LatencySample]
    quantiles: list[StageQuantiles]
    stacked: StackedSummary | None
    excluded: int = 0
    orphaned: int = 0
