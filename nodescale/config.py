from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

JOB_NAME = "nodescale"

MACHINE_API_GROUP = "machine.openshift.io"
MACHINE_API_VERSION = "v1beta1"
MACHINE_NAMESPACE = "openshift-machine-api"
AUTOSCALING_GROUP = "autoscaling.openshift.io"
DEFAULT_NAMESPACE = "default"
DEFAULT_CLUSTER_AUTOSCALER = "default"
# Extra node headroom granted to the ClusterAutoscaler on top of the target size.
AUTOSCALER_BUFFER = 10

NODE_LATENCY_MEASUREMENT = "nodeReadyLatencyMeasurement"
NODE_LATENCY_QUANTILES_MEASUREMENT = "nodeReadyLatencyQuantilesMeasurement"
NODE_LATENCY_STACKED_MEASUREMENT = "nodeReadyLatencyStackedMeasurement"

MAX_WAIT_TIMEOUT_SECONDS = 4 * 60 * 60
POLL_INTERVAL_SECONDS = 10.0
AUTOSCALER_SETTLE_SECONDS = 5 * 60

SCENARIO_RESIZE = "resize"
SCENARIO_AUTOSCALER = "autoscaler"
SCENARIOS: tuple[str, ...] = (SCENARIO_RESIZE, SCENARIO_AUTOSCALER)


@dataclass(frozen=True)
class LoadJobSpec:
    """Batch Job used to create pending pods that drive the autoscaler."""

    generate_name: str = "work-queue-"
    image: str = "quay.io/cloud-bulldozer/nginx:latest"
    completions: int = 5000
    parallelism: int = 5000
    sleep_seconds: int = 300
    memory_request: str = "1000Mi"
    cpu_request: str = "1000m"
    backoff_limit: int = 4


@dataclass(frozen=True)
class ScaleConfig:
    """Parameters for a single scale benchmark run."""

    uuid: str
    additional_worker_nodes: int = 0
    scenario: str = SCENARIO_RESIZE
    scale_event_epoch: int = 0
    restore: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: float = MAX_WAIT_TIMEOUT_SECONDS
    poll_interval_seconds: float = POLL_INTERVAL_SECONDS
    autoscaler_settle_seconds: float = AUTOSCALER_SETTLE_SECONDS
    load_job: LoadJobSpec = field(default_factory=LoadJobSpec)

    def __post_init__(self) -> None:
        if self.scenario not in SCENARIOS:
            raise ValueError(f"Unknown scenario: {self.scenario}")
        if self.additional_worker_nodes < 0:
            raise ValueError("additional_worker_nodes must be >= 0")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")

    @property
    def manual(self) -> bool:
        return self.scale_event_epoch != 0
