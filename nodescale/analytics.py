from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

import numpy as np
import pandas as pd

from .config import JOB_NAME
from .models import (
    STAGES,
    LatencyReport,
    LatencySample,
    MachineRecord,
    NodeRecord,
    PlanTable,
    StackedSummary,
    StageQuantiles,
)

LOGGER = logging.getLogger("nodescale.analytics")


def newly_scaled(
    before: Iterable[MachineRecord],
    after: Iterable[MachineRecord],
) -> list[MachineRecord]:
    """Machines present after scaling that did not exist in the baseline."""
    previous = {machine.id for machine in before}
    return [machine for machine in after if machine.id not in previous]


def latency_ms(event: datetime | None, trigger: datetime) -> int | None:
    """Milliseconds from ``trigger`` to ``event``, truncated toward zero.

    Returns ``None`` when the event never happened.
    """
    if event is None:
        return None
    delta = event - trigger
    micros = (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds
    millis = abs(micros) // 1_000
    return millis if micros >= 0 else -millis


def sanitize_labels(labels: Mapping[str, str]) -> dict[str, str]:
    # Dots in keys break the field mappings of the indexer; later keys win on collision.
    sanitized: dict[str, str] = {}
    for key, value in labels.items():
        sanitized[key.replace(".", "_")] = value
    return sanitized


def trigger_from_epoch(epoch: int) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def nearest_rank(ordered: np.ndarray, percent: int) -> int:
    # Smallest observed value with at least ``percent`` % of the samples at or below it.
    index = max(math.ceil(len(ordered) * percent / 100) - 1, 0)
    return int(ordered[index])


def summarize(stage: str, latencies: pd.Series) -> StageQuantiles:
    ordered = np.sort(latencies.to_numpy())
    return StageQuantiles(
        stage_name=stage,
        p50=nearest_rank(ordered, 50),
        p95=nearest_rank(ordered, 95),
        p99=nearest_rank(ordered, 99),
        min=int(latencies.min()),
        max=int(latencies.max()),
        avg=int(latencies.mean()),
    )


def samples_dataframe(samples: list[LatencySample]) -> pd.DataFrame:
    columns = ["machine_id", "owner_group", "node_name", *STAGES]
    if not samples:
        return pd.DataFrame(columns=columns)
    rows = []
    for sample in samples:
        row: dict[str, Any] = {
            "machine_id": sample.machine_id,
            "owner_group": sample.owner_group,
            "node_name": sample.node_name,
        }
        for stage in STAGES:
            row[stage] = sample.latency(stage)
        rows.append(row)
    return pd.DataFrame(rows, columns=columns)


def analyze(
    plan: PlanTable,
    machines_before: Iterable[MachineRecord],
    machines_after: Iterable[MachineRecord],
    node_records: Mapping[str, NodeRecord],
    metadata: Mapping[str, Any],
    explicit_trigger_epoch: int | None = None,
    run_id: str = "",
    boot_image_id: str = "",
) -> LatencyReport:
    """Compute bring-up latencies for every newly scaled machine.

    Machines whose node never reported during the measurement window are left
    out and counted in ``LatencyReport.excluded``. Without an explicit epoch the
    trigger for each machine is its MachineSet's trigger timestamp; machines
    whose MachineSet is not in ``plan`` are counted in ``orphaned``.
    """
    explicit_trigger = (
        trigger_from_epoch(explicit_trigger_epoch) if explicit_trigger_epoch else None
    )
    samples: list[LatencySample] = []
    excluded = 0
    orphaned = 0

    for machine in newly_scaled(machines_before, machines_after):
        node = node_records.get(machine.node_uid) if machine.node_uid else None
        if node is None:
            excluded += 1
            continue

        if explicit_trigger is not None:
            trigger = explicit_trigger
        else:
            edit = plan.get(machine.owner_group)
            if edit is None or edit.trigger_timestamp is None:
                LOGGER.warning(
                    "Machine %s belongs to untracked MachineSet %r; skipping",
                    machine.id,
                    machine.owner_group,
                )
                orphaned += 1
                continue
            trigger = edit.trigger_timestamp

        samples.append(
            LatencySample(
                machine_id=machine.id,
                owner_group=machine.owner_group,
                node_name=node.name,
                scale_event_timestamp=trigger,
                machine_creation_timestamp=machine.creation_timestamp,
                machine_creation_latency=latency_ms(machine.creation_timestamp, trigger),
                machine_ready_timestamp=machine.ready_timestamp,
                machine_ready_latency=latency_ms(machine.ready_timestamp, trigger),
                node_creation_timestamp=node.observed_timestamp,
                node_creation_latency=latency_ms(node.observed_timestamp, trigger),
                node_ready_timestamp=node.ready_timestamp,
                node_ready_latency=latency_ms(node.ready_timestamp, trigger),
                labels=sanitize_labels(node.labels),
            )
        )

    if excluded:
        LOGGER.info("%d scaled machine(s) had no matching node record", excluded)

    df = samples_dataframe(samples)
    quantiles: list[StageQuantiles] = []
    for stage in STAGES:
        latencies = df[stage].dropna()
        if len(latencies) < len(df):
            LOGGER.warning("%d sample(s) never reached %s", len(df) - len(latencies), stage)
        if latencies.empty:
            continue
        quantiles.append(summarize(stage, latencies.astype("int64")))
    stacked = None
    if quantiles:
        stacked = StackedSummary.from_quantiles(
            quantiles,
            uuid=run_id,
            job_name=JOB_NAME,
            boot_image_id=boot_image_id,
            timestamp=datetime.now(timezone.utc),
            metadata=dict(metadata),
        )
    return LatencyReport(
        samples=samples,
        quantiles=quantiles,
        stacked=stacked,
        excluded=excluded,
        orphaned=orphaned,
    )
