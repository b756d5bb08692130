from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .analytics import analyze
from .cluster import ClusterControl, create_api_client
from .collector import NodeLatencyCollector
from .config import AUTOSCALER_BUFFER, SCENARIO_AUTOSCALER, ScaleConfig
from .distributor import distribute
from .errors import ApplyError, MeasurementError, ReadinessError, RestoreError, SetupError
from .inventory import MachineInventory
from .models import LatencyReport, PlanTable
from .sink import MetricsSink, publish_latency_report
from .waiter import ConvergenceReport, await_convergence, poll_until

LOGGER = logging.getLogger("nodescale.scenarios")


@dataclass
class RunResult:
    boot_image_id: str
    plan: PlanTable
    latency: LatencyReport
    convergence: ConvergenceReport | None = None
    remaining: int = 0
    warnings: list[str] = field(default_factory=list)


def run(
    config: ScaleConfig,
    sink: MetricsSink,
    control: ClusterControl | None = None,
    inventory: MachineInventory | None = None,
    collector: NodeLatencyCollector | None = None,
) -> RunResult:
    """Scale the cluster as configured, measure node bring-up and index the results.

    Fatal failures raise a :class:`~nodescale.errors.ScaleError`. Recoverable
    ones are returned in ``RunResult.warnings`` and in the convergence report.
    """
    if control is None:
        control = ClusterControl(create_api_client())
    if inventory is None:
        inventory = MachineInventory(control.custom_api)
    if collector is None:
        collector = NodeLatencyCollector(control.core_api)

    if config.manual:
        LOGGER.info("Scale event epoch specified, measuring node latencies without scaling")
        return _run_manual(config, sink, control, inventory, collector)

    groups = inventory.machinesets_by_size()
    if not groups:
        raise SetupError("no MachineSets found to scale")
    machines_before, _ = inventory.machines()
    plan, remaining = distribute(groups, config.additional_worker_nodes)
    if remaining > 0:
        LOGGER.warning("Could not place %d machine(s) on any MachineSet", remaining)
    expected_nodes = control.node_count() + sum(edit.growth for edit in plan.values())

    warnings: list[str] = []
    collecting = False
    try:
        collector.start()
        collecting = True
        if config.scenario == SCENARIO_AUTOSCALER:
            max_nodes_total = (
                AUTOSCALER_BUFFER + len(machines_before) + config.additional_worker_nodes
            )
            with control.autoscaling(plan, max_nodes_total, config.load_job) as trigger_time:
                LOGGER.info(
                    "Waiting %.0fs for the cluster autoscaler to come up",
                    config.autoscaler_settle_seconds,
                )
                time.sleep(config.autoscaler_settle_seconds)
                convergence = _await(config, control, plan, trigger_time, expected_nodes)
                collecting = False
                _stop_collector(collector, warnings)
        else:
            LOGGER.info("Updating MachineSets evenly to reach desired count")
            trigger_time = datetime.now(timezone.utc)
            control.scale_machinesets(plan)
            convergence = _await(config, control, plan, trigger_time, expected_nodes)
            collecting = False
            _stop_collector(collector, warnings)

        for name in convergence.timed_out + convergence.failed:
            warnings.append(f"MachineSet {name} did not converge")

        machines_after, boot_image_id = inventory.machines()
        latency = analyze(
            plan,
            machines_before,
            machines_after,
            collector.records(),
            config.metadata,
            run_id=config.uuid,
            boot_image_id=boot_image_id,
        )
        publish_latency_report(sink, latency, config.uuid, boot_image_id, config.metadata)
    finally:
        if collecting:
            _stop_collector(collector, warnings)
        if config.restore:
            _restore(control, plan)

    return RunResult(
        boot_image_id=boot_image_id,
        plan=plan,
        latency=latency,
        convergence=convergence,
        remaining=remaining,
        warnings=warnings,
    )


def _run_manual(
    config: ScaleConfig,
    sink: MetricsSink,
    control: ClusterControl,
    inventory: MachineInventory,
    collector: NodeLatencyCollector,
) -> RunResult:
    warnings: list[str] = []
    collector.start()
    try:
        expected_nodes = control.node_count()
        ready, observed = poll_until(
            control.ready_node_count,
            expected_nodes,
            config.timeout_seconds,
            config.poll_interval_seconds,
        )
        if not ready:
            raise ReadinessError(f"only {observed}/{expected_nodes} nodes ready")
    finally:
        _stop_collector(collector, warnings)

    machines, boot_image_id = inventory.machines(config.scale_event_epoch)
    latency = analyze(
        {},
        [],
        machines,
        collector.records(),
        config.metadata,
        explicit_trigger_epoch=config.scale_event_epoch,
        run_id=config.uuid,
        boot_image_id=boot_image_id,
    )
    publish_latency_report(sink, latency, config.uuid, boot_image_id, config.metadata)
    return RunResult(boot_image_id=boot_image_id, plan={}, latency=latency, warnings=warnings)


def _await(
    config: ScaleConfig,
    control: ClusterControl,
    plan: PlanTable,
    trigger_time: datetime,
    expected_nodes: int,
) -> ConvergenceReport:
    return await_convergence(
        plan,
        control.ready_replicas,
        control.ready_node_count,
        trigger_time,
        expected_nodes,
        timeout_s=config.timeout_seconds,
        poll_interval=config.poll_interval_seconds,
    )


def _stop_collector(collector: NodeLatencyCollector, warnings: list[str]) -> None:
    try:
        collector.stop()
    except MeasurementError as exc:
        LOGGER.error("%s", exc)
        warnings.append(str(exc))


def _restore(control: ClusterControl, plan: PlanTable) -> None:
    LOGGER.info("Restoring MachineSets to previous state")
    try:
        control.scale_machinesets(plan, restore=True)
    except ApplyError as exc:
        raise RestoreError(f"failed to restore MachineSets: {exc}") from exc
