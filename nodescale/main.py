from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import uuid
from pathlib import Path

from .cluster import ClusterControl, create_api_client
from .collector import NodeLatencyCollector
from .config import (
    AUTOSCALER_SETTLE_SECONDS,
    MAX_WAIT_TIMEOUT_SECONDS,
    POLL_INTERVAL_SECONDS,
    SCENARIO_RESIZE,
    SCENARIOS,
    ScaleConfig,
)
from .distributor import distribute
from .errors import ScaleError
from .inventory import MachineInventory
from .scenarios import run
from .sink import KafkaSink, LocalSink, MetricsSink

LOGGER = logging.getLogger("nodescale")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Measure worker node scale-up latency")
    parser.add_argument(
        "--additional-worker-nodes",
        type=int,
        default=int(os.environ.get("NODESCALE_ADDITIONAL_WORKER_NODES", "3")),
        help="Number of worker nodes to add to the cluster",
    )
    parser.add_argument(
        "--scenario",
        choices=SCENARIOS,
        default=os.environ.get("NODESCALE_SCENARIO", SCENARIO_RESIZE),
        help="Scale MachineSets directly (resize) or through the cluster autoscaler",
    )
    parser.add_argument(
        "--scale-event-epoch",
        type=int,
        default=int(os.environ.get("NODESCALE_SCALE_EVENT_EPOCH", "0")),
        help="Measure latencies against this epoch without scaling the cluster",
    )
    parser.add_argument(
        "--gc",
        action="store_true",
        default=os.environ.get("NODESCALE_GC", "").lower() in {"1", "true", "yes"},
        help="Restore MachineSets to their previous size after the run",
    )
    parser.add_argument(
        "--uuid",
        default=os.environ.get("NODESCALE_UUID") or str(uuid.uuid4()),
        help="Run identifier attached to every indexed document",
    )
    parser.add_argument(
        "--metadata",
        default=os.environ.get("NODESCALE_METADATA", "{}"),
        help="JSON encoded dict of metadata attached to every indexed document",
    )
    parser.add_argument(
        "--kubeconfig",
        default=os.environ.get("KUBECONFIG"),
        help="Path to the kubeconfig file",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=float(os.environ.get("NODESCALE_TIMEOUT_SECONDS", MAX_WAIT_TIMEOUT_SECONDS)),
        help="Seconds to wait for MachineSets and nodes to become ready",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=float(os.environ.get("NODESCALE_POLL_INTERVAL_SECONDS", POLL_INTERVAL_SECONDS)),
        help="Seconds between readiness checks",
    )
    parser.add_argument(
        "--autoscaler-settle",
        type=float,
        default=float(
            os.environ.get("NODESCALE_AUTOSCALER_SETTLE_SECONDS", AUTOSCALER_SETTLE_SECONDS)
        ),
        help="Seconds to let the autoscaler resources come up before waiting",
    )
    parser.add_argument(
        "--sink",
        choices=("local", "kafka"),
        default=os.environ.get("NODESCALE_SINK", "local"),
        help="Where latency documents are indexed",
    )
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("NODESCALE_OUTPUT_DIR", "collected-metrics"),
        help="Directory for local metric files and charts",
    )
    parser.add_argument("--broker", default=os.environ.get("KAFKA_BROKER", "kafka:9092"))
    parser.add_argument(
        "--topic", default=os.environ.get("NODESCALE_KAFKA_TOPIC", "node-latency")
    )
    parser.add_argument(
        "--charts",
        action="store_true",
        help="Render latency charts into the output directory",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned MachineSet changes without scaling",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("NODESCALE_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_config(args: argparse.Namespace) -> ScaleConfig:
    metadata = json.loads(args.metadata)
    if not isinstance(metadata, dict):
        raise ValueError("--metadata must be a JSON object")
    return ScaleConfig(
        uuid=args.uuid,
        additional_worker_nodes=args.additional_worker_nodes,
        scenario=args.scenario,
        scale_event_epoch=args.scale_event_epoch,
        restore=args.gc,
        metadata=metadata,
        timeout_seconds=args.timeout,
        poll_interval_seconds=args.poll_interval,
        autoscaler_settle_seconds=args.autoscaler_settle,
    )


def build_sink(args: argparse.Namespace) -> MetricsSink:
    if args.sink == "kafka":
        return KafkaSink(broker=args.broker, topic=args.topic)
    return LocalSink(Path(args.output_dir))


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        scale_config = build_config(args)
    except ValueError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2

    control = ClusterControl(create_api_client(args.kubeconfig))
    inventory = MachineInventory(control.custom_api)

    if args.dry_run:
        plan, remaining = distribute(
            inventory.machinesets_by_size(), scale_config.additional_worker_nodes
        )
        for edit in plan.values():
            print(f"  - {edit.name}: {edit.previous_size} -> {edit.target_size}")
        if remaining > 0:
            print(f"  unplaced: {remaining}")
        return 0

    LOGGER.info("Run %s: %s scenario", scale_config.uuid, scale_config.scenario)
    sink = build_sink(args)
    try:
        result = run(
            scale_config,
            sink,
            control,
            inventory,
            NodeLatencyCollector(control.core_api),
        )
    except ScaleError as exc:
        LOGGER.error("Run %s failed: %s", scale_config.uuid, exc)
        return 1
    finally:
        sink.close()

    for warning in result.warnings:
        LOGGER.warning("%s", warning)
    if args.charts:
        from .charts import render_latency_charts

        render_latency_charts(result.latency, Path(args.output_dir))
    LOGGER.info(
        "Run %s finished: %d sample(s), %d machine(s) without node, boot image %s",
        scale_config.uuid,
        len(result.latency.samples),
        result.latency.excluded,
        result.boot_image_id or "<unknown>",
    )
    print(result.boot_image_id)
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
