from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Protocol

import pandas as pd
from kafka import KafkaProducer
from kafka.errors import NoBrokersAvailable

from .config import (
    JOB_NAME,
    NODE_LATENCY_MEASUREMENT,
    NODE_LATENCY_QUANTILES_MEASUREMENT,
    NODE_LATENCY_STACKED_MEASUREMENT,
)
from .models import LatencyReport, LatencySample, StackedSummary, StageQuantiles

LOGGER = logging.getLogger("nodescale.sink")


class MetricsSink(Protocol):
    def index(self, metric_name: str, documents: list[dict[str, Any]]) -> None: ...

    def close(self) -> None: ...


def _timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def sample_document(
    sample: LatencySample,
    run_id: str,
    boot_image_id: str,
    metadata: Mapping[str, Any],
    now: datetime,
) -> dict[str, Any]:
    return {
        "timestamp": _timestamp(now),
        "scaleEventTimestamp": _timestamp(sample.scale_event_timestamp),
        "machineCreationTimestamp": _timestamp(sample.machine_creation_timestamp),
        "machineCreationLatency": sample.machine_creation_latency,
        "machineReadyTimestamp": _timestamp(sample.machine_ready_timestamp),
        "machineReadyLatency": sample.machine_ready_latency,
        "nodeCreationTimestamp": _timestamp(sample.node_creation_timestamp),
        "nodeCreationLatency": sample.node_creation_latency,
        "nodeReadyTimestamp": _timestamp(sample.node_ready_timestamp),
        "nodeReadyLatency": sample.node_ready_latency,
        "metricName": NODE_LATENCY_MEASUREMENT,
        "uuid": run_id,
        "bootImageID": boot_image_id,
        "jobName": JOB_NAME,
        "nodeName": sample.node_name,
        "machineName": sample.machine_id,
        "machineSet": sample.owner_group,
        "labels": dict(sample.labels),
        "metadata": dict(metadata),
    }


def quantile_document(
    summary: StageQuantiles,
    run_id: str,
    metadata: Mapping[str, Any],
    now: datetime,
) -> dict[str, Any]:
    return {
        "quantileName": summary.stage_name,
        "uuid": run_id,
        "P99": summary.p99,
        "P95": summary.p95,
        "P50": summary.p50,
        "min": summary.min,
        "max": summary.max,
        "avg": summary.avg,
        "timestamp": _timestamp(now),
        "metricName": NODE_LATENCY_QUANTILES_MEASUREMENT,
        "jobName": JOB_NAME,
        "metadata": dict(metadata),
    }


def stacked_document(stacked: StackedSummary) -> dict[str, Any]:
    document: dict[str, Any] = {
        "uuid": stacked.uuid,
        "jobName": stacked.job_name,
        "bootImageID": stacked.boot_image_id,
        "metadata": dict(stacked.metadata),
        "timestamp": _timestamp(stacked.timestamp),
        "metricName": NODE_LATENCY_STACKED_MEASUREMENT,
    }
    document.update(stacked.values)
    return document


def publish_latency_report(
    sink: MetricsSink,
    report: LatencyReport,
    run_id: str,
    boot_image_id: str,
    metadata: Mapping[str, Any],
) -> dict[str, list[dict[str, Any]]]:
    """Send the three latency batches to ``sink`` and return what was sent."""
    now = datetime.now(timezone.utc)
    for summary in report.quantiles:
        LOGGER.info(
            "%s: %s 50th: %d 99th: %d max: %d avg: %d",
            JOB_NAME,
            summary.stage_name,
            summary.p50,
            summary.p99,
            summary.max,
            summary.avg,
        )
    batches = {
        NODE_LATENCY_MEASUREMENT: [
            sample_document(sample, run_id, boot_image_id, metadata, now)
            for sample in report.samples
        ],
        NODE_LATENCY_QUANTILES_MEASUREMENT: [
            quantile_document(summary, run_id, metadata, now) for summary in report.quantiles
        ],
        NODE_LATENCY_STACKED_MEASUREMENT: (
            [stacked_document(report.stacked)] if report.stacked is not None else []
        ),
    }
    for metric_name, documents in batches.items():
        if not documents:
            LOGGER.warning("No %s documents to index", metric_name)
            continue
        sink.index(metric_name, documents)
    return batches


class LocalSink:
    """Writes every metric batch to ``<metric>.json`` and ``<metric>.csv`` files."""

    def __init__(self, output_dir: Path) -> None:
        self._output_dir = Path(output_dir)
        self._output_dir.mkdir(parents=True, exist_ok=True)

    def index(self, metric_name: str, documents: list[dict[str, Any]]) -> None:
        json_path = self._output_dir / f"{metric_name}.json"
        with open(json_path, "w", encoding="utf-8") as f:
            json.dump(documents, f, indent=2)
        csv_path = self._output_dir / f"{metric_name}.csv"
        pd.json_normalize(documents).to_csv(csv_path, index=False)
        LOGGER.info("Indexed %d %s document(s) to %s", len(documents), metric_name, json_path)

    def close(self) -> None:
        pass


def create_producer(broker: str) -> KafkaProducer:
    backoff = 1.0
    max_backoff = 10.0
    deadline = time.time() + 60

    while True:
        try:
            return KafkaProducer(
                bootstrap_servers=broker,
                key_serializer=lambda v: v.encode("utf-8") if v else None,
                value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            )
        except NoBrokersAvailable as exc:
            if time.time() >= deadline:
                raise RuntimeError(
                    "failed to connect to Kafka broker within 60 seconds"
                ) from exc

            time.sleep(backoff)
            backoff = min(backoff * 1.5, max_backoff)


class KafkaSink:
    """Publishes every document to a Kafka topic keyed by metric name."""

    def __init__(self, broker: str, topic: str, producer: KafkaProducer | None = None) -> None:
        self._topic = topic
        self._producer = producer or create_producer(broker)

    def index(self, metric_name: str, documents: list[dict[str, Any]]) -> None:
        for document in documents:
            future = self._producer.send(self._topic, key=metric_name, value=document)
            future.get(timeout=30)
        LOGGER.info("Published %d %s document(s) to %s", len(documents), metric_name, self._topic)

    def close(self) -> None:
        self._producer.flush()
        self._producer.close()
