from __future__ import annotations

import logging
import threading

from kubernetes import client, watch

from .errors import MeasurementError
from .inventory import node_record
from .models import NodeRecord

LOGGER = logging.getLogger("nodescale.collector")

# Server-side timeout of each watch request; bounds how long stop() waits for the stream.
WATCH_TIMEOUT_SECONDS = 10
STOP_GRACE_SECONDS = 5.0


class NodeLatencyCollector:
    """Watches nodes during the measurement window and records their bring-up times."""

    def __init__(
        self,
        core_api: client.CoreV1Api,
        watch_timeout_seconds: int = WATCH_TIMEOUT_SECONDS,
    ) -> None:
        self._core = core_api
        self._watch_timeout_seconds = watch_timeout_seconds

        self._records_lock = threading.Lock()
        self._records: dict[str, NodeRecord] = {}
        self._errors: list[BaseException] = []
        self._watch: watch.Watch | None = None
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        self._stop_event.clear()
        self._watch = watch.Watch()

        def runner() -> None:
            try:
                while not self._stop_event.is_set():
                    for event in self._watch.stream(
                        self._core.list_node,
                        timeout_seconds=self._watch_timeout_seconds,
                    ):
                        if self._stop_event.is_set():
                            break
                        if event["type"] in ("ADDED", "MODIFIED"):
                            self.record(node_record(event["object"]))
            except Exception as exc:  # noqa: BLE001
                if not self._stop_event.is_set():
                    LOGGER.exception("node watch failed")
                    with self._records_lock:
                        self._errors.append(exc)

        thread = threading.Thread(target=runner, name="node-latency-watch", daemon=True)
        thread.start()
        self._thread = thread
        LOGGER.info("Node latency collection started")

    def stop(self) -> None:
        """Stop the watch; raises :class:`MeasurementError` if it failed while running."""
        self._stop_event.set()
        if self._watch is not None:
            self._watch.stop()
        if self._thread is not None:
            self._thread.join(timeout=self._watch_timeout_seconds + STOP_GRACE_SECONDS)
            if self._thread.is_alive():
                LOGGER.warning("Node watch still draining after stop; ignoring further events")
        LOGGER.info("Node latency collection stopped with %d node(s)", len(self.records()))
        with self._records_lock:
            errors = list(self._errors)
        if errors:
            raise MeasurementError(f"node latency collection failed: {errors[0]}")

    def record(self, record: NodeRecord) -> None:
        with self._records_lock:
            existing = self._records.get(record.uid)
            # Keep the first Ready transition observed for a node.
            if existing is not None and existing.ready_timestamp is not None:
                return
            self._records[record.uid] = record

    def records(self) -> dict[str, NodeRecord]:
        with self._records_lock:
            return dict(self._records)
