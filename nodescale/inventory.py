from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from kubernetes import client

from .config import MACHINE_API_GROUP, MACHINE_API_VERSION, MACHINE_NAMESPACE
from .models import MachineRecord, NodeRecord

LOGGER = logging.getLogger("nodescale.inventory")


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def boot_image_id(machine: Mapping[str, Any]) -> str:
    """Image the machine booted from, as recorded in its provider spec."""
    provider = machine.get("spec", {}).get("providerSpec", {}).get("value") or {}
    ami = provider.get("ami")
    if isinstance(ami, dict) and ami.get("id"):
        return ami["id"]
    image = provider.get("image")
    if isinstance(image, str):
        return image
    if isinstance(image, dict):
        return image.get("resourceID") or image.get("id") or ""
    disks = provider.get("disks") or []
    if disks and isinstance(disks[0], dict):
        return disks[0].get("image", "")
    return ""


def machine_record(machine: Mapping[str, Any]) -> MachineRecord:
    metadata = machine.get("metadata", {})
    status = machine.get("status", {})
    node_ref = status.get("nodeRef") or {}
    ready = None
    if status.get("phase") == "Running":
        ready = parse_timestamp(status.get("lastUpdated"))
    return MachineRecord(
        id=metadata["name"],
        node_uid=node_ref.get("uid"),
        creation_timestamp=parse_timestamp(metadata["creationTimestamp"]),
        ready_timestamp=ready,
        boot_image_id=boot_image_id(machine),
    )


def node_record(node: client.V1Node) -> NodeRecord:
    ready = None
    conditions = (node.status.conditions if node.status else None) or []
    for condition in conditions:
        if condition.type == "Ready" and condition.status == "True":
            ready = parse_timestamp(condition.last_transition_time)
    return NodeRecord(
        uid=node.metadata.uid,
        name=node.metadata.name,
        labels=dict(node.metadata.labels or {}),
        observed_timestamp=parse_timestamp(node.metadata.creation_timestamp),
        ready_timestamp=ready,
    )


class MachineInventory:
    """Read-only view of the MachineSets and Machines of a cluster."""

    def __init__(
        self,
        custom_api: client.CustomObjectsApi,
        namespace: str = MACHINE_NAMESPACE,
    ) -> None:
        self._api = custom_api
        self._namespace = namespace

    def machinesets_by_size(self) -> dict[int, list[str]]:
        items = self._list("machinesets")
        groups: dict[int, list[str]] = {}
        for item in items:
            replicas = item.get("spec", {}).get("replicas") or 0
            groups.setdefault(int(replicas), []).append(item["metadata"]["name"])
        LOGGER.info("Discovered %d MachineSet(s)", len(items))
        return groups

    def machines(self, created_after_epoch: int = 0) -> tuple[list[MachineRecord], str]:
        """List machines and the boot image id shared by them.

        With ``created_after_epoch`` set only machines created at or after that
        point are returned.
        """
        cutoff = (
            datetime.fromtimestamp(created_after_epoch, tz=timezone.utc)
            if created_after_epoch
            else None
        )
        records: list[MachineRecord] = []
        image_id = ""
        for item in self._list("machines"):
            record = machine_record(item)
            if cutoff is not None and record.creation_timestamp < cutoff:
                continue
            records.append(record)
            image_id = image_id or record.boot_image_id
        return records, image_id

    def _list(self, plural: str) -> list[dict[str, Any]]:
        response = self._api.list_namespaced_custom_object(
            group=MACHINE_API_GROUP,
            version=MACHINE_API_VERSION,
            namespace=self._namespace,
            plural=plural,
        )
        return list(response.get("items", []))
