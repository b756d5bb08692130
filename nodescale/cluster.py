from __future__ import annotations

import contextlib
import logging
from datetime import datetime, timezone
from typing import Any

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from .config import (
    AUTOSCALING_GROUP,
    DEFAULT_CLUSTER_AUTOSCALER,
    DEFAULT_NAMESPACE,
    MACHINE_API_GROUP,
    MACHINE_API_VERSION,
    MACHINE_NAMESPACE,
    LoadJobSpec,
)
from .errors import ApplyError
from .models import PlanTable

LOGGER = logging.getLogger("nodescale.cluster")

MACHINE_AUTOSCALER_VERSION = "v1beta1"
CLUSTER_AUTOSCALER_VERSION = "v1"


def create_api_client(kubeconfig: str | None = None) -> client.ApiClient:
    """Build an API client from a kubeconfig, falling back to in-cluster config."""
    try:
        config.load_kube_config(config_file=kubeconfig)
    except ConfigException:
        if kubeconfig:
            raise
        LOGGER.info("No kubeconfig found, using in-cluster configuration")
        config.load_incluster_config()
    return client.ApiClient()


def is_node_ready(node: client.V1Node) -> bool:
    conditions = (node.status.conditions if node.status else None) or []
    return any(c.type == "Ready" and c.status == "True" for c in conditions)


class ClusterControl:
    """Mutations and readiness probes against an OpenShift cluster."""

    def __init__(
        self,
        api_client: client.ApiClient,
        machine_namespace: str = MACHINE_NAMESPACE,
        job_namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        self._custom = client.CustomObjectsApi(api_client)
        self._core = client.CoreV1Api(api_client)
        self._batch = client.BatchV1Api(api_client)
        self._machine_namespace = machine_namespace
        self._job_namespace = job_namespace

    @property
    def custom_api(self) -> client.CustomObjectsApi:
        return self._custom

    @property
    def core_api(self) -> client.CoreV1Api:
        return self._core

    # Readiness probes

    def ready_replicas(self, machineset: str) -> int:
        obj = self._custom.get_namespaced_custom_object(
            group=MACHINE_API_GROUP,
            version=MACHINE_API_VERSION,
            namespace=self._machine_namespace,
            plural="machinesets",
            name=machineset,
        )
        return int((obj.get("status") or {}).get("readyReplicas") or 0)

    def ready_node_count(self) -> int:
        return sum(1 for node in self._core.list_node().items if is_node_ready(node))

    def node_count(self) -> int:
        return len(self._core.list_node().items)

    # MachineSets

    def scale_machinesets(self, plan: PlanTable, restore: bool = False) -> None:
        for edit in plan.values():
            replicas = edit.previous_size if restore else edit.target_size
            try:
                self._custom.patch_namespaced_custom_object(
                    group=MACHINE_API_GROUP,
                    version=MACHINE_API_VERSION,
                    namespace=self._machine_namespace,
                    plural="machinesets",
                    name=edit.name,
                    body={"spec": {"replicas": replicas}},
                )
            except ApiException as exc:
                raise ApplyError(f"failed to scale MachineSet {edit.name}: {exc.reason}") from exc
            LOGGER.info("MachineSet %s scaled to %d replicas", edit.name, replicas)

    # Autoscalers

    def apply_machine_autoscalers(self, plan: PlanTable) -> None:
        for edit in plan.values():
            body = {
                "apiVersion": f"{AUTOSCALING_GROUP}/{MACHINE_AUTOSCALER_VERSION}",
                "kind": "MachineAutoscaler",
                "metadata": {"name": edit.name, "namespace": self._machine_namespace},
                "spec": {
                    "minReplicas": 0,
                    "maxReplicas": edit.target_size,
                    "scaleTargetRef": {
                        "apiVersion": f"{MACHINE_API_GROUP}/{MACHINE_API_VERSION}",
                        "kind": "MachineSet",
                        "name": edit.name,
                    },
                },
            }
            self._create_or_update(
                "MachineAutoscaler",
                MACHINE_AUTOSCALER_VERSION,
                "machineautoscalers",
                edit.name,
                body,
                namespace=self._machine_namespace,
            )

    def delete_machine_autoscalers(self, plan: PlanTable) -> None:
        """Delete every MachineAutoscaler in ``plan``; raises the first failure afterwards."""
        errors: list[ApplyError] = []
        for name in plan:
            try:
                self._delete(
                    "MachineAutoscaler",
                    MACHINE_AUTOSCALER_VERSION,
                    "machineautoscalers",
                    name,
                    namespace=self._machine_namespace,
                )
            except ApplyError as exc:
                errors.append(exc)
        if errors:
            raise errors[0]

    def apply_cluster_autoscaler(self, max_nodes_total: int) -> None:
        body = {
            "apiVersion": f"{AUTOSCALING_GROUP}/{CLUSTER_AUTOSCALER_VERSION}",
            "kind": "ClusterAutoscaler",
            "metadata": {"name": DEFAULT_CLUSTER_AUTOSCALER},
            "spec": {
                "podPriorityThreshold": -100,
                "resourceLimits": {"maxNodesTotal": max_nodes_total},
                "scaleDown": {"enabled": False},
            },
        }
        self._create_or_update(
            "ClusterAutoscaler",
            CLUSTER_AUTOSCALER_VERSION,
            "clusterautoscalers",
            DEFAULT_CLUSTER_AUTOSCALER,
            body,
        )

    def delete_cluster_autoscaler(self) -> None:
        self._delete(
            "ClusterAutoscaler",
            CLUSTER_AUTOSCALER_VERSION,
            "clusterautoscalers",
            DEFAULT_CLUSTER_AUTOSCALER,
        )

    # Load generating job

    def create_load_job(self, spec: LoadJobSpec) -> tuple[str, datetime]:
        job = client.V1Job(
            metadata=client.V1ObjectMeta(generate_name=spec.generate_name),
            spec=client.V1JobSpec(
                completions=spec.completions,
                parallelism=spec.parallelism,
                backoff_limit=spec.backoff_limit,
                template=client.V1PodTemplateSpec(
                    spec=client.V1PodSpec(
                        restart_policy="Never",
                        containers=[
                            client.V1Container(
                                name="work",
                                image=spec.image,
                                command=["sleep", str(spec.sleep_seconds)],
                                resources=client.V1ResourceRequirements(
                                    requests={
                                        "memory": spec.memory_request,
                                        "cpu": spec.cpu_request,
                                    }
                                ),
                            )
                        ],
                    )
                ),
            ),
        )
        trigger_time = datetime.now(timezone.utc).replace(microsecond=0)
        try:
            created = self._batch.create_namespaced_job(namespace=self._job_namespace, body=job)
        except ApiException as exc:
            raise ApplyError(f"error creating Job: {exc.reason}") from exc
        LOGGER.info("Job created: %s", created.metadata.name)
        return created.metadata.name, trigger_time

    def delete_load_job(self, name: str) -> None:
        try:
            self._batch.delete_namespaced_job(
                name=name,
                namespace=self._job_namespace,
                propagation_policy="Foreground",
            )
        except ApiException as exc:
            if exc.status == 404:
                LOGGER.info("Job %s not found in namespace %s", name, self._job_namespace)
                return
            raise ApplyError(f"error deleting Job {name}: {exc.reason}") from exc
        LOGGER.info("Job %s deleted in namespace %s", name, self._job_namespace)

    def autoscaling(
        self,
        plan: PlanTable,
        max_nodes_total: int,
        load_job: LoadJobSpec,
    ) -> contextlib.AbstractContextManager[datetime]:
        """Autoscalers plus load job for the duration of the ``with`` block.

        Entering yields the time the load job was submitted.
        """
        return _AutoscalingContext(self, plan, max_nodes_total, load_job)

    # Helpers

    def _create_or_update(
        self,
        kind: str,
        version: str,
        plural: str,
        name: str,
        body: dict[str, Any],
        namespace: str | None = None,
    ) -> None:
        common = {"group": AUTOSCALING_GROUP, "version": version, "plural": plural}
        if namespace is not None:
            common["namespace"] = namespace
        try:
            if namespace is not None:
                self._custom.create_namespaced_custom_object(body=body, **common)
            else:
                self._custom.create_cluster_custom_object(body=body, **common)
            LOGGER.info("%s created: %s", kind, name)
            return
        except ApiException as exc:
            if exc.status != 409:
                raise ApplyError(f"failed to create {kind} {name}: {exc.reason}") from exc
        LOGGER.info("%s %s already exists, updating", kind, name)
        try:
            if namespace is not None:
                existing = self._custom.get_namespaced_custom_object(name=name, **common)
                existing["spec"] = body["spec"]
                self._custom.replace_namespaced_custom_object(name=name, body=existing, **common)
            else:
                existing = self._custom.get_cluster_custom_object(name=name, **common)
                existing["spec"] = body["spec"]
                self._custom.replace_cluster_custom_object(name=name, body=existing, **common)
        except ApiException as exc:
            raise ApplyError(f"failed to update {kind} {name}: {exc.reason}") from exc
        LOGGER.info("%s updated: %s", kind, name)

    def _delete(
        self,
        kind: str,
        version: str,
        plural: str,
        name: str,
        namespace: str | None = None,
    ) -> None:
        common = {"group": AUTOSCALING_GROUP, "version": version, "plural": plural, "name": name}
        try:
            if namespace is not None:
                self._custom.delete_namespaced_custom_object(namespace=namespace, **common)
            else:
                self._custom.delete_cluster_custom_object(**common)
        except ApiException as exc:
            if exc.status == 404:
                LOGGER.info("%s %s not found", kind, name)
                return
            raise ApplyError(f"failed to delete {kind} {name}: {exc.reason}") from exc
        LOGGER.info("%s %s deleted", kind, name)


class _AutoscalingContext(contextlib.AbstractContextManager):
    def __init__(
        self,
        control: ClusterControl,
        plan: PlanTable,
        max_nodes_total: int,
        load_job: LoadJobSpec,
    ) -> None:
        self._control = control
        self._plan = plan
        self._max_nodes_total = max_nodes_total
        self._load_job = load_job
        self._job_name: str | None = None

    def __enter__(self) -> datetime:
        try:
            self._control.apply_machine_autoscalers(self._plan)
            self._control.apply_cluster_autoscaler(self._max_nodes_total)
            self._job_name, trigger_time = self._control.create_load_job(self._load_job)
        except ApplyError:
            LOGGER.error("Autoscaling setup failed, removing what was created")
            self._teardown()
            raise
        return trigger_time

    def __exit__(self, exc_type, exc, tb) -> None:
        errors = self._teardown()
        if errors and exc is None:
            raise errors[0]

    def _teardown(self) -> list[ApplyError]:
        """Attempt every deletion and return the failures."""
        steps = [
            self._control.delete_cluster_autoscaler,
            lambda: self._control.delete_machine_autoscalers(self._plan),
        ]
        if self._job_name is not None:
            steps.append(lambda: self._control.delete_load_job(self._job_name))
        errors: list[ApplyError] = []
        for step in steps:
            try:
                step()
            except ApplyError as exc:
                LOGGER.error("Autoscaling teardown failed: %s", exc)
                errors.append(exc)
        return errors
