"""Tests for cluster mutations against mocked Kubernetes APIs."""

from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from nodescale import cluster
from nodescale.cluster import ClusterControl
from nodescale.config import DEFAULT_CLUSTER_AUTOSCALER, MACHINE_NAMESPACE, LoadJobSpec
from nodescale.errors import ApplyError, ReadinessError
from nodescale.models import GroupEdit


@pytest.fixture
def apis(monkeypatch):
    custom, core, batch = MagicMock(), MagicMock(), MagicMock()
    monkeypatch.setattr(cluster.client, "CustomObjectsApi", lambda api_client: custom)
    monkeypatch.setattr(cluster.client, "CoreV1Api", lambda api_client: core)
    monkeypatch.setattr(cluster.client, "BatchV1Api", lambda api_client: batch)
    return SimpleNamespace(custom=custom, core=core, batch=batch)


@pytest.fixture
def control(apis):
    return ClusterControl(api_client=None)


@pytest.fixture
def plan():
    return {
        "ms-a": GroupEdit("ms-a", 1, 3),
        "ms-b": GroupEdit("ms-b", 2, 3),
    }


def ready_node(name: str, ready: bool) -> client.V1Node:
    return client.V1Node(
        metadata=client.V1ObjectMeta(name=name),
        status=client.V1NodeStatus(
            conditions=[client.V1NodeCondition(type="Ready", status="True" if ready else "False")]
        ),
    )


class TestProbes:
    def test_ready_replicas(self, control, apis):
        apis.custom.get_namespaced_custom_object.return_value = {"status": {"readyReplicas": 4}}
        assert control.ready_replicas("ms-a") == 4
        kwargs = apis.custom.get_namespaced_custom_object.call_args.kwargs
        assert kwargs["name"] == "ms-a"
        assert kwargs["namespace"] == MACHINE_NAMESPACE

    def test_ready_replicas_missing_status(self, control, apis):
        apis.custom.get_namespaced_custom_object.return_value = {"status": {}}
        assert control.ready_replicas("ms-a") == 0

    def test_node_counts(self, control, apis):
        apis.core.list_node.return_value = client.V1NodeList(
            items=[ready_node("a", True), ready_node("b", False), ready_node("c", True)]
        )
        assert control.node_count() == 3
        assert control.ready_node_count() == 2


class TestScaleMachineSets:
    def test_patches_target_sizes(self, control, apis, plan):
        control.scale_machinesets(plan)
        bodies = {
            call.kwargs["name"]: call.kwargs["body"]
            for call in apis.custom.patch_namespaced_custom_object.call_args_list
        }
        assert bodies == {"ms-a": {"spec": {"replicas": 3}}, "ms-b": {"spec": {"replicas": 3}}}

    def test_restore_patches_previous_sizes(self, control, apis, plan):
        control.scale_machinesets(plan, restore=True)
        bodies = {
            call.kwargs["name"]: call.kwargs["body"]
            for call in apis.custom.patch_namespaced_custom_object.call_args_list
        }
        assert bodies == {"ms-a": {"spec": {"replicas": 1}}, "ms-b": {"spec": {"replicas": 2}}}

    def test_rejected_patch_is_apply_error(self, control, apis, plan):
        apis.custom.patch_namespaced_custom_object.side_effect = ApiException(status=422, reason="Invalid")
        with pytest.raises(ApplyError, match="ms-a"):
            control.scale_machinesets(plan)


class TestAutoscalers:
    def test_machine_autoscaler_body(self, control, apis, plan):
        control.apply_machine_autoscalers(plan)
        calls = apis.custom.create_namespaced_custom_object.call_args_list
        assert len(calls) == 2
        body = calls[0].kwargs["body"]
        assert body["kind"] == "MachineAutoscaler"
        assert body["spec"]["minReplicas"] == 0
        assert body["spec"]["maxReplicas"] == 3
        assert body["spec"]["scaleTargetRef"]["name"] == "ms-a"

    def test_existing_autoscaler_is_updated(self, control, apis):
        apis.custom.create_cluster_custom_object.side_effect = ApiException(status=409, reason="Conflict")
        apis.custom.get_cluster_custom_object.return_value = {
            "metadata": {"name": DEFAULT_CLUSTER_AUTOSCALER, "resourceVersion": "7"},
            "spec": {"resourceLimits": {"maxNodesTotal": 3}},
        }
        control.apply_cluster_autoscaler(25)

        replaced = apis.custom.replace_cluster_custom_object.call_args.kwargs["body"]
        assert replaced["metadata"]["resourceVersion"] == "7"
        assert replaced["spec"]["resourceLimits"] == {"maxNodesTotal": 25}
        assert replaced["spec"]["scaleDown"] == {"enabled": False}
        assert replaced["spec"]["podPriorityThreshold"] == -100

    def test_create_failure_is_apply_error(self, control, apis):
        apis.custom.create_cluster_custom_object.side_effect = ApiException(status=403, reason="Forbidden")
        with pytest.raises(ApplyError):
            control.apply_cluster_autoscaler(25)
        apis.custom.replace_cluster_custom_object.assert_not_called()

    def test_delete_ignores_missing(self, control, apis, plan):
        apis.custom.delete_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")
        control.delete_machine_autoscalers(plan)
        assert apis.custom.delete_namespaced_custom_object.call_count == 2

    def test_delete_failure_is_apply_error(self, control, apis):
        apis.custom.delete_cluster_custom_object.side_effect = ApiException(status=500, reason="Internal")
        with pytest.raises(ApplyError):
            control.delete_cluster_autoscaler()


class TestLoadJob:
    def test_create_load_job(self, control, apis):
        apis.batch.create_namespaced_job.return_value = client.V1Job(
            metadata=client.V1ObjectMeta(name="work-queue-x8z2")
        )
        before = datetime.now(timezone.utc).replace(microsecond=0)
        name, trigger_time = control.create_load_job(LoadJobSpec())
        assert name == "work-queue-x8z2"
        assert trigger_time >= before
        assert trigger_time.microsecond == 0

        job = apis.batch.create_namespaced_job.call_args.kwargs["body"]
        assert job.metadata.generate_name == "work-queue-"
        assert job.spec.completions == 5000
        container = job.spec.template.spec.containers[0]
        assert container.command == ["sleep", "300"]
        assert container.resources.requests == {"memory": "1000Mi", "cpu": "1000m"}

    def test_delete_missing_job_is_ignored(self, control, apis):
        apis.batch.delete_namespaced_job.side_effect = ApiException(status=404, reason="Not Found")
        control.delete_load_job("work-queue-x8z2")


class TestAutoscalingContext:
    def test_resources_removed_on_exit(self, control, apis, plan):
        apis.batch.create_namespaced_job.return_value = client.V1Job(
            metadata=client.V1ObjectMeta(name="work-queue-abc")
        )
        with control.autoscaling(plan, 20, LoadJobSpec()) as trigger_time:
            assert trigger_time.tzinfo is not None
            apis.custom.delete_cluster_custom_object.assert_not_called()

        apis.custom.delete_cluster_custom_object.assert_called_once()
        assert apis.custom.delete_namespaced_custom_object.call_count == 2
        assert apis.batch.delete_namespaced_job.call_args.kwargs["name"] == "work-queue-abc"

    def test_resources_removed_on_error(self, control, apis, plan):
        apis.batch.create_namespaced_job.return_value = client.V1Job(
            metadata=client.V1ObjectMeta(name="work-queue-abc")
        )
        with pytest.raises(RuntimeError):
            with control.autoscaling(plan, 20, LoadJobSpec()):
                raise RuntimeError("interrupted")
        apis.custom.delete_cluster_custom_object.assert_called_once()
        apis.batch.delete_namespaced_job.assert_called_once()

    def test_failed_setup_removes_created_autoscalers(self, control, apis, plan):
        apis.batch.create_namespaced_job.side_effect = ApiException(status=403, reason="Forbidden")
        with pytest.raises(ApplyError, match="Job"):
            with control.autoscaling(plan, 20, LoadJobSpec()):
                pytest.fail("body must not run when setup fails")

        assert apis.custom.create_namespaced_custom_object.call_count == 2
        assert apis.custom.delete_namespaced_custom_object.call_count == 2
        apis.custom.delete_cluster_custom_object.assert_called_once()
        apis.batch.delete_namespaced_job.assert_not_called()

    def test_teardown_attempts_every_resource(self, control, apis, plan):
        apis.batch.create_namespaced_job.return_value = client.V1Job(
            metadata=client.V1ObjectMeta(name="work-queue-abc")
        )
        apis.custom.delete_cluster_custom_object.side_effect = ApiException(status=500, reason="Internal")
        with pytest.raises(ApplyError, match="ClusterAutoscaler"):
            with control.autoscaling(plan, 20, LoadJobSpec()):
                pass

        assert apis.custom.delete_namespaced_custom_object.call_count == 2
        apis.batch.delete_namespaced_job.assert_called_once()

    def test_teardown_error_does_not_mask_body_error(self, control, apis, plan):
        apis.batch.create_namespaced_job.return_value = client.V1Job(
            metadata=client.V1ObjectMeta(name="work-queue-abc")
        )
        apis.custom.delete_cluster_custom_object.side_effect = ApiException(status=500, reason="Internal")
        with pytest.raises(ReadinessError):
            with control.autoscaling(plan, 20, LoadJobSpec()):
                raise ReadinessError("only 3/5 nodes ready")
        apis.batch.delete_namespaced_job.assert_called_once()

    def test_machine_autoscaler_deletes_continue_after_failure(self, control, apis, plan):
        apis.custom.delete_namespaced_custom_object.side_effect = [
            ApiException(status=500, reason="Internal"),
            None,
        ]
        with pytest.raises(ApplyError, match="ms-a"):
            control.delete_machine_autoscalers(plan)
        assert apis.custom.delete_namespaced_custom_object.call_count == 2
