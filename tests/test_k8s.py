"""Tests for the Kubernetes gateway and error translation."""

import json
from unittest.mock import Mock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import ProtocolError

from fakes import FakeGateway
from ray_operator import crd
from ray_operator.errors import (
    AlreadyExistsError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    TransientError,
)
from ray_operator.k8s import KubeGateway, get_pod_status, label_selector, translate
from ray_operator.observed import collect


def api_error(status, reason="", body=None):
    e = ApiException(status=status, reason=reason)
    e.body = json.dumps(body) if body is not None else None
    return e


@pytest.fixture
def apis():
    return Mock(), Mock(), Mock()


@pytest.fixture
def kube(apis):
    core, rbac, custom = apis
    return KubeGateway(core_v1=core, rbac_v1=rbac, custom_api=custom)


class TestTranslate:
    def test_not_found(self):
        assert isinstance(translate(api_error(404), "get"), NotFoundError)

    def test_already_exists(self):
        error = translate(api_error(409, body={"reason": "AlreadyExists"}), "create")
        assert isinstance(error, AlreadyExistsError)

    def test_version_conflict(self):
        error = translate(api_error(409, body={"reason": "Conflict"}), "replace")
        assert type(error) is ConflictError
        assert isinstance(error, TransientError)

    def test_invalid(self):
        error = translate(api_error(422, "Unprocessable Entity"), "create")
        assert isinstance(error, ConfigurationError)
        assert error.reason == "Invalid"

    @pytest.mark.parametrize("status", [429, 500, 503, 504])
    def test_server_side_errors_are_transient(self, status):
        assert type(translate(api_error(status), "list")) is TransientError


class TestKubeGateway:
    def test_get_custom_object(self, kube, apis):
        _, _, custom = apis
        custom.get_namespaced_custom_object.return_value = {"metadata": {"name": "demo"}}
        assert kube.get(crd.CLUSTER_KIND, "default", "demo") == {"metadata": {"name": "demo"}}
        custom.get_namespaced_custom_object.assert_called_once_with(
            crd.GROUP, crd.VERSION, "default", crd.CLUSTER_PLURAL, "demo"
        )

    def test_get_pod_returns_json_form(self, kube, apis):
        core, _, _ = apis
        core.read_namespaced_pod.return_value = client.V1Pod(
            metadata=client.V1ObjectMeta(name="demo-head", namespace="default"),
            status=client.V1PodStatus(phase="Running", pod_ip="10.0.0.1"),
        )
        pod = kube.get("Pod", "default", "demo-head")
        assert pod["kind"] == "Pod"
        assert pod["status"]["podIP"] == "10.0.0.1"
        core.read_namespaced_pod.assert_called_once_with("demo-head", "default")

    def test_list_uses_label_selector(self, kube, apis):
        _, rbac, _ = apis
        rbac.list_namespaced_role.return_value = client.V1RoleList(items=[])
        assert kube.list("Role", "default", labels={crd.LABEL_CLUSTER: "demo"}) == []
        rbac.list_namespaced_role.assert_called_once_with("default", label_selector="ray.io/cluster=demo")

    def test_list_custom_across_namespaces(self, kube, apis):
        _, _, custom = apis
        custom.list_cluster_custom_object.return_value = {"items": [{"metadata": {"name": "a"}}]}
        assert kube.list(crd.JOB_KIND) == [{"metadata": {"name": "a"}}]

    def test_delete_missing_is_ignored(self, kube, apis):
        core, _, _ = apis
        core.delete_namespaced_pod.side_effect = api_error(404)
        kube.delete("Pod", "default", "gone")
        core.delete_namespaced_pod.assert_called_once_with("gone", "default", propagation_policy="Background")

    def test_connection_failure_is_transient(self, kube, apis):
        core, _, _ = apis
        core.create_namespaced_service.side_effect = ProtocolError("connection reset")
        with pytest.raises(TransientError):
            kube.create("Service", "default", {"metadata": {"name": "svc"}})

    def test_status_write_only_for_custom_kinds(self, kube):
        with pytest.raises(ValueError):
            kube.replace_status("Pod", "default", "demo-head", {})


def test_label_selector_sorted():
    assert label_selector({"b": "2", "a": "1"}) == "a=1,b=2"


def test_pod_status_summary():
    pod = {
        "status": {
            "phase": "Pending",
            "conditions": [{"type": "Ready", "status": "False"}],
            "containerStatuses": [
                {"name": "ray", "ready": False, "state": {"waiting": {"reason": "ImagePullBackOff"}}}
            ],
        }
    }
    summary = get_pod_status(pod)
    assert summary["ready"] is False
    assert summary["container_statuses"][0]["state"] == "Waiting: ImagePullBackOff"


def test_collect_tolerates_unserved_kinds():
    gateway = FakeGateway()
    gateway.fail("list", "PodGroup", error=NotFoundError("no such resource"))
    gateway.create(
        "Pod", "default",
        {"metadata": {"name": "demo-head", "labels": {crd.LABEL_CLUSTER: "demo", crd.LABEL_ROLE: "head"},
                      "ownerReferences": [{"uid": "uid-1"}]}},
    )
    gateway.create("Pod", "default", {"metadata": {"name": "other", "labels": {crd.LABEL_CLUSTER: "demo"}}})
    observed = collect(gateway, "default", "demo", "uid-1")
    assert list(observed) == [("Pod", "demo-head")]
    assert observed[("Pod", "demo-head")].role == crd.ROLE_HEAD
