"""Kubernetes client helpers and the typed API gateway."""

import json
import logging
from dataclasses import dataclass

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from . import crd
from .batchscheduler import volcano
from .errors import (
    AlreadyExistsError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    TransientError,
)

logger = logging.getLogger(__name__)

_configured = False


def load_kubeconfig():
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    global _configured
    if _configured:
        return
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig")
    _configured = True


@dataclass(frozen=True)
class ResourceKind:
    """How to reach one kind through the generated client."""

    kind: str
    api: str
    resource: str
    group: str = ""
    version: str = "v1"


KINDS = {
    k.kind: k
    for k in (
        ResourceKind(crd.CLUSTER_KIND, "custom", crd.CLUSTER_PLURAL, crd.GROUP, crd.VERSION),
        ResourceKind(crd.SERVICE_KIND, "custom", crd.SERVICE_PLURAL, crd.GROUP, crd.VERSION),
        ResourceKind(crd.JOB_KIND, "custom", crd.JOB_PLURAL, crd.GROUP, crd.VERSION),
        ResourceKind(volcano.KIND, "custom", volcano.PLURAL, volcano.GROUP, volcano.VERSION),
        ResourceKind("Pod", "core", "pod"),
        ResourceKind("Service", "core", "service"),
        ResourceKind("ServiceAccount", "core", "service_account"),
        ResourceKind("Role", "rbac", "role"),
        ResourceKind("RoleBinding", "rbac", "role_binding"),
    )
}

# Kinds the engine owns on behalf of a RayCluster.
UNIT_KINDS = ("Pod", "Service", volcano.KIND, "ServiceAccount", "Role", "RoleBinding")


def _error_reason(e):
    try:
        return json.loads(e.body).get("reason", "")
    except (TypeError, ValueError, AttributeError):
        return ""


def translate(e, what):
    """Map an ApiException onto the operator's error taxonomy."""
    message = f"{what}: {e.status} {e.reason}"
    if e.status == 404:
        return NotFoundError(message)
    if e.status == 409:
        if _error_reason(e) == "AlreadyExists":
            return AlreadyExistsError(message)
        return ConflictError(message)
    if e.status in (400, 422):
        return ConfigurationError(message, reason="Invalid")
    return TransientError(message)


def label_selector(labels):
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


class KubeGateway:
    """Typed CRUD over custom resources and native units.

    Every method takes a kind name from ``KINDS`` and returns plain dicts in
    their JSON form. Writes carry ``metadata.resourceVersion`` from the body
    so the API server rejects stale updates with a conflict.
    """

    def __init__(self, core_v1=None, rbac_v1=None, custom_api=None):
        if core_v1 is None or rbac_v1 is None or custom_api is None:
            load_kubeconfig()
        self.core_v1 = core_v1 or client.CoreV1Api()
        self.rbac_v1 = rbac_v1 or client.RbacAuthorizationV1Api()
        self.custom_api = custom_api or client.CustomObjectsApi()
        self._api_client = client.ApiClient()

    def _typed_api(self, spec):
        return self.core_v1 if spec.api == "core" else self.rbac_v1

    def _to_dict(self, kind, obj):
        body = self._api_client.sanitize_for_serialization(obj)
        body.setdefault("kind", kind)
        return body

    def _call(self, what, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            raise translate(e, what) from e
        except HTTPError as e:
            raise TransientError(f"{what}: {e}") from e

    def get(self, kind, namespace, name):
        spec = KINDS[kind]
        what = f"get {kind} {namespace}/{name}"
        if spec.api == "custom":
            return self._call(
                what,
                self.custom_api.get_namespaced_custom_object,
                spec.group, spec.version, namespace, spec.resource, name,
            )
        api = self._typed_api(spec)
        obj = self._call(what, getattr(api, f"read_namespaced_{spec.resource}"), name, namespace)
        return self._to_dict(kind, obj)

    def list(self, kind, namespace=None, labels=None):
        spec = KINDS[kind]
        selector = label_selector(labels) if labels else ""
        what = f"list {kind} in {namespace or 'all namespaces'}"
        if spec.api == "custom":
            if namespace:
                response = self._call(
                    what,
                    self.custom_api.list_namespaced_custom_object,
                    spec.group, spec.version, namespace, spec.resource,
                    label_selector=selector,
                )
            else:
                response = self._call(
                    what,
                    self.custom_api.list_cluster_custom_object,
                    spec.group, spec.version, spec.resource,
                    label_selector=selector,
                )
            return response.get("items", [])

        api = self._typed_api(spec)
        if namespace:
            response = self._call(
                what,
                getattr(api, f"list_namespaced_{spec.resource}"),
                namespace,
                label_selector=selector,
            )
        else:
            response = self._call(
                what,
                getattr(api, f"list_{spec.resource}_for_all_namespaces"),
                label_selector=selector,
            )
        return [self._to_dict(kind, item) for item in response.items]

    def create(self, kind, namespace, body):
        spec = KINDS[kind]
        what = f"create {kind} {namespace}/{body['metadata']['name']}"
        if spec.api == "custom":
            return self._call(
                what,
                self.custom_api.create_namespaced_custom_object,
                spec.group, spec.version, namespace, spec.resource, body,
            )
        api = self._typed_api(spec)
        obj = self._call(what, getattr(api, f"create_namespaced_{spec.resource}"), namespace, body)
        return self._to_dict(kind, obj)

    def replace(self, kind, namespace, name, body):
        spec = KINDS[kind]
        what = f"replace {kind} {namespace}/{name}"
        if spec.api == "custom":
            return self._call(
                what,
                self.custom_api.replace_namespaced_custom_object,
                spec.group, spec.version, namespace, spec.resource, name, body,
            )
        api = self._typed_api(spec)
        obj = self._call(
            what, getattr(api, f"replace_namespaced_{spec.resource}"), name, namespace, body
        )
        return self._to_dict(kind, obj)

    def replace_status(self, kind, namespace, name, body):
        spec = KINDS[kind]
        if spec.api != "custom":
            raise ValueError(f"status subresource writes are only used for custom kinds, not {kind}")
        return self._call(
            f"replace {kind} status {namespace}/{name}",
            self.custom_api.replace_namespaced_custom_object_status,
            spec.group, spec.version, namespace, spec.resource, name, body,
        )

    def delete(self, kind, namespace, name):
        """Delete an object. Deleting something already gone is not an error."""
        spec = KINDS[kind]
        what = f"delete {kind} {namespace}/{name}"
        try:
            if spec.api == "custom":
                self._call(
                    what,
                    self.custom_api.delete_namespaced_custom_object,
                    spec.group, spec.version, namespace, spec.resource, name,
                    propagation_policy="Background",
                )
            else:
                api = self._typed_api(spec)
                self._call(
                    what,
                    getattr(api, f"delete_namespaced_{spec.resource}"),
                    name,
                    namespace,
                    propagation_policy="Background",
                )
        except NotFoundError:
            logger.debug(f"{kind} {namespace}/{name} already deleted")


def get_pod_status(pod):
    """Summarize a pod body the way ``kubectl describe`` would."""
    status = pod.get("status") or {}
    return {
        "phase": status.get("phase"),
        "ready": any(
            c.get("type") == "Ready" and c.get("status") == "True"
            for c in (status.get("conditions") or [])
        ),
        "container_statuses": [
            {
                "name": cs.get("name"),
                "ready": cs.get("ready"),
                "state": _get_container_state(cs),
            }
            for cs in (status.get("containerStatuses") or [])
        ],
    }


def _get_container_state(container_status):
    """Get container state string."""
    state = container_status.get("state") or {}
    if state.get("running"):
        return "Running"
    elif state.get("waiting"):
        return f"Waiting: {state['waiting'].get('reason')}"
    elif state.get("terminated"):
        return f"Terminated: {state['terminated'].get('reason')}"
    return "Unknown"
