"""Kubernetes resource templates."""

import copy
import math

from kubernetes import client
from kubernetes.utils.quantity import parse_quantity

from . import crd
from .units import Unit

_api_client = client.ApiClient()

WAIT_GCS_IMAGE = "busybox:1.28"
AUTOSCALER_CONTAINER = "autoscaler"


def to_dict(obj):
    """Serialize a kubernetes client model to its JSON form."""
    return _api_client.sanitize_for_serialization(obj)


def unit_metadata(cluster, name, role, group=None, labels=None, annotations=None):
    """Metadata every unit owned by ``cluster`` carries."""
    merged = dict(labels or {})
    merged.update(
        {
            crd.LABEL_CLUSTER: cluster.name,
            crd.LABEL_ROLE: role,
            crd.LABEL_CREATED_BY: crd.CREATED_BY,
        }
    )
    if group:
        merged[crd.LABEL_GROUP] = group
    if cluster.ray_version:
        merged[crd.LABEL_RAY_VERSION] = cluster.ray_version
    return to_dict(
        client.V1ObjectMeta(
            name=name,
            namespace=cluster.namespace,
            labels=merged,
            annotations=dict(annotations or {}),
            owner_references=[
                crd.owner_reference(crd.CLUSTER_KIND, cluster.name, cluster.uid)
            ],
        )
    )


def _resource_params(container):
    """Derive --num-cpus/--num-gpus/--memory from container limits."""
    limits = (container.get("resources") or {}).get("limits") or {}
    params = {}
    if "cpu" in limits:
        params["num-cpus"] = str(max(1, math.ceil(parse_quantity(limits["cpu"]))))
    gpus = limits.get("nvidia.com/gpu")
    if gpus is not None:
        params["num-gpus"] = str(int(parse_quantity(gpus)))
    if "memory" in limits:
        params["memory"] = str(int(parse_quantity(limits["memory"])))
    return params


def ray_start_command(head, params, container, address=None):
    """Build the ``ray start`` invocation for a node."""
    merged = _resource_params(container)
    merged.update(params)
    merged.setdefault("block", "true")
    if head:
        merged.setdefault("port", str(crd.GCS_PORT))
        merged.setdefault("dashboard-host", "0.0.0.0")

    parts = ["ray", "start"]
    if head:
        parts.append("--head")
    else:
        parts.append(f"--address={address}")
    for key in sorted(merged):
        value = merged[key]
        if value.lower() == "true":
            parts.append(f"--{key}")
        elif value.lower() == "false":
            continue
        else:
            parts.append(f"--{key}={value}")
    return " ".join(parts)


def _set_env(container, env):
    current = container.setdefault("env", [])
    names = {item["name"] for item in current}
    for key, value in env.items():
        if key not in names:
            current.append({"name": key, "value": value})


def _head_ports(container):
    declared = {p.get("name"): p for p in container.get("ports") or [] if p.get("name")}
    ports = []
    for port_name, number in crd.DEFAULT_HEAD_PORTS.items():
        if port_name not in declared:
            ports.append({"name": port_name, "containerPort": number, "protocol": "TCP"})
    ports.extend(container.get("ports") or [])
    return ports


def _pod_body(cluster, name, role, group, template, node_type):
    template = copy.deepcopy(template)
    template_meta = template.get("metadata") or {}
    labels = dict(template_meta.get("labels") or {})
    labels[crd.LABEL_NODE_TYPE] = node_type
    labels[crd.LABEL_IDENTIFIER] = f"{cluster.name}-{node_type}"
    metadata = unit_metadata(
        cluster, name, role, group, labels=labels, annotations=template_meta.get("annotations")
    )
    spec = template["spec"]
    spec.setdefault("restartPolicy", "Always")
    return {"apiVersion": "v1", "kind": "Pod", "metadata": metadata, "spec": spec}


def build_head_pod(cluster):
    """Head pod: runs the GCS, the dashboard and optionally the autoscaler."""
    name = crd.head_name(cluster.name)
    body = _pod_body(cluster, name, crd.ROLE_HEAD, crd.HEAD_GROUP, cluster.head.template, "head")
    spec = body["spec"]
    container = spec["containers"][0]
    container["ports"] = _head_ports(container)
    if not container.get("command"):
        start = ray_start_command(True, cluster.head.ray_start_params, container)
        container["command"] = ["/bin/bash", "-lc", "--"]
        container["args"] = [f"ulimit -n 65536; {start}"]
    _set_env(
        container,
        {
            "RAY_CLUSTER_NAME": cluster.name,
            "RAY_PORT": str(crd.GCS_PORT),
            "RAY_ADDRESS": f"127.0.0.1:{crd.GCS_PORT}",
        },
    )

    if cluster.enable_autoscaling:
        spec["serviceAccountName"] = cluster.name
        spec["containers"].append(build_autoscaler_container(cluster, container))

    return Unit(kind="Pod", name=name, role=crd.ROLE_HEAD, group=crd.HEAD_GROUP, body=body)


def build_autoscaler_container(cluster, ray_container):
    return to_dict(
        client.V1Container(
            name=AUTOSCALER_CONTAINER,
            image=ray_container["image"],
            image_pull_policy=ray_container.get("imagePullPolicy", "IfNotPresent"),
            command=["ray"],
            args=[
                "kuberay-autoscaler",
                "--cluster-name",
                cluster.name,
                "--cluster-namespace",
                cluster.namespace,
            ],
            env=[
                client.V1EnvVar(name="RAY_CLUSTER_NAME", value=cluster.name),
                client.V1EnvVar(name="RAY_CLUSTER_NAMESPACE", value=cluster.namespace),
            ],
            resources=client.V1ResourceRequirements(
                requests={"cpu": "500m", "memory": "512Mi"},
                limits={"cpu": "500m", "memory": "512Mi"},
            ),
        )
    )


def build_worker_pod(cluster, group, index):
    """One worker of ``group``. Nothing in the body depends on the index but the name."""
    name = crd.worker_name(cluster.name, group.name, index)
    body = _pod_body(cluster, name, crd.ROLE_WORKER, group.name, group.template, "worker")
    spec = body["spec"]
    container = spec["containers"][0]
    host = crd.head_service_host(cluster.name, cluster.namespace)
    address = f"{host}:{crd.GCS_PORT}"
    if not container.get("command"):
        start = ray_start_command(False, group.ray_start_params, container, address=address)
        container["command"] = ["/bin/bash", "-lc", "--"]
        container["args"] = [f"ulimit -n 65536; {start}"]
    _set_env(
        container,
        {
            "RAY_CLUSTER_NAME": cluster.name,
            "RAY_IP": host,
            "RAY_PORT": str(crd.GCS_PORT),
            "RAY_ADDRESS": address,
        },
    )
    spec.setdefault("initContainers", []).insert(
        0,
        {
            "name": "wait-gcs-ready",
            "image": WAIT_GCS_IMAGE,
            "command": [
                "sh",
                "-c",
                f"until nslookup {host}; do echo waiting for head service; sleep 2; done",
            ],
        },
    )
    return Unit(kind="Pod", name=name, role=crd.ROLE_WORKER, group=group.name, body=body)


def build_head_service(cluster, head_unit):
    """ClusterIP (or configured type) service in front of the head pod."""
    name = crd.head_service_name(cluster.name)
    container = head_unit.body["spec"]["containers"][0]
    ports = [
        client.V1ServicePort(
            name=port.get("name"),
            port=port["containerPort"],
            target_port=port["containerPort"],
            protocol=port.get("protocol", "TCP"),
        )
        for port in container.get("ports") or []
    ]
    service = client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=unit_metadata(cluster, name, crd.ROLE_ENDPOINT, crd.HEAD_GROUP),
        spec=client.V1ServiceSpec(
            type=cluster.head.service_type,
            selector={crd.LABEL_CLUSTER: cluster.name, crd.LABEL_NODE_TYPE: "head"},
            ports=ports,
        ),
    )
    return Unit(
        kind="Service", name=name, role=crd.ROLE_ENDPOINT, group=crd.HEAD_GROUP, body=to_dict(service)
    )


def build_autoscaler_rbac(cluster):
    """ServiceAccount, Role and RoleBinding used by the autoscaler sidecar."""
    name = cluster.name
    account = client.V1ServiceAccount(
        api_version="v1",
        kind="ServiceAccount",
        metadata=unit_metadata(cluster, name, crd.ROLE_RBAC),
    )
    role = client.V1Role(
        api_version="rbac.authorization.k8s.io/v1",
        kind="Role",
        metadata=unit_metadata(cluster, name, crd.ROLE_RBAC),
        rules=[
            client.V1PolicyRule(
                api_groups=[""], resources=["pods"], verbs=["get", "list", "watch", "patch"]
            ),
            client.V1PolicyRule(
                api_groups=[crd.GROUP], resources=[crd.CLUSTER_PLURAL], verbs=["get", "patch"]
            ),
        ],
    )
    binding = client.V1RoleBinding(
        api_version="rbac.authorization.k8s.io/v1",
        kind="RoleBinding",
        metadata=unit_metadata(cluster, name, crd.ROLE_RBAC),
        role_ref=client.V1RoleRef(api_group="rbac.authorization.k8s.io", kind="Role", name=name),
        subjects=[{"kind": "ServiceAccount", "name": name, "namespace": cluster.namespace}],
    )
    return [
        Unit(kind=kind, name=name, role=crd.ROLE_RBAC, body=to_dict(obj))
        for kind, obj in (("ServiceAccount", account), ("Role", role), ("RoleBinding", binding))
    ]


def build_serve_service(service_spec, cluster_name):
    """Serve endpoint owned by a RayService, selecting one cluster's pods."""
    service = client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=f"{service_spec.name}-serve-svc",
            namespace=service_spec.namespace,
            labels={
                crd.LABEL_SERVICE: service_spec.name,
                crd.LABEL_CREATED_BY: crd.CREATED_BY,
            },
            owner_references=[
                crd.owner_reference(crd.SERVICE_KIND, service_spec.name, service_spec.uid)
            ],
        ),
        spec=client.V1ServiceSpec(
            type=service_spec.serve_service_type,
            selector={crd.LABEL_CLUSTER: cluster_name},
            ports=[
                client.V1ServicePort(
                    name="serve",
                    port=service_spec.serve_port,
                    target_port=service_spec.serve_port,
                    protocol="TCP",
                )
            ],
        ),
    )
    return to_dict(service)


def build_cluster_resource(name, namespace, spec, owner_kind, owner_name, owner_uid, labels=None):
    """RayCluster custom resource owned by a RayService or RayJob."""
    return {
        "apiVersion": crd.API_VERSION,
        "kind": crd.CLUSTER_KIND,
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": dict(labels or {}),
            "ownerReferences": [crd.owner_reference(owner_kind, owner_name, owner_uid)],
        },
        "spec": copy.deepcopy(spec),
    }
