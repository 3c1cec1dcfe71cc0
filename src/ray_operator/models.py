"""Typed views over the RayCluster, RayService and RayJob custom resources."""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from . import crd
from .errors import ConfigurationError
from .units import fingerprint


@dataclass
class BatchSchedulerPolicy:
    name: str
    queue: Optional[str] = None
    priority_class_name: Optional[str] = None

    @classmethod
    def from_spec(cls, raw, default_name=None):
        if not raw:
            if default_name:
                return cls(name=default_name)
            return None
        if isinstance(raw, str):
            return cls(name=raw)
        if not isinstance(raw, dict) or not raw.get("name"):
            raise ConfigurationError("batchScheduler must name a policy")
        return cls(
            name=raw["name"],
            queue=raw.get("queue"),
            priority_class_name=raw.get("priorityClassName"),
        )


@dataclass
class HeadGroup:
    template: Dict[str, Any]
    ray_start_params: Dict[str, str] = field(default_factory=dict)
    service_type: str = "ClusterIP"


@dataclass
class WorkerGroup:
    name: str
    template: Dict[str, Any]
    replicas: int
    min_replicas: int = 0
    max_replicas: int = crd.MAX_REPLICAS
    ray_start_params: Dict[str, str] = field(default_factory=dict)
    workers_to_delete: List[str] = field(default_factory=list)


def _check_template(template, where):
    if not isinstance(template, dict):
        raise ConfigurationError(f"{where}.template is required")
    containers = (template.get("spec") or {}).get("containers") or []
    if not containers:
        raise ConfigurationError(f"{where}.template must define at least one container")
    for container in containers:
        if not container.get("image"):
            raise ConfigurationError(f"{where}: container {container.get('name')!r} has no image")


def _as_int(value, what):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{what} must be an integer, got {value!r}")
    return value


def _parse_worker_group(raw, index):
    where = f"workerGroupSpecs[{index}]"
    name = raw.get("groupName")
    if not name:
        raise ConfigurationError(f"{where}.groupName is required")
    _check_template(raw.get("template"), where)

    min_replicas = _as_int(raw.get("minReplicas", 0), f"{where}.minReplicas")
    max_replicas = _as_int(raw.get("maxReplicas", crd.MAX_REPLICAS), f"{where}.maxReplicas")
    replicas = _as_int(raw.get("replicas", min_replicas), f"{where}.replicas")
    if min_replicas < 0:
        raise ConfigurationError(f"{where}.minReplicas must be >= 0")
    if min_replicas > max_replicas:
        raise ConfigurationError(
            f"worker group {name}: minReplicas {min_replicas} > maxReplicas {max_replicas}"
        )
    if not min_replicas <= replicas <= max_replicas:
        raise ConfigurationError(
            f"worker group {name}: replicas {replicas} outside [{min_replicas}, {max_replicas}]"
        )

    return WorkerGroup(
        name=name,
        template=copy.deepcopy(raw["template"]),
        replicas=replicas,
        min_replicas=min_replicas,
        max_replicas=max_replicas,
        ray_start_params={k: str(v) for k, v in (raw.get("rayStartParams") or {}).items()},
        workers_to_delete=list((raw.get("scaleStrategy") or {}).get("workersToDelete") or []),
    )


@dataclass
class ClusterSpec:
    """Validated, immutable snapshot of a RayCluster resource."""

    name: str
    namespace: str
    uid: str
    head: HeadGroup
    worker_groups: List[WorkerGroup]
    enable_autoscaling: bool = False
    batch_scheduler: Optional[BatchSchedulerPolicy] = None
    ray_version: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    generation: Optional[int] = None
    deleting: bool = False
    spec_hash: str = ""

    @classmethod
    def from_resource(cls, body, default_scheduler=None):
        metadata = body.get("metadata") or {}
        spec = body.get("spec") or {}
        name = metadata.get("name")
        if not name:
            raise ConfigurationError("RayCluster has no name")

        head_raw = spec.get("headGroupSpec")
        if not isinstance(head_raw, dict):
            raise ConfigurationError("headGroupSpec is required")
        _check_template(head_raw.get("template"), "headGroupSpec")
        head = HeadGroup(
            template=copy.deepcopy(head_raw["template"]),
            ray_start_params={k: str(v) for k, v in (head_raw.get("rayStartParams") or {}).items()},
            service_type=head_raw.get("serviceType") or "ClusterIP",
        )

        groups = [
            _parse_worker_group(raw, i) for i, raw in enumerate(spec.get("workerGroupSpecs") or [])
        ]
        seen = set()
        for group in groups:
            if group.name in seen:
                raise ConfigurationError(f"duplicate worker group name {group.name!r}")
            seen.add(group.name)

        return cls(
            name=name,
            namespace=metadata.get("namespace") or "default",
            uid=metadata.get("uid") or "",
            head=head,
            worker_groups=groups,
            enable_autoscaling=bool(spec.get("enableInTreeAutoscaling", False)),
            batch_scheduler=BatchSchedulerPolicy.from_spec(
                spec.get("batchScheduler"), default_scheduler
            ),
            ray_version=spec.get("rayVersion"),
            labels=dict(metadata.get("labels") or {}),
            generation=metadata.get("generation"),
            deleting=bool(metadata.get("deletionTimestamp")),
            spec_hash=fingerprint(spec),
        )

    def group(self, name):
        for group in self.worker_groups:
            if group.name == name:
                return group
        return None


@dataclass
class ServiceSpec:
    name: str
    namespace: str
    uid: str
    cluster_config: Dict[str, Any]
    serve_port: int = crd.SERVE_PORT
    serve_service_type: str = "ClusterIP"
    retain_old_cluster_seconds: float = 60.0
    spec_hash: str = ""

    @classmethod
    def from_resource(cls, body):
        metadata = body.get("metadata") or {}
        spec = body.get("spec") or {}
        cluster_config = spec.get("rayClusterConfig")
        if not isinstance(cluster_config, dict):
            raise ConfigurationError("rayClusterConfig is required")
        # Validate the template up front so a bad config never creates a cluster.
        ClusterSpec.from_resource({"metadata": {"name": metadata.get("name")}, "spec": cluster_config})

        serve = spec.get("serveService") or {}
        retain = spec.get("retainOldClusterSeconds", 60)
        if not isinstance(retain, (int, float)) or retain < 0:
            raise ConfigurationError("retainOldClusterSeconds must be a non-negative number")
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace") or "default",
            uid=metadata.get("uid") or "",
            cluster_config=copy.deepcopy(cluster_config),
            serve_port=_as_int(serve.get("port", crd.SERVE_PORT), "serveService.port"),
            serve_service_type=serve.get("serviceType") or "ClusterIP",
            retain_old_cluster_seconds=float(retain),
            spec_hash=fingerprint(cluster_config),
        )


@dataclass
class JobSpec:
    name: str
    namespace: str
    uid: str
    entrypoint: str
    runtime_env: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, str]] = None
    job_id: Optional[str] = None
    cluster_spec: Optional[Dict[str, Any]] = None
    cluster_selector: Optional[Dict[str, str]] = None
    shutdown_after_finish: bool = False
    ttl_seconds_after_finished: int = 0

    @property
    def owns_cluster(self):
        return self.cluster_spec is not None

    @property
    def cluster_name(self):
        if self.cluster_selector:
            return self.cluster_selector[crd.LABEL_CLUSTER]
        return f"{self.name}-raycluster"

    @classmethod
    def from_resource(cls, body):
        metadata = body.get("metadata") or {}
        spec = body.get("spec") or {}
        entrypoint = spec.get("entrypoint")
        if not entrypoint:
            raise ConfigurationError("entrypoint is required")

        cluster_spec = spec.get("rayClusterSpec")
        selector = spec.get("clusterSelector")
        if bool(cluster_spec) == bool(selector):
            raise ConfigurationError("exactly one of rayClusterSpec or clusterSelector must be set")
        if selector and not selector.get(crd.LABEL_CLUSTER):
            raise ConfigurationError(f"clusterSelector must set {crd.LABEL_CLUSTER}")
        if cluster_spec:
            ClusterSpec.from_resource({"metadata": {"name": metadata.get("name")}, "spec": cluster_spec})

        ttl = _as_int(spec.get("ttlSecondsAfterFinished", 0), "ttlSecondsAfterFinished")
        if ttl < 0:
            raise ConfigurationError("ttlSecondsAfterFinished must be >= 0")
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace") or "default",
            uid=metadata.get("uid") or "",
            entrypoint=entrypoint,
            runtime_env=spec.get("runtimeEnv"),
            metadata=spec.get("metadata"),
            job_id=spec.get("jobId"),
            cluster_spec=copy.deepcopy(cluster_spec) if cluster_spec else None,
            cluster_selector=dict(selector) if selector else None,
            shutdown_after_finish=bool(spec.get("shutdownAfterJobFinishes", False)),
            ttl_seconds_after_finished=ttl,
        )
