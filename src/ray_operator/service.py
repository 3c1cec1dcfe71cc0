"""RayService orchestration: blue/green cluster swaps behind one serve endpoint.

The active cluster keeps serving while a pending cluster built from the new
spec converges. Once the pending cluster is Running the serve Service's
selector is replaced in one update, so the endpoint always resolves to
exactly one cluster. The previous cluster is retained for a while so the
swap can be rolled back if the new cluster degrades.
"""

import copy
import logging
from datetime import timedelta

from . import crd
from .config import OperatorConfig
from .errors import AlreadyExistsError, ConfigurationError, NotFoundError, TransientError
from .models import ServiceSpec
from .status import (
    CONFIG_VALID,
    format_time,
    parse_time,
    persist_status,
    record_error,
    set_condition,
    utcnow,
)
from .templates import build_cluster_resource, build_serve_service
from .scheduling import Result

logger = logging.getLogger(__name__)

SWAP_IN_PROGRESS = "InProgress"
SWAP_COMPLETE = "Complete"
SWAP_ROLLED_BACK = "RolledBack"
SWAP_FAILED = "Failed"

_UNHEALTHY = (crd.PHASE_FAILED, crd.PHASE_DEGRADED)


def cluster_name_for(service_name, spec_hash):
    return f"{service_name}-raycluster-{spec_hash[:5]}"


def serve_service_name(service_name):
    return f"{service_name}-serve-svc"


def _port_shape(ports):
    """The port fields the operator sets; the API server fills in the rest."""
    return [
        (p.get("name"), p.get("port"), p.get("targetPort"), p.get("protocol", "TCP"))
        for p in ports or []
    ]


class ServiceReconciler:
    def __init__(self, gateway, config=None):
        self.gateway = gateway
        self.config = config or OperatorConfig()

    def reconcile(self, key):
        namespace, name = crd.split_key(key)
        try:
            body = self.gateway.get(crd.SERVICE_KIND, namespace, name)
        except NotFoundError:
            logger.info(f"RayService {key} is gone")
            return Result.gone()
        if (body.get("metadata") or {}).get("deletionTimestamp"):
            return Result.done()

        status = copy.deepcopy(body.get("status") or {})
        status.setdefault("conditions", [])
        now = utcnow()
        try:
            service = ServiceSpec.from_resource(body)
        except ConfigurationError as e:
            logger.error(f"RayService {key} has an invalid spec: {e}")
            set_condition(status["conditions"], CONFIG_VALID, False, e.reason, e.message, now)
            persist_status(self.gateway, crd.SERVICE_KIND, body, status)
            return Result.error(e)
        set_condition(status["conditions"], CONFIG_VALID, True, "Valid", "", now)

        try:
            result = self._converge(service, status, now)
        except TransientError as e:
            record_error(self.gateway, crd.SERVICE_KIND, body, status, e)
            return Result.error(e)
        persist_status(self.gateway, crd.SERVICE_KIND, body, status)
        return result

    # Cluster helpers

    def _cluster_phase(self, service, cluster_name):
        try:
            cluster = self.gateway.get(crd.CLUSTER_KIND, service.namespace, cluster_name)
        except NotFoundError:
            return None
        return (cluster.get("status") or {}).get("phase") or crd.PHASE_INITIALIZING

    def _create_cluster(self, service, cluster_name):
        body = build_cluster_resource(
            cluster_name, service.namespace, service.cluster_config,
            crd.SERVICE_KIND, service.name, service.uid,
            labels={crd.LABEL_SERVICE: service.name},
        )
        try:
            self.gateway.create(crd.CLUSTER_KIND, service.namespace, body)
            logger.info(f"Created RayCluster {service.namespace}/{cluster_name} for RayService {service.name}")
        except AlreadyExistsError:
            logger.info(f"RayCluster {service.namespace}/{cluster_name} already exists")

    def _delete_cluster(self, service, cluster_name):
        self.gateway.delete(crd.CLUSTER_KIND, service.namespace, cluster_name)
        logger.info(f"Deleted RayCluster {service.namespace}/{cluster_name} of RayService {service.name}")

    def repoint(self, service, cluster_name):
        """Point the serve endpoint at ``cluster_name`` with the configured ports and type.

        Selector, ports and type change together in a single write.
        """
        name = serve_service_name(service.name)
        desired = build_serve_service(service, cluster_name)
        try:
            current = self.gateway.get("Service", service.namespace, name)
        except NotFoundError:
            self.gateway.create("Service", service.namespace, desired)
            logger.info(f"Serve endpoint {name} created for RayCluster {cluster_name}")
            return
        spec = current.get("spec") or {}
        wanted = desired["spec"]
        if (
            spec.get("selector") == wanted["selector"]
            and spec.get("type", "ClusterIP") == wanted["type"]
            and _port_shape(spec.get("ports")) == _port_shape(wanted["ports"])
        ):
            return
        body = copy.deepcopy(current)
        body.pop("status", None)
        body["spec"]["selector"] = wanted["selector"]
        body["spec"]["type"] = wanted["type"]
        if _port_shape(spec.get("ports")) != _port_shape(wanted["ports"]):
            body["spec"]["ports"] = wanted["ports"]
        self.gateway.replace("Service", service.namespace, name, body)
        logger.info(f"Serve endpoint {name} now selects RayCluster {cluster_name}")

    # State machine

    def _retire(self, service, status, now):
        """Roll back or tear down the retained previous cluster."""
        retiring = status.get("retiringCluster")
        active = status.get("activeCluster")
        if not retiring:
            return None

        if active and self._cluster_phase(service, active["name"]) in _UNHEALTHY:
            if self._cluster_phase(service, retiring["name"]) == crd.PHASE_RUNNING:
                logger.warning(
                    f"RayService {service.name}: {active['name']} is unhealthy, rolling back to {retiring['name']}"
                )
                self.repoint(service, retiring["name"])
                status["failedSpecHash"] = active["specHash"]
                status["activeCluster"] = {"name": retiring["name"], "specHash": retiring["specHash"]}
                status["servingCluster"] = retiring["name"]
                status["retiringCluster"] = dict(active, retireAt=format_time(now))
                status["serviceStatus"] = crd.SERVICE_ROLLED_BACK
                status["swap"] = dict(status.get("swap") or {}, state=SWAP_ROLLED_BACK, completedAt=format_time(now))
                retiring = status["retiringCluster"]

        retire_at = parse_time(retiring.get("retireAt")) or now
        if now < retire_at:
            return (retire_at - now).total_seconds()
        self._delete_cluster(service, retiring["name"])
        status.pop("retiringCluster", None)
        return None

    def _promote(self, service, status, pending, now):
        self.repoint(service, pending["name"])
        active = status.get("activeCluster")
        if active:
            previous = status.get("retiringCluster")
            if previous:
                self._delete_cluster(service, previous["name"])
            retire_at = now + timedelta(seconds=service.retain_old_cluster_seconds)
            status["retiringCluster"] = dict(active, retireAt=format_time(retire_at))
        status["activeCluster"] = pending
        status["servingCluster"] = pending["name"]
        status.pop("pendingCluster", None)
        status["serviceStatus"] = crd.SERVICE_RUNNING
        status["swap"] = dict(status.get("swap") or {}, state=SWAP_COMPLETE, completedAt=format_time(now))
        logger.info(f"RayService {service.name} now served by {pending['name']}")

    def _converge(self, service, status, now):
        wait = self._retire(service, status, now)
        requeue = self.config.requeue_seconds if wait is None else min(wait, self.config.requeue_seconds)

        active = status.get("activeCluster")
        if active and self._cluster_phase(service, active["name"]) is None:
            logger.warning(f"RayService {service.name}: active RayCluster {active['name']} is missing")
            status.pop("activeCluster", None)
            active = None
        if active:
            self.repoint(service, active["name"])

        target_hash = service.spec_hash
        pending = status.get("pendingCluster")

        if active and active["specHash"] == target_hash:
            if pending:
                self._delete_cluster(service, pending["name"])
                status.pop("pendingCluster", None)
            status["servingCluster"] = active["name"]
            status["serviceStatus"] = crd.SERVICE_RUNNING
            return Result.requeue_after(wait) if wait is not None else Result.done()

        if target_hash == status.get("failedSpecHash"):
            status["serviceStatus"] = crd.SERVICE_ROLLED_BACK if active else crd.SERVICE_DEPLOYING
            return Result.requeue_after(wait) if wait is not None else Result.done()

        if pending and pending["specHash"] != target_hash:
            self._delete_cluster(service, pending["name"])
            pending = None
        if not pending:
            pending = {"name": cluster_name_for(service.name, target_hash), "specHash": target_hash}
            self._create_cluster(service, pending["name"])
            status["pendingCluster"] = pending
            status["swap"] = {"state": SWAP_IN_PROGRESS, "startedAt": format_time(now)}

        phase = self._cluster_phase(service, pending["name"])
        if phase == crd.PHASE_RUNNING:
            self._promote(service, status, pending, now)
            if "retiringCluster" in status:
                return Result.requeue_after(service.retain_old_cluster_seconds)
            return Result.done()
        if phase == crd.PHASE_FAILED:
            logger.error(f"RayService {service.name}: pending RayCluster {pending['name']} failed")
            self._delete_cluster(service, pending["name"])
            status.pop("pendingCluster", None)
            status["failedSpecHash"] = target_hash
            status["swap"] = dict(status.get("swap") or {}, state=SWAP_FAILED, completedAt=format_time(now))
            status["serviceStatus"] = crd.SERVICE_RUNNING if active else crd.SERVICE_DEPLOYING
            return Result.done()

        status["serviceStatus"] = crd.SERVICE_UPGRADING if active else crd.SERVICE_DEPLOYING
        return Result.requeue_after(requeue)
