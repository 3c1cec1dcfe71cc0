"""Cluster status state machine and status persistence.

The phase is derived from the latest plan and the health of the observed
units. The only memory carried between reconciles is what the persisted
status holds (condition transition times, the failure counter and the spec
hash), so the operator can restart at any point.
"""

import copy
import logging
from datetime import datetime, timezone

from . import crd
from .errors import ConflictError, OperatorError, TransientError

logger = logging.getLogger(__name__)

KUBERNETES_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Condition types
CONFIG_VALID = "ConfigValid"
HEAD_READY = "HeadReady"
UNITS_READY = "UnitsReady"
UPGRADE_BLOCKED = "UpgradeBlocked"
RECONCILE_SUCCESS = "ReconcileSuccess"

STATUS_WRITE_ATTEMPTS = 3


def utcnow():
    return datetime.now(timezone.utc)


def format_time(moment):
    return moment.strftime(KUBERNETES_DATETIME_FORMAT)


def parse_time(value):
    if not value:
        return None
    return datetime.strptime(value, KUBERNETES_DATETIME_FORMAT).replace(tzinfo=timezone.utc)


def get_condition(conditions, condition_type):
    for condition in conditions or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def set_condition(conditions, condition_type, status, reason, message, now):
    """Insert or update a condition. The transition time moves only on a flip."""
    status = "True" if status else "False"
    existing = get_condition(conditions, condition_type)
    if existing is None:
        conditions.append(
            {
                "type": condition_type,
                "status": status,
                "reason": reason,
                "message": message,
                "lastTransitionTime": format_time(now),
            }
        )
        return conditions
    if existing.get("status") != status:
        existing["lastTransitionTime"] = format_time(now)
    existing["status"] = status
    existing["reason"] = reason
    existing["message"] = message
    return conditions


def _worker_summary(cluster, observed):
    groups = {}
    for group in cluster.worker_groups:
        groups[group.name] = {
            "desired": group.replicas,
            "observed": 0,
            "ready": 0,
            "min": group.min_replicas,
            "max": group.max_replicas,
        }
    for unit in observed.values():
        if unit.kind != "Pod" or unit.role != crd.ROLE_WORKER or unit.terminating:
            continue
        summary = groups.get(unit.group)
        if summary is None:
            continue
        summary["observed"] += 1
        if unit.ready:
            summary["ready"] += 1
    return groups


def _head_pod(observed):
    for unit in observed.values():
        if unit.kind == "Pod" and unit.role == crd.ROLE_HEAD and not unit.terminating:
            return unit
    return None


def _base_status(previous, cluster, now):
    status = copy.deepcopy(previous or {})
    status.setdefault("conditions", [])
    if cluster is not None:
        status["observedGeneration"] = cluster.generation
    return status


def derive_status(cluster, observed, plan, outcome, previous, now=None,
                  grace_seconds=600.0, failure_budget=5):
    """Compute the new status of ``cluster`` after a reconcile pass."""
    now = now or utcnow()
    previous = previous or {}
    status = _base_status(previous, cluster, now)
    conditions = status["conditions"]
    previous_phase = previous.get("phase")

    set_condition(conditions, CONFIG_VALID, True, "Valid", "", now)

    # Failure accounting restarts whenever the spec changes.
    spec_changed = previous.get("lastSpecHash") != cluster.spec_hash
    failures = 0 if spec_changed else previous.get("failureCount", 0)
    if outcome.failed:
        failures += 1
        error = outcome.failed[-1][1]
        set_condition(
            conditions, RECONCILE_SUCCESS, False, error.reason,
            f"{len(outcome.failed)} of {len(plan.mutations)} mutations failed; last: {error}", now,
        )
    else:
        failures = 0
        set_condition(
            conditions, RECONCILE_SUCCESS, True,
            "Converged" if plan.empty else "InProgress", "", now,
        )
    status["failureCount"] = failures
    status["lastSpecHash"] = cluster.spec_hash

    # Observed shape
    groups = _worker_summary(cluster, observed)
    head = _head_pod(observed)
    # Terminating pods count: an upgrade in flight is not a cluster starting up.
    pods = [u for u in observed.values() if u.kind == "Pod"]
    status["workerGroups"] = groups
    status["desiredWorkerReplicas"] = sum(g["desired"] for g in groups.values())
    status["availableWorkerReplicas"] = sum(g["ready"] for g in groups.values())
    status["restartCount"] = sum(u.restart_count for u in observed.values() if u.kind == "Pod")
    host = crd.head_service_host(cluster.name, cluster.namespace)
    status["head"] = {
        "podName": head.name if head else None,
        "podIP": ((head.body.get("status") or {}).get("podIP")) if head else None,
        "serviceName": crd.head_service_name(cluster.name),
    }
    status["endpoints"] = {
        "gcs": f"{host}:{crd.GCS_PORT}",
        "dashboard": f"{host}:{crd.DASHBOARD_PORT}",
        "client": f"{host}:{crd.CLIENT_PORT}",
    }

    head_ready = head is not None and head.ready
    set_condition(
        conditions, HEAD_READY, head_ready,
        "HeadPodReady" if head_ready else "HeadPodNotReady", "", now,
    )
    unready = [name for name, g in groups.items() if g["ready"] != g["desired"]]
    healthy = head_ready and not unready
    message = ""
    if not healthy:
        missing = ([] if head_ready else ["head"]) + [f"group {name}" for name in unready]
        message = "not ready: " + ", ".join(missing)
    set_condition(
        conditions, UNITS_READY, healthy, "AllUnitsReady" if healthy else "UnitsNotReady", message, now,
    )

    if plan.blocked:
        set_condition(
            conditions, UPGRADE_BLOCKED, True, "DisruptiveChangeRefused",
            "spec change needs " + ", ".join(m.unit.name for m in plan.blocked)
            + " recreated while serving; set forced cluster upgrade to apply it", now,
        )
    else:
        set_condition(conditions, UPGRADE_BLOCKED, False, "NoBlockedChanges", "", now)

    # Phase
    if failures >= failure_budget:
        phase = crd.PHASE_FAILED
        status["reason"] = "ConvergenceFailed"
        status["message"] = (
            f"{failures} consecutive reconciles failed; last error: {outcome.failed[-1][1]}"
        )
    elif not pods:
        phase = crd.PHASE_INITIALIZING
    elif plan.upgrading:
        phase = crd.PHASE_UPGRADING
    elif healthy:
        phase = crd.PHASE_RUNNING
    else:
        since = parse_time(get_condition(conditions, UNITS_READY)["lastTransitionTime"])
        unhealthy_for = (now - since).total_seconds() if since else 0.0
        if unhealthy_for >= grace_seconds:
            phase = crd.PHASE_DEGRADED
        elif previous_phase == crd.PHASE_RUNNING:
            phase = crd.PHASE_RUNNING
        else:
            phase = crd.PHASE_PENDING

    if phase != crd.PHASE_FAILED:
        status["reason"] = phase
        status["message"] = message
    status["phase"] = phase
    return status


def configuration_error_status(previous, error, spec_hash, generation, now=None):
    """Status for a spec rejected before any unit was resolved."""
    now = now or utcnow()
    status = copy.deepcopy(previous or {})
    conditions = status.setdefault("conditions", [])
    set_condition(conditions, CONFIG_VALID, False, error.reason, error.message, now)
    set_condition(conditions, RECONCILE_SUCCESS, False, error.reason, error.message, now)
    status.setdefault("phase", crd.PHASE_INITIALIZING)
    status["reason"] = error.reason
    status["message"] = error.message
    status["lastSpecHash"] = spec_hash
    status["observedGeneration"] = generation
    return status


def deleting_status(previous, remaining, now=None):
    now = now or utcnow()
    status = copy.deepcopy(previous or {})
    status.setdefault("conditions", [])
    status["phase"] = crd.PHASE_DELETING
    status["reason"] = crd.PHASE_DELETING
    status["message"] = f"{remaining} owned units remaining"
    return status


def record_error(gateway, kind, body, status, error, now=None):
    """Best-effort write of a failed reconcile into the ReconcileSuccess condition.

    The caller still returns ``error`` to kopf; a failure to record
    it is only logged.
    """
    status = copy.deepcopy(status or {})
    conditions = status.setdefault("conditions", [])
    set_condition(conditions, RECONCILE_SUCCESS, False, error.reason, str(error), now or utcnow())
    try:
        persist_status(gateway, kind, body, status)
    except OperatorError as e:
        logger.warning(f"Could not record error on {kind} {body['metadata'].get('name')}: {e}")


def persist_status(gateway, kind, body, status, attempts=STATUS_WRITE_ATTEMPTS):
    """Write ``status`` onto ``body``'s status subresource.

    Skips the write when nothing changed. A conflict is retried against a
    fresh read as long as the spec generation is unchanged, since the status
    is a pure derivation and still applies. A newer generation means the
    status is stale: the conflict is raised so a fresh reconcile runs.
    """
    metadata = body["metadata"]
    namespace, name = metadata.get("namespace"), metadata["name"]
    generation = metadata.get("generation")
    current = body
    for attempt in range(attempts):
        if current.get("status") == status:
            return current
        update = copy.deepcopy(current)
        update["status"] = status
        try:
            return gateway.replace_status(kind, namespace, name, update)
        except ConflictError:
            logger.info(f"Status write conflict for {kind} {namespace}/{name}, attempt {attempt + 1}")
            current = gateway.get(kind, namespace, name)
            if current.get("metadata", {}).get("generation") != generation:
                raise
    raise TransientError(f"could not persist status of {kind} {namespace}/{name} after {attempts} attempts")
