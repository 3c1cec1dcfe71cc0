"""Core reconciliation logic for RayCluster resources."""

import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from . import crd
from .config import OperatorConfig
from .diff import CREATE, DELETE, RECREATE, UPDATE, Mutation, plan as build_plan
from .errors import (
    AlreadyExistsError,
    ConfigurationError,
    ConvergenceError,
    NotFoundError,
    OperatorError,
    TransientError,
)
from .models import ClusterSpec
from .observed import collect
from .resolver import resolve
from .status import (
    configuration_error_status,
    deleting_status,
    derive_status,
    persist_status,
    record_error,
)
from .units import fingerprint, merge_mutable
from .scheduling import Result

logger = logging.getLogger(__name__)

# Delay before checking again on a unit that is still terminating.
TERMINATION_POLL_SECONDS = 2.0


@dataclass
class ApplyOutcome:
    applied: List[Mutation] = field(default_factory=list)
    failed: List[Tuple[Mutation, OperatorError]] = field(default_factory=list)
    pending: List[Mutation] = field(default_factory=list)


def _create(gateway, namespace, unit):
    try:
        gateway.create(unit.kind, namespace, unit.body)
    except AlreadyExistsError:
        # The list we planned from had not caught up with an earlier create.
        logger.info(f"{unit.kind} {namespace}/{unit.name} already exists")


def apply_mutation(gateway, namespace, mutation):
    """Apply one mutation. Returns False when a recreate must wait for the delete."""
    unit = mutation.unit
    if mutation.action == DELETE:
        gateway.delete(unit.kind, namespace, unit.name)
        logger.info(f"Deleted {unit.kind} {namespace}/{unit.name} ({mutation.reason})")
    elif mutation.action == CREATE:
        _create(gateway, namespace, unit)
        logger.info(f"Created {unit.kind} {namespace}/{unit.name}")
    elif mutation.action == UPDATE:
        body = merge_mutable(mutation.observed, unit)
        gateway.replace(unit.kind, namespace, unit.name, body)
        logger.info(f"Updated {unit.kind} {namespace}/{unit.name} in place")
    elif mutation.action == RECREATE:
        gateway.delete(unit.kind, namespace, unit.name)
        logger.info(f"Deleted {unit.kind} {namespace}/{unit.name} for recreation ({mutation.reason})")
        try:
            gateway.get(unit.kind, namespace, unit.name)
        except NotFoundError:
            _create(gateway, namespace, unit)
            logger.info(f"Recreated {unit.kind} {namespace}/{unit.name}")
        else:
            logger.info(f"{unit.kind} {namespace}/{unit.name} still terminating, create postponed")
            return False
    else:
        raise ValueError(f"unknown mutation action {mutation.action!r}")
    return True


def apply_plan(gateway, namespace, plan):
    """Apply every mutation of ``plan`` in order, best effort.

    A failing mutation is logged and recorded; the rest of the plan still
    runs. The failed ones are retried on the next pass.
    """
    outcome = ApplyOutcome()
    for mutation in plan.mutations:
        try:
            done = apply_mutation(gateway, namespace, mutation)
        except OperatorError as e:
            logger.warning(f"Failed to {mutation.describe()} in {namespace}: {e}")
            outcome.failed.append((mutation, e))
            continue
        if done:
            outcome.applied.append(mutation)
        else:
            outcome.pending.append(mutation)
    return outcome


class ClusterReconciler:
    """Converges one RayCluster per call: resolve, collect, diff, apply, report."""

    def __init__(self, gateway, config=None):
        self.gateway = gateway
        self.config = config or OperatorConfig()

    def reconcile(self, key):
        namespace, name = crd.split_key(key)
        try:
            body = self.gateway.get(crd.CLUSTER_KIND, namespace, name)
        except NotFoundError:
            logger.info(f"RayCluster {key} is gone, owned units are garbage collected")
            return Result.gone()

        metadata = body.get("metadata") or {}
        if metadata.get("deletionTimestamp"):
            return self._reconcile_deletion(body)

        previous = body.get("status") or {}
        spec_hash = fingerprint(body.get("spec") or {})
        if previous.get("phase") == crd.PHASE_FAILED and previous.get("lastSpecHash") == spec_hash:
            logger.debug(f"RayCluster {key} is Failed, waiting for a spec change")
            return Result.done()

        try:
            cluster = ClusterSpec.from_resource(body, default_scheduler=self.config.batch_scheduler)
            desired = resolve(cluster)
        except ConfigurationError as e:
            logger.error(f"RayCluster {key} has an invalid spec: {e}")
            status = configuration_error_status(previous, e, spec_hash, metadata.get("generation"))
            persist_status(self.gateway, crd.CLUSTER_KIND, body, status)
            return Result.error(e)

        try:
            observed = collect(self.gateway, namespace, name, cluster.uid)
        except TransientError as e:
            record_error(self.gateway, crd.CLUSTER_KIND, body, previous, e)
            return Result.error(e)

        plan = build_plan(
            desired,
            observed,
            forced_upgrade=self.config.forced_cluster_upgrade,
            batch_size=self.config.upgrade_batch_size,
        )
        outcome = apply_plan(self.gateway, namespace, plan)
        if plan.mutations:
            logger.info(
                f"RayCluster {key}: {len(outcome.applied)} applied, {len(outcome.pending)} pending, "
                f"{len(outcome.failed)} failed, {len(plan.blocked)} blocked, {len(plan.deferred)} deferred"
            )

        status = derive_status(
            cluster,
            observed,
            plan,
            outcome,
            previous,
            grace_seconds=self.config.degraded_grace_seconds,
            failure_budget=self.config.failure_budget,
        )
        # The plan is already applied; a lost status write is re-derived
        # from observed state on the next pass.
        persist_status(self.gateway, crd.CLUSTER_KIND, body, status)

        if status["phase"] == crd.PHASE_FAILED:
            return Result.error(ConvergenceError(status["message"]))
        if outcome.failed:
            return Result.error(TransientError(
                f"{len(outcome.failed)} mutations failed for RayCluster {key}"
            ))
        if outcome.pending or plan.waiting:
            return Result.requeue_after(TERMINATION_POLL_SECONDS)
        if plan.mutations or plan.deferred or status["phase"] != crd.PHASE_RUNNING:
            return Result.requeue_after(self.config.requeue_seconds)
        return Result.done()

    def _reconcile_deletion(self, body):
        """Delete every unit owned by a RayCluster that is being deleted."""
        metadata = body["metadata"]
        namespace, name = metadata.get("namespace"), metadata["name"]
        observed = collect(self.gateway, namespace, name, metadata.get("uid"))
        remaining = 0
        for unit in observed.values():
            if unit.terminating:
                remaining += 1
                continue
            try:
                self.gateway.delete(unit.kind, namespace, unit.name)
            except OperatorError as e:
                logger.warning(f"Failed to delete {unit.kind} {namespace}/{unit.name}: {e}")
                remaining += 1
        status = deleting_status(body.get("status"), remaining)
        try:
            persist_status(self.gateway, crd.CLUSTER_KIND, body, status)
        except NotFoundError:
            return Result.gone()
        if remaining:
            return Result.requeue_after(TERMINATION_POLL_SECONDS)
        return Result.done()
