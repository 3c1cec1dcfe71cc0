"""Desired-state resolution: RayCluster spec to the native units it implies.

Resolution is a pure function of the spec. It never looks at observed state:
worker cardinality comes from ``replicas`` and replica reconciliation happens
in the diff engine.
"""

import logging
from collections import OrderedDict

from . import batchscheduler, crd
from .templates import (
    build_autoscaler_rbac,
    build_head_pod,
    build_head_service,
    build_worker_pod,
)

logger = logging.getLogger(__name__)


def worker_indices(cluster, group):
    """Indices of the desired workers of ``group``.

    The first ``replicas`` indices, skipping any whose pod is listed in the
    group's ``workersToDelete`` so that a targeted scale-down removes exactly
    those pods.
    """
    excluded = set(group.workers_to_delete)
    indices = []
    index = 0
    while len(indices) < group.replicas:
        if crd.worker_name(cluster.name, group.name, index) not in excluded:
            indices.append(index)
        index += 1
    return indices


def resolve(cluster):
    """Return the desired units of ``cluster`` keyed by identity.

    Raises ConfigurationError, before producing anything, when the cluster's
    gang-scheduling policy is unknown or rejected by its plugin.
    """
    scheduler = None
    placement = None
    if cluster.batch_scheduler:
        scheduler = batchscheduler.get(cluster.batch_scheduler.name)
        scheduler.validate(cluster)
        placement = scheduler.placement_unit(cluster)

    units = []
    if placement is not None:
        units.append(placement)
    if cluster.enable_autoscaling:
        units.extend(build_autoscaler_rbac(cluster))

    head = build_head_pod(cluster)
    units.append(head)
    units.append(build_head_service(cluster, head))

    for group in cluster.worker_groups:
        for index in worker_indices(cluster, group):
            units.append(build_worker_pod(cluster, group, index))

    desired = OrderedDict()
    for unit in units:
        if scheduler is not None and unit.kind == "Pod":
            scheduler.annotate(unit, cluster, placement)
        if unit.role == crd.ROLE_WORKER:
            # The head is sealed before any worker. A new head hash makes
            # every worker drift until it has been replaced too.
            unit.metadata.setdefault("annotations", {})[crd.ANNOTATION_HEAD_HASH] = head.spec_hash
        desired[unit.identity] = unit.seal()

    logger.debug(f"Resolved {len(desired)} units for RayCluster {cluster.namespace}/{cluster.name}")
    return desired
