"""Volcano gang scheduling through PodGroup objects."""

import logging
import re
from collections import defaultdict
from decimal import Decimal

from kubernetes.utils.quantity import parse_quantity

from .. import crd
from ..errors import ConfigurationError
from ..templates import unit_metadata
from ..units import Unit
from .interface import BatchScheduler

logger = logging.getLogger(__name__)

GROUP = "scheduling.volcano.sh"
VERSION = "v1beta1"
PLURAL = "podgroups"
KIND = "PodGroup"

SCHEDULER_NAME = "volcano"
GROUP_NAME_ANNOTATION = "scheduling.k8s.io/group-name"
QUEUE_LABEL = "volcano.sh/queue-name"

_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


def pod_group_name(cluster_name):
    return f"ray-{cluster_name}-pg"


def _container_requests(template):
    totals = defaultdict(Decimal)
    for container in (template.get("spec") or {}).get("containers") or []:
        resources = container.get("resources") or {}
        # Requests default to limits when only limits are declared.
        requests = dict(resources.get("limits") or {})
        requests.update(resources.get("requests") or {})
        for resource, quantity in requests.items():
            totals[resource] += parse_quantity(quantity)
    return totals


def _format_quantity(value):
    if value == value.to_integral_value():
        return str(int(value))
    return str(value.normalize())


def min_resources(cluster):
    """Summed requests of the head and every group's minimum workers."""
    totals = _container_requests(cluster.head.template)
    for group in cluster.worker_groups:
        for resource, quantity in _container_requests(group.template).items():
            totals[resource] += quantity * group.min_replicas
    return {resource: _format_quantity(q) for resource, q in sorted(totals.items())}


class VolcanoBatchScheduler(BatchScheduler):
    name = "volcano"

    def validate(self, cluster):
        policy = cluster.batch_scheduler
        for field_name, value in (("queue", policy.queue), ("priorityClassName", policy.priority_class_name)):
            if value is not None and not _DNS_LABEL.match(value):
                raise ConfigurationError(
                    f"volcano: {field_name} {value!r} is not a valid DNS-1123 name"
                )

    def placement_unit(self, cluster):
        policy = cluster.batch_scheduler
        name = pod_group_name(cluster.name)
        spec = {
            "minMember": 1 + sum(group.min_replicas for group in cluster.worker_groups),
            "minResources": min_resources(cluster),
        }
        if policy.queue:
            spec["queue"] = policy.queue
        if policy.priority_class_name:
            spec["priorityClassName"] = policy.priority_class_name

        body = {
            "apiVersion": f"{GROUP}/{VERSION}",
            "kind": KIND,
            "metadata": unit_metadata(cluster, name, crd.ROLE_PLACEMENT),
            "spec": spec,
        }
        logger.debug(f"PodGroup {name} requires {spec['minMember']} members")
        return Unit(kind=KIND, name=name, role=crd.ROLE_PLACEMENT, body=body)

    def annotate(self, unit, cluster, placement):
        metadata = unit.metadata
        metadata.setdefault("annotations", {})[GROUP_NAME_ANNOTATION] = placement.name
        if cluster.batch_scheduler.queue:
            metadata.setdefault("labels", {})[QUEUE_LABEL] = cluster.batch_scheduler.queue
        unit.body.setdefault("spec", {})["schedulerName"] = SCHEDULER_NAME
        return unit
