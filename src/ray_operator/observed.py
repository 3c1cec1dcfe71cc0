"""Observed-state collection: every native unit a RayCluster owns."""

import logging
from collections import OrderedDict

from . import crd
from .errors import NotFoundError
from .k8s import UNIT_KINDS
from .units import Unit

logger = logging.getLogger(__name__)


def is_owned_by(body, uid):
    refs = (body.get("metadata") or {}).get("ownerReferences") or []
    return any(ref.get("uid") == uid for ref in refs)


def collect(gateway, namespace, cluster_name, uid):
    """Return the units owned by the cluster with ``uid``, keyed by identity.

    The cluster label only narrows the list call; ownership is decided by the
    owner reference. Reads may lag behind recent writes and callers must
    tolerate a just-created unit being absent.
    """
    observed = OrderedDict()
    for kind in UNIT_KINDS:
        try:
            items = gateway.list(kind, namespace, labels={crd.LABEL_CLUSTER: cluster_name})
        except NotFoundError:
            # The kind is not served by this API server (e.g. no Volcano CRDs).
            logger.debug(f"{kind} is not served, treating as empty")
            continue
        for body in items:
            if not is_owned_by(body, uid):
                continue
            unit = Unit.from_observed(kind, body)
            observed[unit.identity] = unit
    return observed
