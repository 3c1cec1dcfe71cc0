"""Mutation planning: classify desired and observed units into an ordered plan."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import List, Optional

from . import crd
from .units import Unit

logger = logging.getLogger(__name__)

CREATE = "create"
UPDATE = "update"
RECREATE = "recreate"
DELETE = "delete"

# Mutation reasons
REASON_MISSING = "Missing"
REASON_UNDESIRED = "Undesired"
REASON_DRIFT = "SpecChanged"
REASON_MUTABLE = "MutableFieldsChanged"
REASON_REPAIR = "UnitFailed"
REASON_HEAD_RECREATED = "HeadRecreated"

ROLE_ORDER = {
    crd.ROLE_PLACEMENT: 0,
    crd.ROLE_RBAC: 1,
    crd.ROLE_HEAD: 2,
    crd.ROLE_ENDPOINT: 3,
    crd.ROLE_WORKER: 4,
}

# Recreating these while the cluster serves traffic interrupts it.
GUARDED_ROLES = (crd.ROLE_HEAD, crd.ROLE_WORKER, crd.ROLE_ENDPOINT)

_UPGRADE_REASONS = (REASON_DRIFT, REASON_HEAD_RECREATED)


@dataclass
class Mutation:
    action: str
    unit: Unit
    observed: Optional[Unit] = None
    reason: str = ""

    @property
    def identity(self):
        return self.unit.identity

    def describe(self):
        return f"{self.action} {self.unit.kind}/{self.unit.name} ({self.reason})"


@dataclass
class Plan:
    """Ordered mutations plus the changes held back this pass."""

    mutations: List[Mutation] = field(default_factory=list)
    blocked: List[Mutation] = field(default_factory=list)
    deferred: List[Mutation] = field(default_factory=list)
    waiting: List[Unit] = field(default_factory=list)
    serving: bool = False

    @property
    def empty(self):
        return not (self.mutations or self.deferred or self.waiting)

    @property
    def upgrading(self):
        """A delete-then-create upgrade is in flight or queued."""
        if self.deferred or self.waiting:
            return True
        return any(m.action == RECREATE and m.reason in _UPGRADE_REASONS for m in self.mutations)

    def actions(self, action):
        return [m for m in self.mutations if m.action == action]


def _sort_key(mutation):
    return (ROLE_ORDER.get(mutation.unit.role, len(ROLE_ORDER)), mutation.unit.kind, mutation.unit.name)


def _head_hash(unit):
    return (unit.metadata.get("annotations") or {}).get(crd.ANNOTATION_HEAD_HASH)


def _drift_reason(current, unit):
    """Workers started against an older head drift because the head was replaced."""
    if unit.role == crd.ROLE_WORKER and _head_hash(current) != _head_hash(unit):
        return REASON_HEAD_RECREATED
    return REASON_DRIFT


def _classify(desired, observed):
    changes = []
    waiting = []
    for identity, unit in desired.items():
        current = observed.get(identity)
        if current is None:
            changes.append(Mutation(CREATE, unit, reason=REASON_MISSING))
        elif current.terminating:
            # Name still held by the old object; create once it is gone.
            waiting.append(unit)
        elif current.spec_hash != unit.spec_hash:
            changes.append(Mutation(RECREATE, unit, current, _drift_reason(current, unit)))
        elif current.pod_phase in ("Failed", "Succeeded"):
            changes.append(Mutation(RECREATE, unit, current, REASON_REPAIR))
        elif current.mutable_hash != unit.mutable_hash:
            changes.append(Mutation(UPDATE, unit, current, REASON_MUTABLE))

    deletes = [
        Mutation(DELETE, current, current, REASON_UNDESIRED)
        for identity, current in observed.items()
        if identity not in desired and not current.terminating
    ]
    return changes, deletes, waiting


def _apply_batches(changes, batch_size):
    """Keep at most ``batch_size`` worker upgrades per group this pass."""
    if batch_size <= 0:
        return changes, []
    taken = defaultdict(int)
    kept, deferred = [], []
    for mutation in sorted(changes, key=_sort_key):
        is_upgrade = (
            mutation.action == RECREATE
            and mutation.reason in _UPGRADE_REASONS
            and mutation.unit.role == crd.ROLE_WORKER
        )
        if is_upgrade:
            if taken[mutation.unit.group] >= batch_size:
                deferred.append(mutation)
                continue
            taken[mutation.unit.group] += 1
        kept.append(mutation)
    return kept, deferred


def head_serving(observed):
    """The cluster serves traffic while its head pod is ready."""
    return any(u.role == crd.ROLE_HEAD and u.kind == "Pod" and u.ready for u in observed.values())


def plan(desired, observed, forced_upgrade=False, batch_size=0):
    """Build the mutation plan that converges ``observed`` towards ``desired``.

    Units are paired by identity. Unpaired desired units are created,
    unpaired observed units deleted, and paired units compared by
    fingerprint: mutable drift is updated in place, anything else is
    recreated. A worker whose group only changed size is never touched.

    Content-drift recreates of serving units are refused while the head is
    ready unless ``forced_upgrade`` is set. Workers carry the spec hash of
    their head, so a head recreate keeps every older worker drifting across
    passes until ``batch_size`` has let each of them through.
    """
    serving = head_serving(observed)
    changes, deletes, waiting = _classify(desired, observed)

    drift = [m for m in changes if m.action == RECREATE and m.reason in _UPGRADE_REASONS]
    blocked = []
    if drift and serving and not forced_upgrade:
        blocked = [m for m in drift if m.unit.role in GUARDED_ROLES]
        changes = [m for m in changes if m not in blocked]
        for mutation in blocked:
            logger.warning(
                f"Refusing disruptive {mutation.describe()} while the cluster is serving; "
                f"enable forced cluster upgrade to allow it"
            )

    changes, deferred = _apply_batches(changes, batch_size)

    result = Plan(
        mutations=sorted(deletes, key=_sort_key) + sorted(changes, key=_sort_key),
        blocked=sorted(blocked, key=_sort_key),
        deferred=deferred,
        waiting=sorted(waiting, key=lambda u: u.identity),
        serving=serving,
    )
    if result.mutations:
        logger.debug("Plan: " + ", ".join(m.describe() for m in result.mutations))
    return result
