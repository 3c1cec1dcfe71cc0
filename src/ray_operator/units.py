"""Native units and their content fingerprints."""

import copy
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from . import crd

# Paths whose content can be changed on a live object. Everything else in a
# unit body forces a delete-then-create when it drifts.
_COMMON_MUTABLE = [("metadata", "labels"), ("metadata", "annotations")]

MUTABLE_PATHS = {
    "Pod": _COMMON_MUTABLE,
    "Service": _COMMON_MUTABLE + [("spec", "selector")],
    "PodGroup": _COMMON_MUTABLE
    + [("spec", "minMember"), ("spec", "minResources"), ("spec", "priorityClassName")],
    "ServiceAccount": _COMMON_MUTABLE,
    "Role": _COMMON_MUTABLE + [("rules",)],
    "RoleBinding": _COMMON_MUTABLE + [("subjects",)],
}

# Dict-valued paths that are merged into the live object instead of replaced,
# so keys added by other controllers survive an in-place update.
_MERGED_PATHS = {("metadata", "labels"), ("metadata", "annotations")}

_HASH_ANNOTATIONS = (crd.ANNOTATION_SPEC_HASH, crd.ANNOTATION_MUTABLE_HASH)

# Annotations that force a recreate when they change.
_RECREATE_ANNOTATIONS = (crd.ANNOTATION_HEAD_HASH,)


def fingerprint(obj):
    """Stable content hash of a JSON-compatible value."""
    encoded = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


def _lookup(body, path):
    current = body
    for part in path:
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _assign(body, path, value):
    current = body
    for part in path[:-1]:
        current = current.setdefault(part, {})
    current[path[-1]] = value


def _remove(body, path):
    current = body
    for part in path[:-1]:
        if not isinstance(current, dict) or part not in current:
            return
        current = current[part]
    if isinstance(current, dict):
        current.pop(path[-1], None)


def mutable_content(kind, body):
    content = {}
    for path in MUTABLE_PATHS.get(kind, _COMMON_MUTABLE):
        value = copy.deepcopy(_lookup(body, path))
        if path == ("metadata", "annotations"):
            skipped = _HASH_ANNOTATIONS + _RECREATE_ANNOTATIONS
            value = {k: v for k, v in (value or {}).items() if k not in skipped}
        content["/".join(path)] = value
    return content


def immutable_content(kind, body):
    content = copy.deepcopy(body)
    content.pop("status", None)
    metadata = body.get("metadata") or {}
    content["metadata"] = {"name": metadata.get("name")}
    annotations = metadata.get("annotations") or {}
    pinned = {k: annotations[k] for k in _RECREATE_ANNOTATIONS if k in annotations}
    if pinned:
        content["metadata"]["annotations"] = pinned
    for path in MUTABLE_PATHS.get(kind, _COMMON_MUTABLE):
        if path[0] != "metadata":
            _remove(content, path)
    return content


@dataclass
class Unit:
    """One native object, desired or observed, owned by a cluster."""

    kind: str
    name: str
    role: str
    group: Optional[str] = None
    body: Dict[str, Any] = field(default_factory=dict)
    spec_hash: Optional[str] = None
    mutable_hash: Optional[str] = None

    @property
    def identity(self):
        return (self.kind, self.name)

    @property
    def metadata(self):
        return self.body.setdefault("metadata", {})

    @property
    def terminating(self):
        return bool(self.metadata.get("deletionTimestamp"))

    @property
    def resource_version(self):
        return self.metadata.get("resourceVersion")

    def seal(self):
        """Compute both fingerprints and stamp them onto the body."""
        self.spec_hash = fingerprint(immutable_content(self.kind, self.body))
        self.mutable_hash = fingerprint(mutable_content(self.kind, self.body))
        annotations = self.metadata.setdefault("annotations", {})
        annotations[crd.ANNOTATION_SPEC_HASH] = self.spec_hash
        annotations[crd.ANNOTATION_MUTABLE_HASH] = self.mutable_hash
        return self

    @classmethod
    def from_observed(cls, kind, body):
        metadata = body.get("metadata") or {}
        labels = metadata.get("labels") or {}
        annotations = metadata.get("annotations") or {}
        return cls(
            kind=kind,
            name=metadata.get("name"),
            role=labels.get(crd.LABEL_ROLE, ""),
            group=labels.get(crd.LABEL_GROUP),
            body=body,
            spec_hash=annotations.get(crd.ANNOTATION_SPEC_HASH),
            mutable_hash=annotations.get(crd.ANNOTATION_MUTABLE_HASH),
        )

    # Pod health

    @property
    def pod_phase(self):
        if self.kind != "Pod":
            return None
        return (self.body.get("status") or {}).get("phase")

    @property
    def ready(self):
        """Non-pod units count as ready once they exist."""
        if self.kind != "Pod":
            return not self.terminating
        status = self.body.get("status") or {}
        if status.get("phase") != "Running" or self.terminating:
            return False
        return any(
            c.get("type") == "Ready" and c.get("status") == "True"
            for c in (status.get("conditions") or [])
        )

    @property
    def restart_count(self):
        status = self.body.get("status") or {}
        return sum(cs.get("restartCount", 0) for cs in (status.get("containerStatuses") or []))


def merge_mutable(observed, desired):
    """Observed body with the desired unit's mutable content applied."""
    body = copy.deepcopy(observed.body)
    body.pop("status", None)
    for path in MUTABLE_PATHS.get(desired.kind, _COMMON_MUTABLE):
        value = copy.deepcopy(_lookup(desired.body, path))
        if path in _MERGED_PATHS:
            merged = dict(_lookup(body, path) or {})
            merged.update(value or {})
            _assign(body, path, merged)
        elif value is None:
            _remove(body, path)
        else:
            _assign(body, path, value)
    return body
