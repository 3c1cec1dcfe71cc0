"""Tests for mutation planning."""

import copy

from fakes import cluster_body
from ray_operator.diff import (
    CREATE,
    DELETE,
    RECREATE,
    REASON_DRIFT,
    REASON_HEAD_RECREATED,
    REASON_REPAIR,
    UPDATE,
    plan,
)
from ray_operator.models import ClusterSpec
from ray_operator.resolver import resolve
from ray_operator.units import Unit


def desired_for(**kwargs):
    return resolve(ClusterSpec.from_resource(cluster_body(uid="uid-1", **kwargs)))


def desired_from(body):
    return resolve(ClusterSpec.from_resource(body))


def observe(desired, ready=False):
    """What the API server would return after creating ``desired``."""
    observed = {}
    for identity, unit in desired.items():
        body = copy.deepcopy(unit.body)
        body["metadata"]["uid"] = f"uid-{unit.name}"
        if unit.kind == "Pod" and ready:
            body["status"] = {"phase": "Running", "conditions": [{"type": "Ready", "status": "True"}]}
        observed[identity] = Unit.from_observed(unit.kind, body)
    return observed


def with_worker_image(image):
    body = cluster_body(uid="uid-1")
    body["spec"]["workerGroupSpecs"][0]["template"]["spec"]["containers"][0]["image"] = image
    return body


def with_head_image(image):
    body = cluster_body(uid="uid-1")
    body["spec"]["headGroupSpec"]["template"]["spec"]["containers"][0]["image"] = image
    return body


def names(mutations, action=None):
    return [m.unit.name for m in mutations if action is None or m.action == action]


class TestPairing:
    """Creates, deletes and no-ops from identity pairing."""

    def test_empty_observed_creates_everything(self):
        desired = desired_for()
        result = plan(desired, {})
        assert [m.action for m in result.mutations] == [CREATE] * 4
        assert names(result.mutations) == ["demo-head", "demo-head-svc", "demo-worker-small-0", "demo-worker-small-1"]

    def test_converged_state_plans_nothing(self):
        desired = desired_for()
        result = plan(desired, observe(desired_for(), ready=True))
        assert result.empty
        assert result.mutations == []

    def test_scale_up_creates_only_new_workers(self):
        result = plan(desired_for(replicas=5), observe(desired_for(replicas=3), ready=True))
        assert [m.action for m in result.mutations] == [CREATE, CREATE]
        assert names(result.mutations) == ["demo-worker-small-3", "demo-worker-small-4"]

    def test_scale_down_deletes_highest_indices(self):
        result = plan(desired_for(replicas=1), observe(desired_for(replicas=3), ready=True))
        assert [m.action for m in result.mutations] == [DELETE, DELETE]
        assert names(result.mutations) == ["demo-worker-small-1", "demo-worker-small-2"]

    def test_workers_to_delete_removes_named_pod(self):
        body = cluster_body(uid="uid-1", replicas=2)
        body["spec"]["workerGroupSpecs"][0]["scaleStrategy"] = {"workersToDelete": ["demo-worker-small-0"]}
        result = plan(desired_from(body), observe(desired_for(replicas=3), ready=True))
        assert names(result.mutations) == ["demo-worker-small-0"]
        assert result.mutations[0].action == DELETE

    def test_deletes_come_first(self):
        body = cluster_body(uid="uid-1", replicas=1)
        extra = copy.deepcopy(body["spec"]["workerGroupSpecs"][0])
        extra["groupName"] = "big"
        body["spec"]["workerGroupSpecs"].append(extra)
        result = plan(desired_from(body), observe(desired_for(replicas=2), ready=True))
        assert [m.action for m in result.mutations] == [DELETE, CREATE]
        assert names(result.mutations) == ["demo-worker-small-1", "demo-worker-big-0"]

    def test_terminating_unit_waits(self):
        desired = desired_for()
        observed = observe(desired)
        observed[("Pod", "demo-head")].body["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
        result = plan(desired, observed)
        assert result.mutations == []
        assert [u.name for u in result.waiting] == ["demo-head"]
        assert not result.empty

    def test_terminating_undesired_unit_not_deleted_again(self):
        observed = observe(desired_for(replicas=3))
        observed[("Pod", "demo-worker-small-2")].body["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
        result = plan(desired_for(replicas=2), observed)
        assert result.mutations == []


class TestChanges:
    """Fingerprint comparison of paired units."""

    def test_mutable_change_updates_in_place(self):
        body = cluster_body(uid="uid-1")
        body["spec"]["workerGroupSpecs"][0]["template"]["metadata"] = {"labels": {"team": "ml"}}
        result = plan(desired_from(body), observe(desired_for(), ready=True))
        assert [m.action for m in result.mutations] == [UPDATE, UPDATE]
        assert names(result.mutations) == ["demo-worker-small-0", "demo-worker-small-1"]

    def test_failed_pod_is_recreated(self):
        desired = desired_for()
        observed = observe(desired, ready=True)
        observed[("Pod", "demo-worker-small-1")].body["status"] = {"phase": "Failed"}
        result = plan(desired, observed)
        assert [(m.action, m.unit.name, m.reason) for m in result.mutations] == [
            (RECREATE, "demo-worker-small-1", REASON_REPAIR)
        ]

    def test_repair_is_not_guarded(self):
        """Replacing a dead pod is allowed while the head serves."""
        desired = desired_for()
        observed = observe(desired, ready=True)
        observed[("Pod", "demo-worker-small-0")].body["status"] = {"phase": "Succeeded"}
        result = plan(desired, observed)
        assert result.blocked == []
        assert names(result.mutations, RECREATE) == ["demo-worker-small-0"]

    def test_worker_drift_recreates_when_not_serving(self):
        result = plan(desired_from(with_worker_image("ray:2.10")), observe(desired_for(), ready=False))
        assert [(m.action, m.reason) for m in result.mutations] == [(RECREATE, REASON_DRIFT)] * 2
        assert result.upgrading


class TestUpgradeGuard:
    """Disruptive recreates while the head pod is ready."""

    def test_drift_blocked_while_serving(self):
        result = plan(desired_from(with_head_image("ray:2.10")), observe(desired_for(), ready=True))
        assert result.mutations == []
        assert names(result.blocked) == ["demo-head", "demo-worker-small-0", "demo-worker-small-1"]
        assert result.serving
        assert not result.upgrading

    def test_forced_head_recreate_cascades_to_workers(self):
        result = plan(
            desired_from(with_head_image("ray:2.10")),
            observe(desired_for(), ready=True),
            forced_upgrade=True,
        )
        assert result.blocked == []
        assert [(m.unit.name, m.reason) for m in result.mutations] == [
            ("demo-head", REASON_DRIFT),
            ("demo-worker-small-0", REASON_HEAD_RECREATED),
            ("demo-worker-small-1", REASON_HEAD_RECREATED),
        ]
        assert all(m.action == RECREATE for m in result.mutations)

    def test_non_disruptive_changes_pass_while_serving(self):
        """Scaling and in-place updates are not held back with a blocked upgrade."""
        body = with_worker_image("ray:2.10")
        body["spec"]["workerGroupSpecs"][0]["replicas"] = 3
        result = plan(desired_from(body), observe(desired_for(), ready=True))
        assert names(result.blocked) == ["demo-worker-small-0", "demo-worker-small-1"]
        assert [(m.action, m.unit.name) for m in result.mutations] == [(CREATE, "demo-worker-small-2")]


class TestBatching:
    def test_batch_size_limits_worker_upgrades(self):
        desired = desired_from(cluster_body(uid="uid-1", replicas=3))
        body = with_worker_image("ray:2.10")
        body["spec"]["workerGroupSpecs"][0]["replicas"] = 3
        result = plan(desired_from(body), observe(desired, ready=False), batch_size=1)
        assert names(result.mutations) == ["demo-worker-small-0"]
        assert names(result.deferred) == ["demo-worker-small-1", "demo-worker-small-2"]
        assert result.upgrading

    def test_zero_batch_size_upgrades_all(self):
        result = plan(desired_from(with_worker_image("ray:2.10")), observe(desired_for(), ready=False), batch_size=0)
        assert len(result.mutations) == 2
        assert result.deferred == []

    def test_creates_not_counted_against_batch(self):
        body = with_worker_image("ray:2.10")
        body["spec"]["workerGroupSpecs"][0]["replicas"] = 4
        result = plan(desired_from(body), observe(desired_for(), ready=False), batch_size=1)
        assert [(m.action, m.unit.name) for m in result.mutations] == [
            (RECREATE, "demo-worker-small-0"),
            (CREATE, "demo-worker-small-2"),
            (CREATE, "demo-worker-small-3"),
        ]
        assert names(result.deferred) == ["demo-worker-small-1"]


def test_head_serving_requires_ready_head():
    desired = desired_for()
    observed = observe(desired, ready=False)
    assert not plan(desired, observed).serving
    observed[("Pod", "demo-head")].body["status"] = {
        "phase": "Running",
        "conditions": [{"type": "Ready", "status": "True"}],
    }
    assert plan(desired, observed).serving
