"""Tests for the cluster status state machine and status persistence."""

from datetime import timedelta

import pytest

from fakes import cluster_body
from ray_operator import crd
from ray_operator.diff import Mutation, Plan, RECREATE, REASON_DRIFT
from ray_operator.errors import ConfigurationError, ConflictError, TransientError
from ray_operator.models import ClusterSpec
from ray_operator.reconcile import ApplyOutcome
from ray_operator.resolver import resolve
from ray_operator.status import (
    HEAD_READY,
    RECONCILE_SUCCESS,
    UNITS_READY,
    UPGRADE_BLOCKED,
    configuration_error_status,
    derive_status,
    format_time,
    get_condition,
    persist_status,
    set_condition,
    utcnow,
)
from ray_operator.units import Unit

NOW = utcnow().replace(microsecond=0)


@pytest.fixture
def spec():
    return ClusterSpec.from_resource(cluster_body(uid="uid-1"))


def observed_units(spec, ready_workers=2, head_ready=True):
    observed = {}
    workers = 0
    for identity, unit in resolve(spec).items():
        body = dict(unit.body)
        if unit.kind == "Pod":
            ready = head_ready if unit.role == crd.ROLE_HEAD else workers < ready_workers
            if unit.role == crd.ROLE_WORKER:
                workers += 1
            body["status"] = {
                "phase": "Running",
                "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
                "containerStatuses": [{"name": "ray", "restartCount": 1}],
            }
        observed[identity] = Unit.from_observed(unit.kind, body)
    return observed


def derive(spec, observed, previous=None, plan=None, outcome=None, now=NOW, **kwargs):
    return derive_status(spec, observed, plan or Plan(), outcome or ApplyOutcome(), previous, now=now, **kwargs)


class TestSetCondition:
    def test_transition_time_moves_only_on_flip(self):
        conditions = []
        set_condition(conditions, HEAD_READY, False, "HeadPodNotReady", "", NOW)
        later = NOW + timedelta(minutes=5)
        set_condition(conditions, HEAD_READY, False, "StillNotReady", "x", later)
        condition = get_condition(conditions, HEAD_READY)
        assert condition["lastTransitionTime"] == format_time(NOW)
        assert condition["reason"] == "StillNotReady"

        set_condition(conditions, HEAD_READY, True, "HeadPodReady", "", later)
        assert condition["lastTransitionTime"] == format_time(later)
        assert condition["status"] == "True"
        assert len(conditions) == 1


class TestPhase:
    """Phase derivation precedence."""

    def test_initializing_without_pods(self, spec):
        status = derive(spec, {})
        assert status["phase"] == crd.PHASE_INITIALIZING
        assert status["availableWorkerReplicas"] == 0
        assert status["desiredWorkerReplicas"] == 2

    def test_running_when_all_ready(self, spec):
        status = derive(spec, observed_units(spec))
        assert status["phase"] == crd.PHASE_RUNNING
        assert status["availableWorkerReplicas"] == 2
        assert status["restartCount"] == 3
        assert status["head"]["podName"] == "demo-head"
        assert status["endpoints"]["dashboard"] == "demo-head-svc.default.svc.cluster.local:8265"
        assert get_condition(status["conditions"], UNITS_READY)["status"] == "True"

    def test_pending_before_first_ready(self, spec):
        status = derive(spec, observed_units(spec, ready_workers=1), previous={"phase": crd.PHASE_INITIALIZING})
        assert status["phase"] == crd.PHASE_PENDING
        assert "group small" in status["message"]

    def test_running_kept_within_grace(self, spec):
        previous = derive(spec, observed_units(spec))
        status = derive(spec, observed_units(spec, ready_workers=1), previous=previous, now=NOW + timedelta(seconds=30))
        assert status["phase"] == crd.PHASE_RUNNING
        assert get_condition(status["conditions"], UNITS_READY)["status"] == "False"

    def test_degraded_after_grace(self, spec):
        previous = derive(spec, observed_units(spec))
        unhealthy = derive(spec, observed_units(spec, ready_workers=1), previous=previous, now=NOW + timedelta(seconds=30))
        status = derive(
            spec, observed_units(spec, ready_workers=1), previous=unhealthy,
            now=NOW + timedelta(seconds=30 + 601),
        )
        assert status["phase"] == crd.PHASE_DEGRADED

    def test_recovers_to_running(self, spec):
        previous = {"phase": crd.PHASE_DEGRADED, "lastSpecHash": spec.spec_hash}
        assert derive(spec, observed_units(spec), previous=previous)["phase"] == crd.PHASE_RUNNING

    def test_upgrading_while_recreates_in_flight(self, spec):
        desired = resolve(spec)
        head = desired[("Pod", "demo-head")]
        plan = Plan(mutations=[Mutation(RECREATE, head, head, REASON_DRIFT)])
        status = derive(spec, observed_units(spec), plan=plan)
        assert status["phase"] == crd.PHASE_UPGRADING

    def test_blocked_upgrade_reported(self, spec):
        desired = resolve(spec)
        head = desired[("Pod", "demo-head")]
        plan = Plan(blocked=[Mutation(RECREATE, head, head, REASON_DRIFT)], serving=True)
        status = derive(spec, observed_units(spec), plan=plan)
        blocked = get_condition(status["conditions"], UPGRADE_BLOCKED)
        assert blocked["status"] == "True"
        assert "demo-head" in blocked["message"]
        assert status["phase"] == crd.PHASE_RUNNING


class TestFailureBudget:
    def _failed_outcome(self, spec):
        unit = resolve(spec)[("Pod", "demo-head")]
        mutation = Mutation(RECREATE, unit, unit, REASON_DRIFT)
        return Plan(mutations=[mutation]), ApplyOutcome(failed=[(mutation, TransientError("boom"))])

    def test_counts_consecutive_failures(self, spec):
        plan, outcome = self._failed_outcome(spec)
        previous = {"failureCount": 1, "lastSpecHash": spec.spec_hash}
        status = derive(spec, {}, previous=previous, plan=plan, outcome=outcome, failure_budget=5)
        assert status["failureCount"] == 2
        assert get_condition(status["conditions"], RECONCILE_SUCCESS)["status"] == "False"
        assert status["phase"] != crd.PHASE_FAILED

    def test_failed_when_budget_exhausted(self, spec):
        plan, outcome = self._failed_outcome(spec)
        previous = {"failureCount": 4, "lastSpecHash": spec.spec_hash}
        status = derive(spec, observed_units(spec), previous=previous, plan=plan, outcome=outcome, failure_budget=5)
        assert status["phase"] == crd.PHASE_FAILED
        assert status["reason"] == "ConvergenceFailed"
        assert "boom" in status["message"]

    def test_spec_change_resets_counter(self, spec):
        plan, outcome = self._failed_outcome(spec)
        previous = {"failureCount": 4, "lastSpecHash": "old"}
        status = derive(spec, {}, previous=previous, plan=plan, outcome=outcome, failure_budget=5)
        assert status["failureCount"] == 1

    def test_success_resets_counter(self, spec):
        previous = {"failureCount": 4, "lastSpecHash": spec.spec_hash}
        assert derive(spec, observed_units(spec), previous=previous)["failureCount"] == 0


def test_configuration_error_keeps_phase():
    previous = {"phase": crd.PHASE_RUNNING, "conditions": []}
    status = configuration_error_status(previous, ConfigurationError("bad replicas"), "h", 3, now=NOW)
    assert status["phase"] == crd.PHASE_RUNNING
    assert status["reason"] == "InvalidSpec"
    assert status["observedGeneration"] == 3
    assert get_condition(status["conditions"], "ConfigValid")["status"] == "False"


class TestPersistStatus:
    def test_unchanged_status_not_written(self, gateway, cluster):
        gateway.set_status(crd.CLUSTER_KIND, "default", "demo", {"phase": "Running"})
        body = gateway.get(crd.CLUSTER_KIND, "default", "demo")
        writes = len(gateway.writes)
        persist_status(gateway, crd.CLUSTER_KIND, body, {"phase": "Running"})
        assert len(gateway.writes) == writes

    def test_conflict_retried_for_same_generation(self, gateway, cluster):
        gateway.fail("replace_status", crd.CLUSTER_KIND, "demo", error=ConflictError("stale"), times=1)
        persist_status(gateway, crd.CLUSTER_KIND, cluster, {"phase": "Pending"})
        assert gateway.get(crd.CLUSTER_KIND, "default", "demo")["status"] == {"phase": "Pending"}

    def test_conflict_raised_after_spec_change(self, gateway, cluster):
        stale = gateway.get(crd.CLUSTER_KIND, "default", "demo")
        body = gateway.get(crd.CLUSTER_KIND, "default", "demo")
        body["spec"]["workerGroupSpecs"][0]["replicas"] = 3
        gateway.replace(crd.CLUSTER_KIND, "default", "demo", body)
        with pytest.raises(ConflictError):
            persist_status(gateway, crd.CLUSTER_KIND, stale, {"phase": "Pending"})
        assert "status" not in gateway.get(crd.CLUSTER_KIND, "default", "demo")
