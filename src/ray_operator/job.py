"""RayJob orchestration: ephemeral cluster, submission, completion, teardown."""

import copy
import logging
from uuid import uuid4

from . import crd
from .config import OperatorConfig
from .errors import AlreadyExistsError, ConfigurationError, NotFoundError, TransientError
from .models import JobSpec
from .status import (
    CONFIG_VALID,
    format_time,
    parse_time,
    persist_status,
    record_error,
    set_condition,
    utcnow,
)
from .submission import FAILED, RUNNING, SUCCEEDED, JobSubmissionClient, dashboard_address
from .templates import build_cluster_resource
from .scheduling import Result

logger = logging.getLogger(__name__)

CLEANUP_POLL_SECONDS = 2.0


class JobReconciler:
    """Drives a RayJob through PendingClusterCreation .. Complete."""

    def __init__(self, gateway, config=None, client_factory=JobSubmissionClient):
        self.gateway = gateway
        self.config = config or OperatorConfig()
        self.client_factory = client_factory

    def reconcile(self, key):
        namespace, name = crd.split_key(key)
        try:
            body = self.gateway.get(crd.JOB_KIND, namespace, name)
        except NotFoundError:
            logger.info(f"RayJob {key} is gone")
            return Result.gone()
        if (body.get("metadata") or {}).get("deletionTimestamp"):
            return Result.done()

        status = copy.deepcopy(body.get("status") or {})
        status.setdefault("conditions", [])
        now = utcnow()

        try:
            job = JobSpec.from_resource(body)
        except ConfigurationError as e:
            logger.error(f"RayJob {key} has an invalid spec: {e}")
            set_condition(status["conditions"], CONFIG_VALID, False, e.reason, e.message, now)
            status.setdefault("jobDeploymentStatus", crd.JOB_PENDING_CLUSTER)
            status["message"] = e.message
            persist_status(self.gateway, crd.JOB_KIND, body, status)
            return Result.error(e)
        set_condition(status["conditions"], CONFIG_VALID, True, "Valid", "", now)

        phase = status.get("jobDeploymentStatus") or crd.JOB_PENDING_CLUSTER
        status["jobDeploymentStatus"] = phase
        status["rayClusterName"] = job.cluster_name
        handler = {
            crd.JOB_PENDING_CLUSTER: self._pending_cluster,
            crd.JOB_CLUSTER_READY: self._submit,
            crd.JOB_SUBMITTED: self._poll,
            crd.JOB_RUNNING: self._poll,
            crd.JOB_SUCCEEDED: self._finished,
            crd.JOB_FAILED: self._finished,
            crd.JOB_CLEANING_UP: self._cleanup,
            crd.JOB_COMPLETE: lambda job, status, now: Result.done(),
        }.get(phase)
        if handler is None:
            logger.warning(f"RayJob {key} has unknown deployment status {phase!r}")
            return Result.done()

        try:
            result = handler(job, status, now)
        except TransientError as e:
            record_error(self.gateway, crd.JOB_KIND, body, status, e)
            return Result.error(e)

        persist_status(self.gateway, crd.JOB_KIND, body, status)
        if status["jobDeploymentStatus"] != phase:
            logger.info(f"RayJob {key}: {phase} -> {status['jobDeploymentStatus']}")
        return result

    def _get_cluster(self, job):
        try:
            return self.gateway.get(crd.CLUSTER_KIND, job.namespace, job.cluster_name)
        except NotFoundError:
            return None

    def _finish(self, status, outcome, message, now):
        status["jobDeploymentStatus"] = outcome
        status["outcome"] = outcome
        status["endTime"] = format_time(now)
        status["message"] = message
        return Result.requeue_after(0)

    def _pending_cluster(self, job, status, now):
        cluster = self._get_cluster(job)
        if cluster is None:
            if not job.owns_cluster:
                status["message"] = f"waiting for RayCluster {job.cluster_name}"
                return Result.requeue_after(self.config.requeue_seconds)
            body = build_cluster_resource(
                job.cluster_name, job.namespace, job.cluster_spec,
                crd.JOB_KIND, job.name, job.uid, labels={crd.LABEL_JOB: job.name},
            )
            try:
                self.gateway.create(crd.CLUSTER_KIND, job.namespace, body)
            except AlreadyExistsError:
                logger.info(f"RayCluster {job.namespace}/{job.cluster_name} already exists")
            logger.info(f"Created RayCluster {job.namespace}/{job.cluster_name} for RayJob {job.name}")
            status["message"] = f"creating RayCluster {job.cluster_name}"
            return Result.requeue_after(self.config.requeue_seconds)

        cluster_status = cluster.get("status") or {}
        cluster_phase = cluster_status.get("phase")
        if cluster_phase == crd.PHASE_RUNNING:
            status["jobDeploymentStatus"] = crd.JOB_CLUSTER_READY
            status["dashboardURL"] = dashboard_address(cluster_status)
            status["message"] = f"RayCluster {job.cluster_name} is running"
            return Result.requeue_after(0)
        if cluster_phase == crd.PHASE_FAILED:
            return self._finish(
                status, crd.JOB_FAILED, f"RayCluster {job.cluster_name} failed: {cluster_status.get('message')}", now
            )
        status["message"] = f"RayCluster {job.cluster_name} is {cluster_phase or 'initializing'}"
        return Result.requeue_after(self.config.requeue_seconds)

    def _submit(self, job, status, now):
        job_id = job.job_id or status.get("jobId")
        if not job_id:
            # Persist the id before submitting so a retry reuses it.
            status["jobId"] = f"{job.name}-{uuid4().hex[:8]}"
            return Result.requeue_after(0)
        status["jobId"] = job_id

        client = self.client_factory(status["dashboardURL"])
        try:
            client.submit(job.entrypoint, job_id, runtime_env=job.runtime_env, metadata=job.metadata)
        except ConfigurationError as e:
            return self._finish(status, crd.JOB_FAILED, e.message, now)
        status["jobDeploymentStatus"] = crd.JOB_SUBMITTED
        status["startTime"] = format_time(now)
        status["message"] = f"job {job_id} submitted"
        return Result.requeue_after(self.config.requeue_seconds)

    def _poll(self, job, status, now):
        if self._get_cluster(job) is None:
            return self._finish(status, crd.JOB_FAILED, f"RayCluster {job.cluster_name} disappeared", now)
        client = self.client_factory(status["dashboardURL"])
        state, message = client.poll(status["jobId"])
        if state == RUNNING:
            status["jobDeploymentStatus"] = crd.JOB_RUNNING
            status["jobStatus"] = "RUNNING"
        elif state == SUCCEEDED:
            status["jobStatus"] = "SUCCEEDED"
            return self._finish(status, crd.JOB_SUCCEEDED, message or "job succeeded", now)
        elif state == FAILED:
            status["jobStatus"] = "FAILED"
            return self._finish(status, crd.JOB_FAILED, message or "job failed", now)
        return Result.requeue_after(self.config.requeue_seconds)

    def _finished(self, job, status, now):
        if not (job.shutdown_after_finish and job.owns_cluster):
            status["jobDeploymentStatus"] = crd.JOB_COMPLETE
            return Result.done()

        finished_at = parse_time(status.get("endTime")) or now
        elapsed = (now - finished_at).total_seconds()
        if elapsed < job.ttl_seconds_after_finished:
            return Result.requeue_after(job.ttl_seconds_after_finished - elapsed)
        status["jobDeploymentStatus"] = crd.JOB_CLEANING_UP
        return Result.requeue_after(0)

    def _cleanup(self, job, status, now):
        if self._get_cluster(job) is None:
            logger.info(f"RayCluster {job.namespace}/{job.cluster_name} deleted")
            status["jobDeploymentStatus"] = crd.JOB_COMPLETE
            status["message"] = f"job {status.get('outcome', '').lower()}, cluster deleted"
            return Result.done()
        self.gateway.delete(crd.CLUSTER_KIND, job.namespace, job.cluster_name)
        return Result.requeue_after(CLEANUP_POLL_SECONDS)
