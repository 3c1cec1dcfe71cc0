"""Ray dashboard job-submission client."""

import logging

import requests

from .errors import ConfigurationError, TransientError

logger = logging.getLogger(__name__)

RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"
UNKNOWN = "unknown"

# Ray job states to submission outcomes
_STATES = {
    "PENDING": RUNNING,
    "RUNNING": RUNNING,
    "SUCCEEDED": SUCCEEDED,
    "FAILED": FAILED,
    "STOPPED": FAILED,
}


class JobSubmissionClient:
    """Submit and poll jobs through a head node's dashboard HTTP API."""

    def __init__(self, address, session=None, timeout=10):
        if not address.startswith("http"):
            address = f"http://{address}"
        self.address = address.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method, path, **kwargs):
        url = f"{self.address}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransientError(f"{method} {url}: {e}") from e
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientError(f"{method} {url}: HTTP {response.status_code}")
        return response

    def submit(self, entrypoint, submission_id, runtime_env=None, metadata=None):
        """Submit a job and return its submission id.

        Resubmitting an id the cluster already knows returns the id, so a
        submit retried after a lost status write is harmless.
        """
        payload = {"entrypoint": entrypoint, "submission_id": submission_id}
        if runtime_env:
            payload["runtime_env"] = runtime_env
        if metadata:
            payload["metadata"] = metadata

        response = self._request("POST", "/api/jobs/", json=payload)
        if response.ok:
            submission_id = response.json().get("submission_id", submission_id)
            logger.info(f"Submitted job {submission_id} to {self.address}")
            return submission_id
        if "already exists" in response.text:
            logger.info(f"Job {submission_id} was already submitted to {self.address}")
            return submission_id
        raise ConfigurationError(
            f"job submission rejected: HTTP {response.status_code} {response.text[:200]}",
            reason="SubmissionRejected",
        )

    def poll(self, submission_id):
        """Return one of running, succeeded, failed or unknown."""
        response = self._request("GET", f"/api/jobs/{submission_id}")
        if response.status_code == 404:
            return UNKNOWN, None
        if not response.ok:
            raise TransientError(f"poll {submission_id}: HTTP {response.status_code}")
        info = response.json()
        state = _STATES.get(info.get("status"), UNKNOWN)
        return state, info.get("message")


def dashboard_address(cluster_status):
    return (cluster_status.get("endpoints") or {}).get("dashboard")
