"""CRD schema constants and helpers."""

# CRD Group and Version
GROUP = "ray.io"
VERSION = "v1alpha1"

# API version string
API_VERSION = f"{GROUP}/{VERSION}"

# Kinds and plurals
CLUSTER_KIND = "RayCluster"
CLUSTER_PLURAL = "rayclusters"
SERVICE_KIND = "RayService"
SERVICE_PLURAL = "rayservices"
JOB_KIND = "RayJob"
JOB_PLURAL = "rayjobs"

# Cluster phases
PHASE_INITIALIZING = "Initializing"
PHASE_PENDING = "Pending"
PHASE_RUNNING = "Running"
PHASE_UPGRADING = "Upgrading"
PHASE_DEGRADED = "Degraded"
PHASE_FAILED = "Failed"
PHASE_DELETING = "Deleting"

# Service phases
SERVICE_DEPLOYING = "Deploying"
SERVICE_RUNNING = "Running"
SERVICE_UPGRADING = "Upgrading"
SERVICE_ROLLED_BACK = "RolledBack"

# Job deployment phases
JOB_PENDING_CLUSTER = "PendingClusterCreation"
JOB_CLUSTER_READY = "ClusterReady"
JOB_SUBMITTED = "Submitted"
JOB_RUNNING = "Running"
JOB_SUCCEEDED = "Succeeded"
JOB_FAILED = "Failed"
JOB_CLEANING_UP = "CleaningUp"
JOB_COMPLETE = "Complete"

# Labels
LABEL_CLUSTER = "ray.io/cluster"
LABEL_ROLE = "ray.io/role"
LABEL_GROUP = "ray.io/group"
LABEL_NODE_TYPE = "ray.io/node-type"
LABEL_IDENTIFIER = "ray.io/identifier"
LABEL_SERVICE = "ray.io/service"
LABEL_JOB = "ray.io/job"
LABEL_CREATED_BY = "app.kubernetes.io/created-by"
LABEL_RAY_VERSION = "ray.io/version"
CREATED_BY = "ray-operator"

# Annotations
ANNOTATION_SPEC_HASH = "ray.io/spec-hash"
ANNOTATION_MUTABLE_HASH = "ray.io/mutable-hash"
# Spec hash of the head a worker pod was started against.
ANNOTATION_HEAD_HASH = "ray.io/head-spec-hash"

# Unit roles
ROLE_HEAD = "head"
ROLE_WORKER = "worker"
ROLE_ENDPOINT = "endpoint"
ROLE_PLACEMENT = "placement"
ROLE_RBAC = "rbac"

HEAD_GROUP = "headgroup"

# Default Ray ports
GCS_PORT = 6379
DASHBOARD_PORT = 8265
CLIENT_PORT = 10001
SERVE_PORT = 8000
DEFAULT_HEAD_PORTS = {
    "gcs": GCS_PORT,
    "dashboard": DASHBOARD_PORT,
    "client": CLIENT_PORT,
}

MAX_REPLICAS = 2**31 - 1


def owner_reference(kind, name, uid, block_owner_deletion=True):
    """Controller owner reference to one of our custom resources."""
    return {
        "apiVersion": API_VERSION,
        "kind": kind,
        "name": name,
        "uid": uid,
        "controller": True,
        "blockOwnerDeletion": block_owner_deletion,
    }


def object_key(namespace, name):
    return f"{namespace}/{name}"


def split_key(key):
    namespace, _, name = key.partition("/")
    return namespace, name


def head_name(cluster_name):
    return f"{cluster_name}-head"


def head_service_name(cluster_name):
    return f"{cluster_name}-head-svc"


def worker_name(cluster_name, group_name, index):
    return f"{cluster_name}-worker-{group_name}-{index}"


def head_service_host(cluster_name, namespace):
    return f"{head_service_name(cluster_name)}.{namespace}.svc.cluster.local"
