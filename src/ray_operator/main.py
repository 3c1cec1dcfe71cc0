"""Main operator entrypoint using Kopf.

Kopf delivers the events, runs the handlers on its worker pool, retries them
and fires the resync timers. Each handler runs one reconcile pass and hands
the ``Result`` back to kopf as a retry signal.
"""

import logging

import kopf

from . import batchscheduler, crd
from .config import load_config
from .job import JobReconciler
from .k8s import KubeGateway, load_kubeconfig
from .reconcile import ClusterReconciler
from .scheduling import KeyLocks, Result, raise_for_result
from .service import ServiceReconciler

CONFIG = load_config()

# Configure logging
logging.basicConfig(
    level=getattr(logging, CONFIG.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

reconcilers = {}
locks = KeyLocks()


def build_reconcilers(gateway, config=CONFIG):
    return {
        crd.CLUSTER_KIND: ClusterReconciler(gateway, config),
        crd.SERVICE_KIND: ServiceReconciler(gateway, config),
        crd.JOB_KIND: JobReconciler(gateway, config),
    }


def reconcile(kind, namespace, name, retry=0):
    """Run one pass for an object and translate its result for kopf."""
    key = crd.object_key(namespace, name)
    try:
        with locks.hold(f"{kind}/{key}"):
            result = reconcilers[kind].reconcile(key)
    except Exception as e:
        logger.error(f"Reconciliation error for {kind} {key}: {e}", exc_info=True)
        result = Result.error(e)
    raise_for_result(
        result,
        f"{kind} {key}",
        retry=retry,
        base=CONFIG.backoff_base_seconds,
        maximum=CONFIG.backoff_max_seconds,
    )


def resync(kind, namespace, name, retry=0):
    """Timer pass. A permanent outcome waits for a spec change, not for the timer to stop."""
    try:
        reconcile(kind, namespace, name, retry=retry)
    except kopf.PermanentError as e:
        logger.debug(f"{kind} {namespace}/{name} waits for a spec change: {e}")


def reconcile_owners(meta, namespace, kinds):
    """Reconcile the controller owners of an object that are of ``kinds``.

    Event handlers are not retried by kopf. Work an owner still has left is
    picked up by its own handlers or by its resync timer.
    """
    for ref in meta.get("ownerReferences") or []:
        if ref.get("kind") not in kinds or ref.get("apiVersion") != crd.API_VERSION:
            continue
        try:
            reconcile(ref["kind"], namespace, ref["name"])
        except (kopf.TemporaryError, kopf.PermanentError) as e:
            logger.debug(f"{ref['kind']} {namespace}/{ref['name']} left for retry: {e}")


def watched(namespace, **kwargs):
    return CONFIG.watches(namespace)


@kopf.on.startup()
def startup(settings: kopf.OperatorSettings, logger, **kwargs):
    # Logs would otherwise also be posted as Kubernetes events.
    settings.posting.enabled = False
    # One thread pool shared by all three controllers bounds concurrent passes.
    settings.execution.max_workers = CONFIG.reconcile_concurrency
    # Status is written by the reconcilers; keep kopf's bookkeeping out of it.
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix="ray.io")

    load_kubeconfig()
    batchscheduler.freeze()
    reconcilers.update(build_reconcilers(KubeGateway()))
    watching = ", ".join(CONFIG.watch_namespaces) or "all namespaces"
    logger.info(f"Ray operator started, watching {watching}")


@kopf.on.cleanup()
def cleanup(logger, **kwargs):
    logger.info("Ray operator stopped")


@kopf.on.resume(crd.GROUP, crd.VERSION, crd.CLUSTER_PLURAL, when=watched)
@kopf.on.create(crd.GROUP, crd.VERSION, crd.CLUSTER_PLURAL, when=watched)
@kopf.on.update(crd.GROUP, crd.VERSION, crd.CLUSTER_PLURAL, when=watched)
def raycluster_handler(name, namespace, retry, **kwargs):
    """Handle RayCluster create/update events."""
    reconcile(crd.CLUSTER_KIND, namespace, name, retry=retry)


@kopf.timer(crd.GROUP, crd.VERSION, crd.CLUSTER_PLURAL, interval=CONFIG.resync_interval, when=watched)
def raycluster_resync(name, namespace, retry, **kwargs):
    """Periodic reconciliation, catches missed events and external drift."""
    resync(crd.CLUSTER_KIND, namespace, name, retry=retry)


@kopf.on.event(crd.GROUP, crd.VERSION, crd.CLUSTER_PLURAL, when=watched)
def raycluster_event(type, meta, namespace, **kwargs):
    """A child cluster changed, e.g. became Running: move its service or job along."""
    if type is None:
        return
    reconcile_owners(meta, namespace, (crd.SERVICE_KIND, crd.JOB_KIND))


@kopf.on.resume(crd.GROUP, crd.VERSION, crd.SERVICE_PLURAL, when=watched)
@kopf.on.create(crd.GROUP, crd.VERSION, crd.SERVICE_PLURAL, when=watched)
@kopf.on.update(crd.GROUP, crd.VERSION, crd.SERVICE_PLURAL, when=watched)
def rayservice_handler(name, namespace, retry, **kwargs):
    reconcile(crd.SERVICE_KIND, namespace, name, retry=retry)


@kopf.timer(crd.GROUP, crd.VERSION, crd.SERVICE_PLURAL, interval=CONFIG.resync_interval, when=watched)
def rayservice_resync(name, namespace, retry, **kwargs):
    resync(crd.SERVICE_KIND, namespace, name, retry=retry)


@kopf.on.resume(crd.GROUP, crd.VERSION, crd.JOB_PLURAL, when=watched)
@kopf.on.create(crd.GROUP, crd.VERSION, crd.JOB_PLURAL, when=watched)
@kopf.on.update(crd.GROUP, crd.VERSION, crd.JOB_PLURAL, when=watched)
def rayjob_handler(name, namespace, retry, **kwargs):
    reconcile(crd.JOB_KIND, namespace, name, retry=retry)


@kopf.timer(crd.GROUP, crd.VERSION, crd.JOB_PLURAL, interval=CONFIG.resync_interval, when=watched)
def rayjob_resync(name, namespace, retry, **kwargs):
    resync(crd.JOB_KIND, namespace, name, retry=retry)


@kopf.on.event("pods", labels={crd.LABEL_CLUSTER: kopf.PRESENT}, when=watched)
def pod_event(type, meta, namespace, **kwargs):
    """Owned pod changed (readiness, deletion): reconcile its cluster."""
    if type is None:
        return
    reconcile_owners(meta, namespace, (crd.CLUSTER_KIND,))


@kopf.on.event("services", labels={crd.LABEL_CLUSTER: kopf.PRESENT}, when=watched)
def service_event(type, meta, namespace, **kwargs):
    if type is None:
        return
    reconcile_owners(meta, namespace, (crd.CLUSTER_KIND,))


if __name__ == "__main__":
    if CONFIG.watch_namespaces:
        kopf.run(standalone=True, namespaces=list(CONFIG.watch_namespaces))
    else:
        kopf.run(standalone=True, clusterwide=True)
