"""Operator configuration loaded from the environment."""

import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "RAY_OPERATOR_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class OperatorConfig:
    """Options recognised by the reconcilers and the kopf handlers."""

    reconcile_concurrency: int = 1
    resync_interval: float = 300.0
    forced_cluster_upgrade: bool = False
    batch_scheduler: Optional[str] = None
    upgrade_batch_size: int = 0
    degraded_grace_seconds: float = 600.0
    failure_budget: int = 5
    requeue_seconds: float = 10.0
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    watch_namespaces: Tuple[str, ...] = ()
    log_level: str = "INFO"

    def __post_init__(self):
        if self.reconcile_concurrency < 1:
            raise ConfigurationError(
                f"reconcile concurrency must be >= 1, got {self.reconcile_concurrency}"
            )
        if self.resync_interval <= 0:
            raise ConfigurationError("resync interval must be positive")
        if self.upgrade_batch_size < 0:
            raise ConfigurationError("upgrade batch size must be >= 0")
        if self.failure_budget < 1:
            raise ConfigurationError("failure budget must be >= 1")
        if self.backoff_base_seconds <= 0 or self.backoff_max_seconds < self.backoff_base_seconds:
            raise ConfigurationError("backoff must satisfy 0 < base <= max")

    def watches(self, namespace):
        """True when objects in ``namespace`` are managed by this operator."""
        return not self.watch_namespaces or namespace in self.watch_namespaces


def _get(environ, name):
    return environ.get(ENV_PREFIX + name)


def _int(environ, name, default):
    raw = _get(environ, name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}")


def _float(environ, name, default):
    raw = _get(environ, name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}")


def _bool(environ, name, default):
    raw = _get(environ, name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


def _namespaces(environ, name):
    raw = _get(environ, name) or ""
    return tuple(ns.strip() for ns in raw.split(",") if ns.strip())


def load_config(environ=None):
    """Build an OperatorConfig from ``RAY_OPERATOR_*`` environment variables."""
    if environ is None:
        environ = os.environ

    config = OperatorConfig(
        reconcile_concurrency=_int(environ, "RECONCILE_CONCURRENCY", 1),
        resync_interval=_float(environ, "RESYNC_INTERVAL", 300.0),
        forced_cluster_upgrade=_bool(environ, "FORCED_CLUSTER_UPGRADE", False),
        batch_scheduler=_get(environ, "BATCH_SCHEDULER") or None,
        upgrade_batch_size=_int(environ, "UPGRADE_BATCH_SIZE", 0),
        degraded_grace_seconds=_float(environ, "DEGRADED_GRACE_SECONDS", 600.0),
        failure_budget=_int(environ, "FAILURE_BUDGET", 5),
        requeue_seconds=_float(environ, "REQUEUE_SECONDS", 10.0),
        backoff_base_seconds=_float(environ, "BACKOFF_BASE_SECONDS", 1.0),
        backoff_max_seconds=_float(environ, "BACKOFF_MAX_SECONDS", 300.0),
        watch_namespaces=_namespaces(environ, "WATCH_NAMESPACE"),
        log_level=(_get(environ, "LOG_LEVEL") or "INFO").upper(),
    )

    if config.forced_cluster_upgrade:
        logger.info("Feature flag forced-cluster-upgrade is enabled.")
    if config.batch_scheduler:
        logger.info(f"Default batch scheduler policy: {config.batch_scheduler}")
    return config
