"""Registry of gang-scheduling strategies.

Strategies are registered at import time and the registry is frozen when the
operator starts; reconciles only ever read it.
"""

import logging
import threading

from ..errors import ConfigurationError
from .interface import BatchScheduler, DefaultBatchScheduler
from .volcano import VolcanoBatchScheduler

logger = logging.getLogger(__name__)

_registry = {}
_frozen = False
_lock = threading.Lock()


def register(name, factory):
    """Register a strategy factory under ``name``."""
    with _lock:
        if _frozen:
            raise RuntimeError(f"batch scheduler registry is frozen, cannot add {name!r}")
        _registry[name] = factory


def freeze():
    global _frozen
    with _lock:
        _frozen = True
    logger.info(f"Batch schedulers available: {', '.join(sorted(_registry))}")


def names():
    return sorted(_registry)


def get(name):
    """Look up a strategy. Unknown names are configuration errors."""
    factory = _registry.get(name or DefaultBatchScheduler.name)
    if factory is None:
        raise ConfigurationError(
            f"unknown batch scheduler {name!r}; known: {', '.join(names())}",
            reason="UnknownBatchScheduler",
        )
    return factory()


register(DefaultBatchScheduler.name, DefaultBatchScheduler)
register(VolcanoBatchScheduler.name, VolcanoBatchScheduler)

__all__ = ["BatchScheduler", "DefaultBatchScheduler", "VolcanoBatchScheduler", "register", "freeze", "names", "get"]
