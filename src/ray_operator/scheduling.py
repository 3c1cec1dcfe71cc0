"""Reconcile outcomes and how kopf acts on them.

Reconcilers return a ``Result``; the kopf handlers in ``main`` turn it into
kopf's own retry signals. ``TemporaryError`` carries the requeue or backoff
delay, ``PermanentError`` stops retries for input that cannot succeed as is.
"""

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

import kopf

from .errors import ConfigurationError, ConvergenceError

logger = logging.getLogger(__name__)

DONE = "done"
REQUEUE = "requeue"
ERROR = "error"
GONE = "gone"

# Errors that retrying the same input cannot fix.
NON_RETRIABLE = (ConfigurationError, ConvergenceError)


@dataclass(frozen=True)
class Result:
    """What a reconcile asks for next."""

    action: str
    delay: Optional[float] = None
    exception: Optional[BaseException] = None

    @classmethod
    def done(cls):
        return cls(DONE)

    @classmethod
    def requeue_after(cls, seconds):
        return cls(REQUEUE, delay=seconds)

    @classmethod
    def error(cls, exc):
        return cls(ERROR, exception=exc)

    @classmethod
    def gone(cls):
        """The object no longer exists."""
        return cls(GONE)


def backoff_delay(retry, base, maximum):
    """Delay before retry number ``retry`` (0-based) of a failing reconcile."""
    return min(base * (2 ** retry), maximum)


def raise_for_result(result, key, retry=0, base=1.0, maximum=300.0):
    """Translate a reconcile result into kopf's retry protocol."""
    if result is None or result.action in (DONE, GONE):
        return
    if result.action == REQUEUE:
        raise kopf.TemporaryError(f"{key} not converged yet", delay=max(result.delay or 0, 0))
    if isinstance(result.exception, NON_RETRIABLE):
        logger.info(f"{key} not retried: {result.exception}")
        raise kopf.PermanentError(str(result.exception))
    delay = backoff_delay(retry, base, maximum)
    logger.warning(f"reconcile of {key} failed, retrying in {delay:.1f}s: {result.exception}")
    raise kopf.TemporaryError(str(result.exception), delay=delay)


class KeyLocks:
    """One lock per object key.

    Kopf runs the handlers of one object sequentially, but a timer, a change
    handler and the event handler of an owned pod may all target the same
    cluster. Holding its key lock keeps those passes from interleaving.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = defaultdict(threading.Lock)

    @contextmanager
    def hold(self, key):
        with self._guard:
            lock = self._locks[key]
        with lock:
            yield
