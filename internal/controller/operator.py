"""Runs the replication-group reconciler as a kopf operator.

kopf owns the watch on the CRD, the periodic resync timer, the worker
pool and retry scheduling. Each handler call runs one reconcile pass and
maps its outcome onto kopf's retry model:

  exception          -> TemporaryError, exponential back-off
  requeue_after > 0  -> TemporaryError with that fixed delay
  requeue            -> TemporaryError, exponential back-off
  otherwise          -> handler succeeds

Passes for the same group never overlap, even when a timer fires while
a change handler is still running.
"""

import logging
import threading
import time
from typing import Optional

import kopf

from internal.models.types import CRD_GROUP, CRD_PLURAL, CRD_VERSION, Keys, ReconcileResult

logger = logging.getLogger(__name__)


class ReconcileHistory:
    """Last reconcile outcome per replication group, for the status API."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries = {}

    def record(self, name: str, outcome: str, error: Optional[str] = None, requeues: int = 0):
        with self._lock:
            previous = self._entries.get(name, {})
            self._entries[name] = {
                "name": name,
                "outcome": outcome,
                "error": error,
                "requeues": requeues,
                "passes": previous.get("passes", 0) + 1,
                "timestamp": time.time(),
            }

    def get(self, name: str) -> Optional[dict]:
        with self._lock:
            entry = self._entries.get(name)
            return dict(entry) if entry else None

    def all(self) -> list:
        with self._lock:
            return [dict(e) for _, e in sorted(self._entries.items())]


class ReplicationGroupOperator:
    def __init__(self, reconciler, keys: Optional[Keys] = None, max_workers: int = 1,
                 retry_interval_start: float = 1.0, retry_interval_max: float = 300.0,
                 resync_period: float = 600.0, history: Optional[ReconcileHistory] = None):
        self.reconciler = reconciler
        self.keys = keys or Keys()
        self.max_workers = max_workers
        self.retry_interval_start = retry_interval_start
        self.retry_interval_max = retry_interval_max
        self.resync_period = resync_period
        self.history = history or ReconcileHistory()
        # set by kopf once its watchers are running
        self.ready = threading.Event()
        self._locks = {}
        self._locks_guard = threading.Lock()

    def backoff(self, retry: int) -> float:
        return min(self.retry_interval_start * (2 ** retry), self.retry_interval_max)

    def configure(self, settings: kopf.OperatorSettings) -> kopf.OperatorSettings:
        """Apply worker and persistence settings.

        kopf's bookkeeping goes to status so that the group's annotations
        stay exactly what its creator and this controller wrote.
        """
        settings.execution.max_workers = self.max_workers
        settings.persistence.progress_storage = kopf.StatusProgressStorage()
        settings.persistence.diffbase_storage = kopf.StatusDiffBaseStorage()
        return settings

    def register(self, registry: kopf.OperatorRegistry) -> kopf.OperatorRegistry:
        resource = (CRD_GROUP, CRD_VERSION, CRD_PLURAL)
        kopf.on.login(registry=registry)(kopf.login_via_client)
        kopf.on.create(*resource, registry=registry)(self.handle)
        kopf.on.update(*resource, registry=registry)(self.handle)
        kopf.on.resume(*resource, registry=registry)(self.handle)
        # optional: the group carries its own finalizer
        kopf.on.delete(*resource, registry=registry, optional=True)(self.handle)
        kopf.timer(*resource, registry=registry, interval=self.resync_period)(self.handle)
        return registry

    def handle(self, name: str, meta=None, retry: int = 0, **_):
        """kopf handler: run a pass for ``name``.

        Raises:
            kopf.TemporaryError: the pass asked to be run again.
        """
        with self._lock_for(name):
            result = self._run(name, retry)
            if result.done and self._finalizer_was_missing(meta):
                # finalizer changes are not a change to kopf; run the follow-up pass now
                result = self._run(name, retry)

        if result.requeue_after:
            self.history.record(name, "requeue_after")
            raise kopf.TemporaryError(f"{name} requeued", delay=result.requeue_after)
        if result.requeue:
            self.history.record(name, "requeue", requeues=retry + 1)
            raise kopf.TemporaryError(f"{name} requeued", delay=self.backoff(retry))
        self.history.record(name, "success")

    def _run(self, name: str, retry: int) -> ReconcileResult:
        try:
            return self.reconciler.reconcile(name)
        except Exception as e:
            logger.error("Reconcile of %s failed: %s", name, e)
            self.history.record(name, "error", str(e), retry + 1)
            raise kopf.TemporaryError(f"reconcile of {name} failed: {e}",
                                      delay=self.backoff(retry)) from e

    def _finalizer_was_missing(self, meta) -> bool:
        if not meta or meta.get("deletionTimestamp") or meta.get("annotations") is None:
            return False
        return self.keys.finalizer not in (meta.get("finalizers") or [])

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock
