from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from pullsecrets.src.events import KeyExtractionError, ReconcileKey, key_for_object
from pullsecrets.src.informer import wait_for_cache_sync
from pullsecrets.src.metrics import METRICS
from pullsecrets.src.workqueue import RateLimitingQueue

DEFAULT_WORKERS = 2
DEFAULT_MAX_RETRIES = 15


class CacheSyncError(RuntimeError):
    """Raised when the informer caches never report synced; startup cannot continue."""


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one sync handler invocation.

    ``actions`` counts the mutating API calls issued; ``error`` describes a
    failure and is ``None`` on success.
    """

    key: ReconcileKey
    actions: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SyncHandler(Protocol):
    def __call__(self, key: ReconcileKey) -> SyncResult: ...


class Controller:
    """Generic reconciliation engine: work queue, worker pool and retry policy.

    Each worker loops over a small state machine until the queue shuts down:

    1. ``get`` blocks until a key is ready (or reports shutdown).
    2. The sync handler is invoked with the key.
    3. Success ``forget``s the key (resetting its backoff); failure schedules a
       rate-limited requeue while the key has retries left, and otherwise
       drops the key with an ERROR log.  Either way the lease is released
       with ``done``.

    The engine is the only place retry policy lives; sync handlers just
    report success or failure.
    """

    def __init__(
        self,
        name: str,
        queue: RateLimitingQueue,
        sync_handler: SyncHandler,
        key_func: Callable[[Any], ReconcileKey] = key_for_object,
        max_retries: int = DEFAULT_MAX_RETRIES,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.name = name
        self.queue = queue
        self.sync_handler = sync_handler
        self.key_func = key_func
        self.max_retries = max_retries
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()
        self._workers: list[threading.Thread] = []

    def handle_object(self, obj: Any) -> None:
        """Resolve the key of *obj* (tombstones included) and enqueue it."""
        try:
            key = self.key_func(obj)
        except KeyExtractionError:
            self.logger.error("%s: unable to derive a key from object %r", self.name, obj)
            return
        self.queue.add(key)

    def _invoke(self, key: ReconcileKey) -> SyncResult:
        started = time.perf_counter()
        try:
            result = self.sync_handler(key)
        except Exception as exc:
            self.logger.exception("%s: unexpected error syncing %s", self.name, key)
            result = SyncResult(key=key, error=f"{type(exc).__name__}: {exc}")
        finally:
            METRICS.reconcile_duration_seconds.labels(controller=self.name).observe(
                time.perf_counter() - started
            )
        return result

    def _handle_result(self, key: ReconcileKey, result: SyncResult) -> None:
        if result.ok:
            METRICS.reconcile_total.labels(controller=self.name, result="success").inc()
            self.queue.forget(key)
            return

        METRICS.reconcile_total.labels(controller=self.name, result="error").inc()
        requeues = self.queue.num_requeues(key)
        if requeues < self.max_retries:
            self.queue.add_rate_limited(key)
            self.logger.warning(
                "%s: error syncing %s (retry %d/%d in %.1fs): %s",
                self.name,
                key,
                requeues + 1,
                self.max_retries,
                self.queue.waiting_delay(key) or 0.0,
                result.error,
            )
            return

        # Also cancels a delayed retry left over from before an early re-run.
        self.queue.forget(key)
        METRICS.reconcile_dropped_total.labels(controller=self.name).inc()
        self.logger.error(
            "%s: dropping %s out of the queue after %d retries: %s",
            self.name,
            key,
            requeues,
            result.error,
        )

    def process_next_work_item(self) -> bool:
        """Run one Get → Invoke → Outcome step.  Returns False once the queue is shut down."""
        key, shutdown = self.queue.get()
        if shutdown:
            return False

        try:
            result = self._invoke(key)
            self._handle_result(key, result)
        finally:
            self.queue.done(key)
        return True

    def _run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def run(
        self,
        workers: int,
        stop_event: threading.Event,
        cache_synced: Iterable[Callable[[], bool]] = (),
        sync_timeout_seconds: float | None = None,
    ) -> None:
        """Start *workers* threads after the cache-sync barrier and block until *stop_event*.

        On stop the queue is shut down and every worker is joined; handler
        calls already in flight run to completion.

        Raises :class:`CacheSyncError` if the caches do not sync within
        *sync_timeout_seconds*.
        """
        if workers < 1:
            raise ValueError("workers must be >= 1")

        self.logger.info("%s: waiting for informer caches to sync", self.name)
        if not wait_for_cache_sync(stop_event, cache_synced, timeout_seconds=sync_timeout_seconds):
            self.queue.shut_down()
            if stop_event.is_set():
                self.logger.info("%s: stopped before caches synced", self.name)
                return
            raise CacheSyncError(f"{self.name}: failed to wait for caches to sync")

        self.logger.info("%s: starting %d worker(s)", self.name, workers)
        self._workers = [
            threading.Thread(
                target=self._run_worker,
                name=f"{self.name}-worker-{index}",
                daemon=True,
            )
            for index in range(workers)
        ]
        for worker in self._workers:
            worker.start()
        self.ready.set()

        stop_event.wait()

        self.logger.info("%s: shutting down workers", self.name)
        self.ready.clear()
        self.queue.shut_down()
        for worker in self._workers:
            worker.join()
        self._workers = []
        self.logger.info("%s: stopped", self.name)
