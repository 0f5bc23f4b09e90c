from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from pullsecrets.src.events import (
    Added,
    Deleted,
    DeletedFinalStateUnknown,
    KeyExtractionError,
    ReconcileKey,
    ResourceEvent,
    Updated,
    key_for_object,
    resource_version,
)
from pullsecrets.src.metrics import METRICS

EventCallback = Callable[[ResourceEvent], None]


class Informer:
    """Read-only in-memory cache of one resource kind, kept fresh by list + watch.

    The informer lists every object once, then opens a watch stream from the
    list's ``resourceVersion`` and applies each event to its store before
    notifying subscribers with :class:`Added`, :class:`Updated` or
    :class:`Deleted`.

    - ``410 Gone`` (etcd compaction) forces a re-list.  Objects that
      disappeared while the watch was down are delivered as ``Deleted``
      carrying a :class:`DeletedFinalStateUnknown` tombstone.
    - Every ``resync_period_seconds`` the whole store is re-delivered as
      ``Updated(obj, obj)`` so that consumers get a periodic second chance;
      the unchanged resource version lets them tell it apart from a real
      change.
    - Transient API errors back off exponentially with jitter (1 s doubling
      to a 30 s cap).

    Subscribers run on the informer thread and must not block for long.
    """

    def __init__(
        self,
        name: str,
        list_func: Callable[..., Any],
        *,
        list_kwargs: dict[str, Any] | None = None,
        resync_period_seconds: float = 300,
        watch_timeout_seconds: int = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.list_func = list_func
        self.list_kwargs = dict(list_kwargs or {})
        self.resync_period_seconds = resync_period_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._store: dict[ReconcileKey, Any] = {}
        self._store_lock = threading.RLock()
        self._subscribers: list[EventCallback] = []
        self._resource_version: str | None = None
        self._synced = threading.Event()
        self._list_count = 0
        self._next_resync: float | None = None

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        METRICS.informer_synced.labels(resource=name).set(0)

    def subscribe(self, callback: EventCallback) -> None:
        self._subscribers.append(callback)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def get(self, namespace: str, name: str) -> Any | None:
        return self.get_by_key(ReconcileKey(namespace=namespace, name=name))

    def get_by_key(self, key: ReconcileKey) -> Any | None:
        with self._store_lock:
            return self._store.get(key)

    def start(self) -> None:
        """Run the list/watch loop in a daemon thread if it is not already running."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run_forever,
            name=f"informer-{self.name}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, join_timeout_seconds: float | None = None) -> None:
        """Request a cooperative stop and interrupt any open watch stream."""
        self._stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()
        if self._thread is not None and join_timeout_seconds is not None:
            self._thread.join(timeout=join_timeout_seconds)

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._stop.is_set()

    def _dispatch(self, events: Iterable[ResourceEvent]) -> None:
        for event in events:
            for callback in self._subscribers:
                try:
                    callback(event)
                except Exception:
                    self.logger.exception(
                        "Subscriber failed handling %s event for %s",
                        type(event).__name__,
                        self.name,
                    )

    def _schedule_resync(self) -> None:
        if self.resync_period_seconds > 0:
            self._next_resync = time.monotonic() + self.resync_period_seconds
        else:
            self._next_resync = None

    def _resync_if_due(self) -> None:
        if self._next_resync is None or time.monotonic() < self._next_resync:
            return
        with self._store_lock:
            events: list[ResourceEvent] = [Updated(obj, obj) for obj in self._store.values()]
        self.logger.debug("Resyncing %d cached %s object(s)", len(events), self.name)
        self._schedule_resync()
        self._dispatch(events)

    def _next_watch_timeout_seconds(self) -> int:
        """Return the watch timeout, shortened so the stream ends in time for the next resync."""
        if self._next_resync is None:
            return self.watch_timeout_seconds
        remaining = max(1.0, self._next_resync - time.monotonic())
        return min(self.watch_timeout_seconds, max(1, math.ceil(remaining)))

    def list_and_replace(self) -> None:
        """List every object and replace the store, emitting the differences as events."""
        listing = self.list_func(**self.list_kwargs)
        items = getattr(listing, "items", None) or []

        fresh: dict[ReconcileKey, Any] = {}
        for item in items:
            try:
                fresh[key_for_object(item)] = item
            except KeyExtractionError:
                self.logger.warning("Skipping listed %s object without a name", self.name)

        events: list[ResourceEvent] = []
        with self._store_lock:
            previous = self._store
            for key, obj in fresh.items():
                old = previous.get(key)
                if old is None:
                    events.append(Added(obj))
                elif resource_version(old) != resource_version(obj):
                    events.append(Updated(old, obj))
            for key, old in previous.items():
                if key not in fresh:
                    events.append(Deleted(DeletedFinalStateUnknown(key=key, obj=old)))
            self._store = fresh
            self._resource_version = getattr(
                getattr(listing, "metadata", None), "resource_version", None
            )

        if self._list_count > 0:
            METRICS.informer_relists_total.labels(resource=self.name).inc()
        self._list_count += 1

        self.logger.info(
            "Listed %d %s object(s) at resourceVersion %s",
            len(fresh),
            self.name,
            self._resource_version,
        )
        # Synced only after the initial listing reached every subscriber.
        self._dispatch(events)
        if not self._synced.is_set():
            self._synced.set()
            METRICS.informer_synced.labels(resource=self.name).set(1)
            self._schedule_resync()

    def handle_watch_event(self, event: dict[str, Any]) -> None:
        """Apply a single raw watch event to the store and notify subscribers."""
        event_type = str(event.get("type", ""))
        obj = event.get("object")
        if obj is None:
            return

        # Watch.stream raises ApiException for ERROR events itself; this covers
        # events handed to this method directly.
        if event_type == "ERROR":
            status = obj.get("code") if isinstance(obj, dict) else getattr(obj, "code", None)
            reason = obj.get("message") if isinstance(obj, dict) else getattr(obj, "message", None)
            raise ApiException(status=status or 500, reason=reason or "watch error")

        observed_version = resource_version(obj)
        if observed_version:
            self._resource_version = observed_version
        if event_type == "BOOKMARK":
            return

        try:
            key = key_for_object(obj)
        except KeyExtractionError:
            self.logger.warning("Skipping %s watch event without object name", self.name)
            return

        resource_event: ResourceEvent
        with self._store_lock:
            if event_type == "DELETED":
                self._store.pop(key, None)
                resource_event = Deleted(obj)
            elif event_type in {"ADDED", "MODIFIED"}:
                old = self._store.get(key)
                self._store[key] = obj
                resource_event = Added(obj) if old is None else Updated(old, obj)
            else:
                self.logger.debug("Ignoring %s watch event type %r", self.name, event_type)
                return

        self._dispatch([resource_event])

    def _watch_once(self, stop: threading.Event) -> None:
        watcher = watch.Watch()
        with self._watcher_lock:
            self._active_watcher = watcher
        try:
            stream = watcher.stream(
                self.list_func,
                resource_version=self._resource_version,
                timeout_seconds=self._next_watch_timeout_seconds(),
                **self.list_kwargs,
            )
            for event in stream:
                if self._should_stop(stop):
                    break
                self.handle_watch_event(event)
                self._resync_if_due()
        finally:
            watcher.stop()
            with self._watcher_lock:
                if self._active_watcher is watcher:
                    self._active_watcher = None

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        """List then watch until stopped, re-listing after ``410 Gone``."""
        stop = stop_event or self._stop
        backoff_seconds = 1

        while not self._should_stop(stop):
            try:
                if self._resource_version is None:
                    self.list_and_replace()
                self._resync_if_due()
                self._watch_once(stop)
                backoff_seconds = 1
                continue
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "Watch resource version for %s expired, re-listing", self.name
                    )
                    self._resource_version = None
                    continue
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied for %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.name,
                        exc.status,
                    )
                else:
                    self.logger.exception("Kubernetes API list/watch error for %s", self.name)
            except Exception:
                self.logger.exception("Unexpected list/watch error for %s", self.name)

            METRICS.informer_watch_errors_total.labels(resource=self.name).inc()
            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            if stop.wait(timeout=jittered):
                break
            backoff_seconds = min(backoff_seconds * 2, 30)


def wait_for_cache_sync(
    stop_event: threading.Event,
    synced_funcs: Iterable[Callable[[], bool]],
    timeout_seconds: float | None = None,
    poll_interval_seconds: float = 0.1,
) -> bool:
    """Block until every ``synced_funcs`` returns True.

    Returns False if *stop_event* fires or *timeout_seconds* elapses first.
    """
    checks = list(synced_funcs)
    deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
    while True:
        if all(check() for check in checks):
            return True
        if stop_event.is_set():
            return False
        if deadline is not None and time.monotonic() >= deadline:
            return False
        stop_event.wait(timeout=poll_interval_seconds)
