from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from pullsecrets.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_SECONDS = 5.0
DEFAULT_MAX_DELAY_SECONDS = 1000.0


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base * 2**failures`` capped at ``max_delay``.

    Every call to :meth:`when` counts as one more failure for the key, so
    consecutive failures of the same key receive strictly increasing delays
    until the cap is reached.  :meth:`forget` resets the key after a success.
    """

    def __init__(
        self,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
    ) -> None:
        if base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be > 0")
        if max_delay_seconds < base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        # 2**63 seconds is already far beyond any sane cap.
        if exponent > 62:
            return self.max_delay_seconds
        return min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class RateLimitingQueue:
    """Deduplicating, delay-aware work queue shared by a controller's workers.

    Key internal state:
        ``_queue``
            FIFO of keys ready to be handed out by :meth:`get`.
        ``_dirty``
            Keys that need processing.  A key is never queued twice while it
            is dirty, which collapses redundant adds into one entry.
        ``_processing``
            Keys currently leased to a worker.  A key added while leased is
            only marked dirty and is re-queued by :meth:`done`, so two
            workers never handle the same key at once.
        ``_waiting``
            Heap of ``(due_at, seq, key)`` for delayed adds, promoted into
            ``_queue`` once due.  ``_waiting_due`` holds the live deadline
            per key; heap entries that do not match it are stale.
    """

    def __init__(
        self,
        name: str,
        rate_limiter: ItemExponentialFailureRateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_due: dict[Hashable, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False
        METRICS.workqueue_depth.labels(queue=name).set(0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _record_depth(self) -> None:
        METRICS.workqueue_depth.labels(queue=self.name).set(len(self._queue))

    def _add_locked(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return

        METRICS.workqueue_adds_total.labels(queue=self.name).inc()
        self._dirty.add(item)
        if item in self._processing:
            return

        self._queue.append(item)
        self._record_depth()
        self._cond.notify()

    def add(self, item: Hashable) -> None:
        with self._cond:
            self._add_locked(item)

    def add_after(self, item: Hashable, delay_seconds: float) -> None:
        """Make *item* eligible for :meth:`get` after *delay_seconds*.

        If the key is already waiting, the earlier deadline wins.
        """
        if delay_seconds <= 0:
            self.add(item)
            return

        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay_seconds
            existing_due = self._waiting_due.get(item)
            if existing_due is not None and existing_due <= due_at:
                return
            self._waiting_due[item] = due_at
            heapq.heappush(self._waiting, (due_at, next(self._sequence), item))
            # Blocked getters must recompute how long to sleep.
            self._cond.notify_all()

    def add_rate_limited(self, item: Hashable) -> None:
        delay_seconds = self.rate_limiter.when(item)
        METRICS.workqueue_retries_total.labels(queue=self.name).inc()
        self.add_after(item, delay_seconds)

    def forget(self, item: Hashable) -> None:
        """Reset the backoff of *item* and cancel any delayed retry still pending for it."""
        self.rate_limiter.forget(item)
        with self._cond:
            # The heap entry goes stale once its deadline is gone.
            self._waiting_due.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def waiting_delay(self, item: Hashable) -> float | None:
        """Seconds until a delayed *item* becomes ready, or None if not waiting."""
        with self._cond:
            due_at = self._waiting_due.get(item)
            if due_at is None:
                return None
            return max(0.0, due_at - self._clock())

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            due_at, _, item = heapq.heappop(self._waiting)
            if self._waiting_due.get(item) != due_at:
                continue
            del self._waiting_due[item]
            self._add_locked(item)

    def get(self) -> tuple[Hashable | None, bool]:
        """Block until a key is ready; return ``(key, False)`` or ``(None, True)`` on shutdown.

        After :meth:`shut_down` the remaining ready keys are still handed out
        before shutdown is reported.
        """
        with self._cond:
            while True:
                self._promote_due_locked()
                if self._queue:
                    break
                if self._shutting_down:
                    return None, True

                timeout: float | None = None
                if self._waiting:
                    timeout = max(0.0, self._waiting[0][0] - self._clock())
                self._cond.wait(timeout=timeout)

            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            self._record_depth()
            return item, False

    def done(self, item: Hashable) -> None:
        """Release the lease on *item*, re-queueing it if it was re-added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._record_depth()
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting keys, drop delayed keys and wake every blocked getter."""
        with self._cond:
            if self._shutting_down:
                return
            self._shutting_down = True
            dropped = len(self._waiting_due)
            self._waiting.clear()
            self._waiting_due.clear()
            self._cond.notify_all()

        if dropped:
            LOGGER.info("Work queue %s shut down; discarded %d delayed key(s)", self.name, dropped)
