"""
Runtime — work queue and reconciliation workers.

    watcher / source changes ──add()──→ WorkQueue ──get()──→ worker threads
                                          ▲                      │
                                          └── add_after() ◄──────┘
                                              (ReconcileResult or backoff)

WorkQueue guarantees
────────────────────
- a key is queued at most once (duplicates collapse);
- a key is never handed to two workers at once: a key added while it
  is being processed is parked and queued again when ``done()`` is
  called for it;
- delayed adds are kept in a heap and released by ``get()`` when due.
"""

from __future__ import annotations

import heapq
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from datetime import timedelta

from tfcontrol.adapters.base import ClusterClient
from tfcontrol.core.models.meta import NamespacedName
from tfcontrol.core.models.result import ReconcileResult
from tfcontrol.core.models.source import SourceObject
from tfcontrol.core.reliability.backoff import ItemBackoff
from tfcontrol.core.services.dependencies import requests_for_revision_change

logger = logging.getLogger(__name__)


class WorkQueue:
    """Thread-safe de-duplicating queue with per-key serialization."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[NamespacedName] = deque()
        self._queued: set[NamespacedName] = set()
        self._processing: set[NamespacedName] = set()
        self._dirty: set[NamespacedName] = set()
        self._delayed: list[tuple[float, int, NamespacedName]] = []
        self._due: dict[NamespacedName, float] = {}
        self._counter = 0
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, key: NamespacedName) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: NamespacedName) -> None:
        if self._shutting_down:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: NamespacedName, delay: float) -> None:
        """Queue ``key`` once ``delay`` seconds have passed.

        A key waits at most once: a later deadline for a key that is
        already waiting is dropped, an earlier one replaces it.
        """
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due = self._clock() + delay
            current = self._due.get(key)
            if current is not None and current <= due:
                return
            self._due[key] = due
            self._counter += 1
            heapq.heappush(self._delayed, (due, self._counter, key))
            self._cond.notify()

    def _release_due_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            due, _, key = heapq.heappop(self._delayed)
            # superseded by an earlier deadline
            if self._due.get(key) != due:
                continue
            del self._due[key]
            self._add_locked(key)
        while self._delayed and self._due.get(self._delayed[0][2]) != self._delayed[0][0]:
            heapq.heappop(self._delayed)
        if self._delayed:
            return max(self._delayed[0][0] - now, 0.0)
        return None

    def get(self, timeout: float | None = None) -> NamespacedName | None:
        """Next key to process, or None on shutdown or timeout."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                next_due = self._release_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    return key

                wait = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: NamespacedName) -> None:
        """Mark ``key`` finished; re-queue it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._add_locked(key)

    def is_processing(self, key: NamespacedName) -> bool:
        with self._cond:
            return key in self._processing

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._due)

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()


ReconcileFn = Callable[[NamespacedName], ReconcileResult]


class Controller:
    """Runs reconciliation workers over a WorkQueue.

    Args:
        reconcile: Called with a key; returns a requeue directive.
        cluster: Used to map source revision changes to resource keys.
        workers: Number of worker threads (max concurrent reconciles).
        backoff: Per-key backoff for attempts that raise.
    """

    def __init__(
        self,
        reconcile: ReconcileFn,
        cluster: ClusterClient,
        workers: int = 4,
        backoff: ItemBackoff | None = None,
        queue: WorkQueue | None = None,
    ):
        self._reconcile = reconcile
        self.cluster = cluster
        self.workers = max(1, workers)
        self.backoff = backoff or ItemBackoff()
        self.queue = queue or WorkQueue()
        self._threads: list[threading.Thread] = []

    # ── Event sources ───────────────────────────────────────────

    def enqueue(self, key: NamespacedName) -> None:
        self.queue.add(key)

    def on_source_changed(self, source: SourceObject) -> list[NamespacedName]:
        """Queue resources affected by a new source revision, dependencies first."""
        keys = requests_for_revision_change(self.cluster, source)
        for key in keys:
            self.queue.add(key)
        if keys:
            logger.info("Source %s/%s changed, queued %d resource(s)", source.kind, source.index_key, len(keys))
        return keys

    # ── Processing ──────────────────────────────────────────────

    def process_one(self, key: NamespacedName) -> ReconcileResult | None:
        """Reconcile ``key`` and schedule its next attempt. Returns None if it raised."""
        skey = str(key)
        try:
            result = self._reconcile(key)
        except Exception as e:
            delay = self.backoff.when(skey)
            logger.error("Reconciler error for %s, retrying in %.3fs: %s", key, delay, e)
            self.queue.add_after(key, delay)
            return None
        finally:
            self.queue.done(key)

        if not result.requeue:
            self.backoff.forget(skey)
        elif result.requeue_after is None:
            delay = self.backoff.when(skey)
            self.queue.add_after(key, delay)
        else:
            self.backoff.forget(skey)
            self.queue.add_after(key, _seconds(result.requeue_after))
        logger.debug("%s: %s", key, result.describe())
        return result

    def _worker(self) -> None:
        while True:
            key = self.queue.get()
            if key is None:
                return
            try:
                self.process_one(key)
            except Exception:
                # the worker outlives any single key; retry it at the cap
                logger.exception("Unexpected failure scheduling %s", key)
                self.queue.add_after(key, self.backoff.max_delay)

    def start(self) -> None:
        for i in range(self.workers):
            thread = threading.Thread(target=self._worker, name=f"reconcile-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d reconcile worker(s)", self.workers)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop handing out work; in-flight attempts are abandoned, not interrupted."""
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()


def _seconds(delay: timedelta) -> float:
    return max(delay.total_seconds(), 0.0)
