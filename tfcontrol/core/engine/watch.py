"""
Polling watcher — turns cluster state changes into queued work.

Every ``interval`` seconds it lists resources and sources and compares
them with what it saw last time:

    new resource / generation change / deletion started  → enqueue key
    source revision change                               → on_source_changed()
    every ``resync`` seconds                             → enqueue all keys

Daemon thread, same shape as the other background pollers.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from tfcontrol.adapters.base import ClusterClient
from tfcontrol.core.errors import ControllerError
from tfcontrol.core.models.meta import NamespacedName
from tfcontrol.core.models.source import SourceKind, SourceObject

logger = logging.getLogger(__name__)


class PollingWatcher:
    """Polls the cluster and feeds a controller."""

    def __init__(
        self,
        cluster: ClusterClient,
        enqueue: Callable[[NamespacedName], None],
        on_source_changed: Callable[[SourceObject], object],
        interval: float = 5.0,
        resync: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cluster = cluster
        self._enqueue = enqueue
        self._on_source_changed = on_source_changed
        self.interval = interval
        self.resync = resync
        self._clock = clock
        self._generations: dict[NamespacedName, tuple[int, bool]] = {}
        self._revisions: dict[tuple[SourceKind, NamespacedName], str] = {}
        self._last_resync = clock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def poll(self) -> list[NamespacedName]:
        """One polling pass. Returns the keys enqueued directly."""
        enqueued: list[NamespacedName] = []
        resources = self.cluster.list()
        seen: dict[NamespacedName, tuple[int, bool]] = {}
        for resource in resources:
            state = (resource.generation, resource.is_being_deleted)
            seen[resource.key] = state
            if self._generations.get(resource.key) != state:
                self._enqueue(resource.key)
                enqueued.append(resource.key)
        self._generations = seen

        for source in self.cluster.list_sources():
            artifact = source.get_artifact()
            revision = artifact.revision if artifact else ""
            ident = (source.kind, source.key)
            previous = self._revisions.get(ident)
            self._revisions[ident] = revision
            if previous is not None and previous != revision and revision:
                logger.info("Source %s %s moved to revision %s", source.kind, source.key, revision)
                self._on_source_changed(source)

        now = self._clock()
        if now - self._last_resync >= self.resync:
            self._last_resync = now
            for key in seen:
                if key not in enqueued:
                    self._enqueue(key)
            logger.debug("Resync: queued %d resource(s)", len(seen))
        return enqueued

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="watcher", daemon=True)
        self._thread.start()
        logger.info("Watcher started (poll every %gs, resync every %gs)", self.interval, self.resync)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll()
            except ControllerError as e:
                logger.warning("Watch poll failed: %s", e)
            self._stop.wait(self.interval)
