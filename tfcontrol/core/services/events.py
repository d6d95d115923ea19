"""
EventRecorder — Kubernetes-style events for managed resources.

Events are kept in a bounded, sequence-numbered ring buffer and logged.
They mirror what an operator would see with ``kubectl describe``:

    {
        "seq": 12,
        "ts": 1739648400.123,
        "object": "default/my-stack",
        "type": "Warning",              # Normal | Warning
        "reason": "ArtifactFailed",     # Ready condition reason, else severity
        "message": "...",
        "metadata": {"infra.contrib.fluxcd.io/revision": "main/abc"},
    }

Thread safety
─────────────
``_lock`` protects ``_seq`` and ``_buffer``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any

from tfcontrol.core.models.conditions import READY, find_condition
from tfcontrol.core.models.resource import GROUP, ManagedResource

logger = logging.getLogger(__name__)

REVISION_METADATA_KEY = f"{GROUP}/revision"

SEVERITY_INFO = "info"
SEVERITY_ERROR = "error"

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


class EventRecorder:
    """Records events about managed resources.

    Parameters
    ----------
    buffer_size : int
        Maximum number of events kept. Older events are discarded.
    """

    def __init__(self, *, buffer_size: int = 500) -> None:
        self._lock = threading.Lock()
        self._seq = 0
        self._buffer: deque[dict[str, Any]] = deque(maxlen=buffer_size)

    @property
    def seq(self) -> int:
        with self._lock:
            return self._seq

    def record(
        self,
        resource: ManagedResource,
        severity: str,
        message: str,
        revision: str = "",
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Record one event about ``resource`` and return it."""
        meta = dict(metadata or {})
        if revision:
            meta[REVISION_METADATA_KEY] = revision

        ready = find_condition(resource.status.conditions, READY)
        reason = ready.reason if ready is not None and ready.reason else severity
        event_type = EVENT_WARNING if severity == SEVERITY_ERROR else EVENT_NORMAL

        with self._lock:
            self._seq += 1
            event = {
                "seq": self._seq,
                "ts": time.time(),
                "object": str(resource.key),
                "type": event_type,
                "reason": reason,
                "message": message,
                "metadata": meta,
            }
            self._buffer.append(event)

        if event_type == EVENT_WARNING:
            logger.warning("[%s] %s: %s", resource.key, reason, message)
        else:
            logger.info("[%s] %s: %s", resource.key, reason, message)
        return event

    def events(self, key: str | None = None) -> list[dict[str, Any]]:
        """Buffered events, oldest first, optionally for one object key."""
        with self._lock:
            events = list(self._buffer)
        if key is None:
            return events
        return [e for e in events if e["object"] == key]

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()
