"""
Requeue directives — what the work queue should do after an attempt.

A reconciliation never exits the process; it tells the queue to
requeue immediately, requeue after a fixed delay, or wait for the next
external event (no requeue). Raised exceptions are handled separately
by the queue with per-key exponential backoff.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation attempt."""

    requeue: bool = False
    requeue_after: timedelta | None = None

    @classmethod
    def done(cls) -> ReconcileResult:
        """Stop; wait for an external event."""
        return cls()

    @classmethod
    def immediately(cls) -> ReconcileResult:
        return cls(requeue=True)

    @classmethod
    def after(cls, delay: timedelta) -> ReconcileResult:
        return cls(requeue=True, requeue_after=delay)

    @property
    def waits_for_event(self) -> bool:
        return not self.requeue

    def describe(self) -> str:
        if not self.requeue:
            return "no requeue"
        if self.requeue_after is None:
            return "requeue immediately"
        return f"requeue after {self.requeue_after.total_seconds():g}s"
