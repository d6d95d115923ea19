"""
Metrics — lightweight counters, gauges, and histograms.

In-process only, exported as JSON by the probe server. Reconciliation
records:

    tfcontrol_ready{name, namespace}          gauge  1 True / 0 False / -1 Unknown
    tfcontrol_suspended{name, namespace}      gauge  1 when spec.suspend
    tfcontrol_reconcile_duration_ms           histogram
    tfcontrol_reconcile_total{outcome}        counter
"""

from __future__ import annotations

import builtins
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from tfcontrol.core.models.conditions import READY, ConditionStatus, find_condition
from tfcontrol.core.models.resource import ManagedResource

READY_METRIC = "tfcontrol_ready"
SUSPENDED_METRIC = "tfcontrol_suspended"
DURATION_METRIC = "tfcontrol_reconcile_duration_ms"
RECONCILE_METRIC = "tfcontrol_reconcile_total"


@dataclass
class Counter:
    """Monotonically increasing counter."""

    name: str
    value: int = 0
    labels: dict[str, str] = field(default_factory=dict)

    def inc(self, n: int = 1) -> None:
        self.value += n

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": "counter", "value": self.value, "labels": self.labels}


@dataclass
class Gauge:
    """Value that can go up and down."""

    name: str
    value: float = 0.0
    labels: dict[str, str] = field(default_factory=dict)

    def set(self, v: float) -> None:
        self.value = v

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": "gauge", "value": self.value, "labels": self.labels}


@dataclass
class Histogram:
    """Simple histogram tracking min, max, sum, count."""

    name: str
    _values: list[float] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)

    def observe(self, value: float) -> None:
        self._values.append(value)

    @property
    def count(self) -> int:
        return len(self._values)

    @property
    def total(self) -> float:
        return sum(self._values)

    @property
    def mean(self) -> float:
        if not self._values:
            return 0.0
        return self.total / self.count

    @property
    def max(self) -> float:
        return builtins.max(self._values) if self._values else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": "histogram",
            "count": self.count,
            "total": self.total,
            "mean": round(self.mean, 2),
            "max": self.max,
            "labels": self.labels,
        }


class MetricsRegistry:
    """Central registry for all metrics. Safe to share between workers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}

    @staticmethod
    def _key(name: str, labels: dict[str, str]) -> str:
        return f"{name}:{sorted(labels.items())}" if labels else name

    def counter(self, name: str, /, **labels: str) -> Counter:
        """Get or create a counter."""
        key = self._key(name, labels)
        with self._lock:
            if key not in self._counters:
                self._counters[key] = Counter(name=name, labels=labels)
            return self._counters[key]

    def gauge(self, name: str, /, **labels: str) -> Gauge:
        key = self._key(name, labels)
        with self._lock:
            if key not in self._gauges:
                self._gauges[key] = Gauge(name=name, labels=labels)
            return self._gauges[key]

    def histogram(self, name: str, /, **labels: str) -> Histogram:
        key = self._key(name, labels)
        with self._lock:
            if key not in self._histograms:
                self._histograms[key] = Histogram(name=name, labels=labels)
            return self._histograms[key]

    def timer(self, name: str, /, **labels: str) -> TimerContext:
        """Create a timer context that records duration to a histogram."""
        return TimerContext(self.histogram(name, **labels))

    def to_dict(self) -> dict[str, list[dict]]:
        with self._lock:
            return {
                "counters": [c.to_dict() for c in self._counters.values()],
                "gauges": [g.to_dict() for g in self._gauges.values()],
                "histograms": [h.to_dict() for h in self._histograms.values()],
            }

    # ── Reconciliation helpers ──────────────────────────────────

    def record_readiness(self, resource: ManagedResource) -> None:
        ready = find_condition(resource.status.conditions, READY)
        value = -1.0
        if ready is not None and ready.status == ConditionStatus.TRUE:
            value = 1.0
        elif ready is not None and ready.status == ConditionStatus.FALSE:
            value = 0.0
        self.gauge(READY_METRIC, name=resource.name, namespace=resource.namespace).set(value)

    def record_suspension(self, resource: ManagedResource) -> None:
        gauge = self.gauge(SUSPENDED_METRIC, name=resource.name, namespace=resource.namespace)
        gauge.set(1.0 if resource.spec.suspend else 0.0)

    def record_outcome(self, outcome: str) -> None:
        self.counter(RECONCILE_METRIC, outcome=outcome).inc()


class TimerContext:
    """Context manager for timing operations."""

    def __init__(self, histogram: Histogram):
        self._histogram = histogram
        self._start: float = 0.0

    def __enter__(self) -> TimerContext:
        self._start = time.monotonic()
        return self

    def __exit__(self, *args: Any) -> None:
        elapsed_ms = (time.monotonic() - self._start) * 1000
        self._histogram.observe(elapsed_ms)
