"""
Health checker — aggregate controller health from components.

Backs the ``/healthz`` and ``/readyz`` probes. The controller is ready
once the certificate rotator has signalled and the work queue accepts
work.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from tfcontrol.core.engine.worker import WorkQueue
from tfcontrol.core.services.cert_rotation import CertRotator

logger = logging.getLogger(__name__)


@dataclass
class ComponentHealth:
    """Health of a single component."""

    name: str
    status: str = "unknown"  # healthy, degraded, unhealthy, unknown
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class SystemHealth:
    """Aggregate health of the controller."""

    status: str = "healthy"
    timestamp: str = ""
    components: list[ComponentHealth] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(UTC).isoformat()

    def add(self, component: ComponentHealth) -> None:
        self.components.append(component)
        self._recalculate()

    def _recalculate(self) -> None:
        statuses = [c.status for c in self.components]
        if any(s == "unhealthy" for s in statuses):
            self.status = "unhealthy"
        elif any(s == "degraded" for s in statuses):
            self.status = "degraded"
        elif all(s == "healthy" for s in statuses):
            self.status = "healthy"
        else:
            self.status = "unknown"

    @property
    def ok(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp,
            "components": [c.to_dict() for c in self.components],
        }


def check_cert_rotation(rotator: CertRotator) -> ComponentHealth:
    if not rotator.ready.is_set():
        return ComponentHealth(name="cert_rotation", status="unhealthy", message="Waiting for first rotation")
    if not rotator.is_ca_valid():
        return ComponentHealth(name="cert_rotation", status="degraded", message="CA expires soon, rotation pending")
    return ComponentHealth(name="cert_rotation", status="healthy", message="CA valid")


def check_work_queue(queue: WorkQueue) -> ComponentHealth:
    if queue.shutting_down:
        return ComponentHealth(name="work_queue", status="unhealthy", message="Shutting down")
    return ComponentHealth(
        name="work_queue",
        status="healthy",
        message=f"{len(queue)} queued",
        details={"queued": len(queue), "delayed": queue.pending_delayed()},
    )


def check_readiness(rotator: CertRotator, queue: WorkQueue | None = None) -> SystemHealth:
    """Readiness of the whole controller."""
    health = SystemHealth()
    health.add(check_cert_rotation(rotator))
    if queue is not None:
        health.add(check_work_queue(queue))
    logger.debug("Readiness: %s", health.status)
    return health
