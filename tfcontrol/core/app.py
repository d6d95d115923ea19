"""
Controller wiring — builds the runtime from a ControllerConfig.

    CertRotator ◄── RotationServer (thread)
        │
    RunnerLifecycle ── RunnerProvisioner
        │
    Reconciler ── ArtifactFetcher, EventRecorder, MetricsRegistry
        │
    Controller (worker threads) ◄── PollingWatcher (thread)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tfcontrol.adapters.base import ClusterClient, RunnerProvisioner
from tfcontrol.core.engine.orchestrator import Reconciler
from tfcontrol.core.engine.watch import PollingWatcher
from tfcontrol.core.engine.worker import Controller
from tfcontrol.core.models.config import ControllerConfig
from tfcontrol.core.observability.metrics import MetricsRegistry
from tfcontrol.core.reliability.backoff import RetryPolicy
from tfcontrol.core.services.artifact import ArtifactFetcher
from tfcontrol.core.services.cert_rotation import CertRotator, RotationServer
from tfcontrol.core.services.events import EventRecorder
from tfcontrol.core.services.runner_lifecycle import RunnerLifecycle

logger = logging.getLogger(__name__)


@dataclass
class ControllerApp:
    config: ControllerConfig
    rotator: CertRotator
    rotation_server: RotationServer
    reconciler: Reconciler
    controller: Controller
    watcher: PollingWatcher
    metrics: MetricsRegistry
    events: EventRecorder

    def start(self) -> None:
        self.rotation_server.start()
        self.controller.start()
        self.watcher.start()
        logger.info("Controller started")

    def stop(self) -> None:
        self.watcher.stop()
        self.controller.stop()
        self.rotation_server.stop()
        logger.info("Controller stopped")


def build_app(
    config: ControllerConfig,
    cluster: ClusterClient,
    provisioner: RunnerProvisioner,
    fetcher: ArtifactFetcher | None = None,
) -> ControllerApp:
    """Assemble every component of the controller (nothing is started)."""
    rotator = CertRotator(lookahead=config.ca_lookahead)
    rotation_server = RotationServer(rotator, validity=config.ca_validity)
    metrics = MetricsRegistry()
    events = EventRecorder()

    if fetcher is None:
        fetcher = ArtifactFetcher(
            policy=RetryPolicy(
                retries=config.http_retry,
                wait_min=config.http_retry_wait_min.total_seconds(),
                wait_max=config.http_retry_wait_max.total_seconds(),
            ),
            timeout=config.http_timeout.total_seconds(),
            localhost_override=config.source_controller_localhost,
        )

    runners = RunnerLifecycle(
        cluster,
        provisioner,
        rotator,
        creation_timeout=config.runner_creation_timeout.total_seconds(),
        insecure_local_runner=config.insecure_local_runner,
        poll_interval=config.runner_poll_interval.total_seconds(),
        poll_timeout=config.runner_poll_timeout.total_seconds(),
    )
    reconciler = Reconciler(
        cluster,
        runners,
        fetcher,
        field_owner=config.field_owner,
        events=events,
        metrics=metrics,
    )
    controller = Controller(reconciler.reconcile, cluster, workers=config.max_concurrent_reconciles)
    watcher = PollingWatcher(
        cluster,
        controller.enqueue,
        controller.on_source_changed,
        interval=config.watch_interval.total_seconds(),
        resync=config.resync_interval.total_seconds(),
    )
    return ControllerApp(
        config=config,
        rotator=rotator,
        rotation_server=rotation_server,
        reconciler=reconciler,
        controller=controller,
        watcher=watcher,
        metrics=metrics,
        events=events,
    )
