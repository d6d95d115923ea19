"""
Reconciler — one reconciliation attempt for one resource key.

    ensure trust (cert rotation)
    fetch resource ─ missing ──────────────────────────→ done
    ensure finalizer
    suspended ─────────────────────────────────────────→ done
    deleting with dependants ─ not-ready ──────────────→ retry interval
    resolve source ─ missing / no artifact ─ not-ready ─→ retry interval
    dependencies ─ not ready ─ not-ready + event ──────→ retry interval
    readiness → Progressing (unless Unknown)
    acquire runner ─ error ────────────────────────────→ raise (backoff)
    │   (runner cleanup from here on, whatever happens)
    deleting ─ finalize ───────────────────────────────→ its own result
    new revision, not approved ─ clear pending plan
    pending plan, not approved ────────────────────────→ done (wait)
    plan/apply/drift cycle, patch status
        drift ─────────────────────────────────────────→ retry interval
        failed ─ warning event ────────────────────────→ retry interval
        pending plan awaiting approval ────────────────→ done (wait)
        succeeded ─────────────────────────────────────→ interval

Transient cluster errors propagate to the work queue, which retries
them with per-key exponential backoff. Every attempt only depends on
persisted status, so it is safe to re-run from any point.
"""

from __future__ import annotations

import logging
import time
import uuid

from tfcontrol.adapters.base import ClusterClient, Runner
from tfcontrol.core.engine import transitions
from tfcontrol.core.engine.cycle import PlanApplyCycle, force_or_auto_apply, should_apply
from tfcontrol.core.engine.finalize import Finalizer
from tfcontrol.core.errors import DependencyNotReadyError, NotFoundError
from tfcontrol.core.models.conditions import (
    ARTIFACT_FAILED_REASON,
    DELETION_BLOCKED_BY_DEPENDANTS_REASON,
    DEPENDENCY_NOT_READY_REASON,
    READY,
    ConditionStatus,
    find_condition,
)
from tfcontrol.core.models.meta import NamespacedName
from tfcontrol.core.models.resource import FINALIZER, ManagedResource
from tfcontrol.core.models.result import ReconcileResult
from tfcontrol.core.models.source import SourceObject
from tfcontrol.core.observability.logging_config import reconcile_logger
from tfcontrol.core.observability.metrics import DURATION_METRIC, MetricsRegistry
from tfcontrol.core.services.artifact import ArtifactFetcher
from tfcontrol.core.services.dependencies import check_dependencies
from tfcontrol.core.services.events import SEVERITY_ERROR, SEVERITY_INFO, EventRecorder
from tfcontrol.core.services.health_checks import HealthChecker
from tfcontrol.core.services.runner_lifecycle import RunnerLifecycle

logger = logging.getLogger(__name__)

DEFAULT_FIELD_OWNER = "tf-controller"


def short_revision(revision: str) -> str:
    """``main/abcdef0123…`` → ``main/abcdef0``."""
    keep = 8
    if "/" in revision:
        return revision[: revision.index("/") + keep]
    return revision[:keep]


class Reconciler:
    """Drives one resource toward its declared state per call."""

    def __init__(
        self,
        cluster: ClusterClient,
        runners: RunnerLifecycle,
        fetcher: ArtifactFetcher,
        field_owner: str = DEFAULT_FIELD_OWNER,
        events: EventRecorder | None = None,
        metrics: MetricsRegistry | None = None,
        health_checker: HealthChecker | None = None,
    ):
        self.cluster = cluster
        self.runners = runners
        self.fetcher = fetcher
        self.field_owner = field_owner
        self.events = events or EventRecorder()
        self.metrics = metrics or MetricsRegistry()
        self.cycle = PlanApplyCycle(
            cluster,
            fetcher,
            field_owner=field_owner,
            health_checker=health_checker,
            on_event=self.events.record,
        )
        self.finalizer = Finalizer(cluster, fetcher, field_owner=field_owner)

    def reconcile(self, key: NamespacedName) -> ReconcileResult:
        """Run one attempt for ``key`` and return the requeue directive."""
        log = reconcile_logger(logger, str(key), str(uuid.uuid4()))
        start = time.monotonic()
        with self.metrics.timer(DURATION_METRIC):
            result = self._reconcile(key, log)
        log.debug("Attempt finished in %.2fs: %s", time.monotonic() - start, result.describe())
        return result

    def _patch_status(self, resource: ManagedResource) -> None:
        self.cluster.patch_status(resource.key, resource.status, self.field_owner)

    def _reconcile(self, key: NamespacedName, log: logging.LoggerAdapter) -> ReconcileResult:
        self.runners.rotator.ensure_trust()

        try:
            resource = self.cluster.get(key)
        except NotFoundError:
            log.debug("Resource not found, assuming it was deleted")
            return ReconcileResult.done()
        log.info(">> Started generation %d", resource.generation)

        try:
            return self._reconcile_resource(resource, log)
        finally:
            self.metrics.record_suspension(resource)

    def _reconcile_resource(self, resource: ManagedResource, log: logging.LoggerAdapter) -> ReconcileResult:
        if FINALIZER not in resource.metadata.finalizers:
            resource = self.cluster.patch_finalizers(
                resource.key, [*resource.metadata.finalizers, FINALIZER], self.field_owner
            )

        if resource.spec.suspend:
            log.info("Reconciliation is suspended for this object")
            self.metrics.record_outcome("suspended")
            return ReconcileResult.done()

        if resource.is_being_deleted:
            dependants = resource.dependants()
            if dependants:
                message = f"Deletion in progress, but blocked. Please delete {', '.join(dependants)} to resume ..."
                resource = transitions.not_ready(resource, "", DELETION_BLOCKED_BY_DEPENDANTS_REASON, message)
                self._patch_status(resource)
                self.metrics.record_readiness(resource)
                log.info(message)
                return ReconcileResult.after(resource.retry_interval)

        # ── Source ──────────────────────────────────────────────
        source_kind = resource.spec.source_ref.kind
        try:
            source = self.cluster.get_source(source_kind, resource.source_key)
        except NotFoundError:
            message = f"Source '{resource.spec.source_ref}' not found"
            return self._source_not_ready(resource, message, log)

        artifact = source.get_artifact()
        if artifact is None:
            return self._source_not_ready(resource, "Source is not ready, artifact not found", log)
        revision = artifact.revision

        # ── Dependencies ────────────────────────────────────────
        if resource.spec.depends_on and not resource.is_being_deleted:
            try:
                check_dependencies(self.cluster, source, resource, self.field_owner)
            except DependencyNotReadyError as e:
                resource = transitions.not_ready(resource, revision, DEPENDENCY_NOT_READY_REASON, str(e))
                self._patch_status(resource)
                message = (
                    "Dependencies do not meet ready condition, retrying in "
                    f"{resource.retry_interval.total_seconds():g}s"
                )
                log.info(message)
                self.events.record(resource, SEVERITY_INFO, message, revision)
                self.metrics.record_readiness(resource)
                return ReconcileResult.after(resource.retry_interval)
            log.info("All dependencies are ready, proceeding with reconciliation")

        # Leave an Unknown readiness alone so the approval prompt stays visible.
        ready = find_condition(resource.status.conditions, READY)
        if ready is None or ready.status != ConditionStatus.UNKNOWN:
            message = "Deletion in progress" if resource.is_being_deleted else "Reconciliation in progress"
            resource = transitions.progressing(resource, message)
            self._patch_status(resource)
            self.metrics.record_readiness(resource)

        # ── Runner ──────────────────────────────────────────────
        try:
            handle = self.runners.acquire(resource)
        except Exception:
            log.error("Unable to look up or create runner")
            self.runners.cleanup(resource, None)
            raise
        log.info("Runner is running")

        try:
            return self._run(resource, handle.runner, source, revision, log)
        finally:
            self.runners.cleanup(resource, handle)

    def _source_not_ready(
        self,
        resource: ManagedResource,
        message: str,
        log: logging.LoggerAdapter,
    ) -> ReconcileResult:
        resource = transitions.not_ready(resource, "", ARTIFACT_FAILED_REASON, message)
        self._patch_status(resource)
        self.metrics.record_readiness(resource)
        log.info(message)
        return ReconcileResult.after(resource.retry_interval)

    def _run(
        self,
        resource: ManagedResource,
        runner: Runner,
        source: SourceObject,
        revision: str,
        log: logging.LoggerAdapter,
    ) -> ReconcileResult:
        if resource.is_being_deleted:
            log.info("Finalizing")
            return self.finalizer.finalize(resource, runner, source)

        if revision != resource.status.last_attempted_revision and not should_apply(resource):
            resource = transitions.clear_pending_plan(resource)
            self._patch_status(resource)

        if resource.status.plan.pending and not force_or_auto_apply(resource) and not should_apply(resource):
            log.info("Reconciliation is stopped to wait for a manual approve")
            self.metrics.record_outcome("awaiting_approval")
            return ReconcileResult.done()

        result = self.cycle.run(resource, runner, source)
        reconciled = result.resource
        self._patch_status(reconciled)
        self.metrics.record_readiness(reconciled)
        self.metrics.record_outcome(str(result.outcome))

        retry = resource.retry_interval
        if result.drift_detected:
            log.error(
                "Drift detected at revision %s, next try in %gs",
                short_revision(revision), retry.total_seconds(),
            )
            return ReconcileResult.after(retry)
        if result.failed:
            log.error(
                "Reconciliation failed at revision %s, next try in %gs: %s",
                short_revision(revision), retry.total_seconds(), result.error,
            )
            self.events.record(reconciled, SEVERITY_ERROR, str(result.error), revision)
            return ReconcileResult.after(retry)

        log.info("Reconciliation completed. Generation: %d", reconciled.generation)
        if reconciled.status.plan.pending and not force_or_auto_apply(reconciled):
            log.info("Reconciliation is stopped to wait for a manual approve")
            return ReconcileResult.done()

        return ReconcileResult.after(resource.spec.interval)
