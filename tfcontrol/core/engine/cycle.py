"""
Plan/apply/drift cycle — one pass of Terraform work for a resource.

    fetch + verify artifact
      → upload workspace to runner
      → force-unlock (tfstate.forceUnlock yes|auto)
      → drift detection            stops unless force/auto apply
      → drift-only mode stop       approvePlan: disable
      → plan                       pending plan id
      → apply                      only when approved
      → outputs (+ write secret)
      → health checks
      → readiness True

The cycle never patches status. It threads the resource through the
pure transitions and returns the final value in a ``CycleResult``; the
orchestrator persists it with a single patch.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from tfcontrol.adapters.base import (
    ApplyRequest,
    ClusterClient,
    PlanRequest,
    Runner,
    WorkspaceRequest,
)
from tfcontrol.core.engine import transitions
from tfcontrol.core.errors import (
    ArtifactError,
    ControllerError,
    HealthCheckError,
    RunnerError,
    StateLockedError,
)
from tfcontrol.core.models.conditions import (
    ARTIFACT_FAILED_REASON,
    DRIFT_DETECTED_REASON,
    DRIFT_DETECTION_FAILED_REASON,
    HEALTH_CHECKS_FAILED_REASON,
    NO_DRIFT_REASON,
    OUTPUTS_WRITING_FAILED_REASON,
    READY,
    TF_EXEC_APPLY_FAILED_REASON,
    TF_EXEC_APPLY_SUCCEED_REASON,
    TF_EXEC_INIT_FAILED_REASON,
    TF_EXEC_OUTPUT_FAILED_REASON,
    TF_EXEC_PLAN_FAILED_REASON,
    is_condition_true,
)
from tfcontrol.core.models.meta import NamespacedName
from tfcontrol.core.models.resource import (
    APPROVE_PLAN_AUTO,
    APPROVE_PLAN_DISABLE,
    ForceUnlock,
    ManagedResource,
)
from tfcontrol.core.models.source import SourceObject
from tfcontrol.core.services.artifact import ArtifactFetcher
from tfcontrol.core.services.events import SEVERITY_INFO
from tfcontrol.core.services.health_checks import HealthChecker

logger = logging.getLogger(__name__)

EventFn = Callable[[ManagedResource, str, str, str], Any]


class CycleOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    DRIFT_DETECTED = "drift_detected"
    FAILED = "failed"


@dataclass
class CycleResult:
    """Final resource value of a cycle and how the cycle ended."""

    resource: ManagedResource
    outcome: CycleOutcome
    error: Exception | None = None

    @property
    def failed(self) -> bool:
        return self.outcome == CycleOutcome.FAILED

    @property
    def drift_detected(self) -> bool:
        return self.outcome == CycleOutcome.DRIFT_DETECTED


class DriftDetected(ControllerError):
    """Live infrastructure diverged from the last applied state."""


# ── Decision predicates ─────────────────────────────────────────


def force_or_auto_apply(resource: ManagedResource) -> bool:
    return resource.spec.force or resource.spec.approve_plan == APPROVE_PLAN_AUTO


def should_plan(resource: ManagedResource) -> bool:
    return resource.spec.force or resource.status.plan.pending == ""


def should_apply(resource: ManagedResource) -> bool:
    """Whether the pending plan is approved.

    ``approvePlan`` approves when it is ``auto`` (with a plan pending),
    equals the pending plan id, or is a prefix of it (the short id).
    """
    if resource.spec.force:
        return True
    approve = resource.spec.approve_plan
    pending = resource.status.plan.pending
    if approve == "":
        return False
    if approve == APPROVE_PLAN_AUTO and pending != "":
        return True
    if approve == pending:
        return True
    return pending != "" and pending.startswith(approve)


def should_detect_drift(resource: ManagedResource, revision: str) -> bool:
    """Drift detection runs on a settled resource whose revision has not moved."""
    spec, status = resource.spec, resource.status
    if spec.force or spec.disable_drift_detection:
        return False
    if spec.approve_plan == APPROVE_PLAN_DISABLE:
        return True
    if spec.destroy:
        return False

    # new object
    if not (status.last_applied_revision or status.last_planned_revision or status.last_attempted_revision):
        return False

    if status.plan.pending != "":
        return False

    # applied normally, nothing pending since
    if (
        status.last_attempted_revision == status.last_applied_revision == revision
        and status.last_planned_revision == status.last_applied_revision
    ):
        return True

    # planned with no changes for this revision
    return status.last_attempted_revision == status.last_planned_revision == revision


# ── Cycle ───────────────────────────────────────────────────────


def render_outputs(outputs: dict[str, Any], names: list[str]) -> dict[str, str]:
    """Secret string data for ``outputs``; ``names`` selects a subset (empty = all)."""
    selected = {k: v for k, v in outputs.items() if not names or k in names}
    return {
        name: value if isinstance(value, str) else json.dumps(value, sort_keys=True)
        for name, value in selected.items()
    }


class PlanApplyCycle:
    """Runs the plan/apply/drift cycle over a connected runner."""

    def __init__(
        self,
        cluster: ClusterClient,
        fetcher: ArtifactFetcher,
        field_owner: str = "tf-controller",
        health_checker: HealthChecker | None = None,
        on_event: EventFn | None = None,
    ):
        self.cluster = cluster
        self.fetcher = fetcher
        self.field_owner = field_owner
        self.health_checker = health_checker or HealthChecker()
        self._on_event = on_event

    def _event(self, resource: ManagedResource, revision: str, message: str) -> None:
        if self._on_event is not None:
            self._on_event(resource, SEVERITY_INFO, message, revision)

    def run(self, resource: ManagedResource, runner: Runner, source: SourceObject) -> CycleResult:
        artifact = source.get_artifact()
        revision = artifact.revision if artifact else ""
        try:
            return self._run(resource, runner, source, revision)
        except _Stop as stop:
            return stop.result

    def _run(
        self,
        resource: ManagedResource,
        runner: Runner,
        source: SourceObject,
        revision: str,
    ) -> CycleResult:
        artifact = source.get_artifact()
        if artifact is None:
            error = ArtifactError("source has no artifact")
            return _fail(resource, revision, ARTIFACT_FAILED_REASON, error)

        # ── Artifact ────────────────────────────────────────────
        try:
            tarball = self.fetcher.fetch(artifact, owner=str(resource.key))
        except ArtifactError as e:
            return _fail(resource, revision, ARTIFACT_FAILED_REASON, e)

        # ── Workspace ───────────────────────────────────────────
        request = WorkspaceRequest(
            resource=resource,
            revision=revision,
            tarball=tarball,
            path=resource.spec.path,
            workspace=resource.workspace_name,
            variables={v.name: v.value for v in resource.spec.vars},
        )
        self._call(resource, revision, TF_EXEC_INIT_FAILED_REASON, runner.upload, request)

        resource = self._force_unlock(resource, runner, revision)

        # ── Drift ───────────────────────────────────────────────
        if should_detect_drift(resource, revision):
            drift = self._call(
                resource, revision, DRIFT_DETECTION_FAILED_REASON, runner.plan,
                PlanRequest(resource=resource, revision=revision, drift_detection=True),
            )
            if drift.has_changes:
                message = drift.message or "Drift detected"
                resource = transitions.drift_detected(resource, revision, DRIFT_DETECTED_REASON, message)
                if not force_or_auto_apply(resource):
                    return CycleResult(resource, CycleOutcome.DRIFT_DETECTED, DriftDetected(message))
                logger.info("Drift detected for %s, correcting with a new plan", resource.key)
            else:
                resource = transitions.no_drift(resource, revision, NO_DRIFT_REASON, "No drift")
                return CycleResult(resource, CycleOutcome.SUCCEEDED)

        if resource.spec.approve_plan == APPROVE_PLAN_DISABLE:
            logger.info("Plan and apply disabled for %s, drift detection only", resource.key)
            return CycleResult(resource, CycleOutcome.SUCCEEDED)

        # ── Plan ────────────────────────────────────────────────
        if should_plan(resource):
            resource = transitions.progressing(resource, "Terraform Planning")
            plan_id, _ = transitions.plan_id_and_approve_message(revision, "")
            outcome = self._call(
                resource, revision, TF_EXEC_PLAN_FAILED_REASON, runner.plan,
                PlanRequest(
                    resource=resource,
                    revision=revision,
                    plan_id=plan_id,
                    destroy=resource.spec.destroy,
                    targets=resource.spec.targets,
                ),
            )
            if outcome.has_changes:
                resource = transitions.planned_with_changes(
                    resource, revision, force_or_auto_apply(resource), outcome.message or "Plan generated"
                )
                self._event(resource, revision, "Planned with changes")
            else:
                resource = transitions.planned_no_changes(resource, revision, "Plan no changes")
                self._event(resource, revision, "Plan no changes")

        if not resource.status.plan.pending:
            return CycleResult(resource, CycleOutcome.SUCCEEDED)
        if not should_apply(resource):
            logger.debug("Apply not approved for %s", resource.key)
            return CycleResult(resource, CycleOutcome.SUCCEEDED)

        # ── Apply ───────────────────────────────────────────────
        is_destroy = resource.status.plan.is_destroy_plan
        resource = transitions.applying(resource, revision, "Terraform Applying")
        try:
            applied = runner.apply(
                ApplyRequest(
                    resource=resource,
                    revision=revision,
                    plan_id=resource.status.plan.pending,
                    destroy=is_destroy,
                )
            )
        except StateLockedError as e:
            return _locked(resource, e)
        except RunnerError as e:
            resource = transitions.applied_fail_reset_plan_and_not_ready(
                resource, revision, TF_EXEC_APPLY_FAILED_REASON, str(e)
            )
            return CycleResult(resource, CycleOutcome.FAILED, e)

        entries = applied.entries if resource.spec.enable_inventory else None
        resource = transitions.applied(
            resource, revision, applied.message or "Applied successfully", is_destroy, entries
        )
        self._event(resource, revision, "Applied successfully")

        # ── Outputs and health checks ───────────────────────────
        outputs: dict[str, Any] = {}
        if not is_destroy:
            outputs = self._call(resource, revision, TF_EXEC_OUTPUT_FAILED_REASON, runner.outputs, resource)
            resource = transitions.outputs_available(resource, sorted(outputs), "Outputs available")
            resource = self._write_outputs(resource, revision, outputs)
            resource = self._health_checks(resource, revision, outputs)

        if not is_condition_true(resource.status.conditions, READY):
            resource = transitions.ready(
                resource, revision, TF_EXEC_APPLY_SUCCEED_REASON, f"Applied successfully: {revision}"
            )
        return CycleResult(resource, CycleOutcome.SUCCEEDED)

    # ── Steps ───────────────────────────────────────────────────

    def _call(self, resource: ManagedResource, revision: str, reason: str, fn: Callable, *args: Any) -> Any:
        """Invoke a runner step, turning runner errors into a stopped cycle."""
        try:
            return fn(*args)
        except StateLockedError as e:
            raise _Stop(_locked(resource, e)) from e
        except RunnerError as e:
            raise _Stop(_fail(resource, revision, reason, e)) from e

    def _force_unlock(self, resource: ManagedResource, runner: Runner, revision: str) -> ManagedResource:
        tfstate = resource.spec.tfstate
        pending = resource.status.lock.pending
        if tfstate is None or not pending:
            return resource
        if tfstate.force_unlock == ForceUnlock.NO:
            return resource
        if tfstate.force_unlock == ForceUnlock.YES and tfstate.lock_identifier != pending:
            logger.info("Lock identifier does not match held lock %s, not unlocking", pending)
            return resource

        self._call(resource, revision, TF_EXEC_INIT_FAILED_REASON, runner.force_unlock, resource, pending)
        logger.info("Force-unlocked state of %s (lock %s)", resource.key, pending)
        return transitions.force_unlock(resource, f"Terraform Force Unlock: {pending}")

    def _write_outputs(self, resource: ManagedResource, revision: str, outputs: dict[str, Any]) -> ManagedResource:
        target = resource.spec.write_outputs_to_secret
        if target is None:
            return resource
        key = NamespacedName(namespace=resource.namespace, name=target.name)
        try:
            self.cluster.apply_secret(key, render_outputs(outputs, target.outputs), self.field_owner)
        except ControllerError as e:
            raise _Stop(_fail(resource, revision, OUTPUTS_WRITING_FAILED_REASON, e)) from e
        return transitions.outputs_written(resource, revision, "Outputs written")

    def _health_checks(self, resource: ManagedResource, revision: str, outputs: dict[str, Any]) -> ManagedResource:
        checks = resource.spec.health_checks
        if not checks:
            return resource
        try:
            self.health_checker.check_all(checks, outputs)
        except HealthCheckError as e:
            failed = transitions.health_check_failed(resource, str(e))
            raise _Stop(_fail(failed, revision, HEALTH_CHECKS_FAILED_REASON, e)) from e
        return transitions.health_check_succeeded(resource, "All health checks succeeded")


class _Stop(Exception):
    """Ends the cycle early with a finished result."""

    def __init__(self, result: CycleResult):
        super().__init__(result.outcome)
        self.result = result


def _fail(resource: ManagedResource, revision: str, reason: str, error: Exception) -> CycleResult:
    resource = transitions.not_ready(resource, revision, reason, str(error))
    return CycleResult(resource, CycleOutcome.FAILED, error)


def _locked(resource: ManagedResource, error: StateLockedError) -> CycleResult:
    resource = transitions.state_locked(resource, error.lock_id, str(error))
    return CycleResult(resource, CycleOutcome.FAILED, error)
