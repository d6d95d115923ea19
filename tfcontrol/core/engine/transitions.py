"""
Status transitions — the plan/apply/drift state machine.

The machine has no single state field. Its state is spread across the
Ready, Plan, Apply, Output, StateLocked and HealthCheck conditions plus
the plan, lock and revision fields of the status:

    Progressing → {ArtifactFailed, DependencyNotReady}
                → Planning → {NoChanges, PlannedWithChanges (pending)}
                → Applying → {Applied, AppliedFail}
                → {OutputsWritten, HealthCheckFailed/Succeeded}

plus an orthogonal Drift axis and a StateLocked axis.

Every function takes a resource snapshot and returns a NEW resource;
the input is never mutated. The orchestrator persists the final value
with a single status patch.
"""

from __future__ import annotations

from datetime import datetime

from tfcontrol.core.models.conditions import (
    APPLY,
    HEALTH_CHECK,
    HEALTH_CHECKS_FAILED_REASON,
    HEALTH_CHECKS_SUCCEED_REASON,
    OUTPUT,
    OUTPUTS_AVAILABLE_REASON,
    OUTPUTS_WRITTEN_REASON,
    PLAN,
    PLANNED_NO_CHANGES_REASON,
    PLANNED_WITH_CHANGES_REASON,
    POST_PLANNING_WEBHOOK_FAILED_REASON,
    PROGRESSING_REASON,
    READY,
    STATE_LOCKED,
    TF_EXEC_APPLY_FAIL_REASON,
    TF_EXEC_APPLY_SUCCEED_REASON,
    TF_EXEC_FORCE_UNLOCK_REASON,
    TF_EXEC_LOCK_HELD_REASON,
    ConditionStatus,
    set_condition,
    trim_message,
)
from tfcontrol.core.models.meta import utcnow
from tfcontrol.core.models.resource import (
    ManagedResource,
    PlanStatus,
    ResourceInventory,
    ResourceRef,
)

SHORT_PLAN_ID_COMMIT_CHARS = 10


def _copy(resource: ManagedResource) -> ManagedResource:
    return resource.model_copy(deep=True)


def _set(
    resource: ManagedResource,
    condition_type: str,
    status: ConditionStatus,
    reason: str,
    message: str,
    now: datetime | None = None,
) -> None:
    resource.status.conditions = set_condition(
        resource.status.conditions, condition_type, status, reason, message, now
    )


def _set_readiness(
    resource: ManagedResource,
    status: ConditionStatus,
    reason: str,
    message: str,
    revision: str,
    now: datetime | None = None,
) -> None:
    """Set Ready, stamp the observed generation and the attempted revision."""
    _set(resource, READY, status, reason, message, now)
    resource.status.observed_generation = resource.generation
    if revision:
        resource.status.last_attempted_revision = revision


def _record_planned_revision(resource: ManagedResource, revision: str) -> None:
    if revision:
        resource.status.last_attempted_revision = revision
        resource.status.last_planned_revision = revision


# ── Plan identifiers ────────────────────────────────────────────


def plan_id_and_approve_message(revision: str, message: str) -> tuple[str, str]:
    """Derive the plan id for a revision and the manual-approval message.

    ``main/abcdef…`` yields ``plan-main-abcdef…``; the message embeds the
    short id ``plan-main-<first 10 commit chars>`` that an operator
    copies into ``approvePlan``.
    """
    plan_id = "plan-" + revision.replace("/", "-", 1)
    short_plan_id = plan_id
    parts = revision.split("/", 1)
    if len(parts) == 2 and len(parts[1]) >= SHORT_PLAN_ID_COMMIT_CHARS:
        short_plan_id = f"plan-{parts[0]}-{parts[1][:SHORT_PLAN_ID_COMMIT_CHARS]}"
    approve_message = f'{message}: set approvePlan: "{short_plan_id}" to approve this plan.'
    return plan_id, approve_message


# ── Readiness ───────────────────────────────────────────────────


def progressing(resource: ManagedResource, message: str, now: datetime | None = None) -> ManagedResource:
    """Reset readiness to Unknown; work is about to start."""
    out = _copy(resource)
    _set(out, READY, ConditionStatus.UNKNOWN, PROGRESSING_REASON, message, now)
    return out


def not_ready(
    resource: ManagedResource,
    revision: str,
    reason: str,
    message: str,
    now: datetime | None = None,
) -> ManagedResource:
    """Record a failed attempt: readiness False with a specific reason."""
    out = _copy(resource)
    _set_readiness(out, ConditionStatus.FALSE, reason, trim_message(message), revision, now)
    return out


def ready(
    resource: ManagedResource,
    revision: str,
    reason: str,
    message: str,
    now: datetime | None = None,
) -> ManagedResource:
    out = _copy(resource)
    _set_readiness(out, ConditionStatus.TRUE, reason, message, revision, now)
    return out


# ── Plan ────────────────────────────────────────────────────────


def planned_with_changes(
    resource: ManagedResource,
    revision: str,
    force_or_auto_apply: bool,
    message: str,
    now: datetime | None = None,
) -> ManagedResource:
    """Record a new pending plan awaiting (automatic or manual) approval."""
    plan_id, approve_message = plan_id_and_approve_message(revision, message)
    out = _copy(resource)
    _set(out, PLAN, ConditionStatus.TRUE, PLANNED_WITH_CHANGES_REASON, message, now)
    out.status.plan = PlanStatus(
        last_applied=resource.status.plan.last_applied,
        pending=plan_id,
        is_destroy_plan=resource.spec.destroy,
        is_drift_detection_plan=resource.has_drift(),
    )
    _record_planned_revision(out, revision)

    readiness_message = message if force_or_auto_apply else approve_message
    _set_readiness(
        out, ConditionStatus.UNKNOWN, PLANNED_WITH_CHANGES_REASON, readiness_message, revision, now
    )
    return out


def planned_no_changes(
    resource: ManagedResource,
    revision: str,
    message: str,
    now: datetime | None = None,
) -> ManagedResource:
    out = _copy(resource)
    _set(out, PLAN, ConditionStatus.FALSE, PLANNED_NO_CHANGES_REASON, message, now)
    out.status.plan = PlanStatus(
        last_applied=resource.status.plan.last_applied,
        pending="",
        is_destroy_plan=resource.spec.destroy,
    )
    _record_planned_revision(out, revision)
    _set_readiness(
        out, ConditionStatus.TRUE, PLANNED_NO_CHANGES_REASON, f"{message}: {revision}", revision, now
    )
    return out


def post_planning_webhook_failed(
    resource: ManagedResource,
    revision: str,
    message: str,
    now: datetime | None = None,
) -> ManagedResource:
    out = _copy(resource)
    _set(out, PLAN, ConditionStatus.FALSE, POST_PLANNING_WEBHOOK_FAILED_REASON, message, now)
    out.status.plan = PlanStatus(
        last_applied=resource.status.plan.last_applied,
        pending="",
        is_destroy_plan=resource.spec.destroy,
    )
    _record_planned_revision(out, revision)
    return out


def clear_pending_plan(resource: ManagedResource) -> ManagedResource:
    """Drop the pending plan so the next cycle plans afresh."""
    out = _copy(resource)
    out.status.plan.pending = ""
    return out


# ── Apply ───────────────────────────────────────────────────────


def applying(
    resource: ManagedResource,
    revision: str,
    message: str,
    now: datetime | None = None,
) -> ManagedResource:
    out = _copy(resource)
    _set(out, APPLY, ConditionStatus.UNKNOWN, PROGRESSING_REASON, message, now)
    if revision:
        out.status.last_attempted_revision = revision
    return out


def applied(
    resource: ManagedResource,
    revision: str,
    message: str,
    is_destroy_apply: bool,
    entries: list[ResourceRef] | None = None,
    now: datetime | None = None,
) -> ManagedResource:
    """Move the pending plan into last-applied."""
    now = now or utcnow()
    out = _copy(resource)
    _set(out, APPLY, ConditionStatus.TRUE, TF_EXEC_APPLY_SUCCEED_REASON, message, now)

    if resource.status.plan.is_drift_detection_plan:
        out.status.last_applied_by_drift_detection_at = now

    out.status.plan = PlanStatus(
        last_applied=resource.status.plan.pending,
        pending="",
        is_destroy_plan=is_destroy_apply,
    )
    if revision:
        out.status.last_applied_revision = revision
    if entries:
        out.status.inventory = ResourceInventory(entries=list(entries))

    _set_readiness(
        out, ConditionStatus.UNKNOWN, TF_EXEC_APPLY_SUCCEED_REASON, f"{message}: {revision}", revision, now
    )
    return out


def applied_fail_reset_plan_and_not_ready(
    resource: ManagedResource,
    revision: str,
    reason: str,
    message: str,
    now: datetime | None = None,
) -> ManagedResource:
    """Apply failed: clear the pending plan (forces a re-plan) and go not-ready."""
    out = _copy(resource)
    _set(out, APPLY, ConditionStatus.FALSE, TF_EXEC_APPLY_FAIL_REASON, message, now)
    _set_readiness(out, ConditionStatus.FALSE, reason, trim_message(message), revision, now)
    out.status.plan.pending = ""
    return out


# ── Drift ───────────────────────────────────────────────────────


def drift_detected(
    resource: ManagedResource,
    revision: str,
    reason: str,
    message: str,
    now: datetime | None = None,
) -> ManagedResource:
    now = now or utcnow()
    out = _copy(resource)
    out.status.last_drift_detected_at = now
    _set_readiness(out, ConditionStatus.FALSE, reason, trim_message(message), revision, now)
    return out


def no_drift(
    resource: ManagedResource,
    revision: str,
    reason: str,
    message: str,
    now: datetime | None = None,
) -> ManagedResource:
    out = _copy(resource)
    _set_readiness(out, ConditionStatus.TRUE, reason, f"{message}: {revision}", revision, now)
    return out


# ── Outputs ─────────────────────────────────────────────────────


def outputs_available(
    resource: ManagedResource,
    available_outputs: list[str],
    message: str,
    now: datetime | None = None,
) -> ManagedResource:
    out = _copy(resource)
    _set(out, OUTPUT, ConditionStatus.TRUE, OUTPUTS_AVAILABLE_REASON, message, now)
    out.status.available_outputs = list(available_outputs)
    return out


def outputs_written(
    resource: ManagedResource,
    revision: str,
    message: str,
    now: datetime | None = None,
) -> ManagedResource:
    out = _copy(resource)
    _set(out, OUTPUT, ConditionStatus.TRUE, OUTPUTS_WRITTEN_REASON, message, now)
    _set_readiness(
        out, ConditionStatus.TRUE, OUTPUTS_WRITTEN_REASON, f"{message}: {revision}", revision, now
    )
    return out


# ── Health checks ───────────────────────────────────────────────


def health_check_failed(resource: ManagedResource, message: str, now: datetime | None = None) -> ManagedResource:
    out = _copy(resource)
    _set(out, HEALTH_CHECK, ConditionStatus.FALSE, HEALTH_CHECKS_FAILED_REASON, message, now)
    return out


def health_check_succeeded(resource: ManagedResource, message: str, now: datetime | None = None) -> ManagedResource:
    out = _copy(resource)
    _set(out, HEALTH_CHECK, ConditionStatus.TRUE, HEALTH_CHECKS_SUCCEED_REASON, message, now)
    return out


# ── State lock ──────────────────────────────────────────────────


def _promote_pending_lock(resource: ManagedResource) -> None:
    lock = resource.status.lock
    if lock.pending and lock.last_applied != lock.pending:
        lock.last_applied = lock.pending


def state_locked(
    resource: ManagedResource,
    lock_id: str,
    message: str,
    now: datetime | None = None,
) -> ManagedResource:
    """The state is held by ``lock_id``; readiness goes False."""
    out = _copy(resource)
    _set(out, STATE_LOCKED, ConditionStatus.TRUE, TF_EXEC_LOCK_HELD_REASON, message, now)
    _set_readiness(out, ConditionStatus.FALSE, TF_EXEC_LOCK_HELD_REASON, trim_message(message), "", now)
    _promote_pending_lock(out)
    out.status.lock.pending = lock_id
    return out


def force_unlock(resource: ManagedResource, message: str, now: datetime | None = None) -> ManagedResource:
    out = _copy(resource)
    _set(out, STATE_LOCKED, ConditionStatus.FALSE, TF_EXEC_FORCE_UNLOCK_REASON, message, now)
    _promote_pending_lock(out)
    out.status.lock.pending = ""
    return out
