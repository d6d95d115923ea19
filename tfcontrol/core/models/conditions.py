"""
Status conditions — typed, timestamped status facts.

A condition list is upserted by type. Writing a condition whose
status, reason and message all match the stored one keeps the stored
``lastTransitionTime``; any difference stamps a new one. Conditions are
the only place where reconciliation outcomes are recorded.

All helpers here return new lists and never mutate their inputs.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import Field

from tfcontrol.core.models.meta import WireModel, utcnow

MAX_CONDITION_MESSAGE_LENGTH = 20000


class ConditionStatus(StrEnum):
    """Tri-state condition status."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


# ── Condition types ─────────────────────────────────────────────

READY = "Ready"
APPLY = "Apply"
PLAN = "Plan"
OUTPUT = "Output"
HEALTH_CHECK = "HealthCheck"
STATE_LOCKED = "StateLocked"


# ── Reasons ─────────────────────────────────────────────────────

PROGRESSING_REASON = "Progressing"
ARTIFACT_FAILED_REASON = "ArtifactFailed"
DELETION_BLOCKED_BY_DEPENDANTS_REASON = "DeletionBlockedByDependantsReason"
DEPENDENCY_NOT_READY_REASON = "DependencyNotReady"
TF_EXEC_INIT_FAILED_REASON = "TFExecInitFailed"
DRIFT_DETECTION_FAILED_REASON = "DriftDetectionFailed"
DRIFT_DETECTED_REASON = "DriftDetected"
NO_DRIFT_REASON = "NoDrift"
TF_EXEC_PLAN_FAILED_REASON = "TFExecPlanFailed"
POST_PLANNING_WEBHOOK_FAILED_REASON = "PostPlanningWebhookFailed"
TF_EXEC_APPLY_FAILED_REASON = "TFExecApplyFailed"
TF_EXEC_OUTPUT_FAILED_REASON = "TFExecOutputFailed"
OUTPUTS_WRITING_FAILED_REASON = "OutputsWritingFailed"
HEALTH_CHECKS_FAILED_REASON = "HealthChecksFailed"
HEALTH_CHECKS_SUCCEED_REASON = "HealthChecksSucceed"
TF_EXEC_APPLY_SUCCEED_REASON = "TerraformAppliedSucceed"
TF_EXEC_APPLY_FAIL_REASON = "TerraformAppliedFail"
TF_EXEC_LOCK_HELD_REASON = "LockHeld"
TF_EXEC_FORCE_UNLOCK_REASON = "ForceUnlock"
PLANNED_WITH_CHANGES_REASON = "TerraformPlannedWithChanges"
PLANNED_NO_CHANGES_REASON = "TerraformPlannedNoChanges"
OUTPUTS_AVAILABLE_REASON = "TerraformOutputsAvailable"
OUTPUTS_WRITTEN_REASON = "TerraformOutputsWritten"
FINALIZE_FAILED_REASON = "FinalizeFailed"


class Condition(WireModel):
    """A single status condition."""

    type: str
    status: ConditionStatus = ConditionStatus.UNKNOWN
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(default_factory=utcnow)

    @property
    def is_true(self) -> bool:
        return self.status == ConditionStatus.TRUE

    def same_as(self, other: Condition) -> bool:
        """Whether ``other`` carries the same facts (timestamps ignored)."""
        return (
            self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
        )


def trim_message(message: str, limit: int = MAX_CONDITION_MESSAGE_LENGTH) -> str:
    """Cap a condition message, marking truncation with ``...``."""
    if len(message) <= limit:
        return message
    return message[:limit] + "..."


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    """Look up a condition by type."""
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_condition_true(conditions: list[Condition], condition_type: str) -> bool:
    condition = find_condition(conditions, condition_type)
    return condition is not None and condition.is_true


def set_condition(
    conditions: list[Condition],
    condition_type: str,
    status: ConditionStatus,
    reason: str,
    message: str,
    now: datetime | None = None,
) -> list[Condition]:
    """Upsert a condition by type and return the new list.

    The position of an existing condition is preserved; new condition
    types are appended.
    """
    candidate = Condition(
        type=condition_type,
        status=status,
        reason=reason,
        message=trim_message(message),
        last_transition_time=now or utcnow(),
    )

    updated: list[Condition] = []
    replaced = False
    for existing in conditions:
        if existing.type != condition_type:
            updated.append(existing)
            continue
        replaced = True
        if existing.same_as(candidate):
            updated.append(existing)
        else:
            updated.append(candidate)

    if not replaced:
        updated.append(candidate)
    return updated
