"""
ManagedResource — the desired-state object this controller reconciles.

Spec is the declared input for a given generation; Status is written
only by the controller. The stored (wire) form uses camelCase keys and
round-trips through ``to_bytes()`` / ``from_bytes()``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Literal

from pydantic import Field

from tfcontrol.core.models.conditions import APPLY, Condition, ConditionStatus
from tfcontrol.core.models.meta import (
    Duration,
    NamespacedName,
    ObjectMeta,
    WireModel,
)
from tfcontrol.core.models.source import SourceKind

API_VERSION = "infra.contrib.fluxcd.io/v1alpha1"
KIND = "Terraform"
GROUP = "infra.contrib.fluxcd.io"

FINALIZER = "finalizers.tf.contrib.fluxcd.io"
DEPENDENCY_OF_PREFIX = "tf.dependency.of."

APPROVE_PLAN_AUTO = "auto"
APPROVE_PLAN_DISABLE = "disable"
DEFAULT_WORKSPACE = "default"
RUNNER_POD_SUFFIX = "-tf-runner"


class ForceUnlock(StrEnum):
    """Force-unlock policy for a locked Terraform state."""

    YES = "yes"
    NO = "no"
    AUTO = "auto"


# ── Spec ────────────────────────────────────────────────────────


class SourceRef(WireModel):
    """Reference to the source providing the Terraform files."""

    kind: SourceKind
    name: str
    namespace: str = ""

    def resolve(self, default_namespace: str) -> NamespacedName:
        return NamespacedName(namespace=self.namespace or default_namespace, name=self.name)

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


class DependencyRef(WireModel):
    """A declared dependency on another ManagedResource."""

    name: str
    namespace: str = ""


class Variable(WireModel):
    """An input variable for the Terraform program."""

    name: str
    value: Any = None


class WriteOutputsToSecret(WireModel):
    """Where to store outputs, and which outputs to store (empty = all)."""

    name: str
    outputs: list[str] = Field(default_factory=list)


class TFStateSpec(WireModel):
    """State lock handling."""

    force_unlock: ForceUnlock = ForceUnlock.NO
    lock_identifier: str = ""


class HealthCheck(WireModel):
    """A post-apply health check (``tcp`` address or ``http`` URL).

    ``url`` and ``address`` may reference outputs as ``{{.output_name}}``.
    """

    name: str
    type: Literal["tcp", "http"] = "http"
    url: str = ""
    address: str = ""
    timeout: Duration = timedelta(seconds=20)


class ManagedResourceSpec(WireModel):
    """Declared desired state."""

    source_ref: SourceRef
    interval: Duration
    retry_interval: Duration | None = None
    workspace: str = DEFAULT_WORKSPACE
    path: str = ""
    vars: list[Variable] = Field(default_factory=list)
    approve_plan: str = ""
    destroy: bool = False
    depends_on: list[DependencyRef] = Field(default_factory=list)
    suspend: bool = False
    force: bool = False
    disable_drift_detection: bool = False
    always_cleanup_runner_pod: bool | None = None
    runner_termination_grace_period_seconds: int = 30
    destroy_resources_on_deletion: bool = False
    write_outputs_to_secret: WriteOutputsToSecret | None = None
    enable_inventory: bool = False
    targets: list[str] = Field(default_factory=list)
    tfstate: TFStateSpec | None = None
    health_checks: list[HealthCheck] = Field(default_factory=list)


# ── Status ──────────────────────────────────────────────────────


class PlanStatus(WireModel):
    last_applied: str = ""
    pending: str = ""
    is_destroy_plan: bool = False
    is_drift_detection_plan: bool = False


class LockStatus(WireModel):
    last_applied: str = ""
    pending: str = ""


class ResourceRef(WireModel):
    """An applied Terraform resource, as recorded in the inventory."""

    name: str
    type: str
    identifier: str = ""


class ResourceInventory(WireModel):
    entries: list[ResourceRef] = Field(default_factory=list)


class ManagedResourceStatus(WireModel):
    """Observed state, written only by the controller."""

    observed_generation: int = 0
    conditions: list[Condition] = Field(default_factory=list)
    last_applied_revision: str = ""
    last_attempted_revision: str = ""
    last_planned_revision: str = ""
    last_drift_detected_at: datetime | None = None
    last_applied_by_drift_detection_at: datetime | None = None
    available_outputs: list[str] = Field(default_factory=list)
    plan: PlanStatus = Field(default_factory=PlanStatus)
    inventory: ResourceInventory | None = None
    lock: LockStatus = Field(default_factory=LockStatus)


# ── Resource ────────────────────────────────────────────────────


class ManagedResource(WireModel):
    """The unit under control."""

    api_version: str = API_VERSION
    kind: str = KIND
    metadata: ObjectMeta
    spec: ManagedResourceSpec
    status: ManagedResourceStatus = Field(default_factory=ManagedResourceStatus)

    # ── Identity ────────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def generation(self) -> int:
        return self.metadata.generation

    @property
    def key(self) -> NamespacedName:
        return self.metadata.key

    # ── Derived spec values ─────────────────────────────────────

    @property
    def retry_interval(self) -> timedelta:
        """Retry interval, falling back to the reconcile interval."""
        if self.spec.retry_interval is not None:
            return self.spec.retry_interval
        return self.spec.interval

    @property
    def workspace_name(self) -> str:
        return self.spec.workspace or DEFAULT_WORKSPACE

    @property
    def always_cleanup_runner_pod(self) -> bool:
        if self.spec.always_cleanup_runner_pod is None:
            return True
        return self.spec.always_cleanup_runner_pod

    @property
    def source_key(self) -> NamespacedName:
        return self.spec.source_ref.resolve(self.namespace)

    @property
    def runner_pod_name(self) -> str:
        return f"{self.name}{RUNNER_POD_SUFFIX}"

    def runner_hostname(self, ip: str) -> str:
        prefix = ip.replace(".", "-")
        return f"{prefix}.{self.namespace}.pod.cluster.local"

    # ── Lifecycle ───────────────────────────────────────────────

    @property
    def is_being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def dependants(self) -> list[str]:
        """Names of resources holding a dependency-of finalizer on this one."""
        return [
            f[len(DEPENDENCY_OF_PREFIX):]
            for f in self.metadata.finalizers
            if f.startswith(DEPENDENCY_OF_PREFIX)
        ]

    def has_drift(self) -> bool:
        """Whether drift was detected after the last successful apply."""
        detected_at = self.status.last_drift_detected_at
        if detected_at is None:
            return False
        for condition in self.status.conditions:
            if (
                condition.type == APPLY
                and condition.status == ConditionStatus.TRUE
                and detected_at > condition.last_transition_time
            ):
                return True
        return False

    # ── Wire format ─────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> ManagedResource:
        return cls.model_validate_json(data)
