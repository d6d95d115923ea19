"""
Adapter base — the contracts between the engine and the outside world.

The engine only talks to external systems through these interfaces:

    ClusterClient      the cluster object store (resources, sources,
                       secrets, runner pods)
    Runner             the remote execution agent that invokes Terraform
    RunnerProvisioner  finds or creates a runner bound to a resource

Adapters raise the exceptions in ``tfcontrol.core.errors``; they never
write status conditions themselves.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from tfcontrol.core.models.meta import NamespacedName
from tfcontrol.core.models.resource import ManagedResource, ManagedResourceStatus, ResourceRef
from tfcontrol.core.models.source import SourceKind, SourceObject

CloseFn = Callable[[], None]


# ═══════════════════════════════════════════════════════════════════
#  Cluster object store
# ═══════════════════════════════════════════════════════════════════


class ClusterClient(ABC):
    """Read/patch access to the cluster object store.

    Missing objects raise ``NotFoundError``; transient API failures
    raise ``ClusterError``.
    """

    # ── Managed resources ───────────────────────────────────────

    @abstractmethod
    def get(self, key: NamespacedName) -> ManagedResource:
        """Fetch the latest stored version of a resource."""

    @abstractmethod
    def list(self) -> list[ManagedResource]:
        """List all resources, across namespaces."""

    @abstractmethod
    def list_by_source(self, kind: SourceKind, index_key: str) -> list[ManagedResource]:
        """List resources whose source reference resolves to ``index_key``."""

    @abstractmethod
    def patch_finalizers(
        self,
        key: NamespacedName,
        finalizers: list[str],
        field_owner: str,
    ) -> ManagedResource:
        """Merge-patch the finalizer list of a resource."""

    @abstractmethod
    def patch_status(
        self,
        key: NamespacedName,
        status: ManagedResourceStatus,
        field_owner: str,
    ) -> ManagedResource:
        """Merge-patch the status sub-resource against the latest version."""

    # ── Sources and secrets ─────────────────────────────────────

    @abstractmethod
    def get_source(self, kind: SourceKind, key: NamespacedName) -> SourceObject:
        """Fetch a source object."""

    @abstractmethod
    def list_sources(self) -> list[SourceObject]:
        """List all source objects of the supported kinds."""

    @abstractmethod
    def secret_exists(self, key: NamespacedName) -> bool:
        """Whether a secret exists."""

    @abstractmethod
    def apply_secret(self, key: NamespacedName, data: dict[str, str], field_owner: str) -> None:
        """Create or replace a secret's string data."""

    # ── Runner pods ─────────────────────────────────────────────

    @abstractmethod
    def get_pod(self, key: NamespacedName) -> dict[str, Any] | None:
        """Return the pod object, or None if it does not exist."""

    @abstractmethod
    def delete_pod(
        self,
        key: NamespacedName,
        grace_period_seconds: int = 1,
        propagation: str = "Foreground",
    ) -> None:
        """Request deletion of a pod."""


# ═══════════════════════════════════════════════════════════════════
#  Runner
# ═══════════════════════════════════════════════════════════════════


class WorkspaceRequest(BaseModel):
    """Everything the runner needs to prepare a Terraform workspace."""

    resource: ManagedResource
    revision: str
    tarball: bytes
    path: str = ""
    workspace: str = "default"
    variables: dict[str, Any] = Field(default_factory=dict)


class PlanRequest(BaseModel):
    resource: ManagedResource
    revision: str
    plan_id: str = ""
    destroy: bool = False
    drift_detection: bool = False
    targets: list[str] = Field(default_factory=list)


class PlanOutcome(BaseModel):
    """Result of a plan (or drift-detection plan)."""

    has_changes: bool
    message: str = ""
    summary: dict[str, int] = Field(default_factory=dict)


class ApplyRequest(BaseModel):
    resource: ManagedResource
    revision: str
    plan_id: str = ""
    destroy: bool = False


class ApplyOutcome(BaseModel):
    message: str = ""
    entries: list[ResourceRef] = Field(default_factory=list)


class Runner(ABC):
    """The remote execution agent.

    Every method raises ``RunnerError`` (or ``StateLockedError`` when the
    Terraform state is held by someone else) on failure.
    """

    @abstractmethod
    def upload(self, request: WorkspaceRequest) -> None:
        """Extract the source tarball and initialise the workspace."""

    @abstractmethod
    def plan(self, request: PlanRequest) -> PlanOutcome:
        """Run a plan; ``drift_detection`` plans never leave a saved plan."""

    @abstractmethod
    def apply(self, request: ApplyRequest) -> ApplyOutcome:
        """Apply the saved plan."""

    @abstractmethod
    def outputs(self, resource: ManagedResource) -> dict[str, Any]:
        """Return the Terraform outputs (name → value)."""

    @abstractmethod
    def force_unlock(self, resource: ManagedResource, lock_id: str) -> None:
        """Force-unlock the state held by ``lock_id``."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


class RunnerProvisioner(ABC):
    """Finds (or creates) the runner bound to a resource."""

    @abstractmethod
    def lookup_or_create(self, resource: ManagedResource) -> tuple[Runner, CloseFn]:
        """Return a connected runner and the callback closing its channel."""
