"""
In-memory adapters — test doubles for the cluster and the runner.

Used by the test suite and by ``tfcontrol run --mock``. The cluster
stores deep copies so callers can never mutate stored objects by
accident, and bumps a resource version on every write.
"""

from __future__ import annotations

import threading
from typing import Any

from tfcontrol.adapters.base import (
    ApplyOutcome,
    ApplyRequest,
    ClusterClient,
    CloseFn,
    PlanOutcome,
    PlanRequest,
    Runner,
    RunnerProvisioner,
    WorkspaceRequest,
)
from tfcontrol.core.errors import ClusterError, NotFoundError, RunnerError
from tfcontrol.core.models.meta import NamespacedName, utcnow
from tfcontrol.core.models.resource import KIND, ManagedResource, ManagedResourceStatus
from tfcontrol.core.models.source import SourceKind, SourceObject


class InMemoryCluster(ClusterClient):
    """Thread-safe in-memory object store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resources: dict[NamespacedName, ManagedResource] = {}
        self._sources: dict[tuple[SourceKind, NamespacedName], SourceObject] = {}
        self._secrets: dict[NamespacedName, dict[str, str]] = {}
        self._pods: dict[NamespacedName, dict[str, Any]] = {}
        self._version = 0
        self._failures: dict[str, Exception] = {}
        self.status_patches: list[tuple[NamespacedName, ManagedResourceStatus]] = []
        self.deleted_pods: list[tuple[NamespacedName, int, str]] = []
        self.pod_deletes_before_gone = 0

    # ── Fixture helpers ─────────────────────────────────────────

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def add(self, resource: ManagedResource) -> ManagedResource:
        """Store (or replace) a resource."""
        with self._lock:
            stored = resource.model_copy(deep=True)
            stored.metadata.resource_version = self._next_version()
            self._resources[stored.key] = stored
            return stored.model_copy(deep=True)

    def update_spec(self, key: NamespacedName, **changes: Any) -> ManagedResource:
        """Edit the spec like a user would; bumps the generation."""
        with self._lock:
            stored = self._require(key)
            for name, value in changes.items():
                setattr(stored.spec, name, value)
            stored.metadata.generation += 1
            stored.metadata.resource_version = self._next_version()
            return stored.model_copy(deep=True)

    def mark_deleted(self, key: NamespacedName) -> None:
        """Set the deletion timestamp, or drop the object if no finalizers remain."""
        with self._lock:
            stored = self._require(key)
            if not stored.metadata.finalizers:
                del self._resources[key]
                return
            stored.metadata.deletion_timestamp = utcnow()

    def add_source(self, source: SourceObject) -> None:
        with self._lock:
            self._sources[(source.kind, source.key)] = source.model_copy(deep=True)

    def add_secret(self, key: NamespacedName, data: dict[str, str] | None = None) -> None:
        with self._lock:
            self._secrets[key] = dict(data or {})

    def secret_data(self, key: NamespacedName) -> dict[str, str] | None:
        with self._lock:
            data = self._secrets.get(key)
            return dict(data) if data is not None else None

    def add_pod(self, key: NamespacedName, pod: dict[str, Any] | None = None) -> None:
        with self._lock:
            self._pods[key] = pod or {"metadata": {"name": key.name, "namespace": key.namespace}}

    def fail_next(self, operation: str, error: Exception | None = None) -> None:
        """Make the next call of ``operation`` raise ``error`` (default ClusterError)."""
        self._failures[operation] = error or ClusterError(f"injected {operation} failure")

    def _maybe_fail(self, operation: str) -> None:
        error = self._failures.pop(operation, None)
        if error is not None:
            raise error

    def _require(self, key: NamespacedName) -> ManagedResource:
        stored = self._resources.get(key)
        if stored is None:
            raise NotFoundError(KIND, str(key))
        return stored

    # ── ClusterClient ───────────────────────────────────────────

    def get(self, key: NamespacedName) -> ManagedResource:
        self._maybe_fail("get")
        with self._lock:
            return self._require(key).model_copy(deep=True)

    def list(self) -> list[ManagedResource]:
        with self._lock:
            return [r.model_copy(deep=True) for r in sorted(self._resources.values(), key=lambda r: r.key)]

    def list_by_source(self, kind: SourceKind, index_key: str) -> list[ManagedResource]:
        return [
            r for r in self.list()
            if r.spec.source_ref.kind == kind and str(r.source_key) == index_key
        ]

    def patch_finalizers(
        self,
        key: NamespacedName,
        finalizers: list[str],
        field_owner: str,
    ) -> ManagedResource:
        self._maybe_fail("patch_finalizers")
        with self._lock:
            stored = self._require(key)
            stored.metadata.finalizers = list(finalizers)
            stored.metadata.resource_version = self._next_version()
            if stored.is_being_deleted and not stored.metadata.finalizers:
                del self._resources[key]
            return stored.model_copy(deep=True)

    def patch_status(
        self,
        key: NamespacedName,
        status: ManagedResourceStatus,
        field_owner: str,
    ) -> ManagedResource:
        self._maybe_fail("patch_status")
        with self._lock:
            stored = self._require(key)
            stored.status = status.model_copy(deep=True)
            stored.metadata.resource_version = self._next_version()
            self.status_patches.append((key, status.model_copy(deep=True)))
            return stored.model_copy(deep=True)

    def get_source(self, kind: SourceKind, key: NamespacedName) -> SourceObject:
        self._maybe_fail("get_source")
        with self._lock:
            source = self._sources.get((kind, key))
            if source is None:
                raise NotFoundError(str(kind), str(key))
            return source.model_copy(deep=True)

    def list_sources(self) -> list[SourceObject]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._sources.values()]

    def secret_exists(self, key: NamespacedName) -> bool:
        with self._lock:
            return key in self._secrets

    def apply_secret(self, key: NamespacedName, data: dict[str, str], field_owner: str) -> None:
        self._maybe_fail("apply_secret")
        with self._lock:
            self._secrets[key] = dict(data)

    def get_pod(self, key: NamespacedName) -> dict[str, Any] | None:
        self._maybe_fail("get_pod")
        with self._lock:
            return self._pods.get(key)

    def delete_pod(
        self,
        key: NamespacedName,
        grace_period_seconds: int = 1,
        propagation: str = "Foreground",
    ) -> None:
        self._maybe_fail("delete_pod")
        with self._lock:
            self.deleted_pods.append((key, grace_period_seconds, propagation))
            if self.pod_deletes_before_gone > 0:
                self.pod_deletes_before_gone -= 1
                return
            self._pods.pop(key, None)


class ScriptedRunner(Runner):
    """Runner double driven by queued outcomes.

    By default every plan reports changes and every apply succeeds.
    Queue exceptions or outcomes per step to script a scenario.
    """

    def __init__(
        self,
        plan_has_changes: bool = True,
        drift: bool = False,
        outputs: dict[str, Any] | None = None,
    ):
        self.plan_has_changes = plan_has_changes
        self.drift = drift
        self._outputs = dict(outputs or {})
        self._scripted: dict[str, list[Any]] = {}
        self.calls: list[tuple[str, Any]] = []

    def script(self, step: str, *results: Any) -> None:
        """Queue results (outcomes or exceptions) for ``step``."""
        self._scripted.setdefault(step, []).extend(results)

    def _next(self, step: str) -> Any:
        queued = self._scripted.get(step)
        if not queued:
            return None
        result = queued.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def called(self, step: str) -> int:
        return sum(1 for name, _ in self.calls if name == step)

    def upload(self, request: WorkspaceRequest) -> None:
        self.calls.append(("upload", request))
        self._next("upload")

    def plan(self, request: PlanRequest) -> PlanOutcome:
        step = "drift" if request.drift_detection else "plan"
        self.calls.append((step, request))
        scripted = self._next(step)
        if scripted is not None:
            return scripted
        if request.drift_detection:
            return PlanOutcome(has_changes=self.drift, message="Drift detected" if self.drift else "No drift")
        return PlanOutcome(has_changes=self.plan_has_changes, message="Plan generated")

    def apply(self, request: ApplyRequest) -> ApplyOutcome:
        self.calls.append(("apply", request))
        scripted = self._next("apply")
        if scripted is not None:
            return scripted
        return ApplyOutcome(message="Applied successfully")

    def outputs(self, resource: ManagedResource) -> dict[str, Any]:
        self.calls.append(("outputs", resource))
        scripted = self._next("outputs")
        if scripted is not None:
            return scripted
        return dict(self._outputs)

    def force_unlock(self, resource: ManagedResource, lock_id: str) -> None:
        self.calls.append(("force_unlock", lock_id))
        self._next("force_unlock")


class StaticProvisioner(RunnerProvisioner):
    """Always hands out the same runner; counts opened and closed channels."""

    def __init__(self, runner: Runner, error: Exception | None = None):
        self.runner = runner
        self.error = error
        self.opened = 0
        self.closed = 0

    def lookup_or_create(self, resource: ManagedResource) -> tuple[Runner, CloseFn]:
        if self.error is not None:
            raise self.error
        self.opened += 1

        def close() -> None:
            self.closed += 1

        return self.runner, close


class FailingRunner(ScriptedRunner):
    """Runner whose every step fails; handy for finalize tests."""

    def _next(self, step: str) -> Any:
        raise RunnerError(f"{step} failed")
