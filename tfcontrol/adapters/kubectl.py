"""
kubectl adapter — ClusterClient backed by the kubectl CLI.

Every call shells out to ``kubectl … -o json`` and parses the result.
Writes use merge patches (``kubectl patch --type merge``) tagged with
the controller's field manager. A "NotFound" answer raises
``NotFoundError``; any other failure raises ``ClusterError``.
"""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Any

from tfcontrol.adapters.base import ClusterClient
from tfcontrol.core.errors import ClusterError, NotFoundError
from tfcontrol.core.models.meta import NamespacedName
from tfcontrol.core.models.resource import GROUP, KIND, ManagedResource, ManagedResourceStatus
from tfcontrol.core.models.source import SourceKind, SourceObject

logger = logging.getLogger(__name__)

RESOURCE_TYPE = f"terraforms.{GROUP}"

SOURCE_TYPES: dict[SourceKind, str] = {
    SourceKind.GIT_REPOSITORY: "gitrepositories.source.toolkit.fluxcd.io",
    SourceKind.BUCKET: "buckets.source.toolkit.fluxcd.io",
    SourceKind.OCI_REPOSITORY: "ocirepositories.source.toolkit.fluxcd.io",
}


def _run_kubectl(
    *args: str,
    timeout: float = 30,
    input_text: str | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a kubectl command and return the result."""
    return subprocess.run(
        ["kubectl", *args],
        capture_output=True,
        text=True,
        timeout=timeout,
        input=input_text,
    )


def _is_not_found(result: subprocess.CompletedProcess[str]) -> bool:
    return "NotFound" in result.stderr or "not found" in result.stderr


class KubectlCluster(ClusterClient):
    """Cluster client using the kubectl binary on PATH."""

    def __init__(self, namespace: str = "", timeout: float = 30, context: str = ""):
        self.namespace = namespace
        self.timeout = timeout
        self.context = context

    # ── Plumbing ────────────────────────────────────────────────

    def _kubectl(self, *args: str, input_text: str | None = None) -> subprocess.CompletedProcess[str]:
        if self.context:
            args = ("--context", self.context, *args)
        try:
            return _run_kubectl(*args, timeout=self.timeout, input_text=input_text)
        except FileNotFoundError as e:
            raise ClusterError("kubectl not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise ClusterError(f"kubectl {args[0]} timed out after {self.timeout:g}s") from e

    def _json(self, kind: str, key: str, *args: str) -> Any:
        result = self._kubectl(*args)
        if result.returncode != 0:
            if _is_not_found(result):
                raise NotFoundError(kind, key)
            raise ClusterError(f"kubectl {' '.join(args[:2])} failed: {result.stderr.strip()}")
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ClusterError(f"invalid JSON from kubectl: {e}") from e

    def _scope(self) -> tuple[str, ...]:
        return ("-n", self.namespace) if self.namespace else ("--all-namespaces",)

    # ── Managed resources ───────────────────────────────────────

    def get(self, key: NamespacedName) -> ManagedResource:
        data = self._json(KIND, str(key), "get", RESOURCE_TYPE, key.name, "-n", key.namespace, "-o", "json")
        return ManagedResource.model_validate(data)

    def list(self) -> list[ManagedResource]:
        data = self._json(KIND, "*", "get", RESOURCE_TYPE, *self._scope(), "-o", "json")
        return [ManagedResource.model_validate(item) for item in data.get("items", [])]

    def list_by_source(self, kind: SourceKind, index_key: str) -> list[ManagedResource]:
        return [
            r for r in self.list()
            if r.spec.source_ref.kind == kind and str(r.source_key) == index_key
        ]

    def _merge_patch(self, key: NamespacedName, patch: dict[str, Any], field_owner: str, *extra: str) -> Any:
        return self._json(
            KIND, str(key),
            "patch", RESOURCE_TYPE, key.name, "-n", key.namespace,
            "--type", "merge", f"--field-manager={field_owner}", *extra,
            "-p", json.dumps(patch), "-o", "json",
        )

    def patch_finalizers(self, key: NamespacedName, finalizers: list[str], field_owner: str) -> ManagedResource:
        data = self._merge_patch(key, {"metadata": {"finalizers": finalizers}}, field_owner)
        return ManagedResource.model_validate(data)

    def patch_status(
        self,
        key: NamespacedName,
        status: ManagedResourceStatus,
        field_owner: str,
    ) -> ManagedResource:
        # unset fields go out as null so the merge patch clears them
        body = {"status": status.model_dump(mode="json", by_alias=True)}
        data = self._merge_patch(key, body, field_owner, "--subresource=status")
        return ManagedResource.model_validate(data)

    # ── Sources and secrets ─────────────────────────────────────

    def get_source(self, kind: SourceKind, key: NamespacedName) -> SourceObject:
        data = self._json(str(kind), str(key), "get", SOURCE_TYPES[kind], key.name, "-n", key.namespace, "-o", "json")
        return _source_from_object(kind, data)

    def list_sources(self) -> list[SourceObject]:
        sources: list[SourceObject] = []
        for kind, type_name in SOURCE_TYPES.items():
            try:
                data = self._json(str(kind), "*", "get", type_name, *self._scope(), "-o", "json")
            except ClusterError as e:
                logger.debug("Cannot list %s: %s", kind, e)
                continue
            sources.extend(_source_from_object(kind, item) for item in data.get("items", []))
        return sources

    def secret_exists(self, key: NamespacedName) -> bool:
        try:
            self._json("Secret", str(key), "get", "secret", key.name, "-n", key.namespace, "-o", "json")
        except NotFoundError:
            return False
        return True

    def apply_secret(self, key: NamespacedName, data: dict[str, str], field_owner: str) -> None:
        manifest = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": key.name, "namespace": key.namespace},
            "type": "Opaque",
            "stringData": data,
        }
        result = self._kubectl(
            "apply", "--server-side", f"--field-manager={field_owner}", "-f", "-",
            input_text=json.dumps(manifest),
        )
        if result.returncode != 0:
            raise ClusterError(f"failed to write secret {key}: {result.stderr.strip()}")

    # ── Runner pods ─────────────────────────────────────────────

    def get_pod(self, key: NamespacedName) -> dict[str, Any] | None:
        try:
            return self._json("Pod", str(key), "get", "pod", key.name, "-n", key.namespace, "-o", "json")
        except NotFoundError:
            return None

    def delete_pod(
        self,
        key: NamespacedName,
        grace_period_seconds: int = 1,
        propagation: str = "Foreground",
    ) -> None:
        result = self._kubectl(
            "delete", "pod", key.name, "-n", key.namespace,
            f"--grace-period={grace_period_seconds}",
            f"--cascade={propagation.lower()}",
            "--wait=false",
        )
        if result.returncode != 0 and not _is_not_found(result):
            raise ClusterError(f"failed to delete pod {key}: {result.stderr.strip()}")


def _source_from_object(kind: SourceKind, data: dict[str, Any]) -> SourceObject:
    meta = data.get("metadata", {})
    artifact = (data.get("status") or {}).get("artifact")
    if artifact:
        artifact = {
            "url": artifact.get("url", ""),
            "revision": artifact.get("revision", ""),
            "checksum": artifact.get("checksum", artifact.get("digest", "").split(":")[-1]),
        }
    return SourceObject.model_validate({
        "kind": kind,
        "name": meta.get("name", ""),
        "namespace": meta.get("namespace", "default"),
        "artifact": artifact or None,
    })
