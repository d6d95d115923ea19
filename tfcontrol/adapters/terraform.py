"""
Local Terraform runner — runs the terraform CLI in a temp workspace.

Used with the insecure local runner mode: instead of a runner pod
reached over a secured channel, the controller process itself extracts
the source tarball and invokes terraform via subprocess.

    upload()        extract tarball, write tfvars, init, select workspace
    plan()          terraform plan -detailed-exitcode [-out plan]
    apply()         terraform apply <saved plan>
    outputs()       terraform output -json
    force_unlock()  terraform force-unlock -force <id>

Per-resource layout under the runner root:

    <namespace>/<name>/src/      extracted artifact, replaced on every upload
    <namespace>/<name>/plans/    the single pending saved plan

A "state lock" failure raises ``StateLockedError`` carrying the lock id
printed by terraform.
"""

from __future__ import annotations

import io
import json
import logging
import re
import shutil
import subprocess
import tarfile
import tempfile
import threading
from pathlib import Path
from typing import Any

from tfcontrol.adapters.base import (
    ApplyOutcome,
    ApplyRequest,
    CloseFn,
    PlanOutcome,
    PlanRequest,
    Runner,
    RunnerProvisioner,
    WorkspaceRequest,
)
from tfcontrol.core.errors import RunnerError, StateLockedError
from tfcontrol.core.models.resource import DEFAULT_WORKSPACE, ManagedResource, ResourceRef

logger = logging.getLogger(__name__)

_LOCK_ID_RE = re.compile(r"^\s*ID:\s+(\S+)", re.MULTILINE)
_PLAN_SUMMARY_RE = re.compile(r"Plan: (\d+) to add, (\d+) to change, (\d+) to destroy")


def _run_terraform(
    *args: str,
    cwd: Path,
    timeout: int = 600,
) -> subprocess.CompletedProcess[str]:
    """Run a terraform command."""
    return subprocess.run(
        ["terraform", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def parse_lock_id(stderr: str) -> str | None:
    """Lock id from a terraform "Error acquiring the state lock" message."""
    if "state lock" not in stderr:
        return None
    match = _LOCK_ID_RE.search(stderr)
    return match.group(1) if match else ""


def parse_plan_summary(stdout: str) -> dict[str, int]:
    match = _PLAN_SUMMARY_RE.search(stdout)
    if not match:
        return {}
    add, change, destroy = (int(g) for g in match.groups())
    return {"add": add, "change": change, "destroy": destroy}


class LocalTerraformRunner(Runner):
    """Runner executing terraform on the local machine.

    Args:
        root: Directory holding one workspace per resource
            (default: a fresh temp dir).
        timeout: Per-command timeout in seconds.
    """

    def __init__(self, root: Path | None = None, timeout: int = 600):
        self.root = root or Path(tempfile.mkdtemp(prefix="tfcontrol-"))
        self.timeout = timeout
        self._lock = threading.Lock()

    def workdir(self, resource: ManagedResource) -> Path:
        return self.root / resource.namespace / resource.name / "src"

    def plan_path(self, resource: ManagedResource, plan_id: str) -> Path:
        """Saved plans live beside the workdir, so a re-upload keeps them."""
        return self.root / resource.namespace / resource.name / "plans" / plan_id

    def _module_dir(self, resource: ManagedResource) -> Path:
        return self.workdir(resource) / resource.spec.path.strip("/")

    def _terraform(self, resource: ManagedResource, *args: str, ok_codes: tuple[int, ...] = (0,)) -> subprocess.CompletedProcess[str]:
        cwd = self._module_dir(resource)
        try:
            result = _run_terraform(*args, cwd=cwd, timeout=self.timeout)
        except FileNotFoundError as e:
            raise RunnerError("terraform not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise RunnerError(f"terraform {args[0]} timed out after {self.timeout}s") from e

        if result.returncode not in ok_codes:
            lock_id = parse_lock_id(result.stderr)
            if lock_id is not None:
                raise StateLockedError(lock_id, f"error acquiring the state lock: lock ID '{lock_id}'")
            raise RunnerError(f"terraform {args[0]} failed: {result.stderr.strip() or result.stdout.strip()}")
        return result

    # ── Runner ──────────────────────────────────────────────────

    def upload(self, request: WorkspaceRequest) -> None:
        resource = request.resource
        workdir = self.workdir(resource)
        with self._lock:
            if workdir.exists():
                shutil.rmtree(workdir)
            workdir.mkdir(parents=True)
        try:
            with tarfile.open(fileobj=io.BytesIO(request.tarball), mode="r:*") as tar:
                tar.extractall(workdir, filter="data")
        except (tarfile.TarError, OSError) as e:
            raise RunnerError(f"failed to extract artifact: {e}") from e

        module_dir = self._module_dir(resource)
        if not module_dir.is_dir():
            raise RunnerError(f"path '{resource.spec.path}' not found in artifact")
        if request.variables:
            (module_dir / "tfcontrol.auto.tfvars.json").write_text(
                json.dumps(request.variables, indent=2), encoding="utf-8"
            )

        self._terraform(resource, "init", "-input=false", "-no-color")
        if request.workspace != DEFAULT_WORKSPACE:
            self._terraform(resource, "workspace", "select", "-or-create", request.workspace)
        logger.debug("Workspace ready for %s at %s", resource.key, module_dir)

    def plan(self, request: PlanRequest) -> PlanOutcome:
        args = ["plan", "-input=false", "-no-color", "-detailed-exitcode"]
        if request.destroy:
            args.append("-destroy")
        args.extend(f"-target={t}" for t in request.targets)
        saved: Path | None = None
        if not request.drift_detection and request.plan_id:
            saved = self.plan_path(request.resource, request.plan_id)
            # one pending plan per resource
            if saved.parent.exists():
                shutil.rmtree(saved.parent)
            saved.parent.mkdir(parents=True)
            args.append(f"-out={saved}")

        # -detailed-exitcode: 0 no changes, 2 changes present
        result = self._terraform(request.resource, *args, ok_codes=(0, 2))
        has_changes = result.returncode == 2
        if saved is not None and not has_changes:
            saved.unlink(missing_ok=True)
        if request.drift_detection:
            message = "Drift detected" if has_changes else "No drift"
        else:
            message = "Plan generated" if has_changes else "Plan no changes"
        return PlanOutcome(has_changes=has_changes, message=message, summary=parse_plan_summary(result.stdout))

    def apply(self, request: ApplyRequest) -> ApplyOutcome:
        args = ["apply", "-input=false", "-no-color", "-auto-approve"]
        saved: Path | None = None
        if request.plan_id:
            saved = self.plan_path(request.resource, request.plan_id)
            if not saved.is_file():
                raise RunnerError(f"saved plan '{request.plan_id}' not found, a new plan is required")
            args.append(str(saved))
        elif request.destroy:
            args.append("-destroy")
        self._terraform(request.resource, *args)
        if saved is not None:
            saved.unlink(missing_ok=True)
        entries = [] if request.destroy else self._inventory(request.resource)
        return ApplyOutcome(message="Applied successfully", entries=entries)

    def _inventory(self, resource: ManagedResource) -> list[ResourceRef]:
        result = self._terraform(resource, "show", "-json")
        try:
            state = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise RunnerError(f"invalid state JSON: {e}") from e
        resources = state.get("values", {}).get("root_module", {}).get("resources", [])
        return [
            ResourceRef(
                name=r.get("address", r.get("name", "")),
                type=r.get("type", ""),
                identifier=str((r.get("values") or {}).get("id", "")),
            )
            for r in resources
        ]

    def outputs(self, resource: ManagedResource) -> dict[str, Any]:
        result = self._terraform(resource, "output", "-json", "-no-color")
        try:
            raw = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise RunnerError(f"invalid output JSON: {e}") from e
        return {name: entry.get("value") for name, entry in raw.items()}

    def force_unlock(self, resource: ManagedResource, lock_id: str) -> None:
        self._terraform(resource, "force-unlock", "-force", lock_id)


class LocalRunnerProvisioner(RunnerProvisioner):
    """Hands out one shared LocalTerraformRunner; closing is a no-op."""

    def __init__(self, runner: LocalTerraformRunner | None = None):
        self.runner = runner or LocalTerraformRunner()

    def lookup_or_create(self, resource: ManagedResource) -> tuple[Runner, CloseFn]:
        return self.runner, lambda: None
