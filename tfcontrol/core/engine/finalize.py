"""
Finalize — tear down a resource that is being deleted.

    destroyResourcesOnDeletion?
      └── yes: upload workspace, destroy plan, apply it
    release back-reference finalizers on dependencies
    remove the controlling finalizer (the store then drops the object)

Called by the orchestrator only when no dependants block the deletion.
"""

from __future__ import annotations

import logging

from tfcontrol.adapters.base import ApplyRequest, ClusterClient, PlanRequest, Runner, WorkspaceRequest
from tfcontrol.core.engine import transitions
from tfcontrol.core.errors import ArtifactError, RunnerError
from tfcontrol.core.models.conditions import (
    ARTIFACT_FAILED_REASON,
    TF_EXEC_APPLY_FAILED_REASON,
    TF_EXEC_INIT_FAILED_REASON,
    TF_EXEC_PLAN_FAILED_REASON,
)
from tfcontrol.core.models.resource import FINALIZER, ManagedResource
from tfcontrol.core.models.result import ReconcileResult
from tfcontrol.core.models.source import SourceObject
from tfcontrol.core.services.artifact import ArtifactFetcher
from tfcontrol.core.services.dependencies import release_dependencies

logger = logging.getLogger(__name__)


class Finalizer:
    """Runs the deletion sequence for one resource."""

    def __init__(self, cluster: ClusterClient, fetcher: ArtifactFetcher, field_owner: str = "tf-controller"):
        self.cluster = cluster
        self.fetcher = fetcher
        self.field_owner = field_owner

    def finalize(self, resource: ManagedResource, runner: Runner, source: SourceObject) -> ReconcileResult:
        """Destroy (if requested) and release finalizers.

        A failed destroy leaves the resource not-ready and asks for a
        retry; success ends the attempt with no requeue.
        """
        if resource.spec.destroy_resources_on_deletion:
            failed = self._destroy(resource, runner, source)
            if failed is not None:
                self.cluster.patch_status(failed.key, failed.status, self.field_owner)
                return ReconcileResult.after(resource.retry_interval)

        release_dependencies(self.cluster, resource, self.field_owner)

        if FINALIZER in resource.metadata.finalizers:
            latest = self.cluster.get(resource.key)
            remaining = [f for f in latest.metadata.finalizers if f != FINALIZER]
            self.cluster.patch_finalizers(resource.key, remaining, self.field_owner)
        logger.info("Finalized %s", resource.key)
        return ReconcileResult.done()

    def _destroy(self, resource: ManagedResource, runner: Runner, source: SourceObject) -> ManagedResource | None:
        """Run the destroy; return the failed resource, or None on success."""
        artifact = source.get_artifact()
        revision = artifact.revision if artifact else ""
        if artifact is None:
            return transitions.not_ready(resource, revision, ARTIFACT_FAILED_REASON, "source has no artifact")

        try:
            tarball = self.fetcher.fetch(artifact, owner=str(resource.key))
        except ArtifactError as e:
            return transitions.not_ready(resource, revision, ARTIFACT_FAILED_REASON, str(e))

        try:
            runner.upload(
                WorkspaceRequest(
                    resource=resource,
                    revision=revision,
                    tarball=tarball,
                    path=resource.spec.path,
                    workspace=resource.workspace_name,
                    variables={v.name: v.value for v in resource.spec.vars},
                )
            )
        except RunnerError as e:
            return transitions.not_ready(resource, revision, TF_EXEC_INIT_FAILED_REASON, str(e))

        plan_id, _ = transitions.plan_id_and_approve_message(revision, "")
        try:
            plan = runner.plan(PlanRequest(resource=resource, revision=revision, plan_id=plan_id, destroy=True))
        except RunnerError as e:
            return transitions.not_ready(resource, revision, TF_EXEC_PLAN_FAILED_REASON, str(e))
        if not plan.has_changes:
            logger.info("Nothing to destroy for %s", resource.key)
            return None

        try:
            runner.apply(ApplyRequest(resource=resource, revision=revision, plan_id=plan_id, destroy=True))
        except RunnerError as e:
            return transitions.not_ready(resource, revision, TF_EXEC_APPLY_FAILED_REASON, str(e))
        logger.info("Destroyed resources of %s", resource.key)
        return None
