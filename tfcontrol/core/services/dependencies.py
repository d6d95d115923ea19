"""
Dependency resolver — readiness checks and ordering across resources.

Three jobs:

    check_dependencies()            gate a dependent on its dependencies
    requests_for_revision_change()  map a source revision change to the
                                    ordered list of keys to reconcile
    release_dependencies()          drop this resource's back-reference
                                    finalizers when it is finalized

A dependency is protected from deletion by a finalizer named
``tf.dependency.of.<dependent name>`` on the dependency object.
"""

from __future__ import annotations

import logging
from collections import deque

from tfcontrol.adapters.base import ClusterClient
from tfcontrol.core.errors import (
    CircularDependencyError,
    DependencyNotReadyError,
    NotFoundError,
)
from tfcontrol.core.models.conditions import READY, is_condition_true
from tfcontrol.core.models.meta import NamespacedName
from tfcontrol.core.models.resource import DEPENDENCY_OF_PREFIX, ManagedResource
from tfcontrol.core.models.source import SourceObject

logger = logging.getLogger(__name__)


def dependency_keys(resource: ManagedResource) -> list[NamespacedName]:
    """Declared dependencies, with the namespace defaulted to the resource's."""
    return [
        NamespacedName(namespace=d.namespace or resource.namespace, name=d.name)
        for d in resource.spec.depends_on
    ]


def back_reference_finalizer(dependent: ManagedResource) -> str:
    return DEPENDENCY_OF_PREFIX + dependent.name


# ── Readiness gate ──────────────────────────────────────────────


def check_dependencies(
    cluster: ClusterClient,
    source: SourceObject,
    resource: ManagedResource,
    field_owner: str,
) -> None:
    """Confirm every declared dependency is ready for ``resource``.

    Stops at the first unmet dependency.

    Raises:
        DependencyNotReadyError: with the specific unmet reason.
    """
    artifact = source.get_artifact()
    revision = artifact.revision if artifact else ""
    finalizer = back_reference_finalizer(resource)

    for key in dependency_keys(resource):
        try:
            dependency = cluster.get(key)
        except NotFoundError as e:
            raise DependencyNotReadyError(f"unable to get '{key}' dependency: {e}") from e

        if finalizer not in dependency.metadata.finalizers:
            dependency = cluster.patch_finalizers(
                key, [*dependency.metadata.finalizers, finalizer], field_owner
            )
            logger.debug("Added finalizer %s to dependency %s", finalizer, key)

        status = dependency.status
        if not status.conditions or status.observed_generation != dependency.generation:
            raise DependencyNotReadyError(f"dependency '{key}' is not ready")
        if not is_condition_true(status.conditions, READY):
            raise DependencyNotReadyError(f"dependency '{key}' is not ready")

        same_source = (
            dependency.spec.source_ref.kind == resource.spec.source_ref.kind
            and dependency.source_key == resource.source_key
        )
        if same_source and revision not in (status.last_applied_revision, status.last_planned_revision):
            raise DependencyNotReadyError(f"dependency '{key}' is not updated yet")

        if dependency.spec.write_outputs_to_secret is not None:
            secret = NamespacedName(
                namespace=dependency.namespace,
                name=dependency.spec.write_outputs_to_secret.name,
            )
            if not cluster.secret_exists(secret):
                raise DependencyNotReadyError(
                    f"dependency output secret: '{secret.name}' of '{key}' is not ready yet"
                )


def release_dependencies(
    cluster: ClusterClient,
    resource: ManagedResource,
    field_owner: str,
) -> None:
    """Remove this resource's back-reference finalizer from its dependencies.

    Dependencies that no longer exist are skipped.
    """
    finalizer = back_reference_finalizer(resource)
    for key in dependency_keys(resource):
        try:
            dependency = cluster.get(key)
        except NotFoundError:
            continue
        if finalizer in dependency.metadata.finalizers:
            remaining = [f for f in dependency.metadata.finalizers if f != finalizer]
            cluster.patch_finalizers(key, remaining, field_owner)
            logger.debug("Released finalizer %s on %s", finalizer, key)


# ── Ordering ────────────────────────────────────────────────────


def sort_by_dependencies(resources: list[ManagedResource]) -> list[ManagedResource]:
    """Order resources so dependencies come before their dependents.

    Only edges between members of ``resources`` matter. Ties are broken
    by key so the order is stable.

    Raises:
        CircularDependencyError: the dependency graph has a cycle.
    """
    by_key = {r.key: r for r in resources}
    indegree = {key: 0 for key in by_key}
    dependents: dict[NamespacedName, list[NamespacedName]] = {key: [] for key in by_key}

    for resource in resources:
        for dep in dependency_keys(resource):
            if dep in by_key and dep != resource.key:
                dependents[dep].append(resource.key)
                indegree[resource.key] += 1
            elif dep == resource.key:
                raise CircularDependencyError(f"'{resource.key}' depends on itself")

    ready = deque(sorted(k for k, n in indegree.items() if n == 0))
    ordered: list[ManagedResource] = []
    while ready:
        key = ready.popleft()
        ordered.append(by_key[key])
        for child in sorted(dependents[key]):
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)

    if len(ordered) != len(resources):
        stuck = sorted(str(k) for k, n in indegree.items() if n > 0)
        raise CircularDependencyError(f"circular dependency between {', '.join(stuck)}")
    return ordered


def requests_for_revision_change(cluster: ClusterClient, source: SourceObject) -> list[NamespacedName]:
    """Keys to reconcile after ``source`` published a new revision.

    Resources that already attempted the revision are dropped; the rest
    are returned dependencies-first. A cycle is logged and yields no
    requests.
    """
    artifact = source.get_artifact()
    if artifact is None:
        return []

    affected = [
        r for r in cluster.list_by_source(source.kind, source.index_key)
        if r.status.last_attempted_revision != artifact.revision
    ]
    try:
        ordered = sort_by_dependencies(affected)
    except CircularDependencyError as e:
        logger.error("Failed to sort dependents of %s %s: %s", source.kind, source.index_key, e)
        return []
    return [r.key for r in ordered]
