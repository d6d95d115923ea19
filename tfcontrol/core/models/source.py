"""
Source objects — read-only views of upstream artifact providers.

A source (Git repository, bucket, OCI repository) publishes an
artifact: a checksummed tarball identified by a revision string. The
controller never mutates sources.
"""

from __future__ import annotations

from enum import StrEnum

from tfcontrol.core.models.meta import NamespacedName, WireModel


class SourceKind(StrEnum):
    """Supported source kinds."""

    GIT_REPOSITORY = "GitRepository"
    BUCKET = "Bucket"
    OCI_REPOSITORY = "OCIRepository"


class Artifact(WireModel):
    """A checksummed source snapshot."""

    url: str
    revision: str
    checksum: str = ""


class SourceObject(WireModel):
    """A source provider object with its latest artifact (if any)."""

    kind: SourceKind
    name: str
    namespace: str = "default"
    artifact: Artifact | None = None

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(namespace=self.namespace, name=self.name)

    @property
    def index_key(self) -> str:
        """Value under which dependents are indexed (``namespace/name``)."""
        return str(self.key)

    def get_artifact(self) -> Artifact | None:
        return self.artifact
