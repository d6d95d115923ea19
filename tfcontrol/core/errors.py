"""
Error taxonomy for the reconciliation engine.

Adapters raise these; the orchestrator decides which ones become
status conditions and which ones propagate to the work queue for
backoff.

    ControllerError
    ├── NotFoundError           object (or source, secret, pod) missing
    ├── ClusterError            transient API failure
    ├── ArtifactError           source snapshot unusable
    │   ├── ArtifactDownloadError
    │   └── ChecksumMismatchError
    ├── DependencyNotReadyError
    ├── CircularDependencyError
    ├── HealthCheckError        a post-apply health check failed
    ├── ConfigError             invalid controller configuration
    └── RunnerError
        ├── RunnerTimeoutError
        └── StateLockedError
"""

from __future__ import annotations


class ControllerError(Exception):
    """Base class for all controller errors."""


class NotFoundError(ControllerError):
    """Raised when a requested object does not exist."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} '{key}' not found")
        self.kind = kind
        self.key = key


class ClusterError(ControllerError):
    """Raised on transient object store failures (API, network)."""


class ArtifactError(ControllerError):
    """Raised when a source artifact cannot be used."""


class ArtifactDownloadError(ArtifactError):
    """Download failed: non-200 status or retries exhausted."""


class ChecksumMismatchError(ArtifactError):
    """Computed digest differs from the advertised checksum."""

    def __init__(self, computed: str, advertised: str):
        super().__init__(
            f"failed to verify artifact: computed checksum '{computed}' "
            f"doesn't match advertised '{advertised}'"
        )
        self.computed = computed
        self.advertised = advertised


class DependencyNotReadyError(ControllerError):
    """A declared dependency does not satisfy the readiness contract."""


class CircularDependencyError(ControllerError):
    """The dependency graph contains a cycle."""


class HealthCheckError(ControllerError):
    """A post-apply health check did not pass."""


class ConfigError(ControllerError):
    """Raised when the controller configuration is invalid."""


class RunnerError(ControllerError):
    """The runner failed to execute a step."""


class RunnerTimeoutError(RunnerError):
    """The runner could not be obtained within the creation timeout."""


class StateLockedError(RunnerError):
    """The Terraform state is locked by another holder."""

    def __init__(self, lock_id: str, message: str = ""):
        super().__init__(message or f"state is locked by '{lock_id}'")
        self.lock_id = lock_id
