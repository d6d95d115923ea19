"""
Shared test fixtures: in-memory cluster, scripted runner, fake HTTP,
and a ready certificate rotator.
"""

from __future__ import annotations

import hashlib
import io
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import pytest

from tfcontrol.adapters.memory import InMemoryCluster, ScriptedRunner, StaticProvisioner
from tfcontrol.core.engine.orchestrator import Reconciler
from tfcontrol.core.models.meta import NamespacedName, ObjectMeta
from tfcontrol.core.models.resource import ManagedResource, ManagedResourceSpec, SourceRef
from tfcontrol.core.models.source import Artifact, SourceKind, SourceObject
from tfcontrol.core.reliability.backoff import RetryPolicy
from tfcontrol.core.services.artifact import ArtifactFetcher
from tfcontrol.core.services.cert_rotation import CertRotator, generate_ca
from tfcontrol.core.services.runner_lifecycle import RunnerLifecycle

REVISION = "main/abcdefabcdefabcdefabcdefabcdefabcdefabcd"
TARBALL = b"fake terraform tarball"


class FakeResponse(io.BytesIO):
    def __init__(self, data: bytes, status: int = 200):
        super().__init__(data)
        self.status = status


class FakeOpener:
    """urlopen stand-in: serves ``body`` unless results are queued."""

    def __init__(self, body: bytes = TARBALL):
        self.body = body
        self.queued: list[Any] = []
        self.urls: list[str] = []

    def __call__(self, url: str, timeout: float | None = None) -> FakeResponse:
        self.urls.append(url)
        if self.queued:
            result = self.queued.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return FakeResponse(self.body)


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def make_resource(
    name: str = "stack",
    namespace: str = "default",
    source: str = "repo",
    **spec: Any,
) -> ManagedResource:
    spec.setdefault("interval", timedelta(minutes=5))
    return ManagedResource(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec=ManagedResourceSpec(
            source_ref=SourceRef(kind=SourceKind.GIT_REPOSITORY, name=source),
            **spec,
        ),
    )


def make_source(
    name: str = "repo",
    namespace: str = "default",
    revision: str = REVISION,
    data: bytes = TARBALL,
    with_artifact: bool = True,
) -> SourceObject:
    artifact = None
    if with_artifact:
        artifact = Artifact(url=f"http://source-controller/{name}.tar.gz", revision=revision, checksum=sha256(data))
    return SourceObject(kind=SourceKind.GIT_REPOSITORY, name=name, namespace=namespace, artifact=artifact)


@pytest.fixture
def cluster() -> InMemoryCluster:
    return InMemoryCluster()


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def provisioner(runner: ScriptedRunner) -> StaticProvisioner:
    return StaticProvisioner(runner)


@pytest.fixture
def opener() -> FakeOpener:
    return FakeOpener()


@pytest.fixture
def fetcher(opener: FakeOpener) -> ArtifactFetcher:
    return ArtifactFetcher(policy=RetryPolicy(retries=2, wait_min=0.0, wait_max=0.0), opener=opener, sleep=lambda s: None)


@pytest.fixture
def rotator() -> CertRotator:
    rot = CertRotator()
    rot.install(generate_ca())
    rot.ready.set()
    return rot


@pytest.fixture
def lifecycle(cluster: InMemoryCluster, provisioner: StaticProvisioner, rotator: CertRotator) -> RunnerLifecycle:
    return RunnerLifecycle(
        cluster,
        provisioner,
        rotator,
        creation_timeout=5,
        poll_interval=0,
        poll_timeout=1,
        sleep=lambda s: None,
    )


@pytest.fixture
def reconciler(cluster: InMemoryCluster, lifecycle: RunnerLifecycle, fetcher: ArtifactFetcher) -> Reconciler:
    return Reconciler(cluster, lifecycle, fetcher)


@pytest.fixture
def key() -> NamespacedName:
    return NamespacedName(namespace="default", name="stack")


@pytest.fixture
def resource_factory() -> Callable[..., ManagedResource]:
    return make_resource


@pytest.fixture
def source_factory() -> Callable[..., SourceObject]:
    return make_source
