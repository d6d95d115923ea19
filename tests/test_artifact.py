"""
Tests for the artifact fetcher — download retries, checksum verification.
"""

import hashlib
import io
import urllib.error

import pytest

from tests.conftest import TARBALL, FakeOpener, FakeResponse, sha256
from tfcontrol.core.errors import ArtifactDownloadError, ChecksumMismatchError
from tfcontrol.core.models.source import Artifact
from tfcontrol.core.reliability.backoff import RetryPolicy
from tfcontrol.core.services.artifact import ArtifactFetcher, select_hasher, verify_artifact

URL = "http://source-controller.flux-system.svc/gitrepository/default/repo/abc.tar.gz"


def _artifact(checksum: str = "", revision: str = "main/abc") -> Artifact:
    return Artifact(url=URL, revision=revision, checksum=checksum or sha256(TARBALL))


def _fetcher(opener, retries: int = 2, **kwargs) -> tuple[ArtifactFetcher, list[float]]:
    sleeps: list[float] = []
    fetcher = ArtifactFetcher(
        policy=RetryPolicy(retries=retries, wait_min=1.0, wait_max=4.0),
        opener=opener,
        sleep=sleeps.append,
        **kwargs,
    )
    return fetcher, sleeps


# ── Verification ────────────────────────────────────────────────


class TestVerify:
    def test_sha256_selected_by_default(self):
        assert select_hasher("x" * 64).name == "sha256"

    def test_sha1_for_legacy_checksum(self):
        assert select_hasher("x" * 40).name == "sha1"

    def test_verify_sha256(self):
        assert verify_artifact(_artifact(), io.BytesIO(TARBALL)) == TARBALL

    def test_verify_sha1(self):
        artifact = _artifact(checksum=hashlib.sha1(TARBALL).hexdigest())
        assert verify_artifact(artifact, io.BytesIO(TARBALL)) == TARBALL

    def test_verify_large_body_in_chunks(self):
        data = b"z" * 50000
        assert verify_artifact(_artifact(checksum=sha256(data)), io.BytesIO(data)) == data

    def test_mismatch(self):
        with pytest.raises(ChecksumMismatchError) as exc:
            verify_artifact(_artifact(checksum="0" * 64), io.BytesIO(TARBALL))
        assert exc.value.computed == sha256(TARBALL)
        assert exc.value.advertised == "0" * 64
        assert "doesn't match advertised" in str(exc.value)

    def test_checksum_case_sensitive(self):
        with pytest.raises(ChecksumMismatchError):
            verify_artifact(_artifact(checksum=sha256(TARBALL).upper()), io.BytesIO(TARBALL))


# ── Download ────────────────────────────────────────────────────


class TestDownload:
    def test_fetch_success(self):
        opener = FakeOpener()
        fetcher, sleeps = _fetcher(opener)
        assert fetcher.fetch(_artifact()) == TARBALL
        assert opener.urls == [URL]
        assert sleeps == []

    def test_localhost_override(self):
        opener = FakeOpener()
        fetcher, _ = _fetcher(opener, localhost_override="localhost:9090")
        fetcher.fetch(_artifact())
        assert opener.urls == ["http://localhost:9090/gitrepository/default/repo/abc.tar.gz"]

    def test_non_200_is_fatal(self):
        opener = FakeOpener()
        opener.queued = [FakeResponse(b"", status=404)]
        fetcher, sleeps = _fetcher(opener)
        with pytest.raises(ArtifactDownloadError, match="status: 404"):
            fetcher.fetch(_artifact())
        assert len(opener.urls) == 1
        assert sleeps == []

    def test_http_error_not_retried(self):
        opener = FakeOpener()
        opener.queued = [urllib.error.HTTPError(URL, 403, "Forbidden", None, None)]
        fetcher, _ = _fetcher(opener)
        with pytest.raises(ArtifactDownloadError, match="403"):
            fetcher.fetch(_artifact())
        assert len(opener.urls) == 1

    def test_transient_failures_retried(self):
        opener = FakeOpener()
        opener.queued = [
            urllib.error.URLError("connection refused"),
            FakeResponse(b"", status=503),
        ]
        fetcher, sleeps = _fetcher(opener)
        assert fetcher.fetch(_artifact()) == TARBALL
        assert len(opener.urls) == 3
        assert sleeps == [1.0, 2.0]

    def test_retries_exhausted(self):
        opener = FakeOpener()
        opener.queued = [urllib.error.URLError("down")] * 3
        fetcher, sleeps = _fetcher(opener, retries=2)
        with pytest.raises(ArtifactDownloadError, match="after 3 attempts"):
            fetcher.fetch(_artifact())
        assert len(sleeps) == 2


# ── Rejected checksum memo ──────────────────────────────────────


class TestRejectedChecksum:
    def test_mismatch_not_retried(self):
        opener = FakeOpener(body=b"tampered")
        fetcher, sleeps = _fetcher(opener)
        with pytest.raises(ChecksumMismatchError):
            fetcher.fetch(_artifact(), owner="default/stack")
        assert len(opener.urls) == 1
        assert sleeps == []

    def test_same_revision_not_downloaded_again(self):
        opener = FakeOpener(body=b"tampered")
        fetcher, _ = _fetcher(opener)
        with pytest.raises(ChecksumMismatchError):
            fetcher.fetch(_artifact(), owner="default/stack")
        with pytest.raises(ChecksumMismatchError):
            fetcher.fetch(_artifact(), owner="default/stack")
        assert len(opener.urls) == 1

    def test_new_revision_clears_memo(self):
        opener = FakeOpener(body=b"tampered")
        fetcher, _ = _fetcher(opener)
        with pytest.raises(ChecksumMismatchError):
            fetcher.fetch(_artifact(), owner="default/stack")

        opener.body = TARBALL
        assert fetcher.fetch(_artifact(revision="main/def"), owner="default/stack") == TARBALL
        assert len(opener.urls) == 2

    def test_memo_is_per_owner(self):
        opener = FakeOpener(body=b"tampered")
        fetcher, _ = _fetcher(opener)
        with pytest.raises(ChecksumMismatchError):
            fetcher.fetch(_artifact(), owner="default/a")
        with pytest.raises(ChecksumMismatchError):
            fetcher.fetch(_artifact(), owner="default/b")
        assert len(opener.urls) == 2
