"""
Artifact fetcher — download a source snapshot and verify it.

    Artifact(url, revision, checksum)
        │
        ├── resolve_url()       optional in-cluster host rewrite
        ├── _download()         bounded retries, non-200 is fatal
        └── verify_artifact()   sha1 for 40-char checksums, sha256 otherwise

A checksum mismatch is never retried. The fetcher also remembers the
rejected (revision, checksum) pair so the next attempt fails without
downloading the same bytes again; a new revision or checksum clears it.
"""

from __future__ import annotations

import hashlib
import io
import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable
from typing import Any, BinaryIO

from tfcontrol.core.errors import ArtifactDownloadError, ChecksumMismatchError
from tfcontrol.core.models.source import Artifact
from tfcontrol.core.reliability.backoff import RetryPolicy

logger = logging.getLogger(__name__)

LEGACY_CHECKSUM_LENGTH = 40
_CHUNK_SIZE = 8192

# Status codes worth another attempt; everything else that is not 200 fails.
_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


def select_hasher(checksum: str) -> Any:
    """Pick the digest for an advertised checksum.

    Older source providers advertise SHA-1 (40 hex chars); everything
    else is SHA-256.
    """
    if len(checksum) == LEGACY_CHECKSUM_LENGTH:
        return hashlib.sha1()
    return hashlib.sha256()


def verify_artifact(artifact: Artifact, reader: BinaryIO) -> bytes:
    """Stream ``reader`` through the digest and return the verified bytes.

    Raises:
        ChecksumMismatchError: the computed digest differs from the
            advertised checksum (exact, case-sensitive hex).
    """
    hasher = select_hasher(artifact.checksum)
    buffer = io.BytesIO()
    while True:
        chunk = reader.read(_CHUNK_SIZE)
        if not chunk:
            break
        hasher.update(chunk)
        buffer.write(chunk)

    computed = hasher.hexdigest()
    if computed != artifact.checksum:
        raise ChecksumMismatchError(computed, artifact.checksum)
    return buffer.getvalue()


class ArtifactFetcher:
    """Fetch and verify source artifacts over HTTP.

    Args:
        policy: Retry window for transient download failures.
        timeout: Per-request socket timeout in seconds.
        localhost_override: ``host[:port]`` replacing the artifact URL's
            host, for running the controller outside the cluster.
        opener: ``urlopen``-compatible callable, injectable for tests.
        sleep: Sleep function used between retries.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        timeout: float = 30.0,
        localhost_override: str = "",
        opener: Callable[..., Any] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self.localhost_override = localhost_override
        self._opener = opener or urllib.request.urlopen
        self._sleep = sleep
        self._rejected: dict[str, tuple[str, str, str]] = {}
        self._lock = threading.Lock()

    def resolve_url(self, url: str) -> str:
        if not self.localhost_override:
            return url
        parts = urllib.parse.urlsplit(url)
        return urllib.parse.urlunsplit(parts._replace(netloc=self.localhost_override))

    def fetch(self, artifact: Artifact, owner: str = "") -> bytes:
        """Download and verify ``artifact``.

        ``owner`` identifies the caller (usually the resource key) for
        the rejected-checksum memo.

        Raises:
            ArtifactDownloadError: non-200 response or retries exhausted.
            ChecksumMismatchError: integrity check failed.
        """
        with self._lock:
            rejected = self._rejected.get(owner)
        if rejected is not None and rejected[0] == artifact.revision and rejected[1] == artifact.checksum:
            logger.debug("Artifact %s already rejected for %s, not downloading again", artifact.revision, owner)
            raise ChecksumMismatchError(rejected[2], artifact.checksum)

        url = self.resolve_url(artifact.url)
        with self._download(url) as body:
            try:
                data = verify_artifact(artifact, body)
            except ChecksumMismatchError as e:
                with self._lock:
                    self._rejected[owner] = (artifact.revision, artifact.checksum, e.computed)
                logger.warning("Artifact %s rejected: %s", artifact.revision, e)
                raise

        with self._lock:
            self._rejected.pop(owner, None)
        logger.debug("Fetched artifact %s (%d bytes)", artifact.revision, len(data))
        return data

    def _download(self, url: str) -> Any:
        last_error = ""
        for attempt in range(1, self.policy.attempts + 1):
            try:
                response = self._opener(url, timeout=self.timeout)
            except urllib.error.HTTPError as e:
                if e.code not in _RETRYABLE_STATUS:
                    raise ArtifactDownloadError(
                        f"failed to download artifact from {url}, status: {e.code} {e.reason}"
                    ) from e
                last_error = f"status: {e.code} {e.reason}"
            except (urllib.error.URLError, OSError) as e:
                last_error = str(e)
            else:
                status = getattr(response, "status", 200)
                if status == 200:
                    return response
                response.close()
                if status not in _RETRYABLE_STATUS:
                    raise ArtifactDownloadError(
                        f"failed to download artifact from {url}, status: {status}"
                    )
                last_error = f"status: {status}"

            if attempt < self.policy.attempts:
                delay = self.policy.delay(attempt)
                logger.info(
                    "Artifact download attempt %d/%d failed (%s), retrying in %.1fs",
                    attempt, self.policy.attempts, last_error, delay,
                )
                self._sleep(delay)

        raise ArtifactDownloadError(
            f"failed to download artifact from {url} after {self.policy.attempts} attempts: {last_error}"
        )
