"""
Certificate rotation — the process-wide trust root for runner channels.

    CertRotator            shared by every worker
      ├── ready            broadcast-once event, set after first rotation
      ├── is_ca_valid()    X.509 validity with a look-ahead window
      └── requests         queue of RotationRequest(namespace, reply)

    RotationServer         single daemon thread
      └── drains all queued requests, rotates once, answers each reply

Workers call ``ensure_trust()`` before provisioning a runner, so no
runner is ever created against an expired CA.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from tfcontrol.core.errors import RunnerError, RunnerTimeoutError
from tfcontrol.core.models.meta import utcnow

logger = logging.getLogger(__name__)

CA_COMMON_NAME = "tf-controller-ca"


@dataclass
class RotationResult:
    rotated: bool
    error: Exception | None = None


@dataclass
class RotationRequest:
    """Ask the rotation server for a fresh CA; the answer arrives on ``reply``."""

    namespace: str
    reply: queue.Queue = field(default_factory=lambda: queue.Queue(maxsize=1))


@dataclass
class CertificateAuthority:
    cert_pem: bytes
    key_pem: bytes

    @property
    def certificate(self) -> x509.Certificate:
        return x509.load_pem_x509_certificate(self.cert_pem)


def generate_ca(
    validity: timedelta = timedelta(hours=24),
    common_name: str = CA_COMMON_NAME,
    now: datetime | None = None,
) -> CertificateAuthority:
    """Create a self-signed EC P-256 certificate authority."""
    now = now or utcnow()
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + validity)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return CertificateAuthority(
        cert_pem=cert.public_bytes(serialization.Encoding.PEM),
        key_pem=key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ),
    )


class CertRotator:
    """Shared rotation capability injected into every reconciliation worker."""

    def __init__(
        self,
        lookahead: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.lookahead = lookahead
        self.ready = threading.Event()
        self.requests: queue.Queue[RotationRequest] = queue.Queue()
        self._clock = clock
        self._ca: CertificateAuthority | None = None
        self._lock = threading.Lock()

    @property
    def ca(self) -> CertificateAuthority | None:
        with self._lock:
            return self._ca

    def install(self, ca: CertificateAuthority) -> None:
        with self._lock:
            self._ca = ca

    def wait_ready(self, timeout: float | None = None) -> bool:
        return self.ready.wait(timeout)

    def is_ca_valid(self) -> bool:
        """Whether the current CA stays valid for at least the look-ahead window."""
        ca = self.ca
        if ca is None:
            return False
        cert = ca.certificate
        now = self._clock()
        return cert.not_valid_before_utc <= now and now + self.lookahead < cert.not_valid_after_utc

    def request_rotation(self, namespace: str = "", timeout: float | None = None) -> RotationResult:
        """Submit a rotation request and block until it is answered."""
        request = RotationRequest(namespace=namespace)
        self.requests.put(request)
        try:
            return request.reply.get(timeout=timeout)
        except queue.Empty:
            raise RunnerTimeoutError(
                f"timed out waiting for certificate rotation (namespace '{namespace}')"
            ) from None

    def ensure_trust(self, namespace: str = "", timeout: float | None = None) -> None:
        """Block until the trust root is usable, rotating it when invalid.

        Raises:
            RunnerTimeoutError: readiness or rotation did not arrive in time.
            RunnerError: the rotation itself failed.
        """
        if not self.wait_ready(timeout):
            raise RunnerTimeoutError("timed out waiting for certificate rotation readiness")
        if self.is_ca_valid():
            return

        logger.info("CA is not valid, requesting rotation for namespace '%s'", namespace)
        result = self.request_rotation(namespace, timeout)
        if result.error is not None:
            raise RunnerError(f"certificate rotation failed: {result.error}") from result.error


class RotationServer:
    """Background thread answering rotation requests.

    Rotates once at start (which sets ``ready``), then serves requests.
    Requests that queued up while a rotation ran are all answered by the
    next single rotation.
    """

    def __init__(
        self,
        rotator: CertRotator,
        validity: timedelta = timedelta(hours=24),
        generate: Callable[..., CertificateAuthority] = generate_ca,
        poll_interval: float = 0.5,
    ):
        self.rotator = rotator
        self.validity = validity
        self._generate = generate
        self._poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.rotations = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="cert-rotation", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def rotate(self) -> RotationResult:
        try:
            ca = self._generate(validity=self.validity)
        except Exception as e:
            logger.error("Certificate rotation failed: %s", e)
            return RotationResult(rotated=False, error=e)
        self.rotator.install(ca)
        self.rotations += 1
        self.rotator.ready.set()
        logger.info("Rotated certificate authority (rotation #%d)", self.rotations)
        return RotationResult(rotated=True)

    def serve_pending(self, block: bool = True) -> int:
        """Answer every queued request with one rotation. Returns how many were answered."""
        try:
            first = self.rotator.requests.get(timeout=self._poll_interval if block else 0.0)
        except queue.Empty:
            return 0

        batch = [first]
        while True:
            try:
                batch.append(self.rotator.requests.get_nowait())
            except queue.Empty:
                break

        result = self.rotate()
        for request in batch:
            request.reply.put(result)
        if len(batch) > 1:
            logger.debug("Coalesced %d rotation requests into one rotation", len(batch))
        return len(batch)

    def _loop(self) -> None:
        self.rotate()
        while not self._stop.is_set():
            self.serve_pending()
