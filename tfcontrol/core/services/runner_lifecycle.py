"""
Runner lifecycle — acquire a runner over a trusted channel, then clean up.

    acquire(resource)
        ├── rotator.ensure_trust(namespace)     never provision on a stale CA
        └── provisioner.lookup_or_create()      bounded by creation_timeout

    cleanup(resource, handle)
        ├── close the channel
        └── unless insecure local runner or cleanup disabled:
            poll every 5s (max 120s): delete pod (grace 1s, Foreground)
            until it is gone; a timeout is logged, not raised

``session()`` wraps both so cleanup runs however the attempt ends.
"""

from __future__ import annotations

import concurrent.futures
import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from tfcontrol.adapters.base import ClusterClient, CloseFn, Runner, RunnerProvisioner
from tfcontrol.core.errors import ControllerError, RunnerTimeoutError
from tfcontrol.core.models.meta import NamespacedName
from tfcontrol.core.models.resource import ManagedResource
from tfcontrol.core.services.cert_rotation import CertRotator

logger = logging.getLogger(__name__)

POD_DELETE_GRACE_SECONDS = 1
POD_DELETE_PROPAGATION = "Foreground"


@dataclass
class RunnerHandle:
    runner: Runner
    close: CloseFn


class RunnerLifecycle:
    """Owns runner acquisition and teardown for reconciliation attempts."""

    def __init__(
        self,
        cluster: ClusterClient,
        provisioner: RunnerProvisioner,
        rotator: CertRotator,
        creation_timeout: float = 120.0,
        insecure_local_runner: bool = False,
        poll_interval: float = 5.0,
        poll_timeout: float = 120.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cluster = cluster
        self.provisioner = provisioner
        self.rotator = rotator
        self.creation_timeout = creation_timeout
        self.insecure_local_runner = insecure_local_runner
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._sleep = sleep
        self._clock = clock

    # ── Acquire ─────────────────────────────────────────────────

    def acquire(self, resource: ManagedResource) -> RunnerHandle:
        """Return a connected runner for ``resource``.

        Raises:
            RunnerTimeoutError: provisioning exceeded the creation timeout.
            RunnerError: trust could not be established or provisioning failed.
        """
        self.rotator.ensure_trust(resource.namespace)

        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"runner-{resource.name}"
        )
        future = executor.submit(self.provisioner.lookup_or_create, resource)
        executor.shutdown(wait=False)
        try:
            runner, close = future.result(timeout=self.creation_timeout)
        except concurrent.futures.TimeoutError:
            future.add_done_callback(_close_late_result)
            raise RunnerTimeoutError(
                f"runner for '{resource.key}' not ready after {self.creation_timeout:g}s"
            ) from None

        logger.debug("Runner acquired for %s", resource.key)
        return RunnerHandle(runner=runner, close=close)

    # ── Cleanup ─────────────────────────────────────────────────

    def cleanup(self, resource: ManagedResource, handle: RunnerHandle | None) -> None:
        """Close the channel and remove the runner pod; cluster API errors are logged."""
        if handle is not None:
            try:
                handle.close()
            except Exception as e:
                logger.warning("Failed to close runner channel for %s: %s", resource.key, e)

        if self.insecure_local_runner:
            return
        if not resource.always_cleanup_runner_pod:
            logger.debug("Runner pod cleanup disabled for %s", resource.key)
            return

        pod = NamespacedName(namespace=resource.namespace, name=resource.runner_pod_name)
        if not self._delete_until_gone(pod):
            logger.error("Timed out waiting for runner pod %s to be deleted", pod)

    def _delete_until_gone(self, pod: NamespacedName) -> bool:
        """Delete ``pod`` on every tick until it is gone or the deadline passes.

        API errors on one tick are logged and polling continues.
        """
        deadline = self._clock() + self.poll_timeout
        while True:
            try:
                if self.cluster.get_pod(pod) is None:
                    return True
                self.cluster.delete_pod(
                    pod,
                    grace_period_seconds=POD_DELETE_GRACE_SECONDS,
                    propagation=POD_DELETE_PROPAGATION,
                )
            except ControllerError as e:
                logger.warning("Runner pod %s cleanup attempt failed, retrying: %s", pod, e)
            if self._clock() >= deadline:
                return False
            self._sleep(self.poll_interval)

    @contextmanager
    def session(self, resource: ManagedResource) -> Iterator[RunnerHandle]:
        """Acquire a runner; clean it up when the block exits."""
        handle = self.acquire(resource)
        try:
            yield handle
        finally:
            self.cleanup(resource, handle)


def _close_late_result(future: concurrent.futures.Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    _, close = future.result()
    try:
        close()
    except Exception as e:
        logger.warning("Failed to close late runner channel: %s", e)
