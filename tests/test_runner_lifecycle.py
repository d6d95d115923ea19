"""
Tests for the runner lifecycle — acquisition timeout, pod cleanup.
"""

import itertools
import threading

import pytest

from tests.conftest import make_resource
from tfcontrol.adapters.base import RunnerProvisioner
from tfcontrol.adapters.memory import InMemoryCluster, ScriptedRunner, StaticProvisioner
from tfcontrol.core.errors import ClusterError, RunnerError, RunnerTimeoutError
from tfcontrol.core.models.meta import NamespacedName
from tfcontrol.core.services.runner_lifecycle import RunnerHandle, RunnerLifecycle

POD = NamespacedName("default", "stack-tf-runner")


class SlowProvisioner(RunnerProvisioner):
    """Blocks until released, like a runner pod that takes long to start."""

    def __init__(self):
        self.release = threading.Event()
        self.closed = threading.Event()

    def lookup_or_create(self, resource):
        self.release.wait(5)
        return ScriptedRunner(), self.closed.set


def _lifecycle(cluster, provisioner, rotator, **kwargs):
    kwargs.setdefault("poll_interval", 0)
    kwargs.setdefault("sleep", lambda s: None)
    return RunnerLifecycle(cluster, provisioner, rotator, **kwargs)


class TestAcquire:
    def test_acquire(self, lifecycle, provisioner, runner):
        handle = lifecycle.acquire(make_resource())
        assert handle.runner is runner
        assert provisioner.opened == 1
        handle.close()
        assert provisioner.closed == 1

    def test_provisioning_error_propagates(self, cluster, rotator):
        provisioner = StaticProvisioner(ScriptedRunner(), error=RunnerError("pod failed to start"))
        with pytest.raises(RunnerError, match="pod failed to start"):
            _lifecycle(cluster, provisioner, rotator).acquire(make_resource())

    def test_creation_timeout(self, cluster, rotator):
        provisioner = SlowProvisioner()
        lifecycle = _lifecycle(cluster, provisioner, rotator, creation_timeout=0.05)
        with pytest.raises(RunnerTimeoutError, match="not ready after"):
            lifecycle.acquire(make_resource())

        # a runner that shows up late is closed, not leaked
        provisioner.release.set()
        assert provisioner.closed.wait(5)


class TestCleanup:
    def test_deletes_pod_and_closes(self, cluster, lifecycle, provisioner):
        cluster.add_pod(POD)
        res = make_resource()
        handle = lifecycle.acquire(res)
        lifecycle.cleanup(res, handle)
        assert provisioner.closed == 1
        assert cluster.deleted_pods == [(POD, 1, "Foreground")]
        assert cluster.get_pod(POD) is None

    def test_polls_until_gone(self, cluster, lifecycle):
        cluster.add_pod(POD)
        cluster.pod_deletes_before_gone = 2
        lifecycle.cleanup(make_resource(), None)
        assert len(cluster.deleted_pods) == 3
        assert cluster.get_pod(POD) is None

    def test_missing_pod_no_delete(self, cluster, lifecycle):
        lifecycle.cleanup(make_resource(), None)
        assert cluster.deleted_pods == []

    def test_timeout_is_not_raised(self, cluster, provisioner, rotator):
        ticks = itertools.count()
        lifecycle = _lifecycle(cluster, provisioner, rotator, poll_timeout=3, clock=lambda: next(ticks))
        cluster.add_pod(POD)
        cluster.pod_deletes_before_gone = 100
        lifecycle.cleanup(make_resource(), None)
        assert 1 <= len(cluster.deleted_pods) < 100
        assert cluster.get_pod(POD) is not None

    def test_insecure_local_runner_skips_pod(self, cluster, provisioner, rotator):
        cluster.add_pod(POD)
        lifecycle = _lifecycle(cluster, provisioner, rotator, insecure_local_runner=True)
        lifecycle.cleanup(make_resource(), None)
        assert cluster.deleted_pods == []

    def test_cleanup_disabled(self, cluster, lifecycle):
        cluster.add_pod(POD)
        lifecycle.cleanup(make_resource(always_cleanup_runner_pod=False), None)
        assert cluster.deleted_pods == []

    def test_transient_delete_error_keeps_polling(self, cluster, lifecycle):
        cluster.add_pod(POD)
        cluster.fail_next("delete_pod")
        lifecycle.cleanup(make_resource(), None)
        assert cluster.get_pod(POD) is None
        assert len(cluster.deleted_pods) == 1

    def test_transient_get_error_keeps_polling(self, cluster, lifecycle):
        cluster.add_pod(POD)
        cluster.fail_next("get_pod")
        lifecycle.cleanup(make_resource(), None)
        assert cluster.get_pod(POD) is None

    def test_persistent_errors_end_at_timeout(self, provisioner, rotator):
        class DownCluster(InMemoryCluster):
            def delete_pod(self, key, grace_period_seconds=1, propagation="Foreground"):
                raise ClusterError("api unavailable")

        down = DownCluster()
        down.add_pod(POD)
        ticks = itertools.count()
        lifecycle = _lifecycle(down, provisioner, rotator, poll_timeout=3, clock=lambda: next(ticks))
        lifecycle.cleanup(make_resource(), None)
        assert down.get_pod(POD) is not None

    def test_close_error_is_logged(self, lifecycle, runner):
        def broken_close():
            raise RuntimeError("channel already closed")

        lifecycle.cleanup(make_resource(), RunnerHandle(runner=runner, close=broken_close))


class TestSession:
    def test_cleanup_on_error(self, cluster, lifecycle, provisioner):
        cluster.add_pod(POD)
        with pytest.raises(ValueError):
            with lifecycle.session(make_resource()):
                raise ValueError("boom")
        assert provisioner.closed == 1
        assert cluster.get_pod(POD) is None

    def test_session_yields_handle(self, lifecycle, runner):
        with lifecycle.session(make_resource()) as handle:
            assert handle.runner is runner
