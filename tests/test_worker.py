"""
Tests for the runtime — work queue guarantees and the worker controller.
"""

import threading
from datetime import timedelta

from tests.conftest import make_resource, make_source
from tfcontrol.core.engine.worker import Controller, WorkQueue
from tfcontrol.core.errors import ClusterError
from tfcontrol.core.models.meta import NamespacedName
from tfcontrol.core.models.resource import DependencyRef
from tfcontrol.core.models.result import ReconcileResult
from tfcontrol.core.reliability.backoff import ItemBackoff

A = NamespacedName("default", "a")
B = NamespacedName("default", "b")


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


# ── WorkQueue ───────────────────────────────────────────────────


class TestWorkQueue:
    def test_fifo(self):
        q = WorkQueue()
        q.add(A)
        q.add(B)
        assert q.get(timeout=0) == A
        assert q.get(timeout=0) == B

    def test_duplicates_collapse(self):
        q = WorkQueue()
        q.add(A)
        q.add(A)
        assert len(q) == 1

    def test_empty_get_times_out(self):
        assert WorkQueue().get(timeout=0.01) is None

    def test_key_not_handed_out_twice(self):
        q = WorkQueue()
        q.add(A)
        assert q.get(timeout=0) == A
        assert q.is_processing(A)

        q.add(A)
        assert len(q) == 0
        assert q.get(timeout=0) is None

        q.done(A)
        assert not q.is_processing(A)
        assert q.get(timeout=0) == A

    def test_done_without_readd(self):
        q = WorkQueue()
        q.add(A)
        q.get(timeout=0)
        q.done(A)
        assert len(q) == 0

    def test_add_after(self):
        clock = FakeClock()
        q = WorkQueue(clock=clock)
        q.add_after(A, 10)
        assert q.pending_delayed() == 1
        assert q.get(timeout=0) is None

        clock.now = 10
        assert q.get(timeout=0) == A
        assert q.pending_delayed() == 0

    def test_add_after_ordering(self):
        clock = FakeClock()
        q = WorkQueue(clock=clock)
        q.add_after(B, 20)
        q.add_after(A, 5)
        clock.now = 30
        assert q.get(timeout=0) == A
        assert q.get(timeout=0) == B

    def test_add_after_keeps_earliest_deadline(self):
        clock = FakeClock()
        q = WorkQueue(clock=clock)
        q.add_after(A, 30)
        q.add_after(A, 60)
        assert q.pending_delayed() == 1

        q.add_after(A, 5)
        assert q.pending_delayed() == 1
        clock.now = 5
        assert q.get(timeout=0) == A
        q.done(A)

        clock.now = 100
        assert q.get(timeout=0) is None
        assert q.pending_delayed() == 0

    def test_add_after_zero_is_immediate(self):
        q = WorkQueue()
        q.add_after(A, 0)
        assert len(q) == 1

    def test_blocking_get_wakes_on_add(self):
        q = WorkQueue()
        got = []
        t = threading.Thread(target=lambda: got.append(q.get(timeout=5)))
        t.start()
        q.add(A)
        t.join(5)
        assert got == [A]

    def test_shutdown(self):
        q = WorkQueue()
        q.add(A)
        q.shutdown()
        assert q.shutting_down
        assert q.get(timeout=0) is None
        q.add(B)
        q.add_after(B, 5)
        assert q.pending_delayed() == 0


# ── Controller ──────────────────────────────────────────────────


class TestController:
    def _controller(self, cluster, reconcile):
        return Controller(reconcile, cluster, workers=2, backoff=ItemBackoff(base_delay=1.0), queue=WorkQueue())

    def test_requeue_after(self, cluster):
        ctrl = self._controller(cluster, lambda key: ReconcileResult.after(timedelta(seconds=30)))
        ctrl.process_one(A)
        assert ctrl.queue.pending_delayed() == 1
        assert ctrl.backoff.failures(str(A)) == 0

    def test_no_requeue(self, cluster):
        ctrl = self._controller(cluster, lambda key: ReconcileResult.done())
        assert ctrl.process_one(A) == ReconcileResult.done()
        assert ctrl.queue.pending_delayed() == 0
        assert len(ctrl.queue) == 0

    def test_error_backs_off(self, cluster):
        def boom(key):
            raise ClusterError("api unavailable")

        ctrl = self._controller(cluster, boom)
        assert ctrl.process_one(A) is None
        assert ctrl.process_one(A) is None
        assert ctrl.backoff.failures(str(A)) == 2
        assert ctrl.queue.pending_delayed() == 1

    def test_success_resets_backoff(self, cluster):
        results = [ClusterError("flaky"), ReconcileResult.done()]

        def flaky(key):
            result = results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        ctrl = self._controller(cluster, flaky)
        ctrl.process_one(A)
        ctrl.process_one(A)
        assert ctrl.backoff.failures(str(A)) == 0

    def test_immediate_requeue_rate_limited(self, cluster):
        ctrl = self._controller(cluster, lambda key: ReconcileResult.immediately())
        ctrl.process_one(A)
        assert ctrl.backoff.failures(str(A)) == 1
        assert ctrl.queue.pending_delayed() == 1

    def test_done_called_on_error(self, cluster):
        def boom(key):
            raise ClusterError("down")

        ctrl = self._controller(cluster, boom)
        ctrl.queue.add(A)
        ctrl.queue.get(timeout=0)
        ctrl.process_one(A)
        assert not ctrl.queue.is_processing(A)

    def test_on_source_changed(self, cluster):
        cluster.add(make_resource(name="app", depends_on=[DependencyRef(name="db")]))
        cluster.add(make_resource(name="db"))
        ctrl = self._controller(cluster, lambda key: ReconcileResult.done())
        keys = ctrl.on_source_changed(make_source())
        assert keys == [NamespacedName("default", "db"), NamespacedName("default", "app")]
        assert len(ctrl.queue) == 2

    def test_workers_process_queue(self, cluster):
        seen = []
        finished = threading.Event()

        def reconcile(key):
            seen.append(key)
            if len(seen) == 2:
                finished.set()
            return ReconcileResult.done()

        ctrl = self._controller(cluster, reconcile)
        ctrl.start()
        try:
            ctrl.enqueue(A)
            ctrl.enqueue(B)
            assert finished.wait(5)
        finally:
            ctrl.stop()
        assert sorted(seen) == [A, B]

    def test_long_failure_streak_keeps_scheduling(self, cluster):
        def boom(key):
            raise ClusterError("api unavailable")

        ctrl = Controller(boom, cluster, backoff=ItemBackoff(base_delay=0.005, max_delay=1000.0), queue=WorkQueue())
        for _ in range(1030):
            assert ctrl.process_one(A) is None
        assert ctrl.backoff.failures(str(A)) == 1030
        assert ctrl.queue.pending_delayed() == 1

    def test_worker_survives_scheduling_failure(self, cluster):
        class BrokenBackoff(ItemBackoff):
            def when(self, key):
                if key == str(A):
                    raise RuntimeError("broken")
                return super().when(key)

        seen = []
        finished = threading.Event()

        def reconcile(key):
            seen.append(key)
            if key == B:
                finished.set()
            raise ClusterError("down")

        ctrl = Controller(reconcile, cluster, workers=1, backoff=BrokenBackoff(base_delay=1.0), queue=WorkQueue())
        ctrl.start()
        try:
            ctrl.enqueue(A)
            ctrl.enqueue(B)
            assert finished.wait(5)
        finally:
            ctrl.stop()
        assert seen[:2] == [A, B]
