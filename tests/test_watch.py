"""
Tests for the polling watcher — generation, deletion, revision changes, resync.
"""

import threading

from tests.conftest import make_resource, make_source
from tfcontrol.core.engine.watch import PollingWatcher
from tfcontrol.core.models.meta import NamespacedName

KEY = NamespacedName("default", "stack")


class Recorder:
    def __init__(self):
        self.keys = []
        self.sources = []

    def enqueue(self, key):
        self.keys.append(key)

    def source_changed(self, source):
        self.sources.append(source)


def _watcher(cluster, recorder, clock=None, resync=30.0):
    return PollingWatcher(
        cluster,
        recorder.enqueue,
        recorder.source_changed,
        resync=resync,
        clock=clock or (lambda: 0.0),
    )


class TestPollingWatcher:
    def test_new_resources_enqueued(self, cluster):
        cluster.add(make_resource())
        rec = Recorder()
        assert _watcher(cluster, rec).poll() == [KEY]
        assert rec.keys == [KEY]

    def test_unchanged_not_enqueued(self, cluster):
        cluster.add(make_resource())
        rec = Recorder()
        watcher = _watcher(cluster, rec)
        watcher.poll()
        assert watcher.poll() == []

    def test_status_change_ignored(self, cluster):
        res = cluster.add(make_resource())
        rec = Recorder()
        watcher = _watcher(cluster, rec)
        watcher.poll()
        res.status.last_attempted_revision = "main/abc"
        cluster.patch_status(KEY, res.status, "test")
        assert watcher.poll() == []

    def test_generation_change(self, cluster):
        cluster.add(make_resource())
        rec = Recorder()
        watcher = _watcher(cluster, rec)
        watcher.poll()
        cluster.update_spec(KEY, approve_plan="auto")
        assert watcher.poll() == [KEY]

    def test_deletion_started(self, cluster):
        cluster.add(make_resource())
        cluster.patch_finalizers(KEY, ["finalizers.tf.contrib.fluxcd.io"], "test")
        rec = Recorder()
        watcher = _watcher(cluster, rec)
        watcher.poll()
        cluster.mark_deleted(KEY)
        assert watcher.poll() == [KEY]

    def test_source_revision_change(self, cluster):
        cluster.add_source(make_source(revision="main/aaa"))
        rec = Recorder()
        watcher = _watcher(cluster, rec)
        watcher.poll()
        assert rec.sources == []

        cluster.add_source(make_source(revision="main/bbb"))
        watcher.poll()
        assert [s.artifact.revision for s in rec.sources] == ["main/bbb"]

        watcher.poll()
        assert len(rec.sources) == 1

    def test_source_losing_artifact_ignored(self, cluster):
        cluster.add_source(make_source(revision="main/aaa"))
        rec = Recorder()
        watcher = _watcher(cluster, rec)
        watcher.poll()
        cluster.add_source(make_source(with_artifact=False))
        watcher.poll()
        assert rec.sources == []

    def test_resync(self, cluster):
        now = [0.0]
        cluster.add(make_resource())
        rec = Recorder()
        watcher = _watcher(cluster, rec, clock=lambda: now[0], resync=30.0)
        watcher.poll()
        now[0] = 10.0
        watcher.poll()
        assert rec.keys == [KEY]

        now[0] = 31.0
        watcher.poll()
        assert rec.keys == [KEY, KEY]

    def test_start_stop(self, cluster):
        cluster.add(make_resource())
        polled = threading.Event()
        watcher = PollingWatcher(cluster, lambda key: polled.set(), lambda source: None, interval=0.01)
        watcher.start()
        try:
            assert polled.wait(5)
        finally:
            watcher.stop()
