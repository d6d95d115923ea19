"""
Tests for the dependency resolver — readiness gate, ordering, release.
"""

import pytest

from tests.conftest import REVISION, make_resource, make_source
from tfcontrol.core.errors import CircularDependencyError, DependencyNotReadyError
from tfcontrol.core.models.conditions import READY, ConditionStatus, set_condition
from tfcontrol.core.models.meta import NamespacedName
from tfcontrol.core.models.resource import DependencyRef, WriteOutputsToSecret
from tfcontrol.core.services.dependencies import (
    back_reference_finalizer,
    check_dependencies,
    dependency_keys,
    release_dependencies,
    requests_for_revision_change,
    sort_by_dependencies,
)

OWNER = "tf-controller"
DB = NamespacedName("default", "db")


def _ready_dependency(name: str = "db", revision: str = REVISION, **spec):
    dep = make_resource(name=name, **spec)
    dep.status.conditions = set_condition([], READY, ConditionStatus.TRUE, "Ok", "applied")
    dep.status.observed_generation = dep.generation
    dep.status.last_applied_revision = revision
    return dep


def _dependent(*deps: str, name: str = "app", **spec):
    return make_resource(name=name, depends_on=[DependencyRef(name=d) for d in deps], **spec)


class TestDependencyKeys:
    def test_namespace_defaults(self):
        res = make_resource(namespace="flux", depends_on=[DependencyRef(name="a"), DependencyRef(name="b", namespace="ops")])
        assert dependency_keys(res) == [NamespacedName("flux", "a"), NamespacedName("ops", "b")]

    def test_back_reference_finalizer(self):
        assert back_reference_finalizer(make_resource(name="app")) == "tf.dependency.of.app"


# ── Readiness gate ──────────────────────────────────────────────


class TestCheckDependencies:
    def test_ready_dependency_passes(self, cluster):
        cluster.add(_ready_dependency())
        check_dependencies(cluster, make_source(), _dependent("db"), OWNER)

    def test_adds_back_reference_finalizer(self, cluster):
        cluster.add(_ready_dependency())
        check_dependencies(cluster, make_source(), _dependent("db"), OWNER)
        assert "tf.dependency.of.app" in cluster.get(DB).metadata.finalizers

    def test_finalizer_added_even_when_not_ready(self, cluster):
        cluster.add(make_resource(name="db"))
        with pytest.raises(DependencyNotReadyError):
            check_dependencies(cluster, make_source(), _dependent("db"), OWNER)
        assert "tf.dependency.of.app" in cluster.get(DB).metadata.finalizers

    def test_missing_dependency(self, cluster):
        with pytest.raises(DependencyNotReadyError, match="unable to get 'default/db' dependency"):
            check_dependencies(cluster, make_source(), _dependent("db"), OWNER)

    def test_no_conditions(self, cluster):
        cluster.add(make_resource(name="db"))
        with pytest.raises(DependencyNotReadyError, match="dependency 'default/db' is not ready"):
            check_dependencies(cluster, make_source(), _dependent("db"), OWNER)

    def test_stale_generation(self, cluster):
        dep = _ready_dependency()
        dep.metadata.generation = 2
        cluster.add(dep)
        with pytest.raises(DependencyNotReadyError, match="is not ready"):
            check_dependencies(cluster, make_source(), _dependent("db"), OWNER)

    def test_ready_false(self, cluster):
        dep = _ready_dependency()
        dep.status.conditions = set_condition([], READY, ConditionStatus.FALSE, "Bad", "failed")
        cluster.add(dep)
        with pytest.raises(DependencyNotReadyError, match="is not ready"):
            check_dependencies(cluster, make_source(), _dependent("db"), OWNER)

    def test_same_source_old_revision(self, cluster):
        cluster.add(_ready_dependency(revision="main/old"))
        with pytest.raises(DependencyNotReadyError, match="is not updated yet"):
            check_dependencies(cluster, make_source(), _dependent("db"), OWNER)

    def test_same_source_planned_revision_accepted(self, cluster):
        dep = _ready_dependency(revision="main/old")
        dep.status.last_planned_revision = REVISION
        cluster.add(dep)
        check_dependencies(cluster, make_source(), _dependent("db"), OWNER)

    def test_other_source_revision_ignored(self, cluster):
        cluster.add(_ready_dependency(revision="main/old", source="other"))
        check_dependencies(cluster, make_source(), _dependent("db"), OWNER)

    def test_output_secret_missing(self, cluster):
        cluster.add(_ready_dependency(write_outputs_to_secret=WriteOutputsToSecret(name="db-out")))
        with pytest.raises(DependencyNotReadyError, match="dependency output secret: 'db-out' of 'default/db'"):
            check_dependencies(cluster, make_source(), _dependent("db"), OWNER)

    def test_output_secret_present(self, cluster):
        cluster.add(_ready_dependency(write_outputs_to_secret=WriteOutputsToSecret(name="db-out")))
        cluster.add_secret(NamespacedName("default", "db-out"), {"url": "x"})
        check_dependencies(cluster, make_source(), _dependent("db"), OWNER)

    def test_stops_at_first_unmet(self, cluster):
        cluster.add(make_resource(name="a"))
        cluster.add(make_resource(name="b"))
        with pytest.raises(DependencyNotReadyError, match="default/a"):
            check_dependencies(cluster, make_source(), _dependent("a", "b"), OWNER)
        assert cluster.get(NamespacedName("default", "b")).metadata.finalizers == []


class TestReleaseDependencies:
    def test_removes_only_own_finalizer(self, cluster):
        dep = make_resource(name="db")
        dep.metadata.finalizers = ["tf.dependency.of.app", "tf.dependency.of.other"]
        cluster.add(dep)
        release_dependencies(cluster, _dependent("db"), OWNER)
        assert cluster.get(DB).metadata.finalizers == ["tf.dependency.of.other"]

    def test_missing_dependency_skipped(self, cluster):
        release_dependencies(cluster, _dependent("gone"), OWNER)


# ── Ordering ────────────────────────────────────────────────────


class TestSortByDependencies:
    def test_dependencies_first(self):
        ordered = sort_by_dependencies([_dependent("db", name="app"), make_resource(name="db"), _dependent("app", name="web")])
        assert [r.name for r in ordered] == ["db", "app", "web"]

    def test_independent_sorted_by_key(self):
        ordered = sort_by_dependencies([make_resource(name="c"), make_resource(name="a"), make_resource(name="b")])
        assert [r.name for r in ordered] == ["a", "b", "c"]

    def test_external_dependency_ignored(self):
        ordered = sort_by_dependencies([_dependent("elsewhere", name="app")])
        assert [r.name for r in ordered] == ["app"]

    def test_cycle(self):
        with pytest.raises(CircularDependencyError):
            sort_by_dependencies([_dependent("b", name="a"), _dependent("a", name="b")])

    def test_self_dependency(self):
        with pytest.raises(CircularDependencyError, match="depends on itself"):
            sort_by_dependencies([_dependent("a", name="a")])


class TestRevisionChange:
    def test_ordered_requests(self, cluster):
        cluster.add(_dependent("db", name="app"))
        cluster.add(make_resource(name="db"))
        keys = requests_for_revision_change(cluster, make_source())
        assert keys == [DB, NamespacedName("default", "app")]

    def test_already_attempted_dropped(self, cluster):
        done = make_resource(name="db")
        done.status.last_attempted_revision = REVISION
        cluster.add(done)
        cluster.add(make_resource(name="app"))
        assert requests_for_revision_change(cluster, make_source()) == [NamespacedName("default", "app")]

    def test_other_source_ignored(self, cluster):
        cluster.add(make_resource(name="db", source="other"))
        assert requests_for_revision_change(cluster, make_source()) == []

    def test_no_artifact(self, cluster):
        cluster.add(make_resource(name="db"))
        assert requests_for_revision_change(cluster, make_source(with_artifact=False)) == []

    def test_cycle_yields_nothing(self, cluster):
        cluster.add(_dependent("b", name="a"))
        cluster.add(_dependent("a", name="b"))
        assert requests_for_revision_change(cluster, make_source()) == []
