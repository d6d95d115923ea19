"""
Tests for config loader — defaults, YAML parsing, env overrides, object fixtures.
"""

from datetime import timedelta
from pathlib import Path

import pytest

from tfcontrol.core.config.loader import (
    CONFIG_FILE,
    apply_env_overrides,
    find_config_file,
    load_config,
    load_objects,
)
from tfcontrol.core.errors import ConfigError
from tfcontrol.core.models.meta import NamespacedName
from tfcontrol.core.models.source import SourceKind


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


# ── Defaults ────────────────────────────────────────────────────


class TestDefaults:
    def test_no_file(self):
        cfg = load_config(env={}, search=False)
        assert cfg.max_concurrent_reconciles == 4
        assert cfg.field_owner == "tf-controller"
        assert cfg.http_retry == 10
        assert cfg.http_retry_wait_min == timedelta(seconds=5)
        assert cfg.http_retry_wait_max == timedelta(seconds=30)
        assert not cfg.insecure_local_runner

    def test_empty_file(self, tmp_path):
        cfg = load_config(_write(tmp_path / CONFIG_FILE, ""), env={})
        assert cfg.resync_interval == timedelta(seconds=30)


# ── YAML ────────────────────────────────────────────────────────


class TestYaml:
    def test_flat(self, tmp_path):
        path = _write(tmp_path / CONFIG_FILE, "max_concurrent_reconciles: 8\nhttp_retry_wait_max: 1m\n")
        cfg = load_config(path, env={})
        assert cfg.max_concurrent_reconciles == 8
        assert cfg.http_retry_wait_max == timedelta(minutes=1)

    def test_nested_under_controller(self, tmp_path):
        path = _write(tmp_path / CONFIG_FILE, "controller:\n  namespace: flux-system\n  ca_validity: 48h\n")
        cfg = load_config(path, env={})
        assert cfg.namespace == "flux-system"
        assert cfg.ca_validity == timedelta(hours=48)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yml", env={})

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(_write(tmp_path / CONFIG_FILE, "a: [unclosed"), env={})

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(ConfigError, match="Expected a YAML mapping"):
            load_config(_write(tmp_path / CONFIG_FILE, "- a\n- b\n"), env={})

    def test_unknown_field(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid controller configuration"):
            load_config(_write(tmp_path / CONFIG_FILE, "workers: 3\n"), env={})

    def test_zero_workers_rejected(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path / CONFIG_FILE, "max_concurrent_reconciles: 0\n"), env={})

    def test_bad_duration(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path / CONFIG_FILE, "http_timeout: soon\n"), env={})


class TestFindConfigFile:
    def test_walks_up(self, tmp_path):
        _write(tmp_path / CONFIG_FILE, "")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_config_file(nested) == (tmp_path / CONFIG_FILE).resolve()

    def test_not_found(self, tmp_path):
        nested = tmp_path / "empty"
        nested.mkdir()
        found = find_config_file(nested)
        assert found is None or tmp_path.resolve() not in found.parents


# ── Environment ─────────────────────────────────────────────────


class TestEnvOverrides:
    def test_insecure_local_runner(self):
        assert apply_env_overrides({}, {"INSECURE_LOCAL_RUNNER": "1"}) == {"insecure_local_runner": True}

    def test_insecure_only_when_one(self):
        assert apply_env_overrides({}, {"INSECURE_LOCAL_RUNNER": "true"}) == {}

    def test_source_host(self):
        cfg = load_config(env={"SOURCE_CONTROLLER_LOCALHOST": "localhost:9090"}, search=False)
        assert cfg.source_controller_localhost == "localhost:9090"

    def test_env_wins_over_file(self, tmp_path):
        path = _write(tmp_path / CONFIG_FILE, "max_concurrent_reconciles: 2\nhttp_retry: 3\n")
        cfg = load_config(path, env={"TFC_MAX_CONCURRENT_RECONCILES": "6", "TFC_HTTP_RETRY": "1"})
        assert cfg.max_concurrent_reconciles == 6
        assert cfg.http_retry == 1

    def test_non_integer(self):
        with pytest.raises(ConfigError, match="TFC_HTTP_RETRY must be an integer"):
            apply_env_overrides({}, {"TFC_HTTP_RETRY": "many"})

    def test_input_not_mutated(self):
        data = {"http_retry": 2}
        apply_env_overrides(data, {"TFC_HTTP_RETRY": "5"})
        assert data == {"http_retry": 2}


# ── Object fixtures ─────────────────────────────────────────────


OBJECTS = """
sources:
  - kind: GitRepository
    name: repo
    namespace: flux
    artifact:
      url: http://source-controller/repo.tar.gz
      revision: main/0123456789abcdef
      checksum: abc
resources:
  - metadata:
      name: stack
      namespace: flux
    spec:
      interval: 5m
      approvePlan: auto
      sourceRef:
        kind: GitRepository
        name: repo
"""


class TestLoadObjects:
    def test_loads(self, tmp_path):
        resources, sources = load_objects(_write(tmp_path / "objects.yml", OBJECTS))
        assert [s.key for s in sources] == [NamespacedName("flux", "repo")]
        assert sources[0].kind == SourceKind.GIT_REPOSITORY
        assert resources[0].key == NamespacedName("flux", "stack")
        assert resources[0].spec.approve_plan == "auto"
        assert resources[0].spec.interval == timedelta(minutes=5)

    def test_empty(self, tmp_path):
        assert load_objects(_write(tmp_path / "objects.yml", "")) == ([], [])

    def test_invalid(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid objects"):
            load_objects(_write(tmp_path / "objects.yml", "resources:\n  - metadata: {name: x}\n"))
