"""
Configuration loader — reads controller.yml into a ControllerConfig.

    file (optional)  →  environment overrides  →  validated model

Environment overrides:
    INSECURE_LOCAL_RUNNER=1          run Terraform locally, skip pod cleanup
    SOURCE_CONTROLLER_LOCALHOST      host[:port] replacing artifact URL hosts
    TFC_MAX_CONCURRENT_RECONCILES    worker count
    TFC_HTTP_RETRY                   artifact download retries
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from tfcontrol.core.errors import ConfigError
from tfcontrol.core.models.config import ControllerConfig
from tfcontrol.core.models.resource import ManagedResource
from tfcontrol.core.models.source import SourceObject

logger = logging.getLogger(__name__)

CONFIG_FILE = "controller.yml"

__all__ = [
    "CONFIG_FILE",
    "ConfigError",
    "apply_env_overrides",
    "find_config_file",
    "load_config",
    "load_objects",
]


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for controller.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to controller.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading controller config from %s", path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    # The file may nest everything under a "controller" key
    if "controller" in data:
        return dict(data["controller"] or {})
    return data


def apply_env_overrides(data: dict[str, Any], env: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Overlay the supported environment variables onto raw config data."""
    env = os.environ if env is None else env
    out = dict(data)

    if env.get("INSECURE_LOCAL_RUNNER") == "1":
        out["insecure_local_runner"] = True
    if env.get("SOURCE_CONTROLLER_LOCALHOST"):
        out["source_controller_localhost"] = env["SOURCE_CONTROLLER_LOCALHOST"]
    for var, field in (
        ("TFC_MAX_CONCURRENT_RECONCILES", "max_concurrent_reconciles"),
        ("TFC_HTTP_RETRY", "http_retry"),
    ):
        if env.get(var):
            try:
                out[field] = int(env[var])
            except ValueError as e:
                raise ConfigError(f"{var} must be an integer, got '{env[var]}'") from e
    return out


def load_config(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
    search: bool = True,
) -> ControllerConfig:
    """Load and validate the controller configuration.

    Args:
        path: Explicit path to controller.yml. If None and ``search``,
            searches upward from cwd; a missing file means defaults.
        env: Environment mapping (default: ``os.environ``).

    Raises:
        ConfigError: If the file is unreadable or invalid.
    """
    if path is None and search:
        path = find_config_file()

    data = _read_yaml(path) if path is not None else {}
    data = apply_env_overrides(data, env)

    try:
        config = ControllerConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid controller configuration: {e}") from e

    logger.info(
        "Loaded controller config (%d workers, insecure local runner: %s)",
        config.max_concurrent_reconciles, config.insecure_local_runner,
    )
    return config


def load_objects(path: Path) -> tuple[list[ManagedResource], list[SourceObject]]:
    """Load resources and sources from a YAML fixture file (``--mock`` mode).

    Expected shape::

        sources:   [{kind, name, namespace, artifact: {url, revision, checksum}}]
        resources: [{metadata: {...}, spec: {...}}]
    """
    data = _read_yaml(path)
    try:
        sources = [SourceObject.model_validate(s) for s in data.get("sources") or []]
        resources = [ManagedResource.model_validate(r) for r in data.get("resources") or []]
    except ValidationError as e:
        raise ConfigError(f"Invalid objects in {path}: {e}") from e
    logger.info("Loaded %d resource(s) and %d source(s) from %s", len(resources), len(sources), path)
    return resources, sources
