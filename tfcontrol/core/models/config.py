"""
ControllerConfig — process-wide settings of the controller.

Loaded from ``controller.yml`` by ``tfcontrol.core.config.loader``;
every field has a default, so an empty file (or no file) is valid.
"""

from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field

from tfcontrol.core.models.meta import Duration


class ControllerConfig(BaseModel):
    """Controller settings."""

    model_config = ConfigDict(extra="forbid")

    namespace: str = ""
    max_concurrent_reconciles: int = Field(default=4, ge=1)
    field_owner: str = "tf-controller"

    # Artifact download
    http_retry: int = Field(default=10, ge=0)
    http_retry_wait_min: Duration = timedelta(seconds=5)
    http_retry_wait_max: Duration = timedelta(seconds=30)
    http_timeout: Duration = timedelta(seconds=30)
    source_controller_localhost: str = ""

    # Runners
    runner_creation_timeout: Duration = timedelta(seconds=120)
    runner_poll_interval: Duration = timedelta(seconds=5)
    runner_poll_timeout: Duration = timedelta(seconds=120)
    insecure_local_runner: bool = False

    # Scheduling
    resync_interval: Duration = timedelta(seconds=30)
    watch_interval: Duration = timedelta(seconds=5)

    # Certificate rotation
    ca_validity: Duration = timedelta(hours=24)
    ca_lookahead: Duration = timedelta(hours=1)

    # Probes and external tools
    probe_address: str = "127.0.0.1:8081"
    kubectl_timeout: Duration = timedelta(seconds=30)
