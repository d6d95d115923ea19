"""Adapters — bindings to the cluster and to Terraform runners.

Public re-exports for convenient access.
"""

from tfcontrol.adapters.base import ClusterClient, Runner, RunnerProvisioner
from tfcontrol.adapters.memory import InMemoryCluster, ScriptedRunner, StaticProvisioner

__all__ = [
    "ClusterClient",
    "InMemoryCluster",
    "Runner",
    "RunnerProvisioner",
    "ScriptedRunner",
    "StaticProvisioner",
]
