"""
Domain models — Pydantic types for the reconciliation engine.

All models are re-exported here for convenient access:

    from tfcontrol.core.models import ManagedResource, Condition, SourceObject
"""

from tfcontrol.core.models.conditions import Condition, ConditionStatus
from tfcontrol.core.models.config import ControllerConfig
from tfcontrol.core.models.meta import NamespacedName, ObjectMeta
from tfcontrol.core.models.resource import (
    DependencyRef,
    HealthCheck,
    LockStatus,
    ManagedResource,
    ManagedResourceSpec,
    ManagedResourceStatus,
    PlanStatus,
    ResourceInventory,
    ResourceRef,
    SourceRef,
    TFStateSpec,
    Variable,
    WriteOutputsToSecret,
)
from tfcontrol.core.models.result import ReconcileResult
from tfcontrol.core.models.source import Artifact, SourceKind, SourceObject

__all__ = [
    "Artifact",
    # conditions.py
    "Condition",
    "ConditionStatus",
    # config.py
    "ControllerConfig",
    "DependencyRef",
    "HealthCheck",
    "LockStatus",
    # resource.py
    "ManagedResource",
    "ManagedResourceSpec",
    "ManagedResourceStatus",
    # meta.py
    "NamespacedName",
    "ObjectMeta",
    "PlanStatus",
    # result.py
    "ReconcileResult",
    "ResourceInventory",
    "ResourceRef",
    # source.py
    "SourceKind",
    "SourceObject",
    "SourceRef",
    "TFStateSpec",
    "Variable",
    "WriteOutputsToSecret",
]
