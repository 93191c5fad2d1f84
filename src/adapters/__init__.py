"""Adapters — provider bindings and deployment targets.

Public re-exports for convenient access.
"""

from src.adapters.registry import (
    TargetRegistry,
    TargetServices,
    create_target,
    get_target_registry,
)
from src.adapters.targets.base import DeploymentTarget, TargetToolkit, capabilities_of

__all__ = [
    "DeploymentTarget",
    "TargetRegistry",
    "TargetServices",
    "TargetToolkit",
    "capabilities_of",
    "create_target",
    "get_target_registry",
]
