"""
Domain models — Pydantic types for the deployment control plane.

All models are re-exported here for convenient access:

    from src.core.models import InstallResult, ResourceSpec, StackInfo, SandboxCapability
"""

from src.core.models.config import (
    AzureVmTargetConfig,
    DeployConfig,
    DockerTargetConfig,
    EcsEc2TargetConfig,
    GceTargetConfig,
    LocalTargetConfig,
    TargetConfig,
)
from src.core.models.resources import (
    ResourceSpec,
    ResourceUpdateResult,
    Tier,
    TierSpec,
)
from src.core.models.sandbox import (
    InstallMethod,
    Platform,
    SandboxAvailability,
    SandboxCapability,
    SandboxInstallResult,
)
from src.core.models.stack import (
    SharedInfraOutputs,
    StackEvent,
    StackInfo,
    StackStatus,
    StackSummary,
)
from src.core.models.target import (
    ConfigurePayload,
    ConfigureResult,
    GatewayEndpoint,
    InstallOptions,
    InstallResult,
    LogOptions,
    PortSpacingResult,
    TargetMetadata,
    TargetState,
    TargetStatus,
    TargetType,
)

__all__ = [
    # config.py
    "AzureVmTargetConfig",
    # target.py
    "ConfigurePayload",
    "ConfigureResult",
    "DeployConfig",
    "DockerTargetConfig",
    "EcsEc2TargetConfig",
    "GatewayEndpoint",
    "GceTargetConfig",
    "InstallMethod",
    "InstallOptions",
    "InstallResult",
    "LocalTargetConfig",
    "LogOptions",
    # sandbox.py
    "Platform",
    "PortSpacingResult",
    # resources.py
    "ResourceSpec",
    "ResourceUpdateResult",
    "SandboxAvailability",
    "SandboxCapability",
    "SandboxInstallResult",
    # stack.py
    "SharedInfraOutputs",
    "StackEvent",
    "StackInfo",
    "StackStatus",
    "StackSummary",
    "TargetConfig",
    "TargetMetadata",
    "TargetState",
    "TargetStatus",
    "TargetType",
    "Tier",
    "TierSpec",
]
