"""
Target models — the records exchanged across the deployment-target contract.

Every target operation takes or returns one of these. Results always
carry ``success`` and ``message`` so a caller can report an outcome
without catching exceptions.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field


class TargetType(StrEnum):
    """Execution environments a gateway can be deployed to."""

    LOCAL = "local"
    DOCKER = "docker"
    ECS_EC2 = "ecs-ec2"
    GCE = "gce"
    AZURE_VM = "azure-vm"


class TargetState(StrEnum):
    """Coarse lifecycle state reported by ``get_status``."""

    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    NOT_INSTALLED = "not-installed"


LogStream = Literal["stdout", "stderr"]


class InstallOptions(BaseModel):
    """Arguments for ``install``."""

    profile_name: str
    port: int = 18789
    version: str | None = None     # gateway package/image version
    install_method: str | None = None


class InstallResult(BaseModel):
    success: bool
    instance_id: str
    message: str
    service_name: str | None = None
    install_path: str | None = None


class ConfigurePayload(BaseModel):
    """Gateway configuration pushed by ``configure``."""

    profile_name: str
    gateway_port: int
    environment: dict[str, str] = Field(default_factory=dict)
    config: dict[str, Any] = Field(default_factory=dict)


class ConfigureResult(BaseModel):
    success: bool
    message: str
    requires_restart: bool = False
    config_path: str | None = None


class TargetStatus(BaseModel):
    """Observed runtime state of a deployed gateway."""

    state: TargetState
    pid: int | None = None
    uptime: int | None = None      # seconds
    gateway_port: int | None = None
    error: str | None = None

    @property
    def running(self) -> bool:
        return self.state == TargetState.RUNNING


class LogOptions(BaseModel):
    lines: int | None = None
    follow: bool = False
    since: datetime | None = None
    filter: str | None = None      # regex, case-insensitive


class GatewayEndpoint(BaseModel):
    host: str
    port: int
    protocol: Literal["ws", "wss"] = "ws"

    @property
    def url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"


class PortConflict(BaseModel):
    port_a: int
    port_b: int
    spacing: int


class PortSpacingResult(BaseModel):
    valid: bool
    conflicts: list[PortConflict] = Field(default_factory=list)


class TargetMetadata(BaseModel):
    """Static description of a target type, shown by ``target types``."""

    type: TargetType
    display_name: str
    description: str
    status: Literal["ready", "beta", "coming_soon"] = "ready"
    capabilities: list[str] = Field(default_factory=list)
    provisioning_steps: list[str] = Field(default_factory=list)
    tier_provider: str | None = None   # key into the tier tables
