"""
Deployment configuration — per-target settings loaded from targets.yml.

Each entry under ``targets:`` is one execution environment. The ``type``
field selects the schema; everything else is consumed once, when the
target object is constructed.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field

from src.core.models.resources import Tier

DEFAULT_GATEWAY_PORT = 18789
DEFAULT_IMAGE = "ghcr.io/openclaw/openclaw:latest"


class _TargetConfigBase(BaseModel):
    name: str                                   # label used on the CLI
    profile_name: str
    gateway_port: int = DEFAULT_GATEWAY_PORT


class LocalTargetConfig(_TargetConfigBase):
    """Gateway as a systemd user service on this machine."""

    type: Literal["local"] = "local"
    package: str = "openclaw"
    install_dir: str = "~/.local/share/gateway"


class DockerTargetConfig(_TargetConfigBase):
    """Gateway in a local container managed through the docker CLI."""

    type: Literal["docker"] = "docker"
    container_name: str = ""
    config_path: str = "~/.config/gateway"
    image: str = DEFAULT_IMAGE
    network_name: str | None = None
    # auto: use sysbox when present, required: refuse to start without it
    sandbox: Literal["auto", "required", "off"] = "auto"


class EcsEc2TargetConfig(_TargetConfigBase):
    """Gateway as an ECS service on an EC2 auto-scaling group."""

    type: Literal["ecs-ec2"] = "ecs-ec2"
    region: str = "us-east-1"
    aws_profile: str | None = None
    image: str = DEFAULT_IMAGE
    tier: Tier = Tier.STANDARD
    allowed_cidr: str = "0.0.0.0/0"
    certificate_arn: str | None = None


class GceTargetConfig(_TargetConfigBase):
    """Gateway on a single Compute Engine VM."""

    type: Literal["gce"] = "gce"
    project_id: str
    zone: str = "us-central1-a"
    machine_type: str = "e2-small"
    data_disk_size_gb: int = 10
    image: str = DEFAULT_IMAGE
    custom_domain: str | None = None


class AzureVmTargetConfig(_TargetConfigBase):
    """Gateway on a single Azure VM with a managed data disk."""

    type: Literal["azure-vm"] = "azure-vm"
    subscription_id: str
    resource_group: str
    region: str = "eastus"
    vm_size: str = "Standard_B2s"
    os_disk_size_gb: int = 30
    data_disk_size_gb: int = 10
    image: str = DEFAULT_IMAGE
    ssh_public_key: str | None = None        # generated by az when unset
    key_vault_name: str | None = None        # keep a copy of the config in Key Vault
    allowed_cidr: str = "0.0.0.0/0"
    custom_domain: str | None = None


TargetConfig = Annotated[
    LocalTargetConfig | DockerTargetConfig | EcsEc2TargetConfig | GceTargetConfig | AzureVmTargetConfig,
    Field(discriminator="type"),
]


class DeployConfig(BaseModel):
    """Root of targets.yml."""

    version: int = 1
    targets: list[TargetConfig] = Field(default_factory=list)

    def get_target(self, name: str) -> TargetConfig | None:
        for t in self.targets:
            if t.name == name:
                return t
        return None

    @property
    def target_names(self) -> list[str]:
        return [t.name for t in self.targets]
