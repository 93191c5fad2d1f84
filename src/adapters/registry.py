"""
Target registry — central dispatch from a target config to a target object.

The registry is the single point where target types are wired to their
builders and static metadata. Callers never construct targets directly;
they go through ``create_target``, which fills in provider services the
caller did not supply (CLI-backed by default, in-memory in mock mode).
"""

from __future__ import annotations

import logging
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, fields
from pathlib import Path

from src.adapters.base import (
    ClusterService,
    ComputeService,
    LogService,
    ScalingService,
    SecretStore,
    StackService,
)
from src.adapters.shell.command import CommandRunner
from src.adapters.targets.base import DeploymentTarget, TargetToolkit
from src.core.models.config import (
    AzureVmTargetConfig,
    DockerTargetConfig,
    EcsEc2TargetConfig,
    GceTargetConfig,
    LocalTargetConfig,
    TargetConfig,
)
from src.core.models.target import TargetMetadata, TargetType
from src.core.services.sandbox import SandboxDetector

logger = logging.getLogger(__name__)


@dataclass
class TargetServices:
    """Provider services a target is built with. Unset fields get defaults."""

    runner: CommandRunner | None = None
    detector: SandboxDetector | None = None
    stacks: StackService | None = None
    cluster: ClusterService | None = None
    scaling: ScalingService | None = None
    secrets: SecretStore | None = None
    logs: LogService | None = None
    compute: ComputeService | None = None
    toolkit: TargetToolkit | None = None
    home: Path | None = None                      # local target only
    init_system: Callable[[], str] | None = None  # local target only

    def merged_with(self, defaults: TargetServices) -> TargetServices:
        """Copy with every unset field taken from ``defaults``."""
        return TargetServices(**{
            f.name: getattr(self, f.name) if getattr(self, f.name) is not None else getattr(defaults, f.name)
            for f in fields(self)
        })


TargetBuilder = Callable[..., DeploymentTarget]


def default_services(config: TargetConfig) -> TargetServices:
    """CLI-backed services for ``config``'s provider."""
    runner = CommandRunner()
    services = TargetServices(runner=runner)

    if isinstance(config, EcsEc2TargetConfig):
        from src.adapters.cloud.aws import (
            AutoScalingService,
            AwsCli,
            CloudFormationStackService,
            CloudWatchLogService,
            EcsClusterService,
            SecretsManagerStore,
        )

        cli = AwsCli(config.region, config.aws_profile, runner)
        services.stacks = CloudFormationStackService(cli)
        services.cluster = EcsClusterService(cli)
        services.scaling = AutoScalingService(cli)
        services.secrets = SecretsManagerStore(cli)
        services.logs = CloudWatchLogService(cli)

    elif isinstance(config, GceTargetConfig):
        from src.adapters.cloud.gcloud import GceComputeService, GcloudCli, GcpSecretStore

        cli = GcloudCli(config.project_id, runner)
        services.compute = GceComputeService(cli, config.zone)
        services.secrets = GcpSecretStore(cli)

    elif isinstance(config, AzureVmTargetConfig):
        from src.adapters.cloud.azure import AzCli, AzureComputeService, KeyVaultSecretStore

        cli = AzCli(config.subscription_id, runner)
        services.compute = AzureComputeService(cli, config.resource_group, config.region, config.allowed_cidr)
        if config.key_vault_name:
            services.secrets = KeyVaultSecretStore(cli, config.key_vault_name)

    return services


def mock_services() -> TargetServices:
    """In-memory services: every provider call succeeds immediately."""
    from src.adapters.mock import (
        InMemoryClusterService,
        InMemoryComputeService,
        InMemoryLogService,
        InMemoryScalingService,
        InMemorySecretStore,
        InMemoryStackService,
        ScriptedRunner,
    )

    runner = ScriptedRunner()
    runner.respond("")
    return TargetServices(
        runner=runner,
        detector=SandboxDetector(runner, system="linux", read_file=lambda _path: None),
        stacks=InMemoryStackService(output_factory=_mock_outputs),
        cluster=InMemoryClusterService(auto_create=True),
        scaling=InMemoryScalingService(),
        secrets=InMemorySecretStore(),
        logs=InMemoryLogService(),
        compute=InMemoryComputeService(),
        home=Path(tempfile.mkdtemp(prefix="gatewayctl-mock-")),
        init_system=lambda: "systemd",
    )


def _mock_outputs(stack_name: str) -> dict[str, str]:
    return {
        "VpcId": "vpc-mock",
        "PublicSubnet1Id": "subnet-pub-a",
        "PublicSubnet2Id": "subnet-pub-b",
        "PrivateSubnet1Id": "subnet-priv-a",
        "PrivateSubnet2Id": "subnet-priv-b",
        "PrivateRouteTableId": "rtb-mock",
        "VpcEndpointSecurityGroupId": "sg-mock",
        "Ec2InstanceProfileArn": "arn:aws:iam::000000000000:instance-profile/mock",
        "TaskExecutionRoleArn": "arn:aws:iam::000000000000:role/mock",
        "AlbDnsName": f"{stack_name}.elb.mock",
    }


class TargetRegistry:
    """Maps target types to builders and metadata.

    Features:
        - Register/unregister builders by target type
        - Static metadata for listing target types
        - Mock mode: build every target on in-memory services
    """

    def __init__(self, mock_mode: bool = False):
        self._builders: dict[TargetType, TargetBuilder] = {}
        self._metadata: dict[TargetType, TargetMetadata] = {}
        self._mock_mode = mock_mode

    @property
    def mock_mode(self) -> bool:
        return self._mock_mode

    def set_mock_mode(self, enabled: bool) -> None:
        self._mock_mode = enabled

    def register(self, metadata: TargetMetadata, builder: TargetBuilder) -> None:
        if metadata.type in self._builders:
            logger.warning("Overwriting existing target builder: %s", metadata.type)
        self._builders[metadata.type] = builder
        self._metadata[metadata.type] = metadata
        logger.debug("Registered target type: %s", metadata.type)

    def unregister(self, target_type: TargetType) -> None:
        self._builders.pop(target_type, None)
        self._metadata.pop(target_type, None)

    def is_registered(self, target_type: TargetType | str) -> bool:
        return target_type in self._builders

    def get_metadata(self, target_type: TargetType | str) -> TargetMetadata | None:
        return self._metadata.get(TargetType(target_type))

    def list_metadata(self) -> list[TargetMetadata]:
        return list(self._metadata.values())

    def create(
        self,
        config: TargetConfig,
        services: TargetServices | None = None,
        *,
        mock: bool | None = None,
    ) -> DeploymentTarget:
        """Build a target for ``config``.

        ``mock`` overrides the registry's mock mode for this call.

        Raises:
            ValueError: No builder is registered for the config's type.
        """
        target_type = TargetType(config.type)
        builder = self._builders.get(target_type)
        if builder is None:
            raise ValueError(
                f"No target registered for '{target_type}'. "
                f"Valid: {', '.join(sorted(self._builders))}"
            )
        use_mock = self._mock_mode if mock is None else mock
        defaults = mock_services() if use_mock else default_services(config)
        merged = (services or TargetServices()).merged_with(defaults)
        target = builder(config, merged)
        logger.debug("Created %r for %s", target, config.name)
        return target


# ── Built-in targets ────────────────────────────────────────────


def _build_local(config: LocalTargetConfig, services: TargetServices) -> DeploymentTarget:
    from src.adapters.targets.local import LocalProcessTarget

    kwargs = {"init_system": services.init_system} if services.init_system else {}
    return LocalProcessTarget(config, services.runner, services.toolkit, home=services.home, **kwargs)


def _build_docker(config: DockerTargetConfig, services: TargetServices) -> DeploymentTarget:
    from src.adapters.targets.docker import DockerContainerTarget

    return DockerContainerTarget(config, services.runner, services.detector, services.toolkit)


def _build_ecs_ec2(config: EcsEc2TargetConfig, services: TargetServices) -> DeploymentTarget:
    from src.adapters.targets.ecs_ec2 import EcsEc2Target

    return EcsEc2Target(
        config,
        stacks=services.stacks,
        cluster=services.cluster,
        scaling=services.scaling,
        secrets=services.secrets,
        logs=services.logs,
        toolkit=services.toolkit,
    )


def _build_gce(config: GceTargetConfig, services: TargetServices) -> DeploymentTarget:
    from src.adapters.targets.gce import GceVmTarget

    return GceVmTarget(config, compute=services.compute, secrets=services.secrets, toolkit=services.toolkit)


def _build_azure_vm(config: AzureVmTargetConfig, services: TargetServices) -> DeploymentTarget:
    from src.adapters.targets.azure_vm import AzureVmTarget

    return AzureVmTarget(config, compute=services.compute, secrets=services.secrets, toolkit=services.toolkit)


_LIFECYCLE = ["install", "configure", "start", "stop", "restart", "status", "logs", "endpoint", "destroy"]

BUILTIN_TARGETS: list[tuple[TargetMetadata, TargetBuilder]] = [
    (
        TargetMetadata(
            type=TargetType.LOCAL,
            display_name="Local machine",
            description="Gateway as a systemd user service on this host",
            capabilities=_LIFECYCLE,
            provisioning_steps=["Install package with npm", "Write systemd unit", "Enable service"],
        ),
        _build_local,
    ),
    (
        TargetMetadata(
            type=TargetType.DOCKER,
            display_name="Docker",
            description="Gateway in a local container, sandboxed with sysbox when available",
            capabilities=_LIFECYCLE,
            provisioning_steps=["Pull image", "Write config", "Run container"],
        ),
        _build_docker,
    ),
    (
        TargetMetadata(
            type=TargetType.ECS_EC2,
            display_name="AWS ECS on EC2",
            description="Gateway as an ECS service on a dedicated auto-scaling group",
            capabilities=[*_LIFECYCLE, "update_resources", "get_resources"],
            provisioning_steps=[
                "Ensure shared infrastructure",
                "Ensure config secret",
                "Reconcile bot stack",
                "Wait for service stability",
            ],
            tier_provider="ecs",
        ),
        _build_ecs_ec2,
    ),
    (
        TargetMetadata(
            type=TargetType.GCE,
            display_name="Google Compute Engine",
            description="Gateway on a single VM with a persistent data disk",
            capabilities=[*_LIFECYCLE, "update_resources", "get_resources"],
            provisioning_steps=[
                "Ensure firewall rule",
                "Ensure config secret",
                "Create VM",
                "Wait for VM to run",
            ],
            tier_provider="gce",
        ),
        _build_gce,
    ),
    (
        TargetMetadata(
            type=TargetType.AZURE_VM,
            display_name="Azure Virtual Machine",
            description="Gateway on a single Azure VM with a managed data disk",
            capabilities=[*_LIFECYCLE, "update_resources", "get_resources"],
            provisioning_steps=[
                "Ensure network security group",
                "Ensure Key Vault secret (optional)",
                "Create VM",
                "Wait for VM to run",
            ],
            tier_provider="azure",
        ),
        _build_azure_vm,
    ),
]


# ── Module-level singleton ───────────────────────────────────────

_registry: TargetRegistry | None = None


def get_target_registry() -> TargetRegistry:
    """Return the process-level registry with the built-in targets."""
    global _registry  # noqa: PLW0603
    if _registry is None:
        _registry = TargetRegistry()
        for metadata, builder in BUILTIN_TARGETS:
            _registry.register(metadata, builder)
    return _registry


def create_target(
    config: TargetConfig,
    services: TargetServices | None = None,
    *,
    mock: bool = False,
) -> DeploymentTarget:
    """Build a target through the default registry."""
    registry = get_target_registry()
    return registry.create(config, services, mock=mock or registry.mock_mode)
