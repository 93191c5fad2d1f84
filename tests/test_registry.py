"""
Tests for the target registry and service wiring.
"""

import pytest

from src.adapters import TargetRegistry, TargetServices, create_target, get_target_registry
from src.adapters.cloud.aws import CloudFormationStackService, EcsClusterService, SecretsManagerStore
from src.adapters.cloud.azure import AzureComputeService, KeyVaultSecretStore
from src.adapters.cloud.gcloud import GceComputeService, GcpSecretStore
from src.adapters.mock import InMemoryStackService
from src.adapters.registry import BUILTIN_TARGETS, default_services, mock_services
from src.adapters.targets.azure_vm import AzureVmTarget
from src.adapters.targets.docker import DockerContainerTarget
from src.adapters.targets.ecs_ec2 import EcsEc2Target
from src.adapters.targets.gce import GceVmTarget
from src.adapters.targets.local import LocalProcessTarget
from src.core.models.config import (
    AzureVmTargetConfig,
    DockerTargetConfig,
    EcsEc2TargetConfig,
    GceTargetConfig,
    LocalTargetConfig,
)
from src.core.models.target import TargetType

LOCAL = LocalTargetConfig(name="laptop", profile_name="alpha")
DOCKER = DockerTargetConfig(name="box", profile_name="alpha")
ECS = EcsEc2TargetConfig(name="aws", profile_name="alpha", region="eu-west-1", aws_profile="ops")
GCE = GceTargetConfig(name="gcp", profile_name="alpha", project_id="proj", zone="europe-west1-b")
AZURE = AzureVmTargetConfig(name="az", profile_name="alpha", subscription_id="sub", resource_group="rg")


class TestBuiltinRegistry:
    def test_all_types_registered(self):
        registry = get_target_registry()
        assert {m.type for m in registry.list_metadata()} == set(TargetType)
        assert registry.is_registered("ecs-ec2")

    def test_singleton(self):
        assert get_target_registry() is get_target_registry()

    def test_metadata(self):
        registry = get_target_registry()
        assert registry.get_metadata("gce").tier_provider == "gce"
        assert registry.get_metadata("azure-vm").tier_provider == "azure"
        assert registry.get_metadata(TargetType.LOCAL).tier_provider is None
        assert "update_resources" in registry.get_metadata("ecs-ec2").capabilities

    @pytest.mark.parametrize(
        "config, cls",
        [(LOCAL, LocalProcessTarget), (DOCKER, DockerContainerTarget), (ECS, EcsEc2Target), (GCE, GceVmTarget),
         (AZURE, AzureVmTarget)],
    )
    def test_create_each_type(self, config, cls):
        target = create_target(config, mock=True)
        assert isinstance(target, cls)
        assert target.type == TargetType(config.type)


class TestTargetRegistry:
    def test_unregistered_type(self):
        with pytest.raises(ValueError, match="No target registered for 'local'"):
            TargetRegistry().create(LOCAL)

    def test_register_and_unregister(self):
        registry = TargetRegistry()
        metadata, builder = BUILTIN_TARGETS[0]
        registry.register(metadata, builder)
        assert registry.is_registered(metadata.type)
        registry.unregister(metadata.type)
        assert registry.list_metadata() == []

    def test_mock_mode(self):
        registry = TargetRegistry()
        for metadata, builder in BUILTIN_TARGETS:
            registry.register(metadata, builder)
        registry.set_mock_mode(True)
        assert registry.mock_mode

        target = registry.create(ECS)
        assert isinstance(target._stacks, InMemoryStackService)

    def test_explicit_services_win(self):
        stacks = InMemoryStackService()
        target = create_target(ECS, TargetServices(stacks=stacks), mock=True)
        assert target._stacks is stacks
        assert target.shared.region == "eu-west-1"


class TestServices:
    def test_merged_with(self):
        stacks = InMemoryStackService()
        defaults = mock_services()
        merged = TargetServices(stacks=stacks).merged_with(defaults)
        assert merged.stacks is stacks
        assert merged.compute is defaults.compute
        assert merged.runner is defaults.runner

    def test_default_aws_services(self):
        services = default_services(ECS)
        assert isinstance(services.stacks, CloudFormationStackService)
        assert isinstance(services.cluster, EcsClusterService)
        assert isinstance(services.secrets, SecretsManagerStore)
        assert services.compute is None

    def test_default_gcp_services(self):
        services = default_services(GCE)
        assert isinstance(services.compute, GceComputeService)
        assert isinstance(services.secrets, GcpSecretStore)
        assert services.stacks is None

    def test_default_azure_services(self):
        services = default_services(AZURE)
        assert isinstance(services.compute, AzureComputeService)
        assert services.compute.resource_group == "rg"
        assert services.secrets is None

        services = default_services(AZURE.model_copy(update={"key_vault_name": "gw-vault"}))
        assert isinstance(services.secrets, KeyVaultSecretStore)
        assert services.secrets.vault_name == "gw-vault"

    def test_default_local_services(self):
        services = default_services(LOCAL)
        assert services.runner is not None
        assert services.stacks is None

    def test_mock_services_are_isolated(self):
        a, b = mock_services(), mock_services()
        assert a.stacks is not b.stacks
        assert a.home != b.home
