"""
Tests for domain models — tiers, stack statuses, target records, config.
"""

import pytest
from pydantic import ValidationError

from src.core.models.config import (
    DEFAULT_GATEWAY_PORT,
    DeployConfig,
    DockerTargetConfig,
    EcsEc2TargetConfig,
)
from src.core.models.resources import (
    ECS_TIERS,
    GCE_TIERS,
    ResourceSpec,
    Tier,
    get_tier_table,
    nearest_tier,
    spec_to_tier,
    tier_for_native_size,
)
from src.core.models.sandbox import SandboxAvailability, SandboxCapability
from src.core.models.stack import (
    ACTIVE_STATES,
    LIVE_STATES,
    SharedInfraOutputs,
    StackEvent,
    StackStatus,
)
from src.core.models.target import GatewayEndpoint, TargetState, TargetStatus


class TestResourceSpec:
    def test_rejects_non_positive(self):
        with pytest.raises(ValidationError):
            ResourceSpec(cpu=0, memory=1024)
        with pytest.raises(ValidationError):
            ResourceSpec(cpu=1024, memory=1024, data_disk_size_gb=0)

    def test_disk_optional(self):
        assert ResourceSpec(cpu=512, memory=1024).data_disk_size_gb is None


class TestTiers:
    def test_spec_to_tier_exact(self):
        assert spec_to_tier(ResourceSpec(cpu=1024, memory=2048), ECS_TIERS) == Tier.STANDARD

    def test_spec_to_tier_disk_must_match_when_given(self):
        assert spec_to_tier(ResourceSpec(cpu=512, memory=1024, data_disk_size_gb=5), ECS_TIERS) == Tier.LIGHT
        assert spec_to_tier(ResourceSpec(cpu=512, memory=1024, data_disk_size_gb=7), ECS_TIERS) == Tier.CUSTOM

    def test_spec_to_tier_custom(self):
        assert spec_to_tier(ResourceSpec(cpu=3000, memory=5000), ECS_TIERS) == Tier.CUSTOM

    def test_nearest_exact(self):
        assert nearest_tier(ResourceSpec(cpu=2048, memory=4096), GCE_TIERS).native_size == "e2-medium"

    def test_nearest_smallest_covering(self):
        assert nearest_tier(ResourceSpec(cpu=300, memory=1500), GCE_TIERS).native_size == "e2-small"

    def test_nearest_falls_back_to_largest(self):
        assert nearest_tier(ResourceSpec(cpu=8192, memory=32768), GCE_TIERS).tier == Tier.PERFORMANCE

    def test_nearest_empty_table(self):
        with pytest.raises(ValueError):
            nearest_tier(ResourceSpec(cpu=1, memory=1), [])

    def test_native_size_reverse_lookup(self):
        assert tier_for_native_size("e2-micro", GCE_TIERS).tier == Tier.LIGHT
        assert tier_for_native_size("n2-standard-8", GCE_TIERS) is None

    def test_tier_table_lookup(self):
        assert get_tier_table("ecs") is ECS_TIERS
        with pytest.raises(ValueError, match="Unknown provider"):
            get_tier_table("openstack")

    def test_to_spec(self):
        spec = ECS_TIERS[0].to_spec()
        assert (spec.cpu, spec.memory, spec.data_disk_size_gb) == (512, 1024, 5)


class TestStackStatus:
    def test_in_progress(self):
        assert StackStatus.UPDATE_COMPLETE_CLEANUP_IN_PROGRESS.in_progress
        assert not StackStatus.CREATE_COMPLETE.in_progress

    def test_failed(self):
        assert StackStatus.ROLLBACK_COMPLETE.failed
        assert StackStatus.DELETE_FAILED.failed
        assert not StackStatus.UPDATE_ROLLBACK_COMPLETE.failed

    def test_active_includes_update_rollback_complete(self):
        assert StackStatus.UPDATE_ROLLBACK_COMPLETE in ACTIVE_STATES

    def test_live_excludes_gone(self):
        assert StackStatus.DELETE_COMPLETE not in LIVE_STATES
        assert StackStatus.ABSENT not in LIVE_STATES
        assert StackStatus.DELETE_FAILED in LIVE_STATES


class TestStackEvent:
    def test_format_with_reason(self):
        e = StackEvent(event_id="1", resource_id="Asg", resource_status="DELETE_FAILED",
                       status_reason="in use")
        assert e.format() == "[Asg] DELETE_FAILED - in use"
        assert e.is_failure

    def test_format_without_reason(self):
        e = StackEvent(event_id="1", resource_id="Vpc", resource_status="CREATE_COMPLETE")
        assert e.format() == "[Vpc] CREATE_COMPLETE"
        assert not e.is_failure


class TestSharedInfraOutputs:
    def test_from_outputs(self, shared_outputs):
        out = SharedInfraOutputs.from_outputs(shared_outputs)
        assert out.vpc_id == "vpc-123"
        assert out.public_subnet_ids == ["subnet-pub-a", "subnet-pub-b"]
        assert out.private_subnet_ids == ["subnet-priv-a", "subnet-priv-b"]

    def test_missing_required_output(self, shared_outputs):
        del shared_outputs["VpcId"]
        with pytest.raises(KeyError):
            SharedInfraOutputs.from_outputs(shared_outputs)


class TestTargetRecords:
    def test_endpoint_url(self):
        assert GatewayEndpoint(host="example.com", port=443, protocol="wss").url == "wss://example.com:443"

    def test_status_running(self):
        assert TargetStatus(state=TargetState.RUNNING).running
        assert not TargetStatus(state=TargetState.STOPPED).running

    def test_sandbox_available(self):
        assert SandboxCapability(availability=SandboxAvailability.AVAILABLE).available
        assert not SandboxCapability(availability=SandboxAvailability.NOT_INSTALLED).available


class TestDeployConfig:
    def test_discriminated_targets(self):
        config = DeployConfig.model_validate({
            "targets": [
                {"name": "home", "type": "docker", "profile_name": "home"},
                {"name": "prod", "type": "ecs-ec2", "profile_name": "prod", "tier": "performance"},
            ]
        })
        assert isinstance(config.targets[0], DockerTargetConfig)
        assert isinstance(config.targets[1], EcsEc2TargetConfig)
        assert config.targets[1].tier == Tier.PERFORMANCE
        assert config.targets[0].gateway_port == DEFAULT_GATEWAY_PORT

    def test_get_target(self):
        config = DeployConfig.model_validate({
            "targets": [{"name": "home", "type": "local", "profile_name": "home"}]
        })
        assert config.get_target("home").type == "local"
        assert config.get_target("other") is None
        assert config.target_names == ["home"]

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            DeployConfig.model_validate({"targets": [{"name": "x", "type": "k8s", "profile_name": "x"}]})

    def test_gce_requires_project(self):
        with pytest.raises(ValidationError):
            DeployConfig.model_validate({"targets": [{"name": "x", "type": "gce", "profile_name": "x"}]})
