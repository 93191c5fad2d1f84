"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

from src.adapters.mock import (
    InMemoryClusterService,
    InMemoryComputeService,
    InMemoryLogService,
    InMemoryScalingService,
    InMemorySecretStore,
    InMemoryStackService,
    ScriptedRunner,
)
from src.core.services.sandbox import SandboxDetector

SHARED_OUTPUTS = {
    "VpcId": "vpc-123",
    "PublicSubnet1Id": "subnet-pub-a",
    "PublicSubnet2Id": "subnet-pub-b",
    "PrivateSubnet1Id": "subnet-priv-a",
    "PrivateSubnet2Id": "subnet-priv-b",
    "PrivateRouteTableId": "rtb-1",
    "VpcEndpointSecurityGroupId": "sg-1",
    "Ec2InstanceProfileArn": "arn:aws:iam::123:instance-profile/gw",
    "TaskExecutionRoleArn": "arn:aws:iam::123:role/gw-exec",
}


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


class Sleeper:
    """Instant replacement for asyncio.sleep that records the delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleep() -> Sleeper:
    return Sleeper()


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def stacks() -> InMemoryStackService:
    service = InMemoryStackService()
    service.set_outputs("gateway-shared-infra", SHARED_OUTPUTS)
    return service


@pytest.fixture
def cluster() -> InMemoryClusterService:
    return InMemoryClusterService()


@pytest.fixture
def scaling() -> InMemoryScalingService:
    return InMemoryScalingService()


@pytest.fixture
def secrets() -> InMemorySecretStore:
    return InMemorySecretStore()


@pytest.fixture
def log_service() -> InMemoryLogService:
    return InMemoryLogService()


@pytest.fixture
def compute() -> InMemoryComputeService:
    return InMemoryComputeService()


@pytest.fixture
def log_lines() -> list[tuple[str, str]]:
    """Collects (line, stream) pairs from a progress callback."""
    return []


@pytest.fixture
def on_log(log_lines):
    return lambda line, stream: log_lines.append((line, stream))


@pytest.fixture
def make_detector(runner):
    """Factory for a detector on a scripted runner with a fake filesystem."""

    def factory(system: str = "linux", files: dict[str, str] | None = None) -> SandboxDetector:
        return SandboxDetector(runner, system=system, read_file=(files or {}).get)

    return factory


@pytest.fixture
def shared_outputs() -> dict[str, str]:
    return dict(SHARED_OUTPUTS)
