"""
Stack model — remotely tracked groups of resources.

A stack is created from a declarative template and tracked by the
provider. These models mirror what the stack service reports: the
stack itself, its outputs, and the event stream emitted while it
transitions.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(UTC)


class StackStatus(StrEnum):
    """Provider-reported stack status.

    ``ABSENT`` is never reported by a provider; the reconciler uses it
    for a stack that does not exist.
    """

    ABSENT = "ABSENT"
    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    CREATE_FAILED = "CREATE_FAILED"
    ROLLBACK_IN_PROGRESS = "ROLLBACK_IN_PROGRESS"
    ROLLBACK_COMPLETE = "ROLLBACK_COMPLETE"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    DELETE_FAILED = "DELETE_FAILED"
    UPDATE_IN_PROGRESS = "UPDATE_IN_PROGRESS"
    UPDATE_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_COMPLETE = "UPDATE_COMPLETE"
    UPDATE_FAILED = "UPDATE_FAILED"
    UPDATE_ROLLBACK_IN_PROGRESS = "UPDATE_ROLLBACK_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE = "UPDATE_ROLLBACK_COMPLETE"
    UPDATE_ROLLBACK_FAILED = "UPDATE_ROLLBACK_FAILED"
    REVIEW_IN_PROGRESS = "REVIEW_IN_PROGRESS"

    @property
    def in_progress(self) -> bool:
        return self.value.endswith("_IN_PROGRESS")

    @property
    def failed(self) -> bool:
        """Terminal states that block normal create/update."""
        return self in _FAILED_STATES


# Statuses where the stack is usable and an update can be issued
ACTIVE_STATES = frozenset({
    StackStatus.CREATE_COMPLETE,
    StackStatus.UPDATE_COMPLETE,
    StackStatus.UPDATE_ROLLBACK_COMPLETE,
})

_FAILED_STATES = frozenset({
    StackStatus.CREATE_FAILED,
    StackStatus.ROLLBACK_COMPLETE,
    StackStatus.ROLLBACK_FAILED,
    StackStatus.DELETE_FAILED,
    StackStatus.UPDATE_FAILED,
    StackStatus.UPDATE_ROLLBACK_FAILED,
})

# Everything a listing should return when looking for stacks that still exist
LIVE_STATES = frozenset(s for s in StackStatus if s not in (StackStatus.ABSENT, StackStatus.DELETE_COMPLETE))


class StackInfo(BaseModel):
    """Snapshot of one stack as described by the provider."""

    stack_id: str = ""
    name: str
    status: StackStatus
    status_reason: str | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)
    creation_time: datetime = Field(default_factory=_now)
    last_updated_time: datetime | None = None


class StackSummary(BaseModel):
    """One row of a stack listing."""

    name: str
    status: StackStatus


class StackEvent(BaseModel):
    """A resource-level event emitted while a stack transitions."""

    event_id: str
    resource_id: str
    resource_type: str = ""
    resource_status: str
    status_reason: str | None = None
    timestamp: datetime = Field(default_factory=_now)

    def format(self) -> str:
        line = f"[{self.resource_id}] {self.resource_status}"
        if self.status_reason:
            line += f" - {self.status_reason}"
        return line

    @property
    def is_failure(self) -> bool:
        return "FAILED" in self.resource_status


class SharedInfraOutputs(BaseModel):
    """Outputs of the per-region shared infrastructure stack."""

    vpc_id: str
    public_subnet_ids: list[str]
    private_subnet_ids: list[str]
    private_route_table_id: str = ""
    vpc_endpoint_security_group_id: str = ""
    ec2_instance_profile_arn: str
    task_execution_role_arn: str

    @classmethod
    def from_outputs(cls, outputs: dict[str, str]) -> SharedInfraOutputs:
        """Build from raw stack outputs (provider key names)."""
        return cls(
            vpc_id=outputs["VpcId"],
            public_subnet_ids=[outputs["PublicSubnet1Id"], outputs["PublicSubnet2Id"]],
            private_subnet_ids=[outputs["PrivateSubnet1Id"], outputs["PrivateSubnet2Id"]],
            private_route_table_id=outputs.get("PrivateRouteTableId", ""),
            vpc_endpoint_security_group_id=outputs.get("VpcEndpointSecurityGroupId", ""),
            ec2_instance_profile_arn=outputs["Ec2InstanceProfileArn"],
            task_execution_role_arn=outputs["TaskExecutionRoleArn"],
        )
