"""
Service interfaces — the narrow contracts between targets and providers.

Targets, the stack reconciler and the resize orchestrator only talk to
remote providers through these interfaces, never directly to an SDK or
CLI. Concrete implementations live in ``src.adapters.cloud`` (CLI
backed) and ``src.adapters.mock`` (in-memory, for tests and mock mode).

All methods are coroutines. Implementations raise on failure; it is the
caller (reconciler, target) that turns failures into result records.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from pydantic import BaseModel, Field

from src.core.errors import StackError, TargetError
from src.core.models.stack import StackEvent, StackInfo, StackStatus, StackSummary
from src.core.reliability.polling import Clock, Sleep, wait_for

logger = logging.getLogger(__name__)

EventObserver = Callable[[StackEvent], None]


# ── Declarative stacks ──────────────────────────────────────────


class StackService(ABC):
    """A declarative-infrastructure stack service (CloudFormation-like)."""

    @abstractmethod
    async def create_stack(
        self,
        name: str,
        template: str,
        *,
        parameters: dict[str, str] | None = None,
        tags: dict[str, str] | None = None,
        capabilities: list[str] | None = None,
    ) -> str:
        """Start creating a stack; returns the stack id.

        Raises when a stack with that name already exists. The error
        text contains "already exists".
        """

    @abstractmethod
    async def update_stack(
        self,
        name: str,
        template: str,
        *,
        parameters: dict[str, str] | None = None,
        tags: dict[str, str] | None = None,
        capabilities: list[str] | None = None,
    ) -> str:
        """Start updating a stack; returns the stack id.

        Raises with "No updates are to be performed" when nothing changed.
        """

    @abstractmethod
    async def delete_stack(self, name: str, *, retain_resources: list[str] | None = None) -> None:
        """Start deleting a stack, optionally skipping stuck logical ids."""

    @abstractmethod
    async def describe_stack(self, name: str) -> StackInfo | None:
        """Current snapshot, or None if the stack does not exist."""

    @abstractmethod
    async def describe_stack_events(self, name: str) -> list[StackEvent]:
        """Events for the stack, newest first."""

    @abstractmethod
    async def list_stacks(
        self,
        *,
        name_prefix: str | None = None,
        status_filter: set[StackStatus] | None = None,
    ) -> list[StackSummary]:
        """List stacks, optionally filtered by name prefix and status."""

    async def get_stack_outputs(self, name: str) -> dict[str, str]:
        stack = await self.describe_stack(name)
        if stack is None:
            raise StackError(name, f'Stack "{name}" not found')
        return dict(stack.outputs)

    async def stack_exists(self, name: str) -> bool:
        """True for any stack that still blocks its name (ROLLBACK_COMPLETE included)."""
        stack = await self.describe_stack(name)
        return stack is not None and stack.status != StackStatus.DELETE_COMPLETE

    async def wait_for_stack_status(
        self,
        name: str,
        target: StackStatus,
        *,
        poll_interval: float = 10.0,
        timeout: float = 1800.0,
        on_event: EventObserver | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> StackInfo:
        """Poll until the stack reaches ``target``.

        A stack that vanishes while waiting for DELETE_COMPLETE counts as
        deleted. Settling in any other terminal status raises
        ``StackError``; running out of budget raises ``WaitTimeoutError``.
        """
        events = _EventStream(self, name, on_event)

        async def reached() -> StackInfo | None:
            await events.drain()
            stack = await self.describe_stack(name)
            if target == StackStatus.DELETE_COMPLETE and (
                stack is None or stack.status == StackStatus.DELETE_COMPLETE
            ):
                return StackInfo(name=name, status=StackStatus.DELETE_COMPLETE)
            if stack is None:
                raise StackError(name, f'Stack "{name}" not found')
            if stack.status == target:
                return stack
            if not stack.status.in_progress:
                raise StackError(
                    name,
                    f'Stack "{name}" reached {stack.status}: '
                    f"{stack.status_reason or 'Unknown error'}",
                    status=stack.status,
                )
            return None

        return await wait_for(
            reached,
            timeout=timeout,
            interval=poll_interval,
            description=f"stack {name} to reach {target}",
            sleep=sleep,
            clock=clock,
        )

    async def wait_for_stack_settled(
        self,
        name: str,
        *,
        poll_interval: float = 10.0,
        timeout: float = 1800.0,
        on_event: EventObserver | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> StackInfo:
        """Poll until the stack is no longer transitioning.

        Returns the settled snapshot; a stack that disappeared is reported
        with status ``ABSENT``.
        """
        events = _EventStream(self, name, on_event)

        async def settled() -> StackInfo | None:
            await events.drain()
            stack = await self.describe_stack(name)
            if stack is None:
                return StackInfo(name=name, status=StackStatus.ABSENT)
            if stack.status.in_progress:
                return None
            return stack

        return await wait_for(
            settled,
            timeout=timeout,
            interval=poll_interval,
            description=f"stack {name} to settle",
            sleep=sleep,
            clock=clock,
        )


class _EventStream:
    """Forwards unseen stack events to an observer, oldest first."""

    def __init__(self, service: StackService, name: str, observer: EventObserver | None):
        self._service = service
        self._name = name
        self._observer = observer
        self._seen: set[str] = set()

    async def drain(self) -> None:
        if self._observer is None:
            return
        try:
            events = await self._service.describe_stack_events(self._name)
        except Exception as e:
            # Events are not available until the stack exists
            logger.debug("No events for stack %s yet: %s", self._name, e)
            return
        for event in reversed(events):
            if event.event_id in self._seen:
                continue
            self._seen.add(event.event_id)
            self._observer(event)


# ── Container cluster / scaling ─────────────────────────────────


class ServiceInfo(BaseModel):
    """A long-running cluster service (ECS-like)."""

    name: str
    status: str = "ACTIVE"
    desired_count: int = 0
    running_count: int = 0
    pending_count: int = 0


class ClusterService(ABC):
    @abstractmethod
    async def update_service(
        self,
        cluster: str,
        service: str,
        *,
        desired_count: int | None = None,
        force_new_deployment: bool = False,
    ) -> None:
        """Change desired count and/or roll the service's tasks."""

    @abstractmethod
    async def describe_service(self, cluster: str, service: str) -> ServiceInfo | None:
        """Current counts, or None if the service does not exist."""

    @abstractmethod
    async def list_container_instances(self, cluster: str) -> list[str]:
        """Container instance ids registered with the cluster."""

    @abstractmethod
    async def deregister_container_instance(
        self, cluster: str, instance: str, *, force: bool = True
    ) -> None:
        """Remove an instance from the cluster."""


class ScalingService(ABC):
    @abstractmethod
    async def remove_scale_in_protection(self, group_name: str) -> None:
        """Clear scale-in protection on every instance of the group."""


# ── Secrets and logs ────────────────────────────────────────────


class SecretStore(ABC):
    @abstractmethod
    async def secret_exists(self, name: str) -> bool:
        """Whether the secret exists (and is not scheduled for deletion)."""

    @abstractmethod
    async def create_secret(self, name: str, value: str, *, tags: dict[str, str] | None = None) -> None:
        """Create a new secret."""

    @abstractmethod
    async def put_secret(self, name: str, value: str) -> None:
        """Replace the value of an existing secret."""

    @abstractmethod
    async def delete_secret(self, name: str, *, force: bool = True) -> None:
        """Delete a secret; ``force`` skips the recovery window."""

    async def ensure_secret(self, name: str, value: str, *, tags: dict[str, str] | None = None) -> None:
        """Create the secret, or overwrite its value if it already exists."""
        if await self.secret_exists(name):
            await self.put_secret(name, value)
        else:
            await self.create_secret(name, value, tags=tags)


class LogService(ABC):
    @abstractmethod
    async def get_log_lines(
        self,
        group: str,
        *,
        limit: int = 100,
        since_ms: int | None = None,
    ) -> list[str]:
        """Recent log messages from a group, oldest first."""

    @abstractmethod
    async def delete_log_group(self, group: str) -> None:
        """Delete a log group and its streams."""


# ── Virtual machines ────────────────────────────────────────────


class InstanceSpec(BaseModel):
    """Everything needed to create a gateway VM."""

    name: str
    machine_type: str
    image: str = "projects/debian-cloud/global/images/family/debian-12"
    boot_disk_size_gb: int = 20
    data_disk_name: str
    data_disk_size_gb: int
    network_tags: list[str] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, str] = Field(default_factory=dict)


class InstanceInfo(BaseModel):
    name: str
    status: str                      # RUNNING, TERMINATED, STOPPING, PROVISIONING...
    machine_type: str = ""
    external_ip: str | None = None
    started_at: float | None = None  # epoch seconds

    @property
    def running(self) -> bool:
        return self.status == "RUNNING"


class ComputeService(ABC):
    """VM lifecycle for the single-VM targets (GCE, Azure)."""

    @abstractmethod
    async def get_instance(self, name: str) -> InstanceInfo | None:
        """Current VM state, or None if absent."""

    @abstractmethod
    async def create_instance(self, spec: InstanceSpec) -> InstanceInfo:
        """Create the VM with its data disk attached; returns once running."""

    @abstractmethod
    async def delete_instance(self, name: str) -> None:
        """Delete the VM."""

    @abstractmethod
    async def start_instance(self, name: str) -> None:
        """Start the VM; returns once the operation completes."""

    @abstractmethod
    async def stop_instance(self, name: str) -> None:
        """Stop the VM; returns once the operation completes."""

    @abstractmethod
    async def reset_instance(self, name: str) -> None:
        """Hard-restart the VM."""

    @abstractmethod
    async def set_machine_type(self, name: str, machine_type: str) -> None:
        """Change the machine type of a stopped VM."""

    @abstractmethod
    async def get_disk_size_gb(self, disk: str) -> int | None:
        """Size of a persistent disk, or None if absent."""

    @abstractmethod
    async def resize_disk(self, disk: str, size_gb: int) -> None:
        """Grow a persistent disk."""

    @abstractmethod
    async def delete_disk(self, disk: str) -> None:
        """Delete a persistent disk."""

    @abstractmethod
    async def ensure_firewall_rule(self, name: str, port: int, target_tag: str) -> None:
        """Allow inbound TCP ``port`` to instances tagged ``target_tag``."""

    @abstractmethod
    async def delete_firewall_rule(self, name: str) -> None:
        """Delete a firewall rule."""

    @abstractmethod
    async def get_serial_output(self, name: str) -> list[str]:
        """Serial console lines of the VM, oldest first."""

    async def run_script(self, name: str, script: list[str]) -> str:
        """Run shell lines on the VM as root and return their output."""
        raise NotImplementedError(f"{type(self).__name__} cannot run commands on {name}")


class VmComputeUnit:
    """One VM and its data disk, in the shape the resize orchestrator drives."""

    def __init__(self, compute: ComputeService, instance: str, disk: str):
        self._compute = compute
        self._instance = instance
        self._disk = disk

    async def stop(self) -> None:
        await self._compute.stop_instance(self._instance)

    async def start(self) -> None:
        await self._compute.start_instance(self._instance)

    async def get_size(self) -> str:
        info = await self._compute.get_instance(self._instance)
        if info is None:
            raise TargetError(f"Instance {self._instance} not found")
        # gcloud reports the machine type as a URL
        return info.machine_type.rsplit("/", 1)[-1]

    async def set_size(self, native_size: str) -> None:
        await self._compute.set_machine_type(self._instance, native_size)

    async def get_disk_size_gb(self) -> int | None:
        return await self._compute.get_disk_size_gb(self._disk)

    async def resize_disk(self, size_gb: int) -> None:
        await self._compute.resize_disk(self._disk, size_gb)
