"""
Mock services — in-memory test doubles for every provider interface.

Used by the test suite and by the CLI's ``--mock`` mode to exercise the
reconciler, targets and installers without touching a real provider.
Every double records its calls in ``call_log`` and can be told to fail
with ``set_failure``.
"""

from __future__ import annotations

import itertools
import time
from collections import deque
from collections.abc import Callable, Sequence
from typing import Any

from src.adapters.base import (
    ClusterService,
    ComputeService,
    InstanceInfo,
    InstanceSpec,
    LogService,
    ScalingService,
    SecretStore,
    ServiceInfo,
    StackService,
)
from src.adapters.shell.command import CommandResult, CommandRunner
from src.core.errors import StackError
from src.core.models.stack import StackEvent, StackInfo, StackStatus, StackSummary


class _MockBase:
    """Call recording and failure injection shared by all doubles."""

    def __init__(self) -> None:
        self._call_log: list[tuple[str, dict[str, Any]]] = []
        self._failures: dict[str, deque[Exception]] = {}

    @property
    def call_log(self) -> list[tuple[str, dict[str, Any]]]:
        """All (operation, arguments) pairs this mock has received."""
        return self._call_log

    def calls(self, op: str) -> list[dict[str, Any]]:
        """Arguments of every call to ``op``."""
        return [args for name, args in self._call_log if name == op]

    def call_count(self, op: str) -> int:
        return len(self.calls(op))

    def set_failure(self, op: str, error: str | Exception = "Mock failure", times: int = 1) -> None:
        """Make the next ``times`` calls to ``op`` raise."""
        exc = error if isinstance(error, Exception) else RuntimeError(error)
        queue = self._failures.setdefault(op, deque())
        queue.extend([exc] * times)

    def _record(self, op: str, **kwargs: Any) -> None:
        self._call_log.append((op, kwargs))
        queue = self._failures.get(op)
        if queue:
            raise queue.popleft()

    def reset(self) -> None:
        """Clear call log and injected failures."""
        self._call_log.clear()
        self._failures.clear()


# ── Stacks ──────────────────────────────────────────────────────


_REMOVED = None  # marker in a status plan: the stack disappears


class InMemoryStackService(_MockBase, StackService):
    """A stack service whose stacks advance one status per describe call.

    Each mutating call installs a *plan*: the statuses the stack moves
    through on subsequent ``describe_stack`` calls. Defaults model a
    healthy provider; ``plan_next`` overrides the plan for the next
    operation on a stack to script failures.
    """

    _DEFAULT_PLANS: dict[str, list[StackStatus | None]] = {
        "create": [StackStatus.CREATE_IN_PROGRESS, StackStatus.CREATE_COMPLETE],
        "update": [StackStatus.UPDATE_IN_PROGRESS, StackStatus.UPDATE_COMPLETE],
        "delete": [StackStatus.DELETE_IN_PROGRESS, _REMOVED],
    }

    def __init__(self, output_factory: Callable[[str], dict[str, str]] | None = None) -> None:
        super().__init__()
        self._output_factory = output_factory
        self._stacks: dict[str, StackInfo] = {}
        self._templates: dict[str, tuple[str, dict[str, str]]] = {}
        self._pending: dict[str, deque[tuple[StackStatus | None, str | None]]] = {}
        self._next_plans: dict[tuple[str, str], deque[tuple[StackStatus | None, str | None]]] = {}
        self._outputs: dict[str, dict[str, str]] = {}
        self._events: dict[str, list[StackEvent]] = {}
        self._deleted: list[StackSummary] = []
        self._ids = itertools.count(1)

    # ── Scripting ──

    def seed(
        self,
        name: str,
        status: StackStatus,
        *,
        reason: str | None = None,
        then: Sequence[StackStatus | None] = (),
        outputs: dict[str, str] | None = None,
        template: str = "{}",
    ) -> None:
        """Place a stack in ``status`` as if an earlier process left it there."""
        self._stacks[name] = StackInfo(
            stack_id=f"stack/{name}",
            name=name,
            status=status,
            status_reason=reason,
            outputs=outputs or self._outputs.get(name, {}),
        )
        self._templates[name] = (template, {})
        self._pending[name] = deque((s, None) for s in then)

    def plan_next(
        self,
        name: str,
        op: str,
        statuses: Sequence[StackStatus | None],
        reason: str | None = None,
    ) -> None:
        """Script the statuses the next ``op`` (create/update/delete) on ``name`` goes through.

        ``reason`` is attached to the final status.
        """
        plan = deque((s, None) for s in statuses)
        if plan and reason:
            last, _ = plan.pop()
            plan.append((last, reason))
        self._next_plans[(name, op)] = plan

    def set_outputs(self, name: str, outputs: dict[str, str]) -> None:
        """Outputs the stack exposes once created."""
        self._outputs[name] = outputs
        if name in self._stacks:
            self._stacks[name].outputs = dict(outputs)

    def status_of(self, name: str) -> StackStatus:
        stack = self._stacks.get(name)
        return stack.status if stack else StackStatus.ABSENT

    # ── StackService ──

    async def create_stack(self, name, template, *, parameters=None, tags=None, capabilities=None):
        self._record("create_stack", name=name, parameters=parameters, tags=tags)
        if name in self._stacks:
            raise StackError(name, f"AlreadyExistsException: Stack [{name}] already exists")
        self._stacks[name] = StackInfo(
            stack_id=f"stack/{name}/{next(self._ids)}",
            name=name,
            status=StackStatus.CREATE_IN_PROGRESS,
            tags=dict(tags or {}),
        )
        self._templates[name] = (template, dict(parameters or {}))
        self._start_plan(name, "create")
        return self._stacks[name].stack_id

    async def update_stack(self, name, template, *, parameters=None, tags=None, capabilities=None):
        self._record("update_stack", name=name, parameters=parameters, tags=tags)
        stack = self._stacks.get(name)
        if stack is None:
            raise StackError(name, f"Stack with id {name} does not exist")
        if self._templates.get(name) == (template, dict(parameters or {})):
            raise StackError(name, "No updates are to be performed.")
        self._templates[name] = (template, dict(parameters or {}))
        self._start_plan(name, "update")
        return stack.stack_id

    async def delete_stack(self, name, *, retain_resources=None):
        self._record("delete_stack", name=name, retain_resources=retain_resources)
        if name not in self._stacks:
            return
        self._start_plan(name, "delete")

    async def describe_stack(self, name):
        self._advance(name)
        stack = self._stacks.get(name)
        return stack.model_copy(deep=True) if stack else None

    async def describe_stack_events(self, name):
        if name not in self._stacks:
            raise StackError(name, f"Stack with id {name} does not exist")
        return list(reversed(self._events.get(name, [])))

    async def list_stacks(self, *, name_prefix=None, status_filter=None):
        self._record("list_stacks", name_prefix=name_prefix)
        rows = [StackSummary(name=s.name, status=s.status) for s in self._stacks.values()]
        rows += self._deleted
        return [
            r for r in rows
            if (not name_prefix or r.name.startswith(name_prefix))
            and (not status_filter or r.status in status_filter)
        ]

    # ── Internals ──

    def _start_plan(self, name: str, op: str) -> None:
        plan = self._next_plans.pop((name, op), None)
        if plan is None:
            plan = deque((s, None) for s in self._DEFAULT_PLANS[op])
        first_status, reason = plan.popleft()
        self._set_status(name, first_status, reason)
        self._pending[name] = plan

    def _advance(self, name: str) -> None:
        pending = self._pending.get(name)
        if pending:
            status, reason = pending.popleft()
            self._set_status(name, status, reason)

    def _set_status(self, name: str, status: StackStatus | None, reason: str | None) -> None:
        stack = self._stacks[name]
        if status is None:
            self._deleted.append(StackSummary(name=name, status=StackStatus.DELETE_COMPLETE))
            del self._stacks[name]
            self._pending.pop(name, None)
            self._events.pop(name, None)
            return
        stack.status = status
        stack.status_reason = reason
        if status in (StackStatus.CREATE_COMPLETE, StackStatus.UPDATE_COMPLETE):
            if name in self._outputs:
                stack.outputs = dict(self._outputs[name])
            elif self._output_factory is not None and not stack.outputs:
                stack.outputs = self._output_factory(name)
        self._events.setdefault(name, []).append(
            StackEvent(
                event_id=f"{name}-{next(self._ids)}",
                resource_id=name,
                resource_type="AWS::CloudFormation::Stack",
                resource_status=status.value,
                status_reason=reason,
            )
        )

    def reset(self) -> None:
        super().reset()
        self._stacks.clear()
        self._templates.clear()
        self._pending.clear()
        self._next_plans.clear()
        self._events.clear()
        self._deleted.clear()


# ── Cluster, scaling, secrets, logs ─────────────────────────────


class InMemoryClusterService(_MockBase, ClusterService):
    """Services reach their desired count immediately.

    With ``auto_create`` an unknown service springs into existence with
    one running task, standing in for the stack that would create it.
    """

    def __init__(self, auto_create: bool = False) -> None:
        super().__init__()
        self.auto_create = auto_create
        self.services: dict[tuple[str, str], ServiceInfo] = {}
        self.container_instances: dict[str, list[str]] = {}

    def add_service(self, cluster: str, service: str, desired_count: int = 1) -> None:
        self.services[(cluster, service)] = ServiceInfo(
            name=service, desired_count=desired_count, running_count=desired_count
        )

    async def update_service(self, cluster, service, *, desired_count=None, force_new_deployment=False):
        self._record(
            "update_service",
            cluster=cluster,
            service=service,
            desired_count=desired_count,
            force_new_deployment=force_new_deployment,
        )
        if self.auto_create and (cluster, service) not in self.services:
            self.add_service(cluster, service)
        info = self.services.get((cluster, service))
        if info is None:
            raise RuntimeError(f"ServiceNotFoundException: {service}")
        if desired_count is not None:
            info.desired_count = desired_count
            info.running_count = desired_count

    async def describe_service(self, cluster, service):
        if self.auto_create and (cluster, service) not in self.services:
            self.add_service(cluster, service)
        info = self.services.get((cluster, service))
        return info.model_copy() if info else None

    async def list_container_instances(self, cluster):
        self._record("list_container_instances", cluster=cluster)
        if cluster not in self.container_instances:
            raise RuntimeError(f"ClusterNotFoundException: Cluster {cluster} not found.")
        return list(self.container_instances[cluster])

    async def deregister_container_instance(self, cluster, instance, *, force=True):
        self._record("deregister_container_instance", cluster=cluster, instance=instance, force=force)
        self.container_instances.get(cluster, []).remove(instance)


class InMemoryScalingService(_MockBase, ScalingService):
    async def remove_scale_in_protection(self, group_name):
        self._record("remove_scale_in_protection", group_name=group_name)


class InMemorySecretStore(_MockBase, SecretStore):
    def __init__(self) -> None:
        super().__init__()
        self.secrets: dict[str, str] = {}

    async def secret_exists(self, name):
        return name in self.secrets

    async def create_secret(self, name, value, *, tags=None):
        self._record("create_secret", name=name, tags=tags)
        if name in self.secrets:
            raise RuntimeError(f"ResourceExistsException: {name}")
        self.secrets[name] = value

    async def put_secret(self, name, value):
        self._record("put_secret", name=name)
        if name not in self.secrets:
            raise RuntimeError(f"ResourceNotFoundException: {name}")
        self.secrets[name] = value

    async def delete_secret(self, name, *, force=True):
        self._record("delete_secret", name=name, force=force)
        self.secrets.pop(name, None)


class InMemoryLogService(_MockBase, LogService):
    def __init__(self) -> None:
        super().__init__()
        self.groups: dict[str, list[str]] = {}

    async def get_log_lines(self, group, *, limit=100, since_ms=None):
        self._record("get_log_lines", group=group, limit=limit)
        return self.groups.get(group, [])[-limit:]

    async def delete_log_group(self, group):
        self._record("delete_log_group", group=group)
        self.groups.pop(group, None)


# ── Compute ─────────────────────────────────────────────────────


class InMemoryComputeService(_MockBase, ComputeService):
    """VMs and disks held in dicts; operations complete instantly."""

    def __init__(self) -> None:
        super().__init__()
        self.instances: dict[str, InstanceInfo] = {}
        self.disks: dict[str, int] = {}
        self.firewall_rules: dict[str, tuple[int, str]] = {}
        self.serial_output: dict[str, list[str]] = {}

    async def get_instance(self, name):
        info = self.instances.get(name)
        return info.model_copy() if info else None

    async def create_instance(self, spec: InstanceSpec):
        self._record(
            "create_instance", name=spec.name, machine_type=spec.machine_type, network_tags=spec.network_tags,
            metadata=spec.metadata,
        )
        if spec.data_disk_name not in self.disks:
            self.disks[spec.data_disk_name] = spec.data_disk_size_gb
        info = InstanceInfo(
            name=spec.name,
            status="RUNNING",
            machine_type=spec.machine_type,
            external_ip="203.0.113.10",
            started_at=time.time(),
        )
        self.instances[spec.name] = info
        return info.model_copy()

    async def delete_instance(self, name):
        self._record("delete_instance", name=name)
        self.instances.pop(name, None)

    async def start_instance(self, name):
        self._record("start_instance", name=name)
        self._require(name).status = "RUNNING"
        self.instances[name].started_at = time.time()

    async def stop_instance(self, name):
        self._record("stop_instance", name=name)
        self._require(name).status = "TERMINATED"

    async def reset_instance(self, name):
        self._record("reset_instance", name=name)
        self._require(name).started_at = time.time()

    async def set_machine_type(self, name, machine_type):
        self._record("set_machine_type", name=name, machine_type=machine_type)
        instance = self._require(name)
        if instance.status == "RUNNING":
            raise RuntimeError(f"Instance {name} must be stopped to change machine type")
        instance.machine_type = machine_type

    async def get_disk_size_gb(self, disk):
        return self.disks.get(disk)

    async def resize_disk(self, disk, size_gb):
        self._record("resize_disk", disk=disk, size_gb=size_gb)
        if disk not in self.disks:
            raise RuntimeError(f"Disk {disk} not found")
        if size_gb < self.disks[disk]:
            raise RuntimeError(f"Disk {disk} cannot shrink")
        self.disks[disk] = size_gb

    async def delete_disk(self, disk):
        self._record("delete_disk", disk=disk)
        self.disks.pop(disk, None)

    async def ensure_firewall_rule(self, name, port, target_tag):
        self._record("ensure_firewall_rule", name=name, port=port)
        self.firewall_rules[name] = (port, target_tag)

    async def delete_firewall_rule(self, name):
        self._record("delete_firewall_rule", name=name)
        self.firewall_rules.pop(name, None)

    async def get_serial_output(self, name):
        return list(self.serial_output.get(name, []))

    async def run_script(self, name, script):
        self._record("run_script", name=name, script=list(script))
        self._require(name)
        return ""

    def _require(self, name: str) -> InstanceInfo:
        if name not in self.instances:
            raise RuntimeError(f"Instance {name} not found")
        return self.instances[name]


# ── Commands ────────────────────────────────────────────────────


class ScriptedRunner(CommandRunner):
    """Command runner that answers from canned responses.

    Responses match on the command line's prefix; the most recently
    registered match wins. Unmatched commands behave like a missing
    binary.
    """

    def __init__(self) -> None:
        super().__init__()
        self._responses: list[tuple[str, CommandResult, list[int | None]]] = []
        self.commands: list[str] = []

    def respond(
        self,
        prefix: str,
        stdout: str = "",
        *,
        stderr: str = "",
        returncode: int = 0,
        error: str | None = None,
        times: int | None = None,
    ) -> None:
        """Register a response for commands starting with ``prefix``.

        ``times`` limits how often it is used (None = forever).
        """
        result = CommandResult(cmd=[], returncode=returncode, stdout=stdout, stderr=stderr, error=error)
        self._responses.append((prefix, result, [times]))

    def fail(self, prefix: str, stderr: str = "failed", returncode: int = 1, times: int | None = None) -> None:
        self.respond(prefix, stderr=stderr, returncode=returncode, times=times)

    def ran(self, prefix: str) -> bool:
        return any(c.startswith(prefix) for c in self.commands)

    async def run(self, cmd, *, timeout=120, cwd=None, input=None):
        line = " ".join(cmd)
        self.commands.append(line)
        for prefix, result, remaining in reversed(self._responses):
            if not line.startswith(prefix) or remaining[0] == 0:
                continue
            if remaining[0] is not None:
                remaining[0] -= 1
            return result.model_copy(update={"cmd": list(cmd)})
        return CommandResult(cmd=list(cmd), error=f"Command not found: {cmd[0]}")

    def reset(self) -> None:
        self._responses.clear()
        self.commands.clear()
