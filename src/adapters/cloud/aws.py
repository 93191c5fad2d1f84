"""
AWS services backed by the ``aws`` CLI.

Every call is ``aws <service> <operation> ... --output json`` through the
shared command runner. A failing command raises ``CommandError`` whose
message carries the CLI's stderr, so callers can match provider error
codes ("AlreadyExistsException", "No updates are to be performed"...)
in the text.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from src.adapters.base import (
    ClusterService,
    LogService,
    ScalingService,
    SecretStore,
    ServiceInfo,
    StackService,
)
from src.adapters.shell.command import CommandRunner
from src.core.errors import CommandError
from src.core.models.stack import StackEvent, StackInfo, StackStatus, StackSummary
from src.core.reliability.polling import Sleep, with_retry

logger = logging.getLogger(__name__)

DEFAULT_LOG_WINDOW_MS = 60 * 60 * 1000


class AwsCli:
    """Thin ``aws`` CLI invoker bound to one region/profile."""

    def __init__(
        self,
        region: str,
        profile: str | None = None,
        runner: CommandRunner | None = None,
        timeout: float = 120,
        max_attempts: int = 3,
        sleep: Sleep = asyncio.sleep,
    ):
        self.region = region
        self.profile = profile
        self._runner = runner or CommandRunner()
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._sleep = sleep

    async def call(self, service: str, operation: str, *args: str) -> dict[str, Any]:
        cmd = ["aws", service, operation, *args, "--region", self.region, "--output", "json"]
        if self.profile:
            cmd += ["--profile", self.profile]

        async def attempt():
            return (await self._runner.run(cmd, timeout=self._timeout)).check()

        result = await with_retry(
            attempt, max_attempts=self._max_attempts, should_retry=_is_throttled, sleep=self._sleep
        )
        text = result.stdout.strip()
        return json.loads(text) if text else {}


def _is_throttled(error: Exception) -> bool:
    text = str(error)
    return "Throttling" in text or "Rate exceeded" in text


def _not_found(error: CommandError, *markers: str) -> bool:
    text = str(error)
    return any(m in text for m in markers)


# ── CloudFormation ──────────────────────────────────────────────


class CloudFormationStackService(StackService):
    def __init__(self, cli: AwsCli):
        self._cli = cli

    @staticmethod
    def _stack_args(
        parameters: dict[str, str] | None,
        tags: dict[str, str] | None,
        capabilities: list[str] | None,
    ) -> list[str]:
        args: list[str] = []
        if parameters:
            args += ["--parameters", json.dumps(
                [{"ParameterKey": k, "ParameterValue": v} for k, v in parameters.items()]
            )]
        if tags:
            args += ["--tags", json.dumps([{"Key": k, "Value": v} for k, v in tags.items()])]
        if capabilities:
            args += ["--capabilities", *capabilities]
        return args

    async def create_stack(self, name, template, *, parameters=None, tags=None, capabilities=None):
        data = await self._cli.call(
            "cloudformation", "create-stack",
            "--stack-name", name,
            "--template-body", template,
            *self._stack_args(parameters, tags, capabilities),
        )
        return data.get("StackId", "")

    async def update_stack(self, name, template, *, parameters=None, tags=None, capabilities=None):
        data = await self._cli.call(
            "cloudformation", "update-stack",
            "--stack-name", name,
            "--template-body", template,
            *self._stack_args(parameters, tags, capabilities),
        )
        return data.get("StackId", "")

    async def delete_stack(self, name, *, retain_resources=None):
        args = ["--stack-name", name]
        if retain_resources:
            args += ["--retain-resources", *retain_resources]
        await self._cli.call("cloudformation", "delete-stack", *args)

    async def describe_stack(self, name):
        try:
            data = await self._cli.call("cloudformation", "describe-stacks", "--stack-name", name)
        except CommandError as e:
            if _not_found(e, "does not exist"):
                return None
            raise
        stacks = data.get("Stacks") or []
        if not stacks:
            return None
        s = stacks[0]
        return StackInfo(
            stack_id=s.get("StackId", ""),
            name=s["StackName"],
            status=StackStatus(s["StackStatus"]),
            status_reason=s.get("StackStatusReason"),
            outputs={o["OutputKey"]: o["OutputValue"] for o in s.get("Outputs", [])},
            tags={t["Key"]: t["Value"] for t in s.get("Tags", [])},
            creation_time=s["CreationTime"],
            last_updated_time=s.get("LastUpdatedTime"),
        )

    async def describe_stack_events(self, name):
        data = await self._cli.call("cloudformation", "describe-stack-events", "--stack-name", name)
        return [
            StackEvent(
                event_id=e["EventId"],
                resource_id=e.get("LogicalResourceId", ""),
                resource_type=e.get("ResourceType", ""),
                resource_status=e.get("ResourceStatus", ""),
                status_reason=e.get("ResourceStatusReason"),
                timestamp=e["Timestamp"],
            )
            for e in data.get("StackEvents", [])
        ]

    async def list_stacks(self, *, name_prefix=None, status_filter=None):
        args: list[str] = []
        if status_filter:
            statuses = sorted(s.value for s in status_filter if s != StackStatus.ABSENT)
            args += ["--stack-status-filter", *statuses]
        data = await self._cli.call("cloudformation", "list-stacks", *args)
        rows = []
        for s in data.get("StackSummaries", []):
            if name_prefix and not s["StackName"].startswith(name_prefix):
                continue
            try:
                status = StackStatus(s["StackStatus"])
            except ValueError:
                logger.debug("Skipping stack %s with status %s", s["StackName"], s["StackStatus"])
                continue
            rows.append(StackSummary(name=s["StackName"], status=status))
        return rows


# ── ECS / Auto Scaling ──────────────────────────────────────────


class EcsClusterService(ClusterService):
    def __init__(self, cli: AwsCli):
        self._cli = cli

    async def update_service(self, cluster, service, *, desired_count=None, force_new_deployment=False):
        args = ["--cluster", cluster, "--service", service]
        if desired_count is not None:
            args += ["--desired-count", str(desired_count)]
        if force_new_deployment:
            args.append("--force-new-deployment")
        await self._cli.call("ecs", "update-service", *args)

    async def describe_service(self, cluster, service):
        try:
            data = await self._cli.call("ecs", "describe-services", "--cluster", cluster, "--services", service)
        except CommandError as e:
            if _not_found(e, "ClusterNotFoundException"):
                return None
            raise
        services = [s for s in data.get("services", []) if s.get("status") != "INACTIVE"]
        if not services:
            return None
        s = services[0]
        return ServiceInfo(
            name=s.get("serviceName", service),
            status=s.get("status", ""),
            desired_count=s.get("desiredCount", 0),
            running_count=s.get("runningCount", 0),
            pending_count=s.get("pendingCount", 0),
        )

    async def list_container_instances(self, cluster):
        data = await self._cli.call("ecs", "list-container-instances", "--cluster", cluster)
        return list(data.get("containerInstanceArns", []))

    async def deregister_container_instance(self, cluster, instance, *, force=True):
        args = ["--cluster", cluster, "--container-instance", instance]
        if force:
            args.append("--force")
        await self._cli.call("ecs", "deregister-container-instance", *args)


class AutoScalingService(ScalingService):
    def __init__(self, cli: AwsCli):
        self._cli = cli

    async def remove_scale_in_protection(self, group_name):
        data = await self._cli.call(
            "autoscaling", "describe-auto-scaling-groups",
            "--auto-scaling-group-names", group_name,
        )
        groups = data.get("AutoScalingGroups", [])
        instance_ids = [i["InstanceId"] for g in groups for i in g.get("Instances", [])]
        if not instance_ids:
            return
        await self._cli.call(
            "autoscaling", "set-instance-protection",
            "--auto-scaling-group-name", group_name,
            "--instance-ids", *instance_ids,
            "--no-protected-from-scale-in",
        )


# ── Secrets Manager / CloudWatch Logs ───────────────────────────


class SecretsManagerStore(SecretStore):
    def __init__(self, cli: AwsCli):
        self._cli = cli

    async def secret_exists(self, name):
        try:
            data = await self._cli.call("secretsmanager", "describe-secret", "--secret-id", name)
        except CommandError as e:
            if _not_found(e, "ResourceNotFoundException"):
                return False
            raise
        return "DeletedDate" not in data

    async def create_secret(self, name, value, *, tags=None):
        args = ["--name", name, "--secret-string", value]
        if tags:
            args += ["--tags", json.dumps([{"Key": k, "Value": v} for k, v in tags.items()])]
        await self._cli.call("secretsmanager", "create-secret", *args)

    async def put_secret(self, name, value):
        await self._cli.call("secretsmanager", "put-secret-value", "--secret-id", name, "--secret-string", value)

    async def delete_secret(self, name, *, force=True):
        args = ["--secret-id", name]
        if force:
            args.append("--force-delete-without-recovery")
        await self._cli.call("secretsmanager", "delete-secret", *args)


class CloudWatchLogService(LogService):
    def __init__(self, cli: AwsCli):
        self._cli = cli

    async def get_log_lines(self, group, *, limit=100, since_ms=None):
        start = since_ms if since_ms is not None else int(time.time() * 1000) - DEFAULT_LOG_WINDOW_MS
        data = await self._cli.call(
            "logs", "filter-log-events",
            "--log-group-name", group,
            "--start-time", str(start),
        )
        messages = [e.get("message", "").rstrip("\n") for e in data.get("events", [])]
        return messages[-limit:]

    async def delete_log_group(self, group):
        try:
            await self._cli.call("logs", "delete-log-group", "--log-group-name", group)
        except CommandError as e:
            if not _not_found(e, "ResourceNotFoundException"):
                raise
