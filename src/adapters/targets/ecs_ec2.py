"""
ECS-on-EC2 target — gateway as a one-task ECS service on its own ASG.

Per profile there is one stack (``gateway-bot-<profile>``) holding the
cluster, auto-scaling group, load balancer and service, plus a secret
with the gateway config and the log group. The VPC and IAM roles come
from the region's shared infrastructure stack, created on first install
and removed when the last bot stack is gone.

All names derive from the profile, so a fresh target object re-attaches
to whatever an earlier process created.
"""

from __future__ import annotations

import asyncio
import json
import logging

from src.adapters.base import (
    ClusterService,
    LogService,
    ScalingService,
    SecretStore,
    StackService,
)
from src.adapters.targets.base import DeploymentTarget, TargetToolkit
from src.core.data import get_registry
from src.core.errors import StackError, TargetError
from src.core.models.config import EcsEc2TargetConfig
from src.core.models.resources import (
    ECS_TIERS,
    ResourceSpec,
    ResourceUpdateResult,
    Tier,
    TierSpec,
)
from src.core.models.stack import ACTIVE_STATES, SharedInfraOutputs
from src.core.models.target import (
    ConfigurePayload,
    ConfigureResult,
    GatewayEndpoint,
    InstallOptions,
    InstallResult,
    LogOptions,
    TargetState,
    TargetStatus,
    TargetType,
)
from src.core.reliability.polling import Sleep, wait_for
from src.core.services.shared_infra import BOT_STACK_PREFIX, SharedInfraProvisioner
from src.core.services.stack_reconciler import StackReconciler

logger = logging.getLogger(__name__)

INSTANCE_TYPES: dict[Tier, str] = {
    Tier.LIGHT: "t3.small",
    Tier.STANDARD: "t3.medium",
    Tier.PERFORMANCE: "t3.large",
}
MANAGED_TAGS = {"gateway:managed": "true"}
SERVICE_STABLE_TIMEOUT = 300.0
DEFAULT_LOG_LINES = 100


class EcsEc2Target(DeploymentTarget):
    """Gateway on ECS with EC2 capacity, one stack per profile."""

    type = TargetType.ECS_EC2

    def __init__(
        self,
        config: EcsEc2TargetConfig,
        *,
        stacks: StackService,
        cluster: ClusterService,
        scaling: ScalingService,
        secrets: SecretStore,
        logs: LogService,
        toolkit: TargetToolkit | None = None,
        poll_interval: float = 10.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config
        self.toolkit = toolkit or TargetToolkit()
        self._stacks = stacks
        self._cluster = cluster
        self._scaling = scaling
        self._secrets = secrets
        self._logs = logs
        self._poll_interval = poll_interval
        self._sleep = sleep

        self.bot_name = self.toolkit.sanitize_name(config.profile_name)
        self.stack_name = f"{BOT_STACK_PREFIX}{self.bot_name}"
        self.cluster_name = self.toolkit.resource_name(self.bot_name)
        self.service_name = self.cluster_name
        self.asg_name = self.toolkit.resource_name(self.bot_name, "asg")
        self.secret_name = f"{self.toolkit.prefix}/{self.bot_name}/config"
        self.log_group = f"/ecs/{self.cluster_name}"

        self.shared = SharedInfraProvisioner(
            stacks,
            config.region,
            on_log=self.toolkit.log,
            poll_interval=poll_interval,
            sleep=sleep,
        )
        self.reconciler = StackReconciler(
            stacks,
            on_log=self.toolkit.log,
            pre_delete_cleanup=self._release_cluster,
            poll_interval=poll_interval,
            sleep=sleep,
        )

    @property
    def tier(self) -> TierSpec:
        for t in ECS_TIERS:
            if t.tier == self.config.tier:
                return t
        return next(t for t in ECS_TIERS if t.tier == Tier.STANDARD)

    def _parameters(self, shared: SharedInfraOutputs, cpu: int, memory: int, port: int) -> dict[str, str]:
        return {
            "BotName": self.bot_name,
            "Image": self.config.image,
            "GatewayPort": str(port),
            "TaskCpu": str(cpu),
            "TaskMemory": str(memory),
            "InstanceType": INSTANCE_TYPES.get(self.tier.tier, INSTANCE_TYPES[Tier.STANDARD]),
            "AllowedCidr": self.config.allowed_cidr,
            "CertificateArn": self.config.certificate_arn or "",
            "SecretArn": self.secret_name,
            "VpcId": shared.vpc_id,
            "PublicSubnetIds": ",".join(shared.public_subnet_ids),
            "PrivateSubnetIds": ",".join(shared.private_subnet_ids),
            "InstanceProfileArn": shared.ec2_instance_profile_arn,
            "TaskExecutionRoleArn": shared.task_execution_role_arn,
        }

    # ── Install ─────────────────────────────────────────────────

    async def install(self, options: InstallOptions) -> InstallResult:
        self.toolkit.log(f"Starting ECS EC2 deployment for {self.bot_name}")
        try:
            self.toolkit.log("[1/4] Ensuring shared infrastructure...")
            shared = await self.shared.ensure()

            self.toolkit.log("[2/4] Ensuring config secret...")
            if not await self._secrets.secret_exists(self.secret_name):
                await self._secrets.create_secret(self.secret_name, "{}", tags=MANAGED_TAGS)

            self.toolkit.log(f"[3/4] Reconciling stack {self.stack_name}...")
            # Keep a size set by an earlier resize
            cpu, memory = self._task_size(await self._bot_outputs())
            await self._converge_bot(shared, cpu, memory, options.port)

            self.toolkit.log("[4/4] Waiting for ECS service to stabilize...")
            await self._wait_for_service_stability()
        except Exception as e:
            self.toolkit.log(f"ECS EC2 install failed: {e}", "stderr")
            return InstallResult(
                success=False,
                instance_id=self.stack_name,
                message=f"ECS EC2 install failed: {e}",
            )

        self.toolkit.log("ECS EC2 deployment completed successfully")
        return InstallResult(
            success=True,
            instance_id=self.stack_name,
            message=f"Deployed {self.stack_name} in {self.config.region}",
            service_name=self.service_name,
        )

    async def _converge_bot(self, shared: SharedInfraOutputs, cpu: int, memory: int, port: int) -> None:
        await self.reconciler.converge(
            self.stack_name,
            get_registry().template_body("ecs_ec2_bot"),
            parameters=self._parameters(shared, cpu, memory, port),
            tags={**MANAGED_TAGS, "gateway:profile": self.bot_name},
            capabilities=["CAPABILITY_NAMED_IAM"],
        )

    async def _bot_outputs(self) -> dict[str, str]:
        try:
            return await self._stacks.get_stack_outputs(self.stack_name)
        except StackError:
            return {}

    def _task_size(self, outputs: dict[str, str]) -> tuple[int, int]:
        tier = self.tier
        return int(outputs.get("TaskCpu", tier.cpu)), int(outputs.get("TaskMemory", tier.memory))

    async def _release_cluster(self) -> None:
        """Let a stuck stack delete go through: drop instances and protections.

        Every step is attempted; failures are logged, never raised.
        """
        try:
            instances = await self._cluster.list_container_instances(self.cluster_name)
        except Exception as e:
            if "ClusterNotFound" in str(e):
                logger.debug("Cluster %s already gone", self.cluster_name)
            else:
                self.toolkit.log(f"Could not list container instances: {e}", "stderr")
            instances = []

        for instance in instances:
            self.toolkit.log(f"Deregistering container instance {instance}")
            try:
                await self._cluster.deregister_container_instance(self.cluster_name, instance, force=True)
            except Exception as e:
                self.toolkit.log(f"Could not deregister {instance}: {e}", "stderr")

        try:
            await self._scaling.remove_scale_in_protection(self.asg_name)
        except Exception as e:
            self.toolkit.log(f"Could not remove scale-in protection: {e}", "stderr")

    async def _wait_for_service_stability(self, timeout: float = SERVICE_STABLE_TIMEOUT) -> None:
        async def stable() -> bool:
            service = await self._cluster.describe_service(self.cluster_name, self.service_name)
            if service is None:
                self.toolkit.log("[ECS] Waiting for service to be created...")
                return False
            self.toolkit.log(
                f"[ECS] Deployment: {service.running_count}/{service.desired_count} tasks running"
            )
            return service.desired_count > 0 and service.running_count >= service.desired_count

        await wait_for(
            stable,
            timeout=timeout,
            interval=self._poll_interval,
            description=f"ECS service {self.service_name} to stabilize",
            sleep=self._sleep,
        )
        self.toolkit.log("[ECS] Service is stable")

    # ── Configure / lifecycle ───────────────────────────────────

    async def configure(self, payload: ConfigurePayload) -> ConfigureResult:
        data = self.toolkit.transform_config(payload.config)
        data.setdefault("gateway", {})["port"] = payload.gateway_port
        if payload.environment:
            data["env"] = dict(payload.environment)
        try:
            await self._secrets.ensure_secret(self.secret_name, json.dumps(data), tags=MANAGED_TAGS)
        except Exception as e:
            return ConfigureResult(success=False, message=f"Failed to store config: {e}")
        return ConfigureResult(
            success=True,
            message=f"Configuration stored in secret {self.secret_name}",
            requires_restart=True,
        )

    async def start(self) -> None:
        await self._update_service(desired_count=1)

    async def stop(self) -> None:
        await self._update_service(desired_count=0)

    async def restart(self) -> None:
        await self._update_service(force_new_deployment=True)

    async def _update_service(self, **kwargs) -> None:
        try:
            await self._cluster.update_service(self.cluster_name, self.service_name, **kwargs)
        except Exception as e:
            raise TargetError(f"Failed to update ECS service {self.service_name}: {e}") from e

    # ── Observation ─────────────────────────────────────────────

    async def get_status(self) -> TargetStatus:
        try:
            service = await self._cluster.describe_service(self.cluster_name, self.service_name)
        except Exception as e:
            logger.debug("describe_service failed: %s", e)
            return TargetStatus(state=TargetState.NOT_INSTALLED)
        if service is None:
            return TargetStatus(state=TargetState.NOT_INSTALLED)

        if service.running_count > 0:
            state = TargetState.RUNNING
        elif service.desired_count == 0:
            state = TargetState.STOPPED
        else:
            state = TargetState.ERROR

        return TargetStatus(
            state=state,
            gateway_port=self.config.gateway_port,
            error=(
                f"Service status: {service.status}, "
                f"running: {service.running_count}/{service.desired_count}"
                if state == TargetState.ERROR else None
            ),
        )

    async def get_logs(self, options: LogOptions | None = None) -> list[str]:
        options = options or LogOptions()
        since_ms = int(options.since.timestamp() * 1000) if options.since else None
        try:
            lines = await self._logs.get_log_lines(
                self.log_group, limit=options.lines or DEFAULT_LOG_LINES, since_ms=since_ms
            )
        except Exception as e:
            logger.debug("Reading %s failed: %s", self.log_group, e)
            return []
        return self.toolkit.filter_lines(lines, options.filter)

    async def get_endpoint(self) -> GatewayEndpoint:
        outputs = await self._stacks.get_stack_outputs(self.stack_name)
        host = outputs.get("AlbDnsName")
        if not host:
            raise TargetError("ALB DNS name not found in stack outputs")
        if self.config.certificate_arn:
            return GatewayEndpoint(host=host, port=443, protocol="wss")
        return GatewayEndpoint(host=host, port=80, protocol="ws")

    # ── Destroy ─────────────────────────────────────────────────

    async def destroy(self) -> None:
        self.toolkit.log(f"Starting destruction of ECS EC2 resources for {self.stack_name}")

        try:
            if await self.reconciler.delete(self.stack_name):
                self.toolkit.log("Stack deleted")
        except Exception as e:
            self.toolkit.log(f"Stack deletion failed: {e}", "stderr")

        try:
            await self._secrets.delete_secret(self.secret_name, force=True)
            self.toolkit.log("Secret deleted")
        except Exception as e:
            self.toolkit.log(f"Secret not deleted: {e}", "stderr")

        try:
            await self._logs.delete_log_group(self.log_group)
            self.toolkit.log("Log group deleted")
        except Exception as e:
            self.toolkit.log(f"Log group not deleted: {e}", "stderr")

        await self.shared.cleanup_if_orphaned()
        self.toolkit.log("ECS EC2 resource destruction completed")

    # ── Resources ───────────────────────────────────────────────

    async def update_resources(self, spec: ResourceSpec) -> ResourceUpdateResult:
        self.toolkit.log(f"Starting resource update: cpu={spec.cpu}, memory={spec.memory} MiB")
        try:
            shared = await self.shared.get_outputs()
            stack = await self._stacks.describe_stack(self.stack_name)
            current = self._task_size(await self._bot_outputs())
            if stack is not None and stack.status in ACTIVE_STATES and current == (spec.cpu, spec.memory):
                self.toolkit.log("Resources already at requested levels, no changes needed")
                return ResourceUpdateResult(success=True, message="Resources already at requested levels")

            await self._converge_bot(shared, spec.cpu, spec.memory, self.config.gateway_port)
            self.toolkit.log("Waiting for ECS service to stabilize after resource update...")
            await self._wait_for_service_stability()
        except Exception as e:
            self.toolkit.log(f"Failed to update resources: {e}", "stderr")
            return ResourceUpdateResult(success=False, message=f"Failed to update resources: {e}")

        self.toolkit.log("Resource update completed successfully")
        return ResourceUpdateResult(
            success=True,
            message=f"ECS task resources updated to {spec.cpu} CPU units, {spec.memory} MiB memory",
        )

    async def get_resources(self) -> ResourceSpec:
        cpu, memory = self._task_size(await self._bot_outputs())
        return ResourceSpec(cpu=cpu, memory=memory)
