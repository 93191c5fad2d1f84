"""
GCE target — gateway on a single Compute Engine VM.

The VM boots Debian, installs docker and sysbox from its startup script
and runs the gateway container with its state on a separate persistent
data disk. The config lives in Secret Manager and is read at boot.

Resizing goes through the resize orchestrator: stop, change machine
type, grow the data disk, start.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time

from src.adapters.base import ComputeService, InstanceInfo, InstanceSpec, SecretStore, VmComputeUnit
from src.adapters.targets.base import DeploymentTarget, TargetToolkit
from src.core.data import get_registry
from src.core.errors import TargetError
from src.core.models.config import GceTargetConfig
from src.core.models.resources import GCE_TIERS, ResourceSpec, ResourceUpdateResult
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
from src.core.services.resize import ResizeOrchestrator
from src.core.services.sandbox import get_sysbox_install_command

logger = logging.getLogger(__name__)

BOOT_TIMEOUT = 300.0
DEFAULT_LOG_LINES = 100
_STOPPED_STATES = {"TERMINATED", "STOPPED", "STOPPING", "SUSPENDED", "SUSPENDING"}


class GceVmTarget(DeploymentTarget):
    """Gateway on one Compute Engine VM per profile."""

    type = TargetType.GCE

    def __init__(
        self,
        config: GceTargetConfig,
        *,
        compute: ComputeService,
        secrets: SecretStore,
        toolkit: TargetToolkit | None = None,
        poll_interval: float = 5.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config
        self.toolkit = toolkit or TargetToolkit()
        self._compute = compute
        self._secrets = secrets
        self._poll_interval = poll_interval
        self._sleep = sleep

        profile = self.toolkit.sanitize_name(config.profile_name)
        self.instance_name = self.toolkit.resource_name(profile)
        self.data_disk_name = self.toolkit.resource_name(profile, "data")
        self.firewall_rule = self.toolkit.resource_name(profile, "allow-gateway")
        self.secret_name = self.toolkit.resource_name(profile, "config")
        self.network_tag = self.instance_name

        self.resizer = ResizeOrchestrator(
            VmComputeUnit(compute, self.instance_name, self.data_disk_name),
            GCE_TIERS,
            on_log=self.toolkit.log,
        )

    def _instance_spec(self, port: int) -> InstanceSpec:
        script = get_registry().render_startup_script(
            "gce",
            data_disk_name=self.data_disk_name,
            sysbox_install_command=get_sysbox_install_command(),
            secret_name=self.secret_name,
            gateway_port=port,
            image=self.config.image,
        )
        return InstanceSpec(
            name=self.instance_name,
            machine_type=self.config.machine_type,
            data_disk_name=self.data_disk_name,
            data_disk_size_gb=self.config.data_disk_size_gb,
            network_tags=[self.network_tag],
            labels={"gateway-managed": "true"},
            metadata={"startup-script": script},
        )

    # ── Install ─────────────────────────────────────────────────

    async def install(self, options: InstallOptions) -> InstallResult:
        self.toolkit.log(f"Starting GCE deployment for {self.instance_name} in {self.config.zone}")
        try:
            self.toolkit.log(f"[1/4] Ensuring firewall rule {self.firewall_rule}...")
            await self._compute.ensure_firewall_rule(self.firewall_rule, options.port, self.network_tag)

            self.toolkit.log("[2/4] Ensuring config secret...")
            if not await self._secrets.secret_exists(self.secret_name):
                await self._secrets.create_secret(self.secret_name, "{}")

            existing = await self._compute.get_instance(self.instance_name)
            if existing is not None:
                self.toolkit.log(f"[3/4] Instance {self.instance_name} exists ({existing.status}), reusing it")
            else:
                self.toolkit.log(f"[3/4] Creating instance {self.instance_name} ({self.config.machine_type})...")
                await self._compute.create_instance(self._instance_spec(options.port))

            self.toolkit.log("[4/4] Waiting for the instance to run...")
            await self._wait_running()
        except Exception as e:
            self.toolkit.log(f"GCE install failed: {e}", "stderr")
            return InstallResult(
                success=False,
                instance_id=self.instance_name,
                message=f"GCE install failed: {e}",
            )

        return InstallResult(
            success=True,
            instance_id=self.instance_name,
            message=f"Deployed {self.instance_name} in {self.config.zone}",
        )

    async def _wait_running(self) -> InstanceInfo:
        async def running() -> InstanceInfo | None:
            info = await self._compute.get_instance(self.instance_name)
            if info is not None and info.status in ("TERMINATED", "STOPPED", "SUSPENDED"):
                await self._compute.start_instance(self.instance_name)
                return None
            return info if info is not None and info.running else None

        return await wait_for(
            running,
            timeout=BOOT_TIMEOUT,
            interval=self._poll_interval,
            description=f"instance {self.instance_name} to run",
            sleep=self._sleep,
        )

    # ── Configure / lifecycle ───────────────────────────────────

    async def configure(self, payload: ConfigurePayload) -> ConfigureResult:
        data = self.toolkit.transform_config(payload.config)
        data.setdefault("gateway", {})["port"] = payload.gateway_port
        if payload.environment:
            data["env"] = dict(payload.environment)
        try:
            await self._secrets.ensure_secret(self.secret_name, json.dumps(data))
        except Exception as e:
            return ConfigureResult(success=False, message=f"Failed to store config: {e}")
        return ConfigureResult(
            success=True,
            message=f"Configuration stored in secret {self.secret_name}",
            requires_restart=True,
        )

    async def start(self) -> None:
        await self._lifecycle("start", self._compute.start_instance)

    async def stop(self) -> None:
        await self._lifecycle("stop", self._compute.stop_instance)

    async def restart(self) -> None:
        await self._lifecycle("reset", self._compute.reset_instance)

    async def _lifecycle(self, verb: str, op) -> None:
        try:
            await op(self.instance_name)
        except Exception as e:
            raise TargetError(f"Failed to {verb} instance {self.instance_name}: {e}") from e

    # ── Observation ─────────────────────────────────────────────

    async def get_status(self) -> TargetStatus:
        try:
            info = await self._compute.get_instance(self.instance_name)
        except Exception as e:
            return TargetStatus(state=TargetState.ERROR, error=str(e))
        if info is None:
            return TargetStatus(state=TargetState.NOT_INSTALLED)

        if info.running:
            uptime = int(time.time() - info.started_at) if info.started_at else None
            return TargetStatus(
                state=TargetState.RUNNING,
                uptime=max(0, uptime) if uptime is not None else None,
                gateway_port=self.config.gateway_port,
            )
        if info.status in _STOPPED_STATES:
            return TargetStatus(state=TargetState.STOPPED, gateway_port=self.config.gateway_port)
        return TargetStatus(state=TargetState.ERROR, error=f"Instance status: {info.status}")

    async def get_logs(self, options: LogOptions | None = None) -> list[str]:
        options = options or LogOptions()
        try:
            lines = await self._compute.get_serial_output(self.instance_name)
        except Exception as e:
            logger.debug("Serial output of %s unavailable: %s", self.instance_name, e)
            return []
        lines = self.toolkit.filter_lines(lines, options.filter)
        return lines[-(options.lines or DEFAULT_LOG_LINES):]

    async def get_endpoint(self) -> GatewayEndpoint:
        if self.config.custom_domain:
            return GatewayEndpoint(host=self.config.custom_domain, port=443, protocol="wss")
        info = await self._compute.get_instance(self.instance_name)
        if info is None or not info.external_ip:
            raise TargetError(f"Instance {self.instance_name} has no external IP")
        return GatewayEndpoint(host=info.external_ip, port=self.config.gateway_port, protocol="ws")

    # ── Destroy ─────────────────────────────────────────────────

    async def destroy(self) -> None:
        self.toolkit.log(f"Destroying GCE resources for {self.instance_name}")
        steps = [
            ("instance", self._compute.delete_instance, self.instance_name),
            ("data disk", self._compute.delete_disk, self.data_disk_name),
            ("firewall rule", self._compute.delete_firewall_rule, self.firewall_rule),
            ("secret", self._secrets.delete_secret, self.secret_name),
        ]
        for label, op, name in steps:
            try:
                await op(name)
                self.toolkit.log(f"Deleted {label} {name}")
            except Exception as e:
                self.toolkit.log(f"Failed to delete {label} {name}: {e}", "stderr")

    # ── Resources ───────────────────────────────────────────────

    async def update_resources(self, spec: ResourceSpec) -> ResourceUpdateResult:
        return await self.resizer.update_resources(spec)

    async def get_resources(self) -> ResourceSpec:
        return await self.resizer.get_resources()
