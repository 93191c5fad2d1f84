"""
Azure VM target — gateway on a single Azure virtual machine.

The VM runs Debian and boots from custom data that installs docker and
sysbox, mounts the managed data disk (LUN 0) and starts the gateway
container. Inbound traffic goes through a per-profile network security
group.

The config is pushed onto the VM with run-command and the container is
restarted in the same step; when a Key Vault is configured it also keeps
a copy of the config. Resizing deallocates the VM, changes its size and
grows the data disk.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging

from src.adapters.base import ComputeService, InstanceInfo, InstanceSpec, SecretStore, VmComputeUnit
from src.adapters.targets.base import DeploymentTarget, TargetToolkit
from src.core.data import get_registry
from src.core.errors import TargetError
from src.core.models.config import AzureVmTargetConfig
from src.core.models.resources import AZURE_TIERS, ResourceSpec, ResourceUpdateResult
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

VM_IMAGE = "Debian:debian-12:12-gen2:latest"
VM_CONFIG_PATH = "/mnt/gateway/config/config.json"
BOOT_TIMEOUT = 600.0
DEFAULT_LOG_LINES = 100
_STOPPED_STATES = {"TERMINATED", "STOPPING"}


class AzureVmTarget(DeploymentTarget):
    """Gateway on one Azure VM per profile."""

    type = TargetType.AZURE_VM

    def __init__(
        self,
        config: AzureVmTargetConfig,
        *,
        compute: ComputeService,
        secrets: SecretStore | None = None,
        toolkit: TargetToolkit | None = None,
        poll_interval: float = 10.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config
        self.toolkit = toolkit or TargetToolkit()
        self._compute = compute
        self._secrets = secrets if config.key_vault_name else None
        self._poll_interval = poll_interval
        self._sleep = sleep

        self.profile = self.toolkit.sanitize_name(config.profile_name)
        self.vm_name = self.toolkit.resource_name(self.profile)
        self.data_disk_name = self.toolkit.resource_name(self.profile, "data")
        self.nsg_name = self.toolkit.resource_name(self.profile, "nsg")
        self.secret_name = self.toolkit.resource_name(self.profile, "config")

        self.resizer = ResizeOrchestrator(
            VmComputeUnit(compute, self.vm_name, self.data_disk_name),
            AZURE_TIERS,
            on_log=self.toolkit.log,
        )

    def _instance_spec(self, port: int) -> InstanceSpec:
        metadata = {
            "custom-data": get_registry().render_startup_script(
                "azure",
                sysbox_install_command=get_sysbox_install_command(),
                gateway_port=port,
                image=self.config.image,
            ),
        }
        if self.config.ssh_public_key:
            metadata["ssh-public-key"] = self.config.ssh_public_key
        return InstanceSpec(
            name=self.vm_name,
            machine_type=self.config.vm_size,
            image=VM_IMAGE,
            boot_disk_size_gb=self.config.os_disk_size_gb,
            data_disk_name=self.data_disk_name,
            data_disk_size_gb=self.config.data_disk_size_gb,
            network_tags=[self.nsg_name],
            labels={"gateway-managed": "true", "gateway-profile": self.profile},
            metadata=metadata,
        )

    # ── Install ─────────────────────────────────────────────────

    async def install(self, options: InstallOptions) -> InstallResult:
        self.toolkit.log(f"Starting Azure VM deployment for {self.vm_name} in {self.config.region}")
        try:
            self.toolkit.log(f"[1/4] Ensuring network security group {self.nsg_name}...")
            await self._compute.ensure_firewall_rule(self.nsg_name, options.port, self.nsg_name)

            if self._secrets is not None:
                self.toolkit.log(f"[2/4] Ensuring config secret in Key Vault {self.config.key_vault_name}...")
                if not await self._secrets.secret_exists(self.secret_name):
                    await self._secrets.create_secret(self.secret_name, "{}")
            else:
                self.toolkit.log("[2/4] No Key Vault configured, skipping config secret")

            existing = await self._compute.get_instance(self.vm_name)
            if existing is not None:
                self.toolkit.log(f"[3/4] VM {self.vm_name} exists ({existing.status}), reusing it")
            else:
                self.toolkit.log(f"[3/4] Creating VM {self.vm_name} ({self.config.vm_size})...")
                await self._compute.create_instance(self._instance_spec(options.port))

            self.toolkit.log("[4/4] Waiting for the VM to run...")
            info = await self._wait_running()
        except Exception as e:
            self.toolkit.log(f"Azure VM install failed: {e}", "stderr")
            return InstallResult(
                success=False,
                instance_id=self.vm_name,
                message=f"Azure VM install failed: {e}",
            )

        address = f" at {info.external_ip}" if info.external_ip else ""
        return InstallResult(
            success=True,
            instance_id=self.vm_name,
            message=f"Azure VM {self.vm_name} created{address} in {self.config.region}",
        )

    async def _wait_running(self) -> InstanceInfo:
        async def running() -> InstanceInfo | None:
            info = await self._compute.get_instance(self.vm_name)
            if info is not None and info.status == "TERMINATED":
                await self._compute.start_instance(self.vm_name)
                return None
            return info if info is not None and info.running else None

        return await wait_for(
            running,
            timeout=BOOT_TIMEOUT,
            interval=self._poll_interval,
            description=f"VM {self.vm_name} to run",
            sleep=self._sleep,
        )

    # ── Configure / lifecycle ───────────────────────────────────

    async def configure(self, payload: ConfigurePayload) -> ConfigureResult:
        data = self.toolkit.transform_config(payload.config)
        data.setdefault("gateway", {})["port"] = payload.gateway_port
        if payload.environment:
            data["env"] = dict(payload.environment)
        text = json.dumps(data, indent=2)

        try:
            if self._secrets is not None:
                await self._secrets.ensure_secret(self.secret_name, text)
            # base64 keeps the JSON intact through the remote shell
            encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
            await self._compute.run_script(self.vm_name, [
                f"echo '{encoded}' | base64 -d > {VM_CONFIG_PATH}",
                "docker restart gateway >/dev/null 2>&1 || true",
            ])
        except Exception as e:
            return ConfigureResult(success=False, message=f"Failed to configure: {e}")

        return ConfigureResult(
            success=True,
            message=f"Configuration applied to VM {self.vm_name} and container restarted",
            requires_restart=False,
            config_path=VM_CONFIG_PATH,
        )

    async def start(self) -> None:
        await self._lifecycle("start", self._compute.start_instance)

    async def stop(self) -> None:
        await self._lifecycle("stop", self._compute.stop_instance)

    async def restart(self) -> None:
        await self._lifecycle("restart", self._compute.reset_instance)

    async def _lifecycle(self, verb: str, op) -> None:
        try:
            await op(self.vm_name)
        except Exception as e:
            raise TargetError(f"Failed to {verb} VM {self.vm_name}: {e}") from e

    # ── Observation ─────────────────────────────────────────────

    async def get_status(self) -> TargetStatus:
        try:
            info = await self._compute.get_instance(self.vm_name)
        except Exception as e:
            return TargetStatus(state=TargetState.ERROR, error=str(e))
        if info is None:
            return TargetStatus(state=TargetState.NOT_INSTALLED)
        if info.running:
            return TargetStatus(state=TargetState.RUNNING, gateway_port=self.config.gateway_port)
        if info.status in _STOPPED_STATES:
            return TargetStatus(state=TargetState.STOPPED, gateway_port=self.config.gateway_port)
        return TargetStatus(state=TargetState.ERROR, error=f"VM power state: {info.status}")

    async def get_logs(self, options: LogOptions | None = None) -> list[str]:
        options = options or LogOptions()
        try:
            lines = await self._compute.get_serial_output(self.vm_name)
        except Exception as e:
            logger.debug("Boot log of %s unavailable: %s", self.vm_name, e)
            return []
        lines = self.toolkit.filter_lines(lines, options.filter)
        return lines[-(options.lines or DEFAULT_LOG_LINES):]

    async def get_endpoint(self) -> GatewayEndpoint:
        if self.config.custom_domain:
            return GatewayEndpoint(host=self.config.custom_domain, port=443, protocol="wss")
        info = await self._compute.get_instance(self.vm_name)
        if info is None or not info.external_ip:
            raise TargetError(f"VM {self.vm_name} has no public IP")
        return GatewayEndpoint(host=info.external_ip, port=self.config.gateway_port, protocol="ws")

    # ── Destroy ─────────────────────────────────────────────────

    async def destroy(self) -> None:
        self.toolkit.log(f"Destroying Azure resources for {self.vm_name}")
        # The NSG can only go once the VM's NIC is gone
        steps = [
            ("VM", self._compute.delete_instance, self.vm_name),
            ("data disk", self._compute.delete_disk, self.data_disk_name),
            ("network security group", self._compute.delete_firewall_rule, self.nsg_name),
        ]
        if self._secrets is not None:
            steps.append(("secret", self._secrets.delete_secret, self.secret_name))
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
