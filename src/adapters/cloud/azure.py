"""
Azure services backed by the ``az`` CLI.

One resource group holds every VM, managed disk and network security
group; Key Vault keeps an optional copy of the gateway config. The VM
power states az reports are mapped onto the instance statuses the
targets already understand (RUNNING, TERMINATED, ...).
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from typing import Any

from src.adapters.base import ComputeService, InstanceInfo, InstanceSpec, SecretStore
from src.adapters.shell.command import CommandRunner
from src.core.errors import CommandError

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("ResourceNotFound", "NotFound", "was not found", "could not be found")

_POWER_STATES = {
    "VM running": "RUNNING",
    "VM starting": "PROVISIONING",
    "VM stopping": "STOPPING",
    "VM deallocating": "STOPPING",
    "VM stopped": "TERMINATED",
    "VM deallocated": "TERMINATED",
}

GATEWAY_RULE = "allow-gateway"
GATEWAY_RULE_PRIORITY = 1000
ADMIN_USER = "gateway"


def _is_not_found(error: CommandError) -> bool:
    text = str(error)
    return any(m in text for m in _NOT_FOUND_MARKERS)


class AzCli:
    """``az`` invoker bound to one subscription."""

    def __init__(self, subscription: str, runner: CommandRunner | None = None, timeout: float = 600):
        self.subscription = subscription
        self._runner = runner or CommandRunner()
        self._timeout = timeout

    async def run(self, *args: str) -> str:
        cmd = ["az", *args, "--subscription", self.subscription]
        result = (await self._runner.run(cmd, timeout=self._timeout)).check()
        return result.stdout

    async def json(self, *args: str) -> Any:
        text = (await self.run(*args, "--output", "json")).strip()
        return json.loads(text) if text else {}


# ── Virtual machines ────────────────────────────────────────────


class AzureComputeService(ComputeService):
    """VMs, managed disks and NSGs in one resource group.

    A firewall rule here is a network security group holding one inbound
    rule, ``GATEWAY_RULE``. A VM is attached to the NSG named by its first
    network tag when it is created, so ``target_tag`` is that same name.
    """

    def __init__(self, cli: AzCli, resource_group: str, location: str, source_cidr: str = "0.0.0.0/0"):
        self._cli = cli
        self.resource_group = resource_group
        self.location = location
        self.source_cidr = source_cidr

    async def _vm(self, verb: str, name: str, *args: str) -> str:
        return await self._cli.run("vm", verb, "--resource-group", self.resource_group, "--name", name, *args)

    async def get_instance(self, name):
        try:
            data = await self._cli.json(
                "vm", "show", "--show-details", "--resource-group", self.resource_group, "--name", name
            )
        except CommandError as e:
            if _is_not_found(e):
                return None
            raise

        return InstanceInfo(
            name=data.get("name", name),
            status=_POWER_STATES.get(data.get("powerState") or "", "UNKNOWN"),
            machine_type=data.get("hardwareProfile", {}).get("vmSize", ""),
            external_ip=(data.get("publicIps") or "").split(",")[0] or None,
        )

    async def create_instance(self, spec: InstanceSpec):
        if await self.get_disk_size_gb(spec.data_disk_name) is None:
            await self._cli.run(
                "disk", "create",
                "--resource-group", self.resource_group,
                "--name", spec.data_disk_name,
                "--location", self.location,
                "--size-gb", str(spec.data_disk_size_gb),
                "--sku", "StandardSSD_LRS",
            )

        args = [
            "--location", self.location,
            "--image", spec.image,
            "--size", spec.machine_type,
            "--os-disk-size-gb", str(spec.boot_disk_size_gb),
            "--os-disk-delete-option", "Delete",
            "--nic-delete-option", "Delete",
            "--attach-data-disks", spec.data_disk_name,
            "--public-ip-sku", "Standard",
            "--admin-username", ADMIN_USER,
        ]
        ssh_key = spec.metadata.get("ssh-public-key")
        args += ["--ssh-key-values", ssh_key] if ssh_key else ["--generate-ssh-keys"]
        if spec.network_tags:
            args += ["--nsg", spec.network_tags[0]]
        if spec.labels:
            args += ["--tags", *(f"{k}={v}" for k, v in spec.labels.items())]

        path = None
        try:
            if "custom-data" in spec.metadata:
                with tempfile.NamedTemporaryFile("w", suffix=".sh", delete=False) as f:
                    f.write(spec.metadata["custom-data"])
                    path = f.name
                args += ["--custom-data", path]
            await self._vm("create", spec.name, *args)
        finally:
            if path:
                os.unlink(path)

        await self._cli.run(
            "vm", "boot-diagnostics", "enable", "--resource-group", self.resource_group, "--name", spec.name
        )
        info = await self.get_instance(spec.name)
        if info is None:
            raise RuntimeError(f"VM {spec.name} not found after create")
        return info

    async def delete_instance(self, name):
        try:
            await self._vm("delete", name, "--yes")
        except CommandError as e:
            if not _is_not_found(e):
                raise

    async def start_instance(self, name):
        await self._vm("start", name)

    async def stop_instance(self, name):
        # deallocate releases the host; a plain stop keeps it reserved
        await self._vm("deallocate", name)

    async def reset_instance(self, name):
        await self._vm("restart", name)

    async def set_machine_type(self, name, machine_type):
        await self._vm("resize", name, "--size", machine_type)

    async def get_disk_size_gb(self, disk):
        try:
            data = await self._cli.json("disk", "show", "--resource-group", self.resource_group, "--name", disk)
        except CommandError as e:
            if _is_not_found(e):
                return None
            raise
        return int(data["diskSizeGb"])

    async def resize_disk(self, disk, size_gb):
        await self._cli.run(
            "disk", "update", "--resource-group", self.resource_group, "--name", disk, "--size-gb", str(size_gb)
        )

    async def delete_disk(self, disk):
        try:
            await self._cli.run("disk", "delete", "--resource-group", self.resource_group, "--name", disk, "--yes")
        except CommandError as e:
            if not _is_not_found(e):
                raise

    async def ensure_firewall_rule(self, name, port, target_tag):
        try:
            await self._cli.json("network", "nsg", "show", "--resource-group", self.resource_group, "--name", name)
        except CommandError as e:
            if not _is_not_found(e):
                raise
            await self._cli.run(
                "network", "nsg", "create",
                "--resource-group", self.resource_group,
                "--name", name,
                "--location", self.location,
            )
        # rule create is an upsert
        await self._cli.run(
            "network", "nsg", "rule", "create",
            "--resource-group", self.resource_group,
            "--nsg-name", name,
            "--name", GATEWAY_RULE,
            "--priority", str(GATEWAY_RULE_PRIORITY),
            "--direction", "Inbound",
            "--access", "Allow",
            "--protocol", "Tcp",
            "--source-address-prefixes", self.source_cidr,
            "--destination-port-ranges", str(port),
        )

    async def delete_firewall_rule(self, name):
        """Delete the NSG ``name`` with its rules."""
        try:
            await self._cli.run("network", "nsg", "delete", "--resource-group", self.resource_group, "--name", name)
        except CommandError as e:
            if not _is_not_found(e):
                raise

    async def get_serial_output(self, name):
        text = await self._cli.run(
            "vm", "boot-diagnostics", "get-boot-log", "--resource-group", self.resource_group, "--name", name
        )
        return text.splitlines()

    async def run_script(self, name, script):
        data = await self._cli.json(
            "vm", "run-command", "invoke",
            "--resource-group", self.resource_group,
            "--name", name,
            "--command-id", "RunShellScript",
            "--scripts", *script,
        )
        messages = [v.get("message", "") for v in data.get("value", [])]
        return "\n".join(m for m in messages if m)


# ── Key Vault ───────────────────────────────────────────────────


class KeyVaultSecretStore(SecretStore):
    def __init__(self, cli: AzCli, vault_name: str):
        self._cli = cli
        self.vault_name = vault_name

    async def secret_exists(self, name):
        try:
            await self._cli.json("keyvault", "secret", "show", "--vault-name", self.vault_name, "--name", name)
        except CommandError as e:
            if _is_not_found(e):
                return False
            raise
        return True

    async def _set(self, name: str, value: str, tags: dict[str, str] | None = None) -> None:
        args = ["keyvault", "secret", "set", "--vault-name", self.vault_name, "--name", name]
        if tags:
            args += ["--tags", *(f"{k}={v}" for k, v in tags.items())]
        # values given on the command line would show up in the process list
        with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as f:
            f.write(value)
        try:
            await self._cli.run(*args, "--file", f.name, "--encoding", "utf-8")
        finally:
            os.unlink(f.name)

    async def create_secret(self, name, value, *, tags=None):
        await self._set(name, value, tags)

    async def put_secret(self, name, value):
        await self._set(name, value)

    async def delete_secret(self, name, *, force=True):
        try:
            await self._cli.run("keyvault", "secret", "delete", "--vault-name", self.vault_name, "--name", name)
        except CommandError as e:
            if not _is_not_found(e):
                raise
            return
        if force:
            try:
                await self._cli.run("keyvault", "secret", "purge", "--vault-name", self.vault_name, "--name", name)
            except CommandError as e:
                # purge protection, or the soft delete has not finished yet
                logger.debug("Secret %s not purged: %s", name, e)
