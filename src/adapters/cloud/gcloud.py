"""
Google Cloud services backed by the ``gcloud`` CLI.

Compute Engine VMs, persistent disks and firewall rules, plus Secret
Manager. Commands run with ``--format=json`` where there is something to
parse; "not found" answers are mapped to ``None`` / no-ops so deletes
stay idempotent.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime
from typing import Any

from src.adapters.base import ComputeService, InstanceInfo, InstanceSpec, SecretStore
from src.adapters.shell.command import CommandRunner
from src.core.errors import CommandError

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("was not found", "NOT_FOUND", "not found")


def _is_not_found(error: CommandError) -> bool:
    text = str(error)
    return any(m in text for m in _NOT_FOUND_MARKERS)


class GcloudCli:
    """``gcloud`` invoker bound to one project."""

    def __init__(self, project: str, runner: CommandRunner | None = None, timeout: float = 300):
        self.project = project
        self._runner = runner or CommandRunner()
        self._timeout = timeout

    async def run(self, *args: str, input: str | None = None) -> str:
        cmd = ["gcloud", *args, "--project", self.project]
        result = (await self._runner.run(cmd, timeout=self._timeout, input=input)).check()
        return result.stdout

    async def json(self, *args: str) -> Any:
        text = (await self.run(*args, "--format=json")).strip()
        return json.loads(text) if text else {}


# ── Compute Engine ──────────────────────────────────────────────


class GceComputeService(ComputeService):
    def __init__(self, cli: GcloudCli, zone: str):
        self._cli = cli
        self.zone = zone

    async def _instances(self, verb: str, name: str, *args: str) -> str:
        return await self._cli.run("compute", "instances", verb, name, "--zone", self.zone, *args)

    async def get_instance(self, name):
        try:
            data = await self._cli.json("compute", "instances", "describe", name, "--zone", self.zone)
        except CommandError as e:
            if _is_not_found(e):
                return None
            raise

        external_ip = None
        for nic in data.get("networkInterfaces", []):
            for access in nic.get("accessConfigs", []):
                external_ip = external_ip or access.get("natIP")

        started_at = None
        if data.get("lastStartTimestamp"):
            started_at = datetime.fromisoformat(data["lastStartTimestamp"]).timestamp()

        return InstanceInfo(
            name=data.get("name", name),
            status=data.get("status", "UNKNOWN"),
            machine_type=data.get("machineType", "").rsplit("/", 1)[-1],
            external_ip=external_ip,
            started_at=started_at,
        )

    async def create_instance(self, spec: InstanceSpec):
        args = [
            "--machine-type", spec.machine_type,
            "--boot-disk-size", f"{spec.boot_disk_size_gb}GB",
            *_image_args(spec.image),
        ]
        # Reattach a data disk left behind by an earlier instance
        if await self.get_disk_size_gb(spec.data_disk_name) is not None:
            args += ["--disk", f"name={spec.data_disk_name},device-name={spec.data_disk_name},auto-delete=no"]
        else:
            args += [
                "--create-disk",
                f"name={spec.data_disk_name},device-name={spec.data_disk_name},"
                f"size={spec.data_disk_size_gb}GB,auto-delete=no",
            ]
        if spec.network_tags:
            args += ["--tags", ",".join(spec.network_tags)]
        if spec.labels:
            args += ["--labels", ",".join(f"{k}={v}" for k, v in spec.labels.items())]

        # Metadata values may contain commas and newlines; pass them as files
        paths: list[str] = []
        try:
            for key, value in spec.metadata.items():
                with tempfile.NamedTemporaryFile("w", suffix=".meta", delete=False) as f:
                    f.write(value)
                    paths.append(f.name)
                args += ["--metadata-from-file", f"{key}={f.name}"]
            await self._instances("create", spec.name, *args)
        finally:
            for path in paths:
                os.unlink(path)

        info = await self.get_instance(spec.name)
        if info is None:
            raise RuntimeError(f"Instance {spec.name} not found after create")
        return info

    async def delete_instance(self, name):
        try:
            await self._instances("delete", name, "--quiet")
        except CommandError as e:
            if not _is_not_found(e):
                raise

    async def start_instance(self, name):
        await self._instances("start", name)

    async def stop_instance(self, name):
        await self._instances("stop", name)

    async def reset_instance(self, name):
        await self._instances("reset", name)

    async def set_machine_type(self, name, machine_type):
        await self._instances("set-machine-type", name, "--machine-type", machine_type)

    async def get_disk_size_gb(self, disk):
        try:
            data = await self._cli.json("compute", "disks", "describe", disk, "--zone", self.zone)
        except CommandError as e:
            if _is_not_found(e):
                return None
            raise
        return int(data["sizeGb"])

    async def resize_disk(self, disk, size_gb):
        await self._cli.run(
            "compute", "disks", "resize", disk, "--zone", self.zone, "--size", f"{size_gb}GB", "--quiet"
        )

    async def delete_disk(self, disk):
        try:
            await self._cli.run("compute", "disks", "delete", disk, "--zone", self.zone, "--quiet")
        except CommandError as e:
            if not _is_not_found(e):
                raise

    async def ensure_firewall_rule(self, name, port, target_tag):
        try:
            await self._cli.json("compute", "firewall-rules", "describe", name)
        except CommandError as e:
            if not _is_not_found(e):
                raise
            await self._cli.run(
                "compute", "firewall-rules", "create", name,
                "--direction", "INGRESS",
                "--allow", f"tcp:{port}",
                "--target-tags", target_tag,
            )
            return
        await self._cli.run(
            "compute", "firewall-rules", "update", name,
            "--allow", f"tcp:{port}",
            "--target-tags", target_tag,
        )

    async def delete_firewall_rule(self, name):
        try:
            await self._cli.run("compute", "firewall-rules", "delete", name, "--quiet")
        except CommandError as e:
            if not _is_not_found(e):
                raise

    async def get_serial_output(self, name):
        text = await self._instances("get-serial-port-output", name)
        return text.splitlines()


def _image_args(image: str) -> list[str]:
    # projects/<project>/global/images/family/<family>
    parts = image.split("/")
    if len(parts) >= 6 and parts[0] == "projects" and parts[-2] == "family":
        return ["--image-project", parts[1], "--image-family", parts[-1]]
    if len(parts) >= 5 and parts[0] == "projects":
        return ["--image-project", parts[1], "--image", parts[-1]]
    return ["--image", image]


# ── Secret Manager ──────────────────────────────────────────────


class GcpSecretStore(SecretStore):
    def __init__(self, cli: GcloudCli):
        self._cli = cli

    async def secret_exists(self, name):
        try:
            await self._cli.json("secrets", "describe", name)
        except CommandError as e:
            if _is_not_found(e):
                return False
            raise
        return True

    async def create_secret(self, name, value, *, tags=None):
        args = ["secrets", "create", name, "--replication-policy", "automatic", "--data-file", "-"]
        if tags:
            # label keys allow only lowercase letters, digits, _ and -
            labels = ",".join(f"{k.replace(':', '-')}={v}" for k, v in tags.items())
            args += ["--labels", labels]
        await self._cli.run(*args, input=value)

    async def put_secret(self, name, value):
        await self._cli.run("secrets", "versions", "add", name, "--data-file", "-", input=value)

    async def delete_secret(self, name, *, force=True):
        try:
            await self._cli.run("secrets", "delete", name, "--quiet")
        except CommandError as e:
            if not _is_not_found(e):
                raise
