"""
Docker target — gateway in a local container, managed through the docker CLI.

Configuration is written to a host directory mounted read-only into the
container. When sysbox is present the container runs under the
``sysbox-runc`` runtime so the gateway can start nested sandboxes.
"""

from __future__ import annotations

import json
import logging
import re
import time
from datetime import datetime
from pathlib import Path

from src.adapters.shell.command import CommandRunner
from src.adapters.targets.base import DeploymentTarget, TargetToolkit
from src.core.errors import TargetError
from src.core.models.config import DockerTargetConfig
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
from src.core.services.sandbox import SandboxDetector, get_detector
from src.core.services.sandbox.detect import SYSBOX_RUNTIME

logger = logging.getLogger(__name__)

DEFAULT_LOG_LINES = 100
CONTAINER_CONFIG_DIR = "/app/config"
IMAGE_FILE = "image"

_STATE_MAP = {
    "running": TargetState.RUNNING,
    "exited": TargetState.STOPPED,
    "created": TargetState.STOPPED,
    "paused": TargetState.STOPPED,
    "dead": TargetState.ERROR,
    "restarting": TargetState.ERROR,
}


class DockerContainerTarget(DeploymentTarget):
    """One gateway container per profile."""

    type = TargetType.DOCKER

    def __init__(
        self,
        config: DockerTargetConfig,
        runner: CommandRunner | None = None,
        detector: SandboxDetector | None = None,
        toolkit: TargetToolkit | None = None,
    ):
        self.config = config
        self.toolkit = toolkit or TargetToolkit()
        self._runner = runner or CommandRunner()
        self._detector = detector
        self.container_name = config.container_name or self.toolkit.resource_name(config.profile_name)
        self.config_dir = Path(config.config_path).expanduser()
        self.image = self._installed_image() or config.image

    def _installed_image(self) -> str | None:
        """Image pinned by the last successful install, if any."""
        try:
            return (self.config_dir / IMAGE_FILE).read_text(encoding="utf-8").strip() or None
        except OSError:
            return None

    @property
    def detector(self) -> SandboxDetector:
        return self._detector or get_detector()

    async def _docker(self, *args: str, timeout: float = 120):
        return await self._runner.run(["docker", *args], timeout=timeout)

    # ── Lifecycle ───────────────────────────────────────────────

    async def install(self, options: InstallOptions) -> InstallResult:
        image = self.config.image
        if options.version:
            image = re.sub(r":[^:/]*$", "", image) + f":{options.version}"

        self.toolkit.log(f"Pulling {image}...")
        result = await self._docker("pull", image, timeout=600)
        if not result.ok:
            self.toolkit.log(f"Pull failed: {result.message}", "stderr")
            return InstallResult(
                success=False,
                instance_id=self.container_name,
                message=f"Failed to pull image: {result.message}",
            )

        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            (self.config_dir / IMAGE_FILE).write_text(image + "\n", encoding="utf-8")
        except OSError as e:
            return InstallResult(
                success=False,
                instance_id=self.container_name,
                message=f"Failed to record installed image: {e}",
            )

        self.image = image
        return InstallResult(
            success=True,
            instance_id=self.container_name,
            message=f"Pulled Docker image {image}",
        )

    async def configure(self, payload: ConfigurePayload) -> ConfigureResult:
        config_file = self.config_dir / "config.json"
        data = {
            "profileName": payload.profile_name,
            "gatewayPort": payload.gateway_port,
            "environment": payload.environment,
            **self.toolkit.transform_config(payload.config),
        }
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            config_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as e:
            return ConfigureResult(success=False, message=f"Failed to write config: {e}")

        return ConfigureResult(
            success=True,
            message=f"Configuration written to {config_file}",
            requires_restart=True,
            config_path=str(config_file),
        )

    async def start(self) -> None:
        inspect = await self._docker("inspect", "--format", "{{.State.Status}}", self.container_name)
        if inspect.ok:
            state = inspect.stdout.strip()
            if state == "running":
                return
            if state in ("exited", "created"):
                await self._checked("start", self.container_name)
                return

        args = [
            "run", "-d",
            "--name", self.container_name,
            "-p", f"{self.config.gateway_port}:{self.config.gateway_port}",
            "-v", f"{self.config_dir}:{CONTAINER_CONFIG_DIR}:ro",
            "-e", f"GATEWAY_CONFIG_PATH={CONTAINER_CONFIG_DIR}/config.json",
        ]
        runtime = await self._runtime()
        if runtime:
            args += ["--runtime", runtime]
        if self.config.network_name:
            args += ["--network", self.config.network_name]
        args += ["--restart", "unless-stopped", self.image]

        self.toolkit.log(f"Starting container {self.container_name}...")
        await self._checked(*args)

    async def _runtime(self) -> str | None:
        if self.config.sandbox == "off":
            return None
        capability = await self.detector.detect()
        if capability.available:
            return SYSBOX_RUNTIME
        if self.config.sandbox == "required":
            raise TargetError(
                f"Sysbox runtime is required but not available: {capability.reason or capability.availability}"
            )
        logger.info("Sysbox not available (%s), using default runtime", capability.availability)
        return None

    async def stop(self) -> None:
        await self._checked("stop", self.container_name)

    async def restart(self) -> None:
        await self._checked("restart", self.container_name)

    async def _checked(self, *args: str) -> None:
        result = await self._docker(*args)
        if not result.ok:
            raise TargetError(f"docker {args[0]} failed: {result.message}")

    # ── Observation ─────────────────────────────────────────────

    async def get_status(self) -> TargetStatus:
        result = await self._docker(
            "inspect", "--format", "{{.State.Status}}|{{.State.Pid}}|{{.State.StartedAt}}",
            self.container_name,
        )
        if not result.ok:
            return TargetStatus(state=TargetState.NOT_INSTALLED)

        status, _, rest = result.stdout.strip().partition("|")
        pid_text, _, started_at = rest.partition("|")
        state = _STATE_MAP.get(status, TargetState.NOT_INSTALLED)
        pid = int(pid_text) if pid_text.isdigit() and int(pid_text) > 0 else None

        uptime = None
        if state == TargetState.RUNNING and started_at:
            uptime = _seconds_since(started_at)

        return TargetStatus(
            state=state,
            pid=pid,
            uptime=uptime,
            gateway_port=self.config.gateway_port,
        )

    async def get_logs(self, options: LogOptions | None = None) -> list[str]:
        options = options or LogOptions()
        args = ["logs", "--tail", str(options.lines or DEFAULT_LOG_LINES)]
        if options.since:
            args += ["--since", options.since.isoformat()]
        args.append(self.container_name)

        result = await self._docker(*args)
        if not result.ok:
            return []
        # docker logs writes the container's stderr to its own stderr
        lines = [line for line in (result.stdout + result.stderr).splitlines() if line]
        return self.toolkit.filter_lines(lines, options.filter)

    async def get_endpoint(self) -> GatewayEndpoint:
        return GatewayEndpoint(host="localhost", port=self.config.gateway_port, protocol="ws")

    async def destroy(self) -> None:
        result = await self._docker("rm", "-f", self.container_name)
        if result.ok:
            self.toolkit.log(f"Removed container {self.container_name}")
        else:
            logger.debug("Container %s not removed: %s", self.container_name, result.message)


def _seconds_since(timestamp: str) -> int | None:
    # docker reports nanosecond precision, which fromisoformat rejects
    text = re.sub(r"(\.\d{6})\d+", r"\1", timestamp.strip()).replace("Z", "+00:00")
    try:
        started = datetime.fromisoformat(text)
    except ValueError:
        return None
    return max(0, int(time.time() - started.timestamp()))
