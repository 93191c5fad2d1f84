"""
Local target — gateway as a systemd user service on this machine.

The gateway package is installed with npm into a per-profile directory
and run by a ``gateway-<profile>.service`` user unit. Only systemd hosts
are supported; anything else gets a failed install result.
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from collections.abc import Callable
from pathlib import Path

from src.adapters.shell.command import CommandRunner
from src.adapters.targets.base import DeploymentTarget, TargetToolkit
from src.core.data import get_registry
from src.core.errors import TargetError
from src.core.models.config import LocalTargetConfig
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

logger = logging.getLogger(__name__)

DEFAULT_LOG_LINES = 100

_ACTIVE_STATE_MAP = {
    "active": TargetState.RUNNING,
    "reloading": TargetState.RUNNING,
    "activating": TargetState.RUNNING,
    "inactive": TargetState.STOPPED,
    "deactivating": TargetState.STOPPED,
    "failed": TargetState.ERROR,
}


def detect_init_system() -> str:
    """Detect the host's init system."""
    if Path("/run/systemd/system").exists():
        return "systemd"
    if shutil.which("rc-service"):
        return "openrc"
    if Path("/etc/init.d").exists():
        return "initd"
    return "unknown"


class LocalProcessTarget(DeploymentTarget):
    """Runs the gateway under the user's systemd instance.

    Args:
        config: Target settings.
        runner: Command runner for npm/systemctl/journalctl.
        home: Home directory (tests point this at a tmp dir).
        init_system: Init-system probe.
    """

    type = TargetType.LOCAL

    def __init__(
        self,
        config: LocalTargetConfig,
        runner: CommandRunner | None = None,
        toolkit: TargetToolkit | None = None,
        *,
        home: Path | None = None,
        init_system: Callable[[], str] = detect_init_system,
    ):
        self.config = config
        self.toolkit = toolkit or TargetToolkit()
        self._runner = runner or CommandRunner()
        self._init_system = init_system

        home = home or Path.home()
        base = Path(config.install_dir.replace("~", str(home), 1))
        slug = self.toolkit.sanitize_name(config.profile_name)
        self.install_path = base / slug
        self.service_name = f"{self.toolkit.resource_name(config.profile_name)}.service"
        self.unit_path = home / ".config" / "systemd" / "user" / self.service_name

    @property
    def config_path(self) -> Path:
        return self.install_path / "config.json"

    async def _systemctl(self, *args: str):
        return await self._runner.run(["systemctl", "--user", *args])

    # ── Lifecycle ───────────────────────────────────────────────

    async def install(self, options: InstallOptions) -> InstallResult:
        init = self._init_system()
        if init != "systemd":
            return InstallResult(
                success=False,
                instance_id=self.service_name,
                message=f"Local target requires systemd (detected: {init})",
            )

        package = self.config.package
        if options.version:
            package = f"{package}@{options.version}"

        self.toolkit.log(f"Installing {package} into {self.install_path}...")
        self.install_path.mkdir(parents=True, exist_ok=True)
        result = await self._runner.run(
            ["npm", "install", "--prefix", str(self.install_path), package],
            timeout=600,
        )
        if not result.ok:
            self.toolkit.log(f"npm install failed: {result.message}", "stderr")
            return InstallResult(
                success=False,
                instance_id=self.service_name,
                message=f"Failed to install {package}: {result.message}",
            )

        unit = get_registry().render_systemd_unit(
            profile_name=self.config.profile_name,
            exec_start=self.install_path / "node_modules" / ".bin" / self.config.package,
            gateway_port=options.port,
            config_path=self.config_path,
            working_dir=self.install_path,
        )
        self.unit_path.parent.mkdir(parents=True, exist_ok=True)
        self.unit_path.write_text(unit, encoding="utf-8")
        self.toolkit.log(f"Wrote {self.unit_path}")

        for args in (("daemon-reload",), ("enable", self.service_name)):
            r = await self._systemctl(*args)
            if not r.ok:
                return InstallResult(
                    success=False,
                    instance_id=self.service_name,
                    message=f"systemctl {args[0]} failed: {r.message}",
                )

        return InstallResult(
            success=True,
            instance_id=self.service_name,
            message=f"Installed {package} as {self.service_name}",
            service_name=self.service_name,
            install_path=str(self.install_path),
        )

    async def configure(self, payload: ConfigurePayload) -> ConfigureResult:
        data = self.toolkit.transform_config(payload.config)
        data.setdefault("gateway", {})["port"] = payload.gateway_port
        if payload.environment:
            data["env"] = dict(payload.environment)
        try:
            self.install_path.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as e:
            return ConfigureResult(success=False, message=f"Failed to write config: {e}")
        return ConfigureResult(
            success=True,
            message=f"Configuration written to {self.config_path}",
            requires_restart=True,
            config_path=str(self.config_path),
        )

    async def start(self) -> None:
        await self._checked("start")

    async def stop(self) -> None:
        await self._checked("stop")

    async def restart(self) -> None:
        await self._checked("restart")

    async def _checked(self, verb: str) -> None:
        r = await self._systemctl(verb, self.service_name)
        if not r.ok:
            raise TargetError(f"systemctl {verb} {self.service_name} failed: {r.message}")

    # ── Observation ─────────────────────────────────────────────

    async def get_status(self) -> TargetStatus:
        r = await self._systemctl(
            "show", self.service_name,
            "--property=ActiveState,MainPID,ActiveEnterTimestampMonotonic,LoadState",
        )
        if not r.ok:
            return TargetStatus(state=TargetState.NOT_INSTALLED, error=r.message or None)

        props = dict(
            line.split("=", 1) for line in r.stdout.splitlines() if "=" in line
        )
        if props.get("LoadState") == "not-found":
            return TargetStatus(state=TargetState.NOT_INSTALLED)

        state = _ACTIVE_STATE_MAP.get(props.get("ActiveState", ""), TargetState.ERROR)
        pid = int(props.get("MainPID", "0") or 0) or None

        uptime = None
        entered = int(props.get("ActiveEnterTimestampMonotonic", "0") or 0)
        if state == TargetState.RUNNING and entered:
            uptime = max(0, int(time.monotonic() - entered / 1_000_000))

        return TargetStatus(
            state=state,
            pid=pid,
            uptime=uptime,
            gateway_port=self.config.gateway_port,
            error=f"Unit is {props.get('ActiveState')}" if state == TargetState.ERROR else None,
        )

    async def get_logs(self, options: LogOptions | None = None) -> list[str]:
        options = options or LogOptions()
        cmd = [
            "journalctl", "--user", "-u", self.service_name,
            "-n", str(options.lines or DEFAULT_LOG_LINES),
            "-o", "cat", "--no-pager",
        ]
        if options.since:
            cmd += ["--since", options.since.strftime("%Y-%m-%d %H:%M:%S")]
        r = await self._runner.run(cmd)
        if not r.ok:
            return []
        return self.toolkit.filter_lines(r.stdout.splitlines(), options.filter)

    async def get_endpoint(self) -> GatewayEndpoint:
        return GatewayEndpoint(host="localhost", port=self.config.gateway_port, protocol="ws")

    async def destroy(self) -> None:
        for verb in ("stop", "disable"):
            r = await self._systemctl(verb, self.service_name)
            if not r.ok:
                logger.debug("systemctl %s %s: %s", verb, self.service_name, r.message)

        try:
            self.unit_path.unlink(missing_ok=True)
            await self._systemctl("daemon-reload")
        except OSError as e:
            self.toolkit.log(f"Failed to remove {self.unit_path}: {e}", "stderr")

        try:
            shutil.rmtree(self.install_path)
            self.toolkit.log(f"Removed {self.install_path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            self.toolkit.log(f"Failed to remove {self.install_path}: {e}", "stderr")
