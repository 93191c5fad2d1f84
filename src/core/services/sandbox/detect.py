"""
Sandbox detection — is the sysbox runtime usable on this machine?

Container targets run the gateway with ``--runtime=sysbox-runc`` when it
is available so agents can run nested containers safely. Detection is
platform specific:

    linux           docker present? → sysbox-runc registered as a runtime?
    wsl2            systemd running as PID 1? → then the linux checks
    macos           lima installed? → a running sysbox VM?
    windows-native  never; point the user at WSL2

Results are cached per detector. Concurrent ``detect()`` calls share one
in-flight detection unless a caller asks for a fresh check.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from src.adapters.shell.command import CommandRunner
from src.core.models.sandbox import (
    InstallMethod,
    Platform,
    SandboxAvailability,
    SandboxCapability,
)

logger = logging.getLogger(__name__)

# ── Constants ───────────────────────────────────────────────────

SYSBOX_RECOMMENDED_VERSION = "v0.6.4"
SYSBOX_RUNTIME = "sysbox-runc"
DEFAULT_RUNTIME = "runc"
DEFAULT_TIMEOUT = 10.0

LIMA_VM_NAME = "gateway"
LIMA_CREATE_COMMAND = f"limactl start --name={LIMA_VM_NAME} template://sysbox"
LIMA_INSTALL_COMMAND = f"brew install lima && {LIMA_CREATE_COMMAND}"
DOCKER_INSTALL_COMMAND = "curl -fsSL https://get.docker.com | bash"
WSL_SYSTEMD_COMMAND = 'echo -e "[boot]\\nsystemd=true" | sudo tee /etc/wsl.conf && wsl.exe --shutdown'
WSL_INSTALL_COMMAND = "wsl --install -d Ubuntu"

_APT_DISTROS = {"ubuntu", "debian", "linuxmint", "pop"}
_RPM_DISTROS = {"fedora", "rhel", "centos", "rocky", "almalinux"}

_CACHE_KEY = "sysbox"
_VERSION_RE = re.compile(r"version:?\s+(\S+)", re.IGNORECASE)


def sysbox_install_script_url(version: str = SYSBOX_RECOMMENDED_VERSION) -> str:
    return f"https://raw.githubusercontent.com/nestybox/sysbox/{version}/scr/install.sh"


def get_sysbox_install_command(version: str = SYSBOX_RECOMMENDED_VERSION) -> str:
    """Shell command that downloads and runs the upstream install script."""
    script = "/tmp/sysbox-install-$$.sh"
    return " && ".join([
        f"curl -fsSL {sysbox_install_script_url(version)} -o {script}",
        f"chmod +x {script}",
        script,
        f"rm -f {script}",
    ])


def _read_text(path: str) -> str | None:
    try:
        return Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


class LimaVm(dict):
    """One row of ``limactl list --json``."""

    @property
    def name(self) -> str:
        return str(self.get("name", ""))

    @property
    def status(self) -> str:
        return str(self.get("status", ""))

    @property
    def running(self) -> bool:
        return self.status == "Running"

    @property
    def has_sysbox(self) -> bool:
        return "sysbox" in str(self.get("vmType", "")).lower() or self.name == LIMA_VM_NAME


class SandboxDetector:
    """Detects the sandbox runtime and caches the answer.

    Args:
        runner: Command runner used for every probe.
        system: Override for ``sys.platform`` (tests).
        read_file: Reader for ``/proc/version`` and ``/etc/os-release``.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        system: str | None = None,
        read_file: Callable[[str], str | None] = _read_text,
    ):
        self._runner = runner or CommandRunner()
        self._system = system
        self._read_file = read_file
        self._platform: Platform | None = None
        self._platform_resolved = False
        self._cached: SandboxCapability | None = None
        self._in_flight: dict[str, asyncio.Future[SandboxCapability]] = {}
        self._generation = 0
        self.detection_count = 0

    @property
    def runner(self) -> CommandRunner:
        return self._runner

    # ── Platform ────────────────────────────────────────────────

    def detect_platform(self) -> Platform | None:
        """Resolve the platform once; None for an OS we do not support."""
        if self._platform_resolved:
            return self._platform

        system = self._system or sys.platform
        if system == "darwin":
            platform: Platform | None = Platform.MACOS
        elif system == "win32":
            platform = Platform.WINDOWS_NATIVE
        elif system.startswith("linux"):
            proc_version = (self._read_file("/proc/version") or "").lower()
            platform = Platform.WSL2 if "microsoft" in proc_version else Platform.LINUX
        else:
            platform = None

        logger.debug("Detected platform: %s (sys.platform=%s)", platform, system)
        self._platform = platform
        self._platform_resolved = True
        return platform

    # ── Public API ──────────────────────────────────────────────

    async def detect(self, skip_cache: bool = False, timeout: float = DEFAULT_TIMEOUT) -> SandboxCapability:
        """Return the sandbox capability, from cache when possible.

        With ``skip_cache`` a fresh detection always runs and its result
        replaces the cached one.
        """
        if skip_cache:
            generation = self._generation
            result = await self._detect(timeout)
            if generation == self._generation:
                self._cached = result
            return result

        if self._cached is not None:
            return self._cached

        pending = self._in_flight.get(_CACHE_KEY)
        if pending is None:
            pending = asyncio.ensure_future(self._detect_and_cache(timeout, self._generation))
            self._in_flight[_CACHE_KEY] = pending
        return await asyncio.shield(pending)

    def reset_cache(self) -> None:
        """Forget the platform, the cached capability and any in-flight detection."""
        self._generation += 1
        self._platform = None
        self._platform_resolved = False
        self._cached = None
        self._in_flight.clear()

    async def is_available(self) -> bool:
        return (await self.detect()).available

    async def recommended_runtime(self) -> str:
        """``sysbox-runc`` when usable, otherwise plain ``runc``."""
        return SYSBOX_RUNTIME if await self.is_available() else DEFAULT_RUNTIME

    async def systemd_is_init(self, timeout: float = DEFAULT_TIMEOUT) -> bool | None:
        """Whether PID 1 is systemd; None when the probe itself failed."""
        r = await self._runner.run(["ps", "-p", "1", "-o", "comm="], timeout=timeout)
        if not r.ok:
            return None
        return r.stdout.strip() == "systemd"

    async def list_lima_vms(self, timeout: float = DEFAULT_TIMEOUT) -> list[LimaVm] | None:
        """VMs known to lima; None when ``limactl list`` fails."""
        r = await self._runner.run(["limactl", "list", "--json"], timeout=timeout)
        if not r.ok:
            return None
        return _parse_lima_list(r.stdout)

    # ── Detection ───────────────────────────────────────────────

    async def _detect_and_cache(self, timeout: float, generation: int) -> SandboxCapability:
        # A reset while this ran makes the result stale for the cache
        try:
            result = await self._detect(timeout)
            if generation == self._generation:
                self._cached = result
            return result
        finally:
            if generation == self._generation:
                self._in_flight.pop(_CACHE_KEY, None)

    async def _detect(self, timeout: float) -> SandboxCapability:
        self.detection_count += 1
        platform = self.detect_platform()

        if platform is None:
            return SandboxCapability(
                availability=SandboxAvailability.UNSUPPORTED,
                platform=None,
                reason=f"Unsupported operating system: {self._system or sys.platform}",
            )
        if platform == Platform.WINDOWS_NATIVE:
            return SandboxCapability(
                availability=SandboxAvailability.UNAVAILABLE,
                platform=platform,
                install_method=InstallMethod.WSL2,
                install_command=WSL_INSTALL_COMMAND,
                reason="Sysbox requires Linux. Use WSL2 on Windows.",
            )
        if platform == Platform.MACOS:
            return await self._detect_macos(timeout)
        if platform == Platform.WSL2:
            return await self._detect_wsl2(timeout)
        return await self._detect_linux(platform, timeout)

    async def _detect_linux(self, platform: Platform, timeout: float) -> SandboxCapability:
        docker = await self._runner.run(["docker", "--version"], timeout=timeout)
        if not docker.ok:
            return SandboxCapability(
                availability=SandboxAvailability.UNAVAILABLE,
                platform=platform,
                install_method=InstallMethod.APT,
                install_command=DOCKER_INSTALL_COMMAND,
                reason="Docker is not installed",
            )

        info = await self._runner.run(
            ["docker", "info", "--format", "{{json .Runtimes}}"], timeout=timeout
        )
        if not info.ok:
            return SandboxCapability(
                availability=SandboxAvailability.UNAVAILABLE,
                platform=platform,
                install_command="sudo systemctl start docker",
                reason=f"Docker daemon is not reachable: {info.message}",
            )

        runtimes = _parse_json_object(info.stdout)
        if SYSBOX_RUNTIME in runtimes or SYSBOX_RUNTIME in info.stdout:
            version = await self._sysbox_version(runtimes, timeout)
            return SandboxCapability(
                availability=SandboxAvailability.AVAILABLE,
                platform=platform,
                version=version,
            )

        return SandboxCapability(
            availability=SandboxAvailability.NOT_INSTALLED,
            platform=platform,
            install_method=self._install_method_for_distro(),
            install_command=get_sysbox_install_command(),
            reason="Sysbox runtime not registered with Docker",
        )

    async def _detect_wsl2(self, timeout: float) -> SandboxCapability:
        systemd = await self.systemd_is_init(timeout)
        if systemd is False:
            return SandboxCapability(
                availability=SandboxAvailability.NOT_INSTALLED,
                platform=Platform.WSL2,
                install_method=InstallMethod.WSL2,
                install_command=WSL_SYSTEMD_COMMAND,
                reason="systemd is not enabled in WSL2",
            )
        if systemd is None:
            logger.debug("Could not check PID 1 under WSL2, continuing with Linux checks")
        return await self._detect_linux(Platform.WSL2, timeout)

    async def _detect_macos(self, timeout: float) -> SandboxCapability:
        lima = await self._runner.run(["limactl", "--version"], timeout=timeout)
        if not lima.ok:
            return SandboxCapability(
                availability=SandboxAvailability.NOT_INSTALLED,
                platform=Platform.MACOS,
                install_method=InstallMethod.LIMA,
                install_command=LIMA_INSTALL_COMMAND,
                reason="Lima is not installed",
            )

        vms = await self.list_lima_vms(timeout) or []
        sysbox_vms = [vm for vm in vms if vm.has_sysbox]
        running = next((vm for vm in sysbox_vms if vm.running), None)
        if running is not None:
            return SandboxCapability(
                availability=SandboxAvailability.AVAILABLE,
                platform=Platform.MACOS,
                reason=f"Sysbox available in Lima VM '{running.name}'",
            )
        if sysbox_vms:
            vm = sysbox_vms[0]
            return SandboxCapability(
                availability=SandboxAvailability.NOT_INSTALLED,
                platform=Platform.MACOS,
                install_method=InstallMethod.LIMA,
                install_command=f"limactl start {vm.name}",
                reason=f"Lima VM '{vm.name}' is {vm.status.lower() or 'stopped'}",
            )
        return SandboxCapability(
            availability=SandboxAvailability.NOT_INSTALLED,
            platform=Platform.MACOS,
            install_method=InstallMethod.LIMA,
            install_command=LIMA_CREATE_COMMAND,
            reason="No Sysbox-enabled Lima VM found",
        )

    # ── Helpers ─────────────────────────────────────────────────

    async def _sysbox_version(self, runtimes: dict[str, Any], timeout: float) -> str | None:
        r = await self._runner.run([SYSBOX_RUNTIME, "--version"], timeout=timeout)
        if r.ok:
            m = _VERSION_RE.search(r.stdout)
            if m:
                return m.group(1)

        # Fall back to the binary docker has registered
        entry = runtimes.get(SYSBOX_RUNTIME)
        path = entry.get("path") if isinstance(entry, dict) else None
        if path:
            r = await self._runner.run([path, "--version"], timeout=timeout)
            if r.ok:
                m = _VERSION_RE.search(r.stdout)
                if m:
                    return m.group(1)
        return None

    def _install_method_for_distro(self) -> InstallMethod:
        distro = _os_release_id(self._read_file("/etc/os-release") or "")
        if distro in _APT_DISTROS:
            return InstallMethod.APT
        if distro in _RPM_DISTROS:
            return InstallMethod.RPM
        return InstallMethod.MANUAL


def _os_release_id(text: str) -> str:
    for line in text.splitlines():
        if line.startswith("ID="):
            return line[3:].strip().strip('"').strip("'").lower()
    return ""


def _parse_json_object(text: str) -> dict[str, Any]:
    try:
        data = json.loads(text or "{}")
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _parse_lima_list(text: str) -> list[LimaVm]:
    """``limactl list --json`` prints one object per line (older: an array)."""
    text = text.strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except ValueError:
        data = []
        for line in text.splitlines():
            try:
                data.append(json.loads(line))
            except ValueError:
                logger.debug("Skipping unparseable limactl line: %s", line)
    if isinstance(data, dict):
        data = [data]
    return [LimaVm(vm) for vm in data if isinstance(vm, dict)]


# ── Process-wide default detector ───────────────────────────────

_default_detector: SandboxDetector | None = None


def get_detector() -> SandboxDetector:
    """The detector shared by CLI commands and targets in this process."""
    global _default_detector
    if _default_detector is None:
        _default_detector = SandboxDetector()
    return _default_detector


async def detect_sandbox_capability(skip_cache: bool = False, timeout: float = DEFAULT_TIMEOUT) -> SandboxCapability:
    return await get_detector().detect(skip_cache=skip_cache, timeout=timeout)


def reset_sandbox_cache() -> None:
    get_detector().reset_cache()
