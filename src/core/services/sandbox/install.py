"""
Sandbox installation — best-effort self-install of the sysbox runtime.

Never blocks on an interactive prompt: privilege escalation uses
``sudo -n``, and anything that needs a human comes back as a
``SandboxInstallResult`` with ``requires_manual_action`` and the exact
command to run.

After any install step the detector is re-run with the cache bypassed,
a few times with growing delays, because docker can take a moment to
register a new runtime.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from src.adapters.shell.command import CommandRunner
from src.core.models.sandbox import (
    Platform,
    SandboxAvailability,
    SandboxCapability,
    SandboxInstallResult,
)
from src.core.models.target import LogStream
from src.core.reliability.polling import Sleep
from src.core.services.sandbox.detect import (
    LIMA_CREATE_COMMAND,
    LIMA_VM_NAME,
    WSL_INSTALL_COMMAND,
    WSL_SYSTEMD_COMMAND,
    SandboxDetector,
    get_sysbox_install_command,
)

logger = logging.getLogger(__name__)

VERIFY_RETRIES = 3
VERIFY_DELAY = 2.0           # seconds, multiplied by the attempt number
INSTALL_TIMEOUT = 300
RESTART_TIMEOUT = 30
DOCKER_RESTART_COMMAND = "sudo systemctl restart docker"


def _manual(message: str, command: str, capability: SandboxCapability | None = None) -> SandboxInstallResult:
    return SandboxInstallResult(
        success=False,
        message=message,
        requires_manual_action=True,
        manual_command=command,
        capability=capability,
    )


class SandboxInstaller:
    """Installs sysbox (or its VM host) for the current platform.

    Args:
        detector: Detector used before and after installing.
        runner: Command runner; defaults to the detector's.
        sleep: Awaitable sleep used between verification attempts.
        on_log: Progress callback ``(line, stream)``.
    """

    def __init__(
        self,
        detector: SandboxDetector,
        runner: CommandRunner | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        on_log: Callable[[str, LogStream], None] | None = None,
        verify_retries: int = VERIFY_RETRIES,
        verify_delay: float = VERIFY_DELAY,
    ):
        self._detector = detector
        self._runner = runner or detector.runner
        self._sleep = sleep
        self._on_log = on_log
        self._verify_retries = verify_retries
        self._verify_delay = verify_delay

    def _log(self, line: str, stream: LogStream = "stdout") -> None:
        if stream == "stderr":
            logger.warning(line)
        else:
            logger.info(line)
        if self._on_log:
            self._on_log(line, stream)

    async def attempt_install(self) -> SandboxInstallResult:
        """Install sysbox if it is missing; see module docstring."""
        capability = await self._detector.detect(skip_cache=True)
        if capability.available:
            return SandboxInstallResult(
                success=True,
                message="Sysbox is already installed",
                capability=capability,
            )

        platform = capability.platform
        self._log(f"Sysbox not available on {platform}: {capability.reason}")

        if platform in (Platform.LINUX, Platform.WSL2):
            return await self._install_linux(capability)
        if platform == Platform.MACOS:
            return await self._install_macos(capability)
        if platform == Platform.WINDOWS_NATIVE:
            return _manual(
                "Sysbox requires Linux. Install WSL2 and run the installer inside it.",
                WSL_INSTALL_COMMAND,
                capability,
            )
        return SandboxInstallResult(
            success=False,
            message=capability.reason or "Unsupported platform",
            capability=capability,
        )

    # ── Linux / WSL2 ────────────────────────────────────────────

    async def _install_linux(self, capability: SandboxCapability) -> SandboxInstallResult:
        if capability.platform == Platform.WSL2:
            systemd = await self._detector.systemd_is_init()
            if not systemd:
                return _manual(
                    "systemd must be enabled in WSL2 before installing Sysbox",
                    WSL_SYSTEMD_COMMAND,
                    capability,
                )

        if (
            capability.availability == SandboxAvailability.UNAVAILABLE
            and capability.install_command
        ):
            # Docker itself is missing or down; sysbox cannot register without it
            return _manual(
                f"Docker is required before Sysbox can be installed: {capability.reason}",
                capability.install_command,
                capability,
            )

        install_command = get_sysbox_install_command()
        manual_command = f"sudo bash -c '{install_command}' && {DOCKER_RESTART_COMMAND}"

        self._log("Installing Sysbox (this can take a few minutes)...")
        r = await self._runner.run(["sudo", "-n", "bash", "-c", install_command], timeout=INSTALL_TIMEOUT)
        if not r.ok:
            error = r.message
            if "password" in error.lower() or "sudo" in error.lower():
                self._log("Sudo requires a password; manual install needed", "stderr")
                return _manual(
                    "Sudo requires a password. Run the install command manually.",
                    manual_command,
                    capability,
                )
            self._log(f"Sysbox installation failed: {error}", "stderr")
            return _manual(f"Sysbox installation failed: {error}", manual_command, capability)

        self._log("Restarting Docker to register the sysbox runtime...")
        r = await self._runner.run(["sudo", "-n", "systemctl", "restart", "docker"], timeout=RESTART_TIMEOUT)
        if not r.ok:
            self._log(f"Docker restart failed: {r.message}", "stderr")
            return _manual(
                f"Sysbox installed but Docker restart failed: {r.message}",
                DOCKER_RESTART_COMMAND,
                capability,
            )

        return await self.verify()

    # ── macOS ───────────────────────────────────────────────────

    async def _install_macos(self, capability: SandboxCapability) -> SandboxInstallResult:
        if not (await self._runner.run(["limactl", "--version"])).ok:
            self._log("Installing Lima via Homebrew...")
            r = await self._runner.run(["brew", "install", "lima"], timeout=INSTALL_TIMEOUT)
            if not r.ok:
                return _manual(f"Failed to install Lima: {r.message}", "brew install lima", capability)

        vms = await self._detector.list_lima_vms() or []
        vm = next((v for v in vms if v.name == LIMA_VM_NAME), None)

        if vm is not None and vm.running:
            self._log(f"Lima VM '{LIMA_VM_NAME}' is already running")
        elif vm is not None:
            self._log(f"Starting Lima VM '{LIMA_VM_NAME}'...")
            r = await self._runner.run(["limactl", "start", LIMA_VM_NAME], timeout=INSTALL_TIMEOUT)
            if not r.ok:
                return _manual(
                    f"Failed to start Lima VM: {r.message}",
                    f"limactl start {LIMA_VM_NAME}",
                    capability,
                )
        else:
            self._log(f"Creating Lima VM '{LIMA_VM_NAME}' with Sysbox...")
            r = await self._runner.run(LIMA_CREATE_COMMAND.split(), timeout=INSTALL_TIMEOUT * 3)
            if not r.ok:
                return _manual(f"Failed to create Lima VM: {r.message}", LIMA_CREATE_COMMAND, capability)

        return await self.verify()

    # ── Verification ────────────────────────────────────────────

    async def verify(self) -> SandboxInstallResult:
        """Re-detect with backoff until sysbox shows up or retries run out."""
        last: SandboxCapability | None = None
        for attempt in range(1, self._verify_retries + 1):
            await self._sleep(self._verify_delay * attempt)
            self._detector.reset_cache()
            last = await self._detector.detect(skip_cache=True)
            if last.available:
                version = last.version or "unknown version"
                self._log(f"Sysbox verified ({version})")
                return SandboxInstallResult(
                    success=True,
                    message=f"Sysbox installed and verified ({version})",
                    capability=last,
                )
            logger.debug("Verification attempt %d/%d: %s", attempt, self._verify_retries, last.reason)

        reason = last.reason if last else "no detection ran"
        return SandboxInstallResult(
            success=False,
            message=f"Installation completed but Sysbox not detected: {reason}",
            capability=last,
        )
