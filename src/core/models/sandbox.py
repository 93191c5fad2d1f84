"""
Sandbox models — detection and install results for the sysbox runtime.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel


class Platform(StrEnum):
    LINUX = "linux"
    WSL2 = "wsl2"
    MACOS = "macos"
    WINDOWS_NATIVE = "windows-native"


class SandboxAvailability(StrEnum):
    AVAILABLE = "available"
    NOT_INSTALLED = "not-installed"
    UNAVAILABLE = "unavailable"    # a prerequisite (container engine) is missing
    UNSUPPORTED = "unsupported"


class InstallMethod(StrEnum):
    APT = "apt"
    RPM = "rpm"
    LIMA = "lima"
    WSL2 = "wsl2"
    MANUAL = "manual"


class SandboxCapability(BaseModel):
    """What the sandbox detector found on this machine."""

    availability: SandboxAvailability
    platform: Platform | None = None
    version: str | None = None
    install_method: InstallMethod | None = None
    install_command: str | None = None
    reason: str | None = None

    @property
    def available(self) -> bool:
        return self.availability == SandboxAvailability.AVAILABLE


class SandboxInstallResult(BaseModel):
    """Outcome of an install attempt.

    When automation cannot finish (interactive sudo, unsupported
    platform), ``requires_manual_action`` is set and ``manual_command``
    holds the exact command the user should run.
    """

    success: bool
    message: str
    requires_manual_action: bool = False
    manual_command: str | None = None
    capability: SandboxCapability | None = None
