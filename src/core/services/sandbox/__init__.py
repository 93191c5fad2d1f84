"""Sandbox runtime (sysbox) detection and installation."""

from src.core.services.sandbox.detect import (
    SYSBOX_RECOMMENDED_VERSION,
    SandboxDetector,
    detect_sandbox_capability,
    get_detector,
    get_sysbox_install_command,
    reset_sandbox_cache,
)
from src.core.services.sandbox.install import SandboxInstaller

__all__ = [
    "SYSBOX_RECOMMENDED_VERSION",
    "SandboxDetector",
    "SandboxInstaller",
    "detect_sandbox_capability",
    "get_detector",
    "get_sysbox_install_command",
    "reset_sandbox_cache",
]
