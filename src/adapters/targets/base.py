"""
Deployment target contract — what every execution environment implements.

A target installs, configures, runs and tears down one gateway. The
engine and CLI only talk to targets through ``DeploymentTarget``; they
never reach into provider specifics.

Resizing is an optional capability. Targets that support it satisfy
``SupportsResourceUpdates`` / ``SupportsResourceQuery``; callers probe
with ``isinstance`` instead of assuming every target can resize.

Shared helpers (naming, log emission, config transforms) live in
``TargetToolkit``, which each target holds rather than inherits.
"""

from __future__ import annotations

import copy
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from src.core.models.resources import ResourceSpec, ResourceUpdateResult
from src.core.models.target import (
    ConfigurePayload,
    ConfigureResult,
    GatewayEndpoint,
    InstallOptions,
    InstallResult,
    LogOptions,
    LogStream,
    PortConflict,
    PortSpacingResult,
    TargetStatus,
    TargetType,
)

logger = logging.getLogger(__name__)

LogCallback = Callable[[str, LogStream], None]

RESOURCE_PREFIX = "gateway"
MIN_PORT_SPACING = 20


class DeploymentTarget(ABC):
    """Abstract base class for all deployment targets.

    Operations that return a result model report failure through it and
    should not raise. ``start``/``stop``/``restart`` raise ``TargetError``.
    ``install`` and ``destroy`` must be idempotent.

    To create a new target:
        1. Subclass DeploymentTarget and hold a TargetToolkit
        2. Implement the abstract coroutines
        3. Register a builder in the TargetRegistry
    """

    type: TargetType
    toolkit: TargetToolkit

    def set_log_callback(self, callback: LogCallback | None) -> None:
        """Register a progress callback; None removes it."""
        self.toolkit.set_log_callback(callback)

    @abstractmethod
    async def install(self, options: InstallOptions) -> InstallResult:
        """Create or re-attach to everything the gateway needs."""

    @abstractmethod
    async def configure(self, payload: ConfigurePayload) -> ConfigureResult:
        """Push gateway configuration."""

    @abstractmethod
    async def start(self) -> None:
        """Start the gateway."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the gateway without removing anything."""

    @abstractmethod
    async def restart(self) -> None:
        """Restart the gateway."""

    @abstractmethod
    async def get_status(self) -> TargetStatus:
        """Observe the gateway; never raises."""

    @abstractmethod
    async def get_logs(self, options: LogOptions | None = None) -> list[str]:
        """Recent log lines, oldest first."""

    @abstractmethod
    async def get_endpoint(self) -> GatewayEndpoint:
        """Where clients reach the gateway."""

    @abstractmethod
    async def destroy(self) -> None:
        """Remove everything ``install`` created; best effort per resource."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} type={self.type!s}>"


# ── Optional capabilities ───────────────────────────────────────


@runtime_checkable
class SupportsResourceUpdates(Protocol):
    async def update_resources(self, spec: ResourceSpec) -> ResourceUpdateResult: ...


@runtime_checkable
class SupportsResourceQuery(Protocol):
    async def get_resources(self) -> ResourceSpec: ...


_CAPABILITIES: dict[str, type] = {
    "update_resources": SupportsResourceUpdates,
    "get_resources": SupportsResourceQuery,
}


def capabilities_of(target: DeploymentTarget) -> list[str]:
    """Names of the optional capabilities ``target`` offers."""
    return [name for name, proto in _CAPABILITIES.items() if isinstance(target, proto)]


# ── Toolkit ─────────────────────────────────────────────────────


class TargetToolkit:
    """Helpers every target composes: logging, naming, config transforms.

    Args:
        prefix: Prefix for derived resource names.
        on_log: Initial progress callback.
    """

    def __init__(self, prefix: str = RESOURCE_PREFIX, on_log: LogCallback | None = None):
        self.prefix = prefix
        self._on_log = on_log

    def set_log_callback(self, callback: LogCallback | None) -> None:
        self._on_log = callback

    def log(self, line: str, stream: LogStream = "stdout") -> None:
        """Emit progress to the callback (if any) and the module logger."""
        if stream == "stderr":
            logger.warning(line)
        else:
            logger.info(line)
        if self._on_log is not None:
            self._on_log(line, stream)

    # ── Naming ──

    @staticmethod
    def sanitize_name(name: str) -> str:
        """Lowercase DNS-label form of ``name``.

        Raises:
            ValueError: If nothing usable is left.
        """
        cleaned = re.sub(r"[^a-z0-9-]", "-", name.lower())
        cleaned = re.sub(r"-+", "-", cleaned).strip("-")
        if not cleaned:
            raise ValueError(f"Name '{name}' contains no usable characters")
        if not cleaned[0].isalpha():
            cleaned = f"a{cleaned}"
        return cleaned

    def resource_name(self, base: str, suffix: str = "", max_length: int = 63) -> str:
        """``<prefix>-<base>[-<suffix>]``, sanitized and truncated."""
        parts = [self.prefix, base] + ([suffix] if suffix else [])
        name = self.sanitize_name("-".join(parts))
        return name[:max_length].rstrip("-")

    # ── Config ──

    @staticmethod
    def transform_config(config: dict[str, Any]) -> dict[str, Any]:
        """Normalize a gateway config for deployment.

        - ``gateway.host`` becomes ``gateway.bind``
        - root ``sandbox`` moves to ``agents.defaults.sandbox``
        - ``channels.*.enabled`` flags are dropped
        - deprecated ``skills.allowUnverified`` is dropped
        """
        result = copy.deepcopy(config)

        gateway = result.get("gateway")
        if isinstance(gateway, dict) and "host" in gateway and "bind" not in gateway:
            gateway["bind"] = gateway.pop("host")

        if "sandbox" in result:
            sandbox = result.pop("sandbox")
            defaults = result.setdefault("agents", {}).setdefault("defaults", {})
            defaults.setdefault("sandbox", sandbox)

        channels = result.get("channels")
        if isinstance(channels, dict):
            for channel in channels.values():
                if isinstance(channel, dict):
                    channel.pop("enabled", None)

        skills = result.get("skills")
        if isinstance(skills, dict):
            skills.pop("allowUnverified", None)

        return result

    # ── Logs ──

    @staticmethod
    def filter_lines(lines: list[str], pattern: str | None) -> list[str]:
        """Case-insensitive regex filter; an invalid regex matches literally."""
        if not pattern:
            return lines
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error:
            regex = re.compile(re.escape(pattern), re.IGNORECASE)
        return [line for line in lines if regex.search(line)]


def validate_port_spacing(ports: list[int], min_spacing: int = MIN_PORT_SPACING) -> PortSpacingResult:
    """Check that gateways on one host are at least ``min_spacing`` ports apart.

    Each gateway uses a small range above its base port.
    """
    conflicts: list[PortConflict] = []
    ordered = sorted(ports)
    for i, a in enumerate(ordered):
        for b in ordered[i + 1:]:
            spacing = b - a
            if spacing >= min_spacing:
                break
            conflicts.append(PortConflict(port_a=a, port_b=b, spacing=spacing))
    return PortSpacingResult(valid=not conflicts, conflicts=conflicts)
