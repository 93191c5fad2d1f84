"""
Resize orchestrator — change a VM's compute allocation safely.

Sequence: validate → pick native size → stop → set size → grow disk
(only if larger) → start. Once the unit has been stopped, any failure
triggers a best-effort start so a failed resize never leaves the gateway
down; the original error is still what the caller gets back.

Disks only grow. A request smaller than the current disk is rejected
before anything is touched.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

from src.core.models.resources import (
    ResourceSpec,
    ResourceUpdateResult,
    TierSpec,
    nearest_tier,
    tier_for_native_size,
)
from src.core.models.target import LogStream

logger = logging.getLogger(__name__)

ESTIMATED_DOWNTIME = 180  # seconds


class ResizableCompute(Protocol):
    """One compute unit (VM) with its data disk, as the orchestrator sees it."""

    async def stop(self) -> None: ...

    async def start(self) -> None: ...

    async def get_size(self) -> str: ...

    async def set_size(self, native_size: str) -> None: ...

    async def get_disk_size_gb(self) -> int | None: ...

    async def resize_disk(self, size_gb: int) -> None: ...


class ResizeOrchestrator:
    """Runs resize sequences against one compute unit.

    Args:
        compute: The unit to resize.
        tiers: Provider tier table; every entry needs a ``native_size``.
        on_log: Progress callback.
    """

    def __init__(
        self,
        compute: ResizableCompute,
        tiers: list[TierSpec],
        *,
        on_log: Callable[[str, LogStream], None] | None = None,
    ):
        self._compute = compute
        self._tiers = tiers
        self._on_log = on_log

    def _log(self, line: str, stream: LogStream = "stdout") -> None:
        if stream == "stderr":
            logger.warning(line)
        else:
            logger.info(line)
        if self._on_log:
            self._on_log(line, stream)

    def native_size_for(self, spec: ResourceSpec) -> str:
        tier = nearest_tier(spec, self._tiers)
        if not tier.native_size:
            raise ValueError(f"Tier '{tier.tier}' has no native size for this provider")
        return tier.native_size

    async def update_resources(self, spec: ResourceSpec) -> ResourceUpdateResult:
        self._log(f"Starting resource update: cpu={spec.cpu}, memory={spec.memory} MiB")

        try:
            current_disk = await self._compute.get_disk_size_gb()
            target_size = self.native_size_for(spec)
        except Exception as e:
            return ResourceUpdateResult(success=False, message=f"Failed to plan resource update: {e}")

        requested_disk = spec.data_disk_size_gb
        if requested_disk is not None and current_disk is not None and requested_disk < current_disk:
            message = (
                f"Cannot shrink data disk from {current_disk} GB to {requested_disk} GB; "
                "disk size can only grow"
            )
            self._log(message, "stderr")
            return ResourceUpdateResult(success=False, message=message)

        grow_disk = requested_disk is not None and current_disk is not None and requested_disk > current_disk

        self._log("[1/4] Stopping compute unit")
        try:
            await self._compute.stop()
        except Exception as e:
            message = f"Resource update failed while stopping: {e}"
            self._log(message, "stderr")
            return ResourceUpdateResult(success=False, message=message)

        step = "changing size"
        try:
            self._log(f"[2/4] Changing size to {target_size}")
            await self._compute.set_size(target_size)

            if grow_disk:
                step = "growing data disk"
                self._log(f"[3/4] Growing data disk from {current_disk} GB to {requested_disk} GB")
                await self._compute.resize_disk(requested_disk)
            else:
                self._log("[3/4] Data disk unchanged")

            step = "starting"
            self._log("[4/4] Starting compute unit")
            await self._compute.start()
        except Exception as e:
            message = f"Resource update failed while {step}: {e}"
            self._log(message, "stderr")
            await self._recover()
            return ResourceUpdateResult(success=False, message=message)

        self._log("Resource update complete")
        return ResourceUpdateResult(
            success=True,
            message=f"Resources updated to {target_size}",
            requires_restart=True,
            estimated_downtime=ESTIMATED_DOWNTIME,
        )

    async def _recover(self) -> None:
        self._log("Attempting to recover by starting the compute unit...")
        try:
            await self._compute.start()
            self._log("Compute unit restarted after failed resize")
        except Exception as e:
            self._log(f"Recovery failed: {e}. Manual intervention may be required.", "stderr")

    async def get_resources(self) -> ResourceSpec:
        """Current allocation, read back through the tier table."""
        size = await self._compute.get_size()
        tier = tier_for_native_size(size, self._tiers)
        if tier is None:
            raise ValueError(f"Unknown machine size '{size}'")
        disk = await self._compute.get_disk_size_gb()
        return ResourceSpec(
            cpu=tier.cpu,
            memory=tier.memory,
            data_disk_size_gb=disk or tier.data_disk_size_gb,
        )
