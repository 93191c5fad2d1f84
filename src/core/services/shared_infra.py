"""
Shared infrastructure — one VPC/IAM stack per region, used by every bot.

No workload owns the shared stack. ``ensure`` creates it on first use
and tolerates concurrent creators; ``cleanup_if_orphaned`` removes it
once a listing finds no live per-bot stacks. The reference count is
that listing, not a stored counter.

Two bots destroyed at the same moment can both see zero live stacks and
both try to delete the shared stack. The second attempt is a no-op or a
logged failure, and the next ``ensure`` re-creates the stack, so the
race is tolerated rather than locked away.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from src.adapters.base import StackService
from src.core.data import get_registry
from src.core.errors import SharedInfraError, StackError
from src.core.models.stack import (
    ACTIVE_STATES,
    LIVE_STATES,
    SharedInfraOutputs,
    StackStatus,
)
from src.core.models.target import LogStream
from src.core.reliability.polling import Sleep
from src.core.services.stack_reconciler import is_already_exists

logger = logging.getLogger(__name__)

SHARED_STACK_NAME = "gateway-shared-infra"
BOT_STACK_PREFIX = "gateway-bot-"
SHARED_TAGS = {"gateway:shared": "true"}
CREATE_TIMEOUT = 600.0


class SharedInfraProvisioner:
    """Ensures and garbage-collects the shared stack of one region.

    Args:
        stacks: Stack service bound to the region.
        region: Region name (for messages and stack parameters).
        on_log: Progress callback.
        release_protections: Hook run before deleting the shared stack,
            to drop anything that would block its deletion.
    """

    def __init__(
        self,
        stacks: StackService,
        region: str,
        *,
        on_log: Callable[[str, LogStream], None] | None = None,
        release_protections: Callable[[], Awaitable[None]] | None = None,
        template: str | None = None,
        stack_name: str = SHARED_STACK_NAME,
        workload_prefix: str = BOT_STACK_PREFIX,
        poll_interval: float = 10.0,
        timeout: float = CREATE_TIMEOUT,
        sleep: Sleep = asyncio.sleep,
    ):
        self._stacks = stacks
        self.region = region
        self._on_log = on_log
        self._release_protections = release_protections
        self._template = template
        self.stack_name = stack_name
        self.workload_prefix = workload_prefix
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._sleep = sleep

    def _log(self, line: str, stream: LogStream = "stdout") -> None:
        if stream == "stderr":
            logger.warning(line)
        else:
            logger.info(line)
        if self._on_log:
            self._on_log(line, stream)

    async def _wait(self, target: StackStatus) -> None:
        await self._stacks.wait_for_stack_status(
            self.stack_name,
            target,
            poll_interval=self._poll_interval,
            timeout=self._timeout,
            on_event=lambda e: self._log(e.format(), "stderr" if e.is_failure else "stdout"),
            sleep=self._sleep,
        )

    # ── Ensure ──────────────────────────────────────────────────

    async def ensure(self) -> SharedInfraOutputs:
        """Make the shared stack exist and be healthy; return its outputs.

        Raises:
            SharedInfraError: The stack is stuck in a state that needs an
                operator, or reached a failure while being created.
        """
        try:
            await self._converge()
        except StackError as e:
            raise SharedInfraError(
                f"Shared infra stack {self.stack_name} failed: {e}. "
                "Manual intervention may be required."
            ) from e
        return await self.get_outputs()

    async def _converge(self) -> None:
        stack = await self._stacks.describe_stack(self.stack_name)
        status = stack.status if stack else StackStatus.ABSENT

        if status in ACTIVE_STATES:
            self._log(f"Shared infrastructure ready in {self.region}")
            return
        if status == StackStatus.CREATE_IN_PROGRESS:
            self._log("Shared infrastructure is being created by another deployment, waiting...")
            await self._wait(StackStatus.CREATE_COMPLETE)
            return
        if status in (StackStatus.UPDATE_IN_PROGRESS, StackStatus.UPDATE_COMPLETE_CLEANUP_IN_PROGRESS):
            self._log("Shared infrastructure is being updated, waiting...")
            await self._wait(StackStatus.UPDATE_COMPLETE)
            return
        if status == StackStatus.DELETE_IN_PROGRESS:
            self._log("Shared infrastructure is being torn down, waiting to re-create it...")
            await self._wait(StackStatus.DELETE_COMPLETE)
            status = StackStatus.ABSENT
        if status not in (StackStatus.ABSENT, StackStatus.DELETE_COMPLETE):
            raise SharedInfraError(
                f"Shared infra stack {self.stack_name} is in unexpected state: {status}. "
                "Manual intervention may be required."
            )

        self._log(f"Creating shared infrastructure in {self.region}...")
        try:
            await self._stacks.create_stack(
                self.stack_name,
                self._template or get_registry().template_body("shared_infra"),
                tags=SHARED_TAGS,
                capabilities=["CAPABILITY_NAMED_IAM"],
            )
        except Exception as e:
            if not is_already_exists(e):
                raise
            self._log("Shared infrastructure was created concurrently, waiting for it...")
        await self._wait(StackStatus.CREATE_COMPLETE)
        self._log("Shared infrastructure created")

    async def is_ready(self) -> bool:
        stack = await self._stacks.describe_stack(self.stack_name)
        return stack is not None and stack.status in ACTIVE_STATES

    async def get_outputs(self) -> SharedInfraOutputs:
        outputs = await self._stacks.get_stack_outputs(self.stack_name)
        try:
            return SharedInfraOutputs.from_outputs(outputs)
        except KeyError as e:
            raise SharedInfraError(
                f"Shared infra stack {self.stack_name} is missing output {e.args[0]}"
            ) from e

    # ── Cleanup ─────────────────────────────────────────────────

    async def live_workload_stacks(self) -> list[str]:
        rows = await self._stacks.list_stacks(
            name_prefix=self.workload_prefix,
            status_filter=set(LIVE_STATES),
        )
        return [r.name for r in rows if r.status in LIVE_STATES]

    async def cleanup_if_orphaned(self) -> bool:
        """Delete the shared stack when no bot stack is left.

        Best effort: every failure is logged and swallowed. Returns True
        only when this call deleted the shared stack.
        """
        try:
            live = await self.live_workload_stacks()
            if live:
                self._log(
                    f"Shared infrastructure still used by {len(live)} stack(s), keeping it"
                )
                return False

            if not await self._stacks.stack_exists(self.stack_name):
                logger.debug("No shared infrastructure to clean up in %s", self.region)
                return False

            self._log("No bot stacks remain, deleting shared infrastructure...")
            if self._release_protections is not None:
                try:
                    await self._release_protections()
                except Exception as e:
                    self._log(f"Releasing protections failed (continuing): {e}", "stderr")

            await self._stacks.delete_stack(self.stack_name)
            await self._wait(StackStatus.DELETE_COMPLETE)
            self._log("Shared infrastructure deleted")
            return True
        except Exception as e:
            # Another destroy may be tearing it down at the same time
            self._log(f"Shared infrastructure cleanup failed (ignored): {e}", "stderr")
            return False
