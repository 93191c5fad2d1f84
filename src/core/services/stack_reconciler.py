"""
Stack reconciler — converge a named stack from whatever state it is in.

``converge`` is safe to call from an unknown prior state: a previous
process may have crashed mid-create, left a failed rollback behind, or
be deleting the stack right now. The current status picks the action:

    ABSENT / DELETE_COMPLETE        create
    CREATE/UPDATE(_ROLLBACK)_COMPLETE  update in place ("no updates" is success)
    DELETE_IN_PROGRESS              wait for DELETE_COMPLETE, re-evaluate
    DELETE_FAILED                   force-delete, re-evaluate
    ROLLBACK_COMPLETE, *_FAILED     delete, wait, re-evaluate
    *_IN_PROGRESS                   wait until settled, re-evaluate

Force-delete runs best-effort pre-cleanup (deregister cluster members,
drop scale-in protection), deletes, and when the delete fails retries
while retaining exactly the resources the provider reported as stuck.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable

from src.adapters.base import StackService
from src.core.errors import StackError, StackReconcileError
from src.core.models.stack import ACTIVE_STATES, StackEvent, StackInfo, StackStatus
from src.core.models.target import LogStream
from src.core.reliability.polling import Sleep

logger = logging.getLogger(__name__)

LogCallback = Callable[[str, LogStream], None]
Cleanup = Callable[[], Awaitable[None]]

NO_UPDATES_MESSAGE = "No updates are to be performed"
MAX_PASSES = 5


def is_already_exists(error: Exception) -> bool:
    text = str(error)
    return "AlreadyExists" in text or "already exists" in text


def parse_stuck_resources(reason: str) -> list[str]:
    """Logical ids named in a DELETE_FAILED status reason.

    Handles ``...failed to delete: [A, B].`` as well as the shorter
    ``resource A failed to delete`` phrasing.
    """
    m = re.search(r"\[([^\]]+)\]", reason)
    if m:
        return [r.strip() for r in m.group(1).split(",") if r.strip()]
    return re.findall(r"resources?\s+([\w-]+)\s+failed to delete", reason, re.IGNORECASE)


class StackReconciler:
    """Drives one stack service toward an active stack.

    Args:
        stacks: The stack service.
        on_log: Progress callback; stack events are forwarded here.
        pre_delete_cleanup: Best-effort hook run before force-deletes.
        poll_interval: Seconds between status polls.
        timeout: Budget in seconds for each wait.
        sleep: Awaitable sleep used while polling.
    """

    def __init__(
        self,
        stacks: StackService,
        *,
        on_log: LogCallback | None = None,
        pre_delete_cleanup: Cleanup | None = None,
        poll_interval: float = 10.0,
        timeout: float = 1800.0,
        sleep: Sleep = asyncio.sleep,
        max_passes: int = MAX_PASSES,
    ):
        self._stacks = stacks
        self._on_log = on_log
        self._pre_delete_cleanup = pre_delete_cleanup
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._sleep = sleep
        self._max_passes = max_passes

    @property
    def stacks(self) -> StackService:
        return self._stacks

    def _log(self, line: str, stream: LogStream = "stdout") -> None:
        logger.debug("%s", line)
        if self._on_log:
            self._on_log(line, stream)

    def _on_event(self, event: StackEvent) -> None:
        self._log(event.format(), "stderr" if event.is_failure else "stdout")

    # ── Converge ────────────────────────────────────────────────

    async def converge(
        self,
        name: str,
        template: str,
        *,
        parameters: dict[str, str] | None = None,
        tags: dict[str, str] | None = None,
        capabilities: list[str] | None = None,
    ) -> StackInfo:
        """Create or update ``name`` so it ends active with ``template``.

        Raises:
            StackError: The create/update itself failed.
            StackReconcileError: The stack kept changing under us.
            WaitTimeoutError: A wait ran out of budget.
        """
        status = StackStatus.ABSENT
        for attempt in range(1, self._max_passes + 1):
            stack = await self._stacks.describe_stack(name)
            status = stack.status if stack else StackStatus.ABSENT
            logger.info("Stack %s is %s (pass %d)", name, status, attempt)

            if status in (StackStatus.ABSENT, StackStatus.DELETE_COMPLETE):
                created = await self._create(name, template, parameters, tags, capabilities)
                if created is not None:
                    return created
                continue

            if stack is not None and status in ACTIVE_STATES:
                return await self._update(stack, template, parameters, tags, capabilities)

            if status == StackStatus.DELETE_IN_PROGRESS:
                self._log(f"Stack {name} is still being deleted, waiting...")
                await self._wait(name, StackStatus.DELETE_COMPLETE)
                continue

            if status == StackStatus.DELETE_FAILED:
                self._log(f"Stack {name} is in DELETE_FAILED, recovering...", "stderr")
                await self.force_delete(name)
                continue

            if status.failed:
                self._log(f"Stack {name} is in {status}, deleting before re-creating", "stderr")
                await self._delete_and_wait(name)
                continue

            self._log(f"Stack {name} is {status}, waiting for it to settle...")
            await self._stacks.wait_for_stack_settled(
                name,
                poll_interval=self._poll_interval,
                timeout=self._timeout,
                on_event=self._on_event,
                sleep=self._sleep,
            )

        raise StackReconcileError(
            name,
            f"Stack {name} did not converge after {self._max_passes} passes (last status {status})",
            status=status,
        )

    async def _create(self, name, template, parameters, tags, capabilities) -> StackInfo | None:
        self._log(f"Creating stack {name}...")
        try:
            await self._stacks.create_stack(
                name, template, parameters=parameters, tags=tags, capabilities=capabilities
            )
        except Exception as e:
            if is_already_exists(e):
                self._log(f"Stack {name} was created concurrently, re-evaluating")
                return None
            raise
        stack = await self._wait(name, StackStatus.CREATE_COMPLETE)
        self._log(f"Stack {name} created")
        return stack

    async def _update(self, stack: StackInfo, template, parameters, tags, capabilities) -> StackInfo:
        self._log(f"Updating stack {stack.name}...")
        try:
            await self._stacks.update_stack(
                stack.name, template, parameters=parameters, tags=tags, capabilities=capabilities
            )
        except Exception as e:
            if NO_UPDATES_MESSAGE in str(e):
                self._log(f"Stack {stack.name} is already up to date")
                return stack
            raise
        updated = await self._wait(stack.name, StackStatus.UPDATE_COMPLETE)
        self._log(f"Stack {stack.name} updated")
        return updated

    # ── Delete ──────────────────────────────────────────────────

    async def delete(self, name: str) -> bool:
        """Delete ``name`` if it exists, using the force-delete protocol.

        Returns False when there was nothing to delete.
        """
        if not await self._stacks.stack_exists(name):
            self._log(f"Stack {name} does not exist, nothing to delete")
            return False
        await self.force_delete(name)
        return True

    async def force_delete(self, name: str) -> None:
        """Delete a stack, retaining stuck resources if the first attempt fails.

        Raises the deletion error when recovery is impossible.
        """
        if self._pre_delete_cleanup is not None:
            try:
                await self._pre_delete_cleanup()
            except Exception as e:
                self._log(f"Pre-delete cleanup failed (continuing): {e}", "stderr")

        self._log(f"Deleting stack {name}...")
        try:
            await self._stacks.delete_stack(name)
            await self._wait(name, StackStatus.DELETE_COMPLETE)
            self._log(f"Stack {name} deleted")
            return
        except Exception as e:
            error = e
            self._log(f"Stack deletion failed: {e}", "stderr")

        await self._retain_and_delete(name, error)

    async def _delete_and_wait(self, name: str) -> None:
        try:
            await self._stacks.delete_stack(name)
            await self._wait(name, StackStatus.DELETE_COMPLETE)
        except StackError as e:
            if e.status != StackStatus.DELETE_FAILED:
                raise
            self._log(f"Deleting {name} failed, switching to force-delete", "stderr")
            await self._retain_and_delete(name, e)

    async def _retain_and_delete(self, name: str, error: Exception) -> None:
        stack = await self._stacks.describe_stack(name)
        if stack is None or stack.status == StackStatus.DELETE_COMPLETE:
            self._log(f"Stack {name} is gone despite the error")
            return
        if stack.status != StackStatus.DELETE_FAILED:
            raise error

        stuck = parse_stuck_resources(stack.status_reason or "")
        if not stuck:
            stuck = await self._failed_resources_from_events(name)
        if not stuck:
            raise error

        self._log(f"Retrying deletion, retaining stuck resources: {', '.join(stuck)}", "stderr")
        await self._stacks.delete_stack(name, retain_resources=stuck)
        await self._wait(name, StackStatus.DELETE_COMPLETE)
        self._log(f"Stack {name} deleted (retained: {', '.join(stuck)})")

    async def _failed_resources_from_events(self, name: str) -> list[str]:
        try:
            events = await self._stacks.describe_stack_events(name)
        except Exception as e:
            logger.debug("Could not read events for %s: %s", name, e)
            return []
        stuck: list[str] = []
        for event in events:
            if event.resource_status == "DELETE_FAILED" and event.resource_id != name:
                if event.resource_id not in stuck:
                    stuck.append(event.resource_id)
        return stuck

    async def _wait(self, name: str, target: StackStatus) -> StackInfo:
        return await self._stacks.wait_for_stack_status(
            name,
            target,
            poll_interval=self._poll_interval,
            timeout=self._timeout,
            on_event=self._on_event,
            sleep=self._sleep,
        )
