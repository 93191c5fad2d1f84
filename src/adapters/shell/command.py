"""
Command runner — execute external commands and capture their output.

This is the most fundamental adapter: every CLI-backed service (docker,
systemctl, aws, gcloud, limactl) runs through it. It never raises for a
failing command; the outcome is captured in a ``CommandResult``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time

from pydantic import BaseModel

from src.core.errors import CommandError

logger = logging.getLogger(__name__)

# Output kept per stream
_MAX_OUTPUT = 64_000


class CommandResult(BaseModel):
    """Outcome of one command execution."""

    cmd: list[str]
    returncode: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None       # set when the process could not run or timed out
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0

    @property
    def message(self) -> str:
        """Best human-readable failure description."""
        if self.error:
            return self.error
        return self.stderr.strip() or self.stdout.strip() or f"exit {self.returncode}"

    def check(self) -> CommandResult:
        """Raise ``CommandError`` unless the command succeeded."""
        if not self.ok:
            raise CommandError(self.cmd, self.returncode, self.error or self.stderr)
        return self


class CommandRunner:
    """Runs commands as asyncio subprocesses.

    Args:
        env_overrides: Extra environment variables for every command.
    """

    def __init__(self, env_overrides: dict[str, str] | None = None):
        self._env_overrides = env_overrides or {}

    async def run(
        self,
        cmd: list[str],
        *,
        timeout: float = 120,
        cwd: str | None = None,
        input: str | None = None,
    ) -> CommandResult:
        """Run ``cmd`` (argv list) and wait for it, up to ``timeout`` seconds."""
        env = None
        if self._env_overrides:
            env = os.environ.copy()
            env.update(self._env_overrides)

        logger.debug("Executing: %s (cwd=%s)", " ".join(cmd), cwd)
        start = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
            )
        except FileNotFoundError:
            return CommandResult(cmd=cmd, error=f"Command not found: {cmd[0]}")
        except OSError as e:
            return CommandResult(cmd=cmd, error=f"Command execution error: {e}")

        try:
            out, err = await asyncio.wait_for(
                proc.communicate(input.encode() if input is not None else None),
                timeout=timeout,
            )
        except TimeoutError:
            proc.kill()
            await proc.wait()
            return CommandResult(
                cmd=cmd,
                error=f"Command timed out after {timeout}s",
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        result = CommandResult(
            cmd=cmd,
            returncode=proc.returncode,
            stdout=out.decode(errors="replace")[-_MAX_OUTPUT:],
            stderr=err.decode(errors="replace")[-_MAX_OUTPUT:],
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        if not result.ok:
            logger.debug("Command failed (%s): %s", result.returncode, result.stderr.strip()[:500])
        return result

    async def run_shell(self, command: str, *, timeout: float = 120) -> CommandResult:
        """Run a command string through ``sh -c``."""
        return await self.run(["sh", "-c", command], timeout=timeout)
