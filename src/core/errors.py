"""
Domain errors — raised where an operation cannot return a result record.

Public target operations report failures through result models
(``InstallResult``, ``ResourceUpdateResult``...). These exceptions
cover the seams below that boundary: remote stack operations, polling
timeouts, and the handful of lifecycle calls that return nothing.
"""

from __future__ import annotations


class TargetError(Exception):
    """A lifecycle operation (start/stop/restart) failed on a target."""


class StackError(Exception):
    """A remote stack reached a failure state or could not be found."""

    def __init__(self, stack_name: str, message: str, status: str | None = None):
        super().__init__(message)
        self.stack_name = stack_name
        self.status = status


class StackReconcileError(StackError):
    """The reconciler could not converge a stack to an active state."""


class SharedInfraError(Exception):
    """Shared infrastructure is in a state that needs an operator."""


class WaitTimeoutError(TimeoutError):
    """A polled wait ran out of budget."""


class CommandError(Exception):
    """An external command exited non-zero."""

    def __init__(self, cmd: list[str], returncode: int | None, stderr: str = ""):
        detail = stderr.strip() or f"exit {returncode}"
        super().__init__(f"{' '.join(cmd)}: {detail}")
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
