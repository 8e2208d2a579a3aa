"""procio exception classes.

Every failure of an execution surfaces as an ExecutionError carrying the
step at which it happened. Nothing is retried: process execution is not
assumed to be idempotent.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .runtime.results import ExecutionResult

__all__ = [
    "ExecutionStep",
    "ExecutionError",
    "PolicyError",
    "DeadlockRiskError",
    "SpawnError",
    "ProcessIOError",
    "WaitError",
]


class ExecutionStep(str, Enum):
    """Step of an execution in which an error occurred."""

    VALIDATE = "validate"
    SPAWN = "spawn"
    DRAIN = "drain"
    WAIT = "wait"


class ExecutionError(Exception):
    """Base exception for failed executions.

    Attributes:
        message: Error message
        step: Step that failed
    """

    def __init__(self, message: str, step: ExecutionStep) -> None:
        self.message = message
        self.step = step
        super().__init__(f"[{step.value}] {message}")


class PolicyError(ExecutionError):
    """Invalid policy, strategy or option combination."""

    def __init__(self, message: str) -> None:
        super().__init__(message, ExecutionStep.VALIDATE)


class DeadlockRiskError(PolicyError):
    """Sequential draining requested while both streams are piped.

    The child can fill the pipe read second while the caller is still
    blocked on the first one.
    """

    pass


class SpawnError(ExecutionError):
    """The process could not be created.

    Attributes:
        command: Executable that failed to start
    """

    def __init__(self, message: str, command: str = "") -> None:
        self.command = command
        super().__init__(message, ExecutionStep.SPAWN)


class ProcessIOError(ExecutionError):
    """Reading a pipe failed mid-execution.

    The output drained before the failure is kept in ``partial_result``,
    which is marked as failed.

    Attributes:
        stream: Name of the failing stream (stdout/stderr)
        partial_result: Result assembled from what was drained
    """

    def __init__(
        self,
        message: str,
        stream: str,
        partial_result: "ExecutionResult | None" = None,
    ) -> None:
        self.stream = stream
        self.partial_result = partial_result
        super().__init__(f"{stream}: {message}", ExecutionStep.DRAIN)


class WaitError(ExecutionError):
    """The exit status could not be obtained."""

    def __init__(self, message: str) -> None:
        super().__init__(message, ExecutionStep.WAIT)
