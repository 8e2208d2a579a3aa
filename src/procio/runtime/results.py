"""Execution result models.

procio runtime module

Results are immutable pydantic models, produced exactly once per execution:

- ExitStatus: exit code, terminating signal, kill/cancel flags
- CapturedStream: what was drained from one piped stream
- OutputLine: one line tagged with its stream, in arrival order
- ExecutionResult: everything above for one execution
"""

from __future__ import annotations

import sys
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .policy import PipeMode

__all__ = [
    "StreamName",
    "ExitStatus",
    "CapturedStream",
    "OutputLine",
    "ExecutionResult",
]

StreamName = Literal["stdout", "stderr"]


class ExitStatus(BaseModel):
    """Exit status of a terminated process.

    No ``success`` property: what counts as success is up to the caller.

    Attributes:
        exit_code: Exit code; 128 + signal number when killed by a signal (POSIX)
        signal: Terminating signal number, None on normal exit and on Windows
        killed: Whether the process was terminated forcibly
        canceled: Whether the termination came from a timeout or cancellation
    """

    model_config = ConfigDict(frozen=True)

    exit_code: int
    signal: int | None = None
    killed: bool = False
    canceled: bool = False

    @classmethod
    def from_returncode(
        cls,
        returncode: int,
        *,
        kill_requested: bool = False,
        canceled: bool = False,
    ) -> "ExitStatus":
        """Build an ExitStatus from a subprocess return code.

        Negative return codes are POSIX signals. On Windows a killed process
        just has an exit code, so ``kill_requested`` marks it as killed.
        """
        if returncode < 0:
            signum = -returncode
            return cls(
                exit_code=128 + signum,
                signal=signum,
                killed=True,
                canceled=canceled,
            )

        killed = kill_requested and sys.platform == "win32"
        return cls(exit_code=returncode, killed=killed, canceled=canceled)


class CapturedStream(BaseModel):
    """Output drained from one pipe.

    Exactly one of ``lines``/``data`` is set, depending on the mode.

    Attributes:
        name: stdout or stderr
        mode: Pipe mode the stream was drained with
        lines: Decoded lines (line modes)
        data: Raw bytes (READ_ALL)
        error: Read error message when draining stopped early
    """

    model_config = ConfigDict(frozen=True)

    name: StreamName
    mode: PipeMode
    lines: tuple[str, ...] | None = None
    data: bytes | None = None
    error: str | None = None

    @property
    def text(self) -> str:
        """Captured output as text, lines joined with newlines."""
        if self.lines is not None:
            return "\n".join(self.lines)
        if self.data is not None:
            return self.data.decode("utf-8", errors="replace")
        return ""


class OutputLine(BaseModel):
    """One line of output and the stream it came from."""

    model_config = ConfigDict(frozen=True)

    stream: StreamName
    text: str

    @property
    def is_stderr(self) -> bool:
        return self.stream == "stderr"


class ExecutionResult(BaseModel):
    """Result of one execution.

    Attributes:
        command: Executable followed by its arguments
        pid: Process id the child ran under
        exit_status: How the process ended
        stdout: Captured stdout (only under ToPipe)
        stderr: Captured stderr (only under ToPipe)
        output_lines: Lines of both streams in arrival order
            (only under CONCURRENT_LINE_BY_LINE)
        duration_sec: Wall-clock time from spawn to exit
        failed: Whether draining hit an I/O error (partial output kept)
        error: Error message when failed
    """

    model_config = ConfigDict(frozen=True)

    command: tuple[str, ...]
    pid: int
    exit_status: ExitStatus
    stdout: CapturedStream | None = None
    stderr: CapturedStream | None = None
    output_lines: tuple[OutputLine, ...] | None = None
    duration_sec: float = Field(default=0.0, ge=0.0)
    failed: bool = False
    error: str | None = None

    @property
    def exit_code(self) -> int:
        return self.exit_status.exit_code

    @property
    def was_killed(self) -> bool:
        return self.exit_status.killed

    @property
    def stdout_lines(self) -> tuple[str, ...] | None:
        return self.stdout.lines if self.stdout else None

    @property
    def stderr_lines(self) -> tuple[str, ...] | None:
        return self.stderr.lines if self.stderr else None

    @property
    def stdout_bytes(self) -> bytes | None:
        return self.stdout.data if self.stdout else None

    @property
    def stderr_bytes(self) -> bytes | None:
        return self.stderr.data if self.stderr else None
