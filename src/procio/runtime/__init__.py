"""Runtime module for child process execution and stream handling.

This module provides redirection policies, a process handle with reliable
termination, deadlock-free stream draining and the execution facade built
on them (sync and async).
"""

from __future__ import annotations

from .async_runner import AsyncProcessRunner, ProcessSpec
from .executor import (
    ProcessOutputLines,
    capture_output,
    combined_output,
    discard,
    execute,
    inherit,
    make_temp_path,
    redirect_to_file,
)
from .policy import (
    DISCARD,
    INHERIT,
    TO_STDOUT,
    Discard,
    Inherit,
    PipeMode,
    RedirectionPolicy,
    ToFile,
    ToPipe,
    ToStdout,
    parse_policy,
)
from .process_handle import ProcessHandle, ProcessState
from .results import CapturedStream, ExecutionResult, ExitStatus, OutputLine
from .stream_drain import drain_concurrent, drain_sequential, iter_output_lines, read_all, read_lines

__all__ = [
    "AsyncProcessRunner",
    "ProcessSpec",
    "ProcessOutputLines",
    "capture_output",
    "combined_output",
    "discard",
    "execute",
    "inherit",
    "make_temp_path",
    "redirect_to_file",
    "DISCARD",
    "INHERIT",
    "TO_STDOUT",
    "Discard",
    "Inherit",
    "PipeMode",
    "RedirectionPolicy",
    "ToFile",
    "ToPipe",
    "ToStdout",
    "parse_policy",
    "ProcessHandle",
    "ProcessState",
    "CapturedStream",
    "ExecutionResult",
    "ExitStatus",
    "OutputLine",
    "drain_concurrent",
    "drain_sequential",
    "iter_output_lines",
    "read_all",
    "read_lines",
]
