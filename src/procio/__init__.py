"""procio - child process spawning and output redirection.

Environment variables:
    PROCIO_DRAIN_STRATEGY: concurrent (default) / sequential
    PROCIO_ENCODING: Encoding of captured lines (default utf-8)
    PROCIO_LOG_DEBUG: Debug logging to a temp file (default false)

Usage:
    python -m procio run --stdout pipe:lines -- git status
    python -m procio bench
"""

__version__ = "0.1.0"

from .config import DrainStrategy
from .errors import (
    DeadlockRiskError,
    ExecutionError,
    ExecutionStep,
    PolicyError,
    ProcessIOError,
    SpawnError,
    WaitError,
)
from .runtime import (
    DISCARD,
    INHERIT,
    TO_STDOUT,
    AsyncProcessRunner,
    ExecutionResult,
    ExitStatus,
    OutputLine,
    PipeMode,
    ProcessHandle,
    ProcessOutputLines,
    ProcessSpec,
    ToFile,
    ToPipe,
    ToStdout,
    combined_output,
    execute,
)

__all__ = [
    "__version__",
    "DrainStrategy",
    "DeadlockRiskError",
    "ExecutionError",
    "ExecutionStep",
    "PolicyError",
    "ProcessIOError",
    "SpawnError",
    "WaitError",
    "DISCARD",
    "INHERIT",
    "TO_STDOUT",
    "AsyncProcessRunner",
    "ExecutionResult",
    "ExitStatus",
    "OutputLine",
    "PipeMode",
    "ProcessHandle",
    "ProcessOutputLines",
    "ProcessSpec",
    "ToFile",
    "ToPipe",
    "ToStdout",
    "combined_output",
    "execute",
]
