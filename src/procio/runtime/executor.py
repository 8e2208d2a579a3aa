"""Process execution facade.

procio runtime module

One call configures, spawns, drains, waits and returns an ExecutionResult:

    result = execute("git", ["status"], stdout=ToPipe(PipeMode.LINE_BY_LINE))
    print(result.exit_code, result.stdout_lines)

Steps:
1. Validate policies, strategy and options
2. Spawn the process (ProcessHandle)
3. Drain piped streams (concurrent by default)
4. Wait for exit
5. Assemble the result
6. Close the handle whatever happened

The result is never produced before every drain finished and wait()
returned. Calls share no state and may run concurrently.
"""

from __future__ import annotations

import logging
import tempfile
import threading
import time
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path

from ..config import DrainStrategy, get_config
from ..errors import DeadlockRiskError, PolicyError, ProcessIOError
from .policy import (
    DISCARD,
    INHERIT,
    Discard,
    Inherit,
    PipeMode,
    RedirectionPolicy,
    TO_STDOUT,
    ToFile,
    ToPipe,
    ToStdout,
)
from .process_handle import ProcessHandle
from .results import ExecutionResult, ExitStatus, OutputLine, StreamName
from .stream_drain import DrainResult, drain_concurrent, drain_sequential, iter_output_lines

__all__ = [
    "execute",
    "discard",
    "inherit",
    "redirect_to_file",
    "capture_output",
    "combined_output",
    "make_temp_path",
    "ProcessOutputLines",
]

logger = logging.getLogger(__name__)

_POLICY_TYPES = (Discard, Inherit, ToFile, ToPipe, ToStdout)


def _validate(
    stdout: RedirectionPolicy,
    stderr: RedirectionPolicy,
    strategy: DrainStrategy,
    accept_deadlock_risk: bool,
    timeout: float | None,
) -> None:
    for name, policy in (("stdout", stdout), ("stderr", stderr)):
        if not isinstance(policy, _POLICY_TYPES):
            raise PolicyError(f"Invalid {name} policy: {policy!r}")
    if isinstance(stdout, ToStdout):
        raise PolicyError("ToStdout is only valid for stderr")

    if timeout is not None and timeout <= 0:
        raise PolicyError(f"timeout must be positive, got {timeout}")

    if strategy is not DrainStrategy.SEQUENTIAL:
        return

    piped = [p for p in (stdout, stderr) if isinstance(p, ToPipe)]
    if any(p.mode is PipeMode.CONCURRENT_LINE_BY_LINE for p in piped):
        raise PolicyError("CONCURRENT_LINE_BY_LINE cannot be drained sequentially")
    if len(piped) == 2 and not accept_deadlock_risk:
        raise DeadlockRiskError(
            "Sequential draining with both streams piped can deadlock; "
            "use the concurrent strategy or pass accept_deadlock_risk=True"
        )


def _drain(
    handle: ProcessHandle,
    stdout: RedirectionPolicy,
    stderr: RedirectionPolicy,
    strategy: DrainStrategy,
    encoding: str,
) -> DrainResult | None:
    if handle.stdout is None and handle.stderr is None:
        return None

    stdout_mode = stdout.mode if isinstance(stdout, ToPipe) else None
    stderr_mode = stderr.mode if isinstance(stderr, ToPipe) else None
    mode = stdout_mode or stderr_mode

    def on_error(name: StreamName, error: Exception) -> None:
        # Nobody reads this pipe anymore; unblock the child and the other reader
        logger.info(f"Killing pid={handle.pid} after {name} read error")
        handle.kill()

    drain = drain_sequential if strategy is DrainStrategy.SEQUENTIAL else drain_concurrent
    return drain(
        handle.stdout, handle.stderr, mode, stderr_mode, encoding=encoding, on_error=on_error
    )


def _start_watchdog(handle: ProcessHandle, timeout: float | None) -> threading.Timer | None:
    """Kill the process group once timeout expires."""
    if timeout is None:
        return None

    def on_timeout() -> None:
        logger.info(f"Process pid={handle.pid} timed out after {timeout}s, killing")
        handle.kill(canceled=True)

    watchdog = threading.Timer(timeout, on_timeout)
    watchdog.daemon = True
    watchdog.start()
    return watchdog


def execute(
    command: str,
    args: Sequence[str] = (),
    stdout: RedirectionPolicy = DISCARD,
    stderr: RedirectionPolicy = DISCARD,
    *,
    strategy: DrainStrategy | None = None,
    accept_deadlock_risk: bool = False,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    stdin_path: Path | str | None = None,
    timeout: float | None = None,
    encoding: str | None = None,
) -> ExecutionResult:
    """Run a process to completion with the given redirection policies.

    Args:
        command: Executable name or path
        args: Arguments
        stdout: Policy for stdout
        stderr: Policy for stderr
        strategy: Drain strategy (default from config, normally CONCURRENT)
        accept_deadlock_risk: Allow SEQUENTIAL with both streams piped
        cwd: Working directory
        env: Environment (None = inherit)
        stdin_path: File fed to stdin (None = null device)
        timeout: Kill the process after this many seconds; the result is
            then marked canceled
        encoding: Encoding for line modes (default from config)

    Returns:
        ExecutionResult; non-zero exit codes are not errors

    Raises:
        PolicyError: Invalid configuration (DeadlockRiskError included)
        SpawnError: The process could not be started
        ProcessIOError: A pipe read failed; partial_result holds what was drained
        WaitError: The exit status could not be obtained
    """
    config = get_config()
    strategy = strategy or config.drain_strategy
    encoding = encoding or config.encoding

    _validate(stdout, stderr, strategy, accept_deadlock_risk, timeout)

    logger.debug(
        f"Executing {command} stdout={stdout!r} stderr={stderr!r} "
        f"strategy={strategy.value}"
    )

    started = time.monotonic()
    handle = ProcessHandle.spawn(
        command,
        args,
        stdout,
        stderr,
        cwd=cwd,
        env=env,
        stdin_path=stdin_path,
    )
    watchdog = _start_watchdog(handle, timeout)

    try:
        drained = _drain(handle, stdout, stderr, strategy, encoding)
        failed = drained.failed if drained is not None else []
        status = handle.wait()
        result = _assemble(handle, status, drained, time.monotonic() - started)

        if failed:
            capture = failed[0]
            result = result.model_copy(
                update={"failed": True, "error": f"{capture.name}: {capture.error}"}
            )
            raise ProcessIOError(str(capture.error), stream=capture.name, partial_result=result)

        return result

    finally:
        if watchdog is not None:
            watchdog.cancel()
        handle.close()


def _assemble(
    handle: ProcessHandle,
    status: ExitStatus,
    drained: DrainResult | None,
    duration: float,
) -> ExecutionResult:
    return ExecutionResult(
        command=handle.argv,
        pid=handle.pid,
        exit_status=status,
        stdout=drained.stdout.to_model() if drained and drained.stdout else None,
        stderr=drained.stderr.to_model() if drained and drained.stderr else None,
        output_lines=tuple(drained.output_lines) if drained and drained.output_lines is not None else None,
        duration_sec=duration,
    )


def discard(command: str, args: Sequence[str] = (), **kwargs) -> ExecutionResult:
    """Run with both streams sent to the null device."""
    return execute(command, args, DISCARD, DISCARD, **kwargs)


def inherit(command: str, args: Sequence[str] = (), **kwargs) -> ExecutionResult:
    """Run with both streams shared with this process."""
    return execute(command, args, INHERIT, INHERIT, **kwargs)


def redirect_to_file(
    command: str,
    args: Sequence[str] = (),
    output_path: Path | str | None = None,
    error_path: Path | str | None = None,
    **kwargs,
) -> ExecutionResult:
    """Run with stdout/stderr written straight to files by the OS.

    A stream without a path is discarded.
    """
    stdout = ToFile(Path(output_path)) if output_path is not None else DISCARD
    stderr = ToFile(Path(error_path)) if error_path is not None else DISCARD
    return execute(command, args, stdout, stderr, **kwargs)


def capture_output(
    command: str,
    args: Sequence[str] = (),
    mode: PipeMode = PipeMode.READ_ALL,
    **kwargs,
) -> ExecutionResult:
    """Run with both streams piped and drained concurrently."""
    return execute(command, args, ToPipe(mode), ToPipe(mode), **kwargs)


def combined_output(
    command: str,
    args: Sequence[str] = (),
    mode: PipeMode = PipeMode.READ_ALL,
    **kwargs,
) -> ExecutionResult:
    """Run with stderr sharing stdout's pipe.

    Output of both streams ends up in ``result.stdout`` in the order the
    child wrote it; ``result.stderr`` is None. Only one pipe is drained, so
    the sequential strategy is safe here.
    """
    return execute(command, args, ToPipe(mode), TO_STDOUT, **kwargs)


def make_temp_path(suffix: str = ".out", temp_dir: Path | str | None = None) -> Path:
    """Create an empty temporary file for redirect targets.

    Args:
        suffix: File name suffix
        temp_dir: Directory (default: PROCIO_TEMP_DIR or the platform temp dir)
    """
    directory = Path(temp_dir) if temp_dir is not None else get_config().temp_dir
    with tempfile.NamedTemporaryFile(
        dir=directory, prefix="procio-", suffix=suffix, delete=False
    ) as f:
        return Path(f.name)


class ProcessOutputLines:
    """Interleaved stdout/stderr lines of a process, as they arrive.

    The process starts when iteration starts. The exit status is available
    once iteration completed.

    Example:
        lines = ProcessOutputLines("make", ["-j8"])
        for line in lines:
            print(("ERR " if line.is_stderr else "") + line.text)
        print(lines.exit_status.exit_code)
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        stdin_path: Path | str | None = None,
        timeout: float | None = None,
        encoding: str | None = None,
    ) -> None:
        if timeout is not None and timeout <= 0:
            raise PolicyError(f"timeout must be positive, got {timeout}")

        self.command = command
        self.args = tuple(args)
        self.cwd = cwd
        self.env = env
        self.stdin_path = stdin_path
        self.timeout = timeout
        self.encoding = encoding or get_config().encoding

        self._pid: int | None = None
        self._status: ExitStatus | None = None

    @property
    def pid(self) -> int:
        if self._pid is None:
            raise RuntimeError("Process has not started yet")
        return self._pid

    @property
    def exit_status(self) -> ExitStatus:
        if self._status is None:
            raise RuntimeError("Process has not exited yet")
        return self._status

    def __iter__(self) -> Iterator[OutputLine]:
        pipe = ToPipe(PipeMode.CONCURRENT_LINE_BY_LINE)
        handle = ProcessHandle.spawn(
            self.command,
            self.args,
            pipe,
            pipe,
            cwd=self.cwd,
            env=self.env,
            stdin_path=self.stdin_path,
        )
        self._pid = handle.pid
        watchdog = _start_watchdog(handle, self.timeout)

        def on_error(name: StreamName, error: Exception) -> None:
            handle.kill()

        try:
            yield from iter_output_lines(
                handle.stdout, handle.stderr, encoding=self.encoding, on_error=on_error
            )
            self._status = handle.wait()
        finally:
            if watchdog is not None:
                watchdog.cancel()
            handle.close()
