"""Process handle: one spawned child from creation to exit.

procio runtime module

This module provides:
- Spawning with each standard stream bound according to a RedirectionPolicy
- Process group/session isolation (POSIX new session, Windows new process group)
- Blocking wait with a cached exit status
- Best-effort kill and graceful termination (SIGTERM -> timeout -> SIGKILL)

Key design points:
- stdin defaults to the null device so the child never waits on input
- Redirect files are opened (truncated) before spawn and the parent's copy
  is closed right after; the OS writes to them, not this process
- Under ToPipe the caller must drain the pipes or the child blocks once the
  OS pipe buffer is full
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from collections.abc import Mapping, Sequence
from enum import Enum
from pathlib import Path
from typing import IO, Any

from ..config import get_config
from ..errors import PolicyError, SpawnError, WaitError
from .policy import DISCARD, Discard, Inherit, RedirectionPolicy, ToFile, ToPipe, ToStdout
from .results import ExitStatus

__all__ = [
    "IS_WINDOWS",
    "ProcessHandle",
    "ProcessState",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"


class ProcessState(str, Enum):
    """Lifecycle state of a spawned process."""

    RUNNING = "running"
    EXITED = "exited"


def _stream_target(policy: RedirectionPolicy, files: dict[Path, IO[bytes]]) -> Any:
    """Translate a policy into a Popen stdout/stderr argument.

    Both streams redirected to the same path share one file object, so their
    writes land in order in a single file.
    """
    if isinstance(policy, Discard):
        return subprocess.DEVNULL
    if isinstance(policy, Inherit):
        return None
    if isinstance(policy, ToPipe):
        return subprocess.PIPE
    if isinstance(policy, ToStdout):
        return subprocess.STDOUT
    if isinstance(policy, ToFile):
        key = policy.path.resolve()
        if key not in files:
            files[key] = open(policy.path, "wb")
        return files[key]
    raise TypeError(f"Unsupported redirection policy: {policy!r}")


def _stream_targets(
    stdout: RedirectionPolicy,
    stderr: RedirectionPolicy,
    files: dict[Path, IO[bytes]],
) -> tuple[Any, Any]:
    """Popen stdout/stderr arguments for a policy pair.

    Raises:
        PolicyError: If stdout is ToStdout
    """
    if isinstance(stdout, ToStdout):
        raise PolicyError("ToStdout is only valid for stderr")
    return _stream_target(stdout, files), _stream_target(stderr, files)


def _build_popen_kwargs(
    cwd: Path | str | None,
    env: Mapping[str, str] | None,
) -> dict[str, Any]:
    """Build platform-specific Popen kwargs."""
    kwargs: dict[str, Any] = {}

    if cwd is not None:
        kwargs["cwd"] = cwd
    if env is not None:
        kwargs["env"] = dict(env)

    if IS_WINDOWS:
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True

    return kwargs


class ProcessHandle:
    """A spawned OS process and the pipes it owns.

    Example:
        with ProcessHandle.spawn("git", ["status"], stdout=ToPipe()) as handle:
            for line in read_lines(handle.stdout):
                print(line)
            status = handle.wait()

    Thread safety:
        kill() may be called from another thread (e.g. a timeout watchdog)
        while wait() blocks.
    """

    def __init__(
        self,
        popen: subprocess.Popen[bytes],
        argv: Sequence[str],
        *,
        term_timeout: float | None = None,
        kill_timeout: float | None = None,
    ) -> None:
        config = get_config()
        self._popen = popen
        self.argv = tuple(argv)
        self.term_timeout = term_timeout if term_timeout is not None else config.term_timeout
        self.kill_timeout = kill_timeout if kill_timeout is not None else config.kill_timeout

        self._status: ExitStatus | None = None
        self._kill_requested = False
        self._canceled = False

    @classmethod
    def spawn(
        cls,
        command: str,
        args: Sequence[str] = (),
        stdout: RedirectionPolicy = DISCARD,
        stderr: RedirectionPolicy = DISCARD,
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        stdin_path: Path | str | None = None,
        term_timeout: float | None = None,
        kill_timeout: float | None = None,
    ) -> "ProcessHandle":
        """Launch a process with its streams configured per policy.

        Args:
            command: Executable name or path
            args: Arguments passed after the executable
            stdout: Policy for the child's stdout
            stderr: Policy for the child's stderr
            cwd: Working directory (None = inherit)
            env: Environment (None = inherit parent)
            stdin_path: File fed to stdin (None = null device)
            term_timeout: Grace period after SIGTERM in terminate()
            kill_timeout: Wait after SIGKILL in terminate()

        Returns:
            Handle owning the running process

        Raises:
            SpawnError: Executable missing, permission denied or OS failure
        """
        argv = [command, *args]
        files: dict[Path, IO[bytes]] = {}
        stdin_file: IO[bytes] | None = None

        try:
            stdout_target, stderr_target = _stream_targets(stdout, stderr, files)
            if stdin_path is not None:
                stdin_file = open(stdin_path, "rb")

            popen = subprocess.Popen(
                argv,
                stdin=stdin_file if stdin_file is not None else subprocess.DEVNULL,
                stdout=stdout_target,
                stderr=stderr_target,
                **_build_popen_kwargs(cwd, env),
            )
        except FileNotFoundError as e:
            raise SpawnError(f"Executable or path not found: {e}", command=command) from e
        except PermissionError as e:
            raise SpawnError(f"Permission denied: {e}", command=command) from e
        except OSError as e:
            raise SpawnError(f"Failed to start process: {e}", command=command) from e
        finally:
            # The child holds its own copies of these descriptors
            for f in files.values():
                f.close()
            if stdin_file is not None:
                stdin_file.close()

        logger.debug(f"Started subprocess pid={popen.pid} argv={argv[0]} cwd={cwd}")

        return cls(popen, argv, term_timeout=term_timeout, kill_timeout=kill_timeout)

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def state(self) -> ProcessState:
        if self._status is not None or self._popen.poll() is not None:
            return ProcessState.EXITED
        return ProcessState.RUNNING

    @property
    def stdout(self) -> IO[bytes] | None:
        """Read end of the stdout pipe, None unless stdout is ToPipe."""
        return self._popen.stdout

    @property
    def stderr(self) -> IO[bytes] | None:
        """Read end of the stderr pipe, None unless stderr is ToPipe."""
        return self._popen.stderr

    def wait(self, timeout: float | None = None) -> ExitStatus:
        """Block until the process exits.

        Calling again after exit returns the cached status.

        Args:
            timeout: Seconds to wait (None = forever)

        Raises:
            TimeoutError: If the process is still running after timeout
            WaitError: If the exit status cannot be obtained
        """
        if self._status is not None:
            return self._status

        try:
            if IS_WINDOWS or self._popen.returncode is not None:
                returncode = self._popen.wait(timeout=timeout)
            else:
                returncode = self._waitpid(timeout)
        except subprocess.TimeoutExpired as e:
            raise TimeoutError(
                f"Process pid={self.pid} still running after {timeout}s"
            ) from e
        except OSError as e:
            raise WaitError(f"Cannot obtain exit status of pid={self.pid}: {e}") from e

        self._status = ExitStatus.from_returncode(
            returncode,
            kill_requested=self._kill_requested,
            canceled=self._canceled,
        )
        logger.debug(
            f"Subprocess completed pid={self.pid} "
            f"returncode={returncode}"
        )
        return self._status

    def _waitpid(self, timeout: float | None) -> int:
        """Reap the child with os.waitpid (POSIX).

        Popen.wait() reports a child reaped elsewhere as exit code 0; here
        ECHILD surfaces as ChildProcessError instead.
        """
        pid, status = os.waitpid(self.pid, os.WNOHANG)
        if pid == 0:
            if timeout is not None:
                # Still running: Popen.wait polls until the deadline
                return self._popen.wait(timeout=timeout)
            pid, status = os.waitpid(self.pid, 0)

        self._popen.returncode = os.waitstatus_to_exitcode(status)
        return self._popen.returncode

    def kill(self, *, canceled: bool = False) -> None:
        """Force-kill the process (group). Best effort, never raises.

        Args:
            canceled: Mark the exit status as canceled (timeout/cancellation)
        """
        if self._popen.returncode is not None:
            return

        self._kill_requested = True
        if canceled:
            self._canceled = True

        if IS_WINDOWS:
            try:
                self._popen.kill()
                logger.debug(f"Called kill() on pid={self.pid}")
            except (ProcessLookupError, OSError):
                pass
            return

        try:
            pgid = os.getpgid(self.pid)
            os.killpg(pgid, signal.SIGKILL)
            logger.debug(f"Sent SIGKILL to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to kill: {e}")
            try:
                self._popen.kill()
            except ProcessLookupError:
                pass

    def terminate(self) -> ExitStatus | None:
        """Terminate gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM to the group (CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, kill()
        4. Wait up to kill_timeout for forced exit

        Returns:
            Exit status, or None if the process did not exit after kill
        """
        if self._popen.poll() is not None:
            return self.wait()

        pid = self.pid
        logger.debug(f"Terminating subprocess pid={pid}")

        self._send_terminate()
        try:
            status = self.wait(timeout=self.term_timeout)
            logger.debug(f"Subprocess terminated gracefully pid={pid} exit_code={status.exit_code}")
            return status
        except TimeoutError:
            pass

        logger.debug(f"Force killing subprocess pid={pid}")
        self.kill()
        try:
            return self.wait(timeout=self.kill_timeout)
        except TimeoutError:
            logger.warning(f"Subprocess did not exit after kill pid={pid}")
            return None

    def _send_terminate(self) -> None:
        """Send SIGTERM to the process group (CTRL_BREAK_EVENT on Windows)."""
        if IS_WINDOWS:
            try:
                # Works because of CREATE_NEW_PROCESS_GROUP
                os.kill(self.pid, signal.CTRL_BREAK_EVENT)
                logger.debug(f"Sent CTRL_BREAK_EVENT to pid={self.pid}")
            except OSError as e:
                logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
                self._popen.terminate()
            return

        try:
            pgid = os.getpgid(self.pid)
            os.killpg(pgid, signal.SIGTERM)
            logger.debug(f"Sent SIGTERM to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to terminate: {e}")
            self._popen.terminate()

    def close(self) -> None:
        """Release the process: terminate it if still running, close pipes."""
        try:
            if self._popen.poll() is None:
                self.terminate()
        finally:
            for stream in (self._popen.stdout, self._popen.stderr):
                if stream is not None:
                    stream.close()

    def __enter__(self) -> "ProcessHandle":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"ProcessHandle(pid={self.pid}, "
            f"argv={self.argv[0]}, "
            f"state={self.state.value})"
        )
