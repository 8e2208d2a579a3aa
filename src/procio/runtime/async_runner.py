"""Async process runner with concurrent draining and reliable termination.

procio runtime module

This module provides:
- The execution facade on asyncio: policies, drains and result are the same
  as execute(), pipes are drained by one asyncio task per stream
- Interleaved line streaming of stdout/stderr
- Process group/session isolation
- Reliable termination with graceful shutdown (SIGTERM -> timeout -> SIGKILL)
- Cancel-safe cleanup using asyncio.shield

Key design points:
- POSIX: start_new_session=True to create new process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Cancellation terminates the process group, not just the main process
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

import anyio

from ..config import get_config
from ..errors import PolicyError, ProcessIOError, SpawnError
from .policy import DISCARD, PipeMode, RedirectionPolicy, ToPipe
from .process_handle import IS_WINDOWS, _build_popen_kwargs, _stream_targets
from .results import ExecutionResult, ExitStatus, OutputLine, StreamName
from .stream_drain import CHUNK_SIZE, StreamCapture

__all__ = [
    "AsyncProcessRunner",
    "ProcessSpec",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process (None = inherit)
        env: Environment variables (None = inherit parent)
        stdin_bytes: Optional bytes to write to stdin
    """

    argv: list[str]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    stdin_bytes: bytes | None = None


async def _read_lines(reader: asyncio.StreamReader, encoding: str) -> AsyncIterator[str]:
    """Yield decoded lines, same rules as stream_drain.read_lines.

    Splits chunks itself so lines longer than the StreamReader limit work.
    Only the newly read chunk is scanned for terminators.
    """
    pending = bytearray()
    while True:
        chunk = await reader.read(CHUNK_SIZE)
        if not chunk:
            break
        start = 0
        pending += chunk
        newline = pending.find(b"\n", len(pending) - len(chunk))
        while newline != -1:
            raw = pending[start:newline]
            if raw.endswith(b"\r"):
                raw = raw[:-1]
            yield raw.decode(encoding, errors="replace")
            start = newline + 1
            newline = pending.find(b"\n", start)
        del pending[:start]

    if pending:
        yield pending.decode(encoding, errors="replace")


@dataclass
class _StreamEnd:
    name: StreamName
    error: Exception | None = None


def _default_term_timeout() -> float:
    return get_config().term_timeout


def _default_kill_timeout() -> float:
    return get_config().kill_timeout


@dataclass
class AsyncProcessRunner:
    """Async process runner with isolation and reliable termination.

    Example:
        runner = AsyncProcessRunner()
        spec = ProcessSpec(argv=["my-cli", "--json"], stdin_bytes=b"input")

        result = await runner.execute(spec, stdout=ToPipe(PipeMode.READ_ALL))

        async for line in runner.stream_lines(spec):
            handle(line)
    """

    term_timeout: float = field(default_factory=_default_term_timeout)
    kill_timeout: float = field(default_factory=_default_kill_timeout)

    async def execute(
        self,
        spec: ProcessSpec,
        stdout: RedirectionPolicy = DISCARD,
        stderr: RedirectionPolicy = DISCARD,
        *,
        timeout: float | None = None,
        encoding: str | None = None,
    ) -> ExecutionResult:
        """Run the process to completion.

        Piped streams are always drained concurrently. On timeout the process
        group is killed and the result is marked canceled.

        Raises:
            PolicyError: Invalid timeout, or ToStdout for stdout
            SpawnError: The process could not be started
            ProcessIOError: A pipe read failed; partial_result holds what was drained
        """
        if timeout is not None and timeout <= 0:
            raise PolicyError(f"timeout must be positive, got {timeout}")
        encoding = encoding or get_config().encoding

        started = time.monotonic()
        process = await self._spawn(spec, stdout, stderr)
        drain_tasks: list[asyncio.Task[None]] = []
        captures: dict[StreamName, StreamCapture] = {}
        merged: list[OutputLine] = []
        finish: asyncio.Future[int] | None = None
        canceled = False

        try:
            for name, reader, policy in (
                ("stdout", process.stdout, stdout),
                ("stderr", process.stderr, stderr),
            ):
                if reader is None or not isinstance(policy, ToPipe):
                    continue
                capture = StreamCapture(name=name, mode=policy.mode)
                captures[name] = capture
                drain_tasks.append(
                    asyncio.create_task(
                        self._drain_stream(process, reader, capture, merged, encoding)
                    )
                )

            await self._write_stdin(process, spec.stdin_bytes)

            finish = asyncio.ensure_future(self._finish(process, drain_tasks))
            try:
                await asyncio.wait_for(asyncio.shield(finish), timeout=timeout)
            except asyncio.TimeoutError:
                canceled = True
                logger.info(f"Subprocess pid={process.pid} timed out after {timeout}s, killing")
                await self._force_kill(process)
                await finish

            failed = [c for c in captures.values() if c.error is not None]
            status = ExitStatus.from_returncode(
                process.returncode,
                kill_requested=canceled or bool(failed),
                canceled=canceled,
            )

        finally:
            pending = [*drain_tasks, finish] if finish is not None else drain_tasks
            await self._safe_cleanup(process, pending)

        concurrent = any(
            c.mode is PipeMode.CONCURRENT_LINE_BY_LINE for c in captures.values()
        )
        result = ExecutionResult(
            command=tuple(spec.argv),
            pid=process.pid,
            exit_status=status,
            stdout=captures["stdout"].to_model() if "stdout" in captures else None,
            stderr=captures["stderr"].to_model() if "stderr" in captures else None,
            output_lines=tuple(merged) if concurrent else None,
            duration_sec=time.monotonic() - started,
        )

        if failed:
            capture = failed[0]
            result = result.model_copy(
                update={"failed": True, "error": f"{capture.name}: {capture.error}"}
            )
            raise ProcessIOError(str(capture.error), stream=capture.name, partial_result=result)

        return result

    async def stream_lines(
        self,
        spec: ProcessSpec,
        *,
        cancel_scope: anyio.CancelScope | None = None,
        encoding: str | None = None,
    ) -> AsyncIterator[OutputLine]:
        """Run the process and yield stdout/stderr lines as they arrive.

        This method:
        1. Starts the subprocess in an isolated process group/session
        2. Writes stdin_bytes if provided
        3. Yields lines of both streams in arrival order
        4. Ensures cleanup even if cancelled or abandoned

        Args:
            spec: Process specification
            cancel_scope: Optional anyio.CancelScope; iteration stops once it
                is cancelled and the process is terminated
            encoding: Encoding for decoded lines

        Raises:
            SpawnError: The process could not be started
            ProcessIOError: A pipe read failed
        """
        encoding = encoding or get_config().encoding
        pipe = ToPipe(PipeMode.CONCURRENT_LINE_BY_LINE)
        process = await self._spawn(spec, pipe, pipe)
        items: asyncio.Queue[OutputLine | _StreamEnd] = asyncio.Queue()

        async def pump(name: StreamName, reader: asyncio.StreamReader) -> None:
            error: Exception | None = None
            try:
                async for text in _read_lines(reader, encoding):
                    items.put_nowait(OutputLine(stream=name, text=text))
            except OSError as e:
                error = e
            finally:
                items.put_nowait(_StreamEnd(name, error))

        readers = [
            asyncio.create_task(pump(name, reader))
            for name, reader in (("stdout", process.stdout), ("stderr", process.stderr))
            if reader is not None
        ]

        try:
            await self._write_stdin(process, spec.stdin_bytes)

            remaining = len(readers)
            while remaining:
                item = await items.get()
                if isinstance(item, _StreamEnd):
                    remaining -= 1
                    if item.error is not None:
                        raise ProcessIOError(str(item.error), stream=item.name)
                    continue
                if cancel_scope and cancel_scope.cancel_called:
                    break
                yield item

            if not remaining:
                await process.wait()
                logger.debug(
                    f"Subprocess completed pid={process.pid} "
                    f"returncode={process.returncode}"
                )

        finally:
            # Ensure cleanup with shield to prevent cancel interruption
            await self._safe_cleanup(process, readers)

    async def _spawn(
        self,
        spec: ProcessSpec,
        stdout: RedirectionPolicy,
        stderr: RedirectionPolicy,
    ) -> asyncio.subprocess.Process:
        """Create the subprocess with isolation and policy-bound streams."""
        files: dict[Path, IO[bytes]] = {}
        command = spec.argv[0] if spec.argv else ""

        try:
            stdout_target, stderr_target = _stream_targets(stdout, stderr, files)
            # DEVNULL, not None: the child must not read the parent's stdin
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                stdin=asyncio.subprocess.PIPE if spec.stdin_bytes is not None else asyncio.subprocess.DEVNULL,
                stdout=stdout_target,
                stderr=stderr_target,
                **_build_popen_kwargs(spec.cwd, spec.env),
            )
        except FileNotFoundError as e:
            raise SpawnError(f"Executable or path not found: {e}", command=command) from e
        except PermissionError as e:
            raise SpawnError(f"Permission denied: {e}", command=command) from e
        except OSError as e:
            raise SpawnError(f"Failed to start process: {e}", command=command) from e
        finally:
            for f in files.values():
                f.close()

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={command} cwd={spec.cwd}"
        )
        return process

    async def _write_stdin(
        self,
        process: asyncio.subprocess.Process,
        stdin_bytes: bytes | None,
    ) -> None:
        if stdin_bytes is None or process.stdin is None:
            return
        try:
            process.stdin.write(stdin_bytes)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # The child exited without reading its input
            logger.debug(f"stdin closed early by pid={process.pid}")
        finally:
            process.stdin.close()

    async def _finish(
        self,
        process: asyncio.subprocess.Process,
        drain_tasks: list[asyncio.Task[None]],
    ) -> int:
        """Join every drain, then wait for exit."""
        await asyncio.gather(*drain_tasks)
        return await process.wait()

    async def _drain_stream(
        self,
        process: asyncio.subprocess.Process,
        reader: asyncio.StreamReader,
        capture: StreamCapture,
        merged: list[OutputLine],
        encoding: str,
    ) -> None:
        """Drain one pipe into its capture; read errors are stored, not raised.

        After a read error the process group is killed: the child would
        otherwise block on the abandoned pipe and _finish() never return.
        """
        chunks: list[bytes] = []
        try:
            if capture.mode is PipeMode.READ_ALL:
                while True:
                    chunk = await reader.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    chunks.append(chunk)
            else:
                capture.lines = []
                async for text in _read_lines(reader, encoding):
                    capture.lines.append(text)
                    if capture.mode is PipeMode.CONCURRENT_LINE_BY_LINE:
                        merged.append(OutputLine(stream=capture.name, text=text))
        except OSError as e:
            capture.error = e
            logger.warning(f"Error draining {capture.name}: {e}")
            await self._force_kill(process, wait=False)
        finally:
            if capture.mode is PipeMode.READ_ALL:
                capture.data = b"".join(chunks)

    async def _safe_cleanup(
        self,
        process: asyncio.subprocess.Process,
        tasks: list[asyncio.Future],
    ) -> None:
        """Safely cleanup subprocess and tasks, shielded from cancellation."""
        try:
            await asyncio.shield(self._do_cleanup(process, tasks))
        except asyncio.CancelledError:
            # If shield itself is cancelled, still try cleanup
            await self._do_cleanup(process, tasks)

    async def _do_cleanup(
        self,
        process: asyncio.subprocess.Process,
        tasks: list[asyncio.Future],
    ) -> None:
        """Cancel unfinished readers, terminate the process if still running."""
        for task in tasks:
            if not task.done():
                task.cancel()
                try:
                    await task
                except (anyio.get_cancelled_exc_class(), asyncio.CancelledError):
                    pass

        if process.returncode is None:
            await self._terminate_process(process)

    async def _terminate_process(self, process: asyncio.subprocess.Process) -> None:
        """Terminate subprocess gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit
        """
        pid = process.pid
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            if IS_WINDOWS:
                try:
                    os.kill(pid, signal.CTRL_BREAK_EVENT)
                except OSError as e:
                    logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
                    process.terminate()
            else:
                self._signal_group(process, signal.SIGTERM)

            try:
                await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            await self._force_kill(process, wait=False)

            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
                logger.debug(
                    f"Subprocess killed pid={pid} "
                    f"returncode={process.returncode}"
                )
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
        except Exception as e:
            logger.warning(f"Error terminating subprocess pid={pid}: {e}")

    async def _force_kill(self, process: asyncio.subprocess.Process, wait: bool = True) -> None:
        """SIGKILL the process group (kill() on Windows)."""
        if process.returncode is not None:
            return
        if IS_WINDOWS:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        else:
            self._signal_group(process, signal.SIGKILL)
        if wait:
            await process.wait()

    def _signal_group(self, process: asyncio.subprocess.Process, signum: int) -> None:
        try:
            # Same as pid because of start_new_session
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signum)
            logger.debug(f"Sent {signal.Signals(signum).name} to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back: {e}")
            process.send_signal(signum)
