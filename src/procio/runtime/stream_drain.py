"""Stream drain: consume child pipes without blocking the child.

procio runtime module

A child writing into a pipe blocks once the OS pipe buffer (typically a few
tens of KB) is full. Whoever holds the read end must keep reading until
end-of-stream, on every piped stream at once.

This module provides:
- read_lines / read_all: granularity of one stream
- drain_sequential: stdout to end-of-stream, then stderr (hazardous)
- drain_concurrent: one reader thread per stream, joined before returning
- iter_output_lines: interleaved lines of both streams as they arrive

drain_sequential can deadlock: while it blocks on stdout, a child that fills
the stderr pipe waits forever for it to be read. It is only safe when the
child writes a bounded, small amount to stderr.

Under ToFile nothing here is involved; the OS performs the copy.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import IO

from ..errors import ProcessIOError
from .policy import PipeMode
from .results import CapturedStream, OutputLine, StreamName

__all__ = [
    "StreamCapture",
    "DrainResult",
    "ErrorCallback",
    "read_lines",
    "read_all",
    "drain_sequential",
    "drain_concurrent",
    "iter_output_lines",
]

logger = logging.getLogger(__name__)

# Read size used by READ_ALL
CHUNK_SIZE = 64 * 1024

# Called from the reader with the failing stream and its error
ErrorCallback = Callable[[StreamName, Exception], None]


def _strip_terminator(raw: bytes) -> bytes:
    if raw.endswith(b"\n"):
        raw = raw[:-1]
        if raw.endswith(b"\r"):
            raw = raw[:-1]
    return raw


def read_lines(stream: IO[bytes], encoding: str = "utf-8") -> Iterator[str]:
    """Yield decoded lines until end-of-stream.

    Terminators (``\\n`` and ``\\r\\n``) are stripped. A trailing fragment
    without terminator is yielded as the last line. The iterator is lazy,
    finite and cannot be restarted.
    """
    for raw in iter(stream.readline, b""):
        yield _strip_terminator(raw).decode(encoding, errors="replace")


def read_all(stream: IO[bytes]) -> bytes:
    """Read the whole stream and return it as one buffer."""
    chunks: list[bytes] = []
    while True:
        chunk = stream.read(CHUNK_SIZE)
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)


@dataclass
class StreamCapture:
    """Mutable accumulator for one stream while it is drained.

    Attributes:
        name: stdout or stderr
        mode: Pipe mode
        lines: Lines read so far (line modes)
        data: Bytes read so far (READ_ALL)
        error: Read error, if draining stopped early
    """

    name: StreamName
    mode: PipeMode
    lines: list[str] | None = None
    data: bytes | None = None
    error: Exception | None = None

    def to_model(self) -> CapturedStream:
        return CapturedStream(
            name=self.name,
            mode=self.mode,
            lines=tuple(self.lines) if self.lines is not None else None,
            data=self.data,
            error=str(self.error) if self.error is not None else None,
        )


@dataclass
class DrainResult:
    """Output of a drain, one capture per piped stream.

    Attributes:
        stdout: stdout capture (None if stdout was not drained)
        stderr: stderr capture (None if stderr was not drained)
        output_lines: Arrival-order lines of the CONCURRENT_LINE_BY_LINE streams
    """

    stdout: StreamCapture | None = None
    stderr: StreamCapture | None = None
    output_lines: list[OutputLine] | None = None

    @property
    def failed(self) -> list[StreamCapture]:
        """Captures whose reader hit an error."""
        return [c for c in (self.stdout, self.stderr) if c is not None and c.error is not None]


def _drain_one(
    stream: IO[bytes],
    capture: StreamCapture,
    encoding: str,
    on_line: Callable[[OutputLine], None] | None = None,
    on_error: ErrorCallback | None = None,
) -> None:
    """Drain one stream into its capture; read errors are stored, not raised."""
    chunks: list[bytes] = []
    try:
        if capture.mode is PipeMode.READ_ALL:
            while True:
                chunk = stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                chunks.append(chunk)
        else:
            capture.lines = []
            for text in read_lines(stream, encoding):
                capture.lines.append(text)
                if on_line is not None:
                    on_line(OutputLine(stream=capture.name, text=text))
    except (OSError, ValueError) as e:
        # ValueError: the pipe was closed under the reader
        capture.error = e
        logger.warning(f"Error draining {capture.name}: {e}")
        if on_error is not None:
            on_error(capture.name, e)
    finally:
        if capture.mode is PipeMode.READ_ALL:
            capture.data = b"".join(chunks)


def _targets(
    stdout: IO[bytes] | None,
    stderr: IO[bytes] | None,
    mode: PipeMode,
    stderr_mode: PipeMode | None,
) -> list[tuple[StreamName, IO[bytes], PipeMode]]:
    targets: list[tuple[StreamName, IO[bytes], PipeMode]] = []
    if stdout is not None:
        targets.append(("stdout", stdout, mode))
    if stderr is not None:
        targets.append(("stderr", stderr, stderr_mode or mode))
    return targets


def drain_sequential(
    stdout: IO[bytes] | None,
    stderr: IO[bytes] | None,
    mode: PipeMode,
    stderr_mode: PipeMode | None = None,
    *,
    encoding: str = "utf-8",
    on_error: ErrorCallback | None = None,
) -> DrainResult:
    """Drain stdout fully, then stderr fully, in the calling thread.

    Deadlocks if the child fills the stderr pipe before closing stdout.
    Only use it when the child writes a bounded, small amount to stderr.

    Args:
        stdout: stdout pipe (None = not piped)
        stderr: stderr pipe (None = not piped)
        mode: Pipe mode for stdout (and stderr unless stderr_mode is given)
        stderr_mode: Pipe mode for stderr
        encoding: Encoding for line modes
        on_error: Called as soon as a read fails, e.g. to kill the child
            so the remaining stream reaches end-of-stream

    Raises:
        ValueError: If a stream uses CONCURRENT_LINE_BY_LINE
    """
    targets = _targets(stdout, stderr, mode, stderr_mode)
    if any(m is PipeMode.CONCURRENT_LINE_BY_LINE for _, _, m in targets):
        raise ValueError("CONCURRENT_LINE_BY_LINE streams must be drained concurrently")

    result = DrainResult()
    for name, stream, stream_mode in targets:
        capture = StreamCapture(name=name, mode=stream_mode)
        setattr(result, name, capture)
        _drain_one(stream, capture, encoding, on_error=on_error)

    return result


def drain_concurrent(
    stdout: IO[bytes] | None,
    stderr: IO[bytes] | None,
    mode: PipeMode,
    stderr_mode: PipeMode | None = None,
    *,
    encoding: str = "utf-8",
    on_error: ErrorCallback | None = None,
) -> DrainResult:
    """Drain each piped stream on its own thread and join them all.

    Never blocks the child: every pipe always has a reader. Returns only
    after every reader reached end-of-stream (or failed).

    Args:
        stdout: stdout pipe (None = not piped)
        stderr: stderr pipe (None = not piped)
        mode: Pipe mode for stdout (and stderr unless stderr_mode is given)
        stderr_mode: Pipe mode for stderr
        encoding: Encoding for line modes
        on_error: Called from the failing reader thread. Once a reader
            stops, the child can block on its pipe and keep the other
            stream open; the callback is where it gets killed.
    """
    targets = _targets(stdout, stderr, mode, stderr_mode)
    result = DrainResult()

    merged: list[OutputLine] | None = None
    lock = threading.Lock()
    if any(m is PipeMode.CONCURRENT_LINE_BY_LINE for _, _, m in targets):
        merged = []

    def record(line: OutputLine) -> None:
        with lock:
            merged.append(line)  # type: ignore[union-attr]

    threads: list[threading.Thread] = []
    for name, stream, stream_mode in targets:
        capture = StreamCapture(name=name, mode=stream_mode)
        setattr(result, name, capture)
        on_line = record if stream_mode is PipeMode.CONCURRENT_LINE_BY_LINE else None
        threads.append(
            threading.Thread(
                target=_drain_one,
                args=(stream, capture, encoding, on_line, on_error),
                name=f"procio-drain-{name}",
                daemon=True,
            )
        )

    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    result.output_lines = merged
    return result


@dataclass
class _ReaderDone:
    name: StreamName
    error: Exception | None = field(default=None)


def iter_output_lines(
    stdout: IO[bytes] | None,
    stderr: IO[bytes] | None,
    *,
    encoding: str = "utf-8",
    on_error: ErrorCallback | None = None,
) -> Iterator[OutputLine]:
    """Yield lines of both streams in arrival order.

    One reader thread per stream feeds a queue; lines are yielded as soon as
    they are read. The first read error is raised once both readers are done.

    Raises:
        ProcessIOError: If a reader failed
    """
    items: queue.Queue[OutputLine | _ReaderDone] = queue.Queue()

    def pump(name: StreamName, stream: IO[bytes]) -> None:
        error: Exception | None = None
        try:
            for text in read_lines(stream, encoding):
                items.put(OutputLine(stream=name, text=text))
        except (OSError, ValueError) as e:
            error = e
            if on_error is not None:
                on_error(name, e)
        finally:
            items.put(_ReaderDone(name, error))

    threads = [
        threading.Thread(target=pump, args=(name, stream), name=f"procio-lines-{name}", daemon=True)
        for name, stream, _ in _targets(stdout, stderr, PipeMode.LINE_BY_LINE, None)
    ]
    for thread in threads:
        thread.start()

    remaining = len(threads)
    errors: list[_ReaderDone] = []
    while remaining:
        item = items.get()
        if isinstance(item, _ReaderDone):
            remaining -= 1
            if item.error is not None:
                errors.append(item)
            continue
        yield item

    for thread in threads:
        thread.join()

    if errors:
        first = errors[0]
        raise ProcessIOError(str(first.error), stream=first.name) from first.error
