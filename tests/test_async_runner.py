"""AsyncProcessRunner unit tests.

Test coverage:
- Basic process execution (captured output per pipe mode)
- Stdin writing
- Process isolation (new session/process group)
- Timeout and cancellation
- Interleaved line streaming
- Cleanup behavior (shield from cancellation)
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from contextlib import aclosing
from pathlib import Path

import anyio
import pytest

from procio.errors import PolicyError, ProcessIOError, SpawnError
from procio.runtime import async_runner
from procio.runtime.async_runner import AsyncProcessRunner, ProcessSpec
from procio.runtime.policy import TO_STDOUT, PipeMode, ToFile, ToPipe
from procio.runtime.process_handle import IS_WINDOWS


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def runner() -> AsyncProcessRunner:
    """Create AsyncProcessRunner instance with short timeouts for testing."""
    return AsyncProcessRunner(term_timeout=0.5, kill_timeout=0.3)


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


# =============================================================================
# Basic Execution Tests
# =============================================================================


class TestBasicExecution:
    """Test basic process execution."""

    @pytest.mark.asyncio
    async def test_read_all(self, child: list[str], runner: AsyncProcessRunner):
        spec = ProcessSpec(argv=[*child, "--stdout-text", "hello"])
        result = await runner.execute(spec, ToPipe(PipeMode.READ_ALL))

        assert result.exit_code == 0
        assert result.stdout_bytes == b"hello"
        assert result.stderr is None

    @pytest.mark.asyncio
    async def test_line_by_line(self, child: list[str], runner: AsyncProcessRunner):
        spec = ProcessSpec(argv=[*child, "--stdout-text", "a\r\nb\nc"])
        result = await runner.execute(spec, ToPipe(PipeMode.LINE_BY_LINE))

        assert result.stdout_lines == ("a", "b", "c")

    @pytest.mark.asyncio
    async def test_exit_code(self, child: list[str], runner: AsyncProcessRunner):
        spec = ProcessSpec(argv=[*child, "--exit-code", "9"])
        result = await runner.execute(spec)

        assert result.exit_code == 9
        assert result.was_killed is False

    @pytest.mark.asyncio
    async def test_working_directory(self, temp_workspace: Path, runner: AsyncProcessRunner):
        spec = ProcessSpec(
            argv=[sys.executable, "-c", "import os, sys; sys.stdout.write(os.getcwd())"],
            cwd=temp_workspace,
        )
        result = await runner.execute(spec, ToPipe(PipeMode.READ_ALL))

        assert Path(result.stdout.text).resolve() == temp_workspace.resolve()

    @pytest.mark.asyncio
    async def test_to_file(self, child: list[str], tmp_path: Path, runner: AsyncProcessRunner):
        target = tmp_path / "out.txt"
        spec = ProcessSpec(argv=[*child, "--stdout-lines", "2"])
        result = await runner.execute(spec, ToFile(target))

        assert result.stdout is None
        assert target.read_text() == "out 0\nout 1\n"

    @pytest.mark.asyncio
    @pytest.mark.timeout(60)
    async def test_large_output_on_both_pipes(self, child: list[str], runner: AsyncProcessRunner):
        size = 5 * 1024 * 1024
        spec = ProcessSpec(argv=[*child, "--stdout-bytes", str(size), "--stderr-bytes", str(size)])
        pipe = ToPipe(PipeMode.READ_ALL)
        result = await runner.execute(spec, pipe, pipe)

        assert len(result.stdout_bytes) == size
        assert len(result.stderr_bytes) == size

    @pytest.mark.asyncio
    async def test_concurrent_lines(self, child: list[str], runner: AsyncProcessRunner):
        spec = ProcessSpec(argv=[*child, "--interleave", "3"])
        pipe = ToPipe(PipeMode.CONCURRENT_LINE_BY_LINE)
        result = await runner.execute(spec, pipe, pipe)

        assert result.stdout_lines == ("out 0", "out 1", "out 2")
        assert result.stderr_lines == ("err 0", "err 1", "err 2")
        assert len(result.output_lines) == 6

    @pytest.mark.asyncio
    async def test_line_longer_than_reader_limit(self, child: list[str], runner: AsyncProcessRunner):
        spec = ProcessSpec(argv=[*child, "--stdout-bytes", str(256 * 1024)])
        result = await runner.execute(spec, ToPipe(PipeMode.LINE_BY_LINE))

        assert result.stdout_lines == ("o" * 256 * 1024,)

    @pytest.mark.asyncio
    async def test_combined_output(self, child: list[str], runner: AsyncProcessRunner):
        spec = ProcessSpec(argv=[*child, "--interleave", "2", "--exit-code", "4"])
        result = await runner.execute(spec, ToPipe(PipeMode.READ_ALL), TO_STDOUT)

        assert result.stdout_bytes == b"out 0\nerr 0\nout 1\nerr 1\n"
        assert result.stderr is None
        assert result.exit_code == 4

    @pytest.mark.asyncio
    async def test_stdout_to_stdout_rejected(self, child: list[str], runner: AsyncProcessRunner):
        with pytest.raises(PolicyError):
            await runner.execute(ProcessSpec(argv=child), TO_STDOUT)


class TestReadLines:
    """Line splitting over StreamReader chunks."""

    @staticmethod
    def _reader(*chunks: bytes) -> asyncio.StreamReader:
        reader = asyncio.StreamReader()
        for chunk in chunks:
            reader.feed_data(chunk)
        reader.feed_eof()
        return reader

    async def _collect(self, reader: asyncio.StreamReader) -> list[str]:
        return [line async for line in async_runner._read_lines(reader, "utf-8")]

    @pytest.mark.asyncio
    async def test_terminators_and_fragment(self):
        reader = self._reader(b"a\r\nb\n\nc")
        assert await self._collect(reader) == ["a", "b", "", "c"]

    @pytest.mark.asyncio
    async def test_lines_split_across_chunks(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(async_runner, "CHUNK_SIZE", 3)
        reader = self._reader(b"first\r", b"\nsecond line\nthird")
        assert await self._collect(reader) == ["first", "second line", "third"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_long_line_in_small_chunks(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(async_runner, "CHUNK_SIZE", 1024)
        size = 8 * 1024 * 1024
        reader = self._reader(b"x" * size + b"\nend\n")
        lines = await self._collect(reader)

        assert [len(line) for line in lines] == [size, 3]

    @pytest.mark.asyncio
    async def test_invalid_bytes_replaced(self):
        reader = self._reader(b"\xff\n")
        assert await self._collect(reader) == ["\ufffd"]


# =============================================================================
# Stdin Tests
# =============================================================================


class TestStdinHandling:
    """Test stdin handling."""

    @pytest.mark.asyncio
    async def test_stdin_write(self, child: list[str], runner: AsyncProcessRunner):
        spec = ProcessSpec(argv=[*child, "--echo-stdin"], stdin_bytes=b"hello from stdin\n")
        result = await runner.execute(spec, ToPipe(PipeMode.LINE_BY_LINE))

        assert result.stdout_lines == ("hello from stdin",)

    @pytest.mark.asyncio
    async def test_stdin_default_is_null_device(self, child: list[str], runner: AsyncProcessRunner):
        spec = ProcessSpec(argv=[*child, "--echo-stdin"])
        result = await runner.execute(spec, ToPipe(PipeMode.READ_ALL))

        assert result.stdout_bytes == b""

    @pytest.mark.asyncio
    async def test_stdin_ignored_by_child(self, child: list[str], runner: AsyncProcessRunner):
        """A child that exits without reading stdin is not an error."""
        spec = ProcessSpec(argv=[*child], stdin_bytes=b"x" * (1024 * 1024))
        result = await runner.execute(spec)

        assert result.exit_code == 0


# =============================================================================
# Process Isolation Tests
# =============================================================================


class TestProcessIsolation:
    """Test process isolation (new session/process group)."""

    @pytest.mark.asyncio
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific test")
    async def test_new_session_posix(self, runner: AsyncProcessRunner):
        """Test that process runs in new session on POSIX."""
        spec = ProcessSpec(
            argv=[sys.executable, "-c", "import os, sys; sys.stdout.write(str(os.getsid(0)))"],
        )
        result = await runner.execute(spec, ToPipe(PipeMode.READ_ALL))

        assert int(result.stdout.text) != os.getsid(os.getpid())
        assert int(result.stdout.text) == result.pid


# =============================================================================
# Timeout / Cancellation Tests
# =============================================================================


class TestTermination:
    """Test process termination."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_timeout_marks_canceled(self, child: list[str], runner: AsyncProcessRunner):
        spec = ProcessSpec(argv=[*child, "--stdout-lines", "1", "--sleep", "30"])
        result = await runner.execute(spec, ToPipe(PipeMode.LINE_BY_LINE), timeout=0.5)

        assert result.exit_status.canceled is True
        assert result.was_killed is True
        assert result.stdout_lines == ("out 0",)
        if not IS_WINDOWS:
            assert result.exit_status.signal == signal.SIGKILL

    @pytest.mark.asyncio
    async def test_invalid_timeout(self, child: list[str], runner: AsyncProcessRunner):
        with pytest.raises(PolicyError):
            await runner.execute(ProcessSpec(argv=child), timeout=0)

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific test")
    async def test_cancellation_terminates_process(self, tmp_path: Path, runner: AsyncProcessRunner):
        """Test that task cancellation terminates subprocess."""
        pid_file = tmp_path / "pid"
        spec = ProcessSpec(
            argv=[
                sys.executable,
                "-c",
                f"import os, time; open({str(pid_file)!r}, 'w').write(str(os.getpid())); time.sleep(30)",
            ],
        )

        task = asyncio.create_task(runner.execute(spec, ToPipe(PipeMode.READ_ALL)))

        # Let it start
        for _ in range(100):
            if pid_file.exists() and pid_file.read_text():
                break
            await asyncio.sleep(0.05)
        pid = int(pid_file.read_text())

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not _alive(pid)


# =============================================================================
# Streaming Tests
# =============================================================================


class TestStreamLines:
    """Test interleaved line streaming."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_stream_both_streams(self, child: list[str], runner: AsyncProcessRunner):
        spec = ProcessSpec(argv=[*child, "--interleave", "2"])

        lines = [(line.stream, line.text) async for line in runner.stream_lines(spec)]

        assert sorted(lines) == [
            ("stderr", "err 0"),
            ("stderr", "err 1"),
            ("stdout", "out 0"),
            ("stdout", "out 1"),
        ]

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_early_close_terminates_process(self, child: list[str], runner: AsyncProcessRunner):
        spec = ProcessSpec(argv=[*child, "--stdout-lines", "1", "--sleep", "30"])

        async with aclosing(runner.stream_lines(spec)) as lines:
            async for line in lines:
                assert line.text == "out 0"
                break

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_cancel_scope_stops_iteration(self, child: list[str], runner: AsyncProcessRunner):
        """Test that cancel_scope stops the iteration."""
        spec = ProcessSpec(argv=[*child, "--stdout-lines", "10"])

        cancel_scope = anyio.CancelScope()
        output_count = 0

        async for _ in runner.stream_lines(spec, cancel_scope=cancel_scope):
            output_count += 1
            if output_count >= 3:
                cancel_scope.cancel()

        # The process produces 10 lines but we stop at 3
        assert output_count == 3


# =============================================================================
# ProcessSpec Tests
# =============================================================================


class TestProcessSpec:
    """Test ProcessSpec dataclass."""

    def test_frozen(self, temp_workspace: Path):
        """Test that ProcessSpec is immutable."""
        spec = ProcessSpec(argv=["echo", "test"], cwd=temp_workspace)

        with pytest.raises(AttributeError):
            spec.argv = ["other"]  # type: ignore

    def test_default_values(self):
        spec = ProcessSpec(argv=["echo"])

        assert spec.cwd is None
        assert spec.env is None
        assert spec.stdin_bytes is None


# =============================================================================
# Edge Cases
# =============================================================================


class TestEdgeCases:
    """Test edge cases and error handling."""

    @pytest.mark.asyncio
    async def test_nonexistent_command(self, runner: AsyncProcessRunner):
        with pytest.raises(SpawnError):
            await runner.execute(ProcessSpec(argv=["nonexistent_command_xyz_123"]))

    @pytest.mark.asyncio
    async def test_nonexistent_command_streaming(self, runner: AsyncProcessRunner):
        with pytest.raises(SpawnError):
            async for _ in runner.stream_lines(ProcessSpec(argv=["nonexistent_command_xyz_123"])):
                pass

    @pytest.mark.asyncio
    async def test_empty_output(self, child: list[str], runner: AsyncProcessRunner):
        pipe = ToPipe(PipeMode.LINE_BY_LINE)
        result = await runner.execute(ProcessSpec(argv=child), pipe, pipe)

        assert result.stdout_lines == ()
        assert result.stderr_lines == ()

    @pytest.mark.asyncio
    async def test_read_error_keeps_partial_output(
        self, child: list[str], runner: AsyncProcessRunner, monkeypatch: pytest.MonkeyPatch
    ):
        async def failing_read_lines(reader, encoding):
            line = await reader.readline()
            yield line.rstrip(b"\n").decode(encoding)
            raise OSError("simulated read failure")

        monkeypatch.setattr(async_runner, "_read_lines", failing_read_lines)
        spec = ProcessSpec(argv=[*child, "--stdout-lines", "3"])

        with pytest.raises(ProcessIOError) as exc_info:
            await runner.execute(spec, ToPipe(PipeMode.LINE_BY_LINE))

        partial = exc_info.value.partial_result
        assert partial is not None
        assert partial.failed is True
        assert partial.stdout_lines == ("out 0",)

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_read_error_kills_child_blocked_on_pipe(
        self, child: list[str], runner: AsyncProcessRunner, monkeypatch: pytest.MonkeyPatch
    ):
        """The child fills the abandoned stdout pipe while stderr stays open."""

        async def failing_read_lines(reader, encoding):
            line = await reader.readline()
            yield line.rstrip(b"\n").decode(encoding)
            raise OSError("simulated read failure")

        monkeypatch.setattr(async_runner, "_read_lines", failing_read_lines)
        spec = ProcessSpec(argv=[*child, "--stderr-text", "e", "--stdout-lines", "200000"])

        with pytest.raises(ProcessIOError) as exc_info:
            await asyncio.wait_for(
                runner.execute(spec, ToPipe(PipeMode.LINE_BY_LINE), ToPipe(PipeMode.READ_ALL)),
                timeout=20,
            )

        partial = exc_info.value.partial_result
        assert exc_info.value.stream == "stdout"
        assert partial.failed is True
        assert partial.stdout_lines == ("out 0",)
        assert partial.stderr_bytes == b"e"
        assert partial.exit_status.killed is True
        assert partial.exit_status.canceled is False
