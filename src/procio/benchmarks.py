"""Benchmark cases: one per output-handling strategy.

Each case spawns the benchmarked command, applies one strategy and returns
the result. run_benchmarks() times every iteration with a wall-clock timer
and reports the raw samples; analysing them is left to the caller.

A failing iteration (spawn error, non-zero exit) aborts the whole run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .config import DrainStrategy, get_config
from .runtime import (
    DISCARD,
    INHERIT,
    AsyncProcessRunner,
    ExecutionResult,
    PipeMode,
    ProcessOutputLines,
    ProcessSpec,
    ToFile,
    ToPipe,
    combined_output,
    execute,
    make_temp_path,
)

__all__ = [
    "BenchmarkCase",
    "BenchmarkError",
    "BenchmarkTiming",
    "CASES",
    "run_case",
    "run_benchmarks",
]

logger = logging.getLogger(__name__)


class BenchmarkError(Exception):
    """A benchmark iteration failed; the run is aborted."""

    pass


@dataclass(frozen=True)
class BenchmarkCase:
    """One benchmarked strategy.

    Attributes:
        name: Case name
        description: What the case does to stdout/stderr
        run: Callable(argv, scratch_file) -> exit code
    """

    name: str
    description: str
    run: Callable[[Sequence[str], Path], int]


@dataclass
class BenchmarkTiming:
    """Wall-clock samples of one case, in seconds."""

    name: str
    samples: list[float] = field(default_factory=list)

    @property
    def mean(self) -> float:
        return sum(self.samples) / len(self.samples) if self.samples else 0.0


def _exit_code(result: ExecutionResult) -> int:
    return result.exit_code


def _no_redirection(argv: Sequence[str], _: Path) -> int:
    return _exit_code(execute(argv[0], argv[1:], INHERIT, INHERIT))


def _discard(argv: Sequence[str], _: Path) -> int:
    return _exit_code(execute(argv[0], argv[1:], DISCARD, DISCARD))


def _redirect_to_file(argv: Sequence[str], scratch: Path) -> int:
    return _exit_code(execute(argv[0], argv[1:], ToFile(scratch), DISCARD))


def _pipe(mode: PipeMode) -> Callable[[Sequence[str], Path], int]:
    def run(argv: Sequence[str], _: Path) -> int:
        return _exit_code(execute(argv[0], argv[1:], ToPipe(mode), ToPipe(mode)))

    return run


def _read_both_sequential(argv: Sequence[str], _: Path) -> int:
    # Safe only while the command writes little to stderr
    result = execute(
        argv[0],
        argv[1:],
        ToPipe(PipeMode.READ_ALL),
        ToPipe(PipeMode.READ_ALL),
        strategy=DrainStrategy.SEQUENTIAL,
        accept_deadlock_risk=True,
    )
    return _exit_code(result)


def _combined_output(argv: Sequence[str], _: Path) -> int:
    return _exit_code(combined_output(argv[0], argv[1:]))


def _output_lines(argv: Sequence[str], _: Path) -> int:
    lines = ProcessOutputLines(argv[0], argv[1:])
    for _line in lines:
        pass
    return lines.exit_status.exit_code


def _async_read_all(argv: Sequence[str], _: Path) -> int:
    runner = AsyncProcessRunner()
    spec = ProcessSpec(argv=list(argv))
    mode = ToPipe(PipeMode.READ_ALL)
    return _exit_code(asyncio.run(runner.execute(spec, mode, mode)))


CASES: tuple[BenchmarkCase, ...] = (
    BenchmarkCase("no_redirection", "both streams inherited", _no_redirection),
    BenchmarkCase("discard", "both streams to the null device", _discard),
    BenchmarkCase("redirect_to_file", "stdout written to a file by the OS", _redirect_to_file),
    BenchmarkCase("pipe_lines", "both piped, line by line, concurrent", _pipe(PipeMode.LINE_BY_LINE)),
    BenchmarkCase("pipe_read_all", "both piped, read to end, concurrent", _pipe(PipeMode.READ_ALL)),
    BenchmarkCase(
        "pipe_concurrent_lines",
        "both piped, interleaved lines",
        _pipe(PipeMode.CONCURRENT_LINE_BY_LINE),
    ),
    BenchmarkCase("read_both_sequential", "stdout then stderr read to end", _read_both_sequential),
    BenchmarkCase("combined_output", "stderr shares the stdout pipe, read to end", _combined_output),
    BenchmarkCase("output_lines", "interleaved lines streamed as they arrive", _output_lines),
    BenchmarkCase("async_read_all", "asyncio runner, both piped, read to end", _async_read_all),
)


def run_case(
    case: BenchmarkCase,
    command: Sequence[str],
    iterations: int,
    scratch: Path,
) -> BenchmarkTiming:
    """Time ``iterations`` runs of one case.

    Raises:
        BenchmarkError: If an iteration fails or exits non-zero
    """
    timing = BenchmarkTiming(name=case.name)

    for i in range(iterations):
        started = time.perf_counter()
        try:
            exit_code = case.run(command, scratch)
        except Exception as e:
            raise BenchmarkError(f"{case.name}: iteration {i} failed: {e}") from e
        timing.samples.append(time.perf_counter() - started)

        if exit_code != 0:
            raise BenchmarkError(f"{case.name}: iteration {i} exited with {exit_code}")

    logger.debug(f"Benchmark {case.name}: {iterations} iterations, mean={timing.mean:.6f}s")
    return timing


def run_benchmarks(
    command: Sequence[str] | None = None,
    iterations: int | None = None,
    names: Sequence[str] | None = None,
) -> list[BenchmarkTiming]:
    """Run the selected cases (all by default).

    Args:
        command: Benchmarked command (default from PROCIO_BENCH_COMMAND)
        iterations: Iterations per case (default from PROCIO_BENCH_ITERATIONS)
        names: Case names to run

    Raises:
        ValueError: Unknown case name
        BenchmarkError: A case failed
    """
    config = get_config()
    command = list(command) if command else config.bench_command
    iterations = iterations if iterations is not None else config.bench_iterations

    selected = list(CASES)
    if names:
        known = {case.name: case for case in CASES}
        unknown = [n for n in names if n not in known]
        if unknown:
            raise ValueError(f"Unknown benchmark case(s): {', '.join(unknown)}")
        selected = [known[n] for n in names]

    scratch = make_temp_path(suffix=".bench")
    try:
        return [run_case(case, command, iterations, scratch) for case in selected]
    finally:
        scratch.unlink(missing_ok=True)
