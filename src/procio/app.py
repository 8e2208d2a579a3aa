"""procio command line application.

Subcommands:
    run    Execute one command with the given stdout/stderr policies and
           print the result as JSON
    bench  Time every benchmark case (or the selected ones)

Examples:
    python -m procio run --stdout pipe:lines --stderr discard -- git status
    python -m procio run --stdout file:/tmp/out.txt -- make
    python -m procio bench --iterations 20 --case discard --case pipe_lines
"""

from __future__ import annotations

import argparse
import json
import logging
import shlex
import sys
from typing import Any

from . import __version__
from .benchmarks import CASES, BenchmarkError, run_benchmarks
from .config import DrainStrategy, get_config
from .errors import ExecutionError, ProcessIOError
from .runtime import ExecutionResult, execute, parse_policy

__all__ = ["main", "build_parser", "result_to_dict"]

logger = logging.getLogger(__name__)


def result_to_dict(result: ExecutionResult) -> dict[str, Any]:
    """JSON-friendly view of a result; captured output is decoded."""
    payload = result.model_dump(mode="json", exclude={"stdout", "stderr", "output_lines"})
    for name in ("stdout", "stderr"):
        captured = getattr(result, name)
        if captured is None:
            continue
        payload[name] = captured.lines if captured.lines is not None else captured.text
    if result.output_lines is not None:
        payload["output_lines"] = [
            {"stream": line.stream, "text": line.text} for line in result.output_lines
        ]
    return payload


def _policy(text: str):
    try:
        return parse_policy(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="procio",
        description="Spawn child processes with configurable output redirection",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="subcommand", required=True)

    run = subparsers.add_parser("run", help="Execute a command and print the result")
    run.add_argument(
        "--stdout",
        type=_policy,
        default="pipe:lines",
        help="discard | inherit | file:PATH | pipe[:lines|all|concurrent] (default pipe:lines)",
    )
    run.add_argument(
        "--stderr",
        type=_policy,
        default="pipe:lines",
        help="Same forms as --stdout, or stdout to share its stream (default pipe:lines)",
    )
    run.add_argument(
        "--strategy",
        choices=[s.value for s in DrainStrategy],
        default=None,
        help="Drain strategy for piped streams (default from PROCIO_DRAIN_STRATEGY)",
    )
    run.add_argument(
        "--accept-deadlock-risk",
        action="store_true",
        help="Allow the sequential strategy with both streams piped",
    )
    run.add_argument("--timeout", type=float, default=None, help="Kill after SECONDS")
    run.add_argument("--cwd", default=None, help="Working directory")
    run.add_argument("--stdin", dest="stdin_path", default=None, help="File fed to stdin")
    run.add_argument("argv", nargs=argparse.REMAINDER, help="Command and arguments")

    bench = subparsers.add_parser("bench", help="Run the benchmark cases")
    bench.add_argument("--iterations", type=int, default=None, help="Iterations per case")
    bench.add_argument(
        "--case",
        dest="cases",
        action="append",
        choices=[case.name for case in CASES],
        help="Case to run (repeatable, default all)",
    )
    bench.add_argument(
        "--command",
        default=None,
        help="Benchmarked command line (default from PROCIO_BENCH_COMMAND)",
    )
    bench.add_argument("--list", action="store_true", help="List cases and exit")

    return parser


def _run(args: argparse.Namespace) -> int:
    argv = list(args.argv)
    if argv and argv[0] == "--":
        argv = argv[1:]
    if not argv:
        print("procio run: missing command", file=sys.stderr)
        return 2

    strategy = DrainStrategy(args.strategy) if args.strategy else None
    try:
        result = execute(
            argv[0],
            argv[1:],
            args.stdout,
            args.stderr,
            strategy=strategy,
            accept_deadlock_risk=args.accept_deadlock_risk,
            cwd=args.cwd,
            stdin_path=args.stdin_path,
            timeout=args.timeout,
        )
    except ProcessIOError as e:
        logger.error(f"Execution failed: {e}")
        if e.partial_result is not None:
            print(json.dumps(result_to_dict(e.partial_result), ensure_ascii=False, indent=2))
        return 1
    except ExecutionError as e:
        logger.error(f"Execution failed: {e}")
        return 1

    print(json.dumps(result_to_dict(result), ensure_ascii=False, indent=2))
    return result.exit_code


def _bench(args: argparse.Namespace) -> int:
    if args.list:
        for case in CASES:
            print(f"{case.name:<24} {case.description}")
        return 0

    command = shlex.split(args.command) if args.command else None
    try:
        timings = run_benchmarks(command, args.iterations, args.cases)
    except BenchmarkError as e:
        logger.error(f"Benchmark aborted: {e}")
        return 1

    for timing in timings:
        print(f"{timing.name:<24} {timing.mean * 1000:10.3f} ms  ({len(timing.samples)} samples)")
    return 0


def _configure_logging() -> None:
    config = get_config()
    log_handlers: list[logging.Handler] = []
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(fmt)
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(fmt)
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # Root logger (third-party libraries) at WARNING to reduce noise
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    logging.getLogger("procio").setLevel(log_level)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    _configure_logging()
    args = build_parser().parse_args(argv)
    logger.debug(f"Starting procio {args.subcommand}: {get_config()}")

    if args.subcommand == "run":
        return _run(args)
    return _bench(args)


if __name__ == "__main__":
    sys.exit(main())
