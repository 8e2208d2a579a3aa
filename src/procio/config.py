"""procio environment variable configuration.

Environment variables:
    PROCIO_DRAIN_STRATEGY: How piped streams are drained by default
        - concurrent = one reader per stream (default, deadlock free)
        - sequential = stdout fully, then stderr (hazardous, see stream_drain)

    PROCIO_ENCODING: Encoding used to decode captured lines
        - default utf-8

    PROCIO_TERM_TIMEOUT: Seconds to wait after SIGTERM before SIGKILL
        - default 2.0, clamped to 0.1-60

    PROCIO_KILL_TIMEOUT: Seconds to wait after SIGKILL
        - default 1.0, clamped to 0.1-60

    PROCIO_TEMP_DIR: Directory for redirect-to-file targets and debug logs
        - default: the platform temporary directory

    PROCIO_LOG_DEBUG: Debug logging
        - true/1/yes = on (DEBUG level, logs go to a file in the temp dir)
        - false/0/no = off (default, INFO level to stderr)

    PROCIO_BENCH_ITERATIONS: Iterations per benchmark case
        - default 10, clamped to 1-10000

    PROCIO_BENCH_COMMAND: Command line spawned by the benchmark cases
        - default: the current Python interpreter with --help
"""

from __future__ import annotations

import os
import shlex
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = [
    "Config",
    "DrainStrategy",
    "load_config",
    "get_config",
    "reload_config",
]


class DrainStrategy(Enum):
    """Strategy used when at least one stream is piped.

    - CONCURRENT: one reader per stream, joined before wait()
    - SEQUENTIAL: stdout to end-of-stream, then stderr; can deadlock when
      the child fills the stderr pipe while stdout is still being read
    """

    CONCURRENT = "concurrent"
    SEQUENTIAL = "sequential"

    @classmethod
    def from_string(cls, value: str) -> "DrainStrategy":
        """Parse a strategy name; unknown values give CONCURRENT."""
        value = value.lower().strip()
        for strategy in cls:
            if strategy.value == value:
                return strategy
        return cls.CONCURRENT


def _default_bench_command() -> list[str]:
    return [sys.executable, "--help"]


@dataclass
class Config:
    """procio configuration.

    Attributes:
        drain_strategy: Default drain strategy for piped streams
        encoding: Encoding for decoded lines
        term_timeout: Grace period after SIGTERM (seconds)
        kill_timeout: Wait after SIGKILL (seconds)
        temp_dir: Directory for temporary redirect targets and logs
        log_debug: Debug logging to a file
        log_file: Log file path (set when log_debug=True)
        bench_iterations: Iterations per benchmark case
        bench_command: Command spawned by the benchmark cases
    """

    drain_strategy: DrainStrategy = DrainStrategy.CONCURRENT
    encoding: str = "utf-8"
    term_timeout: float = 2.0
    kill_timeout: float = 1.0
    temp_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    log_debug: bool = False
    log_file: str | None = None
    bench_iterations: int = 10
    bench_command: list[str] = field(default_factory=_default_bench_command)

    def __repr__(self) -> str:
        return (
            f"Config(drain_strategy={self.drain_strategy.value}, "
            f"encoding={self.encoding}, "
            f"term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"temp_dir={self.temp_dir}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"bench_iterations={self.bench_iterations}, "
            f"bench_command={shlex.join(self.bench_command)})"
        )


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(value: str | None, default: float, low: float, high: float) -> float:
    if not value:
        return default
    try:
        return max(low, min(float(value), high))
    except ValueError:
        return default


def _parse_int(value: str | None, default: int, low: int, high: int) -> int:
    if not value:
        return default
    try:
        return max(low, min(int(value), high))
    except ValueError:
        return default


def _parse_encoding(value: str | None) -> str:
    """Validate an encoding name; unknown names give utf-8."""
    if not value or not value.strip():
        return "utf-8"
    try:
        "".encode(value.strip())
    except LookupError:
        return "utf-8"
    return value.strip()


def _parse_temp_dir(value: str | None) -> Path:
    if value and Path(value).is_dir():
        return Path(value)
    return Path(tempfile.gettempdir())


def _parse_command(value: str | None) -> list[str]:
    if not value or not value.strip():
        return _default_bench_command()
    try:
        argv = shlex.split(value)
    except ValueError:
        return _default_bench_command()
    return argv or _default_bench_command()


def _generate_log_file_path(temp_dir: Path) -> str:
    """Generate a timestamped log file path under the temp dir."""
    log_dir = temp_dir / "procio"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"procio_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """Load configuration from environment variables."""
    temp_dir = _parse_temp_dir(os.environ.get("PROCIO_TEMP_DIR"))
    log_debug = _parse_bool(os.environ.get("PROCIO_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path(temp_dir) if log_debug else None

    return Config(
        drain_strategy=DrainStrategy.from_string(
            os.environ.get("PROCIO_DRAIN_STRATEGY", "")
        ),
        encoding=_parse_encoding(os.environ.get("PROCIO_ENCODING")),
        term_timeout=_parse_float(os.environ.get("PROCIO_TERM_TIMEOUT"), 2.0, 0.1, 60.0),
        kill_timeout=_parse_float(os.environ.get("PROCIO_KILL_TIMEOUT"), 1.0, 0.1, 60.0),
        temp_dir=temp_dir,
        log_debug=log_debug,
        log_file=log_file,
        bench_iterations=_parse_int(
            os.environ.get("PROCIO_BENCH_ITERATIONS"), 10, 1, 10000
        ),
        bench_command=_parse_command(os.environ.get("PROCIO_BENCH_COMMAND")),
    )


# Global config instance (lazy)
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload configuration from the environment (used by tests)."""
    global _config
    _config = load_config()
    return _config
