"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FAKE_CHILD = Path(__file__).parent / "fixtures" / "fake_child.py"

_PROCIO_VARS = (
    "PROCIO_DRAIN_STRATEGY",
    "PROCIO_ENCODING",
    "PROCIO_TERM_TIMEOUT",
    "PROCIO_KILL_TIMEOUT",
    "PROCIO_TEMP_DIR",
    "PROCIO_LOG_DEBUG",
    "PROCIO_BENCH_ITERATIONS",
    "PROCIO_BENCH_COMMAND",
)


@pytest.fixture(autouse=True)
def clean_config(monkeypatch: pytest.MonkeyPatch):
    """Run every test with default configuration."""
    from procio.config import reload_config

    for name in _PROCIO_VARS:
        monkeypatch.delenv(name, raising=False)
    reload_config()
    yield
    reload_config()


@pytest.fixture
def project_root() -> Path:
    """Project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def child() -> list[str]:
    """Command line of the fake child (interpreter + script)."""
    return [sys.executable, str(FAKE_CHILD)]

