"""Redirection policies for child process output streams.

procio runtime module

A policy is chosen before spawn and decides what happens to one standard
stream of the child:

- Discard: bound to the null device
- Inherit: shares the parent's stream
- ToFile: the OS writes straight into a truncated file
- ToPipe: an anonymous pipe drained by the calling process
- ToStdout (stderr only): shares whatever stdout is bound to, so both
  streams land in one pipe or file in the order the child wrote them

stdout and stderr each get their own policy.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Union

__all__ = [
    "PipeMode",
    "Discard",
    "Inherit",
    "ToFile",
    "ToPipe",
    "ToStdout",
    "RedirectionPolicy",
    "DISCARD",
    "INHERIT",
    "TO_STDOUT",
    "parse_policy",
]


class PipeMode(str, Enum):
    """How bytes read from a pipe are handed back.

    - LINE_BY_LINE: decoded lines, terminators stripped
    - READ_ALL: one raw buffer once end-of-stream is reached
    - CONCURRENT_LINE_BY_LINE: like LINE_BY_LINE, always drained on a
      dedicated reader, lines also recorded in arrival order across streams
    """

    LINE_BY_LINE = "lines"
    READ_ALL = "all"
    CONCURRENT_LINE_BY_LINE = "concurrent"

    @classmethod
    def from_string(cls, value: str) -> "PipeMode":
        """Parse a mode name (lines/all/concurrent).

        Raises:
            ValueError: If the name is unknown
        """
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value or mode.name.lower() == value:
                return mode
        raise ValueError(f"Unknown pipe mode: {value!r}")


@dataclass(frozen=True)
class Discard:
    """Send the stream to the null device."""


@dataclass(frozen=True)
class Inherit:
    """Let the child write to the parent's stream."""


@dataclass(frozen=True)
class ToFile:
    """Redirect the stream into a file.

    The file is created (or truncated) right before spawn and its descriptor
    is handed to the child, so no bytes pass through this process.

    Attributes:
        path: Target file; its parent directory must exist and be writable
    """

    path: Path

    def __post_init__(self) -> None:
        path = Path(self.path)
        object.__setattr__(self, "path", path)

        parent = path.parent
        if not parent.is_dir():
            raise ValueError(f"Parent directory does not exist: {parent}")
        if not os.access(parent, os.W_OK):
            raise ValueError(f"Parent directory is not writable: {parent}")
        if path.is_dir():
            raise ValueError(f"Redirect target is a directory: {path}")


@dataclass(frozen=True)
class ToPipe:
    """Connect the stream to a pipe read by this process.

    Attributes:
        mode: Granularity of the captured output
    """

    mode: PipeMode = PipeMode.LINE_BY_LINE

    def __post_init__(self) -> None:
        if isinstance(self.mode, str) and not isinstance(self.mode, PipeMode):
            object.__setattr__(self, "mode", PipeMode.from_string(self.mode))


@dataclass(frozen=True)
class ToStdout:
    """Send stderr wherever stdout goes (stderr only).

    With stdout under ToPipe both streams share one pipe and are captured
    as a single buffer on the stdout side.
    """


RedirectionPolicy = Union[Discard, Inherit, ToFile, ToPipe, ToStdout]

DISCARD = Discard()
INHERIT = Inherit()
TO_STDOUT = ToStdout()


def parse_policy(text: str) -> RedirectionPolicy:
    """Build a policy from its textual form.

    Accepted forms:
        discard | inherit | file:PATH | pipe | pipe:lines | pipe:all | pipe:concurrent
        | stdout (stderr only)

    Raises:
        ValueError: For unknown forms or an unusable file path
    """
    kind, _, arg = text.strip().partition(":")
    kind = kind.lower()

    if kind == "discard" and not arg:
        return DISCARD
    if kind == "inherit" and not arg:
        return INHERIT
    if kind == "stdout" and not arg:
        return TO_STDOUT
    if kind == "file":
        if not arg:
            raise ValueError("file policy requires a path (file:PATH)")
        return ToFile(Path(arg))
    if kind == "pipe":
        return ToPipe(PipeMode.from_string(arg) if arg else PipeMode.LINE_BY_LINE)

    raise ValueError(f"Unknown redirection policy: {text!r}")
