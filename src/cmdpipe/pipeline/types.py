"""Value types describing pipelines before they run.

Stages, redirections, pipelines and groups are immutable. They are produced
by the builder or the script reader and consumed by the runtime.
"""

from __future__ import annotations

import shlex
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

DEV_NULL = Path("/dev/null")


class StageKind(str, Enum):
    """How a stage is executed."""

    EXTERNAL = "external"  # OS child process
    BUILTIN = "builtin"  # in-process function on a thread


class RedirectMode(str, Enum):
    """Open mode for a file redirection."""

    READ = "read"
    WRITE = "write"
    APPEND = "append"


@dataclass(frozen=True, slots=True)
class StreamId:
    """A descriptor number of a stage: 0, 1, 2 or a higher fd."""

    number: int

    def __post_init__(self) -> None:
        if self.number < 0:
            raise ValueError(f"Invalid descriptor number: {self.number}")

    @property
    def is_standard(self) -> bool:
        return self.number <= 2

    @property
    def label(self) -> str:
        return _STREAM_LABELS.get(self.number, f"fd{self.number}")

    def __str__(self) -> str:
        return self.label


STDIN = StreamId(0)
STDOUT = StreamId(1)
STDERR = StreamId(2)

_STREAM_LABELS = {0: "stdin", 1: "stdout", 2: "stderr"}


def fd(number: int) -> StreamId:
    """Return the stream id for a raw descriptor number."""
    return StreamId(number)


# --- Redirect targets ---


@dataclass(frozen=True, slots=True)
class FileTarget:
    """Redirect to or from a file."""

    path: Path
    mode: RedirectMode = RedirectMode.WRITE

    @property
    def is_null(self) -> bool:
        return self.path == DEV_NULL


@dataclass(frozen=True, slots=True)
class DupTarget:
    """Alias a descriptor to whatever another descriptor is bound to."""

    stream: StreamId


@dataclass(frozen=True, slots=True)
class InheritTarget:
    """Bind to the parent process's matching standard stream."""


@dataclass(frozen=True, slots=True)
class NullTarget:
    """Bind to the null device."""


@dataclass(frozen=True, slots=True)
class PipeTarget:
    """Implicit stage-to-stage pipe; only the router creates these."""


RedirectTarget = FileTarget | DupTarget | InheritTarget | NullTarget | PipeTarget


@dataclass(frozen=True, slots=True)
class Redirection:
    """Rebinding of one stage descriptor to a target."""

    source: StreamId
    target: RedirectTarget

    def describe(self) -> str:
        """Render the redirection in shell notation."""
        prefix = "" if self.source in (STDIN, STDOUT) else str(self.source.number)
        target = self.target
        if isinstance(target, FileTarget):
            path = shlex.quote(str(target.path))
            if target.mode is RedirectMode.READ:
                return f"{prefix}<{path}"
            if target.mode is RedirectMode.APPEND:
                return f"{prefix}>>{path}"
            return f"{prefix}>{path}"
        if isinstance(target, DupTarget):
            arrow = "<&" if self.source == STDIN else ">&"
            return f"{prefix}{arrow}{target.stream.number}"
        if isinstance(target, NullTarget):
            arrow = "<" if self.source == STDIN else ">"
            return f"{prefix}{arrow}{DEV_NULL}"
        if isinstance(target, InheritTarget):
            return f"{self.source.label}=inherit"
        return f"{self.source.label}=pipe"


# --- Stages and pipelines ---


@dataclass(frozen=True, slots=True)
class Stage:
    """One command of a pipeline."""

    argv: tuple[str, ...]
    kind: StageKind | None = None  # resolved against the registry at build time
    env_overrides: Mapping[str, str] = field(default_factory=dict)
    redirections: tuple[Redirection, ...] = ()
    ignore_failure: bool = False

    @property
    def name(self) -> str:
        return self.argv[0]

    @property
    def args(self) -> tuple[str, ...]:
        return self.argv[1:]

    @property
    def command_text(self) -> str:
        """Human readable rendering used in logs and error messages."""
        parts = [
            f"{key}={shlex.quote(value)}" for key, value in self.env_overrides.items()
        ]
        parts.append(shlex.join(self.argv))
        parts.extend(redirect.describe() for redirect in self.redirections)
        return " ".join(parts)

    def redirects(self, stream: StreamId) -> bool:
        """Whether any explicit redirection rebinds ``stream``."""
        return any(redirect.source == stream for redirect in self.redirections)


@dataclass(frozen=True, slots=True)
class Pipeline:
    """An ordered chain of stages connected stdout-to-stdin."""

    stages: tuple[Stage, ...]
    ignore_failure: bool = False

    def __iter__(self) -> Iterator[Stage]:
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)

    @property
    def command_text(self) -> str:
        text = " | ".join(stage.command_text for stage in self.stages)
        if self.ignore_failure:
            return f"ignore {text}"
        return text


@dataclass(frozen=True, slots=True)
class Group:
    """Pipelines executed in order, stopping at the first real failure."""

    pipelines: tuple[Pipeline, ...]

    def __iter__(self) -> Iterator[Pipeline]:
        return iter(self.pipelines)

    def __len__(self) -> int:
        return len(self.pipelines)

    @property
    def command_text(self) -> str:
        return "; ".join(pipeline.command_text for pipeline in self.pipelines)
