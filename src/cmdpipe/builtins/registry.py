"""Name-keyed registry of in-process builtin commands."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

if TYPE_CHECKING:
    from cmdpipe.runtime.context import ExecutionContext

logger = logging.getLogger(__name__)

BuiltinFunc = Callable[["BuiltinEnv"], "int | None"]
"""Builtin signature: returns an exit code (None means success)."""


class BuiltinEnv:
    """Everything a builtin may touch while it runs.

    The three streams are binary file objects bound to the routed
    descriptors of the stage. They are owned by the spawner and closed when
    the builtin returns.
    """

    def __init__(
        self,
        *,
        argv: tuple[str, ...],
        env_overrides: Mapping[str, str],
        context: ExecutionContext,
        current_dir: Path,
        stdin: BinaryIO,
        stdout: BinaryIO,
        stderr: BinaryIO,
    ) -> None:
        self.argv = argv
        self.env_overrides = dict(env_overrides)
        self.context = context
        self.current_dir = current_dir
        self.stdin = stdin
        self.stdout = stdout
        self.stderr = stderr

    @property
    def name(self) -> str:
        return self.argv[0]

    @property
    def args(self) -> tuple[str, ...]:
        return self.argv[1:]

    def var(self, key: str) -> str | None:
        """Look up an environment value visible to this stage."""
        if key in self.env_overrides:
            return self.env_overrides[key]
        return self.context.environment().get(key)

    def write(self, text: str) -> None:
        self.stdout.write(text.encode())
        self.stdout.flush()

    def write_err(self, text: str) -> None:
        self.stderr.write(text.encode())
        self.stderr.flush()

    def read_text(self) -> str:
        """Read stdin to EOF."""
        return self.stdin.read().decode(errors="replace")

    def lines(self) -> Iterator[str]:
        """Iterate stdin lines without trailing newlines."""
        for raw in self.stdin:
            yield raw.decode(errors="replace").rstrip("\n")


@dataclass(frozen=True, slots=True)
class BuiltinCommand:
    """A registered builtin.

    ``inline`` builtins run synchronously while the pipeline is being
    spawned, so context changes they make (``cd``) are visible to the
    stages spawned after them. Their stdout and stderr are buffered and
    delivered once they return.
    """

    name: str
    func: BuiltinFunc
    inline: bool = False
    help: str = ""


class BuiltinRegistry:
    """Maps command names to builtin implementations."""

    def __init__(self, commands: Mapping[str, BuiltinCommand] | None = None) -> None:
        self._commands: dict[str, BuiltinCommand] = dict(commands or {})

    def register(
        self,
        name: str,
        func: BuiltinFunc,
        *,
        inline: bool = False,
        help: str = "",
    ) -> BuiltinCommand:
        """Register (or replace) a builtin under ``name``."""
        if not name:
            raise ValueError("Builtin name must not be empty")
        command = BuiltinCommand(name=name, func=func, inline=inline, help=help)
        if name in self._commands:
            logger.debug("Replacing builtin %r", name)
        self._commands[name] = command
        return command

    def unregister(self, name: str) -> None:
        self._commands.pop(name, None)

    def get(self, name: str) -> BuiltinCommand | None:
        """Return the builtin for ``name``, or None when it is not registered."""
        return self._commands.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._commands

    def names(self) -> list[str]:
        return sorted(self._commands)

    def commands(self) -> list[BuiltinCommand]:
        return [self._commands[name] for name in self.names()]

    def copy(self) -> BuiltinRegistry:
        return BuiltinRegistry(self._commands)


_DEFAULT_BUILTIN_REGISTRY: BuiltinRegistry | None = None


def get_builtin_registry() -> BuiltinRegistry:
    """Return the shared registry, populated with the default builtins."""
    global _DEFAULT_BUILTIN_REGISTRY
    if _DEFAULT_BUILTIN_REGISTRY is None:
        from cmdpipe.builtins.commands import install_default_builtins

        registry = BuiltinRegistry()
        install_default_builtins(registry)
        _DEFAULT_BUILTIN_REGISTRY = registry
    return _DEFAULT_BUILTIN_REGISTRY


def reset_builtin_registry() -> None:
    """Drop custom registrations (mainly for tests)."""
    global _DEFAULT_BUILTIN_REGISTRY
    _DEFAULT_BUILTIN_REGISTRY = None


def register_builtin(
    name: str,
    func: BuiltinFunc,
    *,
    inline: bool = False,
    help: str = "",
) -> BuiltinCommand:
    """Register a builtin in the shared registry."""
    return get_builtin_registry().register(name, func, inline=inline, help=help)


def builtin(
    name: str,
    *,
    inline: bool = False,
    help: str = "",
) -> Callable[[BuiltinFunc], BuiltinFunc]:
    """Decorator form of :func:`register_builtin`."""

    def decorator(func: BuiltinFunc) -> BuiltinFunc:
        summary = help or (func.__doc__ or "").strip().partition("\n")[0]
        register_builtin(name, func, inline=inline, help=summary)
        return func

    return decorator
