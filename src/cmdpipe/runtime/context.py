"""Scoped working-directory and environment state for one invocation."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cmdpipe.config.settings import Settings

logger = logging.getLogger(__name__)


class ExecutionContext:
    """Working-directory stack plus environment overrides.

    The active directory is the top of the stack. Pushes are always undone
    by the scope that made them, including when that scope exits with an
    exception. A context is used by one group at a time; it is not
    thread-safe and does not need to be.
    """

    def __init__(
        self,
        cwd: str | os.PathLike[str] | None = None,
        env_overrides: Mapping[str, str] | None = None,
        *,
        debug: bool = False,
        pipefail: bool = False,
        capture_stderr: bool = True,
    ) -> None:
        base = Path(cwd) if cwd is not None else Path.cwd()
        self._cwd_stack: list[Path] = [base.resolve()]
        self.env_overrides: dict[str, str] = dict(env_overrides or {})
        self.debug = debug
        self.pipefail = pipefail
        self.capture_stderr = capture_stderr

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        cwd: str | os.PathLike[str] | None = None,
    ) -> ExecutionContext:
        """Build a context using configured debug/pipefail defaults."""
        return cls(
            cwd=cwd,
            debug=settings.debug,
            pipefail=settings.pipefail,
            capture_stderr=settings.capture_stderr,
        )

    # --- Working directory ---

    @property
    def cwd(self) -> Path:
        return self._cwd_stack[-1]

    @property
    def cwd_stack(self) -> tuple[Path, ...]:
        return tuple(self._cwd_stack)

    @property
    def depth(self) -> int:
        return len(self._cwd_stack)

    def resolve_path(self, path: str | os.PathLike[str]) -> Path:
        """Resolve ``path`` relative to the active directory."""
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.cwd / candidate
        return candidate

    @contextmanager
    def push_cwd(self, path: str | os.PathLike[str]) -> Iterator[Path]:
        """Make ``path`` the active directory until the block exits."""
        with self.scope():
            yield self.change_dir(path)

    def change_dir(self, path: str | os.PathLike[str]) -> Path:
        """Push a directory without a guard; the enclosing scope pops it.

        Raises:
            FileNotFoundError: If the directory does not exist.
            NotADirectoryError: If the path is not a directory.
            PermissionError: If the directory cannot be entered.
        """
        target = self.resolve_path(path)
        if not target.exists():
            raise FileNotFoundError(f"No such file or directory: {target}")
        if not target.is_dir():
            raise NotADirectoryError(f"Not a directory: {target}")
        if not os.access(target, os.X_OK):
            raise PermissionError(f"Permission denied: {target}")
        resolved = target.resolve()
        self._cwd_stack.append(resolved)
        logger.debug("cwd -> %s (depth %d)", resolved, len(self._cwd_stack))
        return resolved

    @contextmanager
    def scope(self) -> Iterator[ExecutionContext]:
        """Undo every directory push made inside the block on exit."""
        depth = len(self._cwd_stack)
        try:
            yield self
        finally:
            if len(self._cwd_stack) > depth:
                del self._cwd_stack[depth:]
                logger.debug("cwd restored to %s", self.cwd)

    # --- Environment ---

    def environment(self) -> dict[str, str]:
        """Inherited process environment with context overrides applied."""
        merged = dict(os.environ)
        merged.update(self.env_overrides)
        return merged

    def stage_environment(self, overrides: Mapping[str, str]) -> dict[str, str]:
        """Environment for one stage: process ← context ← stage overrides."""
        merged = self.environment()
        merged.update(overrides)
        return merged

    @contextmanager
    def scoped_env(self, **overrides: str) -> Iterator[ExecutionContext]:
        """Apply environment overrides until the block exits."""
        saved = dict(self.env_overrides)
        self.env_overrides.update(overrides)
        try:
            yield self
        finally:
            self.env_overrides = saved

    def __repr__(self) -> str:
        return (
            f"ExecutionContext(cwd={str(self.cwd)!r}, depth={self.depth}, "
            f"debug={self.debug}, pipefail={self.pipefail})"
        )
