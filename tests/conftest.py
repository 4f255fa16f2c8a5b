from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from cmdpipe.builtins.registry import reset_builtin_registry
from cmdpipe.config.paths import reset_paths
from cmdpipe.config.settings import reset_settings
from cmdpipe.runtime.context import ExecutionContext

_ENV_VARS = ("CMDPIPE_DEBUG", "CMDPIPE_PIPEFAIL", "CMDPIPE_LOG_LEVEL")


def _reset_singletons() -> None:
    reset_paths()
    reset_settings()
    reset_builtin_registry()


@pytest.fixture(autouse=True)
def isolate_state(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Keep config lookups and builtin registrations local to each test."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "xdg-state"))
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    _reset_singletons()
    try:
        yield
    finally:
        _reset_singletons()


@pytest.fixture
def context(tmp_path: Path) -> ExecutionContext:
    """Execution context rooted in the test's temporary directory."""
    return ExecutionContext(cwd=tmp_path)
