"""Centralized path management for cmdpipe.

Follows XDG Base Directory Specification:
- Config: $XDG_CONFIG_HOME/cmdpipe (default: ~/.config/cmdpipe)
- State: $XDG_STATE_HOME/cmdpipe (default: ~/.local/state/cmdpipe)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _xdg_config_home() -> Path:
    """Get XDG_CONFIG_HOME, defaulting to ~/.config."""
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))


def _xdg_state_home() -> Path:
    """Get XDG_STATE_HOME, defaulting to ~/.local/state."""
    return Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state"))


@dataclass
class CmdpipePaths:
    """Centralized path management following XDG spec."""

    workspace: Path  # Directory the CLI was started in

    _config_home: Path = field(default_factory=_xdg_config_home)
    _state_home: Path = field(default_factory=_xdg_state_home)

    # === WORKSPACE PATHS ===

    @property
    def workspace_config(self) -> Path:
        """Workspace config file: .cmdpipe.yaml"""
        return self.workspace / ".cmdpipe.yaml"

    # === GLOBAL PATHS (XDG compliant) ===

    @property
    def global_config_dir(self) -> Path:
        """Global config: ~/.config/cmdpipe/"""
        return self._config_home / "cmdpipe"

    @property
    def global_config(self) -> Path:
        """Global settings file: ~/.config/cmdpipe/config.yaml"""
        return self.global_config_dir / "config.yaml"

    @property
    def global_state_dir(self) -> Path:
        """Global state: ~/.local/state/cmdpipe/"""
        return self._state_home / "cmdpipe"

    # === CONFIG RESOLUTION ===

    def config_file(self) -> Path | None:
        """Resolve config: workspace > global.

        Returns the first existing config file, or None if there is none.
        """
        if self.workspace_config.exists():
            return self.workspace_config
        if self.global_config.exists():
            return self.global_config
        return None


# Singleton instance
_paths: CmdpipePaths | None = None


def get_paths(workspace: Path | None = None) -> CmdpipePaths:
    """Get the paths singleton.

    Args:
        workspace: The workspace directory. Only honoured on the first call;
                   defaults to the current working directory.

    Returns:
        The CmdpipePaths singleton instance.
    """
    global _paths
    if _paths is None:
        _paths = CmdpipePaths(workspace=workspace or Path.cwd())
    return _paths


def reset_paths() -> None:
    """Reset paths singleton (for testing)."""
    global _paths
    _paths = None
