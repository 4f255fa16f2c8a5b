"""Configuration management for cmdpipe."""

from __future__ import annotations

from cmdpipe.config.paths import CmdpipePaths, get_paths, reset_paths
from cmdpipe.config.settings import Settings, get_settings, reset_settings

__all__ = [
    "CmdpipePaths",
    "Settings",
    "get_paths",
    "get_settings",
    "reset_paths",
    "reset_settings",
]
