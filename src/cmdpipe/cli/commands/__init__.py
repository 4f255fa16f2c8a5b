"""CLI command handlers."""

from .builtin_list import cmd_builtins
from .run import cmd_run

__all__ = [
    "cmd_builtins",
    "cmd_run",
]
