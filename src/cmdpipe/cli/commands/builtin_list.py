"""Builtins command: show the registered in-process commands."""

from __future__ import annotations

import argparse

from rich.console import Console
from rich.table import Table

from cmdpipe.builtins.registry import get_builtin_registry


def cmd_builtins(args: argparse.Namespace, console: Console | None = None) -> int:
    """List registered builtins in a table."""
    console = console or Console()
    table = Table(title="Builtin commands")
    table.add_column("Name", style="bold cyan", no_wrap=True)
    table.add_column("Runs", style="dim")
    table.add_column("Description")

    for command in get_builtin_registry().commands():
        table.add_row(
            command.name,
            "inline" if command.inline else "thread",
            command.help,
        )

    console.print(table)
    return 0
