"""CLI orchestration and command routing."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

from cmdpipe.cli.commands import cmd_builtins, cmd_run
from cmdpipe.cli.parser import build_parser, parse_args

logger = logging.getLogger(__name__)

LoggingSetup = Callable[[str | None, Path | None], None]


def dispatch(args: argparse.Namespace) -> int:
    """Route parsed args to the correct command handler."""
    command_handlers: dict[str, Callable[[argparse.Namespace], int]] = {
        "run": cmd_run,
        "builtins": cmd_builtins,
    }

    handler = command_handlers.get(args.command) if args.command else None
    if handler is None:
        build_parser().print_help(sys.stderr)
        return 2

    return handler(args)


def run(
    argv: Sequence[str] | None = None,
    *,
    configure_logging: LoggingSetup | None = None,
) -> int:
    """Parse args, apply shared CLI setup, and execute command."""
    args = parse_args(argv)

    if args.workdir:
        workdir = args.workdir.resolve()
        if not workdir.is_dir():
            print(f"Error: Not a directory: {workdir}", file=sys.stderr)
            return 1
        os.chdir(workdir)

    if configure_logging is not None:
        configure_logging(args.log_level, args.log_file)

    logger.debug("Working directory: %s", Path.cwd())
    return dispatch(args)
