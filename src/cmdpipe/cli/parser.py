"""Argument parser construction for the cmdpipe CLI."""

from __future__ import annotations

import argparse
from collections.abc import Sequence
from pathlib import Path


def build_parser() -> argparse.ArgumentParser:
    """Build and return the top-level CLI parser."""
    parser = argparse.ArgumentParser(
        prog="cmdpipe",
        description="cmdpipe - run command pipelines without a shell",
    )
    parser.add_argument(
        "--workdir",
        "-w",
        type=Path,
        help="Directory to change into before anything else runs",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level (default: from config or CMDPIPE_LOG_LEVEL)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Write logs to this file instead of stderr",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run command
    run_parser = subparsers.add_parser(
        "run",
        help="Run a script of pipelines",
    )
    source = run_parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "script",
        nargs="?",
        help="Script text, e.g. 'ls -l | wc -l; echo done'",
    )
    source.add_argument(
        "-f",
        "--file",
        type=Path,
        help="Read the script from a file ('-' for stdin)",
    )
    run_parser.add_argument(
        "--capture",
        action="store_true",
        help="Capture the last statement's stdout and print it when done",
    )
    run_parser.add_argument(
        "--debug",
        action="store_true",
        help="Log each pipeline before it runs",
    )
    run_parser.add_argument(
        "--pipefail",
        action="store_true",
        help="Fail a pipeline when any stage fails",
    )
    run_parser.add_argument(
        "--no-capture-stderr",
        action="store_true",
        help="Let stages write stderr straight to the terminal",
    )
    run_parser.add_argument(
        "-C",
        "--directory",
        type=Path,
        help="Initial working directory for the script",
    )

    # Builtins command
    subparsers.add_parser(
        "builtins",
        help="List registered builtin commands",
    )

    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    return build_parser().parse_args(argv)
