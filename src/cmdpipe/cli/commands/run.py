"""Run command: execute a script of pipelines."""

from __future__ import annotations

import argparse
import logging
import sys

from rich.console import Console
from rich.text import Text

from cmdpipe.config.settings import get_settings
from cmdpipe.pipeline.errors import BuildError
from cmdpipe.runtime.context import ExecutionContext
from cmdpipe.runtime.results import PipelineResult
from cmdpipe.script import run_script

logger = logging.getLogger(__name__)

EXIT_USAGE = 2


def cmd_run(args: argparse.Namespace, console: Console | None = None) -> int:
    """Run the script and return the group's exit code."""
    console = console or Console(stderr=True)

    try:
        text = _read_script(args)
    except OSError as e:
        console.print(Text(f"Error: cannot read script: {e}", style="bold red"))
        return 1

    directory = args.directory
    if directory is not None and not directory.is_dir():
        console.print(Text(f"Error: Not a directory: {directory}", style="bold red"))
        return 1

    context = ExecutionContext.from_settings(get_settings(), cwd=directory)
    if args.debug:
        context.debug = True
    if args.pipefail:
        context.pipefail = True
    if args.no_capture_stderr:
        context.capture_stderr = False

    try:
        result = run_script(text, context, capture=args.capture)
    except BuildError as e:
        console.print(Text(f"Error: {e}", style="bold red"))
        return EXIT_USAGE

    for ignored in result.ignored_failures:
        logger.info("Ignored failure: %s", ignored.error)

    if args.capture and result.stdout:
        sys.stdout.write(result.stdout)
        if not result.stdout.endswith("\n"):
            sys.stdout.write("\n")
        sys.stdout.flush()

    if result.failure is not None:
        render_failure(console, result.failure)
    return result.exit_code


def render_failure(console: Console, result: PipelineResult) -> None:
    """Print the failing command and its stderr."""
    error = result.error
    message = str(error) if error is not None else f"Running [{result.command}] failed"
    headline, _, details = message.partition("\n")
    line = Text("Error: ", style="bold red")
    line.append(headline)
    console.print(line)
    if details.strip():
        console.print(Text(details.rstrip(), style="dim"))
    console.print(Text(f"exit code {result.exit_code}", style="dim"))


def _read_script(args: argparse.Namespace) -> str:
    if args.file is None:
        return args.script
    if str(args.file) == "-":
        return sys.stdin.read()
    return args.file.read_text(encoding="utf-8")
