"""Script text reader: ``"ls | wc -l; cd /tmp"`` to pipelines."""

from __future__ import annotations

from cmdpipe.builtins.registry import BuiltinRegistry
from cmdpipe.runtime.context import ExecutionContext
from cmdpipe.runtime.results import GroupResult
from cmdpipe.runtime.runner import PipelineRunner, get_pipeline_runner
from cmdpipe.script.lexer import Token, TokenKind, tokenize
from cmdpipe.script.parser import parse_script


def run_script(
    text: str,
    context: ExecutionContext | None = None,
    *,
    capture: bool = False,
    registry: BuiltinRegistry | None = None,
) -> GroupResult:
    """Parse and run ``text`` as a group.

    With ``capture=True`` the last statement's stdout is returned on the
    result instead of being written to the terminal.
    """
    group = parse_script(text, registry=registry)
    runner = get_pipeline_runner()
    if registry is not None:
        runner = PipelineRunner(registry=registry)
    return runner.run_group(group, context, capture_last=capture)


__all__ = [
    "Token",
    "TokenKind",
    "parse_script",
    "run_script",
    "tokenize",
]
