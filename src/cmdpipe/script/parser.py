"""Turn script text into a :class:`Group` of pipelines.

The accepted language is deliberately small::

    [ignore] [NAME=value ...] cmd args [redirs] [| cmd ...] [|| true]

Statements are separated by ``;`` or newlines. Supported redirections are
``<``, ``>``, ``>>``, ``N>``, ``N>>``, ``&>``, ``&>>`` and ``N>&M``.
There is no expansion, globbing or control flow.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from cmdpipe.builtins.registry import BuiltinRegistry
from cmdpipe.pipeline.builder import build_group, build_pipeline
from cmdpipe.pipeline.errors import ScriptSyntaxError
from cmdpipe.pipeline.types import (
    STDERR,
    STDIN,
    STDOUT,
    DupTarget,
    FileTarget,
    Group,
    Pipeline,
    Redirection,
    RedirectMode,
    Stage,
    fd,
)
from cmdpipe.script.lexer import Token, TokenKind, tokenize

logger = logging.getLogger(__name__)

_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_UNSUPPORTED = {
    "&&": "'&&' is not supported; use ';' to sequence commands",
    "&": "background jobs ('&') are not supported",
    "||": "only '|| true' is supported after a pipeline",
}


def parse_script(text: str, *, registry: BuiltinRegistry | None = None) -> Group:
    """Parse ``text`` into a group of validated pipelines.

    Raises:
        ScriptSyntaxError: If the text is malformed or contains no commands.
        BuildError: If a stage fails pipeline validation.
    """
    parser = _ScriptParser(text, registry)
    return parser.parse()


class _ScriptParser:
    def __init__(self, text: str, registry: BuiltinRegistry | None) -> None:
        self._text = text
        self._registry = registry

    def parse(self) -> Group:
        statements: list[list[Token]] = [[]]
        for token in tokenize(self._text):
            if token.kind is TokenKind.SEPARATOR:
                statements.append([])
            else:
                statements[-1].append(token)

        pipelines = [self._statement(tokens) for tokens in statements if tokens]
        if not pipelines:
            raise ScriptSyntaxError("script contains no commands", script=self._text)
        group = build_group(pipelines)
        logger.debug("Parsed %d statement(s): %s", len(pipelines), group.command_text)
        return group

    def _statement(self, tokens: list[Token]) -> Pipeline:
        ignore = False
        if _is_word(tokens[0], "ignore") and len(tokens) > 1:
            ignore = True
            tokens = tokens[1:]
        if (
            len(tokens) >= 2
            and tokens[-2].kind is TokenKind.OPERATOR
            and tokens[-2].value == "||"
            and _is_word(tokens[-1], "true")
        ):
            ignore = True
            tokens = tokens[:-2]

        commands: list[list[Token]] = [[]]
        for token in tokens:
            if token.kind is TokenKind.OPERATOR and token.value in _UNSUPPORTED:
                raise self._error(_UNSUPPORTED[token.value])
            if token.kind is TokenKind.OPERATOR and token.value == "|":
                commands.append([])
            else:
                commands[-1].append(token)

        if any(not command for command in commands):
            raise self._error("missing command around '|'")
        stages = [self._command(command) for command in commands]
        return build_pipeline(stages, registry=self._registry, ignore_failure=ignore)

    def _command(self, tokens: list[Token]) -> Stage:
        argv: list[str] = []
        env: dict[str, str] = {}
        redirections: list[Redirection] = []
        position = 0
        while position < len(tokens):
            token = tokens[position]
            if token.kind is TokenKind.OPERATOR:
                target = tokens[position + 1] if position + 1 < len(tokens) else None
                if target is None or target.kind is not TokenKind.WORD:
                    raise self._error(f"missing target after '{_render(token)}'")
                redirections.extend(self._redirect(token, target.value))
                position += 2
                continue
            if not argv and _ASSIGNMENT.match(token.raw):
                name, _, value = token.value.partition("=")
                env[name] = value
            else:
                argv.append(token.value)
            position += 1

        if not argv:
            raise self._error("missing command")
        return Stage(
            argv=tuple(argv),
            env_overrides=env,
            redirections=tuple(redirections),
        )

    def _redirect(self, operator: Token, target: str) -> list[Redirection]:
        op = operator.value
        if op == "<":
            source = fd(operator.fd) if operator.fd is not None else STDIN
            return [Redirection(source, FileTarget(Path(target), RedirectMode.READ))]

        source = fd(operator.fd) if operator.fd is not None else STDOUT
        if op in (">", ">>"):
            mode = RedirectMode.APPEND if op == ">>" else RedirectMode.WRITE
            return [Redirection(source, FileTarget(Path(target), mode))]
        if op in ("&>", "&>>"):
            mode = RedirectMode.APPEND if op == "&>>" else RedirectMode.WRITE
            return [
                Redirection(STDOUT, FileTarget(Path(target), mode)),
                Redirection(STDERR, DupTarget(STDOUT)),
            ]
        if op == ">&":
            if not (target.isascii() and target.isdigit()):
                raise self._error(f"'{_render(operator)}' needs a descriptor number")
            return [Redirection(source, DupTarget(fd(int(target))))]
        raise self._error(f"unexpected operator '{op}'")

    def _error(self, message: str) -> ScriptSyntaxError:
        return ScriptSyntaxError(message, script=self._text)


def _is_word(token: Token, value: str) -> bool:
    # Quoted words never act as keywords.
    return token.kind is TokenKind.WORD and token.raw == value


def _render(token: Token) -> str:
    prefix = "" if token.fd is None else str(token.fd)
    return f"{prefix}{token.value}"
