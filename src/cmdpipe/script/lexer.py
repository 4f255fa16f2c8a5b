"""Tokenizer for command scripts.

Quoting follows POSIX shell rules (single quotes are literal, double quotes
honour ``\\"``, ``\\\\``, ``\\$`` and ``\\```). Nothing is expanded.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from cmdpipe.pipeline.errors import ScriptSyntaxError

# Longest first so that ``&>>`` is not read as ``&>`` + ``>``.
OPERATORS = ("&>>", "&&", "&>", ">>", ">&", "||", "<", ">", "|", "&")

_WORD_BREAK = frozenset(" \t\r\n;|&<>")
_DOUBLE_QUOTE_ESCAPES = frozenset('"\\$`\n')


class TokenKind(str, Enum):
    WORD = "word"
    OPERATOR = "operator"
    SEPARATOR = "separator"  # ``;`` or newline


@dataclass(frozen=True, slots=True)
class Token:
    """One lexical token.

    ``raw`` is the source text of a word including its quotes. ``fd`` is the
    descriptor prefix of a redirection operator such as ``2>``.
    """

    kind: TokenKind
    value: str
    raw: str = ""
    fd: int | None = None
    position: int = 0


def tokenize(text: str) -> list[Token]:
    """Split script text into tokens.

    Raises:
        ScriptSyntaxError: On an unterminated quote.
    """
    tokens: list[Token] = []
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char in " \t\r":
            index += 1
            continue
        if char == "\\" and text.startswith("\n", index + 1):
            index += 2
            continue
        if char in ";\n":
            tokens.append(Token(TokenKind.SEPARATOR, char, position=index))
            index += 1
            continue
        if char == "#":
            end = text.find("\n", index)
            index = length if end < 0 else end
            continue

        operator = _match_operator(text, index)
        if operator is not None:
            tokens.append(Token(TokenKind.OPERATOR, operator, position=index))
            index += len(operator)
            continue

        start = index
        value, index = _read_word(text, index)
        raw = text[start:index]
        descriptor = raw.isascii() and raw.isdigit()
        if descriptor and index < length and text[index] in "<>":
            operator = _match_operator(text, index)
            if operator in ("<", ">", ">>", ">&"):
                tokens.append(
                    Token(
                        TokenKind.OPERATOR,
                        operator,
                        fd=int(raw),
                        position=start,
                    )
                )
                index += len(operator)
                continue
        tokens.append(Token(TokenKind.WORD, value, raw=raw, position=start))
    return tokens


def _match_operator(text: str, index: int) -> str | None:
    for operator in OPERATORS:
        if text.startswith(operator, index):
            return operator
    return None


def _read_word(text: str, index: int) -> tuple[str, int]:
    parts: list[str] = []
    length = len(text)
    while index < length:
        char = text[index]
        if char in _WORD_BREAK:
            break
        if char == "'":
            end = text.find("'", index + 1)
            if end < 0:
                raise ScriptSyntaxError(
                    f"unterminated single quote at offset {index}", script=text
                )
            parts.append(text[index + 1 : end])
            index = end + 1
        elif char == '"':
            index = _read_double_quoted(text, index, parts)
        elif char == "\\":
            if index + 1 >= length:
                parts.append(char)
                index += 1
            elif text[index + 1] == "\n":
                index += 2
            else:
                parts.append(text[index + 1])
                index += 2
        else:
            parts.append(char)
            index += 1
    return "".join(parts), index


def _read_double_quoted(text: str, index: int, parts: list[str]) -> int:
    opening = index
    index += 1
    length = len(text)
    while index < length:
        char = text[index]
        if char == '"':
            return index + 1
        escaped = text[index + 1 : index + 2]
        if char == "\\" and escaped and escaped in _DOUBLE_QUOTE_ESCAPES:
            if text[index + 1] != "\n":
                parts.append(text[index + 1])
            index += 2
            continue
        parts.append(char)
        index += 1
    raise ScriptSyntaxError(
        f"unterminated double quote at offset {opening}", script=text
    )
