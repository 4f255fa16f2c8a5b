"""In-process builtin commands and their registry."""

from cmdpipe.builtins.registry import (
    BuiltinCommand,
    BuiltinEnv,
    BuiltinFunc,
    BuiltinRegistry,
    builtin,
    get_builtin_registry,
    register_builtin,
    reset_builtin_registry,
)

__all__ = [
    "BuiltinCommand",
    "BuiltinEnv",
    "BuiltinFunc",
    "BuiltinRegistry",
    "builtin",
    "get_builtin_registry",
    "register_builtin",
    "reset_builtin_registry",
]
