"""Default builtin commands."""

from __future__ import annotations

import logging

from cmdpipe.builtins.registry import BuiltinEnv, BuiltinRegistry
from cmdpipe.pipeline.errors import BuiltinError

logger = logging.getLogger(__name__)

TRACE = logging.DEBUG - 5


def builtin_echo(env: BuiltinEnv) -> int:
    env.write(" ".join(env.args) + "\n")
    return 0


def builtin_true(env: BuiltinEnv) -> int:
    return 0


def builtin_false(env: BuiltinEnv) -> int:
    return 1


def builtin_pwd(env: BuiltinEnv) -> int:
    env.write(f"{env.current_dir}\n")
    return 0


def builtin_cd(env: BuiltinEnv) -> int:
    """Change directory for the rest of the enclosing scope."""
    if not env.args:
        raise BuiltinError("cd: missing directory")
    if len(env.args) > 1:
        raise BuiltinError("cd: too many arguments")
    try:
        env.context.change_dir(env.args[0])
    except FileNotFoundError as exc:
        raise BuiltinError(f"cd: {env.args[0]}: No such file or directory") from exc
    except NotADirectoryError as exc:
        raise BuiltinError(f"cd: {env.args[0]}: Not a directory") from exc
    except PermissionError as exc:
        raise BuiltinError(f"cd: {env.args[0]}: Permission denied") from exc
    return 0


def _log_builtin(level: int):
    def run(env: BuiltinEnv) -> int:
        logger.log(level, "%s", " ".join(env.args))
        return 0

    return run


def builtin_die(env: BuiltinEnv) -> int:
    """Log a fatal message and fail the stage (never exits the host)."""
    message = " ".join(env.args)
    logger.error("FATAL: %s", message)
    raise BuiltinError(f"FATAL: {message}")


def install_default_builtins(registry: BuiltinRegistry) -> None:
    """Populate ``registry`` with the standard builtin set."""
    registry.register("echo", builtin_echo, help="Write arguments to stdout")
    registry.register("true", builtin_true, help="Succeed")
    registry.register("false", builtin_false, help="Fail with exit code 1")
    registry.register("pwd", builtin_pwd, help="Print the scoped working directory")
    registry.register(
        "cd",
        builtin_cd,
        inline=True,
        help="Change directory until the enclosing group ends",
    )
    registry.register("die", builtin_die, help="Log a fatal message and fail")
    for name, level in (
        ("trace", TRACE),
        ("debug", logging.DEBUG),
        ("info", logging.INFO),
        ("warn", logging.WARNING),
        ("error", logging.ERROR),
    ):
        registry.register(
            name, _log_builtin(level), help=f"Log arguments at {name} level"
        )
