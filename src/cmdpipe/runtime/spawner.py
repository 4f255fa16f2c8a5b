"""Start pipeline stages as OS processes or builtin threads."""

from __future__ import annotations

import io
import logging
import os
import signal
import subprocess
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import BinaryIO

from cmdpipe.builtins.registry import (
    BuiltinCommand,
    BuiltinEnv,
    BuiltinRegistry,
    get_builtin_registry,
)
from cmdpipe.pipeline.errors import (
    BuiltinError,
    RuntimeExitError,
    SpawnError,
    StageBrokenPipeError,
    StageError,
)
from cmdpipe.pipeline.types import Pipeline, Stage, StageKind
from cmdpipe.runtime.context import ExecutionContext
from cmdpipe.runtime.results import StageOutcome, StageStatus, describe_returncode
from cmdpipe.runtime.router import Endpoint, Route, StageBinding

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StageCompletion:
    """How a stage finished, before its stderr text is attached."""

    status: StageStatus
    exit_code: int | None = None
    error: StageError | None = None


class StageHandle:
    """Runtime state of one stage: a process, a builtin thread, or neither.

    A handle whose stage could not be started carries its completion from
    the beginning. The completion is written exactly once.
    """

    def __init__(
        self,
        stage: Stage,
        index: int,
        *,
        process: subprocess.Popen[bytes] | None = None,
        completion: StageCompletion | None = None,
    ) -> None:
        self.stage = stage
        self.index = index
        self.process = process
        self._thread: threading.Thread | None = None
        self._completion = completion

    @property
    def command(self) -> str:
        return self.stage.command_text

    @property
    def kind(self) -> StageKind:
        return self.stage.kind or StageKind.EXTERNAL

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def poll(self) -> bool:
        """Return True once the stage has finished."""
        if self._completion is not None:
            return True
        if self.process is not None:
            return self.process.poll() is not None
        return self._thread is not None and not self._thread.is_alive()

    def wait(self) -> StageCompletion:
        """Block until the stage finishes."""
        if self._thread is not None:
            self._thread.join()
        if self._completion is None and self.process is not None:
            returncode = self.process.wait()
            self._completion = _completion_from_returncode(
                returncode, command=self.command, index=self.index
            )
        if self._completion is None:
            # A builtin thread that died without reporting.
            self._completion = StageCompletion(
                status=StageStatus.BUILTIN_FAILED,
                error=BuiltinError(
                    "failed: builtin did not report a result",
                    command=self.command,
                    stage_index=self.index,
                ),
            )
        return self._completion

    def outcome(self, stderr: str = "") -> StageOutcome:
        """Reduce the finished stage to a :class:`StageOutcome`."""
        completion = self.wait()
        if completion.error is not None and stderr.strip():
            completion.error.attach_stderr(stderr)
        return StageOutcome(
            index=self.index,
            command=self.command,
            kind=self.kind,
            status=completion.status,
            exit_code=completion.exit_code,
            error=completion.error,
            stderr=stderr,
            pid=self.pid,
            ignore_failure=self.stage.ignore_failure,
        )

    def _start_thread(self, target: Callable[[], None], name: str) -> None:
        self._thread = threading.Thread(target=target, name=name, daemon=True)
        self._thread.start()

    def _complete(self, completion: StageCompletion) -> None:
        if self._completion is None:
            self._completion = completion


class Spawner:
    """Starts every stage of a routed pipeline in pipeline order."""

    def __init__(
        self,
        context: ExecutionContext,
        *,
        registry: BuiltinRegistry | None = None,
    ) -> None:
        self._context = context
        self._registry = registry if registry is not None else get_builtin_registry()

    def spawn(self, pipeline: Pipeline, route: Route) -> list[StageHandle]:
        """Start all stages; the route's bindings are consumed.

        Stages that fail to start get a handle carrying their failure, so the
        returned list always has one handle per stage.
        """
        handles: list[StageHandle] = []
        try:
            for stage, binding in zip(pipeline.stages, route.bindings):
                handles.append(self.spawn_stage(stage, binding))
        except BaseException:
            route.close()
            for handle in handles:
                handle.wait()
            raise
        return handles

    def spawn_stage(self, stage: Stage, binding: StageBinding) -> StageHandle:
        """Start one stage; its binding is closed in the parent either way."""
        if stage.kind is StageKind.BUILTIN:
            return self._spawn_builtin(stage, binding)
        return self._spawn_external(stage, binding)

    # --- External ---

    def _spawn_external(self, stage: Stage, binding: StageBinding) -> StageHandle:
        command = stage.command_text
        cwd = self._context.cwd
        env = self._context.stage_environment(stage.env_overrides)
        try:
            process = subprocess.Popen(
                list(stage.argv),
                stdin=binding.stdin.fd,
                stdout=binding.stdout.fd,
                stderr=binding.stderr.fd,
                cwd=str(cwd),
                env=env,
                close_fds=True,
            )
        except (OSError, ValueError) as exc:
            reason = exc.strerror if isinstance(exc, OSError) and exc.strerror else exc
            logger.debug("Spawning stage %d failed: %s", binding.index, reason)
            return StageHandle(
                stage,
                binding.index,
                completion=StageCompletion(
                    status=StageStatus.SPAWN_FAILED,
                    error=SpawnError(
                        f"failed to start: {reason}",
                        command=command,
                        stage_index=binding.index,
                    ),
                ),
            )
        finally:
            # Downstream readers only see EOF once every writer copy is gone.
            binding.close()
        logger.debug("Stage %d started as pid %d in %s", binding.index, process.pid, cwd)
        return StageHandle(stage, binding.index, process=process)

    # --- Builtin ---

    def _spawn_builtin(self, stage: Stage, binding: StageBinding) -> StageHandle:
        command = self._registry.get(stage.name)
        if command is None:
            binding.close()
            return StageHandle(
                stage,
                binding.index,
                completion=StageCompletion(
                    status=StageStatus.SPAWN_FAILED,
                    error=SpawnError(
                        "failed to start: builtin is not registered",
                        command=stage.command_text,
                        stage_index=binding.index,
                    ),
                ),
            )

        try:
            streams = _open_streams(binding)
        except OSError as exc:
            binding.close()
            return StageHandle(
                stage,
                binding.index,
                completion=StageCompletion(
                    status=StageStatus.SPAWN_FAILED,
                    error=SpawnError(
                        f"failed to start: {exc.strerror or exc}",
                        command=stage.command_text,
                        stage_index=binding.index,
                    ),
                ),
            )

        handle = StageHandle(stage, binding.index)
        thread_name = f"cmdpipe-builtin-{stage.name}"

        if command.inline:
            # Later stages do not exist yet, so nothing may be reading the
            # routed outputs. Buffer them and let a feeder thread deliver.
            buffers = (io.BytesIO(), io.BytesIO())
            env = self._builtin_env(stage, streams[0], *buffers)
            completion = _run_builtin(
                command, env, streams[:1], stage=stage, index=binding.index
            )

            def feed() -> None:
                handle._complete(
                    _feed_outputs(
                        completion,
                        [(buffers[0], streams[1]), (buffers[1], streams[2])],
                        stage=stage,
                        index=binding.index,
                    )
                )

            handle._start_thread(feed, name=thread_name)
            return handle

        env = self._builtin_env(stage, *streams)

        def target() -> None:
            handle._complete(
                _run_builtin(command, env, streams, stage=stage, index=binding.index)
            )

        handle._start_thread(target, name=thread_name)
        return handle

    def _builtin_env(
        self, stage: Stage, stdin: BinaryIO, stdout: BinaryIO, stderr: BinaryIO
    ) -> BuiltinEnv:
        return BuiltinEnv(
            argv=stage.argv,
            env_overrides=stage.env_overrides,
            context=self._context,
            current_dir=self._context.cwd,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
        )


def _open_streams(binding: StageBinding) -> tuple[BinaryIO, BinaryIO, BinaryIO]:
    """Wrap the binding's descriptors as binary streams owned by a builtin."""
    opened: list[BinaryIO] = []
    try:
        for endpoint, mode in zip(binding.endpoints(), ("rb", "wb", "wb")):
            opened.append(os.fdopen(_take_descriptor(endpoint), mode))
    except OSError:
        _close_streams(opened)
        binding.close()
        raise
    return opened[0], opened[1], opened[2]


def _take_descriptor(endpoint: Endpoint) -> int:
    if endpoint.inherits:
        endpoint.detach()
        return os.dup(endpoint.stream.number)
    descriptor = endpoint.detach()
    if descriptor is None:
        raise OSError(f"{endpoint.stream.label} is already closed")
    return descriptor


def _run_builtin(
    command: BuiltinCommand,
    env: BuiltinEnv,
    streams: Sequence[BinaryIO],
    *,
    stage: Stage,
    index: int,
) -> StageCompletion:
    text = stage.command_text
    try:
        code = command.func(env)
    except BrokenPipeError:
        completion = _broken_pipe(text=text, index=index)
    except BuiltinError as exc:
        completion = StageCompletion(
            status=StageStatus.BUILTIN_FAILED,
            error=BuiltinError(
                f"failed: {exc.detail}", command=text, stage_index=index
            ),
        )
    except SystemExit as exc:
        if exc.code is None:
            exit_code = 0
        elif isinstance(exc.code, int):
            exit_code = exc.code
        else:
            exit_code = 1
        completion = _builtin_exit(exit_code, text=text, index=index)
    except Exception as exc:
        logger.debug("Builtin %r raised", stage.name, exc_info=True)
        completion = StageCompletion(
            status=StageStatus.BUILTIN_FAILED,
            error=BuiltinError(
                f"failed: {type(exc).__name__}: {exc}",
                command=text,
                stage_index=index,
            ),
        )
    else:
        completion = _builtin_exit(code or 0, text=text, index=index)

    if not _close_streams(streams) and completion.status is StageStatus.SUCCESS:
        completion = _broken_pipe(text=text, index=index)
    return completion


def _feed_outputs(
    completion: StageCompletion,
    outputs: Sequence[tuple[io.BytesIO, BinaryIO]],
    *,
    stage: Stage,
    index: int,
) -> StageCompletion:
    """Copy buffered builtin output into the routed streams and close them."""
    clean = True
    for buffer, stream in outputs:
        data = buffer.getvalue()
        try:
            if data:
                stream.write(data)
        except BrokenPipeError:
            clean = False
        except OSError as exc:
            logger.debug("Writing builtin output failed: %s", exc)
        if not _close_streams([stream]):
            clean = False
    if not clean and completion.status is StageStatus.SUCCESS:
        return _broken_pipe(text=stage.command_text, index=index)
    return completion


def _broken_pipe(*, text: str, index: int) -> StageCompletion:
    return StageCompletion(
        status=StageStatus.BROKEN_PIPE,
        error=StageBrokenPipeError(
            "failed: broken pipe", command=text, stage_index=index
        ),
    )


def _builtin_exit(code: int, *, text: str, index: int) -> StageCompletion:
    if code == 0:
        return StageCompletion(status=StageStatus.SUCCESS, exit_code=0)
    return StageCompletion(
        status=StageStatus.BUILTIN_FAILED,
        exit_code=code,
        error=BuiltinError(
            f"exited with error; status code: {code}",
            command=text,
            stage_index=index,
        ),
    )


def _close_streams(streams: Sequence[BinaryIO]) -> bool:
    """Close builtin streams; False when flushing hit a broken pipe."""
    clean = True
    for stream in streams:
        try:
            stream.close()
        except BrokenPipeError:
            clean = False
        except OSError as exc:
            logger.debug("Closing builtin stream failed: %s", exc)
    return clean


def _completion_from_returncode(
    returncode: int, *, command: str, index: int
) -> StageCompletion:
    if returncode == 0:
        return StageCompletion(status=StageStatus.SUCCESS, exit_code=0)
    message = f"exited with error; {describe_returncode(returncode)}"
    if returncode == -signal.SIGPIPE:
        return StageCompletion(
            status=StageStatus.BROKEN_PIPE,
            exit_code=returncode,
            error=StageBrokenPipeError(message, command=command, stage_index=index),
        )
    status = StageStatus.SIGNALED if returncode < 0 else StageStatus.EXITED
    return StageCompletion(
        status=status,
        exit_code=returncode,
        error=RuntimeExitError(
            message, command=command, stage_index=index, exit_code=returncode
        ),
    )
