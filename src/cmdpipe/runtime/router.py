"""IO routing: resolve pipes and redirections into concrete descriptors.

Everything here happens before the first stage starts. A redirection that
cannot be opened raises :class:`RedirectionError` after closing every
descriptor the router had already opened, so a pipeline either gets a
complete route or none at all.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from cmdpipe.pipeline.errors import RedirectionError
from cmdpipe.pipeline.types import (
    STDERR,
    STDIN,
    STDOUT,
    DupTarget,
    FileTarget,
    InheritTarget,
    NullTarget,
    Pipeline,
    Redirection,
    RedirectMode,
    Stage,
    StreamId,
)

logger = logging.getLogger(__name__)

_FILE_FLAGS = {
    RedirectMode.READ: os.O_RDONLY,
    RedirectMode.WRITE: os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
    RedirectMode.APPEND: os.O_WRONLY | os.O_CREAT | os.O_APPEND,
}


@dataclass(slots=True)
class Endpoint:
    """One side of a stage stream.

    ``fd`` is a descriptor owned by this endpoint. ``fd is None`` means the
    stage inherits the parent's standard stream of the same number.
    """

    stream: StreamId
    fd: int | None
    label: str
    closed: bool = False

    @property
    def inherits(self) -> bool:
        return self.fd is None

    def detach(self) -> int | None:
        """Hand the descriptor to a new owner; this endpoint stops tracking it."""
        descriptor = None if self.closed else self.fd
        self.closed = True
        return descriptor

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.fd is not None:
            _close_quietly(self.fd)


@dataclass(slots=True)
class StageBinding:
    """Resolved stdin/stdout/stderr endpoints for one stage."""

    index: int
    stdin: Endpoint
    stdout: Endpoint
    stderr: Endpoint

    def endpoints(self) -> tuple[Endpoint, Endpoint, Endpoint]:
        return (self.stdin, self.stdout, self.stderr)

    def describe(self) -> str:
        return (
            f"stdin={self.stdin.label} stdout={self.stdout.label} "
            f"stderr={self.stderr.label}"
        )

    def close(self) -> None:
        for endpoint in self.endpoints():
            endpoint.close()


@dataclass(slots=True)
class Route:
    """Concrete wiring for a whole pipeline, one binding per stage."""

    bindings: list[StageBinding] = field(default_factory=list)
    stdout_reader: int | None = None
    stderr_readers: dict[int, int] = field(default_factory=dict)

    def close(self) -> None:
        """Close every descriptor the route still owns."""
        for binding in self.bindings:
            binding.close()
        self.close_readers()

    def close_readers(self) -> None:
        if self.stdout_reader is not None:
            _close_quietly(self.stdout_reader)
            self.stdout_reader = None
        for reader in self.stderr_readers.values():
            _close_quietly(reader)
        self.stderr_readers.clear()


class IORouter:
    """Builds a :class:`Route` for a pipeline."""

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        cwd: Path,
        capture_stdout: bool = False,
        capture_stderr: bool = True,
    ) -> None:
        self._pipeline = pipeline
        self._cwd = cwd
        self._capture_stdout = capture_stdout
        self._capture_stderr = capture_stderr

    def route(self) -> Route:
        route = Route()
        # Endpoints created but not yet attached to a binding.
        pending: list[Endpoint] = []
        try:
            self._build(route, pending)
        except RedirectionError:
            _close_all(pending)
            route.close()
            raise
        except OSError as exc:
            _close_all(pending)
            route.close()
            raise RedirectionError(
                f"cannot allocate pipe: {exc.strerror or exc}",
                command=self._pipeline.command_text,
            ) from exc
        return route

    def _build(self, route: Route, pending: list[Endpoint]) -> None:
        stages = self._pipeline.stages
        count = len(stages)
        stdins: list[Endpoint | None] = [None] * count
        stdouts: list[Endpoint | None] = [None] * count

        for index in range(count - 1):
            left, right = stages[index], stages[index + 1]
            left_redirected = left.redirects(STDOUT)
            right_redirected = right.redirects(STDIN)
            if not left_redirected and not right_redirected:
                read_fd, write_fd = os.pipe()
                stdouts[index] = _track(pending, Endpoint(STDOUT, write_fd, "pipe"))
                stdins[index + 1] = _track(pending, Endpoint(STDIN, read_fd, "pipe"))
                continue
            # Explicit redirection wins over the implicit pipe; the side that
            # lost its partner sees the null device.
            if not left_redirected:
                stdouts[index] = _track(pending, _null_endpoint(STDOUT))
            if not right_redirected:
                stdins[index + 1] = _track(pending, _null_endpoint(STDIN))

        if stdins[0] is None:
            stdins[0] = Endpoint(STDIN, None, "inherit")
        if stdouts[-1] is None:
            if self._capture_stdout:
                read_fd, write_fd = os.pipe()
                route.stdout_reader = read_fd
                stdouts[-1] = _track(pending, Endpoint(STDOUT, write_fd, "capture"))
            else:
                stdouts[-1] = Endpoint(STDOUT, None, "inherit")

        for index, stage in enumerate(stages):
            stdin = stdins[index] or Endpoint(STDIN, None, "inherit")
            stdout = stdouts[index] or Endpoint(STDOUT, None, "inherit")
            if self._capture_stderr and not stage.redirects(STDERR):
                read_fd, write_fd = os.pipe()
                route.stderr_readers[index] = read_fd
                stderr = _track(pending, Endpoint(STDERR, write_fd, "capture"))
            else:
                stderr = Endpoint(STDERR, None, "inherit")

            binding = StageBinding(
                index=index, stdin=stdin, stdout=stdout, stderr=stderr
            )
            route.bindings.append(binding)
            # The binding owns these endpoints from here on.
            attached = {id(endpoint) for endpoint in binding.endpoints()}
            pending[:] = [ep for ep in pending if id(ep) not in attached]
            self._apply_redirections(binding, stage)
            logger.debug("Stage %d routed: %s", index, binding.describe())

    def _apply_redirections(self, binding: StageBinding, stage: Stage) -> None:
        for redirect in stage.redirections:
            replacement = self._open_target(binding, redirect)
            current = _slot(binding, redirect.source)
            current.close()
            _assign(binding, redirect.source, replacement)

    def _open_target(self, binding: StageBinding, redirect: Redirection) -> Endpoint:
        source = redirect.source
        target = redirect.target
        if not source.is_standard:
            raise self._error(
                binding, f"descriptor {source.number} cannot be redirected"
            )

        if isinstance(target, FileTarget):
            if target.is_null:
                return _null_endpoint(source)
            path = target.path.expanduser()
            if not path.is_absolute():
                path = self._cwd / path
            try:
                descriptor = os.open(path, _FILE_FLAGS[target.mode], 0o666)
            except OSError as exc:
                raise self._error(
                    binding, f"cannot open {path}: {exc.strerror or exc}"
                ) from exc
            return Endpoint(source, descriptor, f"file:{path}")

        if isinstance(target, DupTarget):
            if not target.stream.is_standard:
                raise self._error(
                    binding, f"descriptor {target.stream.number} is not open"
                )
            aliased = _slot(binding, target.stream)
            if aliased.inherits:
                if aliased.stream == source:
                    return Endpoint(source, None, "inherit")
                return Endpoint(
                    source,
                    os.dup(aliased.stream.number),
                    f"inherit:{aliased.stream.label}",
                )
            if aliased.closed or aliased.fd is None:
                raise self._error(
                    binding, f"descriptor {target.stream.number} is closed"
                )
            return Endpoint(source, os.dup(aliased.fd), aliased.label)

        if isinstance(target, InheritTarget):
            return Endpoint(source, None, "inherit")

        if isinstance(target, NullTarget):
            return _null_endpoint(source)

        raise self._error(binding, f"unsupported redirect target {target!r}")

    def _error(self, binding: StageBinding, message: str) -> RedirectionError:
        stage = self._pipeline.stages[binding.index]
        return RedirectionError(
            message,
            command=stage.command_text,
            stage_index=binding.index,
        )


def route_pipeline(
    pipeline: Pipeline,
    *,
    cwd: Path,
    capture_stdout: bool = False,
    capture_stderr: bool = True,
) -> Route:
    """Resolve all stage endpoints for ``pipeline``."""
    return IORouter(
        pipeline,
        cwd=cwd,
        capture_stdout=capture_stdout,
        capture_stderr=capture_stderr,
    ).route()


def _slot(binding: StageBinding, stream: StreamId) -> Endpoint:
    if stream == STDIN:
        return binding.stdin
    if stream == STDOUT:
        return binding.stdout
    return binding.stderr


def _assign(binding: StageBinding, stream: StreamId, endpoint: Endpoint) -> None:
    if stream == STDIN:
        binding.stdin = endpoint
    elif stream == STDOUT:
        binding.stdout = endpoint
    else:
        binding.stderr = endpoint


def _null_endpoint(stream: StreamId) -> Endpoint:
    flags = os.O_RDONLY if stream == STDIN else os.O_WRONLY
    return Endpoint(stream, os.open(os.devnull, flags), "null")


def _track(pending: list[Endpoint], endpoint: Endpoint) -> Endpoint:
    pending.append(endpoint)
    return endpoint


def _close_all(endpoints: list[Endpoint]) -> None:
    for endpoint in endpoints:
        endpoint.close()
    endpoints.clear()


def _close_quietly(descriptor: int) -> None:
    try:
        os.close(descriptor)
    except OSError:
        pass
