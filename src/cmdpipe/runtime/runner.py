"""Pipeline and group execution entry points."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable

from cmdpipe.builtins.registry import BuiltinRegistry
from cmdpipe.pipeline.errors import RedirectionError
from cmdpipe.pipeline.types import Group, Pipeline
from cmdpipe.runtime.context import ExecutionContext
from cmdpipe.runtime.results import GroupResult, PipelineResult
from cmdpipe.runtime.router import route_pipeline
from cmdpipe.runtime.spawner import Spawner, StageHandle
from cmdpipe.runtime.waiter import (
    Drains,
    StreamDrain,
    start_drains,
    stream_lines,
    wait_pipeline,
)

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]


class PipelineHandle:
    """A started pipeline; call :meth:`wait` to collect its result."""

    def __init__(
        self,
        pipeline: Pipeline,
        handles: list[StageHandle],
        drains: Drains,
        *,
        pipefail: bool,
        capture_stdout: bool,
        started_at: float,
        stdout_reader: int | None = None,
    ) -> None:
        self.pipeline = pipeline
        self._handles = handles
        self._drains = drains
        self._pipefail = pipefail
        self._capture_stdout = capture_stdout
        self._started_at = started_at
        self._stdout_reader = stdout_reader
        self._result: PipelineResult | None = None

    @property
    def pids(self) -> tuple[int, ...]:
        """Process ids of the external stages that started."""
        return tuple(handle.pid for handle in self._handles if handle.pid is not None)

    def poll(self) -> bool:
        """Return True once every stage has finished, without blocking."""
        return all(handle.poll() for handle in self._handles)

    def take_stdout_reader(self) -> int | None:
        """Hand the undrained stdout read end to the caller."""
        reader, self._stdout_reader = self._stdout_reader, None
        return reader

    def wait(self) -> PipelineResult:
        """Block until all stages finish. Repeated calls return the same result."""
        if self._result is not None:
            return self._result
        if self._stdout_reader is not None:
            self._drains.stdout = StreamDrain(self._stdout_reader, name="stdout").start()
            self._stdout_reader = None
        self._result = wait_pipeline(
            self.pipeline,
            self._handles,
            self._drains,
            pipefail=self._pipefail,
            capture_stdout=self._capture_stdout,
            started_at=self._started_at,
        )
        return self._result


class PipelineRunner:
    """Routes, spawns and waits for pipelines against an execution context."""

    def __init__(self, *, registry: BuiltinRegistry | None = None) -> None:
        self._registry = registry

    def spawn(
        self,
        pipeline: Pipeline,
        context: ExecutionContext | None = None,
        *,
        capture_stdout: bool = False,
    ) -> PipelineHandle:
        """Start ``pipeline`` and return without waiting.

        Raises:
            RedirectionError: If a redirection cannot be opened. No stage has
                been started in that case.
        """
        return self._start(
            pipeline,
            context or ExecutionContext(),
            capture_stdout=capture_stdout,
            drain_stdout=True,
        )

    def run(
        self,
        pipeline: Pipeline,
        context: ExecutionContext | None = None,
        *,
        capture_stdout: bool = False,
    ) -> PipelineResult:
        """Run ``pipeline`` to completion."""
        return self.spawn(pipeline, context, capture_stdout=capture_stdout).wait()

    def run_capturing_output(
        self,
        pipeline: Pipeline,
        context: ExecutionContext | None = None,
    ) -> tuple[PipelineResult, str]:
        """Run ``pipeline`` and return its stdout with one trailing newline removed."""
        result = self.run(pipeline, context, capture_stdout=True)
        output = result.stdout or ""
        if output.endswith("\n"):
            output = output[:-1]
        return result, output

    def run_streaming(
        self,
        pipeline: Pipeline,
        context: ExecutionContext | None,
        on_line: LineCallback,
    ) -> PipelineResult:
        """Run ``pipeline``, calling ``on_line`` for each stdout line as it arrives.

        The callback runs on the calling thread. If it raises, the stdout
        pipe is closed, the stages are still waited for, and the exception
        propagates.
        """
        handle = self._start(
            pipeline,
            context or ExecutionContext(),
            capture_stdout=True,
            drain_stdout=False,
        )
        reader = handle.take_stdout_reader()
        try:
            if reader is not None:
                stream_lines(reader, on_line)
        finally:
            result = handle.wait()
        return result

    def run_group(
        self,
        group: Group,
        context: ExecutionContext | None = None,
        *,
        capture_last: bool = False,
    ) -> GroupResult:
        """Run each pipeline of ``group`` in order, stopping at the first failure.

        Failures of pipelines marked ``ignore_failure`` are recorded and
        execution continues. Directory changes made inside the group are
        undone when it ends, however it ends.
        """
        context = context or ExecutionContext()
        results: list[PipelineResult] = []
        failure: PipelineResult | None = None
        stdout_bytes: bytes | None = None
        last = len(group.pipelines) - 1

        with context.scope():
            for position, pipeline in enumerate(group.pipelines):
                capture = capture_last and position == last
                try:
                    result = self.run(pipeline, context, capture_stdout=capture)
                except RedirectionError as exc:
                    result = PipelineResult(
                        command=pipeline.command_text,
                        stages=(),
                        stdout_bytes=b"" if capture else None,
                        ignore_failure=pipeline.ignore_failure,
                        setup_error=exc,
                    )
                results.append(result)
                if capture:
                    stdout_bytes = result.stdout_bytes if result.success else b""
                if result.success:
                    continue
                if pipeline.ignore_failure:
                    logger.debug("Ignoring failure: %s", result.error)
                    continue
                failure = result
                break

        return GroupResult(
            results=tuple(results),
            failure=failure,
            stdout_bytes=stdout_bytes,
        )

    def _start(
        self,
        pipeline: Pipeline,
        context: ExecutionContext,
        *,
        capture_stdout: bool,
        drain_stdout: bool,
    ) -> PipelineHandle:
        level = logging.INFO if context.debug else logging.DEBUG
        logger.log(level, "Running [%s] ...", pipeline.command_text)
        started_at = time.perf_counter()

        route = route_pipeline(
            pipeline,
            cwd=context.cwd,
            capture_stdout=capture_stdout,
            capture_stderr=context.capture_stderr,
        )
        drains = start_drains(route, drain_stdout=drain_stdout)
        stdout_reader = route.stdout_reader
        route.stdout_reader = None
        try:
            handles = Spawner(context, registry=self._registry).spawn(pipeline, route)
        except BaseException:
            if stdout_reader is not None:
                os.close(stdout_reader)
            raise
        return PipelineHandle(
            pipeline,
            handles,
            drains,
            pipefail=context.pipefail,
            capture_stdout=capture_stdout,
            started_at=started_at,
            stdout_reader=stdout_reader,
        )


_DEFAULT_PIPELINE_RUNNER = PipelineRunner()


def get_pipeline_runner() -> PipelineRunner:
    """Return shared pipeline runner instance."""
    return _DEFAULT_PIPELINE_RUNNER


def run(
    pipeline: Pipeline,
    context: ExecutionContext | None = None,
) -> PipelineResult:
    """Run ``pipeline`` without capturing its stdout."""
    return get_pipeline_runner().run(pipeline, context)


def run_capturing_output(
    pipeline: Pipeline,
    context: ExecutionContext | None = None,
) -> tuple[PipelineResult, str]:
    return get_pipeline_runner().run_capturing_output(pipeline, context)


def run_streaming(
    pipeline: Pipeline,
    context: ExecutionContext | None,
    on_line: LineCallback,
) -> PipelineResult:
    return get_pipeline_runner().run_streaming(pipeline, context, on_line)


def spawn(
    pipeline: Pipeline,
    context: ExecutionContext | None = None,
    *,
    capture_stdout: bool = False,
) -> PipelineHandle:
    return get_pipeline_runner().spawn(
        pipeline, context, capture_stdout=capture_stdout
    )


def run_group(
    group: Group,
    context: ExecutionContext | None = None,
    *,
    capture_last: bool = False,
) -> GroupResult:
    return get_pipeline_runner().run_group(group, context, capture_last=capture_last)
