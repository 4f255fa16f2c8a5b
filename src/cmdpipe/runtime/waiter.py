"""Drain captured streams, wait for stages and aggregate their outcomes.

Every captured pipe gets a reader thread before anything blocks on a
stage. Without that, a stage writing more than the kernel pipe buffer
would stall forever while the caller waits for it to exit.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

from cmdpipe.pipeline.types import Pipeline
from cmdpipe.runtime.results import PipelineResult, StageOutcome
from cmdpipe.runtime.router import Route
from cmdpipe.runtime.spawner import StageHandle

logger = logging.getLogger(__name__)

stage_logger = logging.getLogger("cmdpipe.stage")
"""Receives one INFO record per stderr line written by a stage."""

_CHUNK_SIZE = 64 * 1024


class StreamDrain:
    """Reads one pipe to EOF on a daemon thread, buffering everything."""

    def __init__(
        self,
        fd: int,
        *,
        name: str,
        log_lines: bool = False,
    ) -> None:
        self._fd = fd
        self._name = name
        self._log_lines = log_lines
        self._buffer = bytearray()
        self._thread = threading.Thread(
            target=self._run, name=f"cmdpipe-drain-{name}", daemon=True
        )

    def start(self) -> StreamDrain:
        self._thread.start()
        return self

    def join(self) -> bytes:
        """Wait for EOF and return everything read."""
        self._thread.join()
        return bytes(self._buffer)

    def _run(self) -> None:
        try:
            with os.fdopen(self._fd, "rb") as stream:
                if self._log_lines:
                    for line in stream:
                        self._buffer.extend(line)
                        _report_stderr_line(line)
                else:
                    for chunk in iter(lambda: stream.read(_CHUNK_SIZE), b""):
                        self._buffer.extend(chunk)
        except OSError as exc:
            logger.warning("Reading %s failed: %s", self._name, exc)


def _report_stderr_line(line: bytes) -> None:
    text = line.decode(errors="replace").rstrip("\r\n")
    if stage_logger.hasHandlers():
        stage_logger.info("%s", text)
        return
    # No handler anywhere in the hierarchy: pass the line through.
    sys.stderr.write(f"{text}\n")
    sys.stderr.flush()


@dataclass(slots=True)
class Drains:
    """Reader threads for one pipeline's captured streams."""

    stdout: StreamDrain | None = None
    stderr: dict[int, StreamDrain] = field(default_factory=dict)


def start_drains(route: Route, *, drain_stdout: bool = True) -> Drains:
    """Start a reader for every captured stream of ``route``.

    The readers take ownership of the route's read ends. With
    ``drain_stdout=False`` the stdout read end stays on the route for the
    caller to consume.
    """
    drains = Drains()
    for index, reader in route.stderr_readers.items():
        drains.stderr[index] = StreamDrain(
            reader, name=f"stderr-{index}", log_lines=True
        ).start()
    route.stderr_readers.clear()
    if drain_stdout and route.stdout_reader is not None:
        drains.stdout = StreamDrain(route.stdout_reader, name="stdout").start()
        route.stdout_reader = None
    return drains


def iter_lines(fd: int) -> Iterator[str]:
    """Yield decoded lines from ``fd`` as they arrive, newline stripped.

    The descriptor is closed when the iterator finishes or is closed.
    """
    with os.fdopen(fd, "rb") as stream:
        for raw in stream:
            yield raw.decode(errors="replace").rstrip("\r\n")


def stream_lines(fd: int, on_line: Callable[[str], None]) -> None:
    """Invoke ``on_line`` for each line read from ``fd`` until EOF."""
    lines = iter_lines(fd)
    try:
        for line in lines:
            on_line(line)
    finally:
        lines.close()


def wait_pipeline(
    pipeline: Pipeline,
    handles: list[StageHandle],
    drains: Drains,
    *,
    pipefail: bool = False,
    capture_stdout: bool = False,
    started_at: float | None = None,
) -> PipelineResult:
    """Wait for every stage in pipeline order and build the result."""
    for handle in handles:
        handle.wait()

    stdout_bytes: bytes | None = None
    if drains.stdout is not None:
        stdout_bytes = drains.stdout.join()
    elif capture_stdout:
        # Last stage redirected its stdout away; nothing reached the capture.
        stdout_bytes = b""

    outcomes: list[StageOutcome] = []
    for handle in handles:
        drain = drains.stderr.get(handle.index)
        stderr = drain.join().decode(errors="replace") if drain is not None else ""
        outcomes.append(handle.outcome(stderr))

    duration = time.perf_counter() - started_at if started_at is not None else 0.0
    result = PipelineResult(
        command=pipeline.command_text,
        stages=tuple(outcomes),
        stdout_bytes=stdout_bytes,
        stderr="".join(outcome.stderr for outcome in outcomes),
        pipefail=pipefail,
        ignore_failure=pipeline.ignore_failure,
        duration_seconds=duration,
    )
    if not result.success:
        logger.debug("Pipeline failed: %s", result.error)
    return result
