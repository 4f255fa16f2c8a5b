"""Outcome types for stages, pipelines and groups."""

from __future__ import annotations

import signal
from dataclasses import dataclass
from enum import Enum

from cmdpipe.pipeline.errors import PipelineError, StageError
from cmdpipe.pipeline.types import StageKind

FAILURE_EXIT_CODE = 1
"""Exit code reported when a failed pipeline has no usable numeric code."""


class StageStatus(str, Enum):
    """Terminal state of one stage."""

    SUCCESS = "success"
    EXITED = "exited"  # non-zero exit code
    SIGNALED = "signaled"  # killed by a signal other than SIGPIPE
    BROKEN_PIPE = "broken_pipe"  # downstream reader went away
    BUILTIN_FAILED = "builtin_failed"
    SPAWN_FAILED = "spawn_failed"  # never ran


@dataclass(frozen=True, slots=True)
class StageOutcome:
    """Result for one stage of a pipeline."""

    index: int
    command: str
    kind: StageKind
    status: StageStatus
    exit_code: int | None = None
    error: StageError | None = None
    stderr: str = ""
    pid: int | None = None
    ignore_failure: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status is StageStatus.SUCCESS

    @property
    def failed(self) -> bool:
        return not self.succeeded

    @property
    def ran(self) -> bool:
        return self.status is not StageStatus.SPAWN_FAILED

    @property
    def effective_exit_code(self) -> int:
        """Shell-style code: signal deaths map to ``128 + signum``."""
        if self.exit_code is None:
            return 0 if self.succeeded else FAILURE_EXIT_CODE
        if self.exit_code < 0:
            return 128 - self.exit_code
        return self.exit_code


def decide_failure(
    stages: tuple[StageOutcome, ...],
    *,
    pipefail: bool = False,
) -> StageOutcome | None:
    """Pick the stage whose failure fails the pipeline, if any.

    The last stage decides, as in a shell, with two exceptions: a stage that
    never ran fails the pipeline wherever it sits, and with ``pipefail`` the
    rightmost failing stage decides. Stages marked ``ignore_failure`` never
    decide.
    """
    if not stages:
        return None
    counted = [stage for stage in stages if stage.failed and not stage.ignore_failure]
    never_ran = [stage for stage in counted if not stage.ran]
    if never_ran:
        return never_ran[0]
    if pipefail and counted:
        return counted[-1]
    last = stages[-1]
    if last.failed and not last.ignore_failure:
        return last
    return None


@dataclass(frozen=True, slots=True)
class PipelineResult:
    """Aggregated outcome of one pipeline run."""

    command: str
    stages: tuple[StageOutcome, ...]
    stdout_bytes: bytes | None = None
    stderr: str = ""
    pipefail: bool = False
    ignore_failure: bool = False
    duration_seconds: float = 0.0
    setup_error: PipelineError | None = None

    @property
    def failed_stage(self) -> StageOutcome | None:
        return decide_failure(self.stages, pipefail=self.pipefail)

    @property
    def success(self) -> bool:
        return self.setup_error is None and self.failed_stage is None

    @property
    def stdout(self) -> str | None:
        """Captured stdout text, or None when output was not captured."""
        if self.stdout_bytes is None:
            return None
        return self.stdout_bytes.decode(errors="replace")

    @property
    def exit_codes(self) -> tuple[int | None, ...]:
        return tuple(stage.exit_code for stage in self.stages)

    @property
    def error(self) -> PipelineError | None:
        """The error explaining the failure, or None on success."""
        if self.setup_error is not None:
            return self.setup_error
        stage = self.failed_stage
        if stage is None:
            return None
        return stage.error

    @property
    def exit_code(self) -> int:
        """Exit code for a host CLI: the last stage's code, or a sentinel."""
        if self.success:
            return 0
        if self.stages:
            code = self.stages[-1].effective_exit_code
            if code > 0:
                return code
        # With pipefail the deciding stage may sit before a successful last stage.
        failed = self.failed_stage
        if failed is not None and failed.effective_exit_code > 0:
            return failed.effective_exit_code
        return FAILURE_EXIT_CODE

    def describe_failure(self) -> str:
        """Multi-line diagnostic naming the failed command and its stderr."""
        error = self.error
        if error is None:
            return ""
        text = str(error)
        if isinstance(error, StageError) or not self.stderr.strip():
            return text
        return f"{text}\n{self.stderr.strip()}"

    def check(self) -> PipelineResult:
        """Return ``self`` on success, raise the failure's error otherwise."""
        error = self.error
        if error is not None:
            raise error
        return self


@dataclass(frozen=True, slots=True)
class GroupResult:
    """Outcome of a sequential group of pipelines."""

    results: tuple[PipelineResult, ...]
    failure: PipelineResult | None = None
    stdout_bytes: bytes | None = None

    @property
    def success(self) -> bool:
        return self.failure is None

    @property
    def stdout(self) -> str | None:
        if self.stdout_bytes is None:
            return None
        return self.stdout_bytes.decode(errors="replace")

    @property
    def ignored_failures(self) -> tuple[PipelineResult, ...]:
        return tuple(
            result
            for result in self.results
            if not result.success and result is not self.failure
        )

    @property
    def exit_code(self) -> int:
        if self.failure is None:
            return 0
        return self.failure.exit_code

    @property
    def error(self) -> PipelineError | None:
        if self.failure is None:
            return None
        return self.failure.error

    def check(self) -> GroupResult:
        if self.failure is not None:
            self.failure.check()
        return self


def describe_returncode(returncode: int) -> str:
    """Human readable form of a ``Popen.returncode``."""
    if returncode >= 0:
        return f"status code: {returncode}"
    try:
        name = signal.Signals(-returncode).name
    except ValueError:
        name = f"signal {-returncode}"
    return f"terminated by {name}"
