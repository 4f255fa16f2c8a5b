"""Error taxonomy for pipeline building, routing and execution.

Build and routing errors abort a pipeline before any stage starts. Stage
errors are local to one stage: they are collected into the pipeline result
and become its failure reason when the aggregation rules say so.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by cmdpipe."""


# --- Build time ---


class BuildError(PipelineError):
    """A pipeline or group could not be assembled."""


class EmptyPipelineError(BuildError):
    """A pipeline was built from an empty stage list."""

    def __init__(self) -> None:
        super().__init__("Pipeline requires at least one stage")


class InvalidStageError(BuildError):
    """A stage description is malformed (e.g. empty argv)."""

    def __init__(self, index: int, reason: str) -> None:
        self.index = index
        self.reason = reason
        super().__init__(f"Invalid stage {index}: {reason}")


class ScriptSyntaxError(BuildError):
    """Script text could not be turned into pipelines."""

    def __init__(self, message: str, *, script: str = "") -> None:
        self.script = script
        super().__init__(message)


# --- Routing ---


class RedirectionError(PipelineError):
    """A redirection target could not be opened or resolved."""

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        stage_index: int | None = None,
    ) -> None:
        self.command = command
        self.stage_index = stage_index
        text = message
        if command:
            text = f"Running [{command}] failed: {message}"
        super().__init__(text)


# --- Stage outcomes ---


class StageError(PipelineError):
    """Failure of a single stage, carrying the diagnostic context."""

    def __init__(
        self,
        message: str,
        *,
        command: str,
        stage_index: int,
        stderr: str = "",
    ) -> None:
        self.detail = message
        self.command = command
        self.stage_index = stage_index
        self.stderr = stderr
        super().__init__(self._format())

    def _format(self) -> str:
        text = f"Running [{self.command}] {self.detail}"
        stderr = self.stderr.strip()
        if stderr:
            text += f"\n{stderr}"
        return text

    def attach_stderr(self, stderr: str) -> None:
        """Attach stderr text captured after the error was created."""
        self.stderr = stderr
        self.args = (self._format(),)


class SpawnError(StageError):
    """An external program could not be located or executed."""


class RuntimeExitError(StageError):
    """A stage finished with a non-zero exit code or was killed by a signal."""

    def __init__(
        self,
        message: str,
        *,
        command: str,
        stage_index: int,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        self.exit_code = exit_code
        super().__init__(
            message, command=command, stage_index=stage_index, stderr=stderr
        )


class BuiltinError(StageError):
    """A builtin command reported failure.

    Builtins may also raise this directly with only a message; the spawner
    fills in the command and stage position.
    """

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        stage_index: int = -1,
        stderr: str = "",
    ) -> None:
        super().__init__(
            message, command=command, stage_index=stage_index, stderr=stderr
        )


class StageBrokenPipeError(StageError):
    """A writer stage found its downstream reader gone."""
