"""Pipeline model: stages, redirections, builders and errors."""

from cmdpipe.pipeline.builder import (
    GroupBuilder,
    PipelineBuilder,
    build_group,
    build_pipeline,
)
from cmdpipe.pipeline.errors import (
    BuildError,
    BuiltinError,
    EmptyPipelineError,
    InvalidStageError,
    PipelineError,
    RedirectionError,
    RuntimeExitError,
    ScriptSyntaxError,
    SpawnError,
    StageBrokenPipeError,
    StageError,
)
from cmdpipe.pipeline.types import (
    STDERR,
    STDIN,
    STDOUT,
    DupTarget,
    FileTarget,
    Group,
    InheritTarget,
    NullTarget,
    Pipeline,
    PipeTarget,
    Redirection,
    RedirectMode,
    RedirectTarget,
    Stage,
    StageKind,
    StreamId,
    fd,
)

__all__ = [
    "STDERR",
    "STDIN",
    "STDOUT",
    "BuildError",
    "BuiltinError",
    "DupTarget",
    "EmptyPipelineError",
    "FileTarget",
    "Group",
    "GroupBuilder",
    "InheritTarget",
    "InvalidStageError",
    "NullTarget",
    "PipeTarget",
    "Pipeline",
    "PipelineBuilder",
    "PipelineError",
    "RedirectMode",
    "RedirectTarget",
    "Redirection",
    "RedirectionError",
    "RuntimeExitError",
    "ScriptSyntaxError",
    "SpawnError",
    "Stage",
    "StageBrokenPipeError",
    "StageError",
    "StageKind",
    "StreamId",
    "build_group",
    "build_pipeline",
    "fd",
]
