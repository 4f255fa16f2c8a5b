"""cmdpipe: compose and run command pipelines without a shell.

Typical use::

    from cmdpipe import ExecutionContext, build_pipeline, run_capturing_output

    pipeline = build_pipeline([["echo", "a b c"], ["wc", "-w"]])
    result, output = run_capturing_output(pipeline, ExecutionContext())
    result.check()
"""

from cmdpipe.builtins import (
    BuiltinEnv,
    BuiltinRegistry,
    builtin,
    get_builtin_registry,
    register_builtin,
)
from cmdpipe.pipeline import (
    STDERR,
    STDIN,
    STDOUT,
    BuildError,
    BuiltinError,
    DupTarget,
    EmptyPipelineError,
    FileTarget,
    Group,
    GroupBuilder,
    InheritTarget,
    InvalidStageError,
    NullTarget,
    Pipeline,
    PipelineBuilder,
    PipelineError,
    Redirection,
    RedirectionError,
    RedirectMode,
    RuntimeExitError,
    ScriptSyntaxError,
    SpawnError,
    Stage,
    StageBrokenPipeError,
    StageError,
    StageKind,
    StreamId,
    build_group,
    build_pipeline,
    fd,
)
from cmdpipe.runtime import (
    ExecutionContext,
    GroupResult,
    PipelineHandle,
    PipelineResult,
    PipelineRunner,
    StageOutcome,
    StageStatus,
    run,
    run_capturing_output,
    run_group,
    run_streaming,
    spawn,
)
from cmdpipe.script import parse_script, run_script

__version__ = "0.1.0"

__all__ = [
    "STDERR",
    "STDIN",
    "STDOUT",
    "BuildError",
    "BuiltinEnv",
    "BuiltinError",
    "BuiltinRegistry",
    "DupTarget",
    "EmptyPipelineError",
    "ExecutionContext",
    "FileTarget",
    "Group",
    "GroupBuilder",
    "GroupResult",
    "InheritTarget",
    "InvalidStageError",
    "NullTarget",
    "Pipeline",
    "PipelineBuilder",
    "PipelineError",
    "PipelineHandle",
    "PipelineResult",
    "PipelineRunner",
    "RedirectMode",
    "Redirection",
    "RedirectionError",
    "RuntimeExitError",
    "ScriptSyntaxError",
    "SpawnError",
    "Stage",
    "StageBrokenPipeError",
    "StageError",
    "StageKind",
    "StageOutcome",
    "StageStatus",
    "StreamId",
    "build_group",
    "build_pipeline",
    "builtin",
    "fd",
    "get_builtin_registry",
    "parse_script",
    "register_builtin",
    "run",
    "run_capturing_output",
    "run_group",
    "run_script",
    "run_streaming",
    "spawn",
]
