"""Execution runtime: context, routing, spawning, waiting and results."""

from cmdpipe.runtime.context import ExecutionContext
from cmdpipe.runtime.results import (
    FAILURE_EXIT_CODE,
    GroupResult,
    PipelineResult,
    StageOutcome,
    StageStatus,
)
from cmdpipe.runtime.runner import (
    PipelineHandle,
    PipelineRunner,
    get_pipeline_runner,
    run,
    run_capturing_output,
    run_group,
    run_streaming,
    spawn,
)

__all__ = [
    "FAILURE_EXIT_CODE",
    "ExecutionContext",
    "GroupResult",
    "PipelineHandle",
    "PipelineResult",
    "PipelineRunner",
    "StageOutcome",
    "StageStatus",
    "get_pipeline_runner",
    "run",
    "run_capturing_output",
    "run_group",
    "run_streaming",
    "spawn",
]
