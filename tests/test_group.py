"""Tests for sequential group execution and directory scoping."""

from __future__ import annotations

from pathlib import Path
from sys import executable

import pytest

from cmdpipe.pipeline.builder import (
    GroupBuilder,
    PipelineBuilder,
    build_group,
    build_pipeline,
)
from cmdpipe.pipeline.errors import BuiltinError, RedirectionError, RuntimeExitError
from cmdpipe.pipeline.types import Pipeline, Stage, StageKind
from cmdpipe.runtime.context import ExecutionContext
from cmdpipe.runtime.runner import run_group

PRINT_CWD = [executable, "-c", "import os; print(os.getcwd())"]


def _touch(path: Path) -> list[str]:
    return [executable, "-c", f"open({str(path)!r}, 'w').close()"]


def _false(*, ignore: bool = False) -> Pipeline:
    return build_pipeline(
        [Stage(argv=("false",), kind=StageKind.EXTERNAL)], ignore_failure=ignore
    )


def test_group_stops_at_first_non_ignorable_failure(
    context: ExecutionContext, tmp_path: Path
) -> None:
    marker = tmp_path / "third-ran"
    group = build_group(
        [
            build_pipeline([["true"]]),
            _false(),
            build_pipeline([_touch(marker)]),
        ]
    )

    result = run_group(group, context)

    assert not result.success
    assert len(result.results) == 2
    assert result.failure is result.results[1]
    assert isinstance(result.error, RuntimeExitError)
    assert result.exit_code == 1
    assert not marker.exists()


def test_ignorable_failure_is_recorded_and_execution_continues(
    context: ExecutionContext, tmp_path: Path
) -> None:
    marker = tmp_path / "third-ran"
    group = build_group(
        [
            build_pipeline([["true"]]),
            _false(ignore=True),
            build_pipeline([_touch(marker)]),
        ]
    )

    result = run_group(group, context)

    assert result.success
    assert result.exit_code == 0
    assert len(result.results) == 3
    assert result.ignored_failures == (result.results[1],)
    assert marker.exists()
    result.check()


def test_cd_is_visible_to_later_statements_and_undone_after(
    context: ExecutionContext, tmp_path: Path
) -> None:
    sub = tmp_path / "sub"
    sub.mkdir()
    group = (
        GroupBuilder().command("cd", str(sub)).add(build_pipeline([PRINT_CWD])).build()
    )

    result = run_group(group, context, capture_last=True)

    assert result.success
    assert result.stdout == f"{sub.resolve()}\n"
    assert context.cwd == tmp_path.resolve()
    assert context.depth == 1


def test_cd_is_undone_when_the_group_fails(
    context: ExecutionContext, tmp_path: Path
) -> None:
    sub = tmp_path / "sub"
    sub.mkdir()
    group = GroupBuilder().command("cd", "sub").add(_false()).build()

    result = run_group(group, context)

    assert not result.success
    assert context.cwd == tmp_path.resolve()


def test_cd_to_missing_directory_fails_the_group(
    context: ExecutionContext, tmp_path: Path
) -> None:
    group = GroupBuilder().command("cd", "nowhere").command("true").build()

    result = run_group(group, context)

    assert not result.success
    assert len(result.results) == 1
    assert isinstance(result.error, BuiltinError)
    assert "nowhere" in str(result.error)
    assert context.cwd == tmp_path.resolve()


def test_cd_inside_a_pipeline_applies_to_later_stages(
    context: ExecutionContext, tmp_path: Path
) -> None:
    sub = tmp_path / "sub"
    sub.mkdir()
    group = build_group([build_pipeline([["cd", "sub"], ["pwd"]])])

    result = run_group(group, context, capture_last=True)

    assert result.success
    assert result.stdout == f"{sub.resolve()}\n"
    assert context.cwd == tmp_path.resolve()


def test_redirection_error_becomes_failed_statement(
    context: ExecutionContext, tmp_path: Path
) -> None:
    missing = tmp_path / "missing" / "in.txt"
    failing = PipelineBuilder().stage("cat").stdin_from(missing).build()
    group = build_group([build_pipeline([["true"]]), failing])

    result = run_group(group, context)

    assert not result.success
    assert result.failure is not None
    assert result.failure.stages == ()
    assert isinstance(result.error, RedirectionError)
    assert result.exit_code == 1


def test_capture_last_of_ignored_failure_is_empty(context: ExecutionContext) -> None:
    failing = build_pipeline(
        [[executable, "-c", "print('partial'); raise SystemExit(2)"]],
        ignore_failure=True,
    )
    group = build_group([failing])

    result = run_group(group, context, capture_last=True)

    assert result.success
    assert result.stdout == ""


def test_scope_restores_cwd_when_body_raises(
    context: ExecutionContext, tmp_path: Path
) -> None:
    sub = tmp_path / "sub"
    sub.mkdir()

    with pytest.raises(RuntimeError):
        with context.scope():
            context.change_dir(sub)
            assert context.cwd == sub.resolve()
            raise RuntimeError("injected")

    assert context.cwd == tmp_path.resolve()
