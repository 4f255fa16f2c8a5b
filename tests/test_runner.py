"""Tests for pipeline execution: routing, spawning, draining and results."""

from __future__ import annotations

import logging
import select
import signal
import subprocess
import sys
import threading
from pathlib import Path
from sys import executable

import pytest

from cmdpipe.builtins.registry import BuiltinEnv, BuiltinRegistry
from cmdpipe.pipeline.builder import PipelineBuilder, build_pipeline
from cmdpipe.pipeline.errors import (
    RedirectionError,
    RuntimeExitError,
    SpawnError,
    StageBrokenPipeError,
)
from cmdpipe.pipeline.types import (
    STDOUT,
    DupTarget,
    Redirection,
    Stage,
    StageKind,
    fd,
)
from cmdpipe.runtime.context import ExecutionContext
from cmdpipe.runtime.results import PipelineResult, StageStatus
from cmdpipe.runtime.runner import (
    PipelineRunner,
    run,
    run_capturing_output,
    run_streaming,
    spawn,
)

PIPE_BUFFER_MULTIPLE = 10 * 64 * 1024


def _py(code: str) -> list[str]:
    return [executable, "-c", code]


def _external(*argv: str) -> Stage:
    return Stage(argv=tuple(argv), kind=StageKind.EXTERNAL)


def test_external_true_succeeds(context: ExecutionContext) -> None:
    result = run(build_pipeline([_external("true")]), context)

    assert result.success
    assert result.exit_code == 0
    assert result.exit_codes == (0,)
    assert result.error is None
    assert result.stages[0].kind is StageKind.EXTERNAL


def test_external_false_fails_with_nonzero_exit(context: ExecutionContext) -> None:
    result = run(build_pipeline([_external("false")]), context)

    assert not result.success
    assert result.exit_code != 0
    assert result.stages[0].status is StageStatus.EXITED
    assert isinstance(result.error, RuntimeExitError)
    assert "Running [false]" in str(result.error)
    with pytest.raises(RuntimeExitError):
        result.check()


def test_capturing_output_of_echo_into_wc(context: ExecutionContext) -> None:
    pipeline = build_pipeline([_external("echo", "a b c"), ["wc", "-w"]])

    result, output = run_capturing_output(pipeline, context)

    assert result.success
    assert output.strip() == "3"


def test_builtin_echo_feeds_external_stage(context: ExecutionContext) -> None:
    pipeline = build_pipeline([["echo", "a b c"], ["wc", "-w"]])

    assert pipeline.stages[0].kind is StageKind.BUILTIN
    result, output = run_capturing_output(pipeline, context)

    assert result.success
    assert output.strip() == "3"


def test_stdout_file_redirect_round_trip(
    context: ExecutionContext, tmp_path: Path
) -> None:
    payload = b"line one\nline two\x00\xff\n"
    pipeline = (
        PipelineBuilder()
        .stage(*_py(f"import sys; sys.stdout.buffer.write({payload!r})"))
        .stdout_to(tmp_path / "out.bin")
        .build()
    )

    result = run(pipeline, context)

    assert result.success
    assert (tmp_path / "out.bin").read_bytes() == payload


def test_relative_redirect_resolves_against_context_cwd(
    context: ExecutionContext, tmp_path: Path
) -> None:
    pipeline = PipelineBuilder().stage("echo", "hello").stdout_to("hello.txt").build()

    run(pipeline, context).check()

    assert (tmp_path / "hello.txt").read_text() == "hello\n"


def test_append_redirect_keeps_existing_content(
    context: ExecutionContext, tmp_path: Path
) -> None:
    target = tmp_path / "log.txt"
    target.write_text("first\n")
    pipeline = (
        PipelineBuilder().stage("echo", "second").stdout_to(target, append=True).build()
    )

    run(pipeline, context).check()

    assert target.read_text() == "first\nsecond\n"


def test_large_output_is_captured_without_deadlock(
    context: ExecutionContext,
) -> None:
    code = f"import sys; sys.stdout.buffer.write(b'x' * {PIPE_BUFFER_MULTIPLE})"
    pipeline = build_pipeline([_py(code), ["cat"]])

    result, _ = run_capturing_output(pipeline, context)

    assert result.success
    assert result.stdout_bytes is not None
    assert len(result.stdout_bytes) == PIPE_BUFFER_MULTIPLE


def test_large_stderr_is_drained_while_waiting(context: ExecutionContext) -> None:
    code = (
        "import sys; "
        f"sys.stderr.write('e' * {PIPE_BUFFER_MULTIPLE}); "
        "sys.stdout.write('done')"
    )

    result, output = run_capturing_output(build_pipeline([_py(code)]), context)

    assert result.success
    assert output == "done"
    assert len(result.stderr) == PIPE_BUFFER_MULTIPLE


def test_missing_binary_reports_spawn_error_without_hanging(
    context: ExecutionContext,
) -> None:
    pipeline = build_pipeline([["cmdpipe-no-such-binary-xyz"], ["wc", "-l"]])

    result = run(pipeline, context)

    assert not result.success
    assert result.failed_stage is not None
    assert result.failed_stage.index == 0
    assert isinstance(result.error, SpawnError)
    assert result.stages[0].status is StageStatus.SPAWN_FAILED
    assert result.stages[0].exit_code is None
    # The downstream stage saw EOF and finished normally.
    assert result.stages[1].status is StageStatus.SUCCESS
    assert result.exit_code == 1


def test_missing_binary_in_last_stage_breaks_upstream_pipe(
    context: ExecutionContext,
) -> None:
    pipeline = build_pipeline([["yes"], ["cmdpipe-no-such-binary-xyz"]])

    result = run(pipeline, context)

    assert not result.success
    assert isinstance(result.error, SpawnError)
    assert result.stages[0].status is StageStatus.BROKEN_PIPE


def test_upstream_broken_pipe_does_not_fail_pipeline(
    context: ExecutionContext,
) -> None:
    pipeline = build_pipeline([["yes"], ["head", "-n", "1"]])

    result, output = run_capturing_output(pipeline, context)

    assert result.success
    assert output == "y"
    assert result.stages[0].status is StageStatus.BROKEN_PIPE
    assert isinstance(result.stages[0].error, StageBrokenPipeError)


def test_pipefail_counts_upstream_failures(tmp_path: Path) -> None:
    context = ExecutionContext(cwd=tmp_path, pipefail=True)
    pipeline = build_pipeline([_external("false"), ["cat"]])

    result = run(pipeline, context)

    assert not result.success
    assert result.failed_stage is not None
    assert result.failed_stage.index == 0
    assert result.exit_code == 1


def test_without_pipefail_last_stage_decides(context: ExecutionContext) -> None:
    pipeline = build_pipeline([_external("false"), ["cat"]])

    result = run(pipeline, context)

    assert result.success
    assert result.stages[0].status is StageStatus.EXITED


def test_ignored_stage_never_decides_failure(context: ExecutionContext) -> None:
    ignored = Stage(argv=("false",), kind=StageKind.EXTERNAL, ignore_failure=True)
    pipeline = build_pipeline([_external("true"), ignored])

    result = run(pipeline, context)

    assert result.success


def test_exit_code_and_stderr_are_reported(
    context: ExecutionContext, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="cmdpipe.stage")
    code = "import sys; sys.stderr.write('boom\\n'); sys.exit(3)"

    result = run(build_pipeline([_py(code)]), context)

    assert not result.success
    assert result.exit_code == 3
    assert result.stderr == "boom\n"
    assert "boom" in str(result.error)
    assert any(record.getMessage() == "boom" for record in caplog.records)


def test_signal_death_maps_to_shell_exit_code(context: ExecutionContext) -> None:
    code = "import os, signal; os.kill(os.getpid(), signal.SIGKILL)"

    result = run(build_pipeline([_py(code)]), context)

    assert not result.success
    assert result.stages[0].status is StageStatus.SIGNALED
    assert result.exit_code == 128 + signal.SIGKILL


def test_stage_env_overrides_reach_the_process(tmp_path: Path) -> None:
    context = ExecutionContext(cwd=tmp_path, env_overrides={"CMDPIPE_OUTER": "ctx"})
    code = "import os; print(os.environ['CMDPIPE_OUTER'], os.environ['CMDPIPE_INNER'])"
    pipeline = PipelineBuilder().stage(*_py(code)).env(CMDPIPE_INNER="stage").build()

    result, output = run_capturing_output(pipeline, context)

    assert result.success
    assert output == "ctx stage"


def test_stderr_to_stdout_is_captured(context: ExecutionContext) -> None:
    code = "import sys; sys.stderr.write('to-err\\n')"
    pipeline = PipelineBuilder().stage(*_py(code)).stderr_to_stdout().build()

    result, output = run_capturing_output(pipeline, context)

    assert result.success
    assert output == "to-err"
    assert result.stderr == ""


def test_stdout_to_stderr_lands_in_stderr_capture(context: ExecutionContext) -> None:
    pipeline = PipelineBuilder().stage("echo", "moved").stdout_to_stderr().build()

    result, output = run_capturing_output(pipeline, context)

    assert result.success
    assert output == ""
    assert result.stderr == "moved\n"


def test_explicit_redirect_breaks_the_implicit_pipe(
    context: ExecutionContext, tmp_path: Path
) -> None:
    pipeline = (
        PipelineBuilder()
        .stage("echo", "to-file")
        .stdout_to(tmp_path / "out.txt")
        .stage("cat")
        .build()
    )

    result, output = run_capturing_output(pipeline, context)

    assert result.success
    assert output == ""
    assert (tmp_path / "out.txt").read_text() == "to-file\n"


def test_unopenable_redirect_fails_before_any_stage_starts(
    context: ExecutionContext, tmp_path: Path
) -> None:
    marker = tmp_path / "started"
    pipeline = (
        PipelineBuilder()
        .stage(*_py(f"open({str(marker)!r}, 'w').close()"))
        .stage("cat")
        .stdin_from(tmp_path / "missing" / "input.txt")
        .build()
    )

    with pytest.raises(RedirectionError) as excinfo:
        run(pipeline, context)

    assert "input.txt" in str(excinfo.value)
    assert excinfo.value.stage_index == 1
    assert not marker.exists()


def test_unroutable_descriptor_is_rejected(context: ExecutionContext) -> None:
    redirect = Redirection(fd(5), DupTarget(STDOUT))
    pipeline = build_pipeline([Stage(argv=("echo", "x"), redirections=(redirect,))])

    with pytest.raises(RedirectionError, match="descriptor 5"):
        run(pipeline, context)


def test_streaming_invokes_callback_per_line(context: ExecutionContext) -> None:
    code = "print('one'); print('two'); print('three')"
    lines: list[str] = []

    result = run_streaming(build_pipeline([_py(code)]), context, lines.append)

    assert result.success
    assert lines == ["one", "two", "three"]


def test_streaming_callback_error_still_waits_for_stages(
    context: ExecutionContext,
) -> None:
    pipeline = build_pipeline([["yes"]])

    def explode(line: str) -> None:
        raise ValueError(line)

    with pytest.raises(ValueError, match="y"):
        run_streaming(pipeline, context, explode)


def test_spawn_returns_handle_with_pids(context: ExecutionContext) -> None:
    pipeline = build_pipeline([_py("import time; time.sleep(0.1)"), ["cat"]])

    handle = spawn(pipeline, context)
    assert len(handle.pids) == 2
    result = handle.wait()

    assert result.success
    assert handle.poll()
    assert handle.wait() is result


def test_spawn_with_capture(context: ExecutionContext) -> None:
    handle = spawn(build_pipeline([["echo", "later"]]), context, capture_stdout=True)

    result = handle.wait()

    assert result.stdout == "later\n"


def test_custom_builtin_in_the_middle_of_a_pipeline(
    context: ExecutionContext,
) -> None:
    registry = BuiltinRegistry()

    def upper(env: BuiltinEnv) -> int:
        for line in env.lines():
            env.write(line.upper() + "\n")
        return 0

    registry.register("upper", upper)
    pipeline = build_pipeline(
        [_py("print('abc'); print('def')"), ["upper"], ["cat"]], registry=registry
    )

    result, output = PipelineRunner(registry=registry).run_capturing_output(
        pipeline, context
    )

    assert result.success
    assert result.stages[1].kind is StageKind.BUILTIN
    assert output == "ABC\nDEF"


def test_builtin_large_output_is_captured(context: ExecutionContext) -> None:
    registry = BuiltinRegistry()

    def flood(env: BuiltinEnv) -> None:
        env.stdout.write(b"z" * PIPE_BUFFER_MULTIPLE)

    registry.register("flood", flood)
    pipeline = build_pipeline([["flood"], ["cat"]], registry=registry)

    result = PipelineRunner(registry=registry).run(
        pipeline, context, capture_stdout=True
    )

    assert result.success
    assert result.stdout_bytes is not None
    assert len(result.stdout_bytes) == PIPE_BUFFER_MULTIPLE


def test_builtin_exception_becomes_stage_failure(context: ExecutionContext) -> None:
    registry = BuiltinRegistry()

    def broken(env: BuiltinEnv) -> int:
        raise RuntimeError("kaput")

    registry.register("broken", broken)
    pipeline = build_pipeline([["broken"]], registry=registry)

    result = PipelineRunner(registry=registry).run(pipeline, context)

    assert not result.success
    assert result.stages[0].status is StageStatus.BUILTIN_FAILED
    assert "kaput" in str(result.error)


def test_builtin_system_exit_does_not_stop_the_host(
    context: ExecutionContext,
) -> None:
    registry = BuiltinRegistry()

    def leave(env: BuiltinEnv) -> int:
        raise SystemExit(4)

    registry.register("leave", leave)
    pipeline = build_pipeline([["leave"]], registry=registry)

    result = PipelineRunner(registry=registry).run(pipeline, context)

    assert not result.success
    assert result.stages[0].exit_code == 4
    assert result.exit_code == 4


@pytest.mark.parametrize(("code", "exit_code"), [(None, 0), (0, 0), ("bye", 1)])
def test_builtin_system_exit_follows_python_exit_status(
    context: ExecutionContext, code: object, exit_code: int
) -> None:
    registry = BuiltinRegistry()

    def leave(env: BuiltinEnv) -> None:
        sys.exit(code)

    registry.register("leave", leave)
    pipeline = build_pipeline([["leave"]], registry=registry)

    result = PipelineRunner(registry=registry).run(pipeline, context)

    assert result.success is (exit_code == 0)
    assert result.exit_code == exit_code


def test_builtin_writer_sees_broken_pipe_when_reader_exits(
    context: ExecutionContext,
) -> None:
    registry = BuiltinRegistry()

    def endless(env: BuiltinEnv) -> None:
        while True:
            env.write("y\n")

    registry.register("endless", endless)
    pipeline = build_pipeline([["endless"], ["head", "-n", "1"]], registry=registry)

    result = PipelineRunner(registry=registry).run(
        pipeline, context, capture_stdout=True
    )

    assert result.success
    assert result.stdout == "y\n"
    writer = result.stages[0]
    assert writer.status is StageStatus.BROKEN_PIPE
    assert isinstance(writer.error, StageBrokenPipeError)


def test_builtin_broken_pipe_found_when_closing_buffered_output(
    context: ExecutionContext,
) -> None:
    registry = BuiltinRegistry()

    def linger(env: BuiltinEnv) -> int:
        # Stays in the stream buffer until the stream is closed.
        env.stdout.write(b"pending\n")
        poller = select.poll()
        poller.register(env.stdout.fileno(), select.POLLERR)
        poller.poll(10_000)
        return 0

    registry.register("linger", linger)
    pipeline = build_pipeline([["linger"], ["true"]], registry=registry)

    result = PipelineRunner(registry=registry).run(pipeline, context)

    assert result.success
    assert result.stages[0].status is StageStatus.BROKEN_PIPE
    assert isinstance(result.stages[0].error, StageBrokenPipeError)


def test_inline_builtin_output_larger_than_pipe_buffer(
    context: ExecutionContext,
) -> None:
    registry = BuiltinRegistry()

    def flood(env: BuiltinEnv) -> None:
        env.stdout.write(b"z" * PIPE_BUFFER_MULTIPLE)

    registry.register("flood", flood, inline=True)
    pipeline = build_pipeline([["flood"], ["cat"]], registry=registry)
    results: list[PipelineResult] = []

    worker = threading.Thread(
        target=lambda: results.append(
            PipelineRunner(registry=registry).run(
                pipeline, context, capture_stdout=True
            )
        ),
        daemon=True,
    )
    worker.start()
    worker.join(timeout=30)

    assert not worker.is_alive()
    (result,) = results
    assert result.success
    assert result.stdout_bytes == b"z" * PIPE_BUFFER_MULTIPLE


def test_inline_builtin_output_into_early_exiting_reader(
    context: ExecutionContext,
) -> None:
    registry = BuiltinRegistry()

    def burst(env: BuiltinEnv) -> None:
        env.stdout.write(b"z" * PIPE_BUFFER_MULTIPLE)

    registry.register("burst", burst, inline=True)
    pipeline = build_pipeline([["burst"], ["head", "-c", "1"]], registry=registry)

    result = PipelineRunner(registry=registry).run(
        pipeline, context, capture_stdout=True
    )

    assert result.success
    assert result.stdout == "z"
    assert result.stages[0].status is StageStatus.BROKEN_PIPE


def test_stage_stderr_reaches_terminal_without_logging_setup(tmp_path: Path) -> None:
    argv = ["sh", "-c", "echo oops-from-child >&2"]
    script = (
        "from cmdpipe import build_pipeline, run\n"
        f"result = run(build_pipeline([{argv!r}]))\n"
        "print('success', result.success)\n"
    )

    completed = subprocess.run(
        [executable, "-c", script],
        capture_output=True,
        text=True,
        cwd=tmp_path,
        timeout=60,
        check=False,
    )

    assert completed.stdout.strip() == "success True"
    assert "oops-from-child" in completed.stderr


def test_debug_context_logs_command_at_info(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="cmdpipe.runtime.runner")
    context = ExecutionContext(cwd=tmp_path, debug=True)

    run(build_pipeline([["true"]]), context)

    assert "Running [true] ..." in caplog.text
