"""Validation and assembly of pipelines and groups.

``build_pipeline`` is the single entry point that turns stage descriptions
into a validated :class:`Pipeline`. The fluent builders below are thin
accumulators over it.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path

from cmdpipe.builtins.registry import BuiltinRegistry, get_builtin_registry
from cmdpipe.pipeline.errors import EmptyPipelineError, InvalidStageError
from cmdpipe.pipeline.types import (
    STDERR,
    STDIN,
    STDOUT,
    DupTarget,
    FileTarget,
    Group,
    NullTarget,
    Pipeline,
    PipeTarget,
    Redirection,
    RedirectMode,
    RedirectTarget,
    Stage,
    StageKind,
    StreamId,
)

logger = logging.getLogger(__name__)

ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

StageSpec = Stage | Sequence[str]


def build_pipeline(
    stages: Iterable[StageSpec],
    *,
    registry: BuiltinRegistry | None = None,
    ignore_failure: bool = False,
) -> Pipeline:
    """Validate stage descriptions and assemble a pipeline.

    Args:
        stages: Stage objects or plain argv sequences, in pipeline order.
        registry: Builtin registry used to classify stages. Defaults to the
            shared registry.
        ignore_failure: Mark the whole pipeline ignorable within a group.

    Returns:
        An immutable pipeline with every stage kind resolved.

    Raises:
        EmptyPipelineError: If ``stages`` is empty.
        InvalidStageError: If a stage has an empty argv, a bad environment
            name or a router-only redirection target.
    """
    registry = registry if registry is not None else get_builtin_registry()
    resolved = tuple(
        _resolve_stage(index, spec, registry) for index, spec in enumerate(stages)
    )
    if not resolved:
        raise EmptyPipelineError()
    return Pipeline(stages=resolved, ignore_failure=ignore_failure)


def build_group(pipelines: Iterable[Pipeline]) -> Group:
    """Assemble a group; every member must already be a built pipeline."""
    members = tuple(pipelines)
    if not members:
        raise EmptyPipelineError()
    return Group(pipelines=members)


def _resolve_stage(index: int, spec: StageSpec, registry: BuiltinRegistry) -> Stage:
    if isinstance(spec, Stage):
        stage = replace(spec, argv=_coerce_argv(spec.argv))
    else:
        stage = Stage(argv=_coerce_argv(spec))

    if not stage.argv:
        raise InvalidStageError(index, "argv is empty")
    if not stage.argv[0]:
        raise InvalidStageError(index, "command name is empty")

    for key in stage.env_overrides:
        if not ENV_NAME_PATTERN.match(key):
            raise InvalidStageError(index, f"invalid environment name {key!r}")

    for redirect in stage.redirections:
        if isinstance(redirect.target, PipeTarget):
            raise InvalidStageError(
                index, "pipe targets are inserted by the router, not by callers"
            )

    kind = stage.kind
    if kind is None or kind is StageKind.BUILTIN:
        if stage.name in registry:
            kind = StageKind.BUILTIN
        else:
            if kind is StageKind.BUILTIN:
                logger.debug(
                    "Builtin %r is not registered, falling back to external",
                    stage.name,
                )
            kind = StageKind.EXTERNAL

    return replace(
        stage,
        kind=kind,
        env_overrides=dict(stage.env_overrides),
        redirections=tuple(stage.redirections),
    )


def _coerce_argv(argv: Sequence[str] | str) -> tuple[str, ...]:
    if isinstance(argv, str):
        # A bare string is one program name, never a split command line.
        return (argv,)
    return tuple(
        os.fspath(part) if isinstance(part, os.PathLike) else str(part)
        for part in argv
    )


# --- Fluent builders ---


@dataclass
class _StageDraft:
    argv: list[str]
    kind: StageKind | None = None
    env: dict[str, str] = field(default_factory=dict)
    redirections: list[Redirection] = field(default_factory=list)
    ignore_failure: bool = False

    def freeze(self) -> Stage:
        return Stage(
            argv=tuple(self.argv),
            kind=self.kind,
            env_overrides=dict(self.env),
            redirections=tuple(self.redirections),
            ignore_failure=self.ignore_failure,
        )


class PipelineBuilder:
    """Accumulates stages fluently and finalizes through ``build_pipeline``.

    Modifier methods (``env``, ``redirect``, ``stdout_to`` ...) apply to the
    most recently added stage::

        pipeline = (
            PipelineBuilder()
            .stage("du", "-ah", ".")
            .stage("sort", "-hr")
            .stage("head", "-n", "10")
            .stdout_to("/tmp/top.txt")
            .build()
        )
    """

    def __init__(self, registry: BuiltinRegistry | None = None) -> None:
        self._registry = registry
        self._drafts: list[_StageDraft] = []
        self._ignore_failure = False

    def stage(
        self, *argv: str | os.PathLike[str], kind: StageKind | None = None
    ) -> PipelineBuilder:
        """Append a stage; ``kind`` forces external or builtin execution."""
        self._drafts.append(
            _StageDraft(argv=[os.fspath(part) for part in argv], kind=kind)
        )
        return self

    pipe = stage

    def env(self, **overrides: str) -> PipelineBuilder:
        draft = self._current()
        draft.env.update({key: str(value) for key, value in overrides.items()})
        return self

    def redirect(self, source: StreamId, target: RedirectTarget) -> PipelineBuilder:
        redirect = Redirection(source=source, target=target)
        self._current().redirections.append(redirect)
        return self

    def stdin_from(self, path: str | os.PathLike[str]) -> PipelineBuilder:
        return self.redirect(STDIN, FileTarget(Path(path), RedirectMode.READ))

    def stdout_to(
        self, path: str | os.PathLike[str], *, append: bool = False
    ) -> PipelineBuilder:
        mode = RedirectMode.APPEND if append else RedirectMode.WRITE
        return self.redirect(STDOUT, FileTarget(Path(path), mode))

    def stderr_to(
        self, path: str | os.PathLike[str], *, append: bool = False
    ) -> PipelineBuilder:
        mode = RedirectMode.APPEND if append else RedirectMode.WRITE
        return self.redirect(STDERR, FileTarget(Path(path), mode))

    def stderr_to_stdout(self) -> PipelineBuilder:
        return self.redirect(STDERR, DupTarget(STDOUT))

    def stdout_to_stderr(self) -> PipelineBuilder:
        return self.redirect(STDOUT, DupTarget(STDERR))

    def discard(self, stream: StreamId = STDOUT) -> PipelineBuilder:
        return self.redirect(stream, NullTarget())

    def ignore_stage_failure(self) -> PipelineBuilder:
        """Never let the current stage decide pipeline failure."""
        self._current().ignore_failure = True
        return self

    def ignore_failure(self) -> PipelineBuilder:
        """Mark the pipeline ignorable when it runs inside a group."""
        self._ignore_failure = True
        return self

    def build(self) -> Pipeline:
        return build_pipeline(
            [draft.freeze() for draft in self._drafts],
            registry=self._registry,
            ignore_failure=self._ignore_failure,
        )

    def _current(self) -> _StageDraft:
        if not self._drafts:
            raise EmptyPipelineError()
        return self._drafts[-1]


class GroupBuilder:
    """Accumulates pipelines into a group (the ``;``-joined script)."""

    def __init__(self, registry: BuiltinRegistry | None = None) -> None:
        self._registry = registry
        self._pipelines: list[Pipeline] = []

    def add(self, pipeline: Pipeline) -> GroupBuilder:
        self._pipelines.append(pipeline)
        return self

    def command(
        self,
        *argv: str,
        env: Mapping[str, str] | None = None,
        ignore_failure: bool = False,
    ) -> GroupBuilder:
        """Append a single-stage pipeline."""
        stage = Stage(argv=tuple(argv), env_overrides=dict(env or {}))
        return self.add(
            build_pipeline(
                [stage], registry=self._registry, ignore_failure=ignore_failure
            )
        )

    def build(self) -> Group:
        return build_group(self._pipelines)
