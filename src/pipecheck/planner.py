"""Expand a pipeline into a deterministic execution plan.

The plan mirrors the stage/step structure with everything resolved:
matrix axes are cross-producted into concrete cells, ``when`` conditions
are evaluated, retry/timeout wrappers become explicit wrapper nodes and
each node carries the agent and environment it runs with.

Ordering guarantees:
    - stages and steps keep their declared order
    - matrix cells are emitted axis-major, first axis slowest-varying,
      values in declared order
    - skipped nodes stay in the plan (with their whole subtree) so reports
      are complete
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum

from pipecheck.conditions import ExecutionContext, evaluate
from pipecheck.pipeline import (
    Agent,
    CheckoutStep,
    CredentialReference,
    EchoStep,
    EnvBinding,
    LibraryCallStep,
    Matrix,
    MatrixStage,
    ParallelStage,
    Pipeline,
    PostCondition,
    RetryStep,
    ShellStep,
    Stage,
    Step,
    StepsStage,
    TimeoutStep,
)

logger = logging.getLogger(__name__)

EnvValue = str | CredentialReference


class PlanError(Exception):
    """Raised when a pipeline cannot be expanded into a plan."""


class NodeKind(Enum):
    STAGE = "stage"
    PARALLEL = "parallel"
    STEP = "step"
    RETRY = "retry"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class PlanNode:
    path: str
    name: str
    kind: NodeKind
    children: tuple[PlanNode, ...] = ()
    step: Step | None = None
    skipped: bool = False
    skip_reason: str | None = None
    max_attempts: int = 1
    timeout_seconds: float | None = None
    fail_fast: bool = False
    agent: Agent | None = None
    environment: Mapping[str, EnvValue] = field(default_factory=dict)

    def iter_nodes(self) -> Iterator[PlanNode]:
        yield self
        for child in self.children:
            yield from child.iter_nodes()


@dataclass(frozen=True)
class PlannedPost:
    condition: PostCondition
    steps: tuple[PlanNode, ...]


@dataclass(frozen=True)
class ExecutionPlan:
    stages: tuple[PlanNode, ...]
    post: tuple[PlannedPost, ...] = ()

    def iter_nodes(self) -> Iterator[PlanNode]:
        for stage in self.stages:
            yield from stage.iter_nodes()

    def find(self, path: str) -> PlanNode | None:
        return next((n for n in self.iter_nodes() if n.path == path), None)

    def post_for(self, condition: PostCondition) -> PlannedPost | None:
        return next((p for p in self.post if p.condition == condition), None)


def step_label(step: Step) -> str:
    if isinstance(step, ShellStep):
        return f"sh {step.script}"
    if isinstance(step, EchoStep):
        return f"echo {step.message}"
    if isinstance(step, CheckoutStep):
        return f"git {step.url}" if step.url else "checkout scm"
    if isinstance(step, LibraryCallStep):
        return step.call
    if isinstance(step, RetryStep):
        return f"retry({step.max_attempts})"
    if isinstance(step, TimeoutStep):
        return f"timeout({step.seconds:g}s)"
    msg = f"Unsupported step: {step!r}"
    raise TypeError(msg)


def plan(
    pipeline: Pipeline,
    context: ExecutionContext | None = None,
    *,
    fail_fast: bool = False,
) -> ExecutionPlan:
    """Expand *pipeline* for *context*.

    *fail_fast* is the policy for parallel stages that do not set
    ``failFast`` themselves; the default runs every sibling to completion.
    """
    return _Planner(context or ExecutionContext(), fail_fast).plan(pipeline)


class _Planner:
    def __init__(self, context: ExecutionContext, fail_fast: bool) -> None:
        self._context = context
        self._fail_fast = fail_fast

    def plan(self, pipeline: Pipeline) -> ExecutionPlan:
        scope: dict[str, EnvValue] = dict(pipeline.parameter_defaults())
        scope = _extend(scope, pipeline.environment)
        agent = pipeline.agent

        if pipeline.matrix is not None:
            cells = self._cells(
                pipeline.matrix, "matrix", "matrix", pipeline.stages, scope, agent, False
            )
            stages: tuple[PlanNode, ...] = (
                PlanNode(
                    path="matrix",
                    name="matrix",
                    kind=NodeKind.PARALLEL,
                    children=cells,
                    fail_fast=self._fail_fast,
                    agent=agent,
                    environment=self._runtime(scope),
                ),
            )
        else:
            stages = self._stages(pipeline.stages, "stages", scope, agent, False)

        post = tuple(
            PlannedPost(
                condition=action.condition,
                steps=self._steps(
                    action.steps,
                    f"post/{action.condition.value}",
                    self._runtime(scope),
                    agent,
                    False,
                ),
            )
            for action in pipeline.post
        )
        result = ExecutionPlan(stages=stages, post=post)
        logger.debug(
            "Planned %d node(s), %d skipped",
            sum(1 for _ in result.iter_nodes()),
            sum(1 for n in result.iter_nodes() if n.skipped),
        )
        return result

    def _runtime(self, scope: Mapping[str, EnvValue]) -> dict[str, EnvValue]:
        runtime = dict(scope)
        runtime.update(self._context.environment)
        return runtime

    def _visible(self, scope: Mapping[str, EnvValue]) -> dict[str, str]:
        return {k: v for k, v in self._runtime(scope).items() if isinstance(v, str)}

    # -- stages ---------------------------------------------------------------

    def _stages(
        self,
        stages: Iterable[Stage],
        prefix: str,
        scope: Mapping[str, EnvValue],
        agent: Agent | None,
        skipped: bool,
    ) -> tuple[PlanNode, ...]:
        seen: set[str] = set()
        nodes: list[PlanNode] = []
        for stage in stages:
            if stage.name in seen:
                msg = f"duplicate stage name '{stage.name}' under {prefix}"
                raise PlanError(msg)
            seen.add(stage.name)
            nodes.append(self._stage(stage, prefix, scope, agent, skipped))
        return tuple(nodes)

    def _stage(
        self,
        stage: Stage,
        prefix: str,
        scope: Mapping[str, EnvValue],
        agent: Agent | None,
        skipped: bool,
    ) -> PlanNode:
        path = f"{prefix}/{stage.name}"
        scope = _extend(scope, stage.environment)
        agent = stage.agent or agent

        reason = None
        if not skipped and stage.when is not None:
            if not evaluate(stage.when, self._context, self._visible(scope)):
                skipped = True
                reason = "when condition evaluated to false"
                logger.debug("Stage %s skipped: %s", path, reason)

        runtime = self._runtime(scope)
        fail_fast = False
        if isinstance(stage, StepsStage):
            kind = NodeKind.STAGE
            children = self._steps(stage.steps, f"{path}/steps", runtime, agent, skipped)
        elif isinstance(stage, ParallelStage):
            kind = NodeKind.PARALLEL
            children = self._stages(stage.stages, f"{path}/parallel", scope, agent, skipped)
            fail_fast = self._fail_fast if stage.fail_fast is None else stage.fail_fast
        elif isinstance(stage, MatrixStage):
            kind = NodeKind.PARALLEL
            children = self._cells(
                stage.matrix,
                stage.name,
                f"{path}/matrix",
                stage.matrix.stages,
                scope,
                agent,
                skipped,
            )
            fail_fast = self._fail_fast
        else:
            msg = f"Unsupported stage: {stage!r}"
            raise TypeError(msg)

        return PlanNode(
            path=path,
            name=stage.name,
            kind=kind,
            children=children,
            skipped=skipped,
            skip_reason=reason,
            fail_fast=fail_fast,
            agent=agent,
            environment=runtime,
        )

    # -- matrix ---------------------------------------------------------------

    def _cells(
        self,
        matrix: Matrix,
        name: str,
        prefix: str,
        stages: Iterable[Stage],
        scope: Mapping[str, EnvValue],
        agent: Agent | None,
        skipped: bool,
    ) -> tuple[PlanNode, ...]:
        cells: list[PlanNode] = []
        for combination in expand_matrix(matrix):
            label = ",".join(f"{k}={v}" for k, v in combination.items())
            cell_path = f"{prefix}/{label}"
            cell_scope = dict(scope)
            cell_scope.update(combination)
            pairs = ", ".join(f"{k}={v}" for k, v in combination.items())
            cells.append(
                PlanNode(
                    path=cell_path,
                    name=f"{name} ({pairs})",
                    kind=NodeKind.STAGE,
                    children=self._stages(
                        stages, f"{cell_path}/stages", cell_scope, agent, skipped
                    ),
                    skipped=skipped,
                    agent=agent,
                    environment=self._runtime(cell_scope),
                )
            )
        return tuple(cells)

    # -- steps ----------------------------------------------------------------

    def _steps(
        self,
        steps: Iterable[Step],
        prefix: str,
        environment: Mapping[str, EnvValue],
        agent: Agent | None,
        skipped: bool,
    ) -> tuple[PlanNode, ...]:
        return tuple(
            self._step(step, f"{prefix}/{index}", environment, agent, skipped)
            for index, step in enumerate(steps)
        )

    def _step(
        self,
        step: Step,
        path: str,
        environment: Mapping[str, EnvValue],
        agent: Agent | None,
        skipped: bool,
    ) -> PlanNode:
        common = {
            "path": path,
            "name": step_label(step),
            "skipped": skipped,
            "agent": agent,
            "environment": environment,
        }
        if isinstance(step, RetryStep):
            if step.max_attempts < 1:
                msg = f"{path}: retry count must be at least 1"
                raise PlanError(msg)
            body = self._step(step.body, f"{path}/body", environment, agent, skipped)
            return PlanNode(
                kind=NodeKind.RETRY,
                children=(body,),
                step=step,
                max_attempts=step.max_attempts,
                **common,
            )
        if isinstance(step, TimeoutStep):
            if step.seconds <= 0:
                msg = f"{path}: timeout duration must be positive"
                raise PlanError(msg)
            body = self._step(step.body, f"{path}/body", environment, agent, skipped)
            return PlanNode(
                kind=NodeKind.TIMEOUT,
                children=(body,),
                step=step,
                timeout_seconds=step.seconds,
                **common,
            )
        return PlanNode(kind=NodeKind.STEP, step=step, **common)


def expand_matrix(matrix: Matrix) -> list[dict[str, str]]:
    """Axis combinations in axis-major order, excluded cells removed."""
    if not matrix.axes:
        msg = "matrix declares no axes"
        raise PlanError(msg)
    for axis in matrix.axes:
        if not axis.values:
            msg = f"matrix axis '{axis.name}' has no values"
            raise PlanError(msg)

    names = [axis.name for axis in matrix.axes]
    combinations = [
        dict(zip(names, values, strict=True))
        for values in itertools.product(*(axis.values for axis in matrix.axes))
    ]
    kept = [c for c in combinations if not matrix.is_excluded(c)]
    if not kept:
        msg = "matrix excludes remove every combination"
        raise PlanError(msg)
    return kept


def _extend(
    scope: Mapping[str, EnvValue], bindings: Iterable[EnvBinding]
) -> dict[str, EnvValue]:
    extended = dict(scope)
    for binding in bindings:
        extended[binding.name] = binding.value
    return extended
