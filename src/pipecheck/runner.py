from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace

from pipecheck.conditions import ExecutionContext
from pipecheck.config import PipecheckConfig, default_config
from pipecheck.executor import CancelToken, StepExecutor, StepRequest
from pipecheck.models import (
    ExecutionResult,
    NodeResult,
    NodeStatus,
    Outcome,
    PostActionResult,
    ValidationReport,
)
from pipecheck.pipeline import POST_ORDER, Pipeline, PostCondition
from pipecheck.planner import ExecutionPlan, NodeKind, PlanNode, plan
from pipecheck.registry import CapabilityRegistry
from pipecheck.validator import validate

logger = logging.getLogger(__name__)

Listener = Callable[[str, NodeStatus, int], None]

_AFTER_FAILURE = "skipped after earlier failure"

_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset(
        {NodeStatus.RUNNING, NodeStatus.SKIPPED, NodeStatus.ABORTED}
    ),
    NodeStatus.RUNNING: frozenset(
        {
            NodeStatus.SUCCEEDED,
            NodeStatus.FAILED,
            NodeStatus.TIMED_OUT,
            NodeStatus.ABORTED,
        }
    ),
}


def _ignore(path: str, status: NodeStatus, attempt: int) -> None:
    pass


class _Gate:
    """Forwards notifications until closed; silences abandoned workers."""

    def __init__(self, notify: Listener) -> None:
        self._notify = notify
        self._open = True
        self._lock = threading.Lock()

    def __call__(self, path: str, status: NodeStatus, attempt: int) -> None:
        with self._lock:
            if self._open:
                self._notify(path, status, attempt)

    def close(self) -> None:
        with self._lock:
            self._open = False


class _NodeRun:
    """Status of one execution of one plan node.

    ``pending -> running -> terminal``; terminal states are absorbing.
    """

    def __init__(self, node: PlanNode, attempt: int, notify: Listener) -> None:
        self.node = node
        self.attempt = attempt
        self.status = NodeStatus.PENDING
        self._notify = notify

    def advance(self, status: NodeStatus) -> bool:
        if self.status.terminal:
            logger.debug(
                "%s already %s, ignoring %s", self.node.path, self.status.value, status.value
            )
            return False
        if status not in _TRANSITIONS[self.status]:
            msg = f"Illegal transition {self.status.value} -> {status.value} for {self.node.path}"
            raise RuntimeError(msg)
        logger.debug("%s: %s -> %s", self.node.path, self.status.value, status.value)
        self.status = status
        self._notify(self.node.path, status, self.attempt)
        return True


@dataclass(frozen=True)
class _Scope:
    executor: StepExecutor
    token: CancelToken
    notify: Listener = _ignore
    attempt: int = 1


@dataclass
class _Outcome:
    status: NodeStatus
    duration: float = 0.0
    children: list[NodeResult] = field(default_factory=list)
    message: str | None = None
    attempts: int = 1


def _combine(children: list[NodeResult]) -> NodeStatus:
    statuses = {c.status for c in children}
    if statuses & {NodeStatus.FAILED, NodeStatus.TIMED_OUT}:
        return NodeStatus.FAILED
    if NodeStatus.ABORTED in statuses:
        return NodeStatus.ABORTED
    return NodeStatus.SUCCEEDED


class PipelineRunner:
    """Executes an ``ExecutionPlan`` against a step executor.

    The runner is pure orchestration: it only decides what to call next and
    interprets outcomes. Parallel children and timeout-bounded subtrees run
    on worker threads; everything else runs on the calling thread.
    """

    def __init__(self, max_parallel: int = 4, listener: Listener | None = None) -> None:
        if max_parallel < 1:
            msg = "max_parallel must be at least 1"
            raise ValueError(msg)
        self._max_parallel = max_parallel
        self._listener = listener or _ignore

    def run(
        self,
        execution_plan: ExecutionPlan,
        executor: StepExecutor,
        cancel: CancelToken | None = None,
    ) -> ExecutionResult:
        scope = _Scope(executor=executor, token=cancel or CancelToken(), notify=self._listener)

        stages: list[NodeResult] = []
        failed = False
        for node in execution_plan.stages:
            if failed:
                stages.append(self._settle(node, NodeStatus.SKIPPED, _AFTER_FAILURE, scope))
                continue
            result = self._run_node(node, scope)
            stages.append(result)
            failed = result.status.unsuccessful

        outcome = Outcome.FAILURE if failed else Outcome.SUCCESS
        logger.info("Pipeline finished: %s", outcome.value)

        # Post actions run even when the stages were cancelled.
        post_scope = replace(scope, token=CancelToken())
        post_actions = self._run_post(execution_plan, outcome, post_scope)
        return ExecutionResult(outcome=outcome, stages=stages, post_actions=post_actions)

    # -- post -----------------------------------------------------------------

    def _run_post(
        self, execution_plan: ExecutionPlan, outcome: Outcome, scope: _Scope
    ) -> list[PostActionResult]:
        fired: list[PostActionResult] = []
        for condition in POST_ORDER:
            planned = execution_plan.post_for(condition)
            if planned is None:
                continue
            if condition is PostCondition.SUCCESS and outcome is not Outcome.SUCCESS:
                continue
            if condition is PostCondition.FAILURE and outcome is not Outcome.FAILURE:
                continue
            logger.info("Running post '%s'", condition.value)
            result = self._sequence(list(planned.steps), scope)
            fired.append(
                PostActionResult(
                    condition=condition.value,
                    status=result.status,
                    steps=result.children,
                )
            )
        return fired

    # -- nodes ----------------------------------------------------------------

    def _settle(
        self, node: PlanNode, status: NodeStatus, message: str | None, scope: _Scope
    ) -> NodeResult:
        """Resolve *node* and its subtree to *status* without executing it."""
        run = _NodeRun(node, scope.attempt, scope.notify)
        run.advance(status)
        return NodeResult(
            path=node.path,
            name=node.name,
            kind=node.kind.value,
            status=status,
            message=message,
            children=[self._settle(c, status, None, scope) for c in node.children],
        )

    def _run_node(self, node: PlanNode, scope: _Scope) -> NodeResult:
        if node.skipped:
            return self._settle(node, NodeStatus.SKIPPED, node.skip_reason, scope)
        if scope.token.cancelled:
            return self._settle(node, NodeStatus.ABORTED, "cancelled", scope)

        run = _NodeRun(node, scope.attempt, scope.notify)
        run.advance(NodeStatus.RUNNING)
        handlers: dict[NodeKind, Callable[[PlanNode, _Scope], _Outcome]] = {
            NodeKind.STEP: self._run_step,
            NodeKind.STAGE: self._run_stage,
            NodeKind.PARALLEL: self._run_parallel,
            NodeKind.RETRY: self._run_retry,
            NodeKind.TIMEOUT: self._run_timeout,
        }
        outcome = handlers[node.kind](node, scope)
        run.advance(outcome.status)
        return NodeResult(
            path=node.path,
            name=node.name,
            kind=node.kind.value,
            status=outcome.status,
            duration=outcome.duration,
            attempts=outcome.attempts,
            message=outcome.message,
            children=outcome.children,
        )

    def _run_step(self, node: PlanNode, scope: _Scope) -> _Outcome:
        step = node.step
        if step is None:
            msg = f"Step node {node.path} carries no step"
            raise RuntimeError(msg)
        request = StepRequest(
            path=node.path,
            kind=step.kind,
            parameters=step.parameters,
            environment=node.environment,
            attempt=scope.attempt,
        )
        try:
            result = scope.executor.execute(request, scope.token)
        except Exception as exc:
            logger.exception("Executor raised for %s", node.path)
            return _Outcome(NodeStatus.FAILED, message=f"executor error: {exc}")

        if result.succeeded:
            return _Outcome(NodeStatus.SUCCEEDED, duration=result.duration)
        if scope.token.cancelled:
            return _Outcome(NodeStatus.ABORTED, duration=result.duration, message="cancelled")
        return _Outcome(
            NodeStatus.FAILED, duration=result.duration, message=result.output or None
        )

    def _run_stage(self, node: PlanNode, scope: _Scope) -> _Outcome:
        return self._sequence(list(node.children), scope)

    def _sequence(self, children: list[PlanNode], scope: _Scope) -> _Outcome:
        results: list[NodeResult] = []
        duration = 0.0
        failed = False
        for child in children:
            if failed:
                results.append(self._settle(child, NodeStatus.SKIPPED, _AFTER_FAILURE, scope))
                continue
            result = self._run_node(child, scope)
            results.append(result)
            duration += result.duration
            failed = result.status.unsuccessful
        return _Outcome(_combine(results), duration=duration, children=results)

    def _run_parallel(self, node: PlanNode, scope: _Scope) -> _Outcome:
        children = list(node.children)
        if not children:
            return _Outcome(NodeStatus.SUCCEEDED)

        child_scope = replace(scope, token=scope.token.child())
        workers = max(1, min(self._max_parallel, len(children)))
        results: dict[int, NodeResult] = {}
        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="pipecheck-parallel"
        )
        futures = {
            pool.submit(self._run_node, child, child_scope): index
            for index, child in enumerate(children)
        }
        try:
            for future in concurrent.futures.as_completed(futures):
                result = future.result()
                results[futures[future]] = result
                if node.fail_fast and result.status.unsuccessful:
                    logger.info("%s failed; fail-fast aborts its siblings", result.path)
                    child_scope.token.cancel()
                    break
        finally:
            # Cooperative cancellation: in-flight siblings observe the token.
            pool.shutdown(wait=True, cancel_futures=True)

        for future, index in futures.items():
            if index in results:
                continue
            if future.cancelled():
                results[index] = self._settle(
                    children[index], NodeStatus.ABORTED, "aborted by fail-fast", scope
                )
            else:
                results[index] = future.result()

        ordered = [results[i] for i in range(len(children))]
        duration = max((r.duration for r in ordered), default=0.0)
        return _Outcome(_combine(ordered), duration=duration, children=ordered)

    def _run_retry(self, node: PlanNode, scope: _Scope) -> _Outcome:
        child = node.children[0]
        last: NodeResult | None = None
        duration = 0.0
        attempts = 0
        for attempt in range(1, node.max_attempts + 1):
            if scope.token.cancelled:
                break
            attempts = attempt
            last = self._run_node(child, replace(scope, attempt=attempt))
            duration += last.duration
            if last.status in (NodeStatus.SUCCEEDED, NodeStatus.ABORTED):
                break
            if attempt < node.max_attempts:
                logger.info(
                    "%s failed (attempt %d of %d), retrying",
                    node.path,
                    attempt,
                    node.max_attempts,
                )

        if last is None:
            return _Outcome(NodeStatus.ABORTED, message="cancelled", attempts=0)
        if last.status is NodeStatus.SUCCEEDED:
            status = NodeStatus.SUCCEEDED
            message = None
        elif last.status is NodeStatus.ABORTED:
            status = NodeStatus.ABORTED
            message = "cancelled"
        else:
            status = NodeStatus.FAILED
            message = f"failed after {attempts} attempt(s)"
        return _Outcome(
            status, duration=duration, children=[last], message=message, attempts=attempts
        )

    def _run_timeout(self, node: PlanNode, scope: _Scope) -> _Outcome:
        child = node.children[0]
        budget = node.timeout_seconds or 0.0
        gate = _Gate(scope.notify)
        child_scope = replace(scope, token=scope.token.child(), notify=gate)
        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="pipecheck-timeout"
        )
        future = pool.submit(self._run_node, child, child_scope)
        try:
            result = future.result(timeout=budget)
        except concurrent.futures.TimeoutError:
            gate.close()
            child_scope.token.cancel()
            logger.warning("%s exceeded its %gs budget, cancelling", node.path, budget)
            aborted = self._settle(child, NodeStatus.ABORTED, "cancelled by timeout", scope)
            return _Outcome(
                NodeStatus.TIMED_OUT,
                duration=budget,
                children=[aborted],
                message=f"timed out after {budget:g}s",
            )
        finally:
            pool.shutdown(wait=False)

        if result.duration > budget:
            logger.warning(
                "%s took %gs, over its %gs budget", node.path, result.duration, budget
            )
            return _Outcome(
                NodeStatus.TIMED_OUT,
                duration=result.duration,
                children=[result],
                message=f"measured {result.duration:g}s exceeds {budget:g}s budget",
            )
        return _Outcome(result.status, duration=result.duration, children=[result])


@dataclass
class RunReport:
    validation: ValidationReport
    plan: ExecutionPlan | None = None
    result: ExecutionResult | None = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.result.outcome is Outcome.SUCCESS


def run_pipeline(
    pipeline: Pipeline,
    registry: CapabilityRegistry,
    executor: StepExecutor,
    context: ExecutionContext | None = None,
    config: PipecheckConfig | None = None,
    listener: Listener | None = None,
    cancel: CancelToken | None = None,
) -> RunReport:
    """Validate, plan and run. Planning is skipped when validation blocks."""
    cfg = config or default_config()
    report = validate(pipeline, registry, context, strict=cfg.validation.strict)
    if not report.can_execute:
        logger.warning(
            "Pipeline not executable: %d error(s), %d warning(s)",
            len(report.errors),
            len(report.warnings),
        )
        return RunReport(validation=report)

    execution_plan = plan(pipeline, context, fail_fast=cfg.runner.fail_fast)
    runner = PipelineRunner(max_parallel=cfg.runner.max_parallel, listener=listener)
    result = runner.run(execution_plan, executor, cancel=cancel)
    return RunReport(validation=report, plan=execution_plan, result=result)
