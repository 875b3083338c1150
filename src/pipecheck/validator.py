"""Check a pipeline's requirements against a capability registry.

Each rule is an independent function yielding findings; ``validate`` runs
them all and deduplicates by ``(subject, rule)``. Findings never abort
validation: the caller always receives the complete set in one pass.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator

from pipecheck.conditions import ExecutionContext, branch_conditions
from pipecheck.models import Finding, Severity, ValidationReport
from pipecheck.pipeline import (
    Agent,
    CheckoutStep,
    CredentialReference,
    DockerAgent,
    EnvBinding,
    LibraryCallStep,
    MatrixStage,
    NoAgent,
    ParallelStage,
    Pipeline,
    ShellStep,
    Stage,
    Step,
    StepsStage,
    step_children,
)
from pipecheck.registry import (
    FEATURE_DOCKER,
    FEATURE_SHELL,
    FLAG_MATRIX,
    PLUGIN_DOCKER,
    PLUGIN_GIT,
    CapabilityRegistry,
)

logger = logging.getLogger(__name__)

Rule = Callable[[Pipeline, CapabilityRegistry, ExecutionContext], Iterable[Finding]]


def _error(subject: str, rule: str, message: str) -> Finding:
    return Finding(severity=Severity.ERROR, subject=subject, rule=rule, message=message)


def _warning(subject: str, rule: str, message: str) -> Finding:
    return Finding(severity=Severity.WARNING, subject=subject, rule=rule, message=message)


# ---------------------------------------------------------------------------
# Model walkers
# ---------------------------------------------------------------------------


def iter_stages(pipeline: Pipeline) -> Iterator[tuple[str, Stage]]:
    """Every stage with its path, parents before children."""
    yield from _walk_stages(pipeline.stages, "stages")


def _walk_stages(stages: Iterable[Stage], prefix: str) -> Iterator[tuple[str, Stage]]:
    for stage in stages:
        path = f"{prefix}/{stage.name}"
        yield path, stage
        if isinstance(stage, ParallelStage):
            yield from _walk_stages(stage.stages, f"{path}/parallel")
        elif isinstance(stage, MatrixStage):
            yield from _walk_stages(stage.matrix.stages, f"{path}/matrix/stages")


def _walk_steps(steps: Iterable[Step], prefix: str) -> Iterator[tuple[str, Step]]:
    for index, step in enumerate(steps):
        path = f"{prefix}/{index}"
        yield path, step
        yield from _walk_body(step, path)


def _walk_body(step: Step, path: str) -> Iterator[tuple[str, Step]]:
    for child in step_children(step):
        child_path = f"{path}/body"
        yield child_path, child
        yield from _walk_body(child, child_path)


def iter_steps(pipeline: Pipeline) -> Iterator[tuple[str, Step]]:
    """Every step, wrapper bodies and post steps included."""
    for path, stage in iter_stages(pipeline):
        if isinstance(stage, StepsStage):
            yield from _walk_steps(stage.steps, f"{path}/steps")
    for action in pipeline.post:
        yield from _walk_steps(action.steps, f"post/{action.condition.value}")


def iter_agents(pipeline: Pipeline) -> Iterator[tuple[str, Agent]]:
    yield "agent", pipeline.agent
    for path, stage in iter_stages(pipeline):
        if stage.agent is not None:
            yield f"{path}/agent", stage.agent


def iter_bindings(pipeline: Pipeline) -> Iterator[tuple[str, EnvBinding]]:
    for binding in pipeline.environment:
        yield f"environment/{binding.name}", binding
    for path, stage in iter_stages(pipeline):
        for binding in stage.environment:
            yield f"{path}/environment/{binding.name}", binding


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def check_docker_agents(
    pipeline: Pipeline, registry: CapabilityRegistry, context: ExecutionContext
) -> Iterator[Finding]:
    for path, agent in iter_agents(pipeline):
        if not isinstance(agent, DockerAgent):
            continue
        missing: list[str] = []
        if not registry.has_agent_feature(FEATURE_DOCKER):
            missing.append(f"agent feature '{FEATURE_DOCKER}'")
        if not registry.has_plugin(PLUGIN_DOCKER):
            missing.append(f"plugin '{PLUGIN_DOCKER}'")
        if missing:
            yield _error(
                path,
                "docker-agent",
                f"docker agent '{agent.image}' requires {' and '.join(missing)}",
            )


def check_steps(
    pipeline: Pipeline, registry: CapabilityRegistry, context: ExecutionContext
) -> Iterator[Finding]:
    for path, step in iter_steps(pipeline):
        if isinstance(step, ShellStep) and not registry.has_agent_feature(FEATURE_SHELL):
            yield _error(
                path, "shell-step", f"sh step requires agent feature '{FEATURE_SHELL}'"
            )
        elif isinstance(step, CheckoutStep) and not registry.has_plugin(PLUGIN_GIT):
            yield _error(
                path, "checkout-step", f"checkout requires plugin '{PLUGIN_GIT}'"
            )


def check_credentials(
    pipeline: Pipeline, registry: CapabilityRegistry, context: ExecutionContext
) -> Iterator[Finding]:
    for path, binding in iter_bindings(pipeline):
        ref = binding.value
        if isinstance(ref, CredentialReference) and not registry.has_credential(
            ref.credential_id
        ):
            yield _error(
                path,
                "credential",
                f"credential '{ref.credential_id}' is not defined",
            )


def check_libraries(
    pipeline: Pipeline, registry: CapabilityRegistry, context: ExecutionContext
) -> Iterator[Finding]:
    for name in pipeline.libraries:
        if not registry.has_library(name):
            yield _error(
                f"libraries/{name}",
                "library-registered",
                f"shared library '{name}' is not registered",
            )

    for path, step in iter_steps(pipeline):
        if not isinstance(step, LibraryCallStep):
            continue
        exposed = any(
            registry.library_exposes(lib, step.call) for lib in step.libraries
        )
        if not exposed:
            declared = ", ".join(step.libraries) or "none"
            yield _error(
                path,
                "library-call",
                f"'{step.call}' is not exposed by any declared library ({declared})",
            )


def check_branch_conditions(
    pipeline: Pipeline, registry: CapabilityRegistry, context: ExecutionContext
) -> Iterator[Finding]:
    if context.branch_aware:
        return
    for path, stage in iter_stages(pipeline):
        for condition in branch_conditions(stage.when):
            yield _warning(
                f"{path}/when",
                "branch-condition",
                f"'when branch {condition.pattern!r}' needs a branch-aware trigger; "
                "it will evaluate to false",
            )


def check_matrix_support(
    pipeline: Pipeline, registry: CapabilityRegistry, context: ExecutionContext
) -> Iterator[Finding]:
    if registry.has_flag(FLAG_MATRIX):
        return
    message = f"matrix requires registry capability '{FLAG_MATRIX}'"
    if pipeline.matrix is not None:
        yield _error("matrix", "matrix-support", message)
    for path, stage in iter_stages(pipeline):
        if isinstance(stage, MatrixStage):
            yield _error(f"{path}/matrix", "matrix-support", message)


def check_agent_scope(
    pipeline: Pipeline, registry: CapabilityRegistry, context: ExecutionContext
) -> Iterator[Finding]:
    yield from _agentless_stages(
        pipeline.stages, "stages", not isinstance(pipeline.agent, NoAgent)
    )


def _agentless_stages(
    stages: Iterable[Stage], prefix: str, has_agent: bool
) -> Iterator[Finding]:
    for stage in stages:
        path = f"{prefix}/{stage.name}"
        scoped = has_agent
        if stage.agent is not None:
            scoped = not isinstance(stage.agent, NoAgent)
        if isinstance(stage, StepsStage) and not scoped:
            yield _error(
                path,
                "agent-required",
                f"stage '{stage.name}' runs steps but no agent is in scope",
            )
        elif isinstance(stage, ParallelStage):
            yield from _agentless_stages(stage.stages, f"{path}/parallel", scoped)
        elif isinstance(stage, MatrixStage):
            yield from _agentless_stages(
                stage.matrix.stages, f"{path}/matrix/stages", scoped
            )


RULES: tuple[Rule, ...] = (
    check_docker_agents,
    check_steps,
    check_credentials,
    check_libraries,
    check_branch_conditions,
    check_matrix_support,
    check_agent_scope,
)


def _sort_key(finding: Finding) -> tuple[int, str, str]:
    return (0 if finding.severity is Severity.ERROR else 1, finding.subject, finding.rule)


def validate(
    pipeline: Pipeline,
    registry: CapabilityRegistry,
    context: ExecutionContext | None = None,
    *,
    strict: bool = False,
    rules: Iterable[Rule] = RULES,
) -> ValidationReport:
    """Run every rule and return the deduplicated, sorted findings."""
    ctx = context or ExecutionContext()
    unique: dict[tuple[str, str], Finding] = {}
    for rule in rules:
        for finding in rule(pipeline, registry, ctx):
            unique.setdefault((finding.subject, finding.rule), finding)

    findings = sorted(unique.values(), key=_sort_key)
    logger.debug(
        "Validation produced %d finding(s) (%d error(s))",
        len(findings),
        sum(1 for f in findings if f.severity is Severity.ERROR),
    )
    return ValidationReport(findings=findings, strict=strict)
