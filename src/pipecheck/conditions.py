from __future__ import annotations

import fnmatch
from collections.abc import Mapping
from dataclasses import dataclass, field

from pipecheck.pipeline import (
    AllOfCondition,
    AnyOfCondition,
    BranchCondition,
    Condition,
    EnvironmentCondition,
    NotCondition,
)


@dataclass(frozen=True)
class ExecutionContext:
    """Where a pipeline runs: branch name and environment overrides.

    ``multibranch`` states whether the trigger is branch-aware. When left
    unset it is inferred from whether a branch name was supplied.
    """

    branch: str | None = None
    environment: dict[str, str] = field(default_factory=dict)
    multibranch: bool | None = None

    @property
    def branch_aware(self) -> bool:
        if self.multibranch is not None:
            return self.multibranch
        return self.branch is not None


def evaluate(
    condition: Condition, context: ExecutionContext, environment: Mapping[str, str]
) -> bool:
    """Evaluate a ``when`` condition.

    Branch patterns use shell-style globbing and evaluate false when the
    context is not branch-aware or carries no branch.
    """
    if isinstance(condition, BranchCondition):
        if not context.branch_aware or context.branch is None:
            return False
        return fnmatch.fnmatchcase(context.branch, condition.pattern)
    if isinstance(condition, EnvironmentCondition):
        return environment.get(condition.name) == condition.value
    if isinstance(condition, NotCondition):
        return not evaluate(condition.condition, context, environment)
    if isinstance(condition, AllOfCondition):
        return all(evaluate(c, context, environment) for c in condition.conditions)
    if isinstance(condition, AnyOfCondition):
        return any(evaluate(c, context, environment) for c in condition.conditions)
    msg = f"Unsupported condition: {condition!r}"
    raise TypeError(msg)


def branch_conditions(condition: Condition | None) -> list[BranchCondition]:
    """All branch conditions nested anywhere inside *condition*."""
    if condition is None:
        return []
    if isinstance(condition, BranchCondition):
        return [condition]
    if isinstance(condition, NotCondition):
        return branch_conditions(condition.condition)
    if isinstance(condition, (AllOfCondition, AnyOfCondition)):
        found: list[BranchCondition] = []
        for inner in condition.conditions:
            found.extend(branch_conditions(inner))
        return found
    return []
