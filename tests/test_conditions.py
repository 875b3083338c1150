from __future__ import annotations

import pytest

from pipecheck.conditions import ExecutionContext, branch_conditions, evaluate
from pipecheck.pipeline import (
    AllOfCondition,
    AnyOfCondition,
    BranchCondition,
    EnvironmentCondition,
    NotCondition,
)


class TestExecutionContext:
    def test_branch_aware_only_with_branch(self) -> None:
        assert not ExecutionContext().branch_aware
        assert ExecutionContext(branch="main").branch_aware

    def test_explicit_flag_overrides_inference(self) -> None:
        assert not ExecutionContext(branch="main", multibranch=False).branch_aware
        assert ExecutionContext(multibranch=True).branch_aware


class TestEvaluate:
    @pytest.mark.parametrize(
        ("pattern", "branch", "expected"),
        [
            ("main", "main", True),
            ("main", "develop", False),
            ("release/*", "release/1.2", True),
            ("release/*", "feature/x", False),
            ("PR-*", "PR-42", True),
        ],
    )
    def test_branch_patterns(self, pattern: str, branch: str, expected: bool) -> None:
        context = ExecutionContext(branch=branch)
        assert evaluate(BranchCondition(pattern), context, {}) is expected

    def test_branch_false_without_branch(self) -> None:
        assert evaluate(BranchCondition("*"), ExecutionContext(), {}) is False

    def test_branch_false_when_trigger_not_branch_aware(self) -> None:
        context = ExecutionContext(branch="main", multibranch=False)
        assert evaluate(BranchCondition("main"), context, {}) is False

    def test_environment_condition(self) -> None:
        condition = EnvironmentCondition("MODE", "fast")
        context = ExecutionContext()
        assert evaluate(condition, context, {"MODE": "fast"})
        assert not evaluate(condition, context, {"MODE": "slow"})
        assert not evaluate(condition, context, {})

    def test_combinators(self) -> None:
        context = ExecutionContext(branch="main")
        main = BranchCondition("main")
        dev = BranchCondition("develop")
        assert evaluate(NotCondition(dev), context, {})
        assert evaluate(AnyOfCondition((dev, main)), context, {})
        assert not evaluate(AllOfCondition((dev, main)), context, {})
        assert evaluate(AllOfCondition((main, NotCondition(dev))), context, {})


class TestBranchConditions:
    def test_none(self) -> None:
        assert branch_conditions(None) == []

    def test_collects_nested(self) -> None:
        condition = AllOfCondition(
            (
                EnvironmentCondition("A", "b"),
                NotCondition(AnyOfCondition((BranchCondition("main"), BranchCondition("dev")))),
            )
        )
        assert branch_conditions(condition) == [BranchCondition("main"), BranchCondition("dev")]

    def test_environment_only(self) -> None:
        assert branch_conditions(EnvironmentCondition("A", "b")) == []
