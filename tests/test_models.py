from __future__ import annotations

import json

import pytest

from pipecheck.models import (
    ExecutionResult,
    Finding,
    NodeResult,
    NodeStatus,
    Outcome,
    PostActionResult,
    Severity,
    ValidationReport,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def error() -> Finding:
    return Finding(
        severity=Severity.ERROR,
        subject="agent",
        rule="docker-agent",
        message="docker agent 'maven' requires agent feature 'docker'",
    )


@pytest.fixture
def warning() -> Finding:
    return Finding(
        severity=Severity.WARNING,
        subject="stages/Deploy/when",
        rule="branch-condition",
        message="needs a branch-aware trigger",
    )


@pytest.fixture
def result() -> ExecutionResult:
    step = NodeResult(
        path="stages/Build/steps/0",
        name="sh make",
        kind="step",
        status=NodeStatus.SUCCEEDED,
        duration=1.5,
        attempts=1,
    )
    stage = NodeResult(
        path="stages/Build",
        name="Build",
        kind="stage",
        status=NodeStatus.SUCCEEDED,
        duration=1.5,
        attempts=1,
        children=[step],
    )
    return ExecutionResult(
        outcome=Outcome.SUCCESS,
        stages=[stage],
        post_actions=[
            PostActionResult(condition="success", status=NodeStatus.SUCCEEDED, steps=[]),
            PostActionResult(condition="always", status=NodeStatus.SUCCEEDED, steps=[]),
        ],
    )


# ---------------------------------------------------------------------------
# ValidationReport
# ---------------------------------------------------------------------------


class TestValidationReport:
    def test_empty_report_executes(self) -> None:
        assert ValidationReport(findings=[]).can_execute

    def test_errors_block(self, error: Finding, warning: Finding) -> None:
        report = ValidationReport(findings=[error, warning])
        assert report.errors == [error]
        assert report.warnings == [warning]
        assert not report.can_execute

    def test_warnings_alone_do_not_block(self, warning: Finding) -> None:
        assert ValidationReport(findings=[warning]).can_execute

    def test_strict_warnings_block(self, warning: Finding) -> None:
        assert not ValidationReport(findings=[warning], strict=True).can_execute

    def test_json_includes_verdict(self, error: Finding) -> None:
        data = json.loads(ValidationReport(findings=[error]).model_dump_json())
        assert data["can_execute"] is False
        assert data["findings"][0]["severity"] == "error"
        assert data["findings"][0]["rule"] == "docker-agent"


# ---------------------------------------------------------------------------
# NodeStatus
# ---------------------------------------------------------------------------


class TestNodeStatus:
    @pytest.mark.parametrize("status", [NodeStatus.PENDING, NodeStatus.RUNNING])
    def test_non_terminal(self, status: NodeStatus) -> None:
        assert not status.terminal

    @pytest.mark.parametrize(
        "status",
        [
            NodeStatus.SUCCEEDED,
            NodeStatus.FAILED,
            NodeStatus.TIMED_OUT,
            NodeStatus.SKIPPED,
            NodeStatus.ABORTED,
        ],
    )
    def test_terminal(self, status: NodeStatus) -> None:
        assert status.terminal

    def test_unsuccessful(self) -> None:
        unsuccessful = {s for s in NodeStatus if s.unsuccessful}
        assert unsuccessful == {NodeStatus.FAILED, NodeStatus.TIMED_OUT, NodeStatus.ABORTED}


# ---------------------------------------------------------------------------
# ExecutionResult
# ---------------------------------------------------------------------------


class TestExecutionResult:
    def test_fired_post_actions(self, result: ExecutionResult) -> None:
        assert result.fired_post_actions == ["success", "always"]

    def test_iter_nodes_is_depth_first(self, result: ExecutionResult) -> None:
        assert [n.path for n in result.iter_nodes()] == [
            "stages/Build",
            "stages/Build/steps/0",
        ]

    def test_find(self, result: ExecutionResult) -> None:
        node = result.find("stages/Build/steps/0")
        assert node is not None
        assert node.duration == 1.5
        assert result.find("stages/Missing") is None

    def test_json_round_trip(self, result: ExecutionResult) -> None:
        restored = ExecutionResult.model_validate_json(result.model_dump_json())
        assert restored == result
        data = json.loads(result.model_dump_json())
        assert data["outcome"] == "success"
        assert data["stages"][0]["children"][0]["status"] == "succeeded"
