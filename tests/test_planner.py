from __future__ import annotations

import pytest

from pipecheck.conditions import ExecutionContext
from pipecheck.parser import parse
from pipecheck.pipeline import (
    AnyAgent,
    Axis,
    CredentialReference,
    EchoStep,
    LabelAgent,
    Matrix,
    Pipeline,
    PostCondition,
    RetryStep,
    ShellStep,
    StepsStage,
    TimeoutStep,
)
from pipecheck.planner import NodeKind, PlanError, expand_matrix, plan, step_label

MATRIX_PIPELINE = """\
pipeline {
    agent any
    stages {
        stage('Test') {
            matrix {
                axes {
                    axis { name 'OS'; values 'linux', 'windows' }
                    axis { name 'VERSION'; values '1.0', '2.0' }
                }
                stages {
                    stage('Run') { steps { sh 'make test' } }
                }
            }
        }
    }
}
"""


def _pipeline(stages: str, *, agent: str = "agent any", extra: str = "") -> Pipeline:
    return parse(f"pipeline {{\n{agent}\n{extra}\nstages {{\n{stages}\n}}\n}}\n")


class TestExpandMatrix:
    def test_axis_major_order(self) -> None:
        matrix = Matrix(axes=(Axis("OS", ("linux", "windows")), Axis("V", ("1", "2", "3"))))
        combos = expand_matrix(matrix)
        assert [(c["OS"], c["V"]) for c in combos] == [
            ("linux", "1"),
            ("linux", "2"),
            ("linux", "3"),
            ("windows", "1"),
            ("windows", "2"),
            ("windows", "3"),
        ]

    def test_excludes(self) -> None:
        matrix = Matrix(
            axes=(Axis("OS", ("linux", "windows")), Axis("V", ("1", "2"))),
            excludes=((Axis("OS", ("windows",)), Axis("V", ("1",))),),
        )
        combos = expand_matrix(matrix)
        assert {"OS": "windows", "V": "1"} not in combos
        assert len(combos) == 3

    def test_no_axes(self) -> None:
        with pytest.raises(PlanError, match="no axes"):
            expand_matrix(Matrix(axes=()))

    def test_empty_axis(self) -> None:
        with pytest.raises(PlanError, match="axis 'OS' has no values"):
            expand_matrix(Matrix(axes=(Axis("OS", ()),)))

    def test_everything_excluded(self) -> None:
        matrix = Matrix(axes=(Axis("OS", ("linux",)),), excludes=((Axis("OS", ("linux",)),),))
        with pytest.raises(PlanError, match="remove every combination"):
            expand_matrix(matrix)


class TestMatrixPlan:
    def test_four_cells_in_order(self) -> None:
        execution_plan = plan(parse(MATRIX_PIPELINE))
        (stage,) = execution_plan.stages

        assert stage.kind is NodeKind.PARALLEL
        assert [c.path for c in stage.children] == [
            "stages/Test/matrix/OS=linux,VERSION=1.0",
            "stages/Test/matrix/OS=linux,VERSION=2.0",
            "stages/Test/matrix/OS=windows,VERSION=1.0",
            "stages/Test/matrix/OS=windows,VERSION=2.0",
        ]
        assert stage.children[0].name == "Test (OS=linux, VERSION=1.0)"

    def test_cell_environment_carries_axis_values(self) -> None:
        execution_plan = plan(parse(MATRIX_PIPELINE))
        step = execution_plan.find(
            "stages/Test/matrix/OS=windows,VERSION=2.0/stages/Run/steps/0"
        )
        assert step is not None
        assert step.kind is NodeKind.STEP
        assert step.environment["OS"] == "windows"
        assert step.environment["VERSION"] == "2.0"

    def test_pipeline_level_matrix_wraps_all_stages(self) -> None:
        pipeline = _pipeline(
            "stage('Build') { steps { sh 'make' } }\nstage('Test') { steps { sh 'make test' } }",
            extra="matrix { axes { axis { name 'JDK'; values '17', '21' } } }",
        )
        execution_plan = plan(pipeline)

        (root,) = execution_plan.stages
        assert root.path == "matrix"
        assert root.kind is NodeKind.PARALLEL
        assert [c.name for c in root.children] == ["matrix (JDK=17)", "matrix (JDK=21)"]
        assert [s.path for s in root.children[1].children] == [
            "matrix/JDK=21/stages/Build",
            "matrix/JDK=21/stages/Test",
        ]


class TestConditions:
    DEPLOY = (
        "stage('Build') { steps { sh 'make' } }\n"
        "stage('Deploy') {\nwhen { branch 'main' }\nsteps { retry(2) { sh 'deploy' } }\n}"
    )

    def test_branch_mismatch_skips_subtree(self) -> None:
        execution_plan = plan(_pipeline(self.DEPLOY), ExecutionContext(branch="develop"))
        build, deploy = execution_plan.stages

        assert not build.skipped
        assert deploy.skipped
        assert deploy.skip_reason == "when condition evaluated to false"
        assert all(n.skipped for n in deploy.iter_nodes())
        assert [n.kind for n in deploy.iter_nodes()] == [
            NodeKind.STAGE,
            NodeKind.RETRY,
            NodeKind.STEP,
        ]

    def test_branch_match_runs(self) -> None:
        execution_plan = plan(_pipeline(self.DEPLOY), ExecutionContext(branch="main"))
        assert not any(n.skipped for n in execution_plan.iter_nodes())

    def test_no_branch_skips(self) -> None:
        execution_plan = plan(_pipeline(self.DEPLOY))
        assert execution_plan.stages[1].skipped

    def test_environment_condition_sees_context_override(self) -> None:
        pipeline = _pipeline(
            "stage('Fast') {\nwhen { environment name: 'MODE', value: 'fast' }\n"
            "steps { echo 'go' }\n}",
            extra="environment { MODE = 'slow' }",
        )
        assert plan(pipeline).stages[0].skipped
        context = ExecutionContext(environment={"MODE": "fast"})
        assert not plan(pipeline, context).stages[0].skipped

    def test_skipped_parallel_keeps_children(self) -> None:
        pipeline = _pipeline(
            "stage('P') {\nwhen { branch 'main' }\nparallel {\n"
            "stage('A') { steps { echo 'a' } }\nstage('B') { steps { echo 'b' } }\n}\n}"
        )
        (stage,) = plan(pipeline).stages
        assert [c.path for c in stage.children] == ["stages/P/parallel/A", "stages/P/parallel/B"]
        assert all(c.skipped for c in stage.children)


class TestEnvironment:
    def test_precedence(self) -> None:
        pipeline = _pipeline(
            "stage('T') { matrix {\naxes { axis { name 'LEVEL'; values 'axis' } }\n"
            "stages { stage('R') {\nenvironment { INNER = 'stage' }\nsteps { echo 'r' }\n} }\n"
            "} }",
            extra=(
                "parameters { string(name: 'LEVEL', defaultValue: 'param')\n"
                "string(name: 'ONLY_PARAM', defaultValue: 'p') }\n"
                "environment { LEVEL = 'pipeline'\nINNER = 'pipeline'\nOVERRIDE = 'pipeline' }"
            ),
        )
        context = ExecutionContext(environment={"OVERRIDE": "context"})
        step = plan(pipeline, context).find("stages/T/matrix/LEVEL=axis/stages/R/steps/0")

        assert step is not None
        assert step.environment["ONLY_PARAM"] == "p"
        assert step.environment["LEVEL"] == "axis"
        assert step.environment["INNER"] == "stage"
        assert step.environment["OVERRIDE"] == "context"

    def test_credentials_stay_symbolic(self) -> None:
        pipeline = _pipeline(
            "stage('D') { steps { echo 'd' } }",
            extra="environment { TOKEN = credentials('deploy-token') }",
        )
        step = plan(pipeline).find("stages/D/steps/0")
        assert step is not None
        assert step.environment["TOKEN"] == CredentialReference("deploy-token")


class TestStructure:
    def test_wrappers_become_nodes(self) -> None:
        pipeline = _pipeline(
            "stage('B') { steps { retry(3) { timeout(time: 30, unit: 'SECONDS') { sh 'x' } } } }"
        )
        execution_plan = plan(pipeline)
        retry = execution_plan.find("stages/B/steps/0")
        timeout = execution_plan.find("stages/B/steps/0/body")
        step = execution_plan.find("stages/B/steps/0/body/body")

        assert retry is not None and retry.kind is NodeKind.RETRY
        assert retry.max_attempts == 3
        assert timeout is not None and timeout.kind is NodeKind.TIMEOUT
        assert timeout.timeout_seconds == 30.0
        assert step is not None and step.step == ShellStep("x")

    def test_agent_inheritance(self) -> None:
        pipeline = _pipeline(
            "stage('A') { steps { echo 'a' } }\n"
            "stage('B') {\nagent { label 'gpu' }\nsteps { echo 'b' }\n}"
        )
        execution_plan = plan(pipeline)
        inherited = execution_plan.find("stages/A/steps/0")
        overridden = execution_plan.find("stages/B/steps/0")
        assert inherited is not None and inherited.agent == AnyAgent()
        assert overridden is not None and overridden.agent == LabelAgent("gpu")

    def test_fail_fast_policy(self) -> None:
        stages = (
            "stage('P') { parallel { stage('A') { steps { echo 'a' } } } }\n"
            "stage('Q') {\nfailFast false\nparallel { stage('B') { steps { echo 'b' } } }\n}"
        )
        default = plan(_pipeline(stages))
        assert not default.stages[0].fail_fast

        forced = plan(_pipeline(stages), fail_fast=True)
        assert forced.stages[0].fail_fast
        assert not forced.stages[1].fail_fast

    def test_post_steps_planned(self) -> None:
        pipeline = _pipeline(
            "stage('A') { steps { echo 'a' } }",
            extra="post {\nalways { echo 'bye' }\nfailure { sh 'notify' }\n}",
        )
        execution_plan = plan(pipeline)
        always = execution_plan.post_for(PostCondition.ALWAYS)
        assert always is not None
        assert [n.path for n in always.steps] == ["post/always/0"]
        assert execution_plan.post_for(PostCondition.SUCCESS) is None

    def test_deterministic(self) -> None:
        context = ExecutionContext(branch="main")
        assert plan(parse(MATRIX_PIPELINE), context) == plan(parse(MATRIX_PIPELINE), context)

    def test_duplicate_stage_names_rejected(self) -> None:
        stage = StepsStage("Build", (EchoStep("x"),))
        with pytest.raises(PlanError, match="duplicate stage name 'Build'"):
            plan(Pipeline(agent=AnyAgent(), stages=(stage, stage)))

    @pytest.mark.parametrize(
        "step",
        [RetryStep(0, ShellStep("x")), TimeoutStep(0.0, ShellStep("x"))],
    )
    def test_invalid_wrappers_rejected(self, step: RetryStep | TimeoutStep) -> None:
        pipeline = Pipeline(agent=AnyAgent(), stages=(StepsStage("S", (step,)),))
        with pytest.raises(PlanError):
            plan(pipeline)


class TestStepLabel:
    @pytest.mark.parametrize(
        ("step", "label"),
        [
            (ShellStep("make"), "sh make"),
            (EchoStep("hi"), "echo hi"),
            (RetryStep(2, ShellStep("x")), "retry(2)"),
            (TimeoutStep(90.0, ShellStep("x")), "timeout(90s)"),
        ],
    )
    def test_labels(self, step: object, label: str) -> None:
        assert step_label(step) == label  # type: ignore[arg-type]
