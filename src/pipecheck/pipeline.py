"""Structural model of a declarative pipeline.

Every type here is a frozen dataclass: a ``Pipeline`` is built once by the
parser (or by hand in tests) and never mutated afterwards. Stages, steps,
agents and ``when`` conditions are tagged variants expressed as unions of
small classes, so consumers dispatch with ``match`` / ``isinstance`` and the
set of cases stays closed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar

# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnyAgent:
    pass


@dataclass(frozen=True)
class NoAgent:
    """``agent none``: every stage must bring its own agent."""


@dataclass(frozen=True)
class LabelAgent:
    label: str


@dataclass(frozen=True)
class DockerAgent:
    image: str
    args: str | None = None


Agent = AnyAgent | NoAgent | LabelAgent | DockerAgent


# ---------------------------------------------------------------------------
# Environment and parameters
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CredentialReference:
    """Symbolic credential ID, resolved against the registry only."""

    credential_id: str


@dataclass(frozen=True)
class EnvBinding:
    name: str
    value: str | CredentialReference


class ParameterKind(Enum):
    STRING = "string"
    BOOLEAN = "boolean"
    CHOICE = "choice"


@dataclass(frozen=True)
class Parameter:
    name: str
    kind: ParameterKind
    default: str | bool
    description: str = ""
    choices: tuple[str, ...] = ()


def literal_environment(bindings: tuple[EnvBinding, ...]) -> dict[str, str]:
    """Bindings with plain values; credential references are left out."""
    return {b.name: b.value for b in bindings if isinstance(b.value, str)}


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


class StepKind(Enum):
    SHELL = "sh"
    ECHO = "echo"
    CHECKOUT = "checkout"
    RETRY = "retry"
    TIMEOUT = "timeout"
    LIBRARY_CALL = "library-call"


@dataclass(frozen=True)
class ShellStep:
    kind: ClassVar[StepKind] = StepKind.SHELL
    script: str

    @property
    def parameters(self) -> dict[str, Any]:
        return {"script": self.script}


@dataclass(frozen=True)
class EchoStep:
    kind: ClassVar[StepKind] = StepKind.ECHO
    message: str

    @property
    def parameters(self) -> dict[str, Any]:
        return {"message": self.message}


@dataclass(frozen=True)
class CheckoutStep:
    """``checkout scm`` (no url) or ``git url: ..., branch: ...``."""

    kind: ClassVar[StepKind] = StepKind.CHECKOUT
    url: str | None = None
    branch: str | None = None

    @property
    def parameters(self) -> dict[str, Any]:
        return {"url": self.url, "branch": self.branch}


@dataclass(frozen=True)
class LibraryCallStep:
    """Call to a global step exported by one of the declared libraries."""

    kind: ClassVar[StepKind] = StepKind.LIBRARY_CALL
    call: str
    args: tuple[str, ...] = ()
    libraries: tuple[str, ...] = ()

    @property
    def parameters(self) -> dict[str, Any]:
        return {"call": self.call, "args": list(self.args)}


@dataclass(frozen=True)
class RetryStep:
    kind: ClassVar[StepKind] = StepKind.RETRY
    max_attempts: int
    body: Step

    @property
    def parameters(self) -> dict[str, Any]:
        return {"max_attempts": self.max_attempts}


@dataclass(frozen=True)
class TimeoutStep:
    kind: ClassVar[StepKind] = StepKind.TIMEOUT
    seconds: float
    body: Step

    @property
    def parameters(self) -> dict[str, Any]:
        return {"seconds": self.seconds}


Step = ShellStep | EchoStep | CheckoutStep | LibraryCallStep | RetryStep | TimeoutStep


# ---------------------------------------------------------------------------
# When conditions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BranchCondition:
    pattern: str


@dataclass(frozen=True)
class EnvironmentCondition:
    name: str
    value: str


@dataclass(frozen=True)
class NotCondition:
    condition: Condition


@dataclass(frozen=True)
class AllOfCondition:
    conditions: tuple[Condition, ...]


@dataclass(frozen=True)
class AnyOfCondition:
    conditions: tuple[Condition, ...]


Condition = (
    BranchCondition | EnvironmentCondition | NotCondition | AllOfCondition | AnyOfCondition
)


# ---------------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Axis:
    name: str
    values: tuple[str, ...]


@dataclass(frozen=True)
class Matrix:
    axes: tuple[Axis, ...]
    excludes: tuple[tuple[Axis, ...], ...] = ()
    stages: tuple[Stage, ...] = ()

    def is_excluded(self, combination: dict[str, str]) -> bool:
        for exclude in self.excludes:
            if all(combination.get(a.name) in a.values for a in exclude):
                return True
        return False


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepsStage:
    name: str
    steps: tuple[Step, ...]
    when: Condition | None = None
    agent: Agent | None = None
    environment: tuple[EnvBinding, ...] = ()


@dataclass(frozen=True)
class ParallelStage:
    name: str
    stages: tuple[Stage, ...]
    when: Condition | None = None
    agent: Agent | None = None
    environment: tuple[EnvBinding, ...] = ()
    fail_fast: bool | None = None


@dataclass(frozen=True)
class MatrixStage:
    name: str
    matrix: Matrix
    when: Condition | None = None
    agent: Agent | None = None
    environment: tuple[EnvBinding, ...] = ()


Stage = StepsStage | ParallelStage | MatrixStage


# ---------------------------------------------------------------------------
# Post and pipeline
# ---------------------------------------------------------------------------


class PostCondition(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ALWAYS = "always"
    CLEANUP = "cleanup"


# Order in which post blocks are evaluated.
POST_ORDER: tuple[PostCondition, ...] = (
    PostCondition.SUCCESS,
    PostCondition.FAILURE,
    PostCondition.ALWAYS,
    PostCondition.CLEANUP,
)


@dataclass(frozen=True)
class PostAction:
    condition: PostCondition
    steps: tuple[Step, ...]


@dataclass(frozen=True)
class Pipeline:
    agent: Agent
    stages: tuple[Stage, ...]
    parameters: tuple[Parameter, ...] = ()
    environment: tuple[EnvBinding, ...] = ()
    matrix: Matrix | None = None
    post: tuple[PostAction, ...] = ()
    libraries: tuple[str, ...] = ()

    def post_action(self, condition: PostCondition) -> PostAction | None:
        return next((p for p in self.post if p.condition == condition), None)

    def parameter_defaults(self) -> dict[str, str]:
        defaults: dict[str, str] = {}
        for param in self.parameters:
            if isinstance(param.default, bool):
                defaults[param.name] = "true" if param.default else "false"
            else:
                defaults[param.name] = param.default
        return defaults


def step_children(step: Step) -> tuple[Step, ...]:
    """Direct child of a wrapper step, empty for leaf steps."""
    if isinstance(step, (RetryStep, TimeoutStep)):
        return (step.body,)
    return ()


def stage_children(stage: Stage) -> tuple[Stage, ...]:
    if isinstance(stage, ParallelStage):
        return stage.stages
    if isinstance(stage, MatrixStage):
        return stage.matrix.stages
    return ()
