"""Pydantic models for the reports pipecheck produces.

Validation findings and execution results are the outward-facing contracts
of the tool: the CLI serializes them with ``--json`` and callers consume
them directly. Every model is built fresh per validation or run.
"""

from __future__ import annotations

from collections.abc import Iterator
from enum import Enum

from pydantic import BaseModel, computed_field


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"


class Finding(BaseModel):
    severity: Severity
    subject: str
    rule: str
    message: str


class ValidationReport(BaseModel):
    findings: list[Finding]
    strict: bool = False

    @property
    def errors(self) -> list[Finding]:
        return [f for f in self.findings if f.severity is Severity.ERROR]

    @property
    def warnings(self) -> list[Finding]:
        return [f for f in self.findings if f.severity is Severity.WARNING]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def can_execute(self) -> bool:
        if self.errors:
            return False
        return not (self.strict and self.warnings)


class NodeStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self not in (NodeStatus.PENDING, NodeStatus.RUNNING)

    @property
    def unsuccessful(self) -> bool:
        return self in (NodeStatus.FAILED, NodeStatus.TIMED_OUT, NodeStatus.ABORTED)


class Outcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class NodeResult(BaseModel):
    path: str
    name: str
    kind: str
    status: NodeStatus
    duration: float = 0.0
    attempts: int = 0
    message: str | None = None
    children: list[NodeResult] = []

    def iter_nodes(self) -> Iterator[NodeResult]:
        yield self
        for child in self.children:
            yield from child.iter_nodes()


class PostActionResult(BaseModel):
    condition: str
    status: NodeStatus
    steps: list[NodeResult]


class ExecutionResult(BaseModel):
    outcome: Outcome
    stages: list[NodeResult]
    post_actions: list[PostActionResult] = []

    @property
    def fired_post_actions(self) -> list[str]:
        return [p.condition for p in self.post_actions]

    def iter_nodes(self) -> Iterator[NodeResult]:
        for stage in self.stages:
            yield from stage.iter_nodes()

    def find(self, path: str) -> NodeResult | None:
        return next((n for n in self.iter_nodes() if n.path == path), None)
