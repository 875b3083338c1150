"""The step executor boundary.

The runner never runs anything itself: every leaf step goes through a
``StepExecutor``. Real executors (shell, container, credential lookup) live
outside pipecheck; this module defines the contract plus two simulation
executors used by the CLI and tests.
"""

from __future__ import annotations

import fnmatch
import logging
import threading
import time
import tomllib
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field, ValidationError

from pipecheck.pipeline import CredentialReference, StepKind

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation signal.

    Cancelling a token cancels every token derived from it. Executors are
    expected to poll ``cancelled`` or block on ``wait``.
    """

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._event = threading.Event()
        self._children: list[CancelToken] = []
        self._lock = threading.Lock()
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: CancelToken) -> None:
        with self._lock:
            self._children.append(child)
            cancelled = self._event.is_set()
        if cancelled:
            child.cancel()

    def child(self) -> CancelToken:
        return CancelToken(parent=self)

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or *timeout* elapses. True if cancelled."""
        return self._event.wait(timeout)


@dataclass(frozen=True)
class StepRequest:
    path: str
    kind: StepKind
    parameters: dict[str, Any]
    environment: Mapping[str, str | CredentialReference] = field(default_factory=dict)
    attempt: int = 1


@dataclass(frozen=True)
class StepOutcome:
    succeeded: bool
    duration: float = 0.0
    output: str = ""


class StepExecutor(Protocol):
    def execute(self, request: StepRequest, cancel: CancelToken) -> StepOutcome: ...


class DryRunExecutor:
    """Every step succeeds instantly."""

    def __init__(self) -> None:
        self.calls: list[StepRequest] = []
        self._lock = threading.Lock()

    def execute(self, request: StepRequest, cancel: CancelToken) -> StepOutcome:
        with self._lock:
            self.calls.append(request)
        logger.debug("dry-run %s (%s)", request.path, request.kind.value)
        return StepOutcome(succeeded=True)


# ---------------------------------------------------------------------------
# Scripted executor
# ---------------------------------------------------------------------------

Behaviour = Literal["succeed", "fail", "hang"]


class ScriptRule(BaseModel):
    """Scripted outcomes for steps whose path matches ``match``.

    ``outcomes`` is consumed one entry per attempt; the last entry repeats.
    """

    match: str
    outcomes: list[Behaviour] = Field(default=["succeed"], min_length=1)
    duration: float = 0.0


class Scenario(BaseModel):
    """Scripted step behaviour.

    ``hang_limit_seconds`` is an opt-in safety valve for unattended runs: a
    hang that reaches it ends as a plain failure instead of waiting for
    cancellation, so an enclosing timeout with a longer budget reports
    ``failed`` rather than ``timed_out``.
    """

    step: list[ScriptRule] = []
    default: Behaviour = "succeed"
    hang_limit_seconds: float | None = Field(default=None, gt=0)


class ScenarioError(ValueError):
    """Raised when a scenario file cannot be read or is malformed."""


def load_scenario(path: Path) -> Scenario:
    """Read a TOML scenario::

        default = "succeed"

        [[step]]
        match = "stages/Build/steps/*"
        outcomes = ["fail", "succeed"]
        duration = 2.5
    """
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        msg = f"failed to read scenario {path}: {exc}"
        raise ScenarioError(msg) from exc
    try:
        return Scenario.model_validate(data)
    except ValidationError as exc:
        msg = f"invalid scenario {path}: {exc}"
        raise ScenarioError(msg) from exc


class ScriptedExecutor:
    """Simulates steps from a ``Scenario``.

    The first rule whose glob matches the step path decides the outcome.
    ``hang`` blocks until the step is cancelled and then reports failure.
    """

    def __init__(self, scenario: Scenario | None = None) -> None:
        self.scenario = scenario or Scenario()
        self.calls: list[StepRequest] = []
        self.cancelled: list[str] = []
        self._attempts: Counter[str] = Counter()
        self._lock = threading.Lock()

    def _rule_for(self, path: str) -> ScriptRule | None:
        return next(
            (r for r in self.scenario.step if fnmatch.fnmatchcase(path, r.match)),
            None,
        )

    def call_count(self, path: str) -> int:
        with self._lock:
            return self._attempts[path]

    def execute(self, request: StepRequest, cancel: CancelToken) -> StepOutcome:
        with self._lock:
            self.calls.append(request)
            self._attempts[request.path] += 1
            call_number = self._attempts[request.path]

        rule = self._rule_for(request.path)
        if rule is None:
            behaviour, duration = self.scenario.default, 0.0
        else:
            index = min(call_number, len(rule.outcomes)) - 1
            behaviour, duration = rule.outcomes[index], rule.duration

        if behaviour == "hang":
            started = time.monotonic()
            limit = self.scenario.hang_limit_seconds
            if not cancel.wait(limit):
                logger.warning("%s still hanging after %gs, giving up", request.path, limit)
                return StepOutcome(
                    succeeded=False,
                    duration=time.monotonic() - started,
                    output=f"hang limit of {limit:g}s reached",
                )
            with self._lock:
                self.cancelled.append(request.path)
            logger.debug("%s cancelled while hanging", request.path)
            return StepOutcome(
                succeeded=False,
                duration=time.monotonic() - started,
                output="hung",
            )
        return StepOutcome(succeeded=behaviour == "succeed", duration=duration)
