"""Build a ``Pipeline`` from Jenkinsfile source.

``parse`` reads the statement tree produced by ``pipecheck.syntax`` and
enforces the structural rules of a declarative pipeline. Any violation
raises ``ParseError`` carrying the offending line.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pipecheck.pipeline import (
    Agent,
    AllOfCondition,
    AnyAgent,
    AnyOfCondition,
    Axis,
    BranchCondition,
    CheckoutStep,
    Condition,
    CredentialReference,
    DockerAgent,
    EchoStep,
    EnvBinding,
    EnvironmentCondition,
    LabelAgent,
    LibraryCallStep,
    Matrix,
    MatrixStage,
    NoAgent,
    NotCondition,
    ParallelStage,
    Parameter,
    ParameterKind,
    Pipeline,
    PostAction,
    PostCondition,
    RetryStep,
    ShellStep,
    Stage,
    Step,
    StepsStage,
    TimeoutStep,
)
from pipecheck.syntax import (
    Assignment,
    CallValue,
    Name,
    Node,
    ParseError,
    Statement,
    read_statements,
)

__all__ = ["ParseError", "parse", "parse_file"]

_UNIT_SECONDS = {
    "MILLISECONDS": 0.001,
    "SECONDS": 1.0,
    "MINUTES": 60.0,
    "HOURS": 3600.0,
    "DAYS": 86400.0,
}

_DURATION_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$")
_DURATION_SUFFIX = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0, None: 60.0}


def parse(source: str) -> Pipeline:
    """Parse declarative pipeline *source* into an immutable ``Pipeline``."""
    nodes = read_statements(source)

    libraries: list[str] = []
    pipeline_stmt: Statement | None = None
    for node in nodes:
        stmt = _require_statement(node)
        if stmt.name == "@Library":
            libraries.extend(_library_names(stmt))
        elif stmt.name == "pipeline":
            if pipeline_stmt is not None:
                raise ParseError(stmt.line, "only one pipeline block is allowed")
            pipeline_stmt = stmt
        else:
            raise ParseError(stmt.line, f"unexpected top-level statement '{stmt.name}'")

    if pipeline_stmt is None or pipeline_stmt.block is None:
        line = pipeline_stmt.line if pipeline_stmt else 1
        raise ParseError(line, "missing pipeline { ... } block")
    return _Builder(libraries).build(pipeline_stmt)


def parse_file(path: Path) -> Pipeline:
    return parse(path.read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def _require_statement(node: Node) -> Statement:
    if isinstance(node, Assignment):
        raise ParseError(node.line, f"unexpected assignment to '{node.name}'")
    return node


def _require_block(stmt: Statement) -> list[Node]:
    if stmt.block is None:
        raise ParseError(stmt.line, f"'{stmt.name}' requires a {{ ... }} block")
    return stmt.block


def _forbid_block(stmt: Statement) -> None:
    if stmt.block is not None:
        raise ParseError(stmt.line, f"'{stmt.name}' does not take a block")


def _string_arg(stmt: Statement, key: str | None = None) -> str:
    """First positional argument, or the named argument *key*, as a string."""
    value: Any = None
    if key is not None and key in stmt.named:
        value = stmt.named[key]
    elif stmt.positional:
        value = stmt.positional[0]
    if value is None:
        label = f"'{key}' argument" if key else "an argument"
        raise ParseError(stmt.line, f"'{stmt.name}' requires {label}")
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value
    raise ParseError(stmt.line, f"'{stmt.name}' expects a string argument")


def _named_string(stmt: Statement, key: str) -> str | None:
    if key not in stmt.named:
        return None
    return str(stmt.named[key])


def _library_names(stmt: Statement) -> list[str]:
    names: list[str] = []
    for value in stmt.positional:
        items = value if isinstance(value, list) else [value]
        for item in items:
            if not isinstance(item, str) or not item:
                raise ParseError(stmt.line, "library names must be strings")
            names.append(item.split("@", 1)[0])
    if not names:
        raise ParseError(stmt.line, f"'{stmt.name}' requires a library name")
    return names


def _parse_duration(stmt: Statement) -> float:
    named = stmt.named
    if "time" in named:
        amount = named["time"]
        unit = str(named.get("unit", "MINUTES")).upper()
        if unit not in _UNIT_SECONDS:
            raise ParseError(stmt.line, f"unknown timeout unit '{unit}'")
        if not isinstance(amount, (int, float)) or isinstance(amount, bool):
            raise ParseError(stmt.line, "timeout 'time' must be a number")
        return float(amount) * _UNIT_SECONDS[unit]

    if not stmt.positional:
        raise ParseError(stmt.line, "timeout requires a duration")
    value = stmt.positional[0]
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) * 60.0
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if match:
            return float(match.group(1)) * _DURATION_SUFFIX[match.group(2)]
    raise ParseError(stmt.line, f"invalid timeout duration {value!r}")


def _check_unique(names: list[tuple[str, int]], what: str) -> None:
    seen: set[str] = set()
    for name, line in names:
        if name in seen:
            raise ParseError(line, f"duplicate {what} '{name}'")
        seen.add(name)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class _Builder:
    def __init__(self, libraries: list[str]) -> None:
        self._libraries = list(libraries)
        self._handlers: dict[str, Callable[[Statement], Step]] = {
            "sh": self._shell,
            "echo": self._echo,
            "checkout": self._checkout,
            "git": self._git,
            "retry": self._retry,
            "timeout": self._timeout,
        }

    def build(self, stmt: Statement) -> Pipeline:
        directives = self._directives(
            stmt,
            {"agent", "stages", "parameters", "environment", "libraries", "matrix", "post"},
        )
        if "libraries" in directives:
            self._read_libraries(directives["libraries"])

        if "agent" not in directives:
            raise ParseError(stmt.line, "pipeline requires an agent directive")
        if "stages" not in directives:
            raise ParseError(stmt.line, "pipeline requires a stages block")

        matrix = None
        if "matrix" in directives:
            matrix = self._matrix(directives["matrix"], nested=False)

        return Pipeline(
            agent=self._agent(directives["agent"]),
            stages=self._stages(directives["stages"]),
            parameters=self._parameters(directives.get("parameters")),
            environment=self._environment(directives.get("environment")),
            matrix=matrix,
            post=self._post(directives.get("post")),
            libraries=tuple(dict.fromkeys(self._libraries)),
        )

    def _directives(self, stmt: Statement, allowed: set[str]) -> dict[str, Statement]:
        found: dict[str, Statement] = {}
        for node in _require_block(stmt):
            child = _require_statement(node)
            if child.name not in allowed:
                raise ParseError(
                    child.line, f"unknown directive '{child.name}' in {stmt.name}"
                )
            if child.name in found:
                raise ParseError(child.line, f"duplicate '{child.name}' directive")
            found[child.name] = child
        return found

    def _read_libraries(self, stmt: Statement) -> None:
        for node in _require_block(stmt):
            child = _require_statement(node)
            if child.name != "lib":
                raise ParseError(child.line, f"expected lib(...), found '{child.name}'")
            self._libraries.extend(_library_names(child))

    # -- agents -------------------------------------------------------------

    def _agent(self, stmt: Statement) -> Agent:
        if stmt.block is None:
            value = stmt.positional[0] if stmt.positional else None
            if isinstance(value, Name) and value.value == "any":
                return AnyAgent()
            if isinstance(value, Name) and value.value == "none":
                return NoAgent()
            raise ParseError(stmt.line, "agent must be 'any', 'none' or a block")

        children = [_require_statement(n) for n in stmt.block]
        if len(children) != 1:
            raise ParseError(stmt.line, "agent block must declare exactly one agent type")
        kind = children[0]
        if kind.name == "label":
            _forbid_block(kind)
            return LabelAgent(label=_string_arg(kind))
        if kind.name == "docker":
            return self._docker_agent(kind)
        raise ParseError(kind.line, f"unsupported agent type '{kind.name}'")

    def _docker_agent(self, stmt: Statement) -> DockerAgent:
        if stmt.block is None:
            image = _string_arg(stmt, "image")
            return DockerAgent(image=image, args=_named_string(stmt, "args"))

        options: dict[str, str] = {}
        for node in stmt.block:
            child = _require_statement(node)
            if child.name not in ("image", "args"):
                raise ParseError(child.line, f"unknown docker option '{child.name}'")
            options[child.name] = _string_arg(child)
        if "image" not in options:
            raise ParseError(stmt.line, "docker agent requires an image")
        return DockerAgent(image=options["image"], args=options.get("args"))

    # -- parameters and environment ------------------------------------------

    def _parameters(self, stmt: Statement | None) -> tuple[Parameter, ...]:
        if stmt is None:
            return ()
        params: list[Parameter] = []
        lines: list[tuple[str, int]] = []
        for node in _require_block(stmt):
            child = _require_statement(node)
            param = self._parameter(child)
            params.append(param)
            lines.append((param.name, child.line))
        _check_unique(lines, "parameter")
        return tuple(params)

    def _parameter(self, stmt: Statement) -> Parameter:
        named = stmt.named
        name = named.get("name")
        if not isinstance(name, str) or not name:
            raise ParseError(stmt.line, f"{stmt.name} parameter requires a name")
        description = str(named.get("description", ""))

        if stmt.name in ("string", "text"):
            default = named.get("defaultValue", "")
            return Parameter(name, ParameterKind.STRING, str(default), description)
        if stmt.name == "booleanParam":
            default = named.get("defaultValue", False)
            if not isinstance(default, bool):
                raise ParseError(stmt.line, "booleanParam defaultValue must be true or false")
            return Parameter(name, ParameterKind.BOOLEAN, default, description)
        if stmt.name == "choice":
            choices = named.get("choices")
            if not isinstance(choices, list) or not choices:
                raise ParseError(stmt.line, "choice parameter requires a non-empty choices list")
            values = tuple(str(c) for c in choices)
            return Parameter(name, ParameterKind.CHOICE, values[0], description, values)
        raise ParseError(stmt.line, f"unknown parameter type '{stmt.name}'")

    def _environment(self, stmt: Statement | None) -> tuple[EnvBinding, ...]:
        if stmt is None:
            return ()
        bindings: list[EnvBinding] = []
        lines: list[tuple[str, int]] = []
        for node in _require_block(stmt):
            if not isinstance(node, Assignment):
                raise ParseError(node.line, "environment entries must be NAME = value")
            bindings.append(EnvBinding(node.name, self._env_value(node)))
            lines.append((node.name, node.line))
        _check_unique(lines, "environment variable")
        return tuple(bindings)

    def _env_value(self, node: Assignment) -> str | CredentialReference:
        value = node.value
        if isinstance(value, CallValue):
            if value.name != "credentials":
                raise ParseError(node.line, f"unsupported function '{value.name}' in environment")
            args = [a.value for a in value.arguments]
            if len(args) != 1 or not isinstance(args[0], str) or not args[0]:
                raise ParseError(node.line, "credentials() takes a single credential ID")
            return CredentialReference(args[0])
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (str, int, float)):
            return str(value)
        raise ParseError(node.line, f"unsupported value for '{node.name}'")

    # -- stages ---------------------------------------------------------------

    def _stages(self, stmt: Statement) -> tuple[Stage, ...]:
        stages: list[Stage] = []
        lines: list[tuple[str, int]] = []
        for node in _require_block(stmt):
            child = _require_statement(node)
            if child.name != "stage":
                raise ParseError(child.line, f"expected stage(...), found '{child.name}'")
            stage = self._stage(child)
            stages.append(stage)
            lines.append((stage.name, child.line))
        if not stages:
            raise ParseError(stmt.line, f"'{stmt.name}' must contain at least one stage")
        _check_unique(lines, "stage name")
        return tuple(stages)

    def _stage(self, stmt: Statement) -> Stage:
        name = _string_arg(stmt, "name")
        directives = self._directives(
            stmt, {"agent", "when", "environment", "steps", "parallel", "matrix", "failFast"}
        )
        bodies = [d for d in ("steps", "parallel", "matrix") if d in directives]
        if not bodies:
            raise ParseError(stmt.line, f"stage '{name}' declares no steps, parallel or matrix")
        if len(bodies) > 1:
            raise ParseError(
                stmt.line, f"stage '{name}' mixes {' and '.join(bodies)}"
            )

        when = self._when(directives["when"]) if "when" in directives else None
        agent = self._agent(directives["agent"]) if "agent" in directives else None
        environment = self._environment(directives.get("environment"))

        fail_fast = None
        if "failFast" in directives:
            flag = directives["failFast"]
            if bodies[0] != "parallel":
                raise ParseError(flag.line, "failFast only applies to parallel stages")
            values = flag.positional
            if len(values) != 1 or not isinstance(values[0], bool):
                raise ParseError(flag.line, "failFast expects true or false")
            fail_fast = values[0]

        body = directives[bodies[0]]
        if bodies[0] == "steps":
            return StepsStage(name, self._steps(body), when, agent, environment)
        if bodies[0] == "parallel":
            return ParallelStage(name, self._stages(body), when, agent, environment, fail_fast)
        return MatrixStage(name, self._matrix(body, nested=True), when, agent, environment)

    # -- matrix ---------------------------------------------------------------

    def _matrix(self, stmt: Statement, nested: bool) -> Matrix:
        directives = self._directives(stmt, {"axes", "excludes", "stages"})
        if "axes" not in directives:
            raise ParseError(stmt.line, "matrix requires an axes block")
        axes = self._axes(directives["axes"])

        excludes: list[tuple[Axis, ...]] = []
        if "excludes" in directives:
            known = {a.name for a in axes}
            for node in _require_block(directives["excludes"]):
                child = _require_statement(node)
                if child.name != "exclude":
                    raise ParseError(child.line, f"expected exclude, found '{child.name}'")
                exclude = self._axes(child)
                for axis in exclude:
                    if axis.name not in known:
                        raise ParseError(child.line, f"exclude names unknown axis '{axis.name}'")
                excludes.append(exclude)

        stages: tuple[Stage, ...] = ()
        if nested:
            if "stages" not in directives:
                raise ParseError(stmt.line, "matrix requires a stages block")
            stages = self._stages(directives["stages"])
        elif "stages" in directives:
            raise ParseError(
                directives["stages"].line,
                "a pipeline-level matrix applies to the pipeline stages and cannot declare its own",
            )
        return Matrix(axes=axes, excludes=tuple(excludes), stages=stages)

    def _axes(self, stmt: Statement) -> tuple[Axis, ...]:
        axes: list[Axis] = []
        lines: list[tuple[str, int]] = []
        for node in _require_block(stmt):
            child = _require_statement(node)
            if child.name != "axis":
                raise ParseError(child.line, f"expected axis, found '{child.name}'")
            axis = self._axis(child)
            axes.append(axis)
            lines.append((axis.name, child.line))
        if not axes:
            raise ParseError(stmt.line, f"'{stmt.name}' must declare at least one axis")
        _check_unique(lines, "axis")
        return tuple(axes)

    def _axis(self, stmt: Statement) -> Axis:
        name: str | None = None
        values: list[str] = []
        for node in _require_block(stmt):
            child = _require_statement(node)
            if child.name == "name":
                name = _string_arg(child)
            elif child.name == "values":
                values = [str(v) for v in child.positional]
            else:
                raise ParseError(child.line, f"unknown axis option '{child.name}'")
        if not name:
            raise ParseError(stmt.line, "axis requires a name")
        if not values:
            raise ParseError(stmt.line, f"axis '{name}' has no values")
        if len(set(values)) != len(values):
            raise ParseError(stmt.line, f"axis '{name}' repeats a value")
        return Axis(name=name, values=tuple(values))

    # -- when -----------------------------------------------------------------

    def _when(self, stmt: Statement) -> Condition:
        conditions = [self._condition(_require_statement(n)) for n in _require_block(stmt)]
        if not conditions:
            raise ParseError(stmt.line, "when block declares no condition")
        if len(conditions) == 1:
            return conditions[0]
        return AllOfCondition(tuple(conditions))

    def _condition(self, stmt: Statement) -> Condition:
        if stmt.name == "branch":
            _forbid_block(stmt)
            return BranchCondition(_string_arg(stmt, "pattern"))
        if stmt.name == "environment":
            _forbid_block(stmt)
            named = stmt.named
            if "name" not in named or "value" not in named:
                raise ParseError(stmt.line, "environment condition requires name: and value:")
            return EnvironmentCondition(str(named["name"]), str(named["value"]))
        if stmt.name in ("not", "allOf", "anyOf"):
            inner = [self._condition(_require_statement(n)) for n in _require_block(stmt)]
            if not inner:
                raise ParseError(stmt.line, f"'{stmt.name}' requires at least one condition")
            if stmt.name == "not":
                if len(inner) != 1:
                    raise ParseError(stmt.line, "'not' takes exactly one condition")
                return NotCondition(inner[0])
            if stmt.name == "allOf":
                return AllOfCondition(tuple(inner))
            return AnyOfCondition(tuple(inner))
        raise ParseError(stmt.line, f"unsupported when condition '{stmt.name}'")

    # -- steps ----------------------------------------------------------------

    def _steps(self, stmt: Statement) -> tuple[Step, ...]:
        steps = tuple(self._step(_require_statement(n)) for n in _require_block(stmt))
        if not steps:
            raise ParseError(stmt.line, f"'{stmt.name}' block contains no steps")
        return steps

    def _step(self, stmt: Statement) -> Step:
        handler = self._handlers.get(stmt.name)
        if handler is not None:
            return handler(stmt)
        if self._libraries:
            _forbid_block(stmt)
            args = tuple(str(v) for v in stmt.positional)
            return LibraryCallStep(
                call=stmt.name, args=args, libraries=tuple(dict.fromkeys(self._libraries))
            )
        raise ParseError(stmt.line, f"unknown step kind '{stmt.name}'")

    def _shell(self, stmt: Statement) -> Step:
        _forbid_block(stmt)
        return ShellStep(script=_string_arg(stmt, "script"))

    def _echo(self, stmt: Statement) -> Step:
        _forbid_block(stmt)
        return EchoStep(message=_string_arg(stmt, "message"))

    def _checkout(self, stmt: Statement) -> Step:
        _forbid_block(stmt)
        value = stmt.positional[0] if stmt.positional else None
        if not (isinstance(value, Name) and value.value == "scm"):
            raise ParseError(stmt.line, "only 'checkout scm' is supported")
        return CheckoutStep()

    def _git(self, stmt: Statement) -> Step:
        _forbid_block(stmt)
        url = _string_arg(stmt, "url")
        return CheckoutStep(url=url, branch=_named_string(stmt, "branch"))

    def _single_child(self, stmt: Statement) -> Step:
        block = _require_block(stmt)
        if len(block) != 1:
            raise ParseError(stmt.line, f"'{stmt.name}' block must contain exactly one step")
        return self._step(_require_statement(block[0]))

    def _retry(self, stmt: Statement) -> Step:
        count = stmt.named.get("count", stmt.positional[0] if stmt.positional else None)
        if not isinstance(count, int) or isinstance(count, bool):
            raise ParseError(stmt.line, "retry requires an integer count")
        if count < 1:
            raise ParseError(stmt.line, f"retry count must be at least 1, got {count}")
        return RetryStep(max_attempts=count, body=self._single_child(stmt))

    def _timeout(self, stmt: Statement) -> Step:
        seconds = _parse_duration(stmt)
        if seconds <= 0:
            raise ParseError(stmt.line, "timeout duration must be positive")
        return TimeoutStep(seconds=seconds, body=self._single_child(stmt))

    # -- post -----------------------------------------------------------------

    def _post(self, stmt: Statement | None) -> tuple[PostAction, ...]:
        if stmt is None:
            return ()
        actions: list[PostAction] = []
        lines: list[tuple[str, int]] = []
        valid = {c.value: c for c in PostCondition}
        for node in _require_block(stmt):
            child = _require_statement(node)
            condition = valid.get(child.name)
            if condition is None:
                raise ParseError(child.line, f"unsupported post condition '{child.name}'")
            actions.append(PostAction(condition, self._steps(child)))
            lines.append((child.name, child.line))
        _check_unique(lines, "post condition")
        return tuple(actions)
