"""CLI entry point for pipecheck."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rich.console import Console

    from pipecheck.conditions import ExecutionContext
    from pipecheck.config import PipecheckConfig
    from pipecheck.pipeline import Pipeline
    from pipecheck.registry import CapabilityRegistry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ERROR = 2


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the pipecheck CLI."""
    parser = argparse.ArgumentParser(
        prog="pipecheck",
        description="Validate, plan and simulate declarative Jenkins pipelines",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Generate .pipecheck/pipecheck.toml from source defaults",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )

    subparsers = parser.add_subparsers(dest="command")

    validate_parser = subparsers.add_parser(
        "validate", help="Check a pipeline against a capability registry"
    )
    _add_common(validate_parser, registry=True)
    validate_parser.add_argument("--json", action="store_true", help="Emit JSON")

    plan_parser = subparsers.add_parser("plan", help="Show the expanded execution plan")
    _add_common(plan_parser, registry=False)

    run_parser = subparsers.add_parser("run", help="Validate, plan and simulate a run")
    _add_common(run_parser, registry=True)
    run_parser.add_argument(
        "--scenario",
        type=Path,
        default=None,
        help="TOML file scripting step outcomes (default: every step succeeds)",
    )
    run_parser.add_argument(
        "--fail-fast",
        action="store_true",
        help="Abort parallel siblings after the first failure",
    )
    run_parser.add_argument("--json", action="store_true", help="Emit JSON")

    _args = parser.parse_args(argv)

    if _args.init:
        from pipecheck.config import init_config

        path = init_config(Path.cwd())
        print(f"Wrote {path}")
        return EXIT_OK

    if _args.command is None:
        parser.print_help()
        return EXIT_OK

    from pipecheck.config import ConfigError, load_config
    from pipecheck.executor import ScenarioError
    from pipecheck.planner import PlanError
    from pipecheck.registry import RegistryError
    from pipecheck.syntax import ParseError

    try:
        config = load_config(Path.cwd())
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    _setup_logging(config.logging.level, _args.verbose)

    commands = {"validate": _cmd_validate, "plan": _cmd_plan, "run": _cmd_run}
    try:
        return commands[_args.command](_args, config)
    except ParseError as exc:
        print(f"{_args.file}:{exc.line}: {exc.reason}", file=sys.stderr)
    except (PlanError, RegistryError, ScenarioError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
    return EXIT_ERROR


def _add_common(parser: argparse.ArgumentParser, *, registry: bool) -> None:
    parser.add_argument("file", type=Path, help="Jenkinsfile to read")
    if registry:
        parser.add_argument(
            "--registry",
            type=Path,
            default=None,
            help="Capability TOML (default: [registry] path from config)",
        )
        parser.add_argument(
            "--strict",
            action="store_true",
            help="Treat warnings as blocking",
        )
    parser.add_argument("--branch", default=None, help="Branch the run is triggered for")
    parser.add_argument(
        "--multibranch",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Whether the trigger is branch-aware (default: only when --branch is given)",
    )
    parser.add_argument(
        "--env",
        type=_env_pair,
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Environment override (repeatable)",
    )


def _env_pair(text: str) -> tuple[str, str]:
    name, sep, value = text.partition("=")
    if not sep or not name:
        msg = f"expected NAME=VALUE, got {text!r}"
        raise argparse.ArgumentTypeError(msg)
    return name, value


def _setup_logging(level: str, verbose: bool) -> None:
    from rich.console import Console
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG if verbose else level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _console() -> Console:
    from rich.console import Console

    return Console()


def _context(args: argparse.Namespace) -> ExecutionContext:
    from pipecheck.conditions import ExecutionContext

    return ExecutionContext(
        branch=args.branch, environment=dict(args.env), multibranch=args.multibranch
    )


def _load(args: argparse.Namespace) -> Pipeline:
    from pipecheck.parser import parse_file

    return parse_file(args.file)


def _registry(args: argparse.Namespace, config: PipecheckConfig) -> CapabilityRegistry:
    from pipecheck.registry import load_registry

    path = args.registry or config.registry_path(Path.cwd())
    return load_registry(path)


def _cmd_validate(args: argparse.Namespace, config: PipecheckConfig) -> int:
    from pipecheck.report import render_findings
    from pipecheck.validator import validate

    pipeline = _load(args)
    registry = _registry(args, config)
    report = validate(
        pipeline,
        registry,
        _context(args),
        strict=args.strict or config.validation.strict,
    )
    if args.json:
        print(report.model_dump_json(indent=2))
    else:
        _console().print(render_findings(report))
    return EXIT_OK if report.can_execute else EXIT_FAILED


def _cmd_plan(args: argparse.Namespace, config: PipecheckConfig) -> int:
    from pipecheck.planner import plan
    from pipecheck.report import render_plan

    pipeline = _load(args)
    execution_plan = plan(pipeline, _context(args), fail_fast=config.runner.fail_fast)
    _console().print(render_plan(execution_plan))
    return EXIT_OK


def _cmd_run(args: argparse.Namespace, config: PipecheckConfig) -> int:
    from pipecheck.executor import CancelToken, DryRunExecutor, ScriptedExecutor, load_scenario
    from pipecheck.report import render_findings, render_result
    from pipecheck.runner import run_pipeline

    pipeline = _load(args)
    registry = _registry(args, config)
    if args.fail_fast:
        config.runner.fail_fast = True
    if args.strict:
        config.validation.strict = True

    executor = (
        ScriptedExecutor(load_scenario(args.scenario)) if args.scenario else DryRunExecutor()
    )

    cancel = CancelToken()

    def _handle_interrupt(signum: int, frame: object) -> None:
        logger.warning("Interrupted, cancelling in-flight steps")
        cancel.cancel()

    previous = signal.signal(signal.SIGINT, _handle_interrupt)
    try:
        report = run_pipeline(
            pipeline, registry, executor, _context(args), config=config, cancel=cancel
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    if args.json:
        payload = {
            "validation": report.validation.model_dump(mode="json"),
            "result": report.result.model_dump(mode="json") if report.result else None,
        }
        print(json.dumps(payload, indent=2))
    else:
        console = _console()
        if report.validation.findings or report.result is None:
            console.print(render_findings(report.validation))
        if report.result is not None:
            console.print(render_result(report.result))
    return EXIT_OK if report.succeeded else EXIT_FAILED


def _get_version() -> str:
    from pipecheck import __version__

    return __version__


if __name__ == "__main__":
    sys.exit(main())
