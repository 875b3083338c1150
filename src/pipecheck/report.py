"""Terminal rendering of findings, plans and results with rich."""

from __future__ import annotations

from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from pipecheck.models import ExecutionResult, NodeResult, NodeStatus, Severity, ValidationReport
from pipecheck.planner import ExecutionPlan, NodeKind, PlanNode

STATUS_STYLES: dict[NodeStatus, str] = {
    NodeStatus.PENDING: "dim",
    NodeStatus.RUNNING: "cyan",
    NodeStatus.SUCCEEDED: "bold green",
    NodeStatus.FAILED: "bold red",
    NodeStatus.TIMED_OUT: "bold magenta",
    NodeStatus.SKIPPED: "dim",
    NodeStatus.ABORTED: "yellow",
}


def render_findings(report: ValidationReport) -> Table:
    verdict = "executable" if report.can_execute else "blocked"
    table = Table(title=f"Validation ({verdict})")
    table.add_column("Severity")
    table.add_column("Subject", style="cyan")
    table.add_column("Rule", style="magenta")
    table.add_column("Message")

    for finding in report.findings:
        style = "bold red" if finding.severity is Severity.ERROR else "yellow"
        table.add_row(
            f"[{style}]{finding.severity.value}[/]",
            escape(finding.subject),
            finding.rule,
            escape(finding.message),
        )

    table.caption = f"{len(report.errors)} error(s) | {len(report.warnings)} warning(s)"
    return table


def _plan_label(node: PlanNode) -> str:
    label = escape(node.name)
    if node.kind is NodeKind.PARALLEL:
        label = f"{label} [dim](parallel{', fail-fast' if node.fail_fast else ''})[/]"
    if node.skipped:
        label = f"[dim]{label} (skipped)[/]"
    return label


def _add_plan_node(tree: Tree, node: PlanNode) -> None:
    branch = tree.add(_plan_label(node))
    for child in node.children:
        _add_plan_node(branch, child)


def render_plan(execution_plan: ExecutionPlan) -> Tree:
    tree = Tree("[bold]Execution plan[/bold]")
    for node in execution_plan.stages:
        _add_plan_node(tree, node)
    if execution_plan.post:
        post = tree.add("post")
        for planned in execution_plan.post:
            branch = post.add(planned.condition.value)
            for step in planned.steps:
                _add_plan_node(branch, step)
    return tree


def _result_label(result: NodeResult) -> str:
    style = STATUS_STYLES[result.status]
    label = f"{escape(result.name)} [{style}]{result.status.value}[/]"
    if result.attempts > 1:
        label += f" [dim]x{result.attempts}[/]"
    if result.duration:
        label += f" [dim]{result.duration:.2f}s[/]"
    if result.message:
        label += f" [dim]- {escape(result.message)}[/]"
    return label


def _add_result_node(tree: Tree, result: NodeResult) -> None:
    branch = tree.add(_result_label(result))
    for child in result.children:
        _add_result_node(branch, child)


def render_result(result: ExecutionResult) -> Tree:
    style = "bold green" if result.outcome.value == "success" else "bold red"
    tree = Tree(f"Pipeline [{style}]{result.outcome.value}[/]")
    for stage in result.stages:
        _add_result_node(tree, stage)
    if result.post_actions:
        post = tree.add("post")
        for action in result.post_actions:
            branch = post.add(
                f"{action.condition} [{STATUS_STYLES[action.status]}]{action.status.value}[/]"
            )
            for step in action.steps:
                _add_result_node(branch, step)
    return tree
