"""Display helpers and formatters for the CLI.

Contains Rich formatting utilities for verdicts, severities, story statuses
and the execution plan.
This module should NOT import from app to avoid circular imports.
"""
from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from epic_swarm.edge_cases import EdgeCaseAction, EdgeCaseActionKind
from epic_swarm.evaluation.models import ReviewIssueSeverity, ReviewResult, ReviewVerdict
from epic_swarm.models import ExecutionPlan, StoryProcessingStatus

# Review verdict display names and colors
VERDICT_DISPLAY: dict[ReviewVerdict, tuple[str, str]] = {
    ReviewVerdict.APPROVED: ("Approved", "green bold"),
    ReviewVerdict.CHANGES_REQUESTED: ("Changes Requested", "red bold"),
    ReviewVerdict.NEEDS_DISCUSSION: ("Needs Discussion", "yellow bold"),
    ReviewVerdict.PENDING: ("Pending", "dim"),
}

SEVERITY_DISPLAY: dict[ReviewIssueSeverity, tuple[str, str]] = {
    ReviewIssueSeverity.CRITICAL: ("CRITICAL", "red bold"),
    ReviewIssueSeverity.HIGH: ("HIGH", "red"),
    ReviewIssueSeverity.MEDIUM: ("MEDIUM", "yellow"),
    ReviewIssueSeverity.LOW: ("LOW", "cyan"),
    ReviewIssueSeverity.NITPICK: ("NITPICK", "dim"),
}

STORY_STATUS_DISPLAY: dict[StoryProcessingStatus, tuple[str, str]] = {
    StoryProcessingStatus.PENDING: ("Pending", "dim"),
    StoryProcessingStatus.WAITING: ("Waiting", "yellow"),
    StoryProcessingStatus.IN_PROGRESS: ("In Progress", "cyan bold"),
    StoryProcessingStatus.AWAITING_REVIEW: ("Awaiting Review", "blue"),
    StoryProcessingStatus.AWAITING_MERGE: ("Awaiting Merge", "blue"),
    StoryProcessingStatus.COMPLETED: ("Completed", "green"),
    StoryProcessingStatus.FAILED: ("Failed", "red"),
    StoryProcessingStatus.BLOCKED: ("Blocked", "yellow bold"),
    StoryProcessingStatus.SKIPPED: ("Skipped", "magenta"),
}

# Actions that stop work are shown in red
STOPPING_ACTIONS = {EdgeCaseActionKind.BLOCK, EdgeCaseActionKind.ESCALATE}


def format_verdict(verdict: ReviewVerdict) -> Text:
    """Format a review verdict as colored text."""
    display_name, style = VERDICT_DISPLAY.get(verdict, (verdict.value, "white"))
    return Text(display_name, style=style)


def format_severity(severity: ReviewIssueSeverity) -> Text:
    """Format an issue severity as colored text."""
    display_name, style = SEVERITY_DISPLAY.get(severity, (severity.value, "white"))
    return Text(display_name, style=style)


def format_story_status(status: StoryProcessingStatus) -> Text:
    display_name, style = STORY_STATUS_DISPLAY.get(status, (status.value, "white"))
    return Text(display_name, style=style)


def format_minutes(minutes: Optional[int]) -> str:
    """Format an estimate as hours and minutes."""
    if not minutes:
        return "-"
    hours, mins = divmod(minutes, 60)
    if hours:
        return f"{hours}h {mins}m"
    return f"{mins}m"


def show_execution_plan(plan: ExecutionPlan, console: Console) -> None:
    """Display the work queue of an execution plan."""
    if not plan.work_queue:
        console.print(
            Panel(
                "[dim]No stories found.[/dim]\n\n"
                "Epic files are read from the configured epics directory:\n"
                "  [cyan]discovery.epics_dir[/cyan] in config.yaml",
                title="Execution Plan",
                border_style="dim",
            )
        )
        return

    table = Table(
        title="Execution Plan",
        show_header=True,
        header_style="bold",
    )
    table.add_column("#", justify="right", style="dim")
    table.add_column("Story", style="cyan", no_wrap=True)
    table.add_column("Title", no_wrap=False)
    table.add_column("Deps", style="dim")
    table.add_column("Status", no_wrap=True)

    for position, item in enumerate(plan.work_queue, start=1):
        deps = ", ".join(item.dependencies) if item.dependencies else "-"
        table.add_row(
            str(position),
            item.full_id,
            item.title,
            deps,
            format_story_status(item.status),
        )

    console.print(table)
    console.print(f"\n[dim]{plan.summary()}[/dim]")
    console.print(f"[dim]Estimated time:[/dim] {format_minutes(plan.estimated_minutes)}")


def show_review(result: ReviewResult, console: Console) -> None:
    """Display a parsed review: verdict first, then issues by severity."""
    verdict_text = Text("Verdict: ", style="bold")
    verdict_text.append_text(format_verdict(result.verdict))
    console.print(verdict_text)

    if not result.issues:
        console.print("\n[dim]No issues found.[/dim]")
        return

    table = Table(
        title="Review Issues",
        show_header=True,
        header_style="bold",
    )
    table.add_column("Severity", no_wrap=True)
    table.add_column("Location", style="dim")
    table.add_column("Description")

    for issue in sorted(result.issues, key=lambda i: i.severity, reverse=True):
        table.add_row(
            format_severity(issue.severity),
            issue.location or "-",
            issue.description,
        )

    console.print()
    console.print(table)

    blocking = len(result.blocking_issues())
    if blocking:
        console.print(f"\n[red]{blocking} blocking issue(s)[/red]")


def format_action(action: EdgeCaseAction) -> Text:
    """Format an edge case action, red when it stops work."""
    style = "red" if action.kind in STOPPING_ACTIONS else "green"
    return Text(str(action), style=style)
