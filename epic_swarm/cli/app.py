"""Main Typer app definition and commands.

This is the canonical entry point for the CLI. The app, callback, and
commands are all defined here.
"""
from __future__ import annotations

import dataclasses
import json
import uuid
from pathlib import Path
from typing import Any, Optional

import typer
from rich.text import Text

from epic_swarm import __version__
from epic_swarm.cli.common import get_config_or_default, get_console, set_config_path
from epic_swarm.cli.display import format_action, show_execution_plan, show_review
from epic_swarm.config import ConfigError, load_config
from epic_swarm.edge_cases import EdgeCaseCoordinator
from epic_swarm.errors import DependencyCycleError, InvalidEnumValueError, ReviewParseError
from epic_swarm.evaluation.review_parser import JsonReviewParser, TextReviewParser
from epic_swarm.logger import get_logger
from epic_swarm.models import ModelEncoder
from epic_swarm.planning.discovery import EpicDiscoveryService

# Create Typer app
app = typer.Typer(
    name="epic-swarm",
    help="Plan, evaluate and recover autonomous epic processing",
    add_completion=False,
)

# Rich console for output - use singleton from common module
console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"epic-swarm version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config.yaml (default: ./config.yaml if present)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Epic Swarm - decision core for autonomous epic processing.

    Discovers epics, orders their stories by dependency, parses code
    reviews and classifies operational failures.
    """
    if config:
        # An explicit config must load; the implicit one may be absent
        try:
            load_config(config)
        except ConfigError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
    set_config_path(config)

    # If no subcommand and no --help, show help
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =========================================================================
# Commands
# =========================================================================


@app.command()
def plan(
    epics_dir: Optional[str] = typer.Argument(
        None,
        help="Directory containing epic files (default: discovery.epics_dir)",
    ),
    pattern: Optional[str] = typer.Option(
        None,
        "--pattern",
        "-p",
        help="Only plan epics whose id matches this pattern (e.g. 'epic-01*')",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the plan as JSON instead of a table",
    ),
) -> None:
    """
    Discover epics and show the dependency-ordered execution plan.
    """
    config = get_config_or_default()
    discovery_config = config.discovery
    if epics_dir:
        epics_path = Path(epics_dir)
        if not epics_path.is_dir():
            console.print(f"[red]Error:[/red] Epics directory not found: {epics_dir}")
            raise typer.Exit(1)
        discovery_config = dataclasses.replace(
            discovery_config, epics_dir=str(epics_path.absolute())
        )

    logger = get_logger("plan", config)
    service = EpicDiscoveryService(discovery_config, logger=logger)
    # One session id per invocation ties discovery and planning entries together
    with logger.correlate(session_id=f"plan-{uuid.uuid4().hex[:12]}"):
        epics = service.discover(Path(config.repo_root), include_pattern=pattern)
        try:
            execution_plan = service.create_execution_plan(epics)
        except DependencyCycleError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

    if as_json:
        typer.echo(json.dumps(execution_plan.to_dict(), cls=ModelEncoder, indent=2))
        return

    show_execution_plan(execution_plan, console)


@app.command()
def review(
    file: Path = typer.Argument(
        ...,
        help="File containing the review output",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Parse the file as a structured JSON review",
    ),
) -> None:
    """
    Parse review output and show the verdict and issues.
    """
    if not file.is_file():
        console.print(f"[red]Error:[/red] Review file not found: {file}")
        raise typer.Exit(1)

    output = file.read_text(encoding="utf-8")
    parser = JsonReviewParser() if as_json else TextReviewParser()

    try:
        result = parser.parse(output)
    except (ReviewParseError, InvalidEnumValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    show_review(result, console)


@app.command()
def classify(
    message: str = typer.Argument(
        ...,
        help="Error message to classify",
    ),
    retry_count: Optional[int] = typer.Option(
        None,
        "--retry-count",
        help="Retries already attempted (marks failed tests as flaky)",
    ),
    review_count: Optional[int] = typer.Option(
        None,
        "--review-count",
        help="Review iterations so far",
    ),
    token_count: Optional[int] = typer.Option(
        None,
        "--token-count",
        help="Current context size in tokens",
    ),
) -> None:
    """
    Classify an error message and show the default recovery action.
    """
    config = get_config_or_default()
    coordinator = EdgeCaseCoordinator(config.edge_cases)

    context: dict[str, Any] = {}
    if retry_count is not None:
        context["retry_count"] = retry_count
    if review_count is not None:
        context["review_count"] = review_count
    if token_count is not None:
        context["token_count"] = token_count

    edge_case_type = coordinator.classify(message, context)
    action = coordinator.recommended_action(edge_case_type)

    line = Text("Type: ", style="bold")
    line.append(edge_case_type.value, style="cyan")
    console.print(line)

    line = Text("Default action: ", style="bold")
    line.append_text(format_action(action))
    console.print(line)


# =========================================================================
# Entry Point
# =========================================================================


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
