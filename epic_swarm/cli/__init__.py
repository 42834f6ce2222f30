"""CLI package for epic-swarm.

Modules:
    app.py      - Main Typer app, version callback, commands
    display.py  - Rich formatting utilities (format_verdict, show_execution_plan, etc.)
    common.py   - Shared helpers (get_console, load_config_safe)

Usage:
    from epic_swarm.cli import app, cli_main  # Main exports
    from epic_swarm.cli.display import format_verdict, format_severity
    from epic_swarm.cli.common import get_console
"""
from epic_swarm.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
