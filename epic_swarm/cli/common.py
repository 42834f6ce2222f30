"""Common utilities and global state for the CLI.

Contains the console singleton and config loading.
This module should NOT import from app/display to avoid circular imports.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from rich.console import Console

if TYPE_CHECKING:
    from epic_swarm.config import EpicSwarmConfig

# ============================================================================
# Global State
# ============================================================================

# Config file override (set via --config flag)
_config_path: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_config_path() -> Optional[str]:
    """Get the config file override if set."""
    return _config_path


def set_config_path(path: Optional[str]) -> None:
    """Set the config file override."""
    global _config_path
    _config_path = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Config Helpers
# ============================================================================


def load_config_safe() -> Optional["EpicSwarmConfig"]:
    """
    Load config, returning None if it cannot be loaded.

    Uses the global --config flag if set, otherwise ./config.yaml.
    """
    from epic_swarm.config import ConfigError, load_config

    try:
        return load_config(get_config_path())
    except ConfigError:
        # No usable config file - use defaults
        return None


def get_config_or_default() -> "EpicSwarmConfig":
    """Get config or fall back to the built-in defaults."""
    config = load_config_safe()
    if config is not None:
        return config

    from epic_swarm.config import EpicSwarmConfig

    return EpicSwarmConfig()
