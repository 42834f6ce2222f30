"""Shared fixtures for the epic-swarm test suite."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from epic_swarm.config import EpicSwarmConfig, clear_config_cache
from epic_swarm.logger import clear_logger_cache
from epic_swarm.models import WorkItem


@pytest.fixture(autouse=True)
def _clear_caches():
    """Config and logger caches are module-level; reset them around every test."""
    clear_config_cache()
    clear_logger_cache()
    yield
    clear_config_cache()
    clear_logger_cache()


@pytest.fixture
def now():
    """Fixed clock for time-dependent decisions."""
    return datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def swarm_config(tmp_path):
    """Config rooted in a temporary repository."""
    return EpicSwarmConfig(repo_root=str(tmp_path))


@pytest.fixture
def mock_logger():
    """Logger double that records log() calls."""
    return MagicMock()


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()


def make_item(full_id: str, deps=None, **kwargs) -> WorkItem:
    """Build a WorkItem from a full id like 'epic-1/story-2'."""
    epic_id, story_id = full_id.split("/", 1)
    return WorkItem(
        epic_id=epic_id,
        story_id=story_id,
        full_id=full_id,
        title=kwargs.pop("title", story_id),
        dependencies=list(deps or []),
        **kwargs,
    )
