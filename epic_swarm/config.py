"""
Configuration loading and validation for Epic Swarm.

This module handles:
- Loading config.yaml from the repo root
- Environment variable resolution (${VAR} syntax)
- Range validation of numeric settings
- Default values for every section
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from epic_swarm.errors import EpicSwarmError, InvalidEnumValueError
from epic_swarm.models import ParseableEnum


class ConfigError(EpicSwarmError):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


class MergeMethod(ParseableEnum):
    """How a pull request is merged."""
    MERGE = "merge"
    SQUASH = "squash"
    REBASE = "rebase"


@dataclass
class DiscoveryConfig:
    """Epic discovery configuration."""
    epics_dir: str = "docs/bmad/epics"         # Directory scanned for epic files
    file_pattern: str = "epic-*.md"            # Glob for epic files
    id_pattern: str = r"epic-(\d+)"            # Regex extracting the numeric epic id
    skip_patterns: list[str] = field(default_factory=list)  # Epic ids to skip
    minutes_per_story: int = 5                 # Estimate used by execution plans


@dataclass
class EvaluationConfig:
    """Completion evaluator configuration."""
    require_ci_pass: bool = True               # Failed CI blocks completion
    require_review_approval: bool = True       # Review must be approved
    min_criterion_confidence: float = 0.5      # Below this a "met" criterion is not met


@dataclass
class PrWorkflowConfig:
    """Pull request lifecycle configuration."""
    merge_method: MergeMethod = MergeMethod.SQUASH
    ci_timeout_seconds: int = 1800             # Max time CI may stay running
    human_review_timeout_seconds: int = 86400  # Max time in awaiting_review
    auto_merge: bool = True                    # Merge without a human click
    delete_branch_after_merge: bool = True
    cleanup_worktree: bool = True
    max_conflict_resolution_attempts: int = 3
    require_ci_pass: bool = True
    require_review_approval: bool = True


@dataclass
class EdgeCaseConfig:
    """Failure/backoff coordinator configuration."""
    flaky_test_max_retries: int = 3
    flaky_test_backoff_seconds: int = 30
    delayed_review_wait_minutes: int = 120
    delayed_review_check_interval_minutes: int = 5
    service_downtime_wait_minutes: int = 30
    service_downtime_check_interval_minutes: int = 2
    review_ping_pong_threshold: int = 5
    context_overflow_threshold: int = 100_000  # Tokens
    rate_limit_initial_backoff_seconds: int = 60
    rate_limit_max_backoff_seconds: int = 1800
    timeout_max_retries: int = 2
    timeout_backoff_seconds: int = 60
    network_auto_retry: bool = True
    network_max_retries: int = 5
    network_backoff_seconds: int = 10


@dataclass
class EpicSwarmConfig:
    """
    Main configuration for Epic Swarm.

    This is the top-level config loaded from config.yaml.
    """
    # Paths
    repo_root: str = "."
    swarm_dir: str = ".epic-swarm"

    # Nested configurations
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    evaluation: EvaluationConfig = field(default_factory=EvaluationConfig)
    pr_workflow: PrWorkflowConfig = field(default_factory=PrWorkflowConfig)
    edge_cases: EdgeCaseConfig = field(default_factory=EdgeCaseConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def epics_path(self) -> Path:
        """Absolute path to the epics directory."""
        return Path(self.repo_root) / self.discovery.epics_dir

    @property
    def swarm_path(self) -> Path:
        """Absolute path to the swarm state directory."""
        return Path(self.repo_root) / self.swarm_dir

    @property
    def logs_path(self) -> Path:
        """Absolute path to logs directory."""
        return self.swarm_path / "logs"


# Module-level cache for the loaded configuration
_config_cache: Optional[EpicSwarmConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Section {name} must be a mapping")
    return section


def _int_at_least(section: str, data: dict[str, Any], key: str, default: int, minimum: int = 1) -> int:
    value = data.get(key, default)
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{section}.{key} must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigError(f"{section}.{key} must be >= {minimum}, got {value}")
    return value


_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


def _bool(section: str, data: dict[str, Any], key: str, default: bool) -> bool:
    """Read a flag that may arrive as a string after env substitution."""
    value = data.get(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ConfigError(f"{section}.{key} must be a boolean, got {value!r}")


def _parse_discovery_config(data: dict[str, Any]) -> DiscoveryConfig:
    """Parse discovery configuration from dict."""
    id_pattern = data.get("id_pattern", r"epic-(\d+)")
    try:
        re.compile(id_pattern)
    except re.error as e:
        raise ConfigError(f"discovery.id_pattern is not a valid regex: {e}")
    skip_patterns = data.get("skip_patterns") or []
    if isinstance(skip_patterns, str):
        skip_patterns = [skip_patterns]
    return DiscoveryConfig(
        epics_dir=data.get("epics_dir", "docs/bmad/epics"),
        file_pattern=data.get("file_pattern", "epic-*.md"),
        id_pattern=id_pattern,
        skip_patterns=[str(p) for p in skip_patterns],
        minutes_per_story=_int_at_least("discovery", data, "minutes_per_story", 5, minimum=0),
    )


def _parse_evaluation_config(data: dict[str, Any]) -> EvaluationConfig:
    """Parse evaluation configuration from dict."""
    confidence = data.get("min_criterion_confidence", 0.5)
    try:
        confidence = float(confidence)
    except (TypeError, ValueError):
        raise ConfigError(f"evaluation.min_criterion_confidence must be a number, got {confidence!r}")
    if not 0.0 <= confidence <= 1.0:
        raise ConfigError(
            f"evaluation.min_criterion_confidence must be between 0 and 1, got {confidence}"
        )
    return EvaluationConfig(
        require_ci_pass=_bool("evaluation", data, "require_ci_pass", True),
        require_review_approval=_bool("evaluation", data, "require_review_approval", True),
        min_criterion_confidence=confidence,
    )


def _parse_pr_workflow_config(data: dict[str, Any]) -> PrWorkflowConfig:
    """Parse PR workflow configuration from dict."""
    try:
        merge_method = MergeMethod.parse(data.get("merge_method", "squash"))
    except InvalidEnumValueError as e:
        raise ConfigError(f"pr_workflow.merge_method: {e}")
    return PrWorkflowConfig(
        merge_method=merge_method,
        ci_timeout_seconds=_int_at_least("pr_workflow", data, "ci_timeout_seconds", 1800),
        human_review_timeout_seconds=_int_at_least(
            "pr_workflow", data, "human_review_timeout_seconds", 86400
        ),
        auto_merge=_bool("pr_workflow", data, "auto_merge", True),
        delete_branch_after_merge=_bool("pr_workflow", data, "delete_branch_after_merge", True),
        cleanup_worktree=_bool("pr_workflow", data, "cleanup_worktree", True),
        max_conflict_resolution_attempts=_int_at_least(
            "pr_workflow", data, "max_conflict_resolution_attempts", 3, minimum=0
        ),
        require_ci_pass=_bool("pr_workflow", data, "require_ci_pass", True),
        require_review_approval=_bool("pr_workflow", data, "require_review_approval", True),
    )


def _parse_edge_case_config(data: dict[str, Any]) -> EdgeCaseConfig:
    """Parse edge-case coordinator configuration from dict."""
    initial = _int_at_least("edge_cases", data, "rate_limit_initial_backoff_seconds", 60)
    maximum = _int_at_least("edge_cases", data, "rate_limit_max_backoff_seconds", 1800)
    if maximum < initial:
        raise ConfigError(
            "edge_cases.rate_limit_max_backoff_seconds must be >= "
            "rate_limit_initial_backoff_seconds"
        )
    return EdgeCaseConfig(
        flaky_test_max_retries=_int_at_least("edge_cases", data, "flaky_test_max_retries", 3, minimum=0),
        flaky_test_backoff_seconds=_int_at_least("edge_cases", data, "flaky_test_backoff_seconds", 30, minimum=0),
        delayed_review_wait_minutes=_int_at_least("edge_cases", data, "delayed_review_wait_minutes", 120),
        delayed_review_check_interval_minutes=_int_at_least(
            "edge_cases", data, "delayed_review_check_interval_minutes", 5
        ),
        service_downtime_wait_minutes=_int_at_least("edge_cases", data, "service_downtime_wait_minutes", 30),
        service_downtime_check_interval_minutes=_int_at_least(
            "edge_cases", data, "service_downtime_check_interval_minutes", 2
        ),
        review_ping_pong_threshold=_int_at_least("edge_cases", data, "review_ping_pong_threshold", 5),
        context_overflow_threshold=_int_at_least("edge_cases", data, "context_overflow_threshold", 100_000),
        rate_limit_initial_backoff_seconds=initial,
        rate_limit_max_backoff_seconds=maximum,
        timeout_max_retries=_int_at_least("edge_cases", data, "timeout_max_retries", 2, minimum=0),
        timeout_backoff_seconds=_int_at_least("edge_cases", data, "timeout_backoff_seconds", 60, minimum=0),
        network_auto_retry=_bool("edge_cases", data, "network_auto_retry", True),
        network_max_retries=_int_at_least("edge_cases", data, "network_max_retries", 5, minimum=0),
        network_backoff_seconds=_int_at_least("edge_cases", data, "network_backoff_seconds", 10, minimum=0),
    )


def load_config(config_path: Optional[str] = None) -> EpicSwarmConfig:
    """
    Load configuration from config.yaml.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for config.yaml in current directory.

    Returns:
        EpicSwarmConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    if config_path is None:
        config_path = "config.yaml"

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if not raw_data:
        raise ConfigError("Configuration file is empty")
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    data = _resolve_env_vars(raw_data)

    return EpicSwarmConfig(
        repo_root=data.get("repo_root", "."),
        swarm_dir=data.get("swarm_dir", ".epic-swarm"),
        discovery=_parse_discovery_config(_section(data, "discovery")),
        evaluation=_parse_evaluation_config(_section(data, "evaluation")),
        pr_workflow=_parse_pr_workflow_config(_section(data, "pr_workflow")),
        edge_cases=_parse_edge_case_config(_section(data, "edge_cases")),
    )


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> EpicSwarmConfig:
    """
    Get the cached configuration, loading it if necessary.

    Args:
        config_path: Optional path to config file.
        force_reload: If True, reload configuration even if cached.

    Returns:
        EpicSwarmConfig: The loaded configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
