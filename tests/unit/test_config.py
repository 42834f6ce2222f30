"""Tests for configuration loading in epic_swarm.config.

Verifies that:
- Every section has working defaults
- YAML values override defaults and ${VAR} is substituted
- Invalid files and out-of-range values raise ConfigError
- get_config caches until cleared or force-reloaded
"""
import textwrap
from pathlib import Path

import pytest

from epic_swarm.config import (
    ConfigError,
    DiscoveryConfig,
    EdgeCaseConfig,
    EpicSwarmConfig,
    EvaluationConfig,
    MergeMethod,
    PrWorkflowConfig,
    clear_config_cache,
    get_config,
    load_config,
)


def write_config(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(body))
    return path


class TestDefaults:
    """Tests for default values of each section."""

    def test_edge_case_defaults(self):
        config = EdgeCaseConfig()
        assert config.flaky_test_max_retries == 3
        assert config.flaky_test_backoff_seconds == 30
        assert config.delayed_review_wait_minutes == 120
        assert config.delayed_review_check_interval_minutes == 5
        assert config.review_ping_pong_threshold == 5
        assert config.context_overflow_threshold == 100_000
        assert config.rate_limit_initial_backoff_seconds == 60
        assert config.rate_limit_max_backoff_seconds == 1800
        assert config.network_auto_retry is True
        assert config.network_max_retries == 5

    def test_pr_workflow_defaults(self):
        config = PrWorkflowConfig()
        assert config.merge_method is MergeMethod.SQUASH
        assert config.ci_timeout_seconds == 1800
        assert config.human_review_timeout_seconds == 86400
        assert config.max_conflict_resolution_attempts == 3

    def test_evaluation_defaults(self):
        config = EvaluationConfig()
        assert config.require_ci_pass is True
        assert config.require_review_approval is True

    def test_paths_are_absolute(self, tmp_path):
        config = EpicSwarmConfig(repo_root=str(tmp_path))
        assert config.epics_path == tmp_path / "docs/bmad/epics"
        assert config.logs_path == tmp_path / ".epic-swarm" / "logs"

    def test_relative_repo_root_becomes_absolute(self):
        assert Path(EpicSwarmConfig(repo_root=".").repo_root).is_absolute()


class TestLoadConfig:
    """Tests for load_config()."""

    def test_minimal_file_uses_defaults(self, tmp_path):
        path = write_config(tmp_path, f"repo_root: {tmp_path}\n")

        config = load_config(str(path))

        assert config.repo_root == str(tmp_path)
        assert config.discovery == DiscoveryConfig()
        assert config.edge_cases == EdgeCaseConfig()

    def test_sections_override_defaults(self, tmp_path):
        path = write_config(tmp_path, """
            swarm_dir: .state
            discovery:
              epics_dir: epics
              skip_patterns: epic-000
            evaluation:
              require_review_approval: false
              min_criterion_confidence: 0.8
            pr_workflow:
              merge_method: REBASE
              auto_merge: false
            edge_cases:
              flaky_test_max_retries: 1
              rate_limit_max_backoff_seconds: 600
        """)

        config = load_config(str(path))

        assert config.swarm_dir == ".state"
        assert config.discovery.epics_dir == "epics"
        assert config.discovery.skip_patterns == ["epic-000"]
        assert config.evaluation.require_review_approval is False
        assert config.evaluation.min_criterion_confidence == 0.8
        assert config.pr_workflow.merge_method is MergeMethod.REBASE
        assert config.pr_workflow.auto_merge is False
        assert config.edge_cases.flaky_test_max_retries == 1
        assert config.edge_cases.rate_limit_max_backoff_seconds == 600

    def test_env_var_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("EPICS_DIR", "custom/epics")
        monkeypatch.setenv("FLAKY_RETRIES", "7")
        path = write_config(tmp_path, """
            discovery:
              epics_dir: ${EPICS_DIR}
            edge_cases:
              flaky_test_max_retries: ${FLAKY_RETRIES}
        """)

        config = load_config(str(path))

        assert config.discovery.epics_dir == "custom/epics"
        assert config.edge_cases.flaky_test_max_retries == 7

    def test_env_substituted_flags_are_parsed(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AUTO_MERGE", "false")
        monkeypatch.setenv("NETWORK_RETRY", "No")
        path = write_config(tmp_path, """
            evaluation:
              require_ci_pass: "false"
            pr_workflow:
              auto_merge: ${AUTO_MERGE}
              cleanup_worktree: "yes"
            edge_cases:
              network_auto_retry: ${NETWORK_RETRY}
        """)

        config = load_config(str(path))

        assert config.evaluation.require_ci_pass is False
        assert config.pr_workflow.auto_merge is False
        assert config.pr_workflow.cleanup_worktree is True
        assert config.edge_cases.network_auto_retry is False

    def test_unset_env_var_raises(self, tmp_path, monkeypatch):
        monkeypatch.delenv("EPIC_SWARM_MISSING", raising=False)
        path = write_config(tmp_path, "swarm_dir: ${EPIC_SWARM_MISSING}\n")

        with pytest.raises(ConfigError, match="EPIC_SWARM_MISSING"):
            load_config(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "nope.yaml"))

    def test_empty_file(self, tmp_path):
        path = write_config(tmp_path, "")
        with pytest.raises(ConfigError, match="empty"):
            load_config(str(path))

    def test_invalid_yaml(self, tmp_path):
        path = write_config(tmp_path, "discovery: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(str(path))

    def test_non_mapping_root(self, tmp_path):
        path = write_config(tmp_path, "- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(str(path))


class TestValidation:
    """Out-of-range and malformed values are rejected."""

    @pytest.mark.parametrize("body,fragment", [
        ("discovery:\n  id_pattern: 'epic-(('\n", "id_pattern"),
        ("evaluation:\n  min_criterion_confidence: 1.5\n", "min_criterion_confidence"),
        ("pr_workflow:\n  merge_method: fast-forward\n", "merge_method"),
        ("pr_workflow:\n  ci_timeout_seconds: 0\n", "ci_timeout_seconds"),
        ("edge_cases:\n  review_ping_pong_threshold: many\n", "review_ping_pong_threshold"),
        ("edge_cases: [1, 2]\n", "edge_cases"),
        ("pr_workflow:\n  auto_merge: maybe\n", "auto_merge"),
        ("evaluation:\n  require_review_approval: 2\n", "require_review_approval"),
    ])
    def test_rejected(self, tmp_path, body, fragment):
        path = write_config(tmp_path, body)
        with pytest.raises(ConfigError, match=fragment):
            load_config(str(path))

    def test_max_backoff_below_initial(self, tmp_path):
        path = write_config(tmp_path, """
            edge_cases:
              rate_limit_initial_backoff_seconds: 120
              rate_limit_max_backoff_seconds: 60
        """)
        with pytest.raises(ConfigError, match="rate_limit_max_backoff_seconds"):
            load_config(str(path))


class TestConfigCache:
    """Tests for get_config() caching."""

    def test_cached_until_cleared(self, tmp_path):
        path = write_config(tmp_path, "swarm_dir: first\n")
        first = get_config(str(path))

        write_config(tmp_path, "swarm_dir: second\n")
        assert get_config(str(path)) is first

        clear_config_cache()
        assert get_config(str(path)).swarm_dir == "second"

    def test_force_reload(self, tmp_path):
        path = write_config(tmp_path, "swarm_dir: first\n")
        get_config(str(path))

        write_config(tmp_path, "swarm_dir: second\n")

        assert get_config(str(path), force_reload=True).swarm_dir == "second"
