"""Tests for the epic-swarm CLI commands."""
import json
import textwrap

import pytest

from epic_swarm import __version__
from epic_swarm.cli.app import app
from epic_swarm.cli.common import get_config_path, set_config_path


EPIC = textwrap.dedent("""\
    # Epic 001: Sessions

    ### Story 1: Add table

    **Acceptance Criteria:**
    - [ ] Table exists

    ### Story 2: Persist
    Depends on: Story 1
""")

CYCLIC_EPIC = textwrap.dedent("""\
    # Epic 002: Loop

    ### Story 1: A
    Depends on: Story 2

    ### Story 2: B
    Depends on: Story 1
""")


@pytest.fixture(autouse=True)
def workdir(tmp_path, monkeypatch):
    """Run every command from an empty repo so logs and config stay in tmp."""
    monkeypatch.chdir(tmp_path)
    yield tmp_path
    set_config_path(None)


@pytest.fixture
def epics_dir(workdir):
    path = workdir / "epics"
    path.mkdir()
    (path / "epic-001-sessions.md").write_text(EPIC)
    return path


class TestMainCallback:

    def test_version(self, cli_runner):
        result = cli_runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert f"epic-swarm version {__version__}" in result.output

    def test_no_command_shows_help(self, cli_runner):
        result = cli_runner.invoke(app, [])

        assert result.exit_code == 0
        assert "plan" in result.output
        assert "classify" in result.output

    def test_explicit_config_must_load(self, cli_runner, workdir):
        result = cli_runner.invoke(app, ["--config", "missing.yaml", "classify", "boom"])

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_explicit_config_is_remembered(self, cli_runner, workdir):
        (workdir / "custom.yaml").write_text("swarm_dir: .state\n")

        result = cli_runner.invoke(app, ["--config", "custom.yaml", "classify", "boom"])

        assert result.exit_code == 0
        assert get_config_path() == "custom.yaml"


class TestPlanCommand:

    def test_table_output(self, cli_runner, epics_dir):
        result = cli_runner.invoke(app, ["plan", str(epics_dir)])

        assert result.exit_code == 0
        assert "Execution Plan" in result.output
        assert "Execution Plan: 1 epics, 2 stories, 1 dependencies" in result.output
        assert "10m" in result.output

    def test_json_output(self, cli_runner, epics_dir):
        result = cli_runner.invoke(app, ["plan", str(epics_dir), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["epics"] == ["epic-001"]
        assert [item["full_id"] for item in data["work_queue"]] == [
            "epic-001/story-1",
            "epic-001/story-2",
        ]
        assert data["estimated_minutes"] == 10

    def test_uses_configured_epics_dir(self, cli_runner, workdir, epics_dir):
        (workdir / "config.yaml").write_text("discovery:\n  epics_dir: epics\n")

        result = cli_runner.invoke(app, ["plan", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output)["total_stories"] == 2

    def test_pattern_filter(self, cli_runner, epics_dir):
        (epics_dir / "epic-002-loop.md").write_text(EPIC.replace("Epic 001", "Epic 002"))

        result = cli_runner.invoke(app, ["plan", str(epics_dir), "--pattern", "epic-002", "--json"])

        assert json.loads(result.output)["epics"] == ["epic-002"]

    def test_empty_plan(self, cli_runner, workdir):
        (workdir / "empty").mkdir()

        result = cli_runner.invoke(app, ["plan", "empty"])

        assert result.exit_code == 0
        assert "No stories found." in result.output

    def test_missing_directory(self, cli_runner):
        result = cli_runner.invoke(app, ["plan", "nowhere"])

        assert result.exit_code == 1
        assert "Epics directory not found" in result.output

    def test_cycle_is_an_error(self, cli_runner, epics_dir):
        (epics_dir / "epic-002-loop.md").write_text(CYCLIC_EPIC)

        result = cli_runner.invoke(app, ["plan", str(epics_dir)])

        assert result.exit_code == 1
        assert "Dependency cycle detected" in result.output

    def test_writes_jsonl_log(self, cli_runner, workdir, epics_dir):
        cli_runner.invoke(app, ["plan", str(epics_dir), "--json"])

        logs = list((workdir / ".epic-swarm" / "logs").glob("plan-*.jsonl"))
        assert len(logs) == 1
        entries = [json.loads(line) for line in logs[0].read_text().splitlines()]
        assert "execution_plan_created" in [e["event_type"] for e in entries]
        sessions = {e["session_id"] for e in entries}
        assert len(sessions) == 1
        assert sessions.pop().startswith("plan-")


class TestReviewCommand:

    def test_text_review(self, cli_runner, workdir):
        path = workdir / "review.txt"
        path.write_text("[CRITICAL] X\n[HIGH] Y\nVerdict: CHANGES_REQUESTED\n")

        result = cli_runner.invoke(app, ["review", str(path)])

        assert result.exit_code == 0
        assert "Verdict: Changes Requested" in result.output
        assert "2 blocking issue(s)" in result.output

    def test_clean_review(self, cli_runner, workdir):
        path = workdir / "review.txt"
        path.write_text("LGTM\n")

        result = cli_runner.invoke(app, ["review", str(path)])

        assert "Verdict: Approved" in result.output
        assert "No issues found." in result.output

    def test_json_review(self, cli_runner, workdir):
        path = workdir / "review.json"
        path.write_text(json.dumps({"verdict": "approved", "issues": [{"severity": "low", "description": "Typo"}]}))

        result = cli_runner.invoke(app, ["review", str(path), "--json"])

        assert result.exit_code == 0
        assert "Verdict: Approved" in result.output
        assert "Review Issues" in result.output
        assert "blocking" not in result.output

    def test_malformed_json_review(self, cli_runner, workdir):
        path = workdir / "review.json"
        path.write_text("not json")

        result = cli_runner.invoke(app, ["review", str(path), "--json"])

        assert result.exit_code == 1
        assert "Invalid review JSON" in result.output

    def test_missing_file(self, cli_runner):
        result = cli_runner.invoke(app, ["review", "nope.txt"])

        assert result.exit_code == 1
        assert "Review file not found" in result.output


class TestClassifyCommand:

    def test_classify_message(self, cli_runner):
        result = cli_runner.invoke(app, ["classify", "HTTP 429 Too Many Requests"])

        assert result.exit_code == 0
        assert "Type: rate_limit" in result.output
        assert "Default action: backoff(initial=60s, max=1800s)" in result.output

    def test_context_options(self, cli_runner):
        result = cli_runner.invoke(app, ["classify", "Test suite failed", "--retry-count", "1"])

        assert "Type: flaky_test" in result.output
        assert "retry(max=3, backoff=30s)" in result.output

    def test_unknown(self, cli_runner):
        result = cli_runner.invoke(app, ["classify", "Something odd"])

        assert "Type: unknown" in result.output
        assert "Default action: log" in result.output
