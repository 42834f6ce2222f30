"""Tests for the PR workflow state machine."""
from datetime import timedelta

import pytest

from epic_swarm.config import MergeMethod, PrWorkflowConfig
from epic_swarm.evaluation.models import CiAggregateStatus, CiCheckResult, CiStatus, ReviewVerdict
from epic_swarm.pr_workflow import (
    ConflictInfo,
    ConflictResolutionStrategy,
    PrDescription,
    PrWorkflowActionKind,
    PrWorkflowContext,
    PrWorkflowManager,
    PrWorkflowRecord,
    PrWorkflowState,
)


PASSED = [CiCheckResult("build", CiStatus.PASSED), CiCheckResult("test", CiStatus.PASSED)]
FAILED = [CiCheckResult("build", CiStatus.PASSED), CiCheckResult("test", CiStatus.FAILED)]
RUNNING = [CiCheckResult("build", CiStatus.PASSED), CiCheckResult("test", CiStatus.RUNNING)]


@pytest.fixture
def manager():
    return PrWorkflowManager()


@pytest.fixture
def context(manager, now):
    return manager.new_context(
        pr_number=42,
        story_id="epic-1/story-2",
        agent_id="agent-1",
        head_branch="story/epic-1-story-2",
        now=now,
    )


def at_state(context, state, now):
    context.transition(state, "test setup", now=now)
    return context


# =============================================================================
# Context
# =============================================================================


class TestContext:

    def test_new_context_starts_creating(self, context, now):
        assert context.state is PrWorkflowState.CREATING
        assert context.merge_method is MergeMethod.SQUASH
        assert context.created_at == now
        assert len(context.state_history) == 1
        first = context.state_history[0]
        assert first.from_state is None
        assert first.to_state is PrWorkflowState.CREATING
        assert first.reason == "PR created"

    def test_manager_merge_method_applies(self, now):
        manager = PrWorkflowManager(PrWorkflowConfig(merge_method=MergeMethod.REBASE))
        ctx = manager.new_context(1, "e/s", "a", "b", now=now)
        assert ctx.merge_method is MergeMethod.REBASE

    def test_terminal_transition_sets_completed_at(self, context, now):
        later = now + timedelta(minutes=30)
        context.transition(PrWorkflowState.FAILED, "gave up", now=later)

        assert context.completed_at == later
        assert context.duration() == timedelta(minutes=30)

    @pytest.mark.parametrize("terminal", [PrWorkflowState.COMPLETED, PrWorkflowState.FAILED])
    def test_terminal_state_rejects_transitions(self, context, now, terminal):
        assert context.transition(terminal, "done", now=now) is True
        history = list(context.state_history)

        moved = context.transition(PrWorkflowState.AWAITING_CI, "reopen", now=now + timedelta(hours=1))

        assert moved is False
        assert context.state is terminal
        assert context.state_history == history
        assert context.completed_at == now
        assert context.updated_at == now

    def test_entered_state_at_uses_latest_entry(self, context, now):
        at_state(context, PrWorkflowState.AWAITING_REVIEW, now)
        at_state(context, PrWorkflowState.FIXING_REVIEW, now + timedelta(hours=1))
        at_state(context, PrWorkflowState.AWAITING_REVIEW, now + timedelta(hours=2))

        assert context.entered_state_at(PrWorkflowState.AWAITING_REVIEW) == now + timedelta(hours=2)
        assert context.entered_state_at(PrWorkflowState.MERGING) is None

    def test_dict_form_restores(self, context, now):
        context.update_ci_status(FAILED, now=now)
        context.update_review(ReviewVerdict.CHANGES_REQUESTED, 2, now=now)
        at_state(context, PrWorkflowState.FIXING_CI, now)

        restored = PrWorkflowContext.from_dict(context.to_dict())

        assert restored.to_dict() == context.to_dict()
        assert restored.state_history == context.state_history

    def test_record(self, context, now):
        context.update_ci_status(PASSED, now=now)
        context.update_review(ReviewVerdict.APPROVED, 1, now=now)

        record = PrWorkflowRecord.from_context(context)

        assert record.ci_passed is True
        assert record.review_approved is True
        assert record.to_dict()["state"] == "creating"
        assert record.to_dict()["merge_method"] == "squash"


# =============================================================================
# Transitions
# =============================================================================


class TestDetermineNextState:

    def test_creating_moves_to_awaiting_ci(self, manager, context):
        assert manager.determine_next_state(context) is PrWorkflowState.AWAITING_CI

    @pytest.mark.parametrize("checks,expected", [
        (None, None),
        (RUNNING, None),
        (FAILED, PrWorkflowState.FIXING_CI),
        (PASSED, PrWorkflowState.AWAITING_REVIEW),
    ])
    def test_awaiting_ci(self, manager, context, now, checks, expected):
        at_state(context, PrWorkflowState.AWAITING_CI, now)
        if checks is not None:
            context.update_ci_status(checks, now=now)

        assert manager.determine_next_state(context) is expected

    def test_timed_out_check_counts_as_failure(self, manager, context, now):
        at_state(context, PrWorkflowState.AWAITING_CI, now)
        context.update_ci_status([CiCheckResult("test", CiStatus.TIMEOUT)], now=now)

        assert manager.determine_next_state(context) is PrWorkflowState.FIXING_CI

    def test_passed_ci_skips_review_when_not_required(self, context, now):
        manager = PrWorkflowManager(PrWorkflowConfig(require_review_approval=False))
        at_state(context, PrWorkflowState.AWAITING_CI, now)
        context.update_ci_status(PASSED, now=now)

        assert manager.determine_next_state(context) is PrWorkflowState.READY_TO_MERGE

    @pytest.mark.parametrize("verdict,conflicts,expected", [
        (ReviewVerdict.APPROVED, False, PrWorkflowState.READY_TO_MERGE),
        (ReviewVerdict.APPROVED, True, PrWorkflowState.RESOLVING_CONFLICTS),
        (ReviewVerdict.CHANGES_REQUESTED, False, PrWorkflowState.FIXING_REVIEW),
        (ReviewVerdict.NEEDS_DISCUSSION, False, None),
        (None, False, None),
    ])
    def test_awaiting_review(self, manager, context, now, verdict, conflicts, expected):
        at_state(context, PrWorkflowState.AWAITING_REVIEW, now)
        if verdict is not None:
            context.update_review(verdict, 1, now=now)
        context.set_has_conflicts(conflicts, now=now)

        assert manager.determine_next_state(context) is expected

    def test_fixing_ci_waits_for_green(self, manager, context, now):
        at_state(context, PrWorkflowState.FIXING_CI, now)
        context.update_ci_status(FAILED, now=now)
        assert manager.determine_next_state(context) is None

        context.update_ci_status(PASSED, now=now)
        assert manager.determine_next_state(context) is PrWorkflowState.AWAITING_REVIEW

    def test_fixing_ci_with_prior_approval_checks_conflicts(self, manager, context, now):
        at_state(context, PrWorkflowState.FIXING_CI, now)
        context.update_ci_status(PASSED, now=now)
        context.update_review(ReviewVerdict.APPROVED, 1, now=now)
        context.set_has_conflicts(True, now=now)

        assert manager.determine_next_state(context) is PrWorkflowState.RESOLVING_CONFLICTS

    def test_fixing_review(self, manager, context, now):
        at_state(context, PrWorkflowState.FIXING_REVIEW, now)
        assert manager.determine_next_state(context) is None

        context.update_review(ReviewVerdict.APPROVED, 2, now=now)
        context.update_ci_status(RUNNING, now=now)
        assert manager.determine_next_state(context) is PrWorkflowState.AWAITING_CI

        context.update_ci_status(PASSED, now=now)
        assert manager.determine_next_state(context) is PrWorkflowState.READY_TO_MERGE

    def test_resolving_conflicts(self, manager, context, now):
        at_state(context, PrWorkflowState.RESOLVING_CONFLICTS, now)
        context.set_has_conflicts(True, now=now)
        assert manager.determine_next_state(context) is None

        context.set_has_conflicts(False, now=now)
        assert manager.determine_next_state(context) is PrWorkflowState.READY_TO_MERGE

    def test_ready_to_merge_respects_auto_merge(self, context, now):
        at_state(context, PrWorkflowState.READY_TO_MERGE, now)

        assert PrWorkflowManager().determine_next_state(context) is PrWorkflowState.MERGING
        manual = PrWorkflowManager(PrWorkflowConfig(auto_merge=False))
        assert manual.determine_next_state(context) is None

    def test_merging_without_cleanup_completes(self, context, now):
        manager = PrWorkflowManager(PrWorkflowConfig(cleanup_worktree=False, delete_branch_after_merge=False))
        at_state(context, PrWorkflowState.MERGING, now)

        assert manager.determine_next_state(context) is PrWorkflowState.COMPLETED

    @pytest.mark.parametrize("state", [PrWorkflowState.COMPLETED, PrWorkflowState.FAILED])
    def test_terminal_states_stay_put(self, manager, context, now, state):
        at_state(context, state, now)
        assert manager.determine_next_state(context) is None


class TestAdvance:

    def test_happy_path(self, manager, context, now, mock_logger):
        manager.logger = mock_logger
        context.update_ci_status(PASSED, now=now)
        context.update_review(ReviewVerdict.APPROVED, 1, now=now)

        states = []
        while True:
            state = manager.advance(context, now=now)
            if state is None:
                break
            states.append(state)

        assert states == [
            PrWorkflowState.AWAITING_CI,
            PrWorkflowState.AWAITING_REVIEW,
            PrWorkflowState.READY_TO_MERGE,
            PrWorkflowState.MERGING,
            PrWorkflowState.CLEANING_UP,
            PrWorkflowState.COMPLETED,
        ]
        assert context.completed_at == now
        first_log = mock_logger.log.call_args_list[0]
        assert first_log[0][0] == "pr_state_changed"
        assert first_log[0][1]["component"] == "pr_workflow"

    def test_history_is_a_chain(self, manager, context, now):
        context.update_ci_status(FAILED, now=now)
        manager.advance(context, now=now)
        manager.advance(context, now=now)

        history = context.state_history
        for prev, entry in zip(history, history[1:]):
            assert entry.from_state is prev.to_state
        assert history[-1].reason == "CI checks failed: test"

    def test_review_changes_reason_mentions_iteration(self, manager, context, now):
        at_state(context, PrWorkflowState.AWAITING_REVIEW, now)
        context.update_review(ReviewVerdict.CHANGES_REQUESTED, 2, now=now)

        manager.advance(context, now=now)

        assert context.state_history[-1].reason == "Review requested changes (iteration 2)"

    def test_conflict_attempts_are_counted(self, manager, context, now):
        at_state(context, PrWorkflowState.AWAITING_REVIEW, now)
        context.update_review(ReviewVerdict.APPROVED, 1, now=now)
        context.set_has_conflicts(True, now=now)

        assert manager.advance(context, now=now) is PrWorkflowState.RESOLVING_CONFLICTS
        assert context.conflict_resolution_attempts == 1

    def test_conflict_attempt_limit_fails_workflow(self, manager, context, now):
        at_state(context, PrWorkflowState.AWAITING_REVIEW, now)
        context.update_review(ReviewVerdict.APPROVED, 1, now=now)
        context.set_has_conflicts(True, now=now)
        context.conflict_resolution_attempts = 3

        assert manager.advance(context, now=now) is PrWorkflowState.FAILED
        assert context.state is PrWorkflowState.FAILED
        assert context.state_history[-1].reason == "Exceeded 3 conflict resolution attempts"

    def test_nothing_to_do(self, manager, context, now):
        at_state(context, PrWorkflowState.AWAITING_CI, now)
        history = list(context.state_history)

        assert manager.advance(context, now=now) is None
        assert context.state_history == history

    def test_fail(self, manager, context, now, mock_logger):
        manager.logger = mock_logger

        assert manager.fail(context, "branch deleted", now=now) is True
        assert context.state is PrWorkflowState.FAILED
        assert mock_logger.log.call_args[1]["level"] == "warn"

        assert manager.fail(context, "again", now=now) is False


# =============================================================================
# Queries
# =============================================================================


class TestQueries:

    def test_is_ready_to_merge(self, manager, context, now):
        assert not manager.is_ready_to_merge(context)

        context.update_ci_status(PASSED, now=now)
        context.update_review(ReviewVerdict.APPROVED, 1, now=now)
        assert manager.is_ready_to_merge(context)

        context.set_has_conflicts(True, now=now)
        assert not manager.is_ready_to_merge(context)

    def test_ci_timeout(self, manager, context, now):
        context.update_ci_status(RUNNING, now=now)

        assert not manager.is_ci_timed_out(context, now=now + timedelta(minutes=10))
        assert manager.is_ci_timed_out(context, now=now + timedelta(minutes=31))

    def test_finished_ci_never_times_out(self, manager, context, now):
        context.update_ci_status(PASSED, now=now)
        assert not manager.is_ci_timed_out(context, now=now + timedelta(days=1))

    def test_review_timeout(self, manager, context, now):
        at_state(context, PrWorkflowState.AWAITING_REVIEW, now)

        assert not manager.is_review_timed_out(context, now=now + timedelta(hours=23))
        assert manager.is_review_timed_out(context, now=now + timedelta(hours=25))

    def test_review_timeout_only_while_awaiting_review(self, manager, context, now):
        assert not manager.is_review_timed_out(context, now=now + timedelta(days=7))


class TestNeededAction:

    def test_fix_ci_lists_failed_checks(self, manager, context, now):
        context.update_ci_status(
            [CiCheckResult("test", CiStatus.FAILED), CiCheckResult("lint", CiStatus.TIMEOUT)],
            now=now,
        )
        at_state(context, PrWorkflowState.FIXING_CI, now)

        action = manager.get_needed_action(context)

        assert action.kind is PrWorkflowActionKind.FIX_CI_FAILURES
        assert action.failed_checks == ["test", "lint"]
        assert action.description == "Fix CI failures: test, lint"

    @pytest.mark.parametrize("state,kind", [
        (PrWorkflowState.AWAITING_CI, PrWorkflowActionKind.WAIT_FOR_CI),
        (PrWorkflowState.AWAITING_REVIEW, PrWorkflowActionKind.WAIT_FOR_REVIEW),
        (PrWorkflowState.FIXING_REVIEW, PrWorkflowActionKind.ADDRESS_REVIEW_FEEDBACK),
        (PrWorkflowState.RESOLVING_CONFLICTS, PrWorkflowActionKind.RESOLVE_CONFLICTS),
        (PrWorkflowState.READY_TO_MERGE, PrWorkflowActionKind.MERGE),
        (PrWorkflowState.MERGING, PrWorkflowActionKind.EXECUTE_MERGE),
        (PrWorkflowState.CLEANING_UP, PrWorkflowActionKind.CLEANUP),
    ])
    def test_state_actions(self, manager, context, now, state, kind):
        at_state(context, state, now)
        assert manager.get_needed_action(context).kind is kind

    @pytest.mark.parametrize("state", [
        PrWorkflowState.CREATING,
        PrWorkflowState.COMPLETED,
        PrWorkflowState.FAILED,
    ])
    def test_no_action(self, manager, context, now, state):
        if state is not PrWorkflowState.CREATING:
            at_state(context, state, now)
        assert manager.get_needed_action(context) is None

    def test_fixing_ci_without_failures_has_no_action(self, manager, context, now):
        at_state(context, PrWorkflowState.FIXING_CI, now)
        assert manager.get_needed_action(context) is None


# =============================================================================
# Descriptions and conflicts
# =============================================================================


class TestDescriptions:

    def test_markdown_sections(self):
        description = PrDescription(
            title="Session persistence",
            summary="Persist agent sessions.",
            stories=["epic-1/story-2"],
            test_plan=["Restart and resume"],
            files_changed=["src/sessions.py"],
        )

        body = description.to_markdown()

        assert body.startswith("## Summary\n\nPersist agent sessions.")
        assert "## Stories Implemented\n- epic-1/story-2" in body
        assert "## Test Plan\n- [ ] Restart and resume" in body
        assert "- `src/sessions.py`" in body
        assert "Breaking Changes" not in body

    def test_squash_message(self, manager, context):
        description = PrDescription(title="Session persistence", summary="Persist sessions.", stories=["s2"])

        message = manager.generate_squash_message(context, description)

        assert message == "Session persistence\n\nPersist sessions.\n\nStories:\n- s2\n\nPR: #42"

    def test_squash_message_prefers_url(self, manager, context):
        context.url = "https://example.test/pr/42"
        message = manager.generate_squash_message(context, PrDescription(title="T", summary="S"))
        assert message.endswith("PR: https://example.test/pr/42")


class TestConflictInfo:

    def test_mark_resolved(self, now):
        info = ConflictInfo(conflicting_files=["a.py"], detected_at=now)
        assert not info.is_resolved

        info.mark_resolved(ConflictResolutionStrategy.REBASE, now=now)

        assert info.is_resolved
        assert info.to_dict()["strategy"] == "rebase"


class TestCiAggregate:

    def test_counts(self, now):
        status = CiAggregateStatus.from_checks(
            [
                CiCheckResult("a", CiStatus.PASSED),
                CiCheckResult("b", CiStatus.RUNNING),
                CiCheckResult("c", CiStatus.PENDING),
            ],
            now=now,
        )

        assert (status.total, status.passed, status.running, status.pending) == (3, 1, 1, 1)
        assert status.is_still_running()
        assert not status.has_failures()
