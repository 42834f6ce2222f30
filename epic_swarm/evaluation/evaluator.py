"""
Completion evaluator.

Decides whether an agent's work on a story is actually done, using the
agent's own status signal, acceptance criteria checks, CI results, the code
review and the pull request's merge status.

evaluate() is a pure function of its arguments: it reads no clock and does
no I/O, so identical inputs always serialize to identical results.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from epic_swarm.config import EvaluationConfig
from epic_swarm.evaluation.models import (
    CiCheckResult,
    CiStatus,
    CriterionCheck,
    FeedbackItem,
    FeedbackType,
    PrMergeStatus,
    ReviewResult,
    ReviewVerdict,
    WorkCompletionStatus,
    WorkEvaluationResult,
    aggregate_ci_status,
)
from epic_swarm.evaluation.review_parser import ReviewParser, TextReviewParser
from epic_swarm.models import AgentStatus

if TYPE_CHECKING:
    from epic_swarm.logger import EventLogger


BUILD_CHECK_NAMES = ("build", "compile")
LINT_CHECK_NAMES = ("lint", "clippy", "eslint", "fmt", "format")
TEST_CHECK_NAMES = ("test", "tests", "pytest", "cargo-test")

PRIORITY_BLOCKER = 50
PRIORITY_MISSING_CRITERION = 80
PRIORITY_REVIEW_ISSUE = 85
PRIORITY_CI_FAILURE = 90
PRIORITY_MERGE_CONFLICT = 95


def extract_ci_status(checks: list[CiCheckResult], names: tuple[str, ...]) -> CiStatus:
    """Status of the first check whose lowercase name contains any of names."""
    for check in checks:
        check_name = check.name.lower()
        if any(name in check_name for name in names):
            return check.status
    return CiStatus.PENDING


class WorkEvaluator:
    """
    Evaluates whether a story's work is complete.

    Decision order (first match wins):
    1. agent blocked -> BLOCKED; agent error -> FAILED
    2. a required CI category failed -> NEEDS_CI_FIXES
    3. review with blocking issues or changes requested -> NEEDS_REVIEW_FIXES;
       other non-approved review -> NEEDS_REVIEW
    4. no review yet, CI passed and agent complete -> NEEDS_REVIEW
    5. PR conflicts -> BLOCKED; PR blocked -> NEEDS_PR_APPROVAL;
       PR mergeable with CI passed -> READY_TO_MERGE
    6. agent complete with all criteria met and CI not failing -> COMPLETE
    7. otherwise IN_PROGRESS
    """

    def __init__(
        self,
        config: Optional[EvaluationConfig] = None,
        review_parser: Optional[ReviewParser] = None,
        logger: Optional[EventLogger] = None,
    ) -> None:
        self.config = config or EvaluationConfig()
        self.review_parser = review_parser or TextReviewParser()
        self._logger = logger

    def _log(self, event_type: str, data: dict[str, Any], level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def parse_review_output(self, output: str) -> ReviewResult:
        return self.review_parser.parse(output)

    def evaluate(
        self,
        agent_status: Optional[AgentStatus] = None,
        criteria_checks: Optional[list[CriterionCheck]] = None,
        ci_checks: Optional[list[CiCheckResult]] = None,
        review_result: Optional[ReviewResult] = None,
        pr_status: Optional[PrMergeStatus] = None,
        evaluated_at: Optional[datetime] = None,
        story_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> WorkEvaluationResult:
        """
        Evaluate work completion from the available signals.

        Args:
            agent_status: Status the agent reported, if any.
            criteria_checks: Acceptance criteria checks.
            ci_checks: CI check results.
            review_result: Code review, if one exists yet.
            pr_status: PR merge status, if a PR exists.
            evaluated_at: Timestamp recorded on the result.
            story_id: Story being evaluated.
            agent_id: Agent being evaluated.

        Returns:
            WorkEvaluationResult with status and prioritized feedback.
        """
        criteria = list(criteria_checks or [])
        checks = list(ci_checks or [])

        build_status = extract_ci_status(checks, BUILD_CHECK_NAMES)
        lint_status = extract_ci_status(checks, LINT_CHECK_NAMES)
        test_status = extract_ci_status(checks, TEST_CHECK_NAMES)
        ci_status = aggregate_ci_status(checks)

        status = self._determine_status(
            agent_status,
            criteria,
            ci_status,
            (build_status, lint_status, test_status),
            review_result,
            pr_status,
        )
        feedback, feedback_items = self._generate_feedback(
            status, criteria, checks, review_result, pr_status
        )

        self._log("work_evaluated", {
            "story_id": story_id,
            "agent_id": agent_id,
            "status": status.value,
            "ci_status": ci_status.value,
        }, level="debug")

        return WorkEvaluationResult(
            status=status,
            agent_status=agent_status,
            criteria_checks=criteria,
            ci_checks=checks,
            review_result=review_result,
            pr_status=pr_status,
            ci_status=ci_status,
            build_status=build_status,
            lint_status=lint_status,
            test_status=test_status,
            feedback=feedback,
            feedback_items=feedback_items,
            evaluated_at=evaluated_at,
            story_id=story_id,
            agent_id=agent_id,
        )

    def _criterion_met(self, check: CriterionCheck) -> bool:
        return check.is_met and check.confidence >= self.config.min_criterion_confidence

    def _determine_status(
        self,
        agent_status: Optional[AgentStatus],
        criteria: list[CriterionCheck],
        ci_status: CiStatus,
        category_statuses: tuple[CiStatus, CiStatus, CiStatus],
        review: Optional[ReviewResult],
        pr_status: Optional[PrMergeStatus],
    ) -> WorkCompletionStatus:
        if agent_status is AgentStatus.BLOCKED:
            return WorkCompletionStatus.BLOCKED
        if agent_status is AgentStatus.ERROR:
            return WorkCompletionStatus.FAILED

        if self.config.require_ci_pass:
            if any(status is CiStatus.FAILED for status in category_statuses):
                return WorkCompletionStatus.NEEDS_CI_FIXES

        if self.config.require_review_approval:
            if review is not None:
                if review.has_blocking_issues():
                    return WorkCompletionStatus.NEEDS_REVIEW_FIXES
                if review.verdict is ReviewVerdict.CHANGES_REQUESTED:
                    return WorkCompletionStatus.NEEDS_REVIEW_FIXES
                if not review.verdict.is_passing:
                    return WorkCompletionStatus.NEEDS_REVIEW
            elif agent_status is AgentStatus.COMPLETE and ci_status is CiStatus.PASSED:
                return WorkCompletionStatus.NEEDS_REVIEW

        if pr_status is PrMergeStatus.CONFLICTS:
            return WorkCompletionStatus.BLOCKED
        if pr_status is PrMergeStatus.BLOCKED:
            return WorkCompletionStatus.NEEDS_PR_APPROVAL
        if pr_status is PrMergeStatus.MERGEABLE and ci_status is CiStatus.PASSED:
            return WorkCompletionStatus.READY_TO_MERGE

        if agent_status is AgentStatus.COMPLETE:
            ci_settling = ci_status in (CiStatus.PASSED, CiStatus.PENDING, CiStatus.RUNNING)
            ci_ok = not self.config.require_ci_pass or ci_settling
            all_met = bool(criteria) and all(self._criterion_met(c) for c in criteria)

            if all_met and ci_ok:
                if review is None and self.config.require_review_approval:
                    return WorkCompletionStatus.NEEDS_REVIEW
                return WorkCompletionStatus.COMPLETE
            if self.config.require_ci_pass and not ci_settling:
                return WorkCompletionStatus.NEEDS_CI_FIXES

        return WorkCompletionStatus.IN_PROGRESS

    def _generate_feedback(
        self,
        status: WorkCompletionStatus,
        criteria: list[CriterionCheck],
        checks: list[CiCheckResult],
        review: Optional[ReviewResult],
        pr_status: Optional[PrMergeStatus],
    ) -> tuple[str, list[FeedbackItem]]:
        items: list[FeedbackItem] = []
        messages: list[str] = []

        if status.is_complete:
            messages.append("Work is complete and ready.")
        elif status is WorkCompletionStatus.IN_PROGRESS:
            messages.append("Work is still in progress.")
        elif status is WorkCompletionStatus.BLOCKED:
            messages.append("Work is blocked and needs intervention.")
            items.append(FeedbackItem(FeedbackType.BLOCKER, "Agent is blocked", PRIORITY_BLOCKER))
        elif status is WorkCompletionStatus.FAILED:
            messages.append("Work has failed.")
            items.append(FeedbackItem(FeedbackType.BLOCKER, "Agent reported error", PRIORITY_BLOCKER))

        for check in criteria:
            if self._criterion_met(check):
                continue
            message = f"Criterion not met: {check.criterion}"
            messages.append(message)
            items.append(FeedbackItem(
                FeedbackType.MISSING_CRITERION,
                message,
                PRIORITY_MISSING_CRITERION,
                action=f"Implement: {check.criterion}",
            ))

        for check in checks:
            if check.status is not CiStatus.FAILED:
                continue
            if check.failure_details:
                message = f"{check.name} failed: {check.failure_details}"
            else:
                message = f"{check.name} failed"
            messages.append(message)
            items.append(FeedbackItem(
                self._ci_feedback_type(check.name),
                message,
                PRIORITY_CI_FAILURE,
                action=f"Fix {check.name} failures",
            ))

        if review is not None:
            for issue in review.blocking_issues():
                message = f"[{issue.severity.value.upper()}] {issue.description}"
                messages.append(message)
                items.append(FeedbackItem(
                    FeedbackType.REVIEW_ISSUE,
                    message,
                    PRIORITY_REVIEW_ISSUE,
                    action=issue.suggestion,
                ))
            if review.verdict is ReviewVerdict.CHANGES_REQUESTED:
                messages.append("Code review requested changes.")

        if pr_status is PrMergeStatus.CONFLICTS:
            message = "PR has merge conflicts that need resolution."
            messages.append(message)
            items.append(FeedbackItem(
                FeedbackType.MERGE_CONFLICT,
                message,
                PRIORITY_MERGE_CONFLICT,
                action="Resolve merge conflicts",
            ))

        # sorted() is stable, so equal priorities keep insertion order
        items = sorted(items, key=lambda item: item.priority, reverse=True)
        feedback = "\n".join(messages) if messages else "No feedback available."
        return feedback, items

    @staticmethod
    def _ci_feedback_type(check_name: str) -> FeedbackType:
        name = check_name.lower()
        if "test" in name:
            return FeedbackType.TEST_FAILURE
        if "build" in name:
            return FeedbackType.BUILD_FAILURE
        if "lint" in name:
            return FeedbackType.LINT_ISSUE
        return FeedbackType.BUILD_FAILURE
