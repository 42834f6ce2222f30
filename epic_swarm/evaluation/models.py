"""
Signal and result types for the completion evaluator.

The evaluator consumes four kinds of signals about a story:

- acceptance criteria checks (CriterionCheck)
- CI check results (CiCheckResult, aggregated by CiAggregateStatus)
- a code review (ReviewResult made of ReviewIssue entries)
- the pull request's merge status (PrMergeStatus)

and produces a WorkEvaluationResult carrying a WorkCompletionStatus and
prioritized FeedbackItem entries for the agent's next turn.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from functools import total_ordering
from typing import Any, Optional

from epic_swarm.models import (
    AgentStatus,
    ParseableEnum,
    format_timestamp,
    parse_timestamp,
)


# =============================================================================
# Review
# =============================================================================


class ReviewVerdict(ParseableEnum):
    """Overall verdict of a code review."""
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    NEEDS_DISCUSSION = "needs_discussion"
    PENDING = "pending"

    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return _REVIEW_VERDICT_ALIASES

    @property
    def is_passing(self) -> bool:
        return self is ReviewVerdict.APPROVED


_REVIEW_VERDICT_ALIASES = {
    "approve": "approved",
    "lgtm": "approved",
    "request_changes": "changes_requested",
    "reject": "changes_requested",
    "discuss": "needs_discussion",
    "comment": "needs_discussion",
    "awaiting": "pending",
}


_SEVERITY_RANK = {
    "nitpick": 0,
    "low": 1,
    "medium": 2,
    "high": 3,
    "critical": 4,
}


@total_ordering
class ReviewIssueSeverity(ParseableEnum):
    """Severity of a review issue, ordered nitpick < low < medium < high < critical."""
    NITPICK = "nitpick"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return _SEVERITY_ALIASES

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self.value]

    @property
    def blocks_merge(self) -> bool:
        """High and critical issues must be fixed before merge."""
        return self.rank >= _SEVERITY_RANK["high"]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ReviewIssueSeverity):
            return NotImplemented
        return self.rank < other.rank


_SEVERITY_ALIASES = {
    "nit": "nitpick",
    "minor": "low",
    "moderate": "medium",
    "major": "high",
    "blocker": "critical",
}


@dataclass
class ReviewIssue:
    """A single issue raised in a code review."""
    severity: ReviewIssueSeverity
    description: str
    file_path: Optional[str] = None
    line_number: Optional[int] = None
    suggestion: Optional[str] = None
    category: Optional[str] = None

    @property
    def location(self) -> Optional[str]:
        if self.file_path is None:
            return None
        if self.line_number is None:
            return self.file_path
        return f"{self.file_path}:{self.line_number}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "description": self.description,
            "file_path": self.file_path,
            "line_number": self.line_number,
            "suggestion": self.suggestion,
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewIssue:
        line = data.get("line_number")
        return cls(
            severity=ReviewIssueSeverity.parse(data["severity"]),
            description=data.get("description", ""),
            file_path=data.get("file_path"),
            line_number=int(line) if line is not None else None,
            suggestion=data.get("suggestion"),
            category=data.get("category"),
        )


@dataclass
class ReviewResult:
    """Parsed outcome of a code review."""
    verdict: ReviewVerdict
    issues: list[ReviewIssue] = field(default_factory=list)
    reviewer: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    iteration: int = 1
    raw_output: Optional[str] = None

    def has_blocking_issues(self) -> bool:
        return any(issue.severity.blocks_merge for issue in self.issues)

    def blocking_issues(self) -> list[ReviewIssue]:
        return [issue for issue in self.issues if issue.severity.blocks_merge]

    def issues_by_severity(self, severity: ReviewIssueSeverity) -> list[ReviewIssue]:
        return [issue for issue in self.issues if issue.severity is severity]

    def issue_counts(self) -> dict[ReviewIssueSeverity, int]:
        counts: dict[ReviewIssueSeverity, int] = {}
        for issue in self.issues:
            counts[issue.severity] = counts.get(issue.severity, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "issues": [issue.to_dict() for issue in self.issues],
            "reviewer": self.reviewer,
            "reviewed_at": format_timestamp(self.reviewed_at),
            "iteration": self.iteration,
            "raw_output": self.raw_output,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewResult:
        return cls(
            verdict=ReviewVerdict.parse(data.get("verdict", "pending")),
            issues=[ReviewIssue.from_dict(i) for i in data.get("issues", [])],
            reviewer=data.get("reviewer"),
            reviewed_at=parse_timestamp(data.get("reviewed_at")),
            iteration=int(data.get("iteration", 1)),
            raw_output=data.get("raw_output"),
        )


# =============================================================================
# CI
# =============================================================================


class CiStatus(ParseableEnum):
    """Status of a CI check (or of CI as a whole)."""
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    PENDING = "pending"

    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return _CI_STATUS_ALIASES

    @property
    def is_passing(self) -> bool:
        return self is CiStatus.PASSED

    @property
    def is_terminal(self) -> bool:
        return self in (CiStatus.PASSED, CiStatus.FAILED, CiStatus.CANCELLED, CiStatus.TIMEOUT)

    @property
    def is_failure(self) -> bool:
        """Failed and timed-out checks both need fixing."""
        return self in (CiStatus.FAILED, CiStatus.TIMEOUT)


_CI_STATUS_ALIASES = {
    "in_progress": "running",
    "queued": "running",
    "success": "passed",
    "completed": "passed",
    "failure": "failed",
    "error": "failed",
    "canceled": "cancelled",
    "skipped": "cancelled",
    "timed_out": "timeout",
    "waiting": "pending",
}


@dataclass
class CiCheckResult:
    """Result of one CI check (e.g. "build", "test", "lint")."""
    name: str
    status: CiStatus
    url: Optional[str] = None
    failure_details: Optional[str] = None
    duration_secs: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "url": self.url,
            "failure_details": self.failure_details,
            "duration_secs": self.duration_secs,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CiCheckResult:
        return cls(
            name=data["name"],
            status=CiStatus.parse(data.get("status", "pending")),
            url=data.get("url"),
            failure_details=data.get("failure_details"),
            duration_secs=data.get("duration_secs"),
        )


def aggregate_ci_status(checks: list[CiCheckResult]) -> CiStatus:
    """
    Overall CI status for the evaluator.

    Any failed => failed; else any running => running; else all passed =>
    passed; else pending. No checks at all is pending.
    """
    if not checks:
        return CiStatus.PENDING
    if any(check.status is CiStatus.FAILED for check in checks):
        return CiStatus.FAILED
    if any(check.status is CiStatus.RUNNING for check in checks):
        return CiStatus.RUNNING
    if all(check.status.is_passing for check in checks):
        return CiStatus.PASSED
    return CiStatus.PENDING


@dataclass
class CiAggregateStatus:
    """
    Counted summary of CI checks, as tracked by the PR workflow.

    Unlike aggregate_ci_status, a timed-out check counts as a failure here.
    """
    total: int = 0
    running: int = 0
    passed: int = 0
    failed: int = 0
    pending: int = 0
    overall: CiStatus = CiStatus.PENDING
    failures: list[CiCheckResult] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    @classmethod
    def from_checks(cls, checks: list[CiCheckResult], now: Optional[datetime] = None) -> CiAggregateStatus:
        total = len(checks)
        running = sum(1 for c in checks if c.status is CiStatus.RUNNING)
        passed = sum(1 for c in checks if c.status is CiStatus.PASSED)
        failures = [c for c in checks if c.status.is_failure]
        pending = sum(1 for c in checks if c.status is CiStatus.PENDING)

        if failures:
            overall = CiStatus.FAILED
        elif running:
            overall = CiStatus.RUNNING
        elif total and passed == total:
            overall = CiStatus.PASSED
        else:
            overall = CiStatus.PENDING

        return cls(
            total=total,
            running=running,
            passed=passed,
            failed=len(failures),
            pending=pending,
            overall=overall,
            failures=list(failures),
            updated_at=now,
        )

    def is_all_passed(self) -> bool:
        return self.overall.is_passing

    def is_still_running(self) -> bool:
        return self.overall is CiStatus.RUNNING

    def has_failures(self) -> bool:
        return self.failed > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "running": self.running,
            "passed": self.passed,
            "failed": self.failed,
            "pending": self.pending,
            "overall": self.overall.value,
            "failures": [c.to_dict() for c in self.failures],
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CiAggregateStatus:
        return cls(
            total=int(data.get("total", 0)),
            running=int(data.get("running", 0)),
            passed=int(data.get("passed", 0)),
            failed=int(data.get("failed", 0)),
            pending=int(data.get("pending", 0)),
            overall=CiStatus.parse(data.get("overall", "pending")),
            failures=[CiCheckResult.from_dict(c) for c in data.get("failures", [])],
            updated_at=parse_timestamp(data.get("updated_at")),
        )


# =============================================================================
# PR / criteria
# =============================================================================


class PrMergeStatus(ParseableEnum):
    """Mergeability of a pull request as reported by the hosting service."""
    MERGEABLE = "mergeable"
    CONFLICTS = "conflicts"
    BLOCKED = "blocked"
    DRAFT = "draft"
    MERGED = "merged"
    CLOSED = "closed"
    UNKNOWN = "unknown"

    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return _PR_MERGE_STATUS_ALIASES

    @property
    def can_merge(self) -> bool:
        return self is PrMergeStatus.MERGEABLE


_PR_MERGE_STATUS_ALIASES = {
    "clean": "mergeable",
    "conflicting": "conflicts",
    "dirty": "conflicts",
    "behind": "blocked",
    "unstable": "unknown",
}


@dataclass
class CriterionCheck:
    """Whether one acceptance criterion is met. Confidence is clamped to [0, 1], NaN reads as 0."""
    criterion: str
    is_met: bool
    evidence: Optional[str] = None
    confidence: float = 1.0

    def __post_init__(self) -> None:
        confidence = float(self.confidence)
        if math.isnan(confidence):
            confidence = 0.0
        self.confidence = max(0.0, min(1.0, confidence))

    @classmethod
    def met(cls, criterion: str, evidence: Optional[str] = None, confidence: float = 1.0) -> CriterionCheck:
        return cls(criterion=criterion, is_met=True, evidence=evidence, confidence=confidence)

    @classmethod
    def unmet(cls, criterion: str, evidence: Optional[str] = None, confidence: float = 1.0) -> CriterionCheck:
        return cls(criterion=criterion, is_met=False, evidence=evidence, confidence=confidence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "criterion": self.criterion,
            "is_met": self.is_met,
            "evidence": self.evidence,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CriterionCheck:
        return cls(
            criterion=data["criterion"],
            is_met=bool(data.get("is_met", False)),
            evidence=data.get("evidence"),
            confidence=data.get("confidence", 1.0),
        )


# =============================================================================
# Results
# =============================================================================


class WorkCompletionStatus(ParseableEnum):
    """Evaluator verdict on a story."""
    COMPLETE = "complete"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"
    NEEDS_REVIEW_FIXES = "needs_review_fixes"
    NEEDS_CI_FIXES = "needs_ci_fixes"
    NEEDS_PR_APPROVAL = "needs_pr_approval"
    READY_TO_MERGE = "ready_to_merge"

    @property
    def is_complete(self) -> bool:
        return self in (WorkCompletionStatus.COMPLETE, WorkCompletionStatus.READY_TO_MERGE)

    @property
    def needs_action(self) -> bool:
        return self in (
            WorkCompletionStatus.NEEDS_REVIEW,
            WorkCompletionStatus.NEEDS_REVIEW_FIXES,
            WorkCompletionStatus.NEEDS_CI_FIXES,
            WorkCompletionStatus.NEEDS_PR_APPROVAL,
        )


class FeedbackType(ParseableEnum):
    """Kind of feedback handed back to the agent."""
    MISSING_CRITERION = "missing_criterion"
    TEST_FAILURE = "test_failure"
    BUILD_FAILURE = "build_failure"
    LINT_ISSUE = "lint_issue"
    REVIEW_ISSUE = "review_issue"
    MERGE_CONFLICT = "merge_conflict"
    SUGGESTION = "suggestion"
    BLOCKER = "blocker"


@dataclass
class FeedbackItem:
    """One piece of feedback. Higher priority is more important."""
    feedback_type: FeedbackType
    message: str
    priority: int = 50
    action: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "feedback_type": self.feedback_type.value,
            "message": self.message,
            "priority": self.priority,
            "action": self.action,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeedbackItem:
        return cls(
            feedback_type=FeedbackType.parse(data["feedback_type"]),
            message=data.get("message", ""),
            priority=int(data.get("priority", 50)),
            action=data.get("action"),
        )


@dataclass
class WorkEvaluationResult:
    """
    Everything the evaluator decided about a story, and why.

    Built only by WorkEvaluator.evaluate; all fields derive from its inputs.
    """
    status: WorkCompletionStatus
    agent_status: Optional[AgentStatus] = None
    criteria_checks: list[CriterionCheck] = field(default_factory=list)
    ci_checks: list[CiCheckResult] = field(default_factory=list)
    review_result: Optional[ReviewResult] = None
    pr_status: Optional[PrMergeStatus] = None
    ci_status: CiStatus = CiStatus.PENDING
    build_status: CiStatus = CiStatus.PENDING
    lint_status: CiStatus = CiStatus.PENDING
    test_status: CiStatus = CiStatus.PENDING
    feedback: Optional[str] = None
    feedback_items: list[FeedbackItem] = field(default_factory=list)
    evaluated_at: Optional[datetime] = None
    story_id: Optional[str] = None
    agent_id: Optional[str] = None

    def all_criteria_met(self) -> bool:
        return bool(self.criteria_checks) and all(c.is_met for c in self.criteria_checks)

    def criteria_met_percentage(self) -> float:
        if not self.criteria_checks:
            return 0.0
        met = sum(1 for c in self.criteria_checks if c.is_met)
        return met / len(self.criteria_checks) * 100.0

    def all_ci_passing(self) -> bool:
        """
        True when no category is failing and none is still running.

        A category with no matching check counts as passing.
        """
        categories = (self.build_status, self.lint_status, self.test_status)
        if any(status is CiStatus.RUNNING for status in categories):
            return False
        bad = (CiStatus.FAILED, CiStatus.TIMEOUT, CiStatus.CANCELLED)
        return not any(status in bad for status in categories)

    def review_approved(self) -> bool:
        if self.review_result is None:
            return False
        return self.review_result.verdict.is_passing and not self.review_result.has_blocking_issues()

    def pr_ready(self) -> bool:
        return self.pr_status is not None and self.pr_status.can_merge

    def is_blocked(self) -> bool:
        return self.agent_status is AgentStatus.BLOCKED

    def incomplete_summary(self) -> list[str]:
        """Human-readable list of what is still missing."""
        items: list[str] = []

        unmet = [c.criterion for c in self.criteria_checks if not c.is_met]
        if unmet:
            items.append(f"Unmet criteria: {', '.join(unmet)}")

        if not self.build_status.is_passing:
            items.append(f"Build: {self.build_status.value}")
        if not self.lint_status.is_passing:
            items.append(f"Lint: {self.lint_status.value}")
        if not self.test_status.is_passing:
            items.append(f"Tests: {self.test_status.value}")

        if self.review_result is not None:
            if not self.review_result.verdict.is_passing:
                items.append(f"Review: {self.review_result.verdict.value}")
            blocking = [i.description for i in self.review_result.blocking_issues()]
            if blocking:
                items.append(f"Blocking issues: {'; '.join(blocking)}")

        if self.pr_status is not None and not self.pr_status.can_merge:
            items.append(f"PR status: {self.pr_status.value}")

        return items

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "agent_status": self.agent_status.value if self.agent_status else None,
            "criteria_checks": [c.to_dict() for c in self.criteria_checks],
            "ci_checks": [c.to_dict() for c in self.ci_checks],
            "review_result": self.review_result.to_dict() if self.review_result else None,
            "pr_status": self.pr_status.value if self.pr_status else None,
            "ci_status": self.ci_status.value,
            "build_status": self.build_status.value,
            "lint_status": self.lint_status.value,
            "test_status": self.test_status.value,
            "feedback": self.feedback,
            "feedback_items": [f.to_dict() for f in self.feedback_items],
            "evaluated_at": format_timestamp(self.evaluated_at),
            "story_id": self.story_id,
            "agent_id": self.agent_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkEvaluationResult:
        agent_status = data.get("agent_status")
        review = data.get("review_result")
        pr_status = data.get("pr_status")
        return cls(
            status=WorkCompletionStatus.parse(data["status"]),
            agent_status=AgentStatus.parse(agent_status) if agent_status else None,
            criteria_checks=[CriterionCheck.from_dict(c) for c in data.get("criteria_checks", [])],
            ci_checks=[CiCheckResult.from_dict(c) for c in data.get("ci_checks", [])],
            review_result=ReviewResult.from_dict(review) if review else None,
            pr_status=PrMergeStatus.parse(pr_status) if pr_status else None,
            ci_status=CiStatus.parse(data.get("ci_status", "pending")),
            build_status=CiStatus.parse(data.get("build_status", "pending")),
            lint_status=CiStatus.parse(data.get("lint_status", "pending")),
            test_status=CiStatus.parse(data.get("test_status", "pending")),
            feedback=data.get("feedback"),
            feedback_items=[FeedbackItem.from_dict(f) for f in data.get("feedback_items", [])],
            evaluated_at=parse_timestamp(data.get("evaluated_at")),
            story_id=data.get("story_id"),
            agent_id=data.get("agent_id"),
        )


@dataclass
class StoryEvaluationRecord:
    """Flat record of one evaluation for the persistence layer."""
    story_id: str
    agent_id: str
    status: WorkCompletionStatus
    criteria_met_count: int
    criteria_total_count: int
    ci_passed: bool
    review_passed: bool
    review_iteration: int
    pr_mergeable: bool
    feedback: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    evaluated_at: Optional[datetime] = None
    session_id: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_result(
        cls,
        story_id: str,
        agent_id: str,
        result: WorkEvaluationResult,
        session_id: Optional[str] = None,
    ) -> StoryEvaluationRecord:
        review = result.review_result
        return cls(
            story_id=story_id,
            agent_id=agent_id,
            status=result.status,
            criteria_met_count=sum(1 for c in result.criteria_checks if c.is_met),
            criteria_total_count=len(result.criteria_checks),
            ci_passed=result.all_ci_passing(),
            review_passed=result.review_approved(),
            review_iteration=review.iteration if review else 0,
            pr_mergeable=result.pr_ready(),
            feedback=result.feedback,
            details={
                "ci_status": result.ci_status.value,
                "build_status": result.build_status.value,
                "lint_status": result.lint_status.value,
                "test_status": result.test_status.value,
                "feedback_items": [f.to_dict() for f in result.feedback_items],
            },
            evaluated_at=result.evaluated_at,
            session_id=session_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "story_id": self.story_id,
            "agent_id": self.agent_id,
            "session_id": self.session_id,
            "status": self.status.value,
            "criteria_met_count": self.criteria_met_count,
            "criteria_total_count": self.criteria_total_count,
            "ci_passed": self.ci_passed,
            "review_passed": self.review_passed,
            "review_iteration": self.review_iteration,
            "pr_mergeable": self.pr_mergeable,
            "feedback": self.feedback,
            "details": self.details,
            "evaluated_at": format_timestamp(self.evaluated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoryEvaluationRecord:
        return cls(
            id=data.get("id"),
            story_id=data["story_id"],
            agent_id=data["agent_id"],
            session_id=data.get("session_id"),
            status=WorkCompletionStatus.parse(data["status"]),
            criteria_met_count=int(data.get("criteria_met_count", 0)),
            criteria_total_count=int(data.get("criteria_total_count", 0)),
            ci_passed=bool(data.get("ci_passed", False)),
            review_passed=bool(data.get("review_passed", False)),
            review_iteration=int(data.get("review_iteration", 0)),
            pr_mergeable=bool(data.get("pr_mergeable", False)),
            feedback=data.get("feedback"),
            details=dict(data.get("details", {})),
            evaluated_at=parse_timestamp(data.get("evaluated_at")),
        )
