"""
Pull request lifecycle state machine for Epic Swarm.

This module handles:
- Tracking a story's PR through CI, review, conflict resolution and merge
- Determining the next state from the PR's current signals
- Mapping each state to the action the orchestrator should take
- Building PR descriptions and squash commit messages

State flow:

┌──────────┐     ┌─────────────┐ failure ┌───────────┐
│ CREATING │ --> │ AWAITING_CI │ ------> │ FIXING_CI │
└──────────┘     └─────────────┘         └───────────┘
                        │ passed               │ passed
                        ▼                      ▼
              ┌──────────────────┐ changes ┌───────────────┐
              │ AWAITING_REVIEW  │ ------> │ FIXING_REVIEW │
              └──────────────────┘         └───────────────┘
                        │ approved             │ approved
                        ▼                      ▼
         ┌─────────────────────┐  clear  ┌────────────────┐
         │ RESOLVING_CONFLICTS │ ------> │ READY_TO_MERGE │
         └─────────────────────┘         └────────────────┘
                                                 │ auto_merge
                                                 ▼
              ┌───────────┐     ┌─────────────┐     ┌───────────┐
              │  MERGING  │ --> │ CLEANING_UP │ --> │ COMPLETED │
              └───────────┘     └─────────────┘     └───────────┘

Any non-terminal state can be forced to FAILED.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Optional

from epic_swarm.config import MergeMethod, PrWorkflowConfig
from epic_swarm.evaluation.models import CiAggregateStatus, CiCheckResult, ReviewVerdict
from epic_swarm.models import ParseableEnum, format_timestamp, parse_timestamp, utc_now

if TYPE_CHECKING:
    from epic_swarm.logger import EventLogger


class PrWorkflowState(ParseableEnum):
    """State of a pull request in the workflow."""
    CREATING = "creating"
    AWAITING_CI = "awaiting_ci"
    AWAITING_REVIEW = "awaiting_review"
    FIXING_CI = "fixing_ci"
    FIXING_REVIEW = "fixing_review"
    RESOLVING_CONFLICTS = "resolving_conflicts"
    READY_TO_MERGE = "ready_to_merge"
    MERGING = "merging"
    CLEANING_UP = "cleaning_up"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PrWorkflowState.COMPLETED, PrWorkflowState.FAILED)

    @property
    def needs_action(self) -> bool:
        """States where an agent has to change the code."""
        return self in (
            PrWorkflowState.FIXING_CI,
            PrWorkflowState.FIXING_REVIEW,
            PrWorkflowState.RESOLVING_CONFLICTS,
        )


class ConflictResolutionStrategy(ParseableEnum):
    """Strategy for resolving merge conflicts."""
    REBASE = "rebase"
    MERGE_FROM = "merge_from"
    MANUAL = "manual"
    ACCEPT_OURS = "accept_ours"
    ACCEPT_THEIRS = "accept_theirs"


@dataclass(frozen=True)
class PrStateTransition:
    """One entry in a PR's state history. Entries are never modified."""
    from_state: Optional[PrWorkflowState]
    to_state: PrWorkflowState
    reason: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_state.value if self.from_state else None,
            "to": self.to_state.value,
            "reason": self.reason,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PrStateTransition:
        from_state = data.get("from")
        return cls(
            from_state=PrWorkflowState.parse(from_state) if from_state else None,
            to_state=PrWorkflowState.parse(data["to"]),
            reason=data.get("reason", ""),
            timestamp=parse_timestamp(data["timestamp"]),
        )


@dataclass
class PrWorkflowContext:
    """
    Everything known about one story's pull request.

    A new context starts in CREATING with a single history entry.
    """
    pr_number: int
    story_id: str
    agent_id: str
    head_branch: str
    base_branch: str = "main"
    session_id: Optional[str] = None
    state: PrWorkflowState = PrWorkflowState.CREATING
    ci_status: Optional[CiAggregateStatus] = None
    review_verdict: Optional[ReviewVerdict] = None
    review_iterations: int = 0
    has_conflicts: bool = False
    conflict_resolution_attempts: int = 0
    merge_method: MergeMethod = MergeMethod.SQUASH
    url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    state_history: list[PrStateTransition] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at
        if not self.state_history:
            self.state_history.append(PrStateTransition(
                from_state=None,
                to_state=self.state,
                reason="PR created",
                timestamp=self.created_at,
            ))

    def transition(self, new_state: PrWorkflowState, reason: str, now: Optional[datetime] = None) -> bool:
        """
        Move to a new state, appending a history entry.

        Returns:
            False, leaving the context untouched, if it is already terminal.
        """
        if self.state.is_terminal:
            return False
        now = now or utc_now()
        self.state_history.append(PrStateTransition(
            from_state=self.state,
            to_state=new_state,
            reason=reason,
            timestamp=now,
        ))
        self.state = new_state
        self.updated_at = now
        if new_state.is_terminal and self.completed_at is None:
            self.completed_at = now
        return True

    def update_ci_status(self, checks: list[CiCheckResult], now: Optional[datetime] = None) -> None:
        now = now or utc_now()
        self.ci_status = CiAggregateStatus.from_checks(checks, now=now)
        self.updated_at = now

    def update_review(self, verdict: ReviewVerdict, iteration: int, now: Optional[datetime] = None) -> None:
        now = now or utc_now()
        self.review_verdict = verdict
        self.review_iterations = iteration
        self.updated_at = now

    def set_has_conflicts(self, has_conflicts: bool, now: Optional[datetime] = None) -> None:
        now = now or utc_now()
        self.has_conflicts = has_conflicts
        self.updated_at = now

    def duration(self, now: Optional[datetime] = None) -> timedelta:
        """Time from creation to completion (or to now while still open)."""
        end = self.completed_at or now or utc_now()
        return end - self.created_at

    def entered_state_at(self, state: PrWorkflowState) -> Optional[datetime]:
        """When the PR most recently entered the given state."""
        for entry in reversed(self.state_history):
            if entry.to_state is state:
                return entry.timestamp
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pr_number": self.pr_number,
            "story_id": self.story_id,
            "agent_id": self.agent_id,
            "session_id": self.session_id,
            "head_branch": self.head_branch,
            "base_branch": self.base_branch,
            "state": self.state.value,
            "ci_status": self.ci_status.to_dict() if self.ci_status else None,
            "review_verdict": self.review_verdict.value if self.review_verdict else None,
            "review_iterations": self.review_iterations,
            "has_conflicts": self.has_conflicts,
            "conflict_resolution_attempts": self.conflict_resolution_attempts,
            "merge_method": self.merge_method.value,
            "url": self.url,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "completed_at": format_timestamp(self.completed_at),
            "state_history": [entry.to_dict() for entry in self.state_history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PrWorkflowContext:
        ci_status = data.get("ci_status")
        verdict = data.get("review_verdict")
        return cls(
            pr_number=int(data["pr_number"]),
            story_id=data["story_id"],
            agent_id=data["agent_id"],
            session_id=data.get("session_id"),
            head_branch=data["head_branch"],
            base_branch=data.get("base_branch", "main"),
            state=PrWorkflowState.parse(data.get("state", "creating")),
            ci_status=CiAggregateStatus.from_dict(ci_status) if ci_status else None,
            review_verdict=ReviewVerdict.parse(verdict) if verdict else None,
            review_iterations=int(data.get("review_iterations", 0)),
            has_conflicts=bool(data.get("has_conflicts", False)),
            conflict_resolution_attempts=int(data.get("conflict_resolution_attempts", 0)),
            merge_method=MergeMethod.parse(data.get("merge_method", "squash")),
            url=data.get("url"),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            completed_at=parse_timestamp(data.get("completed_at")),
            state_history=[PrStateTransition.from_dict(e) for e in data.get("state_history", [])],
        )


@dataclass
class ConflictInfo:
    """Merge conflicts detected on a PR and how they were resolved."""
    conflicting_files: list[str]
    detected_at: Optional[datetime] = None
    resolution_attempted: bool = False
    strategy: Optional[ConflictResolutionStrategy] = None
    resolved_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.detected_at is None:
            self.detected_at = utc_now()

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def mark_resolved(self, strategy: ConflictResolutionStrategy, now: Optional[datetime] = None) -> None:
        self.resolution_attempted = True
        self.strategy = strategy
        self.resolved_at = now or utc_now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflicting_files": list(self.conflicting_files),
            "detected_at": format_timestamp(self.detected_at),
            "resolution_attempted": self.resolution_attempted,
            "strategy": self.strategy.value if self.strategy else None,
            "resolved_at": format_timestamp(self.resolved_at),
        }


@dataclass
class PrDescription:
    """Template data for a PR body."""
    title: str
    summary: str
    stories: list[str] = field(default_factory=list)
    test_plan: list[str] = field(default_factory=list)
    related_issues: list[str] = field(default_factory=list)
    breaking_changes: list[str] = field(default_factory=list)
    files_changed: Optional[list[str]] = None

    def to_markdown(self) -> str:
        """Render the PR body as markdown."""
        parts = [f"## Summary\n\n{self.summary}"]

        if self.stories:
            parts.append("\n## Stories Implemented")
            parts.extend(f"- {story}" for story in self.stories)

        if self.breaking_changes:
            parts.append("\n## Breaking Changes")
            parts.extend(f"- {change}" for change in self.breaking_changes)

        if self.test_plan:
            parts.append("\n## Test Plan")
            parts.extend(f"- [ ] {step}" for step in self.test_plan)

        if self.related_issues:
            parts.append("\n## Related Issues")
            parts.extend(f"- {issue}" for issue in self.related_issues)

        if self.files_changed:
            parts.append("\n## Files Changed")
            parts.extend(f"- `{path}`" for path in self.files_changed)

        return "\n".join(parts)


class PrWorkflowActionKind(Enum):
    """Kinds of action the orchestrator takes for a PR."""
    WAIT_FOR_CI = auto()
    WAIT_FOR_REVIEW = auto()
    FIX_CI_FAILURES = auto()
    ADDRESS_REVIEW_FEEDBACK = auto()
    RESOLVE_CONFLICTS = auto()
    MERGE = auto()
    EXECUTE_MERGE = auto()
    CLEANUP = auto()


@dataclass
class PrWorkflowAction:
    """
    An action the orchestrator should take for a PR.

    failed_checks is only set for FIX_CI_FAILURES.
    """
    kind: PrWorkflowActionKind
    failed_checks: list[str] = field(default_factory=list)

    @property
    def description(self) -> str:
        """Get a human-readable description of the action."""
        descriptions = {
            PrWorkflowActionKind.WAIT_FOR_CI: "Waiting for CI checks to complete",
            PrWorkflowActionKind.WAIT_FOR_REVIEW: "Waiting for code review",
            PrWorkflowActionKind.FIX_CI_FAILURES: f"Fix CI failures: {', '.join(self.failed_checks)}",
            PrWorkflowActionKind.ADDRESS_REVIEW_FEEDBACK: "Address review feedback",
            PrWorkflowActionKind.RESOLVE_CONFLICTS: "Resolve merge conflicts",
            PrWorkflowActionKind.MERGE: "Ready to merge PR",
            PrWorkflowActionKind.EXECUTE_MERGE: "Executing merge",
            PrWorkflowActionKind.CLEANUP: "Cleaning up branches and worktrees",
        }
        return descriptions[self.kind]


_ACTION_FOR_STATE = {
    PrWorkflowState.AWAITING_CI: PrWorkflowActionKind.WAIT_FOR_CI,
    PrWorkflowState.AWAITING_REVIEW: PrWorkflowActionKind.WAIT_FOR_REVIEW,
    PrWorkflowState.FIXING_REVIEW: PrWorkflowActionKind.ADDRESS_REVIEW_FEEDBACK,
    PrWorkflowState.RESOLVING_CONFLICTS: PrWorkflowActionKind.RESOLVE_CONFLICTS,
    PrWorkflowState.READY_TO_MERGE: PrWorkflowActionKind.MERGE,
    PrWorkflowState.MERGING: PrWorkflowActionKind.EXECUTE_MERGE,
    PrWorkflowState.CLEANING_UP: PrWorkflowActionKind.CLEANUP,
}


class PrWorkflowManager:
    """
    Decides PR state transitions and the actions they require.

    determine_next_state is pure; advance and fail apply a decision to the
    context and record it in the state history.
    """

    def __init__(
        self,
        config: Optional[PrWorkflowConfig] = None,
        logger: Optional[EventLogger] = None,
    ) -> None:
        self.config = config or PrWorkflowConfig()
        self.logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            log_data = {"component": "pr_workflow"}
            if data:
                log_data.update(data)
            self.logger.log(event_type, log_data, level=level)

    def new_context(
        self,
        pr_number: int,
        story_id: str,
        agent_id: str,
        head_branch: str,
        base_branch: str = "main",
        session_id: Optional[str] = None,
        url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PrWorkflowContext:
        """Create a context using the configured merge method."""
        return PrWorkflowContext(
            pr_number=pr_number,
            story_id=story_id,
            agent_id=agent_id,
            head_branch=head_branch,
            base_branch=base_branch,
            session_id=session_id,
            merge_method=self.config.merge_method,
            url=url,
            created_at=now or utc_now(),
        )

    def _ci_all_passed(self, context: PrWorkflowContext) -> bool:
        return context.ci_status is not None and context.ci_status.is_all_passed()

    def _merge_or_resolve(self, context: PrWorkflowContext) -> PrWorkflowState:
        if context.has_conflicts:
            return PrWorkflowState.RESOLVING_CONFLICTS
        return PrWorkflowState.READY_TO_MERGE

    def determine_next_state(self, context: PrWorkflowContext) -> Optional[PrWorkflowState]:
        """
        Determine the next state from the context's current signals.

        Returns:
            The state to move to, or None to stay put.
        """
        state = context.state
        ci = context.ci_status
        approved = context.review_verdict is ReviewVerdict.APPROVED

        if state is PrWorkflowState.CREATING:
            return PrWorkflowState.AWAITING_CI

        if state is PrWorkflowState.AWAITING_CI:
            if ci is None:
                return None
            if ci.has_failures():
                return PrWorkflowState.FIXING_CI
            if ci.is_all_passed():
                if self.config.require_review_approval:
                    return PrWorkflowState.AWAITING_REVIEW
                return PrWorkflowState.READY_TO_MERGE
            return None

        if state is PrWorkflowState.AWAITING_REVIEW:
            if approved:
                return self._merge_or_resolve(context)
            if context.review_verdict is ReviewVerdict.CHANGES_REQUESTED:
                return PrWorkflowState.FIXING_REVIEW
            return None

        if state is PrWorkflowState.FIXING_CI:
            if not self._ci_all_passed(context):
                return None
            if self.config.require_review_approval and not approved:
                return PrWorkflowState.AWAITING_REVIEW
            return self._merge_or_resolve(context)

        if state is PrWorkflowState.FIXING_REVIEW:
            if not approved:
                return None
            if self._ci_all_passed(context):
                return self._merge_or_resolve(context)
            return PrWorkflowState.AWAITING_CI

        if state is PrWorkflowState.RESOLVING_CONFLICTS:
            if not context.has_conflicts:
                return PrWorkflowState.READY_TO_MERGE
            return None

        if state is PrWorkflowState.READY_TO_MERGE:
            if self.config.auto_merge:
                return PrWorkflowState.MERGING
            return None

        if state is PrWorkflowState.MERGING:
            if self.config.cleanup_worktree or self.config.delete_branch_after_merge:
                return PrWorkflowState.CLEANING_UP
            return PrWorkflowState.COMPLETED

        if state is PrWorkflowState.CLEANING_UP:
            return PrWorkflowState.COMPLETED

        return None

    def _transition_reason(self, context: PrWorkflowContext, next_state: PrWorkflowState) -> str:
        if next_state is PrWorkflowState.FIXING_CI and context.ci_status is not None:
            names = ", ".join(check.name for check in context.ci_status.failures)
            return f"CI checks failed: {names}"
        if next_state is PrWorkflowState.FIXING_REVIEW:
            return f"Review requested changes (iteration {context.review_iterations})"
        reasons = {
            PrWorkflowState.AWAITING_CI: "Waiting for CI checks",
            PrWorkflowState.AWAITING_REVIEW: "CI checks passed",
            PrWorkflowState.RESOLVING_CONFLICTS: "Merge conflicts detected",
            PrWorkflowState.READY_TO_MERGE: "All merge requirements met",
            PrWorkflowState.MERGING: "Auto-merge enabled",
            PrWorkflowState.CLEANING_UP: "PR merged",
            PrWorkflowState.COMPLETED: "Workflow complete",
        }
        return reasons.get(next_state, f"Moved to {next_state.value}")

    def advance(self, context: PrWorkflowContext, now: Optional[datetime] = None) -> Optional[PrWorkflowState]:
        """
        Apply the next state, if any, to the context.

        Entering RESOLVING_CONFLICTS more than max_conflict_resolution_attempts
        times fails the workflow instead.

        Returns:
            The new state, or None if nothing changed.
        """
        next_state = self.determine_next_state(context)
        if next_state is None:
            return None

        if next_state is PrWorkflowState.RESOLVING_CONFLICTS:
            if context.conflict_resolution_attempts >= self.config.max_conflict_resolution_attempts:
                self.fail(
                    context,
                    f"Exceeded {self.config.max_conflict_resolution_attempts} conflict resolution attempts",
                    now=now,
                )
                return PrWorkflowState.FAILED
            context.conflict_resolution_attempts += 1

        from_state = context.state
        reason = self._transition_reason(context, next_state)
        context.transition(next_state, reason, now=now)
        self._log("pr_state_changed", {
            "pr_number": context.pr_number,
            "story_id": context.story_id,
            "from": from_state.value,
            "to": next_state.value,
            "reason": reason,
        })
        return next_state

    def fail(self, context: PrWorkflowContext, reason: str, now: Optional[datetime] = None) -> bool:
        """
        Force a non-terminal workflow into FAILED.

        Returns:
            False if the workflow was already terminal.
        """
        if context.state.is_terminal:
            return False
        from_state = context.state
        context.transition(PrWorkflowState.FAILED, reason, now=now)
        self._log("pr_workflow_failed", {
            "pr_number": context.pr_number,
            "story_id": context.story_id,
            "from": from_state.value,
            "reason": reason,
        }, level="warn")
        return True

    def is_ready_to_merge(self, context: PrWorkflowContext) -> bool:
        if self.config.require_ci_pass and not self._ci_all_passed(context):
            return False
        if self.config.require_review_approval and context.review_verdict is not ReviewVerdict.APPROVED:
            return False
        return not context.has_conflicts

    def is_ci_timed_out(self, context: PrWorkflowContext, now: Optional[datetime] = None) -> bool:
        """True if CI is still running longer than ci_timeout_seconds."""
        ci = context.ci_status
        if ci is None or not ci.is_still_running() or ci.updated_at is None:
            return False
        now = now or utc_now()
        return (now - ci.updated_at).total_seconds() > self.config.ci_timeout_seconds

    def is_review_timed_out(self, context: PrWorkflowContext, now: Optional[datetime] = None) -> bool:
        """True if the PR has waited for review longer than human_review_timeout_seconds."""
        if context.state is not PrWorkflowState.AWAITING_REVIEW:
            return False
        entered = context.entered_state_at(PrWorkflowState.AWAITING_REVIEW)
        if entered is None:
            return False
        now = now or utc_now()
        return (now - entered).total_seconds() > self.config.human_review_timeout_seconds

    def generate_squash_message(self, context: PrWorkflowContext, description: PrDescription) -> str:
        parts = [description.title, "", description.summary]

        if description.stories:
            parts.append("")
            parts.append("Stories:")
            parts.extend(f"- {story}" for story in description.stories)

        parts.append("")
        if context.url:
            parts.append(f"PR: {context.url}")
        else:
            parts.append(f"PR: #{context.pr_number}")

        return "\n".join(parts)

    def get_needed_action(self, context: PrWorkflowContext) -> Optional[PrWorkflowAction]:
        """Map the context's current state to the action the orchestrator should take."""
        if context.state is PrWorkflowState.FIXING_CI:
            if context.ci_status is None or not context.ci_status.failures:
                return None
            return PrWorkflowAction(
                kind=PrWorkflowActionKind.FIX_CI_FAILURES,
                failed_checks=[check.name for check in context.ci_status.failures],
            )
        kind = _ACTION_FOR_STATE.get(context.state)
        if kind is None:
            return None
        return PrWorkflowAction(kind=kind)


@dataclass
class PrWorkflowRecord:
    """Flat record of a PR workflow for the persistence layer."""
    pr_number: int
    story_id: str
    agent_id: str
    head_branch: str
    base_branch: str
    state: PrWorkflowState
    ci_passed: bool
    review_approved: bool
    review_iterations: int
    has_conflicts: bool
    merge_method: MergeMethod
    created_at: datetime
    updated_at: datetime
    session_id: Optional[str] = None
    url: Optional[str] = None
    completed_at: Optional[datetime] = None
    id: Optional[int] = None

    @classmethod
    def from_context(cls, context: PrWorkflowContext) -> PrWorkflowRecord:
        return cls(
            pr_number=context.pr_number,
            story_id=context.story_id,
            agent_id=context.agent_id,
            session_id=context.session_id,
            head_branch=context.head_branch,
            base_branch=context.base_branch,
            state=context.state,
            ci_passed=context.ci_status is not None and context.ci_status.is_all_passed(),
            review_approved=context.review_verdict is ReviewVerdict.APPROVED,
            review_iterations=context.review_iterations,
            has_conflicts=context.has_conflicts,
            merge_method=context.merge_method,
            url=context.url,
            created_at=context.created_at,
            updated_at=context.updated_at,
            completed_at=context.completed_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pr_number": self.pr_number,
            "story_id": self.story_id,
            "agent_id": self.agent_id,
            "session_id": self.session_id,
            "head_branch": self.head_branch,
            "base_branch": self.base_branch,
            "state": self.state.value,
            "ci_passed": self.ci_passed,
            "review_approved": self.review_approved,
            "review_iterations": self.review_iterations,
            "has_conflicts": self.has_conflicts,
            "merge_method": self.merge_method.value,
            "url": self.url,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "completed_at": format_timestamp(self.completed_at),
        }
