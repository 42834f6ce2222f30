"""
Edge case coordination for Epic Swarm.

Operational failures (flaky tests, rate limits, outages, review ping-pong and
so on) are classified from an error message plus context, then routed to a
deterministic handler that decides whether to retry, wait, back off, spawn a
resolver, block, or escalate to a human.

Flow:
1. Something fails
2. EdgeCaseCoordinator.create_event() classifies the message
3. EdgeCaseCoordinator.handle() dispatches to the first matching handler
4. The HandlerResult says what to do next and whether work may continue

Handler actions:
- retry: Retry the operation after backoff_seconds
- wait: Poll every check_interval until max_wait elapses
- spawn_resolver: Start a specialized resolver agent
- backoff: Exponential backoff before the next call
- summarize: Compress context down to max_tokens
- block: Stop and wait for a human
- escalate: Stop and raise with a severity
- log: Record only

Retry, review and rate-limit counters are owned by the coordinator instance
and keyed by ``session:agent:type``; exhausting a limit produces an escalate
action, never an exception.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional

from epic_swarm.config import EdgeCaseConfig
from epic_swarm.models import (
    ParseableEnum,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

if TYPE_CHECKING:
    from epic_swarm.logger import EventLogger


# =============================================================================
# Enums
# =============================================================================


class EdgeCaseType(ParseableEnum):
    """Category of operational failure."""
    DELAYED_CI_REVIEW = "delayed_ci_review"    # Async reviewer has not posted yet
    MERGE_CONFLICT = "merge_conflict"
    FLAKY_TEST = "flaky_test"
    SERVICE_DOWNTIME = "service_downtime"      # GitHub or CI provider down
    DEPENDENCY_FAILURE = "dependency_failure"  # A story this one depends on failed
    REVIEW_PING_PONG = "review_ping_pong"      # Too many review iterations
    CONTEXT_OVERFLOW = "context_overflow"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    AUTH_ERROR = "auth_error"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


class EdgeCaseResolution(ParseableEnum):
    """Resolution state of an edge case event."""
    PENDING = "pending"
    AUTO_RESOLVED = "auto_resolved"
    MANUAL_RESOLVED = "manual_resolved"
    BYPASSED = "bypassed"
    FAILED = "failed"
    RETRYING = "retrying"
    WAITING = "waiting"                        # Waiting for an external condition

    @property
    def is_resolved(self) -> bool:
        return self in (
            EdgeCaseResolution.AUTO_RESOLVED,
            EdgeCaseResolution.MANUAL_RESOLVED,
            EdgeCaseResolution.BYPASSED,
        )


class EdgeCaseActionKind(ParseableEnum):
    RETRY = "retry"
    WAIT = "wait"
    SPAWN_RESOLVER = "spawn_resolver"
    BACKOFF = "backoff"
    SUMMARIZE = "summarize"
    BLOCK = "block"
    ESCALATE = "escalate"
    SKIP = "skip"
    LOG = "log"


class EscalationSeverity(ParseableEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# =============================================================================
# Actions and events
# =============================================================================


@dataclass
class EdgeCaseAction:
    """
    Action recommended for an edge case.

    Only the fields relevant to ``kind`` are set; use the classmethod
    constructors rather than filling fields by hand.
    """

    kind: EdgeCaseActionKind
    max_retries: Optional[int] = None
    backoff_seconds: Optional[int] = None
    max_wait_seconds: Optional[int] = None
    check_interval_seconds: Optional[int] = None
    resolver_type: Optional[str] = None
    initial_delay_seconds: Optional[int] = None
    max_delay_seconds: Optional[int] = None
    max_tokens: Optional[int] = None
    severity: Optional[EscalationSeverity] = None
    reason: Optional[str] = None

    @classmethod
    def retry(cls, max_retries: int, backoff_seconds: int) -> EdgeCaseAction:
        return cls(EdgeCaseActionKind.RETRY, max_retries=max_retries, backoff_seconds=backoff_seconds)

    @classmethod
    def wait(cls, max_wait_seconds: int, check_interval_seconds: int) -> EdgeCaseAction:
        return cls(
            EdgeCaseActionKind.WAIT,
            max_wait_seconds=max_wait_seconds,
            check_interval_seconds=check_interval_seconds,
        )

    @classmethod
    def spawn_resolver(cls, resolver_type: str) -> EdgeCaseAction:
        return cls(EdgeCaseActionKind.SPAWN_RESOLVER, resolver_type=resolver_type)

    @classmethod
    def backoff(cls, initial_delay_seconds: int, max_delay_seconds: int) -> EdgeCaseAction:
        return cls(
            EdgeCaseActionKind.BACKOFF,
            initial_delay_seconds=initial_delay_seconds,
            max_delay_seconds=max_delay_seconds,
        )

    @classmethod
    def summarize(cls, max_tokens: int) -> EdgeCaseAction:
        return cls(EdgeCaseActionKind.SUMMARIZE, max_tokens=max_tokens)

    @classmethod
    def block(cls, reason: str) -> EdgeCaseAction:
        return cls(EdgeCaseActionKind.BLOCK, reason=reason)

    @classmethod
    def escalate(cls, severity: EscalationSeverity, reason: str) -> EdgeCaseAction:
        return cls(EdgeCaseActionKind.ESCALATE, severity=severity, reason=reason)

    @classmethod
    def skip(cls, reason: str) -> EdgeCaseAction:
        return cls(EdgeCaseActionKind.SKIP, reason=reason)

    @classmethod
    def log(cls) -> EdgeCaseAction:
        return cls(EdgeCaseActionKind.LOG)

    def __str__(self) -> str:
        kind = self.kind
        if kind is EdgeCaseActionKind.RETRY:
            return f"retry(max={self.max_retries}, backoff={self.backoff_seconds}s)"
        if kind is EdgeCaseActionKind.WAIT:
            return (
                f"wait(max={(self.max_wait_seconds or 0) // 60}min, "
                f"interval={(self.check_interval_seconds or 0) // 60}min)"
            )
        if kind is EdgeCaseActionKind.SPAWN_RESOLVER:
            return f"spawn_resolver({self.resolver_type})"
        if kind is EdgeCaseActionKind.BACKOFF:
            return f"backoff(initial={self.initial_delay_seconds}s, max={self.max_delay_seconds}s)"
        if kind is EdgeCaseActionKind.SUMMARIZE:
            return f"summarize(max_tokens={self.max_tokens})"
        if kind is EdgeCaseActionKind.ESCALATE:
            return f"escalate(severity={self.severity}, reason={self.reason})"
        if kind is EdgeCaseActionKind.LOG:
            return "log"
        return f"{kind.value}({self.reason})"

    def to_dict(self) -> dict[str, Any]:
        """Flat record with only the fields set for this kind."""
        data: dict[str, Any] = {"action": self.kind.value}
        for name in (
            "max_retries",
            "backoff_seconds",
            "max_wait_seconds",
            "check_interval_seconds",
            "resolver_type",
            "initial_delay_seconds",
            "max_delay_seconds",
            "max_tokens",
            "reason",
        ):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        if self.severity is not None:
            data["severity"] = self.severity.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EdgeCaseAction:
        severity = data.get("severity")
        return cls(
            kind=EdgeCaseActionKind.parse(data["action"]),
            max_retries=data.get("max_retries"),
            backoff_seconds=data.get("backoff_seconds"),
            max_wait_seconds=data.get("max_wait_seconds"),
            check_interval_seconds=data.get("check_interval_seconds"),
            resolver_type=data.get("resolver_type"),
            initial_delay_seconds=data.get("initial_delay_seconds"),
            max_delay_seconds=data.get("max_delay_seconds"),
            max_tokens=data.get("max_tokens"),
            severity=EscalationSeverity.parse(severity) if severity else None,
            reason=data.get("reason"),
        )


@dataclass
class EdgeCaseEvent:
    """
    A single occurrence of an edge case.

    Handlers mutate the event in place (retry_count, resolution,
    action_taken, resolved_at) so the caller can persist it afterwards.
    """

    edge_case_type: EdgeCaseType
    resolution: EdgeCaseResolution = EdgeCaseResolution.PENDING
    action_taken: Optional[str] = None
    retry_count: int = 0
    session_id: Optional[str] = None
    agent_id: Optional[str] = None
    story_id: Optional[str] = None
    error_message: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)
    detected_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.detected_at is None:
            self.detected_at = utc_now()

    @property
    def counter_key(self) -> str:
        """Key under which the coordinator tracks this event's counters."""
        return counter_key(self.session_id, self.agent_id, self.edge_case_type)

    def resolve(
        self,
        resolution: EdgeCaseResolution,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.resolution = resolution
        self.resolved_at = now or utc_now()
        self.resolution_notes = notes

    def increment_retry(self) -> None:
        self.retry_count += 1
        self.resolution = EdgeCaseResolution.RETRYING

    def duration(self) -> Optional[timedelta]:
        """Time from detection to resolution, None while unresolved."""
        if self.resolved_at is None or self.detected_at is None:
            return None
        return self.resolved_at - self.detected_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "agent_id": self.agent_id,
            "story_id": self.story_id,
            "edge_case_type": self.edge_case_type.value,
            "resolution": self.resolution.value,
            "action_taken": self.action_taken,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "context": dict(self.context),
            "detected_at": format_timestamp(self.detected_at),
            "resolved_at": format_timestamp(self.resolved_at),
            "resolution_notes": self.resolution_notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EdgeCaseEvent:
        return cls(
            edge_case_type=EdgeCaseType.parse(data["edge_case_type"]),
            resolution=EdgeCaseResolution.parse(data.get("resolution", "pending")),
            action_taken=data.get("action_taken"),
            retry_count=int(data.get("retry_count", 0)),
            session_id=data.get("session_id"),
            agent_id=data.get("agent_id"),
            story_id=data.get("story_id"),
            error_message=data.get("error_message"),
            context=dict(data.get("context") or {}),
            detected_at=parse_timestamp(data.get("detected_at")),
            resolved_at=parse_timestamp(data.get("resolved_at")),
            resolution_notes=data.get("resolution_notes"),
            id=data.get("id"),
        )


def counter_key(
    session_id: Optional[str],
    agent_id: Optional[str],
    edge_case_type: EdgeCaseType,
) -> str:
    return f"{session_id or 'none'}:{agent_id or 'none'}:{edge_case_type.value}"


@dataclass
class HandlerResult:
    """
    Result from an edge case handler.

    Attributes:
        event: The (mutated) event that was handled.
        action: Recommended action.
        should_continue: False when work must stop until a human steps in.
        message: Human-readable description of what happened.
    """

    event: EdgeCaseEvent
    action: EdgeCaseAction
    should_continue: bool
    message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "event": self.event.to_dict(),
            "action": self.action.to_dict(),
            "should_continue": self.should_continue,
            "message": self.message,
        }


# =============================================================================
# Counters
# =============================================================================


@dataclass
class RateLimitState:
    last_hit: datetime
    current_backoff_seconds: int
    hit_count: int = 0


@dataclass
class EdgeCaseStats:
    """Number of live counters of each kind."""
    active_retries: int = 0
    active_review_iterations: int = 0
    rate_limited_services: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_retries": self.active_retries,
            "active_review_iterations": self.active_review_iterations,
            "rate_limited_services": self.rate_limited_services,
        }


class EdgeCaseCounters:
    """
    Retry, review-iteration and rate-limit counters for one coordinator.

    Every method takes the lock, and the lock is reentrant so the
    coordinator can hold it across a whole handle() call.
    """

    def __init__(self) -> None:
        # Thread-safe counter storage
        self._lock = threading.RLock()
        self.retry_tracker: dict[str, int] = {}
        self.review_iterations: dict[str, int] = {}
        self.rate_limit_state: dict[str, RateLimitState] = {}

    @property
    def lock(self):
        """The reentrant lock, held by the coordinator across handle()."""
        return self._lock

    def increment_retry(self, key: str) -> int:
        with self._lock:
            self.retry_tracker[key] = self.retry_tracker.get(key, 0) + 1
            return self.retry_tracker[key]

    def increment_review(self, key: str) -> int:
        with self._lock:
            self.review_iterations[key] = self.review_iterations.get(key, 0) + 1
            return self.review_iterations[key]

    def next_backoff(
        self,
        key: str,
        initial_seconds: int,
        max_seconds: int,
        now: datetime,
    ) -> tuple[int, int]:
        """
        Record a rate-limit hit and return (backoff_seconds, hit_count).

        The returned backoff starts at initial_seconds and doubles on every
        hit, never exceeding max_seconds.
        """
        with self._lock:
            state = self.rate_limit_state.get(key)
            if state is None:
                state = RateLimitState(last_hit=now, current_backoff_seconds=initial_seconds)
                self.rate_limit_state[key] = state

            state.hit_count += 1
            state.last_hit = now
            backoff = min(state.current_backoff_seconds, max_seconds)
            state.current_backoff_seconds = min(state.current_backoff_seconds * 2, max_seconds)
            return backoff, state.hit_count

    def reset(self, prefix: str) -> int:
        """Drop every counter whose key starts with prefix; returns how many."""
        removed = 0
        with self._lock:
            for tracker in (self.retry_tracker, self.review_iterations, self.rate_limit_state):
                for key in [k for k in tracker if k.startswith(prefix)]:
                    del tracker[key]
                    removed += 1
        return removed

    def reset_rate_limit(self, key: str) -> bool:
        with self._lock:
            return self.rate_limit_state.pop(key, None) is not None

    def stats(self) -> EdgeCaseStats:
        with self._lock:
            return EdgeCaseStats(
                active_retries=len(self.retry_tracker),
                active_review_iterations=len(self.review_iterations),
                rate_limited_services=len(self.rate_limit_state),
            )


# =============================================================================
# Base Handler
# =============================================================================


class BaseHandler(ABC):
    """
    Abstract base class for edge case handlers.

    All handlers must implement:
    - can_handle(): Check if this handler owns the event's type
    - handle(): Decide the action and update the event
    """

    edge_case_type: EdgeCaseType = EdgeCaseType.UNKNOWN

    def __init__(
        self,
        config: EdgeCaseConfig,
        counters: EdgeCaseCounters,
        logger: Optional[EventLogger] = None,
    ) -> None:
        self.config = config
        self.counters = counters
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"handler": self.__class__.__name__}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def can_handle(self, event: EdgeCaseEvent) -> bool:
        return event.edge_case_type is self.edge_case_type

    @abstractmethod
    def handle(self, event: EdgeCaseEvent, now: datetime) -> HandlerResult:
        """
        Handle the event and return a result.

        Args:
            event: The event to handle; updated in place.
            now: Current time, used for budgets and resolution timestamps.

        Returns:
            HandlerResult with the action to take.
        """
        pass

    def _escalate(
        self,
        event: EdgeCaseEvent,
        severity: EscalationSeverity,
        reason: str,
        message: str,
        now: datetime,
    ) -> HandlerResult:
        event.resolve(EdgeCaseResolution.FAILED, notes=reason, now=now)
        self._log("edge_case_escalated", {
            "edge_case_type": event.edge_case_type.value,
            "severity": severity.value,
            "reason": reason,
        }, level="warn")
        return HandlerResult(
            event=event,
            action=EdgeCaseAction.escalate(severity, reason),
            should_continue=False,
            message=message,
        )


# =============================================================================
# Retry Handler (base class for counted retries)
# =============================================================================


class RetryHandler(BaseHandler):
    """
    Base class for handlers that retry a bounded number of times.

    Attempts are counted per counter key. The delay is either linear in the
    attempt number or fixed, and running out of attempts escalates.
    """

    label = "Operation"
    escalation_severity = EscalationSeverity.MEDIUM
    linear_backoff = True

    def __init__(
        self,
        config: EdgeCaseConfig,
        counters: EdgeCaseCounters,
        logger: Optional[EventLogger] = None,
        max_retries: int = 3,
        base_delay_seconds: int = 30,
    ) -> None:
        super().__init__(config, counters, logger)
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds

    def calculate_delay(self, attempt: int) -> int:
        """
        Delay before the given attempt.

        Args:
            attempt: The attempt number (1-indexed).
        """
        if self.linear_backoff:
            return self.base_delay_seconds * attempt
        return self.base_delay_seconds

    def should_retry(self, attempt: int) -> bool:
        return attempt <= self.max_retries

    def exhausted_reason(self, attempt: int) -> str:
        return f"{self.label} failed after {attempt - 1} retries"

    def handle(self, event: EdgeCaseEvent, now: datetime) -> HandlerResult:
        attempt = self.counters.increment_retry(event.counter_key)
        event.retry_count = attempt

        if self.should_retry(attempt):
            delay = self.calculate_delay(attempt)
            event.resolution = EdgeCaseResolution.RETRYING
            self._log("edge_case_retry", {
                "edge_case_type": event.edge_case_type.value,
                "attempt": attempt,
                "delay_seconds": delay,
            })
            return HandlerResult(
                event=event,
                action=EdgeCaseAction.retry(self.max_retries, delay),
                should_continue=True,
                message=f"{self.label} retry {attempt}/{self.max_retries}, waiting {delay}s",
            )

        return self._escalate(
            event,
            self.escalation_severity,
            self.exhausted_reason(attempt),
            f"{self.label} exceeded retry limit, escalating",
            now,
        )


class FlakyTestHandler(RetryHandler):
    """Retries flaky tests with linearly growing backoff, then escalates (medium)."""

    edge_case_type = EdgeCaseType.FLAKY_TEST
    label = "Flaky test"

    def __init__(
        self,
        config: EdgeCaseConfig,
        counters: EdgeCaseCounters,
        logger: Optional[EventLogger] = None,
    ) -> None:
        super().__init__(
            config,
            counters,
            logger,
            max_retries=config.flaky_test_max_retries,
            base_delay_seconds=config.flaky_test_backoff_seconds,
        )


class TimeoutHandler(RetryHandler):
    """Retries timeouts with a fixed delay, then escalates (medium)."""

    edge_case_type = EdgeCaseType.TIMEOUT
    label = "Timeout"
    linear_backoff = False

    def __init__(
        self,
        config: EdgeCaseConfig,
        counters: EdgeCaseCounters,
        logger: Optional[EventLogger] = None,
    ) -> None:
        super().__init__(
            config,
            counters,
            logger,
            max_retries=config.timeout_max_retries,
            base_delay_seconds=config.timeout_backoff_seconds,
        )

    def exhausted_reason(self, attempt: int) -> str:
        return "Timeout after multiple retries"


class NetworkErrorHandler(RetryHandler):
    """
    Handles network errors.

    With auto-retry enabled: linear backoff up to network_max_retries, then
    escalate (high). With auto-retry disabled: escalate (medium) at once.
    """

    edge_case_type = EdgeCaseType.NETWORK_ERROR
    label = "Network error"
    escalation_severity = EscalationSeverity.HIGH

    def __init__(
        self,
        config: EdgeCaseConfig,
        counters: EdgeCaseCounters,
        logger: Optional[EventLogger] = None,
    ) -> None:
        super().__init__(
            config,
            counters,
            logger,
            max_retries=config.network_max_retries,
            base_delay_seconds=config.network_backoff_seconds,
        )

    def exhausted_reason(self, attempt: int) -> str:
        return "Network error persisted after retries"

    def handle(self, event: EdgeCaseEvent, now: datetime) -> HandlerResult:
        if not self.config.network_auto_retry:
            return self._escalate(
                event,
                EscalationSeverity.MEDIUM,
                "Network error (auto-retry disabled)",
                "Network error, auto-retry disabled",
                now,
            )
        return super().handle(event, now)


# =============================================================================
# Wait Handlers
# =============================================================================


class WaitHandler(BaseHandler):
    """
    Base class for handlers that poll an external condition.

    Keeps recommending a wait while ``now - detected_at`` is within the
    budget, then escalates (medium).
    """

    label = "external condition"

    @property
    @abstractmethod
    def max_wait_minutes(self) -> int:
        """Total minutes to keep waiting before escalating."""

    @property
    @abstractmethod
    def check_interval_minutes(self) -> int:
        """Minutes between checks of the external condition."""

    def handle(self, event: EdgeCaseEvent, now: datetime) -> HandlerResult:
        detected_at = event.detected_at or now
        elapsed = now - detected_at
        budget = timedelta(minutes=self.max_wait_minutes)

        if elapsed <= budget:
            event.resolution = EdgeCaseResolution.WAITING
            return HandlerResult(
                event=event,
                action=EdgeCaseAction.wait(
                    self.max_wait_minutes * 60,
                    self.check_interval_minutes * 60,
                ),
                should_continue=True,
                message=f"Waiting for {self.label} (max {self.max_wait_minutes}min)",
            )

        return self._escalate(
            event,
            EscalationSeverity.MEDIUM,
            f"Waited more than {self.max_wait_minutes}min for {self.label}",
            f"Wait for {self.label} exhausted, escalating",
            now,
        )


class DelayedReviewHandler(WaitHandler):
    """Waits for async CI reviewers (e.g. Copilot comments) to post."""

    edge_case_type = EdgeCaseType.DELAYED_CI_REVIEW
    label = "delayed CI review"

    @property
    def max_wait_minutes(self) -> int:
        return self.config.delayed_review_wait_minutes

    @property
    def check_interval_minutes(self) -> int:
        return self.config.delayed_review_check_interval_minutes


class ServiceDowntimeHandler(WaitHandler):
    """Waits for GitHub or the CI provider to recover."""

    edge_case_type = EdgeCaseType.SERVICE_DOWNTIME
    label = "service recovery"

    @property
    def max_wait_minutes(self) -> int:
        return self.config.service_downtime_wait_minutes

    @property
    def check_interval_minutes(self) -> int:
        return self.config.service_downtime_check_interval_minutes


# =============================================================================
# Remaining Handlers
# =============================================================================


class MergeConflictHandler(BaseHandler):
    edge_case_type = EdgeCaseType.MERGE_CONFLICT

    def handle(self, event: EdgeCaseEvent, now: datetime) -> HandlerResult:
        return HandlerResult(
            event=event,
            action=EdgeCaseAction.spawn_resolver("conflict_resolver"),
            should_continue=True,
            message="Spawning conflict resolver agent",
        )


class DependencyFailureHandler(BaseHandler):
    edge_case_type = EdgeCaseType.DEPENDENCY_FAILURE

    def handle(self, event: EdgeCaseEvent, now: datetime) -> HandlerResult:
        self._log("dependency_blocked", {"story_id": event.story_id}, level="warn")
        return HandlerResult(
            event=event,
            action=EdgeCaseAction.block("Dependent story failed"),
            should_continue=False,
            message="Blocking due to dependency failure",
        )


class ReviewPingPongHandler(BaseHandler):
    """
    Counts review iterations per key.

    Below review_ping_pong_threshold the iteration is only logged; reaching
    it escalates (high).
    """

    edge_case_type = EdgeCaseType.REVIEW_PING_PONG

    def handle(self, event: EdgeCaseEvent, now: datetime) -> HandlerResult:
        iterations = self.counters.increment_review(event.counter_key)

        if iterations >= self.config.review_ping_pong_threshold:
            return self._escalate(
                event,
                EscalationSeverity.HIGH,
                f"Review ping-pong: {iterations} iterations exceeded threshold",
                "Review iteration limit exceeded, escalating",
                now,
            )

        return HandlerResult(
            event=event,
            action=EdgeCaseAction.log(),
            should_continue=True,
            message=f"Review iteration {iterations}",
        )


class ContextOverflowHandler(BaseHandler):
    edge_case_type = EdgeCaseType.CONTEXT_OVERFLOW

    def handle(self, event: EdgeCaseEvent, now: datetime) -> HandlerResult:
        return HandlerResult(
            event=event,
            action=EdgeCaseAction.summarize(self.config.context_overflow_threshold // 2),
            should_continue=True,
            message="Context overflow detected, triggering summarization",
        )


class RateLimitHandler(BaseHandler):
    """Exponential backoff per key, doubling up to rate_limit_max_backoff_seconds."""

    edge_case_type = EdgeCaseType.RATE_LIMIT

    def handle(self, event: EdgeCaseEvent, now: datetime) -> HandlerResult:
        backoff, hits = self.counters.next_backoff(
            event.counter_key,
            self.config.rate_limit_initial_backoff_seconds,
            self.config.rate_limit_max_backoff_seconds,
            now,
        )
        event.resolution = EdgeCaseResolution.WAITING
        self._log("rate_limit_backoff", {"hit_count": hits, "backoff_seconds": backoff})
        return HandlerResult(
            event=event,
            action=EdgeCaseAction.backoff(backoff, self.config.rate_limit_max_backoff_seconds),
            should_continue=True,
            message=f"Rate limit hit (count: {hits}), backing off {backoff}s",
        )


class AuthErrorHandler(BaseHandler):
    """Auth and permission errors are never retried."""

    edge_case_type = EdgeCaseType.AUTH_ERROR

    def handle(self, event: EdgeCaseEvent, now: datetime) -> HandlerResult:
        return self._escalate(
            event,
            EscalationSeverity.CRITICAL,
            "Authentication or permission error requires manual intervention",
            "Auth error detected, immediate escalation required",
            now,
        )


# =============================================================================
# Classification
# =============================================================================


# Ordered: the first rule whose keyword appears in the lowercased message wins.
# Context-based conditions are checked alongside the keywords of the same rule.
CLASSIFICATION_KEYWORDS: list[tuple[EdgeCaseType, tuple[str, ...]]] = [
    (EdgeCaseType.MERGE_CONFLICT, ("merge conflict", "cannot be merged")),
    (EdgeCaseType.RATE_LIMIT, ("rate limit", "429")),
    (EdgeCaseType.TIMEOUT, ("timeout", "timed out")),
    (EdgeCaseType.FLAKY_TEST, ("flaky", "intermittent")),
    (EdgeCaseType.DELAYED_CI_REVIEW, ("copilot", "pending review", "review not ready")),
    (EdgeCaseType.SERVICE_DOWNTIME, ("service unavailable", "502", "503", "504")),
    (EdgeCaseType.DEPENDENCY_FAILURE, ("dependency", "depends on", "prerequisite failed")),
    (EdgeCaseType.REVIEW_PING_PONG, ("changes requested", "review iteration")),
    (EdgeCaseType.CONTEXT_OVERFLOW, ("context", "token limit", "too long")),
    (EdgeCaseType.AUTH_ERROR, ("unauthorized", "forbidden", "401", "403")),
    (EdgeCaseType.NETWORK_ERROR, ("network", "connection", "dns")),
]

REVIEW_COUNT_PING_PONG = 3


def _context_int(context: dict[str, Any], key: str) -> int:
    value = context.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def default_action(
    edge_case_type: EdgeCaseType,
    config: Optional[EdgeCaseConfig] = None,
) -> EdgeCaseAction:
    """Default policy for an edge case type, before any counters apply."""
    config = config or EdgeCaseConfig()
    if edge_case_type is EdgeCaseType.DELAYED_CI_REVIEW:
        return EdgeCaseAction.wait(
            config.delayed_review_wait_minutes * 60,
            config.delayed_review_check_interval_minutes * 60,
        )
    if edge_case_type is EdgeCaseType.MERGE_CONFLICT:
        return EdgeCaseAction.spawn_resolver("conflict_resolver")
    if edge_case_type is EdgeCaseType.FLAKY_TEST:
        return EdgeCaseAction.retry(config.flaky_test_max_retries, config.flaky_test_backoff_seconds)
    if edge_case_type is EdgeCaseType.SERVICE_DOWNTIME:
        return EdgeCaseAction.wait(
            config.service_downtime_wait_minutes * 60,
            config.service_downtime_check_interval_minutes * 60,
        )
    if edge_case_type is EdgeCaseType.DEPENDENCY_FAILURE:
        return EdgeCaseAction.block("Dependent story failed")
    if edge_case_type is EdgeCaseType.REVIEW_PING_PONG:
        return EdgeCaseAction.escalate(EscalationSeverity.HIGH, "Review iteration limit exceeded")
    if edge_case_type is EdgeCaseType.CONTEXT_OVERFLOW:
        return EdgeCaseAction.summarize(config.context_overflow_threshold // 2)
    if edge_case_type is EdgeCaseType.RATE_LIMIT:
        return EdgeCaseAction.backoff(
            config.rate_limit_initial_backoff_seconds,
            config.rate_limit_max_backoff_seconds,
        )
    if edge_case_type is EdgeCaseType.TIMEOUT:
        return EdgeCaseAction.retry(config.timeout_max_retries, config.timeout_backoff_seconds)
    if edge_case_type is EdgeCaseType.AUTH_ERROR:
        return EdgeCaseAction.escalate(EscalationSeverity.CRITICAL, "Authentication or permission error")
    if edge_case_type is EdgeCaseType.NETWORK_ERROR:
        return EdgeCaseAction.retry(config.network_max_retries, config.network_backoff_seconds)
    return EdgeCaseAction.log()


# =============================================================================
# Coordinator
# =============================================================================


class EdgeCaseCoordinator:
    """
    Classifies failures and routes them to handlers.

    This is the main entry point for edge case handling. It owns the counters
    for one orchestrator run and dispatches each event to the first handler
    that can handle it. Events no handler claims (type UNKNOWN) are logged
    and processing continues.
    """

    def __init__(
        self,
        config: Optional[EdgeCaseConfig] = None,
        logger: Optional[EventLogger] = None,
    ) -> None:
        self.config = config or EdgeCaseConfig()
        self._logger = logger
        self.counters = EdgeCaseCounters()

        self.handlers: list[BaseHandler] = [
            FlakyTestHandler(self.config, self.counters, logger),
            DelayedReviewHandler(self.config, self.counters, logger),
            MergeConflictHandler(self.config, self.counters, logger),
            ServiceDowntimeHandler(self.config, self.counters, logger),
            DependencyFailureHandler(self.config, self.counters, logger),
            ReviewPingPongHandler(self.config, self.counters, logger),
            ContextOverflowHandler(self.config, self.counters, logger),
            RateLimitHandler(self.config, self.counters, logger),
            TimeoutHandler(self.config, self.counters, logger),
            NetworkErrorHandler(self.config, self.counters, logger),
            AuthErrorHandler(self.config, self.counters, logger),
        ]

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "EdgeCaseCoordinator"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def classify(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
    ) -> EdgeCaseType:
        """
        Classify an error message into an edge case type.

        Args:
            message: Error message or other failure description.
            context: Extra signals: ``retry_count`` (presence marks a failed
                test as flaky), ``review_count`` and ``token_count``.

        Returns:
            The first matching EdgeCaseType, or UNKNOWN.
        """
        context = context or {}
        lowered = message.lower()

        for edge_case_type, keywords in CLASSIFICATION_KEYWORDS:
            if any(keyword in lowered for keyword in keywords):
                return edge_case_type
            if self._matches_context(edge_case_type, lowered, context):
                return edge_case_type

        return EdgeCaseType.UNKNOWN

    def _matches_context(
        self,
        edge_case_type: EdgeCaseType,
        lowered: str,
        context: dict[str, Any],
    ) -> bool:
        if edge_case_type is EdgeCaseType.FLAKY_TEST:
            return "test" in lowered and "failed" in lowered and "retry_count" in context
        if edge_case_type is EdgeCaseType.REVIEW_PING_PONG:
            return _context_int(context, "review_count") > REVIEW_COUNT_PING_PONG
        if edge_case_type is EdgeCaseType.CONTEXT_OVERFLOW:
            return _context_int(context, "token_count") > self.config.context_overflow_threshold
        return False

    def create_event(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        session_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        story_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EdgeCaseEvent:
        """Classify a failure and wrap it in a new pending event."""
        context = dict(context or {})
        edge_case_type = self.classify(message, context)
        event = EdgeCaseEvent(
            edge_case_type=edge_case_type,
            session_id=session_id,
            agent_id=agent_id,
            story_id=story_id,
            error_message=message,
            context=context,
            detected_at=now or utc_now(),
        )
        self._log("edge_case_detected", {
            "edge_case_type": edge_case_type.value,
            "session_id": session_id,
            "agent_id": agent_id,
            "story_id": story_id,
            "error_message": message[:200],
        })
        return event

    def handle(self, event: EdgeCaseEvent, now: Optional[datetime] = None) -> HandlerResult:
        """
        Find and run the handler for the event.

        Args:
            event: Event to handle; its retry_count, resolution,
                action_taken and resolved_at are updated in place.
            now: Current time; defaults to the wall clock.

        Returns:
            HandlerResult with the recommended action.
        """
        now = now or utc_now()
        self._log("dispatch_start", {
            "edge_case_type": event.edge_case_type.value,
            "counter_key": event.counter_key,
        }, level="debug")

        with self.counters.lock:
            result = self._dispatch(event, now)

        event.action_taken = str(result.action)
        self._log(
            "handler_result",
            {
                "edge_case_type": event.edge_case_type.value,
                "action": event.action_taken,
                "should_continue": result.should_continue,
                "resolution": event.resolution.value,
            },
            level="info" if result.should_continue else "warn",
        )
        return result

    def _dispatch(self, event: EdgeCaseEvent, now: datetime) -> HandlerResult:
        for handler in self.handlers:
            if handler.can_handle(event):
                self._log("handler_matched", {
                    "handler": handler.__class__.__name__,
                    "edge_case_type": event.edge_case_type.value,
                }, level="debug")
                return handler.handle(event, now)

        self._log("no_handler_found", {
            "edge_case_type": event.edge_case_type.value,
            "error_message": (event.error_message or "")[:200],
        }, level="warn")
        return HandlerResult(
            event=event,
            action=EdgeCaseAction.log(),
            should_continue=True,
            message="Unknown edge case, logging for analysis",
        )

    def recommended_action(self, edge_case_type: EdgeCaseType) -> EdgeCaseAction:
        return default_action(edge_case_type, self.config)

    def reset(self, session_id: Optional[str] = None, agent_id: Optional[str] = None) -> int:
        """Drop all counters for a session/agent pair; returns how many were dropped."""
        prefix = f"{session_id or 'none'}:{agent_id or 'none'}:"
        removed = self.counters.reset(prefix)
        self._log("counters_reset", {"prefix": prefix, "removed": removed}, level="debug")
        return removed

    def reset_rate_limit(self, key: str) -> bool:
        return self.counters.reset_rate_limit(key)

    def get_stats(self) -> EdgeCaseStats:
        return self.counters.stats()


# =============================================================================
# Learning
# =============================================================================


@dataclass
class EdgeCaseLearning:
    """
    Running record of how a recurring edge case pattern gets resolved.

    success_rate and avg_resolution_time_seconds are running means over
    the occurrences passed to record_occurrence().
    """

    edge_case_type: EdgeCaseType
    pattern: str
    success_rate: float = 0.0
    avg_resolution_time_seconds: Optional[float] = None
    recommended_action: str = ""
    occurrence_count: int = 0
    last_occurrence: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.recommended_action:
            self.recommended_action = str(default_action(self.edge_case_type))
        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at

    def record_occurrence(
        self,
        success: bool,
        resolution_time_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or utc_now()
        previous = self.occurrence_count
        self.occurrence_count += 1
        self.last_occurrence = now
        self.updated_at = now

        self.success_rate = (
            self.success_rate * previous + (1.0 if success else 0.0)
        ) / self.occurrence_count

        if resolution_time_seconds is not None:
            if self.avg_resolution_time_seconds is None:
                self.avg_resolution_time_seconds = float(resolution_time_seconds)
            else:
                self.avg_resolution_time_seconds = (
                    self.avg_resolution_time_seconds * previous + resolution_time_seconds
                ) / self.occurrence_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "edge_case_type": self.edge_case_type.value,
            "pattern": self.pattern,
            "success_rate": self.success_rate,
            "avg_resolution_time_seconds": self.avg_resolution_time_seconds,
            "recommended_action": self.recommended_action,
            "occurrence_count": self.occurrence_count,
            "last_occurrence": format_timestamp(self.last_occurrence),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EdgeCaseLearning:
        return cls(
            edge_case_type=EdgeCaseType.parse(data["edge_case_type"]),
            pattern=data.get("pattern", ""),
            success_rate=float(data.get("success_rate", 0.0)),
            avg_resolution_time_seconds=data.get("avg_resolution_time_seconds"),
            recommended_action=data.get("recommended_action", ""),
            occurrence_count=int(data.get("occurrence_count", 0)),
            last_occurrence=parse_timestamp(data.get("last_occurrence")),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            id=data.get("id"),
        )
