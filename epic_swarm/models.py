"""
Core data models for Epic Swarm.

This module defines the foundational data structures used throughout the system:
- ParseableEnum, the base for every enum that is persisted as a string
- Enums for epic, story and agent status
- Dataclasses for discovered epics/stories, work queue items and plans
- Timestamp helpers and JSON serialization support for all models
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from epic_swarm.errors import InvalidEnumValueError


# =============================================================================
# Timestamps
# =============================================================================


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as ISO 8601 with a trailing Z."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a timestamp written by format_timestamp."""
    if value is None or value == "":
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Enum base
# =============================================================================


class ParseableEnum(Enum):
    """
    Enum whose members are persisted by their string value.

    Lookup is case-insensitive and subclasses may accept extra spellings by
    overriding ``_aliases()``. ``parse()`` raises InvalidEnumValueError for
    anything unrecognized, so a corrupted record is a recoverable error.
    """

    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return {}

    @classmethod
    def _missing_(cls, value: object) -> Any:
        if not isinstance(value, str):
            return None
        key = value.strip().lower()
        for member in cls:
            if member.value == key:
                return member
        alias = cls._aliases().get(key)
        if alias is not None:
            return cls(alias)
        return None

    @classmethod
    def parse(cls, value: Any) -> Any:
        """Parse a string (or member) into a member of this enum."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidEnumValueError(cls.__name__, value) from None

    def __str__(self) -> str:
        return str(self.value)


class EpicProcessingStatus(ParseableEnum):
    """Status of an epic in autonomous processing."""
    PENDING = "pending"              # Not yet discovered/processed
    ANALYZING = "analyzing"          # Being analyzed
    PLANNED = "planned"              # Stories discovered, ready to execute
    IN_PROGRESS = "in_progress"      # Currently being executed
    COMPLETED = "completed"          # All stories completed
    BLOCKED = "blocked"              # Blocked due to issues
    SKIPPED = "skipped"              # Pattern didn't match


class StoryProcessingStatus(ParseableEnum):
    """
    Status of a story in autonomous processing.

    Stories are never deleted; they only move into one of the terminal
    statuses (completed, failed, blocked, skipped).
    """
    PENDING = "pending"                  # Not yet started
    WAITING = "waiting"                  # Waiting for dependencies
    IN_PROGRESS = "in_progress"          # Currently being executed
    AWAITING_REVIEW = "awaiting_review"  # Awaiting code review
    AWAITING_MERGE = "awaiting_merge"    # Awaiting PR merge
    COMPLETED = "completed"              # Successfully completed
    FAILED = "failed"                    # Failed
    BLOCKED = "blocked"                  # Blocked
    SKIPPED = "skipped"                  # Skipped (e.g., already done)

    @property
    def is_complete(self) -> bool:
        """Completed or skipped stories satisfy their dependents."""
        return self in (StoryProcessingStatus.COMPLETED, StoryProcessingStatus.SKIPPED)

    @property
    def is_terminal(self) -> bool:
        return self in (
            StoryProcessingStatus.COMPLETED,
            StoryProcessingStatus.FAILED,
            StoryProcessingStatus.BLOCKED,
            StoryProcessingStatus.SKIPPED,
        )

    @property
    def can_start(self) -> bool:
        return self is StoryProcessingStatus.PENDING


class AgentStatus(ParseableEnum):
    """Status signal reported by the agent doing the work."""
    COMPLETE = "complete"            # Agent completed its task
    BLOCKED = "blocked"              # Agent is blocked and needs intervention
    WAITING = "waiting"              # Agent is waiting for an external event
    NEEDS_INPUT = "needs_input"      # Agent needs more input/clarification
    ERROR = "error"                  # Agent encountered an error

    @classmethod
    def _aliases(cls) -> dict[str, str]:
        return _AGENT_STATUS_ALIASES


_AGENT_STATUS_ALIASES = {
    "completed": "complete",
    "done": "complete",
    "stuck": "blocked",
    "wait": "waiting",
    "pending": "waiting",
    "needsinput": "needs_input",
    "input_needed": "needs_input",
    "failed": "error",
    "failure": "error",
}


# =============================================================================
# Epics and stories
# =============================================================================


@dataclass
class DiscoveredStory:
    """A story parsed out of an epic document."""
    id: str                          # Story ID (e.g., "story-1")
    title: str
    number: int                      # Story number within the epic
    status: StoryProcessingStatus = StoryProcessingStatus.PENDING
    acceptance_criteria: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)  # Story IDs or full IDs
    complexity: Optional[int] = None  # 1-5
    assigned_agent: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.complexity is not None:
            self.complexity = max(1, min(5, int(self.complexity)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "number": self.number,
            "status": self.status.value,
            "acceptance_criteria": list(self.acceptance_criteria),
            "dependencies": list(self.dependencies),
            "complexity": self.complexity,
            "assigned_agent": self.assigned_agent,
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiscoveredStory:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            number=int(data.get("number", 0)),
            status=StoryProcessingStatus.parse(data.get("status", "pending")),
            acceptance_criteria=list(data.get("acceptance_criteria", [])),
            dependencies=list(data.get("dependencies", [])),
            complexity=data.get("complexity"),
            assigned_agent=data.get("assigned_agent"),
            started_at=parse_timestamp(data.get("started_at")),
            completed_at=parse_timestamp(data.get("completed_at")),
        )


@dataclass
class DiscoveredEpic:
    """An epic document and the stories found in it."""
    id: str                          # Epic ID (e.g., "epic-016")
    title: str
    file_path: Path
    priority: int = 0                # Lower = higher priority
    status: EpicProcessingStatus = EpicProcessingStatus.PENDING
    stories: list[DiscoveredStory] = field(default_factory=list)
    description: Optional[str] = None
    epic_dependencies: list[str] = field(default_factory=list)
    discovered_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        now = utc_now()
        if self.discovered_at is None:
            self.discovered_at = now
        if self.updated_at is None:
            self.updated_at = self.discovered_at

    def completed_count(self) -> int:
        return sum(1 for story in self.stories if story.status.is_complete)

    def total_count(self) -> int:
        return len(self.stories)

    def completion_percentage(self) -> float:
        if not self.stories:
            return 0.0
        return self.completed_count() / self.total_count() * 100.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "file_path": str(self.file_path),
            "priority": self.priority,
            "status": self.status.value,
            "stories": [story.to_dict() for story in self.stories],
            "description": self.description,
            "epic_dependencies": list(self.epic_dependencies),
            "discovered_at": format_timestamp(self.discovered_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiscoveredEpic:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            file_path=Path(data.get("file_path", "")),
            priority=int(data.get("priority", 0)),
            status=EpicProcessingStatus.parse(data.get("status", "pending")),
            stories=[DiscoveredStory.from_dict(s) for s in data.get("stories", [])],
            description=data.get("description"),
            epic_dependencies=list(data.get("epic_dependencies", [])),
            discovered_at=parse_timestamp(data.get("discovered_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


def qualify_story_id(epic_id: str, story_ref: str) -> str:
    """Turn a story reference into a full ``epic/story`` id."""
    if "/" in story_ref:
        return story_ref
    return f"{epic_id}/{story_ref}"


@dataclass
class WorkItem:
    """
    A story queued for autonomous processing.

    The full id (``epic/story``) is the key used by the dependency graph,
    the scheduler's completed set and every correlation key downstream.
    """
    epic_id: str
    story_id: str
    full_id: str
    title: str = ""
    priority: int = 0                # Lower = higher priority
    dependencies: list[str] = field(default_factory=list)  # Full IDs, in order
    status: StoryProcessingStatus = StoryProcessingStatus.PENDING
    queued_at: Optional[datetime] = None

    @classmethod
    def from_story(
        cls,
        epic_id: str,
        story: DiscoveredStory,
        now: Optional[datetime] = None,
    ) -> WorkItem:
        return cls(
            epic_id=epic_id,
            story_id=story.id,
            full_id=qualify_story_id(epic_id, story.id),
            title=story.title,
            priority=story.number,
            dependencies=[qualify_story_id(epic_id, dep) for dep in story.dependencies],
            status=story.status,
            queued_at=now or utc_now(),
        )

    def can_execute(self, completed: set[str]) -> bool:
        """Check if this item can start given the set of completed full ids."""
        if not self.status.can_start:
            return False
        return all(dep in completed for dep in self.dependencies)

    def to_dict(self) -> dict[str, Any]:
        return {
            "epic_id": self.epic_id,
            "story_id": self.story_id,
            "full_id": self.full_id,
            "title": self.title,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "status": self.status.value,
            "queued_at": format_timestamp(self.queued_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItem:
        return cls(
            epic_id=data["epic_id"],
            story_id=data["story_id"],
            full_id=data["full_id"],
            title=data.get("title", ""),
            priority=int(data.get("priority", 0)),
            dependencies=list(data.get("dependencies", [])),
            status=StoryProcessingStatus.parse(data.get("status", "pending")),
            queued_at=parse_timestamp(data.get("queued_at")),
        )


@dataclass
class ExecutionPlan:
    """Ordered plan of work produced from a set of epics."""
    epics: list[str] = field(default_factory=list)
    work_queue: list[WorkItem] = field(default_factory=list)
    estimated_minutes: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def total_stories(self) -> int:
        return len(self.work_queue)

    @property
    def dependency_count(self) -> int:
        return sum(len(item.dependencies) for item in self.work_queue)

    def summary(self) -> str:
        """Get summary for display."""
        return (
            f"Execution Plan: {len(self.epics)} epics, "
            f"{self.total_stories} stories, {self.dependency_count} dependencies"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "epics": list(self.epics),
            "work_queue": [item.to_dict() for item in self.work_queue],
            "total_stories": self.total_stories,
            "dependency_count": self.dependency_count,
            "estimated_minutes": self.estimated_minutes,
            "created_at": format_timestamp(self.created_at),
        }


# =============================================================================
# JSON helpers
# =============================================================================


class ModelEncoder(json.JSONEncoder):
    """JSON encoder that handles Epic Swarm model types."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, datetime):
            return format_timestamp(obj)
        if isinstance(obj, Path):
            return str(obj)
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def model_to_json(obj: Any, **kwargs: Any) -> str:
    """Serialize a model object to JSON string."""
    return json.dumps(obj, cls=ModelEncoder, **kwargs)


def model_from_json(json_str: str, model_class: type) -> Any:
    """Deserialize a JSON string to a model object."""
    data = json.loads(json_str)
    if hasattr(model_class, "from_dict"):
        return model_class.from_dict(data)
    return model_class(**data)
