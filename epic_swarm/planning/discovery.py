"""
Epic discovery for Epic Swarm.

Epics are markdown documents. Each one has a ``# Title`` heading, an optional
``## Overview`` section and a list of stories:

    ### Story 2: Persist sessions
    Depends on: Story 1, epic-003/story-4
    Complexity: 3

    **Acceptance Criteria:**
    - [ ] Sessions survive a restart
    - [x] Schema migration added

Discovery turns a directory of these into DiscoveredEpic objects, and the
epics into a dependency-ordered work queue and an execution plan.
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from epic_swarm.config import DiscoveryConfig
from epic_swarm.models import (
    DiscoveredEpic,
    DiscoveredStory,
    EpicProcessingStatus,
    ExecutionPlan,
    WorkItem,
    utc_now,
)
from epic_swarm.planning.dependency_graph import StoryDependencyGraph

if TYPE_CHECKING:
    from epic_swarm.logger import EventLogger


STORY_HEADING_RE = re.compile(r"###\s+Story\s+(\d+)[:\s]+(.+)")
DEPENDENCY_LINE_RE = re.compile(r"^(?:depends\s+on|dependencies)\s*:\s*(.*)$", re.IGNORECASE)
STORY_REF_RE = re.compile(r"\bstory[\s-]+(\d+)\b", re.IGNORECASE)
FULL_ID_RE = re.compile(r"([\w.-]+/story-\d+)")
COMPLEXITY_LINE_RE = re.compile(r"^complexity\s*:\s*(\d+)", re.IGNORECASE)


def _strip_markup(line: str) -> str:
    """Drop list bullets and bold markers around a line."""
    if line.startswith("- "):
        line = line[2:]
    return line.replace("**", "").strip()


def _extract_criterion(line: str) -> Optional[str]:
    if line.startswith("- [ ] "):
        return line[6:].strip()
    if line.startswith("- [x] ") or line.startswith("- [X] "):
        return line[6:].strip()
    if line.startswith("- ") and not line.startswith("- ["):
        return line[2:].strip()
    return None


def _parse_dependency_refs(text: str) -> list[str]:
    """
    Parse the right-hand side of a dependency line.

    "Story 1, epic-003/story-4" -> ["story-1", "epic-003/story-4"]
    """
    refs: list[str] = []
    consumed: list[tuple[int, int]] = []
    for match in FULL_ID_RE.finditer(text):
        refs.append(match.group(1))
        consumed.append(match.span())
    for match in STORY_REF_RE.finditer(text):
        start, end = match.span()
        if any(start < c_end and end > c_start for c_start, c_end in consumed):
            continue
        refs.append(f"story-{int(match.group(1))}")

    deduped: list[str] = []
    for ref in refs:
        if ref not in deduped:
            deduped.append(ref)
    return deduped


class _StoryBuilder:
    def __init__(self, number: int, title: str) -> None:
        self.number = number
        self.title = title
        self.criteria: list[str] = []
        self.dependencies: list[str] = []
        self.complexity: Optional[int] = None

    def build(self) -> DiscoveredStory:
        return DiscoveredStory(
            id=f"story-{self.number}",
            title=self.title,
            number=self.number,
            acceptance_criteria=self.criteria,
            dependencies=self.dependencies,
            complexity=self.complexity,
        )


class EpicDiscoveryService:
    """
    Finds epic documents and plans the work they describe.

    Args:
        config: Discovery configuration (directory, glob, id regex, skips).
        logger: Optional EventLogger for discovery events.
    """

    def __init__(
        self,
        config: Optional[DiscoveryConfig] = None,
        logger: Optional[EventLogger] = None,
    ) -> None:
        self.config = config or DiscoveryConfig()
        self._logger = logger
        self._id_re = re.compile(self.config.id_pattern)

    def _log(self, event_type: str, data: dict[str, Any], level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    # =========================================================================
    # Parsing
    # =========================================================================

    def parse_epic(
        self,
        epic_id: str,
        content: str,
        file_path: Path,
        now: Optional[datetime] = None,
    ) -> DiscoveredEpic:
        """Parse epic markdown into a planned DiscoveredEpic."""
        now = now or utc_now()
        epic = DiscoveredEpic(
            id=epic_id,
            title=self._extract_title(content) or "",
            file_path=Path(file_path),
            description=self._extract_overview(content),
            stories=self._extract_stories(content),
            status=EpicProcessingStatus.PLANNED,
            discovered_at=now,
            updated_at=now,
        )
        return epic

    def _extract_title(self, content: str) -> Optional[str]:
        for line in content.splitlines():
            trimmed = line.strip()
            if trimmed.startswith("# "):
                return trimmed[2:].strip()
        return None

    def _extract_overview(self, content: str) -> Optional[str]:
        in_overview = False
        overview_lines: list[str] = []

        for line in content.splitlines():
            trimmed = line.strip()
            if trimmed.startswith("## Overview"):
                in_overview = True
                continue
            if in_overview:
                if trimmed.startswith("## "):
                    break
                if trimmed:
                    overview_lines.append(trimmed)

        return " ".join(overview_lines) if overview_lines else None

    def _extract_stories(self, content: str) -> list[DiscoveredStory]:
        stories: list[DiscoveredStory] = []
        current: Optional[_StoryBuilder] = None
        in_criteria = False

        for line in content.splitlines():
            trimmed = line.strip()

            if trimmed.startswith("### Story "):
                if current is not None:
                    stories.append(current.build())
                    current = None
                match = STORY_HEADING_RE.search(trimmed)
                if match:
                    current = _StoryBuilder(int(match.group(1)), match.group(2).strip())
                in_criteria = False
                continue

            if trimmed.startswith("**Acceptance Criteria:**") or trimmed.startswith("Acceptance Criteria:"):
                in_criteria = True
                continue

            if trimmed.startswith("### ") or trimmed.startswith("## "):
                if current is not None and trimmed.startswith("## "):
                    # A new top-level section ends the story list
                    stories.append(current.build())
                    current = None
                in_criteria = False
                continue

            if current is None:
                continue

            plain = _strip_markup(trimmed)
            dep_match = DEPENDENCY_LINE_RE.match(plain)
            if dep_match:
                for ref in _parse_dependency_refs(dep_match.group(1)):
                    if ref not in current.dependencies:
                        current.dependencies.append(ref)
                continue

            complexity_match = COMPLEXITY_LINE_RE.match(plain)
            if complexity_match:
                current.complexity = int(complexity_match.group(1))
                continue

            if in_criteria:
                criterion = _extract_criterion(trimmed)
                if criterion:
                    current.criteria.append(criterion)

        if current is not None:
            stories.append(current.build())

        return stories

    # =========================================================================
    # Discovery
    # =========================================================================

    def matches_pattern(self, epic_id: str, pattern: str) -> bool:
        """Glob-like match: ``*``, exact, ``prefix*`` or ``*suffix``."""
        if pattern == "*":
            return True
        if pattern == epic_id:
            return True
        if pattern.endswith("*"):
            return epic_id.startswith(pattern[:-1])
        if pattern.startswith("*"):
            return epic_id.endswith(pattern[1:])
        return False

    def epic_id_for(self, file_path: Path) -> str:
        """Epic id from the file name, falling back to the stem."""
        match = self._id_re.search(file_path.stem)
        if match:
            return match.group(0)
        return file_path.stem

    def discover(
        self,
        root: Path,
        include_pattern: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[DiscoveredEpic]:
        """
        Scan ``<root>/<epics_dir>`` for epic files.

        Args:
            root: Repository root.
            include_pattern: Optional pattern an epic id must match.
            now: Discovery timestamp.

        Returns:
            Parsed epics ordered by id. Missing directory yields [].
        """
        epics_dir = Path(root) / self.config.epics_dir
        if not epics_dir.is_dir():
            self._log("epics_dir_missing", {"path": str(epics_dir)}, level="warn")
            return []

        epics: list[DiscoveredEpic] = []
        for file_path in sorted(epics_dir.glob(self.config.file_pattern)):
            if not file_path.is_file():
                continue
            epic_id = self.epic_id_for(file_path)
            if any(self.matches_pattern(epic_id, p) for p in self.config.skip_patterns):
                self._log("epic_skipped", {"epic_id": epic_id, "reason": "skip_pattern"})
                continue
            if include_pattern and not self.matches_pattern(epic_id, include_pattern):
                continue

            content = file_path.read_text(encoding="utf-8")
            epic = self.parse_epic(epic_id, content, file_path, now=now)
            self._log("epic_discovered", {
                "epic_id": epic.id,
                "title": epic.title,
                "stories": epic.total_count(),
            })
            epics.append(epic)

        epics.sort(key=lambda e: e.id)
        return epics

    # =========================================================================
    # Planning
    # =========================================================================

    def build_work_queue(
        self,
        epics: list[DiscoveredEpic],
        now: Optional[datetime] = None,
    ) -> tuple[list[WorkItem], StoryDependencyGraph]:
        """
        Flatten epics into a work queue in dependency order.

        Raises:
            DependencyCycleError: If the stories' dependencies form a cycle.
        """
        now = now or utc_now()
        queue: list[WorkItem] = []
        graph = StoryDependencyGraph()

        for epic in epics:
            for story in epic.stories:
                item = WorkItem.from_story(epic.id, story, now=now)
                graph.add_story(item.full_id, item.dependencies)
                queue.append(item)

        order = {story_id: i for i, story_id in enumerate(graph.topological_order())}
        queue.sort(key=lambda item: order.get(item.full_id, len(order)))
        return queue, graph

    def create_execution_plan(
        self,
        epics: list[DiscoveredEpic],
        now: Optional[datetime] = None,
    ) -> ExecutionPlan:
        now = now or utc_now()
        queue, _ = self.build_work_queue(epics, now=now)
        plan = ExecutionPlan(
            epics=[epic.id for epic in epics],
            work_queue=queue,
            estimated_minutes=self.config.minutes_per_story * len(queue),
            created_at=now,
        )
        self._log("execution_plan_created", {
            "epics": plan.epics,
            "total_stories": plan.total_stories,
            "dependency_count": plan.dependency_count,
        })
        return plan
