"""
Thread-safe work scheduler for Epic Swarm.

The scheduler owns the work queue and the set of completed stories. It is
the single writer for both: every status change goes through one of its
``mark_*`` methods while holding its lock, so the executable set it reports
is always consistent with the completed set.
"""

from __future__ import annotations

import threading
from collections import Counter
from typing import TYPE_CHECKING, Any, Iterable, Optional

from epic_swarm.models import StoryProcessingStatus, WorkItem
from epic_swarm.planning.dependency_graph import StoryDependencyGraph

if TYPE_CHECKING:
    from epic_swarm.logger import EventLogger


_STARTABLE = (StoryProcessingStatus.PENDING, StoryProcessingStatus.WAITING)


class WorkScheduler:
    """
    Hands out stories whose dependencies are done.

    Completed and skipped stories satisfy their dependents. A failed story
    blocks every story downstream of it that has not started yet.

    Args:
        items: Work items to schedule. Their dependency graph must be acyclic.
        completed: Extra full ids to treat as already completed (e.g. stories
            finished in an earlier run).
        logger: Optional EventLogger.

    Raises:
        DependencyCycleError: If the items' dependencies form a cycle.
    """

    def __init__(
        self,
        items: Iterable[WorkItem],
        completed: Optional[Iterable[str]] = None,
        logger: Optional[EventLogger] = None,
    ) -> None:
        # Thread-safe queue and completed-set storage
        self._lock = threading.RLock()
        self._logger = logger
        self._items: dict[str, WorkItem] = {}
        for item in items:
            self._items[item.full_id] = item

        self._graph = StoryDependencyGraph(self._items.values())
        self._order = self._graph.topological_order()
        self._position = {story_id: i for i, story_id in enumerate(self._order)}

        self._completed: set[str] = set(completed or [])
        for item in self._items.values():
            if item.status.is_complete:
                self._completed.add(item.full_id)

    def _log(self, event_type: str, data: dict[str, Any], level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    @property
    def graph(self) -> StoryDependencyGraph:
        return self._graph

    @property
    def completed(self) -> set[str]:
        with self._lock:
            return set(self._completed)

    def get(self, full_id: str) -> Optional[WorkItem]:
        with self._lock:
            return self._items.get(full_id)

    def ordered_queue(self) -> list[WorkItem]:
        """All items in dependency order."""
        with self._lock:
            return [self._items[story_id] for story_id in self._order]

    def executable(self, limit: Optional[int] = None) -> list[WorkItem]:
        """
        Items that can start now, in dependency order.

        Args:
            limit: Maximum number of items to return.
        """
        with self._lock:
            ready = [
                self._items[story_id]
                for story_id in self._order
                if self._items[story_id].status in _STARTABLE
                and self._graph.dependencies_satisfied(story_id, self._completed)
            ]
        if limit is not None:
            ready = ready[:limit]
        return ready

    def mark_started(self, full_id: str) -> bool:
        """
        Move an executable item to in_progress.

        Returns:
            False if the item is unknown, not startable or still has
            unsatisfied dependencies.
        """
        with self._lock:
            item = self._items.get(full_id)
            if item is None or item.status not in _STARTABLE:
                return False
            if not self._graph.dependencies_satisfied(full_id, self._completed):
                return False
            item.status = StoryProcessingStatus.IN_PROGRESS
        self._log("story_started", {"story_id": full_id})
        return True

    def mark_status(self, full_id: str, status: StoryProcessingStatus) -> None:
        """Set an item's status, keeping the completed set in step."""
        with self._lock:
            item = self._items[full_id]
            item.status = status
            if status.is_complete:
                self._completed.add(full_id)
            else:
                self._completed.discard(full_id)
        self._log("story_status_changed", {"story_id": full_id, "status": status.value})

    def mark_completed(self, full_id: str) -> list[WorkItem]:
        """
        Mark an item completed.

        Returns:
            Items that became executable because of this completion.
        """
        with self._lock:
            before = {item.full_id for item in self.executable()}
            self.mark_status(full_id, StoryProcessingStatus.COMPLETED)
            unlocked = [item for item in self.executable() if item.full_id not in before]
        return unlocked

    def mark_failed(self, full_id: str, reason: str = "") -> list[str]:
        """
        Mark an item failed and block everything downstream that has not started.

        Returns:
            Full ids of the items that were blocked, sorted.
        """
        blocked: list[str] = []
        with self._lock:
            self.mark_status(full_id, StoryProcessingStatus.FAILED)
            for dependent in sorted(self._graph.get_transitive_dependents(full_id)):
                item = self._items.get(dependent)
                if item is not None and item.status in _STARTABLE:
                    item.status = StoryProcessingStatus.BLOCKED
                    blocked.append(dependent)

        self._log("story_failed", {
            "story_id": full_id,
            "reason": reason,
            "blocked": blocked,
        }, level="warn")
        return blocked

    def sync_waiting(self) -> list[str]:
        """
        Flip startable items between pending and waiting.

        Pending means every dependency is satisfied; waiting means at least
        one is not.

        Returns:
            Full ids whose status changed.
        """
        changed: list[str] = []
        with self._lock:
            for story_id in self._order:
                item = self._items[story_id]
                if item.status not in _STARTABLE:
                    continue
                if self._graph.dependencies_satisfied(story_id, self._completed):
                    target = StoryProcessingStatus.PENDING
                else:
                    target = StoryProcessingStatus.WAITING
                if item.status is not target:
                    item.status = target
                    changed.append(story_id)
        return changed

    def is_finished(self) -> bool:
        with self._lock:
            return all(item.status.is_terminal for item in self._items.values())

    def summary(self) -> dict[str, int]:
        """Count of items per status value."""
        with self._lock:
            counts = Counter(item.status.value for item in self._items.values())
        return dict(sorted(counts.items()))

    def __len__(self) -> int:
        return len(self._items)
