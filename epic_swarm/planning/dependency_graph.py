"""
Story dependency graph for Epic Swarm.

This module tracks which stories depend on which, keyed by full story id
(``epic-001/story-2``). It answers three questions for the scheduler:

- which stories can run now, given the set of completed stories
- in what order the whole set can run (dependencies first)
- whether the graph contains a cycle, and if so along which path

A story may depend on an id that is not itself in the graph (for example a
story from an epic that was skipped). Such unknown ids never block ordering,
but they still have to be in the completed set before the dependent story is
returned as executable.
"""

from __future__ import annotations

import heapq
from collections import defaultdict
from typing import TYPE_CHECKING, Iterable, Iterator, Optional

from epic_swarm.errors import DependencyCycleError

if TYPE_CHECKING:
    from epic_swarm.models import WorkItem


class StoryDependencyGraph:
    """
    Forward and inverse dependency maps for stories.

    Example:
        epic-1/story-1: no deps
        epic-1/story-2: deps on story-1
        epic-1/story-3: deps on story-1 and story-2

        get_executable(set())                  -> ["epic-1/story-1"]
        get_executable({"epic-1/story-1"})     -> ["epic-1/story-2"]
        topological_order()                    -> story-1, story-2, story-3
    """

    def __init__(self, items: Optional[Iterable[WorkItem]] = None) -> None:
        # story id -> ordered direct dependency ids
        self._dependencies: dict[str, list[str]] = {}
        # dependency id -> ids of stories that directly depend on it
        self._dependents: dict[str, set[str]] = defaultdict(set)
        # Cache for transitive deps (invalidated on modifications)
        self._transitive_cache: dict[str, set[str]] = {}

        if items:
            for item in items:
                self.add_story(item.full_id, item.dependencies)

    def add_story(self, story_id: str, dependencies: Iterable[str]) -> None:
        """
        Add a story and its direct dependencies.

        Re-adding a story replaces its dependency list.
        """
        for old_dep in self._dependencies.get(story_id, []):
            self._dependents[old_dep].discard(story_id)

        deps: list[str] = []
        for dep in dependencies:
            if dep not in deps:
                deps.append(dep)
        self._dependencies[story_id] = deps
        for dep in deps:
            self._dependents[dep].add(story_id)

        self._transitive_cache.clear()

    def __contains__(self, story_id: object) -> bool:
        return story_id in self._dependencies

    def __len__(self) -> int:
        return len(self._dependencies)

    def stories(self) -> list[str]:
        """All known story ids, sorted."""
        return sorted(self._dependencies)

    def get_dependencies(self, story_id: str) -> list[str]:
        return list(self._dependencies.get(story_id, []))

    def get_dependents(self, story_id: str) -> list[str]:
        return sorted(self._dependents.get(story_id, set()))

    def get_transitive_dependencies(self, story_id: str) -> set[str]:
        """
        Get all stories this story transitively depends on.

        Does NOT include the story itself.
        """
        if story_id in self._transitive_cache:
            return self._transitive_cache[story_id].copy()

        visited: set[str] = set()
        stack = [story_id]
        while stack:
            node = stack.pop()
            if node in visited:
                continue
            visited.add(node)
            for dep in self._dependencies.get(node, []):
                if dep not in visited:
                    stack.append(dep)
        visited.discard(story_id)

        self._transitive_cache[story_id] = visited
        return visited.copy()

    def get_transitive_dependents(self, story_id: str) -> set[str]:
        """
        Get all stories that transitively depend on a given story.

        Used to cascade a failure to everything downstream of it.
        """
        visited: set[str] = set()
        stack = [story_id]
        while stack:
            node = stack.pop()
            if node in visited:
                continue
            visited.add(node)
            for dependent in self._dependents.get(node, set()):
                if dependent not in visited:
                    stack.append(dependent)
        visited.discard(story_id)
        return visited

    def dependencies_satisfied(self, story_id: str, completed: set[str]) -> bool:
        return all(dep in completed for dep in self._dependencies.get(story_id, []))

    def get_executable(self, completed: set[str]) -> list[str]:
        """
        Stories that are not yet completed and whose dependencies are.

        Returns:
            Story ids in lexicographic order.
        """
        return sorted(
            story_id
            for story_id, deps in self._dependencies.items()
            if story_id not in completed and all(dep in completed for dep in deps)
        )

    def detect_cycle(self) -> Optional[list[str]]:
        """
        Find a dependency cycle, if any.

        Depth-first search over stories in sorted order, tracking the current
        recursion stack. Revisiting a story that is still on the stack closes
        a cycle; the path from that story to the current one is returned.

        Returns:
            The cycle path (e.g. ["a", "b", "c"] for a -> b -> c -> a),
            or None if the graph is acyclic.
        """
        visited: set[str] = set()
        on_stack: set[str] = set()
        path: list[str] = []

        for root in sorted(self._dependencies):
            if root in visited:
                continue
            # Explicit frames so long chains don't hit the recursion limit
            frames: list[tuple[str, Iterator[str]]] = []
            visited.add(root)
            on_stack.add(root)
            path.append(root)
            frames.append((root, iter(self._dependencies.get(root, []))))
            while frames:
                node, deps = frames[-1]
                advanced = False
                for dep in deps:
                    if dep in on_stack:
                        return path[path.index(dep):]
                    if dep not in visited and dep in self._dependencies:
                        visited.add(dep)
                        on_stack.add(dep)
                        path.append(dep)
                        frames.append((dep, iter(self._dependencies.get(dep, []))))
                        advanced = True
                        break
                if not advanced:
                    frames.pop()
                    on_stack.discard(node)
                    path.pop()
        return None

    def has_cycle(self) -> bool:
        return self.detect_cycle() is not None

    def topological_order(self) -> list[str]:
        """
        Return stories in dependency order (dependencies first).

        Kahn's algorithm with a min-heap so ties between ready stories are
        always broken by lexicographic id. Only dependencies that are
        themselves known stories count toward in-degree.

        Raises:
            DependencyCycleError: If the graph contains a cycle.
        """
        cycle = self.detect_cycle()
        if cycle is not None:
            raise DependencyCycleError(cycle)

        in_degree: dict[str, int] = {
            story_id: sum(1 for dep in deps if dep in self._dependencies)
            for story_id, deps in self._dependencies.items()
        }
        ready = [story_id for story_id, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)

        result: list[str] = []
        while ready:
            node = heapq.heappop(ready)
            result.append(node)
            for dependent in self._dependents.get(node, set()):
                if dependent not in in_degree:
                    continue
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(result) != len(self._dependencies):
            # detect_cycle and Kahn disagree only if the graph changed mid-call
            raise DependencyCycleError(
                [s for s, degree in sorted(in_degree.items()) if degree > 0]
            )
        return result

    def __repr__(self) -> str:
        return f"StoryDependencyGraph(stories={len(self._dependencies)})"
