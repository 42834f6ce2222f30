"""
Planning utilities for Epic Swarm.

This module provides:
- StoryDependencyGraph: dependency ordering, executable set and cycle detection
- EpicDiscoveryService: epic markdown parsing, work queue and execution plan
- WorkScheduler: thread-safe scheduling over the graph and completed set
"""

from epic_swarm.planning.dependency_graph import StoryDependencyGraph
from epic_swarm.planning.discovery import EpicDiscoveryService
from epic_swarm.planning.scheduler import WorkScheduler

__all__ = ["StoryDependencyGraph", "EpicDiscoveryService", "WorkScheduler"]
