"""
Error types for Epic Swarm.

This module provides:
- EpicSwarmError base class for everything raised by the decision core
- Structural errors (dependency cycles) that are fatal at discovery time
- Persisted-data errors (unknown enum strings, malformed structured reviews)

Signal-driven outcomes (CI failures, review verdicts, merge conflicts) are
never raised; they flow through the evaluator and state machine as data.
Operational failures are routed through the EdgeCaseCoordinator instead.
"""

from __future__ import annotations

from typing import Any, Optional


class EpicSwarmError(Exception):
    """Base exception for Epic Swarm."""

    pass


class DependencyCycleError(EpicSwarmError):
    """
    Raised when the story dependency graph contains a cycle.

    A cycle is structural: ordering never runs in its presence and the
    orchestrator must surface the path to a human instead of recovering.
    """

    def __init__(self, cycle: list[str], message: Optional[str] = None) -> None:
        self.cycle = list(cycle)
        if message is None:
            path = " -> ".join(self.cycle + self.cycle[:1])
            message = f"Dependency cycle detected: {path}"
        super().__init__(message)


class InvalidEnumValueError(EpicSwarmError, ValueError):
    """
    Raised when a persisted string does not name a known enum member.

    Subclasses ValueError so callers that already guard parsing with
    ``except ValueError`` keep working.
    """

    def __init__(self, enum_name: str, value: Any) -> None:
        self.enum_name = enum_name
        self.value = value
        super().__init__(f"Invalid {enum_name} value: {value!r}")


class ReviewParseError(EpicSwarmError):
    """Raised when a structured review payload cannot be parsed."""

    def __init__(self, message: str, raw_output: str = "") -> None:
        super().__init__(message)
        self.raw_output = raw_output
