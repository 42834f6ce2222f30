"""
Structured JSONL logging for Epic Swarm.

Every component that makes a decision (scheduler, evaluator, PR workflow,
edge-case coordinator) takes an optional EventLogger and writes one JSON
line per event. Lines are grouped into daily files per scope:

    <swarm_dir>/logs/<scope>-YYYY-MM-DD.jsonl

Entries can carry correlation keys (session, epic, story, agent, PR number)
so the trail of a single story or pull request can be pulled back out of a
scope's logs with read_logs(story_id=...) or read_logs(pr_number=...).
"""

from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from epic_swarm.config import EpicSwarmConfig, get_config
from epic_swarm.models import ModelEncoder, format_timestamp, utc_now


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# Keys accepted by EventLogger.correlate(), written at the top of each entry
CORRELATION_KEYS = ("session_id", "epic_id", "story_id", "agent_id", "pr_number")

CorrelationValue = Union[str, int]


class EventLogger:
    """
    JSONL event logger for one scope (a command, an epic or a component).

    Each entry is a JSON object with:
    - timestamp: UTC ISO timestamp ending in Z
    - level: debug, info, warn or error
    - event_type: what happened, e.g. "pr_state_changed"
    - scope: the logger's scope id
    - data: event payload
    - any correlation keys active at the time of the call
    """

    def __init__(self, scope_id: str, config: Optional[EpicSwarmConfig] = None) -> None:
        self.scope_id = scope_id
        self._config = config
        self._correlation: dict[str, CorrelationValue] = {}
        self._write_lock = threading.Lock()

    @property
    def config(self) -> EpicSwarmConfig:
        """Get configuration (lazy load)."""
        if self._config is None:
            self._config = get_config()
        return self._config

    @property
    def correlation(self) -> dict[str, CorrelationValue]:
        """Correlation keys currently attached to every entry."""
        return dict(self._correlation)

    def _file_stem(self) -> str:
        # Scope ids like "epic-1/story-2" must not create subdirectories
        return self.scope_id.replace("/", "_")

    def log_path(self, date: Optional[str] = None) -> Path:
        """Path of the log file for a date (YYYY-MM-DD), today by default."""
        date = date or utc_now().strftime("%Y-%m-%d")
        return self.config.logs_path / f"{self._file_stem()}-{date}.jsonl"

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Append an event to today's file.

        Args:
            event_type: Type of event (e.g., "story_completed", "handler_result").
            data: Event payload.
            level: Log level (debug, info, warn, error).
        """
        entry: dict[str, Any] = {
            "timestamp": format_timestamp(utc_now()),
            "level": level,
            "event_type": event_type,
            "scope": self.scope_id,
        }
        entry.update(self._correlation)
        entry["data"] = data or {}

        path = self.log_path()
        line = json.dumps(entry, cls=ModelEncoder, default=str)
        with self._write_lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                f.write(line + "\n")

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.ERROR)

    @contextmanager
    def correlate(self, **keys: Optional[CorrelationValue]) -> Iterator[EventLogger]:
        """
        Attach correlation keys to every entry logged inside the block.

        Contexts nest: inner keys are added to (or override) the outer ones
        and the outer set is restored on exit. None values are ignored.

        Example:
            with logger.correlate(story_id="epic-1/story-2", pr_number=42):
                manager.advance(context)

        Raises:
            ValueError: If a key is not one of CORRELATION_KEYS.
        """
        unknown = sorted(set(keys) - set(CORRELATION_KEYS))
        if unknown:
            raise ValueError(f"Unknown correlation keys: {', '.join(unknown)}")

        previous = self._correlation
        merged = dict(previous)
        merged.update({k: v for k, v in keys.items() if v is not None})
        self._correlation = merged
        try:
            yield self
        finally:
            self._correlation = previous

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: Optional[int] = None,
        **correlation: CorrelationValue,
    ) -> list[dict[str, Any]]:
        """
        Read entries from one day's file, oldest first.

        Args:
            date: Date string (YYYY-MM-DD). Defaults to today.
            level: Only entries at this level.
            event_type: Only entries of this type.
            limit: Maximum number of entries to return.
            **correlation: Correlation keys the entries must carry,
                e.g. story_id="epic-1/story-2".
        """
        log_path = self.log_path(date)
        if not log_path.exists():
            return []

        entries = []
        for line in log_path.read_text().splitlines():
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue

            if level and entry.get("level") != level:
                continue
            if event_type and entry.get("event_type") != event_type:
                continue
            if any(entry.get(key) != value for key, value in correlation.items()):
                continue

            entries.append(entry)
            if limit and len(entries) >= limit:
                break

        return entries

    def get_log_files(self) -> list[Path]:
        """All log files for this scope, newest first."""
        logs_dir = self.config.logs_path
        if not logs_dir.exists():
            return []
        return sorted(logs_dir.glob(f"{self._file_stem()}-*.jsonl"), reverse=True)


# Module-level logger cache
_logger_cache: dict[str, EventLogger] = {}


def get_logger(scope_id: str, config: Optional[EpicSwarmConfig] = None) -> EventLogger:
    """Get or create a logger for a scope."""
    if scope_id not in _logger_cache:
        _logger_cache[scope_id] = EventLogger(scope_id, config)
    return _logger_cache[scope_id]


def clear_logger_cache() -> None:
    """Clear the logger cache. Useful for testing."""
    global _logger_cache
    _logger_cache = {}
