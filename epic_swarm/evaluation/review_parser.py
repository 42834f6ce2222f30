"""
Review output parsers.

Reviews arrive either as free text from an LLM reviewer or as a structured
JSON payload. Both are turned into a ReviewResult behind the ReviewParser
interface, so the evaluator never deals with raw review output.

Free-text conventions understood by TextReviewParser:

    src/lib.py:42: [HIGH] - Unchecked None return
    [CRITICAL] Token written to the log
    Verdict: CHANGES_REQUESTED
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from epic_swarm.errors import InvalidEnumValueError, ReviewParseError
from epic_swarm.evaluation.models import (
    ReviewIssue,
    ReviewIssueSeverity,
    ReviewResult,
    ReviewVerdict,
)


VERDICT_PATTERNS = [
    re.compile(r"\*\*verdict\*\*:\s*(\w+)", re.IGNORECASE),
    re.compile(r"verdict:\*{0,2}\s*(\w+)", re.IGNORECASE),
    re.compile(r"review\s+status:\s*(\w+)", re.IGNORECASE),
    re.compile(r"overall:\s*(\w+)", re.IGNORECASE),
]

LOCATION_ISSUE_RE = re.compile(
    r"^([^\s:]+\.[a-zA-Z]+):(\d+):\s*\[?(critical|high|medium|low|nitpick|nit)\]?\s*[-:]?\s*(.+?)$",
    re.IGNORECASE | re.MULTILINE,
)

STANDALONE_ISSUE_RE = re.compile(
    r"^[ \t]*\[?(critical|high|medium|low|nitpick|nit)\b\]?[ \t]*[-:]?[ \t]*(.+?)$",
    re.IGNORECASE | re.MULTILINE,
)


class ReviewParser(ABC):
    """Turns raw review output into a ReviewResult."""

    @abstractmethod
    def parse(self, output: str) -> ReviewResult:
        """Parse review output."""
        pass


class TextReviewParser(ReviewParser):
    """
    Parser for free-text reviews.

    The verdict comes from the first explicit marker that names a known
    verdict (``**Verdict**:``, ``Verdict:``, ``Review status:``,
    ``Overall:``); without one it is inferred from keywords. Issues are
    ``file:line: [severity] text`` lines first, then standalone
    ``[severity] text`` lines.
    """

    def __init__(self, reviewer: Optional[str] = None) -> None:
        self.reviewer = reviewer

    def parse(
        self,
        output: str,
        iteration: int = 1,
        reviewed_at: Optional[datetime] = None,
    ) -> ReviewResult:
        return ReviewResult(
            verdict=self.extract_verdict(output),
            issues=self.extract_issues(output),
            reviewer=self.reviewer,
            reviewed_at=reviewed_at,
            iteration=iteration,
            raw_output=output,
        )

    def extract_verdict(self, output: str) -> ReviewVerdict:
        for pattern in VERDICT_PATTERNS:
            match = pattern.search(output)
            if not match:
                continue
            try:
                return ReviewVerdict.parse(match.group(1))
            except InvalidEnumValueError:
                continue

        lowered = output.lower()
        if "approved" in lowered or "lgtm" in lowered:
            return ReviewVerdict.APPROVED
        if (
            "changes requested" in lowered
            or "request changes" in lowered
            or "needs changes" in lowered
        ):
            return ReviewVerdict.CHANGES_REQUESTED
        if "needs discussion" in lowered or "discuss" in lowered:
            return ReviewVerdict.NEEDS_DISCUSSION
        return ReviewVerdict.PENDING

    def extract_issues(self, output: str) -> list[ReviewIssue]:
        issues: list[ReviewIssue] = []
        consumed: list[tuple[int, int]] = []

        for match in LOCATION_ISSUE_RE.finditer(output):
            description = match.group(4).strip()
            if not description:
                continue
            issues.append(ReviewIssue(
                severity=ReviewIssueSeverity.parse(match.group(3)),
                description=description,
                file_path=match.group(1),
                line_number=int(match.group(2)),
            ))
            consumed.append(match.span())

        for match in STANDALONE_ISSUE_RE.finditer(output):
            start, end = match.span()
            if any(start < c_end and end > c_start for c_start, c_end in consumed):
                continue
            description = match.group(2).strip()
            # Descriptions with a colon are usually locations or headings
            if not description or ":" in description:
                continue
            issues.append(ReviewIssue(
                severity=ReviewIssueSeverity.parse(match.group(1)),
                description=description,
            ))

        return issues


class JsonReviewParser(ReviewParser):
    """
    Parser for structured reviews.

    Expects an object like::

        {"verdict": "changes_requested",
         "issues": [{"severity": "high", "description": "...",
                     "file": "src/a.py", "line": 3, "suggestion": "..."}]}

    The object may be embedded in surrounding text.

    Raises:
        ReviewParseError: If no JSON object can be decoded or a field has the
            wrong shape.
        InvalidEnumValueError: If a verdict or severity string is unknown.
    """

    def __init__(self, reviewer: Optional[str] = None) -> None:
        self.reviewer = reviewer

    def parse(
        self,
        output: str,
        iteration: Optional[int] = None,
        reviewed_at: Optional[datetime] = None,
    ) -> ReviewResult:
        data = self._load(output)

        raw_issues = data.get("issues") or []
        if not isinstance(raw_issues, list):
            raise ReviewParseError("Review 'issues' must be a list", raw_output=output)

        issues = [self._parse_issue(raw, output) for raw in raw_issues]
        if iteration is None:
            iteration = int(data.get("iteration", 1))

        return ReviewResult(
            verdict=ReviewVerdict.parse(data.get("verdict", "pending")),
            issues=issues,
            reviewer=data.get("reviewer", self.reviewer),
            reviewed_at=reviewed_at,
            iteration=iteration,
            raw_output=output,
        )

    def _load(self, output: str) -> dict[str, Any]:
        try:
            json_match = re.search(r"\{[\s\S]*\}", output)
            if json_match:
                data = json.loads(json_match.group())
            else:
                data = json.loads(output)
        except json.JSONDecodeError as e:
            raise ReviewParseError(f"Invalid review JSON: {e}", raw_output=output)

        if not isinstance(data, dict):
            raise ReviewParseError("Review JSON must be an object", raw_output=output)
        return data

    def _parse_issue(self, raw: Any, output: str) -> ReviewIssue:
        if not isinstance(raw, dict):
            raise ReviewParseError("Review issue must be an object", raw_output=output)
        if "severity" not in raw:
            raise ReviewParseError("Review issue is missing 'severity'", raw_output=output)

        line = raw.get("line", raw.get("line_number"))
        try:
            line_number = int(line) if line is not None else None
        except (TypeError, ValueError):
            raise ReviewParseError(f"Invalid line number: {line!r}", raw_output=output)

        return ReviewIssue(
            severity=ReviewIssueSeverity.parse(raw["severity"]),
            description=str(raw.get("description", "")),
            file_path=raw.get("file", raw.get("file_path")),
            line_number=line_number,
            suggestion=raw.get("suggestion"),
            category=raw.get("category"),
        )


def parse_review_output(output: str) -> ReviewResult:
    """Parse free-text review output with the default text parser."""
    return TextReviewParser().parse(output)
