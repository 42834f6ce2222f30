"""Tests for the text and JSON review parsers."""
import json

import pytest

from epic_swarm.errors import InvalidEnumValueError, ReviewParseError
from epic_swarm.evaluation.models import ReviewIssueSeverity, ReviewVerdict
from epic_swarm.evaluation.review_parser import (
    JsonReviewParser,
    TextReviewParser,
    parse_review_output,
)


@pytest.fixture
def parser():
    return TextReviewParser(reviewer="claude")


# =============================================================================
# Text reviews
# =============================================================================


class TestTextVerdict:

    @pytest.mark.parametrize("output,expected", [
        ("Verdict: APPROVED", ReviewVerdict.APPROVED),
        ("**Verdict**: changes_requested", ReviewVerdict.CHANGES_REQUESTED),
        ("Verdict:** NEEDS_DISCUSSION", ReviewVerdict.NEEDS_DISCUSSION),
        ("Review status: lgtm", ReviewVerdict.APPROVED),
        ("Overall: reject", ReviewVerdict.CHANGES_REQUESTED),
    ])
    def test_explicit_markers(self, parser, output, expected):
        assert parser.extract_verdict(output) is expected

    def test_unknown_marker_falls_through_to_keywords(self, parser):
        assert parser.extract_verdict("Verdict: maybe\nLooks fine, approved.") is ReviewVerdict.APPROVED

    @pytest.mark.parametrize("output,expected", [
        ("LGTM, ship it", ReviewVerdict.APPROVED),
        ("I request changes to the error handling.", ReviewVerdict.CHANGES_REQUESTED),
        ("This needs discussion with the team.", ReviewVerdict.NEEDS_DISCUSSION),
        ("Still reading the diff.", ReviewVerdict.PENDING),
    ])
    def test_keyword_inference(self, parser, output, expected):
        assert parser.extract_verdict(output) is expected


class TestTextIssues:

    def test_standalone_issues(self, parser):
        result = parser.parse("[CRITICAL] X\n[HIGH] Y\nVerdict: CHANGES_REQUESTED")

        assert result.verdict is ReviewVerdict.CHANGES_REQUESTED
        assert [(i.severity, i.description) for i in result.issues] == [
            (ReviewIssueSeverity.CRITICAL, "X"),
            (ReviewIssueSeverity.HIGH, "Y"),
        ]
        assert result.has_blocking_issues()

    def test_located_issue(self, parser):
        result = parser.parse("src/lib.py:42: [HIGH] - Unchecked None return")

        issue = result.issues[0]
        assert len(result.issues) == 1
        assert issue.file_path == "src/lib.py"
        assert issue.line_number == 42
        assert issue.location == "src/lib.py:42"
        assert issue.description == "Unchecked None return"

    def test_located_and_standalone_mixed(self, parser):
        output = "\n".join([
            "Summary of review",
            "app/models.py:7: medium - Field is never read",
            "[NIT] Trailing whitespace",
            "Low - rename the helper",
        ])

        issues = parser.parse(output).issues

        assert [i.severity for i in issues] == [
            ReviewIssueSeverity.MEDIUM,
            ReviewIssueSeverity.NITPICK,
            ReviewIssueSeverity.LOW,
        ]
        assert issues[0].file_path == "app/models.py"
        assert issues[1].file_path is None

    def test_descriptions_with_colon_are_ignored(self, parser):
        assert parser.parse("High: priority items: none").issues == []

    def test_result_metadata(self, parser, now):
        result = parser.parse("Verdict: APPROVED", iteration=3, reviewed_at=now)

        assert result.reviewer == "claude"
        assert result.iteration == 3
        assert result.reviewed_at == now
        assert result.raw_output == "Verdict: APPROVED"
        assert result.issues == []

    def test_module_helper_uses_text_parser(self):
        assert parse_review_output("LGTM").verdict is ReviewVerdict.APPROVED


# =============================================================================
# JSON reviews
# =============================================================================


class TestJsonReviewParser:

    def test_embedded_object(self):
        payload = {
            "verdict": "changes_requested",
            "iteration": 2,
            "issues": [
                {"severity": "high", "description": "SQL built by string concat",
                 "file": "db.py", "line": "12", "suggestion": "Use parameters"},
                {"severity": "nit", "description": "Typo"},
            ],
        }
        output = f"Here is the review:\n{json.dumps(payload)}\nThanks."

        result = JsonReviewParser(reviewer="bot").parse(output)

        assert result.verdict is ReviewVerdict.CHANGES_REQUESTED
        assert result.iteration == 2
        assert result.reviewer == "bot"
        assert result.issues[0].line_number == 12
        assert result.issues[0].suggestion == "Use parameters"
        assert result.issues[1].severity is ReviewIssueSeverity.NITPICK
        assert [i.description for i in result.blocking_issues()] == ["SQL built by string concat"]

    def test_missing_verdict_is_pending(self):
        assert JsonReviewParser().parse("{}").verdict is ReviewVerdict.PENDING

    def test_explicit_iteration_wins(self):
        result = JsonReviewParser().parse('{"verdict": "approved", "iteration": 5}', iteration=1)
        assert result.iteration == 1

    @pytest.mark.parametrize("output,fragment", [
        ("no json here", "Invalid review JSON"),
        ("[1, 2, 3]", "must be an object"),
        ('{"issues": {"severity": "high"}}', "must be a list"),
        ('{"issues": ["high"]}', "must be an object"),
        ('{"issues": [{"description": "no severity"}]}', "severity"),
        ('{"issues": [{"severity": "low", "line": "twelve"}]}', "line number"),
    ])
    def test_malformed_payloads(self, output, fragment):
        with pytest.raises(ReviewParseError, match=fragment) as exc_info:
            JsonReviewParser().parse(output)
        assert exc_info.value.raw_output == output

    def test_unknown_severity(self):
        with pytest.raises(InvalidEnumValueError):
            JsonReviewParser().parse('{"issues": [{"severity": "urgent"}]}')

    def test_unknown_verdict(self):
        with pytest.raises(InvalidEnumValueError):
            JsonReviewParser().parse('{"verdict": "shrug"}')
