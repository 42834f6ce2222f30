"""
Work completion evaluation for Epic Swarm.

This module provides:
- WorkEvaluator: decides whether a story is done from agent, CI, review and PR signals
- ReviewParser implementations for free-text and JSON reviews
- Signal and result types (CI checks, review issues, evaluation results)
"""

from epic_swarm.evaluation.evaluator import WorkEvaluator
from epic_swarm.evaluation.models import (
    CiAggregateStatus,
    CiCheckResult,
    CiStatus,
    CriterionCheck,
    FeedbackItem,
    FeedbackType,
    PrMergeStatus,
    ReviewIssue,
    ReviewIssueSeverity,
    ReviewResult,
    ReviewVerdict,
    StoryEvaluationRecord,
    WorkCompletionStatus,
    WorkEvaluationResult,
)
from epic_swarm.evaluation.review_parser import (
    JsonReviewParser,
    ReviewParser,
    TextReviewParser,
)

__all__ = [
    "CiAggregateStatus",
    "CiCheckResult",
    "CiStatus",
    "CriterionCheck",
    "FeedbackItem",
    "FeedbackType",
    "JsonReviewParser",
    "PrMergeStatus",
    "ReviewIssue",
    "ReviewIssueSeverity",
    "ReviewParser",
    "ReviewResult",
    "ReviewVerdict",
    "StoryEvaluationRecord",
    "TextReviewParser",
    "WorkCompletionStatus",
    "WorkEvaluationResult",
    "WorkEvaluator",
]
