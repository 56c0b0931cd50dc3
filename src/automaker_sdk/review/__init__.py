"""Code review: TypeScript, build and pattern checks with agent-driven fixes."""

from automaker_sdk.review.checks import analyze_file_patterns, get_changed_files, parse_tsc_output
from automaker_sdk.review.models import (
    DEFAULT_CHECKS,
    CheckResult,
    FixResult,
    ReviewCheck,
    ReviewEventType,
    ReviewIssue,
    ReviewOutcome,
    ReviewResults,
)
from automaker_sdk.review.service import CodeReviewService

__all__ = [
    "DEFAULT_CHECKS",
    "CheckResult",
    "CodeReviewService",
    "FixResult",
    "ReviewCheck",
    "ReviewEventType",
    "ReviewIssue",
    "ReviewOutcome",
    "ReviewResults",
    "analyze_file_patterns",
    "get_changed_files",
    "parse_tsc_output",
]
