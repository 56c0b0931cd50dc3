from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field

IssueSeverity = Literal["error", "warning", "info"]


class ReviewCheck(StrEnum):
    TYPESCRIPT = "typescript"
    BUILD = "build"
    PATTERNS = "patterns"


DEFAULT_CHECKS: tuple[ReviewCheck, ...] = (
    ReviewCheck.TYPESCRIPT,
    ReviewCheck.BUILD,
    ReviewCheck.PATTERNS,
)


class ReviewEventType(StrEnum):
    START = "review_start"
    PROGRESS = "review_progress"
    COMPLETE = "review_complete"
    ERROR = "review_error"


class ReviewIssue(BaseModel):
    severity: IssueSeverity = "error"
    message: str
    file: str | None = None
    line: int | None = None
    column: int | None = None
    code: str | None = None

    @property
    def blocking(self) -> bool:
        """Errors and warnings are handed to the fixer; info is advisory."""
        return self.severity in ("error", "warning")

    def describe(self, index: int) -> str:
        text = f"{index}. [{self.severity.upper()}] {self.message}"
        if self.file:
            text += f"\n   File: {self.file}"
            if self.line:
                text += f":{self.line}"
            if self.column:
                text += f":{self.column}"
        if self.code:
            text += f"\n   Code: {self.code}"
        return text


class CheckResult(BaseModel):
    name: ReviewCheck
    passed: bool
    duration_ms: int = 0
    issues: list[ReviewIssue] = Field(default_factory=list)

    @classmethod
    def from_issues(cls, name: ReviewCheck, issues: list[ReviewIssue], duration_ms: int = 0) -> CheckResult:
        """A check passes unless at least one issue is an error."""
        return cls(
            name=name,
            passed=not any(issue.severity == "error" for issue in issues),
            duration_ms=duration_ms,
            issues=issues,
        )


class ReviewResults(BaseModel):
    overall_pass: bool = True
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    checks: list[CheckResult] = Field(default_factory=list)

    def add(self, result: CheckResult) -> None:
        self.checks.append(result)
        if not result.passed:
            self.overall_pass = False

    def blocking_issues(self) -> list[tuple[ReviewCheck, ReviewIssue]]:
        return [(check.name, issue) for check in self.checks for issue in check.issues if issue.blocking]


class ReviewOutcome(BaseModel):
    success: bool
    results: ReviewResults | None = None
    error: str | None = None
    attempts: int = 0
    max_attempts_reached: bool = False


class FixResult(BaseModel):
    success: bool
    error: str | None = None
