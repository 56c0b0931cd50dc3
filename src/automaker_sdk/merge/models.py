from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class MergeStatus(StrEnum):
    """Monitored PR lifecycle: pending → monitoring → ready_for_merge → merged | rejected."""

    PENDING = "pending"
    MONITORING = "monitoring"
    READY_FOR_MERGE = "ready_for_merge"
    MERGED = "merged"
    REJECTED = "rejected"


class EligibilityChecks(BaseModel):
    ci_passed: bool = False
    no_comments: bool = False
    no_requested_changes: bool = False
    approvals: int = 0
    required_approvals: int = 1


class MergeEligibility(BaseModel):
    pr_number: int
    repository: str
    is_eligible: bool
    checks: EligibilityChecks = Field(default_factory=EligibilityChecks)
    reasons: list[str] = Field(default_factory=list)


class PRStatus(BaseModel):
    """Snapshot of ``gh pr view --json ...`` output; missing fields take defaults."""

    number: int
    title: str = ""
    url: str = ""
    repository: str
    author: str = ""
    state: str = "OPEN"
    mergeable: str | bool | None = None
    review_decision: str | None = None
    ci_state: str | None = None
    """Rollup of status checks: ``SUCCESS``, ``FAILURE``, ``PENDING`` or ``None``."""
    comment_count: int = 0
    review_count: int = 0
    approval_count: int = 0


class MergeRequest(BaseModel):
    pr_number: int
    repository: str
    requested_by: str
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: MergeStatus = MergeStatus.PENDING
    pr_title: str = ""
    pr_url: str = ""

    def to_event(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
