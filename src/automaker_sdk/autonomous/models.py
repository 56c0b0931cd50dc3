"""Auto-mode models: usage snapshots, failure records and loop status."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from automaker_sdk.core.constants import ErrorType


class AutoModeEventType(StrEnum):
    """``type`` field of every ``auto-mode:event`` payload."""

    STARTED = "auto_mode_started"
    STOPPED = "auto_mode_stopped"
    IDLE = "auto_mode_idle"
    FEATURE_START = "auto_mode_feature_start"
    FEATURE_COMPLETE = "auto_mode_feature_complete"
    PROGRESS = "auto_mode_progress"
    ERROR = "auto_mode_error"
    PAUSED_FAILURES = "auto_mode_paused_failures"


class UsageSnapshot(BaseModel):
    """Provider usage as reported by a usage probe (percentages are 0-100)."""

    model_config = {"populate_by_name": True}

    session_percentage: float = Field(default=0, alias="sessionPercentage")
    weekly_percentage: float = Field(default=0, alias="weeklyPercentage")
    session_reset_time: datetime | None = Field(default=None, alias="sessionResetTime")
    weekly_reset_time: datetime | None = Field(default=None, alias="weeklyResetTime")
    session_tokens_used: int = Field(default=0, alias="sessionTokensUsed")
    session_limit: int = Field(default=0, alias="sessionLimit")
    session_reset_text: str = Field(default="", alias="sessionResetText")
    weekly_reset_text: str = Field(default="", alias="weeklyResetText")

    @property
    def session_exhausted(self) -> bool:
        return self.session_percentage >= 100

    @property
    def weekly_exhausted(self) -> bool:
        return self.weekly_percentage >= 100

    @property
    def is_exhausted(self) -> bool:
        return self.session_exhausted or self.weekly_exhausted

    def suggested_resume_at(self) -> datetime | None:
        """Reset time of an exhausted limit; the session window wins when both are."""
        if self.session_exhausted and self.session_reset_time is not None:
            return self.session_reset_time
        if self.weekly_exhausted and self.weekly_reset_time is not None:
            return self.weekly_reset_time
        return None


class FailureRecord(BaseModel):
    error_type: ErrorType | str = ErrorType.EXECUTION
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class FeatureOutcome(BaseModel):
    feature_id: str
    passes: bool
    message: str = ""
    error_type: ErrorType | None = None
    pipeline: dict[str, Any] = Field(default_factory=dict)
    """Step id → result status for the steps run after the feature."""


class AutoModeStatus(BaseModel):
    running: bool = False
    project_path: str | None = None
    max_concurrency: int = 0
    running_features: list[str] = Field(default_factory=list)
    paused: bool = False
    pause_reason: str | None = None
