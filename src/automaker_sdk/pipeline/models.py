from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field

PIPELINE_CONFIG_VERSION = "1.0"


class StepType(StrEnum):
    REVIEW = "review"
    SECURITY = "security"
    PERFORMANCE = "performance"
    TEST = "test"
    CUSTOM = "custom"


class StepStatus(StrEnum):
    """Lifecycle of one step for one feature."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ResultStatus(StrEnum):
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"


Severity = Literal["low", "medium", "high"]


class _CamelModel(BaseModel):
    """Accepts and (with ``by_alias=True``) emits camelCase JSON keys."""

    model_config = {"populate_by_name": True, "frozen": True}


class PipelineStepConfig(_CamelModel):
    """One configured step.  Immutable; never mutated during execution."""

    id: str = Field(min_length=1)
    type: StepType
    name: str
    description: str | None = None
    model: str = "same"
    """``same`` (feature model), ``different`` (alternate model) or a model id/alias."""
    required: bool = False
    auto_trigger: bool = Field(default=True, alias="autoTrigger")
    timeout: int | None = Field(default=None, ge=1)
    retries: int = Field(default=0, ge=0)
    max_loops: int = Field(default=1, ge=1, alias="maxLoops")
    loop_until_success: bool = Field(default=False, alias="loopUntilSuccess")
    memory_enabled: bool = Field(default=False, alias="memoryEnabled")
    dependencies: list[str] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)


class PipelineConfig(_CamelModel):
    version: str = PIPELINE_CONFIG_VERSION
    enabled: bool = False
    parallel: bool = False
    timeout: int | None = Field(default=None, ge=1)
    on_failure: Literal["stop", "continue", "skip-optional"] = Field(
        default="stop", alias="onFailure"
    )
    steps: list[PipelineStepConfig] = Field(default_factory=list)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PipelineIssue(BaseModel):
    hash: str
    summary: str
    location: str | None = None
    severity: Severity = "medium"


class PipelineArtifact(BaseModel):
    type: Literal["file", "url", "text"]
    content: str
    name: str
    location: str | None = None


class PipelineStepResult(BaseModel):
    status: ResultStatus
    output: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    artifacts: list[PipelineArtifact] = Field(default_factory=list)
    issues: list[PipelineIssue] = Field(default_factory=list)
    iterations: int = 0

    @property
    def passed(self) -> bool:
        return self.status == ResultStatus.PASSED


class Feature(BaseModel):
    """The subset of a board feature the orchestration layer reads."""

    model_config = {"extra": "allow", "populate_by_name": True}

    id: str
    title: str = ""
    description: str = ""
    model: str | None = None
    status: str = "backlog"
    branch_name: str | None = Field(default=None, alias="branchName")


class StepState(BaseModel):
    """Mutable execution record for a (feature, step) pair."""

    step_id: str
    feature_id: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    def touch_start(self) -> None:
        self.status = StepStatus.RUNNING
        self.started_at = datetime.now(timezone.utc)

    def touch_end(self, status: StepStatus, error: str | None = None) -> None:
        self.status = status
        self.error = error
        self.completed_at = datetime.now(timezone.utc)
