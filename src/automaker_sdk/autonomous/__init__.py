"""Auto-mode: unattended feature implementation with usage and failure pauses."""

from automaker_sdk.autonomous.auto_mode import AutoModeService, UsageProvider, build_feature_prompt
from automaker_sdk.autonomous.failures import CONSECUTIVE_FAILURE_THRESHOLD, FailureTracker
from automaker_sdk.autonomous.models import (
    AutoModeEventType,
    AutoModeStatus,
    FailureRecord,
    FeatureOutcome,
    UsageSnapshot,
)

__all__ = [
    "AutoModeEventType",
    "AutoModeService",
    "AutoModeStatus",
    "CONSECUTIVE_FAILURE_THRESHOLD",
    "FailureRecord",
    "FailureTracker",
    "FeatureOutcome",
    "UsageProvider",
    "UsageSnapshot",
    "build_feature_prompt",
]
