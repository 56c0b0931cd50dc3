from __future__ import annotations

import re

import structlog

from automaker_sdk.autonomous.models import FailureRecord
from automaker_sdk.core.constants import ErrorType

logger = structlog.get_logger(__name__)

CONSECUTIVE_FAILURE_THRESHOLD = 3

_IMMEDIATE_TYPES = {ErrorType.QUOTA_EXHAUSTED, ErrorType.RATE_LIMIT}
_AMBIGUOUS_EXIT = re.compile(r"process exited with code", re.IGNORECASE)


class FailureTracker:
    """Decides when auto-mode should pause.

    Quota and rate-limit failures (and ambiguous CLI exits, which are
    usually a hidden usage limit) pause immediately; anything else pauses
    after *threshold* consecutive failures.  A success resets the count.
    """

    def __init__(self, threshold: int = CONSECUTIVE_FAILURE_THRESHOLD) -> None:
        self._threshold = threshold
        self._failures: list[FailureRecord] = []

    @property
    def consecutive_failures(self) -> int:
        return len(self._failures)

    @property
    def last_failure(self) -> FailureRecord | None:
        return self._failures[-1] if self._failures else None

    @staticmethod
    def is_immediate(failure: FailureRecord) -> bool:
        return failure.error_type in _IMMEDIATE_TYPES or bool(_AMBIGUOUS_EXIT.search(failure.message))

    def track(self, failure: FailureRecord) -> bool:
        """Record *failure*; returns ``True`` when the loop should pause."""
        if failure.error_type == ErrorType.ABORTED:
            return False
        self._failures.append(failure)
        if self.is_immediate(failure):
            logger.warning("auto_mode_immediate_pause", error_type=str(failure.error_type))
            return True
        if len(self._failures) >= self._threshold:
            logger.warning("auto_mode_failure_threshold", failures=len(self._failures))
            return True
        return False

    def record_success(self) -> None:
        self._failures.clear()

    reset = record_success
