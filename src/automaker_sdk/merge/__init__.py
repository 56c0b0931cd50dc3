"""Merge gatekeeper: PR monitoring and allow-listed, gate-checked merges."""

from automaker_sdk.merge.gatekeeper import (
    ALLOWED_REPOSITORY,
    MergeGatekeeper,
    evaluate_eligibility,
    parse_pr_status,
)
from automaker_sdk.merge.models import EligibilityChecks, MergeEligibility, MergeRequest, MergeStatus, PRStatus

__all__ = [
    "ALLOWED_REPOSITORY",
    "EligibilityChecks",
    "MergeEligibility",
    "MergeGatekeeper",
    "MergeRequest",
    "MergeStatus",
    "PRStatus",
    "evaluate_eligibility",
    "parse_pr_status",
]
