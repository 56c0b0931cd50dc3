"""Merge gatekeeper: watches PRs and merges them only when every gate passes.

Only PRs in the allow-listed repository are ever touched.  The repository is
checked before monitoring starts and again right before merging; a mismatch
always raises :class:`RepositoryNotAllowedError`.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

import structlog

from automaker_sdk.core.config import AutomakerConfig
from automaker_sdk.core.events import EventEmitter, safe_emit
from automaker_sdk.core.exceptions import MergeError, RepositoryNotAllowedError
from automaker_sdk.merge.models import (
    EligibilityChecks,
    MergeEligibility,
    MergeRequest,
    MergeStatus,
    PRStatus,
)
from automaker_sdk.utils.process import CommandRunner, run_command

logger = structlog.get_logger(__name__)

ALLOWED_REPOSITORY = "0xtsotsi/DevFlow"
POLL_INTERVAL = 30.0
REQUIRED_APPROVALS = 1
PR_VIEW_FIELDS = "title,state,url,mergeable,reviewDecision,statusCheckRollup,comments,reviews"

_CHECK_OK = {"SUCCESS", "NEUTRAL", "SKIPPED"}
_CHECK_FAILED = {"FAILURE", "ERROR", "CANCELLED", "TIMED_OUT", "ACTION_REQUIRED", "STARTUP_FAILURE"}


# ---------------------------------------------------------------------------
# gh JSON parsing
# ---------------------------------------------------------------------------


def _count(value: Any) -> int:
    """``gh`` reports connections either as a list or as ``{"totalCount": n}``."""
    if isinstance(value, list):
        return len(value)
    if isinstance(value, dict):
        return int(value.get("totalCount") or 0)
    return 0


def _rollup_state(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("state") or None
    if not isinstance(value, list) or not value:
        return None
    states = []
    for check in value:
        if not isinstance(check, dict):
            continue
        states.append(str(check.get("conclusion") or check.get("state") or "PENDING").upper())
    if any(state in _CHECK_FAILED for state in states):
        return "FAILURE"
    if states and all(state in _CHECK_OK for state in states):
        return "SUCCESS"
    return "PENDING"


def parse_pr_status(pr_number: int, repository: str, data: dict[str, Any]) -> PRStatus:
    reviews = data.get("reviews")
    approvals = 0
    if isinstance(reviews, list):
        approvals = sum(1 for r in reviews if isinstance(r, dict) and r.get("state") == "APPROVED")
    author = data.get("author")
    return PRStatus(
        number=pr_number,
        title=data.get("title") or "",
        url=data.get("url") or "",
        repository=repository,
        author=(author.get("login") or "") if isinstance(author, dict) else (author or ""),
        state=data.get("state") or "OPEN",
        mergeable=data.get("mergeable"),
        review_decision=data.get("reviewDecision") or None,
        ci_state=_rollup_state(data.get("statusCheckRollup")),
        comment_count=_count(data.get("comments")),
        review_count=_count(reviews),
        approval_count=approvals,
    )


def evaluate_eligibility(status: PRStatus) -> MergeEligibility:
    """Eligible only when CI passed, no comments, no change requests and enough approvals."""
    ci_passed = status.ci_state == "SUCCESS"
    no_comments = status.comment_count == 0
    no_requested_changes = status.review_decision != "CHANGES_REQUESTED"
    approvals = max(status.approval_count, 1 if status.review_decision == "APPROVED" else 0)

    reasons: list[str] = []
    if not ci_passed:
        reasons.append("CI checks must pass")
    if not no_comments:
        reasons.append("Unresolved comments present")
    if not no_requested_changes:
        reasons.append("Changes have been requested")
    if approvals < REQUIRED_APPROVALS:
        reasons.append(f"At least {REQUIRED_APPROVALS} approval required")

    return MergeEligibility(
        pr_number=status.number,
        repository=status.repository,
        is_eligible=not reasons,
        checks=EligibilityChecks(
            ci_passed=ci_passed,
            no_comments=no_comments,
            no_requested_changes=no_requested_changes,
            approvals=approvals,
            required_approvals=REQUIRED_APPROVALS,
        ),
        reasons=reasons,
    )


def merge_summary(pr_number: int, repository: str, approved_by: str) -> str:
    return (
        "## Auto-Merge Summary\n\n"
        f"**PR #{pr_number}** has been merged to `{repository}`.\n\n"
        "**Details:**\n"
        f"- Repository: {repository}\n"
        f"- Approved by: {approved_by}\n"
        f"- Merged at: {datetime.now(timezone.utc).isoformat()}\n\n"
        "Merged by the merge gatekeeper after:\n"
        "- All CI checks passed\n"
        "- No unresolved comments\n"
        "- No requested changes\n"
        "- Required approvals received\n"
    )


# ---------------------------------------------------------------------------
# Gatekeeper
# ---------------------------------------------------------------------------


class MergeGatekeeper:
    """Polls monitored PRs and performs approved merges through ``gh``.

    All state (poll tasks, merge records) is per instance; call
    :meth:`cleanup` to cancel every poll task.

    Args:
        runner: Command runner used for every ``gh`` call.
        emitter: Sink for ``merge-gatekeeper:*`` events.
        allowed_repository: Override of :data:`ALLOWED_REPOSITORY`.
        kanban_project_id: When set, kanban task updates are emitted.
        poll_interval: Seconds between eligibility checks.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        emitter: EventEmitter | None = None,
        allowed_repository: str | None = None,
        kanban_project_id: str | None = None,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self._run: CommandRunner = runner or run_command
        self._emitter = emitter
        self._allowed = allowed_repository or ALLOWED_REPOSITORY
        self._kanban_project_id = kanban_project_id
        self._poll_interval = poll_interval
        self._polls: dict[int, asyncio.Task[None]] = {}
        self._requests: dict[int, MergeRequest] = {}

    @classmethod
    def from_config(
        cls,
        config: AutomakerConfig,
        runner: CommandRunner | None = None,
        *,
        emitter: EventEmitter | None = None,
    ) -> MergeGatekeeper:
        """Gatekeeper using ``merge_repository`` and ``kanban_project_id`` from *config*."""
        return cls(
            runner,
            emitter=emitter,
            allowed_repository=config.merge_repository,
            kanban_project_id=config.kanban_project_id,
        )

    def __repr__(self) -> str:
        return f"MergeGatekeeper(repository={self._allowed!r}, monitoring={len(self._polls)})"

    @property
    def allowed_repository(self) -> str:
        return self._allowed

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        safe_emit(self._emitter, f"merge-gatekeeper:{event}", payload)

    # ------------------------------------------------------------------ #
    # Repository allow-list
    # ------------------------------------------------------------------ #

    def validate_repository(self, repository: str) -> bool:
        if repository.lower() != self._allowed.lower():
            logger.error(
                "merge_repository_rejected", repository=repository, allowed=self._allowed
            )
            return False
        return True

    def _require_repository(self, repository: str, action: str) -> None:
        if not self.validate_repository(repository):
            raise RepositoryNotAllowedError(
                f"Cannot {action} PR from {repository}. Only {self._allowed} is allowed.",
                code="REPOSITORY_NOT_ALLOWED",
                details={"repository": repository, "allowed": self._allowed},
            )

    # ------------------------------------------------------------------ #
    # Status
    # ------------------------------------------------------------------ #

    async def get_pr_status(self, pr_number: int, repository: str) -> PRStatus:
        """Fetch PR status with ``gh pr view``.

        Raises:
            RepositoryNotAllowedError: Before any command when *repository* is not allowed.
            MergeError: When ``gh`` fails or returns unparseable output.
        """
        self._require_repository(repository, "inspect")
        result = await self._run(
            ["gh", "pr", "view", str(pr_number), "--repo", repository, "--json", PR_VIEW_FIELDS]
        )
        if not result.ok:
            raise MergeError(
                f"Failed to fetch PR #{pr_number}: {result.stderr.strip() or result.returncode}",
                details={"pr_number": pr_number},
            )
        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise MergeError(f"Invalid gh output for PR #{pr_number}: {exc}") from exc
        return parse_pr_status(pr_number, repository, data if isinstance(data, dict) else {})

    async def check_merge_eligibility(self, pr_number: int, repository: str) -> MergeEligibility:
        """Eligibility verdict; never raises (failures become reasons)."""
        if not self.validate_repository(repository):
            return MergeEligibility(
                pr_number=pr_number,
                repository=repository,
                is_eligible=False,
                reasons=[f"Repository must be {self._allowed}"],
            )
        try:
            status = await self.get_pr_status(pr_number, repository)
        except MergeError as exc:
            logger.error("merge_eligibility_check_failed", pr_number=pr_number, error=str(exc))
            return MergeEligibility(
                pr_number=pr_number,
                repository=repository,
                is_eligible=False,
                reasons=["Failed to check PR status"],
            )
        return evaluate_eligibility(status)

    # ------------------------------------------------------------------ #
    # Monitoring
    # ------------------------------------------------------------------ #

    def is_monitoring(self, pr_number: int) -> bool:
        return pr_number in self._polls

    async def start_monitoring(self, pr_number: int, repository: str, requested_by: str) -> None:
        """Record a merge request and poll the PR until it becomes eligible.

        Raises:
            RepositoryNotAllowedError: On repository mismatch; nothing is scheduled.
        """
        self._require_repository(repository, "monitor")
        if pr_number in self._polls:
            logger.info("merge_already_monitoring", pr_number=pr_number)
            return

        status = await self.get_pr_status(pr_number, repository)
        request = MergeRequest(
            pr_number=pr_number,
            repository=repository,
            requested_by=requested_by,
            pr_title=status.title,
            pr_url=status.url,
        )
        self._requests[pr_number] = request
        request.status = MergeStatus.MONITORING
        self._emit(
            "monitoring-started",
            {"prNumber": pr_number, "repository": repository, "title": status.title},
        )
        self._polls[pr_number] = asyncio.create_task(self._poll(pr_number, repository))
        logger.info("merge_monitoring_started", pr_number=pr_number, repository=repository)
        await self._check_pr_status(pr_number, repository)

    def stop_monitoring(self, pr_number: int) -> None:
        task = self._polls.pop(pr_number, None)
        if task is None:
            return
        if task is not asyncio.current_task():
            task.cancel()
        logger.info("merge_monitoring_stopped", pr_number=pr_number)
        self._emit("monitoring-stopped", {"prNumber": pr_number})

    async def _poll(self, pr_number: int, repository: str) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            if self._polls.get(pr_number) is not asyncio.current_task():
                return
            await self._check_pr_status(pr_number, repository)
            if self._polls.get(pr_number) is not asyncio.current_task():
                return

    async def _check_pr_status(self, pr_number: int, repository: str) -> None:
        eligibility = await self.check_merge_eligibility(pr_number, repository)
        payload = {
            "prNumber": pr_number,
            "repository": repository,
            "eligibility": eligibility.model_dump(mode="json"),
        }
        if not eligibility.is_eligible:
            logger.debug("merge_not_ready", pr_number=pr_number, reasons=eligibility.reasons)
            self._emit("progress", payload)
            return

        self.stop_monitoring(pr_number)
        request = self._requests.get(pr_number)
        if request is not None and request.status == MergeStatus.MONITORING:
            request.status = MergeStatus.READY_FOR_MERGE
        logger.info("merge_ready", pr_number=pr_number)
        self._emit("ready-for-merge", payload)
        safe_emit(
            self._emitter,
            "desktop_notification",
            {
                "title": "Ready for Merge",
                "body": f"PR #{pr_number} is ready to merge!",
                "url": request.pr_url if request else None,
            },
        )
        self._update_kanban(pr_number, "inreview")

    # ------------------------------------------------------------------ #
    # Decisions
    # ------------------------------------------------------------------ #

    async def approve_merge(self, pr_number: int, repository: str, approved_by: str) -> None:
        """Merge the PR.  On failure the record keeps its status, ``error`` is emitted and the exception propagates.

        Raises:
            RepositoryNotAllowedError: On repository mismatch.
            MergeError: Without a merge record or when ``gh pr merge`` fails.
        """
        self._require_repository(repository, "merge")
        try:
            request = self._requests.get(pr_number)
            if request is None:
                raise MergeError(f"No merge request found for PR #{pr_number}")
            status = await self.get_pr_status(pr_number, repository)
            if status.repository.lower() != self._allowed.lower():
                raise RepositoryNotAllowedError(
                    f"PR repository mismatch. Expected {self._allowed}, got {status.repository}"
                )
            logger.info("merge_started", pr_number=pr_number, repository=repository)
            result = await self._run(
                [
                    "gh",
                    "pr",
                    "merge",
                    str(pr_number),
                    "--repo",
                    repository,
                    "--merge",
                    "--delete-branch",
                    "--subject",
                    f"Merge PR #{pr_number}",
                ]
            )
            if not result.ok:
                raise MergeError(
                    f"gh pr merge failed for PR #{pr_number}: {result.stderr.strip()}",
                    details={"returncode": result.returncode},
                )
        except (MergeError, RepositoryNotAllowedError) as exc:
            logger.error("merge_failed", pr_number=pr_number, error=str(exc))
            self._emit(
                "error", {"prNumber": pr_number, "repository": repository, "error": str(exc)}
            )
            raise

        request.status = MergeStatus.MERGED
        self.stop_monitoring(pr_number)
        logger.info("merge_completed", pr_number=pr_number, repository=repository)
        self._emit(
            "merged", {"prNumber": pr_number, "repository": repository, "approvedBy": approved_by}
        )
        self._update_kanban(pr_number, "done")
        await self._post_merge_summary(pr_number, repository, approved_by)

    async def _post_merge_summary(self, pr_number: int, repository: str, approved_by: str) -> None:
        result = await self._run(
            [
                "gh",
                "pr",
                "comment",
                str(pr_number),
                "--repo",
                repository,
                "--body",
                merge_summary(pr_number, repository, approved_by),
            ]
        )
        if not result.ok:
            logger.error("merge_summary_failed", pr_number=pr_number, error=result.stderr.strip())

    async def reject_merge(self, pr_number: int, reason: str) -> None:
        """Terminal from any state; polling always stops."""
        self.stop_monitoring(pr_number)
        request = self._requests.get(pr_number)
        if request is None:
            return
        request.status = MergeStatus.REJECTED
        logger.info("merge_rejected", pr_number=pr_number, reason=reason)
        self._emit("rejected", {"prNumber": pr_number, "reason": reason})
        self._update_kanban(pr_number, "cancelled")

    def get_merge_requests(self) -> list[MergeRequest]:
        return list(self._requests.values())

    def get_merge_request(self, pr_number: int) -> MergeRequest | None:
        return self._requests.get(pr_number)

    def _update_kanban(self, pr_number: int, status: str) -> None:
        if not self._kanban_project_id:
            logger.debug("kanban_not_configured", pr_number=pr_number)
            return
        request = self._requests.get(pr_number)
        if request is None:
            return
        self._emit(
            "kanban-task-update",
            {
                "projectId": self._kanban_project_id,
                "prNumber": pr_number,
                "title": f"Merge PR #{pr_number}: {request.pr_title}",
                "description": f"PR is ready for merge to {self._allowed}\n\n{request.pr_url}",
                "status": status,
            },
        )

    def cleanup(self) -> None:
        for pr_number in list(self._polls):
            self.stop_monitoring(pr_number)
        self._requests.clear()
