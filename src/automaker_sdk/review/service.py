"""Code review service: static checks with optional agent-driven fixes."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

import structlog

from automaker_sdk.core.cancellation import CancellationToken
from automaker_sdk.core.config import AutomakerConfig
from automaker_sdk.core.constants import BlockType, MessageType, ProviderName
from automaker_sdk.core.events import EventEmitter, safe_emit
from automaker_sdk.core.exceptions import AutomakerError, ReviewError
from automaker_sdk.providers.factory import ProviderFactory
from automaker_sdk.query.model_resolver import DEFAULT_MODELS, resolve_model_string
from automaker_sdk.query.provider_query import (
    ProviderQueryOptions,
    QueryAccumulator,
    execute_provider_query,
)
from automaker_sdk.review.checks import (
    get_changed_files,
    run_build_check,
    run_pattern_analysis,
    run_typescript_check,
)
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
from automaker_sdk.utils.process import CommandRunner, run_command

logger = structlog.get_logger(__name__)

CODE_REVIEW_EVENT = "code-review:event"
MAX_FIX_ATTEMPTS = 5
FIX_MAX_TURNS = 50
FIX_TOOLS = ["Read", "Write", "Edit", "Glob", "Grep", "Bash"]
FIX_SYSTEM_PROMPT = (
    "You are an expert code reviewer and fixer. Your job is to fix issues found during "
    "automated code review. Be precise and surgical in your fixes - only change what's "
    "necessary to fix the issues. Always verify your changes work correctly."
)

_AGENT_MODELS: dict[str, str] = {
    "codex": DEFAULT_MODELS[ProviderName.CODEX],
}

_CHECK_MESSAGES: dict[ReviewCheck, str] = {
    ReviewCheck.TYPESCRIPT: "Running TypeScript type check...",
    ReviewCheck.BUILD: "Running build verification...",
    ReviewCheck.PATTERNS: "Running pattern analysis...",
}


def resolve_agent_model(agent: str) -> str:
    """``opus`` / ``sonnet`` / ``codex`` or a full model id."""
    return _AGENT_MODELS.get(agent) or resolve_model_string(agent)


def build_fix_prompt(issues: list[ReviewIssue]) -> str:
    descriptions = "\n\n".join(issue.describe(i) for i, issue in enumerate(issues, start=1))
    return (
        "You are a code review assistant. The following issues were found during code review "
        "and need to be fixed:\n\n"
        f"{descriptions}\n\n"
        "Please fix ALL of these issues. For each issue:\n"
        "1. Read the relevant file(s)\n"
        "2. Make the necessary changes to fix the issue\n"
        "3. Ensure the fix doesn't break other functionality\n\n"
        "Focus on:\n"
        "- TypeScript errors: Fix type mismatches, missing types, incorrect imports\n"
        "- Build errors: Fix syntax errors, missing dependencies, configuration issues\n"
        "- Pattern warnings: Refactor code to follow best practices\n\n"
        "After fixing, verify your changes compile by running appropriate checks."
    )


class CodeReviewService:
    """Runs review checks per feature and, optionally, asks an agent to fix findings.

    Running reviews are tracked per instance by feature id so they can be
    stopped with :meth:`stop_review`.
    """

    def __init__(
        self,
        emitter: EventEmitter | None = None,
        *,
        runner: CommandRunner | None = None,
        config: AutomakerConfig | None = None,
        factory: ProviderFactory | None = None,
        max_fix_attempts: int = MAX_FIX_ATTEMPTS,
    ) -> None:
        self._emitter = emitter
        self._run: CommandRunner = runner or run_command
        self._config = config or AutomakerConfig.from_env()
        self._factory = factory or ProviderFactory()
        self._max_fix_attempts = max_fix_attempts
        self._running: dict[str, CancellationToken] = {}

    def _emit(self, event_type: ReviewEventType, feature_id: str, **payload: Any) -> None:
        safe_emit(
            self._emitter,
            CODE_REVIEW_EVENT,
            {"type": event_type.value, "featureId": feature_id, **payload},
        )

    def _progress(self, feature_id: str, check: str, message: str) -> None:
        self._emit(ReviewEventType.PROGRESS, feature_id, check=check, message=message)

    def is_reviewing(self, feature_id: str) -> bool:
        return feature_id in self._running

    # ------------------------------------------------------------------ #
    # Review
    # ------------------------------------------------------------------ #

    async def _run_check(self, project_path: str, check: ReviewCheck) -> CheckResult:
        if check == ReviewCheck.TYPESCRIPT:
            return await run_typescript_check(project_path, self._run)
        if check == ReviewCheck.BUILD:
            return await run_build_check(project_path, self._run)
        files = await get_changed_files(project_path, self._run)
        return await run_pattern_analysis(project_path, files)

    async def run_review(
        self,
        project_path: str | Path,
        feature_id: str,
        checks: Iterable[ReviewCheck | str] = DEFAULT_CHECKS,
    ) -> ReviewOutcome:
        """Run *checks* in order and report the combined verdict.

        Failures are reported through the outcome and a ``review_error``
        event rather than raised.
        """
        project = str(project_path)
        selected = [ReviewCheck(check) for check in checks]
        token = CancellationToken()
        self._running[feature_id] = token
        results = ReviewResults()
        logger.info("review_start", feature_id=feature_id, checks=[c.value for c in selected])

        try:
            self._emit(ReviewEventType.START, feature_id, projectPath=project)
            for check in selected:
                if token.cancelled:
                    raise ReviewError("Review was stopped", code="ABORTED")
                self._progress(feature_id, check.value, _CHECK_MESSAGES[check])
                results.add(await self._run_check(project, check))
            self._emit(ReviewEventType.COMPLETE, feature_id, results=results.model_dump(mode="json"))
            logger.info("review_complete", feature_id=feature_id, passed=results.overall_pass)
            return ReviewOutcome(success=True, results=results)
        except (ReviewError, OSError) as exc:
            logger.error("review_error", feature_id=feature_id, error=str(exc))
            self._emit(ReviewEventType.ERROR, feature_id, error=str(exc))
            return ReviewOutcome(success=False, error=str(exc))
        finally:
            if self._running.get(feature_id) is token:
                del self._running[feature_id]

    async def run_review_with_fixes(
        self,
        project_path: str | Path,
        feature_id: str,
        checks: Iterable[ReviewCheck | str] = DEFAULT_CHECKS,
        agent: str = "opus",
    ) -> ReviewOutcome:
        """Review, fix blocking issues, and re-review until passing or out of attempts.

        A review left with only info-level issues counts as passed.
        """
        selected = [ReviewCheck(check) for check in checks]
        limit = self._max_fix_attempts
        last: ReviewResults | None = None

        for attempt in range(1, limit + 1):
            logger.info("review_attempt", feature_id=feature_id, attempt=attempt, limit=limit)
            self._progress(feature_id, "review", f"Running review (attempt {attempt}/{limit})...")
            outcome = await self.run_review(project_path, feature_id, selected)
            if not outcome.success or outcome.results is None:
                return outcome.model_copy(update={"attempts": attempt})

            last = outcome.results
            if last.overall_pass:
                self._progress(feature_id, "complete", f"Review passed on attempt {attempt}!")
                return ReviewOutcome(success=True, results=last, attempts=attempt)

            if attempt >= limit:
                break

            blocking = [issue for _, issue in last.blocking_issues()]
            if not blocking:
                logger.info("review_only_info_issues", feature_id=feature_id)
                last.overall_pass = True
                return ReviewOutcome(success=True, results=last, attempts=attempt)

            self._progress(feature_id, "fixing", f"Fixing {len(blocking)} issue(s) with {agent}...")
            fix = await self.fix_issues(project_path, feature_id, blocking, agent)
            if not fix.success:
                # partial fixes may still have landed; re-review anyway
                logger.warning("review_fix_failed", feature_id=feature_id, error=fix.error)

        logger.warning("review_max_attempts_reached", feature_id=feature_id, attempts=limit)
        return ReviewOutcome(success=True, results=last, attempts=limit, max_attempts_reached=True)

    async def fix_issues(
        self,
        project_path: str | Path,
        feature_id: str,
        issues: list[ReviewIssue],
        agent: str = "opus",
    ) -> FixResult:
        """Ask an agent to fix *issues* in place."""
        token = CancellationToken()
        self._running[feature_id] = token
        acc = QueryAccumulator()
        options = ProviderQueryOptions(
            cwd=str(project_path),
            prompt=build_fix_prompt(issues),
            model=resolve_agent_model(agent),
            max_turns=FIX_MAX_TURNS,
            allowed_tools=list(FIX_TOOLS),
            system_prompt=FIX_SYSTEM_PROMPT,
            cancellation=token,
        )
        try:
            stream = execute_provider_query(options, config=self._config, factory=self._factory)
            async for message in acc.wrap(stream):
                if message.type != MessageType.ASSISTANT or message.message is None:
                    continue
                for block in message.message.content:
                    if block.type == BlockType.TOOL_USE:
                        self._progress(feature_id, "fixing", f"Using tool: {block.name or 'unknown'}")
        except AutomakerError as exc:
            logger.error("review_fix_error", feature_id=feature_id, error=str(exc))
            return FixResult(success=False, error=str(exc))
        finally:
            if self._running.get(feature_id) is token:
                del self._running[feature_id]

        if token.cancelled:
            return FixResult(success=False, error="Fix was aborted")
        if not acc.succeeded:
            error = acc.terminal.error if acc.terminal is not None else "No result from agent"
            return FixResult(success=False, error=error)
        logger.info("review_fix_complete", feature_id=feature_id)
        return FixResult(success=True)

    def stop_review(self, feature_id: str) -> bool:
        """Stop the review (or fix) running for *feature_id*; ``False`` when none is."""
        token = self._running.pop(feature_id, None)
        if token is None:
            return False
        token.cancel()
        logger.info("review_stopped", feature_id=feature_id)
        return True
