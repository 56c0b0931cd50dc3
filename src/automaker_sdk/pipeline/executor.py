from __future__ import annotations

import hashlib
import inspect
import re
from pathlib import Path
from typing import Any, Awaitable, Callable

import structlog

from automaker_sdk.core.cancellation import TIMEOUT, CancellationToken
from automaker_sdk.core.config import AutomakerConfig
from automaker_sdk.core.constants import ErrorType
from automaker_sdk.core.events import EventEmitter, safe_emit
from automaker_sdk.core.exceptions import PipelineError, StorageError
from automaker_sdk.pipeline.config_service import PipelineConfigService
from automaker_sdk.pipeline.features import FeatureLoader, FileFeatureLoader
from automaker_sdk.pipeline.memory import PipelineMemory, StepFeedback
from automaker_sdk.pipeline.models import (
    Feature,
    PipelineIssue,
    PipelineStepConfig,
    PipelineStepResult,
    ResultStatus,
    StepState,
    StepStatus,
)
from automaker_sdk.pipeline.prompt_builder import PipelinePromptBuilder
from automaker_sdk.pipeline.storage import PipelineStorage
from automaker_sdk.providers.factory import ProviderFactory
from automaker_sdk.query.provider_query import (
    ProviderQueryOptions,
    QueryAccumulator,
    execute_provider_query,
)

logger = structlog.get_logger(__name__)

DEFAULT_STEP_TIMEOUT = 300
STEP_MAX_TURNS = 50

_MARKER = re.compile(r"^\[(REVIEW|SECURITY|PERFORMANCE|TEST)_(PASSED|FAILED)\]", re.MULTILINE)
_ISSUE = re.compile(r"^\d+\.\s+(.+?)(?:\s*\(([^)]+)\))?\s*$")
_SEVERITY = re.compile(r"Severity:\s*(low|medium|high)", re.IGNORECASE)

WorkingDirectoryValidator = Callable[[str], Awaitable[None] | None]


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------


def issue_hash(summary: str, location: str | None = None, issue_type: str = "issue") -> str:
    """Stable identity of an issue across iterations."""
    normalized = "|".join(
        [summary.lower().strip(), (location or "").lower(), issue_type.lower()]
    )
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


def extract_issues(output: str) -> list[PipelineIssue]:
    """Numbered issues (``1. summary (file:line)``) with the severity found in their body."""
    issues: list[PipelineIssue] = []
    lines = output.splitlines()
    for index, line in enumerate(lines):
        match = _ISSUE.match(line)
        if match is None:
            continue
        summary = match.group(1).strip()
        location = match.group(2).strip() if match.group(2) else None
        body = [summary]
        for follow in lines[index + 1 :]:
            if _ISSUE.match(follow):
                break
            body.append(follow)
        severity = _SEVERITY.search("\n".join(body))
        issues.append(
            PipelineIssue(
                hash=issue_hash(summary, location),
                summary=summary,
                location=location,
                severity=severity.group(1).lower() if severity else "medium",
            )
        )
    return issues


def parse_step_result(output: str) -> PipelineStepResult:
    """Any ``[TYPE_FAILED]`` marker fails the step; ``[TYPE_PASSED]`` alone passes it.

    Without a marker the step passes only if the output says "no issues found".
    """
    output = output or ""
    markers = [m.group(2) for m in _MARKER.finditer(output)]
    if "FAILED" in markers:
        passed = False
    elif markers:
        passed = True
    else:
        passed = "no issues found" in output.lower()
    issues = extract_issues(output)
    return PipelineStepResult(
        status=ResultStatus.PASSED if passed else ResultStatus.FAILED,
        output=output,
        issues=issues,
        metadata={"issues_count": len(issues)},
    )


def resolve_step_model(step_model: str, feature_model: str | None) -> str:
    """``same`` → the feature's model; ``different`` → an alternate Claude tier."""
    base = feature_model or "opus"
    if step_model == "same":
        return base
    if step_model == "different":
        return {"opus": "sonnet", "sonnet": "opus", "haiku": "sonnet"}.get(base, "opus")
    return step_model


async def _default_validator(path: str) -> None:
    if not Path(path).is_dir():
        raise PipelineError(f"Working directory does not exist: {path}", code="INVALID_CWD")


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class PipelineStepExecutor:
    """Runs pipeline steps for one project.

    Each (feature, step) pair moves ``pending → running → {succeeded,
    failed}``, or ``pending → skipped``.  Results are persisted through
    :class:`PipelineStorage`; iteration feedback goes to
    :class:`PipelineMemory` for steps with ``memory_enabled``.

    Args:
        project_path: Project root; also the agent's working directory.
        feature_loader: Source of :class:`Feature` records.
        validate_working_directory: Callable raising when *project_path* is
            not an allowed working directory (sync or async).
        step_timeout: Default per-query timeout in seconds for steps
            without their own ``timeout``.
    """

    def __init__(
        self,
        project_path: str | Path,
        *,
        feature_loader: FeatureLoader | None = None,
        memory: PipelineMemory | None = None,
        storage: PipelineStorage | None = None,
        config_service: PipelineConfigService | None = None,
        prompt_builder: PipelinePromptBuilder | None = None,
        emitter: EventEmitter | None = None,
        config: AutomakerConfig | None = None,
        factory: ProviderFactory | None = None,
        validate_working_directory: WorkingDirectoryValidator | None = None,
        step_timeout: int | None = None,
    ) -> None:
        self._project_path = str(project_path)
        self._features = feature_loader or FileFeatureLoader()
        self._memory = memory or PipelineMemory(self._project_path)
        self._storage = storage or PipelineStorage()
        self._config_service = config_service or PipelineConfigService(self._project_path)
        self._prompts = prompt_builder or PipelinePromptBuilder()
        self._emitter = emitter
        self._config = config or AutomakerConfig.from_env()
        self._factory = factory or ProviderFactory()
        self._validate_cwd = validate_working_directory or _default_validator
        self._step_timeout = step_timeout or self._config.step_timeout or DEFAULT_STEP_TIMEOUT
        self._states: dict[tuple[str, str], StepState] = {}

    def __repr__(self) -> str:
        return f"PipelineStepExecutor(project_path={self._project_path!r})"

    @property
    def memory(self) -> PipelineMemory:
        return self._memory

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #

    def _state(self, feature_id: str, step_id: str) -> StepState:
        key = (feature_id, step_id)
        if key not in self._states:
            self._states[key] = StepState(step_id=step_id, feature_id=feature_id)
        return self._states[key]

    def get_step_state(self, feature_id: str, step_id: str) -> StepState:
        return self._state(feature_id, step_id).model_copy()

    def get_step_status(self, feature_id: str, step_id: str) -> StepStatus:
        return self._state(feature_id, step_id).status

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        safe_emit(self._emitter, f"pipeline:{event}", payload)

    async def _resolve_step(self, step: PipelineStepConfig | str) -> PipelineStepConfig:
        if isinstance(step, PipelineStepConfig):
            return step
        found = await self._config_service.get_step(step)
        if found is None:
            raise PipelineError(f"Step not found: {step}", code="STEP_NOT_FOUND")
        return found

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    async def execute_step(
        self,
        feature_id: str,
        step: PipelineStepConfig | str,
        cancellation: CancellationToken | None = None,
    ) -> PipelineStepResult:
        """Run *step* for *feature_id* until it passes or its loop budget is spent.

        Raises:
            PipelineError: When the working directory is rejected, or the
                feature or step cannot be found.  Query failures do not raise;
                they produce an ``error`` result.
        """
        validation = self._validate_cwd(self._project_path)
        if inspect.isawaitable(validation):
            await validation
        step_config = await self._resolve_step(step)
        feature = await self._features.get(self._project_path, feature_id)
        if feature is None:
            raise PipelineError(f"Feature not found: {feature_id}", code="FEATURE_NOT_FOUND")

        state = self._state(feature_id, step_config.id)
        state.touch_start()
        model = resolve_step_model(step_config.model, feature.model)
        log = logger.bind(feature_id=feature_id, step_id=step_config.id, model=model)
        log.info("pipeline_step_started", step_type=step_config.type)
        self._emit(
            "step_started",
            {"featureId": feature_id, "stepId": step_config.id, "name": step_config.name},
        )

        max_attempts = step_config.max_loops if step_config.loop_until_success else 1
        result = PipelineStepResult(status=ResultStatus.ERROR, output="")
        attempts = 0
        while attempts < max_attempts:
            attempts += 1
            state.attempts = attempts
            self._emit(
                "step_progress",
                {
                    "featureId": feature_id,
                    "stepId": step_config.id,
                    "message": f"Running {step_config.name} (iteration {attempts})",
                },
            )
            result = await self._run_iteration(feature, step_config, model, cancellation)
            if result.status == ResultStatus.ERROR:
                break
            if step_config.memory_enabled:
                await self._remember(feature_id, step_config.id, result)
            if result.passed:
                break
            if cancellation is not None and cancellation.cancelled:
                break

        result = result.model_copy(update={"iterations": attempts})
        final = StepStatus.SUCCEEDED if result.passed else StepStatus.FAILED
        state.touch_end(final, error=result.output if result.status == ResultStatus.ERROR else None)
        await self._persist(feature_id, step_config.id, result)
        log.info("pipeline_step_finished", status=final, iterations=attempts)
        self._emit(
            "step_completed",
            {
                "featureId": feature_id,
                "stepId": step_config.id,
                "status": result.status.value,
                "iterations": attempts,
                "issues": len(result.issues),
            },
        )
        return result

    async def _run_iteration(
        self,
        feature: Feature,
        step: PipelineStepConfig,
        model: str,
        cancellation: CancellationToken | None,
    ) -> PipelineStepResult:
        memory_context = None
        if step.memory_enabled:
            previous = await self._memory.get_memory_for_next_iteration(step.id, feature.id)
            if previous is not None:
                memory_context = self._prompts.build_memory_context(
                    previous.iteration_count, previous.previous_issues
                )
        prompt = self._prompts.build_prompt_for_step(feature, step, memory_context)

        error: str | None = None
        for attempt in range(step.retries + 1):
            output, error = await self._query(prompt, model, step.timeout, cancellation)
            if error is None:
                return parse_step_result(output)
            if cancellation is not None and cancellation.cancelled:
                break
            logger.warning(
                "pipeline_step_query_failed", step_id=step.id, attempt=attempt + 1, error=error
            )
        return PipelineStepResult(
            status=ResultStatus.ERROR, output=error or "", metadata={"error": error}
        )

    async def _query(
        self,
        prompt: str,
        model: str,
        timeout: int | None,
        outer: CancellationToken | None,
    ) -> tuple[str, str | None]:
        """Run one query; returns ``(output, error)``."""
        seconds = timeout or self._step_timeout
        token = CancellationToken()
        unlink = outer.add_callback(lambda: token.cancel(outer.reason or "cancelled")) if outer else None
        token.cancel_after(seconds)
        acc = QueryAccumulator()
        try:
            stream = execute_provider_query(
                ProviderQueryOptions(
                    cwd=self._project_path,
                    prompt=prompt,
                    model=model,
                    max_turns=STEP_MAX_TURNS,
                    cancellation=token,
                ),
                config=self._config,
                factory=self._factory,
            )
            async for _ in acc.wrap(stream):
                pass
        finally:
            token.clear_timeout()
            if unlink is not None:
                unlink()

        terminal = acc.terminal
        if terminal is not None and terminal.error is not None:
            if terminal.error_type == ErrorType.ABORTED and token.reason == TIMEOUT:
                return acc.text, f"Step timed out after {seconds}s"
            return acc.text, terminal.error
        return acc.text or (terminal.result if terminal is not None else "") or "", None

    async def _remember(self, feature_id: str, step_id: str, result: PipelineStepResult) -> None:
        await self._memory.store_feedback(
            step_id,
            feature_id,
            StepFeedback(
                issues=result.issues,
                summary=result.output.splitlines()[0] if result.output else "",
            ),
        )

    async def _persist(self, feature_id: str, step_id: str, result: PipelineStepResult) -> None:
        try:
            await self._storage.save_step_result(
                self._project_path, feature_id, step_id, result.model_dump(mode="json")
            )
        except (StorageError, OSError) as exc:
            logger.error(
                "pipeline_result_persist_failed", feature_id=feature_id, step_id=step_id, error=str(exc)
            )

    async def load_step_result(self, feature_id: str, step_id: str) -> PipelineStepResult | None:
        data = await self._storage.load_step_result(self._project_path, feature_id, step_id)
        return PipelineStepResult.model_validate(data) if data is not None else None

    # ------------------------------------------------------------------ #
    # Skip / clear
    # ------------------------------------------------------------------ #

    async def skip_step(self, feature_id: str, step: PipelineStepConfig | str) -> PipelineStepResult:
        """Mark an optional step ``skipped`` without running it.

        Raises:
            PipelineError: ``Cannot skip required step``; the state is unchanged.
        """
        step_config = await self._resolve_step(step)
        if step_config.required:
            raise PipelineError("Cannot skip required step", code="REQUIRED_STEP")
        self._state(feature_id, step_config.id).touch_end(StepStatus.SKIPPED)
        await self._memory.clear(step_config.id, feature_id)
        result = PipelineStepResult(status=ResultStatus.SKIPPED, output="Step skipped")
        await self._persist(feature_id, step_config.id, result)
        logger.info("pipeline_step_skipped", feature_id=feature_id, step_id=step_config.id)
        self._emit("step_skipped", {"featureId": feature_id, "stepId": step_config.id})
        return result

    async def clear_step_results(self, feature_id: str, step_id: str) -> None:
        await self._memory.clear(step_id, feature_id)
        await self._storage.delete_step_result(self._project_path, feature_id, step_id)
        self._states.pop((feature_id, step_id), None)
        self._emit("step_results_cleared", {"featureId": feature_id, "stepId": step_id})

    # ------------------------------------------------------------------ #
    # Whole pipeline
    # ------------------------------------------------------------------ #

    async def run_pipeline(
        self, feature_id: str, cancellation: CancellationToken | None = None
    ) -> dict[str, PipelineStepResult]:
        """Run every auto-triggered step in dependency order.

        Honours ``on_failure``: ``stop`` halts after a failed step,
        ``skip-optional`` halts only after a failed required step, and
        ``continue`` runs everything.  Steps whose dependencies did not pass
        are skipped (required ones fail the run).
        """
        config = await self._config_service.load_pipeline_config()
        results: dict[str, PipelineStepResult] = {}
        if not config.enabled:
            return results
        for step in await self._config_service.get_pipeline_steps():
            if not step.auto_trigger:
                continue
            if cancellation is not None and cancellation.cancelled:
                break
            blocked = [d for d in step.dependencies if d in results and not results[d].passed]
            if blocked and not step.required:
                results[step.id] = await self.skip_step(feature_id, step)
                continue
            if blocked:
                results[step.id] = PipelineStepResult(
                    status=ResultStatus.FAILED,
                    output=f"Dependencies did not pass: {', '.join(blocked)}",
                )
                break
            result = await self.execute_step(feature_id, step, cancellation)
            results[step.id] = result
            if result.passed or config.on_failure == "continue":
                continue
            if config.on_failure == "stop" or step.required:
                break
        return results
