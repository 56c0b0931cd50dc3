from __future__ import annotations

import asyncio
from typing import Any, Callable, Protocol, runtime_checkable

import structlog

from automaker_sdk.autonomous.failures import FailureTracker
from automaker_sdk.autonomous.models import (
    AutoModeEventType,
    AutoModeStatus,
    FailureRecord,
    FeatureOutcome,
    UsageSnapshot,
)
from automaker_sdk.core.cancellation import CancellationToken
from automaker_sdk.core.config import AutomakerConfig
from automaker_sdk.core.constants import ErrorType, MessageType
from automaker_sdk.core.events import EventEmitter, safe_emit
from automaker_sdk.core.exceptions import AutoModeError
from automaker_sdk.pipeline.executor import PipelineStepExecutor
from automaker_sdk.pipeline.features import FeatureLoader, FileFeatureLoader
from automaker_sdk.pipeline.models import Feature
from automaker_sdk.providers.factory import ProviderFactory
from automaker_sdk.providers.streaming import classify_error
from automaker_sdk.query.provider_query import (
    ProviderQueryOptions,
    QueryAccumulator,
    execute_provider_query,
)

logger = structlog.get_logger(__name__)

AUTO_MODE_EVENT = "auto-mode:event"
PENDING_STATUSES = ("backlog", "pending")
DEFAULT_POLL_INTERVAL = 2.0


@runtime_checkable
class UsageProvider(Protocol):
    """Reports account usage so auto-mode can refuse to start at the limit."""

    async def is_available(self) -> bool: ...

    async def fetch_usage(self) -> UsageSnapshot: ...


ExecutorFactory = Callable[[str], PipelineStepExecutor]


def build_feature_prompt(feature: Feature) -> str:
    prompt = "Implement the following feature:\n\n"
    if feature.title:
        prompt += f"## {feature.title}\n\n"
    prompt += f"{feature.description}\n\n"
    prompt += (
        "Work in the current project directory. Make the code changes, keep the "
        "existing style, and run the relevant tests before finishing. End with a "
        "short summary of what you changed."
    )
    return prompt


class AutoModeService:
    """Picks pending features and implements them concurrently.

    One loop per service instance.  :meth:`start_auto_loop` checks account
    usage first and refuses to start at 100 %; otherwise it launches a
    background task that runs up to *max_concurrency* features at a time,
    each through the provider query utility followed by the project's
    pipeline steps.  Repeated failures (or one quota/rate-limit failure)
    pause the loop and emit ``auto_mode_paused_failures``.

    Example::

        service = AutoModeService(emitter)
        await service.start_auto_loop("/path/to/project", max_concurrency=2)
        ...
        running = await service.stop_auto_loop()
    """

    def __init__(
        self,
        emitter: EventEmitter | None = None,
        *,
        feature_loader: FeatureLoader | None = None,
        usage_provider: UsageProvider | None = None,
        config: AutomakerConfig | None = None,
        factory: ProviderFactory | None = None,
        executor_factory: ExecutorFactory | None = None,
        failure_tracker: FailureTracker | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._emitter = emitter
        self._features = feature_loader or FileFeatureLoader()
        self._usage = usage_provider
        self._config = config or AutomakerConfig.from_env()
        self._factory = factory or ProviderFactory()
        self._executor_factory = executor_factory or self._default_executor
        self._failures = failure_tracker or FailureTracker()
        self._poll_interval = poll_interval

        self._loop_task: asyncio.Task[None] | None = None
        self._project_path: str | None = None
        self._max_concurrency = 0
        self._semaphore: asyncio.Semaphore | None = None
        self._running: dict[str, tuple[asyncio.Task[FeatureOutcome], CancellationToken]] = {}
        self._pause_reason: str | None = None

    def __repr__(self) -> str:
        return f"AutoModeService(running={self.is_running}, features={len(self._running)})"

    def _default_executor(self, project_path: str) -> PipelineStepExecutor:
        return PipelineStepExecutor(
            project_path,
            feature_loader=self._features,
            emitter=self._emitter,
            config=self._config,
            factory=self._factory,
        )

    def _emit(self, event_type: AutoModeEventType, **payload: Any) -> None:
        safe_emit(self._emitter, AUTO_MODE_EVENT, {"type": event_type.value, **payload})

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def get_status(self) -> AutoModeStatus:
        return AutoModeStatus(
            running=self.is_running,
            project_path=self._project_path,
            max_concurrency=self._max_concurrency,
            running_features=list(self._running),
            paused=self._pause_reason is not None,
            pause_reason=self._pause_reason,
        )

    # ------------------------------------------------------------------ #
    # Usage
    # ------------------------------------------------------------------ #

    async def _check_usage(self) -> UsageSnapshot | None:
        """Current usage, or ``None`` when unknown (probe missing or failing)."""
        if self._usage is None:
            return None
        try:
            if not await self._usage.is_available():
                return None
            return await self._usage.fetch_usage()
        except Exception as exc:  # noqa: BLE001
            logger.warning("auto_mode_usage_check_failed", error=str(exc))
            return None

    def _emit_usage_pause(self, usage: UsageSnapshot | None, message: str) -> None:
        resume_at = usage.suggested_resume_at() if usage is not None else None
        self._emit(
            AutoModeEventType.PAUSED_FAILURES,
            errorType=ErrorType.QUOTA_EXHAUSTED.value,
            message=message,
            suggestedResumeAt=resume_at.isoformat() if resume_at else None,
            lastKnownUsage=usage.model_dump(mode="json", by_alias=True) if usage else None,
            projectPath=self._project_path,
        )

    # ------------------------------------------------------------------ #
    # Loop lifecycle
    # ------------------------------------------------------------------ #

    async def start_auto_loop(self, project_path: str, max_concurrency: int = 3) -> None:
        """Start the background loop for *project_path*.

        Returns without starting (after emitting ``auto_mode_paused_failures``)
        when usage is at its limit.

        Raises:
            AutoModeError: If a loop is already running.
        """
        if self.is_running:
            raise AutoModeError("Auto mode is already running", code="ALREADY_RUNNING")
        self._project_path = project_path

        usage = await self._check_usage()
        if usage is not None and usage.is_exhausted:
            logger.warning(
                "auto_mode_usage_limit",
                session=usage.session_percentage,
                weekly=usage.weekly_percentage,
            )
            self._emit_usage_pause(
                usage, "Usage limit reached. Auto mode will not start until the limit resets."
            )
            return

        self._max_concurrency = max(1, max_concurrency)
        self._semaphore = asyncio.Semaphore(self._max_concurrency)
        self._pause_reason = None
        self._failures.reset()
        self._loop_task = asyncio.create_task(self._run_loop(project_path))
        logger.info("auto_mode_started", project_path=project_path, max_concurrency=self._max_concurrency)
        self._emit(
            AutoModeEventType.STARTED,
            message=f"Auto mode started with max {self._max_concurrency} concurrent features",
            projectPath=project_path,
        )

    async def stop_auto_loop(self) -> int:
        """Stop the loop and cancel running features; returns how many were running."""
        running = len(self._running)
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        for _, token in self._running.values():
            token.cancel()
        tasks = [feature_task for feature_task, _ in self._running.values()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._running.clear()
        if task is not None:
            logger.info("auto_mode_stopped", running=running)
            self._emit(
                AutoModeEventType.STOPPED,
                message="Auto mode stopped",
                projectPath=self._project_path,
            )
        return running

    async def _pause(self, reason: str, failure: FailureRecord) -> None:
        self._pause_reason = reason
        task, self._loop_task = self._loop_task, None
        if failure.error_type in (ErrorType.QUOTA_EXHAUSTED, ErrorType.RATE_LIMIT):
            self._emit_usage_pause(await self._check_usage(), reason)
        else:
            self._emit(
                AutoModeEventType.PAUSED_FAILURES,
                errorType=str(failure.error_type),
                message=reason,
                suggestedResumeAt=None,
                projectPath=self._project_path,
            )
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run_loop(self, project_path: str) -> None:
        idle_reported = False
        while True:
            features = await self._features.get_all(project_path)
            pending = [
                f for f in features if f.status in PENDING_STATUSES and f.id not in self._running
            ]
            if not pending and not self._running:
                if not idle_reported:
                    self._emit(AutoModeEventType.IDLE, message="No pending features", projectPath=project_path)
                    idle_reported = True
            for feature in pending:
                if len(self._running) >= self._max_concurrency:
                    break
                idle_reported = False
                self._launch(project_path, feature)
            await asyncio.sleep(self._poll_interval)

    def _launch(self, project_path: str, feature: Feature) -> None:
        token = CancellationToken()
        task = asyncio.create_task(self._run_feature(project_path, feature, token))
        task.add_done_callback(self._feature_task_done)
        self._running[feature.id] = (task, token)

    @staticmethod
    def _feature_task_done(task: asyncio.Task[FeatureOutcome]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("auto_mode_feature_task_failed", error=str(error), exc_info=error)

    async def _run_feature(
        self, project_path: str, feature: Feature, token: CancellationToken
    ) -> FeatureOutcome:
        assert self._semaphore is not None
        try:
            async with self._semaphore:
                outcome = await self.execute_feature(project_path, feature, token)
        except Exception as exc:
            outcome = await self._feature_crashed(project_path, feature, exc)
        finally:
            self._running.pop(feature.id, None)
        if outcome.passes:
            self._failures.record_success()
        else:
            failure = FailureRecord(
                error_type=outcome.error_type or ErrorType.EXECUTION, message=outcome.message
            )
            if self._failures.track(failure):
                await self._pause(f"Auto mode paused: {outcome.message}", failure)
        return outcome

    async def _feature_crashed(
        self, project_path: str, feature: Feature, error: Exception
    ) -> FeatureOutcome:
        """Turn an unexpected exception into a failed outcome and put the feature back."""
        message = str(error) or type(error).__name__
        error_type = classify_error(message)
        logger.error(
            "auto_mode_feature_crashed", feature_id=feature.id, error=message, exc_info=error
        )
        try:
            await self._features.update(project_path, feature.id, {"status": "backlog"})
        except Exception as exc:  # noqa: BLE001
            logger.warning("auto_mode_feature_reset_failed", feature_id=feature.id, error=str(exc))
        self._emit(
            AutoModeEventType.ERROR,
            featureId=feature.id,
            passes=False,
            error=message,
            errorType=error_type.value,
            message=message,
            projectPath=project_path,
        )
        return FeatureOutcome(
            feature_id=feature.id, passes=False, message=message, error_type=error_type
        )

    # ------------------------------------------------------------------ #
    # Single feature
    # ------------------------------------------------------------------ #

    async def execute_feature(
        self,
        project_path: str,
        feature: Feature | str,
        cancellation: CancellationToken | None = None,
    ) -> FeatureOutcome:
        """Implement one feature, then run the project's pipeline on it."""
        if isinstance(feature, str):
            loaded = await self._features.get(project_path, feature)
            if loaded is None:
                raise AutoModeError(f"Feature not found: {feature}", code="FEATURE_NOT_FOUND")
            feature = loaded
        token = cancellation or CancellationToken()
        log = logger.bind(feature_id=feature.id, project_path=project_path)

        await self._features.update(project_path, feature.id, {"status": "in_progress"})
        self._emit(
            AutoModeEventType.FEATURE_START,
            featureId=feature.id,
            projectPath=project_path,
            feature={"id": feature.id, "title": feature.title},
        )
        log.info("auto_mode_feature_started")

        acc = QueryAccumulator()
        options = ProviderQueryOptions(
            cwd=project_path,
            prompt=build_feature_prompt(feature),
            model=feature.model,
            use_case="auto",
            cancellation=token,
        )
        async for message in acc.wrap(
            execute_provider_query(options, config=self._config, factory=self._factory)
        ):
            if message.type == MessageType.ASSISTANT and message.text:
                self._emit(
                    AutoModeEventType.PROGRESS,
                    featureId=feature.id,
                    content=message.text,
                    projectPath=project_path,
                )

        terminal = acc.terminal
        if terminal is None or terminal.type == MessageType.ERROR:
            error = terminal.error if terminal is not None else "No result from provider"
            error_type = (terminal.error_type if terminal is not None else None) or ErrorType.EXECUTION
            log.warning("auto_mode_feature_failed", error=error, error_type=str(error_type))
            await self._features.update(project_path, feature.id, {"status": "backlog"})
            outcome = FeatureOutcome(
                feature_id=feature.id, passes=False, message=error or "", error_type=error_type
            )
            self._emit(
                AutoModeEventType.ERROR
                if error_type != ErrorType.ABORTED
                else AutoModeEventType.FEATURE_COMPLETE,
                featureId=feature.id,
                passes=False,
                error=error,
                errorType=error_type.value,
                message=error,
                projectPath=project_path,
            )
            return outcome

        executor = self._executor_factory(project_path)
        pipeline = await executor.run_pipeline(feature.id, token)
        passes = all(result.passed or result.status == "skipped" for result in pipeline.values())
        await self._features.update(
            project_path, feature.id, {"status": "waiting_approval" if passes else "backlog"}
        )
        message = "Feature implemented" if passes else "Pipeline steps did not pass"
        failure_type: ErrorType | None = None
        if not passes:
            failure_type = ErrorType.ABORTED if token.cancelled else ErrorType.EXECUTION
        outcome = FeatureOutcome(
            feature_id=feature.id,
            passes=passes,
            message=message,
            error_type=failure_type,
            pipeline={step_id: result.status.value for step_id, result in pipeline.items()},
        )
        log.info("auto_mode_feature_finished", passes=passes, steps=len(pipeline))
        self._emit(
            AutoModeEventType.FEATURE_COMPLETE,
            featureId=feature.id,
            passes=passes,
            message=message,
            pipeline=outcome.pipeline,
            projectPath=project_path,
        )
        return outcome

    async def stop_feature(self, feature_id: str) -> bool:
        entry = self._running.get(feature_id)
        if entry is None:
            return False
        entry[1].cancel()
        return True
