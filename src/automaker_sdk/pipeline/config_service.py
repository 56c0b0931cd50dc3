from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from automaker_sdk.core.constants import AUTOMAKER_DIR
from automaker_sdk.core.exceptions import (
    CircularDependencyError,
    PipelineError,
    PipelineValidationError,
)
from automaker_sdk.pipeline.models import (
    PIPELINE_CONFIG_VERSION,
    PipelineConfig,
    PipelineStepConfig,
)
from automaker_sdk.utils.files import atomic_write_text

logger = structlog.get_logger(__name__)

PIPELINE_CONFIG_FILE = "pipeline.json"
SETTINGS_FILE = "settings.json"


def sort_steps_by_dependencies(steps: list[PipelineStepConfig]) -> list[PipelineStepConfig]:
    """Topologically order *steps*; dependencies always precede dependents.

    Raises:
        CircularDependencyError: When the dependency graph has a cycle.
        PipelineValidationError: When a dependency names an unknown step.
    """
    by_id = {step.id: step for step in steps}
    ordered: list[PipelineStepConfig] = []
    visited: set[str] = set()
    visiting: set[str] = set()

    def visit(step_id: str) -> None:
        if step_id in visiting:
            raise CircularDependencyError(
                f"Circular dependency detected: {step_id}", details={"step_id": step_id}
            )
        if step_id in visited:
            return
        step = by_id.get(step_id)
        if step is None:
            raise PipelineValidationError(f"Step not found: {step_id}")
        visiting.add(step_id)
        for dep in step.dependencies:
            visit(dep)
        visiting.discard(step_id)
        visited.add(step_id)
        ordered.append(step)

    for step in steps:
        visit(step.id)
    return ordered


def parse_pipeline_config(data: Any) -> PipelineConfig:
    """Validate raw JSON data as a :class:`PipelineConfig`.

    Checks the schema, unique step ids and an acyclic dependency graph.

    Raises:
        PipelineValidationError: For any violation (``CircularDependencyError``
            for cycles).
    """
    try:
        config = PipelineConfig.model_validate(data)
    except ValidationError as exc:
        raise PipelineValidationError(f"Invalid pipeline configuration: {exc}") from exc
    ids = [step.id for step in config.steps]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise PipelineValidationError(
            f"Duplicate step ids: {', '.join(duplicates)}", details={"duplicates": duplicates}
        )
    sort_steps_by_dependencies(config.steps)
    return config


def validate_pipeline_config(data: Any) -> bool:
    try:
        parse_pipeline_config(data)
    except PipelineValidationError:
        return False
    return True


class PipelineConfigService:
    """Loads and saves a project's pipeline configuration.

    Load order: ``.automaker/pipeline.json`` → the ``pipeline`` key of
    ``.automaker/settings.json`` → defaults.  Invalid files are logged and
    skipped rather than raised.
    """

    def __init__(self, project_path: str | Path) -> None:
        self._project_path = Path(project_path)
        self._automaker_dir = self._project_path / AUTOMAKER_DIR
        self._config_path = self._automaker_dir / PIPELINE_CONFIG_FILE
        self._settings_path = self._automaker_dir / SETTINGS_FILE

    def __repr__(self) -> str:
        return f"PipelineConfigService(project_path={str(self._project_path)!r})"

    @property
    def config_path(self) -> Path:
        return self._config_path

    # ------------------------------------------------------------------ #
    # Load / save
    # ------------------------------------------------------------------ #

    def _read_json(self, path: Path) -> Any | None:
        if not path.is_file():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("pipeline_config_unreadable", path=str(path), error=str(exc))
            return None

    def _load_sync(self) -> PipelineConfig:
        data = self._read_json(self._config_path)
        if data is not None:
            try:
                return parse_pipeline_config(data)
            except PipelineValidationError as exc:
                logger.warning("pipeline_config_invalid", path=str(self._config_path), error=str(exc))

        settings = self._read_json(self._settings_path)
        if isinstance(settings, dict) and settings.get("pipeline") is not None:
            try:
                return parse_pipeline_config(settings["pipeline"])
            except PipelineValidationError as exc:
                logger.warning("pipeline_settings_invalid", error=str(exc))

        return PipelineConfig()

    async def load_pipeline_config(self) -> PipelineConfig:
        return await asyncio.to_thread(self._load_sync)

    async def save_pipeline_config(self, config: PipelineConfig | dict[str, Any]) -> None:
        """Validate then atomically write *config* to ``.automaker/pipeline.json``.

        Raises:
            PipelineValidationError: If *config* is invalid; nothing is written.
        """
        data = config.to_json_dict() if isinstance(config, PipelineConfig) else config
        validated = parse_pipeline_config(data)
        content = json.dumps(validated.to_json_dict(), indent=2)
        await asyncio.to_thread(atomic_write_text, self._config_path, content)
        logger.info("pipeline_config_saved", path=str(self._config_path), steps=len(validated.steps))

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    async def get_pipeline_steps(self) -> list[PipelineStepConfig]:
        """Configured steps in dependency order."""
        config = await self.load_pipeline_config()
        return sort_steps_by_dependencies(config.steps)

    async def get_step(self, step_id: str) -> PipelineStepConfig | None:
        config = await self.load_pipeline_config()
        return next((step for step in config.steps if step.id == step_id), None)

    def validate_config(self, data: Any) -> bool:
        return validate_pipeline_config(data)

    async def is_pipeline_enabled(self) -> bool:
        return (await self.load_pipeline_config()).enabled

    # ------------------------------------------------------------------ #
    # Mutations
    # ------------------------------------------------------------------ #

    async def set_pipeline_enabled(self, enabled: bool) -> None:
        config = await self.load_pipeline_config()
        await self.save_pipeline_config(config.model_copy(update={"enabled": enabled}))

    async def reset_config(self) -> None:
        await self.save_pipeline_config(PipelineConfig())

    async def migrate_config(self) -> None:
        config = await self.load_pipeline_config()
        if config.version != PIPELINE_CONFIG_VERSION:
            logger.info("pipeline_config_migrated", from_version=config.version)
            await self.save_pipeline_config(
                config.model_copy(update={"version": PIPELINE_CONFIG_VERSION})
            )

    async def export_config(self) -> str:
        config = await self.load_pipeline_config()
        return json.dumps(config.to_json_dict(), indent=2)

    async def import_config(self, config_json: str) -> None:
        """Parse, validate and save a JSON configuration string.

        Raises:
            PipelineError: ``Failed to import configuration: <reason>``.
        """
        try:
            data = json.loads(config_json)
            await self.save_pipeline_config(data)
        except (json.JSONDecodeError, PipelineValidationError) as exc:
            raise PipelineError(f"Failed to import configuration: {exc}") from exc
