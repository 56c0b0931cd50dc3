from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field

from automaker_sdk.core.constants import AUTOMAKER_DIR
from automaker_sdk.pipeline.models import PipelineIssue
from automaker_sdk.utils.files import atomic_write_text

logger = structlog.get_logger(__name__)

MEMORY_FILE = "pipeline-memory.json"


class StepFeedback(BaseModel):
    issues: list[PipelineIssue] = Field(default_factory=list)
    summary: str = ""
    resolved_hashes: list[str] = Field(default_factory=list)
    """Extra hashes to mark resolved on top of the hashes of ``issues``."""


class IterationRecord(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    issues: list[PipelineIssue] = Field(default_factory=list)
    summary: str = ""


class StoredMemory(BaseModel):
    iterations: list[IterationRecord] = Field(default_factory=list)
    resolved_issues: list[str] = Field(default_factory=list, alias="resolvedIssues")

    model_config = {"populate_by_name": True}


class IterationMemory(BaseModel):
    previous_issues: list[PipelineIssue]
    resolved_hashes: list[str]
    iteration_count: int
    avoid_repeating: bool = True


class MemoryStats(BaseModel):
    total_memories: int = 0
    total_iterations: int = 0
    total_issues: int = 0
    oldest_memory: datetime | None = None
    newest_memory: datetime | None = None


def memory_key(step_id: str, feature_id: str) -> str:
    return f"{step_id}:{feature_id}"


class PipelineMemory:
    """Per (step, feature) iteration history used to avoid repeated feedback.

    With a *project_path* every mutation is persisted to
    ``<project>/.automaker/pipeline-memory.json``; persistence failures are
    logged and never raised.  Without one, memory lives in-process only.
    """

    def __init__(self, project_path: str | Path | None = None) -> None:
        self._store: dict[str, StoredMemory] = {}
        self._path = Path(project_path) / AUTOMAKER_DIR / MEMORY_FILE if project_path else None

    def __repr__(self) -> str:
        return f"PipelineMemory(entries={len(self._store)}, persistent={self._path is not None})"

    @property
    def path(self) -> Path | None:
        return self._path

    async def store_feedback(self, step_id: str, feature_id: str, feedback: StepFeedback) -> None:
        stored = self._store.setdefault(memory_key(step_id, feature_id), StoredMemory())
        stored.iterations.append(IterationRecord(issues=feedback.issues, summary=feedback.summary))
        for issue_hash in [issue.hash for issue in feedback.issues] + feedback.resolved_hashes:
            if issue_hash not in stored.resolved_issues:
                stored.resolved_issues.append(issue_hash)
        await self._persist()

    async def get_memory_for_next_iteration(
        self, step_id: str, feature_id: str
    ) -> IterationMemory | None:
        stored = self._store.get(memory_key(step_id, feature_id))
        if stored is None or not stored.iterations:
            return None
        return IterationMemory(
            previous_issues=list(stored.iterations[-1].issues),
            resolved_hashes=list(stored.resolved_issues),
            iteration_count=len(stored.iterations),
        )

    async def clear(self, step_id: str, feature_id: str) -> None:
        self._store.pop(memory_key(step_id, feature_id), None)
        await self._persist()

    async def clear_feature(self, feature_id: str) -> None:
        """Drop every step's memory for *feature_id* (keys ending ``:feature_id``)."""
        suffix = f":{feature_id}"
        for key in [k for k in self._store if k.endswith(suffix)]:
            del self._store[key]
        await self._persist()

    async def clear_old(self, days_old: int = 30) -> None:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_old)
        stale = [
            key
            for key, stored in self._store.items()
            if stored.iterations and stored.iterations[-1].timestamp < cutoff
        ]
        for key in stale:
            del self._store[key]
        await self._persist()

    # ------------------------------------------------------------------ #
    # Export / import
    # ------------------------------------------------------------------ #

    def export(self, step_id: str | None = None, feature_id: str | None = None) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key, stored in self._store.items():
            s_id, _, f_id = key.partition(":")
            if step_id and s_id != step_id:
                continue
            if feature_id and f_id != feature_id:
                continue
            result[key] = stored.model_dump(mode="json", by_alias=True)
        return result

    async def import_data(self, data: dict[str, Any]) -> None:
        for key, value in data.items():
            self._store[key] = StoredMemory.model_validate(value)
        await self._persist()

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    async def load_from_disk(self) -> None:
        if self._path is None or not self._path.is_file():
            return
        try:
            raw = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
            data = json.loads(raw)
            for key, value in data.items():
                self._store[key] = StoredMemory.model_validate(value)
        except (OSError, ValueError) as exc:
            logger.error("pipeline_memory_load_failed", path=str(self._path), error=str(exc))

    async def _persist(self) -> None:
        if self._path is None:
            return
        content = json.dumps(self.export(), indent=2)
        try:
            await asyncio.to_thread(atomic_write_text, self._path, content)
        except OSError as exc:
            logger.error("pipeline_memory_persist_failed", path=str(self._path), error=str(exc))

    def get_stats(self) -> MemoryStats:
        stats = MemoryStats(total_memories=len(self._store))
        for stored in self._store.values():
            stats.total_iterations += len(stored.iterations)
            for iteration in stored.iterations:
                stats.total_issues += len(iteration.issues)
                if stats.oldest_memory is None or iteration.timestamp < stats.oldest_memory:
                    stats.oldest_memory = iteration.timestamp
                if stats.newest_memory is None or iteration.timestamp > stats.newest_memory:
                    stats.newest_memory = iteration.timestamp
        return stats
