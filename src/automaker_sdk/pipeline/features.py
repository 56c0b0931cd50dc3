from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from automaker_sdk.core.constants import AUTOMAKER_DIR
from automaker_sdk.pipeline.models import Feature
from automaker_sdk.utils.files import atomic_write_text

logger = structlog.get_logger(__name__)


@runtime_checkable
class FeatureLoader(Protocol):
    """Read/update access to a project's features."""

    async def get(self, project_path: str, feature_id: str) -> Feature | None: ...

    async def get_all(self, project_path: str) -> list[Feature]: ...

    async def update(self, project_path: str, feature_id: str, updates: dict[str, Any]) -> None: ...


class FileFeatureLoader:
    """Features stored as ``.automaker/features/<id>/feature.json``."""

    @staticmethod
    def feature_path(project_path: str | Path, feature_id: str) -> Path:
        return Path(project_path) / AUTOMAKER_DIR / "features" / feature_id / "feature.json"

    def _read(self, path: Path) -> Feature | None:
        try:
            return Feature.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("feature_unreadable", path=str(path), error=str(exc))
            return None

    async def get(self, project_path: str, feature_id: str) -> Feature | None:
        return await asyncio.to_thread(self._read, self.feature_path(project_path, feature_id))

    async def get_all(self, project_path: str) -> list[Feature]:
        root = Path(project_path) / AUTOMAKER_DIR / "features"

        def _scan() -> list[Feature]:
            if not root.is_dir():
                return []
            found = (self._read(d / "feature.json") for d in sorted(root.iterdir()) if d.is_dir())
            return [f for f in found if f is not None]

        return await asyncio.to_thread(_scan)

    async def update(self, project_path: str, feature_id: str, updates: dict[str, Any]) -> None:
        path = self.feature_path(project_path, feature_id)

        def _write() -> None:
            data = json.loads(path.read_text(encoding="utf-8")) if path.is_file() else {"id": feature_id}
            data.update(updates)
            atomic_write_text(path, json.dumps(data, indent=2))

        await asyncio.to_thread(_write)
