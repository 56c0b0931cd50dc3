"""Compressed persistence for pipeline step results.

Results live at ``<project>/.automaker/pipeline-results/<feature>/<step>.json``
inside an envelope::

    {"version": "1.0", "compressed": true, "size": 5120,
     "compressedSize": 812, "data": "<base64 gzip>", "timestamp": "..."}

Files written before the envelope existed are plain result JSON and are
returned unchanged.
"""

from __future__ import annotations

import asyncio
import base64
import gzip
import json
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel

from automaker_sdk.core.constants import AUTOMAKER_DIR
from automaker_sdk.core.exceptions import StorageError
from automaker_sdk.utils.files import atomic_write_text

logger = structlog.get_logger(__name__)

ENVELOPE_VERSION = "1.0"
RESULTS_DIR = "pipeline-results"
COMPRESSION_THRESHOLD = 1024
MAX_RESULT_SIZE = 10 * 1024 * 1024
RETENTION_DAYS = 30


class StorageStats(BaseModel):
    total_results: int = 0
    total_size: int = 0
    compressed_size: int = 0
    compression_ratio: float = 0.0


class PipelineStorage:
    """Save / load / sweep step results for a project.

    Args:
        compression_threshold: Serialized size in bytes above which results
            are gzip-compressed.
        max_result_size: Results larger than this raise :class:`StorageError`
            before anything is written.
        retention_days: Age after which :meth:`cleanup_old_results` deletes a file.
    """

    def __init__(
        self,
        *,
        compression_threshold: int = COMPRESSION_THRESHOLD,
        max_result_size: int = MAX_RESULT_SIZE,
        retention_days: int = RETENTION_DAYS,
    ) -> None:
        self._threshold = compression_threshold
        self._max_size = max_result_size
        self._retention_days = retention_days

    @staticmethod
    def results_dir(project_path: str | Path) -> Path:
        return Path(project_path) / AUTOMAKER_DIR / RESULTS_DIR

    def result_path(self, project_path: str | Path, feature_id: str, step_id: str) -> Path:
        return self.results_dir(project_path) / feature_id / f"{step_id}.json"

    # ------------------------------------------------------------------ #
    # Encoding
    # ------------------------------------------------------------------ #

    def encode(self, result: Any) -> str:
        """Serialize *result* into an envelope string.

        Raises:
            StorageError: If the serialized result exceeds the max size.
        """
        serialized = json.dumps(result, indent=2, default=str)
        raw = serialized.encode("utf-8")
        size = len(raw)
        if size > self._max_size:
            raise StorageError(
                f"Result size ({size} bytes) exceeds maximum allowed size ({self._max_size} bytes)",
                code="RESULT_TOO_LARGE",
                details={"size": size, "max_size": self._max_size},
            )

        data, compressed, compressed_size = serialized, False, None
        if size > self._threshold:
            data = base64.b64encode(gzip.compress(raw)).decode("ascii")
            compressed, compressed_size = True, len(data)
            logger.debug("pipeline_result_compressed", size=size, compressed_size=compressed_size)

        return json.dumps(
            {
                "version": ENVELOPE_VERSION,
                "compressed": compressed,
                "size": size,
                "compressedSize": compressed_size,
                "data": data,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

    @staticmethod
    def decode(content: str) -> Any:
        """Inverse of :meth:`encode`; legacy un-enveloped JSON passes through.

        Raises:
            StorageError: If the payload is corrupt or its size does not match.
        """
        envelope = json.loads(content)
        if not isinstance(envelope, dict) or "version" not in envelope:
            return envelope
        if envelope.get("compressed"):
            try:
                raw = gzip.decompress(base64.b64decode(envelope["data"]))
            except (ValueError, OSError, EOFError) as exc:
                raise StorageError(f"Failed to decompress result: {exc}") from exc
        else:
            raw = str(envelope["data"]).encode("utf-8")
        expected = envelope.get("size")
        if expected is not None and len(raw) != expected:
            raise StorageError(
                f"Result size mismatch: expected {expected} bytes, got {len(raw)}",
                code="SIZE_MISMATCH",
            )
        return json.loads(raw.decode("utf-8"))

    # ------------------------------------------------------------------ #
    # File operations
    # ------------------------------------------------------------------ #

    async def save_step_result(
        self, project_path: str | Path, feature_id: str, step_id: str, result: Any
    ) -> None:
        content = self.encode(result)
        path = self.result_path(project_path, feature_id, step_id)
        await asyncio.to_thread(atomic_write_text, path, content)
        logger.info("pipeline_result_saved", feature_id=feature_id, step_id=step_id)

    async def load_step_result(
        self, project_path: str | Path, feature_id: str, step_id: str
    ) -> Any | None:
        """Stored result, or ``None`` when missing or unreadable (logged)."""
        path = self.result_path(project_path, feature_id, step_id)
        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.error("pipeline_result_read_failed", path=str(path), error=str(exc))
            return None
        try:
            return self.decode(content)
        except (StorageError, ValueError) as exc:
            logger.error("pipeline_result_decode_failed", path=str(path), error=str(exc))
            return None

    async def delete_step_result(
        self, project_path: str | Path, feature_id: str, step_id: str
    ) -> None:
        path = self.result_path(project_path, feature_id, step_id)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("pipeline_result_delete_failed", path=str(path), error=str(exc))

    def _cleanup_sync(self, root: Path) -> int:
        cutoff = time.time() - self._retention_days * 86400
        removed = 0
        for feature_dir in (p for p in root.iterdir() if p.is_dir()):
            for entry in feature_dir.iterdir():
                try:
                    if entry.stat().st_mtime < cutoff:
                        entry.unlink()
                        removed += 1
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    logger.error("pipeline_result_cleanup_failed", path=str(entry), error=str(exc))
        return removed

    async def cleanup_old_results(self, project_path: str | Path) -> int:
        """Delete results older than the retention window; returns the count removed."""
        root = self.results_dir(project_path)
        if not root.is_dir():
            return 0
        removed = await asyncio.to_thread(self._cleanup_sync, root)
        if removed:
            logger.info("pipeline_results_cleaned", removed=removed)
        return removed

    def _stats_sync(self, root: Path) -> StorageStats:
        stats = StorageStats()
        for feature_dir in (p for p in root.iterdir() if p.is_dir()):
            for entry in feature_dir.glob("*.json"):
                try:
                    content = entry.read_text(encoding="utf-8")
                    envelope = json.loads(content)
                except (OSError, ValueError) as exc:
                    logger.warning("pipeline_result_stats_skipped", path=str(entry), error=str(exc))
                    continue
                stats.total_results += 1
                if isinstance(envelope, dict) and "version" in envelope:
                    size = envelope.get("size") or 0
                    stats.total_size += size
                    stats.compressed_size += envelope.get("compressedSize") or size
                else:
                    size = len(content.encode("utf-8"))
                    stats.total_size += size
                    stats.compressed_size += size
        if stats.total_size:
            stats.compression_ratio = stats.compressed_size / stats.total_size
        return stats

    async def get_storage_stats(self, project_path: str | Path) -> StorageStats:
        root = self.results_dir(project_path)
        if not root.is_dir():
            return StorageStats()
        return await asyncio.to_thread(self._stats_sync, root)
