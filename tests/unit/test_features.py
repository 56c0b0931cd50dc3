"""Tests for pipeline/features.py — the file-backed feature loader."""

from __future__ import annotations

import json
from pathlib import Path

from automaker_sdk.pipeline.features import FeatureLoader, FileFeatureLoader


def _write_feature(project: Path, feature_id: str, **fields: object) -> Path:
    path = FileFeatureLoader.feature_path(project, feature_id)
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"id": feature_id, **fields}), encoding="utf-8")
    return path


def test_file_loader_satisfies_protocol() -> None:
    assert isinstance(FileFeatureLoader(), FeatureLoader)


async def test_get_reads_feature_json(project: Path) -> None:
    _write_feature(project, "feat-1", title="Login", branchName="feature/login", priority=2)
    feature = await FileFeatureLoader().get(str(project), "feat-1")

    assert feature is not None
    assert feature.title == "Login"
    assert feature.branch_name == "feature/login"
    assert feature.status == "backlog"


async def test_get_missing_or_corrupt(project: Path) -> None:
    loader = FileFeatureLoader()
    assert await loader.get(str(project), "nope") is None

    path = FileFeatureLoader.feature_path(project, "broken")
    path.parent.mkdir(parents=True)
    path.write_text("{oops", encoding="utf-8")
    assert await loader.get(str(project), "broken") is None


async def test_get_all_skips_unreadable(project: Path) -> None:
    _write_feature(project, "b")
    _write_feature(project, "a")
    broken = FileFeatureLoader.feature_path(project, "c")
    broken.parent.mkdir(parents=True)
    broken.write_text("not json", encoding="utf-8")

    features = await FileFeatureLoader().get_all(str(project))

    assert [f.id for f in features] == ["a", "b"]


async def test_get_all_without_features_dir(project: Path) -> None:
    assert await FileFeatureLoader().get_all(str(project)) == []


async def test_update_merges_fields(project: Path) -> None:
    path = _write_feature(project, "feat-1", title="Login", priority=2)
    loader = FileFeatureLoader()

    await loader.update(str(project), "feat-1", {"status": "in_progress"})

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data == {"id": "feat-1", "title": "Login", "priority": 2, "status": "in_progress"}
    feature = await loader.get(str(project), "feat-1")
    assert feature is not None and feature.status == "in_progress"
