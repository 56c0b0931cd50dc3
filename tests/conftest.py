"""Shared test fixtures."""
from __future__ import annotations

import json
import stat
import sys
from pathlib import Path
from typing import Any, Callable

import pytest

from automaker_sdk.core.config import AutomakerConfig
from automaker_sdk.core.constants import ProviderName
from automaker_sdk.core.events import RecordingEmitter
from automaker_sdk.pipeline.models import Feature
from automaker_sdk.providers.factory import ProviderFactory
from automaker_sdk.providers.mock import MockProvider
from automaker_sdk.utils.process import CommandResult


class InMemoryFeatureLoader:
    """FeatureLoader backed by a dict; records every update."""

    def __init__(self, *features: Feature) -> None:
        self.features: dict[str, Feature] = {f.id: f for f in features}
        self.updates: list[tuple[str, dict[str, Any]]] = []

    async def get(self, project_path: str, feature_id: str) -> Feature | None:
        return self.features.get(feature_id)

    async def get_all(self, project_path: str) -> list[Feature]:
        return list(self.features.values())

    async def update(self, project_path: str, feature_id: str, updates: dict[str, Any]) -> None:
        self.updates.append((feature_id, updates))
        current = self.features.get(feature_id)
        if current is not None:
            self.features[feature_id] = current.model_copy(update=updates)


class FakeRunner:
    """CommandRunner that answers from a list of (prefix, CommandResult) rules."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self._rules: list[tuple[list[str], CommandResult]] = []

    def on(self, prefix: list[str], *, stdout: str = "", stderr: str = "", returncode: int = 0) -> FakeRunner:
        self._rules.insert(
            0,
            (prefix, CommandResult(args=prefix, returncode=returncode, stdout=stdout, stderr=stderr)),
        )
        return self

    async def __call__(
        self, args: list[str], *, cwd: str | None = None, timeout: float | None = None
    ) -> CommandResult:
        self.calls.append(list(args))
        for prefix, result in self._rules:
            if args[: len(prefix)] == prefix:
                return result.model_copy(update={"args": list(args)})
        return CommandResult(args=list(args), returncode=1, stderr="unexpected command")

    def called_with(self, *prefix: str) -> list[list[str]]:
        return [call for call in self.calls if call[: len(prefix)] == list(prefix)]


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider(name="claude")


@pytest.fixture
def factory(mock_provider: MockProvider) -> ProviderFactory:
    """Every provider name routes to the same scripted mock."""
    factory = ProviderFactory()
    for name in ProviderName:
        factory.register(name.value, lambda _config: mock_provider)
    return factory


@pytest.fixture
def config() -> AutomakerConfig:
    return AutomakerConfig()


@pytest.fixture
def events() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def feature_loader() -> InMemoryFeatureLoader:
    return InMemoryFeatureLoader(
        Feature(id="feat-1", title="Login form", description="Add a login form", model="sonnet")
    )


@pytest.fixture
def fake_cli(tmp_path: Path) -> Callable[..., Path]:
    """Write an executable that prints NDJSON *lines* and exits with *exit_code*."""

    def _make(
        lines: list[dict[str, Any] | str],
        *,
        exit_code: int = 0,
        stderr: str = "",
        sleep: float = 0.0,
        name: str = "fake-cli",
    ) -> Path:
        rendered = [line if isinstance(line, str) else json.dumps(line) for line in lines]
        script = tmp_path / name
        script.write_text(
            f"#!{sys.executable}\n"
            "import sys, time\n"
            f"for line in {rendered!r}:\n"
            "    print(line, flush=True)\n"
            f"time.sleep({sleep!r})\n"
            f"sys.stderr.write({stderr!r})\n"
            f"sys.exit({exit_code})\n",
            encoding="utf-8",
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _make
