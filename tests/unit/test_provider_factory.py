"""Tests for providers/factory.py — routing model ids to adapters."""
from __future__ import annotations

import pytest

from automaker_sdk.core.types import ProviderConfig
from automaker_sdk.providers.claude import ClaudeProvider
from automaker_sdk.providers.codex import CodexProvider
from automaker_sdk.providers.cursor import CursorProvider
from automaker_sdk.providers.custom import CustomProvider
from automaker_sdk.providers.factory import ProviderFactory
from automaker_sdk.providers.mock import MockProvider
from automaker_sdk.providers.opencode import OpenCodeProvider


@pytest.mark.parametrize(
    "model, expected",
    [
        ("claude-sonnet-4-5-20250929", ClaudeProvider),
        ("opus", ClaudeProvider),
        ("cursor-sonnet", CursorProvider),
        ("glm4.7", OpenCodeProvider),
        ("opencode/glm-4.7-free", OpenCodeProvider),
        ("gpt-5.2-codex", CodexProvider),
        ("o3", CodexProvider),
        ("custom-glm-4.7", CustomProvider),
    ],
)
def test_get_provider_for_model(model: str, expected: type) -> None:
    assert isinstance(ProviderFactory().get_provider_for_model(model), expected)


def test_unknown_model_routes_to_claude() -> None:
    factory = ProviderFactory()
    assert factory.detect_provider_name("mystery-model") == "claude"
    assert isinstance(factory.get_provider_for_model("mystery-model"), ClaudeProvider)


def test_config_passed_to_adapter() -> None:
    provider = ProviderFactory().get_provider_for_model(
        "cursor-sonnet", ProviderConfig(api_key="cur-key")
    )
    assert provider.config.api_key == "cur-key"


def test_get_provider_by_name_with_alias() -> None:
    factory = ProviderFactory()
    assert isinstance(factory.get_provider_by_name("anthropic"), ClaudeProvider)
    assert isinstance(factory.get_provider_by_name("Codex"), CodexProvider)
    assert isinstance(factory.get_provider_by_name("zai"), CustomProvider)
    assert factory.get_provider_by_name("gemini") is None


def test_register_replaces_builder() -> None:
    mock = MockProvider(name="cursor")
    factory = ProviderFactory()
    factory.register("cursor", lambda _config: mock)
    assert factory.get_provider_for_model("cursor-sonnet") is mock
    assert isinstance(ProviderFactory().get_provider_for_model("cursor-sonnet"), CursorProvider)


def test_provider_names_and_models() -> None:
    factory = ProviderFactory()
    assert set(factory.provider_names) == {"claude", "cursor", "opencode", "codex", "custom"}
    models = factory.get_all_available_models()
    assert {m.provider for m in models} >= {"cursor", "opencode", "codex"}
    assert any(m.id == "gpt-5.2-codex" for m in models)


async def test_check_all_providers_uses_registered_builders() -> None:
    factory = ProviderFactory()
    for name in list(factory.provider_names):
        factory.register(name, lambda _config, n=name: MockProvider(name=n))
    statuses = await factory.check_all_providers()
    assert set(statuses) == {"claude", "cursor", "opencode", "codex", "custom"}
    assert all(status.installed for status in statuses.values())
