"""Tests for query/model_resolver.py — aliases, use cases and provider fallback."""
from __future__ import annotations

import pytest

from automaker_sdk.core.constants import ProviderName
from automaker_sdk.query.model_resolver import (
    CLAUDE_MODEL_MAP,
    DEFAULT_MODELS,
    get_effective_model,
    get_model_for_use_case,
    get_provider_for_model,
    resolve_model_string,
    resolve_model_with_provider_availability,
)

ALL_ENABLED = {name.value: True for name in ProviderName}


def test_aliases_resolve_to_full_ids() -> None:
    assert resolve_model_string("opus") == CLAUDE_MODEL_MAP["opus"]
    assert resolve_model_string("sonnet") == "claude-sonnet-4-5-20250929"
    assert resolve_model_string("haiku").startswith("claude-haiku")


def test_full_ids_pass_through() -> None:
    assert resolve_model_string("claude-3-5-sonnet-20241022") == "claude-3-5-sonnet-20241022"
    assert resolve_model_string("cursor-sonnet") == "cursor-sonnet"
    assert resolve_model_string("gpt-5.2") == "gpt-5.2"


def test_empty_and_unknown_use_fallback() -> None:
    assert resolve_model_string(None) == DEFAULT_MODELS[ProviderName.CLAUDE]
    assert resolve_model_string("", "custom-default") == "custom-default"
    assert resolve_model_string("mystery") == DEFAULT_MODELS[ProviderName.CLAUDE]


def test_effective_model_priority() -> None:
    assert get_effective_model("haiku", "sonnet") == CLAUDE_MODEL_MAP["haiku"]
    assert get_effective_model(None, "sonnet") == CLAUDE_MODEL_MAP["sonnet"]
    assert get_effective_model() == DEFAULT_MODELS[ProviderName.CLAUDE]


@pytest.mark.parametrize(
    "model, provider",
    [
        ("cursor-gpt5", ProviderName.CURSOR),
        ("glm", ProviderName.OPENCODE),
        ("codex-mini", ProviderName.CODEX),
        ("custom-minimax-m2.1", ProviderName.CUSTOM),
        ("claude-opus-4-5-20251101", ProviderName.CLAUDE),
        ("llama-3", None),
    ],
)
def test_get_provider_for_model(model: str, provider: ProviderName | None) -> None:
    assert get_provider_for_model(model) == provider


def test_use_case_env_override() -> None:
    env = {"AUTOMAKER_MODEL_AUTO": "sonnet", "AUTOMAKER_MODEL_DEFAULT": "haiku"}
    assert get_model_for_use_case("auto", env) == CLAUDE_MODEL_MAP["sonnet"]
    assert get_model_for_use_case("chat", env) == CLAUDE_MODEL_MAP["haiku"]
    assert get_model_for_use_case("spec", {}) == DEFAULT_MODELS[ProviderName.CLAUDE]


def test_enabled_provider_keeps_model() -> None:
    assert resolve_model_with_provider_availability("cursor-sonnet-4.5", ALL_ENABLED) == (
        "cursor-sonnet-4.5"
    )


def test_disabled_provider_uses_equivalent() -> None:
    enabled = {**ALL_ENABLED, "claude": False}
    assert resolve_model_with_provider_availability("sonnet", enabled) == "cursor-sonnet-4.5"


def test_disabled_provider_falls_back_to_claude_default() -> None:
    enabled = {"claude": True, "cursor": False, "opencode": False, "codex": False}
    assert resolve_model_with_provider_availability("glm4.7", enabled) == (
        "claude-sonnet-4-5-20250929"
    )
    assert resolve_model_with_provider_availability("cursor-gpt5", enabled) == (
        DEFAULT_MODELS[ProviderName.CLAUDE]
    )


def test_only_one_provider_enabled_gets_its_default() -> None:
    enabled = {"claude": False, "cursor": False, "opencode": True, "codex": False}
    assert resolve_model_with_provider_availability("gpt-5.2-codex", enabled) == "glm4.7"


def test_all_disabled_returns_resolved_model() -> None:
    enabled = {name.value: False for name in ProviderName}
    assert resolve_model_with_provider_availability("opus", enabled) == CLAUDE_MODEL_MAP["opus"]
