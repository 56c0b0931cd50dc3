"""Tests for core/config.py — AutomakerConfig.from_env()."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from automaker_sdk.core.config import AutomakerConfig


def test_defaults_when_env_empty() -> None:
    config = AutomakerConfig.from_env({})
    assert config.log_level == "INFO"
    assert config.log_json is True
    assert config.mock_agent is False
    assert config.step_timeout == 300
    assert config.api_keys == {}
    assert all(config.enabled_providers.values())
    assert config.kanban_project_id is None


def test_reads_all_variables() -> None:
    config = AutomakerConfig.from_env(
        {
            "AUTOMAKER_LOG_LEVEL": "debug",
            "AUTOMAKER_LOG_JSON": "false",
            "AUTOMAKER_MOCK_AGENT": "true",
            "AUTOMAKER_STEP_TIMEOUT": "60",
            "AUTOMAKER_MERGE_REPOSITORY": "acme/app",
            "VIBE_KANBAN_PROJECT_ID": "proj-9",
        }
    )
    assert config.log_level == "DEBUG"
    assert config.log_json is False
    assert config.mock_agent is True
    assert config.step_timeout == 60
    assert config.merge_repository == "acme/app"
    assert config.kanban_project_id == "proj-9"


def test_enabled_providers_comma_list() -> None:
    config = AutomakerConfig.from_env({"AUTOMAKER_ENABLED_PROVIDERS": "claude, opencode"})
    assert config.is_provider_enabled("claude") is True
    assert config.is_provider_enabled("opencode") is True
    assert config.is_provider_enabled("cursor") is False
    assert config.is_provider_enabled("codex") is False


def test_api_keys_collected_per_provider() -> None:
    config = AutomakerConfig.from_env(
        {"ANTHROPIC_API_KEY": "sk-ant", "OPENAI_API_KEY": "sk-oai", "CURSOR_API_KEY": ""}
    )
    assert config.api_keys == {"claude": "sk-ant", "codex": "sk-oai"}


def test_custom_endpoint_key_collected() -> None:
    config = AutomakerConfig.from_env({"AUTOMAKER_CUSTOM_API_KEY": "sk-custom"})
    assert config.api_keys == {"custom": "sk-custom"}


def test_unknown_provider_disabled() -> None:
    assert AutomakerConfig().is_provider_enabled("gemini") is False


def test_step_timeout_bounds_validated() -> None:
    with pytest.raises(ValidationError):
        AutomakerConfig.from_env({"AUTOMAKER_STEP_TIMEOUT": "0"})
