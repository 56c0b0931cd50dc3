from __future__ import annotations

import os
from typing import Any, Literal

from pydantic import BaseModel, Field

from automaker_sdk.core.constants import ProviderName

_TRUTHY = {"1", "true", "yes", "on"}


class AutomakerConfig(BaseModel):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = True
    mock_agent: bool = False
    """Return canned agent responses instead of calling the Claude SDK."""
    enabled_providers: dict[str, bool] = Field(
        default_factory=lambda: {name.value: True for name in ProviderName}
    )
    api_keys: dict[str, str] = Field(default_factory=dict)
    """Provider credentials keyed by provider name (``claude``, ``codex``, ``custom``, ...)."""
    step_timeout: int = Field(default=300, ge=1, le=3600)
    merge_repository: str | None = None
    kanban_project_id: str | None = None

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> AutomakerConfig:
        """Create an :class:`AutomakerConfig` from ``AUTOMAKER_*`` environment variables.

        Reads the following env vars (all optional):

        * ``AUTOMAKER_LOG_LEVEL`` → ``log_level``
        * ``AUTOMAKER_LOG_JSON`` → ``log_json`` (``0``/``false`` for console output)
        * ``AUTOMAKER_MOCK_AGENT`` → ``mock_agent``
        * ``AUTOMAKER_ENABLED_PROVIDERS`` → ``enabled_providers`` (comma list, e.g. ``claude,opencode``)
        * ``AUTOMAKER_STEP_TIMEOUT`` → ``step_timeout`` (integer seconds)
        * ``AUTOMAKER_MERGE_REPOSITORY`` → ``merge_repository``
        * ``VIBE_KANBAN_PROJECT_ID`` → ``kanban_project_id``
        * ``ANTHROPIC_API_KEY`` / ``CURSOR_API_KEY`` / ``OPENAI_API_KEY`` /
          ``AUTOMAKER_CUSTOM_API_KEY`` → ``api_keys``

        Any variable that is not set or is empty is left at its default value.
        """
        env = os.environ if environ is None else environ
        kwargs: dict[str, Any] = {}

        log_level = env.get("AUTOMAKER_LOG_LEVEL")
        if log_level:
            kwargs["log_level"] = log_level.upper()

        log_json = env.get("AUTOMAKER_LOG_JSON")
        if log_json:
            kwargs["log_json"] = log_json.lower() in _TRUTHY

        mock_agent = env.get("AUTOMAKER_MOCK_AGENT")
        if mock_agent:
            kwargs["mock_agent"] = mock_agent.lower() in _TRUTHY

        enabled = env.get("AUTOMAKER_ENABLED_PROVIDERS")
        if enabled:
            wanted = {part.strip().lower() for part in enabled.split(",") if part.strip()}
            kwargs["enabled_providers"] = {
                name.value: name.value in wanted for name in ProviderName
            }

        timeout_str = env.get("AUTOMAKER_STEP_TIMEOUT")
        if timeout_str:
            kwargs["step_timeout"] = int(timeout_str)

        repository = env.get("AUTOMAKER_MERGE_REPOSITORY")
        if repository:
            kwargs["merge_repository"] = repository

        kanban = env.get("VIBE_KANBAN_PROJECT_ID")
        if kanban:
            kwargs["kanban_project_id"] = kanban

        api_keys: dict[str, str] = {}
        for provider, var in (
            (ProviderName.CLAUDE, "ANTHROPIC_API_KEY"),
            (ProviderName.CURSOR, "CURSOR_API_KEY"),
            (ProviderName.CODEX, "OPENAI_API_KEY"),
            (ProviderName.CUSTOM, "AUTOMAKER_CUSTOM_API_KEY"),
        ):
            value = env.get(var)
            if value:
                api_keys[provider.value] = value
        if api_keys:
            kwargs["api_keys"] = api_keys

        return cls(**kwargs)

    def is_provider_enabled(self, provider: str) -> bool:
        return self.enabled_providers.get(provider, False)
