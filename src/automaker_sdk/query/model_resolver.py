"""Model alias resolution and provider routing.

Resolution order for a use case:
``AUTOMAKER_MODEL_<USECASE>`` → ``AUTOMAKER_MODEL_DEFAULT`` → Claude default.
When the resolved model's provider is disabled, an equivalent model on an
enabled provider is substituted, then any enabled provider's default.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from typing import Literal

import structlog

from automaker_sdk.core.constants import ProviderName

logger = structlog.get_logger(__name__)

ModelUseCase = Literal["spec", "features", "suggestions", "chat", "auto", "default"]

CLAUDE_MODEL_MAP: dict[str, str] = {
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-5-20250929",
    "opus": "claude-opus-4-5-20251101",
}

DEFAULT_MODELS: dict[str, str] = {
    ProviderName.CLAUDE: "claude-opus-4-5-20251101",
    ProviderName.CURSOR: "cursor-sonnet-4.5",
    ProviderName.OPENCODE: "glm4.7",
    ProviderName.CODEX: "gpt-5.2-codex",
    ProviderName.CUSTOM: "custom-glm-4.7",
}

# Candidate substitutes, tried in order, when a model's provider is disabled.
MODEL_EQUIVALENCE: dict[str, list[str]] = {
    "claude-opus-4-5-20251101": ["cursor-opus-4.5-thinking", "gpt-5.2-codex", "glm4.7"],
    "claude-sonnet-4-5-20250929": ["cursor-sonnet-4.5", "gpt-5.2", "glm4.7"],
    "claude-haiku-4-5-20251001": ["cursor-sonnet-4.5", "gpt-5.1-codex-mini", "glm4.7"],
    "cursor-opus-4.5-thinking": ["claude-opus-4-5-20251101", "gpt-5.2-codex"],
    "cursor-sonnet-4.5": ["claude-sonnet-4-5-20250929", "gpt-5.2"],
    "cursor-gpt-5.2": ["gpt-5.2", "claude-opus-4-5-20251101"],
    "gpt-5.2-codex": ["claude-opus-4-5-20251101", "cursor-gpt-5.2"],
    "gpt-5.2": ["cursor-gpt-5.2", "claude-sonnet-4-5-20250929"],
    "glm4.7": ["claude-sonnet-4-5-20250929", "cursor-sonnet-4.5"],
    "custom-glm-4.7": ["glm4.7", "claude-sonnet-4-5-20250929"],
}

USE_CASE_ENV_VARS: dict[str, str] = {
    "spec": "AUTOMAKER_MODEL_SPEC",
    "features": "AUTOMAKER_MODEL_FEATURES",
    "suggestions": "AUTOMAKER_MODEL_SUGGESTIONS",
    "chat": "AUTOMAKER_MODEL_CHAT",
    "auto": "AUTOMAKER_MODEL_AUTO",
    "default": "AUTOMAKER_MODEL_DEFAULT",
}

_OPENCODE_ALIASES = {"glm4.7", "glm-4.7", "glm", "glm/glm4.7", "opencode"}
_CODEX_PATTERN = re.compile(r"^(gpt-|codex|o\d)")


def get_provider_for_model(model: str) -> ProviderName | None:
    """Route a model string to its provider (``None`` when unrecognised)."""
    lowered = model.lower()
    if lowered.startswith("cursor-"):
        return ProviderName.CURSOR
    if lowered.startswith("custom-"):
        return ProviderName.CUSTOM
    if lowered in _OPENCODE_ALIASES or lowered.startswith(("opencode/", "glm")):
        return ProviderName.OPENCODE
    if _CODEX_PATTERN.match(lowered):
        return ProviderName.CODEX
    if lowered.startswith("claude-") or lowered in CLAUDE_MODEL_MAP:
        return ProviderName.CLAUDE
    return None


def resolve_model_string(model_key: str | None, default_model: str | None = None) -> str:
    """Resolve an alias (``opus``) or pass a full model id through unchanged."""
    fallback = default_model or DEFAULT_MODELS[ProviderName.CLAUDE]
    if not model_key:
        return fallback
    if "claude-" in model_key:
        return model_key
    if model_key in CLAUDE_MODEL_MAP:
        resolved = CLAUDE_MODEL_MAP[model_key]
        logger.debug("model_alias_resolved", alias=model_key, model=resolved)
        return resolved
    if get_provider_for_model(model_key) is not None:
        return model_key
    logger.warning("model_unknown", model=model_key, fallback=fallback)
    return fallback


def get_effective_model(
    explicit_model: str | None = None,
    session_model: str | None = None,
    default_model: str | None = None,
) -> str:
    """Priority: explicit model > session model > default."""
    return resolve_model_string(explicit_model or session_model, default_model)


def get_model_for_use_case(
    use_case: ModelUseCase = "default", environ: Mapping[str, str] | None = None
) -> str:
    env = os.environ if environ is None else environ
    var = USE_CASE_ENV_VARS[use_case]
    if env.get(var):
        return resolve_model_string(env[var])
    if use_case != "default" and env.get(USE_CASE_ENV_VARS["default"]):
        return resolve_model_string(env[USE_CASE_ENV_VARS["default"]])
    return DEFAULT_MODELS[ProviderName.CLAUDE]


def resolve_model_with_provider_availability(
    model: str,
    enabled_providers: Mapping[str, bool],
    default_model: str | None = None,
) -> str:
    """Return *model* (resolved) if its provider is enabled, else the best substitute.

    Order: equivalent model on an enabled provider → Claude default →
    any other enabled provider's default → *default_model* or the resolved
    model (callers must handle the all-disabled case).
    """
    resolved = resolve_model_string(model, default_model)
    provider = get_provider_for_model(resolved)
    if provider is None:
        logger.warning("model_provider_unknown", model=resolved)
        return resolved
    if enabled_providers.get(provider, False):
        return resolved

    logger.info("model_provider_disabled", model=resolved, provider=provider)
    for candidate in MODEL_EQUIVALENCE.get(resolved, []):
        candidate_provider = get_provider_for_model(candidate)
        if candidate_provider is not None and enabled_providers.get(candidate_provider, False):
            logger.info("model_equivalent_selected", model=resolved, equivalent=candidate)
            return candidate

    if enabled_providers.get(ProviderName.CLAUDE, False):
        return DEFAULT_MODELS[ProviderName.CLAUDE]
    for name in ProviderName:
        if enabled_providers.get(name, False):
            return DEFAULT_MODELS[name]

    logger.error("no_providers_enabled", model=resolved)
    return default_model or resolved
