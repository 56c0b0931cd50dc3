from __future__ import annotations

from typing import Callable

import structlog

from automaker_sdk.core.constants import ProviderName
from automaker_sdk.core.types import InstallationStatus, ModelDefinition, ProviderConfig
from automaker_sdk.providers.base import BaseProvider
from automaker_sdk.providers.claude import ClaudeProvider
from automaker_sdk.providers.codex import CodexProvider
from automaker_sdk.providers.cursor import CursorProvider
from automaker_sdk.providers.custom import CustomProvider
from automaker_sdk.providers.opencode import OpenCodeProvider
from automaker_sdk.query.model_resolver import get_provider_for_model

logger = structlog.get_logger(__name__)

ProviderBuilder = Callable[[ProviderConfig | None], BaseProvider]


class ProviderFactory:
    """Routes model ids to adapter instances.

    The factory is plain instance state: tests build their own and
    :meth:`register` replaces a builder (e.g. with a ``MockProvider``)
    without touching any process-wide registry.

    Usage::

        factory = ProviderFactory()
        provider = factory.get_provider_for_model("cursor-sonnet", ProviderConfig(api_key="..."))
    """

    def __init__(self) -> None:
        self._builders: dict[str, ProviderBuilder] = {
            ProviderName.CLAUDE: ClaudeProvider,
            ProviderName.CURSOR: CursorProvider,
            ProviderName.OPENCODE: OpenCodeProvider,
            ProviderName.CODEX: CodexProvider,
            ProviderName.CUSTOM: CustomProvider,
        }

    def register(self, name: str, builder: ProviderBuilder) -> None:
        self._builders[name.lower()] = builder

    @property
    def provider_names(self) -> list[str]:
        return list(self._builders)

    def detect_provider_name(self, model_id: str) -> str:
        """Provider name for *model_id*; unknown models route to Claude."""
        provider = get_provider_for_model(model_id)
        if provider is None:
            logger.warning("provider_unknown_model_prefix", model=model_id, fallback="claude")
            return ProviderName.CLAUDE.value
        return provider.value

    def get_provider_for_model(
        self, model_id: str, config: ProviderConfig | None = None
    ) -> BaseProvider:
        return self._builders[self.detect_provider_name(model_id)](config)

    def get_provider_by_name(
        self, name: str, config: ProviderConfig | None = None
    ) -> BaseProvider | None:
        builder = self._builders.get(BaseProvider.normalize_provider_name(name.lower()))
        return builder(config) if builder is not None else None

    def get_all_providers(self) -> list[BaseProvider]:
        return [builder(None) for builder in self._builders.values()]

    async def check_all_providers(self) -> dict[str, InstallationStatus]:
        statuses: dict[str, InstallationStatus] = {}
        for provider in self.get_all_providers():
            statuses[provider.get_name()] = await provider.detect_installation()
        return statuses

    def get_all_available_models(self) -> list[ModelDefinition]:
        models: list[ModelDefinition] = []
        for provider in self.get_all_providers():
            models.extend(provider.get_available_models())
        return models
