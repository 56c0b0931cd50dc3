from __future__ import annotations

import contextlib
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

import structlog

from automaker_sdk.core.constants import ErrorType, ProviderFeature
from automaker_sdk.core.exceptions import ProviderConfigError
from automaker_sdk.core.types import (
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderConfig,
    ProviderMessage,
    ValidationResult,
)

logger = structlog.get_logger(__name__)

_FEATURE_ALIASES: dict[str, str] = {"extendedThinking": ProviderFeature.THINKING.value}
_PROVIDER_ALIASES: dict[str, str] = {"anthropic": "claude", "zai": "custom"}


class BaseProvider(ABC):
    """Abstract base for every agent backend adapter.

    Subclasses implement :meth:`_stream` and the discovery methods.  The
    public :meth:`execute_query` validates the options up front and wraps the
    subclass stream so that callers always observe exactly one terminal
    ``result``/``error`` message, and nothing after it.

    Usage::

        provider = CursorProvider(ProviderConfig(api_key="..."))
        async for msg in provider.execute_query(
            ExecuteOptions(prompt="Fix the tests", model="cursor-sonnet", cwd="/repo")
        ):
            print(msg.type, msg.text)
    """

    def __init__(self, config: ProviderConfig | None = None) -> None:
        self._config = config or ProviderConfig()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.get_name()!r})"

    # ------------------------------------------------------------------ #
    # Adapter contract
    # ------------------------------------------------------------------ #

    @abstractmethod
    def get_name(self) -> str: ...

    @abstractmethod
    async def detect_installation(self) -> InstallationStatus: ...

    @abstractmethod
    def get_available_models(self) -> list[ModelDefinition]: ...

    @abstractmethod
    def _stream(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        """Backend-specific message stream (an async generator)."""

    def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        """Return a lazy, single-pass stream of :class:`ProviderMessage`.

        Raises:
            ProviderConfigError: Immediately (before any process is spawned or
                request is sent) when ``model`` or ``cwd`` is missing.
        """
        self._validate_options(options)
        return self._guard(options)

    # ------------------------------------------------------------------ #
    # Configuration / capabilities
    # ------------------------------------------------------------------ #

    @property
    def config(self) -> ProviderConfig:
        return self._config

    def set_config(self, **updates: Any) -> None:
        self._config = self._config.model_copy(update=updates)

    def validate_config(self) -> ValidationResult:
        errors: list[str] = []
        if self._config is None:
            errors.append("Provider config is missing")
        return ValidationResult(valid=not errors, errors=errors)

    def supports_feature(self, feature: str) -> bool:
        return self.normalize_feature_name(feature) in (
            ProviderFeature.TOOLS,
            ProviderFeature.TEXT,
        )

    @staticmethod
    def normalize_feature_name(feature: str) -> str:
        return _FEATURE_ALIASES.get(feature, feature)

    @staticmethod
    def normalize_provider_name(provider: str) -> str:
        return _PROVIDER_ALIASES.get(provider, provider)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _validate_options(self, options: ExecuteOptions) -> None:
        if not options.model:
            raise ProviderConfigError(
                f"{self.get_name()}: 'model' is required to execute a query",
                code="MISSING_MODEL",
            )
        if not options.cwd:
            raise ProviderConfigError(
                f"{self.get_name()}: 'cwd' is required to execute a query",
                code="MISSING_CWD",
            )

    async def _guard(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        token = options.cancellation
        log = logger.bind(provider=self.get_name(), model=options.model)
        log.debug("provider_query_start")
        async with contextlib.aclosing(self._stream(options)) as stream:
            try:
                async for message in stream:
                    yield message
                    if message.is_terminal:
                        log.debug("provider_query_done", terminal=message.type)
                        return
            except Exception as exc:  # noqa: BLE001
                log.error("provider_stream_failed", error=str(exc))
                if token is not None and token.cancelled:
                    yield ProviderMessage.failure(
                        f"{self.get_name()} aborted", ErrorType.ABORTED
                    )
                else:
                    yield ProviderMessage.failure(str(exc) or type(exc).__name__)
                return
        if token is not None and token.cancelled:
            yield ProviderMessage.failure(f"{self.get_name()} aborted", ErrorType.ABORTED)
            return
        log.warning("provider_stream_ended_without_terminal")
        yield ProviderMessage.failure(
            f"{self.get_name()} stream ended without a result",
            ErrorType.BACKEND_PROTOCOL,
        )
