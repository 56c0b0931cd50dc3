from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable, Sequence

from automaker_sdk.core.constants import ErrorType, ProviderFeature
from automaker_sdk.core.types import (
    ContentBlock,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderConfig,
    ProviderMessage,
)
from automaker_sdk.providers.base import BaseProvider

Script = Sequence[ProviderMessage] | Callable[[ExecuteOptions], Sequence[ProviderMessage]]


class MockProvider(BaseProvider):
    """In-memory provider for testing.

    Usage::

        provider = MockProvider(name="claude")
        provider.script_text("[REVIEW_PASSED]\\nNo issues found.")     # static reply
        provider.script(lambda opts: [...])                            # dynamic reply
        async for msg in provider.execute_query(options):
            ...
        provider.assert_called()

    Every executed :class:`ExecuteOptions` is recorded in :attr:`calls`.
    Queued scripts are consumed one per call; the last one is reused.
    """

    def __init__(
        self,
        name: str = "mock",
        config: ProviderConfig | None = None,
        *,
        features: Sequence[str] = (ProviderFeature.TOOLS, ProviderFeature.TEXT),
        delay: float = 0.0,
    ) -> None:
        super().__init__(config)
        self._name = name
        self._features = {str(f) for f in features}
        self._delay = delay
        self._scripts: list[Script] = []
        self.calls: list[ExecuteOptions] = []

    # ------------------------------------------------------------------ #
    # Scripting helpers
    # ------------------------------------------------------------------ #

    def script(self, messages: Script) -> MockProvider:
        self._scripts.append(messages)
        return self

    def script_text(self, text: str, *, structured_output: object = None) -> MockProvider:
        return self.script(
            [
                ProviderMessage.assistant([ContentBlock.text_block(text)]),
                ProviderMessage.success(text, structured_output=structured_output),
            ]
        )

    def script_error(
        self, error: str, error_type: ErrorType = ErrorType.EXECUTION
    ) -> MockProvider:
        return self.script([ProviderMessage.failure(error, error_type)])

    # ------------------------------------------------------------------ #
    # BaseProvider implementation
    # ------------------------------------------------------------------ #

    def get_name(self) -> str:
        return self._name

    async def _stream(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        self.calls.append(options)
        if not self._scripts:
            script: Script = [ProviderMessage.success("")]
        elif len(self._scripts) > 1:
            script = self._scripts.pop(0)
        else:
            script = self._scripts[0]
        messages = script(options) if callable(script) else script
        token = options.cancellation
        for message in messages:
            if self._delay:
                await asyncio.sleep(self._delay)
            if token is not None and token.cancelled:
                yield ProviderMessage.failure(f"{self._name} aborted", ErrorType.ABORTED)
                return
            yield message

    async def detect_installation(self) -> InstallationStatus:
        return InstallationStatus(installed=True, method="sdk", authenticated=True)

    def get_available_models(self) -> list[ModelDefinition]:
        return [
            ModelDefinition(
                id=f"{self._name}-model",
                name=f"{self._name.title()} Mock Model",
                model_string=f"{self._name}-model",
                provider=self._name,
                default=True,
            )
        ]

    def supports_feature(self, feature: str) -> bool:
        return self.normalize_feature_name(feature) in self._features

    # ------------------------------------------------------------------ #
    # Test helpers
    # ------------------------------------------------------------------ #

    def assert_called(self) -> None:
        assert self.calls, f"Expected {self._name} provider to be called"

    def assert_not_called(self) -> None:
        assert not self.calls, f"Expected no calls, got {len(self.calls)}"

    @property
    def last_prompt(self) -> str:
        assert self.calls, "No calls recorded"
        return self.calls[-1].prompt_text

    def reset(self) -> None:
        self.calls.clear()
        self._scripts.clear()
