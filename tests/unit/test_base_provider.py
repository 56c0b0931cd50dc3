"""Tests for providers/base.py and providers/mock.py — the adapter contract."""
from __future__ import annotations

from typing import AsyncIterator

import pytest

from automaker_sdk.core.cancellation import CancellationToken
from automaker_sdk.core.constants import ErrorType, MessageType, ProviderFeature
from automaker_sdk.core.exceptions import ProviderConfigError
from automaker_sdk.core.types import (
    ContentBlock,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
)
from automaker_sdk.providers.base import BaseProvider
from automaker_sdk.providers.mock import MockProvider
from automaker_sdk.utils.async_helpers import collect


def _options(**overrides: object) -> ExecuteOptions:
    values: dict[str, object] = {"prompt": "hi", "model": "claude-opus", "cwd": "/tmp"}
    values.update(overrides)
    return ExecuteOptions(**values)


class _ScriptedProvider(BaseProvider):
    """Yields whatever it is given, or raises partway through."""

    def __init__(self, messages: list[ProviderMessage], raise_after: bool = False) -> None:
        super().__init__()
        self.messages = messages
        self.raise_after = raise_after
        self.started = False

    def get_name(self) -> str:
        return "scripted"

    async def _stream(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        self.started = True
        for message in self.messages:
            yield message
        if self.raise_after:
            raise RuntimeError("backend exploded")

    async def detect_installation(self) -> InstallationStatus:
        return InstallationStatus(installed=True)

    def get_available_models(self) -> list[ModelDefinition]:
        return []


# ---------------------------------------------------------------------------
# Option validation
# ---------------------------------------------------------------------------


def test_missing_model_raises_before_streaming() -> None:
    provider = _ScriptedProvider([])
    with pytest.raises(ProviderConfigError, match="model") as exc_info:
        provider.execute_query(_options(model=""))
    assert exc_info.value.code == "MISSING_MODEL"
    assert provider.started is False


def test_missing_cwd_raises_before_streaming() -> None:
    provider = _ScriptedProvider([])
    with pytest.raises(ProviderConfigError) as exc_info:
        provider.execute_query(_options(cwd=""))
    assert exc_info.value.code == "MISSING_CWD"


# ---------------------------------------------------------------------------
# Terminal-message guarantee
# ---------------------------------------------------------------------------


async def test_nothing_after_terminal_message() -> None:
    provider = _ScriptedProvider(
        [
            ProviderMessage.assistant([ContentBlock.text_block("hi")]),
            ProviderMessage.success("hi"),
            ProviderMessage.assistant([ContentBlock.text_block("late")]),
        ]
    )
    messages = await collect(provider.execute_query(_options()))
    assert [m.type for m in messages] == [MessageType.ASSISTANT, MessageType.RESULT]


async def test_stream_without_terminal_gets_protocol_error() -> None:
    provider = _ScriptedProvider([ProviderMessage.assistant([ContentBlock.text_block("hi")])])
    messages = await collect(provider.execute_query(_options()))
    assert messages[-1].type == MessageType.ERROR
    assert messages[-1].error_type == ErrorType.BACKEND_PROTOCOL
    assert messages[-1].error == "scripted stream ended without a result"
    assert sum(m.is_terminal for m in messages) == 1


async def test_exception_becomes_single_error_message() -> None:
    provider = _ScriptedProvider([], raise_after=True)
    messages = await collect(provider.execute_query(_options()))
    assert len(messages) == 1
    assert messages[0].error == "backend exploded"
    assert messages[0].error_type == ErrorType.EXECUTION


async def test_cancelled_stream_reports_aborted() -> None:
    token = CancellationToken()
    token.cancel()
    provider = _ScriptedProvider([])
    messages = await collect(provider.execute_query(_options(cancellation=token)))
    assert messages[-1].error_type == ErrorType.ABORTED


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


def test_default_features() -> None:
    provider = _ScriptedProvider([])
    assert provider.supports_feature("tools") is True
    assert provider.supports_feature(ProviderFeature.VISION) is False


def test_name_normalization() -> None:
    assert BaseProvider.normalize_feature_name("extendedThinking") == "thinking"
    assert BaseProvider.normalize_provider_name("anthropic") == "claude"
    assert BaseProvider.normalize_provider_name("cursor") == "cursor"


def test_set_config_updates_copy() -> None:
    provider = _ScriptedProvider([])
    provider.set_config(api_key="k")
    assert provider.config.api_key == "k"
    assert provider.validate_config().valid is True


# ---------------------------------------------------------------------------
# MockProvider
# ---------------------------------------------------------------------------


async def test_mock_default_reply_is_empty_success() -> None:
    provider = MockProvider()
    messages = await collect(provider.execute_query(_options()))
    assert len(messages) == 1
    assert messages[0].type == MessageType.RESULT
    assert messages[0].result == ""


async def test_mock_scripts_consumed_in_order_last_reused() -> None:
    provider = MockProvider().script_text("first").script_text("second")
    results = []
    for _ in range(3):
        messages = await collect(provider.execute_query(_options()))
        results.append(messages[-1].result)
    assert results == ["first", "second", "second"]
    assert len(provider.calls) == 3


async def test_mock_callable_script_sees_options() -> None:
    provider = MockProvider().script(
        lambda opts: [ProviderMessage.success(f"echo: {opts.prompt_text}")]
    )
    messages = await collect(provider.execute_query(_options(prompt="ping")))
    assert messages[-1].result == "echo: ping"
    assert provider.last_prompt == "ping"


async def test_mock_script_error() -> None:
    provider = MockProvider().script_error("denied", ErrorType.AUTHENTICATION)
    [message] = await collect(provider.execute_query(_options()))
    assert message.error == "denied"
    assert message.error_type == ErrorType.AUTHENTICATION


async def test_mock_honours_cancellation() -> None:
    token = CancellationToken()
    token.cancel()
    provider = MockProvider().script_text("never")
    [message] = await collect(provider.execute_query(_options(cancellation=token)))
    assert message.error_type == ErrorType.ABORTED


def test_mock_assertions_and_reset() -> None:
    provider = MockProvider()
    provider.assert_not_called()
    with pytest.raises(AssertionError):
        provider.assert_called()
    provider.reset()
    assert provider.calls == []


def test_mock_features_configurable() -> None:
    provider = MockProvider(features=(ProviderFeature.STRUCTURED_OUTPUT,))
    assert provider.supports_feature("structuredOutput") is True
    assert provider.supports_feature("tools") is False
