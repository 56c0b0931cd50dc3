"""Tests for query/provider_query.py — adapter selection and structured output."""
from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import BaseModel

from automaker_sdk.core.config import AutomakerConfig
from automaker_sdk.core.constants import ErrorType, MessageType, ProviderFeature
from automaker_sdk.core.exceptions import OutputParsingError
from automaker_sdk.core.types import ContentBlock, OutputFormat, ProviderMessage
from automaker_sdk.providers.factory import ProviderFactory
from automaker_sdk.providers.mock import MockProvider
from automaker_sdk.query.provider_query import (
    ProviderQueryOptions,
    QueryAccumulator,
    execute_provider_query,
    query_structured,
)
from automaker_sdk.utils.async_helpers import collect

SCHEMA = {"type": "object", "properties": {"title": {"type": "string"}}, "required": ["title"]}


class Summary(BaseModel):
    title: str


def _options(project: Path, **extra: object) -> ProviderQueryOptions:
    return ProviderQueryOptions(cwd=str(project), prompt="Summarize", model="sonnet", **extra)


# ---------------------------------------------------------------------------
# QueryAccumulator
# ---------------------------------------------------------------------------


def test_accumulator_folds_text_and_terminal() -> None:
    acc = QueryAccumulator()
    acc.feed(ProviderMessage.assistant([ContentBlock.text_block("a")], session_id="s"))
    acc.feed(ProviderMessage.assistant([ContentBlock.tool_use("Read", {}, "t")]))
    acc.feed(ProviderMessage.assistant([ContentBlock.text_block("b")]))
    acc.feed(ProviderMessage.success("ab", structured_output={"x": 1}))
    assert acc.text == "ab"
    assert acc.session_id == "s"
    assert acc.succeeded is True
    assert acc.structured_output == {"x": 1}


def test_accumulator_failure_not_succeeded() -> None:
    acc = QueryAccumulator()
    acc.feed(ProviderMessage.failure("boom"))
    assert acc.succeeded is False
    assert acc.terminal is not None and acc.terminal.error == "boom"


# ---------------------------------------------------------------------------
# execute_provider_query
# ---------------------------------------------------------------------------


async def test_plain_query_passes_stream_through(
    project: Path, mock_provider: MockProvider, factory: ProviderFactory, config: AutomakerConfig
) -> None:
    mock_provider.script_text("hello")
    messages = await collect(execute_provider_query(_options(project), config=config, factory=factory))
    assert [m.type for m in messages] == [MessageType.ASSISTANT, MessageType.RESULT]
    call = mock_provider.calls[0]
    assert call.model == "claude-sonnet-4-5-20250929"
    assert call.cwd == str(project)
    assert call.max_turns == 100
    assert call.prompt_text == "Summarize"


async def test_non_native_adapter_gets_prompt_and_synthesized_result(
    project: Path, mock_provider: MockProvider, factory: ProviderFactory, config: AutomakerConfig
) -> None:
    mock_provider.script_text('Here you go: {"title": "Done"}')
    options = _options(project, output_format=OutputFormat(schema=SCHEMA))
    messages = await collect(execute_provider_query(options, config=config, factory=factory))

    call = mock_provider.calls[0]
    assert call.output_format is None
    assert "IMPORTANT: You must respond with valid JSON" in call.prompt_text
    assert messages[-1].type == MessageType.RESULT
    assert messages[-1].structured_output == {"title": "Done"}


async def test_invalid_json_adds_no_synthesized_result(
    project: Path, mock_provider: MockProvider, factory: ProviderFactory, config: AutomakerConfig
) -> None:
    mock_provider.script_text('{"wrong": 1}')
    options = _options(project, output_format=OutputFormat(schema=SCHEMA))
    messages = await collect(execute_provider_query(options, config=config, factory=factory))
    assert len(messages) == 2
    assert messages[-1].structured_output is None


async def test_native_adapter_receives_schema(project: Path, config: AutomakerConfig) -> None:
    native = MockProvider(
        name="claude",
        features=(ProviderFeature.TEXT, ProviderFeature.STRUCTURED_OUTPUT),
    ).script_text('{"title": "Native"}', structured_output={"title": "Native"})
    factory = ProviderFactory()
    factory.register("claude", lambda _config: native)

    options = _options(project, output_format=OutputFormat(schema=SCHEMA))
    messages = await collect(execute_provider_query(options, config=config, factory=factory))

    assert native.calls[0].output_format is not None
    assert native.calls[0].prompt_text == "Summarize"
    assert sum(m.type == MessageType.RESULT for m in messages) == 1
    assert messages[-1].structured_output == {"title": "Native"}


async def test_disabled_provider_routes_to_equivalent(
    project: Path, mock_provider: MockProvider, factory: ProviderFactory
) -> None:
    config = AutomakerConfig.from_env({"AUTOMAKER_ENABLED_PROVIDERS": "cursor"})
    await collect(execute_provider_query(_options(project), config=config, factory=factory))
    assert mock_provider.calls[0].model == "cursor-sonnet-4.5"


async def test_api_key_forwarded_to_adapter(project: Path, config: AutomakerConfig) -> None:
    seen: list[object] = []
    factory = ProviderFactory()

    def build(provider_config: object) -> MockProvider:
        seen.append(provider_config)
        return MockProvider(name="claude")

    factory.register("claude", build)
    options = _options(project, api_keys={"claude": "sk-ant"})
    await collect(execute_provider_query(options, config=config, factory=factory))
    assert getattr(seen[0], "api_key") == "sk-ant"


async def test_missing_cwd_surfaces_error_then_raises(
    mock_provider: MockProvider, factory: ProviderFactory, config: AutomakerConfig
) -> None:
    options = ProviderQueryOptions(cwd="", prompt="x", model="sonnet")
    seen = []
    with pytest.raises(Exception, match="cwd"):
        async for message in execute_provider_query(options, config=config, factory=factory):
            seen.append(message)
    assert seen and seen[-1].type == MessageType.ERROR
    mock_provider.assert_not_called()


# ---------------------------------------------------------------------------
# query_structured
# ---------------------------------------------------------------------------


async def test_query_structured_returns_model(
    project: Path, mock_provider: MockProvider, factory: ProviderFactory, config: AutomakerConfig
) -> None:
    mock_provider.script_text('{"title": "Release notes"}')
    result = await query_structured(_options(project), Summary, config=config, factory=factory)
    assert result == Summary(title="Release notes")


async def test_query_structured_retries_then_succeeds(
    project: Path, mock_provider: MockProvider, factory: ProviderFactory, config: AutomakerConfig
) -> None:
    mock_provider.script_text("not json").script_text('{"title": "Second"}')
    result = await query_structured(_options(project), Summary, config=config, factory=factory)
    assert result.title == "Second"
    assert len(mock_provider.calls) == 2


async def test_query_structured_exhausts_retries(
    project: Path, mock_provider: MockProvider, factory: ProviderFactory, config: AutomakerConfig
) -> None:
    mock_provider.script_error("overloaded", ErrorType.RATE_LIMIT)
    with pytest.raises(OutputParsingError, match="Query failed: overloaded"):
        await query_structured(
            _options(project), Summary, max_retries=1, config=config, factory=factory
        )
    assert len(mock_provider.calls) == 2
