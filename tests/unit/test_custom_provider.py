"""Tests for providers/custom.py — OpenAI/Anthropic-compatible endpoints over httpx.MockTransport."""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, AsyncIterator

import httpx
import pytest

from automaker_sdk.core.cancellation import CancellationToken
from automaker_sdk.core.constants import BlockType, ErrorType, MessageType
from automaker_sdk.core.types import ConversationMessage, ExecuteOptions, ProviderConfig
from automaker_sdk.providers.custom import (
    CustomEndpoint,
    CustomProvider,
    build_request,
    parse_sse_data,
    strip_model_prefix,
)
from automaker_sdk.utils.async_helpers import collect

OPENAI = CustomEndpoint(base_url="https://llm.example.com/v1", api_key="sk-c", model="glm-4.7")
ANTHROPIC = CustomEndpoint.from_preset("minimax", api_key="mm-key")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in (
        "AUTOMAKER_CUSTOM_BASE_URL",
        "AUTOMAKER_CUSTOM_API_KEY",
        "AUTOMAKER_CUSTOM_API_FORMAT",
        "AUTOMAKER_CUSTOM_MODEL",
        "ZAI_API_KEY",
    ):
        monkeypatch.delenv(var, raising=False)


def _options(project: Path, **extra: Any) -> ExecuteOptions:
    return ExecuteOptions(prompt="Summarize", model="custom-glm-4.7", cwd=str(project), **extra)


def _sse(*events: dict[str, Any]) -> bytes:
    lines = [f"data: {json.dumps(event)}\n\n" for event in events]
    return ("".join(lines) + "data: [DONE]\n\n").encode()


def _provider(handler: Any, endpoint: CustomEndpoint = OPENAI, **kwargs: Any) -> CustomProvider:
    return CustomProvider(endpoint=endpoint, transport=httpx.MockTransport(handler), **kwargs)


# ---------------------------------------------------------------------------
# Request building and configuration
# ---------------------------------------------------------------------------


def test_strip_model_prefix() -> None:
    assert strip_model_prefix("custom-glm-4.7") == "glm-4.7"
    assert strip_model_prefix("glm-4.7") == "glm-4.7"


def test_build_request_openai(project: Path) -> None:
    history = [ConversationMessage(role="assistant", content=[{"type": "text", "text": "Earlier"}])]
    request = build_request(
        _options(project, system_prompt="Be terse", conversation_history=history), OPENAI
    )
    assert request["model"] == "glm-4.7"
    assert request["stream"] is True
    assert request["messages"] == [
        {"role": "system", "content": "Be terse"},
        {"role": "assistant", "content": "Earlier"},
        {"role": "user", "content": "Summarize"},
    ]
    assert "max_tokens" not in request


def test_build_request_anthropic(project: Path) -> None:
    request = build_request(_options(project, system_prompt="Be terse"), ANTHROPIC)
    assert request["system"] == "Be terse"
    assert request["max_tokens"] == 4096
    assert request["messages"] == [{"role": "user", "content": "Summarize"}]


def test_build_request_openai_image_parts(project: Path) -> None:
    prompt = [
        {"type": "text", "text": "What is this?"},
        {"type": "image", "source": {"media_type": "image/png", "data": "AAAA"}},
    ]
    request = build_request(
        ExecuteOptions(prompt=prompt, model="custom-glm-4.6v", cwd=str(project)), OPENAI
    )
    parts = request["messages"][-1]["content"]
    assert parts[0] == {"type": "text", "text": "What is this?"}
    assert parts[1]["image_url"]["url"] == "data:image/png;base64,AAAA"


def test_bare_prefix_uses_endpoint_default_model(project: Path) -> None:
    options = ExecuteOptions(prompt="hi", model="custom-", cwd=str(project))
    assert build_request(options, OPENAI)["model"] == "glm-4.7"


def test_endpoint_from_env() -> None:
    endpoint = CustomEndpoint.from_env(
        {
            "AUTOMAKER_CUSTOM_BASE_URL": "https://api.minimax.io/anthropic",
            "AUTOMAKER_CUSTOM_API_KEY": "k",
            "AUTOMAKER_CUSTOM_API_FORMAT": "Anthropic",
        }
    )
    assert endpoint is not None
    assert endpoint.api_format == "anthropic"
    assert endpoint.api_key == "k"

    zai = CustomEndpoint.from_env({"ZAI_API_KEY": "z-key"})
    assert zai is not None
    assert zai.base_url == "https://api.z.ai/api/coding/paas/v4"
    assert zai.model == "glm-4.7"
    assert zai.api_format == "openai"

    assert CustomEndpoint.from_env({}) is None


def test_config_key_overrides_endpoint_key() -> None:
    provider = CustomProvider(ProviderConfig(api_key="injected"), endpoint=OPENAI)
    assert provider.endpoint is not None and provider.endpoint.api_key == "injected"
    from_config = CustomProvider(ProviderConfig(base_url="https://x.example.com", api_key="k"))
    assert from_config.endpoint == CustomEndpoint(base_url="https://x.example.com", api_key="k")


def test_parse_sse_data() -> None:
    assert parse_sse_data('data: {"a": 1}') == {"a": 1}
    assert parse_sse_data("data: [DONE]") is None
    assert parse_sse_data(": keep-alive") is None
    assert parse_sse_data("event: ping") is None


def test_validate_config() -> None:
    assert CustomProvider(endpoint=OPENAI).validate_config().valid is True
    result = CustomProvider(endpoint=CustomEndpoint(base_url="not a url")).validate_config()
    assert result.valid is False
    assert result.errors == ["Base URL is not a valid URL", "API Key is required"]
    assert result.warnings == ["No default model specified"]
    assert CustomProvider().validate_config().errors == ["Custom endpoint is not configured"]


async def test_detect_installation_and_models() -> None:
    status = await CustomProvider(endpoint=OPENAI).detect_installation()
    assert status.installed is True
    assert status.path == "https://llm.example.com/v1"
    assert status.method == "api"
    assert (await CustomProvider().detect_installation()).installed is False

    [model] = CustomProvider(endpoint=OPENAI).get_available_models()
    assert model.id == "custom-glm-4.7"
    assert model.provider == "custom"
    assert CustomProvider().get_available_models() == []


def test_custom_features() -> None:
    assert CustomProvider().supports_feature("streaming") is True
    assert CustomProvider().supports_feature("structuredOutput") is False


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


async def test_openai_stream(project: Path) -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_sse(
                {"id": "chatcmpl-1", "choices": [{"delta": {"reasoning_content": "Thinking"}}]},
                {"id": "chatcmpl-1", "choices": [{"delta": {"content": "Hello"}}]},
                {"id": "chatcmpl-1", "choices": [{"delta": {"content": " world"}}]},
                {"id": "chatcmpl-1", "choices": [{"delta": {}, "finish_reason": "stop"}]},
            ),
        )

    messages = await collect(_provider(handler).execute_query(_options(project)))

    assert seen["url"] == "https://llm.example.com/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-c"
    assert seen["body"]["model"] == "glm-4.7"
    assert [m.type for m in messages] == [
        MessageType.ASSISTANT,
        MessageType.ASSISTANT,
        MessageType.RESULT,
    ]
    thinking = messages[0].message.content[0]  # type: ignore[union-attr]
    assert thinking.type == BlockType.THINKING
    assert thinking.thinking == "Thinking"
    assert messages[1].text == "Hello world"
    assert messages[2].result == "Hello world"
    assert messages[2].session_id == "chatcmpl-1"


async def test_anthropic_stream(project: Path) -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream; charset=utf-8"},
            content=_sse(
                {"type": "message_start", "message": {"id": "msg_1"}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
                {"type": "message_stop"},
            ),
        )

    messages = await collect(_provider(handler, ANTHROPIC).execute_query(_options(project)))

    assert seen["url"] == "https://api.minimax.io/anthropic/v1/messages"
    assert seen["headers"]["x-api-key"] == "mm-key"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert messages[0].text == "Hi"
    assert messages[-1].type == MessageType.RESULT
    assert messages[-1].result == "Hi"
    assert messages[-1].session_id == "msg_1"


async def test_non_streaming_json_body_accepted(project: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"id": "c-9", "choices": [{"message": {"content": "All done"}}]}
        )

    messages = await collect(_provider(handler).execute_query(_options(project)))
    assert messages[0].text == "All done"
    assert messages[-1].result == "All done"
    assert messages[-1].session_id == "c-9"


async def test_error_event_is_terminal(project: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_sse(
                {"choices": [{"delta": {"content": "Partial"}}]},
                {"error": {"message": "Rate limit exceeded"}},
            ),
        )

    messages = await collect(_provider(handler).execute_query(_options(project)))
    assert [m.type for m in messages] == [MessageType.ASSISTANT, MessageType.ERROR]
    assert messages[-1].error == "Rate limit exceeded"
    assert messages[-1].error_type == ErrorType.RATE_LIMIT


@pytest.mark.parametrize(
    "status, body, expected",
    [
        (401, "invalid token", ErrorType.AUTHENTICATION),
        (429, "slow down", ErrorType.RATE_LIMIT),
        (429, "monthly quota reached", ErrorType.QUOTA_EXHAUSTED),
        (500, "upstream crashed", ErrorType.EXECUTION),
    ],
)
async def test_http_errors_classified(
    project: Path, status: int, body: str, expected: ErrorType
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text=body)

    messages = await collect(_provider(handler).execute_query(_options(project)))
    assert len(messages) == 1
    assert messages[0].error == f"Custom endpoint error ({status}): {body}"
    assert messages[0].error_type == expected


async def test_unconfigured_endpoint_sends_nothing(project: Path) -> None:
    messages = await collect(CustomProvider().execute_query(_options(project)))
    assert len(messages) == 1
    assert messages[0].error_type == ErrorType.AUTHENTICATION
    assert "not configured" in (messages[0].error or "")


async def test_connection_error_is_execution_failure(project: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    messages = await collect(_provider(handler).execute_query(_options(project)))
    assert messages[-1].error_type == ErrorType.EXECUTION
    assert "Could not reach custom endpoint" in (messages[-1].error or "")


async def test_cancel_mid_stream_aborts(project: Path) -> None:
    async def body() -> AsyncIterator[bytes]:
        yield b'data: {"choices": [{"delta": {"content": "Working\\n"}}]}\n\n'
        await asyncio.sleep(30)
        yield b"data: [DONE]\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())

    token = CancellationToken()
    messages = []
    async for message in _provider(handler).execute_query(_options(project, cancellation=token)):
        messages.append(message)
        if message.type == MessageType.ASSISTANT:
            token.cancel()
            token.cancel()

    assert [m.type for m in messages] == [MessageType.ASSISTANT, MessageType.ERROR]
    assert messages[0].text == "Working\n"
    assert messages[-1].error_type == ErrorType.ABORTED
