from __future__ import annotations

import asyncio
import json
import os
from typing import Any, AsyncIterator

import httpx
import structlog

from automaker_sdk.core.constants import ErrorType, ProviderFeature
from automaker_sdk.core.exceptions import ProviderError
from automaker_sdk.core.types import (
    ContentBlock,
    ConversationMessage,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderConfig,
    ProviderMessage,
)
from automaker_sdk.providers.base import BaseProvider

logger = structlog.get_logger(__name__)

OPENAI_API_KEY_ENV = "OPENAI_API_KEY"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
OUTPUT_SCHEMA_NAME = "codex_output"
HISTORY_HEADER = "Current request:\n"


class CodexError(ProviderError):
    """Internal: a classified failure carrying the user-facing message."""

    def __init__(self, user_message: str, raw_message: str, error_type: ErrorType) -> None:
        super().__init__(raw_message or user_message, code=error_type.value)
        self.user_message = user_message
        self.raw_message = raw_message
        self.error_type = error_type


def format_history_as_text(history: list[ConversationMessage]) -> str:
    if not history:
        return ""
    parts = ["Previous conversation:\n\n"]
    for entry in history:
        speaker = "User" if entry.role == "user" else "Assistant"
        if isinstance(entry.content, str):
            text = entry.content
        else:
            text = "\n".join(
                block.get("text", "") for block in entry.content if block.get("type") == "text"
            )
        parts.append(f"{speaker}: {text}\n\n")
    parts.append("---\n\n")
    return "".join(parts)


def build_sdk_error_message(raw_message: str, user_message: str) -> str:
    if not raw_message:
        return user_message
    if not user_message or raw_message == user_message:
        return raw_message
    return f"{user_message}\n\nDetails: {raw_message}"


def build_content_blocks(options: ExecuteOptions) -> list[dict[str, Any]]:
    """Translate the prompt into Responses API ``input_text``/``input_image`` parts.

    Raises:
        ValueError: When the prompt has no text and no image content.
    """
    content: list[dict[str, Any]] = [
        {
            "type": "input_text",
            "text": format_history_as_text(options.conversation_history) + HISTORY_HEADER,
        }
    ]
    blocks = (
        [{"type": "text", "text": options.prompt}]
        if isinstance(options.prompt, str)
        else options.prompt
    )
    has_content = False
    for block in blocks:
        text = block.get("text")
        if block.get("type") == "text" and isinstance(text, str) and text.strip():
            content.append({"type": "input_text", "text": text})
            has_content = True
            continue
        source = block.get("source") or {}
        if block.get("type") == "image" and source.get("data") and source.get("media_type"):
            content.append(
                {
                    "type": "input_image",
                    "image_url": f"data:{source['media_type']};base64,{source['data']}",
                    "detail": "auto",
                }
            )
            has_content = True
    if not has_content:
        raise ValueError("Codex SDK prompt is empty.")
    return content


def build_request(options: ExecuteOptions) -> dict[str, Any]:
    request: dict[str, Any] = {
        "model": options.model,
        "input": [{"type": "message", "role": "user", "content": build_content_blocks(options)}],
        "tool_choice": "none",
    }
    if options.system_prompt:
        request["instructions"] = options.system_prompt
    if options.output_format is not None:
        request["text"] = {
            "format": {
                "type": "json_schema",
                "name": OUTPUT_SCHEMA_NAME,
                "schema": options.output_format.json_schema,
                "strict": True,
            }
        }
    if options.sdk_session_id and not options.conversation_history:
        request["previous_response_id"] = options.sdk_session_id
    return request


def extract_output_text(body: dict[str, Any]) -> str:
    """Concatenate every ``output_text`` part of a Responses API payload."""
    if isinstance(body.get("output_text"), str):
        return body["output_text"]
    texts: list[str] = []
    for item in body.get("output") or []:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        for part in item.get("content") or []:
            if isinstance(part, dict) and part.get("type") == "output_text":
                texts.append(str(part.get("text") or ""))
    return "".join(texts)


def classify_http_error(response: httpx.Response) -> CodexError:
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    error = payload.get("error") if isinstance(payload, dict) else None
    error = error if isinstance(error, dict) else {}
    raw = str(error.get("message") or response.text or f"HTTP {response.status_code}")
    code = str(error.get("code") or error.get("type") or "")

    if response.status_code in (401, 403):
        return CodexError(
            "Authentication failed. Check your OpenAI API key.",
            raw,
            ErrorType.AUTHENTICATION,
        )
    if response.status_code == 429 and "insufficient_quota" in code:
        return CodexError(
            "OpenAI usage quota exhausted. Check your plan and billing details.",
            raw,
            ErrorType.QUOTA_EXHAUSTED,
        )
    if response.status_code == 429:
        return CodexError(
            "Rate limit exceeded. Please wait before retrying.",
            raw,
            ErrorType.RATE_LIMIT,
        )
    return CodexError(
        f"OpenAI request failed (HTTP {response.status_code}).",
        raw,
        ErrorType.EXECUTION,
    )


class CodexProvider(BaseProvider):
    """Codex models through one non-streaming OpenAI Responses API request.

    The message stream is synthesized from the single response: one assistant
    text message followed by one terminal result.

    Args:
        config: Credentials (``api_key``, else ``OPENAI_API_KEY``) and an
            optional ``base_url``.
        transport: Optional :class:`httpx.AsyncBaseTransport` (tests pass an
            ``httpx.MockTransport``).
        timeout: HTTP timeout in seconds.
    """

    def __init__(
        self,
        config: ProviderConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 600.0,
    ) -> None:
        super().__init__(config)
        self._transport = transport
        self._timeout = timeout

    def get_name(self) -> str:
        return "codex"

    def _api_key(self) -> str | None:
        return self._config.api_key or os.environ.get(OPENAI_API_KEY_ENV)

    # ------------------------------------------------------------------ #
    # Streaming
    # ------------------------------------------------------------------ #

    async def _stream(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        api_key = self._api_key()
        if not api_key:
            yield ProviderMessage.failure(
                f"{OPENAI_API_KEY_ENV} is not set.", ErrorType.AUTHENTICATION
            )
            return
        try:
            request = build_request(options)
        except ValueError as exc:
            yield ProviderMessage.failure(str(exc))
            return

        token = options.cancellation
        if token is not None and token.cancelled:
            yield ProviderMessage.failure("codex aborted", ErrorType.ABORTED)
            return

        async with httpx.AsyncClient(
            base_url=(self._config.base_url or DEFAULT_BASE_URL).rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            task = asyncio.ensure_future(client.post("/responses", json=request))
            remove = token.add_callback(task.cancel) if token is not None else None
            try:
                response = await task
            except asyncio.CancelledError:
                if token is not None and token.cancelled:
                    logger.info("codex_request_aborted", model=options.model)
                    yield ProviderMessage.failure("codex aborted", ErrorType.ABORTED)
                    return
                raise
            except httpx.RequestError as exc:
                logger.error("codex_request_failed", error=str(exc))
                yield ProviderMessage.failure(
                    build_sdk_error_message(str(exc), "Could not reach the OpenAI API."),
                    ErrorType.EXECUTION,
                )
                return
            finally:
                if remove is not None:
                    remove()

        if response.status_code >= 400:
            err = classify_http_error(response)
            logger.error(
                "codex_request_error",
                status_code=response.status_code,
                error_type=err.error_type,
                message=err.raw_message,
            )
            yield ProviderMessage.failure(
                build_sdk_error_message(err.raw_message, err.user_message), err.error_type
            )
            return

        try:
            body: dict[str, Any] = response.json()
        except ValueError:
            yield ProviderMessage.failure(
                f"Non-JSON response from OpenAI: {response.text[:200]}",
                ErrorType.BACKEND_PROTOCOL,
            )
            return

        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            yield ProviderMessage.failure(message or "OpenAI response error")
            return

        response_id = body.get("id")
        output_text = extract_output_text(body)
        structured: Any = None
        if options.output_format is not None and output_text:
            try:
                structured = json.loads(output_text)
            except json.JSONDecodeError:
                logger.warning("codex_structured_output_invalid", response_id=response_id)

        yield ProviderMessage.assistant([ContentBlock.text_block(output_text)], response_id)
        yield ProviderMessage.success(output_text, response_id, structured_output=structured)

    # ------------------------------------------------------------------ #
    # Discovery
    # ------------------------------------------------------------------ #

    async def detect_installation(self) -> InstallationStatus:
        has_key = bool(self._api_key())
        return InstallationStatus(
            installed=True,
            method="api",
            has_api_key=has_key,
            authenticated=has_key,
            error=None if has_key else f"{OPENAI_API_KEY_ENV} is not set.",
        )

    def get_available_models(self) -> list[ModelDefinition]:
        return [
            ModelDefinition(
                id="gpt-5.2-codex",
                name="GPT-5.2 Codex",
                model_string="gpt-5.2-codex",
                provider="codex",
                description="OpenAI's coding-optimised GPT-5.2 model",
                context_window=400000,
                max_output_tokens=128000,
                supports_vision=True,
                supports_tools=False,
                tier="premium",
                default=True,
            ),
            ModelDefinition(
                id="gpt-5.2",
                name="GPT-5.2",
                model_string="gpt-5.2",
                provider="codex",
                description="OpenAI GPT-5.2 general model",
                context_window=400000,
                max_output_tokens=128000,
                supports_vision=True,
                supports_tools=False,
                tier="premium",
            ),
            ModelDefinition(
                id="gpt-5.1-codex-mini",
                name="GPT-5.1 Codex Mini",
                model_string="gpt-5.1-codex-mini",
                provider="codex",
                description="Smaller, faster Codex model",
                context_window=400000,
                max_output_tokens=128000,
                supports_vision=True,
                supports_tools=False,
                tier="standard",
            ),
        ]

    def supports_feature(self, feature: str) -> bool:
        return self.normalize_feature_name(feature) in (
            ProviderFeature.TEXT,
            ProviderFeature.VISION,
            ProviderFeature.STRUCTURED_OUTPUT,
        )
