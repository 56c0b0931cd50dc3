"""User-configured HTTP endpoints (Z.ai, Zhipu, MiniMax or any compatible API).

Two wire formats are spoken over one streaming ``httpx`` request:

* ``openai``: ``POST {base_url}/chat/completions`` with ``stream: true``;
  text arrives as ``choices[0].delta.content`` server-sent events.
* ``anthropic``: ``POST {base_url}/v1/messages`` with ``stream: true``;
  text arrives as ``content_block_delta`` events.

Model ids carry a ``custom-`` routing prefix that is stripped before the
request is sent.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
from typing import Any, AsyncIterator, Literal

import httpx
import structlog
from pydantic import BaseModel

from automaker_sdk.core.constants import ErrorType, ProviderFeature
from automaker_sdk.core.types import (
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderConfig,
    ProviderMessage,
    ValidationResult,
)
from automaker_sdk.providers.base import BaseProvider
from automaker_sdk.providers.streaming import TextCoalescer, classify_error, parse_json_line
from automaker_sdk.utils.async_helpers import iterate_until_cancelled

logger = structlog.get_logger(__name__)

MODEL_PREFIX = "custom-"
BASE_URL_ENV = "AUTOMAKER_CUSTOM_BASE_URL"
API_KEY_ENV = "AUTOMAKER_CUSTOM_API_KEY"
API_FORMAT_ENV = "AUTOMAKER_CUSTOM_API_FORMAT"
MODEL_ENV = "AUTOMAKER_CUSTOM_MODEL"
ZAI_API_KEY_ENV = "ZAI_API_KEY"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

ApiFormat = Literal["openai", "anthropic"]


class EndpointPreset(BaseModel):
    name: str
    base_url: str
    default_model: str
    api_format: ApiFormat


ENDPOINT_PRESETS: dict[str, EndpointPreset] = {
    "zai": EndpointPreset(
        name="Z.ai",
        base_url="https://api.z.ai/api/coding/paas/v4",
        default_model="glm-4.7",
        api_format="openai",
    ),
    "zhipu": EndpointPreset(
        name="Zhipu AI",
        base_url="https://api.z.ai/api/anthropic",
        default_model="glm-4.7",
        api_format="anthropic",
    ),
    "minimax": EndpointPreset(
        name="MiniMax",
        base_url="https://api.minimax.io/anthropic",
        default_model="minimax-m2.1",
        api_format="anthropic",
    ),
}


class CustomEndpoint(BaseModel):
    """Where and how to reach a user-configured endpoint."""

    base_url: str = ""
    api_key: str | None = None
    model: str | None = None
    """Default model id, used when the requested model is just ``custom-``."""
    api_format: ApiFormat = "openai"

    @classmethod
    def from_preset(cls, preset: str, api_key: str | None = None) -> CustomEndpoint:
        """Raises ``KeyError`` for an unknown preset name."""
        p = ENDPOINT_PRESETS[preset]
        return cls(
            base_url=p.base_url, api_key=api_key, model=p.default_model, api_format=p.api_format
        )

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> CustomEndpoint | None:
        """``AUTOMAKER_CUSTOM_*`` variables, else the Z.ai preset when ``ZAI_API_KEY`` is set."""
        env = os.environ if environ is None else environ
        base_url = env.get(BASE_URL_ENV)
        if base_url:
            api_format = env.get(API_FORMAT_ENV, "openai").lower()
            return cls(
                base_url=base_url,
                api_key=env.get(API_KEY_ENV) or None,
                model=env.get(MODEL_ENV) or None,
                api_format="anthropic" if api_format == "anthropic" else "openai",
            )
        if env.get(ZAI_API_KEY_ENV):
            return cls.from_preset("zai", env[ZAI_API_KEY_ENV])
        return None


def strip_model_prefix(model: str) -> str:
    return model[len(MODEL_PREFIX):] if model.lower().startswith(MODEL_PREFIX) else model


def build_messages(options: ExecuteOptions, api_format: ApiFormat) -> list[dict[str, Any]]:
    """Conversation history followed by the prompt as the final user turn."""
    messages: list[dict[str, Any]] = []
    if api_format == "openai" and options.system_prompt:
        messages.append({"role": "system", "content": options.system_prompt})
    for entry in options.conversation_history:
        content = entry.content
        if not isinstance(content, str):
            content = "\n".join(
                block.get("text", "") for block in content if block.get("type") == "text"
            )
        messages.append({"role": entry.role, "content": content})

    if isinstance(options.prompt, str):
        messages.append({"role": "user", "content": options.prompt})
    elif api_format == "anthropic":
        messages.append({"role": "user", "content": options.prompt})
    else:
        parts: list[dict[str, Any]] = []
        for block in options.prompt:
            source = block.get("source") or {}
            if block.get("type") == "text" and block.get("text"):
                parts.append({"type": "text", "text": block["text"]})
            elif block.get("type") == "image" and source.get("data"):
                url = f"data:{source.get('media_type', 'image/png')};base64,{source['data']}"
                parts.append({"type": "image_url", "image_url": {"url": url}})
        messages.append({"role": "user", "content": parts})
    return messages


def build_request(options: ExecuteOptions, endpoint: CustomEndpoint) -> dict[str, Any]:
    model = strip_model_prefix(options.model) or endpoint.model or ""
    request: dict[str, Any] = {
        "model": model,
        "messages": build_messages(options, endpoint.api_format),
        "stream": True,
    }
    if endpoint.api_format == "anthropic":
        request["max_tokens"] = DEFAULT_MAX_TOKENS
        if options.system_prompt:
            request["system"] = options.system_prompt
    return request


def classify_status(status_code: int, body: str) -> ErrorType:
    if status_code in (401, 403):
        return ErrorType.AUTHENTICATION
    if status_code == 429:
        kind = classify_error(body)
        return kind if kind == ErrorType.QUOTA_EXHAUSTED else ErrorType.RATE_LIMIT
    return classify_error(body)


def parse_sse_data(line: str) -> dict[str, Any] | None:
    """Payload of one ``data:`` line; ``None`` for comments, ``[DONE]`` and other fields."""
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data or data == "[DONE]":
        return None
    return parse_json_line(data)


class CustomProvider(BaseProvider):
    """Streams from a user-configured OpenAI- or Anthropic-compatible endpoint.

    The endpoint comes from *endpoint*, else ``config.base_url``, else the
    environment (see :meth:`CustomEndpoint.from_env`).  ``config.api_key``
    always wins over the endpoint's own key so per-call credential injection
    works the same way as for the other adapters.
    """

    def __init__(
        self,
        config: ProviderConfig | None = None,
        *,
        endpoint: CustomEndpoint | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 600.0,
    ) -> None:
        super().__init__(config)
        self._endpoint = endpoint
        self._transport = transport
        self._timeout = timeout

    def get_name(self) -> str:
        return "custom"

    @property
    def endpoint(self) -> CustomEndpoint | None:
        endpoint = self._endpoint
        if endpoint is None and self._config.base_url:
            endpoint = CustomEndpoint(base_url=self._config.base_url)
        if endpoint is None:
            endpoint = CustomEndpoint.from_env()
        if endpoint is not None and self._config.api_key:
            endpoint = endpoint.model_copy(update={"api_key": self._config.api_key})
        return endpoint

    def set_endpoint(self, endpoint: CustomEndpoint) -> None:
        self._endpoint = endpoint

    # ------------------------------------------------------------------ #
    # Streaming
    # ------------------------------------------------------------------ #

    async def _stream(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        endpoint = self.endpoint
        if endpoint is None or not endpoint.base_url or not endpoint.api_key:
            yield ProviderMessage.failure(
                "Custom endpoint is not configured. Provide both a base URL and an API key.",
                ErrorType.AUTHENTICATION,
            )
            return

        token = options.cancellation
        if token is not None and token.cancelled:
            yield ProviderMessage.failure("custom aborted", ErrorType.ABORTED)
            return

        body = build_request(options, endpoint)
        if endpoint.api_format == "anthropic":
            path = "/v1/messages"
            headers = {"x-api-key": endpoint.api_key, "anthropic-version": ANTHROPIC_VERSION}
        else:
            path = "/chat/completions"
            headers = {"Authorization": f"Bearer {endpoint.api_key}"}
        log = logger.bind(model=body["model"], api_format=endpoint.api_format)
        log.info("custom_request_started", base_url=endpoint.base_url)

        async with httpx.AsyncClient(
            base_url=endpoint.base_url.rstrip("/"),
            headers={"Content-Type": "application/json", **headers},
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            request = client.build_request("POST", path, json=body)
            task = asyncio.ensure_future(client.send(request, stream=True))
            remove = token.add_callback(task.cancel) if token is not None else None
            try:
                response = await task
            except asyncio.CancelledError:
                if token is not None and token.cancelled:
                    log.info("custom_request_aborted")
                    yield ProviderMessage.failure("custom aborted", ErrorType.ABORTED)
                    return
                raise
            except httpx.RequestError as exc:
                log.error("custom_request_failed", error=str(exc))
                yield ProviderMessage.failure(
                    f"Could not reach custom endpoint: {exc}", ErrorType.EXECUTION
                )
                return
            finally:
                if remove is not None:
                    remove()

            try:
                async for message in self._read_response(response, endpoint.api_format, options):
                    yield message
            finally:
                await response.aclose()

    async def _read_response(
        self, response: httpx.Response, api_format: ApiFormat, options: ExecuteOptions
    ) -> AsyncIterator[ProviderMessage]:
        token = options.cancellation
        if response.status_code >= 400:
            text = (await response.aread()).decode("utf-8", errors="replace")
            logger.error("custom_request_error", status_code=response.status_code, body=text[:500])
            yield ProviderMessage.failure(
                f"Custom endpoint error ({response.status_code}): {text}",
                classify_status(response.status_code, text),
            )
            return

        coalescer = TextCoalescer()
        if "text/event-stream" not in response.headers.get("content-type", ""):
            async for message in self._read_complete(response, api_format, coalescer):
                yield message
            return

        async with contextlib.aclosing(
            iterate_until_cancelled(response.aiter_lines(), token)
        ) as lines:
            async for line in lines:
                event = parse_sse_data(line)
                if event is None:
                    continue
                if coalescer.session_id is None and isinstance(event.get("id"), str):
                    coalescer.session_id = event["id"]
                error = event.get("error")
                if error:
                    message = error.get("message") if isinstance(error, dict) else str(error)
                    message = message or "Custom endpoint reported an error"
                    for msg in coalescer.flush():
                        yield msg
                    yield ProviderMessage.failure(
                        message, classify_error(message), coalescer.session_id
                    )
                    return
                for msg in self._convert_event(event, api_format, coalescer):
                    yield msg

        for msg in coalescer.flush():
            yield msg
        if token is not None and token.cancelled:
            yield ProviderMessage.failure("custom aborted", ErrorType.ABORTED, coalescer.session_id)
            return
        yield ProviderMessage.success(coalescer.full_text, coalescer.session_id)

    @staticmethod
    def _convert_event(
        event: dict[str, Any], api_format: ApiFormat, coalescer: TextCoalescer
    ) -> list[ProviderMessage]:
        if api_format == "anthropic":
            if event.get("type") == "message_start" and isinstance(event.get("message"), dict):
                coalescer.session_id = coalescer.session_id or event["message"].get("id")
            if event.get("type") != "content_block_delta":
                return []
            delta = event.get("delta") or {}
            if isinstance(delta.get("thinking"), str):
                return coalescer.push("thinking", delta["thinking"])
            if isinstance(delta.get("text"), str):
                return coalescer.push("text", delta["text"])
            return []

        out: list[ProviderMessage] = []
        for choice in event.get("choices") or []:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta") or {}
            if isinstance(delta.get("reasoning_content"), str):
                out.extend(coalescer.push("thinking", delta["reasoning_content"]))
            if isinstance(delta.get("content"), str):
                out.extend(coalescer.push("text", delta["content"]))
        return out

    @staticmethod
    async def _read_complete(
        response: httpx.Response, api_format: ApiFormat, coalescer: TextCoalescer
    ) -> AsyncIterator[ProviderMessage]:
        """Endpoints that ignore ``stream: true`` answer with one JSON body."""
        raw = await response.aread()
        try:
            body = json.loads(raw)
        except ValueError:
            snippet = raw[:200].decode("utf-8", errors="replace")
            yield ProviderMessage.failure(
                f"Custom endpoint returned a non-JSON response: {snippet}",
                ErrorType.BACKEND_PROTOCOL,
            )
            return
        if not isinstance(body, dict):
            yield ProviderMessage.failure(
                "Custom endpoint returned an unexpected response", ErrorType.BACKEND_PROTOCOL
            )
            return
        if body.get("error"):
            error = body["error"]
            message = (error.get("message") if isinstance(error, dict) else str(error)) or ""
            yield ProviderMessage.failure(message or "Custom endpoint reported an error")
            return

        if api_format == "anthropic":
            text = "".join(
                str(part.get("text") or "")
                for part in body.get("content") or []
                if isinstance(part, dict) and part.get("type") == "text"
            )
        else:
            text = "".join(
                str((choice.get("message") or {}).get("content") or "")
                for choice in body.get("choices") or []
                if isinstance(choice, dict)
            )
        coalescer.session_id = body.get("id") if isinstance(body.get("id"), str) else None
        for msg in coalescer.push("text", text):
            yield msg
        for msg in coalescer.flush():
            yield msg
        yield ProviderMessage.success(coalescer.full_text, coalescer.session_id)

    # ------------------------------------------------------------------ #
    # Discovery
    # ------------------------------------------------------------------ #

    async def detect_installation(self) -> InstallationStatus:
        endpoint = self.endpoint
        has_url = bool(endpoint and endpoint.base_url)
        has_key = bool(endpoint and endpoint.api_key)
        return InstallationStatus(
            installed=has_url and has_key,
            path=endpoint.base_url if endpoint and has_url else None,
            method="api",
            has_api_key=has_key,
            authenticated=has_key,
            error=None if has_url and has_key else "Custom endpoint is not configured",
        )

    def validate_config(self) -> ValidationResult:
        endpoint = self.endpoint
        if endpoint is None:
            return ValidationResult(valid=False, errors=["Custom endpoint is not configured"])
        errors: list[str] = []
        warnings: list[str] = []
        if not endpoint.base_url:
            errors.append("Base URL is required")
        else:
            try:
                url = httpx.URL(endpoint.base_url)
            except httpx.InvalidURL:
                url = None
            if url is None or url.scheme not in ("http", "https") or not url.host:
                errors.append("Base URL is not a valid URL")
        if not endpoint.api_key:
            errors.append("API Key is required")
        if not endpoint.model:
            warnings.append("No default model specified")
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def get_available_models(self) -> list[ModelDefinition]:
        endpoint = self.endpoint
        if endpoint is None or not endpoint.model:
            return []
        return [
            ModelDefinition(
                id=f"{MODEL_PREFIX}{endpoint.model}",
                name=endpoint.model,
                model_string=f"{MODEL_PREFIX}{endpoint.model}",
                provider="custom",
                description=f"{endpoint.model} via {endpoint.base_url}",
                supports_tools=False,
                default=True,
            )
        ]

    def supports_feature(self, feature: str) -> bool:
        return self.normalize_feature_name(feature) in (
            ProviderFeature.TEXT,
            ProviderFeature.STREAMING,
        )
