from __future__ import annotations

import contextlib
import json
import os
from typing import Any, AsyncIterator

import structlog
from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    CLINotFoundError,
    ProcessError,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    query,
)

from automaker_sdk.core.constants import (
    DEFAULT_ALLOWED_TOOLS,
    ErrorType,
    ProviderFeature,
)
from automaker_sdk.core.types import (
    ContentBlock,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
)
from automaker_sdk.providers.base import BaseProvider
from automaker_sdk.providers.streaming import classify_error
from automaker_sdk.query.model_resolver import resolve_model_string
from automaker_sdk.utils.async_helpers import iterate_until_cancelled

logger = structlog.get_logger(__name__)

MOCK_AGENT_ENV = "AUTOMAKER_MOCK_AGENT"
MOCK_RESPONSE_TEXT = "Mock response from Claude provider."
DEFAULT_MAX_TURNS = 20


# ---------------------------------------------------------------------------
# Mock mode
# ---------------------------------------------------------------------------


def mock_value_for_schema(schema: Any) -> Any:
    """Build a placeholder value shaped like *schema* (used by mock mode)."""
    if not isinstance(schema, dict):
        return "mock"
    schema_type = schema.get("type")
    if isinstance(schema_type, list):
        schema_type = next((t for t in schema_type if t != "null"), None)
    if schema_type is None and isinstance(schema.get("properties"), dict):
        schema_type = "object"
    if schema_type == "string":
        return "mock"
    if schema_type in ("number", "integer"):
        return 0
    if schema_type == "boolean":
        return False
    if schema_type == "array":
        return []
    if schema_type == "object":
        properties = schema.get("properties") or {}
        keys = schema.get("required") or list(properties)
        return {key: mock_value_for_schema(properties.get(key)) for key in keys}
    return "mock"


def is_mock_mode() -> bool:
    return os.environ.get(MOCK_AGENT_ENV, "").lower() == "true"


# ---------------------------------------------------------------------------
# SDK message conversion
# ---------------------------------------------------------------------------


def convert_block(block: Any) -> ContentBlock | None:
    if isinstance(block, TextBlock):
        return ContentBlock.text_block(block.text)
    if isinstance(block, ThinkingBlock):
        return ContentBlock.thinking_block(block.thinking)
    if isinstance(block, ToolUseBlock):
        return ContentBlock.tool_use(block.name, block.input, block.id)
    if isinstance(block, ToolResultBlock):
        content = block.content
        if not isinstance(content, str):
            content = json.dumps(content) if content is not None else ""
        return ContentBlock.tool_result(content, block.tool_use_id)
    return None


def convert_sdk_message(message: Any, session_id: str | None) -> ProviderMessage | None:
    if isinstance(message, AssistantMessage):
        blocks = [b for b in (convert_block(raw) for raw in message.content) if b is not None]
        return ProviderMessage.assistant(blocks, session_id) if blocks else None
    if isinstance(message, UserMessage):
        if isinstance(message.content, str):
            return None
        blocks = [b for b in (convert_block(raw) for raw in message.content) if b is not None]
        if not blocks:
            return None
        return ProviderMessage.user(blocks, session_id)
    if isinstance(message, ResultMessage):
        sid = message.session_id or session_id
        if message.is_error:
            error = message.result or f"Claude query failed ({message.subtype})"
            return ProviderMessage.failure(error, classify_error(error), sid)
        return ProviderMessage.success(
            message.result or "",
            sid,
            structured_output=getattr(message, "structured_output", None),
        )
    return None


class ClaudeProvider(BaseProvider):
    """Claude models through ``claude_agent_sdk.query``.

    Set ``AUTOMAKER_MOCK_AGENT=true`` to get a canned response (with
    schema-shaped ``structured_output`` when a schema is requested) without
    touching the SDK.
    """

    def get_name(self) -> str:
        return "claude"

    def build_sdk_options(self, options: ExecuteOptions) -> ClaudeAgentOptions:
        kwargs: dict[str, Any] = {
            "model": resolve_model_string(options.model),
            "cwd": options.cwd,
            "system_prompt": options.system_prompt,
            "max_turns": options.max_turns or DEFAULT_MAX_TURNS,
            "allowed_tools": list(options.allowed_tools or DEFAULT_ALLOWED_TOOLS),
            "permission_mode": "bypassPermissions",
        }
        if options.sdk_session_id:
            kwargs["resume"] = options.sdk_session_id
        if options.mcp_servers:
            kwargs["mcp_servers"] = options.mcp_servers
        if options.output_format is not None:
            kwargs["output_format"] = options.output_format.model_dump(by_alias=True)
        if options.sandbox is not None:
            kwargs["sandbox"] = options.sandbox
        if options.max_thinking_tokens:
            kwargs["max_thinking_tokens"] = options.max_thinking_tokens
        env = dict(self._config.env)
        if self._config.api_key:
            env["ANTHROPIC_API_KEY"] = self._config.api_key
        if env:
            kwargs["env"] = env
        return ClaudeAgentOptions(**kwargs)

    # ------------------------------------------------------------------ #
    # Streaming
    # ------------------------------------------------------------------ #

    async def _stream(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        if is_mock_mode():
            async for message in self._mock_stream(options):
                yield message
            return

        token = options.cancellation
        prompt: Any = options.prompt
        if not isinstance(prompt, str):
            prompt = self._stream_prompt(options.prompt, options.sdk_session_id)

        session_id: str | None = options.sdk_session_id
        try:
            sdk_stream = query(prompt=prompt, options=self.build_sdk_options(options))
            async with contextlib.aclosing(sdk_stream) as stream, contextlib.aclosing(
                iterate_until_cancelled(stream, token)
            ) as messages:
                async for raw in messages:
                    if isinstance(raw, SystemMessage):
                        data = getattr(raw, "data", None) or {}
                        session_id = data.get("session_id") or session_id
                        continue
                    message = convert_sdk_message(raw, session_id)
                    if message is not None:
                        yield message
        except CLINotFoundError as exc:
            logger.error("claude_cli_not_found", error=str(exc))
            yield ProviderMessage.failure(
                "Claude Code CLI not found. Install it with: "
                "npm install -g @anthropic-ai/claude-code",
                ErrorType.SPAWN_FAILURE,
            )
            return
        except ProcessError as exc:
            if token is not None and token.cancelled:
                yield ProviderMessage.failure("claude aborted", ErrorType.ABORTED, session_id)
                return
            error = str(exc)
            logger.error("claude_process_failed", error=error, exit_code=exc.exit_code)
            yield ProviderMessage.failure(error, classify_error(error), session_id)
            return

        if token is not None and token.cancelled:
            yield ProviderMessage.failure("claude aborted", ErrorType.ABORTED, session_id)

    @staticmethod
    async def _stream_prompt(
        blocks: list[dict[str, Any]], session_id: str | None
    ) -> AsyncIterator[dict[str, Any]]:
        yield {
            "type": "user",
            "message": {"role": "user", "content": blocks},
            "parent_tool_use_id": None,
            "session_id": session_id or "default",
        }

    async def _mock_stream(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        logger.info("claude_mock_response", model=options.model)
        yield ProviderMessage.assistant([ContentBlock.text_block(MOCK_RESPONSE_TEXT)])
        if options.output_format is None:
            yield ProviderMessage.success(MOCK_RESPONSE_TEXT)
            return
        structured = mock_value_for_schema(options.output_format.json_schema)
        yield ProviderMessage.success(json.dumps(structured), structured_output=structured)

    # ------------------------------------------------------------------ #
    # Discovery
    # ------------------------------------------------------------------ #

    async def detect_installation(self) -> InstallationStatus:
        has_api_key = bool(self._config.api_key or os.environ.get("ANTHROPIC_API_KEY"))
        return InstallationStatus(
            installed=True,
            method="sdk",
            has_api_key=has_api_key,
            authenticated=has_api_key,
        )

    def get_available_models(self) -> list[ModelDefinition]:
        specs = [
            ("claude-opus-4-5-20251101", "Claude Opus 4.5", "Most capable Claude model", "premium"),
            ("claude-sonnet-4-20250514", "Claude Sonnet 4", "Balanced performance and cost", "standard"),
            ("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", "Fast and capable", "standard"),
            ("claude-haiku-4-5-20251001", "Claude Haiku 4.5", "Fastest Claude model", "basic"),
        ]
        return [
            ModelDefinition(
                id=model_id,
                name=name,
                model_string=model_id,
                provider="anthropic",
                description=description,
                context_window=200000,
                max_output_tokens=16000,
                supports_vision=True,
                supports_tools=True,
                tier=tier,
                default=model_id == "claude-opus-4-5-20251101",
            )
            for model_id, name, description, tier in specs
        ]

    def supports_feature(self, feature: str) -> bool:
        return self.normalize_feature_name(feature) in (
            ProviderFeature.TOOLS,
            ProviderFeature.TEXT,
            ProviderFeature.VISION,
            ProviderFeature.THINKING,
            ProviderFeature.STRUCTURED_OUTPUT,
        )
