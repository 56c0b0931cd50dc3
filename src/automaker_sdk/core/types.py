from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from automaker_sdk.core.cancellation import CancellationToken
from automaker_sdk.core.constants import BlockType, ErrorType, MessageSubtype, MessageType


class ContentBlock(BaseModel):
    """One typed fragment of model output inside a :class:`ProviderMessage`."""

    type: BlockType
    text: str | None = None
    thinking: str | None = None
    name: str | None = None
    input: Any = None
    tool_use_id: str | None = None
    content: str | None = None

    @classmethod
    def text_block(cls, text: str) -> ContentBlock:
        return cls(type=BlockType.TEXT, text=text)

    @classmethod
    def thinking_block(cls, thinking: str) -> ContentBlock:
        return cls(type=BlockType.THINKING, thinking=thinking)

    @classmethod
    def tool_use(cls, name: str, input: Any, tool_use_id: str | None) -> ContentBlock:
        return cls(type=BlockType.TOOL_USE, name=name, input=input, tool_use_id=tool_use_id)

    @classmethod
    def tool_result(cls, content: str, tool_use_id: str | None) -> ContentBlock:
        return cls(type=BlockType.TOOL_RESULT, content=content, tool_use_id=tool_use_id)


class MessageBody(BaseModel):
    role: Literal["user", "assistant"]
    content: list[ContentBlock] = Field(default_factory=list)


class ProviderMessage(BaseModel):
    """Canonical streaming envelope emitted by every adapter.

    ``result`` and ``error`` messages are terminal: an adapter emits exactly
    one of them per query and nothing after it.
    """

    type: MessageType
    subtype: MessageSubtype | None = None
    session_id: str | None = None
    message: MessageBody | None = None
    result: str | None = None
    error: str | None = None
    error_type: ErrorType | None = None
    structured_output: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (MessageType.RESULT, MessageType.ERROR)

    @property
    def text(self) -> str:
        """Concatenated ``text`` blocks of this message ('' when there are none)."""
        if self.message is None:
            return ""
        return "".join(
            block.text or "" for block in self.message.content if block.type == BlockType.TEXT
        )

    @classmethod
    def assistant(
        cls, blocks: list[ContentBlock], session_id: str | None = None
    ) -> ProviderMessage:
        return cls(
            type=MessageType.ASSISTANT,
            session_id=session_id,
            message=MessageBody(role="assistant", content=blocks),
        )

    @classmethod
    def user(cls, blocks: list[ContentBlock], session_id: str | None = None) -> ProviderMessage:
        return cls(
            type=MessageType.USER,
            session_id=session_id,
            message=MessageBody(role="user", content=blocks),
        )

    @classmethod
    def success(
        cls,
        result: str,
        session_id: str | None = None,
        structured_output: Any = None,
    ) -> ProviderMessage:
        return cls(
            type=MessageType.RESULT,
            subtype=MessageSubtype.SUCCESS,
            session_id=session_id,
            result=result,
            structured_output=structured_output,
        )

    @classmethod
    def failure(
        cls,
        error: str,
        error_type: ErrorType = ErrorType.EXECUTION,
        session_id: str | None = None,
    ) -> ProviderMessage:
        return cls(
            type=MessageType.ERROR,
            session_id=session_id,
            error=error,
            error_type=error_type,
        )


class ConversationMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str | list[dict[str, Any]]


class OutputFormat(BaseModel):
    """Structured-output request: ``{"type": "json_schema", "schema": {...}}``."""

    model_config = {"populate_by_name": True}

    type: Literal["json_schema"] = "json_schema"
    json_schema: dict[str, Any] = Field(alias="schema")


class ExecuteOptions(BaseModel):
    """Input to :meth:`BaseProvider.execute_query`.  Immutable for the call."""

    model_config = {"arbitrary_types_allowed": True, "frozen": True}

    prompt: str | list[dict[str, Any]]
    model: str = ""
    cwd: str = ""
    system_prompt: str | None = None
    max_turns: int | None = None
    allowed_tools: list[str] | None = None
    cancellation: CancellationToken | None = None
    conversation_history: list[ConversationMessage] = Field(default_factory=list)
    output_format: OutputFormat | None = None
    sdk_session_id: str | None = None
    sandbox: dict[str, Any] | None = None
    mcp_servers: dict[str, Any] | None = None
    max_thinking_tokens: int | None = None

    @property
    def prompt_text(self) -> str:
        """The prompt flattened to text (image blocks dropped)."""
        if isinstance(self.prompt, str):
            return self.prompt
        return "\n".join(
            block["text"]
            for block in self.prompt
            if block.get("type") == "text" and block.get("text")
        )


class ModelDefinition(BaseModel):
    id: str
    name: str
    model_string: str
    provider: str
    description: str = ""
    context_window: int | None = None
    max_output_tokens: int | None = None
    supports_vision: bool = False
    supports_tools: bool = True
    tier: Literal["basic", "standard", "premium"] = "standard"
    default: bool = False


class InstallationStatus(BaseModel):
    """Result of an installation probe.  Probes report, they do not raise."""

    installed: bool
    version: str | None = None
    path: str | None = None
    method: Literal["cli", "sdk", "api"] = "cli"
    has_api_key: bool = False
    authenticated: bool = False
    error: str | None = None


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ProviderConfig(BaseModel):
    """Per-call adapter configuration (credential injection, CLI overrides)."""

    api_key: str | None = None
    cli_path: str | None = None
    base_url: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
