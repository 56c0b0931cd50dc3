from __future__ import annotations

from enum import StrEnum


class ProviderName(StrEnum):
    CLAUDE = "claude"
    CURSOR = "cursor"
    OPENCODE = "opencode"
    CODEX = "codex"
    CUSTOM = "custom"


class MessageType(StrEnum):
    ASSISTANT = "assistant"
    USER = "user"
    ERROR = "error"
    RESULT = "result"


class MessageSubtype(StrEnum):
    SUCCESS = "success"
    ERROR = "error"


class BlockType(StrEnum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    THINKING = "thinking"
    TOOL_RESULT = "tool_result"
    REASONING = "reasoning"


class ProviderFeature(StrEnum):
    TOOLS = "tools"
    TEXT = "text"
    VISION = "vision"
    MCP = "mcp"
    BROWSER = "browser"
    THINKING = "thinking"
    STRUCTURED_OUTPUT = "structuredOutput"
    STREAMING = "streaming"


class ErrorType(StrEnum):
    """Classification carried on terminal ``error`` messages."""

    SPAWN_FAILURE = "spawn_failure"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    QUOTA_EXHAUSTED = "quota_exhausted"
    ABORTED = "aborted"
    BACKEND_PROTOCOL = "backend_protocol"
    EXECUTION = "execution"


# Tools granted to agents when the caller does not pass an allow-list.
DEFAULT_ALLOWED_TOOLS: tuple[str, ...] = (
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "Bash",
    "WebSearch",
    "WebFetch",
)

# Project-local state directory (pipeline config, results, memory).
AUTOMAKER_DIR = ".automaker"
