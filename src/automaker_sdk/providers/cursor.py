from __future__ import annotations

import os
from typing import Any, AsyncIterator

import structlog

from automaker_sdk.core.constants import ErrorType, MessageSubtype, MessageType, ProviderFeature
from automaker_sdk.core.exceptions import SpawnError
from automaker_sdk.core.types import (
    ContentBlock,
    ExecuteOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
)
from automaker_sdk.providers.base import BaseProvider
from automaker_sdk.providers.streaming import (
    CliProcess,
    TextCoalescer,
    build_env,
    classify_error,
    parse_json_line,
)
from automaker_sdk.utils.process import run_command

logger = structlog.get_logger(__name__)

CURSOR_CLI = "cursor-agent"

# UI aliases and full ids -> cursor-agent --model values.
_MODEL_MAP: dict[str, str] = {
    "cursor-opus-thinking": "opus-4.5-thinking",
    "cursor-sonnet": "sonnet-4.5",
    "cursor-gpt5": "gpt-5.2",
    "cursor-opus-4.5-thinking": "opus-4.5-thinking",
    "cursor-sonnet-4.5": "sonnet-4.5",
    "cursor-gpt-5.2": "gpt-5.2",
}


def map_cursor_model(model: str) -> str:
    return _MODEL_MAP.get(model.lower(), model)


class CursorProvider(BaseProvider):
    """Runs queries through the ``cursor-agent`` CLI (``--output-format stream-json``)."""

    def get_name(self) -> str:
        return "cursor"

    @property
    def cli_path(self) -> str:
        return self._config.cli_path or CURSOR_CLI

    def build_args(self, options: ExecuteOptions) -> list[str]:
        args = [
            "--print",
            "--output-format",
            "stream-json",
            "--stream-partial-output",
            "--workspace",
            options.cwd,
            "--model",
            map_cursor_model(options.model),
            "--force",
        ]
        if options.sdk_session_id:
            args += ["--resume", options.sdk_session_id]
        args.append(options.prompt_text)
        return args

    # ------------------------------------------------------------------ #
    # Streaming
    # ------------------------------------------------------------------ #

    async def _stream(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        extra_env = dict(self._config.env)
        if self._config.api_key:
            extra_env["CURSOR_API_KEY"] = self._config.api_key
        coalescer = TextCoalescer()

        try:
            async with CliProcess(
                [self.cli_path, *self.build_args(options)],
                cwd=options.cwd,
                env=build_env(extra_env),
                cancellation=options.cancellation,
                name=CURSOR_CLI,
                install_hint="Install it with: curl https://cursor.com/install -fsS | bash",
            ) as proc:
                async for line in proc.lines():
                    if proc.cancelled:
                        break
                    data = parse_json_line(line)
                    if data is None:
                        for msg in coalescer.push("text", line + "\n"):
                            yield msg
                        continue
                    if data.get("session_id") and coalescer.session_id is None:
                        coalescer.session_id = data["session_id"]
                    for msg in self._convert(data, coalescer):
                        yield msg

                returncode = await proc.wait()
                for msg in coalescer.flush():
                    yield msg
                if proc.cancelled:
                    yield ProviderMessage.failure(
                        "cursor-agent aborted", ErrorType.ABORTED, coalescer.session_id
                    )
                elif returncode != 0:
                    error = f"cursor-agent exited with code {returncode}: {proc.stderr}"
                    logger.warning("cursor_exit_nonzero", returncode=returncode)
                    yield ProviderMessage.failure(
                        error, classify_error(proc.stderr), coalescer.session_id
                    )
                else:
                    yield ProviderMessage.success(coalescer.full_text, coalescer.session_id)
        except SpawnError as exc:
            yield ProviderMessage.failure(exc.message, ErrorType.SPAWN_FAILURE)

    def _convert(
        self, data: dict[str, Any], coalescer: TextCoalescer
    ) -> list[ProviderMessage]:
        kind = data.get("type")
        session_id = coalescer.session_id

        if kind == "thinking":
            if data.get("subtype") == "delta" and data.get("text"):
                return coalescer.push("thinking", data["text"])
            return []

        if kind in ("assistant", "user"):
            return self._convert_content(kind, data.get("message") or {}, coalescer)

        if kind == "result":
            out = coalescer.flush()
            is_error = bool(data.get("is_error"))
            out.append(
                ProviderMessage(
                    type=MessageType.RESULT,
                    subtype=MessageSubtype.ERROR if is_error else MessageSubtype.SUCCESS,
                    session_id=session_id,
                    result=data.get("result") or coalescer.full_text,
                )
            )
            return out

        if kind == "error":
            out = coalescer.flush()
            error = str(data.get("error") or "cursor-agent reported an error")
            out.append(ProviderMessage.failure(error, classify_error(error), session_id))
            return out

        # "system" init lines and unknown types carry nothing to forward.
        return []

    def _convert_content(
        self, role: str, message: dict[str, Any], coalescer: TextCoalescer
    ) -> list[ProviderMessage]:
        out: list[ProviderMessage] = []
        for raw in message.get("content") or []:
            block_type = raw.get("type")
            if block_type == "text" and role == "assistant":
                out.extend(coalescer.push("text", raw.get("text") or ""))
            elif block_type == "thinking":
                out.extend(coalescer.push("thinking", raw.get("thinking") or raw.get("text") or ""))
            elif block_type == "tool_use":
                out.extend(coalescer.flush())
                block = ContentBlock.tool_use(
                    raw.get("name") or "",
                    raw.get("input"),
                    raw.get("id") or raw.get("tool_use_id"),
                )
                out.append(ProviderMessage.assistant([block], coalescer.session_id))
            elif block_type == "tool_result":
                out.extend(coalescer.flush())
                content = raw.get("content")
                block = ContentBlock.tool_result(
                    content if isinstance(content, str) else str(content or ""),
                    raw.get("tool_use_id"),
                )
                out.append(ProviderMessage.user([block], coalescer.session_id))
        return out

    # ------------------------------------------------------------------ #
    # Discovery
    # ------------------------------------------------------------------ #

    async def detect_installation(self) -> InstallationStatus:
        version = await run_command([self.cli_path, "-v"])
        if not version.ok:
            return InstallationStatus(
                installed=False,
                method="cli",
                error=version.stderr or f"Command failed with code {version.returncode}",
            )
        has_api_key = bool(self._config.api_key or os.environ.get("CURSOR_API_KEY"))
        status = await run_command([self.cli_path, "status"])
        output = (status.stdout + status.stderr).lower()
        authenticated = status.ok and "not logged in" not in output and "error" not in output
        return InstallationStatus(
            installed=True,
            method="cli",
            version=version.stdout.strip(),
            path=self.cli_path,
            has_api_key=has_api_key,
            authenticated=authenticated,
        )

    def get_available_models(self) -> list[ModelDefinition]:
        return [
            ModelDefinition(
                id="cursor-opus-4.5-thinking",
                name="Cursor Opus 4.5 Thinking",
                model_string="opus-4.5-thinking",
                provider="cursor",
                description="Claude Opus 4.5 with extended thinking via Cursor",
                context_window=200000,
                max_output_tokens=16000,
                supports_vision=True,
                tier="premium",
            ),
            ModelDefinition(
                id="cursor-sonnet-4.5",
                name="Cursor Sonnet 4.5",
                model_string="sonnet-4.5",
                provider="cursor",
                description="Claude Sonnet 4.5 via Cursor",
                context_window=200000,
                max_output_tokens=16000,
                supports_vision=True,
                tier="standard",
                default=True,
            ),
            ModelDefinition(
                id="cursor-gpt-5.2",
                name="Cursor GPT-5.2",
                model_string="gpt-5.2",
                provider="cursor",
                description="OpenAI GPT-5.2 via Cursor",
                context_window=128000,
                max_output_tokens=16000,
                supports_vision=True,
                tier="premium",
            ),
        ]

    def supports_feature(self, feature: str) -> bool:
        return self.normalize_feature_name(feature) in (
            ProviderFeature.TOOLS,
            ProviderFeature.TEXT,
            ProviderFeature.VISION,
        )
