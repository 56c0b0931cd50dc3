"""OpenCode adapter: ``opencode run --format json`` streamed as NDJSON events.

Tool permissions are not passed on the command line.  Instead the project's
``opencode.json``/``opencode.jsonc`` is merged with overrides derived from
``allowed_tools``/``max_turns`` and written to a throw-away directory that
``OPENCODE_CONFIG`` points at for the lifetime of the child process.
"""

from __future__ import annotations

import contextlib
import json
import os
import re
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, AsyncIterator, Iterator

import structlog

from automaker_sdk.core.constants import (
    DEFAULT_ALLOWED_TOOLS,
    ErrorType,
    MessageSubtype,
    MessageType,
    ProviderFeature,
)
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

DEFAULT_OPENCODE_MODEL = "opencode/glm-4.7-free"
CONFIG_SCHEMA_URL = "https://opencode.ai/config.json"

_MODEL_MAP: dict[str, str] = {
    "glm4.7": DEFAULT_OPENCODE_MODEL,
    "glm-4.7": DEFAULT_OPENCODE_MODEL,
    "glm": DEFAULT_OPENCODE_MODEL,
    "glm/glm4.7": DEFAULT_OPENCODE_MODEL,
    "opencode": DEFAULT_OPENCODE_MODEL,
}

_TOOL_NAMES: dict[str, str] = {
    "read": "Read",
    "write": "Write",
    "edit": "Edit",
    "glob": "Glob",
    "grep": "Grep",
    "bash": "Bash",
    "websearch": "WebSearch",
    "webfetch": "WebFetch",
    "todoread": "TodoRead",
    "todowrite": "TodoWrite",
    "list": "List",
    "patch": "Patch",
}

_TRAILING_COMMA = re.compile(r",\s*([}\]])")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def map_opencode_model(model: str) -> str:
    return _MODEL_MAP.get(model.lower(), model)


def normalize_tool_name(tool: str) -> str:
    return _TOOL_NAMES.get(tool.strip().lower(), tool)


def format_tool_output(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    try:
        return json.dumps(output, indent=2)
    except (TypeError, ValueError):
        return str(output)


def format_execution_error(exc: BaseException) -> str:
    if isinstance(exc, FileNotFoundError) or getattr(exc, "code", None) == "FileNotFoundError":
        return "OpenCode CLI not found. Please install opencode."
    if isinstance(exc, BrokenPipeError):
        return "OpenCode CLI closed unexpectedly (EPIPE). Check installation, auth, and config."
    message = str(exc)
    if "auth" in message.lower():
        return "OpenCode authentication required. Run: opencode auth login"
    return f"OpenCode error: {message}"


def build_prompt(options: ExecuteOptions) -> str:
    if options.system_prompt:
        return f"{options.system_prompt}\n\n---\n\n{options.prompt_text}"
    return options.prompt_text


def strip_json_comments(text: str) -> str:
    """Remove ``//`` and ``/* */`` comments outside of string literals."""
    out: list[str] = []
    i = 0
    quote: str | None = None
    escaped = False
    while i < len(text):
        ch = text[i]
        nxt = text[i + 1] if i + 1 < len(text) else ""
        if quote is not None:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            i += 1
            continue
        if ch in ('"', "'"):
            quote = ch
            out.append(ch)
        elif ch == "/" and nxt == "/":
            while i < len(text) and text[i] != "\n":
                i += 1
            out.append("\n")
        elif ch == "/" and nxt == "*":
            end = text.find("*/", i + 2)
            i = len(text) if end == -1 else end + 1
        else:
            out.append(ch)
        i += 1
    return "".join(out)


def strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA.sub(r"\1", text)


def merge_configs(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge *override* into a copy of *base* (dicts merge, everything else replaces)."""
    result = dict(base)
    for key, value in override.items():
        current = result.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            result[key] = merge_configs(current, value)
        else:
            result[key] = value
    return result


def build_tool_overrides(
    allowed_tools: list[str] | None, max_turns: int | None
) -> dict[str, Any]:
    names = {tool.lower() for tool in (allowed_tools or DEFAULT_ALLOWED_TOOLS)}
    read = "read" in names
    glob = "glob" in names
    grep = "grep" in names
    write = "write" in names or "edit" in names
    edit = write
    bash = "bash" in names
    websearch = "websearch" in names
    webfetch = "webfetch" in names or websearch

    overrides: dict[str, Any] = {
        "tools": {
            "read": read,
            "glob": glob,
            "grep": grep,
            "list": read or glob or grep,
            "write": write,
            "edit": edit,
            "patch": edit or write,
            "bash": bash,
            "webfetch": webfetch,
            "websearch": websearch,
            "todoread": read,
            "todowrite": write or edit,
        },
        "permission": {
            "edit": "allow" if edit else "deny",
            "bash": "allow" if bash else "deny",
            "webfetch": "allow" if webfetch else "deny",
            "skill": "deny",
            "external_directory": "allow" if edit or bash else "deny",
            "doom_loop": "allow",
        },
    }
    if max_turns is not None and max_turns > 0:
        overrides["agent"] = {
            "build": {"maxSteps": int(max_turns)},
            "plan": {"maxSteps": int(max_turns)},
        }
    return overrides


def find_project_config(cwd: str) -> Path | None:
    """Walk up from *cwd* looking for ``opencode.json(c)``; stop at a ``.git`` dir or the root."""
    current = Path(cwd).resolve()
    while True:
        for name in ("opencode.json", "opencode.jsonc"):
            candidate = current / name
            if candidate.exists():
                return candidate
        if (current / ".git").exists():
            return None
        if current.parent == current:
            return None
        current = current.parent


def read_config_file(path: Path) -> dict[str, Any] | None:
    try:
        raw = path.read_text(encoding="utf-8")
        data = json.loads(strip_trailing_commas(strip_json_comments(raw)))
    except (OSError, ValueError) as exc:
        logger.warning("opencode_config_read_failed", path=str(path), error=str(exc))
        return None
    return data if isinstance(data, dict) else None


@contextlib.contextmanager
def temporary_config(
    cwd: str, allowed_tools: list[str] | None, max_turns: int | None
) -> Iterator[Path | None]:
    """Yield the path of a merged temporary ``opencode.json``; remove it on exit.

    Yields ``None`` (and logs) when the file cannot be written, so the run can
    continue with the CLI's own configuration.
    """
    project_path = find_project_config(cwd)
    base = (read_config_file(project_path) if project_path else None) or {}
    merged = merge_configs(base, build_tool_overrides(allowed_tools, max_turns))
    merged.setdefault("$schema", CONFIG_SCHEMA_URL)

    temp_dir: str | None = None
    config_path: Path | None = None
    try:
        temp_dir = tempfile.mkdtemp(prefix="automaker-opencode-")
        config_path = Path(temp_dir) / "opencode.json"
        config_path.write_text(json.dumps(merged, indent=2), encoding="utf-8")
    except OSError as exc:
        logger.warning("opencode_config_override_failed", error=format_execution_error(exc))
        config_path = None
    try:
        yield config_path
    finally:
        if temp_dir is not None:
            shutil.rmtree(temp_dir, ignore_errors=True)


def common_cli_paths() -> list[str]:
    home = Path.home()
    if sys.platform == "win32":
        return [
            str(home / "AppData" / "Local" / "opencode" / "opencode.exe"),
            str(home / ".local" / "bin" / "opencode.exe"),
            "C:\\Program Files\\opencode\\opencode.exe",
        ]
    return [
        "/usr/local/bin/opencode",
        str(home / ".local" / "bin" / "opencode"),
        "/opt/opencode/opencode",
    ]


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class OpenCodeProvider(BaseProvider):
    """Runs queries through ``opencode run --format json``."""

    def get_name(self) -> str:
        return "opencode"

    def resolve_cli_path(self) -> str | None:
        if self._config.cli_path:
            return self._config.cli_path
        found = shutil.which("opencode")
        if found:
            return found
        for candidate in common_cli_paths():
            if os.path.exists(candidate):
                return candidate
        return None

    def build_args(self, options: ExecuteOptions) -> list[str]:
        args = ["run", "--format", "json", "--model", map_opencode_model(options.model)]
        if options.sdk_session_id:
            args += ["--session", options.sdk_session_id]
        prompt = build_prompt(options)
        if prompt.strip():
            args.append(prompt)
        return args

    # ------------------------------------------------------------------ #
    # Streaming
    # ------------------------------------------------------------------ #

    async def _stream(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        cli = self.resolve_cli_path()
        if cli is None:
            yield ProviderMessage.failure(
                "OpenCode CLI not found. Please install opencode and ensure it is in PATH.",
                ErrorType.SPAWN_FAILURE,
            )
            return

        logger.info("opencode_run", model=map_opencode_model(options.model), cwd=options.cwd)
        coalescer = TextCoalescer()

        with temporary_config(options.cwd, options.allowed_tools, options.max_turns) as config:
            extra_env = dict(self._config.env)
            if config is not None:
                extra_env["OPENCODE_CONFIG"] = str(config)
            try:
                async with CliProcess(
                    [cli, *self.build_args(options)],
                    cwd=options.cwd,
                    env=build_env(extra_env),
                    cancellation=options.cancellation,
                    name="opencode",
                ) as proc:
                    async for line in proc.lines():
                        if proc.cancelled:
                            break
                        data = parse_json_line(line)
                        if data is None:
                            data = {"type": "text", "text": line + "\n"}
                        if coalescer.session_id is None and isinstance(
                            data.get("sessionID"), str
                        ):
                            coalescer.session_id = data["sessionID"]
                        for msg in self._convert(data, coalescer):
                            yield msg

                    returncode = await proc.wait()
                    for msg in coalescer.flush():
                        yield msg
                    if proc.cancelled:
                        logger.warning("opencode_aborted", returncode=returncode)
                        yield ProviderMessage.failure(
                            "opencode aborted", ErrorType.ABORTED, coalescer.session_id
                        )
                    elif returncode != 0:
                        error = proc.stderr or f"opencode exited with code {returncode}"
                        logger.error("opencode_exit_nonzero", returncode=returncode)
                        yield ProviderMessage.failure(
                            error, classify_error(error), coalescer.session_id
                        )
                    else:
                        yield ProviderMessage.success(coalescer.full_text, coalescer.session_id)
            except SpawnError as exc:
                yield ProviderMessage.failure(
                    format_execution_error(exc.__cause__ or exc), ErrorType.SPAWN_FAILURE
                )

    def _convert(self, data: dict[str, Any], coalescer: TextCoalescer) -> list[ProviderMessage]:
        kind = data.get("type")
        part = data.get("part") if isinstance(data.get("part"), dict) else {}
        session_id = coalescer.session_id

        if kind == "text":
            text = part.get("text") if isinstance(part.get("text"), str) else data.get("text")
            return coalescer.push("text", text) if isinstance(text, str) else []

        if kind in ("tool_use", "tool_result"):
            out = coalescer.flush()
            state = part.get("state") if isinstance(part.get("state"), dict) else {}
            call_id = part.get("callID") if isinstance(part.get("callID"), str) else None
            output = _first_present(state.get("output"), part.get("output"), state.get("error"))
            if kind == "tool_use":
                tool = part.get("tool") if isinstance(part.get("tool"), str) else "unknown"
                tool_input = state["input"] if "input" in state else part.get("input")
                out.append(
                    ProviderMessage.assistant(
                        [ContentBlock.tool_use(normalize_tool_name(tool), tool_input, call_id)],
                        session_id,
                    )
                )
            if output is not None:
                out.append(
                    ProviderMessage.user(
                        [ContentBlock.tool_result(format_tool_output(output), call_id)],
                        session_id,
                    )
                )
            return out

        if kind == "error":
            out = coalescer.flush()
            error = data.get("error") if isinstance(data.get("error"), str) else None
            error = error or (data.get("message") if isinstance(data.get("message"), str) else None)
            error = error or "OpenCode error"
            out.append(ProviderMessage.failure(error, classify_error(error), session_id))
            return out

        if kind == "result":
            out = coalescer.flush()
            result = data.get("result")
            out.append(
                ProviderMessage(
                    type=MessageType.RESULT,
                    subtype=(
                        MessageSubtype.ERROR
                        if data.get("subtype") == "error"
                        else MessageSubtype.SUCCESS
                    ),
                    session_id=session_id,
                    result=result if isinstance(result, str) else coalescer.full_text,
                    error=data.get("error") if isinstance(data.get("error"), str) else None,
                )
            )
            return out

        # step_finish and unknown event types are ignored.
        return []

    # ------------------------------------------------------------------ #
    # Discovery
    # ------------------------------------------------------------------ #

    async def detect_installation(self) -> InstallationStatus:
        cli = self.resolve_cli_path()
        if cli is None:
            return InstallationStatus(installed=False, method="cli")

        version_result = await run_command([cli, "--version"])
        version = version_result.stdout.strip().split("\n")[0] if version_result.ok else ""
        authenticated = await self._check_authentication(cli)
        return InstallationStatus(
            installed=True,
            path=cli,
            version=version,
            method="cli",
            has_api_key=authenticated,
            authenticated=authenticated,
        )

    async def _check_authentication(self, cli: str) -> bool:
        refresh = await run_command([cli, "models", "--refresh"])
        if refresh.ok:
            return True
        return (Path.home() / ".config" / "opencode" / "auth.json").exists()

    def get_available_models(self) -> list[ModelDefinition]:
        return [
            ModelDefinition(
                id="glm4.7",
                name="GLM 4.7 (Free)",
                model_string=DEFAULT_OPENCODE_MODEL,
                provider="opencode",
                description="GLM 4.7 - Free model with solid general capabilities.",
                context_window=128000,
                max_output_tokens=4096,
                supports_vision=False,
                tier="basic",
                default=True,
            )
        ]

    def supports_feature(self, feature: str) -> bool:
        return self.normalize_feature_name(feature) in (
            ProviderFeature.TOOLS,
            ProviderFeature.TEXT,
            ProviderFeature.STREAMING,
        )


def _first_present(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None
