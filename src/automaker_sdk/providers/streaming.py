"""Shared machinery for CLI-backed adapters.

* :class:`TextCoalescer` merges adjacent text/thinking fragments so consumers
  never see a stream of one-character messages.
* :class:`CliProcess` owns one agent child process: spawn, stdout line
  reading, stderr buffering, SIGTERM/SIGKILL on cancellation.
* :func:`parse_json_line` decodes one NDJSON line (``None`` when malformed).
* :func:`classify_error` maps backend error text onto :class:`ErrorType`.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
from typing import Any, AsyncIterator, Literal

import structlog

from automaker_sdk.core.cancellation import CancellationToken
from automaker_sdk.core.constants import ErrorType
from automaker_sdk.core.exceptions import SpawnError
from automaker_sdk.core.types import ContentBlock, ProviderMessage

logger = structlog.get_logger(__name__)

FLUSH_THRESHOLD = 400
KILL_GRACE_PERIOD = 5.0
STREAM_LIMIT = 10 * 1024 * 1024

TextKind = Literal["text", "thinking"]

_AUTH_MARKERS = (
    "not logged in",
    "authentication",
    "unauthorized",
    "invalid api key",
    "api key",
    "401",
    "auth login",
)
_QUOTA_MARKERS = ("quota", "usage limit", "insufficient_quota", "credit balance")
_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "too many requests", "429")


def classify_error(text: str) -> ErrorType:
    """Best-effort classification of free-form backend error text."""
    lowered = text.lower()
    if any(marker in lowered for marker in _QUOTA_MARKERS):
        return ErrorType.QUOTA_EXHAUSTED
    if any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return ErrorType.RATE_LIMIT
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return ErrorType.AUTHENTICATION
    return ErrorType.EXECUTION


def parse_json_line(line: str) -> dict[str, Any] | None:
    """Decode one NDJSON line.  Malformed or non-object lines return ``None``."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.warning("ndjson_line_malformed", line=line[:200])
        return None
    if not isinstance(data, dict):
        logger.warning("ndjson_line_not_object", line=line[:200])
        return None
    return data


def build_env(extra: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ)
    if extra:
        env.update(extra)
    return env


class TextCoalescer:
    """Buffers adjacent fragments of the same kind into one assistant message.

    The buffer is flushed when the fragment kind changes, when it contains a
    newline, when it reaches :data:`FLUSH_THRESHOLD` characters, and whenever
    the adapter calls :meth:`flush` (before tool messages and at stream end).
    """

    def __init__(self, threshold: int = FLUSH_THRESHOLD) -> None:
        self._threshold = threshold
        self._kind: TextKind | None = None
        self._parts: list[str] = []
        self._size = 0
        self._text: list[str] = []
        self.session_id: str | None = None

    @property
    def full_text(self) -> str:
        """All text (not thinking) fragments pushed so far."""
        return "".join(self._text)

    @property
    def pending(self) -> bool:
        return bool(self._parts)

    def push(self, kind: TextKind, fragment: str) -> list[ProviderMessage]:
        if not fragment:
            return []
        out: list[ProviderMessage] = []
        if self._kind is not None and kind != self._kind:
            out.extend(self.flush())
        self._kind = kind
        self._parts.append(fragment)
        self._size += len(fragment)
        if kind == "text":
            self._text.append(fragment)
        if "\n" in fragment or self._size >= self._threshold:
            out.extend(self.flush())
        return out

    def flush(self) -> list[ProviderMessage]:
        if not self._parts:
            return []
        body = "".join(self._parts)
        block = (
            ContentBlock.thinking_block(body)
            if self._kind == "thinking"
            else ContentBlock.text_block(body)
        )
        self._parts = []
        self._size = 0
        self._kind = None
        return [ProviderMessage.assistant([block], session_id=self.session_id)]


class CliProcess:
    """Async context manager around one streaming agent subprocess.

    Usage::

        async with CliProcess([cli, *args], cwd=cwd, cancellation=token, name="cursor-agent") as proc:
            async for line in proc.lines():
                ...
            code = await proc.wait()

    The process is started with stdin closed.  Cancelling the token sends
    SIGTERM and escalates to SIGKILL after *grace_period* seconds.  Leaving
    the context always reaps the child, whether the body finished, raised, or
    the enclosing generator was closed early.
    """

    def __init__(
        self,
        args: list[str],
        *,
        cwd: str,
        env: dict[str, str] | None = None,
        cancellation: CancellationToken | None = None,
        name: str = "cli",
        install_hint: str = "",
        grace_period: float = KILL_GRACE_PERIOD,
    ) -> None:
        self._args = args
        self._cwd = cwd
        self._env = env
        self._token = cancellation
        self._name = name
        self._install_hint = install_hint
        self._grace_period = grace_period
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_chunks: list[str] = []
        self._stderr_task: asyncio.Task[None] | None = None
        self._remove_callback: Any = None
        self._kill_handle: asyncio.TimerHandle | None = None

    # ------------------------------------------------------------------ #
    # Context manager
    # ------------------------------------------------------------------ #

    async def __aenter__(self) -> CliProcess:
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._args,
                cwd=self._cwd,
                env=self._env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except (FileNotFoundError, PermissionError) as exc:
            message = f"{self._name} CLI could not be started ({exc.strerror or exc})."
            if self._install_hint:
                message = f"{message} {self._install_hint}"
            raise SpawnError(message, code=type(exc).__name__) from exc

        logger.debug("cli_spawned", name=self._name, pid=self._process.pid)
        self._stderr_task = asyncio.create_task(self._collect_stderr())
        if self._token is not None:
            self._remove_callback = self._token.add_callback(self.terminate)
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._remove_callback is not None:
            self._remove_callback()
        proc = self._process
        if proc is not None and proc.returncode is None:
            self.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._grace_period)
            except asyncio.TimeoutError:
                self._kill()
                await proc.wait()
        if self._kill_handle is not None:
            self._kill_handle.cancel()
        if self._stderr_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #

    @property
    def cancelled(self) -> bool:
        return self._token is not None and self._token.cancelled

    @property
    def stderr(self) -> str:
        return "".join(self._stderr_chunks).strip()

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    async def lines(self) -> AsyncIterator[str]:
        """Yield decoded stdout lines (without the trailing newline) until EOF."""
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        while True:
            raw = await stdout.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line.strip():
                yield line

    async def wait(self) -> int:
        assert self._process is not None
        code = await self._process.wait()
        if self._stderr_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
        return code

    # ------------------------------------------------------------------ #
    # Termination
    # ------------------------------------------------------------------ #

    def terminate(self) -> None:
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        logger.debug("cli_terminate", name=self._name, pid=proc.pid)
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        if self._kill_handle is None:
            loop = asyncio.get_running_loop()
            self._kill_handle = loop.call_later(self._grace_period, self._kill)

    def _kill(self) -> None:
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        logger.warning("cli_kill", name=self._name, pid=proc.pid)
        with contextlib.suppress(ProcessLookupError):
            proc.kill()

    async def _collect_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        while True:
            chunk = await self._process.stderr.read(4096)
            if not chunk:
                return
            self._stderr_chunks.append(chunk.decode("utf-8", errors="replace"))
