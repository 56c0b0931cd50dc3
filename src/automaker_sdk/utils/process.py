"""Blocking command execution, off-loaded to a worker thread.

Used for short-lived tool invocations (``gh``, ``git``, ``npm``, ``npx`` and
the CLI ``--version`` probes).  Long-running agent processes are streamed by
:class:`automaker_sdk.providers.streaming.CliProcess` instead.
"""

from __future__ import annotations

import asyncio
import subprocess
from typing import Protocol

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)


class CommandResult(BaseModel):
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    """Structural type for anything that can run an argument-list command."""

    async def __call__(
        self,
        args: list[str],
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult: ...


def _run(
    args: list[str],
    cwd: str | None,
    timeout: float | None,
    env: dict[str, str] | None,
) -> CommandResult:
    result = subprocess.run(
        args,
        cwd=cwd,
        env=env,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )
    return CommandResult(
        args=list(args),
        returncode=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
    )


async def run_command(
    args: list[str],
    *,
    cwd: str | None = None,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run *args* (never through a shell) and capture its output.

    A missing executable or an expired timeout is reported as a failed
    :class:`CommandResult` (return code 127 / 124) rather than raised, so
    callers only need to check :attr:`CommandResult.ok`.
    """
    logger.debug("command_run", command=args[0] if args else "", cwd=cwd)
    try:
        return await asyncio.to_thread(_run, args, cwd, timeout, env)
    except FileNotFoundError as exc:
        return CommandResult(args=list(args), returncode=127, stderr=str(exc))
    except subprocess.TimeoutExpired:
        return CommandResult(
            args=list(args),
            returncode=124,
            stderr=f"Command timed out after {timeout}s",
        )
