"""Tests for utils/process.py — run_command result mapping."""

from __future__ import annotations

import sys
from pathlib import Path

from automaker_sdk.utils.process import CommandResult, run_command


async def test_run_command_captures_output() -> None:
    result = await run_command([sys.executable, "-c", "print('hello')"])
    assert result.ok is True
    assert result.stdout.strip() == "hello"


async def test_run_command_nonzero_exit() -> None:
    result = await run_command(
        [sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"]
    )
    assert result.ok is False
    assert result.returncode == 3
    assert result.stderr == "bad"


async def test_missing_executable_is_127() -> None:
    result = await run_command(["definitely-not-a-real-binary-xyz"])
    assert result.returncode == 127
    assert result.ok is False


async def test_timeout_is_124() -> None:
    result = await run_command([sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.2)
    assert result.returncode == 124
    assert "timed out" in result.stderr


async def test_run_command_uses_cwd(tmp_path: Path) -> None:
    result = await run_command(
        [sys.executable, "-c", "import os; print(os.getcwd())"], cwd=str(tmp_path)
    )
    assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()


def test_command_result_ok() -> None:
    assert CommandResult(args=["true"], returncode=0).ok is True
    assert CommandResult(args=["false"], returncode=1).ok is False
