"""Static review checks: ``tsc --noEmit``, ``npm run build`` and pattern lints.

Each ``run_*`` coroutine returns a :class:`CheckResult` and never raises for
tool failures; those are reported as issues instead.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import time
from pathlib import Path

import structlog

from automaker_sdk.review.models import CheckResult, ReviewCheck, ReviewIssue
from automaker_sdk.utils.process import CommandRunner

logger = structlog.get_logger(__name__)

BUILD_TIMEOUT = 300.0
MAX_BUILD_ISSUES = 10
MAX_CHANGED_FILES = 50
MAX_SCANNED_FILES = 20
LARGE_COMPONENT_LINES = 500
MAX_ANY_USAGES = 3
BASE_BRANCHES = ("main", "master", "develop")

_TSC_LINE = re.compile(r"^(.+?)\((\d+),(\d+)\):\s*(error|warning)\s+(TS\d+):\s*(.+)$")
_TSC_BARE = re.compile(r"^error\s+TS\d+:\s*(.+)$", re.IGNORECASE)
_SOURCE_FILE = re.compile(r"\.(tsx?|jsx?)$")
_ASYNC_FUNCTION = re.compile(r"async\s+(?:function\s+\w+|(?:\w+\s*=\s*)?\([^)]*\)\s*=>)")
_TRY_BLOCK = re.compile(r"try\s*\{")
_STATE_MUTATION = re.compile(r"(?:state|props)\.\w+\s*=(?!=)")
_CONSOLE_CALL = re.compile(r"console\.(log|debug|info)\(")
_TODO_COMMENT = re.compile(r"//.*(?:TODO|FIXME|HACK|XXX)", re.IGNORECASE)
_ANY_TYPE = re.compile(r":\s*any(?:\s|[,)\]}>])")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


# ---------------------------------------------------------------------------
# Output parsers
# ---------------------------------------------------------------------------


def parse_tsc_output(output: str, project_path: str) -> list[ReviewIssue]:
    """Parse ``file(line,col): error TSxxxx: message`` diagnostics."""
    issues: list[ReviewIssue] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        match = _TSC_LINE.match(line)
        if match:
            file, line_no, column, severity, code, message = match.groups()
            issues.append(
                ReviewIssue(
                    severity="error" if severity == "error" else "warning",
                    message=message,
                    file=os.path.relpath(os.path.join(project_path, file), project_path),
                    line=int(line_no),
                    column=int(column),
                    code=code,
                )
            )
            continue
        bare = _TSC_BARE.match(line)
        if bare:
            issues.append(ReviewIssue(severity="error", message=bare.group(1).strip()))
    return issues


def parse_build_output(output: str) -> list[ReviewIssue]:
    lines = [
        line.strip()
        for line in output.splitlines()
        if any(marker in line.lower() for marker in ("error", "failed", "cannot find"))
    ]
    return [ReviewIssue(severity="error", message=line) for line in lines[:MAX_BUILD_ISSUES]]


def analyze_file_patterns(file: str, content: str) -> list[ReviewIssue]:
    """Heuristic lints for one TypeScript/JavaScript source file."""
    issues: list[ReviewIssue] = []
    lines = content.split("\n")

    if file.endswith(".tsx") and len(lines) > LARGE_COMPONENT_LINES:
        issues.append(
            ReviewIssue(
                severity="warning",
                message=(
                    f"Component file exceeds {LARGE_COMPONENT_LINES} lines ({len(lines)} lines). "
                    "Consider splitting into smaller components."
                ),
                file=file,
                line=1,
                code="large-component",
            )
        )

    if _ASYNC_FUNCTION.search(content) and not _TRY_BLOCK.search(content):
        issues.append(
            ReviewIssue(
                severity="warning",
                message="File has async functions but no try-catch blocks. Consider adding error handling.",
                file=file,
                code="missing-error-handling",
            )
        )

    if _STATE_MUTATION.search(content):
        issues.append(
            ReviewIssue(
                severity="warning",
                message="Possible direct state/props mutation detected. Use setState or immutable updates.",
                file=file,
                code="direct-mutation",
            )
        )

    for number, line in enumerate(lines, start=1):
        stripped = line.strip()
        if _CONSOLE_CALL.search(stripped) and not stripped.startswith(("//", "*")):
            issues.append(
                ReviewIssue(
                    severity="info",
                    message="console statement found - consider removing before production",
                    file=file,
                    line=number,
                    code="console-statement",
                )
            )
        if _TODO_COMMENT.search(line):
            issues.append(
                ReviewIssue(
                    severity="info",
                    message="TODO/FIXME comment found",
                    file=file,
                    line=number,
                    code="todo-comment",
                )
            )

    any_count = len(_ANY_TYPE.findall(content))
    if any_count > MAX_ANY_USAGES:
        issues.append(
            ReviewIssue(
                severity="warning",
                message=f"Excessive use of 'any' type ({any_count} occurrences). Consider adding proper types.",
                file=file,
                code="excessive-any",
            )
        )
    return issues


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


async def run_typescript_check(project_path: str, runner: CommandRunner) -> CheckResult:
    started = time.monotonic()
    if not (Path(project_path) / "tsconfig.json").is_file():
        return CheckResult.from_issues(
            ReviewCheck.TYPESCRIPT,
            [ReviewIssue(severity="info", message="No tsconfig.json found - skipping TypeScript check")],
            _elapsed_ms(started),
        )

    result = await runner(["npx", "tsc", "--noEmit"], cwd=project_path)
    issues: list[ReviewIssue] = []
    if not result.ok:
        # tsc writes diagnostics to either stream
        issues = parse_tsc_output(f"{result.stdout}\n{result.stderr}", project_path)
        if not issues:
            issues.append(
                ReviewIssue(severity="error", message="TypeScript compilation failed (see logs for details)")
            )
    logger.debug("review_typescript_done", issues=len(issues))
    return CheckResult.from_issues(ReviewCheck.TYPESCRIPT, issues, _elapsed_ms(started))


async def run_build_check(project_path: str, runner: CommandRunner) -> CheckResult:
    started = time.monotonic()
    package_json = Path(project_path) / "package.json"
    if not package_json.is_file():
        return CheckResult.from_issues(
            ReviewCheck.BUILD,
            [ReviewIssue(severity="info", message="No package.json found - skipping build check")],
            _elapsed_ms(started),
        )

    try:
        manifest = json.loads(await asyncio.to_thread(package_json.read_text, encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        return CheckResult.from_issues(
            ReviewCheck.BUILD,
            [ReviewIssue(severity="error", message=f"Build check failed: {exc}")],
            _elapsed_ms(started),
        )

    scripts = manifest.get("scripts") if isinstance(manifest, dict) else None
    if not isinstance(scripts, dict) or not scripts.get("build"):
        return CheckResult.from_issues(
            ReviewCheck.BUILD,
            [ReviewIssue(severity="info", message="No build script found in package.json")],
            _elapsed_ms(started),
        )

    result = await runner(["npm", "run", "build"], cwd=project_path, timeout=BUILD_TIMEOUT)
    issues: list[ReviewIssue] = []
    if not result.ok:
        issues = parse_build_output(result.stderr or result.stdout)
        if not issues:
            issues.append(ReviewIssue(severity="error", message="Build failed (see logs for details)"))
    return CheckResult.from_issues(ReviewCheck.BUILD, issues, _elapsed_ms(started))


async def run_pattern_analysis(project_path: str, files: list[str]) -> CheckResult:
    """Pattern lints over *files*; only error-severity issues fail the check."""
    started = time.monotonic()
    issues: list[ReviewIssue] = []
    for file in files:
        if not _SOURCE_FILE.search(file):
            continue
        try:
            content = await asyncio.to_thread((Path(project_path) / file).read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("review_file_unreadable", file=file, error=str(exc))
            continue
        issues.extend(analyze_file_patterns(file, content))
    return CheckResult.from_issues(ReviewCheck.PATTERNS, issues, _elapsed_ms(started))


# ---------------------------------------------------------------------------
# Changed files
# ---------------------------------------------------------------------------


def parse_porcelain(output: str) -> list[str]:
    """File paths from ``git status --porcelain`` (the two status columns and space dropped)."""
    files = []
    for line in output.splitlines():
        if not line.strip():
            continue
        path = line[3:].strip()
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        if path:
            files.append(path)
    return files


def find_source_files(directory: Path, limit: int = MAX_SCANNED_FILES) -> list[Path]:
    found: list[Path] = []
    if not directory.is_dir():
        return found
    for entry in sorted(directory.iterdir()):
        if len(found) >= limit:
            break
        if entry.is_dir():
            if entry.name.startswith(".") or entry.name == "node_modules":
                continue
            found.extend(find_source_files(entry, limit - len(found)))
        elif entry.is_file() and _SOURCE_FILE.search(entry.name):
            found.append(entry)
    return found


async def get_changed_files(project_path: str, runner: CommandRunner) -> list[str]:
    """Uncommitted changes, else the diff against a base branch, else files under ``src/``."""
    status = await runner(["git", "status", "--porcelain"], cwd=project_path)
    if status.ok and status.stdout.strip():
        files = parse_porcelain(status.stdout)
        if files:
            return files[:MAX_CHANGED_FILES]

    head = await runner(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=project_path)
    if head.ok and head.stdout.strip():
        current = head.stdout.strip()
        for base in BASE_BRANCHES:
            merge_base = await runner(["git", "merge-base", current, base], cwd=project_path)
            if not merge_base.ok or not merge_base.stdout.strip():
                continue
            diff = await runner(
                ["git", "diff", "--name-only", merge_base.stdout.strip()], cwd=project_path
            )
            if diff.ok and diff.stdout.strip():
                return [f for f in diff.stdout.splitlines() if f.strip()][:MAX_CHANGED_FILES]

    root = Path(project_path)
    files = await asyncio.to_thread(find_source_files, root / "src")
    return [str(path.relative_to(root)) for path in files]
