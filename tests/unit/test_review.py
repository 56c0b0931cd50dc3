"""Tests for review/ — output parsers, pattern lints, checks and CodeReviewService."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from automaker_sdk.core.config import AutomakerConfig
from automaker_sdk.core.events import RecordingEmitter
from automaker_sdk.core.types import ExecuteOptions, ProviderMessage
from automaker_sdk.providers.factory import ProviderFactory
from automaker_sdk.providers.mock import MockProvider
from automaker_sdk.review import CodeReviewService
from automaker_sdk.review.checks import (
    analyze_file_patterns,
    get_changed_files,
    parse_build_output,
    parse_porcelain,
    parse_tsc_output,
    run_build_check,
    run_pattern_analysis,
    run_typescript_check,
)
from automaker_sdk.review.models import CheckResult, ReviewCheck, ReviewIssue, ReviewResults
from automaker_sdk.review.service import CODE_REVIEW_EVENT, build_fix_prompt, resolve_agent_model

TSC_ERROR = "src/app.ts(12,5): error TS2322: Type 'string' is not assignable to type 'number'."


@pytest.fixture
def review(
    fake_runner: Any, events: RecordingEmitter, config: AutomakerConfig, factory: ProviderFactory
) -> CodeReviewService:
    return CodeReviewService(events, runner=fake_runner, config=config, factory=factory, max_fix_attempts=3)


def _types(events: RecordingEmitter) -> list[str]:
    return [payload["type"] for payload in events.named(CODE_REVIEW_EVENT)]


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def test_parse_tsc_output() -> None:
    output = f"{TSC_ERROR}\n\nerror TS6053: File 'missing.ts' not found.\nFound 2 errors."
    issues = parse_tsc_output(output, "/work/project")

    assert len(issues) == 2
    first = issues[0]
    assert (first.file, first.line, first.column, first.code) == ("src/app.ts", 12, 5, "TS2322")
    assert first.severity == "error"
    assert issues[1].message == "File 'missing.ts' not found."
    assert issues[1].file is None


def test_parse_build_output_caps_issues() -> None:
    output = "\n".join(f"Error: module {i} failed" for i in range(15)) + "\nbuilt in 2s"
    issues = parse_build_output(output)
    assert len(issues) == 10
    assert issues[0].message == "Error: module 0 failed"


def test_parse_porcelain_handles_renames() -> None:
    output = " M src/a.ts\n?? src/new.tsx\nR  old.ts -> src/renamed.ts\n\n"
    assert parse_porcelain(output) == ["src/a.ts", "src/new.tsx", "src/renamed.ts"]


# ---------------------------------------------------------------------------
# Pattern lints
# ---------------------------------------------------------------------------


def _codes(issues: list[ReviewIssue]) -> list[str | None]:
    return [issue.code for issue in issues]


def test_clean_file_has_no_findings() -> None:
    content = "export function add(a: number, b: number): number {\n  return a + b;\n}\n"
    assert analyze_file_patterns("src/add.ts", content) == []


def test_async_without_try_is_flagged() -> None:
    content = "export async function load() {\n  return fetch('/api');\n}\n"
    assert _codes(analyze_file_patterns("src/load.ts", content)) == ["missing-error-handling"]


def test_async_with_try_is_not_flagged() -> None:
    content = "export async function load() {\n  try {\n    return await fetch('/api');\n  } catch (e) {}\n}\n"
    assert analyze_file_patterns("src/load.ts", content) == []


def test_state_mutation_ignores_comparisons() -> None:
    assert _codes(analyze_file_patterns("a.tsx", "state.count = 1;\n")) == ["direct-mutation"]
    assert analyze_file_patterns("a.tsx", "if (props.open == true) {}\n") == []
    assert analyze_file_patterns("a.tsx", "if (props.open === true) {}\n") == []


def test_console_and_todo_are_info() -> None:
    content = "console.log('x');\n// console.log('commented');\n// TODO: tidy up\n"
    issues = analyze_file_patterns("src/x.ts", content)
    assert _codes(issues) == ["console-statement", "todo-comment"]
    assert [issue.line for issue in issues] == [1, 3]
    assert all(issue.severity == "info" for issue in issues)


def test_excessive_any() -> None:
    content = "\n".join(f"let v{i}: any = {i};" for i in range(4))
    assert _codes(analyze_file_patterns("src/v.ts", content)) == ["excessive-any"]


def test_large_component() -> None:
    content = "\n".join("<div />" for _ in range(501))
    assert _codes(analyze_file_patterns("src/Big.tsx", content)) == ["large-component"]
    assert analyze_file_patterns("src/big.ts", content) == []


def test_only_errors_fail_a_check() -> None:
    warning = ReviewIssue(severity="warning", message="w")
    assert CheckResult.from_issues(ReviewCheck.PATTERNS, [warning]).passed is True
    error = ReviewIssue(severity="error", message="e")
    assert CheckResult.from_issues(ReviewCheck.PATTERNS, [warning, error]).passed is False


def test_results_track_blocking_issues() -> None:
    results = ReviewResults()
    results.add(
        CheckResult.from_issues(
            ReviewCheck.PATTERNS,
            [ReviewIssue(severity="info", message="i"), ReviewIssue(severity="warning", message="w")],
        )
    )
    assert results.overall_pass is True
    assert [issue.message for _, issue in results.blocking_issues()] == ["w"]


def test_describe_issue() -> None:
    issue = ReviewIssue(message="Bad type", file="src/a.ts", line=3, column=7, code="TS2322")
    assert issue.describe(2) == "2. [ERROR] Bad type\n   File: src/a.ts:3:7\n   Code: TS2322"
    assert "1. [ERROR] Bad type" in build_fix_prompt([issue])


def test_resolve_agent_model() -> None:
    assert resolve_agent_model("opus").startswith("claude-opus")
    assert resolve_agent_model("codex") != "codex"
    assert resolve_agent_model("claude-sonnet-4-5-20250929") == "claude-sonnet-4-5-20250929"


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


async def test_typescript_check_skipped_without_tsconfig(project: Path, fake_runner: Any) -> None:
    result = await run_typescript_check(str(project), fake_runner)
    assert result.passed is True
    assert result.issues[0].severity == "info"
    assert fake_runner.calls == []


async def test_typescript_check_parses_failures(project: Path, fake_runner: Any) -> None:
    (project / "tsconfig.json").write_text("{}", encoding="utf-8")
    fake_runner.on(["npx", "tsc"], stdout=TSC_ERROR, returncode=2)

    result = await run_typescript_check(str(project), fake_runner)

    assert result.passed is False
    assert result.issues[0].code == "TS2322"
    assert fake_runner.calls == [["npx", "tsc", "--noEmit"]]


async def test_typescript_failure_without_diagnostics(project: Path, fake_runner: Any) -> None:
    (project / "tsconfig.json").write_text("{}", encoding="utf-8")
    fake_runner.on(["npx", "tsc"], stderr="segfault", returncode=1)
    result = await run_typescript_check(str(project), fake_runner)
    assert result.issues[0].message == "TypeScript compilation failed (see logs for details)"


@pytest.mark.parametrize(
    ("manifest", "message"),
    [
        (None, "No package.json found - skipping build check"),
        ({"name": "app"}, "No build script found in package.json"),
    ],
)
async def test_build_check_skips(
    project: Path, fake_runner: Any, manifest: dict[str, Any] | None, message: str
) -> None:
    if manifest is not None:
        (project / "package.json").write_text(json.dumps(manifest), encoding="utf-8")
    result = await run_build_check(str(project), fake_runner)
    assert result.passed is True
    assert result.issues[0].message == message
    assert fake_runner.calls == []


async def test_build_check_runs_npm(project: Path, fake_runner: Any) -> None:
    (project / "package.json").write_text(json.dumps({"scripts": {"build": "vite build"}}), encoding="utf-8")
    fake_runner.on(["npm", "run", "build"], stderr="Error: Cannot resolve './missing'", returncode=1)

    result = await run_build_check(str(project), fake_runner)

    assert result.passed is False
    assert result.issues[0].message == "Error: Cannot resolve './missing'"


async def test_build_check_invalid_manifest(project: Path, fake_runner: Any) -> None:
    (project / "package.json").write_text("{not json", encoding="utf-8")
    result = await run_build_check(str(project), fake_runner)
    assert result.passed is False
    assert result.issues[0].message.startswith("Build check failed:")


async def test_pattern_analysis_reads_source_files(project: Path) -> None:
    (project / "src").mkdir()
    (project / "src" / "a.ts").write_text("console.log('hi');\n", encoding="utf-8")
    (project / "README.md").write_text("console.log('docs');\n", encoding="utf-8")

    result = await run_pattern_analysis(str(project), ["src/a.ts", "README.md", "src/gone.ts"])

    assert result.passed is True
    assert _codes(result.issues) == ["console-statement"]


async def test_changed_files_from_git_status(project: Path, fake_runner: Any) -> None:
    fake_runner.on(["git", "status"], stdout=" M src/a.ts\n")
    assert await get_changed_files(str(project), fake_runner) == ["src/a.ts"]


async def test_changed_files_from_merge_base(project: Path, fake_runner: Any) -> None:
    fake_runner.on(["git", "status"], stdout="")
    fake_runner.on(["git", "rev-parse"], stdout="feature/login\n")
    fake_runner.on(["git", "merge-base", "feature/login", "main"], stdout="abc123\n")
    fake_runner.on(["git", "diff"], stdout="src/a.ts\nsrc/b.ts\n")

    assert await get_changed_files(str(project), fake_runner) == ["src/a.ts", "src/b.ts"]
    assert fake_runner.called_with("git", "diff", "--name-only", "abc123")


async def test_changed_files_falls_back_to_src(project: Path, fake_runner: Any) -> None:
    (project / "src" / "components").mkdir(parents=True)
    (project / "src" / "index.ts").write_text("", encoding="utf-8")
    (project / "src" / "components" / "Button.tsx").write_text("", encoding="utf-8")
    (project / "src" / "notes.md").write_text("", encoding="utf-8")

    files = await get_changed_files(str(project), fake_runner)

    assert sorted(files) == [str(Path("src/components/Button.tsx")), str(Path("src/index.ts"))]


# ---------------------------------------------------------------------------
# CodeReviewService
# ---------------------------------------------------------------------------


async def test_run_review_emits_lifecycle_events(
    review: CodeReviewService, events: RecordingEmitter, project: Path
) -> None:
    outcome = await review.run_review(project, "feat-1")

    assert outcome.success is True
    assert outcome.results is not None
    assert outcome.results.overall_pass is True
    assert [check.name for check in outcome.results.checks] == list(ReviewCheck)
    assert _types(events) == [
        "review_start",
        "review_progress",
        "review_progress",
        "review_progress",
        "review_complete",
    ]
    assert all(payload["featureId"] == "feat-1" for payload in events.named(CODE_REVIEW_EVENT))
    assert review.is_reviewing("feat-1") is False


async def test_run_review_selected_checks(
    review: CodeReviewService, fake_runner: Any, project: Path
) -> None:
    (project / "tsconfig.json").write_text("{}", encoding="utf-8")
    fake_runner.on(["npx", "tsc"], stdout=TSC_ERROR, returncode=2)

    outcome = await review.run_review(project, "feat-1", ["typescript"])

    assert outcome.results is not None
    assert outcome.results.overall_pass is False
    assert [check.name for check in outcome.results.checks] == [ReviewCheck.TYPESCRIPT]


async def test_review_with_fixes_re_reviews_after_fix(
    review: CodeReviewService,
    fake_runner: Any,
    mock_provider: MockProvider,
    project: Path,
) -> None:
    (project / "tsconfig.json").write_text("{}", encoding="utf-8")
    fake_runner.on(["npx", "tsc"], stdout=TSC_ERROR, returncode=2)

    def _fix(options: ExecuteOptions) -> list[ProviderMessage]:
        fake_runner.on(["npx", "tsc"])
        return [ProviderMessage.success("Fixed the type error")]

    mock_provider.script(_fix)

    outcome = await review.run_review_with_fixes(project, "feat-1", ["typescript"])

    assert outcome.success is True
    assert outcome.attempts == 2
    assert outcome.results is not None and outcome.results.overall_pass is True
    assert "TS2322" in mock_provider.last_prompt
    assert len(fake_runner.called_with("npx", "tsc")) == 2


async def test_review_with_fixes_gives_up_after_max_attempts(
    review: CodeReviewService,
    fake_runner: Any,
    mock_provider: MockProvider,
    project: Path,
) -> None:
    (project / "tsconfig.json").write_text("{}", encoding="utf-8")
    fake_runner.on(["npx", "tsc"], stdout=TSC_ERROR, returncode=2)
    mock_provider.script_text("Tried")

    outcome = await review.run_review_with_fixes(project, "feat-1", ["typescript"])

    assert outcome.max_attempts_reached is True
    assert outcome.attempts == 3
    assert len(mock_provider.calls) == 2


async def test_fix_issues_reports_agent_failure(
    review: CodeReviewService, mock_provider: MockProvider, project: Path
) -> None:
    mock_provider.script_error("agent crashed")
    result = await review.fix_issues(project, "feat-1", [ReviewIssue(message="bad")])
    assert result.success is False
    assert result.error == "agent crashed"


def test_stop_review_without_running_review(review: CodeReviewService) -> None:
    assert review.stop_review("feat-1") is False
