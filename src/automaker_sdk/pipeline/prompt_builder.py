"""Prompts for pipeline steps.

Each built-in step type asks the model to open its answer with a status
marker (``[REVIEW_PASSED]``, ``[SECURITY_FAILED]`` ...) followed by a
numbered issue list, which :mod:`automaker_sdk.pipeline.executor` parses.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

from automaker_sdk.core.exceptions import PipelineError
from automaker_sdk.pipeline.models import Feature, PipelineIssue, PipelineStepConfig, StepType

_TEMPLATE_VAR = re.compile(r"\{\{feature\.(\w+)\}\}")

_REVIEW_OUTPUT = """## Instructions

Review the implemented code and identify up to {max_issues} issues. For each issue:
1. Describe the problem clearly
2. Specify the file and line number
3. Suggest how to fix it
4. Rate severity (low/medium/high)

## Output Format

If no issues found:
[REVIEW_PASSED]
Code review completed successfully. No issues found.

If issues found:
[REVIEW_FAILED]
Issues found:
1. [Issue description] (file:line)
   Severity: [low/medium/high]
   Suggestion: [How to fix]

2. [Additional issue]...
"""

_SECURITY_OUTPUT = """## Instructions

Analyze the code for security vulnerabilities. Focus on:
- Input validation and sanitization
- Authentication and authorization checks
- SQL injection and XSS vulnerabilities
- Sensitive data handling
- Access control issues

## Output Format

If no security issues found:
[SECURITY_PASSED]
Security review completed. No vulnerabilities found.

If issues found:
[SECURITY_FAILED]
Vulnerabilities found:
1. [Vulnerability type]: [Description] (file:line)
   Severity: [low/medium/high/critical]
   Impact: [Potential impact]
   Fix: [How to fix]

2. [Additional vulnerability]...
"""

_PERFORMANCE_OUTPUT = """## Instructions

Analyze the code for performance issues:
- Algorithm complexity and efficiency
- Memory usage patterns
- Database query optimization
- Network request efficiency
- Bundle size impact

## Output Format

If no performance issues found:
[PERFORMANCE_PASSED]
Performance review completed. No issues found.

If issues found:
[PERFORMANCE_FAILED]
Performance issues found:
1. [Issue type]: [Description] (file:line)
   Impact: [High/Medium/Low]
   Recommendation: [How to optimize]

2. [Additional issue]...
"""

_TEST_OUTPUT = """## Output Format

If tests are adequate:
[TEST_PASSED]
Test review completed. Coverage meets requirements.

If issues found:
[TEST_FAILED]
Test issues found:
1. [Issue type]: [Description]
   Location: [file or general]
   Fix: [How to improve]

2. [Additional issue]...
"""


def _bullets(items: Sequence[str]) -> str:
    return "\n".join(f"- {item[:1].upper()}{item[1:]}" for item in items)


class PipelinePromptBuilder:
    """Builds the prompt for one step run, optionally with memory context."""

    def build_prompt_for_step(
        self, feature: Feature, step: PipelineStepConfig, memory: str | None = None
    ) -> str:
        builders = {
            StepType.REVIEW: self._review,
            StepType.SECURITY: self._security,
            StepType.PERFORMANCE: self._performance,
            StepType.TEST: self._test,
            StepType.CUSTOM: self._custom,
        }
        builder = builders.get(step.type)
        if builder is None:
            raise PipelineError(f"Unknown step type: {step.type}")
        return builder(feature, step.config, memory)

    @staticmethod
    def build_memory_context(iteration: int, previous_issues: Sequence[PipelineIssue]) -> str:
        """``## Previous Feedback (Iteration N)`` block, or ``""`` when there is nothing to add."""
        if iteration == 0 or not previous_issues:
            return ""
        lines = [
            f"- {issue.summary}{f' ({issue.location})' if issue.location else ''} (already addressed)"
            for issue in previous_issues
        ]
        return (
            f"## Previous Feedback (Iteration {iteration})\n"
            "Please review these previous comments and DO NOT repeat them:\n"
            + "\n".join(lines)
            + "\n\nFocus on NEW issues only."
        )

    # ------------------------------------------------------------------ #
    # Per-type builders
    # ------------------------------------------------------------------ #

    def _review(self, feature: Feature, config: dict[str, Any], memory: str | None) -> str:
        focus = config.get("focus") or ["quality", "standards", "bugs"]
        exclude = config.get("excludePatterns") or []
        prompt = (
            "## Code Review\n\n"
            "You are reviewing a feature implementation for the following areas:\n"
            f"{_bullets(focus)}\n\n"
            f"Feature Description: {feature.description}\n\n"
        )
        if exclude:
            prompt += f"Exclude files matching: {', '.join(exclude)}\n\n"
        if memory:
            prompt += f"{memory}\n\n"
        return prompt + _REVIEW_OUTPUT.format(max_issues=config.get("maxIssues") or 20)

    def _security(self, feature: Feature, config: dict[str, Any], memory: str | None) -> str:
        checklist = config.get("checklist") or [
            "sql-injection",
            "xss",
            "authentication",
            "authorization",
            "data-validation",
            "sensitive-data-exposure",
        ]
        prompt = (
            "## Security Review\n\n"
            "You are performing a security review of a feature implementation.\n\n"
            f"Feature Description: {feature.description}\n\n"
            "Security Checklist:\n"
            f"{_bullets([item.replace('-', ' ') for item in checklist])}\n\n"
            f"Minimum severity level: {config.get('severity') or 'medium'}\n\n"
        )
        if memory:
            prompt += f"{memory}\n\n"
        return prompt + _SECURITY_OUTPUT

    def _performance(self, feature: Feature, config: dict[str, Any], memory: str | None) -> str:
        metrics = config.get("metrics") or ["complexity", "memory", "cpu"]
        thresholds: dict[str, Any] = config.get("thresholds") or {}
        prompt = (
            "## Performance Review\n\n"
            "You are analyzing the performance of a feature implementation.\n\n"
            f"Feature Description: {feature.description}\n\n"
            "Performance Metrics to Check:\n"
            f"{_bullets(metrics)}\n\n"
        )
        if thresholds:
            prompt += "Thresholds:\n" + "\n".join(f"- {k}: {v}" for k, v in thresholds.items()) + "\n\n"
        if memory:
            prompt += f"{memory}\n\n"
        return prompt + _PERFORMANCE_OUTPUT

    def _test(self, feature: Feature, config: dict[str, Any], memory: str | None) -> str:
        coverage = config.get("coverageThreshold") or 80
        prompt = (
            "## Test Review\n\n"
            "You are reviewing the test coverage and quality for a feature implementation.\n\n"
            f"Feature Description: {feature.description}\n"
            f"Required Coverage: {coverage}%\n\n"
        )
        if memory:
            prompt += f"{memory}\n\n"
        prompt += (
            "## Instructions\n\n"
            "Review the test suite for:\n"
            f"- Code coverage (target: {coverage}%)\n"
            "- Test quality and clarity\n"
            "- Assertion completeness\n"
            "- Edge case coverage\n"
            "- Integration test coverage\n"
        )
        if config.get("checkQuality", True):
            prompt += "- Test naming and structure\n"
        if config.get("checkAssertions", True):
            prompt += "- Assertion quality and completeness\n"
        return prompt + "\n" + _TEST_OUTPUT

    def _custom(self, feature: Feature, config: dict[str, Any], memory: str | None) -> str:
        def _substitute(match: re.Match[str]) -> str:
            field = match.group(1)
            if field == "title":
                return feature.title or "Untitled"
            value = getattr(feature, field, None)
            return "" if value is None else str(value)

        prompt = _TEMPLATE_VAR.sub(_substitute, config.get("prompt") or "")
        if memory:
            prompt += f"\n\n{memory}"
        if config.get("successCriteria"):
            prompt += f"\n\n## Success Criteria\n{config['successCriteria']}"
        return prompt
