from __future__ import annotations

import pytest

from agent_workflow.errors import InvalidDescriptionError, InvalidWorkflowNameError, InvalidWorkflowTypeError
from agent_workflow.models import CIResult, Plan, WorkflowType
from agent_workflow.utils import (
    format_ci_errors,
    format_plan_summary,
    parse_diff_stat,
    render_plan_markdown,
    validate_description,
    validate_workflow_name,
    validate_workflow_type,
)


@pytest.mark.parametrize("name", ["a", "add-auth", "Fix-123", "x" * 64])
def test_valid_workflow_names(name: str) -> None:
    validate_workflow_name(name)


@pytest.mark.parametrize(
    ("name", "reason"),
    [
        ("", "cannot be empty"),
        ("x" * 65, "too long"),
        ("a/../b", "path traversal"),
        ("-start", "alphanumeric"),
        ("end-", "alphanumeric"),
        ("under_score", "alphanumeric"),
    ],
)
def test_invalid_workflow_names(name: str, reason: str) -> None:
    with pytest.raises(InvalidWorkflowNameError, match=reason):
        validate_workflow_name(name)


def test_validate_workflow_type() -> None:
    assert validate_workflow_type("fix") == WorkflowType.FIX
    assert validate_workflow_type(WorkflowType.FEATURE) == WorkflowType.FEATURE
    with pytest.raises(InvalidWorkflowTypeError):
        validate_workflow_type("refactor")


def test_validate_description_limits() -> None:
    validate_description("x" * 10, max_length=10)
    with pytest.raises(InvalidDescriptionError, match="1 over limit"):
        validate_description("x" * 11, max_length=10)
    with pytest.raises(InvalidDescriptionError, match="cannot be empty"):
        validate_description(" \n\t")


def test_parse_diff_stat_classifies_files() -> None:
    output = """
 src/new_module.py (new)   | 120 ++++++++++
 src/legacy.py (gone)      |  40 ------
 src/app.py                |  12 +++---
 3 files changed, 129 insertions(+), 43 deletions(-)
"""
    metrics = parse_diff_stat(output)
    assert metrics.files_changed == 3
    assert metrics.lines_changed == 129
    assert metrics.files_added == ["src/new_module.py"]
    assert metrics.files_deleted == ["src/legacy.py"]
    assert metrics.files_modified == ["src/app.py"]


def test_parse_diff_stat_ignores_deletions_in_line_count() -> None:
    metrics = parse_diff_stat(" a.py | 110 +++++-----\n 1 file changed, 90 insertions(+), 20 deletions(-)\n")
    assert (metrics.files_changed, metrics.lines_changed) == (1, 90)


def test_parse_diff_stat_insertions_only() -> None:
    metrics = parse_diff_stat(" a.py | 5 +++++\n 1 file changed, 5 insertions(+)\n")
    assert (metrics.files_changed, metrics.lines_changed) == (1, 5)


def test_parse_diff_stat_empty() -> None:
    metrics = parse_diff_stat("")
    assert metrics.files_changed == 0
    assert metrics.lines_changed == 0
    assert metrics.files_modified == []


def test_format_ci_errors_lists_jobs() -> None:
    text = format_ci_errors(
        CIResult(passed=False, status="failure", failed_jobs=["lint"], cancelled_jobs=["deploy"], output="[...]")
    )
    assert text.startswith("CI checks failed with the following errors:\n\n[...]\n")
    assert "Failed jobs:\n- lint" in text
    assert "Cancelled jobs:\n- deploy" in text


def test_format_ci_errors_without_cancellations() -> None:
    text = format_ci_errors(CIResult(passed=False, status="failure", failed_jobs=["unit"], output="out"))
    assert "Cancelled jobs" not in text


def test_plan_rendering() -> None:
    plan = Plan.model_validate(
        {
            "summary": "Introduce rate limiting",
            "complexity": "medium",
            "phases": [{"name": "middleware", "description": "Add limiter", "estimatedLines": 80}],
            "workStreams": [{"name": "api", "tasks": ["wire limiter"], "dependsOn": ["config"]}],
        }
    )
    markdown = render_plan_markdown(plan)
    assert markdown.startswith("# Plan\n\nIntroduce rate limiting")
    assert "1. **middleware**: Add limiter (~80 lines, 0 files)" in markdown
    assert "### api (depends on: config)" in markdown

    summary = format_plan_summary(plan)
    assert "Summary: Introduce rate limiting" in summary
    assert "Complexity: medium" in summary
    assert "  1. middleware: Add limiter" in summary
