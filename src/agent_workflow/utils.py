from __future__ import annotations

import re

from .errors import InvalidDescriptionError, InvalidWorkflowNameError, InvalidWorkflowTypeError
from .models import CIResult, Plan, PRMetrics, WorkflowType

WORKFLOW_NAME_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?$")
MAX_WORKFLOW_NAME_LENGTH = 64
DEFAULT_MAX_DESCRIPTION_LENGTH = 32_768

_DIFF_SUMMARY_RE = re.compile(
    r"(?P<files>\d+) files? changed"
    r"(?:, (?P<insertions>\d+) insertions?\(\+\))?"
    r"(?:, (?P<deletions>\d+) deletions?\(-\))?"
)


def validate_workflow_name(name: str) -> None:
    """Reject names that are empty, too long, path-like or not slug-shaped."""
    if not name:
        raise InvalidWorkflowNameError("invalid workflow name: name cannot be empty")
    if len(name) > MAX_WORKFLOW_NAME_LENGTH:
        raise InvalidWorkflowNameError(
            f"invalid workflow name: name too long (max {MAX_WORKFLOW_NAME_LENGTH} characters)"
        )
    if ".." in name or "/" in name or "\\" in name:
        raise InvalidWorkflowNameError("invalid workflow name: name cannot contain path traversal sequences")
    if not WORKFLOW_NAME_RE.match(name):
        raise InvalidWorkflowNameError(
            "invalid workflow name: must contain only alphanumeric characters and hyphens, "
            "and cannot start or end with hyphen"
        )


def validate_workflow_type(wf_type: WorkflowType | str) -> WorkflowType:
    try:
        return WorkflowType(wf_type)
    except ValueError as exc:
        raise InvalidWorkflowTypeError("invalid workflow type: must be 'feature' or 'fix'") from exc


def validate_description(description: str, *, max_length: int = DEFAULT_MAX_DESCRIPTION_LENGTH) -> None:
    if not description or not description.strip():
        raise InvalidDescriptionError("invalid description: description cannot be empty")
    if len(description) > max_length:
        over = len(description) - max_length
        raise InvalidDescriptionError(
            f"invalid description: {len(description)} characters "
            f"(max {max_length} characters, {over} over limit)"
        )


def parse_diff_stat(output: str) -> PRMetrics:
    """Parse ``git diff --stat`` output into PRMetrics.

    Per-file lines look like ``path | 12 ++--``; a trailing ``(new)`` marks an
    added file and ``(gone)`` a deleted one. The summary line supplies the file
    count and the changed-line total, which counts insertions only.
    """
    metrics = PRMetrics()
    for raw_line in output.strip().splitlines():
        line = raw_line.strip()
        if not line:
            continue

        summary = _DIFF_SUMMARY_RE.search(line)
        if summary is not None and "|" not in line:
            metrics.files_changed = int(summary.group("files"))
            metrics.lines_changed = int(summary.group("insertions") or 0)
            continue

        file_name = line.split("|", 1)[0].strip()
        if not file_name:
            continue
        if "(new)" in line:
            metrics.files_added.append(file_name.replace("(new)", "").strip())
        elif "(gone)" in line:
            metrics.files_deleted.append(file_name.replace("(gone)", "").strip())
        else:
            metrics.files_modified.append(file_name)
    return metrics


def format_ci_errors(result: CIResult) -> str:
    lines = ["CI checks failed with the following errors:", "", result.output, "", "Failed jobs:"]
    lines.extend(f"- {job}" for job in result.failed_jobs)
    if result.cancelled_jobs:
        lines.append("")
        lines.append("Cancelled jobs:")
        lines.extend(f"- {job}" for job in result.cancelled_jobs)
    return "\n".join(lines) + "\n"


def render_plan_markdown(plan: Plan) -> str:
    sections = [f"# Plan\n\n{plan.summary}\n"]
    if plan.context_type or plan.complexity:
        sections.append(
            f"- Context: {plan.context_type or 'n/a'}\n"
            f"- Complexity: {plan.complexity or 'n/a'}\n"
            f"- Estimated size: {plan.estimated_total_lines} lines across {plan.estimated_total_files} files\n"
        )
    if plan.architecture.overview or plan.architecture.components:
        components = "\n".join(f"- {component}" for component in plan.architecture.components)
        sections.append(f"## Architecture\n\n{plan.architecture.overview}\n\n{components}".rstrip() + "\n")
    if plan.phases:
        rows = "\n".join(
            f"{idx}. **{phase.name}**: {phase.description} "
            f"(~{phase.estimated_lines} lines, {phase.estimated_files} files)"
            for idx, phase in enumerate(plan.phases, start=1)
        )
        sections.append(f"## Phases\n\n{rows}\n")
    if plan.work_streams:
        blocks = []
        for stream in plan.work_streams:
            depends = f" (depends on: {', '.join(stream.depends_on)})" if stream.depends_on else ""
            tasks = "\n".join(f"- {task}" for task in stream.tasks)
            blocks.append(f"### {stream.name}{depends}\n\n{tasks}".rstrip())
        sections.append("## Work Streams\n\n" + "\n\n".join(blocks) + "\n")
    if plan.risks:
        sections.append("## Risks\n\n" + "\n".join(f"- {risk}" for risk in plan.risks) + "\n")
    return "\n".join(sections)


def format_plan_summary(plan: Plan) -> str:
    lines = [f"Summary: {plan.summary}"]
    if plan.complexity:
        lines.append(f"Complexity: {plan.complexity}")
    if plan.estimated_total_lines or plan.estimated_total_files:
        lines.append(f"Estimated: {plan.estimated_total_lines} lines, {plan.estimated_total_files} files")
    for idx, phase in enumerate(plan.phases, start=1):
        lines.append(f"  {idx}. {phase.name}: {phase.description}")
    return "\n".join(lines)
