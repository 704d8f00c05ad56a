from __future__ import annotations

from .errors import PromptGenerationError
from .models import Plan, PRMetrics, WorkflowType

_JSON_CONTRACT = (
    "Respond with a single JSON object only. Do not wrap it in prose. "
    "If you must use a code fence, use ```json."
)

PLANNING_TEMPLATE = """You are planning a {wf_type} for this repository.

## Request
{description}
{feedback_section}
## Instructions
1. Explore the codebase to understand the relevant context before planning.
2. Break the work into small, reviewable phases and parallelizable work streams.
3. Call out risks and estimate the total lines and files that will change.
4. Do not modify any files during planning.

## Output
{contract}
Schema:
{{
  "summary": "one paragraph describing the change",
  "contextType": "feature | fix",
  "architecture": {{"overview": "...", "components": ["..."]}},
  "phases": [{{"name": "...", "description": "...", "estimatedFiles": 0, "estimatedLines": 0}}],
  "workStreams": [{{"name": "...", "tasks": ["..."], "dependsOn": ["..."]}}],
  "risks": ["..."],
  "complexity": "small | medium | large",
  "estimatedTotalLines": 0,
  "estimatedTotalFiles": 0
}}
"""

IMPLEMENTATION_TEMPLATE = """Implement the approved plan below in this worktree.

## Plan
{plan_json}

## Instructions
1. Follow the phases in order and keep each commit focused.
2. Add or update tests for every behavior you change.
3. Run the test suite and linters until they pass.
4. Push the branch and open a pull request for the change.

## Output
{contract}
Schema:
{{
  "summary": "what was implemented",
  "filesChanged": ["..."],
  "linesAdded": 0,
  "linesRemoved": 0,
  "testsAdded": 0,
  "prNumber": 0,
  "prUrl": "https://...",
  "nextSteps": ["..."]
}}
"""

REFACTORING_TEMPLATE = """Review and refactor the implementation of the plan below.

## Plan
{plan_json}

## Instructions
1. Remove duplication and dead code introduced by the implementation.
2. Improve naming and structure without changing behavior.
3. Keep the test suite passing and push your commits to the existing pull request.

## Output
{contract}
Schema:
{{
  "summary": "what was refactored",
  "filesChanged": ["..."],
  "improvementsMade": ["..."]
}}
"""

PR_SPLIT_TEMPLATE = """The current pull request is too large to review in one pass.

## Size
- Lines changed: {lines_changed}
- Files changed: {files_changed}
- Files added: {files_added}
- Files modified: {files_modified}
- Files deleted: {files_deleted}

## Instructions
1. Split the change into a parent pull request and a stack of smaller child pull requests.
2. Each child must build and pass tests on its own.
3. Order the children so that each depends only on the ones before it.

## Output
{contract}
Schema:
{{
  "summary": "how the change was split",
  "parentPR": {{"number": 0, "url": "...", "title": "...", "description": "..."}},
  "childPRs": [{{"number": 0, "url": "...", "title": "...", "description": "..."}}]
}}
"""

FIX_CI_TEMPLATE = """CI failed on the pull request for this worktree.

{failures}

## Instructions
1. Reproduce each failure locally where possible.
2. Fix the root cause rather than disabling or skipping checks.
3. Push the fix to the same branch.

## Output
{contract}
Schema:
{{
  "summary": "what was fixed",
  "filesChanged": ["..."],
  "prNumber": 0
}}
"""


def _format_file_list(files: list[str]) -> str:
    return ", ".join(files) if files else "none"


class PromptGenerator:
    """Renders the agent prompt for each workflow phase."""

    def generate_planning_prompt(self, wf_type: WorkflowType, description: str, feedback: list[str] | None = None) -> str:
        if not description.strip():
            raise PromptGenerationError("description cannot be empty")
        feedback_section = ""
        if feedback:
            items = "\n".join(f"- {item}" for item in feedback)
            feedback_section = f"\n## Feedback on previous plans\nAddress every point below.\n{items}\n"
        return PLANNING_TEMPLATE.format(
            wf_type=WorkflowType(wf_type).value,
            description=description.strip(),
            feedback_section=feedback_section,
            contract=_JSON_CONTRACT,
        )

    def generate_implementation_prompt(self, plan: Plan | None) -> str:
        if plan is None:
            raise PromptGenerationError("plan cannot be None")
        return IMPLEMENTATION_TEMPLATE.format(
            plan_json=plan.model_dump_json(indent=2, by_alias=True),
            contract=_JSON_CONTRACT,
        )

    def generate_refactoring_prompt(self, plan: Plan | None) -> str:
        if plan is None:
            raise PromptGenerationError("plan cannot be None")
        return REFACTORING_TEMPLATE.format(
            plan_json=plan.model_dump_json(indent=2, by_alias=True),
            contract=_JSON_CONTRACT,
        )

    def generate_pr_split_prompt(self, metrics: PRMetrics | None) -> str:
        if metrics is None:
            raise PromptGenerationError("metrics cannot be None")
        return PR_SPLIT_TEMPLATE.format(
            lines_changed=metrics.lines_changed,
            files_changed=metrics.files_changed,
            files_added=_format_file_list(metrics.files_added),
            files_modified=_format_file_list(metrics.files_modified),
            files_deleted=_format_file_list(metrics.files_deleted),
            contract=_JSON_CONTRACT,
        )

    def generate_fix_ci_prompt(self, failures: str) -> str:
        if not failures.strip():
            raise PromptGenerationError("failures cannot be empty")
        return FIX_CI_TEMPLATE.format(failures=failures.strip(), contract=_JSON_CONTRACT)
