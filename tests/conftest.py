from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path

import pytest

from agent_workflow.clock import FakeClock
from agent_workflow.executor import ExecuteConfig, ExecuteResult
from agent_workflow.models import CheckCIOptions, CIResult
from agent_workflow.orchestrator import ConfirmationResult, Orchestrator
from agent_workflow.settings import RuntimeSettings
from agent_workflow.state_store import WorkflowStateStore

PLAN_OUTPUT = json.dumps(
    {
        "summary": "Add a health endpoint",
        "contextType": "feature",
        "phases": [{"name": "api", "description": "Add the route", "estimatedFiles": 2, "estimatedLines": 40}],
        "risks": ["none"],
        "complexity": "small",
        "estimatedTotalLines": 40,
        "estimatedTotalFiles": 2,
    }
)
IMPLEMENTATION_OUTPUT = json.dumps({"summary": "Implemented the endpoint", "filesChanged": ["api.py"], "prNumber": 42})
REFACTORING_OUTPUT = json.dumps({"summary": "Tidied handlers", "improvementsMade": ["naming"]})
PR_SPLIT_OUTPUT = json.dumps(
    {
        "summary": "Split into two PRs",
        "parentPR": {"number": 50, "url": "https://example.test/pr/50"},
        "childPRs": [{"number": 51, "title": "api"}, {"number": 52, "title": "e2e"}],
    }
)
SMALL_DIFF = " api.py | 10 ++++++++--\n 1 file changed, 8 insertions(+), 2 deletions(-)\n"
LARGE_DIFF = (
    " api.py (new) | 150 +++++\n"
    " old.py (gone) | 60 -----\n"
    " app.py | 20 ++--\n"
    " 3 files changed, 160 insertions(+), 70 deletions(-)\n"
)


class FakeExecutor:
    """Returns queued outputs in order and records every config it was given."""

    def __init__(self, outputs: Iterable[str | BaseException] = ()) -> None:
        self.outputs = list(outputs)
        self.calls: list[ExecuteConfig] = []

    def queue(self, *outputs: str | BaseException) -> None:
        self.outputs.extend(outputs)

    async def execute(self, config: ExecuteConfig) -> ExecuteResult:
        self.calls.append(config)
        if not self.outputs:
            raise AssertionError("unexpected agent call")
        output = self.outputs.pop(0)
        if isinstance(output, BaseException):
            raise output
        return ExecuteResult(output=output, exit_code=0, duration=1.0)

    async def execute_streaming(self, config: ExecuteConfig, on_progress=None) -> ExecuteResult:
        return await self.execute(config)


class FakeWorktrees:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.created: list[str] = []

    async def create_worktree(self, workflow_name: str) -> str:
        self.created.append(workflow_name)
        path = self.root / "worktrees" / workflow_name
        path.mkdir(parents=True, exist_ok=True)
        return str(path)

    def worktree_exists(self, path: str) -> bool:
        return Path(path).is_dir()

    async def delete_worktree(self, path: str) -> None:
        return None


class FakeCIChecker:
    def __init__(self, results: list[CIResult]) -> None:
        self.results = results
        self.calls: list[tuple[int, CheckCIOptions | None]] = []

    async def wait_for_ci_with_progress(self, pr_number, timeout=None, options=None, on_progress=None) -> CIResult:
        self.calls.append((pr_number, options))
        if not self.results:
            raise AssertionError("unexpected CI wait")
        return self.results.pop(0)


def passed() -> CIResult:
    return CIResult(passed=True, status="success", output="[]")


def failed(*jobs: str) -> CIResult:
    return CIResult(passed=False, status="failure", failed_jobs=list(jobs), output="build failed")


class Harness:
    def __init__(self, tmp_path: Path) -> None:
        self.clock = FakeClock()
        self.settings = RuntimeSettings(base_dir=str(tmp_path / "workflows"), max_fix_attempts=3)
        self.store = WorkflowStateStore(self.settings.base_path(tmp_path), time_provider=self.clock.now)
        self.executor = FakeExecutor()
        self.worktrees = FakeWorktrees(tmp_path)
        self.ci = FakeCIChecker([])
        self.diff = SMALL_DIFF
        self.confirmations: list[ConfirmationResult | BaseException] = []
        self.orchestrator = Orchestrator(
            settings=self.settings,
            repo_root=tmp_path,
            clock=self.clock,
            store=self.store,
            executor=self.executor,
            worktrees=self.worktrees,
            ci_checker_factory=lambda working_dir: self.ci,
            diff_stat=self._diff_stat,
            confirm=self._confirm,
        )

    async def _diff_stat(self, working_dir: str) -> str:
        return self.diff

    async def _confirm(self, plan) -> ConfirmationResult:
        if not self.confirmations:
            return ConfirmationResult(approved=True)
        outcome = self.confirmations.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> WorkflowStateStore:
    return WorkflowStateStore(tmp_path / "workflows")


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    return Harness(tmp_path)
