from __future__ import annotations

from pathlib import Path

import pytest

from agent_workflow import commands, worktree
from agent_workflow.commands import CommandResult, gh_pr_checks, git_diff_stat, run_command
from agent_workflow.errors import CICommandError, CommandError, WorktreeError
from agent_workflow.worktree import GitWorktreeManager


def stub_run(monkeypatch: pytest.MonkeyPatch, result: CommandResult, module=commands) -> list[tuple[str, ...]]:
    calls: list[tuple[str, ...]] = []

    async def fake_run(*args: str, cwd=None) -> CommandResult:
        calls.append(args)
        return result

    monkeypatch.setattr(module, "run_command", fake_run)
    return calls


@pytest.mark.asyncio
async def test_run_command_captures_output(tmp_path: Path) -> None:
    result = await run_command("sh", "-c", "echo out; echo err >&2; exit 4", cwd=tmp_path)
    assert result == CommandResult(stdout="out", stderr="err", returncode=4)


@pytest.mark.asyncio
async def test_gh_pr_checks_builds_command(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = stub_run(monkeypatch, CommandResult(stdout="[]", stderr="", returncode=0))

    assert await gh_pr_checks(".", 12) == "[]"
    assert await gh_pr_checks(".", 0) == "[]"
    assert calls == [
        ("gh", "pr", "checks", "12", "--json", "name,state"),
        ("gh", "pr", "checks", "--json", "name,state"),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("returncode", [1, 8])
async def test_gh_report_exit_codes_still_return_output(monkeypatch: pytest.MonkeyPatch, returncode: int) -> None:
    stub_run(monkeypatch, CommandResult(stdout='[{"name": "a", "state": "FAILURE"}]', stderr="", returncode=returncode))
    assert "FAILURE" in await gh_pr_checks(".", 3)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("returncode", "message"),
    [(8, "no PR found"), (127, "gh CLI not found"), (2, "exit code 2")],
)
async def test_gh_errors(monkeypatch: pytest.MonkeyPatch, returncode: int, message: str) -> None:
    stub_run(monkeypatch, CommandResult(stdout="", stderr="boom", returncode=returncode))
    with pytest.raises(CICommandError, match=message):
        await gh_pr_checks(".", 3)


@pytest.mark.asyncio
async def test_git_diff_stat_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    stub_run(monkeypatch, CommandResult(stdout="", stderr="fatal: bad revision", returncode=128))
    with pytest.raises(CommandError) as excinfo:
        await git_diff_stat("/repo")
    assert excinfo.value.returncode == 128
    assert excinfo.value.stderr == "fatal: bad revision"


@pytest.mark.asyncio
async def test_worktree_is_created_beside_repo(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    tmp_path = tmp_path.resolve()
    repo = tmp_path / "repo"
    repo.mkdir()
    calls = stub_run(monkeypatch, CommandResult(stdout="", stderr="", returncode=0), module=worktree)

    path = await GitWorktreeManager(repo).create_worktree("add-auth")

    assert path == str(tmp_path / "worktrees" / "add-auth")
    assert calls == [("git", "worktree", "add", path, "-b", "workflow/add-auth")]


@pytest.mark.asyncio
async def test_existing_worktree_is_reused(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    tmp_path = tmp_path.resolve()
    repo = tmp_path / "repo"
    repo.mkdir()
    existing = tmp_path / "worktrees" / "add-auth"
    existing.mkdir(parents=True)
    (existing / ".git").write_text("gitdir: ../repo/.git/worktrees/add-auth", encoding="utf-8")
    calls = stub_run(monkeypatch, CommandResult(stdout="", stderr="", returncode=0), module=worktree)

    assert await GitWorktreeManager(repo).create_worktree("add-auth") == str(existing)
    assert calls == []


@pytest.mark.asyncio
async def test_branch_conflict_is_reported(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    tmp_path = tmp_path.resolve()
    repo = tmp_path / "repo"
    repo.mkdir()
    stub_run(
        monkeypatch,
        CommandResult(stdout="", stderr="fatal: a branch named 'workflow/x' already exists", returncode=128),
        module=worktree,
    )
    with pytest.raises(WorktreeError, match="already exists"):
        await GitWorktreeManager(repo).create_worktree("x")


@pytest.mark.asyncio
async def test_delete_worktree_removes_existing_only(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    existing = tmp_path / "worktrees" / "done"
    existing.mkdir(parents=True)
    (existing / ".git").write_text("gitdir: elsewhere", encoding="utf-8")
    calls = stub_run(monkeypatch, CommandResult(stdout="", stderr="", returncode=0), module=worktree)
    manager = GitWorktreeManager(tmp_path / "repo")

    await manager.delete_worktree(str(tmp_path / "worktrees" / "missing"))
    await manager.delete_worktree(str(existing))

    assert calls == [("git", "worktree", "remove", str(existing))]
    with pytest.raises(WorktreeError):
        await manager.delete_worktree("")
