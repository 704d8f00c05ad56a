"""Async wrappers around the ``gh`` and ``git`` command lines."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from pathlib import Path

from .errors import CICommandError, CommandError

logger = logging.getLogger(__name__)

CI_CHECK_FIELDS = "name,state"
# gh exits 1 when a check failed and 8 while checks are still pending; both
# still print the job report.
_GH_REPORT_EXIT_CODES = frozenset({1, 8})


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    returncode: int


async def run_command(*args: str, cwd: Path | str | None = None) -> CommandResult:
    """Run a command to completion, killing it if the caller is cancelled."""
    logger.debug("Running command: %s (cwd=%s)", " ".join(args), cwd)
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=str(cwd) if cwd else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        with contextlib.suppress(Exception):
            await process.wait()
        raise
    return CommandResult(
        stdout=stdout.decode("utf-8", errors="replace").strip(),
        stderr=stderr.decode("utf-8", errors="replace").strip(),
        returncode=process.returncode if process.returncode is not None else -1,
    )


async def gh_pr_checks(working_dir: Path | str | None, pr_number: int, fields: str = CI_CHECK_FIELDS) -> str:
    """Return the raw JSON job report for ``pr_number`` (0 means the current branch's PR)."""
    args = ["gh", "pr", "checks"]
    if pr_number > 0:
        args.append(str(pr_number))
    args.extend(["--json", fields])

    try:
        result = await run_command(*args, cwd=working_dir)
    except FileNotFoundError as exc:
        raise CICommandError("gh CLI not found: is it installed?") from exc

    if result.returncode == 0:
        return result.stdout
    if result.returncode in _GH_REPORT_EXIT_CODES and result.stdout:
        return result.stdout
    if result.returncode == 8:
        raise CICommandError("no PR found for the current branch: ensure a PR exists before checking CI status")
    if result.returncode == 127:
        raise CICommandError("gh CLI not found: is it installed?")
    raise CICommandError(f"failed to check CI status: exit code {result.returncode} (stderr: {result.stderr})")


async def git_diff_stat(worktree: Path | str, base_ref: str = "origin/main") -> str:
    try:
        result = await run_command("git", "diff", "--stat", base_ref, cwd=worktree)
    except FileNotFoundError as exc:
        raise CommandError("git not found: is it installed?") from exc
    if result.returncode != 0:
        raise CommandError(
            f"failed to get diff stat: exit code {result.returncode}",
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result.stdout
