"""Entry point for `python -m agent_workflow` and the `agent-workflow` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

from dotenv import load_dotenv

from agent_workflow import Orchestrator
from agent_workflow.errors import WorkflowFailedError
from agent_workflow.models import WorkflowState, WorkflowType


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a coding agent through plan, implement, refactor and PR split")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=None,
        help="Repository the workflow operates on (default: cwd)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    start = commands.add_parser("start", help="Start a new workflow")
    start.add_argument("name", help="Workflow name (alphanumerics and hyphens)")
    start.add_argument("description", help="What to build or fix")
    start.add_argument(
        "--type",
        dest="wf_type",
        default=WorkflowType.FEATURE.value,
        choices=[item.value for item in WorkflowType],
        help="Workflow type",
    )

    resume = commands.add_parser("resume", help="Resume an interrupted or failed workflow")
    resume.add_argument("name")

    status = commands.add_parser("status", help="Show the state of a workflow")
    status.add_argument("name")

    commands.add_parser("list", help="List all workflows")

    delete = commands.add_parser("delete", help="Delete a workflow")
    delete.add_argument("name")
    delete.add_argument("--force", action="store_true", help="Do not ask for confirmation")

    clean = commands.add_parser("clean", help="Delete all completed workflows")
    clean.add_argument("--force", action="store_true", help="Do not ask for confirmation")
    return parser.parse_args(argv)


def confirm_action(prompt: str, input_fn: Callable[[str], str] = input) -> bool:
    try:
        answer = input_fn(f"{prompt} [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def print_state(state: WorkflowState) -> None:
    print(f"name={state.name}")
    print(f"type={state.type.value}")
    print(f"current_phase={state.current_phase.value}")
    if state.worktree_path:
        print(f"worktree={state.worktree_path}")
    if state.pr_number:
        print(f"pr_number={state.pr_number}")
    print("phases:")
    for phase, phase_state in state.phases.items():
        print(f"  {phase.value}: {phase_state.status.value} (attempts={phase_state.attempts})")
    if state.error is not None:
        print(f"error={state.error.message}")
        print(f"recoverable={state.error.recoverable}")


def run_command(orchestrator: Orchestrator, args: argparse.Namespace) -> int:
    if args.command == "start":
        state = asyncio.run(orchestrator.start(args.name, args.description, args.wf_type))
        print_state(state)
        return 0
    if args.command == "resume":
        state = asyncio.run(orchestrator.resume(args.name))
        print_state(state)
        return 0
    if args.command == "status":
        print_state(orchestrator.status(args.name))
        return 0
    if args.command == "list":
        workflows = orchestrator.list()
        if not workflows:
            print("no workflows found")
        for info in workflows:
            print(f"{info.name}\t{info.type.value}\t{info.current_phase.value}\t{info.status}\t{info.updated_at.isoformat()}")
        return 0
    if args.command == "delete":
        if not args.force and not confirm_action(f"Delete workflow {args.name}?"):
            print("aborted")
            return 1
        orchestrator.delete(args.name)
        print(f"deleted {args.name}")
        return 0
    if args.command == "clean":
        if not args.force and not confirm_action("Delete all completed workflows?"):
            print("aborted")
            return 1
        deleted = orchestrator.clean()
        print(f"deleted {len(deleted)} workflow(s)")
        for name in deleted:
            print(f"  {name}")
        return 0
    raise ValueError(f"unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    repo_root = (args.repo_root if args.repo_root is not None else Path.cwd()).resolve()
    env_path = repo_root / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    try:
        orchestrator = Orchestrator(repo_root=repo_root)
    except (OSError, ValueError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    try:
        return run_command(orchestrator, args)
    except WorkflowFailedError as exc:
        logging.error("%s", exc)
        if exc.recoverable:
            logging.error("Run `agent-workflow resume %s` to retry the failed phase", args.name)
        return 1
    except KeyboardInterrupt:
        logging.error("Interrupted")
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
