from importlib.metadata import version

from .ci import CIChecker, count_job_statuses, filter_e2e_failures, parse_ci_output
from .clock import Clock, FakeClock, RealClock
from .errors import WorkflowFailedError, is_recoverable_error
from .executor import ClaudeCodeExecutor, DeepAgentExecutor, ExecuteConfig, ExecuteResult, build_executor
from .models import (
    CheckCIOptions,
    CIProgressEvent,
    CIResult,
    ImplementationSummary,
    JobStatusCounts,
    Phase,
    PhaseState,
    PhaseStatus,
    Plan,
    PRMetrics,
    PRSplitResult,
    RefactoringSummary,
    WorkflowError,
    WorkflowInfo,
    WorkflowState,
    WorkflowType,
)
from .orchestrator import ConfirmationResult, Orchestrator, console_confirm
from .parser import OutputParser
from .prompts import PromptGenerator
from .settings import RuntimeSettings
from .state_store import WorkflowStateStore
from .worktree import GitWorktreeManager


def get_version() -> str:
    try:
        return version("agent-workflow")
    except Exception:
        return "0.0.0"


__all__ = [
    "CIChecker",
    "CIProgressEvent",
    "CIResult",
    "CheckCIOptions",
    "ClaudeCodeExecutor",
    "Clock",
    "ConfirmationResult",
    "DeepAgentExecutor",
    "ExecuteConfig",
    "ExecuteResult",
    "FakeClock",
    "GitWorktreeManager",
    "ImplementationSummary",
    "JobStatusCounts",
    "Orchestrator",
    "OutputParser",
    "PRMetrics",
    "PRSplitResult",
    "Phase",
    "PhaseState",
    "PhaseStatus",
    "Plan",
    "PromptGenerator",
    "RealClock",
    "RefactoringSummary",
    "RuntimeSettings",
    "WorkflowError",
    "WorkflowFailedError",
    "WorkflowInfo",
    "WorkflowState",
    "WorkflowStateStore",
    "WorkflowType",
    "build_executor",
    "console_confirm",
    "count_job_statuses",
    "filter_e2e_failures",
    "get_version",
    "is_recoverable_error",
    "parse_ci_output",
]
