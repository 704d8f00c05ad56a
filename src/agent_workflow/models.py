from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

STATE_VERSION = "1.0"


class Phase(str, Enum):
    PLANNING = "planning"
    CONFIRMATION = "confirmation"
    IMPLEMENTATION = "implementation"
    REFACTORING = "refactoring"
    PR_SPLIT = "pr_split"
    COMPLETED = "completed"
    FAILED = "failed"


# Phases that carry a PhaseState entry, in execution order.
PHASE_ORDER: tuple[Phase, ...] = (
    Phase.PLANNING,
    Phase.CONFIRMATION,
    Phase.IMPLEMENTATION,
    Phase.REFACTORING,
    Phase.PR_SPLIT,
)

TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.FAILED})


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class WorkflowType(str, Enum):
    FEATURE = "feature"
    FIX = "fix"


class PRMetrics(BaseModel):
    """Diff statistics used to decide whether a PR must be split."""

    lines_changed: int = 0
    files_changed: int = 0
    files_added: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    files_deleted: list[str] = Field(default_factory=list)


class PhaseState(BaseModel):
    status: PhaseStatus = PhaseStatus.PENDING
    attempts: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    feedback: list[str] = Field(default_factory=list)
    required: bool | None = None
    metrics: PRMetrics | None = None


class WorkflowError(BaseModel):
    message: str
    phase: Phase
    recoverable: bool
    timestamp: datetime | None = None


class WorkflowState(BaseModel):
    version: str = STATE_VERSION
    name: str
    type: WorkflowType
    description: str
    current_phase: Phase
    phases: dict[Phase, PhaseState] = Field(default_factory=dict)
    worktree_path: str = ""
    pr_number: int = 0
    error: WorkflowError | None = None
    created_at: datetime
    updated_at: datetime

    def phase_state(self, phase: Phase) -> PhaseState:
        """Return the PhaseState for ``phase``, creating a pending one if absent."""
        if phase not in self.phases:
            self.phases[phase] = PhaseState()
        return self.phases[phase]

    def in_progress_phases(self) -> list[Phase]:
        return [phase for phase in PHASE_ORDER if phase in self.phases and self.phases[phase].status == PhaseStatus.IN_PROGRESS]


class WorkflowInfo(BaseModel):
    name: str
    type: WorkflowType
    current_phase: Phase
    created_at: datetime
    updated_at: datetime
    status: str


# ---------------------------------------------------------------------------
# Agent outputs
# ---------------------------------------------------------------------------


class AgentOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Architecture(AgentOutput):
    overview: str = ""
    components: list[str] = Field(default_factory=list)


class PlanPhase(AgentOutput):
    name: str
    description: str = ""
    estimated_files: int = Field(default=0, alias="estimatedFiles")
    estimated_lines: int = Field(default=0, alias="estimatedLines")


class WorkStream(AgentOutput):
    name: str
    tasks: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")


class Plan(AgentOutput):
    summary: str
    context_type: str = Field(default="", alias="contextType")
    architecture: Architecture = Field(default_factory=Architecture)
    phases: list[PlanPhase] = Field(default_factory=list)
    work_streams: list[WorkStream] = Field(default_factory=list, alias="workStreams")
    risks: list[str] = Field(default_factory=list)
    complexity: str = ""
    estimated_total_lines: int = Field(default=0, alias="estimatedTotalLines")
    estimated_total_files: int = Field(default=0, alias="estimatedTotalFiles")


class ImplementationSummary(AgentOutput):
    summary: str
    files_changed: list[str] = Field(default_factory=list, alias="filesChanged")
    lines_added: int = Field(default=0, alias="linesAdded")
    lines_removed: int = Field(default=0, alias="linesRemoved")
    tests_added: int = Field(default=0, alias="testsAdded")
    pr_number: int = Field(default=0, alias="prNumber")
    pr_url: str = Field(default="", alias="prUrl")
    next_steps: list[str] = Field(default_factory=list, alias="nextSteps")


class RefactoringSummary(AgentOutput):
    summary: str
    files_changed: list[str] = Field(default_factory=list, alias="filesChanged")
    improvements_made: list[str] = Field(default_factory=list, alias="improvementsMade")


class PRInfo(AgentOutput):
    number: int
    url: str = ""
    title: str = ""
    description: str = ""


class PRSplitResult(AgentOutput):
    summary: str
    parent_pr: PRInfo | None = Field(default=None, alias="parentPR")
    child_prs: list[PRInfo] = Field(default_factory=list, alias="childPRs")


# ---------------------------------------------------------------------------
# CI (ephemeral, never persisted on their own)
# ---------------------------------------------------------------------------


@dataclass
class CIResult:
    passed: bool = False
    status: str = "pending"
    failed_jobs: list[str] = field(default_factory=list)
    cancelled_jobs: list[str] = field(default_factory=list)
    output: str = ""

    @property
    def determinate(self) -> bool:
        return self.status in {"success", "failure"}


@dataclass(frozen=True)
class JobStatusCounts:
    passed: int = 0
    failed: int = 0
    cancelled: int = 0
    pending: int = 0

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.cancelled + self.pending


@dataclass(frozen=True)
class CIProgressEvent:
    type: str  # checking | status | waiting | retry
    message: str
    elapsed: float = 0.0
    next_check_in: float = 0.0
    jobs_passed: int = 0
    jobs_failed: int = 0
    jobs_cancelled: int = 0
    jobs_pending: int = 0
    retry_attempt: int = 0


DEFAULT_E2E_TEST_PATTERN = "e2e|E2E|integration|Integration"


@dataclass(frozen=True)
class CheckCIOptions:
    skip_e2e: bool = False
    e2e_test_pattern: str = DEFAULT_E2E_TEST_PATTERN
