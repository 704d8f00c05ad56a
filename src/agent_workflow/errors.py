from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Phase


class WorkflowValidationError(ValueError):
    """Invalid caller input. Never persisted and never recoverable."""


class InvalidWorkflowNameError(WorkflowValidationError):
    pass


class InvalidWorkflowTypeError(WorkflowValidationError):
    pass


class InvalidDescriptionError(WorkflowValidationError):
    pass


class WorkflowExistsError(RuntimeError):
    pass


class WorkflowNotFoundError(FileNotFoundError):
    pass


class StateCorruptedError(ValueError):
    """The state file exists but cannot be decoded into a WorkflowState."""


class StateLockedError(RuntimeError):
    """Another holder owns the workflow lock. Safe to retry later."""


class InvalidPhaseError(ValueError):
    pass


class ResumeRejectedError(RuntimeError):
    """The workflow is completed or failed in a way that cannot be resumed."""


class MissingMetricsError(ValueError):
    pass


class AgentError(RuntimeError):
    pass


class AgentTimeoutError(AgentError, TimeoutError):
    pass


class AgentNotFoundError(AgentError):
    pass


class AgentExecutionError(AgentError):
    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class OutputParseError(ValueError):
    """Agent output could not be turned into the expected structure."""


class UserCancelledError(RuntimeError):
    def __init__(self, message: str = "workflow cancelled by user") -> None:
        super().__init__(message)


class ConfirmationError(RuntimeError):
    pass


class PullRequestMissingError(RuntimeError):
    pass


class FixAttemptsExceededError(RuntimeError):
    pass


class PromptGenerationError(ValueError):
    pass


class WorktreeError(RuntimeError):
    pass


class CommandError(RuntimeError):
    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class CICheckTimeoutError(TimeoutError):
    """A single CI status query exceeded its deadline."""

    def __init__(self, message: str = "CI check command timed out") -> None:
        super().__init__(message)


class CIWaitTimeoutError(TimeoutError):
    """The overall wait for a determinate CI result exceeded its deadline."""


class CICommandError(RuntimeError):
    pass


class WorkflowFailedError(RuntimeError):
    """Raised once a phase failure has been recorded on the workflow state."""

    def __init__(self, message: str, *, phase: Phase, recoverable: bool) -> None:
        super().__init__(message)
        self.phase = phase
        self.recoverable = recoverable


_TIMEOUT_MARKERS = ("timeout", "timed out")
_AGENT_FAILURE_MARKERS = ("agent execution failed",)
_PARSE_MARKERS = ("failed to parse", "failed to extract json", "no json", "no valid json", "text-only response")


def _error_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def _headline(exc: BaseException) -> str:
    text = str(exc).strip()
    return text.splitlines()[0] if text else ""


def is_recoverable_error(exc: BaseException | None, *, parse_errors_recoverable: bool = True) -> bool:
    """Decide whether a failed phase may be resumed.

    Classification walks the exception and its causes. User cancellation and
    validation errors are final; timeouts and agent execution failures are
    transient. Agent-output parse failures follow ``parse_errors_recoverable``.
    """
    if exc is None:
        return False

    chain = _error_chain(exc)
    if any(isinstance(item, (UserCancelledError, WorkflowValidationError)) for item in chain):
        return False
    if any(isinstance(item, OutputParseError) for item in chain):
        return parse_errors_recoverable

    # Only headline lines; parse errors append a preview of agent output below.
    message = " | ".join(_headline(item) for item in chain).lower()
    if any(isinstance(item, TimeoutError) for item in chain) or any(marker in message for marker in _TIMEOUT_MARKERS):
        return True
    if any(isinstance(item, AgentExecutionError) for item in chain) or any(
        marker in message for marker in _AGENT_FAILURE_MARKERS
    ):
        return True
    if any(marker in message for marker in _PARSE_MARKERS):
        return parse_errors_recoverable
    if "invalid" in message:
        return False
    return True
