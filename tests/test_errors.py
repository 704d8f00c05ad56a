from __future__ import annotations

import pytest

from agent_workflow.errors import (
    AgentExecutionError,
    AgentTimeoutError,
    CICheckTimeoutError,
    CIWaitTimeoutError,
    InvalidWorkflowNameError,
    MissingMetricsError,
    OutputParseError,
    UserCancelledError,
    WorktreeError,
    is_recoverable_error,
)
from agent_workflow.parser import OutputParser


def chained(outer: Exception, cause: Exception) -> Exception:
    try:
        try:
            raise cause
        except Exception as exc:
            raise outer from exc
    except Exception as exc:
        return exc


@pytest.mark.parametrize(
    "exc",
    [
        AgentTimeoutError("agent execution timeout after 60s"),
        CICheckTimeoutError(),
        CIWaitTimeoutError("CI check timeout after 1800s"),
        AgentExecutionError("agent execution failed with exit code 1 (see stderr)", exit_code=1),
        RuntimeError("connection reset by peer"),
        WorktreeError("failed to create worktree at /tmp/x: fatal"),
    ],
)
def test_transient_failures_are_recoverable(exc: Exception) -> None:
    assert is_recoverable_error(exc) is True


@pytest.mark.parametrize(
    "exc",
    [
        UserCancelledError(),
        InvalidWorkflowNameError("invalid workflow name: name cannot be empty"),
        MissingMetricsError("invalid workflow state: PR metrics not available"),
        ValueError("invalid phase: unknown"),
    ],
)
def test_final_failures_are_not_recoverable(exc: Exception) -> None:
    assert is_recoverable_error(exc) is False


def test_parse_failures_follow_setting() -> None:
    exc = OutputParseError("failed to parse plan: Invalid JSON")
    assert is_recoverable_error(exc, parse_errors_recoverable=True) is True
    assert is_recoverable_error(exc, parse_errors_recoverable=False) is False


def test_cause_chain_is_inspected() -> None:
    wrapped = chained(RuntimeError("implementation phase failed"), TimeoutError("deadline exceeded"))
    assert is_recoverable_error(wrapped) is True

    cancelled = chained(RuntimeError("confirmation phase failed"), UserCancelledError())
    assert is_recoverable_error(cancelled) is False


def test_none_is_not_recoverable() -> None:
    assert is_recoverable_error(None) is False


def test_agent_execution_error_keeps_details() -> None:
    exc = AgentExecutionError("agent execution failed", exit_code=2, stderr="boom")
    assert exc.exit_code == 2
    assert exc.stderr == "boom"
    assert str(UserCancelledError()) == "workflow cancelled by user"


def test_parse_setting_wins_over_timeout_words_in_agent_output() -> None:
    reply = "I tried to run the tests but the request timed out.\n\n# Notes\nDone."
    with pytest.raises(OutputParseError) as excinfo:
        OutputParser().extract_json(reply)

    assert is_recoverable_error(excinfo.value, parse_errors_recoverable=False) is False
    assert is_recoverable_error(excinfo.value, parse_errors_recoverable=True) is True

    wrapped = chained(RuntimeError("planning phase failed"), excinfo.value)
    assert is_recoverable_error(wrapped, parse_errors_recoverable=False) is False


def test_only_first_line_of_a_message_is_classified() -> None:
    exc = RuntimeError("invalid workflow state\ncommand output: connection timed out")
    assert is_recoverable_error(exc) is False
