from __future__ import annotations

from pathlib import Path

import pytest

from agent_workflow.models import DEFAULT_E2E_TEST_PATTERN
from agent_workflow.settings import RuntimeSettings


def test_defaults_without_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("WORKFLOW_MAX_LINES", "WORKFLOW_AGENT_BACKEND", "WORKFLOW_CI_WAIT_TIMEOUT", "WORKFLOW_BASE_DIR"):
        monkeypatch.delenv(name, raising=False)
    settings = RuntimeSettings.from_env()
    assert settings.base_dir == ".claude/workflow"
    assert settings.max_lines == 100
    assert settings.max_files == 10
    assert settings.ci_check_interval == 30.0
    assert settings.agent_backend == "claude_cli"
    assert settings.e2e_test_pattern == DEFAULT_E2E_TEST_PATTERN


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKFLOW_MAX_LINES", "250")
    monkeypatch.setenv("WORKFLOW_CI_INITIAL_DELAY", "0")
    monkeypatch.setenv("WORKFLOW_AGENT_BACKEND", " DeepAgents ")
    monkeypatch.setenv("WORKFLOW_SKIP_PERMISSIONS", "yes")
    monkeypatch.setenv("WORKFLOW_PARSE_ERRORS_RECOVERABLE", "false")

    settings = RuntimeSettings.from_env()

    assert settings.max_lines == 250
    assert settings.ci_initial_delay == 0.0
    assert settings.agent_backend == "deepagents"
    assert settings.skip_permissions is True
    assert settings.parse_errors_recoverable is False


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("WORKFLOW_MAX_LINES", "lots"),
        ("WORKFLOW_MAX_FILES", "0"),
        ("WORKFLOW_MAX_FIX_ATTEMPTS", "101"),
        ("WORKFLOW_CI_CHECK_INTERVAL", "soon"),
        ("WORKFLOW_SKIP_PERMISSIONS", "maybe"),
        ("WORKFLOW_AGENT_BACKEND", "copilot"),
        ("WORKFLOW_BASE_DIR", "  "),
    ],
)
def test_invalid_environment_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_command_timeout_must_fit_inside_wait_timeout() -> None:
    with pytest.raises(ValueError, match="WORKFLOW_CI_COMMAND_TIMEOUT"):
        RuntimeSettings(ci_command_timeout=600, ci_wait_timeout=300).normalized()


def test_base_path_is_relative_to_repo_root(tmp_path: Path) -> None:
    assert RuntimeSettings().base_path(tmp_path) == tmp_path / ".claude" / "workflow"
    absolute = tmp_path / "elsewhere"
    assert RuntimeSettings(base_dir=str(absolute)).base_path(tmp_path) == absolute
