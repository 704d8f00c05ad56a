from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from .models import DEFAULT_E2E_TEST_PATTERN

AGENT_BACKENDS = frozenset({"claude_cli", "deepagents"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    base_dir: str = ".claude/workflow"
    max_lines: int = 100
    max_files: int = 10
    planning_timeout: float = 3_600.0
    implementation_timeout: float = 21_600.0
    refactoring_timeout: float = 21_600.0
    pr_split_timeout: float = 3_600.0
    ci_check_interval: float = 30.0
    ci_command_timeout: float = 120.0
    ci_initial_delay: float = 60.0
    ci_wait_timeout: float = 1_800.0
    max_fix_attempts: int = 10
    recursion_limit: int = 1_000
    agent_backend: str = "claude_cli"
    claude_path: str = "claude"
    agent_model: str = "gpt-4o"
    skip_permissions: bool = False
    max_description_length: int = 32_768
    parse_errors_recoverable: bool = True
    e2e_test_pattern: str = DEFAULT_E2E_TEST_PATTERN

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            base_dir=os.getenv("WORKFLOW_BASE_DIR", ".claude/workflow"),
            max_lines=_get_env_int("WORKFLOW_MAX_LINES", default=100, minimum=1),
            max_files=_get_env_int("WORKFLOW_MAX_FILES", default=10, minimum=1),
            planning_timeout=_get_env_float("WORKFLOW_PLANNING_TIMEOUT", default=3_600.0, minimum=1.0),
            implementation_timeout=_get_env_float("WORKFLOW_IMPLEMENTATION_TIMEOUT", default=21_600.0, minimum=1.0),
            refactoring_timeout=_get_env_float("WORKFLOW_REFACTORING_TIMEOUT", default=21_600.0, minimum=1.0),
            pr_split_timeout=_get_env_float("WORKFLOW_PR_SPLIT_TIMEOUT", default=3_600.0, minimum=1.0),
            ci_check_interval=_get_env_float("WORKFLOW_CI_CHECK_INTERVAL", default=30.0, minimum=1.0),
            ci_command_timeout=_get_env_float("WORKFLOW_CI_COMMAND_TIMEOUT", default=120.0, minimum=1.0),
            ci_initial_delay=_get_env_float("WORKFLOW_CI_INITIAL_DELAY", default=60.0, minimum=0.0),
            ci_wait_timeout=_get_env_float("WORKFLOW_CI_WAIT_TIMEOUT", default=1_800.0, minimum=1.0),
            max_fix_attempts=_get_env_int("WORKFLOW_MAX_FIX_ATTEMPTS", default=10, minimum=1, maximum=100),
            recursion_limit=_get_env_int("WORKFLOW_RECURSION_LIMIT", default=1_000, minimum=25),
            agent_backend=os.getenv("WORKFLOW_AGENT_BACKEND", "claude_cli"),
            claude_path=os.getenv("WORKFLOW_CLAUDE_PATH", "claude"),
            agent_model=os.getenv("WORKFLOW_AGENT_MODEL", "gpt-4o"),
            skip_permissions=_get_env_bool("WORKFLOW_SKIP_PERMISSIONS", default=False),
            max_description_length=_get_env_int("WORKFLOW_MAX_DESCRIPTION_LENGTH", default=32_768, minimum=1),
            parse_errors_recoverable=_get_env_bool("WORKFLOW_PARSE_ERRORS_RECOVERABLE", default=True),
            e2e_test_pattern=os.getenv("WORKFLOW_E2E_TEST_PATTERN", DEFAULT_E2E_TEST_PATTERN),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.base_dir.strip():
            raise ValueError("WORKFLOW_BASE_DIR must be non-empty")

        agent_backend = self.agent_backend.strip().lower()
        if agent_backend not in AGENT_BACKENDS:
            raise ValueError("WORKFLOW_AGENT_BACKEND must be one of: claude_cli, deepagents")
        claude_path = self.claude_path.strip()
        if not claude_path:
            raise ValueError("WORKFLOW_CLAUDE_PATH must be non-empty")
        agent_model = self.agent_model.strip()
        if not agent_model:
            raise ValueError("WORKFLOW_AGENT_MODEL must be non-empty")

        # Command deadline must fit inside the overall CI wait.
        if self.ci_command_timeout > self.ci_wait_timeout:
            raise ValueError(
                f"WORKFLOW_CI_COMMAND_TIMEOUT ({self.ci_command_timeout:g}) must be <= "
                f"WORKFLOW_CI_WAIT_TIMEOUT ({self.ci_wait_timeout:g})"
            )
        return replace(self, agent_backend=agent_backend, claude_path=claude_path, agent_model=agent_model)

    def base_path(self, repo_root: Path | None = None) -> Path:
        path = Path(self.base_dir)
        if path.is_absolute():
            return path
        return (repo_root if repo_root is not None else Path.cwd()) / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 604_800.0) -> float:
    """Parse a duration in seconds; same contract as ``_get_env_int``."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number of seconds, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum:g}, got: {parsed:g}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum:g}, got: {parsed:g}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
