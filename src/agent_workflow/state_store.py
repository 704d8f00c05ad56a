from __future__ import annotations

import fcntl
import json
import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any

from pydantic import BaseModel, ValidationError

from .errors import StateCorruptedError, StateLockedError, WorkflowExistsError, WorkflowNotFoundError
from .models import (
    PHASE_ORDER,
    Phase,
    PhaseState,
    PhaseStatus,
    Plan,
    WorkflowInfo,
    WorkflowState,
    WorkflowType,
)
from .utils import render_plan_markdown, validate_workflow_name

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
PLAN_FILE = "plan.json"
PLAN_MARKDOWN_FILE = "plan.md"
PHASES_DIR = "phases"
LOCK_FILE = ".lock"


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, fsyncs it, then renames
    (``os.replace``) into place so readers never observe a torn file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_text(path: Path, label: str) -> str:
    """Read a stored file, separating "missing" from "unreadable".

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


def derive_status(state: WorkflowState) -> str:
    if state.current_phase == Phase.COMPLETED:
        return "completed"
    if state.current_phase == Phase.FAILED or state.error is not None:
        return "failed"
    return "in_progress"


class WorkflowStateStore:
    """Filesystem store for workflow state, plans and phase outputs.

    Layout per workflow: ``<base>/<name>/{state.json, plan.json, plan.md,
    phases/<phase>.json, phases/<phase>_raw.txt, .lock}``.

    State writes are atomic and guarded by a non-blocking per-workflow lock.
    The lock has two layers: an in-process registry keyed by workflow name and
    an ``fcntl`` advisory lock on ``.lock`` that excludes other processes.
    Contention fails fast with ``StateLockedError`` instead of queuing.
    """

    def __init__(self, base_dir: Path, *, time_provider: Callable[[], datetime] | None = None) -> None:
        self.base_dir = Path(base_dir)
        self._now = time_provider or (lambda: datetime.now(UTC))
        self._locks: dict[str, IO[str]] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def workflow_dir(self, name: str) -> Path:
        validate_workflow_name(name)
        return self.base_dir / name

    def ensure_workflow_dir(self, name: str) -> Path:
        directory = self.workflow_dir(name)
        (directory / PHASES_DIR).mkdir(parents=True, exist_ok=True)
        return directory

    def state_path(self, name: str) -> Path:
        return self.workflow_dir(name) / STATE_FILE

    def phase_output_path(self, name: str, phase: Phase) -> Path:
        return self.workflow_dir(name) / PHASES_DIR / f"{phase.value}.json"

    def raw_output_path(self, name: str, phase: Phase) -> Path:
        return self.workflow_dir(name) / PHASES_DIR / f"{phase.value}_raw.txt"

    def workflow_exists(self, name: str) -> bool:
        return self.state_path(name).is_file()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def acquire_lock(self, name: str) -> None:
        """Take the workflow lock or raise ``StateLockedError`` immediately."""
        lock_path = self.ensure_workflow_dir(name) / LOCK_FILE
        with self._locks_guard:
            if name in self._locks:
                raise StateLockedError(f"workflow {name!r} is locked by another operation")
            handle = lock_path.open("a+", encoding="utf-8")
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                handle.close()
                raise StateLockedError(f"workflow {name!r} is locked by another process") from exc
            except BaseException:
                handle.close()
                raise
            self._locks[name] = handle

    def release_lock(self, name: str) -> None:
        with self._locks_guard:
            handle = self._locks.pop(name, None)
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def is_locked(self, name: str) -> bool:
        with self._locks_guard:
            return name in self._locks

    @contextmanager
    def locked(self, name: str) -> Iterator[None]:
        self.acquire_lock(name)
        try:
            yield
        finally:
            self.release_lock(name)

    # ------------------------------------------------------------------
    # Workflow state
    # ------------------------------------------------------------------

    def save_state(self, state: WorkflowState) -> None:
        """Stamp ``updated_at`` and persist the state under the workflow lock."""
        self.ensure_workflow_dir(state.name)
        with self.locked(state.name):
            state.updated_at = self._now()
            _atomic_write_text(self.state_path(state.name), state.model_dump_json(indent=2))
        logger.debug("Saved state for workflow %s (phase=%s)", state.name, state.current_phase.value)

    def load_state(self, name: str) -> WorkflowState:
        path = self.state_path(name)
        if not path.is_file():
            raise WorkflowNotFoundError(f"workflow not found: {name}")
        try:
            text = _safe_read_text(path, "workflow state")
            return WorkflowState.model_validate_json(text)
        except (ValueError, ValidationError) as exc:
            raise StateCorruptedError(f"workflow state at {path} is corrupted: {exc}") from exc

    def init_state(self, name: str, description: str, wf_type: WorkflowType) -> WorkflowState:
        """Create a fresh workflow in Planning/InProgress and persist it."""
        if self.workflow_exists(name):
            raise WorkflowExistsError(f"workflow already exists: {name}")
        now = self._now()
        phases = {phase: PhaseState() for phase in PHASE_ORDER}
        phases[Phase.PLANNING].status = PhaseStatus.IN_PROGRESS
        state = WorkflowState(
            name=name,
            type=wf_type,
            description=description,
            current_phase=Phase.PLANNING,
            phases=phases,
            created_at=now,
            updated_at=now,
        )
        self.save_state(state)
        return state

    def list_workflows(self) -> list[WorkflowInfo]:
        if not self.base_dir.is_dir():
            return []
        infos: list[WorkflowInfo] = []
        for entry in sorted(self.base_dir.iterdir()):
            if not entry.is_dir() or not (entry / STATE_FILE).is_file():
                continue
            try:
                state = self.load_state(entry.name)
            except (ValueError, WorkflowNotFoundError) as exc:
                logger.warning("Skipping unreadable workflow %s: %s", entry.name, exc)
                continue
            infos.append(
                WorkflowInfo(
                    name=state.name,
                    type=state.type,
                    current_phase=state.current_phase,
                    created_at=state.created_at,
                    updated_at=state.updated_at,
                    status=derive_status(state),
                )
            )
        return infos

    def delete_workflow(self, name: str) -> None:
        directory = self.workflow_dir(name)
        if not directory.is_dir():
            raise WorkflowNotFoundError(f"workflow not found: {name}")
        with self.locked(name):
            shutil.rmtree(directory)
        logger.info("Deleted workflow %s", name)

    # ------------------------------------------------------------------
    # Plan and phase outputs
    # ------------------------------------------------------------------

    def save_plan(self, name: str, plan: Plan) -> None:
        directory = self.ensure_workflow_dir(name)
        _atomic_write_text(directory / PLAN_FILE, plan.model_dump_json(indent=2, by_alias=True))
        _atomic_write_text(directory / PLAN_MARKDOWN_FILE, render_plan_markdown(plan))

    def load_plan(self, name: str) -> Plan:
        path = self.workflow_dir(name) / PLAN_FILE
        text = _safe_read_text(path, "plan")
        try:
            return Plan.model_validate_json(text)
        except ValidationError as exc:
            raise StateCorruptedError(f"plan at {path} failed validation: {exc}") from exc

    def save_phase_output(self, name: str, phase: Phase, output: BaseModel | dict[str, Any]) -> Path:
        self.ensure_workflow_dir(name)
        path = self.phase_output_path(name, phase)
        if isinstance(output, BaseModel):
            content = output.model_dump_json(indent=2, by_alias=True)
        else:
            content = json.dumps(output, indent=2, sort_keys=True, default=str)
        _atomic_write_text(path, content)
        return path

    def load_phase_output(self, name: str, phase: Phase) -> dict[str, Any]:
        path = self.phase_output_path(name, phase)
        text = _safe_read_text(path, f"{phase.value} output")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StateCorruptedError(f"{phase.value} output at {path} is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise StateCorruptedError(f"{phase.value} output at {path} must be a JSON object")
        return payload

    def save_raw_output(self, name: str, phase: Phase, raw: str) -> Path:
        self.ensure_workflow_dir(name)
        path = self.raw_output_path(name, phase)
        _atomic_write_text(path, raw)
        return path
