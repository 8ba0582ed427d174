"""
WizardStateStore — single-writer persistence for the installation state.

State is stored as JSON in ``.kaspa-aio/installation-state.json``.
Writes are atomic (write to temp file, then rename) and every
read-modify-write goes through one lock, so a mutation is always
observed by the next reader in this process.

After each save a timestamped copy is written to ``state-snapshots/``;
the ring keeps the newest ``max_snapshots`` copies for history browsing.

A missing file yields a fresh state.  A corrupt file also yields a
fresh state, with a warning: history before the corruption is lost.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from src.core.errors import ValidationError
from src.core.models.wizard_state import (
    Decision,
    Phase,
    ServiceStatus,
    SyncOperation,
    WizardState,
    _now_iso,
)
from src.core.persistence.atomic import write_json_atomic

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = "installation-state.json"
SNAPSHOT_DIR = "state-snapshots"


class WizardStateStore:
    """Lock-guarded owner of the installation state file."""

    def __init__(self, state_dir: Path, *, max_snapshots: int = 10) -> None:
        self.state_dir = state_dir
        self.path = state_dir / DEFAULT_STATE_FILE
        self.snapshot_dir = state_dir / SNAPSHOT_DIR
        self.max_snapshots = max_snapshots
        self._lock = threading.RLock()
        self.last_load_corrupt = False

    # ── Load / save ─────────────────────────────────────────────

    def load(self) -> WizardState:
        """Load the state, falling back to a fresh one if missing or corrupt."""
        with self._lock:
            self.last_load_corrupt = False
            if not self.path.is_file():
                logger.debug("No state file at %s — starting fresh", self.path)
                return WizardState()

            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                state = WizardState.model_validate(data)
                logger.debug("Loaded state from %s (phase=%s)", self.path, state.phase)
                return state
            except (json.JSONDecodeError, PydanticValidationError, OSError) as e:
                self.last_load_corrupt = True
                logger.warning(
                    "Corrupt state file %s: %s — starting fresh, earlier history is lost",
                    self.path, e,
                )
                return WizardState()

    def exists(self) -> bool:
        return self.path.is_file()

    def save(self, state: WizardState) -> None:
        """Persist the state atomically and record a snapshot."""
        with self._lock:
            state.touch()
            data = state.model_dump(mode="json")
            try:
                write_json_atomic(self.path, data, prefix=".state_")
            except OSError as e:
                logger.error("Failed to save state to %s: %s", self.path, e)
                raise
            logger.debug("State saved to %s", self.path)
            self._snapshot(data)

    def update(self, mutate: Callable[[WizardState], Any]) -> WizardState:
        """Read-modify-write under the store lock.

        ``mutate`` receives the current state and changes it in place.
        """
        with self._lock:
            state = self.load()
            mutate(state)
            self.save(state)
            return state

    def reset(self) -> WizardState:
        """Discard the current state and start a fresh one."""
        with self._lock:
            self.path.unlink(missing_ok=True)
            state = WizardState()
            self.save(state)
            logger.info("Installation state reset (%s)", state.installation_id)
            return state

    # ── Snapshots ───────────────────────────────────────────────

    def _snapshot(self, data: dict[str, Any]) -> None:
        if self.max_snapshots <= 0:
            return
        stamp = time.time_ns() // 1000
        target = self.snapshot_dir / f"state-{stamp}.json"
        try:
            write_json_atomic(target, data, prefix=".snap_")
            for old in self._snapshot_files()[self.max_snapshots:]:
                old.unlink(missing_ok=True)
        except OSError as e:
            # Snapshots are history only; never fail the save for them
            logger.warning("Cannot write state snapshot %s: %s", target, e)

    def _snapshot_files(self) -> list[Path]:
        """Snapshot files, newest first."""
        if not self.snapshot_dir.is_dir():
            return []
        return sorted(self.snapshot_dir.glob("state-*.json"), reverse=True)

    def history(self, limit: int = 10) -> list[dict[str, Any]]:
        """Summaries of the newest snapshots."""
        out = []
        for path in self._snapshot_files()[:limit]:
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Skipping unreadable snapshot %s: %s", path, e)
                continue
            out.append({
                "file": path.name,
                "phase": data.get("phase"),
                "current_step": data.get("current_step"),
                "last_activity": data.get("last_activity"),
            })
        return out

    # ── Queries ─────────────────────────────────────────────────

    def can_resume(self, max_age: timedelta = timedelta(hours=24)) -> dict[str, Any]:
        """Whether an interrupted installation can be resumed."""
        if not self.exists():
            return {"can_resume": False, "reason": "No installation in progress"}
        state = self.load()
        if state.is_complete:
            return {"can_resume": False, "reason": "Installation already complete"}
        if not state.resumable:
            return {"can_resume": False, "reason": "Installation is not resumable"}
        try:
            last = datetime.fromisoformat(state.last_activity)
        except ValueError:
            return {"can_resume": False, "reason": "Unknown last activity"}
        age = datetime.now(UTC) - last
        if age > max_age:
            return {"can_resume": False, "reason": "Installation state is too old", "age_s": age.total_seconds()}
        return {
            "can_resume": True,
            "resume_point": state.resume_point,
            "phase": state.phase.value,
            "current_step": state.current_step,
            "age_s": age.total_seconds(),
        }

    def summary(self) -> dict[str, Any]:
        state = self.load()
        return {
            "installation_id": state.installation_id,
            "phase": state.phase.value,
            "current_step": state.current_step,
            "completed_steps": len(state.completed_steps),
            "profiles": list(state.profiles.selected),
            "services": {s.name: s.status for s in state.services},
            "active_tasks": list(state.background_tasks),
            "sync_operations": [
                {"id": op.id, "status": op.status, "progress": op.progress}
                for op in state.sync_operations
            ],
            "decisions": len(state.user_decisions),
            "resumable": state.resumable,
            "started_at": state.started_at,
            "completed_at": state.completed_at,
        }

    # ── Mutators ────────────────────────────────────────────────

    def update_step(self, step: int, *, completed: bool = True, resume_point: str | None = None) -> WizardState:
        def _apply(state: WizardState) -> None:
            if completed and state.current_step not in state.completed_steps:
                state.completed_steps.append(state.current_step)
            state.current_step = step
            if resume_point:
                state.resume_point = resume_point
        return self.update(_apply)

    def update_phase(self, phase: Phase | str) -> WizardState:
        """Move to a new phase.  ``complete`` is terminal."""
        phase = Phase(phase)

        def _apply(state: WizardState) -> None:
            if state.is_complete and phase != Phase.COMPLETE:
                raise ValidationError(
                    f"Installation is complete; cannot move to phase '{phase}'",
                    stage="state",
                )
            if state.phase != phase:
                logger.info("Installation phase: %s → %s", state.phase, phase)
            state.phase = phase
            if phase == Phase.COMPLETE:
                state.resumable = False
                state.completed_at = state.completed_at or _now_iso()
        return self.update(_apply)

    def mark_complete(self) -> WizardState:
        return self.update_phase(Phase.COMPLETE)

    def update_profiles(self, selected: list[str], configuration: dict[str, Any] | None = None) -> WizardState:
        def _apply(state: WizardState) -> None:
            state.profiles.selected = list(selected)
            if configuration is not None:
                state.profiles.configuration = dict(configuration)
        return self.update(_apply)

    def update_service_status(self, name: str, status: str, message: str = "") -> WizardState:
        def _apply(state: WizardState) -> None:
            svc = state.get_service(name)
            if svc is None:
                state.services.append(ServiceStatus(name=name, status=status, message=message))
            else:
                svc.status = status
                svc.message = message
                svc.updated_at = _now_iso()
        return self.update(_apply)

    def add_sync_operation(self, op: SyncOperation) -> WizardState:
        def _apply(state: WizardState) -> None:
            state.sync_operations = [o for o in state.sync_operations if o.id != op.id]
            state.sync_operations.append(op)
        return self.update(_apply)

    def update_sync_operation(self, op_id: str, **changes: Any) -> WizardState:
        """Apply field changes to one sync operation (unknown ids are ignored)."""
        def _apply(state: WizardState) -> None:
            op = state.get_sync_operation(op_id)
            if op is None:
                logger.debug("Sync operation %s not in state; update skipped", op_id)
                return
            for key, value in changes.items():
                setattr(op, key, value)
            op.updated_at = _now_iso()
        return self.update(_apply)

    def record_decision(self, decision: str, context: dict[str, Any] | None = None) -> WizardState:
        def _apply(state: WizardState) -> None:
            state.user_decisions.append(Decision(decision=decision, context=context or {}))
        return self.update(_apply)

    def add_background_task(self, op: SyncOperation) -> WizardState:
        """Reference an active task and record its sync operation."""
        def _apply(state: WizardState) -> None:
            if op.id not in state.background_tasks:
                state.background_tasks.append(op.id)
            state.sync_operations = [o for o in state.sync_operations if o.id != op.id]
            state.sync_operations.append(op)
        return self.update(_apply)

    def remove_background_task(self, task_id: str) -> WizardState:
        def _apply(state: WizardState) -> None:
            state.background_tasks = [t for t in state.background_tasks if t != task_id]
        return self.update(_apply)
