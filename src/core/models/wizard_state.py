"""
WizardState — the installation progress record.

One document per installation, serialized to
``.kaspa-aio/installation-state.json``.  Every component that changes
progress mutates it through ``WizardStateStore``.  Once the phase
reaches ``complete`` the record is retired: ``resumable`` is false and
the phase can no longer change.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


def _installation_id() -> str:
    return f"install-{int(time.time() * 1000)}"


class Phase(StrEnum):
    PREPARING = "preparing"
    BUILDING = "building"
    STARTING = "starting"
    SYNCING = "syncing"
    VALIDATING = "validating"
    COMPLETE = "complete"


def _default_configuration() -> dict[str, Any]:
    return {
        "KASPA_NODE_RPC_PORT": 16110,
        "KASPA_NODE_P2P_PORT": 16111,
        "KASPA_NETWORK": "mainnet",
        "KASPA_DATA_DIR": "/data/kaspa",
        "KASPA_ARCHIVE_DATA_DIR": "/data/kaspa-archive",
        "PUBLIC_NODE": False,
        "EXTERNAL_IP": "",
    }


class ProfileSelection(BaseModel):
    """Selected profiles and the configuration resolved for them."""

    selected: list[str] = Field(default_factory=list)
    configuration: dict[str, Any] = Field(default_factory=_default_configuration)


class ServiceStatus(BaseModel):
    """Last known state of one service."""

    name: str
    status: str = "pending"  # pending, running, stopped, failed
    message: str = ""
    updated_at: str = Field(default_factory=_now_iso)


class SyncOperation(BaseModel):
    """A long-running background operation as recorded in the state file."""

    id: str
    type: str
    service: str
    status: str = "pending"  # pending, in-progress, complete, error, cancelled
    progress: float = 0.0
    started_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)
    completed_at: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    auto_switch: bool = False


class Decision(BaseModel):
    """An entry in the decision log."""

    timestamp: str = Field(default_factory=_now_iso)
    decision: str
    context: dict[str, Any] = Field(default_factory=dict)


class WizardState(BaseModel):
    """Root installation state document."""

    installation_id: str = Field(default_factory=_installation_id)
    version: str = "1.0.0"
    started_at: str = Field(default_factory=_now_iso)
    last_activity: str = Field(default_factory=_now_iso)
    completed_at: str | None = None

    current_step: int = 0
    completed_steps: list[int] = Field(default_factory=list)
    phase: Phase = Phase.PREPARING

    profiles: ProfileSelection = Field(default_factory=ProfileSelection)
    services: list[ServiceStatus] = Field(default_factory=list)
    sync_operations: list[SyncOperation] = Field(default_factory=list)
    user_decisions: list[Decision] = Field(default_factory=list)
    background_tasks: list[str] = Field(default_factory=list)

    resumable: bool = True
    resume_point: str = "welcome"

    def touch(self) -> None:
        """Update the last_activity timestamp."""
        self.last_activity = _now_iso()

    @property
    def is_complete(self) -> bool:
        return self.phase == Phase.COMPLETE

    def get_sync_operation(self, op_id: str) -> SyncOperation | None:
        for op in self.sync_operations:
            if op.id == op_id:
                return op
        return None

    def get_service(self, name: str) -> ServiceStatus | None:
        for svc in self.services:
            if svc.name == name:
                return svc
        return None
