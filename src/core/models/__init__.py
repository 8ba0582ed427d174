"""
Domain models — Pydantic types for the orchestrator.

All models are re-exported here for convenient access:

    from src.core.models import WizardState, ValidationResult, BackupRecord
"""

from src.core.models.backup import BackedUpFile, BackupRecord, Checkpoint, HistoryEntry
from src.core.models.settings import OrchestratorSettings
from src.core.models.validation import ValidationIssue, ValidationResult
from src.core.models.wizard_state import (
    Decision,
    Phase,
    ProfileSelection,
    ServiceStatus,
    SyncOperation,
    WizardState,
)

__all__ = [
    # backup.py
    "BackedUpFile",
    "BackupRecord",
    "Checkpoint",
    "HistoryEntry",
    # settings.py
    "OrchestratorSettings",
    # validation.py
    "ValidationIssue",
    "ValidationResult",
    # wizard_state.py
    "Decision",
    "Phase",
    "ProfileSelection",
    "ServiceStatus",
    "SyncOperation",
    "WizardState",
]
