"""
Backup, history and checkpoint records.

Backups are immutable once written: one directory per backup holding
copies of the live configuration files plus ``backup-metadata.json``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class BackedUpFile(BaseModel):
    file: str
    size: int
    original_path: str


class BackupRecord(BaseModel):
    """Contents of ``backup-metadata.json``."""

    backup_id: str
    timestamp: str
    reason: str = "Manual backup"
    metadata: dict[str, Any] = Field(default_factory=dict)
    files: list[BackedUpFile] = Field(default_factory=list)
    total_size: int = 0

    @property
    def total_size_mb(self) -> str:
        return f"{self.total_size / (1024 * 1024):.2f}"


class HistoryEntry(BaseModel):
    """One saved configuration version."""

    version_id: str
    timestamp: str
    backup_filename: str
    profiles: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Checkpoint(BaseModel):
    """Short-lived snapshot of installation progress data."""

    checkpoint_id: str
    stage: str
    timestamp: str
    data: dict[str, Any] = Field(default_factory=dict)
