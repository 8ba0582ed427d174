"""
VersionStore — configuration backups, version history and checkpoints.

Layout under the backup directory (default ``.kaspa-backups/``)::

    <backup_id>/                 one directory per backup
        .env
        docker-compose.yml
        installation-state.json
        backup-metadata.json
    history.json                 saved configuration versions (bounded)
    .env.v-<ms>                  one copy per saved version
    checkpoints.json             installation checkpoints (bounded)
    cp-<ms>.json                 one file per checkpoint

Backups are never modified once written.  Retention is a FIFO by
count: the oldest backups are evicted once there are more than
``max_backups``.  Every restore can first snapshot the live files, so
a restore is itself undoable.  The state file of a completed
installation is never overwritten by a restore.
"""

from __future__ import annotations

import logging
import shutil
import threading
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from src.core.config.env_file import parse_env, read_env_file, render_env
from src.core.models.backup import BackedUpFile, BackupRecord, Checkpoint, HistoryEntry
from src.core.persistence.atomic import read_json, write_json_atomic, write_text_atomic
from src.core.persistence.state_file import DEFAULT_STATE_FILE

logger = logging.getLogger(__name__)

METADATA_FILE = "backup-metadata.json"
HISTORY_FILE = "history.json"
CHECKPOINT_FILE = "checkpoints.json"

STATE_BACKUP_NAME = DEFAULT_STATE_FILE


def backup_files(
    env_file: str = ".env",
    compose_file: str = "docker-compose.yml",
    state_dir: str = ".kaspa-aio",
) -> tuple[tuple[str, str], ...]:
    """(path relative to project root, name inside the backup directory) pairs."""
    return (
        (env_file, ".env"),
        (compose_file, "docker-compose.yml"),
        (f"{state_dir}/{DEFAULT_STATE_FILE}", STATE_BACKUP_NAME),
    )


DEFAULT_BACKUP_FILES = backup_files()


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _age(timestamp: str) -> str:
    """Human-readable age of an ISO timestamp."""
    try:
        then = datetime.fromisoformat(timestamp)
    except ValueError:
        return "unknown"
    minutes = int((datetime.now(UTC) - then).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes > 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    days = hours // 24
    return f"{days} day{'s' if days > 1 else ''} ago"


def _is_complete_state(path: Path) -> bool:
    data = read_json(path, {})
    return isinstance(data, dict) and data.get("phase") == "complete"


def diff_configs(old: dict[str, Any], new: dict[str, Any]) -> dict[str, list[dict[str, Any]]]:
    """Flat key/value diff: keys added, removed and changed from old to new."""
    return {
        "added": [{"key": k, "value": new[k]} for k in new if k not in old],
        "removed": [{"key": k, "value": old[k]} for k in old if k not in new],
        "changed": [
            {"key": k, "old_value": old[k], "new_value": new[k]}
            for k in old
            if k in new and old[k] != new[k]
        ],
    }


class VersionStore:
    """Backups, configuration history and installation checkpoints."""

    def __init__(
        self,
        project_root: Path,
        backup_dir: Path,
        *,
        files: tuple[tuple[str, str], ...] = DEFAULT_BACKUP_FILES,
        max_backups: int = 10,
        max_history: int = 50,
        max_checkpoints: int = 10,
    ) -> None:
        self.project_root = project_root
        self.backup_dir = backup_dir
        self.files = files
        self.max_backups = max_backups
        self.max_history = max_history
        self.max_checkpoints = max_checkpoints
        self._lock = threading.RLock()

    # ═══════════════════════════════════════════════════════════
    #  Backups
    # ═══════════════════════════════════════════════════════════

    def _new_backup_id(self) -> str:
        stamp = _now_ms()
        while (self.backup_dir / str(stamp)).exists():
            stamp += 1
        return str(stamp)

    def snapshot(self, reason: str = "Manual backup", metadata: dict[str, Any] | None = None) -> str:
        """Copy the live configuration files into a new backup.

        Returns:
            The new backup id.
        """
        backup_id = self._snapshot(reason, metadata or {})
        self.cleanup_oldest(self.max_backups)
        return backup_id

    def _snapshot(self, reason: str, metadata: dict[str, Any]) -> str:
        with self._lock:
            backup_id = self._new_backup_id()
            target = self.backup_dir / backup_id
            target.mkdir(parents=True)

            files: list[BackedUpFile] = []
            for rel, name in self.files:
                src = self.project_root / rel
                if not src.is_file():
                    continue
                try:
                    shutil.copy2(src, target / name)
                except OSError as e:
                    logger.warning("Could not back up %s: %s", rel, e)
                    continue
                files.append(BackedUpFile(file=name, size=src.stat().st_size, original_path=rel))

            record = BackupRecord(
                backup_id=backup_id,
                timestamp=_now_iso(),
                reason=reason,
                metadata=metadata,
                files=files,
                total_size=sum(f.size for f in files),
            )
            write_json_atomic(target / METADATA_FILE, record.model_dump(mode="json"))
            logger.info("Backup %s created (%d file(s)): %s", backup_id, len(files), reason)
            return backup_id

    def get(self, backup_id: str) -> BackupRecord | None:
        data = read_json(self.backup_dir / backup_id / METADATA_FILE)
        if data is None:
            return None
        try:
            return BackupRecord.model_validate(data)
        except ValueError as e:
            logger.warning("Invalid backup metadata for %s: %s", backup_id, e)
            return None

    def _all_backups(self) -> list[BackupRecord]:
        """Every readable backup, newest first."""
        if not self.backup_dir.is_dir():
            return []
        records = []
        for entry in self.backup_dir.iterdir():
            if entry.is_dir():
                record = self.get(entry.name)
                if record is not None:
                    records.append(record)
        records.sort(key=lambda r: (r.timestamp, int(r.backup_id) if r.backup_id.isdigit() else 0), reverse=True)
        return records

    def list(self, limit: int = 20) -> dict[str, Any]:
        records = self._all_backups()
        shown = records[:limit]
        return {
            "backups": [
                {**r.model_dump(mode="json"), "total_size_mb": r.total_size_mb, "age": _age(r.timestamp)}
                for r in shown
            ],
            "total": len(records),
            "showing": len(shown),
        }

    def restore(
        self,
        backup_id: str,
        *,
        backup_first: bool = True,
        files: list[str] | None = None,
    ) -> dict[str, Any]:
        """Overwrite the live configuration files from a backup.

        Args:
            backup_id: Backup to restore.
            backup_first: Snapshot the live files before overwriting them.
            files: Names inside the backup to restore (default: all).

        Returns:
            Result dict; ``requires_restart`` is always true on success.
        """
        with self._lock:
            source = self.backup_dir / backup_id
            if self.get(backup_id) is None:
                return {"success": False, "error": f"Backup {backup_id} not found"}

            pre_restore = None
            if backup_first:
                pre_restore = self._snapshot(
                    f"Pre-restore backup before restoring {backup_id}",
                    {"pre_restore": True, "restoring_from": backup_id},
                )

            restored: list[str] = []
            skipped: list[str] = []
            for rel, name in self.files:
                if files and name not in files:
                    continue
                src = source / name
                if not src.is_file():
                    continue
                dest = self.project_root / rel
                # A completed installation is never reopened by a restore
                if name == STATE_BACKUP_NAME and _is_complete_state(dest):
                    logger.info("Installation is complete; keeping live %s", rel)
                    skipped.append(rel)
                    continue
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dest)
                restored.append(rel)

            logger.info("Backup %s restored (%s)", backup_id, ", ".join(restored) or "no files")

        if pre_restore is not None:
            self.cleanup_oldest(self.max_backups, protect={backup_id})

        return {
            "success": True,
            "message": f"Backup {backup_id} restored successfully",
            "backup_id": backup_id,
            "restored_files": restored,
            "skipped_files": skipped,
            "pre_restore_backup": pre_restore,
            "requires_restart": True,
        }

    def delete(self, backup_id: str) -> dict[str, Any]:
        path = self.backup_dir / backup_id
        if not path.is_dir() or not backup_id:
            return {"success": False, "error": f"Backup {backup_id} not found"}
        shutil.rmtree(path)
        logger.info("Backup %s deleted", backup_id)
        return {"success": True, "backup_id": backup_id}

    def _backup_config(self, backup_id: str) -> dict[str, str]:
        return read_env_file(self.backup_dir / backup_id / ".env")

    def compare(self, id_a: str, id_b: str) -> dict[str, Any]:
        """Flat key/value diff of the ``.env`` captured in two backups."""
        for bid in (id_a, id_b):
            if self.get(bid) is None:
                return {"success": False, "error": f"Backup {bid} not found"}
        return {
            "success": True,
            "backup_a": id_a,
            "backup_b": id_b,
            "differences": diff_configs(self._backup_config(id_a), self._backup_config(id_b)),
        }

    def cleanup_oldest(self, keep: int | None = None, *, protect: set[str] | None = None) -> dict[str, Any]:
        """Delete the oldest backups so that at most ``keep`` remain."""
        keep = self.max_backups if keep is None else keep
        with self._lock:
            records = self._all_backups()
            if len(records) <= keep:
                return {"deleted": 0, "remaining": len(records)}
            candidates = [r for r in reversed(records) if r.backup_id not in (protect or set())]
            excess = len(records) - keep
            deleted = 0
            for record in candidates[:excess]:
                if self.delete(record.backup_id)["success"]:
                    deleted += 1
            return {"deleted": deleted, "remaining": len(records) - deleted}

    def cleanup_all(self) -> dict[str, Any]:
        """Remove every backup, history entry and checkpoint."""
        with self._lock:
            if not self.backup_dir.exists():
                return {"success": True, "message": "No backups to delete"}
            shutil.rmtree(self.backup_dir)
            return {"success": True, "message": "All backups deleted"}

    def storage_usage(self) -> dict[str, Any]:
        total = 0
        file_count = 0
        backup_count = 0
        if self.backup_dir.is_dir():
            for entry in self.backup_dir.iterdir():
                if entry.is_dir():
                    backup_count += 1
                for path in ([entry] if entry.is_file() else entry.rglob("*")):
                    if path.is_file():
                        total += path.stat().st_size
                        file_count += 1
        return {
            "total_size": total,
            "total_size_mb": f"{total / (1024 * 1024):.2f}",
            "file_count": file_count,
            "backup_count": backup_count,
            "backup_dir": str(self.backup_dir),
        }

    # ═══════════════════════════════════════════════════════════
    #  Configuration history
    # ═══════════════════════════════════════════════════════════

    def _load_history(self) -> list[HistoryEntry]:
        data = read_json(self.backup_dir / HISTORY_FILE, {"entries": []})
        try:
            return [HistoryEntry.model_validate(e) for e in data.get("entries", [])]
        except (ValueError, AttributeError) as e:
            logger.warning("Invalid configuration history, starting over: %s", e)
            return []

    def _save_history(self, entries: list[HistoryEntry]) -> None:
        write_json_atomic(
            self.backup_dir / HISTORY_FILE,
            {"entries": [e.model_dump(mode="json") for e in entries]},
        )

    def save_version(
        self,
        config: dict[str, Any],
        profiles: list[str],
        metadata: dict[str, Any] | None = None,
        *,
        env_path: Path | None = None,
    ) -> HistoryEntry:
        """Record a configuration version.

        Copies the live ``.env`` if there is one, otherwise renders
        ``config``.  The history keeps the newest ``max_history`` entries.
        """
        env_path = env_path or self.project_root / ".env"
        with self._lock:
            stamp = _now_ms()
            history = self._load_history()
            while any(e.version_id == f"v-{stamp}" for e in history):
                stamp += 1
            version_id = f"v-{stamp}"
            filename = f".env.{version_id}"

            content = env_path.read_text(encoding="utf-8") if env_path.is_file() else render_env(config, profiles)
            write_text_atomic(self.backup_dir / filename, content)

            meta = dict(metadata or {})
            meta.setdefault("action", "manual-save")
            meta["config_keys"] = sorted(config)
            entry = HistoryEntry(
                version_id=version_id,
                timestamp=_now_iso(),
                backup_filename=filename,
                profiles=list(profiles),
                metadata=meta,
            )
            history.insert(0, entry)
            for old in history[self.max_history:]:
                (self.backup_dir / old.backup_filename).unlink(missing_ok=True)
            self._save_history(history[:self.max_history])
            logger.info("Configuration version %s saved", version_id)
            return entry

    def history(self, limit: int = 20) -> list[dict[str, Any]]:
        return [
            {**e.model_dump(mode="json"), "age": _age(e.timestamp)}
            for e in self._load_history()[:limit]
        ]

    def _version_config(self, entry: HistoryEntry) -> dict[str, str]:
        path = self.backup_dir / entry.backup_filename
        return parse_env(path.read_text(encoding="utf-8")) if path.is_file() else {}

    def _find_version(self, version_id: str) -> HistoryEntry | None:
        return next((e for e in self._load_history() if e.version_id == version_id), None)

    def compare_versions(self, version_a: str, version_b: str) -> dict[str, Any]:
        a, b = self._find_version(version_a), self._find_version(version_b)
        if a is None or b is None:
            missing = version_a if a is None else version_b
            return {"success": False, "error": f"Version {missing} not found"}
        return {
            "success": True,
            "version_a": version_a,
            "version_b": version_b,
            "differences": diff_configs(self._version_config(a), self._version_config(b)),
        }

    def restore_version(self, version_id: str, *, backup_first: bool = True) -> dict[str, Any]:
        """Write a saved version back to the live ``.env``."""
        entry = self._find_version(version_id)
        if entry is None:
            return {"success": False, "error": f"Version {version_id} not found"}
        source = self.backup_dir / entry.backup_filename
        if not source.is_file():
            return {"success": False, "error": f"Version file {entry.backup_filename} is missing"}

        pre_restore = None
        if backup_first:
            pre_restore = self.snapshot(
                f"Pre-restore backup before restoring {version_id}",
                {"pre_restore": True, "restoring_from": version_id},
            )
        with self._lock:
            write_text_atomic(self.project_root / ".env", source.read_text(encoding="utf-8"))
        logger.info("Configuration version %s restored", version_id)
        return {
            "success": True,
            "version_id": version_id,
            "profiles": entry.profiles,
            "pre_restore_backup": pre_restore,
            "requires_restart": True,
        }

    # ═══════════════════════════════════════════════════════════
    #  Checkpoints
    # ═══════════════════════════════════════════════════════════

    def _load_checkpoint_index(self) -> list[dict[str, Any]]:
        data = read_json(self.backup_dir / CHECKPOINT_FILE, {"checkpoints": []})
        return list(data.get("checkpoints", [])) if isinstance(data, dict) else []

    def create_checkpoint(self, stage: str, data: dict[str, Any] | None = None) -> Checkpoint:
        """Record installation progress data at a named stage."""
        with self._lock:
            index = self._load_checkpoint_index()
            stamp = _now_ms()
            while any(c["checkpoint_id"] == f"cp-{stamp}" for c in index):
                stamp += 1
            checkpoint = Checkpoint(
                checkpoint_id=f"cp-{stamp}",
                stage=stage,
                timestamp=_now_iso(),
                data=data or {},
            )
            write_json_atomic(
                self.backup_dir / f"{checkpoint.checkpoint_id}.json",
                checkpoint.model_dump(mode="json"),
            )
            index.insert(0, {
                "checkpoint_id": checkpoint.checkpoint_id,
                "stage": stage,
                "timestamp": checkpoint.timestamp,
            })
            for old in index[self.max_checkpoints:]:
                (self.backup_dir / f"{old['checkpoint_id']}.json").unlink(missing_ok=True)
            write_json_atomic(self.backup_dir / CHECKPOINT_FILE, {"checkpoints": index[:self.max_checkpoints]})
            logger.info("Checkpoint %s created at stage '%s'", checkpoint.checkpoint_id, stage)
            return checkpoint

    def list_checkpoints(self) -> list[dict[str, Any]]:
        return [{**c, "age": _age(c.get("timestamp", ""))} for c in self._load_checkpoint_index()]

    def restore_checkpoint(self, checkpoint_id: str) -> dict[str, Any]:
        """Return the data saved with a checkpoint."""
        if not any(c["checkpoint_id"] == checkpoint_id for c in self._load_checkpoint_index()):
            return {"success": False, "error": f"Checkpoint {checkpoint_id} not found"}
        data = read_json(self.backup_dir / f"{checkpoint_id}.json")
        if data is None:
            return {"success": False, "error": f"Checkpoint {checkpoint_id} data is missing"}
        checkpoint = Checkpoint.model_validate(data)
        return {
            "success": True,
            "checkpoint_id": checkpoint.checkpoint_id,
            "stage": checkpoint.stage,
            "timestamp": checkpoint.timestamp,
            "data": checkpoint.data,
        }

    def delete_checkpoint(self, checkpoint_id: str) -> dict[str, Any]:
        with self._lock:
            index = self._load_checkpoint_index()
            remaining = [c for c in index if c["checkpoint_id"] != checkpoint_id]
            if len(remaining) == len(index):
                return {"success": False, "error": f"Checkpoint {checkpoint_id} not found"}
            (self.backup_dir / f"{checkpoint_id}.json").unlink(missing_ok=True)
            write_json_atomic(self.backup_dir / CHECKPOINT_FILE, {"checkpoints": remaining})
            return {"success": True, "checkpoint_id": checkpoint_id}

