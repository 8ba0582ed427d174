"""
Tests for VersionStore — backups, configuration history, checkpoints.
"""

from pathlib import Path

import pytest

from src.core.context import AppContext
from src.core.models.settings import OrchestratorSettings
from src.core.persistence.state_file import WizardStateStore
from src.core.persistence.version_store import VersionStore, backup_files, diff_configs


@pytest.fixture
def root(tmp_path: Path) -> Path:
    project = tmp_path / "install"
    project.mkdir()
    (project / ".env").write_text("KASPA_NETWORK=mainnet\nKASPA_NODE_RPC_PORT=16110\n")
    (project / "docker-compose.yml").write_text("services:\n  kaspa-node: {}\n")
    return project


@pytest.fixture
def versions(root: Path) -> VersionStore:
    return VersionStore(root, root / ".kaspa-backups", max_backups=3, max_history=3, max_checkpoints=2)


class TestBackups:
    """Tests for snapshot, list, restore and retention."""

    def test_snapshot_copies_existing_files(self, versions: VersionStore):
        backup_id = versions.snapshot("first", {"who": "test"})
        record = versions.get(backup_id)
        assert record.reason == "first"
        assert record.metadata == {"who": "test"}
        # The state file does not exist yet and is skipped
        assert [f.file for f in record.files] == [".env", "docker-compose.yml"]
        assert record.total_size == sum(f.size for f in record.files)

    def test_restore_is_byte_equal(self, root: Path, versions: VersionStore):
        original = (root / ".env").read_bytes()
        backup_id = versions.snapshot("before edit")
        (root / ".env").write_text("KASPA_NETWORK=testnet\n")

        result = versions.restore(backup_id)
        assert result["success"]
        assert result["requires_restart"]
        assert ".env" in result["restored_files"]
        assert (root / ".env").read_bytes() == original

    def test_restore_snapshots_live_files_first(self, root: Path, versions: VersionStore):
        backup_id = versions.snapshot("before edit")
        (root / ".env").write_text("KASPA_NETWORK=testnet\n")

        result = versions.restore(backup_id)
        pre = versions.get(result["pre_restore_backup"])
        assert pre.metadata["pre_restore"] is True
        assert pre.metadata["restoring_from"] == backup_id

        # The restore itself is undoable
        versions.restore(pre.backup_id, backup_first=False)
        assert (root / ".env").read_text() == "KASPA_NETWORK=testnet\n"

    def test_restore_without_backup_first(self, versions: VersionStore):
        backup_id = versions.snapshot()
        result = versions.restore(backup_id, backup_first=False)
        assert result["pre_restore_backup"] is None
        assert versions.list()["total"] == 1

    def test_restore_selected_files(self, root: Path, versions: VersionStore):
        backup_id = versions.snapshot()
        result = versions.restore(backup_id, backup_first=False, files=["docker-compose.yml"])
        assert result["restored_files"] == ["docker-compose.yml"]

    def test_restore_unknown(self, versions: VersionStore):
        result = versions.restore("12345")
        assert not result["success"]
        assert "not found" in result["error"]

    def test_ring_evicts_oldest(self, versions: VersionStore):
        ids = [versions.snapshot(f"backup {i}") for i in range(5)]
        listing = versions.list()
        assert listing["total"] == 3
        assert [b["backup_id"] for b in listing["backups"]] == list(reversed(ids[2:]))
        assert versions.get(ids[0]) is None

    def test_restore_protects_source_from_eviction(self, versions: VersionStore):
        ids = [versions.snapshot(f"backup {i}") for i in range(3)]
        result = versions.restore(ids[0])
        assert result["success"]
        assert versions.get(ids[0]) is not None
        assert versions.list()["total"] == 3

    def test_list_limit(self, versions: VersionStore):
        for i in range(3):
            versions.snapshot(f"backup {i}")
        listing = versions.list(limit=2)
        assert listing["showing"] == 2
        assert listing["backups"][0]["age"] == "just now"

    def test_delete(self, versions: VersionStore):
        backup_id = versions.snapshot()
        assert versions.delete(backup_id)["success"]
        assert not versions.delete(backup_id)["success"]

    def test_compare(self, root: Path, versions: VersionStore):
        a = versions.snapshot()
        (root / ".env").write_text("KASPA_NETWORK=testnet\nPUBLIC_NODE=true\n")
        b = versions.snapshot()
        diff = versions.compare(a, b)["differences"]
        assert diff["added"] == [{"key": "PUBLIC_NODE", "value": "true"}]
        assert diff["removed"] == [{"key": "KASPA_NODE_RPC_PORT", "value": "16110"}]
        assert diff["changed"] == [{"key": "KASPA_NETWORK", "old_value": "mainnet", "new_value": "testnet"}]

    def test_compare_unknown(self, versions: VersionStore):
        a = versions.snapshot()
        assert not versions.compare(a, "999")["success"]

    def test_cleanup_all_and_usage(self, versions: VersionStore):
        versions.snapshot()
        usage = versions.storage_usage()
        assert usage["backup_count"] == 1
        assert usage["file_count"] == 3
        assert versions.cleanup_all()["success"]
        assert versions.storage_usage()["backup_count"] == 0


class TestStateFileBackup:
    """The installation state file inside backups."""

    def test_restore_keeps_complete_installation(self, root: Path, versions: VersionStore):
        state = WizardStateStore(root / ".kaspa-aio")
        state.update_phase("building")
        backup_id = versions.snapshot("while building")
        state.mark_complete()

        result = versions.restore(backup_id)
        assert result["success"]
        assert result["skipped_files"] == [".kaspa-aio/installation-state.json"]
        assert ".env" in result["restored_files"]
        restored = WizardStateStore(root / ".kaspa-aio").load()
        assert restored.phase == "complete"
        assert not restored.resumable

    def test_restore_unfinished_state(self, root: Path, versions: VersionStore):
        state = WizardStateStore(root / ".kaspa-aio")
        state.update_step(1)
        backup_id = versions.snapshot("step one")
        state.update_step(2)

        result = versions.restore(backup_id)
        assert ".kaspa-aio/installation-state.json" in result["restored_files"]
        assert result["skipped_files"] == []

    def test_backup_files_follow_state_dir(self):
        files = backup_files(".env", "compose.yml", "state")
        assert files[1] == ("compose.yml", "docker-compose.yml")
        assert files[2] == ("state/installation-state.json", "installation-state.json")

    def test_custom_state_dir_is_backed_up(self, root: Path):
        ctx = AppContext.create(root, OrchestratorSettings(state_dir="state"))
        try:
            ctx.state.update_step(1)
            backup_id = ctx.versions.snapshot("custom state dir")
            names = [f.file for f in ctx.versions.get(backup_id).files]
        finally:
            ctx.close()
        assert "installation-state.json" in names


class TestHistory:
    """Tests for saved configuration versions."""

    def test_save_copies_live_env(self, root: Path, versions: VersionStore):
        entry = versions.save_version({"KASPA_NETWORK": "mainnet"}, ["kaspa-node"], {"action": "deploy"})
        assert entry.version_id.startswith("v-")
        copy = versions.backup_dir / entry.backup_filename
        assert copy.read_text() == (root / ".env").read_text()
        assert entry.metadata["action"] == "deploy"
        assert entry.metadata["config_keys"] == ["KASPA_NETWORK"]

    def test_save_renders_when_no_env(self, root: Path, versions: VersionStore):
        (root / ".env").unlink()
        entry = versions.save_version({"KASPA_NETWORK": "testnet"}, ["kaspa-node"])
        content = (versions.backup_dir / entry.backup_filename).read_text()
        assert "KASPA_NETWORK=testnet" in content
        assert entry.metadata["action"] == "manual-save"

    def test_history_is_bounded(self, versions: VersionStore):
        entries = [versions.save_version({}, ["kaspa-node"]) for _ in range(5)]
        history = versions.history()
        assert [h["version_id"] for h in history] == [e.version_id for e in reversed(entries[2:])]
        assert not (versions.backup_dir / entries[0].backup_filename).exists()

    def test_compare_and_restore_version(self, root: Path, versions: VersionStore):
        first = versions.save_version({}, ["kaspa-node"])
        (root / ".env").write_text("KASPA_NETWORK=testnet\n")
        second = versions.save_version({}, ["kaspa-node"])

        diff = versions.compare_versions(first.version_id, second.version_id)["differences"]
        assert diff["changed"][0]["key"] == "KASPA_NETWORK"

        result = versions.restore_version(first.version_id)
        assert result["success"]
        assert result["pre_restore_backup"]
        assert "KASPA_NETWORK=mainnet" in (root / ".env").read_text()

    def test_unknown_version(self, versions: VersionStore):
        assert not versions.restore_version("v-1")["success"]
        assert not versions.compare_versions("v-1", "v-2")["success"]


class TestCheckpoints:
    """Tests for installation checkpoints."""

    def test_create_and_restore(self, versions: VersionStore):
        checkpoint = versions.create_checkpoint("config-written", {"step": 4})
        result = versions.restore_checkpoint(checkpoint.checkpoint_id)
        assert result["success"]
        assert result["stage"] == "config-written"
        assert result["data"] == {"step": 4}

    def test_bounded(self, versions: VersionStore):
        ids = [versions.create_checkpoint(f"s{i}").checkpoint_id for i in range(3)]
        listed = [c["checkpoint_id"] for c in versions.list_checkpoints()]
        assert listed == [ids[2], ids[1]]
        assert not versions.restore_checkpoint(ids[0])["success"]

    def test_delete(self, versions: VersionStore):
        cp = versions.create_checkpoint("deployed")
        assert versions.delete_checkpoint(cp.checkpoint_id)["success"]
        assert not versions.delete_checkpoint(cp.checkpoint_id)["success"]
        assert versions.list_checkpoints() == []


class TestDiff:
    """Tests for the flat key/value diff."""

    def test_identical(self):
        assert diff_configs({"A": "1"}, {"A": "1"}) == {"added": [], "removed": [], "changed": []}
