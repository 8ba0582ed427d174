"""
Tests for the apply-change use case and status aggregation.
"""

import time

from src.core.config.env_file import read_env_file
from src.core.models.wizard_state import Phase
from src.core.use_cases.apply_change import apply_change
from src.core.use_cases.status import get_status

MAINNET = "kaspa:" + "qypq" * 14 + "qy"


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestValidationGate:
    """Nothing is written when validation stops the change."""

    def test_invalid_config(self, app, fake_compose):
        result = apply_change(app, {"KASPA_NODE_RPC_PORT": 80}, ["kaspa-node"])
        assert not result.success
        assert result.stage == "validate"
        assert result.error == "Configuration is invalid"
        assert result.validation["errors"][0]["field"] == "KASPA_NODE_RPC_PORT"
        assert not app.env_path.exists()
        assert app.versions.list()["total"] == 0
        assert fake_compose.calls == []

    def test_network_change_on_existing_install_blocked(self, app):
        app.env_path.write_text("KASPA_NETWORK=mainnet\n")
        result = apply_change(app, {"KASPA_NETWORK": "testnet"}, ["kaspa-node"])
        assert not result.success
        assert result.error == "Change blocked by a critical warning"
        assert read_env_file(app.env_path) == {"KASPA_NETWORK": "mainnet"}

    def test_mixed_sources_need_confirmation(self, app):
        config = {
            "KASIA_INDEXER_URL": "http://kasia-indexer:8080",
            "K_INDEXER_URL": "https://indexer0.kaspatalk.net",
        }
        result = apply_change(app, config, ["kasia-app", "k-social-app"], deploy=False)
        assert not result.success
        assert result.error.startswith("Confirmation required")

        confirmed = apply_change(app, config, ["kasia-app", "k-social-app"], confirmed=True, deploy=False)
        assert confirmed.success


class TestWrite:
    """Backups, history and state around the .env write."""

    def test_no_deploy_writes_files(self, app, fake_compose):
        app.env_path.write_text("KASPA_NETWORK=mainnet\n")
        result = apply_change(app, {"PUBLIC_NODE": True}, ["core"], deploy=False)

        assert result.success
        assert result.stage == "write"
        assert read_env_file(app.env_path)["PUBLIC_NODE"] == "true"
        assert fake_compose.calls == []

        backup = app.versions.get(result.backup_id)
        assert backup.reason == "Before configuration change"
        assert app.versions.history()[0]["version_id"] == result.version_id
        assert [c["stage"] for c in app.versions.list_checkpoints()] == ["config-written"]
        assert app.state.load().profiles.selected == ["kaspa-node"]

    def test_deprecated_keys_not_written(self, app):
        apply_change(app, {"WALLET_SEED_PHRASE": "abandon"}, ["kaspa-node"], deploy=False)
        assert "WALLET_SEED_PHRASE" not in read_env_file(app.env_path)

    def test_backup_restores_previous_config(self, app):
        app.env_path.write_text("KASPA_NETWORK=mainnet\n")
        result = apply_change(app, {"PUBLIC_NODE": True}, ["kaspa-node"], deploy=False)
        app.versions.restore(result.backup_id, backup_first=False)
        assert read_env_file(app.env_path) == {"KASPA_NETWORK": "mainnet"}


class TestDeploy:
    """Deployment and hand-off to background sync."""

    def test_app_only_selection_completes(self, app):
        result = apply_change(app, {}, ["kasia-app"])
        assert result.success
        assert result.stage == "complete"
        assert result.sync_task is None
        assert app.state.load().phase == Phase.COMPLETE

    def test_node_selection_hands_off_to_sync(self, app):
        progress = []
        result = apply_change(app, {"MINING_ADDRESS": MAINNET}, ["kaspa-node"], on_progress=progress.append)
        assert result.success
        assert result.stage == "sync"
        assert result.sync_task.startswith("node-sync-kaspa-node-")
        assert progress
        assert app.state.load().phase in (Phase.SYNCING, Phase.COMPLETE)
        assert [c["stage"] for c in app.versions.list_checkpoints()] == ["deployed", "config-written"]

    def test_sync_completion_marks_installation_complete(self, app, node_rpc):
        node_rpc.update(blockCount=1000, headerCount=1000, isSynced=True)
        result = apply_change(app, {}, ["kaspa-node"])
        final = app.monitor.completion(result.sync_task).result(timeout=5)
        assert final["status"] == "complete"
        assert _wait_for(lambda: app.state.load().is_complete)
        assert read_env_file(app.env_path)["KASPA_NODE_CONNECTION"] == "local"

    def test_failed_deploy(self, app, fake_compose):
        fake_compose.up_starts_services = False
        result = apply_change(app, {}, ["kaspa-node"])
        assert not result.success
        assert result.stage == "deploy"
        assert result.deployment["failed_services"] == ["kaspa-node"]
        assert result.backup_id
        assert result.sync_task is None
        assert app.state.load().phase == Phase.VALIDATING

    def test_redeploy_after_completion(self, app):
        apply_change(app, {}, ["kasia-app"])
        again = apply_change(app, {}, ["kasia-app"])
        assert again.success
        assert app.state.load().phase == Phase.COMPLETE


class TestStatus:
    def test_status_after_deploy(self, app):
        apply_change(app, {}, ["kasia-app"])
        result = get_status(app, ["kasia-app"])
        assert result.all_running
        assert result.latest_backup is not None
        assert result.to_dict()["state"]["phase"] == "complete"

    def test_status_without_profiles(self, app):
        result = get_status(app, [])
        assert result.services == {}
        assert not result.all_running
        assert result.latest_backup is None
