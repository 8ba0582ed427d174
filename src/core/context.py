"""
Application context — every component instance for one project root.

Built once by whichever entry point starts the process and passed by
reference to whatever needs a component:

    - CLI:    main.py  → AppContext.create(root, settings)
    - Tests:  conftest → AppContext.create(tmp_path, compose_client=fake)

There is no module-level state: two contexts for two roots can live in
the same process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from src.core.config.env_file import update_env_file
from src.core.models.settings import OrchestratorSettings
from src.core.persistence.state_file import WizardStateStore
from src.core.persistence.version_store import VersionStore, backup_files
from src.core.services.compose import ComposeClient
from src.core.services.deployment import DeploymentOrchestrator
from src.core.services.event_bus import EventBus
from src.core.services.status_checkers import (
    DatabaseMigrationChecker,
    IndexerSyncChecker,
    NodeSyncChecker,
    NodeSyncProbe,
)
from src.core.services.tasks import BackgroundTask, BackgroundTaskMonitor, TaskType

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Owns the components of one installation."""

    project_root: Path
    settings: OrchestratorSettings
    compose: ComposeClient
    state: WizardStateStore
    bus: EventBus
    versions: VersionStore
    monitor: BackgroundTaskMonitor
    deployer: DeploymentOrchestrator

    @property
    def env_path(self) -> Path:
        return self.project_root / self.settings.env_file

    @classmethod
    def create(
        cls,
        project_root: Path,
        settings: OrchestratorSettings | None = None,
        *,
        compose_client: ComposeClient | None = None,
        node_probe: NodeSyncProbe | None = None,
    ) -> AppContext:
        settings = settings or OrchestratorSettings()
        root = project_root.resolve()
        compose = compose_client or ComposeClient(root, settings.compose_file)
        state = WizardStateStore(root / settings.state_dir, max_snapshots=settings.max_state_snapshots)
        bus = EventBus()
        versions = VersionStore(
            root,
            root / settings.backup_dir,
            files=backup_files(settings.env_file, settings.compose_file, settings.state_dir),
            max_backups=settings.max_backups,
            max_history=settings.max_history,
            max_checkpoints=settings.max_checkpoints,
        )
        env_path = root / settings.env_file

        def switch_to_local_node(task: BackgroundTask) -> None:
            update_env_file(env_path, {"KASPA_NODE_CONNECTION": "local"})
            logger.info("KASPA_NODE_CONNECTION set to local after %s synced", task.service)

        probe = node_probe or NodeSyncProbe(settings.node_rpc_host, settings.node_rpc_port)
        monitor = BackgroundTaskMonitor(
            state,
            bus,
            checkers={
                TaskType.NODE_SYNC: NodeSyncChecker(probe),
                TaskType.INDEXER_SYNC: IndexerSyncChecker(),
                TaskType.DATABASE_MIGRATION: DatabaseMigrationChecker(compose),
            },
            interval=settings.poll_interval_s,
            grace=settings.task_grace_s,
            switch_action=switch_to_local_node,
        )
        deployer = DeploymentOrchestrator(compose, settings=settings, state_store=state, bus=bus)
        # Tasks from an earlier process get a monitor entry again
        monitor.adopt_orphans()

        logger.debug("Context created for %s", root)
        return cls(
            project_root=root,
            settings=settings,
            compose=compose,
            state=state,
            bus=bus,
            versions=versions,
            monitor=monitor,
            deployer=deployer,
        )

    def close(self) -> None:
        self.monitor.shutdown()
