"""
Apply change use case — validate, back up, write, deploy, hand off sync.

    validate  → ConfigValidator; errors or a ``prevent_change`` warning stop here
    snapshot  → VersionStore backup of the live files (undo point)
    write     → new ``.env`` plus a configuration history entry
    deploy    → DeploymentOrchestrator pipeline
    sync      → node-sync task for a local node, phase ``syncing``;
                without one the installation is marked complete
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any

from src.core.config.env_file import read_env_file, write_env_file
from src.core.context import AppContext
from src.core.models.wizard_state import Phase
from src.core.services.deployment import ProgressCallback
from src.core.validation.config_validator import validate_configuration

logger = logging.getLogger(__name__)

NODE_PROFILES = ("kaspa-node", "kaspa-archive-node")
CONFIRMATION_TYPES = ("mixed_indexer_confirmation",)


@dataclass
class ApplyResult:
    """Outcome of one configuration change."""

    success: bool = False
    stage: str = "validate"
    validation: dict[str, Any] = field(default_factory=dict)
    backup_id: str | None = None
    version_id: str | None = None
    deployment: dict[str, Any] | None = None
    sync_task: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "stage": self.stage,
            "validation": self.validation,
            "backup_id": self.backup_id,
            "version_id": self.version_id,
            "deployment": self.deployment,
            "sync_task": self.sync_task,
            "error": self.error,
        }


def _record_phase(ctx: AppContext, phase: Phase) -> None:
    if ctx.state.load().is_complete:
        logger.debug("Installation already complete; phase %s not recorded", phase)
        return
    ctx.state.update_phase(phase)


def _mark_complete_when_synced(ctx: AppContext, future: Future) -> None:
    def _done(f: Future) -> None:
        if f.cancelled() or f.exception() is not None:
            return
        # Only an installation waiting on this sync is completed by it
        if ctx.state.load().phase != Phase.SYNCING:
            return
        ctx.state.mark_complete()
        logger.info("Installation complete")
    future.add_done_callback(_done)


def follow_node_sync(
    ctx: AppContext,
    service: str = "kaspa-node",
    *,
    auto_switch: bool = True,
    interval: float | None = None,
) -> str:
    """Start or resume the node-sync task; a syncing installation completes with it.

    Returns:
        The task id.
    """
    task_id = ctx.monitor.register_node_sync(service, auto_switch=auto_switch, interval=interval)
    _mark_complete_when_synced(ctx, ctx.monitor.completion(task_id))
    return task_id


def apply_change(
    ctx: AppContext,
    config: dict[str, Any],
    profiles: list[str],
    *,
    confirmed: bool = False,
    deploy: bool = True,
    on_progress: ProgressCallback | None = None,
) -> ApplyResult:
    """Apply a configuration and profile selection to the installation.

    Args:
        ctx: Components for the installation.
        config: Proposed configuration.
        profiles: Selected profile ids (legacy ids are migrated).
        confirmed: The user accepted warnings that need confirmation.
        deploy: Run the deployment pipeline after writing the files.
        on_progress: Receives deployment progress dicts.
    """
    result = ApplyResult()
    previous = read_env_file(ctx.env_path) or None

    validation = validate_configuration(config, profiles, previous, project_root=ctx.project_root)
    result.validation = validation.to_dict()
    if not validation.can_proceed:
        result.error = "Configuration is invalid" if not validation.valid else "Change blocked by a critical warning"
        return result
    pending = [w for t in CONFIRMATION_TYPES for w in validation.warnings_of(t)]
    if pending and not confirmed:
        result.error = "Confirmation required: " + "; ".join(w.message for w in pending)
        return result

    selected = list(validation.profiles)
    new_config = validation.migrated_config

    result.stage = "snapshot"
    result.backup_id = ctx.versions.snapshot(
        "Before configuration change",
        {"profiles": selected, "action": "apply-change"},
    )

    result.stage = "write"
    write_env_file(ctx.env_path, new_config, selected)
    entry = ctx.versions.save_version(
        new_config, selected, {"action": "apply-change", "backup_id": result.backup_id},
        env_path=ctx.env_path,
    )
    result.version_id = entry.version_id
    ctx.state.update_profiles(selected, new_config)
    ctx.versions.create_checkpoint("config-written", {"profiles": selected})

    if not deploy:
        result.success = True
        result.stage = "write"
        return result

    result.stage = "deploy"
    result.deployment = ctx.deployer.deploy(selected, on_progress)
    if not result.deployment["success"]:
        result.error = result.deployment.get("error")
        return result
    ctx.versions.create_checkpoint("deployed", {"profiles": selected})

    nodes = [p for p in selected if p in NODE_PROFILES]
    if nodes:
        result.stage = "sync"
        _record_phase(ctx, Phase.SYNCING)
        # Profile id equals its node service name
        result.sync_task = follow_node_sync(ctx, nodes[0])
    else:
        result.stage = "complete"
        ctx.state.mark_complete()

    result.success = True
    logger.info("Configuration applied for %s", ", ".join(selected))
    return result
