"""
OrchestratorSettings — operator-tunable knobs from ``kaspa-aio.yml``.

Every field has a default, so a missing settings file is valid.
Unknown keys are rejected to catch typos early.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class OrchestratorSettings(BaseModel):
    """Root settings model."""

    model_config = ConfigDict(extra="forbid")

    project_name: str = "kaspa-aio"

    # Files (relative to the project root)
    compose_file: str = "docker-compose.yml"
    env_file: str = ".env"
    state_dir: str = ".kaspa-aio"
    backup_dir: str = ".kaspa-backups"

    # Retention
    max_backups: int = Field(default=10, ge=1)
    max_history: int = Field(default=50, ge=1)
    max_checkpoints: int = Field(default=10, ge=1)
    max_state_snapshots: int = Field(default=10, ge=0)

    # Background tasks
    poll_interval_s: float = Field(default=10.0, gt=0)
    task_grace_s: float = Field(default=60.0, ge=0)
    task_max_age_s: float = Field(default=3600.0, gt=0)
    node_rpc_host: str = "localhost"
    node_rpc_port: int = Field(default=16110, ge=1, le=65535)

    # Deployment
    start_timeout_s: int = Field(default=120, gt=0)
    start_retries: int = Field(default=2, ge=0, le=2)
    start_retry_delay_s: float = Field(default=2.0, ge=0)
    settle_delay_s: float = Field(default=3.0, ge=0)
    pull_timeout_s: int = Field(default=600, gt=0)
    build_timeout_s: int = Field(default=900, gt=0)
    teardown_on_failure: bool = False
