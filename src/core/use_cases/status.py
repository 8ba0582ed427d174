"""
Status use case — aggregate installation status from state + containers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from src.core.context import AppContext


@dataclass
class StatusResult:
    """Aggregated installation status."""

    summary: dict[str, Any] = field(default_factory=dict)
    profiles: list[str] = field(default_factory=list)
    services: dict[str, dict[str, Any]] = field(default_factory=dict)
    latest_backup: dict[str, Any] | None = None
    error: str | None = None

    @property
    def all_running(self) -> bool:
        return bool(self.services) and all(s["running"] for s in self.services.values())

    def to_dict(self) -> dict:
        """Convert to a JSON-serializable dictionary."""
        result: dict = {
            "state": self.summary,
            "profiles": self.profiles,
            "services": self.services,
            "all_running": self.all_running,
            "latest_backup": self.latest_backup,
        }
        if self.error:
            result["error"] = self.error
        return result


def get_status(app: AppContext, profiles: list[str]) -> StatusResult:
    """Collect state, running containers and the newest backup.

    Container queries that fail (daemon down) are reported in ``error``
    rather than raised.
    """
    result = StatusResult(summary=app.state.summary(), profiles=list(profiles))

    if profiles:
        live = app.deployer.status(profiles)
        if live["ok"]:
            result.services = live["services"]
        else:
            result.error = live["error"]

    backups = app.versions.list(limit=1)["backups"]
    if backups:
        result.latest_backup = backups[0]
    return result
