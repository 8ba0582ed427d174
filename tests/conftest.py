"""
Shared test fixtures and configuration.
"""

from pathlib import Path
from typing import Any

import pytest

from src.core.context import AppContext
from src.core.models.settings import OrchestratorSettings
from src.core.persistence.state_file import WizardStateStore
from src.core.services.compose import ComposeDescriptor, ComposeService
from src.core.services.event_bus import EventBus
from src.core.services.status_checkers import NodeSyncProbe


class FakeComposeClient:
    """Records compose calls; ``running`` is what ``containers()`` reports."""

    def __init__(self, project_root: Path, *, declared: set[str] | None = None) -> None:
        self.project_root = project_root
        self.declared = declared
        self.running: set[str] = set()
        self.up_starts_services = True
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple[Any, ...]] = []

    def fail(self, op: str, *errors: Exception) -> None:
        """Raise these errors, in order, on the next calls to ``op``."""
        self.failures.setdefault(op, []).extend(errors)

    def _record(self, op: str, *args: Any) -> None:
        self.calls.append((op, *args))
        pending = self.failures.get(op)
        if pending:
            raise pending.pop(0)

    def ops(self, op: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == op]

    def descriptor(self) -> ComposeDescriptor | None:
        if self.declared is None:
            return None
        return ComposeDescriptor(
            path=self.project_root / "docker-compose.yml",
            services={name: ComposeService(name=name) for name in self.declared},
        )

    def pull_image(self, image: str, *, timeout: int = 600) -> None:
        self._record("pull", image)

    def build_service(self, service: str, *, timeout: int = 900) -> None:
        self._record("build", service)

    def down(self, *, remove_orphans: bool = True, timeout: int = 120) -> None:
        self._record("down")

    def remove_container(self, name: str, *, timeout: int = 60) -> None:
        self._record("rm", name)

    def up(self, services: list[str], *, timeout: int = 120) -> None:
        self._record("up", tuple(services))
        if self.up_starts_services:
            self.running.update(services)

    def stop(self, services: list[str], *, timeout: int = 120) -> None:
        self._record("stop", tuple(services))
        self.running.difference_update(services)

    def remove(self, services: list[str], *, timeout: int = 120) -> None:
        self._record("remove", tuple(services))
        self.running.difference_update(services)

    def logs(self, service: str, *, tail: int = 100, timeout: int = 30) -> str:
        self._record("logs", service, tail)
        return f"{service}: started\n"

    def containers(self, *, timeout: int = 30) -> dict[str, dict[str, str]]:
        self._record("ps")
        return {
            name: {"name": name, "state": "running", "status": "Up 5 seconds", "image": "", "id": name}
            for name in self.running
        }


@pytest.fixture
def fake_compose(tmp_path: Path) -> FakeComposeClient:
    return FakeComposeClient(tmp_path)


@pytest.fixture
def settings() -> OrchestratorSettings:
    """Settings with every delay at zero."""
    return OrchestratorSettings(
        settle_delay_s=0,
        start_retry_delay_s=0,
        poll_interval_s=0.01,
        task_grace_s=60,
    )


@pytest.fixture
def node_rpc() -> dict[str, Any]:
    """Mutable block DAG info answered by the fake node."""
    return {"blockCount": 100, "headerCount": 1000, "isSynced": False}


@pytest.fixture
def app(tmp_path: Path, fake_compose: FakeComposeClient, settings, node_rpc) -> AppContext:
    probe = NodeSyncProbe(fetch=lambda payload: {"result": dict(node_rpc)})
    ctx = AppContext.create(tmp_path, settings, compose_client=fake_compose, node_probe=probe)
    yield ctx
    ctx.close()


@pytest.fixture
def store(tmp_path: Path) -> WizardStateStore:
    return WizardStateStore(tmp_path / ".kaspa-aio")


@pytest.fixture
def bus() -> EventBus:
    return EventBus()
