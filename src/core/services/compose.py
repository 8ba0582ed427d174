"""
Compose client — the only code that shells out to docker.

Every call goes through ``_run``, which turns a non-zero exit code, a
timeout or a missing binary into a classified ``InfrastructureError``.
The deployment pipeline depends on the small public surface of
``ComposeClient`` so tests can swap in a fake.

The compose descriptor is parsed as YAML and queried structurally
(declared services, container names, compose profiles).
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.core.errors import InfraErrorKind, InfrastructureError

logger = logging.getLogger(__name__)


# ── Descriptor ──────────────────────────────────────────────────


@dataclass
class ComposeService:
    name: str
    image: str = ""
    container_name: str = ""
    profiles: list[str] = field(default_factory=list)
    has_build: bool = False

    @property
    def container(self) -> str:
        return self.container_name or self.name


@dataclass
class ComposeDescriptor:
    path: Path
    services: dict[str, ComposeService] = field(default_factory=dict)

    def declared(self) -> set[str]:
        return set(self.services)

    def container_for(self, service: str) -> str:
        svc = self.services.get(service)
        return svc.container if svc else service

    def services_in_profile(self, profile: str) -> list[str]:
        return [s.name for s in self.services.values() if profile in s.profiles]


def load_compose_descriptor(path: Path) -> ComposeDescriptor | None:
    """Parse a compose file.  Returns None if it is missing or malformed."""
    if not path.is_file():
        return None
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Cannot parse compose descriptor %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        logger.warning("Compose descriptor %s is not a mapping", path)
        return None

    services: dict[str, ComposeService] = {}
    for name, definition in (data.get("services") or {}).items():
        definition = definition if isinstance(definition, dict) else {}
        services[name] = ComposeService(
            name=name,
            image=str(definition.get("image") or ""),
            container_name=str(definition.get("container_name") or ""),
            profiles=[str(p) for p in definition.get("profiles") or []],
            has_build="build" in definition,
        )
    return ComposeDescriptor(path=path, services=services)


# ── Client ──────────────────────────────────────────────────────


class ComposeClient:
    """Thin wrapper over ``docker`` / ``docker compose`` subprocess calls."""

    def __init__(self, project_root: Path, compose_file: str = "docker-compose.yml") -> None:
        self.project_root = project_root
        self.compose_path = project_root / compose_file

    # ── Runners ─────────────────────────────────────────────────

    def _run(self, cmd: list[str], *, timeout: int, stage: str = "", service: str = "") -> str:
        """Run a command and return stdout; raise a classified error on failure."""
        logger.debug("Running: %s (timeout=%ss)", " ".join(cmd), timeout)
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.project_root),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise InfrastructureError(
                f"{' '.join(cmd[:3])} timed out after {timeout}s",
                kind=InfraErrorKind.TIMEOUT,
                suggestion="Check your network connection; the operation will be retried",
                stage=stage,
                service=service,
            ) from e
        except FileNotFoundError as e:
            raise InfrastructureError(
                "docker executable not found",
                kind=InfraErrorKind.CONNECTION,
                suggestion="Install Docker: https://docs.docker.com/engine/install/",
                stage=stage,
                service=service,
            ) from e

        if result.returncode != 0:
            output = (result.stderr or "") + (result.stdout or "")
            raise InfrastructureError.from_output(output, stage=stage, service=service)
        return result.stdout

    def _docker(self, *args: str, timeout: int = 60, **kw: Any) -> str:
        return self._run(["docker", *args], timeout=timeout, **kw)

    def _compose(self, *args: str, timeout: int = 120, **kw: Any) -> str:
        return self._run(["docker", "compose", "-f", str(self.compose_path), *args], timeout=timeout, **kw)

    # ── Descriptor ──────────────────────────────────────────────

    def descriptor(self) -> ComposeDescriptor | None:
        return load_compose_descriptor(self.compose_path)

    # ── Operations ──────────────────────────────────────────────

    def pull_image(self, image: str, *, timeout: int = 600) -> None:
        self._docker("pull", image, timeout=timeout, stage="pull", service=image)

    def build_service(self, service: str, *, timeout: int = 900) -> None:
        self._compose("build", service, timeout=timeout, stage="build", service=service)

    def down(self, *, remove_orphans: bool = True, timeout: int = 120) -> None:
        args = ["down"] + (["--remove-orphans"] if remove_orphans else [])
        self._compose(*args, timeout=timeout, stage="start")

    def remove_container(self, name: str, *, timeout: int = 60) -> None:
        self._docker("rm", "-f", name, timeout=timeout, stage="start", service=name)

    def up(self, services: list[str], *, timeout: int = 120) -> None:
        self._compose("up", "-d", *services, timeout=timeout, stage="start")

    def stop(self, services: list[str], *, timeout: int = 120) -> None:
        self._compose("stop", *services, timeout=timeout, stage="stop")

    def remove(self, services: list[str], *, timeout: int = 120) -> None:
        self._compose("rm", "-f", "-s", *services, timeout=timeout, stage="remove")

    def logs(self, service: str, *, tail: int = 100, timeout: int = 30) -> str:
        return self._compose("logs", f"--tail={tail}", service, timeout=timeout, stage="logs", service=service)

    def containers(self, *, timeout: int = 30) -> dict[str, dict[str, str]]:
        """All containers (running or not) keyed by name."""
        out = self._docker("ps", "-a", "--format", "{{json .}}", timeout=timeout, stage="validate")
        containers: dict[str, dict[str, str]] = {}
        for line in out.strip().splitlines():
            try:
                c = json.loads(line)
            except json.JSONDecodeError:
                continue
            for name in str(c.get("Names", "")).split(","):
                if name:
                    containers[name] = {
                        "name": name,
                        "state": str(c.get("State", "")).lower(),
                        "status": str(c.get("Status", "")),
                        "image": str(c.get("Image", "")),
                        "id": str(c.get("ID", "")),
                    }
        return containers
