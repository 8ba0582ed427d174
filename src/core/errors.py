"""
Error taxonomy — typed failures and remediation text.

Validators never raise; they return result objects.  Orchestration code
raises the typed errors below so the retry layer can decide whether an
attempt is worth repeating, and so the CLI can print remediation steps.

Infrastructure errors are classified from the compose tool's stderr by
ordered regex matching.  The first matching pattern wins.
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any


class InfraErrorKind(StrEnum):
    """Categories of container-runtime failures."""

    CONNECTION = "connection"
    PERMISSION = "permission"
    PORT_CONFLICT = "port_conflict"
    DISK_SPACE = "disk_space"
    IMAGE_NOT_FOUND = "image_not_found"
    TIMEOUT = "timeout"
    CONNECTION_RESET = "connection_reset"
    RATE_LIMIT = "rate_limit"
    DNS_FAILURE = "dns_failure"
    UNKNOWN = "unknown"


# Kinds that are worth retrying with backoff.
TRANSIENT_KINDS = frozenset({
    InfraErrorKind.TIMEOUT,
    InfraErrorKind.CONNECTION_RESET,
    InfraErrorKind.RATE_LIMIT,
    InfraErrorKind.DNS_FAILURE,
})

# Remediation code per kind; each has its own entry in _REMEDIATION.
KIND_CODES: dict[InfraErrorKind, str] = {
    InfraErrorKind.CONNECTION: "DOCKER_UNAVAILABLE",
    InfraErrorKind.PERMISSION: "DOCKER_PERMISSION_DENIED",
    InfraErrorKind.PORT_CONFLICT: "PORT_CONFLICT",
    InfraErrorKind.DISK_SPACE: "DISK_FULL",
    InfraErrorKind.IMAGE_NOT_FOUND: "IMAGE_NOT_FOUND",
    InfraErrorKind.TIMEOUT: "OPERATION_TIMEOUT",
    InfraErrorKind.CONNECTION_RESET: "NETWORK_UNAVAILABLE",
    InfraErrorKind.RATE_LIMIT: "NETWORK_UNAVAILABLE",
    InfraErrorKind.DNS_FAILURE: "NETWORK_UNAVAILABLE",
    InfraErrorKind.UNKNOWN: "INSTALLATION_FAILED",
}


# ── Exceptions ──────────────────────────────────────────────────


class OrchestratorError(Exception):
    """Base class for every failure raised by the orchestrator."""

    code = "INSTALLATION_FAILED"

    def __init__(
        self,
        message: str,
        *,
        stage: str = "",
        service: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.service = service
        self.details = details or {}

    @property
    def transient(self) -> bool:
        return False

    def remediation(self) -> dict[str, Any]:
        return remediation(self.code)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "stage": self.stage,
            "service": self.service,
            "details": self.details,
            "remediation": self.remediation(),
        }


class ValidationError(OrchestratorError):
    """A request was structurally invalid (bad profile set, missing service)."""

    code = "VALIDATION_FAILED"


class InfrastructureError(OrchestratorError):
    """The container runtime or compose tool failed."""

    code = "DOCKER_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        *,
        kind: InfraErrorKind = InfraErrorKind.UNKNOWN,
        suggestion: str = "",
        **kw: Any,
    ) -> None:
        super().__init__(message, **kw)
        self.kind = InfraErrorKind(kind)
        self.suggestion = suggestion
        self.code = KIND_CODES.get(self.kind, self.code)

    @classmethod
    def from_output(cls, output: str, **kw: Any) -> InfrastructureError:
        """Build a classified error from raw tool output."""
        info = classify_infrastructure_error(output)
        return cls(
            info["message"],
            kind=InfraErrorKind(info["kind"]),
            suggestion=info["suggestion"],
            details={"raw": output.strip()[:500], **({"port": info["port"]} if "port" in info else {})},
            **kw,
        )

    @property
    def transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    def remediation(self) -> dict[str, Any]:
        """Remediation for the kind, led by the classifier's suggestion."""
        info = remediation(self.code)
        if self.suggestion and self.suggestion not in info["steps"]:
            info["steps"].insert(0, self.suggestion)
        return info

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "kind": self.kind.value,
            "suggestion": self.suggestion,
            "remediation": self.remediation(),
        }


class DeploymentError(OrchestratorError):
    """Compose reported success but expected containers are not running."""

    code = "DEPLOYMENT_VERIFICATION_FAILED"

    def __init__(self, message: str, *, failed_services: list[str] | None = None, **kw: Any) -> None:
        super().__init__(message, **kw)
        self.failed_services = list(failed_services or [])
        self.details.setdefault("failed_services", self.failed_services)


class TaskError(OrchestratorError):
    """A background-task request was invalid (unknown id, duplicate, ...)."""

    code = "TASK_FAILED"


# ── Classification ──────────────────────────────────────────────

_PATTERNS: list[tuple[re.Pattern[str], InfraErrorKind, str, str]] = [
    (
        re.compile(r"cannot connect to the docker daemon|is the docker daemon running", re.I),
        InfraErrorKind.CONNECTION,
        "Cannot connect to Docker",
        "Make sure Docker is installed and running: sudo systemctl start docker",
    ),
    (
        re.compile(r"permission denied", re.I),
        InfraErrorKind.PERMISSION,
        "Permission denied while talking to Docker",
        "Add your user to the docker group: sudo usermod -aG docker $USER, then log out and back in",
    ),
    (
        re.compile(r"port is already allocated|address already in use", re.I),
        InfraErrorKind.PORT_CONFLICT,
        "A required port is already in use",
        "Stop the process using the port or change the port in your configuration",
    ),
    (
        re.compile(r"no space left on device", re.I),
        InfraErrorKind.DISK_SPACE,
        "Not enough disk space",
        "Free up disk space (docker system prune) or move the data directory",
    ),
    (
        re.compile(r"(pull access denied|manifest unknown|image.*not found|not found.*image)", re.I),
        InfraErrorKind.IMAGE_NOT_FOUND,
        "Docker image not found",
        "Check the image name and your internet connection, then retry the pull",
    ),
    (
        re.compile(r"timed? ?out|deadline exceeded", re.I),
        InfraErrorKind.TIMEOUT,
        "The operation timed out",
        "Check your network connection; the operation will be retried",
    ),
    (
        re.compile(r"connection reset|broken pipe|unexpected eof", re.I),
        InfraErrorKind.CONNECTION_RESET,
        "The connection was reset",
        "Transient network failure; the operation will be retried",
    ),
    (
        re.compile(r"toomanyrequests|rate limit", re.I),
        InfraErrorKind.RATE_LIMIT,
        "Registry rate limit reached",
        "Wait a few minutes or log in to the registry (docker login)",
    ),
    (
        re.compile(r"no such host|temporary failure in name resolution|lookup .* on", re.I),
        InfraErrorKind.DNS_FAILURE,
        "DNS resolution failed",
        "Check your DNS settings and internet connection",
    ),
]

_DOCS = "https://docs.docker.com/engine/install/"
_PORT_RE = re.compile(r"(?:port|:)(\d{2,5})(?:\D|$)")


def classify_infrastructure_error(output: str) -> dict[str, Any]:
    """Classify raw compose/docker output into a typed category.

    Returns:
        Dict with ``kind``, ``message``, ``suggestion``, ``documentation``,
        ``transient`` and, for port conflicts, ``port`` when extractable.
    """
    text = output or ""
    for pattern, kind, message, suggestion in _PATTERNS:
        if pattern.search(text):
            info: dict[str, Any] = {
                "kind": kind.value,
                "message": message,
                "suggestion": suggestion,
                "documentation": _DOCS,
                "transient": kind in TRANSIENT_KINDS,
            }
            if kind == InfraErrorKind.PORT_CONFLICT:
                m = re.search(r"0\.0\.0\.0:(\d+)", text) or _PORT_RE.search(text)
                if m:
                    info["port"] = int(m.group(1))
                    info["message"] = f"Port {m.group(1)} is already in use"
            return info

    first_line = text.strip().splitlines()[0] if text.strip() else "Unknown Docker error"
    return {
        "kind": InfraErrorKind.UNKNOWN.value,
        "message": first_line[:200],
        "suggestion": "Check the Docker logs for more details: docker compose logs",
        "documentation": _DOCS,
        "transient": False,
    }


# ── Remediation ─────────────────────────────────────────────────

_REMEDIATION: dict[str, dict[str, Any]] = {
    "DOCKER_UNAVAILABLE": {
        "title": "Docker is not available",
        "message": "The orchestrator could not talk to the Docker daemon.",
        "steps": [
            "Check that Docker is installed: docker --version",
            "Start the daemon: sudo systemctl start docker",
            "Make sure your user can access Docker: sudo usermod -aG docker $USER",
        ],
    },
    "DOCKER_PERMISSION_DENIED": {
        "title": "Permission denied",
        "message": "Your user is not allowed to use the Docker daemon.",
        "steps": [
            "Add your user to the docker group: sudo usermod -aG docker $USER",
            "Log out and back in, then retry",
        ],
    },
    "DISK_FULL": {
        "title": "Not enough disk space",
        "message": "Docker ran out of disk space.",
        "steps": [
            "Check free space: df -h",
            "Remove unused images and containers: docker system prune",
            "Retry the deployment: kaspa-aio deploy",
        ],
    },
    "IMAGE_NOT_FOUND": {
        "title": "Image not found",
        "message": "A required image could not be pulled.",
        "steps": [
            "Check the image name and tag in docker-compose.yml",
            "Check registry access: docker pull <image>",
        ],
    },
    "OPERATION_TIMEOUT": {
        "title": "Operation timed out",
        "message": "A Docker operation did not finish in time.",
        "steps": [
            "Check your network connection",
            "Check the Docker daemon is responsive: docker info",
            "Retry the deployment: kaspa-aio deploy",
        ],
    },
    "NETWORK_UNAVAILABLE": {
        "title": "Network problem",
        "message": "Docker could not reach the registry or a remote service.",
        "steps": [
            "Check your network connection and DNS settings",
            "Wait a few minutes if the registry is rate limiting, then retry",
        ],
    },
    "KASPA_NODE_UNAVAILABLE": {
        "title": "Kaspa node is not reachable",
        "message": "The node RPC endpoint did not answer.",
        "steps": [
            "Check the node container: docker ps --filter name=kaspa-node",
            "Inspect the node logs: docker logs kaspa-node --tail 100",
            "Verify the RPC port in .env (KASPA_NODE_RPC_PORT)",
        ],
    },
    "SERVICE_NOT_FOUND": {
        "title": "Service not found",
        "message": "A service expected for the selected profiles is not declared.",
        "steps": [
            "Check docker-compose.yml declares the service",
            "Regenerate the configuration for the selected profiles",
        ],
    },
    "STATE_FILE_CORRUPT": {
        "title": "Installation state is corrupt",
        "message": "The saved installation state could not be read; a fresh state was used.",
        "steps": [
            "Review .kaspa-aio/state-snapshots for an earlier copy",
            "Restore a backup: kaspa-aio backup list, then kaspa-aio backup restore <id>",
        ],
    },
    "INSTALLATION_FAILED": {
        "title": "Installation failed",
        "message": "The installation did not complete.",
        "steps": [
            "Inspect service logs: kaspa-aio logs <service>",
            "Check available disk space and memory",
            "Retry the deployment: kaspa-aio deploy",
        ],
    },
    "PORT_CONFLICT": {
        "title": "Port already in use",
        "message": "Another process is bound to a port the stack needs.",
        "steps": [
            "Find the process: sudo ss -ltnp | grep <port>",
            "Stop it, or change the port in .env and redeploy",
        ],
    },
    "DEPLOYMENT_VERIFICATION_FAILED": {
        "title": "Services did not start",
        "message": "Compose reported success, but some containers are not running.",
        "steps": [
            "Inspect the failing service logs: kaspa-aio logs <service>",
            "Check container status: docker compose ps",
            "Retry the deployment: kaspa-aio deploy",
        ],
    },
    "VALIDATION_FAILED": {
        "title": "Invalid request",
        "message": "The selected profiles or configuration are not valid.",
        "steps": [
            "Run kaspa-aio config validate and fix the reported errors",
        ],
    },
    "TASK_FAILED": {
        "title": "Background task failed",
        "message": "A background operation could not be tracked.",
        "steps": [
            "List tasks and their errors: kaspa-aio state show",
        ],
    },
}


def remediation(code: str) -> dict[str, Any]:
    """Return user-facing remediation for an error code.

    Unknown codes fall back to the generic installation failure text,
    so every blocking error carries at least one action.
    """
    entry = _REMEDIATION.get(code) or _REMEDIATION["INSTALLATION_FAILED"]
    return {"code": code, **entry, "steps": list(entry["steps"])}
