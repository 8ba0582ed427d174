"""
Status checkers — one per background-task type.

A checker is chosen when a task is registered and is called once per
poll tick with the task.  It answers with a ``CheckResult``:

    completed  the operation finished; the task becomes ``complete``
    error      the operation failed; the task becomes ``error``
    progress   otherwise, percentage done (0-100)
    metadata   merged into the task's metadata (block heights, ETA)

Checkers for remote endpoints tolerate a run of unreachable ticks
(the service may still be starting) before reporting an error.
"""

from __future__ import annotations

import json
import logging
import time
import urllib.request
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from src.core.errors import InfrastructureError

if TYPE_CHECKING:
    from src.core.services.compose import ComposeClient
    from src.core.services.tasks import BackgroundTask

logger = logging.getLogger(__name__)

_USER_AGENT = "kaspa-aio/0.1"


def format_duration(seconds: float | None) -> str:
    """Human duration: ``42s``, ``3m 5s``, ``2h 10m``."""
    if seconds is None or seconds < 0:
        return "unknown"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    if hours < 24:
        return f"{hours}h {minutes}m"
    days, hours = divmod(hours, 24)
    return f"{days}d {hours}h"


@dataclass
class CheckResult:
    completed: bool = False
    progress: float = 0.0
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class StatusChecker(ABC):
    """Computes progress for one kind of background task."""

    def __init__(self, *, max_unreachable: int = 6) -> None:
        self.max_unreachable = max_unreachable
        self._unreachable: dict[str, int] = {}

    @abstractmethod
    def check(self, task: BackgroundTask) -> CheckResult:
        ...

    def _waiting(self, task: BackgroundTask, message: str) -> CheckResult:
        """Count an unreachable tick; error out after too many in a row."""
        count = self._unreachable.get(task.id, 0) + 1
        self._unreachable[task.id] = count
        if count >= self.max_unreachable:
            self._unreachable.pop(task.id, None)
            return CheckResult(error=f"{message} after {count} attempts")
        logger.debug("%s: %s (attempt %d/%d)", task.id, message, count, self.max_unreachable)
        return CheckResult(progress=task.progress, metadata={"waiting": message})

    def _reachable(self, task: BackgroundTask) -> None:
        self._unreachable.pop(task.id, None)


# ── Node sync ───────────────────────────────────────────────────


class NodeSyncProbe:
    """Queries a node's JSON-RPC endpoint for block DAG info."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 16110,
        *,
        timeout: float = 5.0,
        fetch: Callable[[dict[str, Any]], dict[str, Any]] | None = None,
    ) -> None:
        self.url = f"http://{host}:{port}"
        self.timeout = timeout
        self._fetch = fetch or self._post

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = urllib.request.Request(
            self.url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json", "User-Agent": _USER_AGENT},
        )
        with urllib.request.urlopen(req, timeout=self.timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))

    def dag_info(self) -> dict[str, Any] | None:
        """Block DAG info, or None if the node cannot be queried."""
        payload = {"jsonrpc": "2.0", "id": 1, "method": "getBlockDagInfo", "params": {}}
        try:
            body = self._fetch(payload)
        except (OSError, ValueError) as e:
            logger.debug("Node RPC %s unreachable: %s", self.url, e)
            return None
        result = body.get("result") if isinstance(body, dict) else None
        return result if isinstance(result, dict) else None


class NodeSyncChecker(StatusChecker):
    """Progress from block count vs. header count, with rate and ETA."""

    def __init__(
        self,
        probe: NodeSyncProbe,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_unreachable: int = 6,
    ) -> None:
        super().__init__(max_unreachable=max_unreachable)
        self.probe = probe
        self.clock = clock
        self._samples: dict[str, tuple[float, int]] = {}

    def check(self, task: BackgroundTask) -> CheckResult:
        info = self.probe.dag_info()
        if info is None:
            return self._waiting(task, "Node not reachable")
        self._reachable(task)

        blocks = int(info.get("blockCount") or 0)
        headers = int(info.get("headerCount") or 0)
        synced = bool(info.get("isSynced")) or (headers > 0 and blocks >= headers)

        now = self.clock()
        rate = 0.0
        prev = self._samples.get(task.id)
        if prev is not None and now > prev[0]:
            rate = max(0.0, (blocks - prev[1]) / (now - prev[0]))
        self._samples[task.id] = (now, blocks)

        remaining = max(0, headers - blocks)
        eta = remaining / rate if rate > 0 else None
        metadata = {
            "current_block": blocks,
            "target_block": headers,
            "blocks_remaining": remaining,
            "sync_rate": round(rate, 2),
            "estimated_time_remaining": eta,
            "formatted_time_remaining": format_duration(eta),
        }

        if synced:
            self._samples.pop(task.id, None)
            return CheckResult(completed=True, progress=100.0, metadata=metadata)
        progress = min(99.9, blocks / headers * 100) if headers else 0.0
        return CheckResult(progress=round(progress, 2), metadata=metadata)


# ── Indexer sync ────────────────────────────────────────────────


def _get_json(url: str, timeout: float) -> dict[str, Any]:
    req = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read().decode("utf-8"))


class IndexerSyncChecker(StatusChecker):
    """Reads an indexer's status endpoint (``metadata['status_url']``).

    Accepts either ``{"progress": 42.0}`` or ``{"indexed": n, "target": m}``,
    with ``synced``/``isSynced`` marking completion.
    """

    def __init__(
        self,
        *,
        timeout: float = 5.0,
        fetch: Callable[[str], dict[str, Any]] | None = None,
        max_unreachable: int = 6,
    ) -> None:
        super().__init__(max_unreachable=max_unreachable)
        self.timeout = timeout
        self._fetch = fetch or (lambda url: _get_json(url, self.timeout))

    def check(self, task: BackgroundTask) -> CheckResult:
        url = task.metadata.get("status_url")
        if not url:
            return CheckResult(error=f"No status URL configured for {task.service}")
        try:
            body = self._fetch(url)
        except (OSError, ValueError) as e:
            logger.debug("Indexer status %s unreachable: %s", url, e)
            return self._waiting(task, f"{task.service} status endpoint not reachable")
        self._reachable(task)

        if body.get("error"):
            return CheckResult(error=str(body["error"]))
        if body.get("synced") or body.get("isSynced"):
            return CheckResult(completed=True, progress=100.0)

        if "progress" in body:
            progress = float(body["progress"])
        else:
            indexed = float(body.get("indexed") or 0)
            target = float(body.get("target") or 0)
            progress = indexed / target * 100 if target else 0.0
        return CheckResult(
            progress=round(min(progress, 99.9), 2),
            metadata={k: body[k] for k in ("indexed", "target") if k in body},
        )


# ── Database migration ──────────────────────────────────────────


class DatabaseMigrationChecker(StatusChecker):
    """Watches a migration container until it is healthy or exits."""

    def __init__(self, client: ComposeClient) -> None:
        super().__init__()
        self.client = client

    def check(self, task: BackgroundTask) -> CheckResult:
        container = task.metadata.get("container", task.service)
        try:
            info = self.client.containers().get(container)
        except InfrastructureError as e:
            return self._waiting(task, e.message)

        if info is None:
            return self._waiting(task, f"Container {container} not found")
        self._reachable(task)

        status = info.get("status", "").lower()
        if "healthy" in status and "unhealthy" not in status:
            return CheckResult(completed=True, progress=100.0)
        if info.get("state") == "exited":
            if "(0)" in status:
                return CheckResult(completed=True, progress=100.0)
            return CheckResult(error=f"Migration container {container} exited: {info.get('status')}")
        return CheckResult(progress=50.0, metadata={"container_status": info.get("status", "")})


class CallableChecker(StatusChecker):
    """Adapts a plain function returning a ``CheckResult`` or a dict."""

    def __init__(self, fn: Callable[[BackgroundTask], CheckResult | dict[str, Any]]) -> None:
        super().__init__()
        self.fn = fn

    def check(self, task: BackgroundTask) -> CheckResult:
        result = self.fn(task)
        if isinstance(result, CheckResult):
            return result
        return CheckResult(
            completed=bool(result.get("completed")),
            progress=float(result.get("progress") or 0.0),
            error=result.get("error"),
            metadata=dict(result.get("metadata") or {}),
        )
