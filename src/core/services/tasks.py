"""
BackgroundTaskMonitor — long-running operations tracked outside deployment.

Each task has its own daemon polling thread.  A tick calls the task's
``StatusChecker`` and then waits ``interval`` seconds before the next,
so ticks of one task never overlap however slow the checker is.
Different tasks poll independently.

Lifecycle::

    pending ──start_monitoring──▶ in-progress ──▶ complete
                                       │        ├─▶ error
                                       └────────┴─▶ cancelled

Completion is reported three ways: a ``sync:*`` event on the bus, the
task's sync operation in the state store, and a
``concurrent.futures.Future`` per task (``completion(task_id)``) that
resolves with the final task dict, fails with ``TaskError``, or is
cancelled.  Finished tasks stay queryable for a grace period before
they are evicted.

Progress is written to the state store only when it moved by more
than ``PERSIST_THRESHOLD`` points; a ``sync:progress`` event is
published on every tick.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from src.core.errors import OrchestratorError, TaskError
from src.core.models.wizard_state import SyncOperation
from src.core.persistence.state_file import WizardStateStore
from src.core.services.event_bus import EventBus
from src.core.services.status_checkers import CheckResult, StatusChecker, format_duration

logger = logging.getLogger(__name__)

PERSIST_THRESHOLD = 1.0
"""Minimum progress change (percentage points) before state is rewritten."""

SWITCH_DECISION = "switched-to-local-node"


class TaskType(StrEnum):
    NODE_SYNC = "node-sync"
    INDEXER_SYNC = "indexer-sync"
    DATABASE_MIGRATION = "database-migration"


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


_FINISHED = frozenset({TaskStatus.COMPLETE, TaskStatus.ERROR, TaskStatus.CANCELLED})


def _iso(ts: float | None) -> str | None:
    return datetime.fromtimestamp(ts, UTC).isoformat() if ts is not None else None


def _timestamp(iso: str) -> float:
    try:
        return datetime.fromisoformat(iso).timestamp()
    except ValueError:
        return time.time()


@dataclass
class BackgroundTask:
    """In-memory record of one monitored operation."""

    id: str
    type: str
    service: str
    checker: StatusChecker
    interval: float
    auto_switch: bool = False
    status: TaskStatus = TaskStatus.PENDING
    progress: float = 0.0
    persisted_progress: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    future: Future = field(default_factory=Future, repr=False)
    stop_event: threading.Event = field(default_factory=threading.Event, repr=False)
    thread: threading.Thread | None = field(default=None, repr=False)
    evict_timer: threading.Timer | None = field(default=None, repr=False)

    @property
    def finished(self) -> bool:
        return self.status in _FINISHED

    @property
    def duration_s(self) -> float:
        return (self.completed_at or time.time()) - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "service": self.service,
            "status": self.status.value,
            "progress": self.progress,
            "auto_switch": self.auto_switch,
            "metadata": dict(self.metadata),
            "error": self.error,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration": format_duration(self.duration_s),
        }


class BackgroundTaskMonitor:
    """Registers, polls and retires background tasks.

    Args:
        state_store: Where sync operations and decisions are recorded.
        bus: Receives ``sync:*`` and ``node:ready`` events.
        checkers: Default checker per task type.
        interval: Default poll interval in seconds.
        grace: Seconds a finished task stays queryable.
        switch_action: Run when an ``auto_switch`` node-sync task
            completes; repoints dependent services at the local node.
    """

    def __init__(
        self,
        state_store: WizardStateStore,
        bus: EventBus,
        *,
        checkers: dict[str, StatusChecker] | None = None,
        interval: float = 10.0,
        grace: float = 60.0,
        switch_action: Callable[[BackgroundTask], None] | None = None,
    ) -> None:
        self.state = state_store
        self.bus = bus
        self.checkers = dict(checkers or {})
        self.interval = interval
        self.grace = grace
        self.switch_action = switch_action
        self._tasks: dict[str, BackgroundTask] = {}
        self._lock = threading.RLock()

    # ── Registration ────────────────────────────────────────────

    def register(
        self,
        task_id: str,
        *,
        type: str,
        service: str,
        checker: StatusChecker | None = None,
        interval: float | None = None,
        auto_switch: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Add a pending task and reference it from the installation state.

        Raises:
            TaskError: Missing fields, no checker for the type, or a
                duplicate id.
        """
        if not task_id or not type or not service:
            raise TaskError("A task needs an id, a type and a service")
        checker = checker or self.checkers.get(type)
        if checker is None:
            raise TaskError(f"No status checker for task type '{type}'", service=service)

        task = BackgroundTask(
            id=task_id,
            type=type,
            service=service,
            checker=checker,
            interval=interval if interval is not None else self.interval,
            auto_switch=auto_switch,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            if task_id in self._tasks:
                raise TaskError(f"Task '{task_id}' is already registered", service=service)
            self._tasks[task_id] = task

        self.state.add_background_task(SyncOperation(
            id=task_id, type=type, service=service, status=TaskStatus.PENDING.value,
            metadata=task.metadata, auto_switch=auto_switch,
        ))
        logger.info("Registered %s task %s for %s", type, task_id, service)
        return task_id

    def register_node_sync(
        self,
        service: str = "kaspa-node",
        *,
        auto_switch: bool = True,
        interval: float | None = None,
        start: bool = True,
    ) -> str:
        """Track a node's blockchain sync; optionally switch to it when done.

        An unfinished node-sync task for the same service (one adopted
        from an earlier process, say) is reused instead of registering
        a second one.
        """
        existing = self.active_task(TaskType.NODE_SYNC, service)
        if existing is not None:
            task = self._require(existing)
            with self._lock:
                task.auto_switch = auto_switch
                if interval is not None:
                    task.interval = interval
            if start and task.status == TaskStatus.PENDING:
                self.start_monitoring(existing)
            logger.info("Reusing node-sync task %s for %s", existing, service)
            return existing

        task_id = f"node-sync-{service}-{int(time.time() * 1000)}"
        self.register(
            task_id,
            type=TaskType.NODE_SYNC,
            service=service,
            interval=interval,
            auto_switch=auto_switch,
        )
        if start:
            self.start_monitoring(task_id)
        return task_id

    def register_indexer_sync(
        self,
        service: str,
        status_url: str,
        *,
        interval: float | None = None,
        start: bool = True,
    ) -> str:
        task_id = f"indexer-sync-{service}-{int(time.time() * 1000)}"
        self.register(
            task_id,
            type=TaskType.INDEXER_SYNC,
            service=service,
            interval=interval,
            metadata={"status_url": status_url},
        )
        if start:
            self.start_monitoring(task_id)
        return task_id

    # ── Polling ─────────────────────────────────────────────────

    def start_monitoring(self, task_id: str) -> None:
        """Move a pending task to in-progress and start its polling thread."""
        task = self._require(task_id)
        with self._lock:
            if task.status != TaskStatus.PENDING:
                raise TaskError(f"Task '{task_id}' is already {task.status}", service=task.service)
            task.status = TaskStatus.IN_PROGRESS

        self.state.update_sync_operation(task_id, status=TaskStatus.IN_PROGRESS.value)
        self._emit("sync:start", task)

        task.thread = threading.Thread(
            target=self._poll_loop,
            args=(task,),
            daemon=True,
            name=f"task-{task_id}",
        )
        task.thread.start()
        logger.info("Monitoring %s every %.0fs", task_id, task.interval)

    def _poll_loop(self, task: BackgroundTask) -> None:
        while not task.stop_event.is_set():
            self.check_task(task.id)
            if task.stop_event.wait(task.interval):
                break
        logger.debug("Polling stopped for %s", task.id)

    def check_task(self, task_id: str) -> dict[str, Any] | None:
        """Run one tick for a task.  Returns the task dict, or None if unknown."""
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            return None
        if task.finished:
            return task.to_dict()

        try:
            result = task.checker.check(task)
        except Exception as e:
            # A failing checker ends the task instead of killing its thread
            logger.warning("Status check for %s raised: %s", task_id, e)
            result = CheckResult(error=str(e) or type(e).__name__)

        with self._lock:
            if task.finished:
                # Cancelled while the check was running
                return task.to_dict()
            task.metadata.pop("waiting", None)
            task.metadata.update(result.metadata)
            if result.error:
                task.status = TaskStatus.ERROR
                task.error = result.error
                task.completed_at = time.time()
                outcome = "error"
            elif result.completed:
                task.status = TaskStatus.COMPLETE
                task.progress = 100.0
                task.completed_at = time.time()
                outcome = "complete"
            else:
                task.progress = max(0.0, min(100.0, float(result.progress)))
                persist = abs(task.progress - task.persisted_progress) > PERSIST_THRESHOLD
                if persist:
                    task.persisted_progress = task.progress
                outcome = "progress"

        if outcome == "complete":
            self._on_complete(task)
        elif outcome == "error":
            self._on_error(task)
        else:
            if persist:
                self.state.update_sync_operation(
                    task_id, progress=task.progress, metadata=dict(task.metadata),
                )
            self._emit("sync:progress", task)
        return task.to_dict()

    # ── Outcomes ────────────────────────────────────────────────

    def _on_complete(self, task: BackgroundTask) -> None:
        task.stop_event.set()
        self.state.update_sync_operation(
            task.id,
            status=TaskStatus.COMPLETE.value,
            progress=100.0,
            completed_at=_iso(task.completed_at),
            metadata=dict(task.metadata),
        )
        self.state.remove_background_task(task.id)
        logger.info("Task %s complete in %s", task.id, format_duration(task.duration_s))
        self._emit(
            "sync:complete", task,
            duration=format_duration(task.duration_s),
            duration_s=round(task.duration_s, 3),
        )

        if task.auto_switch and task.type == TaskType.NODE_SYNC:
            self._switch_to_local(task)

        task.future.set_result(task.to_dict())
        self._schedule_eviction(task)

    def _switch_to_local(self, task: BackgroundTask) -> None:
        context = {"taskId": task.id, "service": task.service}
        try:
            if self.switch_action is not None:
                self.switch_action(task)
        except (OrchestratorError, OSError) as e:
            logger.error("Switching to local node %s failed: %s", task.service, e)
            self.state.record_decision("switch-to-local-node-failed", {**context, "error": str(e)})
            return
        self.state.record_decision(SWITCH_DECISION, context)
        self._emit("node:ready", task)
        logger.info("Services switched to local node %s", task.service)

    def _on_error(self, task: BackgroundTask) -> None:
        task.stop_event.set()
        self.state.update_sync_operation(
            task.id,
            status=TaskStatus.ERROR.value,
            error=task.error,
            completed_at=_iso(task.completed_at),
        )
        self.state.remove_background_task(task.id)
        logger.warning("Task %s failed: %s", task.id, task.error)
        self._emit("sync:error", task, error=task.error)
        task.future.set_exception(TaskError(
            task.error or "Task failed",
            stage=task.type,
            service=task.service,
            details={"taskId": task.id},
        ))
        self._schedule_eviction(task)

    def cancel_task(self, task_id: str) -> bool:
        """Stop a task.  Returns False if it is unknown or already finished."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.finished:
                return False
            task.status = TaskStatus.CANCELLED
            task.completed_at = time.time()

        task.stop_event.set()
        self.state.update_sync_operation(
            task_id,
            status=TaskStatus.CANCELLED.value,
            completed_at=_iso(task.completed_at),
        )
        self.state.remove_background_task(task_id)
        self._emit("sync:cancelled", task)
        task.future.cancel()
        logger.info("Task %s cancelled", task_id)
        self._schedule_eviction(task)
        return True

    # ── Retention ───────────────────────────────────────────────

    def _schedule_eviction(self, task: BackgroundTask) -> None:
        if self.grace <= 0:
            self._evict(task.id)
            return
        timer = threading.Timer(self.grace, self._evict, args=(task.id,))
        timer.daemon = True
        task.evict_timer = timer
        timer.start()

    def _evict(self, task_id: str) -> None:
        with self._lock:
            if self._tasks.pop(task_id, None) is not None:
                logger.debug("Evicted task %s", task_id)

    def cleanup_old_tasks(self, max_age: float = 3600.0) -> int:
        """Drop tasks started more than ``max_age`` seconds ago; active ones are cancelled first."""
        cutoff = time.time() - max_age
        with self._lock:
            old = [t for t in self._tasks.values() if t.started_at < cutoff]
        for task in old:
            if not task.finished:
                self.cancel_task(task.id)
            if task.evict_timer is not None:
                task.evict_timer.cancel()
            self._evict(task.id)
        if old:
            logger.info("Cleaned up %d old task(s)", len(old))
        return len(old)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop every polling thread; task state is left as recorded."""
        with self._lock:
            tasks = list(self._tasks.values())
        for task in tasks:
            task.stop_event.set()
            if task.evict_timer is not None:
                task.evict_timer.cancel()
        for task in tasks:
            if task.thread is not None and task.thread is not threading.current_thread():
                task.thread.join(timeout)
        logger.debug("Task monitor shut down (%d task(s))", len(tasks))

    # ── Recovery ────────────────────────────────────────────────

    def adopt_orphans(self) -> list[str]:
        """Re-attach tasks an earlier process left active in the state file.

        Polling threads die with the process that started them, so the
        state can reference pending or in-progress tasks nobody watches.
        Each one whose type has a checker gets a monitor entry again,
        ``pending`` with its recorded progress, ready for
        ``start_monitoring``.  The rest are marked cancelled and
        unreferenced.

        Returns:
            Ids of the adopted tasks.
        """
        active = {TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value}
        state = self.state.load()
        adopted: list[str] = []

        for op in state.sync_operations:
            if op.status not in active:
                continue
            with self._lock:
                if op.id in self._tasks:
                    continue
            checker = self.checkers.get(op.type)
            if op.id not in state.background_tasks or checker is None:
                self._retire_orphan(op.id)
                continue

            task = BackgroundTask(
                id=op.id,
                type=op.type,
                service=op.service,
                checker=checker,
                interval=self.interval,
                auto_switch=op.auto_switch,
                progress=op.progress,
                persisted_progress=op.progress,
                metadata=dict(op.metadata),
                started_at=_timestamp(op.started_at),
            )
            with self._lock:
                self._tasks.setdefault(op.id, task)
            adopted.append(op.id)

        # References without an active sync operation behind them
        known = {op.id for op in state.sync_operations if op.status in active}
        for task_id in state.background_tasks:
            if task_id not in known:
                self.state.remove_background_task(task_id)

        if adopted:
            logger.info("Adopted %d unfinished task(s): %s", len(adopted), ", ".join(adopted))
        return adopted

    def _retire_orphan(self, task_id: str) -> None:
        self.state.update_sync_operation(
            task_id,
            status=TaskStatus.CANCELLED.value,
            completed_at=_iso(time.time()),
        )
        self.state.remove_background_task(task_id)
        logger.warning("Task %s cannot be resumed; marked cancelled", task_id)

    # ── Queries ─────────────────────────────────────────────────

    def active_task(self, type: str, service: str) -> str | None:
        """Id of an unfinished task of this type for the service, if any."""
        with self._lock:
            for task in self._tasks.values():
                if task.type == type and task.service == service and not task.finished:
                    return task.id
        return None

    def _require(self, task_id: str) -> BackgroundTask:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise TaskError(f"Unknown task '{task_id}'")
        return task

    def get(self, task_id: str) -> dict[str, Any] | None:
        with self._lock:
            task = self._tasks.get(task_id)
        return task.to_dict() if task else None

    def completion(self, task_id: str) -> Future:
        """The future that settles when the task finishes."""
        return self._require(task_id).future

    def list_tasks(self) -> list[dict[str, Any]]:
        with self._lock:
            tasks = list(self._tasks.values())
        return [t.to_dict() for t in tasks]

    # ── Events ──────────────────────────────────────────────────

    def _emit(self, event_type: str, task: BackgroundTask, **extra: Any) -> None:
        data = {
            "taskId": task.id,
            "service": task.service,
            "type": task.type,
            "status": task.status.value,
            "progress": task.progress,
            "timestamp": datetime.now(UTC).isoformat(),
            **task.metadata,
            **extra,
        }
        self.bus.publish(event_type, key=task.id, data=data)
