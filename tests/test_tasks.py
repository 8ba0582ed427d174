"""
Tests for background tasks — status checkers and the task monitor.
"""

from concurrent.futures import CancelledError

import pytest

from src.core.config.env_file import read_env_file
from src.core.errors import InfrastructureError, TaskError
from src.core.models.wizard_state import SyncOperation
from src.core.services.status_checkers import (
    CallableChecker,
    CheckResult,
    DatabaseMigrationChecker,
    IndexerSyncChecker,
    NodeSyncChecker,
    NodeSyncProbe,
    format_duration,
)
from src.core.services.tasks import (
    SWITCH_DECISION,
    BackgroundTask,
    BackgroundTaskMonitor,
    TaskStatus,
    TaskType,
)


def _task(**kw) -> BackgroundTask:
    defaults = {"id": "t1", "type": "node-sync", "service": "kaspa-node",
                "checker": CallableChecker(lambda t: CheckResult()), "interval": 1.0}
    defaults.update(kw)
    return BackgroundTask(**defaults)


class _Script:
    """Checker function that answers from a list, repeating the last answer."""

    def __init__(self, *answers) -> None:
        self.answers = list(answers)
        self.calls = 0

    def __call__(self, task):
        self.calls += 1
        if len(self.answers) > 1:
            return self.answers.pop(0)
        return self.answers[0]


@pytest.fixture
def monitor(store, bus) -> BackgroundTaskMonitor:
    m = BackgroundTaskMonitor(store, bus, interval=0.01, grace=60)
    yield m
    m.shutdown()


def _register(monitor, checker, task_id="t1", **kw) -> str:
    monitor.register(task_id, type=kw.pop("type", "indexer-sync"), service="kasia-indexer",
                     checker=CallableChecker(checker), **kw)
    return task_id


# ── Checkers ────────────────────────────────────────────────────


class TestFormatDuration:
    @pytest.mark.parametrize("seconds,text", [
        (None, "unknown"), (-1, "unknown"), (42, "42s"), (185, "3m 5s"),
        (7800, "2h 10m"), (93600, "1d 2h"),
    ])
    def test_format(self, seconds, text):
        assert format_duration(seconds) == text


class TestNodeSyncChecker:
    def _checker(self, answers, **kw):
        answers = list(answers)
        probe = NodeSyncProbe(fetch=lambda payload: answers.pop(0) if len(answers) > 1 else answers[0])
        clock = iter([0.0, 10.0, 20.0, 30.0])
        return NodeSyncChecker(probe, clock=lambda: next(clock), **kw)

    def test_progress_and_rate(self):
        checker = self._checker([
            {"result": {"blockCount": 100, "headerCount": 1000}},
            {"result": {"blockCount": 300, "headerCount": 1000}},
        ])
        task = _task()
        first = checker.check(task)
        assert first.progress == 10.0
        assert first.metadata["sync_rate"] == 0.0
        assert first.metadata["formatted_time_remaining"] == "unknown"

        second = checker.check(task)
        assert second.progress == 30.0
        assert second.metadata["sync_rate"] == 20.0
        assert second.metadata["blocks_remaining"] == 700
        assert second.metadata["estimated_time_remaining"] == 35.0
        assert second.metadata["formatted_time_remaining"] == "35s"

    def test_synced_flag(self):
        checker = self._checker([{"result": {"blockCount": 5, "headerCount": 1000, "isSynced": True}}])
        result = checker.check(_task())
        assert result.completed
        assert result.progress == 100.0

    def test_caught_up_is_synced(self):
        checker = self._checker([{"result": {"blockCount": 1000, "headerCount": 1000}}])
        assert checker.check(_task()).completed

    def test_progress_capped_below_complete(self):
        checker = self._checker([{"result": {"blockCount": 999999, "headerCount": 1000000}}])
        assert checker.check(_task()).progress == 99.9

    def test_unreachable_tolerated_then_error(self):
        def down(payload):
            raise OSError("connection refused")

        checker = NodeSyncChecker(NodeSyncProbe(fetch=down), max_unreachable=3)
        task = _task()
        assert checker.check(task).metadata == {"waiting": "Node not reachable"}
        assert checker.check(task).error is None
        assert "after 3 attempts" in checker.check(task).error

    def test_reachable_resets_counter(self):
        answers = [None, {"result": {"blockCount": 1, "headerCount": 10}}, None]

        def fetch(payload):
            answer = answers.pop(0)
            if answer is None:
                raise OSError("down")
            return answer

        checker = NodeSyncChecker(NodeSyncProbe(fetch=fetch), max_unreachable=2, clock=lambda: 0.0)
        task = _task()
        checker.check(task)
        checker.check(task)
        assert checker.check(task).error is None

    def test_malformed_response(self):
        probe = NodeSyncProbe(fetch=lambda payload: {"error": "method not found"})
        assert probe.dag_info() is None


class TestIndexerSyncChecker:
    def test_progress_field(self):
        checker = IndexerSyncChecker(fetch=lambda url: {"progress": 42.5})
        assert checker.check(_task(metadata={"status_url": "http://x"})).progress == 42.5

    def test_indexed_over_target(self):
        checker = IndexerSyncChecker(fetch=lambda url: {"indexed": 25, "target": 100})
        result = checker.check(_task(metadata={"status_url": "http://x"}))
        assert result.progress == 25.0
        assert result.metadata == {"indexed": 25, "target": 100}

    def test_synced(self):
        checker = IndexerSyncChecker(fetch=lambda url: {"isSynced": True})
        assert checker.check(_task(metadata={"status_url": "http://x"})).completed

    def test_reported_error(self):
        checker = IndexerSyncChecker(fetch=lambda url: {"error": "db down"})
        assert checker.check(_task(metadata={"status_url": "http://x"})).error == "db down"

    def test_missing_url(self):
        assert "No status URL" in IndexerSyncChecker().check(_task()).error


class TestDatabaseMigrationChecker:
    class _Client:
        def __init__(self, containers=None, error=None):
            self._containers = containers or {}
            self._error = error

        def containers(self):
            if self._error:
                raise self._error
            return self._containers

    def test_running(self):
        client = self._Client({"db": {"state": "running", "status": "Up 3s (health: starting)"}})
        result = DatabaseMigrationChecker(client).check(_task(service="db"))
        assert result.progress == 50.0

    def test_healthy(self):
        client = self._Client({"db": {"state": "running", "status": "Up 1m (healthy)"}})
        assert DatabaseMigrationChecker(client).check(_task(service="db")).completed

    def test_unhealthy_is_not_complete(self):
        client = self._Client({"db": {"state": "running", "status": "Up 1m (unhealthy)"}})
        assert not DatabaseMigrationChecker(client).check(_task(service="db")).completed

    def test_exited_cleanly(self):
        client = self._Client({"db": {"state": "exited", "status": "Exited (0) 1 minute ago"}})
        assert DatabaseMigrationChecker(client).check(_task(service="db")).completed

    def test_exited_with_error(self):
        client = self._Client({"db": {"state": "exited", "status": "Exited (1) 1 minute ago"}})
        assert "exited" in DatabaseMigrationChecker(client).check(_task(service="db")).error

    def test_docker_unavailable_waits(self):
        client = self._Client(error=InfrastructureError("daemon down"))
        result = DatabaseMigrationChecker(client).check(_task(service="db"))
        assert result.error is None
        assert result.metadata["waiting"] == "daemon down"


# ── Monitor ─────────────────────────────────────────────────────


class TestRegistration:
    def test_register_records_state(self, monitor, store):
        _register(monitor, _Script(CheckResult()))
        state = store.load()
        assert state.background_tasks == ["t1"]
        assert state.get_sync_operation("t1").status == "pending"
        assert monitor.get("t1")["status"] == "pending"

    def test_duplicate_id(self, monitor):
        _register(monitor, _Script(CheckResult()))
        with pytest.raises(TaskError, match="already registered"):
            _register(monitor, _Script(CheckResult()))

    def test_missing_fields(self, monitor):
        with pytest.raises(TaskError):
            monitor.register("", type="node-sync", service="kaspa-node")

    def test_no_checker_for_type(self, monitor):
        with pytest.raises(TaskError, match="No status checker"):
            monitor.register("t1", type="node-sync", service="kaspa-node")

    def test_start_twice(self, monitor):
        _register(monitor, _Script(CheckResult(progress=1.0)), interval=60)
        monitor.start_monitoring("t1")
        with pytest.raises(TaskError, match="already"):
            monitor.start_monitoring("t1")

    def test_unknown_task(self, monitor):
        with pytest.raises(TaskError, match="Unknown task"):
            monitor.start_monitoring("nope")
        assert monitor.check_task("nope") is None
        assert monitor.get("nope") is None


class TestChecking:
    def test_progress_persisted_past_threshold(self, monitor, store, bus):
        script = _Script(
            CheckResult(progress=0.5),
            CheckResult(progress=1.5),
            CheckResult(progress=2.0),
        )
        _register(monitor, script)
        monitor.check_task("t1")
        assert store.load().get_sync_operation("t1").progress == 0.0
        monitor.check_task("t1")
        assert store.load().get_sync_operation("t1").progress == 1.5
        monitor.check_task("t1")
        assert store.load().get_sync_operation("t1").progress == 1.5
        assert monitor.get("t1")["progress"] == 2.0
        assert len(bus.history("sync:progress")) == 3

    def test_progress_event_payload(self, monitor, bus):
        _register(monitor, _Script(CheckResult(progress=12.0, metadata={"current_block": 7})))
        monitor.check_task("t1")
        data = bus.history("sync:progress")[0]["data"]
        assert data["taskId"] == "t1"
        assert data["service"] == "kasia-indexer"
        assert data["progress"] == 12.0
        assert data["current_block"] == 7
        assert "timestamp" in data

    def test_waiting_cleared_on_next_answer(self, monitor):
        _register(monitor, _Script(
            CheckResult(metadata={"waiting": "not reachable"}),
            CheckResult(progress=5.0),
        ))
        monitor.check_task("t1")
        assert monitor.get("t1")["metadata"]["waiting"] == "not reachable"
        monitor.check_task("t1")
        assert "waiting" not in monitor.get("t1")["metadata"]

    def test_complete(self, monitor, store, bus):
        _register(monitor, _Script(CheckResult(completed=True)))
        result = monitor.check_task("t1")
        assert result["status"] == "complete"
        assert result["progress"] == 100.0
        assert monitor.completion("t1").result(timeout=1)["status"] == "complete"

        state = store.load()
        assert state.background_tasks == []
        op = state.get_sync_operation("t1")
        assert op.status == "complete"
        assert op.completed_at

        completes = bus.history("sync:complete")
        assert len(completes) == 1
        assert "duration" in completes[0]["data"]

    def test_finished_task_not_checked_again(self, monitor, bus):
        script = _Script(CheckResult(completed=True))
        _register(monitor, script)
        monitor.check_task("t1")
        monitor.check_task("t1")
        assert script.calls == 1
        assert len(bus.history("sync:complete")) == 1

    def test_error(self, monitor, store, bus):
        _register(monitor, _Script(CheckResult(error="indexer crashed")))
        monitor.check_task("t1")
        assert store.load().get_sync_operation("t1").error == "indexer crashed"
        assert bus.history("sync:error")[0]["data"]["error"] == "indexer crashed"
        with pytest.raises(TaskError, match="indexer crashed"):
            monitor.completion("t1").result(timeout=1)

    def test_raising_checker_becomes_error(self, monitor):
        def boom(task):
            raise RuntimeError("kaboom")

        _register(monitor, boom)
        assert monitor.check_task("t1")["error"] == "kaboom"

    def test_cancel(self, monitor, store, bus):
        _register(monitor, _Script(CheckResult(progress=3.0)))
        assert monitor.cancel_task("t1")
        assert not monitor.cancel_task("t1")
        assert not monitor.cancel_task("nope")
        assert monitor.get("t1")["status"] == "cancelled"
        assert store.load().get_sync_operation("t1").status == "cancelled"
        assert len(bus.history("sync:cancelled")) == 1
        with pytest.raises(CancelledError):
            monitor.completion("t1").result(timeout=1)

    def test_no_grace_evicts_immediately(self, store, bus):
        monitor = BackgroundTaskMonitor(store, bus, grace=0)
        _register(monitor, _Script(CheckResult(completed=True)))
        monitor.check_task("t1")
        assert monitor.get("t1") is None

    def test_cleanup_old_tasks(self, monitor):
        _register(monitor, _Script(CheckResult()))
        assert monitor.cleanup_old_tasks(max_age=3600) == 0
        assert monitor.cleanup_old_tasks(max_age=-1) == 1
        assert monitor.list_tasks() == []


class TestPolling:
    def test_thread_polls_until_complete(self, monitor):
        script = _Script(CheckResult(progress=10.0), CheckResult(progress=60.0), CheckResult(completed=True))
        _register(monitor, script)
        monitor.start_monitoring("t1")
        result = monitor.completion("t1").result(timeout=5)
        assert result["status"] == TaskStatus.COMPLETE.value
        assert script.calls == 3


class TestRecovery:
    """Tasks left active by an earlier process."""

    @pytest.fixture
    def restarted(self, store, bus) -> BackgroundTaskMonitor:
        m = BackgroundTaskMonitor(
            store, bus, interval=0.01, grace=60,
            checkers={TaskType.NODE_SYNC: CallableChecker(lambda t: CheckResult(progress=50.0))},
        )
        yield m
        m.shutdown()

    def test_adopts_in_progress_sync(self, restarted, store):
        store.add_background_task(SyncOperation(
            id="node-sync-kaspa-node-1", type="node-sync", service="kaspa-node",
            status="in-progress", progress=42.0, auto_switch=True,
        ))

        assert restarted.adopt_orphans() == ["node-sync-kaspa-node-1"]
        info = restarted.get("node-sync-kaspa-node-1")
        assert info["status"] == "pending"
        assert info["progress"] == 42.0
        assert restarted.active_task(TaskType.NODE_SYNC, "kaspa-node") == "node-sync-kaspa-node-1"

    def test_register_reuses_adopted_task(self, restarted, store):
        store.add_background_task(SyncOperation(
            id="node-sync-kaspa-node-1", type="node-sync", service="kaspa-node", status="in-progress",
        ))
        restarted.adopt_orphans()

        task_id = restarted.register_node_sync(start=False, interval=0.5)
        assert task_id == "node-sync-kaspa-node-1"
        assert [op.id for op in store.load().sync_operations] == [task_id]

    def test_unknown_type_retired(self, restarted, store):
        store.add_background_task(SyncOperation(
            id="m1", type="database-migration", service="k-social-db", status="pending",
        ))

        assert restarted.adopt_orphans() == []
        state = store.load()
        assert state.background_tasks == []
        assert state.get_sync_operation("m1").status == "cancelled"
        assert state.get_sync_operation("m1").completed_at is not None

    def test_stale_reference_dropped(self, restarted, store):
        store.add_background_task(SyncOperation(
            id="n1", type="node-sync", service="kaspa-node", status="complete",
        ))

        assert restarted.adopt_orphans() == []
        assert store.load().background_tasks == []

    def test_no_active_task(self, restarted):
        assert restarted.active_task(TaskType.NODE_SYNC, "kaspa-node") is None


class TestNodeSync:
    """Node sync through the wired application context."""

    def test_synced_on_first_poll_switches_to_local(self, app, node_rpc):
        (app.env_path).write_text("KASPA_NODE_CONNECTION=public\n")
        node_rpc.update(blockCount=1000, headerCount=1000, isSynced=True)

        task_id = app.monitor.register_node_sync(start=False)
        result = app.monitor.check_task(task_id)

        assert result["status"] == "complete"
        assert result["progress"] == 100.0
        assert len(app.bus.history("sync:complete")) == 1
        assert len(app.bus.history("node:ready")) == 1
        decisions = [d.decision for d in app.state.load().user_decisions]
        assert decisions.count(SWITCH_DECISION) == 1
        assert read_env_file(app.env_path)["KASPA_NODE_CONNECTION"] == "local"

    def test_no_switch_when_disabled(self, app, node_rpc):
        node_rpc.update(isSynced=True)
        task_id = app.monitor.register_node_sync(auto_switch=False, start=False)
        app.monitor.check_task(task_id)
        assert not app.bus.history("node:ready")
        assert not app.env_path.exists()

    def test_still_syncing(self, app):
        task_id = app.monitor.register_node_sync(start=False)
        result = app.monitor.check_task(task_id)
        assert result["status"] == TaskStatus.PENDING.value
        assert result["progress"] == 10.0
        assert result["metadata"]["target_block"] == 1000

    def test_switch_failure_recorded(self, store, bus):
        def fail(task):
            raise OSError("read-only filesystem")

        monitor = BackgroundTaskMonitor(store, bus, switch_action=fail)
        monitor.register("n1", type=TaskType.NODE_SYNC, service="kaspa-node", auto_switch=True,
                         checker=CallableChecker(lambda t: CheckResult(completed=True)))
        monitor.check_task("n1")
        decisions = [d.decision for d in store.load().user_decisions]
        assert decisions == ["switch-to-local-node-failed"]
        assert not bus.history("node:ready")
        assert monitor.completion("n1").result(timeout=1)["status"] == "complete"
