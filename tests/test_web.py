"""Tests for the FastAPI control surface."""

import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from foundry.core.escalation import EscalationRegistry, EscalationRequest
from foundry.core.events import EventBus
from foundry.guardian.types import GuardianStats


class FakeExecutor:
    """Stands in for PhasedExecutor. Every run blocks on one escalation."""

    def __init__(self, root):
        self.guardian = MagicMock()
        self.guardian.root = root
        self.guardian.cleanup_snapshots = AsyncMock(return_value=2)
        self.guardian.get_stats.return_value = GuardianStats(total_audits=3, passed_audits=2, failed_audits=1)
        self.escalation = EscalationRegistry(timeout=5)
        self.events = EventBus()
        self.tasks = []
        self.answers = []
        self.aborted = False
        self._active = None

    @property
    def is_executing(self):
        return self._active is not None

    @property
    def active_task_id(self):
        return self._active.id if self._active else None

    def abort(self):
        if self._active is None:
            return False
        self.aborted = True
        return True

    def status(self):
        return {"executing": self.is_executing, "task_id": self.active_task_id}

    async def execute(self, task):
        self._active = task
        self.tasks.append(task)
        try:
            self.answers.append(await self.escalation.escalate(EscalationRequest(
                title="Clarification needed before engineering",
                options=["Proceed with assumptions", "Abort"],
                kind="knowledge_gap",
                task_id=task.id,
            )))
        finally:
            self._active = None


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def executor(tmp_path):
    return FakeExecutor(tmp_path)


@pytest.fixture
def client(executor):
    from fastapi.testclient import TestClient

    from foundry.web.server import create_app
    with TestClient(create_app(executor)) as c:
        yield c


def _start(client, executor, **body):
    resp = client.post("/api/tasks", json={"description": "Add invoice pagination", **body})
    assert resp.status_code == 202
    assert _wait_for(lambda: executor.escalation.is_pending)
    return resp.json()["task_id"]


class TestLifespan:
    def test_stale_snapshots_cleaned_on_startup(self, client, executor):
        executor.guardian.cleanup_snapshots.assert_awaited_once()

    def test_pending_run_cancelled_on_shutdown(self, executor):
        from fastapi.testclient import TestClient

        from foundry.web.server import create_app
        with TestClient(create_app(executor)) as c:
            _start(c, executor)
        assert executor.aborted is True
        assert executor.is_executing is False
        assert executor.escalation.is_pending is False


class TestSubmitTask:
    def test_submit_starts_run(self, client, executor, tmp_path):
        task_id = _start(client, executor, constraints=["keep the public API"], subtask_type="code")

        (task,) = executor.tasks
        assert task.id == task_id
        assert task.description == "Add invoice pagination"
        assert task.codebase_path == str(tmp_path)
        assert task.constraints == ("keep the public API",)
        assert task.subtask_type == "code"

    def test_explicit_codebase_path(self, client, executor):
        _start(client, executor, codebase_path="/srv/billing")
        assert executor.tasks[0].codebase_path == "/srv/billing"

    def test_second_submit_while_running_conflicts(self, client, executor):
        task_id = _start(client, executor)
        resp = client.post("/api/tasks", json={"description": "Something else"})
        assert resp.status_code == 409
        assert resp.json()["task_id"] == task_id
        assert len(executor.tasks) == 1

    def test_empty_description_rejected(self, client, executor):
        resp = client.post("/api/tasks", json={"description": "   "})
        assert resp.status_code == 400
        assert executor.tasks == []

    def test_unknown_subtask_type_rejected(self, client):
        resp = client.post("/api/tasks", json={"description": "x", "subtask_type": "deploy"})
        assert resp.status_code == 422


class TestStatusAndAbort:
    def test_status_idle(self, client):
        resp = client.get("/api/status")
        assert resp.status_code == 200
        assert resp.json() == {"executing": False, "task_id": None}

    def test_status_while_running(self, client, executor):
        task_id = _start(client, executor)
        assert client.get("/api/status").json() == {"executing": True, "task_id": task_id}

    def test_abort_without_run_conflicts(self, client):
        resp = client.post("/api/abort")
        assert resp.status_code == 409

    def test_abort_releases_pending_escalation(self, client, executor):
        task_id = _start(client, executor)

        resp = client.post("/api/abort")

        assert resp.status_code == 200
        assert resp.json() == {"status": "aborting", "task_id": task_id}
        assert _wait_for(lambda: not executor.is_executing)
        assert executor.answers == [None]


class TestEscalation:
    def test_nothing_pending(self, client):
        assert client.get("/api/escalation").json() == {"pending": None}

    def test_pending_request_visible(self, client, executor):
        task_id = _start(client, executor)
        pending = client.get("/api/escalation").json()["pending"]
        assert pending["kind"] == "knowledge_gap"
        assert pending["task_id"] == task_id
        assert pending["options"] == ["Proceed with assumptions", "Abort"]

    def test_respond_without_pending_is_404(self, client):
        resp = client.post("/api/escalation/respond", json={"response": "yes"})
        assert resp.status_code == 404

    def test_empty_response_rejected(self, client, executor):
        _start(client, executor)
        resp = client.post("/api/escalation/respond", json={"response": "  "})
        assert resp.status_code == 400
        assert executor.escalation.is_pending

    def test_response_delivered(self, client, executor):
        _start(client, executor)

        resp = client.post(
            "/api/escalation/respond", json={"response": "", "selected_option": "Proceed with assumptions"},
        )

        assert resp.status_code == 200
        assert resp.json() == {"status": "delivered"}
        assert _wait_for(lambda: executor.answers)
        assert executor.answers[0].selected_option == "Proceed with assumptions"
        assert client.get("/api/escalation").json() == {"pending": None}


class TestEventsAndStats:
    def test_events_returned_newest_last(self, client, executor):
        executor.events.phase_start("t1", "context")
        executor.events.phase_end("t1", "context", "CTX|files:4", 12)

        events = client.get("/api/events?limit=5").json()["events"]

        assert [e["category"] for e in events] == ["phase_start", "phase_end"]
        assert events[1]["detail"] == "CTX|files:4"
        assert events[1]["metadata"] == {"phase": "context", "duration_ms": 12}

    def test_events_limit(self, client, executor):
        for i in range(10):
            executor.events.gate("t1", "shadow_search", "warn", str(i))
        events = client.get("/api/events?limit=3").json()["events"]
        assert [e["detail"] for e in events] == ["7", "8", "9"]

    def test_guardian_stats(self, client):
        stats = client.get("/api/guardian/stats").json()
        assert stats["total_audits"] == 3
        assert stats["failed_audits"] == 1
        assert stats["issues_by_severity"]["critical"] == 0
