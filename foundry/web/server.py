"""FastAPI control surface for one PhasedExecutor.

The executor is injected through ``create_app``; ``foundry.main`` builds it
from settings.  Runs start in the background and are observed through
``/api/status`` and ``/api/events``.  Pending escalations are answered
through ``/api/escalation/respond``.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from foundry import __version__
from foundry.core.escalation import EscalationRegistry
from foundry.core.logging import get_logger
from foundry.core.orchestrator import PhasedExecutor
from foundry.core.state import ExecutionTask, SubtaskType

logger = get_logger("web.server")


# ── Models ────────────────────────────────────────────────────────────────

class TaskRequest(BaseModel):
    description: str
    specification: str = ""
    codebase_path: str = ""
    constraints: list[str] = []
    subtask_type: SubtaskType | None = None


class EscalationAnswer(BaseModel):
    response: str
    selected_option: str | None = None


# ── App factory ───────────────────────────────────────────────────────────

def create_app(executor: PhasedExecutor) -> FastAPI:
    run_task: asyncio.Task | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        removed = await executor.guardian.cleanup_snapshots()
        if removed:
            logger.info("Removed %d stale snapshot backup(s)", removed)
        logger.info("Web server started | working tree %s", executor.guardian.root)
        yield
        if run_task is not None and not run_task.done():
            executor.abort()
            if isinstance(executor.escalation, EscalationRegistry):
                executor.escalation.clear()
            run_task.cancel()
            with suppress(asyncio.CancelledError):
                await run_task
        logger.info("Lifespan cleanup complete")

    app = FastAPI(title="foundry", version=__version__, lifespan=lifespan)
    app.state.executor = executor

    async def _run(task: ExecutionTask) -> None:
        try:
            result = await executor.execute(task)
            logger.info("Task %s finished | success=%s", task.id, result.success)
        except Exception as e:
            logger.error("Task %s crashed: %s", task.id, e, exc_info=True)

    @app.post("/api/tasks")
    async def submit_task(req: TaskRequest):
        nonlocal run_task
        if executor.is_executing or (run_task is not None and not run_task.done()):
            return JSONResponse(
                {"error": "A run is already in progress", "task_id": executor.active_task_id},
                status_code=409,
            )
        description = req.description.strip()
        if not description:
            return JSONResponse({"error": "Description must not be empty"}, status_code=400)

        task = ExecutionTask(
            id=uuid.uuid4().hex[:12],
            description=description,
            specification=req.specification,
            codebase_path=req.codebase_path or str(executor.guardian.root),
            constraints=tuple(req.constraints),
            subtask_type=req.subtask_type,
        )
        run_task = asyncio.create_task(_run(task))
        logger.info("Task %s accepted | %s", task.id, description[:100])
        return JSONResponse({"status": "started", "task_id": task.id}, status_code=202)

    @app.get("/api/status")
    async def get_status():
        return executor.status()

    @app.post("/api/abort")
    async def abort():
        if not executor.abort():
            return JSONResponse({"error": "No active run"}, status_code=409)
        # A run blocked on a human answer would otherwise wait for the timeout
        if isinstance(executor.escalation, EscalationRegistry):
            executor.escalation.clear()
        return {"status": "aborting", "task_id": executor.active_task_id}

    @app.get("/api/escalation")
    async def get_escalation():
        """Return the pending escalation (for page-reload recovery)."""
        registry = executor.escalation
        pending = registry.pending if isinstance(registry, EscalationRegistry) else None
        return {"pending": pending.model_dump() if pending else None}

    @app.post("/api/escalation/respond")
    async def respond(req: EscalationAnswer):
        registry = executor.escalation
        if not isinstance(registry, EscalationRegistry) or not registry.is_pending:
            return JSONResponse({"error": "No pending escalation"}, status_code=404)
        answer = req.response.strip()
        if not answer and not req.selected_option:
            return JSONResponse({"error": "Response must not be empty"}, status_code=400)
        if not registry.respond(answer, req.selected_option):
            return JSONResponse({"error": "No pending escalation"}, status_code=404)
        return {"status": "delivered"}

    @app.get("/api/events")
    async def get_events(limit: int = 200):
        """Return recent pipeline events."""
        return {"events": executor.events.history(limit)}

    @app.get("/api/guardian/stats")
    async def guardian_stats():
        return executor.guardian.get_stats().model_dump(mode="json")

    return app
