"""Event bus for pipeline activity: decouples the orchestrator from the UI layer.

The orchestrator owns one ``EventBus`` instance and publishes structured
events on it; the web server reads its history and may subscribe listeners.

Event categories:
  phase_start   a pipeline phase begins
  phase_end     a pipeline phase finished (carries its compressed token)
  gate          a pre-engineering or containment gate made a decision
  fix_attempt   the fix loop started a tier
  audit         the guardian finished an audit
  rollback      the guardian restored the working tree
  escalation    a human was asked something
  error         the run failed
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from foundry.core.logging import get_logger

logger = get_logger("core.events")


class EventCategory(StrEnum):
    PHASE_START = "phase_start"
    PHASE_END = "phase_end"
    GATE = "gate"
    FIX_ATTEMPT = "fix_attempt"
    AUDIT = "audit"
    ROLLBACK = "rollback"
    ESCALATION = "escalation"
    ERROR = "error"


@dataclass
class PipelineEvent:
    """A single event emitted during a run."""
    category: EventCategory
    task_id: str
    title: str
    detail: str = ""
    metadata: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "task_id": self.task_id,
            "title": self.title,
            "detail": self.detail,
            "metadata": self.metadata,
            "ts": self.timestamp,
        }


class EventBus:
    def __init__(self, max_history: int = 1000) -> None:
        self._listeners: list[Callable[[PipelineEvent], Any]] = []
        self._async_listeners: list[Callable[[PipelineEvent], Awaitable[Any]]] = []
        self._history: deque[PipelineEvent] = deque(maxlen=max_history)

    def emit(self, event: PipelineEvent) -> None:
        self._history.append(event)
        logger.debug("EVENT | %s | %s | %s", event.category.value, event.task_id, event.title)

        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning("Sync listener error: %s", e)

        if not self._async_listeners:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; async listeners skipped for %s", event.category.value)
            return
        for listener in self._async_listeners:
            loop.create_task(listener(event))

    def subscribe(self, listener: Callable[[PipelineEvent], Any]) -> None:
        self._listeners.append(listener)

    def subscribe_async(self, listener: Callable[[PipelineEvent], Awaitable[Any]]) -> None:
        self._async_listeners.append(listener)

    def history(self, limit: int = 200) -> list[dict]:
        items = list(self._history)
        return [e.to_dict() for e in items[-limit:]] if limit > 0 else []

    def clear(self) -> None:
        self._history.clear()

    # ── Convenience emitters ──────────────────────────────────────────

    def phase_start(self, task_id: str, phase: str) -> None:
        self.emit(PipelineEvent(EventCategory.PHASE_START, task_id, f"Phase {phase} started",
                                metadata={"phase": phase}))

    def phase_end(self, task_id: str, phase: str, token: str, duration_ms: int) -> None:
        self.emit(PipelineEvent(EventCategory.PHASE_END, task_id, f"Phase {phase} finished", detail=token,
                                metadata={"phase": phase, "duration_ms": duration_ms}))

    def gate(self, task_id: str, gate: str, decision: str, detail: str = "") -> None:
        self.emit(PipelineEvent(EventCategory.GATE, task_id, f"{gate} gate: {decision}", detail=detail,
                                metadata={"gate": gate, "decision": decision}))

    def fix_attempt(self, task_id: str, tier: int, description: str) -> None:
        self.emit(PipelineEvent(EventCategory.FIX_ATTEMPT, task_id, f"Fix tier {tier}: {description}",
                                metadata={"tier": tier}))

    def audit(self, task_id: str, token: str, passed: bool) -> None:
        self.emit(PipelineEvent(EventCategory.AUDIT, task_id, "Audit passed" if passed else "Audit failed",
                                detail=token, metadata={"passed": passed}))

    def rollback(self, task_id: str, method: str, success: bool, restored: int) -> None:
        self.emit(PipelineEvent(EventCategory.ROLLBACK, task_id, f"Rollback via {method}",
                                metadata={"success": success, "files_restored": restored}))

    def escalation(self, task_id: str, title: str, answered: bool) -> None:
        self.emit(PipelineEvent(EventCategory.ESCALATION, task_id, title, metadata={"answered": answered}))

    def error(self, task_id: str, message: str) -> None:
        self.emit(PipelineEvent(EventCategory.ERROR, task_id, "Run failed", detail=message))
