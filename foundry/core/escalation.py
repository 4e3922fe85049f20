"""Human escalation channel: decouples the orchestrator from the interface that answers.

The orchestrator awaits ``escalate(request)``; whichever interface is
attached (the web API by default) reads ``pending`` and calls ``respond()``.
A timeout or a cleared request yields ``None``, which callers must treat as
"no answer", never as approval.

Usage
-----
::

    registry = EscalationRegistry(timeout=600)
    response = await registry.escalate(EscalationRequest(title="...", ...))

    # web server resolves it:
    registry.respond("abort", selected_option="Abort")
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from foundry.core.logging import get_logger

logger = get_logger("core.escalation")


class EscalationRequest(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    title: str
    context: str = ""
    options: list[str] = Field(default_factory=list)
    blocking: bool = True
    kind: str = "general"   # knowledge_gap | shadow_gate | containment | fix_loop_exhausted
    task_id: str = ""
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class EscalationResponse(BaseModel):
    response: str
    selected_option: str | None = None

    def says(self, word: str) -> bool:
        """True if the free-text response or the selected option mentions *word*."""
        word = word.lower()
        return word in self.response.lower() or word in (self.selected_option or "").lower()


@runtime_checkable
class EscalationChannel(Protocol):
    async def escalate(self, request: EscalationRequest) -> EscalationResponse | None: ...


class EscalationRegistry:
    """In-process channel holding at most one pending escalation.

    ``respond`` may be called from any thread; the waiting coroutine is
    resumed on its own event loop.
    """

    def __init__(self, timeout: float | None = 600.0) -> None:
        self.timeout = timeout
        self._lock = threading.Lock()
        self._pending: EscalationRequest | None = None
        self._future: asyncio.Future[EscalationResponse | None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    # ── Orchestrator side ─────────────────────────────────────────────

    async def escalate(self, request: EscalationRequest) -> EscalationResponse | None:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[EscalationResponse | None] = loop.create_future()
        with self._lock:
            if self._future is not None and not self._future.done():
                # A newer request supersedes the old one; the old waiter gets no answer.
                self._future.set_result(None)
            self._pending = request
            self._future = future
            self._loop = loop
        logger.info("Escalation pending [%s]: %s", request.kind, request.title)

        try:
            if self.timeout:
                return await asyncio.wait_for(future, timeout=self.timeout)
            return await future
        except asyncio.TimeoutError:
            logger.warning("Escalation timed out after %ss; treating as no answer", self.timeout)
            return None
        finally:
            with self._lock:
                if self._future is future:
                    self._pending = None
                    self._future = None
                    self._loop = None

    # ── Interface side ────────────────────────────────────────────────

    @property
    def is_pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    @property
    def pending(self) -> EscalationRequest | None:
        with self._lock:
            return self._pending.model_copy() if self._pending is not None else None

    def respond(self, response: str, selected_option: str | None = None) -> bool:
        """Resolve the pending escalation.

        Returns ``False`` if nothing was pending (idempotent; safe to call twice).
        """
        return self._resolve(EscalationResponse(response=response, selected_option=selected_option))

    def clear(self) -> bool:
        """Drop the pending escalation; the waiter receives ``None``."""
        return self._resolve(None)

    def _resolve(self, value: EscalationResponse | None) -> bool:
        with self._lock:
            future, loop = self._future, self._loop
            if future is None or loop is None or future.done():
                logger.warning("respond() called but no escalation is pending; ignoring")
                return False
            self._pending = None
            self._future = None
            self._loop = None

        def _set() -> None:
            if not future.done():
                future.set_result(value)

        loop.call_soon_threadsafe(_set)
        logger.info("Escalation resolved: %s", "no answer" if value is None else value.response[:80])
        return True
