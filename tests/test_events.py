"""Tests for the pipeline event bus."""

from __future__ import annotations

import asyncio

import pytest

from foundry.core.events import EventBus, EventCategory, PipelineEvent


class TestEventBus:
    def test_history_is_bounded(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            bus.phase_start("t1", f"phase{i}")
        history = bus.history()
        assert len(history) == 3
        assert history[0]["metadata"]["phase"] == "phase2"

    def test_history_limit(self):
        bus = EventBus()
        for i in range(5):
            bus.error("t1", f"boom {i}")
        assert [e["detail"] for e in bus.history(limit=2)] == ["boom 3", "boom 4"]
        assert bus.history(limit=0) == []

    def test_to_dict(self):
        event = PipelineEvent(EventCategory.GATE, "t1", "containment gate: filtered", detail=".env")
        data = event.to_dict()
        assert data["category"] == "gate"
        assert data["task_id"] == "t1"
        assert "ts" in data

    def test_sync_listener_errors_are_contained(self):
        bus = EventBus()
        seen = []

        def bad(event):
            raise RuntimeError("listener broke")

        bus.subscribe(bad)
        bus.subscribe(seen.append)
        bus.rollback("t1", "file_backup", True, 2)
        assert len(seen) == 1
        assert seen[0].metadata == {"success": True, "files_restored": 2}

    @pytest.mark.asyncio
    async def test_async_listener_scheduled(self):
        bus = EventBus()
        received = asyncio.Event()

        async def listener(event):
            received.set()

        bus.subscribe_async(listener)
        bus.fix_attempt("t1", 3, "extended thinking")
        await asyncio.wait_for(received.wait(), timeout=1)

    def test_async_listener_without_loop_is_skipped(self):
        bus = EventBus()
        calls = []

        async def listener(event):
            calls.append(event)

        bus.subscribe_async(listener)
        bus.audit("t1", "AUDIT|pass|issues:0", True)
        assert calls == []
        assert bus.history()[0]["category"] == "audit"

    def test_convenience_emitters(self):
        bus = EventBus()
        bus.phase_end("t1", "design", "DESIGN|components:2", 15)
        bus.gate("t1", "shadow_search", "warn", "credibility 45%")
        bus.escalation("t1", "Fix Loop Exhausted", answered=False)
        categories = [e["category"] for e in bus.history()]
        assert categories == ["phase_end", "gate", "escalation"]
        bus.clear()
        assert bus.history() == []
