"""Outcome learning store: records how runs, fixes and audits turned out.

The orchestrator only needs ``record`` and ``query``; ``JsonLearningStore``
keeps the records in a JSON file under the working tree.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from foundry.core.logging import get_logger
from foundry.core.state import PhaseRecord

logger = get_logger("core.learning")

MAX_FIX_TIERS = 5
MAX_RECORDS = 500

RecordKind = Literal["execution", "fix_success", "audit", "guidance"]


class LearningRecord(BaseModel):
    kind: RecordKind = "execution"
    task_id: str
    description: str = ""
    success: bool
    quality: float = 0.0
    fix_attempts: int = 0
    failure_phase: str = ""
    error: str = ""
    duration_ms: int = 0
    tier: int | None = None
    error_signature: str = ""
    tags: list[str] = Field(default_factory=list)
    recorded_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@runtime_checkable
class LearningStore(Protocol):
    async def record(self, record: LearningRecord) -> None: ...

    async def query(self, kind: RecordKind | None = None, limit: int = 20) -> list[LearningRecord]: ...


def outcome_quality(success: bool, fix_attempts: int) -> float:
    """1.0 on success; failures that went through the fix loop score by how early they gave up."""
    if success:
        return 1.0
    if fix_attempts > 0:
        return 0.1 + 0.2 * (MAX_FIX_TIERS - fix_attempts) / MAX_FIX_TIERS
    return 0.2


def determine_failure_phase(phases: list[PhaseRecord], fix_attempts: int, error: str | None) -> str:
    if fix_attempts > 0:
        return "fix_loop"
    if error and "abort" in error.lower():
        return "aborted"
    if phases:
        return str(phases[-1].phase)
    return "unknown"


def error_signature(messages: list[str]) -> str:
    """Short, stable key for a set of errors, used to look up fixes that worked before."""
    return " | ".join(m.strip() for m in messages if m.strip())[:200]


class JsonLearningStore:
    """Append-only JSON file store. Falls back to memory if the file is unwritable."""

    def __init__(self, path: str | Path, max_records: int = MAX_RECORDS) -> None:
        self.path = Path(path)
        self.max_records = max_records
        self._lock = asyncio.Lock()
        self._records: list[LearningRecord] | None = None
        self._persist = True

    def _load(self) -> list[LearningRecord]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Learning store unreadable at %s: %s; starting empty", self.path, exc)
            return []
        records: list[LearningRecord] = []
        for item in raw.get("records", []) if isinstance(raw, dict) else []:
            try:
                records.append(LearningRecord(**item))
            except Exception as exc:
                logger.debug("Skipping malformed learning record: %s", exc)
        return records

    def _save(self, records: list[LearningRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": 1, "records": [r.model_dump() for r in records]}
        self.path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")

    async def record(self, record: LearningRecord) -> None:
        async with self._lock:
            if self._records is None:
                self._records = await asyncio.to_thread(self._load)
            self._records.append(record)
            del self._records[:-self.max_records]
            if self._persist:
                try:
                    await asyncio.to_thread(self._save, list(self._records))
                except OSError as exc:
                    self._persist = False
                    logger.warning("Learning store not writable (%s); keeping records in memory", exc)
        logger.info(
            "Learning recorded: %s task=%s success=%s quality=%.2f",
            record.kind, record.task_id, record.success, record.quality,
        )

    async def query(self, kind: RecordKind | None = None, limit: int = 20) -> list[LearningRecord]:
        async with self._lock:
            if self._records is None:
                self._records = await asyncio.to_thread(self._load)
            matches = [r for r in self._records if kind is None or r.kind == kind]
        return matches[-limit:]
