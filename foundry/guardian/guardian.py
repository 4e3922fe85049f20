"""PostExecGuardian: snapshot before writes, audit after, roll back on failure.

Usage from the orchestrator::

    snapshot = await guardian.create_snapshot(task.id, "", planned_paths)
    result = await executor.execute(plan)
    audit = await guardian.audit(AuditContext(..., snapshot=snapshot))
    if audit.rollback_required:
        await guardian.rollback(snapshot)
    if not guardian.can_complete(audit):
        ...
"""

from __future__ import annotations

from collections import Counter
from pathlib import Path

from foundry.core.learning import LearningRecord, LearningStore
from foundry.core.logging import get_logger
from foundry.guardian.audit import AuditEngine, SecurityReviewer
from foundry.guardian.snapshot import SnapshotManager
from foundry.guardian.types import (
    AuditContext,
    AuditResult,
    AuditSeverity,
    GuardianConfig,
    GuardianStats,
    PreWriteSnapshot,
    RollbackResult,
    TopIssue,
)
from foundry.tools.static_analysis import CapabilityProvider

logger = get_logger("guardian")

_TOP_ISSUES = 10


class PostExecGuardian:
    def __init__(
        self,
        root: str | Path,
        config: GuardianConfig | None = None,
        capabilities: CapabilityProvider | None = None,
        security_reviewer: SecurityReviewer | None = None,
        learning: LearningStore | None = None,
    ) -> None:
        self.root = Path(root).resolve()
        self.config = config or GuardianConfig()
        self.snapshots = SnapshotManager(self.root, self.config)
        self.engine = AuditEngine(self.root, self.config, capabilities, security_reviewer)
        self.learning = learning
        self._stats = GuardianStats()
        self._rule_counts: Counter[str] = Counter()

    # ── Snapshots ─────────────────────────────────────────────────────

    async def create_snapshot(self, task_id: str, subtask_id: str, files: list[str]) -> PreWriteSnapshot:
        return await self.snapshots.create(task_id, subtask_id, files)

    async def extend_snapshot(self, snapshot: PreWriteSnapshot, files: list[str]) -> list[str]:
        return await self.snapshots.extend(snapshot, files)

    async def cleanup_snapshots(self, max_age_seconds: float = 24 * 60 * 60) -> int:
        return await self.snapshots.cleanup_snapshots(max_age_seconds)

    # ── Audit / rollback / veto ───────────────────────────────────────

    async def audit(self, context: AuditContext) -> AuditResult:
        result = await self.engine.run(context)
        self._update_stats(result)
        await self._record(context, result)
        return result

    async def rollback(self, snapshot: PreWriteSnapshot | None) -> RollbackResult:
        result = await self.snapshots.rollback(snapshot)
        self._stats.rollbacks_performed += 1
        if result.success:
            self._stats.successful_rollbacks += 1
        else:
            logger.error(
                "Rollback incomplete | failed=%s | %s", ", ".join(result.files_failed), result.error
            )
        return result

    def can_complete(self, result: AuditResult) -> bool:
        return self.engine.can_complete(result)

    # ── Stats ─────────────────────────────────────────────────────────

    def get_stats(self) -> GuardianStats:
        return self._stats.model_copy(deep=True)

    def _update_stats(self, result: AuditResult) -> None:
        stats = self._stats
        stats.total_audits += 1
        if result.passed:
            stats.passed_audits += 1
        else:
            stats.failed_audits += 1
        stats.total_issues += len(result.issues)
        for issue in result.issues:
            stats.issues_by_severity[issue.severity] += 1
            stats.issues_by_category[issue.category] += 1
            if issue.rule:
                self._rule_counts[issue.rule] += 1

        n = stats.total_audits
        stats.avg_audit_duration_ms = (stats.avg_audit_duration_ms * (n - 1) + result.duration_ms) / n
        stats.top_issues = [
            TopIssue(rule=rule, count=count) for rule, count in self._rule_counts.most_common(_TOP_ISSUES)
        ]

    async def _record(self, context: AuditContext, result: AuditResult) -> None:
        if self.learning is None:
            return
        critical = result.summary.by_severity[AuditSeverity.CRITICAL]
        try:
            await self.learning.record(LearningRecord(
                kind="audit",
                task_id=context.task_id,
                description=context.task_description,
                success=result.passed,
                quality=1.0 if result.passed else 0.0,
                error=result.rollback_reason,
                duration_ms=result.duration_ms,
                tags=["guardian", "passed" if result.passed else "failed", *(["critical"] if critical else [])],
            ))
        except Exception as exc:
            logger.warning("Could not store audit result: %s", exc)
