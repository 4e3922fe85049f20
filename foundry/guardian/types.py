"""Data types for the post-execution guardian (snapshots, audits, rollbacks)."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class AuditSeverity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        """Higher is more severe (critical=4 … info=0)."""
        return _SEVERITY_RANK[self]

    def at_least(self, threshold: AuditSeverity | str) -> bool:
        return self.rank >= AuditSeverity(threshold).rank


_SEVERITY_RANK = {
    AuditSeverity.CRITICAL: 4,
    AuditSeverity.HIGH: 3,
    AuditSeverity.MEDIUM: 2,
    AuditSeverity.LOW: 1,
    AuditSeverity.INFO: 0,
}

# Most severe first; iteration order for threshold checks
SEVERITY_ORDER: tuple[AuditSeverity, ...] = tuple(
    sorted(AuditSeverity, key=lambda s: s.rank, reverse=True)
)


class AuditCategory(StrEnum):
    SECURITY = "security"
    REGRESSION = "regression"
    QUALITY = "quality"
    PERFORMANCE = "performance"
    TYPE_ERROR = "type_error"
    LINT = "lint"
    STYLE = "style"
    COMPLEXITY = "complexity"
    COMPATIBILITY = "compatibility"
    OTHER = "other"


class AuditPhase(StrEnum):
    SECURITY = "security"
    DIFF_ANALYSIS = "diff_analysis"
    TYPE_CHECK = "type_check"
    LINT = "lint"
    QUALITY = "quality"
    REGRESSION = "regression"


class AuditIssue(BaseModel):
    """A single finding. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    severity: AuditSeverity
    category: AuditCategory
    file: str = ""
    line: int | None = None
    column: int | None = None
    message: str
    rule: str = ""
    snippet: str = ""
    suggestion: str = ""
    blocking: bool = False
    auto_fixable: bool = False

    def one_line(self) -> str:
        loc = self.file or "<project>"
        if self.line:
            loc += f":{self.line}"
        rule = f" [{self.rule}]" if self.rule else ""
        return f"[{self.severity.upper()}]{rule} {loc} - {self.message}"


class AuditSummary(BaseModel):
    total_issues: int = 0
    by_severity: dict[AuditSeverity, int] = Field(
        default_factory=lambda: {s: 0 for s in AuditSeverity}
    )
    by_category: dict[AuditCategory, int] = Field(
        default_factory=lambda: {c: 0 for c in AuditCategory}
    )
    blocking_issues: int = 0
    auto_fixable_issues: int = 0

    @classmethod
    def from_issues(cls, issues: list[AuditIssue]) -> AuditSummary:
        summary = cls(total_issues=len(issues))
        for issue in issues:
            summary.by_severity[issue.severity] += 1
            summary.by_category[issue.category] += 1
            if issue.blocking:
                summary.blocking_issues += 1
            if issue.auto_fixable:
                summary.auto_fixable_issues += 1
        return summary


class AuditResult(BaseModel):
    passed: bool
    issues: list[AuditIssue] = Field(default_factory=list)
    rollback_required: bool = False
    rollback_reason: str = ""
    files_audited: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    duration_ms: int = 0
    audited_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    phases_completed: list[AuditPhase] = Field(default_factory=list)
    summary: AuditSummary = Field(default_factory=AuditSummary)

    @property
    def compressed_token(self) -> str:
        s = self.summary.by_severity
        verdict = "pass" if self.passed else "fail"
        token = (
            f"AUDIT|{verdict}|issues:{self.summary.total_issues}"
            f"|crit:{s[AuditSeverity.CRITICAL]}|high:{s[AuditSeverity.HIGH]}"
        )
        if self.rollback_required:
            token += "|rollback"
        return token


# ── Snapshots & rollback ─────────────────────────────────────────────────

class SnapshotFile(BaseModel):
    path: str
    content_hash: str = ""
    existed: bool = False
    content: str | None = None
    backup_path: str | None = None


class PreWriteSnapshot(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    task_id: str
    subtask_id: str = ""
    files: list[SnapshotFile] = Field(default_factory=list)
    stash_ref: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def covers(self, path: str) -> bool:
        return any(f.path == path for f in self.files)

    def get(self, path: str) -> SnapshotFile | None:
        return next((f for f in self.files if f.path == path), None)


RollbackMethod = Literal["git_stash", "git_checkout", "file_backup", "manual"]


class RollbackResult(BaseModel):
    success: bool
    files_restored: list[str] = Field(default_factory=list)
    files_failed: list[str] = Field(default_factory=list)
    method: RollbackMethod = "file_backup"
    error: str = ""
    rolled_back_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    snapshot_id: str | None = None


# ── Configuration & context ──────────────────────────────────────────────

class GuardianConfig(BaseModel):
    security_audit: bool = True
    diff_analysis: bool = True
    type_check: bool = True
    lint_check: bool = True
    quality_audit: bool = True
    regression_check: bool = True

    blocking_severity: AuditSeverity = AuditSeverity.HIGH
    max_issues_before_block: int = 10
    auto_rollback_on_critical: bool = True

    skip_patterns: list[str] = Field(default_factory=lambda: [
        "**/node_modules/**",
        "**/dist/**",
        "**/build/**",
        "**/.guardian-backup/**",
        "**/.foundry/**",
        "**/*.test.ts",
        "**/*.spec.ts",
    ])
    test_command: str = ""
    test_timeout_seconds: float = 120.0
    max_file_size_bytes: int = 1024 * 1024
    inline_threshold_bytes: int = 100 * 1024
    backup_dir: str = ".guardian-backup"

    @classmethod
    def from_settings(cls, settings) -> GuardianConfig:
        return cls(
            blocking_severity=settings.guardian_blocking_severity,
            max_issues_before_block=settings.guardian_max_issues,
            auto_rollback_on_critical=settings.guardian_auto_rollback,
            test_command=settings.guardian_test_command,
            regression_check=bool(settings.guardian_test_command),
            test_timeout_seconds=settings.guardian_test_timeout_seconds,
            max_file_size_bytes=settings.guardian_max_file_size_bytes,
            inline_threshold_bytes=settings.snapshot_inline_threshold_bytes,
            backup_dir=settings.snapshot_backup_dir,
        )


class AuditContext(BaseModel):
    task_id: str
    subtask_id: str = ""
    files_written: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    files_deleted: list[str] = Field(default_factory=list)
    snapshot: PreWriteSnapshot | None = None
    task_description: str = ""


@dataclass(frozen=True)
class SecurityPattern:
    id: str
    name: str
    pattern: re.Pattern[str]
    severity: AuditSeverity
    description: str
    suggestion: str = ""
    file_types: tuple[str, ...] = ()
    blocking: bool = True

    def applies_to(self, path: str) -> bool:
        if not self.file_types:
            return True
        return any(path.endswith(ext) for ext in self.file_types)


class TopIssue(BaseModel):
    rule: str
    count: int


class GuardianStats(BaseModel):
    total_audits: int = 0
    passed_audits: int = 0
    failed_audits: int = 0
    total_issues: int = 0
    issues_by_severity: dict[AuditSeverity, int] = Field(
        default_factory=lambda: {s: 0 for s in AuditSeverity}
    )
    issues_by_category: dict[AuditCategory, int] = Field(
        default_factory=lambda: {c: 0 for c in AuditCategory}
    )
    rollbacks_performed: int = 0
    successful_rollbacks: int = 0
    avg_audit_duration_ms: float = 0.0
    top_issues: list[TopIssue] = Field(default_factory=list)
