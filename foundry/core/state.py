"""Shared data model for the phased pipeline and its LangGraph state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from foundry.guardian.types import AuditIssue, AuditResult


class SubtaskType(StrEnum):
    RESEARCH = "research"
    DESIGN = "design"
    CODE = "code"
    TEST = "test"
    INTEGRATE = "integrate"
    VERIFY = "verify"
    REVIEW = "review"


class TaskComplexity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PipelinePhase(StrEnum):
    CONTEXT = "context"
    DESIGN = "design"
    KNOWLEDGE_GAP = "knowledge_gap"
    SHADOW_SEARCH = "shadow_search"
    ENGINEER = "engineer"
    CONTAINMENT = "containment"
    EXECUTE = "execute"
    POST_AUDIT = "post_audit"
    SECURITY_SCAN = "security_scan"
    VALIDATE = "validate"
    FIX_LOOP = "fix_loop"
    DONE = "done"


class RunOutcome(StrEnum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ESCALATED = "escalated"


class ExecutionTask(BaseModel):
    """A unit of work submitted to the orchestrator. Immutable for the duration of a run."""

    model_config = ConfigDict(frozen=True)

    id: str
    description: str
    codebase_path: str
    specification: str = ""
    constraints: tuple[str, ...] = ()
    subtask_type: SubtaskType | None = None


# ── File operations ──────────────────────────────────────────────────────

class FileAction(StrEnum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class FileOperation(BaseModel):
    path: str
    action: FileAction = FileAction.CREATE
    content: str = ""


class ComponentDependency(BaseModel):
    """A named unit of generatable code and the components it depends on."""

    name: str
    file: str = ""
    dependencies: list[str] = Field(default_factory=list)
    description: str = ""


# ── Execution ────────────────────────────────────────────────────────────

class ExecutionError(BaseModel):
    kind: Literal["file", "command", "verify"]
    operation: str
    path: str
    message: str

    def one_line(self) -> str:
        return f"[{self.kind}:{self.operation}] {self.path}: {self.message}"


class ExecutionResult(BaseModel):
    success: bool
    files_written: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    files_deleted: list[str] = Field(default_factory=list)
    commands_run: list[str] = Field(default_factory=list)
    errors: list[ExecutionError] = Field(default_factory=list)
    compressed_token: str = ""

    def touched_files(self) -> list[str]:
        """Paths written or modified, in order, without duplicates."""
        return list(dict.fromkeys([*self.files_written, *self.files_modified]))

    def failed_files(self) -> set[str]:
        """Paths named by per-file (write or verification) errors."""
        return {e.path for e in self.errors if e.kind in ("file", "verify")}


# ── Phase payloads ───────────────────────────────────────────────────────

class ContextBundle(BaseModel):
    files: list[str] = Field(default_factory=list)
    snippets: dict[str, str] = Field(default_factory=dict)
    summary: str = ""
    compressed_token: str = ""


class DesignOutput(BaseModel):
    approach: str = ""
    components: list[ComponentDependency] = Field(default_factory=list)
    compressed_token: str = ""


class PlanOutput(BaseModel):
    files: list[FileOperation] = Field(default_factory=list)
    commands: list[str] = Field(default_factory=list)
    notes: str = ""
    confidence: float = 0.0
    parallel: bool = False
    compressed_token: str = ""


class ValidationResult(BaseModel):
    approved: bool = True
    blockers: list[str] = Field(default_factory=list)
    required_modifications: list[str] = Field(default_factory=list)
    compressed_token: str = ""


class PhaseRecord(BaseModel):
    """One entry in the append-only phase trail of a run."""

    phase: PipelinePhase
    compressed_token: str
    payload: dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = 0
    recorded_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def token_chain(phases: list[PhaseRecord]) -> str:
    """Concatenate the compressed tokens of every recorded phase."""
    return "\n".join(p.compressed_token for p in phases if p.compressed_token)


class PhasedExecutionResult(BaseModel):
    task_id: str
    success: bool
    phases: list[PhaseRecord] = Field(default_factory=list)
    api_calls: int = 0
    fix_attempts: int = 0
    escalated_to_human: bool = False
    error: str | None = None
    duration_ms: int = 0
    validation_report: list[str] | None = None


# ── LangGraph state ──────────────────────────────────────────────────────

class PipelineState(BaseModel):
    """State carried between orchestrator graph nodes."""

    task: ExecutionTask
    context: ContextBundle | None = None
    design: DesignOutput | None = None
    plan: PlanOutput | None = None
    execution: ExecutionResult | None = None
    audit: AuditResult | None = None
    security_issues: list[AuditIssue] = Field(default_factory=list)
    validation: ValidationResult | None = None

    # Unresolved problems fed into the fix loop and surfaced as validation_report
    blockers: list[str] = Field(default_factory=list)
    blocker_files: list[str] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)
    rolled_back: bool = False
    phases: list[PhaseRecord] = Field(default_factory=list)

    outcome: RunOutcome = RunOutcome.PENDING
    fix_attempts: int = 0
    escalated_to_human: bool = False
    error: str = ""
