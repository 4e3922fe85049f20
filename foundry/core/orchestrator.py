"""LangGraph orchestrator for the phased execution pipeline.

CONTEXT → DESIGN → KNOWLEDGE_GAP → SHADOW_SEARCH → ENGINEER → CONTAINMENT →
EXECUTE → POST_AUDIT → SECURITY_SCAN → VALIDATE → (FIX_LOOP) → DONE

Every node checks the run's cancel event on entry and appends one
``PhaseRecord`` to the run's phase trail.  A node that decides the run is
over sets ``outcome``; the conditional edges then route to ``END``.
Exceptions propagate out of the graph and are turned into a failed result
by ``execute()``.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from langgraph.graph import END, StateGraph

from foundry.agents.backend import InvokeOptions, LangChainBackend, ReasoningBackend
from foundry.agents.models import make_llm_factory
from foundry.agents.phases import PhaseAgents
from foundry.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from foundry.core.containment import ContainmentPolicy
from foundry.core.errors import (
    ContainmentViolationError,
    ExecutionAbortedError,
    ExecutionInProgressError,
    GateBlockedError,
)
from foundry.core.escalation import EscalationChannel, EscalationRegistry, EscalationRequest
from foundry.core.events import EventBus
from foundry.core.fix_loop import FixEscalationTier, FixLoopController
from foundry.core.learning import (
    JsonLearningStore,
    LearningRecord,
    LearningStore,
    determine_failure_phase,
    outcome_quality,
)
from foundry.core.logging import get_logger
from foundry.core.partner import ShadowSearchProvider, assess_approach, identify_knowledge_gaps
from foundry.core.sanitizer import sanitize
from foundry.core.state import (
    ExecutionResult,
    ExecutionTask,
    PhasedExecutionResult,
    PhaseRecord,
    PipelinePhase,
    PipelineState,
    PlanOutput,
    RunOutcome,
    SubtaskType,
    TaskComplexity,
    token_chain,
)
from foundry.engineering.executor import FilesystemPlanExecutor, PlanExecutor, execution_token
from foundry.guardian.guardian import PostExecGuardian
from foundry.guardian.types import (
    AuditCategory,
    AuditContext,
    AuditIssue,
    AuditResult,
    GuardianConfig,
    PreWriteSnapshot,
)
from foundry.tools.static_analysis import StaticAnalysisCapabilities

logger = get_logger("core.orchestrator")

GAP_OPTIONS = ["Proceed with assumptions", "Abort"]
SHADOW_OPTIONS = ["Override", "Abort"]


# ── Complexity ───────────────────────────────────────────────────────────

_HIGH_COMPLEXITY = re.compile(
    r"\b(refactor\w*|migrat\w*|architecture|rewrite|across|multiple|integrat\w*|distributed|concurren\w*)\b",
    re.IGNORECASE,
)
_LOW_COMPLEXITY = re.compile(r"\b(typo|rename|comment|docstring|bump|wording|log message)\b", re.IGNORECASE)
_LONG_DESCRIPTION = 500
_SHORT_DESCRIPTION = 80


def complexity_from_text(task: ExecutionTask) -> TaskComplexity:
    text = f"{task.description}\n{task.specification}"
    if len(text) > _LONG_DESCRIPTION or len(_HIGH_COMPLEXITY.findall(text)) >= 2:
        return TaskComplexity.HIGH
    if len(text.strip()) < _SHORT_DESCRIPTION or _LOW_COMPLEXITY.search(text):
        return TaskComplexity.LOW
    return TaskComplexity.MEDIUM


def _fixed(level: TaskComplexity) -> Callable[[ExecutionTask], TaskComplexity]:
    return lambda _task: level


COMPLEXITY_HANDLERS: dict[SubtaskType, Callable[[ExecutionTask], TaskComplexity]] = {
    SubtaskType.RESEARCH: _fixed(TaskComplexity.LOW),
    SubtaskType.REVIEW: _fixed(TaskComplexity.LOW),
    SubtaskType.VERIFY: _fixed(TaskComplexity.LOW),
    SubtaskType.DESIGN: _fixed(TaskComplexity.MEDIUM),
    SubtaskType.TEST: _fixed(TaskComplexity.MEDIUM),
    SubtaskType.INTEGRATE: _fixed(TaskComplexity.HIGH),
    SubtaskType.CODE: complexity_from_text,
}

assert set(COMPLEXITY_HANDLERS) == set(SubtaskType), "every subtask type needs a complexity handler"


# ── Per-run state ────────────────────────────────────────────────────────

@dataclass
class RunContext:
    """Everything owned by one execute() call. Discarded when the run ends."""
    task: ExecutionTask
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    started: float = field(default_factory=time.monotonic)
    snapshot: PreWriteSnapshot | None = None
    api_calls_at_start: int = 0
    phases: list[PhaseRecord] = field(default_factory=list)
    current_phase: PipelinePhase | None = None

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


@dataclass
class _PhaseScope:
    token: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


class _MeteredBackend:
    """Counts reasoning calls made through it."""

    def __init__(self, inner: ReasoningBackend) -> None:
        self.inner = inner
        self.calls = 0

    async def invoke(self, prompt: str, options: InvokeOptions) -> str:
        self.calls += 1
        return await self.inner.invoke(prompt, options)


def _route(next_node: str) -> Callable[[PipelineState], str]:
    def route(state: PipelineState) -> str:
        if state.outcome != RunOutcome.PENDING:
            return "end"
        return next_node
    return route


def _route_after_validate(state: PipelineState) -> str:
    if state.outcome != RunOutcome.PENDING:
        return "end"
    if state.execution is None or not state.execution.success or state.blockers:
        return "fix_loop"
    return "done"


# ── Orchestrator ─────────────────────────────────────────────────────────

class PhasedExecutor:
    def __init__(
        self,
        backend: ReasoningBackend,
        executor: PlanExecutor,
        guardian: PostExecGuardian,
        containment: ContainmentPolicy | None = None,
        escalation: EscalationChannel | None = None,
        learning: LearningStore | None = None,
        shadow_search: ShadowSearchProvider | None = None,
        events: EventBus | None = None,
        agents: PhaseAgents | None = None,
        fix_loop: FixLoopController | None = None,
        parallel_min_components: int = 3,
        filter_critical: bool = False,
        security_review: bool = True,
    ) -> None:
        self.backend = _MeteredBackend(backend)
        self.executor = executor
        self.guardian = guardian
        self.containment = containment
        self.escalation = escalation
        self.learning = learning
        self.shadow_search = shadow_search
        self.events = events or EventBus()
        self.agents = agents or PhaseAgents(self.backend, guardian.root)
        self.fix_loop = fix_loop or FixLoopController(self.backend, executor, escalation, learning)
        self.parallel_min_components = parallel_min_components
        self.filter_critical = filter_critical
        self.security_review = security_review

        self.last_result: PhasedExecutionResult | None = None
        self._run: RunContext | None = None
        self._graph = self._build_graph().compile()

    @classmethod
    def from_settings(cls, settings, events: EventBus | None = None) -> PhasedExecutor:
        """Wire the default collaborators for the configured working tree."""
        root = Path(settings.target_repo_path or ".").resolve()
        backend = LangChainBackend(
            make_llm_factory(settings), CircuitBreaker(CircuitBreakerConfig.from_settings(settings))
        )
        capabilities = StaticAnalysisCapabilities(root)
        learning = JsonLearningStore(root / settings.learning_store_path)
        return cls(
            backend=backend,
            executor=FilesystemPlanExecutor(
                root,
                capabilities=capabilities,
                verify_writes=settings.verify_writes,
                command_timeout=settings.shell_timeout_seconds,
            ),
            guardian=PostExecGuardian(
                root, GuardianConfig.from_settings(settings), capabilities, learning=learning
            ),
            containment=ContainmentPolicy.from_yaml(root, settings.containment_rules_path),
            escalation=EscalationRegistry(timeout=settings.escalation_timeout_seconds),
            learning=learning,
            events=events,
            parallel_min_components=settings.parallel_engineer_min_components,
            filter_critical=settings.containment_filter_critical,
        )

    # ── Public API ────────────────────────────────────────────────────

    @property
    def is_executing(self) -> bool:
        return self._run is not None

    @property
    def active_task_id(self) -> str | None:
        return self._run.task.id if self._run else None

    def abort(self) -> bool:
        """Ask the active run to stop at its next phase boundary."""
        if self._run is None:
            return False
        logger.info("Abort requested for task %s", self._run.task.id)
        self._run.cancel.set()
        return True

    def status(self) -> dict:
        run = self._run
        return {
            "executing": run is not None,
            "task_id": run.task.id if run else None,
            "current_phase": run.current_phase.value if run and run.current_phase else None,
            "phases": [p.compressed_token for p in run.phases] if run else [],
            "elapsed_ms": run.elapsed_ms if run else 0,
            "last_result": self.last_result.model_dump(mode="json") if self.last_result else None,
        }

    def assess_complexity(self, task: ExecutionTask) -> TaskComplexity:
        if task.subtask_type is None:
            return complexity_from_text(task)
        return COMPLEXITY_HANDLERS[task.subtask_type](task)

    async def execute(self, task: ExecutionTask) -> PhasedExecutionResult:
        if self._run is not None:
            raise ExecutionInProgressError(self._run.task.id)

        run = RunContext(task=task, api_calls_at_start=self.backend.calls)
        self._run = run
        logger.info("Starting run | task=%s | %s", task.id, task.description[:100])

        try:
            final = PipelineState(**await self._graph.ainvoke({"task": task}))
            success = final.outcome == RunOutcome.SUCCEEDED
            result = PhasedExecutionResult(
                task_id=task.id,
                success=success,
                phases=list(run.phases),
                api_calls=self.backend.calls - run.api_calls_at_start,
                fix_attempts=final.fix_attempts,
                escalated_to_human=final.escalated_to_human,
                error=sanitize(final.error) if final.error else None,
                duration_ms=run.elapsed_ms,
                validation_report=None if success else self._validation_report(final),
            )
        except Exception as exc:
            message = sanitize(str(exc) or type(exc).__name__)
            logger.error("Run failed | task=%s | %s", task.id, message)
            self.events.error(task.id, message)
            result = PhasedExecutionResult(
                task_id=task.id,
                success=False,
                phases=list(run.phases),
                api_calls=self.backend.calls - run.api_calls_at_start,
                error=message,
                duration_ms=run.elapsed_ms,
            )
        finally:
            self._run = None

        logger.info(
            "Run complete | task=%s | success=%s | phases=%d | api_calls=%d | fix_attempts=%d | %dms",
            task.id, result.success, len(result.phases), result.api_calls, result.fix_attempts, result.duration_ms,
        )
        self.last_result = result
        await self._record_outcome(task, result)
        return result

    # ── Graph ─────────────────────────────────────────────────────────

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(PipelineState)

        graph.add_node("context", self._context_node)
        graph.add_node("design", self._design_node)
        graph.add_node("knowledge_gap", self._knowledge_gap_node)
        graph.add_node("shadow_search", self._shadow_search_node)
        graph.add_node("engineer", self._engineer_node)
        graph.add_node("containment", self._containment_node)
        graph.add_node("execute", self._execute_node)
        graph.add_node("post_audit", self._post_audit_node)
        graph.add_node("security_scan", self._security_scan_node)
        graph.add_node("validate", self._validate_node)
        graph.add_node("fix_loop", self._fix_loop_node)
        graph.add_node("done", self._done_node)

        graph.set_entry_point("context")

        sequence = [
            "context", "design", "knowledge_gap", "shadow_search", "engineer",
            "containment", "execute", "post_audit", "security_scan", "validate",
        ]
        for current, following in zip(sequence, sequence[1:]):
            graph.add_conditional_edges(current, _route(following), {following: following, "end": END})

        graph.add_conditional_edges(
            "validate",
            _route_after_validate,
            {"fix_loop": "fix_loop", "done": "done", "end": END},
        )
        graph.add_edge("fix_loop", END)
        graph.add_edge("done", END)
        return graph

    @asynccontextmanager
    async def _phase(self, phase: PipelinePhase) -> AsyncIterator[_PhaseScope]:
        run = self._require_run()
        if run.cancel.is_set():
            raise ExecutionAbortedError(phase.value)

        run.current_phase = phase
        self.events.phase_start(run.task.id, phase.value)
        started = time.monotonic()
        scope = _PhaseScope()
        yield scope

        duration_ms = int((time.monotonic() - started) * 1000)
        run.phases.append(PhaseRecord(
            phase=phase, compressed_token=scope.token, payload=scope.payload, duration_ms=duration_ms
        ))
        self.events.phase_end(run.task.id, phase.value, scope.token, duration_ms)
        logger.info("Phase %s done in %dms | %s", phase.value, duration_ms, scope.token)

    def _require_run(self) -> RunContext:
        if self._run is None:
            raise RuntimeError("graph node invoked outside execute()")
        return self._run

    def _phases_update(self, **changes: Any) -> dict[str, Any]:
        return {"phases": list(self._require_run().phases), **changes}

    # ── Nodes ─────────────────────────────────────────────────────────

    async def _context_node(self, state: PipelineState) -> dict:
        async with self._phase(PipelinePhase.CONTEXT) as scope:
            context = await self.agents.gather_context(state.task)
            scope.token = context.compressed_token
            scope.payload = {"files": len(context.files), "key_files": sorted(context.snippets)}
        return self._phases_update(context=context)

    async def _design_node(self, state: PipelineState) -> dict:
        async with self._phase(PipelinePhase.DESIGN) as scope:
            design = await self.agents.design(state.task, state.context)
            scope.token = design.compressed_token
            scope.payload = {"components": [c.name for c in design.components]}
        return self._phases_update(design=design)

    async def _knowledge_gap_node(self, state: PipelineState) -> dict:
        task = state.task
        async with self._phase(PipelinePhase.KNOWLEDGE_GAP) as scope:
            gaps = identify_knowledge_gaps(task, state.context)
            critical = [g for g in gaps if g.critical]
            assumptions = [f"{g.description}: proceeding with reasonable assumptions" for g in gaps if not g.critical]

            if critical:
                response = await self._ask(EscalationRequest(
                    title="Clarification needed before engineering",
                    context="\n".join(f"- {g.question}" for g in critical),
                    options=GAP_OPTIONS,
                    blocking=True,
                    kind="knowledge_gap",
                    task_id=task.id,
                ))
                if response is not None and response.says("abort"):
                    self.events.gate(task.id, "knowledge_gap", "abort")
                    raise GateBlockedError("knowledge_gap", "user aborted on open questions")
                if response is not None and response.response.strip() and not response.says("proceed"):
                    assumptions.append(f"User clarification: {response.response.strip()}")
                else:
                    assumptions.extend(f"{g.description}: proceeding with reasonable assumptions" for g in critical)
                self.events.gate(task.id, "knowledge_gap", "proceed", "answered" if response else "no answer")

            design = state.design
            if assumptions and design is not None:
                design = design.model_copy(update={
                    "approach": design.approach + "\n\nAssumptions:\n" + "\n".join(f"- {a}" for a in assumptions)
                })
            scope.token = f"GAPS|{len(gaps)}|critical:{len(critical)}"
            scope.payload = {"gaps": [g.model_dump() for g in gaps], "assumptions": assumptions}
        return self._phases_update(design=design, assumptions=[*state.assumptions, *assumptions])

    async def _shadow_search_node(self, state: PipelineState) -> dict:
        task = state.task
        async with self._phase(PipelinePhase.SHADOW_SEARCH) as scope:
            assessment = await assess_approach(state.design, self.shadow_search)

            if assessment.gate == "hard":
                logger.warning("Hard gate on approach: %s", assessment.reasoning)
                response = await self._ask(EscalationRequest(
                    title="Low-credibility approach",
                    context=(
                        f"Credibility {assessment.credibility:.0%}, confidence {assessment.l_score:.0%}.\n"
                        + "\n".join(f"- {c}" for c in assessment.contradictions[:10])
                    ),
                    options=SHADOW_OPTIONS,
                    blocking=True,
                    kind="shadow_gate",
                    task_id=task.id,
                ))
                if response is None or not response.says("override"):
                    self.events.gate(task.id, "shadow_search", "blocked", assessment.reasoning)
                    raise GateBlockedError("shadow_search", assessment.reasoning or "approach not confirmed")
                self.events.gate(task.id, "shadow_search", "override", assessment.reasoning)
            elif assessment.gate == "soft":
                logger.info("Soft gate on approach: %s", assessment.reasoning)
                self.events.gate(task.id, "shadow_search", "warn", assessment.reasoning)

            scope.token = f"SHADOW|{assessment.gate}|cred:{assessment.credibility:.2f}"
            scope.payload = assessment.model_dump()
        return self._phases_update()

    async def _engineer_node(self, state: PipelineState) -> dict:
        async with self._phase(PipelinePhase.ENGINEER) as scope:
            complexity = self.assess_complexity(state.task)
            parallel = complexity is TaskComplexity.HIGH or len(state.design.components) >= self.parallel_min_components
            plan = await self.agents.engineer(state.task, state.context, state.design, parallel=parallel)
            scope.token = plan.compressed_token
            scope.payload = {
                "complexity": complexity.value,
                "parallel": parallel,
                "files": [f.path for f in plan.files],
                "commands": plan.commands,
                "confidence": plan.confidence,
            }

        if not plan.files and not plan.commands:
            logger.warning("Engineer produced nothing to execute")
            return self._phases_update(
                plan=plan, outcome=RunOutcome.FAILED, error="Engineer produced no file operations"
            )
        return self._phases_update(plan=plan)

    async def _containment_node(self, state: PipelineState) -> dict:
        task = state.task
        async with self._phase(PipelinePhase.CONTAINMENT) as scope:
            plan, critical, filtered = self._contain(state.plan, self._policy(task), raise_on_critical=True)
            if critical:
                self.events.gate(task.id, "containment", "filtered", ", ".join(critical))
            scope.token = f"CONTAIN|ok|filtered:{len(critical) + len(filtered)}"
            scope.payload = {"critical_filtered": critical, "filtered": filtered}

        if not plan.files and not plan.commands:
            return self._phases_update(
                plan=plan, outcome=RunOutcome.FAILED,
                error="Every planned file operation was denied by containment",
            )
        return self._phases_update(plan=plan)

    async def _execute_node(self, state: PipelineState) -> dict:
        run = self._require_run()
        async with self._phase(PipelinePhase.EXECUTE) as scope:
            run.snapshot = await self.guardian.create_snapshot(
                state.task.id, "", [f.path for f in state.plan.files]
            )
            execution = await self.executor.execute(state.plan, {"task_id": state.task.id})
            scope.token = execution.compressed_token or execution_token(execution)
            scope.payload = {
                "snapshot_id": run.snapshot.id,
                "errors": [e.one_line() for e in execution.errors],
            }
        return self._phases_update(execution=execution)

    async def _post_audit_node(self, state: PipelineState) -> dict:
        task = state.task
        run = self._require_run()
        async with self._phase(PipelinePhase.POST_AUDIT) as scope:
            audit = await self._audit(task, state.execution, run.snapshot)
            blockers: list[str] = []
            blocker_files: list[str] = []
            rolled_back = False

            if audit.rollback_required:
                logger.warning("Audit requires rollback: %s", audit.rollback_reason)
                rollback = await self.guardian.rollback(run.snapshot)
                self.events.rollback(task.id, rollback.method, rollback.success, len(rollback.files_restored))
                rolled_back = True
                blockers.append(f"Changes rolled back: {audit.rollback_reason}")
                scope.payload["rollback"] = rollback.model_dump(mode="json")

            issue_blockers, issue_files = self._audit_blockers(audit)
            blockers.extend(issue_blockers)
            blocker_files.extend(issue_files)
            scope.token = audit.compressed_token
            scope.payload["issues"] = [i.one_line() for i in audit.issues]
        return self._phases_update(
            audit=audit,
            rolled_back=rolled_back,
            blockers=[*state.blockers, *blockers],
            blocker_files=sorted({*state.blocker_files, *blocker_files}),
        )

    async def _security_scan_node(self, state: PipelineState) -> dict:
        task = state.task
        run = self._require_run()
        async with self._phase(PipelinePhase.SECURITY_SCAN) as scope:
            files = state.execution.touched_files() if state.execution else []
            issues = [] if state.rolled_back else await self._security_findings(files, state.audit)
            blocking = [i for i in issues if i.blocking]
            blockers = [i.one_line() for i in blocking]
            rolled_back = state.rolled_back

            should_rollback, reason = self.guardian.engine.determine_rollback(issues)
            if should_rollback and not rolled_back:
                logger.warning("Security review requires rollback: %s", reason)
                rollback = await self.guardian.rollback(run.snapshot)
                self.events.rollback(task.id, rollback.method, rollback.success, len(rollback.files_restored))
                rolled_back = True
                blockers.insert(0, f"Changes rolled back: {reason}")
                scope.payload["rollback"] = rollback.model_dump(mode="json")

            scope.token = f"SEC|issues:{len(issues)}" + ("|rollback" if should_rollback else "")
            scope.payload["issues"] = [i.one_line() for i in issues]
        return self._phases_update(
            security_issues=issues,
            rolled_back=rolled_back,
            blockers=[*state.blockers, *blockers],
            blocker_files=sorted({*state.blocker_files, *(i.file for i in blocking if i.file)}),
        )

    async def _validate_node(self, state: PipelineState) -> dict:
        async with self._phase(PipelinePhase.VALIDATE) as scope:
            validation = await self.agents.validate(state.task, state.plan, state.execution, state.audit)
            blockers = []
            if not validation.approved:
                blockers = validation.blockers or ["Validator rejected the change"]
            scope.token = validation.compressed_token
            scope.payload = validation.model_dump(exclude={"compressed_token"})
        return self._phases_update(validation=validation, blockers=[*state.blockers, *blockers])

    async def _fix_loop_node(self, state: PipelineState) -> dict:
        task = state.task
        run = self._require_run()
        async with self._phase(PipelinePhase.FIX_LOOP) as scope:
            execution = state.execution or ExecutionResult(success=False)
            policy = self._policy(task)

            async def extend_snapshot(paths: list[str]) -> list[str]:
                if run.snapshot is None:
                    run.snapshot = await self.guardian.create_snapshot(task.id, "fix", paths)
                    return paths
                return await self.guardian.extend_snapshot(run.snapshot, paths)

            def on_attempt(tier: FixEscalationTier) -> None:
                self.events.fix_attempt(task.id, tier.attempt, tier.description)

            outcome = await self.fix_loop.run(
                task,
                token_chain(run.phases),
                execution,
                blockers=state.blockers,
                blocker_files=set(state.blocker_files),
                extend_snapshot=extend_snapshot,
                filter_plan=lambda plan: self._contain(plan, policy, raise_on_critical=False)[0],
                is_cancelled=run.cancel.is_set,
                on_attempt=on_attempt,
                trust_written=not state.rolled_back,
            )
            if outcome.status == "aborted":
                raise ExecutionAbortedError(PipelinePhase.FIX_LOOP.value)

            scope.payload = outcome.model_dump(mode="json", exclude={"execution"})
            if outcome.escalated:
                self.events.escalation(task.id, "Fix Loop Exhausted", outcome.status != "escalated_no_answer")
                scope.token = f"FIX|tiers:{outcome.attempts}|escalated"
                update = {
                    "outcome": RunOutcome.ESCALATED,
                    "escalated_to_human": True,
                    "error": f"Fix loop exhausted after {outcome.attempts} attempts",
                    "execution": outcome.execution or execution,
                }
            else:
                fixed = outcome.execution
                touched = sorted({*fixed.touched_files(), *([] if state.rolled_back else execution.touched_files())})
                audit = await self._audit(
                    task,
                    ExecutionResult(success=True, files_modified=touched, files_deleted=fixed.files_deleted),
                    run.snapshot,
                )
                findings = [] if audit.rollback_required else await self._security_findings(touched, audit)
                sec_rollback, sec_reason = self.guardian.engine.determine_rollback(findings)
                if audit.rollback_required or sec_rollback:
                    rollback = await self.guardian.rollback(run.snapshot)
                    self.events.rollback(task.id, rollback.method, rollback.success, len(rollback.files_restored))
                    scope.payload["rollback"] = rollback.model_dump(mode="json")

                blockers = self._audit_blockers(audit)[0]
                if not blockers and not self.guardian.can_complete(audit):
                    blockers = [audit.rollback_reason or "Audit veto"]
                if sec_rollback:
                    blockers.append(f"Changes rolled back: {sec_reason}")
                blockers.extend(i.one_line() for i in findings if i.blocking)
                scope.payload["security_issues"] = [i.one_line() for i in findings]

                validation = None
                if not blockers:
                    validation = await self.agents.validate(task, state.plan, fixed, audit)
                    scope.payload["validation"] = validation.model_dump(exclude={"compressed_token"})
                    if not validation.approved:
                        blockers = validation.blockers or ["Validator rejected the change"]

                scope.token = f"FIX|tier:{outcome.fixed_at_tier}|ok|{audit.compressed_token}"
                update = {"audit": audit, "execution": fixed, "security_issues": findings, "blockers": blockers}
                if validation is not None:
                    update["validation"] = validation
                if not blockers:
                    update["outcome"] = RunOutcome.SUCCEEDED
                elif validation is not None:
                    update["outcome"] = RunOutcome.FAILED
                    update["error"] = "Fixed execution was rejected by the validator"
                else:
                    update["outcome"] = RunOutcome.FAILED
                    update["error"] = "Fixed execution did not pass the post-execution audit"
        return self._phases_update(fix_attempts=outcome.attempts, **update)

    async def _done_node(self, state: PipelineState) -> dict:
        async with self._phase(PipelinePhase.DONE) as scope:
            scope.token = "DONE|ok"
        return self._phases_update(outcome=RunOutcome.SUCCEEDED)

    # ── Helpers ───────────────────────────────────────────────────────

    def _policy(self, task: ExecutionTask) -> ContainmentPolicy:
        return self.containment or ContainmentPolicy(task.codebase_path or self.guardian.root)

    def _contain(
        self, plan: PlanOutput, policy: ContainmentPolicy, raise_on_critical: bool
    ) -> tuple[PlanOutput, list[str], list[str]]:
        """Drop denied file operations. Returns (plan, critical paths, other denied paths)."""
        kept = []
        critical: list[str] = []
        filtered: list[str] = []
        reasons: list[str] = []
        for op in plan.files:
            permission = policy.check_permission(op.path, "write")
            if permission.allowed:
                kept.append(op)
            elif permission.critical:
                critical.append(op.path)
                reasons.append(permission.reason)
            else:
                logger.info("Containment filtered %s: %s", op.path, permission.reason)
                filtered.append(op.path)

        if critical:
            logger.warning("Containment denied protected path(s): %s", ", ".join(critical))
            if raise_on_critical and not self.filter_critical:
                raise ContainmentViolationError(critical, reasons[0])
        return plan.model_copy(update={"files": kept}), critical, filtered

    async def _audit(
        self, task: ExecutionTask, execution: ExecutionResult | None, snapshot: PreWriteSnapshot | None
    ) -> AuditResult:
        execution = execution or ExecutionResult(success=False)
        audit = await self.guardian.audit(AuditContext(
            task_id=task.id,
            files_written=execution.files_written,
            files_modified=execution.files_modified,
            files_deleted=execution.files_deleted,
            snapshot=snapshot,
            task_description=task.description[:200],
        ))
        self.events.audit(task.id, audit.compressed_token, audit.passed)
        return audit

    async def _security_findings(self, files: list[str], audit: AuditResult | None) -> list[AuditIssue]:
        """Run the model security review, minus what the audit already reported."""
        if not self.security_review or not files:
            return []
        try:
            issues = await self.agents.security_review(files)
        except Exception as exc:
            logger.warning("Security review unavailable: %s", exc)
            return []
        known = {
            (i.file, i.line) for i in (audit.issues if audit else [])
            if i.category is AuditCategory.SECURITY
        }
        return [i for i in issues if (i.file, i.line) not in known]

    def _audit_blockers(self, audit: AuditResult) -> tuple[list[str], list[str]]:
        threshold = self.guardian.config.blocking_severity
        issues = [i for i in audit.issues if i.blocking or i.severity.at_least(threshold)]
        blockers = [i.one_line() for i in issues]
        if len(audit.issues) > self.guardian.config.max_issues_before_block:
            blockers.append(
                f"{len(audit.issues)} audit issues exceed the limit of {self.guardian.config.max_issues_before_block}"
            )
        return blockers, sorted({i.file for i in issues if i.file})

    def _validation_report(self, state: PipelineState) -> list[str]:
        report = list(state.blockers)
        if state.execution is not None:
            report.extend(e.one_line() for e in state.execution.errors if e.one_line() not in report)
        if state.error and not report:
            report.append(state.error)
        return [sanitize(line) for line in report]

    async def _ask(self, request: EscalationRequest):
        if self.escalation is None:
            logger.info("No escalation channel; '%s' goes unanswered", request.title)
            return None
        response = await self.escalation.escalate(request)
        self.events.escalation(request.task_id, request.title, response is not None)
        return response

    async def _record_outcome(self, task: ExecutionTask, result: PhasedExecutionResult) -> None:
        if self.learning is None:
            return
        try:
            await self.learning.record(LearningRecord(
                kind="execution",
                task_id=task.id,
                description=task.description[:200],
                success=result.success,
                quality=outcome_quality(result.success, result.fix_attempts),
                fix_attempts=result.fix_attempts,
                failure_phase="" if result.success else determine_failure_phase(
                    result.phases, result.fix_attempts, result.error
                ),
                error=result.error or "",
                duration_ms=result.duration_ms,
                tags=[
                    "success" if result.success else "failure",
                    *(["escalated"] if result.escalated_to_human else []),
                ],
            ))
        except Exception as exc:
            logger.warning("Could not record run outcome: %s", exc)
