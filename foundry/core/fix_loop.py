"""Fix loop: bounded retry with monotonic escalation of reasoning strength.

Five tiers, each tried at most once per run, from cheap to expensive.  A
tier that produces a successful re-execution ends the loop.  Files that
already wrote cleanly are never rewritten unless a later execution reports
them as failed again.  After the last tier a human is asked; whatever they
answer, the run ends failed and flagged as escalated.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, Field

from foundry.agents.backend import InvokeOptions, ReasoningBackend, Strength
from foundry.agents.models import load_system_prompt
from foundry.core.escalation import EscalationChannel, EscalationRequest
from foundry.core.learning import LearningRecord, LearningStore, error_signature
from foundry.core.logging import get_logger
from foundry.core.state import ExecutionResult, ExecutionTask, PlanOutput
from foundry.engineering.executor import PlanExecutor
from foundry.engineering.file_ops import parse_file_blocks

logger = get_logger("core.fix_loop")


@dataclass(frozen=True)
class FixEscalationTier:
    attempt: int
    strength: Strength
    use_extended_reasoning: bool
    reasoning_budget: int
    description: str

    def options(self, system_prompt: str) -> InvokeOptions:
        return InvokeOptions(
            strength=self.strength,
            use_extended_reasoning=self.use_extended_reasoning,
            reasoning_budget=self.reasoning_budget,
            system_prompt=system_prompt,
        )


FIX_ESCALATION_TIERS: tuple[FixEscalationTier, ...] = (
    FixEscalationTier(1, "fast", False, 0, "standard fix"),
    FixEscalationTier(2, "fast", False, 0, "alternative approach"),
    FixEscalationTier(3, "fast", True, 8000, "extended thinking"),
    FixEscalationTier(4, "strong", False, 0, "fresh eyes"),
    FixEscalationTier(5, "strong", True, 16000, "maximum reasoning"),
)

ESCALATION_OPTIONS = ["Continue", "Abort", "Guide"]

FixStatus = Literal["fixed", "escalated_abort", "escalated_no_answer", "escalated_continue", "aborted"]


class FixOutcome(BaseModel):
    status: FixStatus
    attempts: int = 0
    execution: ExecutionResult | None = None
    known_good: list[str] = Field(default_factory=list)
    known_failed: list[str] = Field(default_factory=list)
    tiers_attempted: list[int] = Field(default_factory=list)
    fixed_at_tier: int | None = None
    guidance: str = ""

    @property
    def success(self) -> bool:
        return self.status == "fixed"

    @property
    def escalated(self) -> bool:
        return self.status.startswith("escalated")


def filter_fix_files(plan: PlanOutput, known_good: set[str], known_failed: set[str]) -> PlanOutput:
    """Keep only operations on files that failed, or that nothing has written cleanly yet."""
    kept = [f for f in plan.files if f.path in known_failed or f.path not in known_good]
    dropped = [f.path for f in plan.files if f not in kept]
    if dropped:
        logger.info("Fix plan: skipping known-good file(s) %s", ", ".join(dropped))
    return PlanOutput(files=kept, notes=plan.notes)


def build_fix_prompt(
    task: ExecutionTask,
    token_chain: str,
    errors: list[str],
    blockers: list[str],
    known_good: set[str],
    known_failed: set[str],
    tier: FixEscalationTier,
) -> str:
    def bullets(items) -> str:
        return "\n".join(f"- {i}" for i in sorted(items)) if items else "- none"

    return (
        f"# FIX ATTEMPT {tier.attempt}/{len(FIX_ESCALATION_TIERS)} ({tier.description})\n\n"
        f"## Task\n{task.description}\n\n"
        f"## Phase history\n{token_chain or 'none'}\n\n"
        f"## Errors\n{bullets(errors)}\n\n"
        f"## Outstanding blockers\n{bullets(blockers)}\n\n"
        f"## Known-good files (do NOT regenerate)\n{bullets(known_good)}\n\n"
        f"## Known-failed files (fix these)\n{bullets(known_failed)}\n\n"
        "Return corrected files as <file path=\"...\" action=\"create|modify|delete\"> blocks."
    )


class FixLoopController:
    def __init__(
        self,
        backend: ReasoningBackend,
        executor: PlanExecutor,
        escalation: EscalationChannel | None = None,
        learning: LearningStore | None = None,
        tiers: tuple[FixEscalationTier, ...] = FIX_ESCALATION_TIERS,
    ) -> None:
        self.backend = backend
        self.executor = executor
        self.escalation = escalation
        self.learning = learning
        self.tiers = tiers

    async def run(
        self,
        task: ExecutionTask,
        token_chain: str,
        execution: ExecutionResult,
        blockers: list[str] | None = None,
        blocker_files: set[str] | None = None,
        extend_snapshot: Callable[[list[str]], Awaitable[Any]] | None = None,
        filter_plan: Callable[[PlanOutput], PlanOutput] | None = None,
        is_cancelled: Callable[[], bool] | None = None,
        on_attempt: Callable[[FixEscalationTier], None] | None = None,
        trust_written: bool = True,
    ) -> FixOutcome:
        """Run the tiers in order until one re-executes cleanly.

        ``trust_written=False`` starts with no known-good files, for runs whose
        writes were rolled back.  ``filter_plan`` is applied to every fix plan
        before it is written (containment).
        """
        blockers = list(blockers or [])
        known_failed = set(execution.failed_files()) | set(blocker_files or ())
        known_good = set(execution.touched_files()) - known_failed if trust_written else set()
        errors = [e.one_line() for e in execution.errors] + blockers
        signature = error_signature(errors)
        system_prompt = load_system_prompt("fixer")

        attempts = 0
        tiers_attempted: list[int] = []
        current = execution

        for tier in self.tiers:
            if is_cancelled is not None and is_cancelled():
                logger.info("Fix loop cancelled before tier %d", tier.attempt)
                return FixOutcome(
                    status="aborted", attempts=attempts, execution=current,
                    known_good=sorted(known_good), known_failed=sorted(known_failed),
                    tiers_attempted=tiers_attempted,
                )

            attempts += 1
            tiers_attempted.append(tier.attempt)
            if on_attempt is not None:
                on_attempt(tier)
            logger.info("Fix attempt %d/%d: %s", tier.attempt, len(self.tiers), tier.description)

            try:
                prompt = build_fix_prompt(task, token_chain, errors, blockers, known_good, known_failed, tier)
                response = await self.backend.invoke(prompt, tier.options(system_prompt))
                plan = filter_fix_files(PlanOutput(files=parse_file_blocks(response)), known_good, known_failed)
                if filter_plan is not None:
                    plan = filter_plan(plan)
                if not plan.files:
                    logger.warning("Fix attempt %d produced no applicable files", tier.attempt)
                    continue

                if extend_snapshot is not None:
                    await extend_snapshot([f.path for f in plan.files])
                result = await self.executor.execute(plan, {"task_id": task.id, "fix_tier": tier.attempt})
            except Exception as exc:
                logger.error("Fix attempt %d failed: %s", tier.attempt, exc)
                continue

            current = result
            if result.success:
                logger.info("Fix successful at tier %d", tier.attempt)
                known_good |= set(result.touched_files())
                known_failed -= set(result.touched_files())
                await self._record_fix(task, tier, signature)
                return FixOutcome(
                    status="fixed", attempts=attempts, execution=result,
                    known_good=sorted(known_good), known_failed=sorted(known_failed),
                    tiers_attempted=tiers_attempted, fixed_at_tier=tier.attempt,
                )

            failed_now = result.failed_files()
            for path in result.touched_files():
                if path not in failed_now:
                    known_good.add(path)
                    known_failed.discard(path)
            for path in failed_now:
                known_failed.add(path)
                known_good.discard(path)
            errors = [e.one_line() for e in result.errors] + blockers

        logger.warning("All %d fix attempts failed. Escalating to human.", len(self.tiers))
        status, guidance = await self._escalate(task, errors)
        return FixOutcome(
            status=status, attempts=attempts, execution=current,
            known_good=sorted(known_good), known_failed=sorted(known_failed),
            tiers_attempted=tiers_attempted, guidance=guidance,
        )

    async def _escalate(self, task: ExecutionTask, errors: list[str]) -> tuple[FixStatus, str]:
        if self.escalation is None:
            return "escalated_no_answer", ""

        context = (
            f"All {len(self.tiers)} automated fix attempts have failed.\n\n"
            "### Errors\n" + "\n".join(errors[:30]) + "\n\n### Attempts made\n"
            + "\n".join(f"{t.attempt}. {t.description}" for t in self.tiers)
        )
        try:
            response = await self.escalation.escalate(EscalationRequest(
                title="Fix Loop Exhausted",
                context=context,
                options=ESCALATION_OPTIONS,
                blocking=True,
                kind="fix_loop_exhausted",
                task_id=task.id,
            ))
        except Exception as exc:
            logger.error("Escalation channel failed: %s", exc)
            return "escalated_no_answer", ""

        if response is None:
            return "escalated_no_answer", ""
        if response.says("abort"):
            logger.info("User requested abort after fix loop")
            return "escalated_abort", ""
        if response.says("guide"):
            await self._record_guidance(task, response.response)
            return "escalated_continue", response.response
        return "escalated_continue", ""

    async def _record_fix(self, task: ExecutionTask, tier: FixEscalationTier, signature: str) -> None:
        if self.learning is None:
            return
        try:
            await self.learning.record(LearningRecord(
                kind="fix_success",
                task_id=task.id,
                description=task.description[:200],
                success=True,
                quality=1.0,
                fix_attempts=tier.attempt,
                tier=tier.attempt,
                error_signature=signature,
                tags=["fix_success", f"tier_{tier.attempt}", tier.strength],
            ))
        except Exception as exc:
            logger.warning("Could not record fix success: %s", exc)

    async def _record_guidance(self, task: ExecutionTask, guidance: str) -> None:
        if self.learning is None:
            return
        try:
            await self.learning.record(LearningRecord(
                kind="guidance",
                task_id=task.id,
                description=guidance[:500],
                success=False,
                tags=["human_guidance"],
            ))
        except Exception as exc:
            logger.warning("Could not record guidance: %s", exc)
