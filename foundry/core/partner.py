"""Pre-engineering gates: knowledge-gap detection and approach credibility.

Both run between DESIGN and ENGINEER.  Knowledge gaps are pure heuristics
over the task text and the gathered context.  Approach credibility comes
from an optional shadow-search provider that looks for evidence against the
chosen design; without one every approach is taken at face value.
"""

from __future__ import annotations

import re
from typing import Literal, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from foundry.core.logging import get_logger
from foundry.core.state import ContextBundle, DesignOutput, ExecutionTask

logger = get_logger("core.partner")

GateLevel = Literal["none", "soft", "hard"]

CREDIBILITY_HARD_GATE = 0.3
CREDIBILITY_SOFT_GATE = 0.5
L_SCORE_HARD_GATE = 0.2

_BRIEF_DESCRIPTION = 100
_CRITICAL_AMBIGUITY_COUNT = 2
_MAX_AND_OBJECTIVES = 3

AMBIGUOUS_TERMS: tuple[str, ...] = ("etc", "somehow", "maybe", "something like", "and so on")

KNOWN_TECHNOLOGIES: tuple[str, ...] = (
    "react", "vue", "angular", "svelte", "next.js", "django", "flask", "fastapi",
    "express", "laravel", "livewire", "rails", "spring", "postgres", "mysql", "sqlite",
    "mongodb", "redis", "kafka", "rabbitmq", "graphql", "grpc", "docker", "kubernetes",
    "terraform", "tailwind", "prisma", "celery",
)


class KnowledgeGap(BaseModel):
    kind: Literal["specification", "terminology", "scope", "technology"]
    description: str
    critical: bool = False
    question: str = ""


class ShadowSearchResult(BaseModel):
    credibility: float = 1.0
    l_score: float = 1.0
    contradictions: list[str] = Field(default_factory=list)


@runtime_checkable
class ShadowSearchProvider(Protocol):
    """Looks for evidence contradicting an approach."""

    async def shadow_query(self, approach: str) -> ShadowSearchResult: ...


class ApproachAssessment(BaseModel):
    credibility: float = 1.0
    l_score: float = 1.0
    contradictions: list[str] = Field(default_factory=list)
    gate: GateLevel = "none"
    reasoning: str = ""


# ── Knowledge gaps ───────────────────────────────────────────────────────

def _ambiguous_terms(text: str) -> list[str]:
    lowered = text.lower()
    return [t for t in AMBIGUOUS_TERMS if re.search(rf"\b{re.escape(t)}\b", lowered)]


def _and_objectives(text: str) -> int:
    sentences = re.split(r"[.;\n]", text)
    return max((len(re.split(r"\band\b", s, flags=re.IGNORECASE)) for s in sentences), default=1)


def _context_text(context: ContextBundle | None) -> str:
    if context is None:
        return ""
    return " ".join([context.summary, *context.files, *context.snippets.values()]).lower()


def identify_knowledge_gaps(task: ExecutionTask, context: ContextBundle | None = None) -> list[KnowledgeGap]:
    text = f"{task.description}\n{task.specification}"
    gaps: list[KnowledgeGap] = []

    if not task.specification and len(task.description) < _BRIEF_DESCRIPTION:
        gaps.append(KnowledgeGap(
            kind="specification",
            description="Brief description and no specification",
            question="Should I make reasonable assumptions, or do you want to provide requirements first?",
        ))

    terms = _ambiguous_terms(text)
    critical = len(terms) >= _CRITICAL_AMBIGUITY_COUNT
    for term in terms:
        gaps.append(KnowledgeGap(
            kind="terminology",
            description=f"Ambiguous wording: '{term}'",
            critical=critical,
            question=f"When you say '{term}', what specifically do you mean?",
        ))

    objectives = _and_objectives(task.description)
    if objectives > _MAX_AND_OBJECTIVES:
        gaps.append(KnowledgeGap(
            kind="scope",
            description=f"{objectives} objectives joined in one request",
            question="Should I focus on a minimal implementation first, or the complete scope?",
        ))

    known = _context_text(context)
    for tech in KNOWN_TECHNOLOGIES:
        if re.search(rf"\b{re.escape(tech)}\b", task.description.lower()) and tech not in known:
            gaps.append(KnowledgeGap(
                kind="technology",
                description=f"'{tech}' is mentioned but not found in the repository",
                question=f"Should I introduce {tech} into this codebase, or is it already set up elsewhere?",
            ))

    logger.info(
        "Knowledge gaps: %d (%d critical)", len(gaps), sum(1 for g in gaps if g.critical)
    )
    return gaps


# ── Approach assessment ──────────────────────────────────────────────────

def gate_for(credibility: float, l_score: float) -> GateLevel:
    if credibility < CREDIBILITY_HARD_GATE or l_score < L_SCORE_HARD_GATE:
        return "hard"
    if credibility < CREDIBILITY_SOFT_GATE:
        return "soft"
    return "none"


async def assess_approach(
    design: DesignOutput, provider: ShadowSearchProvider | None = None
) -> ApproachAssessment:
    if provider is None or not design.approach:
        return ApproachAssessment()

    try:
        result = await provider.shadow_query(design.approach)
    except Exception as exc:
        logger.warning("Shadow search failed, assuming full credibility: %s", exc)
        return ApproachAssessment()

    gate = gate_for(result.credibility, result.l_score)
    reasons: list[str] = []
    if result.credibility < CREDIBILITY_SOFT_GATE:
        reasons.append(f"credibility {result.credibility:.0%}")
    if result.l_score < L_SCORE_HARD_GATE:
        reasons.append(f"confidence {result.l_score:.0%}")
    if result.contradictions:
        reasons.append(f"{len(result.contradictions)} contradiction(s)")

    logger.info(
        "Approach assessment: credibility=%.3f l_score=%.3f gate=%s",
        result.credibility, result.l_score, gate,
    )
    return ApproachAssessment(
        credibility=result.credibility,
        l_score=result.l_score,
        contradictions=result.contradictions,
        gate=gate,
        reasoning=", ".join(reasons),
    )
