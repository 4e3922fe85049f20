"""Phase agents: one method per reasoning phase of the pipeline.

Each method builds a prompt, calls the injected backend and parses the reply
into a typed phase payload carrying its compressed token.  Parse failures
degrade to empty payloads; backend errors propagate.
"""

from __future__ import annotations

import json
import re
from pathlib import Path

from foundry.agents.backend import InvokeOptions, ReasoningBackend
from foundry.agents.models import load_system_prompt
from foundry.core.logging import get_logger
from foundry.core.state import (
    ComponentDependency,
    ContextBundle,
    DesignOutput,
    ExecutionResult,
    ExecutionTask,
    PlanOutput,
    ValidationResult,
)
from foundry.engineering.file_ops import parse_with_fallback
from foundry.engineering.parallel import ParallelEngineer
from foundry.guardian.types import AuditCategory, AuditIssue, AuditResult, AuditSeverity
from foundry.tools.filesystem import PathEscapeError, list_tree, read_text, resolve_safe

logger = get_logger("agents.phases")

KEY_FILES = (
    "README.md", "pyproject.toml", "setup.cfg", "requirements.txt", "package.json",
    "tsconfig.json", "composer.json", "go.mod", "Cargo.toml",
)
_SNIPPET_CHARS = 3000
_REVIEW_FILE_CHARS = 8000
_COMMANDS_BLOCK = re.compile(r"<commands>([\s\S]*?)</commands>")


def extract_json(text: str) -> dict:
    """Pull a JSON object out of an LLM reply. Handles markdown fences and chatter."""
    body = text or ""
    if "```json" in body:
        body = body.split("```json", 1)[1].split("```", 1)[0]
    body = body.strip()
    try:
        parsed = json.loads(body)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = body.find("{")
    end = body.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            parsed = json.loads(body[start:end])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
    logger.warning("Could not parse JSON from response: %s", body[:200])
    return {}


def parse_commands(text: str) -> list[str]:
    match = _COMMANDS_BLOCK.search(text or "")
    if not match:
        return []
    return [line.strip() for line in match.group(1).splitlines() if line.strip()]


def _str_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


class PhaseAgents:
    def __init__(
        self,
        backend: ReasoningBackend,
        root: str | Path,
        parallel_engineer: ParallelEngineer | None = None,
    ) -> None:
        self.backend = backend
        self.root = Path(root).resolve()
        self.parallel_engineer = parallel_engineer or ParallelEngineer(
            backend, InvokeOptions(strength="fast", system_prompt=load_system_prompt("engineer"))
        )

    # ── CONTEXT ───────────────────────────────────────────────────────

    async def gather_context(self, task: ExecutionTask) -> ContextBundle:
        root = Path(task.codebase_path or self.root)
        files = list_tree(root) if root.is_dir() else []
        snippets: dict[str, str] = {}
        for name in KEY_FILES:
            if name not in files:
                continue
            try:
                snippets[name] = (await read_text(root / name))[:_SNIPPET_CHARS]
            except OSError as exc:
                logger.debug("Could not read %s: %s", name, exc)

        top_dirs = sorted({f.split("/", 1)[0] for f in files if "/" in f})
        summary = (
            f"{len(files)} files. Top-level directories: {', '.join(top_dirs) or 'none'}.\n"
            + "\n".join(f"- {f}" for f in files[:200])
        )
        logger.info("Context gathered: %d files, %d key file(s)", len(files), len(snippets))
        return ContextBundle(
            files=files,
            snippets=snippets,
            summary=summary,
            compressed_token=f"CTX|files:{len(files)}",
        )

    # ── DESIGN ────────────────────────────────────────────────────────

    async def design(self, task: ExecutionTask, context: ContextBundle) -> DesignOutput:
        key_files = "\n\n".join(f"### {name}\n{text}" for name, text in context.snippets.items())
        constraints = "\n".join(f"- {c}" for c in task.constraints) or "none"
        prompt = (
            f"## Task\n{task.description}\n\n"
            f"## Specification\n{task.specification or 'none provided'}\n\n"
            f"## Constraints\n{constraints}\n\n"
            f"## Repository\n{context.summary}\n\n{key_files}"
        )
        response = await self.backend.invoke(
            prompt, InvokeOptions(strength="strong", system_prompt=load_system_prompt("architect"))
        )

        data = extract_json(response)
        components: list[ComponentDependency] = []
        for raw in data.get("components", []) if isinstance(data.get("components"), list) else []:
            if not isinstance(raw, dict) or not str(raw.get("name", "")).strip():
                continue
            components.append(ComponentDependency(
                name=str(raw["name"]).strip(),
                file=str(raw.get("file", "")).strip(),
                dependencies=_str_list(raw.get("dependencies")),
                description=str(raw.get("description", "")).strip(),
            ))

        approach = response.split("```", 1)[0].strip() or str(data.get("approach", ""))
        logger.info("Design: %d component(s)", len(components))
        return DesignOutput(
            approach=approach[:2000],
            components=components,
            compressed_token=f"DESIGN|components:{len(components)}",
        )

    # ── ENGINEER ──────────────────────────────────────────────────────

    async def engineer(
        self,
        task: ExecutionTask,
        context: ContextBundle,
        design: DesignOutput,
        parallel: bool = False,
    ) -> PlanOutput:
        if parallel and design.components:
            return await self.parallel_engineer.execute_in_order(task, context, design)

        components = "\n".join(
            f"- {c.name} → {c.file or '?'} (deps: {', '.join(c.dependencies) or 'none'})"
            for c in design.components
        )
        prompt = (
            f"## Task\n{task.description}\n\n"
            f"## Specification\n{task.specification or 'none provided'}\n\n"
            f"## Design\n{design.approach}\n\n## Components\n{components or '- (unspecified)'}\n\n"
            f"## Repository\n{context.summary}"
        )
        response = await self.backend.invoke(
            prompt, InvokeOptions(strength="fast", system_prompt=load_system_prompt("engineer"))
        )

        fallback = design.components[0].file if len(design.components) == 1 else ""
        files = parse_with_fallback(response, fallback, label="engineer")
        commands = parse_commands(response)
        return PlanOutput(
            files=files,
            commands=commands,
            notes=f"Single engineer: {len(files)} files, {len(commands)} commands",
            confidence=0.8 if files else 0.0,
            compressed_token=f"PLAN|single|{len(files)}files",
        )

    # ── VALIDATE ──────────────────────────────────────────────────────

    async def validate(
        self,
        task: ExecutionTask,
        plan: PlanOutput,
        execution: ExecutionResult | None,
        audit: AuditResult | None,
    ) -> ValidationResult:
        errors = "\n".join(e.one_line() for e in execution.errors) if execution else "not executed"
        issues = "\n".join(i.one_line() for i in audit.issues[:30]) if audit else "no audit"
        files = "\n".join(f"- {f.action} {f.path}" for f in plan.files)
        prompt = (
            f"## Task\n{task.description}\n\n"
            f"## Specification\n{task.specification or 'none provided'}\n\n"
            f"## Plan\n{plan.notes}\n{files}\n\n"
            f"## Execution\n{execution.compressed_token if execution else ''}\n{errors or 'no errors'}\n\n"
            f"## Audit\n{issues or 'no issues'}"
        )
        response = await self.backend.invoke(
            prompt, InvokeOptions(strength="fast", system_prompt=load_system_prompt("validator"))
        )

        data = extract_json(response)
        blockers = _str_list(data.get("blockers"))
        approved = bool(data.get("approved", not blockers))
        verdict = "approved" if approved else "rejected"
        return ValidationResult(
            approved=approved,
            blockers=blockers,
            required_modifications=_str_list(data.get("required_modifications")),
            compressed_token=f"VAL|{verdict}|blockers:{len(blockers)}",
        )

    # ── SECURITY ──────────────────────────────────────────────────────

    async def security_review(self, files: list[str]) -> list[AuditIssue]:
        sections: list[str] = []
        for file in files:
            try:
                content = await read_text(resolve_safe(self.root, file))
            except (OSError, PathEscapeError):
                continue
            sections.append(f"### {file}\n```\n{content[:_REVIEW_FILE_CHARS]}\n```")
        if not sections:
            return []

        response = await self.backend.invoke(
            "\n\n".join(sections),
            InvokeOptions(strength="fast", system_prompt=load_system_prompt("security")),
        )

        issues: list[AuditIssue] = []
        findings = extract_json(response).get("findings", [])
        for raw in findings if isinstance(findings, list) else []:
            if not isinstance(raw, dict):
                continue
            try:
                severity = AuditSeverity(str(raw.get("severity", "medium")).lower())
            except ValueError:
                severity = AuditSeverity.MEDIUM
            line = raw.get("line")
            issues.append(AuditIssue(
                severity=severity,
                category=AuditCategory.SECURITY,
                file=str(raw.get("file", "")),
                line=line if isinstance(line, int) and line > 0 else None,
                message=f"{raw.get('title', 'Security finding')}: {raw.get('description', '')}".strip(": "),
                rule=str(raw.get("type", "security-review")),
                blocking=severity.at_least(AuditSeverity.HIGH),
            ))
        logger.info("Security review: %d finding(s)", len(issues))
        return issues
