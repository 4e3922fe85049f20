"""Audit engine: post-write scans and the rollback / completion verdicts.

Phases run in a fixed order (security, diff analysis, type check, lint,
quality, regression).  Each phase is toggleable and isolated: a phase that
cannot run (tool missing, file unreadable) contributes no issues and never
blocks the others.  "No findings" is an empty list, not an exception.
"""

from __future__ import annotations

import json
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

from foundry.core.logging import get_logger
from foundry.guardian import patterns
from foundry.guardian.types import (
    SEVERITY_ORDER,
    AuditCategory,
    AuditContext,
    AuditIssue,
    AuditPhase,
    AuditResult,
    AuditSeverity,
    AuditSummary,
    GuardianConfig,
    PreWriteSnapshot,
)
from foundry.tools.filesystem import PathEscapeError, match_glob, read_text, resolve_safe
from foundry.tools.shell import run_command
from foundry.tools.static_analysis import CapabilityProvider

logger = get_logger("guardian.audit")

SecurityReviewer = Callable[[list[str]], Awaitable[list[AuditIssue]]]

_SNIPPET_CONTEXT = 1
_TEST_OUTPUT_SNIPPET = 1000


def _snippet(lines: list[str], line_number: int) -> str:
    start = max(0, line_number - 1 - _SNIPPET_CONTEXT)
    end = min(len(lines), line_number + _SNIPPET_CONTEXT + 1)
    return "\n".join(lines[start:end])


class AuditEngine:
    def __init__(
        self,
        root: str | Path,
        config: GuardianConfig | None = None,
        capabilities: CapabilityProvider | None = None,
        security_reviewer: SecurityReviewer | None = None,
    ) -> None:
        self.root = Path(root).resolve()
        self.config = config or GuardianConfig()
        self.capabilities = capabilities
        self.security_reviewer = security_reviewer

    # ── Entry point ───────────────────────────────────────────────────

    async def run(self, context: AuditContext) -> AuditResult:
        start = time.monotonic()
        files = self.filter_files([*context.files_written, *context.files_modified])
        issues: list[AuditIssue] = []
        completed: list[AuditPhase] = []
        cfg = self.config

        logger.info("Auditing %d file(s) for task %s", len(files), context.task_id)

        if cfg.security_audit:
            issues += await self._phase("security", self.security_audit(files))
            completed.append(AuditPhase.SECURITY)
        if cfg.diff_analysis and context.snapshot is not None:
            issues += await self._phase("diff analysis", self.diff_analysis(files, context.snapshot))
            completed.append(AuditPhase.DIFF_ANALYSIS)
        if cfg.type_check and self.capabilities is not None:
            issues += await self._phase("type check", self.type_check(files))
            completed.append(AuditPhase.TYPE_CHECK)
        if cfg.lint_check and self.capabilities is not None:
            issues += await self._phase("lint", self.lint_check(files))
            completed.append(AuditPhase.LINT)
        if cfg.quality_audit:
            issues += await self._phase("quality", self.quality_audit(files))
            completed.append(AuditPhase.QUALITY)
        if cfg.regression_check:
            issues += await self._phase("regression", self.regression_check())
            completed.append(AuditPhase.REGRESSION)

        rollback_required, reason = self.determine_rollback(issues)
        result = AuditResult(
            passed=not rollback_required,
            issues=issues,
            rollback_required=rollback_required,
            rollback_reason=reason,
            files_audited=files,
            files_modified=list(context.files_modified),
            duration_ms=int((time.monotonic() - start) * 1000),
            phases_completed=completed,
            summary=AuditSummary.from_issues(issues),
        )
        logger.info(
            "Audit complete: %s (%d issue(s), %dms)",
            "PASSED" if result.passed else "FAILED", len(issues), result.duration_ms,
        )
        return result

    async def _phase(self, name: str, coro: Awaitable[list[AuditIssue]]) -> list[AuditIssue]:
        try:
            found = await coro
        except Exception as exc:
            logger.warning("Audit phase %s failed to run: %s", name, exc)
            return []
        logger.info("Audit phase %s: %d issue(s)", name, len(found))
        return found

    def filter_files(self, files: list[str]) -> list[str]:
        kept: list[str] = []
        skip = [*self.config.skip_patterns, f"**/{self.config.backup_dir.strip('/')}/**"]
        for file in dict.fromkeys(files):
            normalised = file.replace("\\", "/")
            if any(match_glob(normalised, p) for p in skip):
                continue
            try:
                size = resolve_safe(self.root, normalised).stat().st_size
            except (OSError, PathEscapeError):
                size = 0
            if size > self.config.max_file_size_bytes:
                logger.debug("Skipping %s: %d bytes over audit size limit", normalised, size)
                continue
            kept.append(normalised)
        return kept

    async def _read(self, file: str) -> str | None:
        try:
            return await read_text(resolve_safe(self.root, file))
        except (OSError, PathEscapeError):
            return None

    # ── Phases ────────────────────────────────────────────────────────

    async def security_audit(self, files: list[str]) -> list[AuditIssue]:
        issues: list[AuditIssue] = []
        if self.security_reviewer is not None and files:
            try:
                issues.extend(await self.security_reviewer(files))
            except Exception as exc:
                logger.warning("Security reviewer failed: %s", exc)

        seen = {(i.file, i.line, i.rule) for i in issues}
        for file in files:
            content = await self._read(file)
            if content is None:
                continue
            issues.extend(scan_security_patterns(file, content, seen))
        return issues

    async def diff_analysis(self, files: list[str], snapshot: PreWriteSnapshot) -> list[AuditIssue]:
        issues: list[AuditIssue] = []
        for file in files:
            before = snapshot.get(file)
            if before is None or not before.existed:
                continue
            new_content = await self._read(file)
            if new_content is None:
                continue
            if before.content is not None:
                old_content = before.content
            elif before.backup_path:
                try:
                    old_content = await read_text(Path(before.backup_path))
                except OSError:
                    continue
            else:
                continue
            issues.extend(diff_issues(file, old_content, new_content))
        return issues

    async def type_check(self, files: list[str]) -> list[AuditIssue]:
        if not files:
            return []
        issues: list[AuditIssue] = []
        for file, diags in (await self.capabilities.run_type_check(files)).items():
            for d in diags:
                error = d.severity == "error"
                issues.append(AuditIssue(
                    severity=AuditSeverity.HIGH if error else AuditSeverity.MEDIUM,
                    category=AuditCategory.TYPE_ERROR,
                    file=file, line=d.line or None, column=d.column or None,
                    message=d.message, rule=d.rule_id or d.tool,
                    blocking=error,
                ))
        return issues

    async def lint_check(self, files: list[str]) -> list[AuditIssue]:
        if not files:
            return []
        issues: list[AuditIssue] = []
        for file, diags in (await self.capabilities.run_lint(files)).items():
            for d in diags:
                issues.append(AuditIssue(
                    severity=AuditSeverity.MEDIUM if d.severity == "error" else AuditSeverity.LOW,
                    category=AuditCategory.LINT,
                    file=file, line=d.line or None, column=d.column or None,
                    message=d.message, rule=d.rule_id or "unknown",
                ))
        return issues

    async def quality_audit(self, files: list[str]) -> list[AuditIssue]:
        issues: list[AuditIssue] = []
        for file in files:
            content = await self._read(file)
            if content is not None:
                issues.extend(quality_issues(file, content))
        return issues

    async def regression_check(self) -> list[AuditIssue]:
        command = self.config.test_command or self.detect_test_command()
        if not command:
            logger.info("No test runner detected, skipping regression check")
            return []

        logger.info("Running tests: %s", command)
        outcome = await run_command(command, self.root, timeout=self.config.test_timeout_seconds)
        if outcome.ok:
            logger.info("Tests passed")
            return []

        issues = [AuditIssue(
            severity=AuditSeverity.HIGH,
            category=AuditCategory.REGRESSION,
            message="Test suite failed after code changes",
            snippet=outcome.output[:_TEST_OUTPUT_SNIPPET],
            suggestion="Review test failures and fix breaking changes",
            rule="test-failure",
            blocking=True,
        )]
        issues.extend(parse_test_failures(outcome.output))
        return issues

    def detect_test_command(self) -> str | None:
        pkg = self.root / "package.json"
        if not pkg.is_file():
            return None
        try:
            data = json.loads(pkg.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        if data.get("scripts", {}).get("test"):
            return "npm test"
        deps = {**data.get("dependencies", {}), **data.get("devDependencies", {})}
        for name, command in (("vitest", "npx vitest run"), ("jest", "npx jest"), ("mocha", "npx mocha")):
            if name in deps:
                return command
        return None

    # ── Verdicts ──────────────────────────────────────────────────────

    def determine_rollback(self, issues: list[AuditIssue]) -> tuple[bool, str]:
        if self.config.auto_rollback_on_critical:
            critical = [i for i in issues if i.severity is AuditSeverity.CRITICAL]
            if critical:
                return True, f"{len(critical)} critical issue(s): {critical[0].message}"

        for severity in SEVERITY_ORDER:
            if not severity.at_least(self.config.blocking_severity):
                break
            blocking = [i for i in issues if i.severity is severity and i.blocking]
            if blocking:
                return True, f"Blocking {severity} issue: {blocking[0].message}"
        return False, ""

    def can_complete(self, result: AuditResult) -> bool:
        """Veto check a caller must pass before declaring a run done."""
        if result.rollback_required:
            return False
        if any(i.blocking for i in result.issues):
            return False
        if any(i.severity.at_least(self.config.blocking_severity) for i in result.issues):
            return False
        return len(result.issues) <= self.config.max_issues_before_block


# ── Pure scanners ────────────────────────────────────────────────────────

def scan_security_patterns(
    file: str, content: str, seen: set[tuple[str, int | None, str]] | None = None
) -> list[AuditIssue]:
    seen = seen if seen is not None else set()
    lines = content.split("\n")
    issues: list[AuditIssue] = []
    for rule in patterns.SECURITY_PATTERNS:
        if not rule.applies_to(file):
            continue
        for match in rule.pattern.finditer(content):
            line = content.count("\n", 0, match.start()) + 1
            key = (file, line, rule.id)
            if key in seen:
                continue
            seen.add(key)
            issues.append(AuditIssue(
                severity=rule.severity,
                category=AuditCategory.SECURITY,
                file=file, line=line,
                message=f"{rule.name}: {rule.description}",
                snippet=_snippet(lines, line),
                suggestion=rule.suggestion,
                rule=rule.id,
                blocking=rule.blocking,
            ))
    return issues


def diff_issues(file: str, old: str, new: str) -> list[AuditIssue]:
    issues: list[AuditIssue] = []
    old_lines = len(old.split("\n"))
    new_lines = len(new.split("\n"))
    delta = abs(new_lines - old_lines)
    ratio = delta / max(old_lines, 1)
    if ratio > patterns.LARGE_CHANGE_RATIO and delta > patterns.LARGE_CHANGE_LINES:
        direction = "added" if new_lines > old_lines else "removed"
        issues.append(AuditIssue(
            severity=AuditSeverity.MEDIUM, category=AuditCategory.QUALITY, file=file,
            message=f"Large change detected: {delta} lines {direction} ({ratio * 100:.1f}% change)",
            suggestion="Large changes increase risk of bugs. Consider smaller steps.",
            rule="large-change",
        ))

    for name in sorted(patterns.exported_names(old) - patterns.exported_names(new)):
        issues.append(AuditIssue(
            severity=AuditSeverity.HIGH, category=AuditCategory.COMPATIBILITY, file=file,
            message=f"Removed export: {name}",
            suggestion="Removing exports can break dependent code. Deprecate first.",
            rule="removed-export",
            blocking=True,
        ))

    if not patterns.DEBUG_PRINT_PATTERN.search(old) and patterns.DEBUG_PRINT_PATTERN.search(new):
        issues.append(AuditIssue(
            severity=AuditSeverity.LOW, category=AuditCategory.QUALITY, file=file,
            message="Debug print added to production code",
            suggestion="Remove debugging statements or use the logger",
            rule="debug-print",
            auto_fixable=True,
        ))

    added_todos = len(patterns.TODO_PATTERN.findall(new)) - len(patterns.TODO_PATTERN.findall(old))
    if added_todos > 0:
        issues.append(AuditIssue(
            severity=AuditSeverity.INFO, category=AuditCategory.QUALITY, file=file,
            message=f"{added_todos} new TODO/FIXME comment(s) added",
            suggestion="Ensure TODOs are tracked in the issue tracker",
            rule="todo-added",
        ))
    return issues


def _long_functions(lines: list[str], python: bool) -> list[tuple[int, int]]:
    """(start_line, length) for every function longer than the limit."""
    found: list[tuple[int, int]] = []
    start = -1
    if python:
        indent = 0
        for i, line in enumerate(lines + [""]):
            stripped = line.strip()
            current = len(line) - len(line.lstrip())
            if start >= 0 and (i == len(lines) or (stripped and current <= indent)):
                end = i
                while end > start + 1 and not lines[end - 1].strip():
                    end -= 1
                if end - start > patterns.MAX_FUNCTION_LINES:
                    found.append((start + 1, end - start))
                start = -1
            if start < 0 and i < len(lines) and patterns.FUNCTION_START_PATTERN.match(line):
                start, indent = i, current
        return found

    depth = 0
    for i, line in enumerate(lines):
        if start < 0 and patterns.FUNCTION_START_PATTERN.search(line):
            start, depth = i, 0
        if start >= 0:
            depth += line.count("{") - line.count("}")
            if depth <= 0:
                length = i - start + 1
                if length > patterns.MAX_FUNCTION_LINES:
                    found.append((start + 1, length))
                start = -1
    return found


def quality_issues(file: str, content: str) -> list[AuditIssue]:
    lines = content.split("\n")
    issues: list[AuditIssue] = []

    for start, length in _long_functions(lines, python=file.endswith(".py")):
        issues.append(AuditIssue(
            severity=AuditSeverity.MEDIUM, category=AuditCategory.COMPLEXITY, file=file, line=start,
            message=f"Function is {length} lines long",
            suggestion="Consider breaking into smaller functions",
            rule="long-function",
        ))

    for number, line in enumerate(lines, start=1):
        if len(line) > patterns.MAX_LINE_LENGTH:
            issues.append(AuditIssue(
                severity=AuditSeverity.LOW, category=AuditCategory.STYLE, file=file, line=number,
                message=f"Line is {len(line)} characters long",
                suggestion="Break long lines for readability",
                rule="long-line",
            ))

    max_indent = max((len(line) - len(line.lstrip()) for line in lines if line.strip()), default=0)
    if max_indent > patterns.MAX_INDENT:
        issues.append(AuditIssue(
            severity=AuditSeverity.MEDIUM, category=AuditCategory.COMPLEXITY, file=file,
            message=f"Deep nesting detected ({max_indent // 4} levels)",
            suggestion="Reduce nesting with early returns or function extraction",
            rule="deep-nesting",
        ))
    return issues


def parse_test_failures(output: str) -> list[AuditIssue]:
    issues: list[AuditIssue] = []
    seen: set[str] = set()
    for match in patterns.TEST_FAILURE_PATTERN.finditer(output or ""):
        test_file = match.group(1).split("::", 1)[0]
        if test_file in seen:
            continue
        seen.add(test_file)
        issues.append(AuditIssue(
            severity=AuditSeverity.HIGH,
            category=AuditCategory.REGRESSION,
            file=test_file,
            message=f"Test file failed: {test_file}",
            rule="test-file-failure",
            blocking=True,
        ))
    return issues
