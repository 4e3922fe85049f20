"""Static analysis capability provider (type-check, lint, impact analysis).

Runs mypy / ruff for Python files and tsc / eslint for JS/TS files on an
explicit file list and returns per-file diagnostics.  Every step is
best-effort: if a tool is not installed, times out or emits unparseable
output, the step yields ``{}`` and a warning is logged; an audit is never
blocked by a missing tool.
"""

from __future__ import annotations

import asyncio
import importlib.util
import json
import re
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Literal, Protocol, runtime_checkable

from pydantic import BaseModel

from foundry.core.logging import get_logger

logger = get_logger("tools.static_analysis")

Severity = Literal["error", "warning", "info"]

# How long (seconds) a single analysis tool may run before we give up.
_TOOL_TIMEOUT = 60

_PY_SUFFIXES = (".py",)
_TS_SUFFIXES = (".ts", ".tsx")
_JS_SUFFIXES = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")


class Diagnostic(BaseModel):
    """A single issue reported by a static analysis tool."""

    line: int = 0
    column: int = 0
    message: str
    severity: Severity = "warning"
    rule_id: str = ""
    tool: str = ""

    def one_line(self, file: str = "") -> str:
        loc = f"{file}:{self.line}" if file else f"line {self.line}"
        if self.column:
            loc += f":{self.column}"
        rule = f" [{self.rule_id}]" if self.rule_id else ""
        return f"[{self.severity.upper()}]{rule} {loc} - {self.message}"


FileDiagnostics = dict[str, list[Diagnostic]]


@runtime_checkable
class CapabilityProvider(Protocol):
    """Optional tooling consumed by the guardian and the plan executor."""

    async def run_type_check(self, files: list[str]) -> FileDiagnostics: ...

    async def run_lint(self, files: list[str]) -> FileDiagnostics: ...


class StaticAnalysisCapabilities:
    """Default provider backed by mypy, ruff, tsc and eslint."""

    def __init__(self, root: str | Path, timeout: int = _TOOL_TIMEOUT) -> None:
        self.root = Path(root).resolve()
        self.timeout = timeout

    async def run_type_check(self, files: list[str]) -> FileDiagnostics:
        py = [f for f in files if f.endswith(_PY_SUFFIXES)]
        ts = [f for f in files if f.endswith(_TS_SUFFIXES)]
        results: FileDiagnostics = {}
        if py:
            _merge(results, await asyncio.to_thread(self._run_mypy, py))
        if ts:
            _merge(results, await asyncio.to_thread(self._run_tsc, ts))
        return results

    async def run_lint(self, files: list[str]) -> FileDiagnostics:
        py = [f for f in files if f.endswith(_PY_SUFFIXES)]
        js = [f for f in files if f.endswith(_JS_SUFFIXES)]
        results: FileDiagnostics = {}
        if py:
            _merge(results, await asyncio.to_thread(self._run_ruff, py))
        if js:
            _merge(results, await asyncio.to_thread(self._run_eslint, js))
        return results

    async def get_diagnostics(self, file: str) -> list[Diagnostic]:
        types = await self.run_type_check([file])
        lint = await self.run_lint([file])
        return _sort([*types.get(file, []), *lint.get(file, [])])

    async def analyze_impact(self, file: str) -> list[str]:
        """Return repo files that appear to import *file*'s module."""
        return await asyncio.to_thread(self._find_importers, file)

    # ── Tool runners ──────────────────────────────────────────────────

    def _run(self, tool: str, argv: list[str]) -> subprocess.CompletedProcess | None:
        try:
            return subprocess.run(
                argv,
                cwd=self.root,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            logger.debug("%s not executable", tool)
        except subprocess.TimeoutExpired:
            logger.warning("%s timed out after %ds", tool, self.timeout)
        except OSError as exc:
            logger.warning("%s failed unexpectedly: %s", tool, exc)
        return None

    def _run_mypy(self, files: list[str]) -> FileDiagnostics:
        if not _tool_available("mypy"):
            logger.debug("mypy not found, skipping")
            return {}
        proc = self._run("mypy", [
            sys.executable, "-m", "mypy", *files, "--no-error-summary",
            "--show-column-numbers", "--show-error-codes", "--ignore-missing-imports",
        ])
        if proc is None:
            return {}
        results: FileDiagnostics = {}
        for line in (proc.stdout + proc.stderr).splitlines():
            parsed = parse_mypy_line(line)
            if parsed:
                file, diag = parsed
                results.setdefault(_rel(self.root, file), []).append(diag)
        logger.info("mypy: %d file(s) with issues", len(results))
        return results

    def _run_ruff(self, files: list[str]) -> FileDiagnostics:
        if not _tool_available("ruff"):
            logger.debug("ruff not found, skipping")
            return {}
        proc = self._run("ruff", [
            sys.executable, "-m", "ruff", "check", *files, "--output-format=json", "--no-cache",
        ])
        # ruff exits 1 when issues are found; that is expected, not an error.
        raw = (proc.stdout or "").strip() if proc else ""
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Could not parse ruff JSON output: %s", exc)
            return {}

        results: FileDiagnostics = {}
        for item in data:
            if not isinstance(item, dict):
                continue
            location = item.get("location") or {}
            results.setdefault(_rel(self.root, item.get("filename", "")), []).append(Diagnostic(
                line=location.get("row", 0),
                column=location.get("column", 0),
                severity=ruff_severity(item.get("code") or ""),
                rule_id=item.get("code") or "",
                message=item.get("message", ""),
                tool="ruff",
            ))
        logger.info("ruff: %d file(s) with issues", len(results))
        return results

    def _run_tsc(self, files: list[str]) -> FileDiagnostics:
        if not (self.root / "tsconfig.json").exists():
            logger.debug("tsc: no tsconfig.json found, skipping")
            return {}
        tsc_bin = _find_node_bin(self.root, "tsc")
        if not tsc_bin:
            logger.debug("tsc: binary not found, skipping")
            return {}
        proc = self._run("tsc", [tsc_bin, "--noEmit", "--pretty", "false"])
        if proc is None:
            return {}
        wanted = set(files)
        results: FileDiagnostics = {}
        for line in (proc.stdout + proc.stderr).splitlines():
            parsed = parse_tsc_line(line)
            if parsed:
                file, diag = parsed
                rel = _rel(self.root, file)
                # tsc checks the whole project; keep only the requested files
                if rel in wanted:
                    results.setdefault(rel, []).append(diag)
        logger.info("tsc: %d file(s) with issues", len(results))
        return results

    def _run_eslint(self, files: list[str]) -> FileDiagnostics:
        eslint_bin = _find_node_bin(self.root, "eslint")
        if not eslint_bin:
            logger.debug("eslint not found, skipping")
            return {}
        proc = self._run("eslint", [eslint_bin, *files, "--format=json"])
        raw = (proc.stdout or "").strip() if proc else ""
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Could not parse eslint JSON output: %s", exc)
            return {}

        results: FileDiagnostics = {}
        for file_result in data:
            if not isinstance(file_result, dict):
                continue
            path = _rel(self.root, file_result.get("filePath", ""))
            for msg in file_result.get("messages", []):
                if not isinstance(msg, dict):
                    continue
                results.setdefault(path, []).append(Diagnostic(
                    line=msg.get("line", 0),
                    column=msg.get("column", 0),
                    severity="error" if msg.get("severity", 1) == 2 else "warning",
                    rule_id=msg.get("ruleId") or "",
                    message=msg.get("message", ""),
                    tool="eslint",
                ))
        logger.info("eslint: %d file(s) with issues", len(results))
        return results

    def _find_importers(self, file: str) -> list[str]:
        stem = Path(file).stem
        if not stem or stem == "__init__":
            return []
        pattern = re.compile(
            rf"(?:^\s*(?:from|import)\s+[\w.]*\b{re.escape(stem)}\b"
            rf"|from\s+['\"][./\w-]*/{re.escape(stem)}['\"])",
            re.MULTILINE,
        )
        importers: list[str] = []
        for path in self.root.rglob("*"):
            if not path.is_file() or not path.name.endswith((*_PY_SUFFIXES, *_JS_SUFFIXES)):
                continue
            if "node_modules" in path.parts or ".git" in path.parts:
                continue
            rel = _rel(self.root, str(path))
            if rel == file:
                continue
            try:
                if pattern.search(path.read_text(encoding="utf-8", errors="replace")):
                    importers.append(rel)
            except OSError:
                continue
        return sorted(importers)


# ---------------------------------------------------------------------------
# Output parsers
# ---------------------------------------------------------------------------

def ruff_severity(code: str) -> Severity:
    """Map ruff rule codes to our 3-level severity."""
    if not code:
        return "warning"
    prefix = code[0].upper()
    # E = pycodestyle errors, F = pyflakes → treat as errors
    if prefix in {"E", "F"}:
        return "error"
    if prefix == "W":
        return "warning"
    return "info"


_MYPY_LINE = re.compile(
    r"^(?P<file>[^:\s][^:]*):(?P<line>\d+):(?:(?P<col>\d+):)?\s*(?P<sev>error|warning|note):\s*(?P<msg>.*)$"
)


def parse_mypy_line(line: str) -> tuple[str, Diagnostic] | None:
    """Parse ``path/to/file.py:10:5: error: message  [error-code]``. Notes are skipped."""
    match = _MYPY_LINE.match(line.strip())
    if not match or match["sev"] == "note":
        return None

    message = match["msg"].strip()
    rule_id = ""
    if message.endswith("]") and "[" in message:
        bracket_start = message.rfind("[")
        rule_id = message[bracket_start + 1:-1]
        message = message[:bracket_start].strip()

    return match["file"], Diagnostic(
        line=int(match["line"]),
        column=int(match["col"] or 0),
        severity="error" if match["sev"] == "error" else "warning",
        rule_id=rule_id,
        message=message,
        tool="mypy",
    )


_TSC_LINE = re.compile(
    r"^(?P<file>.+?)\((?P<line>\d+)(?:,(?P<col>\d+))?\):\s*(?P<sev>error|warning)\s+(?P<code>TS\d+):\s*(?P<msg>.*)$"
)


def parse_tsc_line(line: str) -> tuple[str, Diagnostic] | None:
    """Parse ``path/to/file.ts(10,5): error TS2345: message``."""
    match = _TSC_LINE.match(line.strip())
    if not match:
        return None
    return match["file"].strip(), Diagnostic(
        line=int(match["line"]),
        column=int(match["col"] or 0),
        severity=match["sev"],
        rule_id=match["code"],
        message=match["msg"].strip(),
        tool="tsc",
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _tool_available(tool: str) -> bool:
    """Return True if *tool* is importable as a Python module."""
    return importlib.util.find_spec(tool) is not None


def _find_node_bin(root: Path, name: str) -> str | None:
    """Locate a node tool: local node_modules first, then PATH."""
    local = root / "node_modules" / ".bin" / name
    if local.exists():
        return str(local)
    return shutil.which(name)


def _rel(root: Path, path: str) -> str:
    """Return *path* relative to *root*, or the original string if not possible."""
    if not path:
        return path
    try:
        return (root / path).resolve().relative_to(root).as_posix()
    except ValueError:
        return path


def _merge(into: FileDiagnostics, other: FileDiagnostics) -> None:
    for file, diags in other.items():
        into.setdefault(file, []).extend(diags)


def _sort(diags: list[Diagnostic]) -> list[Diagnostic]:
    """Errors first, then warnings, then info; then by line."""
    order = {"error": 0, "warning": 1, "info": 2}
    return sorted(diags, key=lambda d: (order.get(d.severity, 9), d.line))
