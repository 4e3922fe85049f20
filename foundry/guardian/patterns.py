"""Regex rules used by the guardian's security, diff and quality phases."""

from __future__ import annotations

import re

from foundry.guardian.types import AuditSeverity, SecurityPattern

_JS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")
_PY = (".py",)

SECURITY_PATTERNS: tuple[SecurityPattern, ...] = (
    SecurityPattern(
        id="eval-usage",
        name="Unsafe eval usage",
        pattern=re.compile(r"\beval\s*\("),
        severity=AuditSeverity.CRITICAL,
        description="eval() can execute arbitrary code and is a major security risk",
        suggestion="Parse data explicitly (json.loads / JSON.parse) instead of evaluating it",
    ),
    SecurityPattern(
        id="hardcoded-secret",
        name="Hardcoded secret",
        pattern=re.compile(
            r"(api[_-]?key|password|secret|token)\s*[:=]\s*['\"`][^'\"`]{8,}", re.IGNORECASE
        ),
        severity=AuditSeverity.CRITICAL,
        description="Hardcoded credentials can be exposed in version control",
        suggestion="Use environment variables or a secrets manager",
    ),
    SecurityPattern(
        id="sql-injection",
        name="Potential SQL injection",
        pattern=re.compile(
            r"(?:query|execute)\s*\(\s*(?:[`'\"].*\$\{|f['\"].*\{|['\"].*['\"]\s*(?:%|\+))"
        ),
        severity=AuditSeverity.HIGH,
        description="String interpolation in SQL queries can lead to SQL injection",
        suggestion="Use parameterized queries or prepared statements",
    ),
    SecurityPattern(
        id="command-injection",
        name="Potential command injection",
        pattern=re.compile(r"(?:exec|spawn|execSync|spawnSync)\s*\(\s*[`'\"].*\$\{"),
        severity=AuditSeverity.CRITICAL,
        description="String interpolation in shell commands can lead to command injection",
        suggestion="Use parameterized commands or validate/escape input",
        file_types=_JS,
    ),
    SecurityPattern(
        id="shell-true",
        name="subprocess with shell=True",
        pattern=re.compile(r"subprocess\.\w+\([^)]*shell\s*=\s*True"),
        severity=AuditSeverity.CRITICAL,
        description="shell=True passes the command through the shell and enables injection",
        suggestion="Pass an argv list and keep shell=False",
        file_types=_PY,
    ),
    SecurityPattern(
        id="pickle-loads",
        name="Unsafe deserialization",
        pattern=re.compile(r"\bpickle\.loads?\s*\("),
        severity=AuditSeverity.HIGH,
        description="Unpickling untrusted data can execute arbitrary code",
        suggestion="Use json or a schema-validated format",
        file_types=_PY,
    ),
    SecurityPattern(
        id="path-traversal",
        name="Potential path traversal",
        pattern=re.compile(r"(?:readFile|writeFile|readdir|unlink)\s*\([^)]*(?:\+|concat|\$\{)"),
        severity=AuditSeverity.HIGH,
        description="Dynamic file paths can lead to directory traversal attacks",
        suggestion="Validate and sanitize file paths, resolve against an allowlisted root",
    ),
    SecurityPattern(
        id="insecure-random",
        name="Insecure random number generator",
        pattern=re.compile(r"Math\.random\s*\(\)"),
        severity=AuditSeverity.MEDIUM,
        description="Math.random() is not cryptographically secure",
        suggestion="Use crypto.randomUUID() or crypto.getRandomValues()",
        file_types=_JS,
        blocking=False,
    ),
    SecurityPattern(
        id="disabled-ssl",
        name="TLS verification disabled",
        pattern=re.compile(r"rejectUnauthorized\s*:\s*false|verify\s*=\s*False"),
        severity=AuditSeverity.HIGH,
        description="Disabling certificate verification enables man-in-the-middle attacks",
        suggestion="Keep verification on and configure the CA bundle instead",
    ),
    SecurityPattern(
        id="cors-wildcard",
        name="CORS wildcard origin",
        pattern=re.compile(r"(?:Access-Control-Allow-Origin|origins?)\s*[:=]\s*\[?\s*['\"`]\*['\"`]"),
        severity=AuditSeverity.MEDIUM,
        description="Wildcard CORS allows any origin to access resources",
        suggestion="Specify allowed origins explicitly",
        blocking=False,
    ),
    SecurityPattern(
        id="innerHTML",
        name="Unsafe innerHTML usage",
        pattern=re.compile(r"\.innerHTML\s*="),
        severity=AuditSeverity.HIGH,
        description="innerHTML can introduce XSS vulnerabilities",
        suggestion="Use textContent for text or sanitize HTML content",
        file_types=_JS,
    ),
    SecurityPattern(
        id="dangerouslySetInnerHTML",
        name="React dangerouslySetInnerHTML",
        pattern=re.compile(r"dangerouslySetInnerHTML"),
        severity=AuditSeverity.HIGH,
        description="dangerouslySetInnerHTML can introduce XSS vulnerabilities",
        suggestion="Sanitize content with DOMPurify or similar",
        file_types=(".tsx", ".jsx"),
    ),
)

# ── Diff analysis ────────────────────────────────────────────────────────

EXPORT_PATTERN = re.compile(
    r"^(?:export\s+(?:default\s+)?(?:async\s+)?(?:const|function|class|type|interface|enum)\s+(\w+)"
    r"|(?:async\s+)?def\s+([A-Za-z]\w*)|class\s+([A-Za-z]\w*))",
    re.MULTILINE,
)
DEBUG_PRINT_PATTERN = re.compile(r"console\.log\(|^\s*print\(", re.MULTILINE)
TODO_PATTERN = re.compile(r"(?://|/\*|\*|#)\s*(TODO|FIXME|HACK|XXX)[\s:]", re.IGNORECASE)

LARGE_CHANGE_RATIO = 0.5
LARGE_CHANGE_LINES = 50

# ── Quality heuristics ───────────────────────────────────────────────────

FUNCTION_START_PATTERN = re.compile(r"^\s*(?:async\s+)?def\s+\w+|function\b|=>")
MAX_FUNCTION_LINES = 100
MAX_LINE_LENGTH = 200
# More than 8 levels at 4 spaces
MAX_INDENT = 32

# Jest/Vitest/pytest style per-file failure lines
TEST_FAILURE_PATTERN = re.compile(r"(?:^|\s)FAIL(?:ED)?\s+(\S+)", re.MULTILINE)


def exported_names(content: str) -> set[str]:
    """Names exported by *content* (JS/TS ``export`` declarations, top-level Python defs/classes)."""
    names: set[str] = set()
    for match in EXPORT_PATTERN.finditer(content):
        name = next((g for g in match.groups() if g), None)
        if name and not name.startswith("_"):
            names.add(name)
    return names
