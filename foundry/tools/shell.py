"""Safe shell execution: runs only inside the working tree with blocklist enforcement.

Every command is logged with cwd, exit code, and truncated output.  Used by
the plan executor (plan commands) and the guardian (regression test run).
"""

from __future__ import annotations

import asyncio
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from foundry.core.logging import get_logger

logger = get_logger("tools.shell")

# ── Blocklist ────────────────────────────────────────────────────────────
# Patterns that must NEVER be executed, regardless of context.
BLOCKED_PATTERNS: list[re.Pattern] = [
    re.compile(r"\brm\s+(-[rRf]+\s+)*/((?!home)|$)", re.IGNORECASE),  # rm -rf /
    re.compile(r"\bshutdown\b"),
    re.compile(r"\breboot\b"),
    re.compile(r"\bmkfs\b"),
    re.compile(r"\bdd\s+.*of=/dev/", re.IGNORECASE),
    re.compile(r":\(\)\s*\{.*:\|:.*\}"),  # fork bomb
    re.compile(r"\bchmod\s+(-R\s+)?777\s+/"),
    re.compile(r"\bcurl\s+.*\|\s*(ba)?sh", re.IGNORECASE),
    re.compile(r"\bwget\s+.*\|\s*(ba)?sh", re.IGNORECASE),
    re.compile(r"\bsudo\b"),
    re.compile(r"\bgit\s+(push|reset\s+--hard|clean\s+-f)"),
]

DEFAULT_MAX_OUTPUT = 12_000


@dataclass
class CommandResult:
    command: str
    exit_code: int
    output: str
    blocked: bool = False
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.blocked and not self.timed_out


def is_blocked(command: str) -> str | None:
    """Return a reason string if the command is blocked, else None."""
    for pattern in BLOCKED_PATTERNS:
        if pattern.search(command):
            return f"Blocked by safety rule: {pattern.pattern}"
    return None


def truncate(text: str, limit: int = DEFAULT_MAX_OUTPUT) -> str:
    if len(text) > limit:
        half = limit // 2
        return text[:half] + f"\n\n... [truncated {len(text) - limit} chars] ...\n\n" + text[-half:]
    return text


def _run_sync(command: str, cwd: Path, timeout: float, max_output: int) -> CommandResult:
    reason = is_blocked(command)
    if reason:
        logger.warning("BLOCKED shell | %s | reason: %s", command, reason)
        return CommandResult(command, -1, f"BLOCKED: {reason}", blocked=True)

    if not cwd.is_dir():
        return CommandResult(command, -1, f"ERROR: directory does not exist: {cwd}")

    logger.info("run_command | cwd=%s | cmd=%s", cwd, command)
    try:
        # Plan and test commands are shell strings by contract (pipes, &&).
        result = subprocess.run(
            command,
            shell=True,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
            env=dict(os.environ),
            encoding="utf-8",
            errors="replace",
        )
    except subprocess.TimeoutExpired as exc:
        partial = exc.stdout if isinstance(exc.stdout, str) else ""
        logger.error("TIMEOUT after %ss: %s", timeout, command)
        return CommandResult(command, -1, truncate(partial or "", max_output), timed_out=True)
    except OSError as exc:
        logger.error("ERROR executing command: %s", exc)
        return CommandResult(command, -1, f"ERROR executing command: {exc}")

    output = result.stdout or ""
    if result.stderr:
        output += ("\n--- stderr ---\n" if output else "") + result.stderr

    output = truncate(output.strip(), max_output)
    logger.info("run_command | exit=%d | output_len=%d", result.returncode, len(output))
    return CommandResult(command, result.returncode, output)


async def run_command(
    command: str,
    cwd: str | Path,
    timeout: float = 120,
    max_output: int = DEFAULT_MAX_OUTPUT,
) -> CommandResult:
    """Run *command* in *cwd* on a worker thread so the event loop stays free."""
    return await asyncio.to_thread(_run_sync, command, Path(cwd).resolve(), timeout, max_output)
