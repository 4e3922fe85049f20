"""Git helpers used as the secondary rollback path.

Commands run with ``shell=False`` inside the given working tree and are
restricted to a small set of read/restore sub-commands.  Every helper is
best-effort: a missing git binary or a non-repo directory yields a falsy
result, never an exception.
"""

from __future__ import annotations

import asyncio
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from foundry.core.logging import get_logger

logger = get_logger("tools.git")

ALLOWED_SUBCOMMANDS = {"stash", "checkout", "rev-parse", "status", "diff"}

_GIT_TIMEOUT = 60


@dataclass
class GitResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _validate_args(args: list[str]) -> str | None:
    """Return an error message if *args* is not an allowed git invocation."""
    if not args:
        return "ERROR: empty git command"
    sub = args[0].lstrip("-")
    if sub not in ALLOWED_SUBCOMMANDS:
        return f"BLOCKED: git subcommand '{sub}' is not allowed"
    if sub == "stash" and len(args) > 1 and args[1] not in {"create", "apply", "list", "show"}:
        return f"BLOCKED: git stash {args[1]} is not allowed"
    return None


def _run_git_sync(root: Path, args: list[str], timeout: float) -> GitResult:
    error = _validate_args(args)
    if error:
        logger.warning("git        | %s | %s", " ".join(args), error)
        return GitResult(returncode=-1, stderr=error)

    logger.debug("git        | cwd=%s | git %s", root, " ".join(args))
    try:
        result = subprocess.run(
            ["git", *args],
            shell=False,
            cwd=str(root),
            capture_output=True,
            text=True,
            timeout=timeout,
            env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            encoding="utf-8",
            errors="replace",
        )
    except FileNotFoundError:
        return GitResult(returncode=-1, stderr="git executable not found")
    except subprocess.TimeoutExpired:
        logger.warning("git %s timed out after %ss", args[0], timeout)
        return GitResult(returncode=-1, stderr=f"TIMEOUT: git {args[0]} took > {timeout}s")
    except OSError as exc:
        return GitResult(returncode=-1, stderr=str(exc))

    logger.debug("git        | exit=%d", result.returncode)
    return GitResult(result.returncode, result.stdout.strip(), result.stderr.strip())


async def run_git(root: str | Path, args: list[str], timeout: float = _GIT_TIMEOUT) -> GitResult:
    """Run ``git <args>`` in *root* without blocking the event loop."""
    return await asyncio.to_thread(_run_git_sync, Path(root), list(args), timeout)


async def is_repo(root: str | Path) -> bool:
    result = await run_git(root, ["rev-parse", "--is-inside-work-tree"])
    return result.ok and result.stdout == "true"


async def stash_create(root: str | Path) -> str | None:
    """Create a stash commit of the current changes without touching the tree.

    Returns the stash ref, or None when git is unavailable or the tree is clean.
    """
    result = await run_git(root, ["stash", "create"])
    if result.ok and result.stdout:
        return result.stdout.splitlines()[-1].strip()
    return None


async def stash_apply(root: str | Path, ref: str) -> bool:
    result = await run_git(root, ["stash", "apply", ref])
    if not result.ok:
        logger.info("git stash apply %s failed: %s", ref[:12], result.stderr[:200])
    return result.ok


async def checkout_file(root: str | Path, path: str) -> bool:
    """Restore *path* from HEAD."""
    result = await run_git(root, ["checkout", "--", path])
    return result.ok
