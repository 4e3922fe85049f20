"""Sandboxed filesystem helpers: every path is verified to stay inside the working tree."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

from foundry.core.logging import get_logger

logger = get_logger("tools.filesystem")


class PathEscapeError(Exception):
    """Raised when a path would escape the working-tree sandbox."""


def resolve_safe(root: str | Path, relative_path: str) -> Path:
    """Resolve *relative_path* against *root* and verify it stays inside."""
    base = Path(root).resolve()
    target = (base / relative_path).resolve()
    try:
        target.relative_to(base)
    except ValueError as exc:
        raise PathEscapeError(
            f"Path escapes working tree: {relative_path!r} resolved to {target}"
        ) from exc
    return target


def relative_to_root(root: str | Path, path: str | Path) -> str:
    """Return *path* relative to *root* with forward slashes, or the input if outside."""
    try:
        return Path(path).resolve().relative_to(Path(root).resolve()).as_posix()
    except ValueError:
        return str(path).replace("\\", "/")


def decode_bytes(raw: bytes) -> str:
    """Decode file bytes, honouring and stripping a UTF-8/16/32 BOM."""
    if raw.startswith(b"\xff\xfe\x00\x00") or raw.startswith(b"\x00\x00\xfe\xff"):
        return raw.decode("utf-32", errors="replace").lstrip("\ufeff")
    if raw.startswith(b"\xff\xfe") or raw.startswith(b"\xfe\xff"):
        return raw.decode("utf-16", errors="replace").lstrip("\ufeff")
    if raw.startswith(b"\xef\xbb\xbf"):
        return raw[3:].decode("utf-8", errors="replace")
    return raw.decode("utf-8", errors="replace")


def read_text_sync(path: Path) -> str:
    return decode_bytes(path.read_bytes())


async def read_text(path: Path) -> str:
    return await asyncio.to_thread(read_text_sync, path)


def _write_text_sync(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


async def write_text(path: Path, content: str) -> None:
    """Write *content* to *path*, creating parent directories."""
    await asyncio.to_thread(_write_text_sync, path, content)
    logger.debug("write_text | %s (%d chars)", path, len(content))


async def remove_file(path: Path) -> bool:
    """Delete *path*. Returns False when it did not exist."""
    if not path.exists():
        return False
    await asyncio.to_thread(path.unlink)
    return True


_SKIP_DIRS = {
    ".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build",
    ".mypy_cache", ".ruff_cache", ".pytest_cache", ".guardian-backup", ".foundry",
}


def list_tree(root: str | Path, max_files: int = 400) -> list[str]:
    """Return repo-relative file paths, skipping vendored and cache directories."""
    base = Path(root).resolve()
    files: list[str] = []
    for path in sorted(base.rglob("*")):
        if any(part in _SKIP_DIRS for part in path.relative_to(base).parts):
            continue
        if path.is_file():
            files.append(path.relative_to(base).as_posix())
            if len(files) >= max_files:
                break
    return files


def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    out: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")


def match_glob(path: str, pattern: str) -> bool:
    """Match a forward-slash *path* against a ``**``-aware glob *pattern*.

    Patterns without a slash match the basename at any depth.
    """
    path = path.replace("\\", "/")
    pattern = pattern.replace("\\", "/")
    if pattern.startswith("~"):
        pattern = Path.home().as_posix() + pattern[1:]
    if "/" not in pattern:
        pattern = "**/" + pattern
    return bool(_glob_to_regex(pattern).match(path))
