"""Extract file operations from free-form reasoning-backend output.

Wire format::

    <file path="src/app.py" action="create|modify|delete">
    ...complete file content...
    </file>

Blocks may repeat.  When none parse, a single fenced code block can be
salvaged as the content of a known target file.
"""

from __future__ import annotations

import re

from foundry.core.logging import get_logger
from foundry.core.state import FileAction, FileOperation

logger = get_logger("engineering.file_ops")

FILE_BLOCK = re.compile(r"<file\s+([^>]+)>([\s\S]*?)</file>")
_PATH_ATTR = re.compile(r"""path\s*=\s*["']([^"']+)["']""")
_ACTION_ATTR = re.compile(r"""action\s*=\s*["']([^"']+)["']""")
FENCED_BLOCK = re.compile(r"```[\w+#.-]*[ \t]*\n([\s\S]*?)```")

_PREVIEW_CHARS = 500


def _normalise_path(raw: str) -> str:
    path = raw.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def _parse_action(raw: str | None, path: str) -> FileAction:
    if not raw:
        return FileAction.CREATE
    try:
        return FileAction(raw.strip().lower())
    except ValueError:
        logger.warning("Unknown file action %r for %s; treating as create", raw, path)
        return FileAction.CREATE


def parse_file_blocks(text: str) -> list[FileOperation]:
    """Return every well-formed ``<file>`` block in *text*, in order.

    Blocks without a ``path`` attribute are skipped.  An empty list is the
    normal "nothing produced" outcome, not an error.
    """
    operations: list[FileOperation] = []
    for match in FILE_BLOCK.finditer(text or ""):
        attrs, body = match.group(1), match.group(2)
        path_match = _PATH_ATTR.search(attrs)
        if not path_match:
            logger.debug("Skipping <file> block without path: %s", attrs[:80])
            continue
        path = _normalise_path(path_match.group(1))
        if not path:
            continue
        action_match = _ACTION_ATTR.search(attrs)
        action = _parse_action(action_match.group(1) if action_match else None, path)
        operations.append(FileOperation(
            path=path,
            action=action,
            content="" if action is FileAction.DELETE else body.strip(),
        ))
    return operations


def salvage_code_block(text: str, path: str) -> FileOperation | None:
    """Use the first fenced code block in *text* as the content of *path*."""
    if not path:
        return None
    match = FENCED_BLOCK.search(text or "")
    if not match or not match.group(1).strip():
        return None
    logger.info("Salvaged fenced code block as %s", path)
    return FileOperation(path=_normalise_path(path), action=FileAction.CREATE, content=match.group(1).strip())


def parse_with_fallback(text: str, fallback_path: str = "", label: str = "") -> list[FileOperation]:
    """Parse ``<file>`` blocks, salvaging a fenced block for *fallback_path* when none parse.

    Logs a response preview on parse failure for diagnosis.
    """
    operations = parse_file_blocks(text)
    if operations:
        return operations

    preview = (text or "")[:_PREVIEW_CHARS].replace("\n", "\\n")
    logger.warning("%sNo <file> blocks parsed from response", f"{label}: " if label else "")
    logger.warning("Response preview (%d chars): %s...", len(text or ""), preview)

    salvaged = salvage_code_block(text, fallback_path)
    return [salvaged] if salvaged else []


def dedupe_operations(operations: list[FileOperation]) -> list[FileOperation]:
    """Keep the last operation per path, preserving first-seen order."""
    latest: dict[str, FileOperation] = {}
    for op in operations:
        latest[op.path] = op
    return list(latest.values())
