"""Pre-write snapshots and the rollback engine.

A snapshot must exist, covering every planned path, before the first write
of a run.  Small files are captured inline; larger ones are copied under
``<root>/<backup_dir>/<snapshot id>/``.  A ``git stash create`` ref is taken
as well when the working tree is a git repository.

Rollback tries, in order: ``git stash apply`` of that ref, per-file restore
from the snapshot, then ``git checkout -- <file>`` for whatever is left.
Per-file restore is idempotent, so rolling back twice leaves the same tree.
"""

from __future__ import annotations

import asyncio
import hashlib
import shutil
import time
from pathlib import Path

from foundry.core.logging import get_logger
from foundry.guardian.types import (
    GuardianConfig,
    PreWriteSnapshot,
    RollbackMethod,
    RollbackResult,
    SnapshotFile,
)
from foundry.tools import git
from foundry.tools.filesystem import PathEscapeError, read_text, resolve_safe, write_text

logger = get_logger("guardian.snapshot")


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class SnapshotManager:
    def __init__(self, root: str | Path, config: GuardianConfig | None = None) -> None:
        self.root = Path(root).resolve()
        self.config = config or GuardianConfig()
        self._snapshots: dict[str, PreWriteSnapshot] = {}

    @property
    def backup_root(self) -> Path:
        return self.root / self.config.backup_dir

    def get(self, snapshot_id: str) -> PreWriteSnapshot | None:
        return self._snapshots.get(snapshot_id)

    # ── Capture ───────────────────────────────────────────────────────

    async def create(self, task_id: str, subtask_id: str, files: list[str]) -> PreWriteSnapshot:
        """Capture the current state of *files* (which may not exist yet)."""
        snapshot = PreWriteSnapshot(task_id=task_id, subtask_id=subtask_id)
        for path in dict.fromkeys(files):
            snapshot.files.append(await self._capture(snapshot.id, path))

        if await git.is_repo(self.root):
            snapshot.stash_ref = await git.stash_create(self.root)

        self._snapshots[snapshot.id] = snapshot
        logger.info(
            "Snapshot %s | task=%s | %d file(s) | stash=%s",
            snapshot.id[:8], task_id, len(snapshot.files), snapshot.stash_ref or "none",
        )
        return snapshot

    async def extend(self, snapshot: PreWriteSnapshot, files: list[str]) -> list[str]:
        """Add paths the snapshot does not cover yet. Returns the newly captured paths."""
        added: list[str] = []
        for path in dict.fromkeys(files):
            if snapshot.covers(path):
                continue
            snapshot.files.append(await self._capture(snapshot.id, path))
            added.append(path)
        if added:
            logger.info("Snapshot %s extended with %s", snapshot.id[:8], ", ".join(added))
        return added

    async def _capture(self, snapshot_id: str, path: str) -> SnapshotFile:
        try:
            absolute = resolve_safe(self.root, path)
        except PathEscapeError:
            # Never written by the executor either; nothing to restore.
            return SnapshotFile(path=path, existed=False)

        if not absolute.is_file():
            return SnapshotFile(path=path, existed=False)

        try:
            content = await read_text(absolute)
        except OSError as exc:
            logger.warning("Snapshot could not read %s: %s", path, exc)
            return SnapshotFile(path=path, existed=False)

        digest = content_hash(content)
        if len(content.encode("utf-8")) < self.config.inline_threshold_bytes:
            return SnapshotFile(path=path, content_hash=digest, existed=True, content=content)

        backup = self.backup_root / snapshot_id / path
        await write_text(backup, content)
        logger.debug("Large file %s backed up to %s", path, backup)
        return SnapshotFile(path=path, content_hash=digest, existed=True, backup_path=str(backup))

    # ── Rollback ──────────────────────────────────────────────────────

    async def rollback(self, snapshot: PreWriteSnapshot | None) -> RollbackResult:
        if snapshot is None:
            return RollbackResult(success=False, method="manual", error="No snapshot to roll back to")

        restored: list[str] = []
        failed: list[str] = []
        method: RollbackMethod = "file_backup"

        try:
            if snapshot.stash_ref and await git.stash_apply(self.root, snapshot.stash_ref):
                # The stash only knows tracked changes; files created by the run must go too.
                for file in snapshot.files:
                    if not file.existed:
                        await self._remove(file.path)
                logger.info("Rollback %s via git stash %s", snapshot.id[:8], snapshot.stash_ref[:10])
                return RollbackResult(
                    success=True,
                    files_restored=[f.path for f in snapshot.files],
                    method="git_stash",
                    snapshot_id=snapshot.id,
                )

            for file in snapshot.files:
                try:
                    await self._restore(file)
                    restored.append(file.path)
                except (OSError, PathEscapeError) as exc:
                    logger.warning("Failed to restore %s: %s", file.path, exc)
                    failed.append(file.path)

            for path in list(failed):
                if await git.checkout_file(self.root, path):
                    failed.remove(path)
                    restored.append(path)
                    method = "git_checkout"
        except Exception as exc:
            logger.error("Rollback %s aborted: %s", snapshot.id[:8], exc)
            return RollbackResult(
                success=False,
                files_restored=restored,
                files_failed=[f.path for f in snapshot.files if f.path not in restored],
                method="manual",
                error=str(exc),
                snapshot_id=snapshot.id,
            )

        error = f"Failed to restore {len(failed)} file(s)" if failed else ""
        logger.info(
            "Rollback %s | method=%s | restored=%d failed=%d",
            snapshot.id[:8], method, len(restored), len(failed),
        )
        return RollbackResult(
            success=not failed,
            files_restored=restored,
            files_failed=failed,
            method=method,
            error=error,
            snapshot_id=snapshot.id,
        )

    async def _remove(self, path: str) -> None:
        absolute = resolve_safe(self.root, path)
        await asyncio.to_thread(absolute.unlink, missing_ok=True)

    async def _restore(self, file: SnapshotFile) -> None:
        if not file.existed:
            await self._remove(file.path)
            return
        absolute = resolve_safe(self.root, file.path)
        if file.content is not None:
            await write_text(absolute, file.content)
        elif file.backup_path:
            await write_text(absolute, await read_text(Path(file.backup_path)))
        else:
            raise OSError(f"snapshot holds no content for {file.path}")

    # ── Housekeeping ──────────────────────────────────────────────────

    async def cleanup_snapshots(self, max_age_seconds: float = 24 * 60 * 60) -> int:
        """Forget snapshots older than *max_age_seconds* and delete their backups."""
        return await asyncio.to_thread(self._cleanup_sync, max_age_seconds)

    def _cleanup_sync(self, max_age_seconds: float) -> int:
        now = time.time()
        removed = 0
        for snapshot_id, snapshot in list(self._snapshots.items()):
            if now - snapshot.created_at.timestamp() > max_age_seconds:
                del self._snapshots[snapshot_id]
                shutil.rmtree(self.backup_root / snapshot_id, ignore_errors=True)
                removed += 1

        if self.backup_root.is_dir():
            for entry in self.backup_root.iterdir():
                if entry.is_dir() and now - entry.stat().st_mtime > max_age_seconds:
                    shutil.rmtree(entry, ignore_errors=True)
        if removed:
            logger.info("Cleaned up %d old snapshot(s)", removed)
        return removed
