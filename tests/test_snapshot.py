"""Tests for pre-write snapshots and rollback."""

from unittest.mock import AsyncMock, patch

import pytest

from foundry.guardian.snapshot import SnapshotManager, content_hash
from foundry.guardian.types import GuardianConfig, PreWriteSnapshot, SnapshotFile


@pytest.fixture(autouse=True)
def no_git():
    with patch("foundry.tools.git.is_repo", AsyncMock(return_value=False)), \
         patch("foundry.tools.git.checkout_file", AsyncMock(return_value=False)):
        yield


def _tree(root):
    return {
        p.relative_to(root).as_posix(): p.read_text(encoding="utf-8")
        for p in sorted(root.rglob("*"))
        if p.is_file() and ".guardian-backup" not in p.parts
    }


class TestCapture:
    @pytest.mark.asyncio
    async def test_every_planned_path_is_covered_before_writes(self, tmp_path):
        (tmp_path / "a.ts").write_text("export const a = 1;\n", encoding="utf-8")
        manager = SnapshotManager(tmp_path)
        planned = ["a.ts", "src/new.ts", "a.ts"]

        snapshot = await manager.create("t1", "", planned)

        assert [f.path for f in snapshot.files] == ["a.ts", "src/new.ts"]
        existing = snapshot.get("a.ts")
        assert existing.existed is True
        assert existing.content == "export const a = 1;\n"
        assert existing.content_hash == content_hash("export const a = 1;\n")
        assert snapshot.get("src/new.ts").existed is False
        assert manager.get(snapshot.id) is snapshot

    @pytest.mark.asyncio
    async def test_large_files_go_to_backup_dir(self, tmp_path):
        big = "x" * 64
        (tmp_path / "big.txt").write_text(big, encoding="utf-8")
        manager = SnapshotManager(tmp_path, GuardianConfig(inline_threshold_bytes=32))

        snapshot = await manager.create("t1", "", ["big.txt"])
        entry = snapshot.get("big.txt")

        assert entry.content is None
        assert entry.backup_path
        assert (tmp_path / ".guardian-backup" / snapshot.id / "big.txt").read_text(encoding="utf-8") == big

    @pytest.mark.asyncio
    async def test_escaping_path_is_recorded_as_absent(self, tmp_path):
        snapshot = await SnapshotManager(tmp_path).create("t1", "", ["../outside.txt"])
        assert snapshot.get("../outside.txt").existed is False

    @pytest.mark.asyncio
    async def test_stash_ref_recorded_in_git_repo(self, tmp_path):
        with patch("foundry.tools.git.is_repo", AsyncMock(return_value=True)), \
             patch("foundry.tools.git.stash_create", AsyncMock(return_value="abc123")):
            snapshot = await SnapshotManager(tmp_path).create("t1", "", [])
        assert snapshot.stash_ref == "abc123"

    @pytest.mark.asyncio
    async def test_extend_adds_only_new_paths(self, tmp_path):
        (tmp_path / "b.py").write_text("b", encoding="utf-8")
        manager = SnapshotManager(tmp_path)
        snapshot = await manager.create("t1", "", ["a.py"])

        added = await manager.extend(snapshot, ["a.py", "b.py", "b.py"])

        assert added == ["b.py"]
        assert snapshot.get("b.py").content == "b"
        assert await manager.extend(snapshot, ["a.py", "b.py"]) == []


class TestRollback:
    @pytest.mark.asyncio
    async def test_restores_modified_and_removes_created(self, tmp_path):
        (tmp_path / "secrets.ts").write_text("export const region = 'eu';\n", encoding="utf-8")
        manager = SnapshotManager(tmp_path)
        snapshot = await manager.create("t1", "", ["secrets.ts", "new.ts"])

        (tmp_path / "secrets.ts").write_text("export const key = 'sk-live';\n", encoding="utf-8")
        (tmp_path / "new.ts").write_text("junk", encoding="utf-8")

        result = await manager.rollback(snapshot)

        assert result.success
        assert result.method == "file_backup"
        assert sorted(result.files_restored) == ["new.ts", "secrets.ts"]
        assert (tmp_path / "secrets.ts").read_text(encoding="utf-8") == "export const region = 'eu';\n"
        assert not (tmp_path / "new.ts").exists()

    @pytest.mark.asyncio
    async def test_rollback_twice_matches_rollback_once(self, tmp_path):
        (tmp_path / "keep.py").write_text("original\n", encoding="utf-8")
        (tmp_path / "big.py").write_text("y" * 100, encoding="utf-8")
        (tmp_path / "untouched.py").write_text("same\n", encoding="utf-8")
        manager = SnapshotManager(tmp_path, GuardianConfig(inline_threshold_bytes=50))
        snapshot = await manager.create("t1", "", ["keep.py", "big.py", "created.py"])

        (tmp_path / "keep.py").write_text("changed\n", encoding="utf-8")
        (tmp_path / "big.py").write_text("z", encoding="utf-8")
        (tmp_path / "created.py").write_text("new\n", encoding="utf-8")

        first = await manager.rollback(snapshot)
        after_once = _tree(tmp_path)
        second = await manager.rollback(snapshot)

        assert first.success and second.success
        assert _tree(tmp_path) == after_once
        assert after_once == {"big.py": "y" * 100, "keep.py": "original\n", "untouched.py": "same\n"}

    @pytest.mark.asyncio
    async def test_no_snapshot(self, tmp_path):
        result = await SnapshotManager(tmp_path).rollback(None)
        assert result.success is False
        assert result.method == "manual"

    @pytest.mark.asyncio
    async def test_git_stash_path_also_removes_new_files(self, tmp_path):
        manager = SnapshotManager(tmp_path)
        snapshot = PreWriteSnapshot(task_id="t1", stash_ref="abc123", files=[
            SnapshotFile(path="tracked.py", existed=True, content="x"),
            SnapshotFile(path="created.py", existed=False),
        ])
        (tmp_path / "created.py").write_text("new", encoding="utf-8")

        with patch("foundry.tools.git.stash_apply", AsyncMock(return_value=True)) as apply:
            result = await manager.rollback(snapshot)

        apply.assert_awaited_once()
        assert result.method == "git_stash"
        assert not (tmp_path / "created.py").exists()

    @pytest.mark.asyncio
    async def test_failed_stash_falls_back_to_files(self, tmp_path):
        manager = SnapshotManager(tmp_path)
        snapshot = PreWriteSnapshot(task_id="t1", stash_ref="abc123", files=[
            SnapshotFile(path="a.py", existed=True, content="restored"),
        ])
        with patch("foundry.tools.git.stash_apply", AsyncMock(return_value=False)):
            result = await manager.rollback(snapshot)
        assert result.method == "file_backup"
        assert (tmp_path / "a.py").read_text(encoding="utf-8") == "restored"

    @pytest.mark.asyncio
    async def test_git_checkout_for_unrecoverable_files(self, tmp_path):
        manager = SnapshotManager(tmp_path)
        snapshot = PreWriteSnapshot(task_id="t1", files=[SnapshotFile(path="lost.py", existed=True)])

        with patch("foundry.tools.git.checkout_file", AsyncMock(return_value=True)):
            result = await manager.rollback(snapshot)

        assert result.success
        assert result.method == "git_checkout"
        assert result.files_restored == ["lost.py"]

    @pytest.mark.asyncio
    async def test_unrecoverable_file_reported(self, tmp_path):
        manager = SnapshotManager(tmp_path)
        snapshot = PreWriteSnapshot(task_id="t1", files=[SnapshotFile(path="lost.py", existed=True)])
        result = await manager.rollback(snapshot)
        assert result.success is False
        assert result.files_failed == ["lost.py"]
        assert "1 file" in result.error


class TestCleanup:
    @pytest.mark.asyncio
    async def test_old_snapshots_and_backups_removed(self, tmp_path):
        (tmp_path / "big.txt").write_text("x" * 64, encoding="utf-8")
        manager = SnapshotManager(tmp_path, GuardianConfig(inline_threshold_bytes=8))
        snapshot = await manager.create("t1", "", ["big.txt"])
        orphan = tmp_path / ".guardian-backup" / "orphan"
        orphan.mkdir(parents=True)

        assert await manager.cleanup_snapshots(max_age_seconds=-1) == 1
        assert manager.get(snapshot.id) is None
        assert not (tmp_path / ".guardian-backup" / snapshot.id).exists()
        assert not orphan.exists()

    @pytest.mark.asyncio
    async def test_recent_snapshots_kept(self, tmp_path):
        manager = SnapshotManager(tmp_path)
        snapshot = await manager.create("t1", "", [])
        assert await manager.cleanup_snapshots() == 0
        assert manager.get(snapshot.id) is snapshot
