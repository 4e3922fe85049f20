"""Tests for the restricted git helpers."""

import shutil
import subprocess

import pytest

from foundry.tools.git import (
    _validate_args,
    checkout_file,
    is_repo,
    run_git,
    stash_apply,
    stash_create,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


class TestValidation:
    @pytest.mark.parametrize("args", [
        ["push", "origin", "main"],
        ["reset", "--hard"],
        ["clean", "-fd"],
        ["stash", "drop"],
        ["stash", "clear"],
    ])
    def test_disallowed(self, args):
        assert _validate_args(args).startswith("BLOCKED")

    @pytest.mark.parametrize("args", [
        ["status", "--porcelain"],
        ["stash", "create"],
        ["stash", "apply", "abc123"],
        ["checkout", "--", "a.py"],
        ["rev-parse", "HEAD"],
    ])
    def test_allowed(self, args):
        assert _validate_args(args) is None

    def test_empty(self):
        assert _validate_args([]).startswith("ERROR")

    @pytest.mark.asyncio
    async def test_blocked_command_never_runs(self, tmp_path):
        result = await run_git(tmp_path, ["push"])
        assert result.ok is False
        assert "BLOCKED" in result.stderr


def _init_repo(path):
    def git(*args):
        subprocess.run(["git", *args], cwd=path, check=True, capture_output=True)
    git("init", "-q")
    git("config", "user.email", "test@example.com")
    git("config", "user.name", "test")
    (path / "app.py").write_text("print('v1')\n", encoding="utf-8")
    git("add", ".")
    git("commit", "-q", "-m", "init")


@requires_git
class TestRepoOperations:
    @pytest.mark.asyncio
    async def test_is_repo(self, tmp_path):
        _init_repo(tmp_path)
        assert await is_repo(tmp_path) is True

    @pytest.mark.asyncio
    async def test_clean_tree_has_no_stash(self, tmp_path):
        _init_repo(tmp_path)
        assert await stash_create(tmp_path) is None

    @pytest.mark.asyncio
    async def test_stash_create_leaves_tree_untouched(self, tmp_path):
        _init_repo(tmp_path)
        (tmp_path / "app.py").write_text("print('v2')\n", encoding="utf-8")
        ref = await stash_create(tmp_path)
        assert ref
        assert (tmp_path / "app.py").read_text(encoding="utf-8") == "print('v2')\n"

    @pytest.mark.asyncio
    async def test_checkout_then_apply_restores_stash(self, tmp_path):
        _init_repo(tmp_path)
        (tmp_path / "app.py").write_text("print('v2')\n", encoding="utf-8")
        ref = await stash_create(tmp_path)

        assert await checkout_file(tmp_path, "app.py") is True
        assert (tmp_path / "app.py").read_text(encoding="utf-8") == "print('v1')\n"

        assert await stash_apply(tmp_path, ref) is True
        assert (tmp_path / "app.py").read_text(encoding="utf-8") == "print('v2')\n"


@requires_git
@pytest.mark.asyncio
async def test_non_repo_is_falsy(tmp_path):
    plain = tmp_path / "plain"
    plain.mkdir()
    result = await run_git(plain, ["rev-parse", "--is-inside-work-tree"])
    # Only assert on directories that are not nested in some enclosing checkout
    if result.ok:
        pytest.skip("tmp directory lives inside a git checkout")
    assert await is_repo(plain) is False
    assert await stash_create(plain) is None
