"""Tests for the PostExecGuardian facade: snapshot, audit, rollback and stats."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from foundry.guardian.guardian import PostExecGuardian
from foundry.guardian.types import AuditContext, AuditSeverity, GuardianConfig


@pytest.fixture(autouse=True)
def no_git():
    with patch("foundry.tools.git.is_repo", AsyncMock(return_value=False)), \
         patch("foundry.tools.git.checkout_file", AsyncMock(return_value=False)):
        yield


def _guardian(root, learning=None, **config):
    config.setdefault("regression_check", False)
    return PostExecGuardian(root, GuardianConfig(**config), learning=learning)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_critical_finding_rolls_back_to_pre_write_content(self, tmp_path):
        original = "export const region = 'eu-west-1';\n"
        (tmp_path / "secrets.ts").write_text(original, encoding="utf-8")
        guardian = _guardian(tmp_path)

        snapshot = await guardian.create_snapshot("t1", "", ["secrets.ts"])
        (tmp_path / "secrets.ts").write_text(
            original + "export const apiKey = 'sk-prod-1234567890';\n", encoding="utf-8",
        )

        audit = await guardian.audit(AuditContext(task_id="t1", files_modified=["secrets.ts"], snapshot=snapshot))
        assert audit.rollback_required is True
        assert audit.rollback_reason
        assert guardian.can_complete(audit) is False

        rollback = await guardian.rollback(snapshot)
        assert rollback.success
        assert (tmp_path / "secrets.ts").read_text(encoding="utf-8") == original

    @pytest.mark.asyncio
    async def test_clean_change_can_complete(self, tmp_path):
        guardian = _guardian(tmp_path)
        snapshot = await guardian.create_snapshot("t1", "", ["util.py"])
        (tmp_path / "util.py").write_text("def double(x):\n    return x * 2\n", encoding="utf-8")

        audit = await guardian.audit(AuditContext(task_id="t1", files_written=["util.py"], snapshot=snapshot))

        assert audit.passed
        assert guardian.can_complete(audit)

    @pytest.mark.asyncio
    async def test_extend_snapshot(self, tmp_path):
        guardian = _guardian(tmp_path)
        snapshot = await guardian.create_snapshot("t1", "", ["a.py"])
        assert await guardian.extend_snapshot(snapshot, ["a.py", "b.py"]) == ["b.py"]
        assert snapshot.covers("b.py")


class TestStats:
    @pytest.mark.asyncio
    async def test_stats_accumulate(self, tmp_path):
        (tmp_path / "bad.py").write_text("result = eval(data)\n", encoding="utf-8")
        (tmp_path / "good.py").write_text("x = 1\n", encoding="utf-8")
        guardian = _guardian(tmp_path)

        await guardian.audit(AuditContext(task_id="t1", files_written=["bad.py"]))
        await guardian.audit(AuditContext(task_id="t2", files_written=["good.py"]))
        await guardian.rollback(await guardian.create_snapshot("t1", "", ["bad.py"]))
        await guardian.rollback(None)

        stats = guardian.get_stats()
        assert stats.total_audits == 2
        assert stats.passed_audits == 1
        assert stats.failed_audits == 1
        assert stats.total_issues == 1
        assert stats.issues_by_severity[AuditSeverity.CRITICAL] == 1
        assert stats.top_issues[0].rule == "eval-usage"
        assert stats.rollbacks_performed == 2
        assert stats.successful_rollbacks == 1

    @pytest.mark.asyncio
    async def test_stats_are_a_copy(self, tmp_path):
        guardian = _guardian(tmp_path)
        guardian.get_stats().total_audits = 99
        assert guardian.get_stats().total_audits == 0


class TestLearning:
    @pytest.mark.asyncio
    async def test_audit_outcome_recorded(self, tmp_path):
        (tmp_path / "bad.py").write_text("eval(x)\n", encoding="utf-8")
        learning = MagicMock()
        learning.record = AsyncMock()
        guardian = _guardian(tmp_path, learning=learning)

        await guardian.audit(AuditContext(task_id="t1", files_written=["bad.py"], task_description="Parse input"))

        record = learning.record.await_args.args[0]
        assert record.kind == "audit"
        assert record.task_id == "t1"
        assert record.success is False
        assert "critical" in record.tags
        assert record.error

    @pytest.mark.asyncio
    async def test_store_failure_does_not_fail_audit(self, tmp_path):
        learning = MagicMock()
        learning.record = AsyncMock(side_effect=OSError("disk full"))
        guardian = _guardian(tmp_path, learning=learning)
        result = await guardian.audit(AuditContext(task_id="t1"))
        assert result.passed
