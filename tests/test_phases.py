"""Tests for the per-phase reasoning agents."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from foundry.agents.phases import PhaseAgents, extract_json, parse_commands
from foundry.core.state import (
    ComponentDependency,
    ContextBundle,
    DesignOutput,
    ExecutionError,
    ExecutionResult,
    ExecutionTask,
    FileOperation,
    PlanOutput,
)
from foundry.guardian.types import AuditSeverity


def _task(tmp_path, **kwargs):
    return ExecutionTask(id="t1", description="Add a health endpoint", codebase_path=str(tmp_path), **kwargs)


def _agents(tmp_path, response="", parallel=None):
    backend = MagicMock()
    backend.invoke = AsyncMock(return_value=response)
    return PhaseAgents(backend, tmp_path, parallel_engineer=parallel), backend


class TestParsing:
    def test_fenced_json(self):
        assert extract_json('Here you go:\n```json\n{"approved": true}\n```') == {"approved": True}

    def test_json_inside_chatter(self):
        assert extract_json('Sure! {"blockers": ["x"]} Hope that helps.') == {"blockers": ["x"]}

    def test_invalid_json(self):
        assert extract_json("no json here") == {}
        assert extract_json("[1, 2, 3]") == {}
        assert extract_json("") == {}

    def test_commands_block(self):
        text = "files...\n<commands>\nnpm install zod\n\n  npm test  \n</commands>"
        assert parse_commands(text) == ["npm install zod", "npm test"]
        assert parse_commands("nothing") == []


class TestContext:
    @pytest.mark.asyncio
    async def test_gathers_tree_and_key_files(self, tmp_path):
        (tmp_path / "README.md").write_text("# Service\n", encoding="utf-8")
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "app.py").write_text("app = None\n", encoding="utf-8")
        agents, backend = _agents(tmp_path)

        bundle = await agents.gather_context(_task(tmp_path))

        assert bundle.files == ["README.md", "src/app.py"]
        assert bundle.snippets == {"README.md": "# Service\n"}
        assert "Top-level directories: src" in bundle.summary
        assert bundle.compressed_token == "CTX|files:2"
        backend.invoke.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_codebase(self, tmp_path):
        agents, _ = _agents(tmp_path)
        task = ExecutionTask(id="t1", description="x", codebase_path=str(tmp_path / "missing"))
        assert (await agents.gather_context(task)).files == []


class TestDesign:
    @pytest.mark.asyncio
    async def test_components_parsed(self, tmp_path):
        response = (
            "Add a router and wire it into the app.\n"
            "```json\n"
            '{"components": ['
            '{"name": "router", "file": "src/health.py", "dependencies": []},'
            '{"name": "wiring", "file": "src/app.py", "dependencies": ["router", ""]},'
            '{"file": "nameless.py"},'
            '"junk"'
            "]}\n```"
        )
        agents, backend = _agents(tmp_path, response)

        design = await agents.design(_task(tmp_path, constraints=("no new deps",)), ContextBundle())

        assert design.approach == "Add a router and wire it into the app."
        assert [c.name for c in design.components] == ["router", "wiring"]
        assert design.components[1].dependencies == ["router"]
        assert design.compressed_token == "DESIGN|components:2"
        prompt, options = backend.invoke.await_args.args
        assert options.strength == "strong"
        assert "- no new deps" in prompt

    @pytest.mark.asyncio
    async def test_unparseable_design_has_no_components(self, tmp_path):
        agents, _ = _agents(tmp_path, "I would refactor the module.")
        design = await agents.design(_task(tmp_path), ContextBundle())
        assert design.components == []
        assert design.approach == "I would refactor the module."


class TestEngineer:
    @pytest.mark.asyncio
    async def test_single_engineer_plan(self, tmp_path):
        response = (
            '<file path="src/health.py" action="create">def health():\n    return "ok"\n</file>\n'
            "<commands>\npytest -q\n</commands>"
        )
        agents, _ = _agents(tmp_path, response)

        plan = await agents.engineer(_task(tmp_path), ContextBundle(), DesignOutput())

        assert [f.path for f in plan.files] == ["src/health.py"]
        assert plan.commands == ["pytest -q"]
        assert plan.compressed_token == "PLAN|single|1files"
        assert plan.confidence > 0

    @pytest.mark.asyncio
    async def test_single_component_fenced_salvage(self, tmp_path):
        agents, _ = _agents(tmp_path, "```python\ndef health():\n    return 'ok'\n```")
        design = DesignOutput(components=[ComponentDependency(name="health", file="src/health.py")])
        plan = await agents.engineer(_task(tmp_path), ContextBundle(), design)
        assert [f.path for f in plan.files] == ["src/health.py"]

    @pytest.mark.asyncio
    async def test_empty_reply_gives_empty_plan(self, tmp_path):
        agents, _ = _agents(tmp_path, "Sorry, I cannot help with that.")
        plan = await agents.engineer(_task(tmp_path), ContextBundle(), DesignOutput())
        assert plan.files == []
        assert plan.confidence == 0.0

    @pytest.mark.asyncio
    async def test_parallel_delegates(self, tmp_path):
        parallel = MagicMock()
        parallel.execute_in_order = AsyncMock(return_value=PlanOutput(parallel=True))
        agents, backend = _agents(tmp_path, parallel=parallel)
        design = DesignOutput(components=[ComponentDependency(name="a")])

        plan = await agents.engineer(_task(tmp_path), ContextBundle(), design, parallel=True)

        assert plan.parallel is True
        parallel.execute_in_order.assert_awaited_once()
        backend.invoke.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_parallel_without_components_uses_single(self, tmp_path):
        parallel = MagicMock()
        parallel.execute_in_order = AsyncMock()
        agents, backend = _agents(tmp_path, '<file path="a.py">x</file>', parallel=parallel)
        await agents.engineer(_task(tmp_path), ContextBundle(), DesignOutput(), parallel=True)
        parallel.execute_in_order.assert_not_awaited()
        backend.invoke.assert_awaited_once()


class TestValidate:
    @pytest.mark.asyncio
    async def test_approved(self, tmp_path):
        agents, _ = _agents(tmp_path, '{"approved": true, "blockers": []}')
        result = await agents.validate(_task(tmp_path), PlanOutput(), ExecutionResult(success=True), None)
        assert result.approved
        assert result.compressed_token == "VAL|approved|blockers:0"

    @pytest.mark.asyncio
    async def test_blockers_imply_rejection(self, tmp_path):
        agents, backend = _agents(tmp_path, '{"blockers": ["Endpoint is not registered"]}')
        execution = ExecutionResult(success=False, errors=[
            ExecutionError(kind="command", operation="run", path="pytest", message="1 failed"),
        ])
        plan = PlanOutput(files=[FileOperation(path="src/health.py")], notes="Single engineer")

        result = await agents.validate(_task(tmp_path), plan, execution, None)

        assert result.approved is False
        assert result.blockers == ["Endpoint is not registered"]
        prompt = backend.invoke.await_args.args[0]
        assert "[command:run] pytest: 1 failed" in prompt
        assert "- create src/health.py" in prompt


class TestSecurityReview:
    @pytest.mark.asyncio
    async def test_findings_become_issues(self, tmp_path):
        (tmp_path / "db.py").write_text("cursor.execute(f'SELECT {name}')\n", encoding="utf-8")
        response = (
            '{"findings": ['
            '{"file": "db.py", "line": 1, "severity": "HIGH", "type": "sql-injection",'
            ' "title": "SQL injection", "description": "f-string in query"},'
            '{"file": "db.py", "severity": "bogus", "title": "Odd"}'
            "]}"
        )
        agents, backend = _agents(tmp_path, response)

        issues = await agents.security_review(["db.py"])

        assert [i.severity for i in issues] == [AuditSeverity.HIGH, AuditSeverity.MEDIUM]
        assert issues[0].blocking is True
        assert issues[0].message == "SQL injection: f-string in query"
        assert issues[0].rule == "sql-injection"
        assert issues[1].blocking is False
        assert issues[1].line is None
        assert "### db.py" in backend.invoke.await_args.args[0]

    @pytest.mark.asyncio
    async def test_unreadable_files_skip_the_call(self, tmp_path):
        agents, backend = _agents(tmp_path)
        assert await agents.security_review(["missing.py", "../escape.py"]) == []
        backend.invoke.assert_not_awaited()
