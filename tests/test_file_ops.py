"""Tests for parsing file operations out of reasoning-backend responses."""

from foundry.core.state import FileAction, FileOperation
from foundry.engineering.file_ops import (
    dedupe_operations,
    parse_file_blocks,
    parse_with_fallback,
    salvage_code_block,
)


class TestParseFileBlocks:
    def test_multiple_blocks_in_order(self):
        text = (
            "Here you go.\n"
            '<file path="src/a.ts" action="create">\nexport const a = 1;\n</file>\n'
            "and\n"
            "<file path='./src/b.ts' action='MODIFY'>export const b = 2;</file>"
        )
        ops = parse_file_blocks(text)
        assert [(o.path, o.action) for o in ops] == [
            ("src/a.ts", FileAction.CREATE),
            ("src/b.ts", FileAction.MODIFY),
        ]
        assert ops[0].content == "export const a = 1;"

    def test_missing_action_defaults_to_create(self):
        ops = parse_file_blocks('<file path="x.py">print(1)</file>')
        assert ops[0].action is FileAction.CREATE

    def test_unknown_action_treated_as_create(self):
        ops = parse_file_blocks('<file path="x.py" action="overwrite">x = 1</file>')
        assert ops[0].action is FileAction.CREATE

    def test_delete_drops_content(self):
        ops = parse_file_blocks('<file path="old.py" action="delete">ignored</file>')
        assert ops == [FileOperation(path="old.py", action=FileAction.DELETE, content="")]

    def test_block_without_path_skipped(self):
        assert parse_file_blocks('<file action="create">x</file>') == []

    def test_windows_separators_normalised(self):
        ops = parse_file_blocks('<file path="src\\util\\io.py">pass</file>')
        assert ops[0].path == "src/util/io.py"

    def test_no_blocks_is_empty(self):
        assert parse_file_blocks("I could not do it.") == []
        assert parse_file_blocks(None) == []


class TestSalvage:
    def test_salvages_first_fenced_block(self):
        text = "Sure:\n```python\ndef f():\n    return 1\n```\nmore\n```js\nx\n```"
        op = salvage_code_block(text, "src/f.py")
        assert op.path == "src/f.py"
        assert op.content == "def f():\n    return 1"

    def test_needs_target_path(self):
        assert salvage_code_block("```\nx\n```", "") is None

    def test_empty_fence_not_salvaged(self):
        assert salvage_code_block("```\n\n```", "a.py") is None

    def test_fallback_prefers_file_blocks(self):
        text = '<file path="a.py">a = 1</file>\n```python\nb = 2\n```'
        assert [o.path for o in parse_with_fallback(text, "b.py")] == ["a.py"]

    def test_fallback_salvages(self):
        ops = parse_with_fallback("```python\nb = 2\n```", "b.py", label="engineer")
        assert [(o.path, o.content) for o in ops] == [("b.py", "b = 2")]

    def test_fallback_nothing(self):
        assert parse_with_fallback("no code here", "b.py") == []


def test_dedupe_keeps_last_operation_per_path():
    ops = [
        FileOperation(path="a.py", content="v1"),
        FileOperation(path="b.py", content="b"),
        FileOperation(path="a.py", content="v2"),
    ]
    deduped = dedupe_operations(ops)
    assert [(o.path, o.content) for o in deduped] == [("a.py", "v2"), ("b.py", "b")]
