"""Plan executor: applies parsed file operations and plan commands to the working tree."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from foundry.core.logging import get_logger
from foundry.core.state import (
    ExecutionError,
    ExecutionResult,
    FileAction,
    FileOperation,
    PlanOutput,
)
from foundry.engineering.file_ops import dedupe_operations
from foundry.tools.filesystem import PathEscapeError, remove_file, resolve_safe, write_text
from foundry.tools.shell import run_command
from foundry.tools.static_analysis import CapabilityProvider

logger = get_logger("engineering.executor")


@runtime_checkable
class PlanExecutor(Protocol):
    async def execute(self, plan: PlanOutput, validation_context: dict[str, Any] | None = None) -> ExecutionResult: ...


def execution_token(result: ExecutionResult) -> str:
    files = len(result.files_written) + len(result.files_modified) + len(result.files_deleted)
    return (
        f"EXEC|ok:{int(result.success)}|files:{files}"
        f"|cmds:{len(result.commands_run)}|errs:{len(result.errors)}"
    )


class FilesystemPlanExecutor:
    """Writes plans straight to disk under *root*.

    Safe to call repeatedly with overlapping file sets: a create of an
    existing path overwrites it and a delete of a missing path is a no-op.
    """

    def __init__(
        self,
        root: str | Path,
        capabilities: CapabilityProvider | None = None,
        verify_writes: bool = True,
        dry_run: bool = False,
        command_timeout: float = 120,
    ) -> None:
        self.root = Path(root).resolve()
        self.capabilities = capabilities
        self.verify_writes = verify_writes
        self.dry_run = dry_run
        self.command_timeout = command_timeout

    async def execute(self, plan: PlanOutput, validation_context: dict[str, Any] | None = None) -> ExecutionResult:
        validation_context = validation_context or {}
        result = ExecutionResult(success=True)

        for op in dedupe_operations(plan.files):
            await self._apply(op, result)

        for command in plan.commands:
            await self._run(command, result)

        if self.verify_writes and not self.dry_run and self.capabilities is not None:
            await self._verify(result)

        result.success = not result.errors
        result.compressed_token = execution_token(result)
        logger.info(
            "Plan executed%s | task=%s | %s",
            " (dry run)" if self.dry_run else "",
            validation_context.get("task_id", "-"),
            result.compressed_token,
        )
        return result

    async def _apply(self, op: FileOperation, result: ExecutionResult) -> None:
        try:
            target = resolve_safe(self.root, op.path)
        except PathEscapeError as exc:
            result.errors.append(ExecutionError(kind="file", operation=op.action, path=op.path, message=str(exc)))
            return

        try:
            if op.action is FileAction.DELETE:
                if self.dry_run or await remove_file(target):
                    result.files_deleted.append(op.path)
                else:
                    logger.debug("Delete of missing file %s ignored", op.path)
                return

            if op.action is FileAction.MODIFY and not target.exists():
                result.errors.append(ExecutionError(
                    kind="file", operation="modify", path=op.path,
                    message="File does not exist; use action=\"create\" for new files",
                ))
                return

            existed = target.exists()
            if not self.dry_run:
                await write_text(target, op.content)
            if existed:
                result.files_modified.append(op.path)
            else:
                result.files_written.append(op.path)
        except OSError as exc:
            logger.warning("File operation failed | %s %s | %s", op.action, op.path, exc)
            result.errors.append(ExecutionError(kind="file", operation=op.action, path=op.path, message=str(exc)))

    async def _run(self, command: str, result: ExecutionResult) -> None:
        if self.dry_run:
            result.commands_run.append(command)
            return
        outcome = await run_command(command, self.root, timeout=self.command_timeout)
        result.commands_run.append(command)
        if not outcome.ok:
            result.errors.append(ExecutionError(
                kind="command", operation="run", path=command,
                message=outcome.output or f"exit code {outcome.exit_code}",
            ))

    async def _verify(self, result: ExecutionResult) -> None:
        files = result.touched_files()
        if not files:
            return
        try:
            diagnostics = await self.capabilities.run_type_check(files)
        except Exception as exc:
            logger.warning("Write verification skipped: %s", exc)
            return
        for path, diags in diagnostics.items():
            for diag in diags:
                if diag.severity != "error":
                    continue
                result.errors.append(ExecutionError(
                    kind="verify", operation="type_check", path=path, message=diag.one_line(path),
                ))
