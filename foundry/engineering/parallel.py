"""Dependency-ordered, batch-parallel engineering of design components.

For designs with several components:

1. components are topologically sorted by their declared dependencies,
2. grouped into batches whose dependencies are all satisfied by earlier batches,
3. each batch runs concurrently, one backend call per component,
4. completed outputs are passed as context to dependent components.

Cycles are broken best-effort: when a scan finds no ready component, the
remainder is flushed as one final batch and ``cycles_detected`` is set.
With ``strict=True`` a cycle raises ``DependencyCycleError`` instead, before
any component runs.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from foundry.agents.backend import InvokeOptions, ReasoningBackend
from foundry.core.errors import DependencyCycleError
from foundry.core.logging import get_logger
from foundry.core.state import (
    ComponentDependency,
    ContextBundle,
    DesignOutput,
    ExecutionTask,
    FileOperation,
    PlanOutput,
)
from foundry.engineering.file_ops import parse_with_fallback

logger = get_logger("engineering.parallel")


@dataclass
class BatchPlan:
    order: list[str]
    batches: list[list[str]]
    cycles_detected: bool = False
    ignored_dependencies: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class ComponentResult:
    component: str
    files: list[FileOperation]
    success: bool
    error: str = ""


class ComponentDependencyBatcher:
    """Topological sort + batch partitioning over named components."""

    def __init__(self, strict: bool = False) -> None:
        self.strict = strict

    @staticmethod
    def _index(components: list[ComponentDependency]) -> dict[str, ComponentDependency]:
        index: dict[str, ComponentDependency] = {}
        for comp in components:
            if comp.name in index:
                logger.warning("Duplicate component name '%s'; keeping the first", comp.name)
                continue
            index[comp.name] = comp
        return index

    def topological_sort(self, components: list[ComponentDependency]) -> list[str]:
        """Depth-first order: every component appears after the components it depends on.

        No cycle check here; a cycle just yields the order in which nodes were first reached.
        """
        index = self._index(components)
        visited: set[str] = set()
        order: list[str] = []

        def visit(name: str) -> None:
            if name in visited:
                return
            visited.add(name)
            comp = index.get(name)
            if comp is None:
                return
            for dep in comp.dependencies:
                visit(dep)
            order.append(name)

        for comp in index.values():
            visit(comp.name)
        return order

    def build_batches(self, components: list[ComponentDependency]) -> BatchPlan:
        index = self._index(components)
        order = self.topological_sort(components)

        # Dependencies naming something outside the design cannot be waited on.
        ignored: dict[str, list[str]] = {}
        deps: dict[str, set[str]] = {}
        for name in order:
            declared = index[name].dependencies
            unknown = [d for d in declared if d not in index]
            if unknown:
                ignored[name] = unknown
                logger.debug("Component %s: ignoring unknown dependencies %s", name, unknown)
            deps[name] = {d for d in declared if d in index and d != name}

        batches: list[list[str]] = []
        completed: set[str] = set()
        remaining = list(order)
        cycles = False

        while remaining:
            batch = [name for name in remaining if deps[name] <= completed]
            if not batch:
                cycles = True
                if self.strict:
                    raise DependencyCycleError(remaining)
                logger.warning(
                    "Circular dependency detected among %s; flushing as a final batch",
                    ", ".join(remaining),
                )
                batches.append(list(remaining))
                break
            for name in batch:
                completed.add(name)
            remaining = [name for name in remaining if name not in completed]
            batches.append(batch)

        return BatchPlan(order=order, batches=batches, cycles_detected=cycles, ignored_dependencies=ignored)


def _fence_lang(path: str) -> str:
    return {
        ".py": "python", ".ts": "typescript", ".tsx": "tsx", ".js": "javascript",
        ".jsx": "jsx", ".go": "go", ".rs": "rust", ".php": "php",
    }.get(PurePosixPath(path).suffix, "")


def build_component_prompt(
    task: ExecutionTask,
    context: ContextBundle,
    design: DesignOutput,
    component: ComponentDependency,
    dependency_files: list[FileOperation],
) -> str:
    dep_context = ""
    if dependency_files:
        blocks = "\n\n".join(
            f"### {f.path}\n```{_fence_lang(f.path)}\n{f.content}\n```" for f in dependency_files
        )
        dep_context = (
            "\n## Completed Dependencies\n"
            "These files have already been written and you can import from them:\n\n" + blocks
        )

    spec = f"## Specification\n{task.specification}\n\n" if task.specification else ""
    deps = ", ".join(component.dependencies) if component.dependencies else "none"
    return (
        f"# ENGINEER - Component: {component.name}\n\n"
        "Generate ONLY the file for this component. Write complete, working code.\n\n"
        f"## Task\n{task.description}\n\n{spec}"
        f"## Design\n{design.approach}\n"
        f"Components: {', '.join(c.name for c in design.components)}\n\n"
        f"## Repository\n{context.summary}\n\n"
        f"## Your Component\n- Name: {component.name}\n- File: {component.file}\n"
        f"- Dependencies: {deps}\n- Notes: {component.description}\n"
        f"{dep_context}\n\n"
        "## Required Output\n"
        f'<file path="{component.file}" action="create">\ncomplete implementation\n</file>\n\n'
        "Provide COMPLETE file contents. Export what dependent components need."
    )


class ParallelEngineer:
    """Runs one engineer call per component, batch by batch."""

    def __init__(
        self,
        backend: ReasoningBackend,
        options: InvokeOptions | None = None,
        batcher: ComponentDependencyBatcher | None = None,
    ) -> None:
        self.backend = backend
        self.options = options or InvokeOptions(strength="fast")
        self.batcher = batcher or ComponentDependencyBatcher()

    async def execute_in_order(
        self,
        task: ExecutionTask,
        context: ContextBundle,
        design: DesignOutput,
    ) -> PlanOutput:
        components = design.components
        if not components:
            logger.info("No component dependencies defined; caller should use a single engineer")
            return PlanOutput(
                confidence=0.5,
                notes="No component dependencies defined",
                parallel=True,
                compressed_token="PLAN|parallel|0files",
            )

        plan = self.batcher.build_batches(components)
        index = {c.name: c for c in reversed(components)}
        logger.info("Execution order: %s", " → ".join(plan.order))
        logger.info("%d batch(es) to execute", len(plan.batches))

        completed: dict[str, list[FileOperation]] = {}
        all_files: list[FileOperation] = []
        succeeded = failed = 0

        for i, batch in enumerate(plan.batches, start=1):
            logger.info("Executing batch %d/%d: %s", i, len(plan.batches), ", ".join(batch))
            calls = []
            for name in batch:
                component = index[name]
                dep_files = [f for dep in component.dependencies for f in completed.get(dep, [])]
                calls.append(self._execute_component(task, context, design, component, dep_files))

            for result in await asyncio.gather(*calls):
                if result.success:
                    completed[result.component] = result.files
                    all_files.extend(result.files)
                    succeeded += 1
                    logger.info("✓ %s: %d file(s)", result.component, len(result.files))
                else:
                    failed += 1
                    logger.error("✗ %s: %s", result.component, result.error)

        logger.info(
            "Parallel engineering complete: %d succeeded, %d failed, %d file(s)",
            succeeded, failed, len(all_files),
        )
        return PlanOutput(
            files=all_files,
            confidence=0.9 if failed == 0 else 0.6,
            notes=f"Parallel execution: {succeeded}/{len(components)} components, {len(all_files)} files",
            parallel=True,
            compressed_token=f"PLAN|parallel|{len(all_files)}files|{succeeded}ok|{failed}fail",
        )

    async def _execute_component(
        self,
        task: ExecutionTask,
        context: ContextBundle,
        design: DesignOutput,
        component: ComponentDependency,
        dependency_files: list[FileOperation],
    ) -> ComponentResult:
        prompt = build_component_prompt(task, context, design, component, dependency_files)
        try:
            response = await self.backend.invoke(prompt, self.options)
        except Exception as exc:
            return ComponentResult(component.name, [], False, f"{type(exc).__name__}: {exc}")

        files = parse_with_fallback(response, component.file, label=component.name)
        if not files:
            return ComponentResult(
                component.name, [], False,
                f"No valid <file> blocks parsed. Response length: {len(response)} chars",
            )
        return ComponentResult(component.name, files, True)
