"""Exception types raised across the pipeline.

Only conditions that terminate a run are exceptions.  Expected negative
outcomes (no file blocks parsed, audit findings, an exhausted fix loop) are
returned as values.
"""

from __future__ import annotations


class FoundryError(Exception):
    """Base class for all foundry errors."""


class ExecutionAbortedError(FoundryError):
    """The run's cancellation signal was observed at a phase boundary."""

    def __init__(self, phase: str = "") -> None:
        self.phase = phase
        where = f" before {phase}" if phase else ""
        super().__init__(f"Execution aborted by user{where}")


class ExecutionInProgressError(FoundryError):
    """execute() was called while another run is active on the same orchestrator."""

    def __init__(self, active_task_id: str) -> None:
        self.active_task_id = active_task_id
        super().__init__(f"Another execution is already in progress (task {active_task_id})")


class ContainmentViolationError(FoundryError):
    """A plan tried to write a path protected by a non-overridable rule."""

    def __init__(self, paths: list[str], reason: str) -> None:
        self.paths = list(paths)
        self.reason = reason
        super().__init__(f"Containment violation on {', '.join(paths)}: {reason}")


class GateBlockedError(FoundryError):
    """A pre-engineering gate was refused by the user."""

    def __init__(self, gate: str, reason: str) -> None:
        self.gate = gate
        self.reason = reason
        super().__init__(f"{gate} gate blocked execution: {reason}")


class BackendError(FoundryError):
    """A reasoning backend call failed (transport, auth, provider error)."""


class BackendUnavailableError(BackendError):
    """The circuit for the requested model strength is open."""

    def __init__(self, circuit_id: str, cooldown_remaining: float) -> None:
        self.circuit_id = circuit_id
        self.cooldown_remaining = cooldown_remaining
        super().__init__(
            f"Backend '{circuit_id}' unavailable (circuit open, {cooldown_remaining:.0f}s remaining)"
        )


class DependencyCycleError(FoundryError):
    """Raised by the batcher in strict mode when component dependencies form a cycle."""

    def __init__(self, components: list[str]) -> None:
        self.components = list(components)
        super().__init__(f"Dependency cycle among components: {', '.join(components)}")
