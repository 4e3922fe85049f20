"""Per-id circuit breaker used to stop hammering a failing model backend.

State machine::

    CLOSED    → (failures ≥ threshold within window) → OPEN
    OPEN      → (cooldown elapsed, observed lazily)  → HALF_OPEN
    HALF_OPEN → (success × success_threshold)        → CLOSED
    HALF_OPEN → (any failure)                        → OPEN
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel

from foundry.core.logging import get_logger

logger = get_logger("core.circuit_breaker")


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = 5
    failure_window: float = 60.0
    cooldown: float = 300.0
    success_threshold: int = 2

    @classmethod
    def from_settings(cls, settings) -> CircuitBreakerConfig:
        return cls(
            failure_threshold=settings.circuit_failure_threshold,
            failure_window=settings.circuit_failure_window_seconds,
            cooldown=settings.circuit_cooldown_seconds,
            success_threshold=settings.circuit_success_threshold,
        )


class CircuitStatus(BaseModel):
    id: str
    state: CircuitState
    failure_count: int
    success_count: int
    last_opened_at: float | None = None
    cooldown_ends_at: float | None = None
    total_failures: int = 0
    total_successes: int = 0
    trip_count: int = 0


@dataclass
class _Circuit:
    state: CircuitState = CircuitState.CLOSED
    failures: list[float] = field(default_factory=list)
    opened_at: float | None = None
    half_open_successes: int = 0
    total_failures: int = 0
    total_successes: int = 0
    trips: int = 0


class CircuitBreaker:
    """Thread-safe registry of circuits keyed by an arbitrary string id."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._circuits: dict[str, _Circuit] = {}

    # ── Recording ─────────────────────────────────────────────────────

    def record_failure(self, circuit_id: str) -> bool:
        """Record a failure. Returns True if the circuit is open afterwards."""
        with self._lock:
            now = self._clock()
            circuit = self._circuits.setdefault(circuit_id, _Circuit())
            window_start = now - self.config.failure_window
            circuit.failures = [t for t in circuit.failures if t >= window_start]
            circuit.failures.append(now)
            circuit.total_failures += 1

            state = self._current_state(circuit, now)
            if state is CircuitState.HALF_OPEN:
                self._open(circuit_id, circuit, now)
                return True
            if state is CircuitState.CLOSED and len(circuit.failures) >= self.config.failure_threshold:
                self._open(circuit_id, circuit, now)
                return True
            return state is CircuitState.OPEN

    def record_success(self, circuit_id: str) -> bool:
        """Record a success. Returns True if the circuit is closed afterwards."""
        with self._lock:
            now = self._clock()
            circuit = self._circuits.setdefault(circuit_id, _Circuit())
            circuit.total_successes += 1

            state = self._current_state(circuit, now)
            if state is CircuitState.HALF_OPEN:
                circuit.half_open_successes += 1
                if circuit.half_open_successes >= self.config.success_threshold:
                    self._close(circuit_id, circuit)
                    return True
                return False
            return state is CircuitState.CLOSED

    # ── Queries ───────────────────────────────────────────────────────

    def get_state(self, circuit_id: str) -> CircuitState:
        with self._lock:
            circuit = self._circuits.get(circuit_id)
            if circuit is None:
                return CircuitState.CLOSED
            return self._current_state(circuit, self._clock())

    def is_open(self, circuit_id: str) -> bool:
        return self.get_state(circuit_id) is CircuitState.OPEN

    def can_attempt(self, circuit_id: str) -> bool:
        """True when CLOSED or HALF_OPEN."""
        return not self.is_open(circuit_id)

    def cooldown_remaining(self, circuit_id: str) -> float:
        with self._lock:
            circuit = self._circuits.get(circuit_id)
            if circuit is None or circuit.opened_at is None:
                return 0.0
            return max(0.0, circuit.opened_at + self.config.cooldown - self._clock())

    def get_status(self, circuit_id: str) -> CircuitStatus:
        with self._lock:
            now = self._clock()
            circuit = self._circuits.get(circuit_id) or _Circuit()
            state = self._current_state(circuit, now)
            window_start = now - self.config.failure_window
            return CircuitStatus(
                id=circuit_id,
                state=state,
                failure_count=sum(1 for t in circuit.failures if t >= window_start),
                success_count=circuit.half_open_successes,
                last_opened_at=circuit.opened_at,
                cooldown_ends_at=(
                    circuit.opened_at + self.config.cooldown
                    if state is CircuitState.OPEN and circuit.opened_at is not None
                    else None
                ),
                total_failures=circuit.total_failures,
                total_successes=circuit.total_successes,
                trip_count=circuit.trips,
            )

    def get_all_status(self) -> list[CircuitStatus]:
        with self._lock:
            ids = list(self._circuits)
        return [self.get_status(circuit_id) for circuit_id in ids]

    def trip_count(self, circuit_id: str | None = None) -> int:
        """Times `circuit_id` has opened, or the total over every circuit when None."""
        with self._lock:
            if circuit_id is None:
                return sum(c.trips for c in self._circuits.values())
            circuit = self._circuits.get(circuit_id)
            return circuit.trips if circuit is not None else 0

    # ── Manual control ────────────────────────────────────────────────

    def reset(self, circuit_id: str) -> None:
        with self._lock:
            circuit = self._circuits.get(circuit_id)
            if circuit is not None:
                circuit.state = CircuitState.CLOSED
                circuit.failures.clear()
                circuit.opened_at = None
                circuit.half_open_successes = 0

    def reset_all(self) -> None:
        with self._lock:
            self._circuits.clear()

    # ── Internals (caller holds the lock) ─────────────────────────────

    def _current_state(self, circuit: _Circuit, now: float) -> CircuitState:
        if (
            circuit.state is CircuitState.OPEN
            and circuit.opened_at is not None
            and now >= circuit.opened_at + self.config.cooldown
        ):
            circuit.state = CircuitState.HALF_OPEN
            circuit.half_open_successes = 0
        return circuit.state

    def _open(self, circuit_id: str, circuit: _Circuit, now: float) -> None:
        circuit.state = CircuitState.OPEN
        circuit.opened_at = now
        circuit.half_open_successes = 0
        circuit.trips += 1
        logger.warning(
            "Circuit OPEN: %s (%d failures in %.0fs window, cooldown %.0fs)",
            circuit_id, len(circuit.failures), self.config.failure_window, self.config.cooldown,
        )

    def _close(self, circuit_id: str, circuit: _Circuit) -> None:
        circuit.state = CircuitState.CLOSED
        circuit.failures.clear()
        circuit.opened_at = None
        circuit.half_open_successes = 0
        logger.info("Circuit CLOSED: %s", circuit_id)
