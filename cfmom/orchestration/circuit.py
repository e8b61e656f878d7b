"""Per-proposer circuit breaker.

closed     normal dispatch; consecutive failures are counted
open       proposer skipped until reset_after seconds have passed
half_open  one trial dispatch; success closes, failure re-opens
"""

from __future__ import annotations

import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class _Circuit:
    failures: int = 0
    opened_at: float | None = None


class CircuitBreaker:
    def __init__(
        self,
        threshold: int = 5,
        reset_after: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.threshold = threshold
        self.reset_after = reset_after
        self._clock = clock
        self._circuits: dict[str, _Circuit] = {}

    def state(self, name: str) -> CircuitState:
        circuit = self._circuits.get(name)
        if circuit is None or circuit.opened_at is None:
            return CircuitState.CLOSED
        if self._clock() - circuit.opened_at >= self.reset_after:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    def is_closed(self, name: str) -> bool:
        """True when the proposer may be dispatched (closed or half-open)."""
        return self.state(name) != CircuitState.OPEN

    def record_success(self, name: str) -> None:
        self._circuits.pop(name, None)

    def record_failure(self, name: str) -> bool:
        """Count a failure. Returns True if this call opened the circuit."""
        circuit = self._circuits.setdefault(name, _Circuit())
        was_half_open = self.state(name) == CircuitState.HALF_OPEN
        circuit.failures += 1
        if was_half_open or (circuit.opened_at is None and circuit.failures >= self.threshold):
            circuit.opened_at = self._clock()
            print(
                f"WARNING: circuit opened for proposer '{name}' after "
                f"{circuit.failures} consecutive failure(s); skipping for {self.reset_after:g}s",
                file=sys.stderr,
            )
            return True
        return False

    def failure_count(self, name: str) -> int:
        circuit = self._circuits.get(name)
        return circuit.failures if circuit else 0
