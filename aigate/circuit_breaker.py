"""
Per-provider circuit breaker used by the gateway.

A provider that fails ``failure_threshold`` times in a row is skipped for
``cooldown_seconds``. After that a limited number of probe calls go through;
enough probe successes close the circuit, any probe failure reopens it.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2  # probe successes needed to close
    cooldown_seconds: float = 60.0
    half_open_max_requests: int = 3  # probes admitted per half-open period


class CircuitBreaker:
    """
    Failure gate for one provider.

    The gateway asks ``allow()`` before each attempt and then reports the
    outcome with ``record_success()`` or ``record_failure()``.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = Lock()

        self._state = CircuitState.CLOSED
        self._streak = 0  # consecutive failures while closed
        self._probes_admitted = 0
        self._probes_passed = 0
        self._opened_at = 0.0
        self._totals = {"successes": 0, "failures": 0, "trips": 0}

    def _enter(self, state: CircuitState) -> None:
        if state == self._state:
            return
        logger.info("Circuit %s: %s -> %s", self.name, self._state.value, state.value)
        self._state = state
        self._streak = 0
        self._probes_admitted = 0
        self._probes_passed = 0
        if state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._totals["trips"] += 1

    def _cooldown_left(self) -> float:
        return self.config.cooldown_seconds - (self._clock() - self._opened_at)

    def _current(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._cooldown_left() <= 0:
            self._enter(CircuitState.HALF_OPEN)
        return self._state

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current()

    def allow(self) -> bool:
        """Take a permit for one attempt. False while open or out of probes."""
        with self._lock:
            state = self._current()
            if state == CircuitState.CLOSED:
                return True
            if state == CircuitState.OPEN:
                return False
            if self._probes_admitted < self.config.half_open_max_requests:
                self._probes_admitted += 1
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            self._totals["successes"] += 1
            if self._current() != CircuitState.HALF_OPEN:
                self._streak = 0
                return
            self._probes_passed += 1
            if self._probes_passed >= self.config.success_threshold:
                self._enter(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            self._totals["failures"] += 1
            state = self._current()
            if state == CircuitState.HALF_OPEN:
                self._enter(CircuitState.OPEN)
            elif state == CircuitState.CLOSED:
                self._streak += 1
                if self._streak >= self.config.failure_threshold:
                    self._enter(CircuitState.OPEN)

    def reset(self) -> None:
        with self._lock:
            self._enter(CircuitState.CLOSED)
            self._streak = 0

    def get_stats(self) -> dict:
        with self._lock:
            state = self._current()
            return {
                "name": self.name,
                "state": state.value,
                "consecutive_failures": self._streak,
                "total_failures": self._totals["failures"],
                "total_successes": self._totals["successes"],
                "trips": self._totals["trips"],
                "time_until_retry": max(0.0, self._cooldown_left()) if state == CircuitState.OPEN else 0.0,
            }
