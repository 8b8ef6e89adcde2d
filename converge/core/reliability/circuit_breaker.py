"""
Circuit breaker — stop hammering a provider that keeps failing.

States:
    CLOSED    → Normal operation. Failures counted.
    OPEN      → All calls rejected. Timer running.
    HALF_OPEN → One probe call allowed to test recovery.

Transitions:
    CLOSED → OPEN:      failure_count >= threshold
    OPEN → HALF_OPEN:   recovery_timeout elapsed
    HALF_OPEN → CLOSED: probe succeeds
    HALF_OPEN → OPEN:   probe fails

Apply workers share breakers, so every transition happens under a lock.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class CircuitState(StrEnum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Per-provider circuit breaker.

    Args:
        name: Identifier (the provider alias).
        failure_threshold: Consecutive failures before opening the circuit.
        recovery_timeout: Seconds before a probe call is let through.
    """

    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 30.0

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: float = 0.0
    total_rejections: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def allow_request(self) -> bool:
        """Check if a call may proceed."""
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return True
            if self.state == CircuitState.OPEN:
                if time.monotonic() - self.last_failure_time >= self.recovery_timeout:
                    self._transition(CircuitState.HALF_OPEN)
                    return True
                self.total_rejections += 1
                return False
            return True

    def record_success(self) -> None:
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)
            self.failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self.last_failure_time = time.monotonic()
            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif self.state == CircuitState.CLOSED:
                self.failure_count += 1
                if self.failure_count >= self.failure_threshold:
                    self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        """Force the breaker back to closed."""
        with self._lock:
            self._transition(CircuitState.CLOSED)
            self.total_rejections = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "total_rejections": self.total_rejections,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }

    def _transition(self, new_state: CircuitState) -> None:
        old = self.state
        self.state = new_state
        if new_state == CircuitState.CLOSED:
            self.failure_count = 0
        logger.info("Circuit breaker '%s': %s → %s", self.name, old.value, new_state.value)


@dataclass
class CircuitBreakerRegistry:
    """One breaker per provider alias, created on first use."""

    breakers: dict[str, CircuitBreaker] = field(default_factory=dict)
    default_threshold: int = 5
    default_timeout: float = 30.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def get_or_create(self, name: str) -> CircuitBreaker:
        with self._lock:
            if name not in self.breakers:
                self.breakers[name] = CircuitBreaker(
                    name=name,
                    failure_threshold=self.default_threshold,
                    recovery_timeout=self.default_timeout,
                )
            return self.breakers[name]

    def get_status(self) -> dict[str, dict[str, Any]]:
        return {name: cb.to_dict() for name, cb in self.breakers.items()}

    def reset_all(self) -> None:
        for cb in self.breakers.values():
            cb.reset()
