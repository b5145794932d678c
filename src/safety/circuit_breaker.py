"""Failure-count circuit breaker for unattended execution."""

import asyncio
import time
from enum import Enum
from typing import Any, Callable, Optional
import structlog


logger = structlog.get_logger()


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"      # Tripped, auto-execution halted


class CircuitBreaker:
    """
    Circuit breaker for automatic execution.

    Trips once the number of failures in the trailing window reaches the
    threshold. There is no half-open probe: an open breaker stays open
    until an operator calls reset().

    State is process-local and not persisted.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        window_seconds: float = 3600,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self._clock = clock or time.time

        self._state = CircuitState.CLOSED
        self._failures: list[float] = []
        self._opened_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        """Failures currently held in the window (not pruned until next record)."""
        return len(self._failures)

    async def record_failure(self) -> bool:
        """
        Record a failed execution.

        Returns True when this failure tripped the breaker.
        """
        async with self._lock:
            now = self._clock()
            self._failures.append(now)
            self._prune(now)

            if self._state == CircuitState.CLOSED and len(self._failures) >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._opened_at = now
                logger.warning(
                    "circuit_breaker_opened",
                    failure_count=len(self._failures),
                    threshold=self.failure_threshold,
                    window_seconds=self.window_seconds,
                )
                return True
            return False

    async def reset(self) -> bool:
        """
        Manually reset the circuit breaker.

        Returns True if the breaker was open.
        """
        async with self._lock:
            was_open = self._state == CircuitState.OPEN
            self._state = CircuitState.CLOSED
            self._failures.clear()
            self._opened_at = None
            logger.info("circuit_breaker_reset", reason="manual", was_open=was_open)
            return was_open

    def status(self) -> dict[str, Any]:
        """Snapshot for stats and health endpoints."""
        return {
            "state": self._state.value,
            "is_open": self.is_open,
            "recent_failures": len(self._failures),
            "failure_threshold": self.failure_threshold,
            "window_seconds": self.window_seconds,
            "opened_at": self._opened_at,
        }

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        self._failures = [t for t in self._failures if t > cutoff]
