from __future__ import annotations

import time
from typing import Optional

from ..logging_config import get_logger

logger = get_logger("session_guard.circuit_breaker")


class CircuitBreaker:
    """
    Counts consecutive dispatch failures and opens after ``threshold`` of them,
    holding back further dispatches for ``cooldown_seconds``.

    The breaker closes again on its own once the cooldown has elapsed. It has
    no dependencies on other project modules, so SessionMonitor composes it
    and tests can drive it in isolation.
    """

    def __init__(self, threshold: int, cooldown_seconds: float) -> None:
        self._threshold = threshold
        self._cooldown_seconds = cooldown_seconds
        self._consecutive_failures: int = 0
        self._open_at: Optional[float] = None

    # ------------------------------------------------------------------
    # State inspection
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        """
        True while dispatches should be held back.

        Reading this after the cooldown has elapsed closes the breaker and
        returns False, letting the next dispatch through.
        """
        if self._open_at is None:
            return False
        if time.time() - self._open_at >= self._cooldown_seconds:
            self._open_at = None
            self._consecutive_failures = 0
            logger.info("Circuit breaker reset, resuming dispatch")
            return False
        return True

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def open_at(self) -> Optional[float]:
        return self._open_at

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def record_failure(self) -> None:
        """Count a failure; open the circuit when the threshold is reached."""
        self._consecutive_failures += 1
        if self._consecutive_failures >= self._threshold and self._open_at is None:
            self._open_at = time.time()
            logger.error(
                "Circuit breaker opened",
                consecutive_failures=self._consecutive_failures,
                cooldown_seconds=self._cooldown_seconds,
            )

    def record_success(self) -> None:
        self._consecutive_failures = 0
