"""
Per-provider circuit breaker.

After ``max_failures`` consecutive provider failures the breaker opens and
calls fail fast with ``provider_unavailable`` until ``reset_after`` seconds
have passed since the last failure. The failure count then starts over.
"""
import time
import logging
from typing import Callable, Optional

from .settings import CIRCUIT_BREAKER_MAX_FAILURES, CIRCUIT_BREAKER_RESET_S

logger = logging.getLogger(__name__)


class CircuitBreaker:
    def __init__(self, name: str, *, max_failures: int = CIRCUIT_BREAKER_MAX_FAILURES,
                 reset_after: float = CIRCUIT_BREAKER_RESET_S, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.max_failures = max_failures
        self.reset_after = reset_after
        self._clock = clock
        self.failures = 0
        self.last_failure_at: Optional[float] = None

    def is_open(self) -> bool:
        if self.failures < self.max_failures:
            return False
        if self._clock() - self.last_failure_at < self.reset_after:
            return True
        logger.info(f"Circuit for {self.name} closing after {self.reset_after:.0f}s cool-down")
        self.reset()
        return False

    def record_success(self) -> None:
        self.failures = 0
        self.last_failure_at = None

    def record_failure(self) -> None:
        self.failures += 1
        self.last_failure_at = self._clock()
        if self.failures == self.max_failures:
            logger.warning(f"Circuit for {self.name} opened after {self.failures} consecutive failures")

    def reset(self) -> None:
        self.failures = 0
        self.last_failure_at = None

    def status(self) -> dict:
        open_now = self.is_open()
        remaining = 0.0
        if open_now:
            remaining = max(0.0, self.reset_after - (self._clock() - self.last_failure_at))
        return {"is_open": open_now, "failures": self.failures, "time_until_reset": remaining}
