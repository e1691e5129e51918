"""
Circuit breaker for provider fault tolerance.

Skips providers that keep failing until a cool-down has passed.
"""

import time
from enum import Enum
from typing import Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Tracks consecutive failures for one provider.

    Opens after ``failure_threshold`` consecutive failures, lets a probe
    through once ``reset_timeout`` seconds have passed (half-open), and
    closes again after ``success_threshold`` successful probes.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None

    def is_open(self) -> bool:
        """Whether calls should be skipped right now."""
        if self.state is CircuitState.OPEN:
            if (self.last_failure_time is not None
                    and self._clock() - self.last_failure_time > self.reset_timeout):
                self.state = CircuitState.HALF_OPEN
                self.success_count = 0
                return False
            return True
        return False

    def record_success(self) -> None:
        if self.state is CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
        else:
            self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state is CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state is not CircuitState.OPEN:
                logger.warning("circuit_opened", failures=self.failure_count)
            self.state = CircuitState.OPEN

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = None

    def get_metrics(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
        }
