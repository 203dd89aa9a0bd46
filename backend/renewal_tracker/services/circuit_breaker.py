import threading
import time
from enum import Enum
from typing import Callable

from loguru import logger

from ..exceptions import AIErrorKind, AIServiceError

# Failures that say something about the health of the upstream service
TRIPPING_KINDS = {AIErrorKind.TRANSIENT, AIErrorKind.QUOTA}


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    In-process circuit breaker for the semantic engine.

    After ``failure_threshold`` consecutive transient or quota failures the
    breaker opens and calls are rejected without reaching the engine. Once
    ``recovery_timeout`` seconds have passed it lets calls through again
    (half-open); ``success_threshold`` successes close it, any failure
    opens it again.
    """

    def __init__(self, name: str, failure_threshold: int = 5, recovery_timeout: float = 60.0,
                 success_threshold: int = 3, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.clock = clock
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> BreakerState:
        return self._state

    def before_call(self) -> None:
        """Raise ``AIServiceError(UNAVAILABLE)`` while the breaker is open."""
        with self._lock:
            if self._state != BreakerState.OPEN:
                return
            remaining = self.recovery_timeout - (self.clock() - self._opened_at)
            if remaining <= 0:
                self._state = BreakerState.HALF_OPEN
                self._successes = 0
                logger.info(f"Circuit breaker for {self.name} half-open, trying the service again")
                return
        raise AIServiceError(
            f"Circuit breaker is open for {self.name}, retry in {int(remaining) + 1}s",
            AIErrorKind.UNAVAILABLE,
        )

    def record_success(self) -> None:
        with self._lock:
            if self._state == BreakerState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.success_threshold:
                    self._close()
            else:
                self._failures = 0

    def record_failure(self, error: AIServiceError) -> None:
        if error.kind not in TRIPPING_KINDS:
            return
        with self._lock:
            self._failures += 1
            if self._state == BreakerState.HALF_OPEN or self._failures >= self.failure_threshold:
                self._open()
            else:
                logger.warning(
                    f"Circuit breaker failure for {self.name} ({self._failures}/{self.failure_threshold}): {error}"
                )

    def _open(self) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = self.clock()
        self._successes = 0
        logger.error(f"Circuit breaker opened for {self.name} after {self._failures} failures")

    def _close(self) -> None:
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._successes = 0
        logger.info(f"Circuit breaker closed for {self.name}")
