"""
Circuit Breaker for the dedicated compute pool

The job router uses the bounded submission timeout as its only health check
for the dedicated pool. After repeated failures the breaker opens and the
router goes straight to the serverless pool instead of paying the timeout on
every job.

States:
- CLOSED: Normal operation, dedicated submissions go through
- OPEN: Too many consecutive failures, dedicated pool is skipped
- HALF_OPEN: Recovery window passed, a limited number of probe submissions is allowed

Example:
    breaker = CircuitBreaker("dedicated", failure_threshold=5, recovery_timeout=60)

    if breaker.allow_request():
        try:
            job = await submit_dedicated(payload)
            breaker.record_success()
        except httpx.HTTPError:
            breaker.record_failure()
"""

import time
import threading
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CircuitBreakerState:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:

    def __init__(
        self,
        name: str = "dedicated",
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            name: Label used in logs and metrics
            failure_threshold: Consecutive failures before opening
            recovery_timeout: Seconds to stay OPEN before probing (HALF_OPEN)
            half_open_max_calls: Probe calls allowed while HALF_OPEN
            clock: Monotonic time source (injectable for tests)
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0

        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        # Caller holds the lock
        if self._state == CircuitBreakerState.OPEN and self._opened_at is not None:
            if self._clock() - self._opened_at >= self.recovery_timeout:
                logger.info(f"CircuitBreaker[{self.name}]: OPEN → HALF_OPEN (recovery window passed)")
                self._state = CircuitBreakerState.HALF_OPEN
                self._half_open_calls = 0

    def allow_request(self) -> bool:
        """Return True if a call to the guarded pool may be attempted now."""
        with self._lock:
            self._maybe_half_open()

            if self._state == CircuitBreakerState.OPEN:
                return False

            if self._state == CircuitBreakerState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    return False
                self._half_open_calls += 1

            return True

    def is_open(self) -> bool:
        return self.state == CircuitBreakerState.OPEN

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitBreakerState.CLOSED:
                logger.info(f"CircuitBreaker[{self.name}]: {self._state} → CLOSED (success)")
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._half_open_calls = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1

            if self._state == CircuitBreakerState.HALF_OPEN:
                self._open()
                logger.warning(
                    f"CircuitBreaker[{self.name}]: HALF_OPEN → OPEN "
                    f"(probe failed, retry in {self.recovery_timeout}s)"
                )
            elif self._state == CircuitBreakerState.CLOSED and self._failure_count >= self.failure_threshold:
                self._open()
                logger.error(
                    f"CircuitBreaker[{self.name}]: CLOSED → OPEN "
                    f"({self._failure_count} consecutive failures)"
                )
            else:
                logger.warning(
                    f"CircuitBreaker[{self.name}]: failure "
                    f"{self._failure_count}/{self.failure_threshold}"
                )

    def _open(self) -> None:
        self._state = CircuitBreakerState.OPEN
        self._opened_at = self._clock()
        self._half_open_calls = 0

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._half_open_calls = 0

    def get_status(self) -> dict:
        """Get circuit breaker status (for monitoring)"""
        with self._lock:
            self._maybe_half_open()
            return {
                "name": self.name,
                "state": self._state,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "recovery_timeout_seconds": self.recovery_timeout,
            }
