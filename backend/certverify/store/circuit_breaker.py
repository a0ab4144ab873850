"""
CertVerify Backend — Circuit Breaker
======================================

What:  Stops calling Redis for a while after repeated failures.
Why:   Every request touches the store several times (limiter, CSRF, cache).
       When Redis is down, each of those calls would otherwise wait for a
       socket timeout before failing open, turning a Redis outage into a
       latency outage for the whole API.

State Machine:
    CLOSED    → failure_count reaches threshold → OPEN
    OPEN      → all calls raise CircuitBreakerOpenError immediately
              → after recovery_timeout seconds → HALF_OPEN
    HALF_OPEN → one trial call; success → CLOSED, failure → OPEN
                other callers are refused while the trial is in flight; a
                trial that never reports back frees the slot after
                recovery_timeout seconds

Concurrency:
    Counters are plain attributes. That is safe because all store calls run
    on one event loop; each worker process keeps its own breaker.
"""

import logging
import time
from typing import Callable, Optional

from certverify.exceptions import CircuitBreakerOpenError

logger = logging.getLogger(__name__)


class CircuitBreaker:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None
        self._trial_started: Optional[float] = None
        self._clock = clock

    def can_execute(self) -> bool:
        """
        Returns True when a call may proceed.

        Raises:
            CircuitBreakerOpenError while OPEN and the recovery timeout
            has not yet elapsed, or while HALF_OPEN with a trial in flight.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info("Store circuit transitioning to HALF_OPEN after %.1fs", elapsed)
                self.state = self.HALF_OPEN
                self._trial_started = self._clock()
                return True
            raise CircuitBreakerOpenError(recovery_time=int(self.recovery_timeout - elapsed) + 1)

        # HALF_OPEN
        now = self._clock()
        if self._trial_started is not None and now - self._trial_started < self.recovery_timeout:
            raise CircuitBreakerOpenError(recovery_time=1)
        self._trial_started = now
        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Store circuit transitioning to CLOSED (backend recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None
        self._trial_started = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        self._trial_started = None

        if self.state == self.HALF_OPEN:
            logger.warning("Store circuit returning to OPEN (trial call failed)")
            self.state = self.OPEN
        elif self.state == self.CLOSED and self.failure_count >= self.failure_threshold:
            logger.warning(
                "Store circuit OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN
