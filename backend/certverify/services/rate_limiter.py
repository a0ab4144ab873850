"""
CertVerify Backend — Distributed Rate Limiter
===============================================

What:  Per-caller, per-route-class request budgets enforced across every
       process instance.
How:   Fixed-window counters in the coordination store. Each consume() is
       ONE atomic increment-with-expiry; the decision is derived from the
       returned count. No in-process counting, so N instances share one
       budget per caller.

Bucket key:
    ratelimit:{route_class}:{caller}
    where caller = "{ip}:{subject}" and subject is the authenticated user
    id or "anonymous". Limits are per caller, never global.

Failure policy: FAIL_OPEN. An unreachable store lets the request through
(availability over strict limiting) and logs a warning. The decision is
flagged `degraded` so the stage can skip the rate-limit headers it cannot
compute honestly.
"""

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict

from certverify.config import RateBudget
from certverify.exceptions import StoreUnavailableError
from certverify.policy import FailurePolicy
from certverify.store.base import CoordinationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds
    retry_after: int  # seconds; 0 when allowed
    degraded: bool = False

    @property
    def reset_at_iso(self) -> str:
        return datetime.fromtimestamp(self.reset_at, tz=timezone.utc).isoformat()

    def headers(self) -> Dict[str, str]:
        if self.degraded:
            return {}
        headers = {
            "X-Rate-Limit-Limit": str(self.limit),
            "X-Rate-Limit-Remaining": str(self.remaining),
            "X-Rate-Limit-Reset": self.reset_at_iso,
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """
    Args:
        store:    Shared coordination store
        budgets:  route class → RateBudget; must contain "default"
        clock:    Wall clock (epoch seconds) used for reset timestamps
    """

    failure_policy = FailurePolicy.FAIL_OPEN
    KEY_PREFIX = "ratelimit"

    def __init__(
        self,
        store: CoordinationStore,
        budgets: Dict[str, RateBudget],
        clock: Callable[[], float] = time.time,
    ):
        if "default" not in budgets:
            raise ValueError("Rate limit budgets must define a 'default' class")
        self._store = store
        self.budgets = dict(budgets)
        self._clock = clock

    def budget_for(self, route_class: str) -> RateBudget:
        return self.budgets.get(route_class, self.budgets["default"])

    async def consume(self, caller: str, route_class: str = "default") -> RateLimitDecision:
        budget = self.budget_for(route_class)
        key = f"{self.KEY_PREFIX}:{route_class}:{caller}"
        now = self._clock()

        try:
            state = await self._store.increment_window(key, budget.window_seconds * 1000)
        except StoreUnavailableError as e:
            if not self.failure_policy.allows:
                raise
            logger.warning(
                "Rate limiter store unavailable, failing open for %s: %s", key, e.message
            )
            return RateLimitDecision(
                allowed=True,
                limit=budget.points,
                remaining=budget.points,
                reset_at=now + budget.window_seconds,
                retry_after=0,
                degraded=True,
            )

        reset_at = now + state.ttl_ms / 1000
        allowed = state.count <= budget.points
        remaining = max(budget.points - state.count, 0)
        retry_after = 0 if allowed else max(math.ceil(state.ttl_ms / 1000), 1)

        if not allowed:
            logger.warning(
                "Rate limit exceeded for %s (class=%s, %d/%d in %ds window)",
                caller,
                route_class,
                state.count,
                budget.points,
                budget.window_seconds,
            )

        return RateLimitDecision(
            allowed=allowed,
            limit=budget.points,
            remaining=remaining,
            reset_at=reset_at,
            retry_after=retry_after,
        )
