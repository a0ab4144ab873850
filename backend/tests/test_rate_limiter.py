"""
CertVerify Backend — Rate Limiter Unit Tests
==============================================

What we test:
    ✅ The (budget+1)-th request in a window is rejected with Retry-After
    ✅ Budgets are per caller and per route class
    ✅ A new window starts after the TTL
    ✅ FAIL_OPEN: store outage lets requests through, flagged degraded
    ✅ Concurrent consumers share one budget (no lost increments)
"""

import asyncio

import pytest

from certverify.config import RateBudget
from certverify.services.rate_limiter import RateLimiter
from certverify.store import MemoryStore

from conftest import FailingStore, FakeClock

BUDGETS = {
    "default": RateBudget(points=5, window_seconds=60),
    "auth": RateBudget(points=2, window_seconds=60),
}


class TestRateLimiter:
    def setup_method(self):
        self.clock = FakeClock()
        self.store = MemoryStore(clock=self.clock)
        self.limiter = RateLimiter(self.store, BUDGETS, clock=self.clock)

    def test_default_budget_required(self):
        with pytest.raises(ValueError):
            RateLimiter(self.store, {"auth": RateBudget(1, 1)})

    def test_unknown_class_falls_back_to_default(self):
        assert self.limiter.budget_for("reports") == BUDGETS["default"]

    @pytest.mark.asyncio
    async def test_budget_plus_one_is_rejected(self):
        decisions = [await self.limiter.consume("10.0.0.1:anonymous") for _ in range(6)]

        assert all(d.allowed for d in decisions[:5])
        assert [d.remaining for d in decisions[:5]] == [4, 3, 2, 1, 0]

        rejected = decisions[5]
        assert not rejected.allowed
        assert rejected.retry_after == 60
        assert rejected.headers()["Retry-After"] == "60"
        assert rejected.headers()["X-Rate-Limit-Limit"] == "5"
        assert rejected.headers()["X-Rate-Limit-Remaining"] == "0"

    @pytest.mark.asyncio
    async def test_retry_after_shrinks_with_window(self):
        for _ in range(5):
            await self.limiter.consume("c")
        self.clock.advance(45)
        rejected = await self.limiter.consume("c")
        assert rejected.retry_after == 15

    @pytest.mark.asyncio
    async def test_window_resets(self):
        for _ in range(6):
            await self.limiter.consume("c")

        self.clock.advance(60)
        decision = await self.limiter.consume("c")

        assert decision.allowed
        assert decision.remaining == 4

    @pytest.mark.asyncio
    async def test_callers_have_separate_budgets(self):
        for _ in range(5):
            await self.limiter.consume("10.0.0.1:anonymous")

        assert not (await self.limiter.consume("10.0.0.1:anonymous")).allowed
        assert (await self.limiter.consume("10.0.0.2:anonymous")).allowed
        assert (await self.limiter.consume("10.0.0.1:user-7")).allowed

    @pytest.mark.asyncio
    async def test_route_classes_have_separate_budgets(self):
        for _ in range(2):
            assert (await self.limiter.consume("c", "auth")).allowed
        assert not (await self.limiter.consume("c", "auth")).allowed
        assert (await self.limiter.consume("c", "default")).allowed

    @pytest.mark.asyncio
    async def test_concurrent_consumers_share_budget(self):
        limiter = RateLimiter(MemoryStore(), {"default": RateBudget(20, 60)})
        decisions = await asyncio.gather(*(limiter.consume("c") for _ in range(50)))
        assert sum(1 for d in decisions if d.allowed) == 20


class TestRateLimiterFailOpen:
    @pytest.mark.asyncio
    async def test_store_outage_allows_request(self):
        limiter = RateLimiter(FailingStore(), BUDGETS)

        decision = await limiter.consume("c")

        assert decision.allowed
        assert decision.degraded
        # No limit headers when the count is unknown
        assert decision.headers() == {}
