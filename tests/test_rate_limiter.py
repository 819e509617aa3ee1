"""
Tests for the token bucket rate limiter.
"""

import random

import pytest
from datetime import timedelta

from api.rate_limiter import RateLimitConfig, RateLimiter


HOUR = 3600


class TestAcquire:

    @pytest.mark.asyncio
    async def test_capacity_then_hourly_refill(self, limiter, mock_clock):
        """20 tokens up front, the 21st waits for the next hour, then 8 more."""
        start = mock_clock()
        for i in range(20):
            result = await limiter.try_acquire("user-1", "application")
            assert result.granted, f"acquire {i + 1} should be granted"
        assert result.tokens_remaining == 0

        denied = await limiter.try_acquire("user-1", "application")
        assert not denied.granted
        assert denied.retry_after == start + timedelta(seconds=HOUR)

        mock_clock.advance(HOUR)
        for _ in range(8):
            assert (await limiter.try_acquire("user-1", "application")).granted
        assert not (await limiter.try_acquire("user-1", "application")).granted

    @pytest.mark.asyncio
    async def test_retry_after_covers_larger_cost(self, limiter, mock_clock):
        start = mock_clock()
        assert (await limiter.try_acquire("user-1", cost=20)).granted

        denied = await limiter.try_acquire("user-1", cost=10)
        assert not denied.granted
        # 10 missing tokens at 8/hour needs two refills
        assert denied.retry_after == start + timedelta(seconds=2 * HOUR)

    @pytest.mark.asyncio
    async def test_denial_does_not_consume(self, limiter):
        assert (await limiter.try_acquire("user-1", cost=19)).granted
        assert not (await limiter.try_acquire("user-1", cost=2)).granted
        assert (await limiter.try_acquire("user-1", cost=1)).granted

    @pytest.mark.asyncio
    async def test_invalid_cost_rejected(self, limiter):
        with pytest.raises(ValueError):
            await limiter.try_acquire("user-1", cost=0)
        with pytest.raises(ValueError):
            await limiter.try_acquire("user-1", cost=21)

    @pytest.mark.asyncio
    async def test_buckets_are_per_subject_and_action(self, limiter):
        assert (await limiter.try_acquire("user-1", cost=20)).granted
        assert not (await limiter.try_acquire("user-1")).granted
        assert (await limiter.try_acquire("user-2")).granted
        assert (await limiter.try_acquire("user-1", "message")).granted


class TestRefill:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("intervals", [0, 1, 2, 3, 10])
    async def test_refill_after_whole_intervals(self, limiter, mock_clock, intervals):
        await limiter.try_acquire("user-1", cost=20)
        mock_clock.advance(intervals * HOUR)

        status = await limiter.status("user-1")
        assert status.tokens == min(20, intervals * 8)

    @pytest.mark.asyncio
    async def test_fractional_progress_is_kept(self, limiter, mock_clock):
        start = mock_clock()
        await limiter.try_acquire("user-1", cost=20)

        mock_clock.advance(1.5 * HOUR)
        status = await limiter.status("user-1")
        assert status.tokens == 8
        assert status.last_refill == start + timedelta(seconds=HOUR)

        mock_clock.advance(0.5 * HOUR)
        status = await limiter.status("user-1")
        assert status.tokens == 16
        assert status.next_refill_at == start + timedelta(seconds=3 * HOUR)

    @pytest.mark.asyncio
    async def test_repeated_status_does_not_add_tokens(self, limiter, mock_clock):
        await limiter.try_acquire("user-1", cost=20)
        mock_clock.advance(HOUR + 5)
        first = await limiter.status("user-1")
        second = await limiter.status("user-1")
        assert first.tokens == second.tokens == 8

    @pytest.mark.asyncio
    async def test_tokens_stay_within_bounds(self, limiter, mock_clock):
        rng = random.Random(1234)
        for _ in range(300):
            if rng.random() < 0.3:
                mock_clock.advance(rng.randint(0, 2 * HOUR))
            await limiter.try_acquire("user-1", cost=rng.randint(1, 5))
            status = await limiter.status("user-1")
            assert 0 <= status.tokens <= status.capacity


class TestAdministration:

    @pytest.mark.asyncio
    async def test_status_of_unknown_subject_is_full_and_not_stored(self, limiter):
        status = await limiter.status("nobody")
        assert status.tokens == 20
        assert status.can_apply
        assert len(limiter) == 0

    @pytest.mark.asyncio
    async def test_refund_is_capped(self, limiter):
        await limiter.try_acquire("user-1")
        assert await limiter.refund("user-1") == 20
        assert await limiter.refund("user-1") == 20

    @pytest.mark.asyncio
    async def test_reset_restores_full_bucket(self, limiter):
        await limiter.try_acquire("user-1", cost=20)
        await limiter.reset("user-1")
        assert (await limiter.status("user-1")).tokens == 20

    @pytest.mark.asyncio
    async def test_sweep_evicts_idle_buckets(self, limiter, mock_clock):
        await limiter.try_acquire("idle-user", cost=20)
        mock_clock.advance(25 * HOUR)
        await limiter.try_acquire("active-user")

        assert await limiter.sweep() == 1
        assert len(limiter) == 1
        # An evicted bucket comes back full
        assert (await limiter.status("idle-user")).tokens == 20

    @pytest.mark.asyncio
    async def test_start_and_stop_sweep_task(self, mock_clock):
        limiter = RateLimiter(RateLimitConfig(sweep_interval_seconds=0.01), clock=mock_clock)
        limiter.start()
        assert limiter._sweep_task is not None
        await limiter.stop()
        assert limiter._sweep_task is None

    def test_invalid_config_rejected(self):
        with pytest.raises(ValueError):
            RateLimiter(RateLimitConfig(capacity=0))

    @pytest.mark.asyncio
    async def test_status_to_dict(self, limiter):
        data = (await limiter.status("user-1")).to_dict()
        assert data["tokens"] == 20
        assert data["capacity"] == 20
        assert data["refill_rate"] == 8
        assert data["can_apply"] is True
        assert "next_refill" in data
