#!/usr/bin/env python3
"""
Token bucket rate limiter for job board submissions.

Platform limit is ~200 applications/day. Defaults:
- capacity: 20 tokens
- refill_rate: 8 tokens per hour (192/day, leaving buffer)

Buckets are keyed by (subject, action), created lazily and refilled lazily on
every call in whole intervals. Idle buckets are purged by a periodic sweep; a
purged bucket comes back full, which is what it would have refilled to anyway.
All bucket mutation happens under one asyncio.Lock.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from api.models import utcnow

logger = logging.getLogger(__name__)

DEFAULT_ACTION = "application"

BucketKey = Tuple[str, str]


@dataclass
class RateLimitConfig:
    capacity: int = 20
    refill_rate: int = 8
    refill_interval_seconds: float = 3600.0
    idle_ttl_seconds: float = 86400.0
    sweep_interval_seconds: float = 3600.0

    @classmethod
    def from_app_config(cls, cfg) -> "RateLimitConfig":
        return cls(
            capacity=cfg.RATE_LIMIT_CAPACITY,
            refill_rate=cfg.RATE_LIMIT_REFILL_RATE,
            refill_interval_seconds=cfg.RATE_LIMIT_REFILL_INTERVAL_SECONDS,
            idle_ttl_seconds=cfg.RATE_LIMIT_IDLE_TTL_SECONDS,
            sweep_interval_seconds=cfg.RATE_LIMIT_SWEEP_INTERVAL_SECONDS,
        )


@dataclass
class Bucket:
    capacity: int
    tokens: int
    refill_rate: int
    refill_interval: timedelta
    last_refill: datetime
    last_activity: datetime

    def refill(self, now: datetime) -> None:
        """Add tokens for every whole interval since last_refill, keeping fractional progress."""
        if now <= self.last_refill:
            return
        intervals = (now - self.last_refill) // self.refill_interval
        if intervals <= 0:
            return
        self.tokens = min(self.capacity, self.tokens + intervals * self.refill_rate)
        self.last_refill = self.last_refill + intervals * self.refill_interval

    @property
    def next_refill_at(self) -> datetime:
        return self.last_refill + self.refill_interval

    def available_at(self, cost: int) -> datetime:
        """Earliest refill boundary at which `cost` tokens will be present."""
        missing = cost - self.tokens
        if missing <= 0:
            return self.last_refill
        intervals = math.ceil(missing / self.refill_rate)
        return self.last_refill + intervals * self.refill_interval


@dataclass(frozen=True)
class AcquireResult:
    granted: bool
    tokens_remaining: int
    retry_after: Optional[datetime] = None


@dataclass(frozen=True)
class BucketStatus:
    tokens: int
    capacity: int
    refill_rate: int
    last_refill: datetime
    next_refill_at: datetime

    @property
    def can_apply(self) -> bool:
        return self.tokens > 0

    def to_dict(self) -> dict:
        return {
            "tokens": self.tokens,
            "capacity": self.capacity,
            "refill_rate": self.refill_rate,
            "last_refill": self.last_refill.isoformat(),
            "next_refill": self.next_refill_at.isoformat(),
            "can_apply": self.can_apply,
        }


class RateLimiter:
    """Per-(subject, action) token buckets shared by every dispatcher lane."""

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or RateLimitConfig()
        if self.config.capacity < 1 or self.config.refill_rate < 1:
            raise ValueError("capacity and refill_rate must be >= 1")
        if self.config.refill_interval_seconds <= 0:
            raise ValueError("refill_interval_seconds must be > 0")
        self.clock = clock
        self._buckets: Dict[BucketKey, Bucket] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._buckets)

    def _new_bucket(self, now: datetime) -> Bucket:
        return Bucket(
            capacity=self.config.capacity,
            tokens=self.config.capacity,
            refill_rate=self.config.refill_rate,
            refill_interval=timedelta(seconds=self.config.refill_interval_seconds),
            last_refill=now,
            last_activity=now,
        )

    def _bucket(self, key: BucketKey, now: datetime) -> Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._new_bucket(now)
            self._buckets[key] = bucket
        bucket.refill(now)
        return bucket

    async def try_acquire(self, subject: str, action: str = DEFAULT_ACTION, cost: int = 1) -> AcquireResult:
        """
        Take `cost` tokens if available.

        Returns:
            AcquireResult(granted=True, tokens_remaining=...) or
            AcquireResult(granted=False, retry_after=<next usable refill boundary>)
        """
        if cost < 1:
            raise ValueError("cost must be >= 1")
        if cost > self.config.capacity:
            raise ValueError(f"cost {cost} exceeds bucket capacity {self.config.capacity}")

        async with self._lock:
            now = self.clock()
            bucket = self._bucket((subject, action), now)
            bucket.last_activity = now

            if bucket.tokens >= cost:
                bucket.tokens -= cost
                return AcquireResult(granted=True, tokens_remaining=bucket.tokens)

            retry_after = bucket.available_at(cost)
            logger.warning(
                f"Rate limit exceeded for {subject}, action: {action}; retry at {retry_after.isoformat()}"
            )
            return AcquireResult(granted=False, tokens_remaining=bucket.tokens, retry_after=retry_after)

    async def refund(self, subject: str, action: str = DEFAULT_ACTION, cost: int = 1) -> int:
        """Give back tokens that were granted but not used. Never exceeds capacity."""
        async with self._lock:
            now = self.clock()
            bucket = self._bucket((subject, action), now)
            bucket.tokens = min(bucket.capacity, bucket.tokens + max(0, cost))
            bucket.last_activity = now
            return bucket.tokens

    async def status(self, subject: str, action: str = DEFAULT_ACTION) -> BucketStatus:
        """Current bucket state. Unknown subjects report a full bucket without creating one."""
        async with self._lock:
            now = self.clock()
            bucket = self._buckets.get((subject, action))
            if bucket is None:
                bucket = self._new_bucket(now)
            else:
                bucket.refill(now)
            return BucketStatus(
                tokens=bucket.tokens,
                capacity=bucket.capacity,
                refill_rate=bucket.refill_rate,
                last_refill=bucket.last_refill,
                next_refill_at=bucket.next_refill_at,
            )

    async def reset(self, subject: str, action: str = DEFAULT_ACTION) -> None:
        """Administrative reset: the next call starts from a full bucket."""
        async with self._lock:
            self._buckets.pop((subject, action), None)
        logger.info(f"Reset rate limit for {subject}, action: {action}")

    async def sweep(self) -> int:
        """Drop buckets idle for longer than idle_ttl_seconds. Returns how many were dropped."""
        ttl = timedelta(seconds=self.config.idle_ttl_seconds)
        async with self._lock:
            now = self.clock()
            stale = [key for key, b in self._buckets.items() if now - b.last_activity >= ttl]
            for key in stale:
                del self._buckets[key]
        if stale:
            logger.info(f"Evicted {len(stale)} idle rate limit buckets")
        return len(stale)

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Rate limit sweep failed: {e}")

    def start(self):
        if self._sweep_task and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="rate-limiter-sweep")

    async def stop(self):
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
