# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Rate Limiter — Fixed-window request counting per client IP.

A window opens on an IP's first request and lasts `window_seconds`; the
record is recreated (count back to 1) on the first request after the
window's reset time has passed. Within a window, `limit` requests are
allowed and the rest rejected.

Two backends:
  - InMemoryRateLimiter: process-local dict. Correct only when a single
    process serves the deployment.
  - RedisRateLimiter:    INCR + PEXPIRE on a shared key, so every instance
    of a scaled deployment shares the same counters.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis.asyncio as aioredis

from epiplane.kernel.namespace import get_ratelimit_key

logger = logging.getLogger("epi.ratelimit")


@dataclass
class RateLimitRecord:
    ip: str
    count: int
    window_reset_at: float


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float

    @property
    def retry_after(self) -> int:
        return max(1, int(self.reset_at - time.time() + 0.999))


class InMemoryRateLimiter:
    """Fixed-window limiter keyed by client IP, stored in a process-local map."""

    def __init__(
        self,
        limit: int = 30,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
        max_records: int = 10_000,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self.max_records = max_records
        self._clock = clock
        self._records: Dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()

    async def hit(self, ip: str) -> RateLimitDecision:
        return self.check(ip)

    def check(self, ip: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            record = self._records.get(ip)
            if record is None or now > record.window_reset_at:
                if record is None and len(self._records) >= self.max_records:
                    self._purge(now)
                record = RateLimitRecord(ip=ip, count=1, window_reset_at=now + self.window_seconds)
                self._records[ip] = record
                return RateLimitDecision(True, self.limit - 1, record.window_reset_at)

            if record.count >= self.limit:
                return RateLimitDecision(False, 0, record.window_reset_at)

            record.count += 1
            return RateLimitDecision(True, self.limit - record.count, record.window_reset_at)

    def get_record(self, ip: str) -> Optional[RateLimitRecord]:
        return self._records.get(ip)

    def sweep(self) -> int:
        """Drop expired records; returns how many were removed."""
        with self._lock:
            return self._purge(self._clock())

    def _purge(self, now: float) -> int:
        expired = [ip for ip, r in self._records.items() if now > r.window_reset_at]
        for ip in expired:
            del self._records[ip]
        return len(expired)


class RedisRateLimiter:
    """Fixed-window limiter shared across instances through Redis."""

    def __init__(
        self,
        redis: aioredis.Redis,
        scope: str,
        limit: int = 30,
        window_seconds: float = 60.0,
    ) -> None:
        self._redis = redis
        self._scope = scope
        self.limit = limit
        self.window_seconds = window_seconds

    async def hit(self, ip: str) -> RateLimitDecision:
        key = get_ratelimit_key(self._scope, ip)
        window_ms = int(self.window_seconds * 1000)

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.pttl(key)
            count, ttl_ms = await pipe.execute()

        if ttl_ms is None or ttl_ms < 0:
            # First hit of a window (or a key that lost its expiry)
            await self._redis.pexpire(key, window_ms)
            ttl_ms = window_ms

        reset_at = time.time() + ttl_ms / 1000.0
        if count > self.limit:
            return RateLimitDecision(False, 0, reset_at)
        return RateLimitDecision(True, self.limit - count, reset_at)
