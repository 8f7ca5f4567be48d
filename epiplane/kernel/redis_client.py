# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Redis Connection Factory — Async pool shared by the page cache, the cache
invalidator and the shared rate limiter.

Pool size and timeouts come from EpiSettings (REDIS_*).
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis.backoff import ExponentialBackoff
from redis.exceptions import BusyLoadingError, ConnectionError, TimeoutError
from redis.retry import Retry

from epiplane.core.config import settings

_pool: Optional[aioredis.Redis] = None

# Transient failures worth a retry; anything else surfaces to the caller
RETRYABLE_ERRORS = (ConnectionError, TimeoutError, BusyLoadingError, OSError)


def pool_options() -> Dict[str, Any]:
    """Keyword arguments for `redis.asyncio.from_url`, read from settings."""
    return {
        "decode_responses": True,
        "max_connections": settings.REDIS_MAX_CONNECTIONS,
        "health_check_interval": settings.REDIS_HEALTH_CHECK_INTERVAL,
        "socket_connect_timeout": settings.REDIS_SOCKET_CONNECT_TIMEOUT,
        "socket_timeout": settings.REDIS_SOCKET_TIMEOUT,
        "retry": Retry(ExponentialBackoff(cap=2, base=0.1), retries=3),
        "retry_on_error": list(RETRYABLE_ERRORS),
    }


async def get_redis_pool() -> aioredis.Redis:
    """
    Return the process-wide async Redis client, creating it on first use.

    Creation does not connect; the first command does.
    """
    global _pool
    if _pool is None:
        _pool = aioredis.from_url(settings.REDIS_URL, **pool_options())
    return _pool


async def close_redis_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None


def inject_redis_for_test(redis_instance: Optional[aioredis.Redis]) -> None:
    """Replace the process-wide client (testing only)."""
    global _pool
    _pool = redis_instance
