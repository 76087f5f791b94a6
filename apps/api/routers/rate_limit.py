"""Redis-backed rate limiting for billing endpoints, with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings

logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _caller_identifier(request: Request) -> str:
    """Bucket by bearer credential when present, else by client address."""
    authorization = request.headers.get("authorization") or ""
    if authorization.lower().startswith("bearer ") and len(authorization) > 7:
        return f"token:{authorization[-16:]}"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "ip:unknown"


async def _count_locally(key: str, window_seconds: int) -> int:
    now = time.monotonic()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count


async def _count_in_redis(key: str, window_seconds: int) -> int:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        count = await client.incr(key)
        if count == 1:
            await client.expire(key, window_seconds)
    finally:
        await client.aclose()
    return int(count)


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], None]:
    """Return a FastAPI dependency allowing ``limit`` calls per caller per window."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"instagen:rate:{prefix}:{_caller_identifier(request)}"
        try:
            count = await _count_in_redis(key, window_seconds)
        except (RedisError, OSError) as exc:
            logger.warning("Rate limiter falling back to local counters for %s: %s", prefix, exc)
            count = await _count_locally(key, window_seconds)

        if count > limit:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
            )

    return _dependency
