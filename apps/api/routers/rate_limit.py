"""Per-client request quotas backed by Redis, with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import Request
import redis.asyncio as redis

from config import settings
from services.errors import AuditError

logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


class RateLimitExceeded(AuditError):
    status_code = 429
    code = "RATE_LIMITED"


def _client_identifier(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


async def _count_locally(key: str, window_seconds: int) -> int:
    now = time.time()
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
        current = await client.incr(key)
        if current == 1:
            await client.expire(key, window_seconds)
        return int(current)
    finally:
        await client.aclose()


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable:
    """FastAPI dependency allowing ``limit`` calls per client per window."""

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"actual:rate:{prefix}:{_client_identifier(request)}"
        try:
            count = await _count_in_redis(key, window_seconds)
        except Exception as exc:
            logger.debug("Redis rate limiting unavailable, counting locally: %s", exc)
            count = await _count_locally(key, window_seconds)

        if count > limit:
            raise RateLimitExceeded(detail=f"At most {limit} requests per {window_seconds}s for {prefix}")

    return _dependency
