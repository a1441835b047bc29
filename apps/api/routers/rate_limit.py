"""Redis-backed per-client rate limiting with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def client_address(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


def rate_limit(
    prefix: str,
    limit: Optional[int] = None,
    window_seconds: Optional[int] = None,
) -> Callable[[Request], None]:
    """Return a FastAPI dependency that enforces per-client request quotas."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        max_requests = int(limit or settings.RATE_LIMIT_REQUESTS)
        window = int(window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS)
        key = f"duovr:rate:{prefix}:{client_address(request)}"

        try:
            redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            try:
                current = await redis_client.incr(key)
                if current == 1:
                    await redis_client.expire(key, window)
            finally:
                await redis_client.aclose()
            allowed = current <= max_requests
        except Exception as exc:
            logger.debug("Redis rate limit unavailable, using local counter: %s", exc)
            allowed = await _consume_local_quota(key, max_requests, window)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail="Too many requests from this client, please try again later.",
            )

    return _dependency
