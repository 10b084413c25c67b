"""Redis-backed request quotas for payment endpoints."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings

logger = logging.getLogger(__name__)

RATE_LIMIT_KEY_PREFIX = "mt:rate"

# key -> (hits, window reset timestamp)
_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _quota_subject(request: Request) -> str:
    """Authenticated callers are counted per token, anonymous ones per client address."""
    authorization = request.headers.get("authorization") or ""
    if authorization.lower().startswith("bearer "):
        digest = hashlib.sha256(authorization[7:].strip().encode("utf-8")).hexdigest()
        return f"token:{digest[:24]}"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "ip:unknown"


async def _hit_local(key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
    now = time.time()
    async with _local_lock:
        hits, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            hits, reset_at = 0, now + window_seconds
        hits += 1
        _local_counters[key] = (hits, reset_at)
    return hits <= limit, max(int(reset_at - now), 1)


async def _hit_redis(key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            pipe.ttl(key)
            hits, _, ttl = await pipe.execute()
    finally:
        await client.aclose()
    return int(hits) <= limit, max(int(ttl or window_seconds), 1)


def rate_limit(scope: str, limit: int, window_seconds: int) -> Callable[[Request], None]:
    """FastAPI dependency allowing ``limit`` calls to ``scope`` per window."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"{RATE_LIMIT_KEY_PREFIX}:{scope}:{_quota_subject(request)}"
        try:
            allowed, retry_after = await _hit_redis(key, limit, window_seconds)
        except (RedisError, OSError) as exc:
            logger.warning("Rate limit for %s using process-local counters: %s", scope, exc)
            allowed, retry_after = await _hit_local(key, limit, window_seconds)

        if not allowed:
            logger.info("Rate limit hit for %s (%s)", scope, key)
            raise HTTPException(
                status_code=429,
                detail=f"Too many {scope.replace('_', ' ')} requests. Try again later.",
                headers={"Retry-After": str(retry_after)},
            )

    return _dependency
