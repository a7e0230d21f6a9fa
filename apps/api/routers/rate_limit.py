"""Per-caller fixed-window quotas for money-moving endpoints."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Callable, Dict, Tuple

from fastapi import Request
import redis.asyncio as redis

from config import settings
from services.errors import RateLimited

logger = logging.getLogger(__name__)


class _LocalWindows:
    """In-process counters used while Redis is unreachable."""

    def __init__(self):
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    def clear(self) -> None:
        self._windows.clear()

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, int]:
        now = time.monotonic()
        async with self._lock:
            count, resets_at = self._windows.get(key, (0, now + window_seconds))
            if now >= resets_at:
                count, resets_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, resets_at)
            if len(self._windows) > 10000:
                self._windows = {k: v for k, v in self._windows.items() if v[1] > now}
        return count, max(int(math.ceil(resets_at - now)), 1)


_fallback = _LocalWindows()


async def _redis_hit(key: str, window_seconds: int) -> Tuple[int, int]:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True, socket_connect_timeout=1)
    try:
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            pipe.ttl(key)
            count, _, ttl = await pipe.execute()
    finally:
        await client.aclose()
    return int(count), int(ttl) if ttl and ttl > 0 else window_seconds


def _caller(request: Request) -> str:
    """Peer address; X-Forwarded-For counts only when the peer is a trusted proxy."""
    host = request.client.host if request.client and request.client.host else None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and host in settings.TRUSTED_PROXY_IPS:
        return forwarded.split(",")[0].strip()
    return host or "unknown"


def rate_limit(scope: str, limit: int, window_seconds: int) -> Callable:
    """Dependency factory: at most `limit` calls per caller per window for `scope`."""

    async def _check(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"ledger:rate:{scope}:{_caller(request)}"
        try:
            count, retry_after = await _redis_hit(key, window_seconds)
        except redis.RedisError as exc:
            logger.debug("Rate limit store unavailable, counting locally: %s", exc)
            count, retry_after = await _fallback.hit(key, window_seconds)

        if count > limit:
            logger.info("Rate limit hit for %s (%s calls in window)", key, count)
            raise RateLimited(
                "rate_limited",
                f"Too many {scope} requests. Try again later.",
                retry_after=retry_after,
            )

    return _check
