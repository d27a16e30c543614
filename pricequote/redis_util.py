from __future__ import annotations

import redis.asyncio as redis

from .config import get_settings


def get_redis() -> redis.Redis | None:
    """Async Redis client for the price cache, or None when REDIS_URL is unset."""
    url = get_settings().redis_url
    if not url:
        return None
    return redis.from_url(url, decode_responses=True)
