"""Redis helpers shared by the rate limiter, webhook de-duplication and
voucher identity verification.

Keys are always namespaced by feature (``rate_limit:``, ``webhook:``,
``voucher_verification:``) so they can be inspected or purged independently.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from redis import asyncio as aioredis

from voucher_portal.core.config import settings

logger = logging.getLogger(__name__)

_redis_client = None
_lock = asyncio.Lock()


async def get_redis():
    """Return a singleton async Redis client."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    async with _lock:
        if _redis_client is None:
            _redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def set_redis(client) -> None:
    """Replace the shared client (tests inject an in-memory fake)."""
    global _redis_client
    _redis_client = client


async def claim_once(key: str, ttl_seconds: int) -> bool:
    """Return True the first time ``key`` is claimed within ``ttl_seconds``.

    Redis failures are non-fatal: the caller proceeds as if the key were new.
    """
    try:
        client = await get_redis()
        return bool(await client.set(key, "1", nx=True, ex=ttl_seconds))
    except Exception as e:
        logger.warning("[cache] claim_once failed for %s: %s", key, e)
        return True


async def cache_delete(key: str) -> None:
    try:
        client = await get_redis()
        await client.delete(key)
    except Exception:
        pass


async def get_int(key: str) -> Optional[int]:
    client = await get_redis()
    raw = await client.get(key)
    return int(raw) if raw is not None else None
