"""Policy-driven submission rate limiting.

Limits are looked up from the policies table so administrators can tune
them: ``{action}_rate_limit_{method}`` holds the maximum number of
submissions and ``{action}_rate_period`` the window length in hours.
Counters are fixed-window Redis keys that expire with the window.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.services import cache
from voucher_portal.services.policy_service import policy_service

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    """Raised when an identifier has used up its submissions for the window."""

    def __init__(self, message: str, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RateLimit:
    """``RateLimit.check(db, "proof_submission", user.id, "web")``."""

    @staticmethod
    def cache_key(action: str, method: str, identifier) -> str:
        return f"rate_limit:{action}:{method}:{identifier}"

    @classmethod
    async def limits_for(cls, db: AsyncSession, action: str, method: str) -> tuple[int, int]:
        limit = await policy_service.get(db, f"{action}_rate_limit_{method}")
        if limit is None:
            raise ValueError(f"Unknown rate limit action: {action} ({method})")
        period_hours = await policy_service.get_int(db, f"{action}_rate_period", 1)
        return int(limit), max(1, int(period_hours))

    @classmethod
    async def check(cls, db: AsyncSession, action: str, identifier, method: str = "web") -> int:
        """Count one submission; raise ``RateLimitExceeded`` past the limit.

        Returns the number of submissions made in the current window.
        """
        limit, period_hours = await cls.limits_for(db, action, method)
        window_seconds = period_hours * 3600
        key = cls.cache_key(action, method, identifier)

        client = await cache.get_redis()
        pipe = client.pipeline()
        pipe.set(key, 0, ex=window_seconds, nx=True)
        pipe.incrby(key, 1)
        _, count = await pipe.execute()

        if int(count) > limit:
            ttl = await client.ttl(key)
            logger.info("[rate_limit] %s/%s exceeded for %s (%s/%s)", action, method, identifier, count, limit)
            raise RateLimitExceeded(
                f"Rate limit exceeded for {action} ({method}): maximum {limit} submissions per {period_hours} hours",
                retry_after=int(ttl) if isinstance(ttl, int) and ttl > 0 else window_seconds,
            )
        return int(count)

    @classmethod
    async def reset(cls, action: str, identifier, method: str = "web") -> None:
        await cache.cache_delete(cls.cache_key(action, method, identifier))


__all__ = ["RateLimit", "RateLimitExceeded"]
