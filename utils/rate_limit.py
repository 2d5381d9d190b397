"""
Fixed-window request limiter backed by Redis, so counts are shared by every
API process instead of living in one process's memory.
"""
import logging
from functools import lru_cache
from typing import Optional, Tuple

from fastapi import HTTPException, status
from redis import Redis

from utils.settings import get_settings

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(self, redis: Redis, limit: int, window: int):
        self.redis = redis
        self.limit = limit
        self.window = window

    def _key(self, identifier: str) -> str:
        return f"rate_limit:{identifier}:{self.window}"

    def hit(self, identifier: str) -> Tuple[int, int]:
        """
        Returns (remaining_requests, reset_in_seconds)
        """
        key = self._key(identifier)

        pipe = self.redis.pipeline()
        pipe.incr(key, 1)
        pipe.ttl(key)
        count, ttl = pipe.execute()

        if ttl == -1:
            self.redis.expire(key, self.window)
            ttl = self.window

        if count > self.limit:
            logger.warning(f"Rate limit exceeded for {identifier}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(ttl)},
            )

        return self.limit - count, ttl


@lru_cache()
def _build_limiter(redis_url: str, limit: int, window: int) -> RateLimiter:
    return RateLimiter(Redis.from_url(redis_url), limit, window)


def get_rate_limiter() -> Optional[RateLimiter]:
    """
    Dependency returning the configured limiter, or None when REDIS_URL is
    not set (rate limiting disabled).
    """
    settings = get_settings()
    if not settings.redis_url:
        return None
    return _build_limiter(settings.redis_url, settings.rate_limit_requests, settings.rate_limit_window_seconds)
