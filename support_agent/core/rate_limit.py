import logging

from fastapi import Depends, Request

from support_agent.core.config import settings
from support_agent.core.dependencies import get_cache_service
from support_agent.core.errors import RateLimitError
from support_agent.services.cache import CacheService

logger = logging.getLogger(__name__)

__all__ = ["RateLimiter", "chat_rate_limiter", "chat_rate_limiter_hourly"]


class RateLimiter:
    """
    Fixed-window request counter per client IP, stored in Redis.

    Used as a FastAPI dependency. Skipped in the test environment and fails
    open when the cache is unavailable.
    """

    def __init__(self, prefix: str, max_requests: int, window_seconds: int, window_label: str):
        self.prefix = prefix
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.window_label = window_label

    def key_for(self, request: Request) -> str:
        client = request.client.host if request.client else "unknown"
        return f"{self.prefix}{client}"

    async def __call__(self, request: Request, cache: CacheService = Depends(get_cache_service)) -> None:
        if settings.ENVIRONMENT == "test":
            return

        count = await cache.increment(self.key_for(request), self.window_seconds)
        if count is None:
            return
        if count > self.max_requests:
            logger.warning(f"Rate limit exceeded for {self.key_for(request)}: {count} > {self.max_requests}")
            raise RateLimitError(
                retry_after=self.window_seconds,
                limit=self.max_requests,
                window=self.window_label,
            )


chat_rate_limiter = RateLimiter(
    prefix="rl:chat:",
    max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
    window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    window_label=f"{settings.RATE_LIMIT_WINDOW_SECONDS} seconds",
)

chat_rate_limiter_hourly = RateLimiter(
    prefix="rl:hourly:",
    max_requests=settings.RATE_LIMIT_HOURLY_MAX,
    window_seconds=3600,
    window_label="1 hour",
)
