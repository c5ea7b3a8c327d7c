import hashlib
import json
import logging
import re
import uuid
from typing import Any, Dict, List, Optional, Union

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from support_agent.core.errors import CacheError

logger = logging.getLogger(__name__)

__all__ = ["CacheService"]

FAQ_PREFIX = "faq:"
MESSAGE_HISTORY_PREFIX = "messages:"

# Failures the cache layer absorbs: connection/protocol errors and bad payloads
_CACHE_FAILURES = (RedisError, OSError, ValueError, TypeError)


class CacheService:
    """
    Best-effort key/value cache over Redis with JSON-encoded values.

    The cache is an accelerator, never a source of truth: every failure is
    logged and degrades to miss behaviour (reads return None, writes and
    deletes do nothing). A service without a client behaves as permanently
    empty.
    """

    def __init__(
        self,
        client: Optional[aioredis.Redis] = None,
        faq_ttl: int = 3600,
        conversation_ttl: int = 300,
    ):
        self.client = client
        self.faq_ttl = faq_ttl
        self.conversation_ttl = conversation_ttl

    @classmethod
    def from_settings(cls, settings) -> "CacheService":
        client = aioredis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            password=settings.REDIS_PASSWORD or None,
            db=settings.REDIS_DB,
            ssl=settings.REDIS_TLS,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
        )
        return cls(client=client, faq_ttl=settings.FAQ_CACHE_TTL, conversation_ttl=settings.CONVERSATION_CACHE_TTL)

    # --- Lifecycle ---

    async def connect(self) -> bool:
        """Verifies the connection. A failed ping is logged; the app starts degraded."""
        if self.client is None:
            logger.warning("CacheService has no Redis client; caching is disabled.")
            return False
        try:
            await self.client.ping()
            logger.info("Redis connection established.")
            return True
        except _CACHE_FAILURES as e:
            logger.error(f"Redis connection failed, continuing without cache: {e}")
            return False

    async def close(self) -> None:
        if self.client is None:
            return
        try:
            await self.client.aclose()
            logger.info("Redis connection closed.")
        except _CACHE_FAILURES as e:
            logger.warning(f"Error closing Redis connection: {e}")
        finally:
            self.client = None

    async def health_check(self) -> bool:
        if self.client is None:
            return False
        try:
            return bool(await self.client.ping())
        except _CACHE_FAILURES as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    # --- Generic operations ---

    def _swallow(self, error: CacheError) -> None:
        logger.error(f"{error.message}: {error.original}")

    async def get(self, key: str) -> Optional[Any]:
        if self.client is None:
            return None
        try:
            cached = await self.client.get(key)
            if cached is None:
                return None
            return json.loads(cached)
        except _CACHE_FAILURES as e:
            self._swallow(CacheError("get", key, e))
            return None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        if self.client is None:
            return
        try:
            await self.client.set(key, json.dumps(value), ex=ttl_seconds)
        except _CACHE_FAILURES as e:
            self._swallow(CacheError("set", key, e))

    async def delete(self, key: str) -> None:
        if self.client is None:
            return
        try:
            await self.client.delete(key)
        except _CACHE_FAILURES as e:
            self._swallow(CacheError("delete", key, e))

    async def exists(self, key: str) -> bool:
        if self.client is None:
            return False
        try:
            return bool(await self.client.exists(key))
        except _CACHE_FAILURES as e:
            self._swallow(CacheError("exists", key, e))
            return False

    async def increment(self, key: str, window_seconds: int) -> Optional[int]:
        """Increments a fixed-window counter; the window starts at the first hit."""
        if self.client is None:
            return None
        try:
            count = await self.client.incr(key)
            if count == 1:
                await self.client.expire(key, window_seconds)
            return int(count)
        except _CACHE_FAILURES as e:
            self._swallow(CacheError("increment", key, e))
            return None

    # --- FAQ results ---

    @staticmethod
    def normalize_message(message: str) -> str:
        return re.sub(r"\s+", " ", message.lower().strip())

    @classmethod
    def faq_cache_key(cls, message: str) -> str:
        digest = hashlib.sha256(cls.normalize_message(message).encode("utf-8")).hexdigest()
        return f"{FAQ_PREFIX}{digest}"

    async def get_cached_faqs(self, message: str, limit: int) -> Optional[List[Dict[str, Any]]]:
        """
        Cached results for the message, or None when nothing usable is cached.
        An entry searched with a smaller limit only serves `limit` if it holds
        every match.
        """
        key = self.faq_cache_key(message)
        entry = await self.get(key)
        if not isinstance(entry, dict) or not isinstance(entry.get("faqs"), list):
            return None

        faqs, searched = entry["faqs"], entry.get("limit", 0)
        if searched < limit and len(faqs) >= searched:
            logger.debug(f"Cached FAQs too short for limit={limit}: key={key} searched={searched}")
            return None
        logger.debug(f"FAQs retrieved from cache: key={key} count={len(faqs)}")
        return faqs[:limit]

    async def cache_faqs(self, message: str, faqs: List[Dict[str, Any]], limit: int) -> None:
        """Stores the results of a search run with `limit`."""
        key = self.faq_cache_key(message)
        await self.set(key, {"limit": limit, "faqs": faqs}, self.faq_ttl)
        logger.debug(f"FAQs cached: key={key} count={len(faqs)} limit={limit}")

    # --- Conversation history ---

    @staticmethod
    def history_cache_key(conversation_id: Union[uuid.UUID, str]) -> str:
        return f"{MESSAGE_HISTORY_PREFIX}{conversation_id}"

    async def get_cached_conversation_context(
        self, conversation_id: Union[uuid.UUID, str]
    ) -> Optional[List[Dict[str, Any]]]:
        messages = await self.get(self.history_cache_key(conversation_id))
        if messages is not None:
            logger.debug(f"Conversation context retrieved from cache: convo={conversation_id} count={len(messages)}")
        return messages

    async def cache_conversation_context(
        self, conversation_id: Union[uuid.UUID, str], messages: List[Dict[str, Any]]
    ) -> None:
        await self.set(self.history_cache_key(conversation_id), messages, self.conversation_ttl)
        logger.debug(f"Conversation context cached: convo={conversation_id} count={len(messages)}")

    async def invalidate_conversation_cache(self, conversation_id: Union[uuid.UUID, str]) -> None:
        await self.delete(self.history_cache_key(conversation_id))
        logger.debug(f"Conversation cache invalidated: convo={conversation_id}")
