"""
Shared pytest fixtures for the support agent tests.

Environment variables are set before any `support_agent` import so the
module-level settings object can be built without a real deployment.
"""

import os
import tempfile

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_HOST", "localhost")
os.environ.setdefault("DATABASE_PASSWORD", "test-password")
os.environ.setdefault("OPENROUTER_API_KEY", "test-openrouter-key")
os.environ.setdefault("OPENROUTER_MODEL", "test/model")
os.environ.setdefault("LOG_FILE", os.path.join(tempfile.gettempdir(), "support-agent-tests.log"))

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from support_agent.database import Database
from support_agent.models.faq import FAQ
from support_agent.schemas.faq import FAQRead
from support_agent.services.cache import CacheService
from support_agent.services.conversation import ConversationService
from support_agent.services.faq import FAQService
from support_agent.services.llm_service import LlmService, is_retriable_error
from support_agent.services.retry import RetryPolicy

# ===== REDIS FAKES =====


class FakeRedis:
    """In-memory stand-in for `redis.asyncio.Redis` covering the calls CacheService makes."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.set_calls: List[tuple] = []

    async def ping(self):
        return True

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        self.ttls[key] = ex
        self.set_calls.append((key, value, ex))
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def exists(self, *keys):
        return sum(1 for key in keys if key in self.store)

    async def incr(self, key):
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = str(value)
        return value

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    async def aclose(self):
        return None

    def cached_json(self, key) -> Any:
        return json.loads(self.store[key])


class BrokenRedis:
    """Every command fails as if the Redis server were unreachable."""

    async def _fail(self, *args, **kwargs):
        raise RedisConnectionError("Connection refused")

    ping = get = set = delete = exists = incr = expire = _fail

    async def aclose(self):
        return None


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis) -> CacheService:
    return CacheService(client=fake_redis, faq_ttl=3600, conversation_ttl=300)


@pytest.fixture
def broken_cache() -> CacheService:
    return CacheService(client=BrokenRedis())


# ===== DATABASE FIXTURES =====


@pytest.fixture
def database():
    """In-memory SQLite database with every table created."""
    db = Database("sqlite://").open()
    db.create_all()
    yield db
    db.close()


@pytest.fixture
def db_session(database):
    session = database.session()
    yield session
    session.close()


# ===== LLM FIXTURES =====


def completion_body(content: str, total_tokens: int = 42) -> Dict[str, Any]:
    return {
        "id": "gen-123",
        "model": "test/model",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
        ],
        "usage": {"prompt_tokens": total_tokens - 10, "completion_tokens": 10, "total_tokens": total_tokens},
    }


class ScriptedUpstream:
    """
    Plays back a list of responses (or exceptions) for successive calls to
    the chat-completion endpoint and records every request and backoff.
    """

    def __init__(self, script: List[Union[httpx.Response, Exception]]):
        self.script = list(script)
        self.requests: List[httpx.Request] = []
        self.sleeps: List[float] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.script:
            return httpx.Response(200, json=completion_body("default reply"))
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)

    def payloads(self) -> List[Dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]


def make_llm_service(upstream: ScriptedUpstream, max_attempts: int = 3) -> LlmService:
    policy = RetryPolicy(
        max_attempts=max_attempts,
        base_delay=1.0,
        max_delay=10.0,
        jitter=0.5,
        is_retriable=is_retriable_error,
        rng=lambda: 0.0,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    return LlmService(
        api_key="test-openrouter-key",
        model="test/model",
        api_url="https://openrouter.test/api/v1",
        retry_policy=policy,
        http_client=client,
        sleep=upstream.sleep,
    )


@pytest.fixture
def upstream() -> ScriptedUpstream:
    return ScriptedUpstream([])


@pytest.fixture
def llm_service(upstream) -> LlmService:
    return make_llm_service(upstream)


# ===== FAQ FIXTURES =====


def make_faq(question: str, answer: str, category: Optional[str] = None, priority: int = 0, **kwargs) -> FAQRead:
    return FAQRead(
        id=kwargs.pop("id", uuid.uuid4()),
        question=question,
        answer=answer,
        category=category,
        keywords=kwargs.pop("keywords", []),
        priority=priority,
        is_active=kwargs.pop("is_active", True),
        created_at=kwargs.pop("created_at", datetime.now(timezone.utc)),
    )


class StaticFAQService(FAQService):
    """FAQService whose hybrid search returns a fixed list (SQLite has no full-text search)."""

    def __init__(self, db, cache, faqs: List[FAQRead]):
        super().__init__(db=db, cache=cache, max_results=5)
        self.faqs = faqs
        self.search_calls = 0

    def search_hybrid(self, user_message: str, limit: Optional[int] = None) -> List[FAQRead]:
        self.search_calls += 1
        return list(self.faqs[: limit or self.max_results])


@pytest.fixture
def sample_faqs() -> List[FAQRead]:
    return [
        make_faq("How do I reset my password?", "Use the 'Forgot password' link on the login page.", "account", 10),
        make_faq("How can I update my billing details?", "Go to Settings > Billing and edit your card.", "billing", 5),
    ]


@pytest.fixture
def faq_service(db_session, cache, sample_faqs) -> StaticFAQService:
    return StaticFAQService(db_session, cache, sample_faqs)


@pytest.fixture
def conversation_service(db_session, faq_service, llm_service, cache) -> ConversationService:
    return ConversationService(
        db=db_session,
        faq_service=faq_service,
        llm_service=llm_service,
        cache=cache,
        history_limit=10,
    )


@pytest.fixture
def seeded_faqs(db_session) -> List[FAQ]:
    rows = [
        FAQ(question="How do I reset my password?", answer="Use the reset link.", category="account",
            keywords=["password", "reset"], priority=10),
        FAQ(question="Where is my invoice?", answer="Invoices are under Billing.", category="billing",
            keywords=["invoice", "billing"], priority=5),
        FAQ(question="Old refund policy", answer="Refunds within 7 days.", category="billing",
            keywords=["refund"], priority=1, is_active=False),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return rows
