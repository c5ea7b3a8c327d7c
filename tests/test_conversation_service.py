import asyncio
import json
import uuid

import httpx
import pytest
from conftest import completion_body
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from support_agent.core.errors import LLMServiceError, NotFoundError, StorageError
from support_agent.models.conversation import Conversation
from support_agent.models.message import MESSAGE_ROLES, Message
from support_agent.schemas.chat import MessageRead
from support_agent.services.cache import CacheService
from support_agent.services.conversation import SessionLocks


def messages_in(db_session, conversation_id):
    return db_session.scalars(
        select(Message).where(Message.conversation_id == conversation_id).order_by(Message.created_at)
    ).all()


class TestHandleTurn:
    async def test_new_session_creates_conversation_and_two_messages(
        self, conversation_service, db_session, upstream
    ):
        upstream.script.append(httpx.Response(200, json=completion_body("Use the reset link.", total_tokens=42)))

        result = await conversation_service.handle_turn("How do I reset my password?")

        assert result.conversation_created is True
        uuid.UUID(result.session_id)
        assert result.assistant_message.role == "assistant"
        assert result.assistant_message.content == "Use the reset link."
        assert result.assistant_message.tokens_used == 42

        conversation = conversation_service.get_conversation(result.session_id)
        stored = messages_in(db_session, conversation.id)
        assert [(m.role, m.content) for m in stored] == [
            ("user", "How do I reset my password?"),
            ("assistant", "Use the reset link."),
        ]
        assert stored[0].created_at < stored[1].created_at

    async def test_prompt_for_first_turn_is_system_then_user(self, conversation_service, upstream):
        await conversation_service.handle_turn("How do I reset my password?")

        prompt = upstream.payloads()[0]["messages"]
        assert [m["role"] for m in prompt] == ["system", "user"]
        assert "Q1: [account] How do I reset my password?" in prompt[0]["content"]
        assert "Q2: [billing] How can I update my billing details?" in prompt[0]["content"]
        assert prompt[-1]["content"] == "How do I reset my password?"

    async def test_existing_session_with_three_prior_messages(self, conversation_service, upstream, fake_redis):
        session_id = str(uuid.uuid4())
        conversation, _ = conversation_service.get_or_create_conversation(session_id)
        conversation_service.save_message(conversation.id, "user", "Hi")
        conversation_service.save_message(conversation.id, "assistant", "Hello! How can I help?")
        conversation_service.save_message(conversation.id, "user", "I forgot my password")

        result = await conversation_service.handle_turn("What now?", session_id=session_id)

        assert result.conversation_created is False
        assert result.session_id == session_id
        key = CacheService.history_cache_key(conversation.id)
        cached = [json.loads(value) for k, value, _ in fake_redis.set_calls if k == key]
        assert [m["content"] for m in cached[0]] == ["Hi", "Hello! How can I help?", "I forgot my password"]
        prompt = upstream.payloads()[0]["messages"]
        assert len(prompt) == 5
        assert [m["content"] for m in prompt[1:4]] == ["Hi", "Hello! How can I help?", "I forgot my password"]
        assert prompt[4] == {"role": "user", "content": "What now?"}

    async def test_assistant_metadata_is_recorded(self, conversation_service, db_session):
        result = await conversation_service.handle_turn("Where can I see my billing details?")

        stored = db_session.get(Message, result.assistant_message.id)
        assert stored.meta["model"] == "test/model"
        assert stored.meta["faqs_used"] == 2
        assert stored.meta["latency_ms"] >= 0

    async def test_conversation_metadata_is_stored_on_creation(self, conversation_service):
        result = await conversation_service.handle_turn("Hello there", metadata={"channel": "widget"})

        assert conversation_service.get_conversation(result.session_id).meta == {"channel": "widget"}

    async def test_llm_failure_keeps_user_message_only(self, conversation_service, db_session, upstream):
        upstream.script.append(httpx.Response(401, json={"error": {"message": "No auth"}}))
        session_id = str(uuid.uuid4())

        with pytest.raises(LLMServiceError) as exc_info:
            await conversation_service.handle_turn("Hello?", session_id=session_id)

        assert exc_info.value.retriable is False
        conversation = conversation_service.get_conversation(session_id)
        assert [(m.role, m.content) for m in messages_in(db_session, conversation.id)] == [("user", "Hello?")]

    async def test_storage_failure_aborts_before_llm_call(self, conversation_service, db_session, upstream, monkeypatch):
        def broken_scalars(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is down"))

        monkeypatch.setattr(db_session, "scalars", broken_scalars)

        with pytest.raises(StorageError):
            await conversation_service.handle_turn("Hello?")

        assert upstream.requests == []

    async def test_faq_results_are_cached_between_turns(self, conversation_service, faq_service):
        result = await conversation_service.handle_turn("Reset my password")
        await conversation_service.handle_turn("reset  my password", session_id=result.session_id)

        assert faq_service.search_calls == 1

    async def test_history_is_cached_then_invalidated(self, conversation_service, fake_redis):
        first = await conversation_service.handle_turn("Hello there")
        conversation = conversation_service.get_conversation(first.session_id)
        key = CacheService.history_cache_key(conversation.id)

        await conversation_service.handle_turn("Second question", session_id=first.session_id)

        cached_history = [value for k, value, _ in fake_redis.set_calls if k == key]
        assert len(cached_history) == 1
        assert key not in fake_redis.store

    async def test_cached_history_is_used_for_prompt(self, conversation_service, cache, upstream):
        session_id = str(uuid.uuid4())
        conversation, _ = conversation_service.get_or_create_conversation(session_id)
        cached = MessageRead(
            id=uuid.uuid4(), role="assistant", content="cached reply", created_at="2024-01-01T00:00:00Z"
        )
        await cache.cache_conversation_context(conversation.id, [cached.model_dump(mode="json")])

        await conversation_service.handle_turn("Next question", session_id=session_id)

        prompt = upstream.payloads()[0]["messages"]
        assert [m["content"] for m in prompt][1:-1] == ["cached reply"]

    async def test_same_session_turns_are_serialized(self, conversation_service, upstream):
        session_id = str(uuid.uuid4())

        results = await asyncio.gather(
            conversation_service.handle_turn("First", session_id=session_id),
            conversation_service.handle_turn("Second", session_id=session_id),
        )

        assert sorted(r.conversation_created for r in results) == [False, True]
        assert sorted(len(p["messages"]) for p in upstream.payloads()) == [2, 4]
        conversation = conversation_service.get_conversation(session_id)
        assert conversation_service.count_messages(conversation.id) == 4


class TestConversationStorage:
    def test_concurrent_creation_returns_existing_conversation(self, conversation_service, db_session, monkeypatch):
        session_id = str(uuid.uuid4())
        db_session.add(Conversation(session_id=session_id, meta={}))
        db_session.commit()

        real_find = conversation_service.find_by_session_id
        calls = []

        def find_missing_first(sid):
            calls.append(sid)
            return None if len(calls) == 1 else real_find(sid)

        monkeypatch.setattr(conversation_service, "find_by_session_id", find_missing_first)

        conversation, created = conversation_service.get_or_create_conversation(session_id)

        assert created is False
        assert conversation.session_id == session_id
        assert len(db_session.scalars(select(Conversation)).all()) == 1

    def test_recent_messages_are_chronological_and_limited(self, conversation_service):
        conversation, _ = conversation_service.get_or_create_conversation(str(uuid.uuid4()))
        for i in range(6):
            conversation_service.save_message(conversation.id, "user" if i % 2 == 0 else "assistant", f"m{i}")

        recent = conversation_service.get_recent_messages(conversation.id, limit=4)

        assert [m.content for m in recent] == ["m2", "m3", "m4", "m5"]
        assert conversation_service.get_recent_messages(conversation.id, limit=0) == []

    def test_save_message_touches_conversation(self, conversation_service):
        conversation, _ = conversation_service.get_or_create_conversation(str(uuid.uuid4()))
        before = conversation.updated_at

        conversation_service.save_message(conversation.id, "user", "hello")

        assert conversation.updated_at > before

    @pytest.mark.parametrize("role", MESSAGE_ROLES)
    def test_every_known_role_is_accepted(self, conversation_service, role):
        conversation, _ = conversation_service.get_or_create_conversation(str(uuid.uuid4()))

        assert conversation_service.save_message(conversation.id, role, "hello").role == role

    def test_unknown_role_is_rejected_by_the_store(self, conversation_service):
        conversation, _ = conversation_service.get_or_create_conversation(str(uuid.uuid4()))

        with pytest.raises(StorageError):
            conversation_service.save_message(conversation.id, "moderator", "hello")

        assert conversation_service.count_messages(conversation.id) == 0

    def test_save_message_to_missing_conversation(self, conversation_service):
        with pytest.raises(NotFoundError):
            conversation_service.save_message(uuid.uuid4(), "user", "hello")

    async def test_total_tokens_counts_assistant_messages(self, conversation_service, upstream):
        upstream.script.extend([
            httpx.Response(200, json=completion_body("one", total_tokens=30)),
            httpx.Response(200, json=completion_body("two", total_tokens=12)),
        ])
        first = await conversation_service.handle_turn("Hello")
        await conversation_service.handle_turn("Again", session_id=first.session_id)

        conversation = conversation_service.get_conversation(first.session_id)
        assert conversation_service.get_total_tokens_used(conversation.id) == 42

    def test_unknown_session_is_not_found(self, conversation_service):
        with pytest.raises(NotFoundError):
            conversation_service.get_conversation(str(uuid.uuid4()))


class TestConversationHistory:
    @pytest.fixture
    def five_messages(self, conversation_service):
        session_id = str(uuid.uuid4())
        conversation, _ = conversation_service.get_or_create_conversation(session_id)
        saved = [
            conversation_service.save_message(conversation.id, "user" if i % 2 == 0 else "assistant", f"m{i}")
            for i in range(1, 6)
        ]
        return session_id, saved

    def test_pages_walk_backwards_in_chronological_order(self, conversation_service, five_messages):
        session_id, saved = five_messages

        page = conversation_service.get_conversation_history(session_id, limit=2)
        assert [m.content for m in page.messages] == ["m4", "m5"]
        assert page.pagination.has_more is True
        assert page.pagination.next_cursor == saved[3].id
        assert page.conversation.message_count == 5

        page = conversation_service.get_conversation_history(session_id, limit=2, before=page.pagination.next_cursor)
        assert [m.content for m in page.messages] == ["m2", "m3"]
        assert page.pagination.has_more is True

        page = conversation_service.get_conversation_history(session_id, limit=2, before=page.pagination.next_cursor)
        assert [m.content for m in page.messages] == ["m1"]
        assert page.pagination.has_more is False
        assert page.pagination.next_cursor is None

    def test_single_page(self, conversation_service, five_messages):
        session_id, _ = five_messages

        page = conversation_service.get_conversation_history(session_id)

        assert [m.content for m in page.messages] == ["m1", "m2", "m3", "m4", "m5"]
        assert page.pagination.has_more is False

    def test_unknown_cursor_gives_empty_page(self, conversation_service, five_messages):
        session_id, _ = five_messages

        page = conversation_service.get_conversation_history(session_id, before=uuid.uuid4())

        assert page.messages == []
        assert page.pagination.has_more is False


class TestDeleteConversation:
    async def test_deletes_messages_and_cached_history(self, conversation_service, db_session, cache, fake_redis):
        result = await conversation_service.handle_turn("Hello")
        conversation = conversation_service.get_conversation(result.session_id)
        conversation_id = conversation.id
        await cache.cache_conversation_context(conversation_id, [])

        await conversation_service.delete_conversation(result.session_id)

        with pytest.raises(NotFoundError):
            conversation_service.get_conversation(result.session_id)
        assert messages_in(db_session, conversation_id) == []
        assert CacheService.history_cache_key(conversation_id) not in fake_redis.store

    async def test_unknown_session(self, conversation_service):
        with pytest.raises(NotFoundError):
            await conversation_service.delete_conversation(str(uuid.uuid4()))


class TestSessionLocks:
    async def test_same_session_shares_a_lock_while_held(self):
        locks = SessionLocks()
        lock = locks.lock_for("a")

        async with lock:
            assert locks.lock_for("a") is lock
            assert locks.lock_for("b") is not lock
