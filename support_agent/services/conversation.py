import asyncio
import logging
import time
import uuid
import weakref
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from support_agent.core.errors import NotFoundError, StorageError
from support_agent.models.conversation import Conversation
from support_agent.models.message import Message
from support_agent.models._types import utcnow
from support_agent.schemas.chat import (
    ChatMessageOut,
    ConversationHistoryResponse,
    ConversationSummary,
    MessageRead,
    Pagination,
)
from support_agent.services.cache import CacheService
from support_agent.services.faq import FAQService
from support_agent.services.llm_service import LlmService
from support_agent.services.prompt_builder import PromptBuilder

DEFAULT_HISTORY_LIMIT = 10
DEFAULT_PAGE_SIZE = 50

logger = logging.getLogger(__name__)

__all__ = ["ConversationService", "SessionLocks", "TurnResult"]


class SessionLocks:
    """
    Per-session asyncio locks so turns for the same session run one at a
    time within this process. Locks disappear once no turn holds them.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock


@dataclass
class TurnResult:
    session_id: str
    assistant_message: MessageRead
    conversation_created: bool
    user_message: Optional[MessageRead] = None


class ConversationService:
    """
    Runs a chat turn end to end (conversation lookup, persistence, history,
    FAQ retrieval, prompt building, LLM call, cache invalidation) and
    serves conversation history.
    """

    def __init__(
        self,
        db: Session,
        faq_service: FAQService,
        llm_service: LlmService,
        cache: Optional[CacheService] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        session_locks: Optional[SessionLocks] = None,
    ):
        """
        Initializes the ConversationService.

        Args:
            db: SQLAlchemy database session for this request.
            faq_service: Retrieval over the FAQ knowledge base.
            llm_service: Client for the chat-completion API.
            cache: Cache for conversation history; a disconnected cache is used when omitted.
            prompt_builder: Prompt assembly; defaults to the standard budgets.
            history_limit: Number of most recent messages loaded as history.
            session_locks: Shared per-session lock registry.
        """
        self.db = db
        self.faq_service = faq_service
        self.llm_service = llm_service
        self.cache = cache or CacheService()
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.history_limit = history_limit
        self.session_locks = session_locks or SessionLocks()

    # --- Core Methods ---

    async def handle_turn(
        self,
        message: str,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TurnResult:
        """
        Handles one user message and returns the assistant's reply.

        A failure before the LLM call leaves no assistant message behind. If
        the LLM call fails, the user message stays persisted and the
        `LLMServiceError` propagates unchanged.
        """
        start_time = time.perf_counter()
        session_id = session_id or str(uuid.uuid4())

        async with self.session_locks.lock_for(session_id):
            try:
                # 1. Resolve or create the conversation
                conversation, created = self.get_or_create_conversation(session_id, metadata or {})

                # 2. Save User Message
                user_message = self.save_message(conversation.id, "user", message)

                # 3. Conversation history (cache first)
                history = await self.load_history(conversation.id, exclude_message_id=user_message.id)

                # 4. Relevant FAQs (best effort, cache first)
                faqs = await self.faq_service.retrieve_relevant_faqs(message)

                # 5. Assemble the prompt
                prompt = self.prompt_builder.build(message, faqs, history)

                # 6. Call the LLM; failures propagate to the caller
                completion = await self.llm_service.generate_response(prompt)

                # 7. Save the assistant's response
                latency_ms = int((time.perf_counter() - start_time) * 1000)
                assistant_message = self.save_message(
                    conversation.id,
                    "assistant",
                    completion.content,
                    tokens_used=completion.tokens_used,
                    metadata={"model": completion.model, "faqs_used": len(faqs), "latency_ms": latency_ms},
                )

                # 8. The history just changed
                await self.cache.invalidate_conversation_cache(conversation.id)
            except Exception as e:
                logger.error(
                    f"Error handling message for session {session_id} (length={len(message)}): {e}"
                )
                raise

        logger.info(
            f"Message handled successfully: session={session_id} convo={conversation.id} "
            f"user_length={len(message)} reply_length={len(completion.content)} tokens={completion.tokens_used} "
            f"faqs={len(faqs)} created={created} latency_ms={latency_ms}"
        )
        return TurnResult(
            session_id=conversation.session_id,
            assistant_message=assistant_message,
            conversation_created=created,
            user_message=user_message,
        )

    async def load_history(
        self, conversation_id: uuid.UUID, exclude_message_id: Optional[uuid.UUID] = None
    ) -> List[MessageRead]:
        """Recent messages, chronological: from the cache, else from storage (then cached)."""
        cached = await self.cache.get_cached_conversation_context(conversation_id)
        if cached is not None:
            try:
                history = [MessageRead.model_validate(item) for item in cached]
                return [msg for msg in history if msg.id != exclude_message_id]
            except ValueError as e:
                logger.warning(f"Discarding malformed cached history for convo {conversation_id}: {e}")

        history = self.get_recent_messages(conversation_id, self.history_limit, exclude_message_id)
        if history:
            await self.cache.cache_conversation_context(
                conversation_id, [msg.model_dump(mode="json") for msg in history]
            )
        return history

    # --- Database Interaction Helpers ---

    def find_by_session_id(self, session_id: str) -> Optional[Conversation]:
        try:
            return self.db.scalars(
                select(Conversation).where(Conversation.session_id == session_id)
            ).first()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error finding conversation for session {session_id}: {e}", exc_info=True)
            raise StorageError("Failed to find conversation", e) from e

    def get_or_create_conversation(
        self, session_id: str, metadata: Optional[Dict[str, Any]] = None
    ) -> Tuple[Conversation, bool]:
        """Returns the session's conversation and whether it was created by this call."""
        existing = self.find_by_session_id(session_id)
        if existing:
            return existing, False

        try:
            conversation = Conversation(session_id=session_id, meta=metadata or {})
            self.db.add(conversation)
            self.db.commit()
            self.db.refresh(conversation)
            logger.info(f"Conversation created: session={session_id} id={conversation.id}")
            return conversation, True
        except IntegrityError as e:
            # Another request created the same session first
            self.db.rollback()
            logger.warning(f"Conversation for session {session_id} created concurrently, re-reading: {e}")
            winner = self.find_by_session_id(session_id)
            if winner is None:
                raise StorageError("Failed to create conversation", e) from e
            return winner, False
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error creating conversation for session {session_id}: {e}", exc_info=True)
            raise StorageError("Failed to create conversation", e) from e

    def save_message(
        self,
        conversation_id: uuid.UUID,
        role: str,
        content: str,
        tokens_used: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MessageRead:
        """Appends a message and touches the conversation. Raises StorageError on DB error."""
        try:
            conversation = self.db.get(Conversation, conversation_id)
            if not conversation:
                raise NotFoundError("Conversation", str(conversation_id))

            db_message = Message(
                conversation_id=conversation_id,
                role=role,
                content=content,
                tokens_used=tokens_used,
                meta=metadata or {},
            )
            self.db.add(db_message)
            conversation.updated_at = utcnow()

            self.db.commit()
            self.db.refresh(db_message)
            logger.debug(f"Saved {role} message {db_message.id} for conversation {conversation_id}")
            return MessageRead.model_validate(db_message)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error saving message for convo {conversation_id}: {e}", exc_info=True)
            raise StorageError("Failed to create message", e) from e

    def get_recent_messages(
        self,
        conversation_id: uuid.UUID,
        limit: int = DEFAULT_HISTORY_LIMIT,
        exclude_message_id: Optional[uuid.UUID] = None,
    ) -> List[MessageRead]:
        """Retrieves the last `limit` messages in chronological order."""
        if limit <= 0:
            return []
        try:
            query = select(Message).where(Message.conversation_id == conversation_id)
            if exclude_message_id is not None:
                query = query.where(Message.id != exclude_message_id)
            recent_messages = self.db.scalars(
                query.order_by(Message.created_at.desc()).limit(limit)
            ).all()
            return [MessageRead.model_validate(msg) for msg in reversed(recent_messages)]
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error getting recent messages for convo {conversation_id}: {e}", exc_info=True)
            raise StorageError("Failed to get recent messages", e) from e

    def count_messages(self, conversation_id: uuid.UUID) -> int:
        try:
            return self.db.scalar(
                select(func.count(Message.id)).where(Message.conversation_id == conversation_id)
            ) or 0
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error counting messages for convo {conversation_id}: {e}", exc_info=True)
            raise StorageError("Failed to count messages", e) from e

    def get_total_tokens_used(self, conversation_id: uuid.UUID) -> int:
        """Sum of tokens used by the assistant messages of a conversation."""
        try:
            return self.db.scalar(
                select(func.coalesce(func.sum(Message.tokens_used), 0))
                .where(Message.conversation_id == conversation_id, Message.role == "assistant")
            ) or 0
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error calculating tokens for convo {conversation_id}: {e}", exc_info=True)
            raise StorageError("Failed to calculate tokens", e) from e

    # --- Conversation access ---

    def get_conversation(self, session_id: str) -> Conversation:
        conversation = self.find_by_session_id(session_id)
        if not conversation:
            raise NotFoundError("Conversation", session_id)
        return conversation

    def get_conversation_history(
        self,
        session_id: str,
        limit: int = DEFAULT_PAGE_SIZE,
        before: Optional[uuid.UUID] = None,
    ) -> ConversationHistoryResponse:
        """
        One page of a conversation's messages, newest page first, each page in
        chronological order. `before` is the cursor returned as `next_cursor`.
        """
        conversation = self.get_conversation(session_id)
        message_count = self.count_messages(conversation.id)
        messages, has_more = self._get_message_page(conversation.id, limit, before)

        return ConversationHistoryResponse(
            conversation=ConversationSummary(
                id=conversation.id,
                session_id=conversation.session_id,
                created_at=conversation.created_at,
                updated_at=conversation.updated_at,
                message_count=message_count,
            ),
            messages=[
                ChatMessageOut(id=msg.id, role=msg.role, content=msg.content, created_at=msg.created_at)
                for msg in messages
            ],
            pagination=Pagination(
                has_more=has_more,
                next_cursor=messages[0].id if has_more and messages else None,
            ),
        )

    def _get_message_page(
        self, conversation_id: uuid.UUID, limit: int, before: Optional[uuid.UUID]
    ) -> Tuple[List[Message], bool]:
        try:
            query = select(Message).where(Message.conversation_id == conversation_id)
            if before is not None:
                cursor = self.db.get(Message, before)
                if cursor is None or cursor.conversation_id != conversation_id:
                    return [], False
                query = query.where(Message.created_at < cursor.created_at)

            rows = self.db.scalars(query.order_by(Message.created_at.desc()).limit(limit + 1)).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error paginating messages for convo {conversation_id}: {e}", exc_info=True)
            raise StorageError("Failed to get paginated messages", e) from e

        has_more = len(rows) > limit
        page = list(rows[:limit])
        page.reverse()
        return page, has_more

    async def delete_conversation(self, session_id: str) -> None:
        """Deletes the conversation and its messages, then drops its cached history."""
        conversation = self.get_conversation(session_id)
        conversation_id = conversation.id
        try:
            self.db.delete(conversation)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error deleting conversation {conversation_id}: {e}", exc_info=True)
            raise StorageError("Failed to delete conversation", e) from e

        await self.cache.invalidate_conversation_cache(conversation_id)
        logger.info(f"Conversation deleted: session={session_id} id={conversation_id}")
