from typing import Iterator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from support_agent.core.config import settings
from support_agent.database import Database
from support_agent.services.cache import CacheService
from support_agent.services.conversation import ConversationService, SessionLocks
from support_agent.services.faq import FAQService
from support_agent.services.llm_service import LlmService
from support_agent.services.prompt_builder import PromptBuilder

# Long-lived handles are created by the application lifespan and kept on
# app.state; these dependencies only hand them out.

def _state_handle(request: Request, name: str):
    handle = getattr(request.app.state, name, None)
    if handle is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} is not initialized.",
        )
    return handle

def get_database(request: Request) -> Database:
    return _state_handle(request, "database")

def get_db(database: Database = Depends(get_database)) -> Iterator[Session]:
    """
    Provides a database session per request and always closes it.
    """
    yield from database.get_db()

def get_cache_service(request: Request) -> CacheService:
    return _state_handle(request, "cache")

def get_llm_service(request: Request) -> LlmService:
    return _state_handle(request, "llm")

def get_session_locks(request: Request) -> SessionLocks:
    return _state_handle(request, "session_locks")

def get_prompt_builder() -> PromptBuilder:
    return PromptBuilder(
        max_faqs=settings.FAQ_MAX_RESULTS,
        max_history_tokens=settings.MAX_HISTORY_TOKENS,
        max_total_tokens=settings.MAX_TOTAL_TOKENS,
    )

def get_faq_service(
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache_service),
) -> FAQService:
    return FAQService(db=db, cache=cache, max_results=settings.FAQ_MAX_RESULTS)

def get_conversation_service(
    db: Session = Depends(get_db),
    faq_service: FAQService = Depends(get_faq_service),
    llm_service: LlmService = Depends(get_llm_service),
    cache: CacheService = Depends(get_cache_service),
    prompt_builder: PromptBuilder = Depends(get_prompt_builder),
    session_locks: SessionLocks = Depends(get_session_locks),
) -> ConversationService:
    """
    Provides a ConversationService per request, bound to the request's DB
    session and to the shared cache, LLM client and session locks.
    """
    return ConversationService(
        db=db,
        faq_service=faq_service,
        llm_service=llm_service,
        cache=cache,
        prompt_builder=prompt_builder,
        history_limit=settings.CONVERSATION_HISTORY_LIMIT,
        session_locks=session_locks,
    )
