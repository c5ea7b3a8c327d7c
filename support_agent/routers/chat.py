import logging
import time
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Response, status

from support_agent.core.dependencies import get_conversation_service
from support_agent.core.rate_limit import chat_rate_limiter, chat_rate_limiter_hourly
from support_agent.schemas.chat import (
    ChatMessageOut,
    ChatRequest,
    ChatResponse,
    ConversationHistoryResponse,
)
from support_agent.services.conversation import ConversationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post(
    "/message",
    response_model=ChatResponse,
    response_model_exclude_none=True,
    responses={201: {"model": ChatResponse, "description": "A new conversation was started"}},
    summary="Send a message to the support agent",
    dependencies=[Depends(chat_rate_limiter), Depends(chat_rate_limiter_hourly)],
)
async def post_message(
    request: ChatRequest,
    response: Response,
    conversation_svc: ConversationService = Depends(get_conversation_service),
):
    """
    Handles a chat turn. Responds 201 when the message started a new
    conversation and 200 otherwise.
    """
    start_time = time.perf_counter()
    logger.info(f"Chat message received: session={request.session_id} length={len(request.message)}")

    result = await conversation_svc.handle_turn(
        message=request.message,
        session_id=str(request.session_id) if request.session_id else None,
        metadata=request.metadata,
    )

    response.status_code = status.HTTP_201_CREATED if result.conversation_created else status.HTTP_200_OK
    logger.info(
        f"Chat message processed: session={result.session_id} status={response.status_code} "
        f"duration_ms={int((time.perf_counter() - start_time) * 1000)}"
    )

    assistant = result.assistant_message
    return ChatResponse(
        session_id=result.session_id,
        message=ChatMessageOut(
            id=assistant.id,
            role=assistant.role,
            content=assistant.content,
            created_at=assistant.created_at,
        ),
        conversation_created=True if result.conversation_created else None,
    )


@router.get(
    "/conversations/{session_id}",
    response_model=ConversationHistoryResponse,
    response_model_exclude_none=True,
    summary="Get a conversation's message history",
)
async def get_conversation_history(
    session_id: uuid.UUID = Path(..., description="Session identifier of the conversation"),
    limit: int = Query(50, ge=1, le=100),
    before: Optional[uuid.UUID] = Query(None, description="Return messages older than this message id"),
    conversation_svc: ConversationService = Depends(get_conversation_service),
):
    logger.info(f"Conversation history requested: session={session_id} limit={limit} before={before}")
    return conversation_svc.get_conversation_history(str(session_id), limit=limit, before=before)


@router.delete(
    "/conversations/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a conversation and its messages",
)
async def delete_conversation(
    session_id: uuid.UUID = Path(..., description="Session identifier of the conversation"),
    conversation_svc: ConversationService = Depends(get_conversation_service),
):
    await conversation_svc.delete_conversation(str(session_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
