from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
import uuid

from support_agent.core.config import settings

class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    session_id: Optional[uuid.UUID] = Field(
        None,
        alias="sessionId",
        description="Session to continue. A new session is started when omitted.",
        examples=["5d3bfc49-6472-4c9a-966f-21afe51a8697"],
    )
    message: str = Field(
        ...,
        min_length=1,
        max_length=settings.MAX_MESSAGE_LENGTH,
        examples=["How do I reset my password?"],
    )
    metadata: Optional[Dict[str, Any]] = Field(
        None,
        description="Free-form data stored on the conversation when it is created.",
    )

class MessageRead(BaseModel):
    """A persisted message as stored in the history cache and used for prompts."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    role: str
    content: str
    tokens_used: Optional[int] = None
    created_at: datetime

class ChatMessageOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID
    role: str
    content: str
    created_at: datetime = Field(..., alias="createdAt")

class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    message: ChatMessageOut
    conversation_created: Optional[bool] = Field(None, alias="conversationCreated")

class ConversationSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID
    session_id: str = Field(..., alias="sessionId")
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")
    message_count: int = Field(..., alias="messageCount")

class Pagination(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    has_more: bool = Field(..., alias="hasMore")
    next_cursor: Optional[uuid.UUID] = Field(None, alias="nextCursor")

class ConversationHistoryResponse(BaseModel):
    conversation: ConversationSummary
    messages: List[ChatMessageOut]
    pagination: Pagination
