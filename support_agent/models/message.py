# support_agent/models/message.py
import uuid
from sqlalchemy import Column, Index, Integer, String, TEXT, DateTime, CheckConstraint, ForeignKey, UUID
from sqlalchemy.orm import relationship
from support_agent.database import Base
from support_agent.models._types import JSONDict, utcnow

MESSAGE_ROLES = ("user", "assistant", "system")

class Message(Base):
    """
    SQLAlchemy model for storing individual messages within a conversation.
    Messages are append-only.
    """
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        UUID(as_uuid=True), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role = Column(String(10), nullable=False) # one of MESSAGE_ROLES
    content = Column(TEXT, nullable=False)
    tokens_used = Column(Integer, nullable=True) # assistant messages only
    meta = Column("metadata", JSONDict, nullable=False, default=dict)

    # Client-side timestamp keeps microsecond ordering between rapid writes
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    __table_args__ = (
        CheckConstraint(
            "role IN (" + ", ".join(f"'{role}'" for role in MESSAGE_ROLES) + ")", name="message_role_check"
        ),
        # Most recent messages per conversation
        Index('idx_messages_conv_id_created_at_desc', conversation_id, created_at.desc()),
    )

    conversation = relationship("Conversation", back_populates="messages")

    def __repr__(self):
        return f"<Message(id={self.id}, convo_id={self.conversation_id}, role='{self.role}')>"
