# support_agent/models/conversation.py
import uuid
from sqlalchemy import Column, String, DateTime, UUID
from sqlalchemy.orm import relationship
from support_agent.database import Base
from support_agent.models._types import JSONDict, utcnow

class Conversation(Base):
    """
    SQLAlchemy model for storing conversation sessions.
    """
    __tablename__ = "conversations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(String(64), unique=True, nullable=False, index=True)
    user_identifier = Column(String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSONDict, nullable=False, default=dict)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )

    def __repr__(self):
        return f"<Conversation(id={self.id}, session_id='{self.session_id}')>"
