# support_agent/models/faq.py
import uuid
from sqlalchemy import Boolean, Column, DDL, DateTime, Integer, String, TEXT, UUID, event
from support_agent.database import Base
from support_agent.models._types import TextArray, utcnow

class FAQ(Base):
    """
    SQLAlchemy model for knowledge-base entries. Soft-deleted via `is_active`.
    """
    __tablename__ = "faqs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    question = Column(TEXT, nullable=False)
    answer = Column(TEXT, nullable=False)
    category = Column(String(100), nullable=True, index=True)
    keywords = Column(TextArray, nullable=False, default=list)
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<FAQ(id={self.id}, category='{self.category}', priority={self.priority})>"

# Full-text and keyword indexes only exist on PostgreSQL
event.listen(
    FAQ.__table__,
    "after_create",
    DDL(
        "CREATE INDEX IF NOT EXISTS idx_faqs_fulltext ON faqs "
        "USING GIN (to_tsvector('english', question || ' ' || answer))"
    ).execute_if(dialect="postgresql"),
)
event.listen(
    FAQ.__table__,
    "after_create",
    DDL("CREATE INDEX IF NOT EXISTS idx_faqs_keywords ON faqs USING GIN (keywords)").execute_if(dialect="postgresql"),
)
