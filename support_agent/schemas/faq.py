from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
import uuid

class FAQBaseSchema(BaseModel):
    question: Optional[str] = Field(default=None, min_length=3, max_length=1000)
    answer: Optional[str] = Field(default=None, min_length=1, max_length=5000)
    category: Optional[str] = Field(default=None, max_length=100, examples=["billing"])
    keywords: Optional[List[str]] = Field(default=None, examples=[["password", "reset", "login"]])
    priority: Optional[int] = Field(default=None, description="Higher values win ranking ties.")

class FAQCreateSchema(FAQBaseSchema):
    question: str = Field(..., min_length=3, max_length=1000)
    answer: str = Field(..., min_length=1, max_length=5000)
    keywords: List[str] = Field(default_factory=list)
    priority: int = 0

class FAQUpdateSchema(FAQBaseSchema):
    """Partial update; only fields that were explicitly set are written."""
    is_active: Optional[bool] = None

class FAQRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    question: str
    answer: str
    category: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    priority: int = 0
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
