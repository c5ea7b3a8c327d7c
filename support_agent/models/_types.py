# Column types shared by the models: PostgreSQL types with portable variants
from datetime import datetime, timezone

from sqlalchemy import JSON, Text
from sqlalchemy.dialects.postgresql import ARRAY, JSONB

JSONDict = JSON().with_variant(JSONB(), "postgresql")
TextArray = ARRAY(Text()).with_variant(JSON(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
